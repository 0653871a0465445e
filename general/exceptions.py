class ImmutableRecordError(Exception):
    """Raised when code tries to rewrite a ledger row outside its allowed corrections."""
    pass
