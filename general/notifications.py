"""
Notification service.

notify(recipient_id, template, payload) stores an in-app Notification for a
user and sends the matching email. notify_guest(guest_email, template, payload)
is the email-only path for guests, who have no account.

Fire-and-forget. Callers on the booking path must never let this fail their result.
"""
import logging
import uuid

from accounts.models import CustomUser
from general.email_service import EmailService
from general.models import Notification

logger = logging.getLogger(__name__)

# template -> (title, description format, email sender)
TEMPLATES = {
    "appointment-confirmation": (
        "New appointment booked",
        "{client_name} booked {event_title} on {appointment_date} at {appointment_time} ({timezone}).",
        EmailService.send_appointment_confirmation_email,
    ),
}

# template -> email sender taking the guest's address
GUEST_TEMPLATES = {
    "payment-failed": EmailService.send_payment_failed_email,
}


class UnknownTemplateError(Exception):
    pass


def notify(recipient_id, template: str, payload: dict) -> Notification:
    """
    Create the in-app notification and send the email for `template`.
    Email failures are logged; the Notification row is still returned.
    """
    if template not in TEMPLATES:
        raise UnknownTemplateError(f"Unknown notification template '{template}'.")
    title, description_format, send_email = TEMPLATES[template]
    recipient = CustomUser.objects.get(pk=recipient_id)

    try:
        description = description_format.format(**payload)
    except (KeyError, IndexError):
        description = title

    notification = Notification.objects.create(
        user=recipient,
        batch_id=uuid.uuid4(),
        template=template,
        title=title,
        description=description,
        payload=payload,
    )

    sent = send_email(recipient, payload, fail_silently=True)
    if not sent:
        logger.warning("notify: email for template=%s recipient=%s was not sent", template, recipient_id)
    return notification


def notify_guest(guest_email: str, template: str, payload: dict) -> bool:
    """Email a guest. Returns False when the email could not be sent."""
    if template not in GUEST_TEMPLATES:
        raise UnknownTemplateError(f"Unknown guest notification template '{template}'.")
    sent = GUEST_TEMPLATES[template](guest_email, payload, fail_silently=True)
    if not sent:
        logger.warning("notify_guest: email for template=%s guest=%s was not sent", template, guest_email)
    return sent
