"""
Transactional email for the booking flow.
Every message is rendered from templates/emails/<name>.html and sent with a
plain-text fallback derived from the HTML.
"""
import logging
import os
from typing import Any, Dict, Optional

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string
from django.utils.html import strip_tags

logger = logging.getLogger(__name__)

SITE_NAME = 'Care Marketplace'


class EmailService:
    """Renders and sends the marketplace's HTML emails."""

    @staticmethod
    def get_site_domain() -> str:
        """
        Public base URL used in links: SITE_DOMAIN in prod, localhost otherwise.
        """
        if getattr(settings, 'DEVELOPMENT_MODE', 'dev').lower() != 'prod':
            return 'http://localhost:8000'
        domain = os.getenv('SITE_DOMAIN', 'https://care.example.com')
        return domain if domain.startswith(('http://', 'https://')) else f'https://{domain}'

    @staticmethod
    def send_email(
        subject: str,
        recipient_email: str,
        template_name: str,
        context: Optional[Dict[str, Any]] = None,
        from_email: Optional[str] = None,
        fail_silently: bool = False,
    ) -> bool:
        """
        Render `emails/<template_name>.html` with `context` and send it.

        Returns:
            bool: True when the backend accepted the message. With
            fail_silently=True a failed send returns False instead of raising.
        """
        context = dict(context or {})
        context.setdefault('site_domain', EmailService.get_site_domain())
        context.setdefault('site_name', SITE_NAME)

        html_content = render_to_string(f'emails/{template_name}.html', context)
        msg = EmailMultiAlternatives(
            subject=subject,
            body=strip_tags(html_content).strip(),
            from_email=from_email or settings.DEFAULT_FROM_EMAIL,
            to=[recipient_email],
        )
        msg.attach_alternative(html_content, "text/html")

        try:
            msg.send()
        except Exception as e:
            if not fail_silently:
                raise
            logger.warning("send_email: %s to %s failed: %s", template_name, recipient_email, e)
            return False
        return True

    @staticmethod
    def send_appointment_confirmation_email(expert, payload: Dict[str, Any], fail_silently: bool = False) -> bool:
        """
        Tell an expert a guest booked them. Dates in payload are already
        formatted in the expert's timezone.
        """
        context = dict(payload)
        context.setdefault('expert_name', expert.full_name or 'there')
        return EmailService.send_email(
            subject=f"New appointment: {payload.get('event_title', 'Consultation')}",
            recipient_email=expert.email,
            template_name='appointment_confirmation',
            context=context,
            fail_silently=fail_silently,
        )

    @staticmethod
    def send_reservation_expired_email(guest_email: str, payload: Dict[str, Any], fail_silently: bool = False) -> bool:
        """Tell a guest their held slot lapsed before payment completed."""
        return EmailService.send_email(
            subject="Your reserved time slot has expired",
            recipient_email=guest_email,
            template_name='reservation_expired',
            context=dict(payload),
            fail_silently=fail_silently,
        )

    @staticmethod
    def send_payment_failed_email(guest_email: str, payload: Dict[str, Any], fail_silently: bool = False) -> bool:
        """Tell a guest their payment failed and the booking was cancelled."""
        return EmailService.send_email(
            subject=f"Payment failed: {payload.get('event_title', 'your appointment')} was cancelled",
            recipient_email=guest_email,
            template_name='payment_failed',
            context=dict(payload),
            fail_silently=fail_silently,
        )
