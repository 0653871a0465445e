from unittest.mock import patch

from django.core import mail
from django.test import TestCase

from accounts.models import CustomUser
from general.models import Notification
from general.notifications import UnknownTemplateError, notify, notify_guest

PAYLOAD = {
    "meeting_id": "m-1",
    "event_title": "Consultation",
    "client_name": "Gina Guest",
    "client_email": "guest@example.com",
    "client_notes": "",
    "appointment_date": "Monday, January 07, 2030",
    "appointment_time": "10:00",
    "timezone": "UTC",
    "duration_minutes": 50,
    "meeting_url": "",
}


class NotifyTests(TestCase):
    def setUp(self):
        self.expert = CustomUser.objects.create_user(
            email="expert@example.com", password="x", role="expert_community", first_name="Eva",
        )

    def test_creates_notification_and_sends_email(self):
        notification = notify(self.expert.pk, "appointment-confirmation", PAYLOAD)
        self.assertEqual(notification.user, self.expert)
        self.assertIn("Gina Guest booked Consultation", notification.description)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["expert@example.com"])
        self.assertEqual(mail.outbox[0].subject, "New appointment: Consultation")

    def test_unknown_template(self):
        with self.assertRaises(UnknownTemplateError):
            notify(self.expert.pk, "newsletter", {})
        self.assertFalse(Notification.objects.exists())

    def test_email_failure_keeps_notification(self):
        with patch("general.email_service.EmailMultiAlternatives.send", side_effect=OSError("smtp down")):
            notification = notify(self.expert.pk, "appointment-confirmation", PAYLOAD)
        self.assertTrue(Notification.objects.filter(pk=notification.pk).exists())

    def test_missing_payload_keys_fall_back_to_title(self):
        with patch("general.email_service.EmailMultiAlternatives.send"):
            notification = notify(self.expert.pk, "appointment-confirmation", {"event_title": "Consultation"})
        self.assertEqual(notification.description, notification.title)


class NotifyGuestTests(TestCase):
    payload = {
        "guest_name": "Gina Guest",
        "expert_name": "Eva Expert",
        "event_title": "Consultation",
        "appointment_date": "Monday, January 07, 2030",
        "appointment_time": "10:00 - 10:50",
        "timezone": "UTC",
        "duration_minutes": 50,
    }

    def test_sends_payment_failed_email(self):
        self.assertTrue(notify_guest("guest@example.com", "payment-failed", self.payload))
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["guest@example.com"])
        self.assertEqual(mail.outbox[0].subject, "Payment failed: Consultation was cancelled")
        self.assertIn("10:00 - 10:50", mail.outbox[0].body)
        self.assertIn("Eva Expert", mail.outbox[0].body)
        self.assertFalse(Notification.objects.exists())

    def test_unknown_guest_template(self):
        with self.assertRaises(UnknownTemplateError):
            notify_guest("guest@example.com", "appointment-confirmation", self.payload)

    def test_email_failure_returns_false(self):
        with patch("general.email_service.EmailMultiAlternatives.send", side_effect=OSError("smtp down")):
            self.assertFalse(notify_guest("guest@example.com", "payment-failed", self.payload))
