import json
from datetime import timedelta
from io import StringIO
from unittest import TestCase as UnitTestCase
from unittest.mock import patch

import stripe
from django.core import mail
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.urls import reverse

from accounts.models import Organization
from billing import config
from billing.constants import (
    BillingInterval,
    CommissionStatus,
    PlanType,
    SubscriptionEventType,
    SubscriptionStatus,
    TierLevel,
)
from billing.models import SubscriptionEvent, SubscriptionPlan, TransactionCommission
from billing.services.commission_service import (
    BillingError,
    calculate_commission_cents,
    calculate_total_commissions,
    get_current_commission_rate,
    mark_commission_refunded,
    meetings_missing_commission,
    record_commission,
    retry_missing_commissions,
)
from billing.services.subscription_service import (
    SubscriptionError,
    cancel_subscription,
    change_plan,
    create_plan,
    get_effective_plan_type,
    reactivate_subscription,
    sync_from_stripe,
)
from bookings.models import Meeting
from bookings.tests import SLOT, make_expert
from general.exceptions import ImmutableRecordError


def make_meeting(expert, event_type, organization=None, start=SLOT, pi="pi_1", email="guest@example.com", amount=10000):
    return Meeting.objects.create(
        expert=expert,
        event_type=event_type,
        organization=organization,
        guest_email=email,
        guest_name="Guest",
        start_time=start,
        end_time=start + timedelta(minutes=event_type.duration_minutes),
        stripe_payment_intent_id=pi,
        stripe_payment_status="succeeded",
        amount_cents=amount,
    )


class CommissionMathTests(UnitTestCase):
    def test_default_rate(self):
        self.assertEqual(calculate_commission_cents(10000, 2000), 2000)

    def test_rounds_half_up(self):
        self.assertEqual(calculate_commission_cents(4900, 1200), 588)
        # 125 * 2000 / 10000 = 25.0; 3 * 1500 / 10000 = 0.45; 5 * 1000 / 10000 = 0.5
        self.assertEqual(calculate_commission_cents(125, 2000), 25)
        self.assertEqual(calculate_commission_cents(3, 1500), 0)
        self.assertEqual(calculate_commission_cents(5, 1000), 1)

    def test_zero_gross(self):
        self.assertEqual(calculate_commission_cents(0, 2000), 0)

    def test_negative_is_rejected(self):
        with self.assertRaises(BillingError):
            calculate_commission_cents(-1, 2000)

    def test_rate_table(self):
        self.assertEqual(config.lookup_commission_rate_bp(TierLevel.COMMUNITY, PlanType.COMMISSION), 2000)
        self.assertEqual(config.lookup_commission_rate_bp(TierLevel.COMMUNITY, PlanType.ANNUAL), 1200)
        self.assertEqual(config.lookup_commission_rate_bp(TierLevel.TOP, PlanType.MONTHLY), 800)
        self.assertEqual(config.lookup_commission_rate_bp(TierLevel.TOP, PlanType.TEAM), 800)
        with self.assertRaises(config.UnknownRateError):
            config.lookup_commission_rate_bp(TierLevel.STARTER, PlanType.COMMISSION)


class RecordCommissionTests(TestCase):
    def setUp(self):
        self.expert, self.organization, self.event_type = make_expert()

    def test_commission_only_expert(self):
        meeting = make_meeting(self.expert, self.event_type, self.organization)
        record = record_commission(meeting.id, 10000, "USD", "pi_1")
        self.assertEqual(record.commission_rate_bp, 2000)
        self.assertEqual(record.commission_amount_cents, 2000)
        self.assertEqual(record.net_amount_cents, 8000)
        self.assertEqual(record.currency, "usd")
        self.assertEqual(record.status, CommissionStatus.PROCESSED)
        self.assertEqual(record.tier_level_at_transaction, TierLevel.COMMUNITY)
        self.assertEqual(record.plan_type_at_transaction, PlanType.COMMISSION)

    def test_second_call_returns_first_record(self):
        meeting = make_meeting(self.expert, self.event_type, self.organization)
        first = record_commission(meeting.id, 10000, "usd", "pi_1")
        create_plan(self.organization.pk, PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.MONTH)
        second = record_commission(meeting.id, 99999, "usd", "pi_1")
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(second.commission_rate_bp, 2000)
        self.assertEqual(TransactionCommission.objects.filter(meeting=meeting).count(), 1)

    def test_top_expert_on_monthly_plan(self):
        expert, organization, event_type = make_expert(email="top@example.com", role="expert_top")
        create_plan(organization.pk, PlanType.MONTHLY, TierLevel.TOP, BillingInterval.MONTH)
        meeting = make_meeting(expert, event_type, organization)
        record = record_commission(meeting.id, 10000, "usd", "pi_1")
        self.assertEqual(record.commission_rate_bp, 800)
        self.assertEqual(record.commission_amount_cents, 800)

    def test_downgrade_keeps_recorded_snapshot(self):
        create_plan(self.organization.pk, PlanType.ANNUAL, TierLevel.COMMUNITY, BillingInterval.YEAR)
        before = record_commission(make_meeting(self.expert, self.event_type, self.organization).id, 4900, "usd", "pi_1")
        self.assertEqual((before.commission_rate_bp, before.commission_amount_cents, before.net_amount_cents), (1200, 588, 4312))

        change_plan(self.organization.pk, PlanType.COMMISSION, TierLevel.COMMUNITY, None)

        after = record_commission(
            make_meeting(self.expert, self.event_type, self.organization, start=SLOT + timedelta(hours=2), pi="pi_2").id,
            4900, "usd", "pi_2",
        )
        before.refresh_from_db()
        self.assertEqual(before.commission_rate_bp, 1200)
        self.assertEqual(before.plan_type_at_transaction, PlanType.ANNUAL)
        self.assertEqual(after.commission_rate_bp, 2000)
        self.assertEqual(after.plan_type_at_transaction, PlanType.COMMISSION)
        self.assertEqual(get_current_commission_rate(self.expert.pk), 2000)

    def test_past_due_plan_pays_commission_rate(self):
        create_plan(self.organization.pk, PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.MONTH)
        change_plan(self.organization.pk, PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.MONTH, status=SubscriptionStatus.PAST_DUE)
        record = record_commission(make_meeting(self.expert, self.event_type, self.organization).id, 10000, "usd", "pi_1")
        self.assertEqual(record.commission_rate_bp, 2000)

    def test_unresolvable_expert_returns_none(self):
        self.expert.role = "guest"
        self.expert.save()
        meeting = make_meeting(self.expert, self.event_type, self.organization)
        self.assertIsNone(record_commission(meeting.id, 10000, "usd", "pi_1"))
        self.assertFalse(TransactionCommission.objects.exists())

    def test_missing_payment_reference_returns_none(self):
        meeting = make_meeting(self.expert, self.event_type, self.organization)
        self.assertIsNone(record_commission(meeting.id, 10000, "usd", ""))

    def test_meeting_without_organization_returns_none(self):
        expert, organization, event_type = make_expert(email="solo@example.com", with_org=False)
        self.assertIsNone(organization)
        meeting = make_meeting(expert, event_type)
        with self.assertLogs("billing.services.commission_service", level="ERROR") as logs:
            self.assertIsNone(record_commission(meeting.id, 10000, "usd", "pi_1"))
        self.assertIn("has no organization", logs.output[0])
        self.assertFalse(TransactionCommission.objects.exists())
        self.assertEqual(list(meetings_missing_commission()), [meeting])

    def test_organization_joined_later_is_used_on_retry(self):
        from accounts.models import OrganizationMembership

        expert, _, event_type = make_expert(email="solo@example.com", with_org=False)
        meeting = make_meeting(expert, event_type)
        with self.assertLogs("billing.services.commission_service", level="ERROR"):
            retry_missing_commissions()
        organization = Organization.objects.create(name="Late practice")
        OrganizationMembership.objects.create(user=expert, organization=organization, role="owner")
        self.assertEqual(retry_missing_commissions(), {"checked": 1, "recorded": 1, "failed": 0})
        self.assertEqual(TransactionCommission.objects.get(meeting=meeting).organization_id, organization.pk)

    def test_snapshot_is_frozen(self):
        record = record_commission(make_meeting(self.expert, self.event_type, self.organization).id, 10000, "usd", "pi_1")
        record.commission_rate_bp = 1
        with self.assertRaises(ImmutableRecordError):
            record.save()
        with self.assertRaises(ImmutableRecordError):
            record.delete()

    def test_refund_changes_settlement_only(self):
        meeting = make_meeting(self.expert, self.event_type, self.organization)
        record_commission(meeting.id, 10000, "usd", "pi_1")
        record = mark_commission_refunded(meeting.id)
        self.assertEqual(record.status, CommissionStatus.REFUNDED)
        self.assertIsNotNone(record.refunded_at)
        self.assertEqual(record.commission_amount_cents, 2000)
        self.assertIsNone(mark_commission_refunded(make_meeting(self.expert, self.event_type, start=SLOT + timedelta(hours=3), pi="pi_9").id))

    def test_totals_skip_refunded(self):
        first = make_meeting(self.expert, self.event_type, self.organization)
        second = make_meeting(self.expert, self.event_type, self.organization, start=SLOT + timedelta(hours=2), pi="pi_2", amount=4900)
        record_commission(first.id, 10000, "usd", "pi_1")
        record_commission(second.id, 4900, "usd", "pi_2")
        totals = calculate_total_commissions(self.expert.pk)
        self.assertEqual(totals, {"count": 2, "gross_amount_cents": 14900, "commission_amount_cents": 2980, "net_amount_cents": 11920})
        mark_commission_refunded(second.id)
        self.assertEqual(calculate_total_commissions(self.expert.pk)["count"], 1)

    def test_retry_missing_commissions(self):
        meeting = make_meeting(self.expert, self.event_type, self.organization)
        self.assertEqual(list(meetings_missing_commission()), [meeting])
        result = retry_missing_commissions()
        self.assertEqual(result, {"checked": 1, "recorded": 1, "failed": 0})
        self.assertFalse(meetings_missing_commission().exists())

    def test_current_rate_preview_falls_back(self):
        self.assertEqual(get_current_commission_rate(self.expert.pk), 2000)
        self.assertEqual(get_current_commission_rate(999999), config.DEFAULT_COMMISSION_RATE_BP)


class SubscriptionTransitionTests(TestCase):
    def setUp(self):
        self.expert, self.organization, _ = make_expert()

    def events(self):
        return list(SubscriptionEvent.objects.filter(organization=self.organization).order_by("created_at", "id"))

    def test_create_appends_event_with_previous_commission(self):
        plan = create_plan(self.organization.pk, PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.MONTH, actor=self.expert)
        self.assertEqual(plan.monthly_fee_cents, 4900)
        self.assertEqual(plan.billing_admin, self.expert)
        [event] = self.events()
        self.assertEqual(event.event_type, SubscriptionEventType.PLAN_CREATED)
        self.assertEqual(event.previous_plan_type, PlanType.COMMISSION)
        self.assertEqual(event.new_plan_type, PlanType.MONTHLY)
        self.assertEqual(event.subscription_plan_id, None)
        self.assertEqual(get_effective_plan_type(self.organization.pk), PlanType.MONTHLY)

    def test_create_refused_when_active(self):
        create_plan(self.organization.pk, PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.MONTH)
        with self.assertRaises(SubscriptionError):
            create_plan(self.organization.pk, PlanType.ANNUAL, TierLevel.COMMUNITY, BillingInterval.YEAR)
        self.assertEqual(len(self.events()), 1)

    def test_invalid_combinations(self):
        with self.assertRaises(SubscriptionError):
            create_plan(self.organization.pk, PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.YEAR)
        with self.assertRaises(SubscriptionError):
            create_plan(self.organization.pk, PlanType.TEAM, TierLevel.TOP, BillingInterval.MONTH)
        with self.assertRaises(SubscriptionError):
            create_plan(self.organization.pk, PlanType.COMMISSION, TierLevel.COMMUNITY, None)
        with self.assertRaises(SubscriptionError):
            create_plan("not-a-uuid", PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.MONTH)
        self.assertEqual(self.events(), [])

    def test_team_plan(self):
        plan = create_plan(self.organization.pk, PlanType.TEAM, TierLevel.STARTER, BillingInterval.YEAR)
        self.assertEqual(plan.annual_fee_cents, 99000)
        self.assertEqual(get_current_commission_rate(self.expert.pk), 1200)

    def test_cancel_keeps_rate_until_period_end(self):
        create_plan(self.organization.pk, PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.MONTH)
        plan = cancel_subscription(self.organization.pk, reason="too expensive")
        self.assertTrue(plan.cancel_at_period_end)
        self.assertEqual(plan.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(get_effective_plan_type(self.organization.pk), PlanType.MONTHLY)
        self.assertEqual(self.events()[-1].event_type, SubscriptionEventType.SUBSCRIPTION_CANCELED)

        cancel_subscription(self.organization.pk)
        self.assertEqual(len(self.events()), 2)

        plan = reactivate_subscription(self.organization.pk)
        self.assertFalse(plan.cancel_at_period_end)
        self.assertEqual(self.events()[-1].event_type, SubscriptionEventType.SUBSCRIPTION_RENEWED)

    def test_cancel_without_subscription(self):
        with self.assertRaises(SubscriptionError):
            cancel_subscription(self.organization.pk)

    @patch("billing.services.subscription_service.stripe_service")
    def test_cancel_mirrors_to_stripe(self, stripe_service):
        stripe_service.is_configured.return_value = True
        create_plan(self.organization.pk, PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.MONTH, stripe_subscription_id="sub_1")
        cancel_subscription(self.organization.pk)
        stripe_service.set_cancel_at_period_end.assert_called_once_with("sub_1", True)

    @patch("billing.services.subscription_service.stripe_service")
    def test_stripe_failure_rolls_back(self, stripe_service):
        stripe_service.is_configured.return_value = True
        stripe_service.set_cancel_at_period_end.side_effect = stripe.StripeError("card network down")
        create_plan(self.organization.pk, PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.MONTH, stripe_subscription_id="sub_1")
        with self.assertRaises(SubscriptionError):
            cancel_subscription(self.organization.pk)
        self.assertFalse(SubscriptionPlan.objects.get(organization=self.organization).cancel_at_period_end)
        self.assertEqual(len(self.events()), 1)

    def test_change_plan_and_downgrade(self):
        create_plan(self.organization.pk, PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.MONTH)
        plan = change_plan(self.organization.pk, PlanType.ANNUAL, TierLevel.COMMUNITY, BillingInterval.YEAR)
        self.assertEqual(plan.annual_fee_cents, 49000)
        self.assertIsNone(plan.monthly_fee_cents)

        change_plan(self.organization.pk, PlanType.COMMISSION, TierLevel.COMMUNITY, None)
        self.assertEqual(get_effective_plan_type(self.organization.pk), PlanType.COMMISSION)

        changes = [(e.previous_plan_type, e.new_plan_type) for e in self.events()[1:]]
        self.assertEqual(changes, [(PlanType.MONTHLY, PlanType.ANNUAL), (PlanType.ANNUAL, PlanType.COMMISSION)])

    def test_noop_change_appends_nothing(self):
        create_plan(self.organization.pk, PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.MONTH)
        change_plan(self.organization.pk, PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.MONTH)
        self.assertEqual(len(self.events()), 1)

    def test_events_are_append_only(self):
        create_plan(self.organization.pk, PlanType.MONTHLY, TierLevel.COMMUNITY, BillingInterval.MONTH)
        event = self.events()[0]
        event.reason = "edited"
        with self.assertRaises(ImmutableRecordError):
            event.save()
        with self.assertRaises(ImmutableRecordError):
            event.delete()

    def test_no_organization_means_commission(self):
        self.assertEqual(get_effective_plan_type(None), PlanType.COMMISSION)
        other = Organization.objects.create(name="Empty")
        self.assertEqual(get_effective_plan_type(other.pk), PlanType.COMMISSION)


class StripeSubscriptionSyncTests(TestCase):
    def setUp(self):
        self.expert, self.organization, _ = make_expert()

    def subscription(self, **overrides):
        data = {
            "id": "sub_1",
            "status": "active",
            "cancel_at_period_end": False,
            "current_period_start": 1893456000,
            "current_period_end": 1896134400,
            "metadata": {"organization_id": str(self.organization.pk), "tier_level": "community"},
            "items": {"data": [{"price": {"id": "price_m", "recurring": {"interval": "month"}}}]},
        }
        data.update(overrides)
        return data

    def test_created_then_canceled_then_ended(self):
        plan = sync_from_stripe(self.subscription(), stripe_event_id="evt_1")
        self.assertEqual(plan.plan_type, PlanType.MONTHLY)
        self.assertEqual(plan.stripe_price_id, "price_m")
        self.assertIsNotNone(plan.current_period_end)

        plan = sync_from_stripe(self.subscription(cancel_at_period_end=True), stripe_event_id="evt_2")
        self.assertTrue(plan.cancel_at_period_end)
        self.assertEqual(get_effective_plan_type(self.organization.pk), PlanType.MONTHLY)

        sync_from_stripe(self.subscription(status="canceled", cancel_at_period_end=True), stripe_event_id="evt_3")
        self.assertEqual(get_effective_plan_type(self.organization.pk), PlanType.COMMISSION)

        event_ids = list(SubscriptionEvent.objects.filter(organization=self.organization).values_list("stripe_event_id", flat=True))
        self.assertEqual(event_ids, ["evt_1", "evt_2", "evt_3"])

    def test_renewal_moves_period_without_event(self):
        sync_from_stripe(self.subscription())
        plan = sync_from_stripe(self.subscription(current_period_start=1896134400, current_period_end=1898553600))
        self.assertEqual(plan.current_period_end.year, 2030)
        self.assertEqual(SubscriptionEvent.objects.filter(organization=self.organization).count(), 1)

    def test_unpaid_subscription_does_not_grant_rate(self):
        self.assertIsNone(sync_from_stripe(self.subscription(status="incomplete")))
        self.assertEqual(get_effective_plan_type(self.organization.pk), PlanType.COMMISSION)

    def test_unknown_organization(self):
        self.assertIsNone(sync_from_stripe(self.subscription(metadata={})))


@override_settings(STRIPE_WEBHOOK_SECRET="whsec_test")
class StripeWebhookTests(TestCase):
    def setUp(self):
        self.expert, self.organization, self.event_type = make_expert()
        self.url = reverse("billing:stripe_webhook")

    def deliver(self, event_type, obj, event_id="evt_1"):
        body = json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})
        with patch("billing.views.construct_webhook_event") as construct:
            response = self.client.post(self.url, data=body, content_type="application/json", HTTP_STRIPE_SIGNATURE="t=1,v1=sig")
        construct.assert_called_once()
        return response

    def checkout_session(self, **overrides):
        data = {
            "id": "cs_1",
            "payment_intent": "pay_123",
            "payment_status": "paid",
            "amount_total": 10000,
            "currency": "usd",
            "metadata": {
                "event_type_id": str(self.event_type.pk),
                "expert_id": str(self.expert.pk),
                "start_time": SLOT.isoformat(),
                "guest_email": "guest@example.com",
                "guest_name": "Gina Guest",
                "amount_cents": "10000",
            },
        }
        data.update(overrides)
        return data

    def test_missing_signature_is_rejected(self):
        response = self.client.post(self.url, data="{}", content_type="application/json")
        self.assertEqual(response.status_code, 400)

    def test_bad_signature_is_rejected(self):
        with patch("billing.views.construct_webhook_event", side_effect=ValueError("bad payload")):
            response = self.client.post(self.url, data="{}", content_type="application/json", HTTP_STRIPE_SIGNATURE="x")
        self.assertEqual(response.status_code, 400)

    def test_duplicate_delivery_creates_one_meeting_and_commission(self):
        self.assertEqual(self.deliver("checkout.session.completed", self.checkout_session()).status_code, 200)
        self.assertEqual(self.deliver("checkout.session.completed", self.checkout_session()).status_code, 200)
        self.assertEqual(
            self.deliver("payment_intent.succeeded", {"id": "pay_123", "amount_received": 10000, "currency": "usd"}).status_code,
            200,
        )
        meeting = Meeting.objects.get()
        self.assertEqual(meeting.stripe_payment_intent_id, "pay_123")
        commission = TransactionCommission.objects.get()
        self.assertEqual(commission.meeting_id, meeting.pk)
        self.assertEqual(commission.commission_amount_cents, 2000)

    def test_unpaid_checkout_then_payment_succeeds(self):
        self.deliver("checkout.session.completed", self.checkout_session(payment_status="unpaid"))
        meeting = Meeting.objects.get()
        self.assertEqual(meeting.stripe_payment_status, "pending")
        self.assertFalse(TransactionCommission.objects.exists())

        self.deliver("payment_intent.succeeded", {"id": "pay_123", "amount_received": 10000, "currency": "usd"})
        meeting.refresh_from_db()
        self.assertEqual(meeting.stripe_payment_status, "succeeded")
        self.assertTrue(TransactionCommission.objects.filter(meeting=meeting).exists())

    def test_payment_intent_alone_confirms_from_metadata(self):
        metadata = self.checkout_session()["metadata"]
        self.deliver("payment_intent.succeeded", {"id": "pay_9", "amount_received": 10000, "currency": "usd", "metadata": metadata})
        self.assertEqual(Meeting.objects.get().stripe_payment_intent_id, "pay_9")

    def test_full_refund_frees_slot_and_refunds_commission(self):
        self.deliver("checkout.session.completed", self.checkout_session())
        self.deliver("charge.refunded", {"payment_intent": "pay_123", "refunded": False, "amount_refunded": 100})
        self.assertEqual(Meeting.objects.get().stripe_payment_status, "succeeded")

        self.deliver("charge.refunded", {"payment_intent": "pay_123", "refunded": True, "amount_refunded": 10000})
        self.assertEqual(Meeting.objects.get().stripe_payment_status, "refunded")
        self.assertEqual(TransactionCommission.objects.get().status, CommissionStatus.REFUNDED)

    def test_payment_failed_cancels_booking_and_emails_guest(self):
        self.deliver("checkout.session.completed", self.checkout_session(payment_status="unpaid"))
        failure = {"id": "pay_123", "last_payment_error": {"message": "Your card was declined."}}
        with self.captureOnCommitCallbacks(execute=True):
            self.deliver("payment_intent.payment_failed", failure)
        self.assertEqual(Meeting.objects.get().stripe_payment_status, "failed")
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["guest@example.com"])
        self.assertIn("cancelled", mail.outbox[0].subject)

        with self.captureOnCommitCallbacks(execute=True):
            self.deliver("payment_intent.payment_failed", failure, event_id="evt_2")
        self.assertEqual(len(mail.outbox), 1)

        other = self.checkout_session(id="cs_2", payment_intent="pay_456")
        other["metadata"] = dict(other["metadata"], guest_email="other@example.com")
        self.deliver("checkout.session.completed", other)
        self.assertEqual(Meeting.objects.filter(stripe_payment_status="succeeded").get().guest_email, "other@example.com")

    def test_payment_failed_for_unknown_payment(self):
        self.assertEqual(self.deliver("payment_intent.payment_failed", {"id": "pay_unknown"}).status_code, 200)
        self.assertEqual(mail.outbox, [])

    def test_subscription_checkout_is_not_a_booking(self):
        self.deliver("checkout.session.completed", {"id": "cs_sub", "mode": "subscription", "metadata": {}})
        self.assertFalse(Meeting.objects.exists())

    def test_subscription_event(self):
        subscription = {
            "id": "sub_1",
            "status": "active",
            "metadata": {"organization_id": str(self.organization.pk)},
            "items": {"data": [{"price": {"id": "price_y", "recurring": {"interval": "year"}}}]},
        }
        self.deliver("customer.subscription.created", subscription, event_id="evt_sub")
        self.assertEqual(get_effective_plan_type(self.organization.pk), PlanType.ANNUAL)
        self.assertEqual(SubscriptionEvent.objects.get().stripe_event_id, "evt_sub")

    def test_unknown_events_are_acknowledged(self):
        self.assertEqual(self.deliver("invoice.paid", {"id": "in_1"}).status_code, 200)


class BillingViewTests(TestCase):
    def setUp(self):
        self.expert, self.organization, _ = make_expert()

    def test_commission_rate_preview(self):
        self.client.force_login(self.expert)
        response = self.client.get(reverse("billing:commission_rate"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"commission_rate_bp": 2000, "commission_rate_percent": 20.0})

    def test_commission_rate_preview_for_non_expert(self):
        from accounts.models import CustomUser

        guest = CustomUser.objects.create_user(email="client@example.com", password="pass12345")
        self.client.force_login(guest)
        self.assertEqual(self.client.get(reverse("billing:commission_rate")).status_code, 403)

    @override_settings(STRIPE_SECRET_KEY="")
    def test_stripe_status_for_staff(self):
        from accounts.models import CustomUser

        staff = CustomUser.objects.create_superuser(email="staff@example.com", password="pass12345")
        self.client.force_login(staff)
        response = self.client.get(reverse("billing:stripe_status"))
        self.assertEqual(response.json(), {"stripe_configured": False, "api_ok": False})

    def test_commission_history(self):
        event_type = self.expert.event_types.get()
        first = make_meeting(self.expert, event_type, self.organization)
        second = make_meeting(self.expert, event_type, self.organization, start=SLOT + timedelta(hours=2), pi="pi_2", amount=4900)
        record_commission(first.id, 10000, "usd", "pi_1")
        record_commission(second.id, 4900, "usd", "pi_2")
        mark_commission_refunded(second.id)

        self.client.force_login(self.expert)
        response = self.client.get(reverse("billing:commission_history"))
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(len(body["commissions"]), 2)
        self.assertEqual(
            {(row["meeting_id"], row["status"]) for row in body["commissions"]},
            {(str(first.id), "processed"), (str(second.id), "refunded")},
        )
        self.assertEqual(body["commissions"][0]["commission_rate_bp"], 2000)
        self.assertEqual(body["commissions"][0]["plan_type"], PlanType.COMMISSION)
        self.assertEqual(body["totals"]["count"], 1)
        self.assertEqual(body["totals"]["commission_amount_cents"], 2000)

        response = self.client.get(reverse("billing:commission_history"), {"limit": "1"})
        self.assertEqual(len(response.json()["commissions"]), 1)
        self.assertEqual(self.client.get(reverse("billing:commission_history"), {"limit": "x"}).status_code, 400)

    def test_commission_history_for_non_expert(self):
        from accounts.models import CustomUser

        guest = CustomUser.objects.create_user(email="client@example.com", password="pass12345")
        self.client.force_login(guest)
        self.assertEqual(self.client.get(reverse("billing:commission_history")).status_code, 403)


class RetryCommissionsCommandTests(TestCase):
    def setUp(self):
        self.expert, self.organization, self.event_type = make_expert()

    def test_records_missing_commissions(self):
        meeting = make_meeting(self.expert, self.event_type, self.organization)
        out = StringIO()
        call_command("retry_commissions", stdout=out)
        self.assertIn("1 meetings checked, 1 commissions recorded, 0 still unresolved", out.getvalue())
        self.assertTrue(TransactionCommission.objects.filter(meeting=meeting).exists())

    def test_unresolved_commission_exits_non_zero(self):
        expert, _, event_type = make_expert(email="solo@example.com", with_org=False)
        make_meeting(expert, event_type)
        err = StringIO()
        with self.assertLogs("billing.services.commission_service", level="ERROR"):
            with self.assertRaises(SystemExit) as ctx:
                call_command("retry_commissions", stdout=StringIO(), stderr=err)
        self.assertEqual(ctx.exception.code, 1)
        self.assertIn("1 still unresolved", err.getvalue())
