import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


PLAN_TYPE_CHOICES = [("commission", "Commission only"), ("monthly", "Monthly subscription"), ("annual", "Annual subscription"), ("team", "Team subscription")]
TIER_LEVEL_CHOICES = [("community", "Community"), ("top", "Top"), ("starter", "Team Starter"), ("professional", "Team Professional"), ("enterprise", "Team Enterprise")]
BILLING_INTERVAL_CHOICES = [("month", "Monthly"), ("year", "Yearly")]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("accounts", "0001_initial"),
        ("bookings", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="SubscriptionPlan",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("plan_type", models.CharField(choices=PLAN_TYPE_CHOICES, default="commission", max_length=20)),
                ("tier_level", models.CharField(choices=TIER_LEVEL_CHOICES, default="community", max_length=20)),
                ("billing_interval", models.CharField(blank=True, choices=BILLING_INTERVAL_CHOICES, max_length=10, null=True)),
                ("status", models.CharField(choices=[("active", "Active"), ("trialing", "Trialing"), ("past_due", "Past due"), ("canceled", "Canceled")], default="active", max_length=20)),
                ("cancel_at_period_end", models.BooleanField(default=False)),
                ("current_period_start", models.DateTimeField(blank=True, null=True)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("stripe_subscription_id", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("stripe_price_id", models.CharField(blank=True, max_length=255)),
                ("monthly_fee_cents", models.PositiveIntegerField(blank=True, null=True)),
                ("annual_fee_cents", models.PositiveIntegerField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("billing_admin", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="administered_plans", to=settings.AUTH_USER_MODEL)),
                ("organization", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="subscription_plan", to="accounts.organization")),
            ],
            options={
                "verbose_name": "Subscription plan",
                "verbose_name_plural": "Subscription plans",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("event_type", models.CharField(choices=[("plan_created", "Plan created"), ("plan_changed", "Plan changed"), ("subscription_canceled", "Subscription canceled"), ("subscription_renewed", "Subscription renewed")], max_length=40)),
                ("previous_plan_type", models.CharField(blank=True, choices=PLAN_TYPE_CHOICES, max_length=20, null=True)),
                ("new_plan_type", models.CharField(blank=True, choices=PLAN_TYPE_CHOICES, max_length=20, null=True)),
                ("previous_tier_level", models.CharField(blank=True, choices=TIER_LEVEL_CHOICES, max_length=20, null=True)),
                ("new_tier_level", models.CharField(blank=True, choices=TIER_LEVEL_CHOICES, max_length=20, null=True)),
                ("previous_billing_interval", models.CharField(blank=True, choices=BILLING_INTERVAL_CHOICES, max_length=10, null=True)),
                ("new_billing_interval", models.CharField(blank=True, choices=BILLING_INTERVAL_CHOICES, max_length=10, null=True)),
                ("stripe_event_id", models.CharField(blank=True, max_length=255)),
                ("stripe_subscription_id", models.CharField(blank=True, max_length=255)),
                ("reason", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("actor", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="subscription_events", to=settings.AUTH_USER_MODEL)),
                ("organization", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="subscription_events", to="accounts.organization")),
                ("subscription_plan", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="events", to="billing.subscriptionplan")),
            ],
            options={
                "ordering": ["created_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="TransactionCommission",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("gross_amount_cents", models.PositiveIntegerField()),
                ("commission_rate_bp", models.PositiveIntegerField()),
                ("commission_amount_cents", models.PositiveIntegerField()),
                ("net_amount_cents", models.PositiveIntegerField()),
                ("currency", models.CharField(default="usd", max_length=10)),
                ("stripe_payment_intent_id", models.CharField(max_length=255)),
                ("stripe_transfer_id", models.CharField(blank=True, max_length=255)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("processed", "Processed"), ("refunded", "Refunded"), ("disputed", "Disputed")], default="pending", max_length=20)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("tier_level_at_transaction", models.CharField(choices=TIER_LEVEL_CHOICES, max_length=20)),
                ("plan_type_at_transaction", models.CharField(choices=PLAN_TYPE_CHOICES, max_length=20)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("expert", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="commissions", to=settings.AUTH_USER_MODEL)),
                ("meeting", models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name="commission", to="bookings.meeting")),
                ("organization", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="commissions", to="accounts.organization")),
            ],
            options={
                "verbose_name": "Transaction commission",
                "verbose_name_plural": "Transaction commissions",
                "ordering": ["-created_at"],
            },
        ),
        migrations.AddIndex(
            model_name="transactioncommission",
            index=models.Index(fields=["expert", "created_at"], name="billing_tra_expert__3f6d21_idx"),
        ),
    ]
