import uuid

import billing.models
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Profile",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("stripe_customer_id", models.CharField(blank=True, help_text="Stripe customer identifier tied to this user.", max_length=255, null=True, unique=True)),
                ("subscription_status", models.CharField(choices=[("active", "Active"), ("trialing", "Trialing"), ("past_due", "Past due"), ("canceled", "Canceled"), ("unpaid", "Unpaid"), ("none", "None")], default="none", help_text="Status mirrored from the user's current Stripe subscription.", max_length=20)),
                ("subscription_tier", models.CharField(default=billing.models._default_tier_name, help_text="Display name of the plan the user is subscribed to.", max_length=64)),
                ("subscription_credits_balance", models.IntegerField(default=0, help_text="Credits granted by the subscription; expire at the end of each cycle.")),
                ("purchased_credits_balance", models.IntegerField(default=0, help_text="Credits bought as one-off packs; never expire.")),
                ("role", models.CharField(choices=[("user", "User"), ("admin", "Admin")], default="user", max_length=16)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.OneToOneField(help_text="User owning this billing profile.", on_delete=django.db.models.deletion.CASCADE, related_name="billing_profile", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Billing profile",
                "verbose_name_plural": "Billing profiles",
                "db_table": "billing_profile",
                "ordering": ["user__id"],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(subscription_credits_balance__gte=0), name="profile_subscription_credits_non_negative"),
                    models.CheckConstraint(condition=models.Q(purchased_credits_balance__gte=0), name="profile_purchased_credits_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.CharField(help_text="Stripe subscription identifier.", max_length=255, primary_key=True, serialize=False)),
                ("status", models.CharField(choices=[("active", "Active"), ("trialing", "Trialing"), ("past_due", "Past due"), ("canceled", "Canceled"), ("unpaid", "Unpaid"), ("incomplete", "Incomplete"), ("incomplete_expired", "Incomplete expired"), ("paused", "Paused")], max_length=32)),
                ("price_id", models.CharField(blank=True, help_text="Stripe price id of the subscribed plan.", max_length=255)),
                ("current_period_start", models.DateTimeField(blank=True, null=True)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("trial_end", models.DateTimeField(blank=True, null=True)),
                ("cancel_at_period_end", models.BooleanField(default=False)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("scheduled_price_id", models.CharField(blank=True, help_text="Target price of a scheduled downgrade, if any.", max_length=255, null=True)),
                ("scheduled_change_date", models.DateTimeField(blank=True, help_text="When the scheduled price change takes effect.", null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="subscriptions", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "db_table": "billing_subscription",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "current_period_end"], name="subscription_status_end_idx"),
                    models.Index(fields=["user", "status"], name="subscription_user_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CreditTransaction",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("amount", models.IntegerField(help_text="Signed amount; positive grants credits, negative consumes them.")),
                ("type", models.CharField(choices=[("purchase", "Purchase"), ("subscription", "Subscription grant"), ("usage", "Usage"), ("refund", "Refund"), ("bonus", "Bonus"), ("expired", "Expired"), ("admin_adjustment", "Admin adjustment")], help_text="Categorisation of the credit movement.", max_length=32)),
                ("pool", models.CharField(choices=[("subscription", "Subscription credits"), ("purchased", "Purchased credits")], help_text="Balance the movement was applied to.", max_length=16)),
                ("reference_id", models.CharField(blank=True, help_text="Stripe object or event id tied to this transaction, if applicable.", max_length=255, null=True)),
                ("idempotency_key", models.CharField(blank=True, help_text="Deterministic key ensuring idempotent writes.", max_length=255, null=True)),
                ("description", models.TextField(blank=True)),
                ("subscription_balance_after", models.IntegerField(default=0)),
                ("purchased_balance_after", models.IntegerField(default=0)),
                ("metadata", models.JSONField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="credit_transactions", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Credit transaction",
                "verbose_name_plural": "Credit transactions",
                "db_table": "billing_credit_transaction",
                "ordering": ["-created_at"],
                "constraints": [
                    models.CheckConstraint(condition=~models.Q(amount=0), name="credit_transaction_non_zero_amount"),
                    models.UniqueConstraint(condition=models.Q(idempotency_key__isnull=False), fields=["idempotency_key"], name="credit_transaction_idempotency"),
                ],
                "indexes": [
                    models.Index(fields=["user", "created_at"], name="credit_tx_user_created_idx"),
                    models.Index(fields=["reference_id"], name="credit_tx_reference_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="SyncRun",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("run_type", models.CharField(choices=[("expiration_check", "Expiration check"), ("full_reconciliation", "Full reconciliation"), ("webhook_recovery", "Webhook recovery")], max_length=32)),
                ("status", models.CharField(choices=[("processing", "Processing"), ("completed", "Completed"), ("failed", "Failed")], default="processing", max_length=16)),
                ("records_processed", models.PositiveIntegerField(default=0)),
                ("records_fixed", models.PositiveIntegerField(default=0)),
                ("discrepancies_found", models.PositiveIntegerField(default=0)),
                ("error_message", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("started_at", models.DateTimeField(auto_now_add=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Sync run",
                "verbose_name_plural": "Sync runs",
                "db_table": "billing_sync_run",
                "ordering": ["-started_at"],
                "indexes": [
                    models.Index(fields=["run_type", "started_at"], name="sync_run_type_started_idx"),
                    models.Index(fields=["status"], name="sync_run_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("event_type", models.CharField(blank=True, max_length=255)),
                ("status", models.CharField(choices=[("processing", "Processing"), ("completed", "Completed"), ("failed", "Failed"), ("unrecoverable", "Unrecoverable")], default="processing", max_length=20)),
                ("payload", models.JSONField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True)),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("recoverable", models.BooleanField(default=True, help_text="False once the recovery sweep should stop retrying this event.")),
                ("last_retry_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "verbose_name": "Webhook event",
                "verbose_name_plural": "Webhook events",
                "db_table": "billing_webhook_event",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "recoverable", "created_at"], name="webhook_event_recovery_idx"),
                    models.Index(fields=["event_type"], name="webhook_event_type_idx"),
                ],
            },
        ),
    ]
