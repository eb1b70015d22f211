"""Billing models for subscription state, credit accounting, webhook events and sync runs."""
import uuid

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q

User = get_user_model()


def _default_tier_name() -> str:
    """Resolve the free tier label from settings."""
    return getattr(settings, "FREE_TIER_NAME", "Free")


class Profile(models.Model):
    """Per-user billing profile holding subscription status and credit balances."""

    class SubscriptionStatus(models.TextChoices):
        ACTIVE = "active", "Active"
        TRIALING = "trialing", "Trialing"
        PAST_DUE = "past_due", "Past due"
        CANCELED = "canceled", "Canceled"
        UNPAID = "unpaid", "Unpaid"
        NONE = "none", "None"

    class Role(models.TextChoices):
        USER = "user", "User"
        ADMIN = "admin", "Admin"

    user = models.OneToOneField(
        User,
        on_delete=models.CASCADE,
        related_name="billing_profile",
        help_text="User owning this billing profile.",
    )
    stripe_customer_id = models.CharField(
        max_length=255,
        unique=True,
        blank=True,
        null=True,
        help_text="Stripe customer identifier tied to this user.",
    )
    subscription_status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.NONE,
        help_text="Status mirrored from the user's current Stripe subscription.",
    )
    subscription_tier = models.CharField(
        max_length=64,
        default=_default_tier_name,
        help_text="Display name of the plan the user is subscribed to.",
    )
    subscription_credits_balance = models.IntegerField(
        default=0,
        help_text="Credits granted by the subscription; expire at the end of each cycle.",
    )
    purchased_credits_balance = models.IntegerField(
        default=0,
        help_text="Credits bought as one-off packs; never expire.",
    )
    role = models.CharField(
        max_length=16,
        choices=Role.choices,
        default=Role.USER,
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_profile"
        verbose_name = "Billing profile"
        verbose_name_plural = "Billing profiles"
        ordering = ["user__id"]
        constraints = [
            models.CheckConstraint(
                condition=Q(subscription_credits_balance__gte=0),
                name="profile_subscription_credits_non_negative",
            ),
            models.CheckConstraint(
                condition=Q(purchased_credits_balance__gte=0),
                name="profile_purchased_credits_non_negative",
            ),
        ]

    def __str__(self):
        return f"Profile<{self.user_id}:{self.subscription_tier}>"

    @property
    def total_credits(self) -> int:
        return self.subscription_credits_balance + self.purchased_credits_balance

    @property
    def is_admin(self) -> bool:
        return self.role == self.Role.ADMIN


class Subscription(models.Model):
    """One row per Stripe subscription; canceled rows are kept as history."""

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        TRIALING = "trialing", "Trialing"
        PAST_DUE = "past_due", "Past due"
        CANCELED = "canceled", "Canceled"
        UNPAID = "unpaid", "Unpaid"
        INCOMPLETE = "incomplete", "Incomplete"
        INCOMPLETE_EXPIRED = "incomplete_expired", "Incomplete expired"
        PAUSED = "paused", "Paused"

    TERMINAL_STATUSES = (Status.CANCELED, Status.INCOMPLETE_EXPIRED)

    id = models.CharField(
        primary_key=True,
        max_length=255,
        help_text="Stripe subscription identifier.",
    )
    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="subscriptions",
    )
    status = models.CharField(max_length=32, choices=Status.choices)
    price_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Stripe price id of the subscribed plan.",
    )
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    trial_end = models.DateTimeField(null=True, blank=True)
    cancel_at_period_end = models.BooleanField(default=False)
    canceled_at = models.DateTimeField(null=True, blank=True)
    scheduled_price_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Target price of a scheduled downgrade, if any.",
    )
    scheduled_change_date = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the scheduled price change takes effect.",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_subscription"
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "current_period_end"], name="subscription_status_end_idx"),
            models.Index(fields=["user", "status"], name="subscription_user_status_idx"),
        ]

    def delete(self, *args, **kwargs):
        raise ValidationError("Subscriptions are kept as history and cannot be deleted.")

    def __str__(self):
        return f"Subscription<{self.id}:{self.status}>"


class CreditTransaction(models.Model):
    """Append-only credit movement log for billing profiles."""

    class TransactionType(models.TextChoices):
        PURCHASE = "purchase", "Purchase"
        SUBSCRIPTION = "subscription", "Subscription grant"
        USAGE = "usage", "Usage"
        REFUND = "refund", "Refund"
        BONUS = "bonus", "Bonus"
        EXPIRED = "expired", "Expired"
        ADMIN_ADJUSTMENT = "admin_adjustment", "Admin adjustment"

    class Pool(models.TextChoices):
        SUBSCRIPTION = "subscription", "Subscription credits"
        PURCHASED = "purchased", "Purchased credits"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="credit_transactions",
    )
    amount = models.IntegerField(
        help_text="Signed amount; positive grants credits, negative consumes them.",
    )
    type = models.CharField(
        max_length=32,
        choices=TransactionType.choices,
        help_text="Categorisation of the credit movement.",
    )
    pool = models.CharField(
        max_length=16,
        choices=Pool.choices,
        help_text="Balance the movement was applied to.",
    )
    reference_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Stripe object or event id tied to this transaction, if applicable.",
    )
    idempotency_key = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Deterministic key ensuring idempotent writes.",
    )
    description = models.TextField(blank=True)
    subscription_balance_after = models.IntegerField(default=0)
    purchased_balance_after = models.IntegerField(default=0)
    metadata = models.JSONField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_credit_transaction"
        verbose_name = "Credit transaction"
        verbose_name_plural = "Credit transactions"
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=~Q(amount=0),
                name="credit_transaction_non_zero_amount",
            ),
            models.UniqueConstraint(
                fields=["idempotency_key"],
                condition=Q(idempotency_key__isnull=False),
                name="credit_transaction_idempotency",
            ),
        ]
        indexes = [
            models.Index(fields=["user", "created_at"], name="credit_tx_user_created_idx"),
            models.Index(fields=["reference_id"], name="credit_tx_reference_idx"),
        ]

    def clean(self):
        super().clean()
        if self.amount == 0:
            raise ValidationError("Amount must be non-zero.")

    def save(self, *args, **kwargs):
        if self.pk and CreditTransaction.objects.filter(pk=self.pk).exists():
            raise ValidationError("CreditTransaction records are immutable.")
        self.full_clean()
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("CreditTransaction records are immutable.")

    def __str__(self):
        return f"CreditTransaction<{self.type}:{self.amount} for {self.user_id}>"


class SyncRun(models.Model):
    """Audit record of one drift-correction job execution."""

    class RunType(models.TextChoices):
        EXPIRATION_CHECK = "expiration_check", "Expiration check"
        FULL_RECONCILIATION = "full_reconciliation", "Full reconciliation"
        WEBHOOK_RECOVERY = "webhook_recovery", "Webhook recovery"

    class Status(models.TextChoices):
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    run_type = models.CharField(max_length=32, choices=RunType.choices)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.PROCESSING,
    )
    records_processed = models.PositiveIntegerField(default=0)
    records_fixed = models.PositiveIntegerField(default=0)
    discrepancies_found = models.PositiveIntegerField(default=0)
    error_message = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    started_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "billing_sync_run"
        verbose_name = "Sync run"
        verbose_name_plural = "Sync runs"
        ordering = ["-started_at"]
        indexes = [
            models.Index(fields=["run_type", "started_at"], name="sync_run_type_started_idx"),
            models.Index(fields=["status"], name="sync_run_status_idx"),
        ]

    def __str__(self):
        return f"SyncRun<{self.run_type}:{self.status}>"


class WebhookEvent(models.Model):
    """Idempotency record for inbound Stripe events, keyed by event id."""

    class Status(models.TextChoices):
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        UNRECOVERABLE = "unrecoverable", "Unrecoverable"

    id = models.BigAutoField(primary_key=True)
    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=255, blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PROCESSING,
    )
    payload = models.JSONField(null=True, blank=True)
    error_message = models.TextField(blank=True)
    retry_count = models.PositiveIntegerField(default=0)
    recoverable = models.BooleanField(
        default=True,
        help_text="False once the recovery sweep should stop retrying this event.",
    )
    last_retry_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_webhook_event"
        verbose_name = "Webhook event"
        verbose_name_plural = "Webhook events"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "recoverable", "created_at"], name="webhook_event_recovery_idx"),
            models.Index(fields=["event_type"], name="webhook_event_type_idx"),
        ]

    def __str__(self):
        return f"WebhookEvent<{self.event_id}:{self.status}>"
