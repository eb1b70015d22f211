"""DRF serializers for billing profiles, credit history and operator views."""
from __future__ import annotations

from django.utils.translation import gettext_lazy as _
from rest_framework import serializers

from billing.models import CreditTransaction, Profile, Subscription, SyncRun, WebhookEvent

CREDIT_OVERRIDE_MAX_BALANCE = 10_000_000


class CreditTransactionSerializer(serializers.ModelSerializer):
    class Meta:
        model = CreditTransaction
        fields = (
            "id",
            "amount",
            "type",
            "pool",
            "reference_id",
            "description",
            "subscription_balance_after",
            "purchased_balance_after",
            "created_at",
        )
        read_only_fields = fields


class SubscriptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Subscription
        fields = (
            "id",
            "status",
            "price_id",
            "current_period_start",
            "current_period_end",
            "trial_end",
            "cancel_at_period_end",
            "canceled_at",
            "scheduled_price_id",
            "scheduled_change_date",
        )
        read_only_fields = fields


class ProfileCreditSerializer(serializers.ModelSerializer):
    """Expose the caller's subscription state, both credit pools and recent ledger entries."""

    user = serializers.SerializerMethodField()
    total_credits = serializers.IntegerField(read_only=True)
    subscription = serializers.SerializerMethodField()
    recent_transactions = serializers.SerializerMethodField()

    RECENT_TRANSACTION_LIMIT = 20

    class Meta:
        model = Profile
        fields = (
            "user",
            "subscription_status",
            "subscription_tier",
            "subscription_credits_balance",
            "purchased_credits_balance",
            "total_credits",
            "subscription",
            "recent_transactions",
            "updated_at",
        )
        read_only_fields = fields

    def get_user(self, obj: Profile) -> dict[str, object]:
        user = obj.user
        return {
            "id": str(user.id),
            "username": getattr(user, "username", None),
            "email": getattr(user, "email", None),
        }

    def get_subscription(self, obj: Profile):
        subscription = (
            Subscription.objects.filter(user_id=obj.user_id)
            .exclude(status__in=Subscription.TERMINAL_STATUSES)
            .order_by("-current_period_end")
            .first()
        )
        if subscription is None:
            return None
        return SubscriptionSerializer(subscription, context=self.context).data

    def get_recent_transactions(self, obj: Profile):
        transactions = CreditTransaction.objects.filter(user_id=obj.user_id).order_by("-created_at")[
            : self.RECENT_TRANSACTION_LIMIT
        ]
        return CreditTransactionSerializer(transactions, many=True, context=self.context).data


class SyncRunSerializer(serializers.ModelSerializer):
    class Meta:
        model = SyncRun
        fields = (
            "id",
            "run_type",
            "status",
            "records_processed",
            "records_fixed",
            "discrepancies_found",
            "error_message",
            "metadata",
            "started_at",
            "completed_at",
        )
        read_only_fields = fields


class WebhookEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = WebhookEvent
        fields = (
            "id",
            "event_id",
            "event_type",
            "status",
            "error_message",
            "retry_count",
            "recoverable",
            "last_retry_at",
            "completed_at",
            "created_at",
        )
        read_only_fields = fields


class CreditOverrideSerializer(serializers.Serializer):
    """Validate an operator request to set one credit pool to an absolute balance."""

    pool = serializers.ChoiceField(choices=CreditTransaction.Pool.choices)
    balance = serializers.IntegerField(min_value=0, max_value=CREDIT_OVERRIDE_MAX_BALANCE)
    reason = serializers.CharField(max_length=500)

    def validate_reason(self, value: str) -> str:
        value = value.strip()
        if not value:
            raise serializers.ValidationError(_("A reason is required for credit overrides."))
        return value
