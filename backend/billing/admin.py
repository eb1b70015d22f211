from django.contrib import admin

from .models import CreditTransaction, Profile, Subscription, SyncRun, WebhookEvent


@admin.register(Profile)
class ProfileAdmin(admin.ModelAdmin):
    """Billing profiles; balances only move through the credit ledger."""

    list_display = (
        "user",
        "subscription_tier",
        "subscription_status",
        "subscription_credits_balance",
        "purchased_credits_balance",
        "role",
        "updated_at",
    )
    search_fields = ("user__username", "user__email", "stripe_customer_id")
    list_filter = ("subscription_status", "subscription_tier", "role")
    readonly_fields = (
        "subscription_credits_balance",
        "purchased_credits_balance",
        "created_at",
        "updated_at",
    )
    ordering = ("user__username",)
    list_select_related = ("user",)
    raw_id_fields = ("user",)


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "user",
        "status",
        "price_id",
        "current_period_end",
        "cancel_at_period_end",
        "scheduled_price_id",
        "updated_at",
    )
    search_fields = ("id", "user__username", "user__email", "price_id")
    list_filter = ("status", "cancel_at_period_end")
    readonly_fields = ("created_at", "updated_at")
    ordering = ("-created_at",)
    list_select_related = ("user",)
    raw_id_fields = ("user",)

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(CreditTransaction)
class CreditTransactionAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "user",
        "type",
        "pool",
        "amount",
        "subscription_balance_after",
        "purchased_balance_after",
        "created_at",
    )
    search_fields = (
        "id",
        "user__username",
        "user__email",
        "reference_id",
        "idempotency_key",
    )
    list_filter = ("type", "pool", "created_at")
    readonly_fields = (
        "id",
        "user",
        "amount",
        "type",
        "pool",
        "reference_id",
        "idempotency_key",
        "description",
        "subscription_balance_after",
        "purchased_balance_after",
        "metadata",
        "created_at",
    )
    ordering = ("-created_at",)
    list_select_related = ("user",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(SyncRun)
class SyncRunAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "run_type",
        "status",
        "records_processed",
        "records_fixed",
        "discrepancies_found",
        "started_at",
        "completed_at",
    )
    list_filter = ("run_type", "status", "started_at")
    readonly_fields = (
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
    ordering = ("-started_at",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    list_display = (
        "event_id",
        "event_type",
        "status",
        "retry_count",
        "recoverable",
        "created_at",
        "completed_at",
    )
    search_fields = ("event_id", "event_type")
    list_filter = ("status", "recoverable", "event_type")
    readonly_fields = (
        "event_id",
        "event_type",
        "status",
        "payload",
        "error_message",
        "retry_count",
        "recoverable",
        "last_retry_at",
        "completed_at",
        "created_at",
    )
    ordering = ("-created_at",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
