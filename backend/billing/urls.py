"""URL routes for billing endpoints."""
from django.urls import path

from .views import (
    AdminCreditOverrideView,
    AdminSyncRunViewSet,
    AdminWebhookEventViewSet,
    CheckExpirationsCronView,
    ProfileCreditView,
    RecoverWebhooksCronView,
    ReconcileCronView,
    UserCreditTransactionViewSet,
)
from .views_webhook import StripeWebhookView

app_name = "billing"

urlpatterns = [
    path("webhook/stripe/", StripeWebhookView.as_view(), name="stripe-webhook"),
    # Drift-correction triggers for external schedulers
    path("cron/check-expirations/", CheckExpirationsCronView.as_view(), name="cron-check-expirations"),
    path("cron/reconcile/", ReconcileCronView.as_view(), name="cron-reconcile"),
    path("cron/recover-webhooks/", RecoverWebhooksCronView.as_view(), name="cron-recover-webhooks"),
    # User-level endpoints
    path("profile/credits/", ProfileCreditView.as_view(), name="profile-credits"),
    path(
        "transactions/",
        UserCreditTransactionViewSet.as_view({"get": "list"}),
        name="credit-transactions",
    ),
    # Operator endpoints
    path(
        "admin/sync-runs/",
        AdminSyncRunViewSet.as_view({"get": "list"}),
        name="admin-sync-runs",
    ),
    path(
        "admin/sync-runs/<uuid:pk>/",
        AdminSyncRunViewSet.as_view({"get": "retrieve"}),
        name="admin-sync-run-detail",
    ),
    path(
        "admin/webhook-events/",
        AdminWebhookEventViewSet.as_view({"get": "list"}),
        name="admin-webhook-events",
    ),
    path(
        "admin/users/<int:user_id>/credits/",
        AdminCreditOverrideView.as_view(),
        name="admin-credit-override",
    ),
]
