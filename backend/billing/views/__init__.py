"""Billing API views: cron triggers, operator listings and credit endpoints."""
from __future__ import annotations

from .credits import AdminCreditOverrideView
from .cron import CheckExpirationsCronView, RecoverWebhooksCronView, ReconcileCronView
from .profile import ProfileCreditView
from .sync_runs import AdminSyncRunViewSet
from .transactions import UserCreditTransactionViewSet
from .webhooks import AdminWebhookEventViewSet

__all__ = [
    "AdminCreditOverrideView",
    "AdminSyncRunViewSet",
    "AdminWebhookEventViewSet",
    "CheckExpirationsCronView",
    "ProfileCreditView",
    "RecoverWebhooksCronView",
    "ReconcileCronView",
    "UserCreditTransactionViewSet",
]
