"""
Billing permission checks.

Two audiences reach billing endpoints besides Stripe itself:
1. Operators: staff users or profiles with the ``admin`` role.
2. Schedulers: external cron callers authenticated by a shared secret.
"""
import hmac
import logging

from django.conf import settings
from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.permissions import BasePermission

logger = logging.getLogger(__name__)

CRON_SECRET_HEADER = "x-cron-secret"


class CronUnauthorized(APIException):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "unauthorized"

    def __init__(self):
        super().__init__(detail={"error": "Unauthorized"})


class CronSecretPermission(BasePermission):
    """Allow the request only when ``x-cron-secret`` matches ``settings.CRON_SECRET``."""

    def has_permission(self, request, view):
        expected = getattr(settings, "CRON_SECRET", "") or ""
        if not expected:
            logger.error("CRON_SECRET is not configured; rejecting cron trigger.")
            return False

        provided = request.headers.get(CRON_SECRET_HEADER) or ""
        if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            logger.warning("Rejected cron trigger with an invalid secret from %s", request.META.get("REMOTE_ADDR"))
            return False
        return True


class IsBillingAdmin(BasePermission):
    """Staff users and billing profiles with the admin role."""

    message = "Billing administrator access required."

    def has_permission(self, request, view):
        user = request.user
        if not user or not user.is_authenticated:
            return False
        if user.is_staff:
            return True
        profile = getattr(user, "billing_profile", None)
        return bool(profile and profile.is_admin)
