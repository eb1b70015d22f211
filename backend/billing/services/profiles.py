"""Billing profile bootstrap for newly registered users."""
from __future__ import annotations

import logging

from django.conf import settings
from django.db import transaction

from billing.models import CreditTransaction, Profile

logger = logging.getLogger(__name__)


def ensure_profile_for_user(user) -> Profile:
    """Return the user's profile, creating it with free-tier defaults when missing."""

    with transaction.atomic():
        profile, created = Profile.objects.get_or_create(user=user)
        if not created:
            return profile

        bonus = int(getattr(settings, "BILLING_SIGNUP_BONUS_CREDITS", 0) or 0)
        if bonus > 0:
            from billing.services.credit_ledger import adjust_credits

            result = adjust_credits(
                user_id=user.pk,
                amount=bonus,
                type=CreditTransaction.TransactionType.BONUS,
                reason="Signup bonus",
                idempotency_key=f"signup:{user.pk}",
            )
            profile = result.profile

    logger.info("Created billing profile for user %s", user.pk)
    return profile
