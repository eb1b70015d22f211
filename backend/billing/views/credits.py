"""Operator credit override endpoint."""
from __future__ import annotations

import logging

from django.contrib.auth import get_user_model
from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.models import Profile
from billing.observability.logging import log_billing_event
from billing.permissions import IsBillingAdmin
from billing.serializers import CreditTransactionSerializer, CreditOverrideSerializer
from billing.services.credit_ledger import CreditLedgerError, set_credit_balance
from billing.services.profiles import ensure_profile_for_user

logger = logging.getLogger(__name__)
User = get_user_model()


class AdminCreditOverrideView(APIView):
    """Set one of a user's credit pools to an absolute balance."""

    permission_classes = [IsBillingAdmin]

    def post(self, request, user_id):
        target_user = get_object_or_404(User, pk=user_id)
        serializer = CreditOverrideSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        ensure_profile_for_user(target_user)
        try:
            result = set_credit_balance(
                user_id=target_user.pk,
                pool=data["pool"],
                target=data["balance"],
                reason=data["reason"],
                actor_id=request.user.pk,
            )
        except CreditLedgerError as exc:
            logger.warning("Credit override for user %s rejected: %s", target_user.pk, exc)
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        log_billing_event(
            message="Credit balance overridden",
            user_id=target_user.pk,
            actor=str(request.user.pk),
            extra={"pool": data["pool"], "delta": result.delta, "balance": data["balance"]},
        )

        profile = Profile.objects.get(user=target_user)
        return Response(
            {
                "user_id": str(target_user.pk),
                "pool": data["pool"],
                "delta": result.delta,
                "subscription_credits_balance": profile.subscription_credits_balance,
                "purchased_credits_balance": profile.purchased_credits_balance,
                "transaction": CreditTransactionSerializer(result.transaction).data if result.transaction else None,
            },
            status=status.HTTP_200_OK,
        )
