"""User billing profile views."""
from __future__ import annotations

from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.models import Profile
from billing.serializers import ProfileCreditSerializer
from billing.services.profiles import ensure_profile_for_user


class ProfileCreditView(APIView):
    """Return the authenticated user's balances, subscription state and recent ledger entries."""

    permission_classes = [IsAuthenticated]

    def get(self, request):
        ensure_profile_for_user(request.user)
        profile = Profile.objects.select_related("user").get(user=request.user)
        serializer = ProfileCreditSerializer(profile, context={"request": request})
        return Response(serializer.data)
