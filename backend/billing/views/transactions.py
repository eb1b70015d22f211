"""API endpoints exposing credit ledger history."""
from __future__ import annotations

from rest_framework.permissions import IsAuthenticated
from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.filters import CreditTransactionFilter
from billing.models import CreditTransaction
from billing.pagination import BoundedPageNumberPagination
from billing.serializers import CreditTransactionSerializer


class UserCreditTransactionViewSet(ReadOnlyModelViewSet):
    serializer_class = CreditTransactionSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = BoundedPageNumberPagination
    filterset_class = CreditTransactionFilter
    ordering_fields = ("created_at", "amount", "type")
    ordering = ("-created_at",)

    def get_queryset(self):
        return CreditTransaction.objects.filter(user=self.request.user).order_by("-created_at")
