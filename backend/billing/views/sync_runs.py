"""Operator listing of drift-correction sync runs."""
from __future__ import annotations

from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.filters import SyncRunFilter
from billing.models import SyncRun
from billing.pagination import BoundedPageNumberPagination
from billing.permissions import IsBillingAdmin
from billing.serializers import SyncRunSerializer


class AdminSyncRunViewSet(ReadOnlyModelViewSet):
    serializer_class = SyncRunSerializer
    permission_classes = [IsBillingAdmin]
    pagination_class = BoundedPageNumberPagination
    filterset_class = SyncRunFilter
    ordering_fields = ("started_at", "completed_at", "records_fixed")
    ordering = ("-started_at",)
    queryset = SyncRun.objects.order_by("-started_at")
