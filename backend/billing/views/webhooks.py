"""Operator listing of recorded Stripe webhook events."""
from __future__ import annotations

from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.filters import WebhookEventFilter
from billing.models import WebhookEvent
from billing.pagination import BoundedPageNumberPagination
from billing.permissions import IsBillingAdmin
from billing.serializers import WebhookEventSerializer


class AdminWebhookEventViewSet(ReadOnlyModelViewSet):
    serializer_class = WebhookEventSerializer
    permission_classes = [IsBillingAdmin]
    pagination_class = BoundedPageNumberPagination
    filterset_class = WebhookEventFilter
    ordering_fields = ("created_at", "status", "retry_count")
    ordering = ("-created_at",)
    queryset = WebhookEvent.objects.order_by("-created_at")
