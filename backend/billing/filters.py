"""FilterSet definitions for billing endpoints."""
from __future__ import annotations

import django_filters

from billing.models import CreditTransaction, SyncRun, WebhookEvent


class SyncRunFilter(django_filters.FilterSet):
    run_type = django_filters.CharFilter(field_name="run_type", lookup_expr="iexact")
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")
    started_after = django_filters.DateTimeFilter(field_name="started_at", lookup_expr="gte")
    started_before = django_filters.DateTimeFilter(field_name="started_at", lookup_expr="lte")

    class Meta:
        model = SyncRun
        fields = ["run_type", "status"]


class WebhookEventFilter(django_filters.FilterSet):
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")
    event_type = django_filters.CharFilter(field_name="event_type", lookup_expr="iexact")
    recoverable = django_filters.BooleanFilter(field_name="recoverable")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = WebhookEvent
        fields = ["status", "event_type", "recoverable"]


class CreditTransactionFilter(django_filters.FilterSet):
    type = django_filters.CharFilter(field_name="type", lookup_expr="iexact")
    pool = django_filters.CharFilter(field_name="pool", lookup_expr="iexact")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = CreditTransaction
        fields = ["type", "pool"]
