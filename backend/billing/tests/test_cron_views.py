import time
from datetime import timedelta

import pytest
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from billing.models import Subscription, SyncRun
from billing.services import drift_correction
from billing.tests.factories import CRON_SECRET, DAY, create_user, stripe_subscription

CHECK_EXPIRATIONS_URL = "/api/billing/cron/check-expirations/"
RECONCILE_URL = "/api/billing/cron/reconcile/"
RECOVER_WEBHOOKS_URL = "/api/billing/cron/recover-webhooks/"


def call_cron(url, *, secret=CRON_SECRET, method="post"):
    headers = {"HTTP_X_CRON_SECRET": secret} if secret is not None else {}
    return getattr(APIClient(), method)(url, **headers)


@pytest.mark.django_db
@pytest.mark.parametrize("url", [CHECK_EXPIRATIONS_URL, RECONCILE_URL, RECOVER_WEBHOOKS_URL])
@pytest.mark.parametrize("secret", [None, "", "cron-test-secreT"])
def test_cron_rejects_missing_or_wrong_secret(url, secret):
    response = call_cron(url, secret=secret)

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json() == {"error": "Unauthorized"}
    assert SyncRun.objects.count() == 0


@pytest.mark.django_db
def test_cron_rejects_everything_when_secret_is_not_configured(settings):
    settings.CRON_SECRET = ""

    response = call_cron(RECONCILE_URL, secret="")

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert SyncRun.objects.count() == 0


@pytest.mark.django_db
@pytest.mark.parametrize("method", ["get", "post"])
def test_check_expirations_reports_counts(gateway, method):
    user = create_user(customer_id="cus_123")
    now = int(time.time())
    Subscription.objects.create(
        id="sub_123",
        user=user,
        status=Subscription.Status.ACTIVE,
        price_id="price_pro",
        current_period_start=timezone.now() - timedelta(days=31),
        current_period_end=timezone.now() - timedelta(hours=2),
    )
    gateway.subscriptions["sub_123"] = stripe_subscription(status="canceled", canceled_at=now)

    response = call_cron(CHECK_EXPIRATIONS_URL, method=method)

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    run = SyncRun.objects.get()
    assert body == {"success": True, "processed": 1, "fixed": 1, "syncRunId": str(run.pk)}
    assert run.metadata["trigger"] == "http"
    assert Subscription.objects.get(pk="sub_123").status == Subscription.Status.CANCELED


@pytest.mark.django_db
def test_reconcile_includes_discrepancy_counts(gateway):
    user = create_user(customer_id="cus_123")
    now = int(time.time())
    gateway.subscriptions["sub_new"] = stripe_subscription("sub_new", period_start=now - DAY)

    response = call_cron(RECONCILE_URL)

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["success"] is True
    assert (body["processed"], body["fixed"]) == (1, 1)
    assert body["discrepancies_found"] == 1
    assert body["imported_subscriptions"] == 1
    assert Subscription.objects.get(pk="sub_new").user == user


@pytest.mark.django_db
def test_job_failure_returns_500_with_partial_counts(monkeypatch):
    def explode(**kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(drift_correction, "release_stalled_events", explode)

    response = call_cron(RECOVER_WEBHOOKS_URL)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    body = response.json()
    run = SyncRun.objects.get()
    assert body == {
        "success": False,
        "error": "database unavailable",
        "processed": 0,
        "fixed": 0,
        "syncRunId": str(run.pk),
    }
    assert run.status == SyncRun.Status.FAILED
