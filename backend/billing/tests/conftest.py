import pytest
from django.apps import apps

from billing.tests.factories import CRON_SECRET, FakeStripeGateway


@pytest.fixture(autouse=True)
def billing_settings(settings):
    settings.CRON_SECRET = CRON_SECRET
    settings.BILLING_RECONCILE_THROTTLE_SECONDS = 0
    settings.BILLING_SIGNUP_BONUS_CREDITS = 0
    settings.BILLING_ROLLOVER_OVERFLOW_POLICY = "record"
    settings.BILLING_EXPIRE_CREDITS_ON_CANCEL = True
    return settings


@pytest.fixture(autouse=True)
def gateway(monkeypatch):
    fake = FakeStripeGateway()
    monkeypatch.setattr(apps.get_app_config("billing"), "gateway", fake)
    return fake
