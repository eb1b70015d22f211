"""Builders for users, Stripe payloads and signed webhook requests used across billing tests."""
import copy
import hashlib
import hmac
import json
import time

from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from billing.models import Profile
from billing.services.plan_catalog import PlanCatalog
from billing.services.stripe_gateway import StripeGateway, StripeResourceNotFound

User = get_user_model()

WEBHOOK_SECRET = "whsec_test_secret"
CRON_SECRET = "cron-test-secret"
DAY = 24 * 60 * 60


class FakeStripeGateway(StripeGateway):
    """StripeGateway with in-memory Stripe objects; signature checks stay real."""

    def __init__(self):
        super().__init__(
            api_key="sk_test_fake",
            webhook_secret=WEBHOOK_SECRET,
            plans=PlanCatalog.from_settings(),
        )
        self.subscriptions = {}
        self.events = {}
        self.errors = {}
        self.active_prices = set(self.plans.price_ids())
        self.calls = []

    def _lookup(self, store, object_id, label):
        self.calls.append((label, object_id))
        if object_id in self.errors:
            raise self.errors[object_id]
        if object_id not in store:
            raise StripeResourceNotFound(f"No such {label}: '{object_id}'")
        return copy.deepcopy(store[object_id])

    def retrieve_subscription(self, subscription_id):
        return self._lookup(self.subscriptions, subscription_id, "subscription")

    def retrieve_event(self, event_id):
        return self._lookup(self.events, event_id, "event")

    def list_subscriptions(self, *, status="active", page_size=100):
        for subscription in list(self.subscriptions.values()):
            if subscription.get("status") == status:
                yield copy.deepcopy(subscription)

    def list_active_price_ids(self):
        return sorted(self.active_prices)


def create_user(username="alice", *, customer_id=None, role=Profile.Role.USER, **extra):
    user = User.objects.create_user(
        username=username,
        password="pass1234",
        email=f"{username}@example.com",
        **extra,
    )
    if customer_id or role != Profile.Role.USER:
        Profile.objects.filter(user=user).update(stripe_customer_id=customer_id, role=role)
        # The queryset update bypasses the instance cached by the post_save signal.
        user = User.objects.get(pk=user.pk)
    return user


def auth_client(user=None):
    if user is None:
        user = create_user()
    client = APIClient()
    client.force_authenticate(user=user)
    return client, user


def stripe_subscription(
    subscription_id="sub_123",
    *,
    customer="cus_123",
    price="price_pro",
    status="active",
    period_start=None,
    period_end=None,
    **extra,
):
    period_start = period_start if period_start is not None else int(time.time()) - DAY
    period_end = period_end if period_end is not None else period_start + 30 * DAY
    payload = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": False,
        "canceled_at": None,
        "trial_end": None,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "items": {
            "object": "list",
            "data": [
                {
                    "id": f"si_{subscription_id}",
                    "price": {"id": price, "object": "price"},
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                }
            ],
        },
    }
    payload.update(extra)
    return payload


def stripe_event(event_id, event_type, obj):
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def sign_payload(payload: str, *, secret=WEBHOOK_SECRET, timestamp=None):
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def post_webhook(client, event, *, signature=None, raw=None):
    body = raw if raw is not None else json.dumps(event)
    if signature is None:
        signature = sign_payload(body)
    return client.post(
        "/api/billing/webhook/stripe/",
        data=body,
        content_type="application/json",
        HTTP_STRIPE_SIGNATURE=signature,
    )
