import json

import pytest
import stripe

from billing.services.plan_catalog import CatalogConfigurationError, PlanCatalog
from billing.services.stripe_gateway import (
    StripeConfigurationError,
    StripeGateway,
    StripeResourceNotFound,
    StripeServiceError,
    StripeWebhookSignatureError,
    is_stripe_not_found_error,
)
from billing.tests.factories import WEBHOOK_SECRET, sign_payload


@pytest.mark.parametrize(
    "error, expected",
    [
        (None, False),
        ("No such subscription", False),
        (404, False),
        ({"type": "StripeInvalidRequestError", "statusCode": 404}, True),
        ({"type": "StripeInvalidRequestError", "message": "No such subscription: 'sub_1'"}, True),
        ({"type": "StripeInvalidRequestError", "statusCode": 400, "message": "Invalid price"}, False),
        ({"type": "StripeCardError", "statusCode": 404}, False),
        (stripe.InvalidRequestError("No such subscription: 'sub_1'", "id", http_status=404), True),
        (stripe.InvalidRequestError("Invalid integer", "limit", http_status=400), False),
        (stripe.APIConnectionError("Network unreachable"), False),
        (StripeResourceNotFound("gone"), True),
        (StripeServiceError("No such luck"), False),
    ],
)
def test_is_stripe_not_found_error(error, expected):
    assert is_stripe_not_found_error(error) is expected


def test_construct_event_verifies_signature():
    gateway = StripeGateway(webhook_secret=WEBHOOK_SECRET)
    body = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}})

    event = gateway.construct_event(body.encode("utf-8"), sign_payload(body))

    assert event["id"] == "evt_1"


@pytest.mark.parametrize("header", [None, "", "t=1,v1=deadbeef"])
def test_construct_event_rejects_bad_signatures(header):
    gateway = StripeGateway(webhook_secret=WEBHOOK_SECRET)

    with pytest.raises(StripeWebhookSignatureError):
        gateway.construct_event("{}", header)


def test_construct_event_requires_webhook_secret():
    with pytest.raises(StripeConfigurationError):
        StripeGateway().construct_event("{}", sign_payload("{}"))


def test_construct_event_rejects_non_object_body():
    gateway = StripeGateway(webhook_secret=WEBHOOK_SECRET)

    with pytest.raises(StripeServiceError):
        gateway.construct_event("[1, 2]", sign_payload("[1, 2]"))


def test_retrieve_subscription_translates_missing_objects(monkeypatch):
    def fake_retrieve(subscription_id, **options):
        assert options["api_key"] == "sk_test_123"
        raise stripe.InvalidRequestError(f"No such subscription: '{subscription_id}'", "id", http_status=404)

    monkeypatch.setattr(stripe.Subscription, "retrieve", fake_retrieve)
    gateway = StripeGateway(api_key="sk_test_123")

    with pytest.raises(StripeResourceNotFound):
        gateway.retrieve_subscription("sub_missing")


def test_retrieve_subscription_requires_api_key():
    with pytest.raises(StripeConfigurationError):
        StripeGateway().retrieve_subscription("sub_1")


def test_plan_catalog_parses_settings_mapping():
    catalog = PlanCatalog.from_mapping({
        "price_a": {"key": "starter", "credits_per_cycle": 200},
        "price_b": {"key": "team", "name": "Team", "credits_per_cycle": "1000", "max_rollover": 3000,
                    "trial_credits": 50},
    })

    starter = catalog.get("price_a")
    assert (starter.name, starter.credits_per_cycle, starter.max_rollover) == ("Starter", 200, 1200)
    assert catalog.get("price_b").trial_credits == 50
    assert catalog.get(None) is None
    assert catalog.get("price_unknown") is None
    assert sorted(catalog.price_ids()) == ["price_a", "price_b"]


@pytest.mark.parametrize(
    "config",
    [
        ["price_a"],
        {"price_a": "starter"},
        {"price_a": {"key": "starter"}},
        {"price_a": {"credits_per_cycle": 0}},
        {"price_a": {"credits_per_cycle": "lots"}},
        {"price_a": {"credits_per_cycle": 200, "max_rollover": "plenty"}},
        {"price_a": {"credits_per_cycle": 200, "max_rollover": -1}},
    ],
)
def test_plan_catalog_rejects_malformed_config(config):
    with pytest.raises(CatalogConfigurationError):
        PlanCatalog.from_mapping(config)


def test_plan_catalog_keeps_explicit_zero_rollover_cap():
    catalog = PlanCatalog.from_mapping({
        "price_a": {"key": "starter", "credits_per_cycle": 200, "max_rollover": 0},
        "price_b": {"key": "team", "credits_per_cycle": 1000, "max_rollover": None},
    })

    assert catalog.get("price_a").max_rollover == 0
    assert catalog.get("price_b").max_rollover == 6000
