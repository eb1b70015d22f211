import json
import time

import pytest
from rest_framework import status
from rest_framework.test import APIClient

from billing.models import CreditTransaction, Profile, Subscription, WebhookEvent
from billing.services.stripe_gateway import StripeServiceError
from billing.services.subscription_sync import sync_subscription_from_stripe
from billing.tests.factories import (
    DAY,
    create_user,
    post_webhook,
    sign_payload,
    stripe_event,
    stripe_subscription,
)


def profile_of(user):
    return Profile.objects.get(user=user)


def without_period(payload):
    payload["current_period_start"] = None
    payload["current_period_end"] = None
    for item in payload["items"]["data"]:
        item.pop("current_period_start", None)
        item.pop("current_period_end", None)
    return payload


def cycle_grants(user):
    return CreditTransaction.objects.filter(user=user, type=CreditTransaction.TransactionType.SUBSCRIPTION)


@pytest.mark.django_db
def test_subscription_created_sets_tier_and_grants_cycle_credits():
    user = create_user(customer_id="cus_123")
    event = stripe_event("evt_new_1", "customer.subscription.created", stripe_subscription())

    response = post_webhook(APIClient(), event)

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"received": True}
    profile = profile_of(user)
    assert profile.subscription_tier == "Pro"
    assert profile.subscription_status == Profile.SubscriptionStatus.ACTIVE
    assert profile.subscription_credits_balance == 1000
    grants = CreditTransaction.objects.filter(user=user, type=CreditTransaction.TransactionType.SUBSCRIPTION)
    assert [tx.amount for tx in grants] == [1000]
    subscription = Subscription.objects.get(pk="sub_123")
    assert subscription.user == user
    assert subscription.price_id == "price_pro"
    assert WebhookEvent.objects.get(event_id="evt_new_1").status == WebhookEvent.Status.COMPLETED


@pytest.mark.django_db
def test_duplicate_delivery_is_skipped_without_side_effects():
    user = create_user(customer_id="cus_123")
    event = stripe_event("evt_dup_1", "customer.subscription.created", stripe_subscription())
    client = APIClient()

    first = post_webhook(client, event)
    snapshot = (profile_of(user).subscription_credits_balance, CreditTransaction.objects.count())
    second = post_webhook(client, event)

    assert first.status_code == status.HTTP_200_OK
    assert second.status_code == status.HTTP_200_OK
    assert second.json() == {"received": True, "skipped": True, "reason": "completed"}
    assert (profile_of(user).subscription_credits_balance, CreditTransaction.objects.count()) == snapshot
    assert WebhookEvent.objects.filter(event_id="evt_dup_1").count() == 1


@pytest.mark.django_db
def test_bad_signature_is_rejected_before_anything_is_recorded():
    create_user(customer_id="cus_123")
    event = stripe_event("evt_forged", "customer.subscription.created", stripe_subscription())
    body = json.dumps(event)

    response = post_webhook(APIClient(), event, raw=body, signature=sign_payload(body, secret="whsec_wrong"))

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "error" in response.json()
    assert WebhookEvent.objects.count() == 0
    assert Subscription.objects.count() == 0


@pytest.mark.django_db
def test_missing_signature_header_is_rejected():
    body = json.dumps(stripe_event("evt_unsigned", "invoice.paid", {"id": "in_1"}))
    response = APIClient().post("/api/billing/webhook/stripe/", data=body, content_type="application/json")

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert WebhookEvent.objects.count() == 0


@pytest.mark.django_db
def test_expired_signature_timestamp_is_rejected():
    body = json.dumps(stripe_event("evt_old", "invoice.paid", {"id": "in_1"}))
    signature = sign_payload(body, timestamp=int(time.time()) - 3600)

    response = post_webhook(APIClient(), None, raw=body, signature=signature)

    assert response.status_code == status.HTTP_400_BAD_REQUEST


@pytest.mark.django_db
@pytest.mark.parametrize("envelope", [{"type": "invoice.paid"}, {"id": "evt_no_type"}, {"id": 42, "type": "x"}])
def test_envelope_without_id_or_type_is_rejected(envelope):
    response = post_webhook(APIClient(), envelope)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert WebhookEvent.objects.count() == 0


@pytest.mark.django_db
def test_malformed_event_data_is_not_left_processing():
    event = {"id": "evt_bad_1", "object": "event", "type": "customer.subscription.updated", "data": None}

    response = post_webhook(APIClient(), event)

    assert response.status_code in {200, 400, 422, 500}
    record = WebhookEvent.objects.get(event_id="evt_bad_1")
    assert record.status != WebhookEvent.Status.PROCESSING
    assert record.status == WebhookEvent.Status.UNRECOVERABLE
    assert record.recoverable is False


@pytest.mark.django_db
def test_unknown_event_type_is_acknowledged_and_ignored():
    response = post_webhook(APIClient(), stripe_event("evt_misc", "product.created", {"id": "prod_1"}))

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"received": True, "ignored": True}
    assert WebhookEvent.objects.get(event_id="evt_misc").status == WebhookEvent.Status.COMPLETED


@pytest.mark.django_db
def test_unknown_price_marks_event_failed_for_recovery():
    create_user(customer_id="cus_123")
    event = stripe_event("evt_price", "customer.subscription.created", stripe_subscription(price="price_retired"))

    response = post_webhook(APIClient(), event)

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"received": True, "error": "processing_failed"}
    record = WebhookEvent.objects.get(event_id="evt_price")
    assert record.status == WebhookEvent.Status.FAILED
    assert record.recoverable is True
    assert "price_retired" in record.error_message
    assert Subscription.objects.count() == 0


@pytest.mark.django_db
def test_subscription_deleted_downgrades_profile_and_expires_credits():
    user = create_user(customer_id="cus_123")
    client = APIClient()
    post_webhook(client, stripe_event("evt_c", "customer.subscription.created", stripe_subscription()))
    canceled = stripe_subscription(status="canceled", canceled_at=int(time.time()))

    response = post_webhook(client, stripe_event("evt_d", "customer.subscription.deleted", canceled))

    assert response.status_code == status.HTTP_200_OK
    profile = profile_of(user)
    assert profile.subscription_status == Profile.SubscriptionStatus.CANCELED
    assert profile.subscription_tier == "Free"
    assert profile.subscription_credits_balance == 0
    assert Subscription.objects.get(pk="sub_123").status == Subscription.Status.CANCELED


@pytest.mark.django_db
def test_out_of_order_update_does_not_reactivate_canceled_subscription():
    user = create_user(customer_id="cus_123")
    client = APIClient()
    post_webhook(client, stripe_event("evt_1", "customer.subscription.created", stripe_subscription()))
    post_webhook(client, stripe_event("evt_2", "customer.subscription.deleted", stripe_subscription(status="canceled")))

    late_update = stripe_event("evt_0", "customer.subscription.updated", stripe_subscription())
    response = post_webhook(client, late_update)

    assert response.status_code == status.HTTP_200_OK
    assert Subscription.objects.get(pk="sub_123").status == Subscription.Status.CANCELED
    assert profile_of(user).subscription_status == Profile.SubscriptionStatus.CANCELED


@pytest.mark.django_db
def test_invoice_paid_refetches_subscription_and_grants_next_cycle(gateway):
    user = create_user(customer_id="cus_123")
    start = int(time.time()) - 31 * DAY
    client = APIClient()
    post_webhook(client, stripe_event(
        "evt_c", "customer.subscription.created",
        stripe_subscription(period_start=start, period_end=start + 30 * DAY),
    ))
    renewed = stripe_subscription(period_start=start + 30 * DAY, period_end=start + 60 * DAY)
    gateway.subscriptions["sub_123"] = renewed
    invoice = {"id": "in_2", "object": "invoice", "customer": "cus_123", "subscription": "sub_123"}

    response = post_webhook(client, stripe_event("evt_inv", "invoice.paid", invoice))

    assert response.status_code == status.HTTP_200_OK
    assert ("subscription", "sub_123") in gateway.calls
    assert profile_of(user).subscription_credits_balance == 2000
    subscription = Subscription.objects.get(pk="sub_123")
    assert int(subscription.current_period_end.timestamp()) == start + 60 * DAY


@pytest.mark.django_db
def test_invoice_paid_for_vanished_subscription_cancels_locally():
    user = create_user(customer_id="cus_123")
    client = APIClient()
    post_webhook(client, stripe_event("evt_c", "customer.subscription.created", stripe_subscription()))
    invoice = {"id": "in_3", "customer": "cus_123", "subscription": "sub_123"}

    post_webhook(client, stripe_event("evt_inv", "invoice.payment_succeeded", invoice))

    assert Subscription.objects.get(pk="sub_123").status == Subscription.Status.CANCELED
    assert profile_of(user).subscription_tier == "Free"


@pytest.mark.django_db
def test_invoice_payment_failed_marks_past_due():
    user = create_user(customer_id="cus_123")
    client = APIClient()
    post_webhook(client, stripe_event("evt_c", "customer.subscription.created", stripe_subscription()))
    invoice = {"id": "in_4", "customer": "cus_123", "subscription": "sub_123", "attempt_count": 1}

    post_webhook(client, stripe_event("evt_fail", "invoice.payment_failed", invoice))

    assert Subscription.objects.get(pk="sub_123").status == Subscription.Status.PAST_DUE
    assert profile_of(user).subscription_status == Profile.SubscriptionStatus.PAST_DUE


@pytest.mark.django_db
def test_credit_pack_purchase_and_partial_refund():
    user = create_user()
    client = APIClient()
    session = {
        "id": "cs_1",
        "object": "checkout.session",
        "mode": "payment",
        "payment_status": "paid",
        "client_reference_id": str(user.pk),
        "customer": "cus_pack",
        "payment_intent": "pi_1",
        "metadata": {"credits": "500", "pack": "large"},
    }

    post_webhook(client, stripe_event("evt_checkout", "checkout.session.completed", session))

    profile = profile_of(user)
    assert profile.purchased_credits_balance == 500
    assert profile.stripe_customer_id == "cus_pack"

    charge = {"id": "ch_1", "payment_intent": "pi_1", "amount": 2000, "amount_refunded": 1000}
    post_webhook(client, stripe_event("evt_refund_1", "charge.refunded", charge))
    assert profile_of(user).purchased_credits_balance == 250

    charge["amount_refunded"] = 2000
    post_webhook(client, stripe_event("evt_refund_2", "charge.refunded", charge))
    assert profile_of(user).purchased_credits_balance == 0
    refunds = CreditTransaction.objects.filter(user=user, type=CreditTransaction.TransactionType.REFUND)
    assert sorted(tx.amount for tx in refunds) == [-250, -250]


@pytest.mark.django_db
def test_trialing_subscription_grants_trial_credits_once():
    user = create_user(customer_id="cus_123")
    client = APIClient()
    trial = stripe_subscription(status="trialing", trial_end=int(time.time()) + 7 * DAY)

    post_webhook(client, stripe_event("evt_t1", "customer.subscription.created", trial))
    post_webhook(client, stripe_event("evt_t2", "customer.subscription.updated", trial))

    profile = profile_of(user)
    assert profile.subscription_status == Profile.SubscriptionStatus.TRIALING
    assert profile.subscription_tier == "Pro"
    assert profile.subscription_credits_balance == 100


@pytest.mark.django_db
def test_snapshot_without_period_keeps_stored_period_and_grants_once(gateway):
    user = create_user(customer_id="cus_123")
    post_webhook(APIClient(), stripe_event("evt_c", "customer.subscription.created", stripe_subscription()))
    stored = Subscription.objects.get(pk="sub_123")
    gateway.errors["sub_123"] = StripeServiceError("Request timed out")

    for _ in range(3):
        result = sync_subscription_from_stripe(user.pk, without_period(stripe_subscription()), gateway=gateway)
        assert result.credits_granted == 0

    subscription = Subscription.objects.get(pk="sub_123")
    assert subscription.current_period_start == stored.current_period_start
    assert subscription.current_period_end == stored.current_period_end
    assert [tx.amount for tx in cycle_grants(user)] == [1000]
    assert profile_of(user).subscription_credits_balance == 1000


@pytest.mark.django_db
def test_new_subscription_without_period_waits_for_period_before_granting(gateway):
    user = create_user(customer_id="cus_123")
    gateway.errors["sub_123"] = StripeServiceError("Request timed out")

    sync_subscription_from_stripe(user.pk, without_period(stripe_subscription()), gateway=gateway)

    subscription = Subscription.objects.get(pk="sub_123")
    assert subscription.current_period_start is None
    assert subscription.current_period_end is None
    assert profile_of(user).subscription_tier == "Pro"
    assert not cycle_grants(user).exists()

    result = sync_subscription_from_stripe(user.pk, stripe_subscription(), gateway=gateway)

    assert result.credits_granted == 1000
    assert profile_of(user).subscription_credits_balance == 1000


@pytest.mark.django_db
def test_update_with_older_period_is_ignored(gateway):
    user = create_user(customer_id="cus_123")
    start = int(time.time()) - DAY
    client = APIClient()
    post_webhook(client, stripe_event(
        "evt_c", "customer.subscription.created",
        stripe_subscription(period_start=start, period_end=start + 30 * DAY),
    ))
    previous_cycle = stripe_subscription(price="price_business", period_start=start - 30 * DAY, period_end=start)

    response = post_webhook(client, stripe_event("evt_old", "customer.subscription.updated", previous_cycle))

    assert response.status_code == status.HTTP_200_OK
    subscription = Subscription.objects.get(pk="sub_123")
    assert subscription.price_id == "price_pro"
    assert int(subscription.current_period_end.timestamp()) == start + 30 * DAY
    profile = profile_of(user)
    assert (profile.subscription_tier, profile.subscription_credits_balance) == ("Pro", 1000)

    result = sync_subscription_from_stripe(user.pk, previous_cycle, gateway=gateway)
    assert (result.stale, result.changed) == (True, False)


@pytest.mark.django_db
def test_same_period_upgrade_grants_difference_once():
    user = create_user(customer_id="cus_123")
    start = int(time.time()) - DAY
    client = APIClient()
    post_webhook(client, stripe_event(
        "evt_c", "customer.subscription.created", stripe_subscription(period_start=start),
    ))
    upgraded = stripe_subscription(price="price_business", period_start=start)

    post_webhook(client, stripe_event("evt_up_1", "customer.subscription.updated", upgraded))
    post_webhook(client, stripe_event("evt_up_2", "customer.subscription.updated", upgraded))

    profile = profile_of(user)
    assert (profile.subscription_tier, profile.subscription_credits_balance) == ("Business", 5000)
    upgrade = CreditTransaction.objects.get(idempotency_key__startswith="upgrade:")
    assert upgrade.idempotency_key == f"upgrade:sub_123:price_business:{start}"
    assert upgrade.amount == 4000


@pytest.mark.django_db
def test_deleting_one_of_two_subscriptions_keeps_tier():
    user = create_user(customer_id="cus_123")
    client = APIClient()
    post_webhook(client, stripe_event(
        "evt_h", "customer.subscription.created", stripe_subscription("sub_hobby", price="price_hobby"),
    ))
    post_webhook(client, stripe_event("evt_p", "customer.subscription.created", stripe_subscription("sub_pro")))
    canceled = stripe_subscription("sub_hobby", price="price_hobby", status="canceled", canceled_at=int(time.time()))

    post_webhook(client, stripe_event("evt_d", "customer.subscription.deleted", canceled))

    assert Subscription.objects.get(pk="sub_hobby").status == Subscription.Status.CANCELED
    profile = profile_of(user)
    assert profile.subscription_status == Profile.SubscriptionStatus.ACTIVE
    assert profile.subscription_tier == "Pro"
    assert profile.subscription_credits_balance == 1200


@pytest.mark.django_db
def test_subscription_schedule_records_then_applies_price_change():
    user = create_user(customer_id="cus_123")
    now = int(time.time())
    client = APIClient()
    post_webhook(client, stripe_event("evt_c", "customer.subscription.created", stripe_subscription()))
    schedule = {
        "id": "sub_sched_1",
        "object": "subscription_schedule",
        "subscription": "sub_123",
        "status": "active",
        "phases": [
            {"start_date": now - DAY, "items": [{"price": "price_pro"}]},
            {"start_date": now + 10 * DAY, "items": [{"price": {"id": "price_hobby"}}]},
        ],
    }

    post_webhook(client, stripe_event("evt_s1", "subscription_schedule.updated", schedule))

    subscription = Subscription.objects.get(pk="sub_123")
    assert subscription.scheduled_price_id == "price_hobby"
    assert int(subscription.scheduled_change_date.timestamp()) == now + 10 * DAY

    post_webhook(client, stripe_event("evt_s2", "subscription_schedule.completed", dict(schedule, status="completed")))

    subscription.refresh_from_db()
    assert subscription.price_id == "price_hobby"
    assert subscription.scheduled_price_id is None
    assert subscription.scheduled_change_date is None
    profile = profile_of(user)
    assert (profile.subscription_tier, profile.subscription_credits_balance) == ("Hobby", 200)
    assert WebhookEvent.objects.get(event_id="evt_s2").status == WebhookEvent.Status.COMPLETED


@pytest.mark.django_db
def test_customer_created_links_customer_from_metadata():
    user = create_user()
    linked = create_user("bob", customer_id="cus_bob")
    client = APIClient()

    post_webhook(client, stripe_event(
        "evt_cus_1", "customer.created",
        {"id": "cus_new", "object": "customer", "metadata": {"user_id": str(user.pk)}},
    ))
    post_webhook(client, stripe_event(
        "evt_cus_2", "customer.created",
        {"id": "cus_other", "object": "customer", "metadata": {"user_id": str(linked.pk)}},
    ))

    assert profile_of(user).stripe_customer_id == "cus_new"
    assert profile_of(linked).stripe_customer_id == "cus_bob"
