import pytest
from rest_framework import status
from rest_framework.test import APIClient

from billing.models import CreditTransaction, Profile, SyncRun, WebhookEvent
from billing.services.credit_ledger import add_purchased_credits, grant_subscription_credits
from billing.services.sync_runs import complete_sync_run, create_sync_run
from billing.tests.factories import auth_client, create_user


def override_url(user):
    return f"/api/billing/admin/users/{user.pk}/credits/"


@pytest.mark.django_db
def test_admin_override_sets_absolute_balance():
    client, admin = auth_client(create_user("root", role=Profile.Role.ADMIN))
    user = create_user()
    add_purchased_credits(user_id=user.pk, amount=40, reason="pack")

    response = client.post(
        override_url(user),
        {"pool": "purchased", "balance": 100, "reason": "Goodwill"},
        format="json",
    )

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["delta"] == 60
    assert body["purchased_credits_balance"] == 100
    assert body["transaction"]["type"] == CreditTransaction.TransactionType.ADMIN_ADJUSTMENT
    tx = CreditTransaction.objects.get(type=CreditTransaction.TransactionType.ADMIN_ADJUSTMENT)
    assert tx.metadata["actor_id"] == str(admin.pk)


@pytest.mark.django_db
def test_admin_role_on_profile_grants_operator_access_without_staff_flag():
    operator = create_user("root", customer_id="cus_root", role=Profile.Role.ADMIN)
    client, _ = auth_client(operator)

    assert operator.is_staff is False
    assert operator.billing_profile.role == Profile.Role.ADMIN
    assert operator.billing_profile.stripe_customer_id == "cus_root"
    assert client.get("/api/billing/admin/sync-runs/").status_code == status.HTTP_200_OK


@pytest.mark.django_db
def test_staff_can_lower_subscription_pool():
    client, _ = auth_client(create_user("staff", is_staff=True))
    user = create_user()
    grant_subscription_credits(user_id=user.pk, amount=500, cap=6000, reason="seed", idempotency_key="seed")

    response = client.post(
        override_url(user),
        {"pool": "subscription", "balance": 120, "reason": "Abuse correction"},
        format="json",
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["delta"] == -380
    assert Profile.objects.get(user=user).subscription_credits_balance == 120


@pytest.mark.django_db
@pytest.mark.parametrize(
    "payload",
    [
        {"pool": "bonus", "balance": 10, "reason": "x"},
        {"pool": "purchased", "balance": -1, "reason": "x"},
        {"pool": "purchased", "balance": 10, "reason": "   "},
    ],
)
def test_admin_override_validates_payload(payload):
    client, _ = auth_client(create_user("root", role=Profile.Role.ADMIN))
    user = create_user()

    response = client.post(override_url(user), payload, format="json")

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert CreditTransaction.objects.count() == 0


@pytest.mark.django_db
def test_regular_user_cannot_override_credits():
    client, _ = auth_client()
    victim = create_user("bob")

    response = client.post(override_url(victim), {"pool": "purchased", "balance": 10, "reason": "x"}, format="json")

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert CreditTransaction.objects.count() == 0


@pytest.mark.django_db
def test_sync_run_listing_filters_by_type():
    client, _ = auth_client(create_user("root", is_staff=True))
    reconcile = create_sync_run(SyncRun.RunType.FULL_RECONCILIATION)
    complete_sync_run(reconcile.pk, processed=10, fixed=2, discrepancies=2)
    create_sync_run(SyncRun.RunType.EXPIRATION_CHECK)

    response = client.get("/api/billing/admin/sync-runs/", {"run_type": SyncRun.RunType.FULL_RECONCILIATION})

    assert response.status_code == status.HTTP_200_OK
    results = response.json()["results"]
    assert [run["id"] for run in results] == [str(reconcile.pk)]
    assert results[0]["records_fixed"] == 2

    detail = client.get(f"/api/billing/admin/sync-runs/{reconcile.pk}/")
    assert detail.json()["status"] == SyncRun.Status.COMPLETED


@pytest.mark.django_db
def test_webhook_event_listing_filters_by_status():
    client, _ = auth_client(create_user("root", is_staff=True))
    WebhookEvent.objects.create(event_id="evt_1", event_type="invoice.paid", status=WebhookEvent.Status.COMPLETED)
    WebhookEvent.objects.create(event_id="evt_2", event_type="invoice.paid", status=WebhookEvent.Status.FAILED)

    response = client.get("/api/billing/admin/webhook-events/", {"status": "failed"})

    assert response.status_code == status.HTTP_200_OK
    assert [event["event_id"] for event in response.json()["results"]] == ["evt_2"]


@pytest.mark.django_db
def test_operator_endpoints_reject_regular_users():
    client, _ = auth_client()

    assert client.get("/api/billing/admin/sync-runs/").status_code == status.HTTP_403_FORBIDDEN
    assert client.get("/api/billing/admin/webhook-events/").status_code == status.HTTP_403_FORBIDDEN


@pytest.mark.django_db
def test_profile_credits_endpoint_reports_both_pools():
    client, user = auth_client()
    grant_subscription_credits(user_id=user.pk, amount=300, cap=6000, reason="Pro", idempotency_key="sub:s:1")
    add_purchased_credits(user_id=user.pk, amount=75, reason="pack")

    response = client.get("/api/billing/profile/credits/")

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["subscription_credits_balance"] == 300
    assert body["purchased_credits_balance"] == 75
    assert body["total_credits"] == 375
    assert body["subscription"] is None
    assert len(body["recent_transactions"]) == 2
    assert body["user"]["id"] == str(user.pk)


@pytest.mark.django_db
def test_transaction_history_is_scoped_to_caller():
    client, user = auth_client()
    other = create_user("bob")
    add_purchased_credits(user_id=user.pk, amount=5, reason="mine")
    add_purchased_credits(user_id=other.pk, amount=9, reason="theirs")

    response = client.get("/api/billing/transactions/")

    assert response.status_code == status.HTTP_200_OK
    assert [tx["amount"] for tx in response.json()["results"]] == [5]


@pytest.mark.django_db
def test_profile_credits_requires_authentication():
    response = APIClient().get("/api/billing/profile/credits/")

    assert response.status_code in {status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN}
