"""Stripe webhook handler implementations and helpers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from django.contrib.auth import get_user_model
from django.db.models import Sum

from billing.models import CreditTransaction, Subscription
from billing.services import credit_ledger
from billing.services.stripe_gateway import StripeGateway, StripeResourceNotFound
from billing.services.subscription_sync import (
    apply_scheduled_price_change,
    coerce_timestamp,
    extract_customer_id,
    get_user_id_from_customer_id,
    link_customer,
    mark_subscription_canceled,
    mark_subscription_past_due,
    record_scheduled_change,
    sync_subscription_from_stripe,
)

logger = logging.getLogger(__name__)

User = get_user_model()


class WebhookProcessingError(RuntimeError):
    """Raised when a webhook cannot be processed successfully."""


class MalformedEventError(WebhookProcessingError):
    """Raised when the event envelope does not carry the expected object; retrying will not help."""


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of a webhook handler invocation."""

    status: str
    detail: str = ""
    user_id: Optional[Any] = None

    PROCESSED = "processed"
    IGNORED = "ignored"
    SKIPPED = "skipped"


def _event_object(payload: Dict[str, Any]) -> Dict[str, Any]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        raise MalformedEventError("Event has no data envelope.")
    obj = data.get("object")
    if not isinstance(obj, dict):
        raise MalformedEventError("Event data has no object.")
    return obj


def _object_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _resolve_user_id(user_id: Any):
    if not user_id:
        return None
    try:
        return User.objects.filter(pk=user_id).values_list("pk", flat=True).first()
    except (ValueError, TypeError):
        return None


def _subscription_owner(subscription_id: Optional[str]):
    if not subscription_id:
        return None
    return Subscription.objects.filter(pk=subscription_id).values_list("user_id", flat=True).first()


def _resolve_subscription_user(subscription: Dict[str, Any]):
    """Customer mapping first, then the stored row, then metadata set at checkout."""
    user_id = get_user_id_from_customer_id(extract_customer_id(subscription))
    if user_id is None:
        user_id = _subscription_owner(subscription.get("id"))
    if user_id is None:
        user_id = _resolve_user_id((subscription.get("metadata") or {}).get("user_id"))
    return user_id


def dispatch_event(*, event_id: str, event_type: str, payload: Dict[str, Any], gateway: StripeGateway) -> HandlerResult:
    """Route a Stripe webhook event to its dedicated handler."""

    handler = {
        "customer.subscription.created": _handle_subscription_upsert,
        "customer.subscription.updated": _handle_subscription_upsert,
        "customer.subscription.resumed": _handle_subscription_upsert,
        "customer.subscription.paused": _handle_subscription_upsert,
        "customer.subscription.deleted": _handle_subscription_deleted,
        "customer.subscription.trial_will_end": _handle_trial_will_end,
        "invoice.paid": _handle_invoice_paid,
        "invoice.payment_succeeded": _handle_invoice_paid,
        "invoice.payment_failed": _handle_invoice_payment_failed,
        "subscription_schedule.created": _handle_schedule_updated,
        "subscription_schedule.updated": _handle_schedule_updated,
        "subscription_schedule.released": _handle_schedule_updated,
        "subscription_schedule.canceled": _handle_schedule_updated,
        "subscription_schedule.completed": _handle_schedule_completed,
        "customer.created": _handle_customer_created,
        "checkout.session.completed": _handle_checkout_session_completed,
        "charge.refunded": _handle_charge_refunded,
    }.get(event_type)

    if handler is None:
        logger.info("Ignoring unsupported Stripe event type '%s'.", event_type)
        return HandlerResult(status=HandlerResult.IGNORED, detail="Unsupported event type")

    return handler(event_id=event_id, payload=payload, gateway=gateway)


def _handle_subscription_upsert(*, event_id: str, payload: Dict[str, Any], gateway: StripeGateway) -> HandlerResult:
    subscription = _event_object(payload)
    if not subscription.get("id"):
        raise MalformedEventError("Subscription object has no id.")

    user_id = _resolve_subscription_user(subscription)
    if user_id is None:
        logger.warning(
            "Stripe event %s references unknown customer %s; skipping.",
            event_id,
            extract_customer_id(subscription),
        )
        return HandlerResult(status=HandlerResult.SKIPPED, detail="No user for customer")

    result = sync_subscription_from_stripe(user_id, subscription, gateway=gateway, event_id=event_id)
    if result.stale:
        return HandlerResult(status=HandlerResult.SKIPPED, detail="Stale subscription snapshot", user_id=user_id)
    return HandlerResult(
        status=HandlerResult.PROCESSED,
        detail=f"Subscription {result.subscription_id} is {result.status}",
        user_id=user_id,
    )


def _handle_subscription_deleted(*, event_id: str, payload: Dict[str, Any], gateway: StripeGateway) -> HandlerResult:
    subscription = _event_object(payload)
    subscription_id = subscription.get("id")
    if not subscription_id:
        raise MalformedEventError("Subscription object has no id.")

    user_id = _resolve_subscription_user(subscription)
    if user_id is None:
        logger.warning("Deletion event %s for unknown subscription %s; skipping.", event_id, subscription_id)
        return HandlerResult(status=HandlerResult.SKIPPED, detail="No user for subscription")

    canceled_at = coerce_timestamp(subscription.get("canceled_at") or subscription.get("ended_at"))
    mark_subscription_canceled(user_id, subscription_id, canceled_at=canceled_at)
    return HandlerResult(status=HandlerResult.PROCESSED, detail="Subscription canceled", user_id=user_id)


def _handle_trial_will_end(*, event_id: str, payload: Dict[str, Any], gateway: StripeGateway) -> HandlerResult:
    subscription = _event_object(payload)
    logger.info(
        "Trial of subscription %s ends at %s",
        subscription.get("id"),
        coerce_timestamp(subscription.get("trial_end")),
    )
    return HandlerResult(status=HandlerResult.IGNORED, detail="Trial ending notice")


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id

    # Newer API versions nest the reference under the invoice parent.
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    subscription_id = _object_id(details.get("subscription"))
    if subscription_id:
        return subscription_id

    for line in (invoice.get("lines") or {}).get("data") or []:
        if not isinstance(line, dict):
            continue
        subscription_id = _object_id(line.get("subscription"))
        if not subscription_id:
            line_parent = line.get("parent") or {}
            item_details = line_parent.get("subscription_item_details") or {}
            subscription_id = _object_id(item_details.get("subscription"))
        if subscription_id:
            return subscription_id
    return None


def _invoice_user_id(invoice: Dict[str, Any], subscription_id: Optional[str]):
    user_id = get_user_id_from_customer_id(_object_id(invoice.get("customer")))
    if user_id is None:
        user_id = _subscription_owner(subscription_id)
    return user_id


def _handle_invoice_paid(*, event_id: str, payload: Dict[str, Any], gateway: StripeGateway) -> HandlerResult:
    invoice = _event_object(payload)
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return HandlerResult(status=HandlerResult.IGNORED, detail="Invoice is not tied to a subscription")

    user_id = _invoice_user_id(invoice, subscription_id)
    if user_id is None:
        logger.warning("Invoice %s belongs to an unknown customer; skipping.", invoice.get("id"))
        return HandlerResult(status=HandlerResult.SKIPPED, detail="No user for customer")

    # The invoice only says money moved; the subscription object is the source of truth.
    try:
        subscription = gateway.retrieve_subscription(subscription_id)
    except StripeResourceNotFound:
        mark_subscription_canceled(user_id, subscription_id)
        return HandlerResult(status=HandlerResult.PROCESSED, detail="Subscription gone upstream", user_id=user_id)

    result = sync_subscription_from_stripe(user_id, subscription, gateway=gateway, event_id=event_id)
    return HandlerResult(
        status=HandlerResult.PROCESSED,
        detail=f"Invoice {invoice.get('id')} synced; {result.credits_granted} credits granted",
        user_id=user_id,
    )


def _handle_invoice_payment_failed(*, event_id: str, payload: Dict[str, Any], gateway: StripeGateway) -> HandlerResult:
    invoice = _event_object(payload)
    subscription_id = _invoice_subscription_id(invoice)
    user_id = _invoice_user_id(invoice, subscription_id)
    if user_id is None and not subscription_id:
        return HandlerResult(status=HandlerResult.SKIPPED, detail="No user for customer")

    mark_subscription_past_due(subscription_id, user_id)
    logger.warning(
        "Payment failed for invoice %s (subscription %s, attempt %s)",
        invoice.get("id"),
        subscription_id,
        invoice.get("attempt_count"),
    )
    return HandlerResult(status=HandlerResult.PROCESSED, detail="Marked past due", user_id=user_id)


def _handle_schedule_updated(*, event_id: str, payload: Dict[str, Any], gateway: StripeGateway) -> HandlerResult:
    schedule = _event_object(payload)
    subscription_id = _object_id(schedule.get("subscription"))
    if not subscription_id:
        return HandlerResult(status=HandlerResult.IGNORED, detail="Schedule not attached to a subscription")

    if not record_scheduled_change(subscription_id, schedule):
        return HandlerResult(status=HandlerResult.SKIPPED, detail="Unknown subscription")
    return HandlerResult(status=HandlerResult.PROCESSED, detail="Scheduled change recorded")


def _handle_schedule_completed(*, event_id: str, payload: Dict[str, Any], gateway: StripeGateway) -> HandlerResult:
    schedule = _event_object(payload)
    subscription_id = _object_id(schedule.get("subscription")) or _object_id(schedule.get("released_subscription"))
    user_id = _subscription_owner(subscription_id)
    if user_id is None:
        return HandlerResult(status=HandlerResult.SKIPPED, detail="Unknown subscription")

    final_price = None
    phases = schedule.get("phases") or []
    if phases and phases[-1].get("items"):
        final_price = _object_id(phases[-1]["items"][0].get("price"))

    result = apply_scheduled_price_change(user_id, subscription_id, gateway=gateway, price_id=final_price)
    return HandlerResult(
        status=HandlerResult.PROCESSED if result.changed else HandlerResult.IGNORED,
        detail="Scheduled change applied" if result.changed else "Nothing scheduled",
        user_id=user_id,
    )


def _handle_customer_created(*, event_id: str, payload: Dict[str, Any], gateway: StripeGateway) -> HandlerResult:
    customer = _event_object(payload)
    user_id = _resolve_user_id((customer.get("metadata") or {}).get("user_id"))
    if user_id is None:
        return HandlerResult(status=HandlerResult.IGNORED, detail="Customer has no user metadata")

    linked = link_customer(user_id, customer.get("id"))
    return HandlerResult(
        status=HandlerResult.PROCESSED if linked else HandlerResult.IGNORED,
        detail="Customer linked" if linked else "Customer already linked",
        user_id=user_id,
    )


def _handle_checkout_session_completed(*, event_id: str, payload: Dict[str, Any], gateway: StripeGateway) -> HandlerResult:
    session = _event_object(payload)
    metadata = session.get("metadata") or {}
    user_id = _resolve_user_id(session.get("client_reference_id") or metadata.get("user_id"))
    customer_id = _object_id(session.get("customer"))
    if user_id is None:
        user_id = get_user_id_from_customer_id(customer_id)
    if user_id is None:
        logger.warning("Checkout session %s has no resolvable user; skipping.", session.get("id"))
        return HandlerResult(status=HandlerResult.SKIPPED, detail="No user for checkout session")

    link_customer(user_id, customer_id)

    if session.get("mode") != "payment" or not metadata.get("credits"):
        return HandlerResult(status=HandlerResult.PROCESSED, detail="Checkout recorded", user_id=user_id)
    if session.get("payment_status") != "paid":
        return HandlerResult(status=HandlerResult.IGNORED, detail="Checkout not paid yet", user_id=user_id)

    try:
        credits = int(metadata["credits"])
    except (TypeError, ValueError) as exc:
        raise MalformedEventError(f"Invalid credits metadata on session {session.get('id')}.") from exc

    result = credit_ledger.add_purchased_credits(
        user_id=user_id,
        amount=credits,
        reason=f"Credit pack purchase ({metadata.get('pack', 'custom')})",
        reference_id=_object_id(session.get("payment_intent")) or session.get("id"),
        idempotency_key=f"purchase:{session.get('id')}",
        metadata={"session_id": session.get("id"), "pack": metadata.get("pack"), "event_id": event_id},
    )
    return HandlerResult(
        status=HandlerResult.PROCESSED,
        detail=f"{credits} credits purchased" if result.created else "Purchase already credited",
        user_id=user_id,
    )


def _handle_charge_refunded(*, event_id: str, payload: Dict[str, Any], gateway: StripeGateway) -> HandlerResult:
    charge = _event_object(payload)
    payment_intent = _object_id(charge.get("payment_intent"))
    purchase = (
        CreditTransaction.objects.filter(
            type=CreditTransaction.TransactionType.PURCHASE,
            reference_id=payment_intent,
        ).first()
        if payment_intent
        else None
    )
    if purchase is None:
        return HandlerResult(status=HandlerResult.IGNORED, detail="Refund not tied to a credit purchase")

    amount = int(charge.get("amount") or 0)
    refunded = int(charge.get("amount_refunded") or 0)
    if amount <= 0 or refunded <= 0:
        return HandlerResult(status=HandlerResult.IGNORED, detail="Nothing refunded")

    # amount_refunded is cumulative; only claw back what earlier refunds did not.
    owed = purchase.amount * min(refunded, amount) // amount
    already = -(
        CreditTransaction.objects.filter(
            user_id=purchase.user_id,
            type=CreditTransaction.TransactionType.REFUND,
            reference_id=payment_intent,
        ).aggregate(total=Sum("amount"))["total"]
        or 0
    )
    outstanding = owed - already
    if outstanding <= 0:
        return HandlerResult(status=HandlerResult.IGNORED, detail="Refund already applied", user_id=purchase.user_id)

    credit_ledger.clawback_purchased_credits(
        user_id=purchase.user_id,
        amount=outstanding,
        reason=f"Refund of charge {charge.get('id')}",
        reference_id=payment_intent,
        idempotency_key=f"refund:{charge.get('id')}:{refunded}",
    )
    return HandlerResult(status=HandlerResult.PROCESSED, detail="Refund clawed back", user_id=purchase.user_id)


__all__ = [
    "dispatch_event",
    "HandlerResult",
    "MalformedEventError",
    "WebhookProcessingError",
]
