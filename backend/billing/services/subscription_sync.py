"""Translate Stripe subscription snapshots into local subscription, profile and credit state.

Both the webhook dispatcher and the drift-correction jobs call these
functions, so the mapping lives in exactly one place. Every write is
re-appliable: credit grants carry deterministic idempotency keys and
stale snapshots (older period end) are ignored.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
import logging
from typing import Any, Dict, Optional, Tuple

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from billing.models import Profile, Subscription
from billing.services import credit_ledger
from billing.services.plan_catalog import Plan
from billing.services.stripe_gateway import StripeGateway, StripeServiceError

logger = logging.getLogger(__name__)

ENTITLED_STATUSES = (
    Subscription.Status.ACTIVE,
    Subscription.Status.TRIALING,
    Subscription.Status.PAST_DUE,
)

PROFILE_STATUS_BY_SUBSCRIPTION_STATUS = {
    Subscription.Status.ACTIVE: Profile.SubscriptionStatus.ACTIVE,
    Subscription.Status.TRIALING: Profile.SubscriptionStatus.TRIALING,
    Subscription.Status.PAST_DUE: Profile.SubscriptionStatus.PAST_DUE,
    Subscription.Status.CANCELED: Profile.SubscriptionStatus.CANCELED,
    Subscription.Status.UNPAID: Profile.SubscriptionStatus.UNPAID,
    Subscription.Status.INCOMPLETE: Profile.SubscriptionStatus.NONE,
    Subscription.Status.INCOMPLETE_EXPIRED: Profile.SubscriptionStatus.CANCELED,
    Subscription.Status.PAUSED: Profile.SubscriptionStatus.NONE,
}


class SubscriptionSyncError(RuntimeError):
    """Raised when a Stripe subscription cannot be mapped onto local state."""


class UnknownPriceError(SubscriptionSyncError):
    """Raised when a subscription references a price missing from the plan catalog."""


@dataclass(frozen=True)
class SyncResult:
    subscription_id: str
    user_id: Any
    status: str
    created: bool = False
    changed: bool = False
    stale: bool = False
    credits_granted: int = 0


def coerce_timestamp(value: Any) -> Optional[datetime]:
    """Convert a Stripe epoch timestamp into an aware datetime."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if timezone.is_aware(value) else timezone.make_aware(value, dt_timezone.utc)
    try:
        return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError):
        logger.warning("Ignoring unparseable Stripe timestamp %r", value)
        return None


def _object_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def extract_customer_id(stripe_subscription: Dict[str, Any]) -> Optional[str]:
    return _object_id(stripe_subscription.get("customer"))


def _first_item(stripe_subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = stripe_subscription.get("items") or {}
    data = items.get("data") if isinstance(items, dict) else None
    if data and isinstance(data[0], dict):
        return data[0]
    return {}


def extract_price_id(stripe_subscription: Dict[str, Any]) -> Optional[str]:
    item = _first_item(stripe_subscription)
    price_id = _object_id(item.get("price"))
    if price_id:
        return price_id
    return _object_id(stripe_subscription.get("plan"))


def extract_period(stripe_subscription: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Period boundaries live on the subscription or, in newer API versions, on its items."""
    start = coerce_timestamp(stripe_subscription.get("current_period_start"))
    end = coerce_timestamp(stripe_subscription.get("current_period_end"))
    if start is None or end is None:
        item = _first_item(stripe_subscription)
        start = start or coerce_timestamp(item.get("current_period_start"))
        end = end or coerce_timestamp(item.get("current_period_end"))
    return start, end


def resolve_plan(gateway: StripeGateway, price_id: Optional[str]) -> Plan:
    plan = gateway.plans.get(price_id)
    if plan is None:
        raise UnknownPriceError(f"Price {price_id!r} is not in the plan catalog.")
    return plan


def get_user_id_from_customer_id(customer_id: Optional[str]):
    """Reverse lookup of a Stripe customer; ``None`` means the event is an orphan."""
    if not customer_id:
        return None
    return (
        Profile.objects.filter(stripe_customer_id=customer_id)
        .values_list("user_id", flat=True)
        .first()
    )


def _resolve_period(stripe_subscription, *, gateway: StripeGateway, subscription_id: str):
    start, end = extract_period(stripe_subscription)
    if start is not None and end is not None:
        return start, end

    try:
        refreshed = gateway.retrieve_subscription(subscription_id)
    except StripeServiceError as exc:
        logger.warning("Could not re-fetch subscription %s for period data: %s", subscription_id, exc)
    else:
        start, end = extract_period(refreshed)
        if start is not None and end is not None:
            return start, end

    logger.warning("Subscription %s has no period data; keeping the stored period.", subscription_id)
    return None, None


def _lock_profile(user_id) -> Profile:
    profile, _ = Profile.objects.select_for_update().get_or_create(user_id=user_id)
    return profile


def _link_customer(profile: Profile, customer_id: Optional[str]) -> bool:
    if not customer_id or profile.stripe_customer_id:
        return False
    if Profile.objects.filter(stripe_customer_id=customer_id).exclude(pk=profile.pk).exists():
        logger.warning("Customer %s is already linked to another profile.", customer_id)
        return False
    profile.stripe_customer_id = customer_id
    return True


def link_customer(user_id, customer_id: Optional[str]) -> bool:
    """Attach a Stripe customer to the user's profile if it has none yet."""
    if not customer_id:
        return False
    with transaction.atomic():
        profile = _lock_profile(user_id)
        if not _link_customer(profile, customer_id):
            return False
        profile.save(update_fields=["stripe_customer_id", "updated_at"])
    logger.info("Linked Stripe customer %s to user %s", customer_id, user_id)
    return True


def _downgrade_profile(user_id, subscription_id: str, *, canceled_at: datetime) -> bool:
    """Drop tier benefits unless another subscription still entitles the user."""

    still_entitled = (
        Subscription.objects.filter(user_id=user_id, status__in=ENTITLED_STATUSES)
        .exclude(pk=subscription_id)
        .exists()
    )
    if still_entitled:
        logger.info("User %s keeps another entitled subscription; profile left unchanged.", user_id)
        return False

    profile = _lock_profile(user_id)
    profile.subscription_status = Profile.SubscriptionStatus.CANCELED
    profile.subscription_tier = getattr(settings, "FREE_TIER_NAME", "Free")
    profile.save(update_fields=["subscription_status", "subscription_tier", "updated_at"])

    if getattr(settings, "BILLING_EXPIRE_CREDITS_ON_CANCEL", True):
        credit_ledger.expire_subscription_credits(
            user_id=user_id,
            reason=f"Subscription {subscription_id} canceled",
            reference_id=subscription_id,
            idempotency_key=f"cancel:{subscription_id}:{int(canceled_at.timestamp())}",
        )
    return True


def _grant_for_status(
    *,
    user_id,
    subscription_id: str,
    status: str,
    plan: Plan,
    previous_price_id: Optional[str],
    period_start: Optional[datetime],
    gateway: StripeGateway,
    event_id: Optional[str],
) -> int:
    metadata = {"price_id": plan.price_id, "event_id": event_id}

    if status == Subscription.Status.TRIALING:
        if not plan.trial_credits:
            return 0
        result = credit_ledger.grant_subscription_credits(
            user_id=user_id,
            amount=plan.trial_credits,
            cap=plan.max_rollover,
            reason=f"{plan.name} trial credits",
            idempotency_key=f"trial:{subscription_id}",
            reference_id=subscription_id,
            metadata=metadata,
        )
        return result.delta if result.created else 0

    if status != Subscription.Status.ACTIVE:
        return 0

    if period_start is None:
        # Cycle grants are keyed by period start; wait for a snapshot that carries one.
        logger.warning("Skipping cycle credits for subscription %s: no period start known.", subscription_id)
        return 0

    start_ts = int(period_start.timestamp())
    result = credit_ledger.grant_subscription_credits(
        user_id=user_id,
        amount=plan.credits_per_cycle,
        cap=plan.max_rollover,
        reason=f"{plan.name} plan credits for period starting {period_start:%Y-%m-%d}",
        idempotency_key=f"sub:{subscription_id}:{start_ts}",
        reference_id=subscription_id,
        metadata=metadata,
    )
    if result.created:
        return result.delta

    # Same period, new price: an upgrade grants the difference once, a downgrade keeps credits.
    if previous_price_id and previous_price_id != plan.price_id:
        previous_plan = gateway.plans.get(previous_price_id)
        if previous_plan and plan.credits_per_cycle > previous_plan.credits_per_cycle:
            upgrade = credit_ledger.grant_subscription_credits(
                user_id=user_id,
                amount=plan.credits_per_cycle - previous_plan.credits_per_cycle,
                cap=plan.max_rollover,
                reason=f"Upgrade from {previous_plan.name} to {plan.name}",
                idempotency_key=f"upgrade:{subscription_id}:{plan.price_id}:{start_ts}",
                reference_id=subscription_id,
                metadata=dict(metadata, previous_price_id=previous_price_id),
            )
            return upgrade.delta if upgrade.created else 0
    return 0


def sync_subscription_from_stripe(
    user_id,
    stripe_subscription: Dict[str, Any],
    *,
    gateway: StripeGateway,
    event_id: Optional[str] = None,
) -> SyncResult:
    """Upsert the local subscription row and profile from a Stripe subscription object."""

    if not isinstance(stripe_subscription, dict):
        raise SubscriptionSyncError("Stripe subscription payload must be an object.")

    subscription_id = stripe_subscription.get("id")
    if not subscription_id:
        raise SubscriptionSyncError("Stripe subscription payload has no id.")

    status = stripe_subscription.get("status")
    if status not in Subscription.Status.values:
        raise SubscriptionSyncError(f"Unsupported subscription status {status!r} for {subscription_id}.")

    price_id = extract_price_id(stripe_subscription)
    if status == Subscription.Status.CANCELED:
        # Cancellation must land even for retired prices or half-populated payloads.
        plan = gateway.plans.get(price_id)
        period_start, period_end = extract_period(stripe_subscription)
    else:
        plan = resolve_plan(gateway, price_id)
        period_start, period_end = _resolve_period(
            stripe_subscription, gateway=gateway, subscription_id=subscription_id
        )

    fields = {
        "user_id": user_id,
        "status": status,
        "price_id": price_id,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "trial_end": coerce_timestamp(stripe_subscription.get("trial_end")),
        "cancel_at_period_end": bool(stripe_subscription.get("cancel_at_period_end")),
        "canceled_at": coerce_timestamp(stripe_subscription.get("canceled_at")),
    }

    with transaction.atomic():
        existing = Subscription.objects.select_for_update().filter(pk=subscription_id).first()

        if existing is not None and status != Subscription.Status.CANCELED:
            if existing.status == Subscription.Status.CANCELED:
                logger.info("Ignoring %s snapshot for already canceled subscription %s.", status, subscription_id)
                return SyncResult(subscription_id, existing.user_id, existing.status, stale=True)
            if existing.current_period_end and period_end and period_end < existing.current_period_end:
                logger.info(
                    "Ignoring stale snapshot for subscription %s (period end %s < stored %s).",
                    subscription_id,
                    period_end,
                    existing.current_period_end,
                )
                return SyncResult(subscription_id, existing.user_id, existing.status, stale=True)

        previous_price_id = existing.price_id if existing else None
        if existing is not None:
            # Canceled payloads may lack period data; keep what is stored.
            fields = {name: value for name, value in fields.items()
                      if value is not None or name not in ("current_period_start", "current_period_end")}

        if existing is None:
            subscription = Subscription.objects.create(id=subscription_id, **fields)
            changed = True
        else:
            subscription = existing
            changed = any(getattr(subscription, name) != value for name, value in fields.items())
            for name, value in fields.items():
                setattr(subscription, name, value)
            if changed:
                subscription.save()

        if status == Subscription.Status.CANCELED:
            canceled_at = subscription.canceled_at or timezone.now()
            if subscription.canceled_at is None:
                subscription.canceled_at = canceled_at
                subscription.save(update_fields=["canceled_at", "updated_at"])
            _downgrade_profile(user_id, subscription_id, canceled_at=canceled_at)
            return SyncResult(subscription_id, user_id, status, created=existing is None, changed=changed)

        granted = _grant_for_status(
            user_id=user_id,
            subscription_id=subscription_id,
            status=status,
            plan=plan,
            previous_price_id=previous_price_id,
            period_start=subscription.current_period_start,
            gateway=gateway,
            event_id=event_id,
        )

        profile = _lock_profile(user_id)
        profile.subscription_status = PROFILE_STATUS_BY_SUBSCRIPTION_STATUS[status]
        if status in ENTITLED_STATUSES:
            profile.subscription_tier = plan.name
        else:
            profile.subscription_tier = getattr(settings, "FREE_TIER_NAME", "Free")
        update_fields = ["subscription_status", "subscription_tier", "updated_at"]
        if _link_customer(profile, extract_customer_id(stripe_subscription)):
            update_fields.append("stripe_customer_id")
        profile.save(update_fields=update_fields)

    logger.info(
        "Synced subscription %s for user %s: status=%s plan=%s granted=%s",
        subscription_id,
        user_id,
        status,
        plan.key,
        granted,
    )
    return SyncResult(
        subscription_id,
        user_id,
        status,
        created=existing is None,
        changed=changed or bool(granted),
        credits_granted=granted,
    )


def mark_subscription_canceled(user_id, subscription_id: str, *, canceled_at: Optional[datetime] = None) -> SyncResult:
    """Cancel locally: keep the row as history and drop the profile's tier benefits."""

    canceled_at = canceled_at or timezone.now()
    changed = False

    with transaction.atomic():
        subscription = Subscription.objects.select_for_update().filter(pk=subscription_id).first()
        if subscription is not None:
            if user_id is None:
                user_id = subscription.user_id
            if subscription.status != Subscription.Status.CANCELED:
                subscription.status = Subscription.Status.CANCELED
                subscription.canceled_at = subscription.canceled_at or canceled_at
                subscription.save(update_fields=["status", "canceled_at", "updated_at"])
                changed = True
            canceled_at = subscription.canceled_at
        else:
            logger.warning("Cancel requested for unknown subscription %s; updating profile only.", subscription_id)

        if user_id is not None:
            changed = _downgrade_profile(user_id, subscription_id, canceled_at=canceled_at) or changed

    return SyncResult(subscription_id, user_id, Subscription.Status.CANCELED, changed=changed)


def update_subscription_period(subscription_id: str, stripe_subscription: Dict[str, Any]) -> bool:
    """Move the stored period forward when Stripe renewed before the webhook arrived.

    Only boundaries change, and only when the status is unchanged; the
    period end never moves backwards. Returns whether anything was written.
    """

    period_start, period_end = extract_period(stripe_subscription)
    if period_end is None:
        return False

    with transaction.atomic():
        subscription = Subscription.objects.select_for_update().get(pk=subscription_id)
        if stripe_subscription.get("status") != subscription.status:
            logger.info(
                "Status of %s changed (%s -> %s); period refresh skipped.",
                subscription_id,
                subscription.status,
                stripe_subscription.get("status"),
            )
            return False
        if subscription.current_period_end and period_end <= subscription.current_period_end:
            return False

        subscription.current_period_start = period_start or subscription.current_period_start
        subscription.current_period_end = period_end
        subscription.save(update_fields=["current_period_start", "current_period_end", "updated_at"])

    logger.info("Extended period of subscription %s to %s", subscription_id, period_end)
    return True


def mark_subscription_past_due(subscription_id: Optional[str], user_id) -> bool:
    """Reflect a failed renewal payment on the subscription row and profile."""

    with transaction.atomic():
        if subscription_id:
            Subscription.objects.filter(pk=subscription_id).exclude(
                status__in=Subscription.TERMINAL_STATUSES,
            ).update(status=Subscription.Status.PAST_DUE, updated_at=timezone.now())
        if user_id is None:
            return False
        updated = Profile.objects.filter(user_id=user_id).exclude(
            subscription_status=Profile.SubscriptionStatus.CANCELED,
        ).update(subscription_status=Profile.SubscriptionStatus.PAST_DUE, updated_at=timezone.now())
    return bool(updated)


def record_scheduled_change(subscription_id: str, schedule: Dict[str, Any]) -> bool:
    """Store the next phase of a subscription schedule as a pending price change."""

    now = timezone.now()
    next_price, change_date = None, None
    if schedule.get("status") in (None, "active", "not_started"):
        for phase in schedule.get("phases") or []:
            starts = coerce_timestamp(phase.get("start_date"))
            items = phase.get("items") or []
            if starts and starts > now and items:
                next_price = _object_id(items[0].get("price"))
                change_date = starts
                break

    updated = Subscription.objects.filter(pk=subscription_id).update(
        scheduled_price_id=next_price,
        scheduled_change_date=change_date,
        updated_at=now,
    )
    return bool(updated)


def apply_scheduled_price_change(
    user_id,
    subscription_id: str,
    *,
    gateway: StripeGateway,
    price_id: Optional[str] = None,
) -> SyncResult:
    """Finish a scheduled plan change: new price and tier, subscription credits reset to the new grant."""

    with transaction.atomic():
        subscription = Subscription.objects.select_for_update().get(pk=subscription_id)
        if user_id is None:
            user_id = subscription.user_id
        target_price = price_id or subscription.scheduled_price_id
        if not target_price:
            logger.info("Subscription %s has no scheduled price change to apply.", subscription_id)
            return SyncResult(subscription_id, user_id, subscription.status)

        plan = resolve_plan(gateway, target_price)
        subscription.price_id = target_price
        subscription.scheduled_price_id = None
        subscription.scheduled_change_date = None
        subscription.save(update_fields=["price_id", "scheduled_price_id", "scheduled_change_date", "updated_at"])

        profile = _lock_profile(user_id)
        profile.subscription_tier = plan.name
        profile.save(update_fields=["subscription_tier", "updated_at"])

        result = credit_ledger.reset_subscription_credits(
            user_id=user_id,
            amount=plan.credits_per_cycle,
            reason=f"Scheduled change to {plan.name}",
            reference_id=subscription_id,
            idempotency_key=f"schedule:{subscription_id}:{target_price}",
        )

    return SyncResult(subscription_id, user_id, subscription.status, changed=True,
                      credits_granted=max(result.delta, 0))
