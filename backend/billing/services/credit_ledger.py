"""Credit ledger: every balance change writes an immutable transaction in the same DB transaction."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, List, Optional, Tuple

from django.conf import settings
from django.db import transaction
from django.db.models import Q, Sum

from billing.models import CreditTransaction, Profile
from billing.observability.metrics import CREDIT_ADJUSTMENTS, ROLLOVER_OVERFLOW

logger = logging.getLogger(__name__)

TransactionType = CreditTransaction.TransactionType
Pool = CreditTransaction.Pool

POOL_BY_TYPE = {
    TransactionType.SUBSCRIPTION: Pool.SUBSCRIPTION,
    TransactionType.EXPIRED: Pool.SUBSCRIPTION,
    TransactionType.PURCHASE: Pool.PURCHASED,
    TransactionType.BONUS: Pool.PURCHASED,
    TransactionType.REFUND: Pool.PURCHASED,
    TransactionType.USAGE: Pool.PURCHASED,
}

BALANCE_FIELDS = {
    Pool.SUBSCRIPTION: "subscription_credits_balance",
    Pool.PURCHASED: "purchased_credits_balance",
}

OVERFLOW_RECORD = "record"
OVERFLOW_DROP = "drop"


class CreditLedgerError(RuntimeError):
    """Base exception for credit ledger operations."""


class ProfileNotFound(CreditLedgerError):
    """Raised when the requested billing profile cannot be located."""


class InvalidCreditAmount(CreditLedgerError):
    """Raised when an amount or target balance is not acceptable."""


class InsufficientCredits(CreditLedgerError):
    """Raised when a debit would drive a balance below zero."""


@dataclass(frozen=True)
class CreditLedgerResult:
    profile: Profile
    transactions: Tuple[CreditTransaction, ...]
    created: bool
    delta: int

    @property
    def transaction(self) -> Optional[CreditTransaction]:
        return self.transactions[0] if self.transactions else None


def _normalize_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidCreditAmount(f"Credit amounts must be integers, got {amount!r}.")
    return amount


def _lock_profile(user_id) -> Profile:
    try:
        return Profile.objects.select_for_update().get(user_id=user_id)
    except Profile.DoesNotExist as exc:
        raise ProfileNotFound(f"No billing profile for user {user_id}.") from exc


def _replayed(profile: Profile, idempotency_key: Optional[str]) -> Optional[CreditLedgerResult]:
    """Return the entries already written under ``idempotency_key`` (and its ``key:suffix`` siblings)."""
    if not idempotency_key:
        return None
    existing = list(
        CreditTransaction.objects.filter(user_id=profile.user_id)
        .filter(Q(idempotency_key=idempotency_key) | Q(idempotency_key__startswith=f"{idempotency_key}:"))
        .order_by("created_at")
    )
    if not existing:
        return None
    return CreditLedgerResult(
        profile=profile,
        transactions=tuple(existing),
        created=False,
        delta=sum(tx.amount for tx in existing),
    )


def _post(
    profile: Profile,
    *,
    amount: int,
    tx_type: str,
    pool: str,
    description: str,
    reference_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> CreditTransaction:
    """Apply ``amount`` to ``pool`` on the locked profile and log the entry."""

    field = BALANCE_FIELDS[pool]
    new_balance = getattr(profile, field) + amount
    if new_balance < 0:
        raise InsufficientCredits(
            f"User {profile.user_id} has {getattr(profile, field)} {pool} credits; cannot apply {amount}."
        )
    setattr(profile, field, new_balance)

    record = CreditTransaction.objects.create(
        user_id=profile.user_id,
        amount=amount,
        type=tx_type,
        pool=pool,
        reference_id=reference_id,
        idempotency_key=idempotency_key,
        description=description or "",
        subscription_balance_after=profile.subscription_credits_balance,
        purchased_balance_after=profile.purchased_credits_balance,
        metadata=metadata or None,
    )
    CREDIT_ADJUSTMENTS.labels(type=tx_type).inc()
    return record


def _save_balances(profile: Profile) -> None:
    profile.save(update_fields=["subscription_credits_balance", "purchased_credits_balance", "updated_at"])


def adjust_credits(
    *,
    user_id,
    amount,
    type: str,
    reason: str,
    pool: Optional[str] = None,
    reference_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> CreditLedgerResult:
    """Apply a signed credit movement atomically.

    Usage debits are taken from subscription credits first, then purchased
    credits. Any other type goes to its own pool (or ``pool`` when given).
    A movement that would leave a balance negative raises
    ``InsufficientCredits`` and writes nothing.
    """

    normalized = _normalize_amount(amount)
    if normalized == 0:
        raise InvalidCreditAmount("Adjustment amount must be non-zero.")
    if type not in TransactionType.values:
        raise InvalidCreditAmount(f"Unknown credit transaction type: {type!r}")

    with transaction.atomic():
        profile = _lock_profile(user_id)

        replay = _replayed(profile, idempotency_key)
        if replay:
            return replay

        if type == TransactionType.USAGE and normalized < 0 and pool is None:
            records = _consume_fifo(
                profile,
                amount=-normalized,
                description=reason,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
                metadata=metadata,
            )
        else:
            target_pool = pool or POOL_BY_TYPE.get(type)
            if target_pool is None:
                raise InvalidCreditAmount(f"A pool is required for {type} adjustments.")
            records = [
                _post(
                    profile,
                    amount=normalized,
                    tx_type=type,
                    pool=target_pool,
                    description=reason,
                    reference_id=reference_id,
                    idempotency_key=idempotency_key,
                    metadata=metadata,
                )
            ]

        _save_balances(profile)

    return CreditLedgerResult(profile=profile, transactions=tuple(records), created=True, delta=normalized)


def _consume_fifo(profile: Profile, *, amount: int, description: str, reference_id, idempotency_key, metadata):
    if profile.total_credits < amount:
        raise InsufficientCredits(
            f"User {profile.user_id} has {profile.total_credits} credits; {amount} required."
        )

    from_subscription = min(profile.subscription_credits_balance, amount)
    from_purchased = amount - from_subscription

    records: List[CreditTransaction] = []
    if from_subscription:
        records.append(
            _post(
                profile,
                amount=-from_subscription,
                tx_type=TransactionType.USAGE,
                pool=Pool.SUBSCRIPTION,
                description=description,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
                metadata=metadata,
            )
        )
    if from_purchased:
        purchased_key = idempotency_key
        if idempotency_key and records:
            purchased_key = f"{idempotency_key}:purchased"
        records.append(
            _post(
                profile,
                amount=-from_purchased,
                tx_type=TransactionType.USAGE,
                pool=Pool.PURCHASED,
                description=description,
                reference_id=reference_id,
                idempotency_key=purchased_key,
                metadata=metadata,
            )
        )
    return records


def consume_credits(*, user_id, amount: int, reason: str, reference_id: Optional[str] = None,
                    idempotency_key: Optional[str] = None) -> CreditLedgerResult:
    """Debit ``amount`` credits, subscription credits first."""

    normalized = _normalize_amount(amount)
    if normalized <= 0:
        raise InvalidCreditAmount("Consumption amount must be positive.")
    return adjust_credits(
        user_id=user_id,
        amount=-normalized,
        type=TransactionType.USAGE,
        reason=reason,
        reference_id=reference_id,
        idempotency_key=idempotency_key,
    )


def add_purchased_credits(*, user_id, amount: int, reason: str, reference_id: Optional[str] = None,
                          idempotency_key: Optional[str] = None,
                          metadata: Optional[dict] = None) -> CreditLedgerResult:
    normalized = _normalize_amount(amount)
    if normalized <= 0:
        raise InvalidCreditAmount("Purchased credit amount must be positive.")
    return adjust_credits(
        user_id=user_id,
        amount=normalized,
        type=TransactionType.PURCHASE,
        reason=reason,
        reference_id=reference_id,
        idempotency_key=idempotency_key,
        metadata=metadata,
    )


def grant_subscription_credits(
    *,
    user_id,
    amount: int,
    cap: int,
    reason: str,
    idempotency_key: Optional[str] = None,
    reference_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    overflow_policy: Optional[str] = None,
) -> CreditLedgerResult:
    """Grant a cycle's subscription credits, keeping at most ``cap``.

    The resulting balance is ``min(current + amount, cap)``. With the
    ``record`` policy the full grant is posted followed by an ``expired``
    entry for the overflow; with ``drop`` only the net change is posted.
    """

    normalized = _normalize_amount(amount)
    if normalized <= 0:
        raise InvalidCreditAmount("Subscription grant must be positive.")
    cap = _normalize_amount(cap)
    if cap < 0:
        raise InvalidCreditAmount("Rollover cap must be non-negative.")

    policy = overflow_policy or getattr(settings, "BILLING_ROLLOVER_OVERFLOW_POLICY", OVERFLOW_RECORD)
    if policy not in (OVERFLOW_RECORD, OVERFLOW_DROP):
        raise InvalidCreditAmount(f"Unknown rollover overflow policy: {policy!r}")

    with transaction.atomic():
        profile = _lock_profile(user_id)

        replay = _replayed(profile, idempotency_key)
        if replay:
            return replay

        current = profile.subscription_credits_balance
        target = min(current + normalized, cap)
        overflow = current + normalized - target
        details = dict(metadata or {}, grant=normalized, cap=cap, overflow=overflow, policy=policy)

        records: List[CreditTransaction] = []
        if policy == OVERFLOW_RECORD:
            records.append(
                _post(
                    profile,
                    amount=normalized,
                    tx_type=TransactionType.SUBSCRIPTION,
                    pool=Pool.SUBSCRIPTION,
                    description=reason,
                    reference_id=reference_id,
                    idempotency_key=idempotency_key,
                    metadata=details,
                )
            )
            if overflow:
                records.append(
                    _post(
                        profile,
                        amount=-overflow,
                        tx_type=TransactionType.EXPIRED,
                        pool=Pool.SUBSCRIPTION,
                        description=f"Rollover cap of {cap} reached; {overflow} credits dropped",
                        reference_id=reference_id,
                        idempotency_key=f"{idempotency_key}:overflow" if idempotency_key else None,
                        metadata=details,
                    )
                )
        else:
            net = target - current
            if net:
                tx_type = TransactionType.SUBSCRIPTION if net > 0 else TransactionType.EXPIRED
                description = reason if not overflow else f"{reason} (capped at {cap}, {overflow} dropped)"
                records.append(
                    _post(
                        profile,
                        amount=net,
                        tx_type=tx_type,
                        pool=Pool.SUBSCRIPTION,
                        description=description,
                        reference_id=reference_id,
                        idempotency_key=idempotency_key,
                        metadata=details,
                    )
                )

        if overflow:
            ROLLOVER_OVERFLOW.inc(overflow)
            logger.info(
                "Rollover cap applied for user %s: grant=%s cap=%s overflow=%s policy=%s",
                user_id,
                normalized,
                cap,
                overflow,
                policy,
            )

        _save_balances(profile)

    return CreditLedgerResult(profile=profile, transactions=tuple(records), created=bool(records),
                              delta=target - current)


def expire_subscription_credits(*, user_id, reason: str, reference_id: Optional[str] = None,
                                idempotency_key: Optional[str] = None) -> CreditLedgerResult:
    """Zero the subscription pool; purchased credits are untouched."""

    with transaction.atomic():
        profile = _lock_profile(user_id)

        replay = _replayed(profile, idempotency_key)
        if replay:
            return replay

        balance = profile.subscription_credits_balance
        if balance == 0:
            return CreditLedgerResult(profile=profile, transactions=(), created=False, delta=0)

        record = _post(
            profile,
            amount=-balance,
            tx_type=TransactionType.EXPIRED,
            pool=Pool.SUBSCRIPTION,
            description=reason,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        )
        _save_balances(profile)

    return CreditLedgerResult(profile=profile, transactions=(record,), created=True, delta=-balance)


def reset_subscription_credits(*, user_id, amount: int, reason: str, reference_id: Optional[str] = None,
                               idempotency_key: Optional[str] = None) -> CreditLedgerResult:
    """Replace the subscription pool with a fresh grant of ``amount``."""

    normalized = _normalize_amount(amount)
    if normalized < 0:
        raise InvalidCreditAmount("Subscription credit amount must be non-negative.")

    with transaction.atomic():
        profile = _lock_profile(user_id)

        replay = _replayed(profile, idempotency_key)
        if replay:
            return replay

        previous = profile.subscription_credits_balance
        records: List[CreditTransaction] = []
        if previous:
            records.append(
                _post(
                    profile,
                    amount=-previous,
                    tx_type=TransactionType.EXPIRED,
                    pool=Pool.SUBSCRIPTION,
                    description=f"{reason} (previous plan credits expired)",
                    reference_id=reference_id,
                    idempotency_key=idempotency_key,
                )
            )
        if normalized:
            grant_key = idempotency_key
            if idempotency_key and records:
                grant_key = f"{idempotency_key}:grant"
            records.append(
                _post(
                    profile,
                    amount=normalized,
                    tx_type=TransactionType.SUBSCRIPTION,
                    pool=Pool.SUBSCRIPTION,
                    description=reason,
                    reference_id=reference_id,
                    idempotency_key=grant_key,
                )
            )
        _save_balances(profile)

    return CreditLedgerResult(profile=profile, transactions=tuple(records), created=bool(records),
                              delta=normalized - previous)


def clawback_purchased_credits(*, user_id, amount: int, reason: str, reference_id: Optional[str] = None,
                               idempotency_key: Optional[str] = None) -> CreditLedgerResult:
    """Reverse refunded purchases, limited to what is left in the purchased pool."""

    normalized = _normalize_amount(amount)
    if normalized <= 0:
        raise InvalidCreditAmount("Clawback amount must be positive.")

    with transaction.atomic():
        profile = _lock_profile(user_id)

        replay = _replayed(profile, idempotency_key)
        if replay:
            return replay

        recoverable = min(normalized, profile.purchased_credits_balance)
        if recoverable == 0:
            logger.warning("Nothing to claw back for user %s (requested %s).", user_id, normalized)
            return CreditLedgerResult(profile=profile, transactions=(), created=False, delta=0)

        record = _post(
            profile,
            amount=-recoverable,
            tx_type=TransactionType.REFUND,
            pool=Pool.PURCHASED,
            description=reason,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            metadata={"requested": normalized, "clawed_back": recoverable},
        )
        _save_balances(profile)

    return CreditLedgerResult(profile=profile, transactions=(record,), created=True, delta=-recoverable)


def set_credit_balance(*, user_id, pool: str, target: int, reason: str, actor_id=None) -> CreditLedgerResult:
    """Administrative override: move ``pool`` to ``target`` and log the delta."""

    if pool not in BALANCE_FIELDS:
        raise InvalidCreditAmount(f"Unknown credit pool: {pool!r}")
    target = _normalize_amount(target)
    if target < 0:
        raise InvalidCreditAmount("Target balance must be non-negative.")

    with transaction.atomic():
        profile = _lock_profile(user_id)
        current = getattr(profile, BALANCE_FIELDS[pool])
        delta = target - current
        if delta == 0:
            return CreditLedgerResult(profile=profile, transactions=(), created=False, delta=0)

        record = _post(
            profile,
            amount=delta,
            tx_type=TransactionType.ADMIN_ADJUSTMENT,
            pool=pool,
            description=reason,
            metadata={"actor_id": str(actor_id) if actor_id else None, "previous": current, "target": target},
        )
        _save_balances(profile)

    logger.info("Admin %s set %s credits of user %s from %s to %s", actor_id, pool, user_id, current, target)
    return CreditLedgerResult(profile=profile, transactions=(record,), created=True, delta=delta)


def ledger_totals(user_id) -> Dict[str, int]:
    """Sum the ledger per pool; matches the profile balances when nothing is in flight."""

    totals = {Pool.SUBSCRIPTION.value: 0, Pool.PURCHASED.value: 0}
    rows = (
        CreditTransaction.objects.filter(user_id=user_id)
        .values("pool")
        .annotate(total=Sum("amount"))
        .order_by()
    )
    for row in rows:
        totals[row["pool"]] = row["total"] or 0
    return totals
