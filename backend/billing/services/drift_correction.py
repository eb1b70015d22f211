"""Scheduled jobs that repair drift between Stripe and local billing state.

Each job opens a ``SyncRun``, works through a freshly queried batch, and
closes the run exactly once. Errors on a single record are logged and
counted; anything escaping the per-record loop fails the run and is
re-raised as ``SyncJobFailed`` carrying the partial counts.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from billing.models import Subscription, SyncRun, WebhookEvent
from billing.observability.logging import log_billing_event, mask_identifier
from billing.services.event_store import (
    mark_event_completed,
    mark_event_failed,
    mark_event_unrecoverable,
    release_stalled_events,
)
from billing.services.stripe_gateway import StripeGateway, StripeServiceError, is_stripe_not_found_error
from billing.services.subscription_sync import (
    extract_customer_id,
    extract_period,
    extract_price_id,
    get_user_id_from_customer_id,
    mark_subscription_canceled,
    sync_subscription_from_stripe,
    update_subscription_period,
)
from billing.services.sync_runs import SyncRunError, complete_sync_run, create_sync_run

logger = logging.getLogger(__name__)

MAX_RECORDED_ERRORS = 50


class SyncJobFailed(RuntimeError):
    """Raised when a job aborts; the run has already been marked failed."""

    def __init__(self, message: str, *, sync_run_id=None, processed: int = 0, fixed: int = 0):
        super().__init__(message)
        self.sync_run_id = sync_run_id
        self.processed = processed
        self.fixed = fixed


@dataclass
class JobStats:
    processed: int = 0
    fixed: int = 0
    discrepancies: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    issues: List[Dict[str, Any]] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def record_error(self, identifier: str, exc: Exception) -> None:
        if len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append({"id": identifier, "error": str(exc)})

    def metadata(self) -> Dict[str, Any]:
        data = dict(self.extra)
        if self.errors:
            data["errors"] = self.errors
        if self.issues:
            data["issues"] = self.issues
        return data


@dataclass(frozen=True)
class JobOutcome:
    sync_run_id: Any
    run_type: str
    processed: int
    fixed: int
    discrepancies: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "processed": self.processed,
            "fixed": self.fixed,
            "syncRunId": str(self.sync_run_id),
            **self.extra,
        }


def _run_job(run_type: str, body: Callable[[JobStats], None], *, trigger: str) -> JobOutcome:
    run = create_sync_run(run_type, metadata={"trigger": trigger})
    stats = JobStats()

    try:
        body(stats)
    except Exception as exc:
        logger.exception("%s sync run %s failed", run_type, run.pk)
        try:
            complete_sync_run(
                run.pk,
                status=SyncRun.Status.FAILED,
                processed=stats.processed,
                fixed=stats.fixed,
                discrepancies=stats.discrepancies,
                error_message=str(exc),
                metadata=stats.metadata(),
            )
        except SyncRunError:
            logger.exception("Could not mark sync run %s as failed", run.pk)
        raise SyncJobFailed(str(exc), sync_run_id=run.pk, processed=stats.processed, fixed=stats.fixed) from exc

    complete_sync_run(
        run.pk,
        processed=stats.processed,
        fixed=stats.fixed,
        discrepancies=stats.discrepancies,
        metadata=stats.metadata(),
    )
    log_billing_event(
        message=f"{run_type} finished",
        sync_run_id=run.pk,
        extra={"processed": stats.processed, "fixed": stats.fixed, "errors": len(stats.errors)},
    )
    return JobOutcome(
        sync_run_id=run.pk,
        run_type=run_type,
        processed=stats.processed,
        fixed=stats.fixed,
        discrepancies=stats.discrepancies,
        extra={key: value for key, value in stats.extra.items() if not isinstance(value, (list, dict))},
    )


def _owner_for(remote: Dict[str, Any], fallback_user_id=None):
    return get_user_id_from_customer_id(extract_customer_id(remote)) or fallback_user_id


# ---------------------------------------------------------------------------
# Expiration check
# ---------------------------------------------------------------------------

def _check_expired_subscription(subscription: Subscription, gateway: StripeGateway) -> bool:
    try:
        remote = gateway.retrieve_subscription(subscription.pk)
    except StripeServiceError as exc:
        if is_stripe_not_found_error(exc):
            mark_subscription_canceled(subscription.user_id, subscription.pk)
            return True
        raise

    if remote.get("status") != Subscription.Status.ACTIVE:
        # Cancellation or dunning webhook never arrived.
        sync_subscription_from_stripe(_owner_for(remote, subscription.user_id), remote, gateway=gateway)
        return True

    # Stripe renewed before the renewal webhook reached us.
    return update_subscription_period(subscription.pk, remote)


def run_expiration_check(*, gateway: StripeGateway, trigger: str = "manual") -> JobOutcome:
    """Re-check active subscriptions whose period already ended."""

    batch_size = getattr(settings, "BILLING_EXPIRATION_BATCH_SIZE", 100)

    def body(stats: JobStats) -> None:
        expired = list(
            Subscription.objects.filter(
                status=Subscription.Status.ACTIVE,
                current_period_end__lt=timezone.now(),
            ).order_by("current_period_end")[:batch_size]
        )
        for subscription in expired:
            stats.processed += 1
            try:
                if _check_expired_subscription(subscription, gateway):
                    stats.fixed += 1
            except Exception as exc:
                logger.warning("Expiration check failed for subscription %s: %s",
                               mask_identifier(subscription.pk), exc)
                stats.record_error(subscription.pk, exc)

    return _run_job(SyncRun.RunType.EXPIRATION_CHECK, body, trigger=trigger)


# ---------------------------------------------------------------------------
# Full reconciliation
# ---------------------------------------------------------------------------

def detect_drift(subscription: Subscription, remote: Dict[str, Any], *, tolerance_seconds: int) -> List[str]:
    """Describe every way the local row disagrees with the Stripe object."""

    issues: List[str] = []
    remote_status = remote.get("status")
    if remote_status != subscription.status:
        issues.append(f"status {subscription.status} != {remote_status}")

    remote_price = extract_price_id(remote)
    if remote_price and remote_price != subscription.price_id:
        issues.append(f"price {subscription.price_id or '-'} != {remote_price}")

    _, remote_end = extract_period(remote)
    if remote_end is not None:
        local_end = subscription.current_period_end
        if local_end is None or abs((remote_end - local_end).total_seconds()) > tolerance_seconds:
            issues.append(f"period end {local_end} != {remote_end}")

    if bool(remote.get("cancel_at_period_end")) != subscription.cancel_at_period_end:
        issues.append("cancel_at_period_end mismatch")
    return issues


def _reconcile_subscription(subscription: Subscription, stats: JobStats, *, gateway: StripeGateway,
                            tolerance: int) -> None:
    try:
        remote = gateway.retrieve_subscription(subscription.pk)
    except StripeServiceError as exc:
        if not is_stripe_not_found_error(exc):
            raise
        mark_subscription_canceled(subscription.user_id, subscription.pk)
        stats.discrepancies += 1
        stats.fixed += 1
        stats.issues.append({
            "subscription_id": subscription.pk,
            "user_id": str(subscription.user_id),
            "issue": "missing upstream",
            "action": "marked canceled",
        })
        return

    issues = detect_drift(subscription, remote, tolerance_seconds=tolerance)
    if not issues:
        return

    stats.discrepancies += 1
    result = sync_subscription_from_stripe(_owner_for(remote, subscription.user_id), remote, gateway=gateway)
    action = "skipped stale snapshot" if result.stale else "synced"
    if not result.stale:
        stats.fixed += 1
    stats.issues.append({
        "subscription_id": subscription.pk,
        "user_id": str(subscription.user_id),
        "issue": "; ".join(issues),
        "action": action,
    })


def _discover_remote_subscriptions(stats: JobStats, *, gateway: StripeGateway, throttle: float) -> None:
    """Create rows for active Stripe subscriptions whose creation webhook was lost."""

    created = 0
    for remote in gateway.list_subscriptions(status=Subscription.Status.ACTIVE):
        subscription_id = remote.get("id")
        if not subscription_id or Subscription.objects.filter(pk=subscription_id).exists():
            continue

        stats.processed += 1
        user_id = get_user_id_from_customer_id(extract_customer_id(remote))
        if user_id is None:
            stats.issues.append({
                "subscription_id": subscription_id,
                "user_id": None,
                "issue": "missing locally, unknown customer",
                "action": "skipped",
            })
            continue

        try:
            sync_subscription_from_stripe(user_id, remote, gateway=gateway)
        except Exception as exc:
            logger.warning("Could not import subscription %s: %s", mask_identifier(subscription_id), exc)
            stats.record_error(subscription_id, exc)
            continue

        created += 1
        stats.discrepancies += 1
        stats.fixed += 1
        stats.issues.append({
            "subscription_id": subscription_id,
            "user_id": str(user_id),
            "issue": "missing locally",
            "action": "created",
        })
        if throttle:
            time.sleep(throttle)
    stats.extra["imported_subscriptions"] = created


def _check_plan_catalog(stats: JobStats, *, gateway: StripeGateway) -> None:
    active_prices = set(gateway.list_active_price_ids())
    inactive = sorted(price_id for price_id in gateway.plans.price_ids() if price_id not in active_prices)
    if inactive:
        logger.warning("Plan catalog references inactive Stripe prices: %s", ", ".join(inactive))
    stats.extra["inactive_catalog_prices"] = inactive


def run_full_reconciliation(*, gateway: StripeGateway, trigger: str = "manual") -> JobOutcome:
    """Compare every non-terminal subscription with Stripe and resync the ones that drifted.

    Covers the expiration check's population and more: trialing, past due,
    unpaid, incomplete and paused rows regardless of period state, plus
    active Stripe subscriptions that never reached the database.
    """

    batch_size = max(1, getattr(settings, "BILLING_RECONCILE_BATCH_SIZE", 40))
    throttle = getattr(settings, "BILLING_RECONCILE_THROTTLE_SECONDS", 0.1)
    tolerance = getattr(settings, "BILLING_RECONCILE_DRIFT_TOLERANCE_SECONDS", 3600)
    discover = getattr(settings, "BILLING_RECONCILE_DISCOVER_REMOTE", True)

    def body(stats: JobStats) -> None:
        queryset = Subscription.objects.exclude(status__in=Subscription.TERMINAL_STATUSES).order_by("pk")
        stats.extra.update(total_subscriptions=queryset.count(), batch_size=batch_size)

        cursor: Optional[str] = None
        batches = 0
        while True:
            page = queryset.filter(pk__gt=cursor) if cursor is not None else queryset
            batch = list(page[:batch_size])
            if not batch:
                break
            batches += 1
            for subscription in batch:
                stats.processed += 1
                try:
                    _reconcile_subscription(subscription, stats, gateway=gateway, tolerance=tolerance)
                except Exception as exc:
                    logger.warning("Reconciliation failed for subscription %s: %s",
                                   mask_identifier(subscription.pk), exc)
                    stats.record_error(subscription.pk, exc)
                if throttle:
                    time.sleep(throttle)
            cursor = batch[-1].pk
        stats.extra["batches"] = batches

        if discover:
            try:
                _discover_remote_subscriptions(stats, gateway=gateway, throttle=throttle)
            except StripeServiceError as exc:
                logger.warning("Listing Stripe subscriptions failed: %s", exc)
                stats.record_error("list_subscriptions", exc)
            try:
                _check_plan_catalog(stats, gateway=gateway)
            except StripeServiceError as exc:
                logger.warning("Listing Stripe prices failed: %s", exc)
                stats.record_error("list_prices", exc)

        stats.extra["discrepancies_found"] = stats.discrepancies

    return _run_job(SyncRun.RunType.FULL_RECONCILIATION, body, trigger=trigger)


# ---------------------------------------------------------------------------
# Webhook recovery
# ---------------------------------------------------------------------------

def _recover_event(event: WebhookEvent, *, gateway: StripeGateway, max_retries: int) -> str:
    """Re-run one stored event; returns the resulting event status."""

    from billing.tasks_webhooks import MalformedEventError, dispatch_event

    try:
        envelope = gateway.retrieve_event(event.event_id)
    except StripeServiceError as exc:
        if is_stripe_not_found_error(exc):
            mark_event_unrecoverable(event.event_id, "Event no longer available from Stripe", increment_retry=True)
            return WebhookEvent.Status.UNRECOVERABLE
        if not event.payload:
            return mark_event_failed(event.event_id, exc, increment_retry=True, max_retries=max_retries)
        logger.info("Falling back to stored payload for event %s: %s", mask_identifier(event.event_id), exc)
        envelope = event.payload

    try:
        with transaction.atomic():
            dispatch_event(
                event_id=event.event_id,
                event_type=envelope.get("type") or event.event_type,
                payload=envelope,
                gateway=gateway,
            )
    except MalformedEventError as exc:
        mark_event_unrecoverable(event.event_id, exc, increment_retry=True)
        return WebhookEvent.Status.UNRECOVERABLE
    except Exception as exc:
        logger.warning("Replay of event %s failed: %s", mask_identifier(event.event_id), exc)
        return mark_event_failed(event.event_id, exc, increment_retry=True, max_retries=max_retries)

    mark_event_completed(event.event_id, increment_retry=True)
    return WebhookEvent.Status.COMPLETED


def run_webhook_recovery(*, gateway: StripeGateway, trigger: str = "manual") -> JobOutcome:
    """Replay failed (or stalled) webhook events from Stripe's copy of the event."""

    max_retries = getattr(settings, "BILLING_WEBHOOK_MAX_RETRIES", 3)
    batch_size = getattr(settings, "BILLING_WEBHOOK_RECOVERY_BATCH_SIZE", 50)
    stale_minutes = getattr(settings, "BILLING_WEBHOOK_STALE_MINUTES", 15)

    def body(stats: JobStats) -> None:
        stats.extra["released_stalled"] = release_stalled_events(older_than_minutes=stale_minutes)

        events = list(
            WebhookEvent.objects.filter(
                status=WebhookEvent.Status.FAILED,
                recoverable=True,
                retry_count__lt=max_retries,
            ).order_by("created_at")[:batch_size]
        )
        recovered = unrecoverable = 0
        for event in events:
            stats.processed += 1
            try:
                status = _recover_event(event, gateway=gateway, max_retries=max_retries)
            except Exception as exc:
                logger.warning("Recovery bookkeeping failed for event %s: %s", mask_identifier(event.event_id), exc)
                stats.record_error(event.event_id, exc)
                continue

            if status == WebhookEvent.Status.COMPLETED:
                recovered += 1
                stats.fixed += 1
            elif status == WebhookEvent.Status.UNRECOVERABLE:
                unrecoverable += 1

        stats.extra.update(recovered=recovered, unrecoverable=unrecoverable)

    return _run_job(SyncRun.RunType.WEBHOOK_RECOVERY, body, trigger=trigger)


JOBS = {
    SyncRun.RunType.EXPIRATION_CHECK: run_expiration_check,
    SyncRun.RunType.FULL_RECONCILIATION: run_full_reconciliation,
    SyncRun.RunType.WEBHOOK_RECOVERY: run_webhook_recovery,
}
