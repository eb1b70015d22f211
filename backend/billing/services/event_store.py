"""Webhook event store: idempotency claims and processing status transitions."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import Any, Dict, Optional

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from billing.models import WebhookEvent

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class EventClaim:
    event: Optional[WebhookEvent]
    is_new: bool
    existing_status: Optional[str] = None


def claim_event(event_id: str, event_type: str, payload: Optional[Dict[str, Any]] = None) -> EventClaim:
    """Insert a ``processing`` record for ``event_id`` unless one already exists.

    The unique index on ``event_id`` arbitrates concurrent deliveries: the
    loser gets ``is_new=False`` and must not apply side effects.
    """

    if not event_id:
        raise ValueError("event_id is required.")

    try:
        with transaction.atomic():
            event = WebhookEvent.objects.create(
                event_id=event_id,
                event_type=event_type or "",
                status=WebhookEvent.Status.PROCESSING,
                payload=payload,
            )
    except IntegrityError:
        existing_status = (
            WebhookEvent.objects.filter(event_id=event_id).values_list("status", flat=True).first()
        )
        logger.info("Stripe event %s already recorded with status %s; skipping.", event_id, existing_status)
        return EventClaim(event=None, is_new=False, existing_status=existing_status)

    return EventClaim(event=event, is_new=True)


def mark_event_completed(event_id: str, *, increment_retry: bool = False) -> None:
    now = timezone.now()
    updates: Dict[str, Any] = {
        "status": WebhookEvent.Status.COMPLETED,
        "error_message": "",
        "completed_at": now,
    }
    if increment_retry:
        updates["retry_count"] = F("retry_count") + 1
        updates["last_retry_at"] = now

    updated = WebhookEvent.objects.filter(event_id=event_id).update(**updates)
    if not updated:
        raise WebhookEvent.DoesNotExist(f"Webhook event {event_id} is not recorded.")


def mark_event_failed(
    event_id: str,
    error: Any,
    *,
    recoverable: bool = True,
    increment_retry: bool = False,
    max_retries: Optional[int] = None,
) -> WebhookEvent.Status:
    """Record a failure; returns the resulting status.

    When ``max_retries`` is given and the retry counter reaches it, the
    event is moved to ``unrecoverable`` instead.
    """

    now = timezone.now()
    with transaction.atomic():
        event = WebhookEvent.objects.select_for_update().get(event_id=event_id)
        if increment_retry:
            event.retry_count += 1
            event.last_retry_at = now

        status = WebhookEvent.Status.FAILED
        if not recoverable or (max_retries is not None and event.retry_count >= max_retries):
            status = WebhookEvent.Status.UNRECOVERABLE
            recoverable = False

        event.status = status
        event.recoverable = recoverable
        event.error_message = str(error)[:MAX_ERROR_LENGTH]
        event.completed_at = now
        event.save(update_fields=["status", "recoverable", "error_message", "completed_at", "retry_count",
                                  "last_retry_at"])
    return status


def mark_event_unrecoverable(event_id: str, error: Any, *, increment_retry: bool = False) -> None:
    mark_event_failed(event_id, error, recoverable=False, increment_retry=increment_retry)


def release_stalled_events(*, older_than_minutes: int) -> int:
    """Flip ``processing`` records older than the cutoff to ``failed`` so recovery picks them up."""

    cutoff = timezone.now() - timedelta(minutes=older_than_minutes)
    count = WebhookEvent.objects.filter(
        status=WebhookEvent.Status.PROCESSING,
        created_at__lt=cutoff,
    ).update(
        status=WebhookEvent.Status.FAILED,
        error_message="Processing stalled; released for recovery.",
    )
    if count:
        logger.warning("Released %s stalled webhook events older than %s minutes.", count, older_than_minutes)
    return count


def purge_completed_events(*, days: int) -> int:
    """Delete completed records older than ``days``; failed ones are kept for follow-up."""

    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = WebhookEvent.objects.filter(
        status=WebhookEvent.Status.COMPLETED,
        created_at__lt=cutoff,
    ).delete()
    return deleted
