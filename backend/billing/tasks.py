"""Celery tasks for scheduled billing drift correction."""
from __future__ import annotations

import logging
from typing import Any, Dict

from celery import shared_task
from django.conf import settings
from django.db import OperationalError

from billing.services.drift_correction import (
    SyncJobFailed,
    run_expiration_check as _run_expiration_check,
    run_full_reconciliation as _run_full_reconciliation,
    run_webhook_recovery as _run_webhook_recovery,
)
from billing.services.event_store import purge_completed_events
from billing.services.stripe_gateway import get_gateway

logger = logging.getLogger(__name__)


def _failure_payload(exc: SyncJobFailed) -> Dict[str, Any]:
    return {
        "success": False,
        "error": str(exc),
        "processed": exc.processed,
        "fixed": exc.fixed,
        "syncRunId": str(exc.sync_run_id) if exc.sync_run_id else None,
    }


def _failed_job_result(exc: SyncJobFailed) -> Dict[str, Any]:
    # Database outages surface to Celery so autoretry can reschedule the job.
    if isinstance(exc.__cause__, OperationalError):
        raise exc.__cause__
    return _failure_payload(exc)


@shared_task(queue="billing", autoretry_for=(OperationalError,), retry_backoff=True, max_retries=3)
def run_expiration_check(trigger: str = "beat") -> Dict[str, Any]:
    """Hourly: re-check active subscriptions whose billing period already ended."""

    try:
        return _run_expiration_check(gateway=get_gateway(), trigger=trigger).as_response()
    except SyncJobFailed as exc:
        logger.error("Expiration check failed: %s", exc)
        return _failed_job_result(exc)


@shared_task(queue="billing", autoretry_for=(OperationalError,), retry_backoff=True, max_retries=3)
def run_full_reconciliation(trigger: str = "beat") -> Dict[str, Any]:
    """Daily: compare every non-terminal subscription with Stripe."""

    try:
        return _run_full_reconciliation(gateway=get_gateway(), trigger=trigger).as_response()
    except SyncJobFailed as exc:
        logger.error("Full reconciliation failed: %s", exc)
        return _failed_job_result(exc)


@shared_task(queue="billing", autoretry_for=(OperationalError,), retry_backoff=True, max_retries=3)
def run_webhook_recovery(trigger: str = "beat") -> Dict[str, Any]:
    """Every 15 minutes: replay failed webhook events."""

    try:
        return _run_webhook_recovery(gateway=get_gateway(), trigger=trigger).as_response()
    except SyncJobFailed as exc:
        logger.error("Webhook recovery failed: %s", exc)
        return _failed_job_result(exc)


@shared_task(queue="billing")
def cleanup_webhook_events(days: int = None) -> int:
    """Remove completed webhook events older than ``days`` days."""

    if days is None:
        days = getattr(settings, "BILLING_WEBHOOK_RETENTION_DAYS", 30)
    deleted = purge_completed_events(days=days)
    logger.info("Cleaned up %s completed webhook events older than %s days.", deleted, days)
    return deleted
