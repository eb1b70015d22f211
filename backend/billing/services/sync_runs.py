"""Sync run bookkeeping for drift-correction jobs."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from django.db import transaction
from django.utils import timezone

from billing.models import SyncRun
from billing.observability.metrics import SYNC_RUN_FIXED, SYNC_RUNS

logger = logging.getLogger(__name__)


class SyncRunError(RuntimeError):
    """Base exception for sync run bookkeeping."""


class SyncRunAlreadyFinished(SyncRunError):
    """Raised when a run that already left ``processing`` is completed again."""


def create_sync_run(run_type: str, *, metadata: Optional[Dict[str, Any]] = None) -> SyncRun:
    if run_type not in SyncRun.RunType.values:
        raise SyncRunError(f"Unknown sync run type: {run_type!r}")
    run = SyncRun.objects.create(run_type=run_type, metadata=metadata or {})
    logger.info("Started %s sync run %s", run_type, run.pk)
    return run


def complete_sync_run(
    sync_run_id,
    *,
    status: str = SyncRun.Status.COMPLETED,
    processed: int = 0,
    fixed: int = 0,
    discrepancies: int = 0,
    error_message: str = "",
    metadata: Optional[Dict[str, Any]] = None,
) -> SyncRun:
    """Close a run exactly once with its final counts."""

    if status not in (SyncRun.Status.COMPLETED, SyncRun.Status.FAILED):
        raise SyncRunError(f"A sync run cannot be completed with status {status!r}.")

    with transaction.atomic():
        run = SyncRun.objects.select_for_update().get(pk=sync_run_id)
        if run.status != SyncRun.Status.PROCESSING:
            raise SyncRunAlreadyFinished(f"Sync run {sync_run_id} is already {run.status}.")

        run.status = status
        run.records_processed = processed
        run.records_fixed = fixed
        run.discrepancies_found = discrepancies
        run.error_message = error_message or ""
        run.metadata = {**(run.metadata or {}), **(metadata or {})}
        run.completed_at = timezone.now()
        run.save(update_fields=[
            "status",
            "records_processed",
            "records_fixed",
            "discrepancies_found",
            "error_message",
            "metadata",
            "completed_at",
        ])

    SYNC_RUNS.labels(run_type=run.run_type, status=status).inc()
    if fixed:
        SYNC_RUN_FIXED.labels(run_type=run.run_type).inc(fixed)
    logger.info(
        "Sync run %s (%s) %s: processed=%s fixed=%s",
        run.pk,
        run.run_type,
        status,
        processed,
        fixed,
    )
    return run
