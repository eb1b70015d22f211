"""Structured logging helper for billing reconciliation."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("billing")


def mask_identifier(value: Optional[str]) -> str:
    """Shorten Stripe/user identifiers for batch logs."""
    if not value:
        return "-"
    value = str(value)
    if len(value) <= 8:
        return value
    return f"{value[:4]}…{value[-4:]}"


def log_billing_event(*, message: str, event_id: Optional[str] = None, user_id: Optional[Any] = None,
                      sync_run_id: Optional[Any] = None, actor: Optional[str] = None,
                      extra: Optional[Dict[str, Any]] = None, level: int = logging.INFO) -> None:
    payload: Dict[str, Any] = {"message": message}
    if event_id:
        payload["event_id"] = event_id
    if user_id:
        payload["user_id"] = str(user_id)
    if sync_run_id:
        payload["sync_run_id"] = str(sync_run_id)
    if actor:
        payload["actor"] = actor
    if extra:
        payload.update(extra)
    logger.log(level, payload)
