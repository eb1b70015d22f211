"""Subscription plan catalog keyed by Stripe price id."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, Iterator, Mapping, Optional

from django.conf import settings

logger = logging.getLogger(__name__)

DEFAULT_ROLLOVER_MULTIPLIER = 6


class PlanCatalogError(Exception):
    """Base exception for plan catalog issues."""


class CatalogConfigurationError(PlanCatalogError):
    """Raised when the plan catalog in settings is missing or malformed."""


@dataclass(frozen=True)
class Plan:
    """A Stripe-backed subscription plan and the credits it grants."""

    price_id: str
    key: str
    name: str
    credits_per_cycle: int
    max_rollover: int
    trial_credits: int = 0


class PlanCatalog:
    """Read-only lookup of plans by price id."""

    def __init__(self, plans: Mapping[str, Plan]):
        self._plans: Dict[str, Plan] = dict(plans)

    def __iter__(self) -> Iterator[Plan]:
        return iter(self._plans.values())

    def __len__(self) -> int:
        return len(self._plans)

    def get(self, price_id: Optional[str]) -> Optional[Plan]:
        if not price_id:
            return None
        return self._plans.get(price_id)

    def price_ids(self):
        return list(self._plans)

    @classmethod
    def from_mapping(cls, config: Mapping[str, Mapping[str, object]]) -> "PlanCatalog":
        if not isinstance(config, Mapping):
            raise CatalogConfigurationError("BILLING_PLANS must be a mapping of price ids to plan definitions.")

        plans: Dict[str, Plan] = {}
        for price_id, raw in config.items():
            if not isinstance(raw, Mapping):
                raise CatalogConfigurationError(f"Plan definition for '{price_id}' must be a mapping.")
            try:
                credits = int(raw["credits_per_cycle"])
            except (KeyError, TypeError, ValueError) as exc:
                raise CatalogConfigurationError(
                    f"Plan '{price_id}' must define an integer credits_per_cycle."
                ) from exc
            if credits <= 0:
                raise CatalogConfigurationError(f"Plan '{price_id}' must grant a positive number of credits.")

            raw_cap = raw.get("max_rollover")
            try:
                max_rollover = credits * DEFAULT_ROLLOVER_MULTIPLIER if raw_cap is None else int(raw_cap)
            except (TypeError, ValueError) as exc:
                raise CatalogConfigurationError(f"Plan '{price_id}' has a non-integer max_rollover.") from exc
            if max_rollover < 0:
                raise CatalogConfigurationError(f"Plan '{price_id}' must not have a negative max_rollover.")
            if max_rollover < credits:
                logger.warning(
                    "Plan %s rollover cap %s is below its monthly grant %s; grants will be clipped.",
                    price_id,
                    max_rollover,
                    credits,
                )

            key = str(raw.get("key") or price_id)
            plans[price_id] = Plan(
                price_id=price_id,
                key=key,
                name=str(raw.get("name") or key.title()),
                credits_per_cycle=credits,
                max_rollover=max_rollover,
                trial_credits=int(raw.get("trial_credits") or 0),
            )
        return cls(plans)

    @classmethod
    def from_settings(cls) -> "PlanCatalog":
        return cls.from_mapping(getattr(settings, "BILLING_PLANS", {}) or {})
