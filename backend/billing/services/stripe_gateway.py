"""Stripe access for the billing reconciliation flows.

``StripeGateway`` is built once when the billing app is ready and handed to
the synchronizer and job functions explicitly. It keeps its own API key
instead of mutating ``stripe.api_key`` so tests and scripts can run several
gateways side by side.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from django.apps import apps
from django.conf import settings
import stripe

from .plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TOLERANCE = 300


class StripeConfigurationError(RuntimeError):
    """Raised when mandatory Stripe configuration is missing."""


class StripeServiceError(RuntimeError):
    """Raised when Stripe returns an operational error."""


class StripeWebhookSignatureError(StripeServiceError):
    """Raised when webhook signature validation fails."""


class StripeResourceNotFound(StripeServiceError):
    """Raised when Stripe no longer knows the requested object."""


def is_stripe_not_found_error(error: Any) -> bool:
    """Return True when ``error`` means the Stripe object was deleted upstream."""

    if error is None or isinstance(error, (str, bytes, int, float, bool)):
        return False
    if isinstance(error, StripeResourceNotFound):
        return True
    if isinstance(error, stripe.InvalidRequestError):
        return (
            getattr(error, "http_status", None) == 404
            or getattr(error, "code", None) == "resource_missing"
            or "No such" in str(getattr(error, "user_message", None) or error)
        )

    # Plain error payloads (e.g. serialized SDK errors stored in metadata).
    if isinstance(error, Mapping):
        error_type = error.get("type")
        status_code = error.get("statusCode", error.get("status_code"))
        message = error.get("message") or ""
    else:
        error_type = getattr(error, "type", None)
        status_code = getattr(error, "statusCode", getattr(error, "status_code", None))
        message = getattr(error, "message", None) or ""

    if error_type != "StripeInvalidRequestError":
        return False
    return status_code == 404 or "No such" in str(message)


def _to_plain_dict(stripe_object: Any) -> Dict[str, Any]:
    for method_name in ("to_dict_recursive", "to_dict"):
        method = getattr(stripe_object, method_name, None)
        if callable(method):
            return method()
    return dict(stripe_object)


class StripeGateway:
    """Explicit registry for Stripe credentials, API calls and the plan catalog."""

    def __init__(
        self,
        *,
        api_key: str = "",
        webhook_secret: str = "",
        api_version: Optional[str] = None,
        plans: Optional[PlanCatalog] = None,
        webhook_tolerance: int = DEFAULT_WEBHOOK_TOLERANCE,
    ):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._api_version = api_version or None
        self._webhook_tolerance = webhook_tolerance
        self.plans = plans if plans is not None else PlanCatalog({})

    @classmethod
    def from_settings(cls) -> "StripeGateway":
        return cls(
            api_key=getattr(settings, "STRIPE_SECRET_KEY", ""),
            webhook_secret=getattr(settings, "STRIPE_WEBHOOK_SECRET", ""),
            api_version=getattr(settings, "STRIPE_API_VERSION", None),
            plans=PlanCatalog.from_settings(),
            webhook_tolerance=getattr(settings, "STRIPE_WEBHOOK_TOLERANCE_SECONDS", DEFAULT_WEBHOOK_TOLERANCE),
        )

    def __repr__(self) -> str:
        return f"StripeGateway<plans={len(self.plans)} api_version={self._api_version or 'default'}>"

    def _request_options(self) -> Dict[str, Any]:
        if not self._api_key:
            raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured.")
        options: Dict[str, Any] = {"api_key": self._api_key}
        if self._api_version:
            options["stripe_version"] = self._api_version
        return options

    def construct_event(self, payload: Union[bytes, str], sig_header: Optional[str]) -> Dict[str, Any]:
        """Verify the signature of a webhook body and return the decoded envelope."""

        if not sig_header:
            raise StripeWebhookSignatureError("Stripe-Signature header is missing.")
        if not self._webhook_secret:
            raise StripeConfigurationError("STRIPE_WEBHOOK_SECRET is not configured.")

        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")

        try:
            stripe.WebhookSignature.verify_header(
                payload,
                sig_header,
                self._webhook_secret,
                self._webhook_tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise StripeWebhookSignatureError("Stripe webhook signature verification failed.") from exc

        try:
            event = json.loads(payload)
        except ValueError as exc:
            logger.error("Received malformed Stripe webhook payload: %s", exc)
            raise StripeServiceError("Malformed Stripe webhook payload.") from exc
        if not isinstance(event, dict):
            raise StripeServiceError("Stripe webhook payload must be a JSON object.")
        return event

    def _translate_error(self, exc: Exception, label: str, object_id: str) -> StripeServiceError:
        if is_stripe_not_found_error(exc):
            logger.info("Stripe %s %s no longer exists: %s", label, object_id, exc)
            return StripeResourceNotFound(str(exc))
        logger.warning("Failed to retrieve Stripe %s %s: %s", label, object_id, exc)
        return StripeServiceError(str(exc))

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Fetch a Stripe subscription object as a plain dictionary."""

        if not subscription_id:
            raise ValueError("subscription_id is required.")

        try:
            subscription = stripe.Subscription.retrieve(subscription_id, **self._request_options())
        except stripe.StripeError as exc:
            raise self._translate_error(exc, "subscription", subscription_id) from exc
        return _to_plain_dict(subscription)

    def retrieve_event(self, event_id: str) -> Dict[str, Any]:
        """Fetch a Stripe event envelope as a plain dictionary."""

        if not event_id:
            raise ValueError("event_id is required.")

        try:
            event = stripe.Event.retrieve(event_id, **self._request_options())
        except stripe.StripeError as exc:
            raise self._translate_error(exc, "event", event_id) from exc
        return _to_plain_dict(event)

    def list_subscriptions(self, *, status: str = "active", page_size: int = 100) -> Iterator[Dict[str, Any]]:
        """Yield Stripe subscriptions with the given status, following pagination."""

        try:
            page = stripe.Subscription.list(status=status, limit=page_size, **self._request_options())
            for subscription in page.auto_paging_iter():
                yield _to_plain_dict(subscription)
        except stripe.StripeError as exc:
            logger.warning("Failed to list Stripe subscriptions (status=%s): %s", status, exc)
            raise StripeServiceError(str(exc)) from exc

    def list_active_price_ids(self) -> List[str]:
        """Return the ids of every active Stripe price."""

        try:
            page = stripe.Price.list(active=True, limit=100, **self._request_options())
            return [price["id"] for price in page.auto_paging_iter()]
        except stripe.StripeError as exc:
            logger.warning("Failed to list Stripe prices: %s", exc)
            raise StripeServiceError(str(exc)) from exc


def get_gateway() -> StripeGateway:
    """Return the gateway built by ``BillingConfig.ready``."""

    return apps.get_app_config("billing").gateway
