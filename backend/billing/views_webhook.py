"""Stripe webhook endpoint for subscription and credit events."""
from __future__ import annotations

import logging
import time

from django.db import transaction
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.observability.logging import log_billing_event
from billing.observability.metrics import WEBHOOK_EVENTS, WEBHOOK_LATENCY
from billing.services.event_store import claim_event, mark_event_completed, mark_event_failed
from billing.services.stripe_gateway import (
    StripeConfigurationError,
    StripeServiceError,
    StripeWebhookSignatureError,
    get_gateway,
)
from billing.tasks_webhooks import HandlerResult, MalformedEventError, dispatch_event

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name="dispatch")
class StripeWebhookView(APIView):
    """Verify, deduplicate and apply Stripe webhook events synchronously.

    Processing failures are recorded on the event store and acknowledged with
    200 so Stripe stops redelivering; the recovery job owns retries from then on.
    """

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):  # noqa: D401 - DRF signature
        gateway = get_gateway()
        sig_header = request.headers.get("Stripe-Signature")

        try:
            event = gateway.construct_event(request.body, sig_header)
        except StripeWebhookSignatureError:
            WEBHOOK_EVENTS.labels(event_type="unknown", outcome="invalid_signature").inc()
            return Response({"error": "Invalid signature"}, status=status.HTTP_400_BAD_REQUEST)
        except StripeConfigurationError as exc:
            logger.error("Stripe webhook configuration error: %s", exc)
            return Response({"error": "Webhook not configured"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
        except (StripeServiceError, UnicodeDecodeError) as exc:
            logger.warning("Stripe webhook rejected due to malformed payload: %s", exc)
            return Response({"error": "Malformed payload"}, status=status.HTTP_400_BAD_REQUEST)

        event_id = event.get("id")
        event_type = event.get("type")
        if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str) or not event_type:
            WEBHOOK_EVENTS.labels(event_type="unknown", outcome="invalid_envelope").inc()
            return Response({"error": "Event id and type are required"}, status=status.HTTP_400_BAD_REQUEST)

        claim = claim_event(event_id, event_type, event)
        if not claim.is_new:
            WEBHOOK_EVENTS.labels(event_type=event_type, outcome="duplicate").inc()
            return Response({"received": True, "skipped": True, "reason": claim.existing_status})

        started = time.monotonic()
        try:
            with transaction.atomic():
                result = dispatch_event(event_id=event_id, event_type=event_type, payload=event, gateway=gateway)
        except Exception as exc:
            recoverable = not isinstance(exc, MalformedEventError)
            logger.exception("Processing Stripe event %s (%s) failed.", event_id, event_type)
            final_status = mark_event_failed(event_id, exc, recoverable=recoverable)
            WEBHOOK_EVENTS.labels(event_type=event_type, outcome=final_status).inc()
            log_billing_event(
                message="Webhook processing failed",
                event_id=event_id,
                extra={"event_type": event_type, "status": final_status, "error": str(exc)},
                level=logging.ERROR,
            )
            return Response({"received": True, "error": "processing_failed"})
        finally:
            WEBHOOK_LATENCY.labels(event_type=event_type).observe(time.monotonic() - started)

        mark_event_completed(event_id)
        WEBHOOK_EVENTS.labels(event_type=event_type, outcome=result.status).inc()
        log_billing_event(
            message="Webhook processed",
            event_id=event_id,
            user_id=result.user_id,
            extra={"event_type": event_type, "status": result.status, "detail": result.detail},
        )

        body = {"received": True}
        if result.status == HandlerResult.IGNORED:
            body["ignored"] = True
        return Response(body)
