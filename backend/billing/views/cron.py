"""HTTP triggers for drift-correction jobs, for schedulers that call URLs instead of Celery beat."""
from __future__ import annotations

import logging

from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.permissions import CronSecretPermission, CronUnauthorized
from billing.services.drift_correction import (
    SyncJobFailed,
    run_expiration_check,
    run_full_reconciliation,
    run_webhook_recovery,
)
from billing.services.stripe_gateway import get_gateway

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name="dispatch")
class CronJobView(APIView):
    """Run ``job`` synchronously and report its counts."""

    authentication_classes = []
    permission_classes = [CronSecretPermission]
    http_method_names = ["get", "post"]
    job = None

    def permission_denied(self, request, message=None, code=None):
        raise CronUnauthorized()

    def post(self, request, *args, **kwargs):
        job = self.job
        try:
            outcome = job(gateway=get_gateway(), trigger="http")
        except SyncJobFailed as exc:
            return Response(
                {
                    "success": False,
                    "error": str(exc),
                    "processed": exc.processed,
                    "fixed": exc.fixed,
                    "syncRunId": str(exc.sync_run_id) if exc.sync_run_id else None,
                },
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        except Exception as exc:
            logger.exception("Cron trigger %s failed before a sync run was recorded.", job.__name__)
            return Response(
                {"success": False, "error": str(exc), "processed": 0, "fixed": 0, "syncRunId": None},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        return Response(outcome.as_response())

    # Vercel-style cron schedulers issue GET requests.
    get = post


class CheckExpirationsCronView(CronJobView):
    job = staticmethod(run_expiration_check)


class ReconcileCronView(CronJobView):
    job = staticmethod(run_full_reconciliation)


class RecoverWebhooksCronView(CronJobView):
    job = staticmethod(run_webhook_recovery)
