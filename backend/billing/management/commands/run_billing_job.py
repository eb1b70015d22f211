"""Management command to run a drift-correction job once, outside Celery."""
from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from billing.services.drift_correction import JOBS, SyncJobFailed
from billing.services.stripe_gateway import get_gateway


class Command(BaseCommand):
    help = "Run one billing drift-correction job synchronously and record a sync run."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "job",
            choices=sorted(str(job) for job in JOBS),
            help="Which job to run.",
        )

    def handle(self, *args, **options) -> None:
        job_name = options["job"]
        job = JOBS[job_name]

        self.stdout.write(f"Running {job_name}...")
        try:
            outcome = job(gateway=get_gateway(), trigger="command")
        except SyncJobFailed as exc:
            raise CommandError(
                f"{job_name} failed after processing {exc.processed} records "
                f"(fixed {exc.fixed}, sync run {exc.sync_run_id}): {exc}"
            ) from exc

        self.stdout.write(
            self.style.SUCCESS(
                f"{job_name} completed: processed={outcome.processed} fixed={outcome.fixed} "
                f"discrepancies={outcome.discrepancies} sync_run={outcome.sync_run_id}"
            )
        )
