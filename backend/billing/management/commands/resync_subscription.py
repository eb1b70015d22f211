"""Management command to resync one subscription from Stripe."""
from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from billing.models import Subscription
from billing.services.drift_correction import detect_drift
from billing.services.stripe_gateway import StripeServiceError, get_gateway, is_stripe_not_found_error
from billing.services.subscription_sync import (
    SubscriptionSyncError,
    extract_customer_id,
    get_user_id_from_customer_id,
    mark_subscription_canceled,
    sync_subscription_from_stripe,
)


class Command(BaseCommand):
    help = "Fetch a subscription from Stripe and overwrite the local row with it."

    def add_arguments(self, parser) -> None:
        parser.add_argument("subscription_id", help="Stripe subscription id (sub_...).")
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Report drift without changing anything.",
        )

    def handle(self, *args, **options) -> None:
        subscription_id: str = options["subscription_id"]
        dry_run: bool = options["dry_run"]
        gateway = get_gateway()
        local = Subscription.objects.filter(pk=subscription_id).first()

        try:
            remote = gateway.retrieve_subscription(subscription_id)
        except StripeServiceError as exc:
            if not is_stripe_not_found_error(exc) or local is None:
                raise CommandError(f"Could not retrieve {subscription_id}: {exc}") from exc
            self.stdout.write(self.style.WARNING(f"{subscription_id} no longer exists in Stripe."))
            if not dry_run:
                mark_subscription_canceled(local.user_id, subscription_id)
                self.stdout.write(self.style.SUCCESS(f"Marked {subscription_id} canceled."))
            return

        if local is not None:
            issues = detect_drift(local, remote, tolerance_seconds=0)
            for issue in issues:
                self.stdout.write(f"  drift: {issue}")
            if not issues:
                self.stdout.write("No drift detected.")
        else:
            self.stdout.write(self.style.WARNING(f"{subscription_id} is missing locally."))

        if dry_run:
            return

        user_id = get_user_id_from_customer_id(extract_customer_id(remote))
        if user_id is None and local is not None:
            user_id = local.user_id
        if user_id is None:
            raise CommandError(f"No local user is linked to the customer of {subscription_id}.")

        try:
            result = sync_subscription_from_stripe(user_id, remote, gateway=gateway)
        except SubscriptionSyncError as exc:
            raise CommandError(str(exc)) from exc

        if result.stale:
            self.stdout.write(self.style.WARNING("Stripe snapshot is older than the local row; nothing changed."))
        else:
            self.stdout.write(
                self.style.SUCCESS(
                    f"Synced {subscription_id}: status={result.status} credits_granted={result.credits_granted}"
                )
            )
