import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class BillingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'billing'

    def ready(self):
        from .services.plan_catalog import PlanCatalogError
        from .services.stripe_gateway import StripeGateway

        # Built once per process; entry points fetch it through get_gateway().
        try:
            self.gateway = StripeGateway.from_settings()
        except PlanCatalogError:
            logger.exception("BILLING_PLANS is invalid; the billing app cannot start.")
            raise
        logger.debug("Billing gateway ready: %r", self.gateway)
