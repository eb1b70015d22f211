import logging

from django.db.models.signals import post_save
from django.dispatch import receiver

from .models import User

logger = logging.getLogger(__name__)


@receiver(post_save, sender=User)
def create_billing_profile(sender, instance, created, **kwargs):
    """
    Give every newly registered user a free-tier billing profile
    """
    if not created:
        return

    from billing.services.profiles import ensure_profile_for_user

    profile = ensure_profile_for_user(instance)
    logger.info("New user created: %s (profile %s)", instance.username, profile.pk)
