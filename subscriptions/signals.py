from django.conf import settings
from django.db.models.signals import post_save
from django.dispatch import receiver

from .lifecycle import start_account
from .models import SubscriptionAccount


@receiver(post_save, sender=settings.AUTH_USER_MODEL)
def create_subscription_account(sender, instance, created, **kwargs):
    # Staff accounts run the platform; they do not subscribe.
    if not created or instance.is_staff:
        return
    account = SubscriptionAccount(
        user=instance,
        gym_name=instance.get_full_name() or instance.get_username(),
        email=instance.email,
    )
    start_account(account)
    account.save()
