from django.core.management.base import BaseCommand
from django.utils import timezone

from subscriptions.lifecycle import TransitionConflict, read_account
from subscriptions.models import SubscriptionAccount


class Command(BaseCommand):
    help = "Apply due trial, paid period and grace expiries to every subscription account."

    def handle(self, *args, **options):
        now = timezone.now()
        changed = 0
        for account_id, status in SubscriptionAccount.objects.values_list("pk", "status"):
            try:
                account = read_account(account_id, now=now)
            except TransitionConflict as e:
                self.stdout.write(self.style.WARNING(f"Skipped {account_id}: {e}"))
                continue
            if account.status != status:
                changed += 1
                self.stdout.write(f"{account.gym_name or account_id}: {status} -> {account.status}")
        self.stdout.write(self.style.SUCCESS(f"Reconciled accounts, {changed} changed."))
