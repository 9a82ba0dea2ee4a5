from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand

from subscriptions.models import SubscriptionAccount


class Command(BaseCommand):
    help = "Load a staff user and a demo gym on trial for quick testing."

    def handle(self, *args, **options):
        User = get_user_model()
        staff, created = User.objects.get_or_create(
            username="owner",
            defaults={"email": "owner@example.com", "is_staff": True, "is_superuser": True},
        )
        if created:
            staff.set_password("ownerpass")
            staff.save()
            self.stdout.write(self.style.SUCCESS("Created staff user owner / ownerpass"))
        else:
            self.stdout.write("Staff user already exists.")

        gym_admin, created = User.objects.get_or_create(
            username="demogym",
            defaults={"email": "gym@example.com", "first_name": "Demo", "last_name": "Gym"},
        )
        if created:
            gym_admin.set_password("gympass")
            gym_admin.save()
            self.stdout.write(self.style.SUCCESS("Created gym admin demogym / gympass"))
        else:
            self.stdout.write("Gym admin already exists.")

        account = SubscriptionAccount.objects.get(user=gym_admin)
        self.stdout.write(self.style.SUCCESS(f"Demo gym account {account.account_id} ({account.status})"))
