import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="DeveloperConfig",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("webhook_secret", models.CharField(blank=True, max_length=255)),
                ("razorpay_key_id", models.CharField(blank=True, max_length=255)),
                ("razorpay_key_secret", models.CharField(blank=True, max_length=255)),
                ("razorpay_plan_id", models.CharField(blank=True, max_length=255)),
            ],
            options={
                "verbose_name": "Developer Configuration",
                "verbose_name_plural": "Developer Configuration",
            },
        ),
        migrations.CreateModel(
            name="SubscriptionAccount",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("gym_name", models.CharField(blank=True, max_length=255)),
                ("email", models.EmailField(blank=True, max_length=254)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("free", "Free"),
                            ("trial", "Trial"),
                            ("active", "Active"),
                            ("grace", "Grace"),
                            ("expired", "Expired"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="trial",
                        max_length=20,
                    ),
                ),
                ("trial_end_date", models.DateTimeField(blank=True, null=True)),
                ("grace_end_date", models.DateTimeField(blank=True, null=True)),
                ("subscription_start_date", models.DateTimeField(blank=True, null=True)),
                ("subscription_end_date", models.DateTimeField(blank=True, null=True)),
                ("pending_cancellation", models.BooleanField(default=False)),
                ("last_applied_event_id", models.CharField(blank=True, max_length=191)),
                ("razorpay_subscription_id", models.CharField(blank=True, db_index=True, max_length=191)),
                (
                    "user",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="subscription_account",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["gym_name"],
            },
        ),
        migrations.CreateModel(
            name="PaymentRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("event_id", models.CharField(blank=True, max_length=191)),
                ("payment_id", models.CharField(blank=True, max_length=191)),
                ("amount_cents", models.PositiveIntegerField(default=0)),
                ("plan", models.CharField(blank=True, max_length=100)),
                ("period_start", models.DateTimeField(blank=True, null=True)),
                ("period_end", models.DateTimeField(blank=True, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[("success", "Success"), ("failed", "Failed")],
                        default="success",
                        max_length=20,
                    ),
                ),
                ("payload", models.JSONField(blank=True, default=dict)),
                (
                    "account",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="subscriptions.subscriptionaccount",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
