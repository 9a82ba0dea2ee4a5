import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider", models.CharField(choices=[("razorpay", "Razorpay")], default="razorpay", max_length=50)),
                ("event_id", models.CharField(blank=True, db_index=True, max_length=191)),
                (
                    "dedupe_key",
                    models.CharField(blank=True, editable=False, max_length=191, null=True, unique=True),
                ),
                (
                    "event_type",
                    models.CharField(
                        choices=[
                            ("payment", "Payment"),
                            ("subscription", "Subscription"),
                            ("order", "Order"),
                            ("refund", "Refund"),
                            ("other", "Other"),
                        ],
                        db_index=True,
                        default="other",
                        max_length=20,
                    ),
                ),
                ("event_name", models.CharField(blank=True, db_index=True, max_length=100)),
                ("account_id", models.CharField(blank=True, db_index=True, max_length=64)),
                ("gym_name", models.CharField(blank=True, max_length=255)),
                ("email", models.EmailField(blank=True, max_length=254)),
                ("status", models.CharField(blank=True, max_length=50)),
                ("amount", models.BigIntegerField(blank=True, null=True)),
                ("raw_payload", models.TextField(blank=True)),
                ("payload", models.JSONField(blank=True, null=True)),
                ("headers", models.JSONField(blank=True, default=dict)),
                ("signature_header", models.CharField(blank=True, max_length=255)),
                ("verified", models.BooleanField(default=False)),
                ("test_mode", models.BooleanField(default=False)),
                ("received_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("processing_time_ms", models.FloatField(blank=True, null=True)),
                ("issue_flag", models.BooleanField(db_index=True, default=False)),
                ("error_reason", models.CharField(blank=True, max_length=255)),
                ("duplicate", models.BooleanField(default=False)),
                ("replay_count", models.PositiveIntegerField(default=0)),
            ],
            options={
                "ordering": ("-received_at", "-id"),
            },
        ),
    ]
