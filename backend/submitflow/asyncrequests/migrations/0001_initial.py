from __future__ import annotations

from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies: list[tuple[str, str]] = []

    operations = [
        migrations.CreateModel(
            name="AsyncRequestRow",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("hashed_caller_id", models.CharField(max_length=64)),
                ("request_id", models.CharField(max_length=128)),
                (
                    "status",
                    models.CharField(
                        max_length=16,
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        default="pending",
                    ),
                ),
                ("attempt", models.PositiveIntegerField(default=0)),
                ("result", models.JSONField(null=True, blank=True)),
                ("error", models.JSONField(null=True, blank=True)),
                ("created_at", models.DateTimeField()),
                ("updated_at", models.DateTimeField()),
                ("expires_at", models.DateTimeField()),
            ],
            options={
                "db_table": "submitflow_async_requests",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["expires_at"], name="async_request_expiry_idx")],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("hashed_caller_id", "request_id"),
                        name="unique_async_request_per_caller",
                    )
                ],
            },
        ),
    ]
