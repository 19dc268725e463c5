from __future__ import annotations

from django.db import models


class AsyncRequestRow(models.Model):
    """Durable lifecycle record of one (hashed caller, request id) pair."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    hashed_caller_id = models.CharField(max_length=64)
    request_id = models.CharField(max_length=128)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    attempt = models.PositiveIntegerField(default=0)
    result = models.JSONField(null=True, blank=True)
    error = models.JSONField(null=True, blank=True)
    created_at = models.DateTimeField()
    updated_at = models.DateTimeField()
    expires_at = models.DateTimeField()

    class Meta:
        db_table = "submitflow_async_requests"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["hashed_caller_id", "request_id"],
                name="unique_async_request_per_caller",
            )
        ]
        indexes = [
            models.Index(fields=["expires_at"], name="async_request_expiry_idx"),
            models.Index(fields=["status", "updated_at"], name="async_request_stall_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - debugging helper
        return f"AsyncRequestRow(request_id={self.request_id}, status={self.status})"
