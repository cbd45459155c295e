import uuid

from django.db import models


class MigrationAuditEntry(models.Model):
    """One row per legacy device touched by the identity migration.

    ``device`` is nulled when the device is deleted; ``device_internal_id``
    keeps the trail readable afterwards.
    """

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        ROLLED_BACK = "rolled_back", "Rolled back"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    device_internal_id = models.UUIDField(unique=True)
    device = models.ForeignKey(
        "devices.Device",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="migration_audit_entries",
    )
    legacy_id = models.CharField(max_length=64)
    new_composite_id = models.CharField(max_length=16, null=True, blank=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    started_at = models.DateTimeField()
    completed_at = models.DateTimeField(null=True, blank=True)
    error = models.TextField(blank=True)

    class Meta:
        ordering = ["started_at", "legacy_id"]
        indexes = [
            models.Index(fields=["status", "started_at"], name="migration_status_started_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~models.Q(status="completed")
                | models.Q(completed_at__isnull=False, new_composite_id__isnull=False),
                name="migration_completed_has_result",
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover - human readable only
        return f"{self.legacy_id} -> {self.new_composite_id or '-'} ({self.status})"
