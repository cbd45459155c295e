import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("devices", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="MigrationAuditEntry",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("device_internal_id", models.UUIDField(unique=True)),
                ("legacy_id", models.CharField(max_length=64)),
                ("new_composite_id", models.CharField(blank=True, max_length=16, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("rolled_back", "Rolled back"),
                        ],
                        default="pending",
                        max_length=16,
                    ),
                ),
                ("started_at", models.DateTimeField()),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("error", models.TextField(blank=True)),
                (
                    "device",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="migration_audit_entries",
                        to="devices.device",
                    ),
                ),
            ],
            options={
                "ordering": ["started_at", "legacy_id"],
                "indexes": [
                    models.Index(fields=["status", "started_at"], name="migration_status_started_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("status", "completed"), _negated=True),
                            models.Q(("completed_at__isnull", False), ("new_composite_id__isnull", False)),
                            _connector="OR",
                        ),
                        name="migration_completed_has_result",
                    ),
                ],
            },
        ),
    ]
