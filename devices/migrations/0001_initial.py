import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("projects", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Device",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("slot", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("composite_id", models.CharField(blank=True, editable=False, max_length=16, null=True, unique=True)),
                ("display_name", models.CharField(max_length=100)),
                ("auth_secret_hash", models.CharField(editable=False, max_length=64)),
                (
                    "state",
                    models.CharField(
                        choices=[("waiting", "Waiting"), ("online", "Online"), ("offline", "Offline")],
                        default="waiting",
                        max_length=16,
                    ),
                ),
                ("last_seen_at", models.DateTimeField(blank=True, null=True)),
                ("firmware_version", models.CharField(blank=True, max_length=32)),
                ("hostname", models.CharField(blank=True, max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "owner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="devices",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "project",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="devices",
                        to="projects.project",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "id"],
                "indexes": [
                    models.Index(fields=["owner", "created_at"], name="device_owner_created_idx"),
                    models.Index(fields=["state", "last_seen_at"], name="device_state_last_seen_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=["project", "slot"], name="uniq_device_project_slot"),
                    models.CheckConstraint(
                        condition=models.Q(("slot__isnull", True), models.Q(("slot__gte", 1), ("slot__lte", 20)), _connector="OR"),
                        name="device_slot_range",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="HeartbeatRecord",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("composite_id", models.CharField(blank=True, max_length=64)),
                ("received_at", models.DateTimeField()),
                ("signal_strength", models.IntegerField(blank=True, null=True)),
                ("reported_address", models.GenericIPAddressField(blank=True, null=True)),
                ("firmware_version", models.CharField(blank=True, max_length=32)),
                (
                    "device",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="heartbeats",
                        to="devices.device",
                    ),
                ),
            ],
            options={
                "ordering": ["-received_at", "-id"],
                "indexes": [
                    models.Index(fields=["device", "received_at"], name="heartbeat_device_received_idx"),
                ],
            },
        ),
    ]
