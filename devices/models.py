import hashlib
import secrets
import uuid

from django.conf import settings
from django.db import models
from django.utils.crypto import constant_time_compare


class Device(models.Model):
    class State(models.TextChoices):
        WAITING = "waiting", "Waiting"
        ONLINE = "online", "Online"
        OFFLINE = "offline", "Offline"

    # The primary key doubles as the legacy flat identifier.
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="devices")
    project = models.ForeignKey(
        "projects.Project",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="devices",
    )
    slot = models.PositiveSmallIntegerField(null=True, blank=True)
    composite_id = models.CharField(max_length=16, unique=True, null=True, blank=True, editable=False)
    display_name = models.CharField(max_length=100)
    auth_secret_hash = models.CharField(max_length=64, editable=False)
    state = models.CharField(max_length=16, choices=State.choices, default=State.WAITING)
    last_seen_at = models.DateTimeField(null=True, blank=True)
    firmware_version = models.CharField(max_length=32, blank=True)
    hostname = models.CharField(max_length=64, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["owner", "created_at"], name="device_owner_created_idx"),
            models.Index(fields=["state", "last_seen_at"], name="device_state_last_seen_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["project", "slot"], name="uniq_device_project_slot"),
            models.CheckConstraint(
                condition=models.Q(slot__isnull=True) | models.Q(slot__gte=1, slot__lte=20),
                name="device_slot_range",
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover - human readable only
        return self.composite_id or f"{self.display_name} ({self.id})"

    @property
    def identifier(self) -> str:
        return self.composite_id or str(self.id)

    # Credential helpers -----------------------------------------------------

    @staticmethod
    def generate_secret() -> str:
        return secrets.token_hex(32)

    @staticmethod
    def hash_secret(value: str) -> str:
        return hashlib.sha256(value.encode("utf-8")).hexdigest()

    def set_secret(self, secret: str) -> None:
        self.auth_secret_hash = self.hash_secret(secret)

    def check_secret(self, candidate) -> bool:
        if not candidate or not self.auth_secret_hash:
            return False
        return constant_time_compare(self.hash_secret(candidate), self.auth_secret_hash)


class HeartbeatRecord(models.Model):
    """Append-only telemetry written by the heartbeat pipeline."""

    id = models.BigAutoField(primary_key=True)
    device = models.ForeignKey(Device, on_delete=models.CASCADE, related_name="heartbeats")
    composite_id = models.CharField(max_length=64, blank=True)
    received_at = models.DateTimeField()
    signal_strength = models.IntegerField(null=True, blank=True)
    reported_address = models.GenericIPAddressField(null=True, blank=True)
    firmware_version = models.CharField(max_length=32, blank=True)

    class Meta:
        ordering = ["-received_at", "-id"]
        indexes = [
            models.Index(fields=["device", "received_at"], name="heartbeat_device_received_idx"),
        ]
