"""Heartbeat ingestion and the device liveness state machine.

States move ``waiting -> online -> offline -> online -> ...``. A heartbeat
can only ever move a device to ``online``; demotion to ``offline`` belongs
to the liveness sweep (see :mod:`devices.liveness`). ``waiting`` is the
initial state and is never re-entered.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from django.conf import settings
from django.db import connection, transaction
from django.utils import timezone

from common.exceptions import Unauthorized
from devices.identifiers import resolve_identifier
from devices.models import Device, HeartbeatRecord
from devices.services import find_device

logger = logging.getLogger("devices.heartbeat")


@dataclass(frozen=True)
class Telemetry:
    signal_strength: int | None = None
    reported_address: str | None = None
    firmware_version: str | None = None
    hostname: str | None = None


@dataclass(frozen=True)
class HeartbeatResult:
    device_id: object
    identifier: str
    state: str
    previous_state: str
    received_at: object = field(default=None)

    @property
    def transitioned(self) -> bool:
        return self.state != self.previous_state


def _apply_statement_timeout():
    timeout_ms = settings.HEARTBEAT_STATEMENT_TIMEOUT_MS
    if connection.vendor == "postgresql" and timeout_ms:
        with connection.cursor() as cursor:
            cursor.execute(f"SET LOCAL statement_timeout = {int(timeout_ms)}")


def process_heartbeat(identifier, presented_secret, telemetry: Telemetry | None = None) -> HeartbeatResult:
    """Authenticate a heartbeat and mark the device online.

    Checks run in a fixed order: identifier shape (before any lookup),
    device existence, then the secret. Deleted and never-registered devices
    produce the same ``UnknownDevice`` error.
    """
    telemetry = telemetry or Telemetry()
    parsed = resolve_identifier(identifier)
    device = find_device(parsed)

    if not device.check_secret(presented_secret):
        logger.warning(
            "heartbeat_rejected reason=unauthorized",
            extra={"device_id": str(device.id), "composite_id": device.composite_id},
        )
        raise Unauthorized()

    now = timezone.now()
    with transaction.atomic():
        _apply_statement_timeout()
        HeartbeatRecord.objects.create(
            device=device,
            composite_id=device.composite_id or str(device.id),
            received_at=now,
            signal_strength=telemetry.signal_strength,
            reported_address=telemetry.reported_address or None,
            firmware_version=telemetry.firmware_version or "",
        )

        updates = {"state": Device.State.ONLINE, "last_seen_at": now, "updated_at": now}
        if telemetry.firmware_version:
            updates["firmware_version"] = telemetry.firmware_version
        if telemetry.hostname:
            updates["hostname"] = telemetry.hostname
        Device.objects.filter(pk=device.pk).update(**updates)

    previous_state = device.state
    if previous_state != Device.State.ONLINE:
        logger.info(
            "device_state_changed",
            extra={
                "device_id": str(device.id),
                "composite_id": device.composite_id,
                "previous_state": previous_state,
                "state": Device.State.ONLINE,
            },
        )

    return HeartbeatResult(
        device_id=device.id,
        identifier=device.identifier,
        state=Device.State.ONLINE,
        previous_state=previous_state,
        received_at=now,
    )
