import logging
from dataclasses import dataclass

from django.db import IntegrityError, transaction

from common.exceptions import DeviceNotFound, SlotTaken, UnknownDevice
from devices.identifiers import (
    MAX_SLOT,
    MIN_SLOT,
    CompositeId,
    LegacyId,
    format_composite_id,
    parse_composite_id,
    validate_slot,
)
from devices.models import Device
from projects.services import get_owned_project

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotInfo:
    slot: int
    composite_id: str
    available: bool


@dataclass(frozen=True)
class Registration:
    device: Device
    secret: str

    @property
    def composite_id(self):
        return self.device.composite_id


def list_available_slots(project_code, owner):
    project = get_owned_project(project_code, owner)
    taken = set(Device.objects.filter(project=project).values_list("slot", flat=True))
    return [
        SlotInfo(
            slot=slot,
            composite_id=format_composite_id(project.code, slot),
            available=slot not in taken,
        )
        for slot in range(MIN_SLOT, MAX_SLOT + 1)
    ]


def register_device(*, project_code, owner, slot, display_name):
    """Register a device in a project slot and return its one-time secret.

    Slot collisions are left to the ``(project, slot)`` and ``composite_id``
    unique constraints; the resulting ``IntegrityError`` becomes ``SlotTaken``.
    """
    slot = validate_slot(slot)
    display_name = (display_name or "").strip()
    project = get_owned_project(project_code, owner)

    secret = Device.generate_secret()
    device = Device(
        owner=owner,
        project=project,
        slot=slot,
        composite_id=format_composite_id(project.code, slot),
        display_name=display_name or f"ESP{slot}",
        state=Device.State.WAITING,
    )
    device.set_secret(secret)
    try:
        with transaction.atomic():
            device.save(force_insert=True)
    except IntegrityError as exc:
        raise SlotTaken(f'Device ESP{slot} is already registered in project "{project.code}".') from exc

    logger.info(
        "device_registered",
        extra={"composite_id": device.composite_id, "project_code": project.code, "device_id": str(device.id)},
    )
    return Registration(device=device, secret=secret)


def delete_device(composite_id, owner):
    parsed = parse_composite_id(composite_id)
    with transaction.atomic():
        device = (
            Device.objects.select_for_update()
            .filter(composite_id=str(parsed), owner=owner, project__owner=owner)
            .first()
        )
        if device is None:
            raise DeviceNotFound(f'Device "{parsed}" was not found.')
        device_id = device.id
        device.delete()
    logger.info("device_deleted", extra={"composite_id": str(parsed), "device_id": str(device_id)})
    return True


def list_devices_for_owner(owner, project_code=None):
    queryset = Device.objects.filter(owner=owner).select_related("project")
    if project_code:
        queryset = queryset.filter(project__code=project_code)
    return queryset.order_by("created_at", "id")


def find_device(identifier):
    """Look a device up by either identifier scheme; unknown devices raise ``UnknownDevice``."""
    if isinstance(identifier, CompositeId):
        device = Device.objects.filter(composite_id=str(identifier)).first()
    elif isinstance(identifier, LegacyId):
        device = Device.objects.filter(pk=identifier.device_id).first()
    else:
        raise TypeError(f"Unsupported identifier type: {type(identifier).__name__}")
    if device is None:
        raise UnknownDevice()
    return device
