"""Project code and composite device identifier grammar.

Project codes come from a single counter: ``PROJ1``..``PROJ999`` and then
``P1000``..``P9999`` so the code never grows beyond seven characters. A
device is named by its project code and slot, e.g. ``PROJ12-ESP5``.

Devices registered before projects existed are still addressed by their
UUID. :func:`resolve_identifier` accepts both forms so callers never sniff
strings themselves.
"""
from __future__ import annotations

import re
import uuid
from typing import NamedTuple, Union

from common.exceptions import InvalidSlot, MalformedIdentifier

MIN_SLOT = 1
MAX_SLOT = 20
SHORT_CODE_LIMIT = 999
MAX_CODE_NUMBER = 9999

PROJECT_CODE_PATTERN = r"(?:PROJ[1-9][0-9]{0,2}|P[1-9][0-9]{3})"
SLOT_PATTERN = r"(?:1[0-9]|20|[1-9])"

PROJECT_CODE_RE = re.compile(rf"^(?P<code>{PROJECT_CODE_PATTERN})$")
COMPOSITE_ID_RE = re.compile(rf"^(?P<code>{PROJECT_CODE_PATTERN})-ESP(?P<slot>{SLOT_PATTERN})$")


class CompositeId(NamedTuple):
    project_code: str
    slot: int

    def __str__(self) -> str:
        return format_composite_id(self.project_code, self.slot)


class LegacyId(NamedTuple):
    device_id: uuid.UUID

    def __str__(self) -> str:
        return str(self.device_id)


DeviceIdentifier = Union[CompositeId, LegacyId]


def format_project_code(number: int) -> str:
    if number < 1 or number > MAX_CODE_NUMBER:
        raise ValueError(f"Project code number must be between 1 and {MAX_CODE_NUMBER}, got {number}.")
    if number <= SHORT_CODE_LIMIT:
        return f"PROJ{number}"
    return f"P{number}"


def is_project_code(value) -> bool:
    return isinstance(value, str) and PROJECT_CODE_RE.fullmatch(value) is not None


def validate_slot(slot) -> int:
    if isinstance(slot, bool) or not isinstance(slot, int):
        raise InvalidSlot(f"Slot must be an integer between {MIN_SLOT} and {MAX_SLOT}.")
    if slot < MIN_SLOT or slot > MAX_SLOT:
        raise InvalidSlot(f"Slot must be between {MIN_SLOT} and {MAX_SLOT}, got {slot}.")
    return slot


def format_composite_id(project_code: str, slot: int) -> str:
    if not is_project_code(project_code):
        raise MalformedIdentifier(f"'{project_code}' is not a valid project code.")
    validate_slot(slot)
    return f"{project_code}-ESP{slot}"


def parse_composite_id(value) -> CompositeId:
    match = COMPOSITE_ID_RE.fullmatch(value) if isinstance(value, str) else None
    if match is None:
        raise MalformedIdentifier("Expected a device identifier such as PROJ1-ESP5 (slot 1-20).")
    return CompositeId(match.group("code"), int(match.group("slot")))


def resolve_identifier(value) -> DeviceIdentifier:
    """Parse either identifier scheme, trying the composite form first."""
    if isinstance(value, str):
        match = COMPOSITE_ID_RE.fullmatch(value)
        if match is not None:
            return CompositeId(match.group("code"), int(match.group("slot")))
        try:
            device_id = uuid.UUID(value)
        except ValueError:
            device_id = None
        # uuid.UUID also takes braces, urn prefixes and bare hex; legacy ids are canonical only.
        if device_id is not None and str(device_id) == value.lower():
            return LegacyId(device_id)
    raise MalformedIdentifier("Expected a device identifier such as PROJ1-ESP5 or a legacy device UUID.")
