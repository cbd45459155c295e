"""One-time move of legacy devices onto project-scoped composite identifiers.

Legacy devices belong to a user directly and are addressed by their UUID.
:func:`migrate_legacy_devices` gives each of them a slot in a synthetic
legacy project owned by the same user, derives the composite identifier and
then makes the identity columns mandatory. :func:`rollback_legacy_migration`
undoes it. Both run inside one serializable transaction and hold table locks
on projects and devices, so they belong in a maintenance window.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field

from django.db import DatabaseError, connection, transaction
from django.db.models import Count, Q
from django.utils import timezone
from rest_framework.exceptions import APIException

from common.exceptions import MigrationFailure
from devices.identifiers import MAX_SLOT, MIN_SLOT, format_composite_id
from devices.models import Device
from legacy.models import MigrationAuditEntry
from legacy.schema import enforce_identity_columns, relax_identity_columns
from projects.models import Project
from projects.services import allocate_project_code

logger = logging.getLogger("legacy.migration")

LEGACY_PROJECT_DESCRIPTION = "Devices registered before projects existed."


@dataclass
class MigrationResult:
    migrated: int
    errors: list = field(default_factory=list)
    failure_reason: str | None = None
    started_at: object = None
    finished_at: object = None

    @property
    def succeeded(self) -> bool:
        return self.failure_reason is None


@dataclass
class RollbackResult:
    restored: int
    projects_deleted: int
    started_at: object = None
    finished_at: object = None


@contextmanager
def serializable_transaction(*models):
    """Open a transaction at the strongest isolation level the store offers.

    On PostgreSQL the isolation level can only be set by the statement that
    opens the transaction, so it is skipped when nested in an outer atomic
    block. The listed tables are locked against concurrent writers.
    """
    outermost = not connection.in_atomic_block
    with transaction.atomic():
        if connection.vendor == "postgresql":
            qn = connection.ops.quote_name
            with connection.cursor() as cursor:
                if outermost:
                    cursor.execute("SET TRANSACTION ISOLATION LEVEL SERIALIZABLE")
                if models:
                    tables = ", ".join(qn(model._meta.db_table) for model in models)
                    cursor.execute(f"LOCK TABLE {tables} IN SHARE ROW EXCLUSIVE MODE")
        yield


def _free_legacy_name(code):
    """First of ``Legacy <code>``, ``Legacy <code> (2)``, ... not taken by any project.

    The projects table is locked by the surrounding migration transaction, so
    the name cannot be claimed between this check and the insert.
    """
    base = f"Legacy {code}"
    name, suffix = base, 1
    while Project.objects.filter(name__iexact=name).exists():
        suffix += 1
        name = f"{base} ({suffix})"
    return name


def _create_legacy_project(owner):
    code = allocate_project_code()
    project = Project.objects.create(
        code=code,
        name=_free_legacy_name(code),
        description=LEGACY_PROJECT_DESCRIPTION,
        owner=owner,
        is_legacy=True,
    )
    logger.info("legacy_project_created", extra={"project_code": code, "user_id": str(owner.pk)})
    return project


def _legacy_slots(owner):
    """Yield free ``(project, slot)`` pairs for an owner, reusing legacy projects first."""
    for project in Project.objects.filter(owner=owner, is_legacy=True).order_by("created_at", "code"):
        taken = set(project.devices.values_list("slot", flat=True))
        for slot in range(MIN_SLOT, MAX_SLOT + 1):
            if slot not in taken:
                yield project, slot

    while True:
        project = _create_legacy_project(owner)
        for slot in range(MIN_SLOT, MAX_SLOT + 1):
            yield project, slot


def _migrate_device(device, slot_source, started_at):
    project, slot = next(slot_source)
    composite_id = format_composite_id(project.code, slot)
    now = timezone.now()
    Device.objects.filter(pk=device.pk).update(project=project, slot=slot, composite_id=composite_id, updated_at=now)
    entry, _ = MigrationAuditEntry.objects.update_or_create(
        device_internal_id=device.pk,
        defaults={
            "device": device,
            "legacy_id": str(device.pk),
            "new_composite_id": composite_id,
            "status": MigrationAuditEntry.Status.COMPLETED,
            "started_at": started_at,
            "completed_at": now,
            "error": "",
        },
    )
    return entry


def _record_failure(exc, started_at):
    if exc.device_id is None:
        return None
    with transaction.atomic():
        entry, _ = MigrationAuditEntry.objects.update_or_create(
            device_internal_id=exc.device_id,
            defaults={
                "device": Device.objects.filter(pk=exc.device_id).first(),
                "legacy_id": exc.legacy_id or str(exc.device_id),
                "new_composite_id": None,
                "status": MigrationAuditEntry.Status.FAILED,
                "started_at": started_at,
                "completed_at": None,
                "error": str(exc.detail),
            },
        )
    return entry


def migrate_legacy_devices() -> MigrationResult:
    """Assign every device without a project a slot and composite identifier.

    All devices migrate or none do. On failure the transaction is rolled
    back, a ``failed`` audit entry is written for the offending device and
    the result carries it in ``errors`` with ``migrated == 0``.
    """
    started_at = timezone.now()
    migrated = 0
    try:
        with serializable_transaction(Project, Device):
            legacy_devices = list(
                Device.objects.select_for_update(of=("self",))
                .filter(project__isnull=True)
                .select_related("owner")
                .order_by("owner_id", "created_at", "id")
            )
            slot_sources = {}
            for device in legacy_devices:
                if device.owner_id not in slot_sources:
                    slot_sources[device.owner_id] = _legacy_slots(device.owner)
                try:
                    _migrate_device(device, slot_sources[device.owner_id], started_at)
                except (DatabaseError, APIException, ValueError) as exc:
                    raise MigrationFailure(
                        f"Device {device.pk} could not be migrated: {exc}",
                        device_id=device.pk,
                        legacy_id=str(device.pk),
                    ) from exc
                migrated += 1

            # Nullability is enforced only once nothing is left to backfill.
            remaining = Device.objects.filter(
                Q(project__isnull=True) | Q(slot__isnull=True) | Q(composite_id__isnull=True)
            ).count()
            if remaining:
                raise MigrationFailure(f"{remaining} device(s) still lack a composite identifier.")
            enforce_identity_columns(connection)
    except (MigrationFailure, DatabaseError) as exc:
        if not isinstance(exc, MigrationFailure):
            exc = MigrationFailure(f"Migration transaction aborted: {exc}")
        entry = _record_failure(exc, started_at)
        logger.error("legacy_migration_failed reason=%s", exc.detail)
        return MigrationResult(
            migrated=0,
            errors=[entry] if entry is not None else [],
            failure_reason=str(exc.detail),
            started_at=started_at,
            finished_at=timezone.now(),
        )

    logger.info("legacy_migration_completed", extra={"count": migrated})
    return MigrationResult(migrated=migrated, started_at=started_at, finished_at=timezone.now())


def rollback_legacy_migration() -> RollbackResult:
    """Undo :func:`migrate_legacy_devices`; a no-op when nothing is migrated.

    Refuses while a legacy project holds devices registered after the
    migration, since deleting the project would cascade to them.
    """
    started_at = timezone.now()
    with serializable_transaction(Project, Device):
        relax_identity_columns(connection)

        entries = list(
            MigrationAuditEntry.objects.select_for_update().filter(status=MigrationAuditEntry.Status.COMPLETED)
        )
        migrated_ids = [entry.device_internal_id for entry in entries]
        legacy_projects = Project.objects.filter(is_legacy=True)

        strays = Device.objects.filter(project__in=legacy_projects).exclude(pk__in=migrated_ids).count()
        if strays:
            raise MigrationFailure(
                f"Legacy projects hold {strays} device(s) registered after the migration; "
                "move or delete them before rolling back."
            )

        now = timezone.now()
        restored = Device.objects.filter(pk__in=migrated_ids).update(
            project=None,
            slot=None,
            composite_id=None,
            updated_at=now,
        )
        MigrationAuditEntry.objects.filter(pk__in=[entry.pk for entry in entries]).update(
            status=MigrationAuditEntry.Status.ROLLED_BACK,
            completed_at=now,
        )
        projects_deleted = legacy_projects.count()
        legacy_projects.delete()

    logger.info(
        "legacy_migration_rolled_back restored=%s projects_deleted=%s",
        restored,
        projects_deleted,
        extra={"count": restored},
    )
    return RollbackResult(
        restored=restored,
        projects_deleted=projects_deleted,
        started_at=started_at,
        finished_at=timezone.now(),
    )


def summarize_audit_entries():
    counts = dict(MigrationAuditEntry.objects.order_by().values_list("status").annotate(total=Count("id")))
    return {status: counts.get(status, 0) for status in MigrationAuditEntry.Status.values}
