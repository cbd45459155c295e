from datetime import timedelta
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import IntegrityError, connection, transaction
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from common.exceptions import MigrationFailure
from devices.heartbeat import process_heartbeat
from devices.models import Device
from devices.services import register_device
from legacy.models import MigrationAuditEntry
from legacy.schema import identity_columns_enforced
from legacy.services import migrate_legacy_devices, rollback_legacy_migration, summarize_audit_entries
from projects.models import Project
from projects.services import create_project


class LegacyDeviceMixin:
    def make_legacy_device(self, owner, name, *, age_minutes=0, secret="legacy-secret"):
        device = Device(owner=owner, display_name=name)
        device.set_secret(secret)
        device.save()
        # Pin creation order; slots are handed out oldest first.
        Device.objects.filter(pk=device.pk).update(created_at=timezone.now() - timedelta(minutes=age_minutes))
        return device


class MigrateLegacyDevicesTests(LegacyDeviceMixin, TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.alice = self.user_model.objects.create_user(username="alice", password="pass1234")
        self.bob = self.user_model.objects.create_user(username="bob", password="pass1234")

    def test_every_legacy_device_gets_a_composite_identifier(self):
        oldest = self.make_legacy_device(self.alice, "Pump", age_minutes=30)
        middle = self.make_legacy_device(self.alice, "Fan", age_minutes=20)
        newest = self.make_legacy_device(self.alice, "Lamp", age_minutes=10)
        other = self.make_legacy_device(self.bob, "Valve", age_minutes=5)

        result = migrate_legacy_devices()

        self.assertTrue(result.succeeded)
        self.assertEqual(result.migrated, 4)
        self.assertFalse(Device.objects.filter(composite_id__isnull=True).exists())
        self.assertFalse(Device.objects.filter(project__isnull=True).exists())
        self.assertEqual(
            Device.objects.values("composite_id").distinct().count(),
            Device.objects.count(),
        )

        alice_devices = {d.pk: d for d in Device.objects.filter(owner=self.alice).select_related("project")}
        self.assertEqual(
            [alice_devices[d.pk].slot for d in (oldest, middle, newest)],
            [1, 2, 3],
        )
        alice_project = alice_devices[oldest.pk].project
        self.assertTrue(alice_project.is_legacy)
        self.assertEqual(alice_project.owner, self.alice)
        self.assertEqual(alice_devices[oldest.pk].composite_id, f"{alice_project.code}-ESP1")

        bob_device = Device.objects.select_related("project").get(pk=other.pk)
        self.assertNotEqual(bob_device.project_id, alice_project.pk)
        self.assertEqual(bob_device.project.owner, self.bob)
        self.assertEqual(bob_device.slot, 1)

        self.assertEqual(
            MigrationAuditEntry.objects.filter(status=MigrationAuditEntry.Status.COMPLETED).count(),
            4,
        )
        entry = MigrationAuditEntry.objects.get(device_internal_id=oldest.pk)
        self.assertEqual(entry.legacy_id, str(oldest.pk))
        self.assertEqual(entry.new_composite_id, alice_devices[oldest.pk].composite_id)
        self.assertIsNotNone(entry.completed_at)

    def test_existing_devices_keep_their_identifiers(self):
        create_project(name="Greenhouse A", owner=self.alice)
        registration = register_device(project_code="PROJ1", owner=self.alice, slot=7, display_name="")
        self.make_legacy_device(self.alice, "Pump")

        migrate_legacy_devices()

        device = Device.objects.get(pk=registration.device.pk)
        self.assertEqual(device.composite_id, "PROJ1-ESP7")
        self.assertFalse(MigrationAuditEntry.objects.filter(device_internal_id=device.pk).exists())

    def test_owners_with_more_than_twenty_devices_overflow_into_another_project(self):
        for index in range(22):
            self.make_legacy_device(self.alice, f"Sensor {index}", age_minutes=100 - index)

        result = migrate_legacy_devices()

        self.assertEqual(result.migrated, 22)
        projects = list(Project.objects.filter(owner=self.alice, is_legacy=True).order_by("created_at", "code"))
        self.assertEqual(len(projects), 2)
        self.assertEqual(projects[0].devices.count(), 20)
        self.assertEqual(sorted(projects[1].devices.values_list("slot", flat=True)), [1, 2])

    def test_free_slots_in_existing_legacy_projects_are_reused(self):
        legacy_project = create_project(name="Old stuff", owner=self.alice, is_legacy=True)
        register_device(project_code=legacy_project.code, owner=self.alice, slot=1, display_name="")
        device = self.make_legacy_device(self.alice, "Pump")

        migrate_legacy_devices()

        device.refresh_from_db()
        self.assertEqual(device.project_id, legacy_project.pk)
        self.assertEqual(device.slot, 2)

    def test_user_project_named_like_a_legacy_project_does_not_block_migration(self):
        create_project(name="Legacy PROJ3", owner=self.bob)
        create_project(name="LEGACY proj3 (2)", owner=self.bob)
        device = self.make_legacy_device(self.alice, "Pump")

        result = migrate_legacy_devices()

        self.assertTrue(result.succeeded, result.failure_reason)
        self.assertEqual(result.migrated, 1)
        device.refresh_from_db()
        self.assertEqual(device.composite_id, "PROJ3-ESP1")
        self.assertEqual(device.project.name, "Legacy PROJ3 (3)")
        self.assertTrue(device.project.is_legacy)

    def test_identity_columns_are_mandatory_after_migration(self):
        self.make_legacy_device(self.alice, "Pump")

        migrate_legacy_devices()

        self.assertTrue(identity_columns_enforced(connection))
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                self.make_legacy_device(self.alice, "Late arrival")

    def test_migrated_device_still_answers_to_its_uuid(self):
        device = self.make_legacy_device(self.alice, "Pump", secret="pump-secret")
        migrate_legacy_devices()
        device.refresh_from_db()

        by_uuid = process_heartbeat(str(device.pk), "pump-secret")
        by_composite = process_heartbeat(device.composite_id, "pump-secret")

        self.assertEqual(by_uuid.device_id, device.pk)
        self.assertEqual(by_uuid.identifier, device.composite_id)
        self.assertEqual(by_composite.device_id, device.pk)

    def test_second_run_is_a_no_op(self):
        self.make_legacy_device(self.alice, "Pump")
        migrate_legacy_devices()

        result = migrate_legacy_devices()

        self.assertTrue(result.succeeded)
        self.assertEqual(result.migrated, 0)
        self.assertEqual(Project.objects.filter(is_legacy=True).count(), 1)

    @override_settings(PROJECT_CODE_CEILING=1)
    def test_failure_rolls_back_everything_and_records_the_device(self):
        create_project(name="Greenhouse A", owner=self.alice)
        device = self.make_legacy_device(self.bob, "Pump")

        with self.assertLogs("legacy.migration", level="ERROR"):
            result = migrate_legacy_devices()

        self.assertFalse(result.succeeded)
        self.assertEqual(result.migrated, 0)
        self.assertEqual(len(result.errors), 1)
        entry = result.errors[0]
        self.assertEqual(entry.device_internal_id, device.pk)
        self.assertEqual(entry.status, MigrationAuditEntry.Status.FAILED)
        self.assertTrue(entry.error)

        device.refresh_from_db()
        self.assertIsNone(device.composite_id)
        self.assertIsNone(device.project_id)
        self.assertFalse(Project.objects.filter(is_legacy=True).exists())
        self.assertFalse(identity_columns_enforced(connection))


class RollbackLegacyMigrationTests(LegacyDeviceMixin, TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.alice = self.user_model.objects.create_user(username="alice-rb", password="pass1234")

    def test_rollback_restores_the_flat_scheme(self):
        first = self.make_legacy_device(self.alice, "Pump", age_minutes=2)
        second = self.make_legacy_device(self.alice, "Fan", age_minutes=1)
        migrate_legacy_devices()

        result = rollback_legacy_migration()

        self.assertEqual(result.restored, 2)
        self.assertEqual(result.projects_deleted, 1)
        for device in (first, second):
            device.refresh_from_db()
            self.assertIsNone(device.project_id)
            self.assertIsNone(device.slot)
            self.assertIsNone(device.composite_id)
        self.assertFalse(Project.objects.filter(is_legacy=True).exists())
        self.assertFalse(identity_columns_enforced(connection))
        self.assertEqual(summarize_audit_entries()["rolled_back"], 2)

        # Flat inserts are allowed again.
        self.make_legacy_device(self.alice, "Late arrival")

    def test_rollback_is_idempotent(self):
        self.make_legacy_device(self.alice, "Pump")
        migrate_legacy_devices()
        rollback_legacy_migration()

        result = rollback_legacy_migration()

        self.assertEqual(result.restored, 0)
        self.assertEqual(result.projects_deleted, 0)

    def test_migrate_after_rollback_succeeds(self):
        device = self.make_legacy_device(self.alice, "Pump")
        migrate_legacy_devices()
        rollback_legacy_migration()

        result = migrate_legacy_devices()

        self.assertEqual(result.migrated, 1)
        entry = MigrationAuditEntry.objects.get(device_internal_id=device.pk)
        self.assertEqual(entry.status, MigrationAuditEntry.Status.COMPLETED)

    def test_rollback_refuses_when_legacy_projects_hold_new_devices(self):
        self.make_legacy_device(self.alice, "Pump")
        migrate_legacy_devices()
        legacy_project = Project.objects.get(is_legacy=True)
        register_device(project_code=legacy_project.code, owner=self.alice, slot=2, display_name="")

        with self.assertRaises(MigrationFailure):
            rollback_legacy_migration()

        self.assertTrue(Project.objects.filter(pk=legacy_project.pk).exists())
        self.assertEqual(Device.objects.filter(project=legacy_project).count(), 2)


class LegacyCommandTests(LegacyDeviceMixin, TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.alice = self.user_model.objects.create_user(username="alice-cmd", password="pass1234")

    def test_migrate_and_rollback_commands(self):
        self.make_legacy_device(self.alice, "Pump")
        self.make_legacy_device(self.alice, "Fan")

        out = StringIO()
        call_command("migrate_legacy_devices", stdout=out)
        self.assertIn("Migrated 2 device(s).", out.getvalue())
        self.assertIn("completed=2", out.getvalue())

        out = StringIO()
        call_command("rollback_legacy_devices", stdout=out)
        self.assertIn("Restored 2 device(s) and deleted 1 legacy project(s).", out.getvalue())

        out = StringIO()
        call_command("rollback_legacy_devices", stdout=out)
        self.assertIn("Nothing to roll back.", out.getvalue())

    @override_settings(PROJECT_CODE_CEILING=1)
    def test_migrate_command_fails_loudly(self):
        create_project(name="Greenhouse A", owner=self.alice)
        self.make_legacy_device(self.alice, "Pump")

        with self.assertRaises(CommandError):
            call_command("migrate_legacy_devices", stdout=StringIO())


class MigrationAuditApiTests(LegacyDeviceMixin, TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="ops", password="pass1234", is_staff=True)
        self.grower = self.user_model.objects.create_user(username="grower-audit", password="pass1234")

    def test_admin_can_read_trail_and_summary(self):
        self.make_legacy_device(self.grower, "Pump")
        migrate_legacy_devices()
        self.client.force_authenticate(user=self.admin)

        listing = self.client.get("/api/v1/admin/legacy-migration/", {"status": "completed"})
        summary = self.client.get("/api/v1/admin/legacy-migration/summary/")

        self.assertEqual(listing.status_code, 200)
        self.assertEqual(listing.json()["count"], 1)
        self.assertEqual(summary.status_code, 200)
        self.assertEqual(summary.json()["completed"], 1)
        self.assertEqual(summary.json()["failed"], 0)

    def test_non_admin_is_forbidden(self):
        self.client.force_authenticate(user=self.grower)

        response = self.client.get("/api/v1/admin/legacy-migration/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
