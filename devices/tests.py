import uuid
from datetime import timedelta
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from common.exceptions import (
    DeviceNotFound,
    InvalidSlot,
    MalformedIdentifier,
    ProjectNotFound,
    SlotTaken,
    Unauthorized,
    UnknownDevice,
)
from core.models import AuditLog
from devices.heartbeat import Telemetry, process_heartbeat
from devices.identifiers import (
    CompositeId,
    LegacyId,
    format_composite_id,
    format_project_code,
    is_project_code,
    parse_composite_id,
    resolve_identifier,
    validate_slot,
)
from devices.liveness import sweep_offline_devices
from devices.models import Device, HeartbeatRecord
from devices.services import delete_device, list_available_slots, register_device
from projects.services import create_project


class IdentifierGrammarTests(SimpleTestCase):
    def test_project_code_boundaries(self):
        self.assertEqual(format_project_code(1), "PROJ1")
        self.assertEqual(format_project_code(999), "PROJ999")
        self.assertEqual(format_project_code(1000), "P1000")
        self.assertEqual(format_project_code(9999), "P9999")
        with self.assertRaises(ValueError):
            format_project_code(0)
        with self.assertRaises(ValueError):
            format_project_code(10000)

    def test_every_issued_code_is_accepted_by_the_composite_grammar(self):
        for number in (1, 9, 10, 99, 100, 999, 1000, 5432, 9999):
            code = format_project_code(number)
            self.assertTrue(is_project_code(code), code)
            for slot in (1, 10, 20):
                self.assertEqual(parse_composite_id(f"{code}-ESP{slot}"), CompositeId(code, slot))

    def test_malformed_composite_ids_are_rejected(self):
        for value in (
            "",
            "PROJ1",
            "PROJ1-ESP0",
            "PROJ1-ESP21",
            "PROJ1-ESP05",
            "proj1-esp5",
            "PROJ0-ESP1",
            "PROJ1000-ESP1",
            "P999-ESP1",
            "ABCD-ESP1",
            " PROJ1-ESP5",
            None,
            42,
        ):
            with self.subTest(value=value):
                with self.assertRaises(MalformedIdentifier):
                    parse_composite_id(value)

    def test_format_composite_id_validates_its_inputs(self):
        self.assertEqual(format_composite_id("P1000", 20), "P1000-ESP20")
        with self.assertRaises(InvalidSlot):
            format_composite_id("PROJ1", 21)
        with self.assertRaises(MalformedIdentifier):
            format_composite_id("PRJ1", 1)

    def test_validate_slot(self):
        self.assertEqual(validate_slot(1), 1)
        self.assertEqual(validate_slot(20), 20)
        for value in (0, 21, -1, "5", 5.0, True, None):
            with self.subTest(value=value):
                with self.assertRaises(InvalidSlot):
                    validate_slot(value)

    def test_resolver_prefers_composite_form_then_legacy_uuid(self):
        legacy = uuid.uuid4()

        self.assertEqual(resolve_identifier("PROJ7-ESP3"), CompositeId("PROJ7", 3))
        self.assertEqual(resolve_identifier(str(legacy)), LegacyId(legacy))
        self.assertEqual(str(resolve_identifier("PROJ7-ESP3")), "PROJ7-ESP3")
        with self.assertRaises(MalformedIdentifier):
            resolve_identifier("PROJ7-ESP30")
        with self.assertRaises(MalformedIdentifier):
            resolve_identifier("not-an-id")

    def test_resolver_requires_the_exact_shape(self):
        legacy = uuid.uuid4()

        for value in (
            " PROJ1-ESP1",
            "PROJ1-ESP1\n",
            f" {legacy}",
            f"{legacy}\n",
            f"{{{legacy}}}",
            f"urn:uuid:{legacy}",
            legacy.hex,
        ):
            with self.subTest(value=value):
                with self.assertRaises(MalformedIdentifier):
                    resolve_identifier(value)
        self.assertEqual(resolve_identifier(str(legacy).upper()), LegacyId(legacy))


class DeviceRegistryTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.owner = self.user_model.objects.create_user(username="grower", password="pass1234")
        self.other = self.user_model.objects.create_user(username="neighbour", password="pass1234")
        self.project_a = create_project(name="Greenhouse A", owner=self.owner)
        self.project_b = create_project(name="Greenhouse B", owner=self.owner)

    def test_slots_are_project_scoped(self):
        first = register_device(project_code="PROJ1", owner=self.owner, slot=5, display_name="Tomatoes")

        self.assertEqual(first.composite_id, "PROJ1-ESP5")
        self.assertEqual(first.device.state, Device.State.WAITING)
        with self.assertRaises(SlotTaken):
            register_device(project_code="PROJ1", owner=self.owner, slot=5, display_name="Again")

        second = register_device(project_code="PROJ2", owner=self.owner, slot=5, display_name="")
        self.assertEqual(second.composite_id, "PROJ2-ESP5")
        self.assertEqual(second.device.display_name, "ESP5")

    def test_secret_is_returned_once_and_stored_hashed(self):
        registration = register_device(project_code="PROJ1", owner=self.owner, slot=1, display_name="")
        device = Device.objects.get(pk=registration.device.pk)

        self.assertNotEqual(device.auth_secret_hash, registration.secret)
        self.assertTrue(device.check_secret(registration.secret))
        self.assertFalse(device.check_secret("wrong"))
        self.assertFalse(device.check_secret(""))

    def test_register_rejects_bad_slot_and_foreign_project(self):
        with self.assertRaises(InvalidSlot):
            register_device(project_code="PROJ1", owner=self.owner, slot=21, display_name="")
        with self.assertRaises(ProjectNotFound):
            register_device(project_code="PROJ1", owner=self.other, slot=1, display_name="")
        self.assertEqual(Device.objects.count(), 0)

    def test_list_available_slots(self):
        register_device(project_code="PROJ1", owner=self.owner, slot=2, display_name="")

        slots = list_available_slots("PROJ1", self.owner)

        self.assertEqual(len(slots), 20)
        self.assertEqual(slots[0].composite_id, "PROJ1-ESP1")
        self.assertEqual([slot.slot for slot in slots if not slot.available], [2])

    def test_delete_frees_the_slot(self):
        register_device(project_code="PROJ1", owner=self.owner, slot=4, display_name="")

        delete_device("PROJ1-ESP4", self.owner)
        again = register_device(project_code="PROJ1", owner=self.owner, slot=4, display_name="")

        self.assertEqual(again.composite_id, "PROJ1-ESP4")

    def test_delete_is_owner_scoped(self):
        register_device(project_code="PROJ1", owner=self.owner, slot=4, display_name="")

        with self.assertRaises(DeviceNotFound):
            delete_device("PROJ1-ESP4", self.other)
        with self.assertRaises(MalformedIdentifier):
            delete_device("PROJ1-4", self.owner)
        self.assertTrue(Device.objects.filter(composite_id="PROJ1-ESP4").exists())

    def test_composite_ids_are_unique_per_project(self):
        ids = [
            register_device(project_code="PROJ1", owner=self.owner, slot=slot, display_name="").composite_id
            for slot in range(1, 21)
        ]

        self.assertEqual(len(set(ids)), 20)
        with self.assertRaises(InvalidSlot):
            register_device(project_code="PROJ1", owner=self.owner, slot=21, display_name="")


class HeartbeatAndLivenessTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.owner = self.user_model.objects.create_user(username="grower-hb", password="pass1234")
        create_project(name="Greenhouse A", owner=self.owner)
        self.registration = register_device(project_code="PROJ1", owner=self.owner, slot=5, display_name="")
        self.device = self.registration.device

    def _state(self):
        return Device.objects.get(pk=self.device.pk).state

    def _age(self, seconds):
        Device.objects.filter(pk=self.device.pk).update(last_seen_at=timezone.now() - timedelta(seconds=seconds))

    def test_online_offline_online_cycle(self):
        states = [self._state()]

        result = process_heartbeat("PROJ1-ESP5", self.registration.secret)
        states.append(self._state())
        self.assertTrue(result.transitioned)
        self.assertEqual(result.previous_state, Device.State.WAITING)

        self._age(300)
        self.assertEqual(sweep_offline_devices(120), 1)
        states.append(self._state())

        process_heartbeat("PROJ1-ESP5", self.registration.secret)
        states.append(self._state())

        self.assertEqual(states, ["waiting", "online", "offline", "online"])

    def test_heartbeat_records_telemetry(self):
        process_heartbeat(
            "PROJ1-ESP5",
            self.registration.secret,
            Telemetry(signal_strength=-61, reported_address="10.0.0.8", firmware_version="1.4.2", hostname="esp-5"),
        )

        record = HeartbeatRecord.objects.get(device=self.device)
        device = Device.objects.get(pk=self.device.pk)
        self.assertEqual(record.composite_id, "PROJ1-ESP5")
        self.assertEqual(record.signal_strength, -61)
        self.assertEqual(record.reported_address, "10.0.0.8")
        self.assertEqual(device.firmware_version, "1.4.2")
        self.assertEqual(device.hostname, "esp-5")
        self.assertIsNotNone(device.last_seen_at)

    def test_unknown_device_changes_nothing(self):
        before = list(Device.objects.values_list("id", "state", "last_seen_at"))

        with self.assertRaises(UnknownDevice):
            process_heartbeat("PROJ9-ESP1", "anything")

        self.assertEqual(list(Device.objects.values_list("id", "state", "last_seen_at")), before)
        self.assertEqual(HeartbeatRecord.objects.count(), 0)

    def test_deleted_device_looks_like_unknown_device(self):
        delete_device("PROJ1-ESP5", self.owner)

        with self.assertRaises(UnknownDevice):
            process_heartbeat("PROJ1-ESP5", self.registration.secret)

    def test_wrong_secret_is_rejected_and_logged(self):
        with self.assertLogs("devices.heartbeat", level="WARNING") as logs:
            with self.assertRaises(Unauthorized):
                process_heartbeat("PROJ1-ESP5", "not-the-secret")

        self.assertEqual(self._state(), Device.State.WAITING)
        self.assertTrue(any("heartbeat_rejected" in entry for entry in logs.output))

    def test_malformed_identifier_is_rejected_before_lookup(self):
        with self.assertRaises(MalformedIdentifier):
            process_heartbeat("PROJ1-ESP55", self.registration.secret)
        with self.assertRaises(MalformedIdentifier):
            process_heartbeat(" PROJ1-ESP5\n", self.registration.secret)
        self.assertEqual(self._state(), Device.State.WAITING)

    def test_legacy_uuid_heartbeat(self):
        secret = Device.generate_secret()
        legacy = Device(owner=self.owner, display_name="Old sensor")
        legacy.set_secret(secret)
        legacy.save()

        result = process_heartbeat(str(legacy.id), secret)

        self.assertEqual(result.identifier, str(legacy.id))
        self.assertEqual(Device.objects.get(pk=legacy.pk).state, Device.State.ONLINE)

    def test_sweep_is_idempotent(self):
        process_heartbeat("PROJ1-ESP5", self.registration.secret)
        self._age(300)

        self.assertEqual(sweep_offline_devices(120), 1)
        self.assertEqual(sweep_offline_devices(120), 0)
        self.assertEqual(self._state(), Device.State.OFFLINE)

    def test_sweep_leaves_fresh_and_waiting_devices_alone(self):
        waiting = register_device(project_code="PROJ1", owner=self.owner, slot=6, display_name="").device
        process_heartbeat("PROJ1-ESP5", self.registration.secret)

        self.assertEqual(sweep_offline_devices(120), 0)
        self.assertEqual(self._state(), Device.State.ONLINE)
        self.assertEqual(Device.objects.get(pk=waiting.pk).state, Device.State.WAITING)

    def test_sweep_never_demotes_waiting_even_with_old_timestamp(self):
        Device.objects.filter(pk=self.device.pk).update(last_seen_at=timezone.now() - timedelta(days=1))

        self.assertEqual(sweep_offline_devices(timedelta(minutes=2)), 0)
        self.assertEqual(self._state(), Device.State.WAITING)

    def test_sweep_command_once(self):
        process_heartbeat("PROJ1-ESP5", self.registration.secret)
        self._age(600)
        out = StringIO()

        call_command("sweep_offline_devices", "--once", "--threshold", "120", stdout=out)

        self.assertIn("Marked 1 device(s) offline.", out.getvalue())
        self.assertEqual(self._state(), Device.State.OFFLINE)

    def test_sweep_command_loop_stops_after_max_ticks(self):
        process_heartbeat("PROJ1-ESP5", self.registration.secret)
        self._age(600)
        out = StringIO()

        call_command("sweep_offline_devices", "--interval", "1", "--max-ticks", "1", stdout=out)

        self.assertIn("Marked 1 device(s) offline.", out.getvalue())


class DeviceApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.owner = self.user_model.objects.create_user(username="grower-api", password="pass1234")
        self.other = self.user_model.objects.create_user(username="neighbour-api", password="pass1234")
        create_project(name="Greenhouse A", owner=self.owner)

    def test_register_device_returns_secret_once(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.post(
            "/api/v1/projects/PROJ1/devices/",
            {"slot": 5, "display_name": "Tomatoes"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["composite_id"], "PROJ1-ESP5")
        self.assertEqual(payload["device"]["state"], "waiting")
        self.assertTrue(payload["secret"])
        self.assertTrue(AuditLog.objects.filter(action="device.register", entity_ref="PROJ1-ESP5").exists())

        detail = self.client.get("/api/v1/devices/PROJ1-ESP5/")
        self.assertEqual(detail.status_code, 200)
        self.assertNotIn("secret", detail.json())

    def test_register_taken_slot_is_conflict(self):
        self.client.force_authenticate(user=self.owner)
        self.client.post("/api/v1/projects/PROJ1/devices/", {"slot": 5}, format="json")

        response = self.client.post("/api/v1/projects/PROJ1/devices/", {"slot": 5}, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "slot_taken")

    def test_register_out_of_range_slot_is_validation_error(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.post("/api/v1/projects/PROJ1/devices/", {"slot": 0}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_slots_listing(self):
        register_device(project_code="PROJ1", owner=self.owner, slot=1, display_name="")
        self.client.force_authenticate(user=self.owner)

        response = self.client.get("/api/v1/projects/PROJ1/slots/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(len(payload), 20)
        self.assertEqual(payload[0], {"slot": 1, "composite_id": "PROJ1-ESP1", "available": False})
        self.assertTrue(payload[1]["available"])

    def test_device_list_is_owner_scoped(self):
        register_device(project_code="PROJ1", owner=self.owner, slot=1, display_name="")
        create_project(name="Greenhouse B", owner=self.other)
        register_device(project_code="PROJ2", owner=self.other, slot=1, display_name="")
        self.client.force_authenticate(user=self.owner)

        response = self.client.get("/api/v1/devices/")

        self.assertEqual(response.status_code, 200)
        ids = [item["composite_id"] for item in response.json()["results"]]
        self.assertEqual(ids, ["PROJ1-ESP1"])

        foreign = self.client.get("/api/v1/devices/PROJ2-ESP1/")
        self.assertEqual(foreign.status_code, 404)

    def test_device_detail_with_malformed_id(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.get("/api/v1/devices/PROJ1-ESP99/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "malformed_identifier")

    def test_delete_device(self):
        register_device(project_code="PROJ1", owner=self.owner, slot=2, display_name="")
        self.client.force_authenticate(user=self.owner)

        response = self.client.delete("/api/v1/devices/PROJ1-ESP2/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(Device.objects.filter(composite_id="PROJ1-ESP2").exists())
        self.assertTrue(AuditLog.objects.filter(action="device.delete", entity_ref="PROJ1-ESP2").exists())


class HeartbeatApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.owner = self.user_model.objects.create_user(username="grower-hb-api", password="pass1234")
        create_project(name="Greenhouse A", owner=self.owner)
        self.registration = register_device(project_code="PROJ1", owner=self.owner, slot=5, display_name="")

    def _post(self, payload=None, **headers):
        return self.client.post("/api/v1/devices/heartbeat", payload or {}, format="json", **headers)

    def test_heartbeat_marks_device_online(self):
        response = self._post(
            {"rssi": -55, "ip_address": "192.168.1.20", "fw_version": "2.0.0"},
            HTTP_X_COMPOSITE_DEVICE_ID="PROJ1-ESP5",
            HTTP_X_DEVICE_KEY=self.registration.secret,
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["success"])
        self.assertEqual(payload["device_id"], "PROJ1-ESP5")
        self.assertEqual(payload["status"], "online")
        self.assertEqual(HeartbeatRecord.objects.get().signal_strength, -55)

    def test_invalid_telemetry_is_dropped_not_fatal(self):
        response = self._post(
            {"rssi": "strong", "ip_address": "not-an-ip", "fw_version": "2.0.1"},
            HTTP_X_COMPOSITE_DEVICE_ID="PROJ1-ESP5",
            HTTP_X_DEVICE_KEY=self.registration.secret,
        )

        self.assertEqual(response.status_code, 200)
        record = HeartbeatRecord.objects.get()
        self.assertIsNone(record.signal_strength)
        self.assertIsNone(record.reported_address)
        self.assertEqual(record.firmware_version, "2.0.1")

    def test_wrong_key_is_401(self):
        response = self._post(HTTP_X_COMPOSITE_DEVICE_ID="PROJ1-ESP5", HTTP_X_DEVICE_KEY="wrong")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "unauthorized")

    def test_unknown_device_is_404(self):
        response = self._post(HTTP_X_COMPOSITE_DEVICE_ID="PROJ1-ESP6", HTTP_X_DEVICE_KEY="anything")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "unknown_device")

    def test_missing_or_malformed_identifier_is_400(self):
        missing = self._post(HTTP_X_DEVICE_KEY=self.registration.secret)
        malformed = self._post(HTTP_X_COMPOSITE_DEVICE_ID="esp5", HTTP_X_DEVICE_KEY=self.registration.secret)

        self.assertEqual(missing.status_code, 400)
        self.assertEqual(malformed.status_code, 400)
        self.assertEqual(malformed.json()["code"], "malformed_identifier")

    def test_legacy_uuid_header(self):
        secret = Device.generate_secret()
        legacy = Device(owner=self.owner, display_name="Old sensor")
        legacy.set_secret(secret)
        legacy.save()

        response = self._post(HTTP_X_DEVICE_UUID=str(legacy.id), HTTP_X_DEVICE_KEY=secret)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["device_id"], str(legacy.id))

    def test_header_padding_is_trimmed_before_parsing(self):
        response = self._post(
            HTTP_X_COMPOSITE_DEVICE_ID=" PROJ1-ESP5 ",
            HTTP_X_DEVICE_KEY=self.registration.secret,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["device_id"], "PROJ1-ESP5")
