import threading
from unittest import skipUnless

from django.contrib.auth import get_user_model
from django.db import connection, connections
from django.test import TestCase, TransactionTestCase, override_settings
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient

from common.exceptions import CapacityExceeded, DuplicateName, ProjectNotFound, SlotTaken
from core.models import AuditLog
from devices.models import Device
from devices.services import register_device
from projects.models import Project, ProjectCodeCounter
from projects.services import (
    PROJECT_CODE_COUNTER_KEY,
    allocate_project_code,
    create_project,
    delete_project,
    get_owned_project,
)


class ProjectServiceTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.owner = self.user_model.objects.create_user(username="grower", password="pass1234")
        self.other = self.user_model.objects.create_user(username="neighbour", password="pass1234")

    def test_codes_follow_creation_order_and_names_are_unique(self):
        first = create_project(name="Greenhouse A", owner=self.owner)
        second = create_project(name="Greenhouse B", owner=self.owner)

        self.assertEqual(first.code, "PROJ1")
        self.assertEqual(second.code, "PROJ2")
        with self.assertRaises(DuplicateName):
            create_project(name="Greenhouse A", owner=self.owner)
        self.assertEqual(Project.objects.count(), 2)

    def test_name_uniqueness_ignores_case_and_owner(self):
        create_project(name="Greenhouse A", owner=self.owner)

        with self.assertRaises(DuplicateName):
            create_project(name="greenhouse a", owner=self.other)

    def test_duplicate_name_does_not_reuse_a_burned_code(self):
        create_project(name="Greenhouse A", owner=self.owner)
        with self.assertRaises(DuplicateName):
            create_project(name="Greenhouse A", owner=self.owner)

        # The failed attempt rolled back with its transaction.
        self.assertEqual(create_project(name="Greenhouse B", owner=self.owner).code, "PROJ2")

    def test_deleted_codes_are_never_reissued(self):
        first = create_project(name="Greenhouse A", owner=self.owner)
        delete_project(first.code, self.owner)

        self.assertEqual(create_project(name="Greenhouse C", owner=self.owner).code, "PROJ2")

    def test_counter_switches_to_long_form_after_999(self):
        ProjectCodeCounter.objects.filter(key=PROJECT_CODE_COUNTER_KEY).update(value=998)

        self.assertEqual(allocate_project_code(), "PROJ999")
        self.assertEqual(allocate_project_code(), "P1000")

    @override_settings(PROJECT_CODE_CEILING=2)
    def test_capacity_exceeded_leaves_counter_untouched(self):
        create_project(name="Greenhouse A", owner=self.owner)
        create_project(name="Greenhouse B", owner=self.owner)

        with self.assertRaises(CapacityExceeded):
            create_project(name="Greenhouse C", owner=self.owner)
        self.assertEqual(ProjectCodeCounter.objects.get(key=PROJECT_CODE_COUNTER_KEY).value, 2)

    def test_empty_name_is_rejected(self):
        with self.assertRaises(ValidationError):
            create_project(name="   ", owner=self.owner)

    def test_other_owners_projects_are_not_found(self):
        project = create_project(name="Greenhouse A", owner=self.owner)

        with self.assertRaises(ProjectNotFound):
            get_owned_project(project.code, self.other)
        with self.assertRaises(ProjectNotFound):
            delete_project(project.code, self.other)

    def test_delete_cascades_to_devices(self):
        project = create_project(name="Greenhouse A", owner=self.owner)
        register_device(project_code=project.code, owner=self.owner, slot=1, display_name="")
        register_device(project_code=project.code, owner=self.owner, slot=2, display_name="")

        delete_project(project.code, self.owner)

        self.assertFalse(Project.objects.filter(code=project.code).exists())
        self.assertEqual(Device.objects.count(), 0)


class ProjectApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.owner = self.user_model.objects.create_user(username="grower-api", password="pass1234")
        self.other = self.user_model.objects.create_user(username="neighbour-api", password="pass1234")

    def test_create_project_returns_code_and_writes_audit_log(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.post(
            "/api/v1/projects/",
            {"name": "Greenhouse A", "description": "North wing"},
            format="json",
            HTTP_X_REQUEST_ID="req-proj-1",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["code"], "PROJ1")
        self.assertTrue(
            AuditLog.objects.filter(action="project.create", entity_ref="PROJ1", request_id="req-proj-1").exists()
        )

    def test_duplicate_name_uses_error_envelope(self):
        self.client.force_authenticate(user=self.owner)
        self.client.post("/api/v1/projects/", {"name": "Greenhouse A"}, format="json")

        response = self.client.post("/api/v1/projects/", {"name": "Greenhouse A"}, format="json")

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["code", "errors", "message", "status"])
        self.assertEqual(payload["code"], "duplicate_name")
        self.assertEqual(payload["status"], 409)

    @override_settings(PROJECT_CODE_CEILING=1)
    def test_capacity_exceeded_maps_to_503(self):
        self.client.force_authenticate(user=self.owner)
        self.client.post("/api/v1/projects/", {"name": "Greenhouse A"}, format="json")

        response = self.client.post("/api/v1/projects/", {"name": "Greenhouse B"}, format="json")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["code"], "capacity_exceeded")

    def test_list_is_scoped_to_owner_with_device_counts(self):
        mine = create_project(name="Greenhouse A", owner=self.owner)
        create_project(name="Greenhouse B", owner=self.other)
        register_device(project_code=mine.code, owner=self.owner, slot=3, display_name="Fan")
        self.client.force_authenticate(user=self.owner)

        response = self.client.get("/api/v1/projects/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        self.assertEqual([item["code"] for item in payload["results"]], [mine.code])
        self.assertEqual(payload["results"][0]["device_count"], 1)

    def test_other_owner_gets_not_found_not_forbidden(self):
        project = create_project(name="Greenhouse A", owner=self.other)
        self.client.force_authenticate(user=self.owner)

        detail = self.client.get(f"/api/v1/projects/{project.code}/")
        delete = self.client.delete(f"/api/v1/projects/{project.code}/")

        self.assertEqual(detail.status_code, 404)
        self.assertEqual(detail.json()["code"], "not_found")
        self.assertEqual(delete.status_code, 404)
        self.assertTrue(Project.objects.filter(pk=project.pk).exists())

    def test_delete_project(self):
        project = create_project(name="Greenhouse A", owner=self.owner)
        self.client.force_authenticate(user=self.owner)

        response = self.client.delete(f"/api/v1/projects/{project.code}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(Project.objects.filter(pk=project.pk).exists())
        self.assertTrue(AuditLog.objects.filter(action="project.delete", entity_ref=project.code).exists())

    def test_blank_name_is_a_validation_error(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.post("/api/v1/projects/", {"name": ""}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_requires_authentication(self):
        response = self.client.get("/api/v1/projects/")

        self.assertEqual(response.status_code, 401)


@skipUnless(connection.vendor == "postgresql", "row locks are only exercised on PostgreSQL")
class ConcurrentIdentityTests(TransactionTestCase):
    def setUp(self):
        ProjectCodeCounter.objects.update_or_create(key=PROJECT_CODE_COUNTER_KEY, defaults={"value": 0})
        self.owner = get_user_model().objects.create_user(username="race-grower", password="pass1234")

    def _run_in_threads(self, target, count):
        results, errors = [], []
        barrier = threading.Barrier(count)

        def worker(index):
            try:
                barrier.wait()
                results.append(target(index))
            except Exception as exc:  # collected and asserted on below
                errors.append(exc)
            finally:
                connections.close_all()

        threads = [threading.Thread(target=worker, args=(index,)) for index in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results, errors

    def test_parallel_allocations_never_share_a_code(self):
        codes, errors = self._run_in_threads(lambda index: allocate_project_code(), 8)

        self.assertEqual(errors, [])
        self.assertEqual(sorted(codes), sorted(f"PROJ{n}" for n in range(1, 9)))

    def test_parallel_creates_with_one_name_yield_one_project(self):
        projects, errors = self._run_in_threads(
            lambda index: create_project(name="Contested", owner=self.owner),
            4,
        )

        self.assertEqual(len(projects), 1)
        self.assertEqual(len(errors), 3)
        self.assertTrue(all(isinstance(exc, DuplicateName) for exc in errors))
        self.assertEqual(Project.objects.filter(name="Contested").count(), 1)

    def test_parallel_registrations_for_one_slot_yield_one_device(self):
        project = create_project(name="Race Greenhouse", owner=self.owner)

        registrations, errors = self._run_in_threads(
            lambda index: register_device(
                project_code=project.code,
                owner=self.owner,
                slot=7,
                display_name=f"Sensor {index}",
            ),
            4,
        )

        self.assertEqual([r.composite_id for r in registrations], [f"{project.code}-ESP7"])
        self.assertEqual(len(errors), 3)
        self.assertTrue(all(isinstance(exc, SlotTaken) for exc in errors))
        self.assertEqual(Device.objects.filter(project=project).count(), 1)
