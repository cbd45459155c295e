from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.test import TestCase
from rest_framework.test import APIClient

from core.models import AuditLog


class TokenObtainTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.user = self.user_model.objects.create_user(
            username="grower",
            email="Grower@Example.com",
            password="pass1234",
        )

    def test_token_with_username(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "grower", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_token_with_email_is_case_insensitive(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "GROWER@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)

    def test_bad_credentials_use_error_envelope(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "grower", "password": "wrong"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "authentication_failed")

    def test_access_token_authenticates_api_calls(self):
        token = self.client.post(
            "/api/v1/token/",
            {"username": "grower", "password": "pass1234"},
            format="json",
        ).json()["access"]

        response = self.client.get("/api/v1/projects/", HTTP_AUTHORIZATION=f"Bearer {token}")

        self.assertEqual(response.status_code, 200)


class UserEmailTests(TestCase):
    def test_email_is_stored_lowercase(self):
        user = get_user_model().objects.create_user(username="mixed", email="Mixed@Example.com", password="x")

        user.refresh_from_db()
        self.assertEqual(user.email, "mixed@example.com")

    def test_email_is_unique_ignoring_case(self):
        user_model = get_user_model()
        user_model.objects.create_user(username="first", email="same@example.com", password="x")

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                user_model.objects.create_user(username="second", email="SAME@example.com", password="x")

    def test_blank_emails_do_not_collide(self):
        user_model = get_user_model()
        user_model.objects.create_user(username="no-mail-1", password="x")
        user_model.objects.create_user(username="no-mail-2", password="x")

        self.assertEqual(user_model.objects.filter(email="").count(), 2)


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="audit-admin", password="pass1234", is_staff=True)
        self.grower = self.user_model.objects.create_user(username="audit-grower", password="pass1234")

    def test_project_create_writes_audit_log(self):
        self.client.force_authenticate(user=self.grower)
        res = self.client.post(
            "/api/v1/projects/",
            {"name": "Audit Greenhouse"},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(res.status_code, 201)
        log = AuditLog.objects.get(action="project.create", request_id="req-123")
        self.assertEqual(log.actor, self.grower)
        self.assertEqual(log.entity_ref, res.json()["code"])
        self.assertEqual(log.after_snapshot["name"], "Audit Greenhouse")

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_audit_logs_filter_by_entity_ref(self):
        self.client.force_authenticate(user=self.admin)
        AuditLog.objects.create(action="device.register", entity="device", entity_ref="PROJ1-ESP1")
        AuditLog.objects.create(action="device.register", entity="device", entity_ref="PROJ1-ESP2")

        response = self.client.get("/api/v1/admin/audit-logs/", {"entity_ref": "PROJ1-ESP2"})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["count"], 1)
        self.assertEqual(payload["results"][0]["entity_ref"], "PROJ1-ESP2")

    def test_audit_logs_require_staff(self):
        self.client.force_authenticate(user=self.grower)

        response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
