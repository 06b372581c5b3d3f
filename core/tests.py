from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from common import errors
from core.models import AuditLog
from core.services import AuthorizerCredentials, verify_authorizer


class AuthTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.user = self.user_model.objects.create_user(
            username="login-cashier",
            email="Login.Cashier@Example.com",
            password="pass1234",
            role="cashier",
        )

    def test_email_is_normalized_on_save(self):
        self.user.refresh_from_db()
        self.assertEqual(self.user.email, "login.cashier@example.com")

    def test_token_obtain_accepts_username_or_email(self):
        by_username = self.client.post(
            "/api/v1/token/", {"username": "login-cashier", "password": "pass1234"}, format="json"
        )
        by_email = self.client.post(
            "/api/v1/token/", {"username": "login.cashier@example.com", "password": "pass1234"}, format="json"
        )

        self.assertEqual(by_username.status_code, 200)
        self.assertEqual(by_email.status_code, 200)
        self.assertIn("access", by_email.json())

    def test_me_returns_role(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.get("/api/v1/me/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["role"], "cashier")

    def test_unauthenticated_request_uses_error_envelope(self):
        response = self.client.get("/api/v1/bills/")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["code", "errors", "message", "status"])
        self.assertEqual(payload["code"], "not_authenticated")


class ApprovalPinTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.supervisor = self.user_model.objects.create_user(
            username="pin-supervisor", password="pass1234", role="supervisor"
        )
        self.cashier = self.user_model.objects.create_user(username="pin-cashier", password="pass1234", role="cashier")

    def test_supervisor_sets_pin_and_it_is_hashed(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.put("/api/v1/me/approval-pin/", {"pin": "4321"}, format="json")

        self.assertEqual(response.status_code, 204)
        self.supervisor.refresh_from_db()
        self.assertNotEqual(self.supervisor.approval_pin, "4321")
        self.assertTrue(self.supervisor.check_approval_pin("4321"))
        self.assertFalse(self.supervisor.check_approval_pin("0000"))
        self.assertTrue(AuditLog.objects.filter(action="user.approval_pin.set", entity_id=self.supervisor.id).exists())

    def test_pin_must_be_numeric(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.put("/api/v1/me/approval-pin/", {"pin": "abcd"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_cashier_cannot_set_pin_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.cashier)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.put("/api/v1/me/approval-pin/", {"pin": "1234"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("permission_denied" in message for message in cm.output))


class VerifyAuthorizerTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.supervisor = self.user_model.objects.create_user(
            username="auth-supervisor", password="pass1234", role="supervisor"
        )
        self.supervisor.set_approval_pin("1234")
        self.supervisor.save(update_fields=["approval_pin"])
        self.cashier = self.user_model.objects.create_user(username="auth-cashier", password="pass1234", role="cashier")
        self.cashier.set_approval_pin("1234")
        self.cashier.save(update_fields=["approval_pin"])

    def test_supervisor_with_correct_pin_is_accepted(self):
        user = verify_authorizer(AuthorizerCredentials(user=self.supervisor, pin="1234"), requester_id=self.cashier.id)
        self.assertEqual(user, self.supervisor)

    def test_wrong_pin_is_rejected(self):
        with self.assertRaises(errors.AuthorizationError):
            verify_authorizer(AuthorizerCredentials(user=self.supervisor, pin="9999"), requester_id=self.cashier.id)

    def test_cashier_cannot_authorize_even_with_pin(self):
        with self.assertRaises(errors.AuthorizationError):
            verify_authorizer(AuthorizerCredentials(user=self.cashier, pin="1234"))

    def test_requester_cannot_approve_own_request(self):
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            with self.assertRaises(errors.AuthorizationError):
                verify_authorizer(
                    AuthorizerCredentials(user=self.supervisor, pin="1234"), requester_id=self.supervisor.id
                )
        self.assertTrue(any("self_approval" in message for message in cm.output))


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="audit-admin", password="pass1234", role="admin")
        self.cashier = self.user_model.objects.create_user(username="audit-cashier", password="pass1234", role="cashier")

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_audit_logs_are_paginated_and_filterable(self):
        self.client.force_authenticate(user=self.admin)
        AuditLog.objects.create(action="bill.create", entity="bill", actor=self.admin)
        AuditLog.objects.create(action="shift.open", entity="shift", actor=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/", {"entity": "shift"})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        self.assertEqual([row["action"] for row in payload["results"]], ["shift.open"])

    def test_cashier_cannot_read_audit_logs(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
