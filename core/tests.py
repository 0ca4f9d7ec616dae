from django.contrib.auth import get_user_model
from django.core.cache import caches
from django.core.management import call_command
from django.test import TestCase
from rest_framework.test import APIClient

from core.models import AuditLog
from inventory.models import Supplier, Variant


class AuthenticationTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.user_model.objects.create_user(
            username="existing-user",
            email="existing@example.com",
            password="pass1234",
        )

    def test_registration_creates_cashier_and_writes_audit_log(self):
        response = self.client.post(
            "/api/v1/register/",
            {
                "username": "new-user",
                "email": "New.User@Example.com",
                "password": "Str0ng-pass-2024",
                "first_name": "New",
                "last_name": "User",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        user = self.user_model.objects.get(username="new-user")
        self.assertEqual(user.email, "new.user@example.com")
        self.assertEqual(user.role, self.user_model.Role.CASHIER)
        self.assertTrue(AuditLog.objects.filter(action="user.create", entity_id=user.id).exists())

    def test_registration_rejects_case_insensitive_duplicate_email(self):
        response = self.client.post(
            "/api/v1/register/",
            {
                "username": "new-user",
                "email": "EXISTING@example.com",
                "password": "Str0ng-pass-2024",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertEqual(payload["errors"], {"email": ["A user with this email already exists."]})

    def test_token_accepts_email_as_username(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "EXISTING@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_current_user_requires_authentication(self):
        response = self.client.get("/api/v1/me/")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")

    def test_current_user_can_update_profile_but_not_role(self):
        user = self.user_model.objects.get(username="existing-user")
        self.client.force_authenticate(user=user)

        response = self.client.patch("/api/v1/me/", {"first_name": "Ann", "role": "admin"}, format="json")

        self.assertEqual(response.status_code, 200)
        user.refresh_from_db()
        self.assertEqual(user.first_name, "Ann")
        self.assertEqual(user.role, self.user_model.Role.CASHIER)

    def test_current_user_lists_role_capabilities(self):
        self.client.force_authenticate(user=self.user_model.objects.get(username="existing-user"))

        capabilities = self.client.get("/api/v1/me/").json()["capabilities"]

        self.assertIn("pos.checkout", capabilities)
        self.assertIn("catalog.view", capabilities)
        self.assertNotIn("catalog.manage", capabilities)
        self.assertNotIn("cache.flush", capabilities)
        self.assertEqual(capabilities, sorted(capabilities))


class RolePermissionCoreTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.cashier = self.user_model.objects.create_user(username="cashier-core", password="pass1234", role="cashier")
        self.admin = self.user_model.objects.create_user(username="admin-core", password="pass1234", role="admin")

    def test_cashier_cannot_manage_users_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.cashier)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/users/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_admin_deactivates_instead_of_deleting_users(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/admin/users/{self.cashier.id}/")

        self.assertEqual(response.status_code, 204)
        self.cashier.refresh_from_db()
        self.assertFalse(self.cashier.is_active)
        self.assertTrue(AuditLog.objects.filter(action="user.deactivate", entity_id=self.cashier.id).exists())

        inactive = self.client.get("/api/v1/admin/users/", {"is_active": "false"}).json()
        self.assertEqual([item["username"] for item in inactive["results"]], ["cashier-core"])

    def test_admin_can_create_supervisor(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/admin/users/",
            {"username": "floor-lead", "email": "lead@example.com", "role": "supervisor", "password": "Str0ng-pass-2024"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        created = self.user_model.objects.get(username="floor-lead")
        self.assertEqual(created.role, self.user_model.Role.SUPERVISOR)
        self.assertTrue(created.check_password("Str0ng-pass-2024"))


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="auditor", password="pass1234", role="admin")
        self.client.force_authenticate(user=self.admin)

    def test_supplier_create_writes_audit_log(self):
        response = self.client.post(
            "/api/v1/suppliers/",
            {"supplier_code": "SUP-AUD", "name": "Audited Supplier"},
            format="json",
            HTTP_X_REQUEST_ID="req-audit-1",
        )

        self.assertEqual(response.status_code, 201)
        log = AuditLog.objects.get(action="supplier.create")
        self.assertEqual(str(log.entity_id), response.json()["id"])
        self.assertEqual(log.actor_id, self.admin.id)
        self.assertEqual(log.request_id, "req-audit-1")
        self.assertEqual(log.after_snapshot["supplier_code"], "SUP-AUD")

    def test_audit_logs_are_read_only_and_filterable(self):
        self.client.post("/api/v1/suppliers/", {"supplier_code": "SUP-A", "name": "A"}, format="json")
        self.client.post("/api/v1/cache/flush/", format="json")

        response = self.client.get("/api/v1/admin/audit-logs/", {"entity": "supplier"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)

        log_id = response.json()["results"][0]["id"]
        delete_response = self.client.delete(f"/api/v1/admin/audit-logs/{log_id}/")
        self.assertEqual(delete_response.status_code, 405)

    def test_audit_log_export_returns_csv(self):
        self.client.post("/api/v1/suppliers/", {"supplier_code": "SUP-CSV", "name": "Csv"}, format="json")

        response = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        self.assertIn("supplier.create", response.content.decode())


class CacheFlushTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="cache-admin", password="pass1234", role="admin")
        self.supervisor = self.user_model.objects.create_user(username="cache-sup", password="pass1234", role="supervisor")
        caches["catalog"].clear()

    def test_admin_flush_clears_catalog_alias_only(self):
        caches["catalog"].set("products:sentinel", "cached")
        caches["default"].set("throttle:sentinel", "kept")
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/cache/flush/", format="json")

        self.assertEqual(response.status_code, 200)
        self.assertIsNone(caches["catalog"].get("products:sentinel"))
        self.assertEqual(caches["default"].get("throttle:sentinel"), "kept")
        self.assertTrue(AuditLog.objects.filter(action="cache.flush").exists())

    def test_supervisor_cannot_flush_cache(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post("/api/v1/cache/flush/", format="json")

        self.assertEqual(response.status_code, 403)

    def test_flush_command_clears_catalog_alias(self):
        caches["catalog"].set("suppliers:sentinel", "cached")

        call_command("flush_catalog_cache", verbosity=0)

        self.assertIsNone(caches["catalog"].get("suppliers:sentinel"))


class HealthTests(TestCase):
    def test_health_and_readiness_are_public(self):
        client = APIClient()

        self.assertEqual(client.get("/healthz/").json()["status"], "ok")
        self.assertEqual(client.get("/readyz/").json()["status"], "ready")


class SeedDemoDataTests(TestCase):
    def test_seed_is_idempotent_and_books_opening_stock(self):
        call_command("seed_demo_data", verbosity=0)
        call_command("seed_demo_data", verbosity=0)

        self.assertEqual(get_user_model().objects.filter(username__in=["admin", "supervisor", "cashier"]).count(), 3)
        self.assertEqual(Supplier.objects.filter(supplier_code="SUP-001").count(), 1)
        cola = Variant.objects.get(sku="SKU-COLA-001")
        # Ten cases of 24 cans.
        self.assertEqual(cola.inventory.current_stock, 240)
        self.assertEqual(Variant.objects.get(sku="SKU-CHIPS-001").inventory.current_stock, 60)
