from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.cache import caches
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from core.models import AuditLog
from inventory.models import Inventory
from inventory.services import create_product_with_variants
from pos.models import Order


class PosTestCase(TestCase):
    def setUp(self):
        caches["catalog"].clear()
        self.client = APIClient()
        self.cashier = get_user_model().objects.create_user(username="till-1", password="pass1234", role="cashier")
        self.client.force_authenticate(user=self.cashier)

        _, (self.can, self.case) = create_product_with_variants(
            product_fields={"name": "Coke"},
            base_fields={
                "sku": "COKE",
                "barcode": "8930000000001",
                "variant_name": "Coke - can",
                "unit": "can",
                "retail_price": Decimal("1.50"),
                "import_price": Decimal("1.00"),
            },
            inventory_fields={"min_stock": 0, "max_stock": 0},
            conversions=[{"sku": "COKE-case", "unit": "case", "conversion_rate": 24, "retail_price": Decimal("30.00")}],
        )
        Inventory.objects.filter(variant=self.can).update(current_stock=50)

    def _stock(self):
        return Inventory.objects.get(variant=self.can).current_stock

    def _line(self, variant, quantity, **extra):
        return {"variant": str(variant.id), "quantity": quantity, **extra}


class PosCatalogTests(PosTestCase):
    def test_catalog_lists_sellable_variants_with_derived_stock(self):
        response = self.client.get("/api/v1/pos/catalog/")

        self.assertEqual(response.status_code, 200)
        entries = {entry["sku"]: entry for entry in response.json()}
        self.assertEqual(entries["COKE"]["available_stock"], 50)
        self.assertEqual(entries["COKE"]["price"], "1.50")
        self.assertEqual(entries["COKE-case"]["available_stock"], 2)
        self.assertEqual(entries["COKE-case"]["conversion_rate"], 24)
        self.assertEqual(entries["COKE-case"]["price"], "30.00")

    def test_catalog_search(self):
        response = self.client.get("/api/v1/pos/catalog/", {"search": "case"})

        self.assertEqual([entry["sku"] for entry in response.json()], ["COKE-case"])

    def test_lookup_by_barcode_or_sku(self):
        response = self.client.get("/api/v1/pos/lookup/", {"code": "8930000000001"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["sku"], "COKE")

        response = self.client.get("/api/v1/pos/lookup/", {"code": "COKE-case"})
        self.assertEqual(response.json()["variant"], str(self.case.id))

    def test_lookup_unknown_code_returns_not_found(self):
        response = self.client.get("/api/v1/pos/lookup/", {"code": "0000"})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

        response = self.client.get("/api/v1/pos/lookup/")
        self.assertEqual(response.status_code, 400)

    def test_catalog_requires_authentication(self):
        self.client.force_authenticate(user=None)

        self.assertEqual(self.client.get("/api/v1/pos/catalog/").status_code, 401)


class CartQuoteTests(PosTestCase):
    def test_quote_merges_lines_and_prices_server_side(self):
        response = self.client.post(
            "/api/v1/pos/cart/quote/",
            {
                "lines": [
                    self._line(self.can, 2, discount="0.50"),
                    self._line(self.case, 1),
                    self._line(self.can, 3),
                ]
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(len(payload["lines"]), 2)
        self.assertEqual(payload["item_count"], 6)
        # 5 cans at 1.50 less 0.50, plus one case at 30.00.
        self.assertEqual(payload["total_amount"], "37.00")
        self.assertTrue(payload["is_available"])
        self.assertEqual(self._stock(), 50)

    def test_quote_flags_unavailable_lines(self):
        response = self.client.post("/api/v1/pos/cart/quote/", {"lines": [self._line(self.case, 3)]}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["is_available"])
        self.assertFalse(response.json()["lines"][0]["in_stock"])

    def test_quote_rejects_empty_cart_and_oversized_discount(self):
        response = self.client.post("/api/v1/pos/cart/quote/", {"lines": []}, format="json")
        self.assertEqual(response.status_code, 400)

        response = self.client.post(
            "/api/v1/pos/cart/quote/", {"lines": [self._line(self.can, 1, discount="5.00")]}, format="json"
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")


class CheckoutTests(PosTestCase):
    def test_checkout_deducts_base_stock_and_records_paid_order(self):
        response = self.client.post(
            "/api/v1/pos/checkout/",
            {"name": "Walk-in", "note": "bag needed", "lines": [self._line(self.can, 2), self._line(self.case, 1)]},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertTrue(payload["order_code"].startswith("POS-"))
        self.assertEqual(payload["status"], "completed")
        self.assertEqual(payload["payment_status"], "paid")
        self.assertEqual(payload["total_amount"], "33.00")
        self.assertEqual(payload["note"], "POS Order - Walk-in\nbag needed")
        self.assertEqual(payload["cashier"], str(self.cashier.id))
        self.assertEqual(len(payload["details"]), 2)
        # 2 cans plus one case of 24.
        self.assertEqual(self._stock(), 24)
        self.assertTrue(AuditLog.objects.filter(action="order.create", entity_id=payload["id"]).exists())

    def test_insufficient_stock_rejects_whole_order(self):
        response = self.client.post(
            "/api/v1/pos/checkout/",
            {"name": "Walk-in", "lines": [self._line(self.can, 1), self._line(self.case, 3)]},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "business_rule_violation")
        self.assertEqual(response.json()["errors"]["required"], 73)
        self.assertEqual(self._stock(), 50)
        self.assertFalse(Order.objects.exists())

    @override_settings(POS_ALLOW_NEGATIVE_STOCK=True)
    def test_negative_stock_can_be_allowed(self):
        response = self.client.post(
            "/api/v1/pos/checkout/", {"name": "Walk-in", "lines": [self._line(self.case, 3)]}, format="json"
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(self._stock(), -22)

    def test_checkout_refreshes_cached_catalog(self):
        before = {entry["sku"]: entry for entry in self.client.get("/api/v1/pos/catalog/").json()}
        self.assertEqual(before["COKE-case"]["available_stock"], 2)

        self.client.post("/api/v1/pos/checkout/", {"name": "Walk-in", "lines": [self._line(self.case, 1)]}, format="json")

        after = {entry["sku"]: entry for entry in self.client.get("/api/v1/pos/catalog/").json()}
        self.assertEqual(after["COKE"]["available_stock"], 26)
        self.assertEqual(after["COKE-case"]["available_stock"], 1)

    def test_checkout_requires_customer_name(self):
        response = self.client.post("/api/v1/pos/checkout/", {"lines": [self._line(self.can, 1)]}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("name", response.json()["errors"])


class OrderHistoryTests(PosTestCase):
    def test_orders_are_listed_newest_first_and_searchable(self):
        first = self.client.post("/api/v1/pos/checkout/", {"name": "A", "lines": [self._line(self.can, 1)]}, format="json").json()
        second = self.client.post("/api/v1/pos/checkout/", {"name": "B", "lines": [self._line(self.can, 1)]}, format="json").json()

        response = self.client.get("/api/v1/pos/orders/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([order["id"] for order in response.json()["results"]], [second["id"], first["id"]])

        response = self.client.get("/api/v1/pos/orders/", {"search": first["order_code"]})
        self.assertEqual([order["id"] for order in response.json()["results"]], [first["id"]])

        detail = self.client.get(f"/api/v1/pos/orders/{first['id']}/").json()
        self.assertEqual(detail["details"][0]["sku"], "COKE")
