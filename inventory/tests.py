import io
import tempfile
from decimal import Decimal
from pathlib import Path

import pandas as pd
from django.contrib.auth import get_user_model
from django.core.cache import caches
from django.core.files.uploadedfile import SimpleUploadedFile
from django.core.management import CommandError, call_command
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from common.exceptions import BusinessRuleViolation
from inventory.importing import COLUMNS
from inventory.models import Inventory, Product, PurchaseOrder, PurchaseOrderDetail, Supplier, UnitConversion, Variant
from inventory.services import create_product_with_variants, create_purchase_order, import_purchase_order, variant_stock
from pos.models import Order, OrderDetail


def make_product(sku, *, retail_price="2.00", import_price="1.20", conversions=(), name=None):
    """Create a product with a base variant and optional ``(unit, rate)`` conversions, with no stock."""
    product, variants = create_product_with_variants(
        product_fields={"name": name or f"Product {sku}"},
        base_fields={
            "sku": sku,
            "variant_name": f"{name or sku} - can",
            "unit": "can",
            "retail_price": Decimal(retail_price),
            "import_price": Decimal(import_price),
        },
        inventory_fields={"min_stock": 0, "max_stock": 0},
        conversions=[{"sku": f"{sku}-{unit}", "unit": unit, "conversion_rate": rate} for unit, rate in conversions],
    )
    return product, variants


def sheet_rows(*rows):
    """Spreadsheet rows keyed by column name; missing columns are blank."""
    return pd.DataFrame([{column: row.get(column, "") for column in COLUMNS} for row in rows], columns=list(COLUMNS))


def csv_upload(frame, name="products.csv"):
    return SimpleUploadedFile(name, frame.to_csv(index=False).encode("utf-8"), content_type="text/csv")


class InventoryApiTestCase(TestCase):
    def setUp(self):
        caches["catalog"].clear()
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="inv-admin", password="pass1234", role="admin")
        self.supervisor = self.user_model.objects.create_user(username="inv-sup", password="pass1234", role="supervisor")
        self.cashier = self.user_model.objects.create_user(username="inv-cashier", password="pass1234", role="cashier")
        self.supplier = Supplier.objects.create(supplier_code="SUP-1", name="Main Supplier")


class ProductCatalogTests(InventoryApiTestCase):
    def _create_payload(self, **overrides):
        payload = {
            "name": "Lager Beer",
            "sku": "BEER",
            "unit": "can",
            "retail_price": "2.00",
            "import_price": "1.20",
            "supplier_code": "SUP-1",
            "import_quantity": 5,
            "min_stock": 12,
            "warehouse_location": "B-2",
            "unit_conversions": [{"unit": "case", "conversion_rate": 24}],
        }
        payload.update(overrides)
        return payload

    def test_create_product_builds_variants_conversions_and_pending_purchase_order(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post("/api/v1/products/", self._create_payload(), format="json")

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        variants = {variant["sku"]: variant for variant in payload["product"]["variants"]}
        self.assertEqual(list(variants), ["BEER", "BEER-case"])
        self.assertEqual(variants["BEER"]["variant_name"], "Lager Beer - can")
        self.assertEqual(variants["BEER-case"]["variant_name"], "Lager Beer - case")
        self.assertEqual(variants["BEER-case"]["retail_price"], "48.00")
        self.assertEqual(variants["BEER-case"]["import_price"], "28.80")
        self.assertTrue(variants["BEER"]["stock"]["is_base_variant"])
        self.assertEqual(variants["BEER-case"]["stock"]["conversion_rate"], 24)
        self.assertEqual(variants["BEER"]["inventory"]["min_stock"], 12)
        self.assertIsNone(variants["BEER-case"]["inventory"])

        purchase_order = payload["purchase_order"]
        self.assertTrue(purchase_order["purchase_order_code"].startswith("PO-"))
        self.assertEqual(purchase_order["status"], "PENDING")
        self.assertEqual(purchase_order["import_status"], "PENDING")
        self.assertEqual(purchase_order["total_amount"], "6.00")
        self.assertEqual(purchase_order["details"][0]["sku"], "BEER")

        base = Variant.objects.get(sku="BEER")
        self.assertEqual(base.inventory.current_stock, 0)
        self.assertFalse(Inventory.objects.filter(variant__sku="BEER-case").exists())
        self.assertTrue(UnitConversion.objects.filter(from_variant=base, to_variant__sku="BEER-case", conversion_rate=24).exists())

    def test_create_product_rejects_existing_and_generated_sku_collisions(self):
        make_product("BEER-case")
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post("/api/v1/products/", self._create_payload(), format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("BEER-case", response.json()["errors"]["sku"][0])
        self.assertFalse(Product.objects.filter(name="Lager Beer").exists())

    def test_create_product_validates_price_quantity_and_supplier(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(
            "/api/v1/products/",
            self._create_payload(retail_price="0", import_quantity=0, supplier_code="NOPE"),
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(set(response.json()["errors"]), {"retail_price", "import_quantity", "supplier_code"})

    def test_cashier_cannot_create_product(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post("/api/v1/products/", self._create_payload(), format="json")

        self.assertEqual(response.status_code, 403)

    def test_list_is_paginated_searchable_and_newest_first(self):
        make_product("A-1", name="Apple Juice")
        make_product("B-1", name="Banana Chips")
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/products/", {"page_size": 1})
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["count"], 2)
        self.assertEqual(payload["total_pages"], 2)
        self.assertEqual(payload["page"], 1)
        self.assertEqual(payload["results"][0]["name"], "Banana Chips")

        response = self.client.get("/api/v1/products/", {"search": "apple"})
        self.assertEqual([item["name"] for item in response.json()["results"]], ["Apple Juice"])

    def test_product_reads_are_cached_until_a_write_flushes(self):
        self.client.force_authenticate(user=self.supervisor)
        self.assertEqual(self.client.get("/api/v1/products/").json()["count"], 0)

        # Rows written behind the API are invisible until something flushes the cache.
        make_product("HIDDEN-1")
        self.assertEqual(self.client.get("/api/v1/products/").json()["count"], 0)

        self.client.post("/api/v1/suppliers/", {"supplier_code": "SUP-2", "name": "Second"}, format="json")
        self.assertEqual(self.client.get("/api/v1/products/").json()["count"], 1)

    def test_conversion_stock_is_derived_from_base_inventory(self):
        product, (base, case) = make_product("COLA", conversions=[("case", 24)])
        Inventory.objects.filter(variant=base).update(current_stock=50)
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get(f"/api/v1/products/{product.id}/")

        self.assertEqual(response.status_code, 200)
        stock = {variant["sku"]: variant["stock"] for variant in response.json()["variants"]}
        self.assertEqual(stock["COLA"]["available_stock"], 50)
        self.assertEqual(stock["COLA-case"]["available_stock"], 2)
        self.assertEqual(stock["COLA-case"]["base_variant_id"], str(base.id))

    def test_update_product_and_variant(self):
        product, (base, case) = make_product("UPD", conversions=[("case", 6)])
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.patch(f"/api/v1/products/{product.id}/", {"brand": "Acme"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["brand"], "Acme")

        response = self.client.patch(
            f"/api/v1/variants/{base.id}/",
            {"retail_price": "2.50", "inventory": {"min_stock": 7, "warehouse_location": "C-9"}},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["retail_price"], "2.50")
        base.inventory.refresh_from_db()
        self.assertEqual(base.inventory.min_stock, 7)
        self.assertEqual(base.inventory.warehouse_location, "C-9")

        # Conversion variants never get an inventory row.
        response = self.client.patch(f"/api/v1/variants/{case.id}/", {"inventory": {"min_stock": 1}}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertFalse(Inventory.objects.filter(variant=case).exists())

    def test_variant_sku_must_stay_unique(self):
        make_product("TAKEN")
        _, (base,) = make_product("FREE")
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.patch(f"/api/v1/variants/{base.id}/", {"sku": "TAKEN"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("sku", response.json()["errors"])


class ProductDeletionTests(InventoryApiTestCase):
    def test_unreferenced_product_without_stock_is_deleted(self):
        product, _ = make_product("GONE", conversions=[("case", 12)])
        self.client.force_authenticate(user=self.supervisor)

        report = self.client.get(f"/api/v1/products/{product.id}/deletability/").json()
        self.assertTrue(report["can_delete"])

        response = self.client.delete(f"/api/v1/products/{product.id}/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["deleted_variants"], 2)
        self.assertFalse(Product.objects.filter(id=product.id).exists())
        self.assertFalse(Variant.objects.filter(sku__startswith="GONE").exists())

    def test_deletability_reports_orders_purchase_orders_and_stock(self):
        product, (base,) = make_product("BUSY")
        purchase_order = create_purchase_order(supplier=self.supplier, items=[{"variant": base, "quantity": 3, "unit_price": Decimal("1")}])
        import_purchase_order(purchase_order)
        order = Order.objects.create(order_code="POS-1", total_amount=Decimal("2.00"))
        OrderDetail.objects.create(order=order, variant=base, quantity=1, unit_price=Decimal("2.00"))
        self.client.force_authenticate(user=self.supervisor)

        report = self.client.get(f"/api/v1/products/{product.id}/deletability/").json()

        self.assertFalse(report["can_delete"])
        self.assertTrue(report["has_warnings"])
        self.assertEqual({issue["type"] for issue in report["issues"]}, {"ORDERS_EXIST", "PURCHASE_ORDERS_EXIST"})
        self.assertEqual(report["warnings"][0]["type"], "STOCK_EXISTS")
        self.assertEqual(report["warnings"][0]["count"], 3)

        response = self.client.delete(f"/api/v1/products/{product.id}/")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "business_rule_violation")
        self.assertTrue(Product.objects.filter(id=product.id).exists())

    def test_force_delete_requires_every_blocking_category_to_be_opted_into(self):
        product, (base,) = make_product("FORCE", import_price="1.50")
        purchase_order = create_purchase_order(supplier=self.supplier, items=[{"variant": base, "quantity": 4, "unit_price": Decimal("1.50")}])
        import_purchase_order(purchase_order)
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(f"/api/v1/products/{product.id}/force-delete/", {"delete_purchase_orders": True}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["errors"], {"blocked_by": ["STOCK_EXISTS"]})

        response = self.client.post(
            f"/api/v1/products/{product.id}/force-delete/",
            {"delete_purchase_orders": True, "allow_stock_deletion": True},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["deleted_purchase_orders"], 1)
        self.assertEqual(payload["stock_value"], "6.00")
        self.assertFalse(Product.objects.filter(id=product.id).exists())
        self.assertFalse(PurchaseOrder.objects.filter(id=purchase_order.id).exists())

    def test_supervisor_cannot_force_delete(self):
        product, _ = make_product("SAFE")
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(f"/api/v1/products/{product.id}/force-delete/", {}, format="json")

        self.assertEqual(response.status_code, 403)


class SupplierTests(InventoryApiTestCase):
    def test_create_validates_email_phone_and_unique_code(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(
            "/api/v1/suppliers/",
            {"supplier_code": "SUP-1", "name": "Dup", "email": "not-an-email", "phone": "12"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(set(response.json()["errors"]), {"supplier_code", "email", "phone"})

        response = self.client.post(
            "/api/v1/suppliers/",
            {"supplier_code": "SUP-9", "name": "Fresh Farms", "email": "sales@fresh.example", "phone": "+84 912 345 678"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["status"], "ACTIVE")

    def test_list_filters_and_counts_purchase_orders(self):
        _, (base,) = make_product("SUPL")
        create_purchase_order(supplier=self.supplier, items=[{"variant": base, "quantity": 1, "unit_price": Decimal("1")}])
        Supplier.objects.create(supplier_code="OLD-1", name="Old Supplier", status=Supplier.Status.INACTIVE)
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/suppliers/", {"search": "main"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["results"][0]["purchase_order_count"], 1)

        response = self.client.get("/api/v1/suppliers/", {"status": "INACTIVE"})
        self.assertEqual([item["supplier_code"] for item in response.json()["results"]], ["OLD-1"])

        options = self.client.get("/api/v1/suppliers/options/").json()
        self.assertEqual(
            [(option["supplier_code"], option["status"]) for option in options],
            [("SUP-1", "ACTIVE"), ("OLD-1", "INACTIVE")],
        )

    def test_detail_includes_recent_purchase_orders(self):
        _, (base,) = make_product("DET")
        for _ in range(12):
            create_purchase_order(supplier=self.supplier, items=[{"variant": base, "quantity": 1, "unit_price": Decimal("1")}])
        self.client.force_authenticate(user=self.cashier)

        payload = self.client.get(f"/api/v1/suppliers/{self.supplier.id}/").json()

        self.assertEqual(payload["purchase_order_count"], 12)
        self.assertEqual(len(payload["recent_purchase_orders"]), 10)

    def test_supplier_with_purchase_orders_cannot_be_deleted(self):
        _, (base,) = make_product("DEL")
        create_purchase_order(supplier=self.supplier, items=[{"variant": base, "quantity": 1, "unit_price": Decimal("1")}])
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.delete(f"/api/v1/suppliers/{self.supplier.id}/")

        self.assertEqual(response.status_code, 400)
        self.assertIn("INACTIVE", response.json()["message"])

        spare = Supplier.objects.create(supplier_code="SPARE", name="Spare")
        self.assertEqual(self.client.delete(f"/api/v1/suppliers/{spare.id}/").status_code, 204)


class PurchaseOrderTests(InventoryApiTestCase):
    def setUp(self):
        super().setUp()
        self.product, (self.base, self.case) = make_product("WATER", conversions=[("case", 12)])
        self.client.force_authenticate(user=self.supervisor)

    def _create(self, *items):
        response = self.client.post(
            "/api/v1/purchase-orders/",
            {
                "supplier": str(self.supplier.id),
                "items": [
                    {"variant": str(variant.id), "quantity": quantity, "unit_price": price, "discount": discount}
                    for variant, quantity, price, discount in items
                ],
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201, response.content)
        return response.json()

    def _stock(self):
        return Inventory.objects.get(variant=self.base).current_stock

    def test_create_computes_line_totals(self):
        payload = self._create((self.base, 10, "0.50", "1.00"), (self.case, 2, "5.00", "0"))

        self.assertEqual(payload["status"], "PENDING")
        self.assertEqual(payload["item_count"], 2)
        self.assertEqual(payload["total_quantity"], 12)
        self.assertEqual(payload["total_amount"], "14.00")
        self.assertEqual(sorted(detail["total_amount"] for detail in payload["details"]), ["10.00", "4.00"])

    def test_create_rejects_discount_above_line_amount_and_inactive_supplier(self):
        response = self.client.post(
            "/api/v1/purchase-orders/",
            {"supplier": str(self.supplier.id), "items": [{"variant": str(self.base.id), "quantity": 1, "unit_price": "1.00", "discount": "2.00"}]},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

        inactive = Supplier.objects.create(supplier_code="OFF", name="Off", status=Supplier.Status.INACTIVE)
        response = self.client.post(
            "/api/v1/purchase-orders/",
            {"supplier": str(inactive.id), "items": [{"variant": str(self.base.id), "quantity": 1, "unit_price": "1.00"}]},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "business_rule_violation")

    def test_import_moves_stock_exactly_once(self):
        payload = self._create((self.base, 5, "1.00", "0"), (self.case, 2, "10.00", "0"))

        response = self.client.post(f"/api/v1/purchase-orders/{payload['id']}/import/", {}, format="json")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["purchase_order"]["status"], "COMPLETED")
        self.assertEqual(body["purchase_order"]["import_status"], "IMPORTED")
        self.assertIsNotNone(body["purchase_order"]["import_date"])
        self.assertEqual(sorted(update["imported"] for update in body["inventory_updates"]), [5, 24])
        self.assertEqual(self._stock(), 29)

        again = self.client.post(f"/api/v1/purchase-orders/{payload['id']}/import/", {}, format="json")
        self.assertEqual(again.status_code, 400)
        self.assertEqual(again.json()["code"], "business_rule_violation")
        self.assertEqual(self._stock(), 29)

    def test_stale_instance_cannot_import_twice(self):
        purchase_order = create_purchase_order(supplier=self.supplier, items=[{"variant": self.base, "quantity": 3, "unit_price": Decimal("1")}])
        stale = PurchaseOrder.objects.get(pk=purchase_order.pk)
        import_purchase_order(purchase_order)

        with self.assertRaises(BusinessRuleViolation):
            import_purchase_order(stale)
        self.assertEqual(self._stock(), 3)

    def test_import_applies_actual_quantities(self):
        payload = self._create((self.base, 10, "1.00", "0"))

        response = self.client.post(
            f"/api/v1/purchase-orders/{payload['id']}/import/",
            {"actual_quantities": [{"variant": str(self.base.id), "actual_quantity": 8}]},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self._stock(), 8)
        detail = PurchaseOrderDetail.objects.get(purchase_order_id=payload["id"])
        self.assertEqual(detail.quantity, 8)
        self.assertEqual(detail.total_amount, Decimal("8.00"))

    def test_status_rules(self):
        payload = self._create((self.base, 4, "1.00", "0"))
        url = f"/api/v1/purchase-orders/{payload['id']}/status/"

        response = self.client.post(url, {"status": "CONFIRMED"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["purchase_order"]["status"], "CONFIRMED")

        response = self.client.post(url, {"import_status": "IMPORTED"}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self._stock(), 0)

        response = self.client.post(url, {"status": "COMPLETED", "import_status": "IMPORTED"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self._stock(), 4)

        response = self.client.post(url, {"status": "PENDING"}, format="json")
        self.assertEqual(response.status_code, 400)
        response = self.client.post(url, {"import_status": "PENDING"}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self._stock(), 4)

    def test_bulk_import_rejects_batch_with_imported_order(self):
        first = self._create((self.base, 1, "1.00", "0"))
        second = self._create((self.case, 1, "12.00", "0"))
        self.client.post(f"/api/v1/purchase-orders/{first['id']}/import/", {}, format="json")

        response = self.client.post("/api/v1/purchase-orders/bulk-import/", {"ids": [first["id"], second["id"]]}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["errors"]["rejected"][0]["code"], first["purchase_order_code"])
        self.assertEqual(self._stock(), 1)

        third = self._create((self.base, 2, "1.00", "0"))
        response = self.client.post("/api/v1/purchase-orders/bulk-import/", {"ids": [second["id"], third["id"]]}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["imported_count"], 2)
        updates = response.json()["inventory_updates"]
        self.assertEqual(len(updates), 1)
        self.assertEqual(updates[0]["imported"], 14)
        self.assertEqual(self._stock(), 15)

    def test_bulk_status_imports_through_the_guard(self):
        first = self._create((self.base, 2, "1.00", "0"))
        second = self._create((self.base, 3, "1.00", "0"))

        response = self.client.post(
            "/api/v1/purchase-orders/bulk-status/",
            {"ids": [first["id"], second["id"]], "status": "COMPLETED", "import_status": "IMPORTED"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["updated_count"], 2)
        self.assertEqual(self._stock(), 5)

    def test_bulk_cancel_and_delete(self):
        pending = self._create((self.base, 1, "1.00", "0"))
        imported = self._create((self.base, 1, "1.00", "0"))
        self.client.post(f"/api/v1/purchase-orders/{imported['id']}/import/", {}, format="json")

        response = self.client.post("/api/v1/purchase-orders/bulk-cancel/", {"ids": [pending["id"], imported["id"]]}, format="json")
        self.assertEqual(response.status_code, 400)

        response = self.client.post("/api/v1/purchase-orders/bulk-cancel/", {"ids": [pending["id"]], "reason": "supplier out of stock"}, format="json")
        self.assertEqual(response.status_code, 200)
        cancelled = PurchaseOrder.objects.get(id=pending["id"])
        self.assertEqual(cancelled.status, PurchaseOrder.Status.CANCELLED)
        self.assertIn("Cancelled: supplier out of stock", cancelled.note)

        response = self.client.post(f"/api/v1/purchase-orders/{pending['id']}/import/", {}, format="json")
        self.assertEqual(response.status_code, 400)

        response = self.client.post("/api/v1/purchase-orders/bulk-delete/", {"ids": [imported["id"]]}, format="json")
        self.assertEqual(response.status_code, 400)
        response = self.client.post("/api/v1/purchase-orders/bulk-delete/", {"ids": [pending["id"]]}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["deleted_count"], 1)
        self.assertFalse(PurchaseOrder.objects.filter(id=pending["id"]).exists())

    def test_direct_import_creates_completed_order(self):
        response = self.client.post(
            "/api/v1/purchase-orders/direct-import/",
            {"variant": str(self.case.id), "supplier": str(self.supplier.id), "quantity": 3, "unit_price": "6.00"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        purchase_order = response.json()["purchase_order"]
        self.assertTrue(purchase_order["purchase_order_code"].startswith("PO-DIRECT-"))
        self.assertEqual(purchase_order["import_status"], "IMPORTED")
        self.assertEqual(self._stock(), 36)
        self.assertEqual(variant_stock(Variant.objects.get(pk=self.case.pk))["available_stock"], 3)

    def test_restock_creates_pending_order_at_import_price(self):
        response = self.client.post(
            f"/api/v1/variants/{self.base.id}/restock/",
            {"supplier": str(self.supplier.id), "quantity": 6},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.json()["purchase_order_code"].startswith("PO-RESTOCK-"))
        self.assertEqual(response.json()["total_amount"], "7.20")
        self.assertEqual(self._stock(), 0)

    def test_list_filters(self):
        first = self._create((self.base, 1, "1.00", "0"))
        self._create((self.base, 1, "1.00", "0"))
        self.client.post(f"/api/v1/purchase-orders/{first['id']}/import/", {}, format="json")

        response = self.client.get("/api/v1/purchase-orders/", {"import_status": "IMPORTED"})
        self.assertEqual([item["id"] for item in response.json()["results"]], [first["id"]])

        response = self.client.get("/api/v1/purchase-orders/", {"search": first["purchase_order_code"][-4:]})
        self.assertIn(first["id"], [item["id"] for item in response.json()["results"]])

        response = self.client.get("/api/v1/purchase-orders/", {"date_from": "2000-01-01", "date_to": "2000-01-02"})
        self.assertEqual(response.json()["count"], 0)

        response = self.client.get(f"/api/v1/products/{self.product.id}/purchase-orders/")
        self.assertEqual(len(response.json()), 2)

    def test_cashier_cannot_see_purchase_orders(self):
        self.client.force_authenticate(user=self.cashier)

        self.assertEqual(self.client.get("/api/v1/purchase-orders/").status_code, 403)


class BulkProductImportTests(InventoryApiTestCase):
    def _valid_sheet(self):
        return sheet_rows(
            {
                "name": "Sparkling Water",
                "brand": "Aqua",
                "tags": "drinks, water",
                "sku": "SW-BOTTLE",
                "barcode": "8930000000101",
                "weight": "500",
                "weight_unit": "ml",
                "unit": "bottle",
                "conversion_rate": "1",
                "retail_price": "1.00",
                "import_price": "0.60",
                "wholesale_price": "0.80",
                "tax_applied": "Có",
                "input_tax": "5",
                "output_tax": "10",
                "initial_stock": "12",
                "min_stock": "5",
                "max_stock": "100",
                "warehouse_location": "A1",
                "expiry_warning_days": "30",
            },
            {
                "variant_name": "Sparkling Water - pack",
                "sku": "SW-PACK",
                "unit": "pack",
                "conversion_rate": "6",
                "retail_price": "5.50",
                "import_price": "3.40",
                "initial_stock": "2",
            },
            {},
            {"name": "Rice 5kg", "sku": "RICE-5", "unit": "bag", "retail_price": "12.00", "import_price": "9.00"},
        )

    def test_preview_groups_rows_without_writing(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(
            "/api/v1/products/import/preview/",
            {"file": csv_upload(self._valid_sheet())},
            format="multipart",
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["is_valid"])
        self.assertEqual(payload["product_count"], 2)
        self.assertEqual(payload["variant_count"], 3)
        water = payload["products"][0]
        self.assertEqual(water["name"], "Sparkling Water")
        self.assertEqual([variant["sku"] for variant in water["variants"]], ["SW-BOTTLE", "SW-PACK"])
        self.assertFalse(Product.objects.exists())

    def test_import_creates_catalog_and_books_opening_stock_once(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(
            "/api/v1/products/import/",
            {"file": csv_upload(self._valid_sheet()), "supplier_code": "SUP-1"},
            format="multipart",
        )

        self.assertEqual(response.status_code, 201, response.content)
        payload = response.json()
        self.assertEqual(payload["product_count"], 2)
        self.assertEqual(payload["variant_count"], 3)
        self.assertEqual(payload["total_amount"], "14.00")
        self.assertTrue(payload["purchase_order"]["purchase_order_code"].startswith("PO-BULK-"))
        self.assertEqual(payload["purchase_order"]["import_status"], "IMPORTED")

        bottle = Variant.objects.select_related("product").get(sku="SW-BOTTLE")
        self.assertEqual(bottle.inventory.current_stock, 24)
        self.assertEqual(bottle.inventory.initial_stock, 24)
        self.assertEqual(bottle.inventory.min_stock, 5)
        self.assertTrue(bottle.tax_applied)
        self.assertEqual(bottle.output_tax, Decimal("10"))
        self.assertEqual(bottle.product.tags, "drinks, water")
        self.assertEqual(bottle.product.expiry_warning_days, 30)
        self.assertTrue(UnitConversion.objects.filter(from_variant=bottle, to_variant__sku="SW-PACK", conversion_rate=6).exists())
        self.assertFalse(Inventory.objects.filter(variant__sku="SW-PACK").exists())
        self.assertEqual(Variant.objects.get(sku="RICE-5").inventory.current_stock, 0)
        self.assertEqual(PurchaseOrderDetail.objects.filter(purchase_order__purchase_order_code__startswith="PO-BULK-").count(), 2)

    def test_invalid_file_reports_row_level_errors_and_writes_nothing(self):
        make_product("EXISTS")
        frame = sheet_rows(
            {"name": "A", "sku": "DUP", "unit": "pc", "retail_price": "1"},
            {"name": "B", "sku": "DUP", "unit": "pc", "retail_price": "1"},
            {"name": "C", "sku": "", "unit": "pc", "retail_price": "1"},
            {"name": "D", "sku": "D-BOX", "unit": "box", "conversion_rate": "12", "retail_price": "3"},
            {"name": "E", "sku": "EXISTS", "unit": "pc", "retail_price": "abc"},
        )
        self.client.force_authenticate(user=self.supervisor)

        preview = self.client.post("/api/v1/products/import/preview/", {"file": csv_upload(frame)}, format="multipart").json()

        self.assertFalse(preview["is_valid"])
        found = {(error["row"], error["field"]) for error in preview["errors"]}
        self.assertTrue({(3, "sku"), (4, "sku"), (5, "conversion_rate"), (6, "sku"), (6, "retail_price")} <= found)

        response = self.client.post(
            "/api/v1/products/import/",
            {"file": csv_upload(frame), "supplier_code": "SUP-1"},
            format="multipart",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "business_rule_violation")
        self.assertEqual(Product.objects.count(), 1)
        self.assertFalse(PurchaseOrder.objects.exists())

    def test_duplicate_variant_rows_are_dropped_with_warning(self):
        frame = sheet_rows(
            {"name": "Soap", "variant_name": "Soap - bar", "sku": "SOAP", "unit": "bar", "retail_price": "1"},
            {"variant_name": "Soap - bar", "sku": "SOAP", "unit": "bar", "conversion_rate": "1", "retail_price": "1"},
        )
        self.client.force_authenticate(user=self.supervisor)

        preview = self.client.post("/api/v1/products/import/preview/", {"file": csv_upload(frame)}, format="multipart").json()

        self.assertEqual(preview["variant_count"], 1)
        self.assertEqual(preview["warnings"][0]["row"], 3)

    def test_xlsx_upload_is_supported(self):
        buffer = io.BytesIO()
        self._valid_sheet().to_excel(buffer, index=False, engine="openpyxl")
        upload = SimpleUploadedFile(
            "products.xlsx",
            buffer.getvalue(),
            content_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        )
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post("/api/v1/products/import/preview/", {"file": upload}, format="multipart")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["is_valid"])
        self.assertEqual(response.json()["variant_count"], 3)

    def test_unsupported_extension_and_missing_supplier_are_rejected(self):
        self.client.force_authenticate(user=self.supervisor)

        upload = SimpleUploadedFile("products.txt", b"name,sku\n", content_type="text/plain")
        response = self.client.post("/api/v1/products/import/preview/", {"file": upload}, format="multipart")
        self.assertEqual(response.status_code, 400)
        self.assertIn("file", response.json()["errors"])

        response = self.client.post("/api/v1/products/import/", {"file": csv_upload(self._valid_sheet())}, format="multipart")
        self.assertEqual(response.status_code, 400)
        self.assertIn("supplier_code", response.json()["errors"])

    @override_settings(BULK_IMPORT_MAX_PRODUCTS=1)
    def test_product_limit_is_enforced(self):
        self.client.force_authenticate(user=self.supervisor)

        preview = self.client.post(
            "/api/v1/products/import/preview/", {"file": csv_upload(self._valid_sheet())}, format="multipart"
        ).json()

        self.assertFalse(preview["is_valid"])
        self.assertIn("file", {error["field"] for error in preview["errors"]})

    def test_cashier_cannot_import(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post("/api/v1/products/import/preview/", {"file": csv_upload(self._valid_sheet())}, format="multipart")

        self.assertEqual(response.status_code, 403)

    def test_import_command_supports_dry_run(self):
        with tempfile.TemporaryDirectory() as directory:
            path = Path(directory) / "products.csv"
            self._valid_sheet().to_csv(path, index=False)

            call_command("import_products", str(path), "--dry-run", stdout=io.StringIO())
            self.assertFalse(Product.objects.exists())

            with self.assertRaises(CommandError):
                call_command("import_products", str(path), stdout=io.StringIO())

            call_command("import_products", str(path), "--supplier-code", "SUP-1", stdout=io.StringIO())

        self.assertEqual(Product.objects.count(), 2)
        self.assertEqual(Variant.objects.get(sku="SW-BOTTLE").inventory.current_stock, 24)

    def test_non_finite_and_out_of_range_numbers_are_row_errors(self):
        frame = sheet_rows(
            {"name": "A", "sku": "NUM-A", "unit": "pc", "retail_price": "nan"},
            {"name": "B", "sku": "NUM-B", "unit": "pc", "retail_price": "1", "import_price": "Infinity"},
            {"name": "C", "sku": "NUM-C", "unit": "pc", "retail_price": "1e30"},
            {"name": "D", "sku": "NUM-D", "unit": "pc", "retail_price": "1", "initial_stock": "99999999999"},
            {"name": "E", "sku": "NUM-E", "unit": "pc", "retail_price": "1", "weight": "-inf"},
        )
        self.client.force_authenticate(user=self.supervisor)

        preview = self.client.post("/api/v1/products/import/preview/", {"file": csv_upload(frame)}, format="multipart")

        self.assertEqual(preview.status_code, 200)
        found = {(error["row"], error["field"]) for error in preview.json()["errors"]}
        self.assertTrue(
            {(2, "retail_price"), (3, "import_price"), (4, "retail_price"), (5, "initial_stock"), (6, "weight")} <= found
        )

        response = self.client.post(
            "/api/v1/products/import/",
            {"file": csv_upload(frame), "supplier_code": "SUP-1"},
            format="multipart",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "business_rule_violation")
        self.assertFalse(Product.objects.exists())

    def test_tax_outside_percentage_range_is_rejected(self):
        frame = sheet_rows(
            {"name": "Tea", "sku": "TAX-1", "unit": "box", "retail_price": "1", "input_tax": "150", "output_tax": "-1"},
        )
        self.client.force_authenticate(user=self.supervisor)

        preview = self.client.post("/api/v1/products/import/preview/", {"file": csv_upload(frame)}, format="multipart").json()

        found = {(error["row"], error["field"]) for error in preview["errors"]}
        self.assertTrue({(2, "input_tax"), (2, "output_tax")} <= found)

    @override_settings(BULK_IMPORT_MAX_FILE_SIZE=10)
    def test_oversized_file_is_rejected(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post("/api/v1/products/import/preview/", {"file": csv_upload(self._valid_sheet())}, format="multipart")

        self.assertEqual(response.status_code, 400)
        self.assertIn("file", response.json()["errors"])

    @override_settings(BULK_IMPORT_MAX_FILE_SIZE=10)
    def test_import_command_enforces_file_size_limit(self):
        with tempfile.TemporaryDirectory() as directory:
            path = Path(directory) / "products.csv"
            self._valid_sheet().to_csv(path, index=False)

            with self.assertRaises(CommandError):
                call_command("import_products", str(path), "--dry-run", stdout=io.StringIO())

    def test_grouping_edge_rows(self):
        frame = sheet_rows(
            {"variant_name": "Loose Tea", "sku": "TEA", "unit": "g", "retail_price": "1"},
            {"sku": "ORPHAN", "unit": "pc", "retail_price": "1"},
            {"name": "Oil", "sku": "OIL-1", "unit": "l", "retail_price": "2"},
            {"variant_name": "Oil - bottle", "sku": "OIL-2", "unit": "bottle", "retail_price": "2"},
        )
        self.client.force_authenticate(user=self.supervisor)

        preview = self.client.post("/api/v1/products/import/preview/", {"file": csv_upload(frame)}, format="multipart").json()

        self.assertEqual([product["name"] for product in preview["products"]], ["Loose Tea", "Oil"])
        self.assertIn((3, "name"), {(warning["row"], warning["field"]) for warning in preview["warnings"]})
        self.assertIn((5, "conversion_rate"), {(error["row"], error["field"]) for error in preview["errors"]})
        self.assertFalse(preview["is_valid"])
