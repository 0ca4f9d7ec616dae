from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from inventory.models import Supplier, Variant
from inventory.services import create_product_with_variants, create_purchase_order, import_purchase_order

DEMO_PRODUCTS = [
    {
        "product": {"name": "Cola 330ml", "brand": "Demo Drinks", "tags": "beverages, soft drinks"},
        "base": {
            "sku": "SKU-COLA-001",
            "barcode": "8930000000011",
            "variant_name": "Cola 330ml - can",
            "unit": "can",
            "weight": Decimal("330"),
            "weight_unit": "ml",
            "retail_price": Decimal("1.50"),
            "wholesale_price": Decimal("1.20"),
            "import_price": Decimal("0.90"),
        },
        "inventory": {"min_stock": 48, "max_stock": 960, "warehouse_location": "A-01"},
        "conversions": [{"sku": "SKU-COLA-001-case", "unit": "case", "conversion_rate": 24}],
        "stock": 10,
    },
    {
        "product": {"name": "Potato Chips", "brand": "Demo Snacks", "tags": "snacks"},
        "base": {
            "sku": "SKU-CHIPS-001",
            "barcode": "8930000000028",
            "variant_name": "Potato Chips - bag",
            "unit": "bag",
            "weight": Decimal("90"),
            "retail_price": Decimal("2.00"),
            "wholesale_price": Decimal("1.60"),
            "import_price": Decimal("1.10"),
        },
        "inventory": {"min_stock": 10, "max_stock": 200, "warehouse_location": "B-03"},
        "conversions": [],
        "stock": 60,
    },
]


class Command(BaseCommand):
    help = "Seed demo users, suppliers, products and stock for local development."

    @transaction.atomic
    def handle(self, *args, **options):
        User = get_user_model()

        for username, role, password, is_superuser in [
            ("admin", User.Role.ADMIN, "admin1234", True),
            ("supervisor", User.Role.SUPERVISOR, "supervisor1234", False),
            ("cashier", User.Role.CASHIER, "cashier1234", False),
        ]:
            user, created = User.objects.get_or_create(
                username=username,
                defaults={
                    "email": f"{username}@example.com",
                    "role": role,
                    "is_staff": is_superuser,
                    "is_superuser": is_superuser,
                    "is_active": True,
                },
            )
            if created:
                user.set_password(password)
                user.save(update_fields=["password"])

        supplier, _ = Supplier.objects.get_or_create(
            supplier_code="SUP-001",
            defaults={
                "name": "Local Supplier",
                "email": "supplier@example.com",
                "phone": "+84 912 345 678",
                "status": Supplier.Status.ACTIVE,
            },
        )

        created_products = 0
        for entry in DEMO_PRODUCTS:
            if Variant.objects.filter(sku=entry["base"]["sku"]).exists():
                continue
            _, variants = create_product_with_variants(
                product_fields=entry["product"],
                base_fields=entry["base"],
                inventory_fields=entry["inventory"],
                conversions=entry["conversions"],
            )
            # Stock arrives in the largest unit, like a real delivery.
            delivered = variants[-1]
            purchase_order = create_purchase_order(
                supplier=supplier,
                items=[{"variant": delivered, "quantity": entry["stock"], "unit_price": delivered.import_price}],
                note="Demo opening stock",
            )
            import_purchase_order(purchase_order)
            created_products += 1

        self.stdout.write(self.style.SUCCESS(f"Demo data seeded successfully. New products: {created_products}."))
        self.stdout.write("Credentials: admin/admin1234, supervisor/supervisor1234, cashier/cashier1234")
        self.stdout.write(f"Supplier: {supplier.supplier_code}")
