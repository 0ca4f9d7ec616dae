import uuid

import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Product",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                ("brand", models.CharField(blank=True, default="", max_length=255)),
                ("product_type", models.CharField(default="NORMAL", max_length=64)),
                ("tags", models.CharField(blank=True, default="", max_length=500)),
                ("expiry_warning_days", models.PositiveIntegerField(blank=True, null=True)),
                ("warranty_applied", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["name"], name="product_name_idx"),
                    models.Index(fields=["created_at"], name="product_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Variant",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("sku", models.CharField(max_length=64, unique=True)),
                ("barcode", models.CharField(blank=True, max_length=128, null=True)),
                ("variant_name", models.CharField(max_length=255)),
                ("unit", models.CharField(max_length=32)),
                ("weight", models.DecimalField(decimal_places=3, default=0, max_digits=12)),
                ("weight_unit", models.CharField(default="g", max_length=16)),
                ("retail_price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("wholesale_price", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("import_price", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("tax_applied", models.BooleanField(default=False)),
                (
                    "input_tax",
                    models.DecimalField(
                        decimal_places=2,
                        default=0,
                        max_digits=5,
                        validators=[
                            django.core.validators.MinValueValidator(0),
                            django.core.validators.MaxValueValidator(100),
                        ],
                    ),
                ),
                (
                    "output_tax",
                    models.DecimalField(
                        decimal_places=2,
                        default=0,
                        max_digits=5,
                        validators=[
                            django.core.validators.MinValueValidator(0),
                            django.core.validators.MaxValueValidator(100),
                        ],
                    ),
                ),
                ("image_url", models.CharField(blank=True, default="", max_length=1024)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE, related_name="variants", to="inventory.product"
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["barcode"], name="variant_barcode_idx"),
                    models.Index(fields=["product", "created_at"], name="variant_product_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Inventory",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("initial_stock", models.IntegerField(default=0)),
                ("current_stock", models.IntegerField(default=0)),
                ("min_stock", models.PositiveIntegerField(default=0)),
                ("max_stock", models.PositiveIntegerField(default=0)),
                ("warehouse_location", models.CharField(blank=True, default="", max_length=128)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "variant",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE, related_name="inventory", to="inventory.variant"
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "inventories",
                "indexes": [models.Index(fields=["current_stock"], name="inventory_current_stock_idx")],
            },
        ),
        migrations.CreateModel(
            name="UnitConversion",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "conversion_rate",
                    models.PositiveIntegerField(validators=[django.core.validators.MinValueValidator(1)]),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "from_variant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="conversions_from",
                        to="inventory.variant",
                    ),
                ),
                (
                    "to_variant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="conversions_to",
                        to="inventory.variant",
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("from_variant", "to_variant"), name="uniq_unit_conversion_pair"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Supplier",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("supplier_code", models.CharField(max_length=64, unique=True)),
                ("name", models.CharField(max_length=255)),
                ("email", models.CharField(blank=True, default="", max_length=254)),
                ("phone", models.CharField(blank=True, default="", max_length=32)),
                ("address", models.TextField(blank=True, default="")),
                ("tax_code", models.CharField(blank=True, default="", max_length=64)),
                ("website", models.CharField(blank=True, default="", max_length=255)),
                (
                    "status",
                    models.CharField(
                        choices=[("ACTIVE", "Active"), ("INACTIVE", "Inactive"), ("PENDING", "Pending")],
                        default="ACTIVE",
                        max_length=16,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "indexes": [models.Index(fields=["status", "name"], name="supplier_status_name_idx")],
            },
        ),
        migrations.CreateModel(
            name="PurchaseOrder",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("purchase_order_code", models.CharField(max_length=64, unique=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("CONFIRMED", "Confirmed"),
                            ("CANCELLED", "Cancelled"),
                            ("COMPLETED", "Completed"),
                        ],
                        default="PENDING",
                        max_length=16,
                    ),
                ),
                (
                    "import_status",
                    models.CharField(
                        choices=[("PENDING", "Pending"), ("IMPORTED", "Imported")],
                        default="PENDING",
                        max_length=16,
                    ),
                ),
                ("import_date", models.DateTimeField(blank=True, null=True)),
                ("note", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="purchase_orders",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "supplier",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchase_orders",
                        to="inventory.supplier",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="po_status_created_idx"),
                    models.Index(fields=["supplier", "status"], name="po_supplier_status_idx"),
                    models.Index(fields=["import_status"], name="po_import_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PurchaseOrderDetail",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("quantity", models.PositiveIntegerField()),
                ("unit_price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("discount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("total_amount", models.DecimalField(decimal_places=2, max_digits=14)),
                (
                    "purchase_order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="details",
                        to="inventory.purchaseorder",
                    ),
                ),
                (
                    "variant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchase_order_details",
                        to="inventory.variant",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["purchase_order"], name="po_detail_po_idx"),
                    models.Index(fields=["variant"], name="po_detail_variant_idx"),
                ],
            },
        ),
    ]
