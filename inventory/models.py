import uuid

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models

from common.utils import split_tags, to_money


class Product(models.Model):
    DEFAULT_PRODUCT_TYPE = "NORMAL"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    brand = models.CharField(max_length=255, blank=True, default="")
    product_type = models.CharField(max_length=64, default=DEFAULT_PRODUCT_TYPE)
    tags = models.CharField(max_length=500, blank=True, default="")
    expiry_warning_days = models.PositiveIntegerField(null=True, blank=True)
    warranty_applied = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["name"], name="product_name_idx"),
            models.Index(fields=["created_at"], name="product_created_idx"),
        ]

    def __str__(self):
        return self.name

    @property
    def tag_list(self):
        return split_tags(self.tags)


class Variant(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name="variants")
    sku = models.CharField(max_length=64, unique=True)
    barcode = models.CharField(max_length=128, null=True, blank=True)
    variant_name = models.CharField(max_length=255)
    unit = models.CharField(max_length=32)
    weight = models.DecimalField(max_digits=12, decimal_places=3, default=0)
    weight_unit = models.CharField(max_length=16, default="g")
    retail_price = models.DecimalField(max_digits=12, decimal_places=2)
    wholesale_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    import_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    tax_applied = models.BooleanField(default=False)
    input_tax = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=0,
        validators=[MinValueValidator(0), MaxValueValidator(100)],
    )
    output_tax = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=0,
        validators=[MinValueValidator(0), MaxValueValidator(100)],
    )
    image_url = models.CharField(max_length=1024, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["barcode"], name="variant_barcode_idx"),
            models.Index(fields=["product", "created_at"], name="variant_product_created_idx"),
        ]

    def __str__(self):
        return f"{self.variant_name} ({self.sku})"


class Inventory(models.Model):
    """Stock record of a base variant. Conversion variants derive their stock from it."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    variant = models.OneToOneField(Variant, on_delete=models.CASCADE, related_name="inventory")
    initial_stock = models.IntegerField(default=0)
    current_stock = models.IntegerField(default=0)
    min_stock = models.PositiveIntegerField(default=0)
    max_stock = models.PositiveIntegerField(default=0)
    warehouse_location = models.CharField(max_length=128, blank=True, default="")
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = "inventories"
        indexes = [models.Index(fields=["current_stock"], name="inventory_current_stock_idx")]

    @property
    def is_low(self):
        return self.min_stock > 0 and self.current_stock <= self.min_stock


class UnitConversion(models.Model):
    """One ``to_variant`` unit equals ``conversion_rate`` ``from_variant`` units."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    from_variant = models.ForeignKey(Variant, on_delete=models.CASCADE, related_name="conversions_from")
    to_variant = models.ForeignKey(Variant, on_delete=models.CASCADE, related_name="conversions_to")
    conversion_rate = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["from_variant", "to_variant"], name="uniq_unit_conversion_pair"),
        ]


class Supplier(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "ACTIVE", "Active"
        INACTIVE = "INACTIVE", "Inactive"
        PENDING = "PENDING", "Pending"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    supplier_code = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    email = models.CharField(max_length=254, blank=True, default="")
    phone = models.CharField(max_length=32, blank=True, default="")
    address = models.TextField(blank=True, default="")
    tax_code = models.CharField(max_length=64, blank=True, default="")
    website = models.CharField(max_length=255, blank=True, default="")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "name"], name="supplier_status_name_idx"),
        ]

    def __str__(self):
        return f"{self.supplier_code} - {self.name}"


class PurchaseOrder(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        CONFIRMED = "CONFIRMED", "Confirmed"
        CANCELLED = "CANCELLED", "Cancelled"
        COMPLETED = "COMPLETED", "Completed"

    class ImportStatus(models.TextChoices):
        PENDING = "PENDING", "Pending"
        IMPORTED = "IMPORTED", "Imported"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    purchase_order_code = models.CharField(max_length=64, unique=True)
    supplier = models.ForeignKey(Supplier, on_delete=models.PROTECT, related_name="purchase_orders")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    import_status = models.CharField(max_length=16, choices=ImportStatus.choices, default=ImportStatus.PENDING)
    import_date = models.DateTimeField(null=True, blank=True)
    note = models.TextField(blank=True, default="")
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="purchase_orders",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "created_at"], name="po_status_created_idx"),
            models.Index(fields=["supplier", "status"], name="po_supplier_status_idx"),
            models.Index(fields=["import_status"], name="po_import_status_idx"),
        ]

    def __str__(self):
        return self.purchase_order_code

    @property
    def is_imported(self):
        return self.import_status == self.ImportStatus.IMPORTED


class PurchaseOrderDetail(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    purchase_order = models.ForeignKey(PurchaseOrder, on_delete=models.CASCADE, related_name="details")
    variant = models.ForeignKey(Variant, on_delete=models.PROTECT, related_name="purchase_order_details")
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_amount = models.DecimalField(max_digits=14, decimal_places=2)

    class Meta:
        indexes = [
            models.Index(fields=["purchase_order"], name="po_detail_po_idx"),
            models.Index(fields=["variant"], name="po_detail_variant_idx"),
        ]

    def compute_total(self):
        return to_money(self.quantity * to_money(self.unit_price) - to_money(self.discount))

    def save(self, *args, **kwargs):
        self.total_amount = self.compute_total()
        super().save(*args, **kwargs)
