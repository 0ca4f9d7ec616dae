import re

from django.db import transaction
from rest_framework import serializers

from common.utils import to_money
from inventory.models import (
    Inventory,
    Product,
    PurchaseOrder,
    PurchaseOrderDetail,
    Supplier,
    UnitConversion,
    Variant,
)
from inventory.services import (
    conversion_sku,
    create_product_with_variants,
    create_purchase_order,
    find_existing_skus,
    purchase_order_queryset,
    variant_stock,
    variants_with_stock,
)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^[\+]?[\d\s\-\(\)]{10,15}$")


class InventorySerializer(serializers.ModelSerializer):
    is_low = serializers.BooleanField(read_only=True)

    class Meta:
        model = Inventory
        fields = ["id", "initial_stock", "current_stock", "min_stock", "max_stock", "warehouse_location", "is_low", "updated_at"]
        read_only_fields = ["id", "initial_stock", "current_stock", "updated_at"]


class UnitConversionSerializer(serializers.ModelSerializer):
    from_sku = serializers.CharField(source="from_variant.sku", read_only=True)
    to_sku = serializers.CharField(source="to_variant.sku", read_only=True)

    class Meta:
        model = UnitConversion
        fields = ["id", "from_variant", "from_sku", "to_variant", "to_sku", "conversion_rate"]


class VariantSerializer(serializers.ModelSerializer):
    inventory = serializers.SerializerMethodField()
    stock = serializers.SerializerMethodField()
    conversions_from = UnitConversionSerializer(many=True, read_only=True)
    conversions_to = UnitConversionSerializer(many=True, read_only=True)

    class Meta:
        model = Variant
        fields = [
            "id",
            "product",
            "sku",
            "barcode",
            "variant_name",
            "unit",
            "weight",
            "weight_unit",
            "retail_price",
            "wholesale_price",
            "import_price",
            "tax_applied",
            "input_tax",
            "output_tax",
            "image_url",
            "inventory",
            "stock",
            "conversions_from",
            "conversions_to",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "product", "created_at", "updated_at"]

    def get_inventory(self, obj):
        try:
            inventory = obj.inventory
        except Inventory.DoesNotExist:
            return None
        return InventorySerializer(inventory).data

    def get_stock(self, obj):
        return getattr(obj, "stock", None) or variant_stock(obj)


class ProductSerializer(serializers.ModelSerializer):
    tag_list = serializers.ListField(child=serializers.CharField(), read_only=True)
    variants = serializers.SerializerMethodField()

    class Meta:
        model = Product
        fields = [
            "id",
            "name",
            "description",
            "brand",
            "product_type",
            "tags",
            "tag_list",
            "expiry_warning_days",
            "warranty_applied",
            "variants",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def get_variants(self, obj):
        return VariantSerializer(variants_with_stock(obj), many=True).data


class ProductUpdateSerializer(serializers.ModelSerializer):
    class Meta:
        model = Product
        fields = ["id", "name", "description", "brand", "product_type", "tags", "expiry_warning_days", "warranty_applied"]
        read_only_fields = ["id"]


class InventoryLimitsSerializer(serializers.Serializer):
    min_stock = serializers.IntegerField(min_value=0, required=False)
    max_stock = serializers.IntegerField(min_value=0, required=False)
    warehouse_location = serializers.CharField(required=False, allow_blank=True, max_length=128)


class VariantUpdateSerializer(serializers.ModelSerializer):
    inventory = InventoryLimitsSerializer(required=False, write_only=True)

    class Meta:
        model = Variant
        fields = [
            "id",
            "sku",
            "barcode",
            "variant_name",
            "unit",
            "weight",
            "weight_unit",
            "retail_price",
            "wholesale_price",
            "import_price",
            "tax_applied",
            "input_tax",
            "output_tax",
            "image_url",
            "inventory",
        ]
        read_only_fields = ["id"]

    def validate_retail_price(self, value):
        if value <= 0:
            raise serializers.ValidationError("Retail price must be greater than zero.")
        return value

    def validate_barcode(self, value):
        return value or None

    @transaction.atomic
    def update(self, instance, validated_data):
        inventory_data = validated_data.pop("inventory", None)
        instance = super().update(instance, validated_data)
        if inventory_data and variant_stock(instance)["is_base_variant"]:
            inventory, _ = Inventory.objects.get_or_create(variant=instance)
            for field, value in inventory_data.items():
                setattr(inventory, field, value)
            inventory.save(update_fields=[*inventory_data.keys(), "updated_at"])
        return instance


class UnitConversionInputSerializer(serializers.Serializer):
    unit = serializers.CharField(max_length=32)
    conversion_rate = serializers.IntegerField(min_value=1)
    sku = serializers.CharField(max_length=64, required=False, allow_blank=True)
    barcode = serializers.CharField(max_length=128, required=False, allow_blank=True)
    variant_name = serializers.CharField(max_length=255, required=False, allow_blank=True)
    retail_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    wholesale_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    import_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)


class ProductCreateSerializer(serializers.Serializer):
    """Create a product with its base variant, unit conversions and the purchase order for its first delivery."""

    name = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    brand = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    product_type = serializers.CharField(max_length=64, required=False, default=Product.DEFAULT_PRODUCT_TYPE)
    tags = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")
    expiry_warning_days = serializers.IntegerField(min_value=0, required=False, allow_null=True)
    warranty_applied = serializers.BooleanField(required=False, default=False)

    sku = serializers.CharField(max_length=64)
    barcode = serializers.CharField(max_length=128, required=False, allow_blank=True, allow_null=True)
    unit = serializers.CharField(max_length=32)
    weight = serializers.DecimalField(max_digits=12, decimal_places=3, min_value=0, required=False, default=0)
    weight_unit = serializers.CharField(max_length=16, required=False, default="g")
    retail_price = serializers.DecimalField(max_digits=12, decimal_places=2)
    wholesale_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, default=0)
    import_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, default=0)
    tax_applied = serializers.BooleanField(required=False, default=False)
    input_tax = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=0, max_value=100, required=False, default=0)
    output_tax = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=0, max_value=100, required=False, default=0)
    image_url = serializers.CharField(max_length=1024, required=False, allow_blank=True, default="")

    min_stock = serializers.IntegerField(min_value=0, required=False, default=0)
    max_stock = serializers.IntegerField(min_value=0, required=False, default=0)
    warehouse_location = serializers.CharField(max_length=128, required=False, allow_blank=True, default="")

    supplier_code = serializers.CharField(max_length=64)
    import_quantity = serializers.IntegerField()
    import_date = serializers.DateTimeField(required=False, allow_null=True)
    note = serializers.CharField(required=False, allow_blank=True, default="")
    unit_conversions = UnitConversionInputSerializer(many=True, required=False, default=list)

    def validate_retail_price(self, value):
        if value <= 0:
            raise serializers.ValidationError("Retail price must be greater than zero.")
        return value

    def validate_import_quantity(self, value):
        if value <= 0:
            raise serializers.ValidationError("Import quantity must be greater than zero.")
        return value

    def validate_supplier_code(self, value):
        supplier = Supplier.objects.filter(supplier_code=value).first()
        if supplier is None:
            raise serializers.ValidationError(f"Supplier {value} does not exist.")
        self._supplier = supplier
        return value

    def validate(self, attrs):
        conversions = attrs.get("unit_conversions") or []
        for conversion in conversions:
            conversion["sku"] = conversion.get("sku") or conversion_sku(attrs["sku"], conversion["unit"])

        skus = [attrs["sku"], *[conversion["sku"] for conversion in conversions]]
        duplicated = sorted({sku for sku in skus if skus.count(sku) > 1})
        if duplicated:
            raise serializers.ValidationError({"sku": f"SKU repeated within the request: {', '.join(duplicated)}."})
        existing = sorted(find_existing_skus(skus))
        if existing:
            raise serializers.ValidationError({"sku": f"SKU already exists: {', '.join(existing)}."})
        return attrs

    @transaction.atomic
    def create(self, validated_data):
        conversions = validated_data.pop("unit_conversions", [])
        request = self.context.get("request")
        product_fields = {
            field: validated_data[field]
            for field in ("name", "description", "brand", "product_type", "tags", "warranty_applied")
        }
        product_fields["expiry_warning_days"] = validated_data.get("expiry_warning_days")
        base_fields = {
            field: validated_data[field]
            for field in (
                "sku",
                "unit",
                "weight",
                "weight_unit",
                "retail_price",
                "wholesale_price",
                "import_price",
                "tax_applied",
                "input_tax",
                "output_tax",
                "image_url",
            )
        }
        base_fields["barcode"] = validated_data.get("barcode") or None
        base_fields["variant_name"] = f"{validated_data['name']} - {validated_data['unit']}"
        inventory_fields = {field: validated_data[field] for field in ("min_stock", "max_stock", "warehouse_location")}

        product, variants = create_product_with_variants(
            product_fields=product_fields,
            base_fields=base_fields,
            inventory_fields=inventory_fields,
            conversions=[{key: value for key, value in conversion.items() if value not in ("", None)} for conversion in conversions],
        )
        self.purchase_order = create_purchase_order(
            supplier=self._supplier,
            items=[{"variant": variants[0], "quantity": validated_data["import_quantity"], "unit_price": validated_data["import_price"]}],
            import_date=validated_data.get("import_date"),
            note=validated_data["note"] or f"Initial stock for {product.name}",
            user=getattr(request, "user", None),
        )
        return product


class SupplierSerializer(serializers.ModelSerializer):
    purchase_order_count = serializers.SerializerMethodField()

    class Meta:
        model = Supplier
        fields = [
            "id",
            "supplier_code",
            "name",
            "email",
            "phone",
            "address",
            "tax_code",
            "website",
            "status",
            "purchase_order_count",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]
        extra_kwargs = {"supplier_code": {"error_messages": {"unique": "Supplier code already exists."}}}

    def get_purchase_order_count(self, obj):
        count = getattr(obj, "purchase_order_count", None)
        if count is None:
            count = obj.purchase_orders.count()
        return count

    def validate_supplier_code(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Supplier code is required.")
        return value

    def validate_email(self, value):
        value = value.strip()
        if value and not EMAIL_PATTERN.match(value):
            raise serializers.ValidationError("Enter a valid email address.")
        return value

    def validate_phone(self, value):
        value = value.strip()
        if value and not PHONE_PATTERN.match(value):
            raise serializers.ValidationError("Enter a valid phone number.")
        return value


class SupplierOptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Supplier
        fields = ["id", "supplier_code", "name", "status"]


class PurchaseOrderDetailSerializer(serializers.ModelSerializer):
    sku = serializers.CharField(source="variant.sku", read_only=True)
    variant_name = serializers.CharField(source="variant.variant_name", read_only=True)
    unit = serializers.CharField(source="variant.unit", read_only=True)
    product = serializers.UUIDField(source="variant.product_id", read_only=True)

    class Meta:
        model = PurchaseOrderDetail
        fields = ["id", "variant", "product", "sku", "variant_name", "unit", "quantity", "unit_price", "discount", "total_amount"]
        read_only_fields = fields


class PurchaseOrderSerializer(serializers.ModelSerializer):
    supplier_code = serializers.CharField(source="supplier.supplier_code", read_only=True)
    supplier_name = serializers.CharField(source="supplier.name", read_only=True)
    created_by_name = serializers.CharField(source="created_by.display_name", read_only=True, default=None)
    item_count = serializers.SerializerMethodField()
    total_quantity = serializers.SerializerMethodField()
    total_amount = serializers.SerializerMethodField()
    details = PurchaseOrderDetailSerializer(many=True, read_only=True)

    class Meta:
        model = PurchaseOrder
        fields = [
            "id",
            "purchase_order_code",
            "supplier",
            "supplier_code",
            "supplier_name",
            "status",
            "import_status",
            "import_date",
            "note",
            "created_by",
            "created_by_name",
            "item_count",
            "total_quantity",
            "total_amount",
            "created_at",
            "updated_at",
            "details",
        ]
        read_only_fields = fields

    # Annotated by purchase_order_queryset(); computed for bare instances.
    def get_item_count(self, obj):
        value = getattr(obj, "item_count", None)
        return value if value is not None else obj.details.count()

    def get_total_quantity(self, obj):
        value = getattr(obj, "total_quantity", None)
        return value if value is not None else sum(detail.quantity for detail in obj.details.all())

    def get_total_amount(self, obj):
        value = getattr(obj, "total_amount", None)
        if value is None:
            value = sum((detail.total_amount for detail in obj.details.all()), to_money(0))
        return str(to_money(value))


class PurchaseOrderSummarySerializer(PurchaseOrderSerializer):
    class Meta(PurchaseOrderSerializer.Meta):
        fields = [field for field in PurchaseOrderSerializer.Meta.fields if field != "details"]
        read_only_fields = fields


class SupplierDetailSerializer(SupplierSerializer):
    recent_purchase_orders = serializers.SerializerMethodField()

    class Meta(SupplierSerializer.Meta):
        fields = [*SupplierSerializer.Meta.fields, "recent_purchase_orders"]

    def get_recent_purchase_orders(self, obj):
        orders = purchase_order_queryset().filter(supplier=obj).order_by("-created_at")[:10]
        return PurchaseOrderSummarySerializer(orders, many=True).data


class PurchaseOrderLineInputSerializer(serializers.Serializer):
    variant = serializers.PrimaryKeyRelatedField(queryset=Variant.objects.all())
    quantity = serializers.IntegerField(min_value=1)
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    discount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, default=0)


class PurchaseOrderCreateSerializer(serializers.Serializer):
    supplier = serializers.PrimaryKeyRelatedField(queryset=Supplier.objects.all())
    items = PurchaseOrderLineInputSerializer(many=True, allow_empty=False)
    import_date = serializers.DateTimeField(required=False, allow_null=True)
    note = serializers.CharField(required=False, allow_blank=True, default="")

    def create(self, validated_data):
        request = self.context.get("request")
        return create_purchase_order(
            supplier=validated_data["supplier"],
            items=validated_data["items"],
            import_date=validated_data.get("import_date"),
            note=validated_data["note"],
            user=getattr(request, "user", None),
        )


class ActualQuantitySerializer(serializers.Serializer):
    variant = serializers.UUIDField()
    actual_quantity = serializers.IntegerField(min_value=0)


class PurchaseOrderImportSerializer(serializers.Serializer):
    actual_quantities = ActualQuantitySerializer(many=True, required=False, default=list)
    import_date = serializers.DateTimeField(required=False, allow_null=True)

    def validate_actual_quantities(self, value):
        return {str(item["variant"]): item["actual_quantity"] for item in value}


class PurchaseOrderStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=PurchaseOrder.Status.choices, required=False)
    import_status = serializers.ChoiceField(choices=PurchaseOrder.ImportStatus.choices, required=False)

    def validate(self, attrs):
        if not attrs.get("status") and not attrs.get("import_status"):
            raise serializers.ValidationError({"status": "Provide status or import_status."})
        return attrs


class BulkIdsSerializer(serializers.Serializer):
    ids = serializers.ListField(child=serializers.UUIDField(), allow_empty=False)


class BulkStatusSerializer(BulkIdsSerializer, PurchaseOrderStatusSerializer):
    pass


class BulkCancelSerializer(BulkIdsSerializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class DirectImportSerializer(serializers.Serializer):
    variant = serializers.PrimaryKeyRelatedField(queryset=Variant.objects.prefetch_related("conversions_to__from_variant"))
    supplier = serializers.PrimaryKeyRelatedField(queryset=Supplier.objects.all())
    quantity = serializers.IntegerField(min_value=1)
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    import_date = serializers.DateTimeField(required=False, allow_null=True)
    note = serializers.CharField(required=False, allow_blank=True, default="")


class RestockSerializer(serializers.Serializer):
    supplier = serializers.PrimaryKeyRelatedField(queryset=Supplier.objects.all())
    quantity = serializers.IntegerField(min_value=1)
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, allow_null=True)
    note = serializers.CharField(required=False, allow_blank=True, default="")


class ForceDeleteSerializer(serializers.Serializer):
    delete_orders = serializers.BooleanField(required=False, default=False)
    delete_purchase_orders = serializers.BooleanField(required=False, default=False)
    allow_stock_deletion = serializers.BooleanField(required=False, default=False)


class ProductImportUploadSerializer(serializers.Serializer):
    file = serializers.FileField()
    supplier_code = serializers.CharField(max_length=64, required=False)
    import_date = serializers.DateTimeField(required=False, allow_null=True)
    note = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if self.context.get("require_supplier"):
            code = attrs.get("supplier_code")
            if not code:
                raise serializers.ValidationError({"supplier_code": "Supplier is required to import products."})
            supplier = Supplier.objects.filter(supplier_code=code).first()
            if supplier is None:
                raise serializers.ValidationError({"supplier_code": f"Supplier {code} does not exist."})
            attrs["supplier"] = supplier
        return attrs
