from rest_framework import serializers

from pos.models import Order, OrderDetail
from pos.services import SELLABLE_VARIANTS


class CartLineSerializer(serializers.Serializer):
    variant = serializers.PrimaryKeyRelatedField(queryset=SELLABLE_VARIANTS)
    quantity = serializers.IntegerField(min_value=1)
    discount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, default=0)


class CartSerializer(serializers.Serializer):
    lines = CartLineSerializer(many=True, allow_empty=False)


class CheckoutSerializer(CartSerializer):
    name = serializers.CharField(max_length=255)
    note = serializers.CharField(required=False, allow_blank=True, default="")


class PricedLineSerializer(serializers.Serializer):
    variant = serializers.UUIDField(source="variant.pk")
    sku = serializers.CharField(source="variant.sku")
    variant_name = serializers.CharField(source="variant.variant_name")
    unit = serializers.CharField(source="variant.unit")
    quantity = serializers.IntegerField()
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2)
    discount = serializers.DecimalField(max_digits=12, decimal_places=2)
    total_amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    conversion_rate = serializers.IntegerField()
    available_stock = serializers.IntegerField()
    in_stock = serializers.BooleanField()


class QuoteSerializer(serializers.Serializer):
    lines = PricedLineSerializer(many=True)
    item_count = serializers.IntegerField()
    total_amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    is_available = serializers.BooleanField()


class OrderDetailSerializer(serializers.ModelSerializer):
    sku = serializers.CharField(source="variant.sku", read_only=True)
    variant_name = serializers.CharField(source="variant.variant_name", read_only=True)
    unit = serializers.CharField(source="variant.unit", read_only=True)

    class Meta:
        model = OrderDetail
        fields = ["id", "variant", "sku", "variant_name", "unit", "quantity", "unit_price", "discount", "total_amount"]
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    cashier_name = serializers.CharField(source="cashier.display_name", read_only=True, default=None)
    details = OrderDetailSerializer(many=True, read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "order_code",
            "status",
            "payment_status",
            "total_amount",
            "note",
            "cashier",
            "cashier_name",
            "created_at",
            "details",
        ]
        read_only_fields = fields
