import logging
from collections import OrderedDict
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from rest_framework.exceptions import NotFound, ValidationError

from common.cache import flush_catalog_cache_after_write, make_cache_key, read_through
from common.utils import generate_code, to_money
from inventory.models import Variant
from inventory.services import issue_stock, resolve_base, variant_stock
from pos.models import Order, OrderDetail

logger = logging.getLogger(__name__)

SELLABLE_VARIANTS = Variant.objects.select_related("product", "inventory").prefetch_related("conversions_to__from_variant__inventory")


def catalog_entry(variant):
    stock = variant_stock(variant)
    return {
        "variant": str(variant.pk),
        "product": str(variant.product_id),
        "product_name": variant.product.name,
        "variant_name": variant.variant_name,
        "unit": variant.unit,
        "sku": variant.sku,
        "barcode": variant.barcode,
        "price": str(to_money(variant.retail_price)),
        "image_url": variant.image_url,
        "conversion_rate": stock["conversion_rate"],
        "available_stock": stock["available_stock"],
    }


def pos_catalog(search=""):
    search = (search or "").strip()

    def load():
        variants = SELLABLE_VARIANTS.all().order_by("product__name", "variant_name")
        if search:
            variants = variants.filter(
                Q(product__name__icontains=search)
                | Q(variant_name__icontains=search)
                | Q(sku__icontains=search)
                | Q(barcode__icontains=search)
            )
        return [catalog_entry(variant) for variant in variants]

    return read_through(make_cache_key("pos-catalog", search.lower()), load, settings.POS_CATALOG_CACHE_TTL)


def lookup_variant(code):
    code = (code or "").strip()
    if not code:
        raise ValidationError({"code": "A barcode or SKU is required."})
    variant = SELLABLE_VARIANTS.filter(Q(barcode=code) | Q(sku=code)).order_by("created_at").first()
    if variant is None:
        raise NotFound(f"No product matches {code}.")
    return catalog_entry(variant)


def _merge_lines(lines):
    merged = OrderedDict()
    for line in lines:
        variant = line["variant"]
        entry = merged.setdefault(variant.pk, {"variant": variant, "quantity": 0, "discount": Decimal("0")})
        entry["quantity"] += int(line["quantity"])
        entry["discount"] += to_money(line.get("discount") or 0)
    return list(merged.values())


def price_cart(lines):
    """Price a cart server-side. Lines for the same variant are merged before pricing."""
    if not lines:
        raise ValidationError({"lines": "The cart is empty."})

    priced = []
    for index, line in enumerate(_merge_lines(lines)):
        variant = line["variant"]
        quantity = line["quantity"]
        if quantity <= 0:
            raise ValidationError({"lines": {index: {"quantity": "Quantity must be greater than zero."}}})
        unit_price = to_money(variant.retail_price)
        gross = to_money(unit_price * quantity)
        discount = to_money(line["discount"])
        if discount < 0 or discount > gross:
            raise ValidationError({"lines": {index: {"discount": "Discount must be between zero and the line amount."}}})

        stock = variant_stock(variant)
        priced.append(
            {
                "variant": variant,
                "quantity": quantity,
                "unit_price": unit_price,
                "discount": discount,
                "total_amount": gross - discount,
                "conversion_rate": stock["conversion_rate"],
                "available_stock": stock["available_stock"],
                "in_stock": stock["available_stock"] >= quantity,
            }
        )

    return {
        "lines": priced,
        "item_count": sum(line["quantity"] for line in priced),
        "total_amount": to_money(sum((line["total_amount"] for line in priced), Decimal("0"))),
        "is_available": all(line["in_stock"] for line in priced),
    }


@transaction.atomic
def checkout(*, name, lines, note="", user=None):
    """Record a paid POS order and take its quantities out of base inventory."""
    cart = price_cart(lines)

    required = OrderedDict()
    for line in cart["lines"]:
        base, rate = resolve_base(line["variant"])
        entry = required.setdefault(base.pk, {"base": base, "quantity": 0})
        entry["quantity"] += line["quantity"] * rate

    # Lock inventories in a stable order so concurrent checkouts cannot deadlock.
    allow_negative = settings.POS_ALLOW_NEGATIVE_STOCK
    for base_id in sorted(required, key=str):
        entry = required[base_id]
        issue_stock(entry["base"], entry["quantity"], allow_negative=allow_negative)

    customer_note = f"POS Order - {name}"
    order = Order.objects.create(
        order_code=generate_code("POS"),
        status=Order.Status.COMPLETED,
        payment_status=Order.PaymentStatus.PAID,
        total_amount=cart["total_amount"],
        note="\n".join(part for part in [customer_note, note] if part),
        cashier=user if user is not None and user.is_authenticated else None,
    )
    for line in cart["lines"]:
        OrderDetail.objects.create(
            order=order,
            variant=line["variant"],
            quantity=line["quantity"],
            unit_price=line["unit_price"],
            discount=line["discount"],
        )

    logger.info(
        "pos_checkout_completed",
        extra={"entity": "order", "entity_id": str(order.pk), "code": order.order_code, "line_count": len(cart["lines"])},
    )
    flush_catalog_cache_after_write()
    return order
