import logging
from collections import OrderedDict
from decimal import Decimal

from django.db import transaction
from django.db.models import Count, DecimalField, Q, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from common.cache import flush_catalog_cache_after_write
from common.exceptions import BusinessRuleViolation
from common.utils import generate_code, to_money
from inventory.models import (
    Inventory,
    Product,
    PurchaseOrder,
    PurchaseOrderDetail,
    Supplier,
    UnitConversion,
    Variant,
)
from pos.models import Order, OrderDetail

logger = logging.getLogger(__name__)

VARIANT_STOCK_PREFETCH = (
    "variants__inventory",
    "variants__conversions_to__from_variant__inventory",
    "variants__conversions_from",
)


# Stock model -----------------------------------------------------------------


def resolve_base(variant):
    """Return ``(base_variant, rate)``: one unit of ``variant`` is ``rate`` units of ``base_variant``."""
    conversion = next(iter(variant.conversions_to.all()), None)
    if conversion is None:
        return variant, 1
    return conversion.from_variant, conversion.conversion_rate


def _inventory_of(variant):
    try:
        return variant.inventory
    except Inventory.DoesNotExist:
        return None


def convertible_stock(base_stock, rate):
    if not rate or rate <= 0:
        return 0
    return max(base_stock, 0) // rate


def variant_stock(variant):
    base, rate = resolve_base(variant)
    inventory = _inventory_of(base)
    base_stock = inventory.current_stock if inventory else 0
    return {
        "is_base_variant": base.pk == variant.pk,
        "base_variant_id": base.pk,
        "conversion_rate": rate,
        "base_stock": base_stock,
        "available_stock": base_stock if base.pk == variant.pk else convertible_stock(base_stock, rate),
    }


def variants_with_stock(product):
    """Variants of ``product`` ordered base-first, each annotated with its stock snapshot."""
    rows = []
    for variant in product.variants.all():
        variant.stock = variant_stock(variant)
        rows.append(variant)
    rows.sort(key=lambda item: (not item.stock["is_base_variant"], item.stock["conversion_rate"], item.created_at))
    return rows


def _lock_base_inventory(base):
    inventory = Inventory.objects.select_for_update().filter(variant=base).first()
    if inventory is None:
        inventory = Inventory.objects.create(variant=base)
        inventory = Inventory.objects.select_for_update().get(pk=inventory.pk)
    return inventory


def receive_stock(variant, quantity):
    """Add ``quantity`` units of ``variant`` to its base inventory. Caller owns the transaction."""
    base, rate = resolve_base(variant)
    inventory = _lock_base_inventory(base)
    base_quantity = int(quantity) * rate
    old_stock = inventory.current_stock
    inventory.current_stock = old_stock + base_quantity
    inventory.save(update_fields=["current_stock", "updated_at"])
    return {
        "variant_id": variant.pk,
        "base_variant_id": base.pk,
        "sku": base.sku,
        "old_stock": old_stock,
        "new_stock": inventory.current_stock,
        "imported": base_quantity,
    }


def issue_stock(base, base_quantity, *, allow_negative=False):
    """Remove ``base_quantity`` base units from ``base``'s inventory. Caller owns the transaction."""
    inventory = _lock_base_inventory(base)
    if not allow_negative and inventory.current_stock < base_quantity:
        raise BusinessRuleViolation(
            f"Insufficient stock for {base.sku}.",
            errors={"sku": base.sku, "available": inventory.current_stock, "required": base_quantity},
        )
    inventory.current_stock -= base_quantity
    inventory.save(update_fields=["current_stock", "updated_at"])
    return inventory


# Catalog -----------------------------------------------------------------------


def conversion_sku(base_sku, unit):
    return f"{base_sku}-{unit}"


def find_existing_skus(skus):
    return set(Variant.objects.filter(sku__in=list(skus)).values_list("sku", flat=True))


def create_product_with_variants(*, product_fields, base_fields, inventory_fields, conversions):
    """Create a product, its base variant and inventory, and one variant per unit conversion.

    ``conversions`` items carry at least ``unit``, ``conversion_rate`` and ``sku``;
    prices and weight default to the base value multiplied by the rate.
    """
    product = Product.objects.create(**product_fields)
    base = Variant.objects.create(product=product, **base_fields)
    Inventory.objects.create(variant=base, initial_stock=0, current_stock=0, **inventory_fields)

    created = [base]
    for conversion in conversions:
        rate = int(conversion["conversion_rate"])
        variant = Variant.objects.create(
            product=product,
            sku=conversion["sku"],
            barcode=conversion.get("barcode") or None,
            variant_name=conversion.get("variant_name") or f"{product.name} - {conversion['unit']}",
            unit=conversion["unit"],
            weight=conversion.get("weight", Decimal(base.weight) * rate),
            weight_unit=conversion.get("weight_unit") or base.weight_unit,
            retail_price=to_money(conversion.get("retail_price", Decimal(base.retail_price) * rate)),
            wholesale_price=to_money(conversion.get("wholesale_price", Decimal(base.wholesale_price) * rate)),
            import_price=to_money(conversion.get("import_price", Decimal(base.import_price) * rate)),
            tax_applied=conversion.get("tax_applied", base.tax_applied),
            input_tax=conversion.get("input_tax", base.input_tax),
            output_tax=conversion.get("output_tax", base.output_tax),
            image_url=conversion.get("image_url") or base.image_url,
        )
        UnitConversion.objects.create(from_variant=base, to_variant=variant, conversion_rate=rate)
        created.append(variant)
    return product, created


def build_deletability_report(product):
    variant_ids = list(product.variants.values_list("id", flat=True))
    order_count = Order.objects.filter(details__variant_id__in=variant_ids).distinct().count()
    purchase_order_count = PurchaseOrder.objects.filter(details__variant_id__in=variant_ids).distinct().count()
    current_stock = sum(Inventory.objects.filter(variant_id__in=variant_ids).values_list("current_stock", flat=True))

    issues = []
    if order_count:
        issues.append({"type": "ORDERS_EXIST", "count": order_count, "message": f"Product appears in {order_count} order(s)."})
    if purchase_order_count:
        issues.append(
            {
                "type": "PURCHASE_ORDERS_EXIST",
                "count": purchase_order_count,
                "message": f"Product appears in {purchase_order_count} purchase order(s).",
            }
        )

    warnings = []
    if current_stock > 0:
        warnings.append({"type": "STOCK_EXISTS", "count": current_stock, "message": f"{current_stock} unit(s) still in stock."})

    return {
        "product_id": product.pk,
        "can_delete": not issues and not warnings,
        "has_warnings": bool(warnings),
        "issues": issues,
        "warnings": warnings,
    }


def _delete_catalog_rows(product):
    variant_ids = list(product.variants.values_list("id", flat=True))
    UnitConversion.objects.filter(Q(from_variant_id__in=variant_ids) | Q(to_variant_id__in=variant_ids)).delete()
    Inventory.objects.filter(variant_id__in=variant_ids).delete()
    Variant.objects.filter(id__in=variant_ids).delete()
    product.delete()
    return len(variant_ids)


@transaction.atomic
def delete_product(product):
    report = build_deletability_report(product)
    if not report["can_delete"]:
        raise BusinessRuleViolation(
            "Product cannot be deleted while it has orders, purchase orders or stock.",
            errors={"issues": report["issues"], "warnings": report["warnings"]},
        )
    product_id = product.pk
    variant_count = _delete_catalog_rows(product)
    logger.info("product_deleted", extra={"entity": "product", "entity_id": str(product_id)})
    flush_catalog_cache_after_write()
    return {"product_id": product_id, "deleted_variants": variant_count}


@transaction.atomic
def force_delete_product(product, *, delete_orders=False, delete_purchase_orders=False, allow_stock_deletion=False):
    report = build_deletability_report(product)
    issue_types = {issue["type"] for issue in report["issues"]}
    blocked = []
    if "ORDERS_EXIST" in issue_types and not delete_orders:
        blocked.append("ORDERS_EXIST")
    if "PURCHASE_ORDERS_EXIST" in issue_types and not delete_purchase_orders:
        blocked.append("PURCHASE_ORDERS_EXIST")
    if report["has_warnings"] and not allow_stock_deletion:
        blocked.append("STOCK_EXISTS")
    if blocked:
        raise BusinessRuleViolation("Force delete was not allowed for every blocking reference.", errors={"blocked_by": blocked})

    product_id = product.pk
    variants = list(product.variants.select_related("inventory"))
    variant_ids = [variant.pk for variant in variants]

    stock_value = Decimal("0")
    for variant in variants:
        inventory = _inventory_of(variant)
        if inventory and inventory.current_stock > 0:
            stock_value += inventory.current_stock * Decimal(variant.import_price)

    order_ids = list(OrderDetail.objects.filter(variant_id__in=variant_ids).values_list("order_id", flat=True).distinct())
    deleted_order_lines, _ = OrderDetail.objects.filter(variant_id__in=variant_ids).delete()
    deleted_orders, _ = Order.objects.filter(id__in=order_ids, details__isnull=True).delete()

    po_ids = list(PurchaseOrderDetail.objects.filter(variant_id__in=variant_ids).values_list("purchase_order_id", flat=True).distinct())
    deleted_po_lines, _ = PurchaseOrderDetail.objects.filter(variant_id__in=variant_ids).delete()
    orphan_pos = PurchaseOrder.objects.filter(id__in=po_ids, details__isnull=True)
    deleted_purchase_orders = orphan_pos.count()
    orphan_pos.delete()

    deleted_variants = _delete_catalog_rows(product)
    logger.warning(
        "product_force_deleted",
        extra={"entity": "product", "entity_id": str(product_id), "line_count": deleted_order_lines + deleted_po_lines},
    )
    flush_catalog_cache_after_write()
    return {
        "product_id": product_id,
        "deleted_variants": deleted_variants,
        "deleted_order_lines": deleted_order_lines,
        "deleted_orders": deleted_orders,
        "deleted_purchase_order_lines": deleted_po_lines,
        "deleted_purchase_orders": deleted_purchase_orders,
        "stock_value": to_money(stock_value),
    }


# Purchase orders ---------------------------------------------------------------


def purchase_order_queryset():
    return PurchaseOrder.objects.select_related("supplier").annotate(
        item_count=Count("details"),
        total_quantity=Coalesce(Sum("details__quantity"), 0),
        total_amount=Coalesce(Sum("details__total_amount"), Value(Decimal("0")), output_field=DecimalField(max_digits=14, decimal_places=2)),
    )


def _validate_line(item, index):
    quantity = int(item["quantity"])
    unit_price = to_money(item.get("unit_price") or 0)
    discount = to_money(item.get("discount") or 0)
    errors = {}
    if quantity <= 0:
        errors["quantity"] = "Quantity must be greater than zero."
    if unit_price < 0:
        errors["unit_price"] = "Unit price cannot be negative."
    if discount < 0:
        errors["discount"] = "Discount cannot be negative."
    elif discount > quantity * unit_price:
        errors["discount"] = "Discount cannot exceed the line amount."
    if errors:
        raise ValidationError({"items": {index: errors}})
    return quantity, unit_price, discount


@transaction.atomic
def create_purchase_order(*, supplier, items, prefix="PO", import_date=None, note="", user=None, status=None):
    if not items:
        raise ValidationError({"items": "At least one line is required."})
    if supplier.status == Supplier.Status.INACTIVE:
        raise BusinessRuleViolation(f"Supplier {supplier.supplier_code} is inactive.")

    purchase_order = PurchaseOrder.objects.create(
        purchase_order_code=generate_code(prefix),
        supplier=supplier,
        status=status or PurchaseOrder.Status.PENDING,
        import_status=PurchaseOrder.ImportStatus.PENDING,
        import_date=import_date,
        note=note or "",
        created_by=user if user is not None and user.is_authenticated else None,
    )
    for index, item in enumerate(items):
        quantity, unit_price, discount = _validate_line(item, index)
        PurchaseOrderDetail.objects.create(
            purchase_order=purchase_order,
            variant=item["variant"],
            quantity=quantity,
            unit_price=unit_price,
            discount=discount,
        )

    logger.info(
        "purchase_order_created",
        extra={"entity": "purchase_order", "code": purchase_order.purchase_order_code, "line_count": len(items)},
    )
    flush_catalog_cache_after_write()
    return purchase_order


def _apply_actual_quantities(details, actual_quantities):
    by_variant = {str(key): int(value) for key, value in (actual_quantities or {}).items()}
    unknown = set(by_variant) - {str(detail.variant_id) for detail in details}
    if unknown:
        raise ValidationError({"actual_quantities": f"Variants not on this purchase order: {', '.join(sorted(unknown))}."})
    for detail in details:
        actual = by_variant.get(str(detail.variant_id))
        if actual is None or actual == detail.quantity:
            continue
        if actual < 0:
            raise ValidationError({"actual_quantities": "Actual quantity cannot be negative."})
        detail.quantity = actual
        detail.save(update_fields=["quantity", "total_amount"])


@transaction.atomic
def import_purchase_order(purchase_order, *, actual_quantities=None, import_date=None):
    """Receive every line of a purchase order into stock, exactly once.

    The ``PENDING -> IMPORTED`` transition is claimed with a conditional update
    before any inventory row is touched; a second caller finds nothing to claim.
    """
    locked = PurchaseOrder.objects.select_for_update().get(pk=purchase_order.pk)
    if locked.import_status == PurchaseOrder.ImportStatus.IMPORTED:
        raise BusinessRuleViolation(f"Purchase order {locked.purchase_order_code} has already been imported.")
    if locked.status == PurchaseOrder.Status.CANCELLED:
        raise BusinessRuleViolation(f"Purchase order {locked.purchase_order_code} is cancelled.")

    details = list(
        locked.details.select_related("variant").prefetch_related("variant__conversions_to__from_variant").order_by("id")
    )
    _apply_actual_quantities(details, actual_quantities)

    claimed = PurchaseOrder.objects.filter(pk=locked.pk, import_status=PurchaseOrder.ImportStatus.PENDING).update(
        status=PurchaseOrder.Status.COMPLETED,
        import_status=PurchaseOrder.ImportStatus.IMPORTED,
        import_date=import_date or timezone.now(),
        updated_at=timezone.now(),
    )
    if claimed != 1:
        raise BusinessRuleViolation(f"Purchase order {locked.purchase_order_code} has already been imported.")

    updates = [receive_stock(detail.variant, detail.quantity) for detail in details if detail.quantity > 0]
    locked.refresh_from_db()
    logger.info(
        "purchase_order_imported",
        extra={"entity": "purchase_order", "code": locked.purchase_order_code, "line_count": len(updates)},
    )
    flush_catalog_cache_after_write()
    return locked, updates


def _load_purchase_orders(ids):
    ids = list(dict.fromkeys(str(value) for value in ids))
    if not ids:
        raise ValidationError({"ids": "At least one purchase order id is required."})
    orders = list(PurchaseOrder.objects.select_for_update().filter(id__in=ids).order_by("created_at"))
    missing = set(ids) - {str(order.pk) for order in orders}
    if missing:
        raise ValidationError({"ids": f"Unknown purchase orders: {', '.join(sorted(missing))}."})
    return orders


def _rejected(orders, predicate, reason):
    return [{"id": order.pk, "code": order.purchase_order_code, "reason": reason(order)} for order in orders if predicate(order)]


@transaction.atomic
def import_purchase_orders(ids):
    orders = _load_purchase_orders(ids)
    rejected = _rejected(
        orders,
        lambda order: order.is_imported or order.status == PurchaseOrder.Status.CANCELLED,
        lambda order: "already imported" if order.is_imported else "cancelled",
    )
    if rejected:
        raise BusinessRuleViolation("Some purchase orders cannot be imported.", errors={"rejected": rejected})

    aggregated = OrderedDict()
    for order in orders:
        _, updates = import_purchase_order(order)
        for update in updates:
            key = update["base_variant_id"]
            row = aggregated.setdefault(key, {**update, "imported": 0})
            row["imported"] += update["imported"]
            row["new_stock"] = update["new_stock"]
    return {"imported_count": len(orders), "inventory_updates": list(aggregated.values())}


STATUS_VALUES = set(PurchaseOrder.Status.values)
IMPORT_STATUS_VALUES = set(PurchaseOrder.ImportStatus.values)


def _check_status_transition(order, status, import_status):
    target_status = status or order.status
    if status and order.status == PurchaseOrder.Status.COMPLETED and status != order.status:
        return "completed orders cannot change status"
    if import_status == PurchaseOrder.ImportStatus.PENDING and order.is_imported:
        return "imported orders cannot return to pending import"
    if import_status == PurchaseOrder.ImportStatus.IMPORTED and not order.is_imported:
        if target_status != PurchaseOrder.Status.COMPLETED:
            return "importing requires the order to be completed"
        if order.status == PurchaseOrder.Status.CANCELLED:
            return "cancelled orders cannot be imported"
    return None


@transaction.atomic
def update_purchase_order_statuses(ids, *, status=None, import_status=None):
    if status is None and import_status is None:
        raise ValidationError({"status": "Provide status or import_status."})
    if status is not None and status not in STATUS_VALUES:
        raise ValidationError({"status": f"Invalid status. Allowed: {', '.join(sorted(STATUS_VALUES))}."})
    if import_status is not None and import_status not in IMPORT_STATUS_VALUES:
        raise ValidationError({"import_status": f"Invalid import status. Allowed: {', '.join(sorted(IMPORT_STATUS_VALUES))}."})

    orders = _load_purchase_orders(ids)
    rejected = []
    for order in orders:
        reason = _check_status_transition(order, status, import_status)
        if reason:
            rejected.append({"id": order.pk, "code": order.purchase_order_code, "reason": reason})
    if rejected:
        raise BusinessRuleViolation("Some purchase orders cannot take this status.", errors={"rejected": rejected})

    inventory_updates = []
    for order in orders:
        if import_status == PurchaseOrder.ImportStatus.IMPORTED and not order.is_imported:
            _, updates = import_purchase_order(order)
            inventory_updates.extend(updates)
        elif status and status != order.status:
            order.status = status
            order.save(update_fields=["status", "updated_at"])

    flush_catalog_cache_after_write()
    return {"updated_count": len(orders), "inventory_updates": inventory_updates}


@transaction.atomic
def cancel_purchase_orders(ids, *, reason=""):
    orders = _load_purchase_orders(ids)
    blocked_statuses = {PurchaseOrder.Status.CANCELLED, PurchaseOrder.Status.COMPLETED}
    rejected = _rejected(
        orders,
        lambda order: order.status in blocked_statuses or order.is_imported,
        lambda order: "already imported" if order.is_imported else f"status is {order.status}",
    )
    if rejected:
        raise BusinessRuleViolation("Some purchase orders cannot be cancelled.", errors={"rejected": rejected})

    stamp = timezone.now().strftime("%Y-%m-%d %H:%M")
    for order in orders:
        order.status = PurchaseOrder.Status.CANCELLED
        if reason:
            order.note = "\n".join(part for part in [order.note, f"[{stamp}] Cancelled: {reason}"] if part)
        order.save(update_fields=["status", "note", "updated_at"])

    flush_catalog_cache_after_write()
    return {"cancelled_count": len(orders)}


@transaction.atomic
def delete_purchase_orders(ids):
    orders = _load_purchase_orders(ids)
    deletable_statuses = {PurchaseOrder.Status.PENDING, PurchaseOrder.Status.CANCELLED}
    rejected = _rejected(
        orders,
        lambda order: order.status not in deletable_statuses or order.is_imported,
        lambda order: "already imported" if order.is_imported else f"status is {order.status}",
    )
    if rejected:
        raise BusinessRuleViolation("Only pending or cancelled purchase orders can be deleted.", errors={"rejected": rejected})

    codes = [order.purchase_order_code for order in orders]
    PurchaseOrder.objects.filter(id__in=[order.pk for order in orders]).delete()
    logger.info("purchase_orders_deleted", extra={"entity": "purchase_order", "code": ",".join(codes)})
    flush_catalog_cache_after_write()
    return {"deleted_count": len(codes), "codes": codes}


@transaction.atomic
def direct_import(*, variant, supplier, quantity, unit_price, import_date=None, note="", user=None):
    purchase_order = create_purchase_order(
        supplier=supplier,
        items=[{"variant": variant, "quantity": quantity, "unit_price": unit_price}],
        prefix="PO-DIRECT",
        import_date=import_date,
        note=note or f"Direct import of {variant.sku}",
        user=user,
    )
    return import_purchase_order(purchase_order, import_date=import_date)
