"""Bulk product import from spreadsheet files.

A sheet holds one variant per row. Rows are grouped into products: a row
with a product name opens a new product, following rows that only carry a
variant name belong to it. Inside a product the row with conversion rate 1
is the base unit and every other row becomes a conversion variant of it.
"""

import logging
from decimal import Decimal, InvalidOperation
from pathlib import Path

import pandas as pd
from django.conf import settings
from django.db import transaction
from django.template.defaultfilters import filesizeformat
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from common.cache import flush_catalog_cache_after_write
from common.utils import to_money
from inventory.models import Inventory, Product
from inventory.services import create_product_with_variants, create_purchase_order, find_existing_skus, import_purchase_order

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".xlsx", ".xls", ".csv"}
EXCEL_ENGINES = {".xlsx": "openpyxl", ".xls": "xlrd"}

COLUMNS = (
    "name",
    "product_type",
    "description",
    "brand",
    "tags",
    "variant_name",
    "sku",
    "barcode",
    "weight",
    "weight_unit",
    "unit",
    "conversion_rate",
    "image_url",
    "retail_price",
    "import_price",
    "wholesale_price",
    "tax_applied",
    "input_tax",
    "output_tax",
    "initial_stock",
    "min_stock",
    "max_stock",
    "warehouse_location",
    "expiry_warning_days",
    "warranty_applied",
)

TEXT_COLUMNS = (
    "name",
    "product_type",
    "description",
    "brand",
    "tags",
    "variant_name",
    "sku",
    "barcode",
    "weight_unit",
    "unit",
    "image_url",
    "warehouse_location",
)
DECIMAL_COLUMNS = ("weight", "retail_price", "import_price", "wholesale_price", "input_tax", "output_tax")
INTEGER_COLUMNS = ("conversion_rate", "initial_stock", "min_stock", "max_stock", "expiry_warning_days")
FLAG_COLUMNS = ("tax_applied", "warranty_applied")

TRUE_FLAGS = {"có", "co", "yes", "y", "true", "1", "x"}

# (max_digits, decimal_places) of the model DecimalField each column lands in.
DECIMAL_LIMITS = {
    "weight": (12, 3),
    "retail_price": (12, 2),
    "import_price": (12, 2),
    "wholesale_price": (12, 2),
    "input_tax": (5, 2),
    "output_tax": (5, 2),
}
# Integer stock, rate and day columns.
MAX_INTEGER = 2147483647


def _issue(row, field, message):
    return {"row": row, "field": field, "message": message}


# Reading ---------------------------------------------------------------------


def read_sheet(uploaded_file, filename=None, size=None):
    """Load the first sheet of an upload into a string-only DataFrame with exactly ``len(COLUMNS)`` columns."""
    name = filename or getattr(uploaded_file, "name", "") or ""
    extension = Path(name).suffix.lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise ValidationError({"file": f"Unsupported file type. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}."})

    if size is None:
        size = getattr(uploaded_file, "size", None)
    if size is not None and size > settings.BULK_IMPORT_MAX_FILE_SIZE:
        raise ValidationError({"file": f"File is larger than {filesizeformat(settings.BULK_IMPORT_MAX_FILE_SIZE)}."})

    try:
        if extension == ".csv":
            frame = pd.read_csv(
                uploaded_file,
                header=None,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=False,
                encoding="utf-8-sig",
            )
        else:
            frame = pd.read_excel(
                uploaded_file,
                header=None,
                dtype=str,
                keep_default_na=False,
                engine=EXCEL_ENGINES[extension],
            )
    except pd.errors.EmptyDataError as exc:
        raise ValidationError({"file": "The file is empty."}) from exc
    except (ValueError, UnicodeDecodeError, pd.errors.ParserError) as exc:
        raise ValidationError({"file": f"Could not read spreadsheet: {exc}"}) from exc

    frame = frame.reindex(columns=range(len(COLUMNS)), fill_value="").fillna("")
    frame.columns = list(COLUMNS)
    return frame


def _parse_decimal(raw, row, field, issues):
    text = raw.replace(" ", "")
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        issues.append(_issue(row, field, f"'{raw}' is not a number."))
        return None
    if not value.is_finite():
        issues.append(_issue(row, field, f"'{raw}' is not a number."))
        return None
    return value


def _parse_integer(raw, row, field, issues):
    value = _parse_decimal(raw, row, field, issues)
    if value is None:
        return None
    if value != value.to_integral_value():
        issues.append(_issue(row, field, f"'{raw}' must be a whole number."))
        return None
    return int(value)


def parse_rows(frame):
    """Turn sheet rows into dicts. Row numbers are 1-based spreadsheet rows; the header is row 1."""
    rows = []
    issues = []
    for position, record in enumerate(frame.to_dict(orient="records")):
        if position == 0:
            continue
        values = {column: str(record.get(column, "")).strip() for column in COLUMNS}
        if not any(values.values()):
            continue

        row_number = position + 1
        row = {"row": row_number}
        for column in TEXT_COLUMNS:
            row[column] = values[column]
        for column in DECIMAL_COLUMNS:
            row[column] = _parse_decimal(values[column], row_number, column, issues)
        for column in INTEGER_COLUMNS:
            row[column] = _parse_integer(values[column], row_number, column, issues)
        for column in FLAG_COLUMNS:
            row[column] = values[column].lower() in TRUE_FLAGS

        row["weight_unit"] = row["weight_unit"] or "g"
        if row["conversion_rate"] is None:
            row["conversion_rate"] = 1
        rows.append(row)
    return rows, issues


# Grouping --------------------------------------------------------------------


def _variant_signature(row):
    return (row["sku"], row["unit"], row["variant_name"], row["conversion_rate"])


def group_rows(rows):
    groups = []
    warnings = []
    current = None
    for row in rows:
        if row["name"]:
            current = {"name": row["name"], "row": row["row"], "rows": [row]}
            groups.append(current)
            continue
        if not row["variant_name"]:
            warnings.append(_issue(row["row"], "name", "Row skipped: neither product name nor variant name is set."))
            continue
        if current is None:
            row = {**row, "name": row["variant_name"]}
            current = {"name": row["name"], "row": row["row"], "rows": [row]}
            groups.append(current)
            continue

        if any(_variant_signature(existing) == _variant_signature(row) for existing in current["rows"]):
            warnings.append(_issue(row["row"], "sku", f"Duplicate variant of '{current['name']}' ignored."))
            continue
        current["rows"].append({**row, "name": current["name"], "grouped": True})
    return groups, warnings


# Validation ------------------------------------------------------------------


def _validate_row(row, issues):
    number = row["row"]
    if not row["name"]:
        issues.append(_issue(number, "name", "Product name is required."))
    if not row["sku"]:
        issues.append(_issue(number, "sku", "SKU is required."))
    if not row["unit"]:
        issues.append(_issue(number, "unit", "Unit is required."))
    if row.get("grouped") and not row["variant_name"]:
        issues.append(_issue(number, "variant_name", "Variant name is required for additional variants."))

    if row["retail_price"] is None:
        issues.append(_issue(number, "retail_price", "Retail price is required."))
    for field in ("retail_price", "import_price", "wholesale_price", "weight"):
        if row[field] is not None and row[field] < 0:
            issues.append(_issue(number, field, f"{field.replace('_', ' ').capitalize()} cannot be negative."))
    for field in ("initial_stock", "min_stock", "max_stock", "expiry_warning_days"):
        if row[field] is not None and row[field] < 0:
            issues.append(_issue(number, field, f"{field.replace('_', ' ').capitalize()} cannot be negative."))
    for field, (max_digits, decimal_places) in DECIMAL_LIMITS.items():
        if row[field] is not None and abs(row[field]) >= Decimal(10) ** (max_digits - decimal_places):
            issues.append(_issue(number, field, f"{field.replace('_', ' ').capitalize()} is too large."))
    for field in ("conversion_rate", "initial_stock", "min_stock", "max_stock", "expiry_warning_days"):
        if row[field] is not None and row[field] > MAX_INTEGER:
            issues.append(_issue(number, field, f"{field.replace('_', ' ').capitalize()} is too large."))
    if row["initial_stock"] and row["conversion_rate"] > 0 and row["initial_stock"] * row["conversion_rate"] > MAX_INTEGER:
        issues.append(_issue(number, "initial_stock", "Initial stock in base units is too large."))
    if row["conversion_rate"] <= 0:
        issues.append(_issue(number, "conversion_rate", "Conversion rate must be a positive whole number."))
    for field in ("input_tax", "output_tax"):
        if row[field] is not None and not Decimal("0") <= row[field] <= Decimal("100"):
            issues.append(_issue(number, field, "Tax must be between 0 and 100."))


def validate_groups(groups):
    issues = []
    if len(groups) > settings.BULK_IMPORT_MAX_PRODUCTS:
        issues.append(_issue(None, "file", f"At most {settings.BULK_IMPORT_MAX_PRODUCTS} products can be imported at once."))

    first_seen = {}
    for group in groups:
        base_rows = [row for row in group["rows"] if row["conversion_rate"] == 1]
        if not base_rows:
            issues.append(_issue(group["row"], "conversion_rate", f"'{group['name']}' needs one row with conversion rate 1 (base unit)."))
        elif len(base_rows) > 1:
            issues.append(_issue(base_rows[1]["row"], "conversion_rate", f"'{group['name']}' has more than one base unit row."))

        for row in group["rows"]:
            _validate_row(row, issues)
            sku = row["sku"]
            if not sku:
                continue
            if sku in first_seen:
                issues.append(_issue(row["row"], "sku", f"SKU {sku} is duplicated (first used on row {first_seen[sku]})."))
            else:
                first_seen[sku] = row["row"]

    for sku in sorted(find_existing_skus(first_seen)):
        issues.append(_issue(first_seen[sku], "sku", f"SKU {sku} already exists."))
    return sorted(issues, key=lambda issue: (issue["row"] or 0, issue["field"]))


def prepare_import(uploaded_file, filename=None, size=None):
    """Parse, group and validate an upload without writing anything."""
    frame = read_sheet(uploaded_file, filename, size)
    rows, issues = parse_rows(frame)
    groups, warnings = group_rows(rows)
    issues.extend(validate_groups(groups))
    issues.sort(key=lambda issue: (issue["row"] or 0, issue["field"]))
    return {
        "groups": groups,
        "errors": issues,
        "warnings": warnings,
        "row_count": len(rows),
        "product_count": len(groups),
        "variant_count": sum(len(group["rows"]) for group in groups),
        "is_valid": not issues and bool(groups),
    }


def summarize_groups(groups):
    summary = []
    for group in groups:
        summary.append(
            {
                "name": group["name"],
                "row": group["row"],
                "variants": [
                    {
                        "row": row["row"],
                        "sku": row["sku"],
                        "variant_name": row["variant_name"] or f"{group['name']} - {row['unit']}",
                        "unit": row["unit"],
                        "conversion_rate": row["conversion_rate"],
                        "is_base_variant": row["conversion_rate"] == 1,
                        "retail_price": None if row["retail_price"] is None else str(row["retail_price"]),
                        "initial_stock": row["initial_stock"] or 0,
                    }
                    for row in group["rows"]
                ],
            }
        )
    return summary


# Import ----------------------------------------------------------------------


def _variant_fields(row, product_name):
    return {
        "sku": row["sku"],
        "barcode": row["barcode"] or None,
        "variant_name": row["variant_name"] or f"{product_name} - {row['unit']}",
        "unit": row["unit"],
        "weight": row["weight"] or Decimal("0"),
        "weight_unit": row["weight_unit"],
        "retail_price": to_money(row["retail_price"]),
        "wholesale_price": to_money(row["wholesale_price"]),
        "import_price": to_money(row["import_price"]),
        "tax_applied": row["tax_applied"],
        "input_tax": row["input_tax"] or Decimal("0"),
        "output_tax": row["output_tax"] or Decimal("0"),
        "image_url": row["image_url"],
    }


def _create_group(group):
    rows = sorted(group["rows"], key=lambda row: row["conversion_rate"])
    base_row, conversion_rows = rows[0], rows[1:]
    first = group["rows"][0]
    product_fields = {
        "name": group["name"],
        "description": first["description"],
        "brand": first["brand"],
        "product_type": first["product_type"] or Product.DEFAULT_PRODUCT_TYPE,
        "tags": ", ".join(tag.strip() for tag in first["tags"].split(",") if tag.strip()),
        "expiry_warning_days": first["expiry_warning_days"],
        "warranty_applied": first["warranty_applied"],
    }
    inventory_fields = {
        "min_stock": base_row["min_stock"] or 0,
        "max_stock": base_row["max_stock"] or 0,
        "warehouse_location": base_row["warehouse_location"],
    }
    conversions = [
        {**_variant_fields(row, group["name"]), "conversion_rate": row["conversion_rate"]} for row in conversion_rows
    ]
    product, variants = create_product_with_variants(
        product_fields=product_fields,
        base_fields=_variant_fields(base_row, group["name"]),
        inventory_fields=inventory_fields,
        conversions=conversions,
    )
    return product, list(zip(rows, variants))


@transaction.atomic
def import_products(prepared, *, supplier, import_date=None, note="", user=None):
    """Create every product of a validated upload and receive its opening stock.

    Opening stock is booked through a purchase order so that it follows the
    same exactly-once import path as any other delivery.
    """
    if not prepared["is_valid"]:
        raise ValidationError({"errors": prepared["errors"] or ["The file contains no products."]})

    products = []
    lines = []
    for group in prepared["groups"]:
        product, pairs = _create_group(group)
        products.append(product)
        for row, variant in pairs:
            if row["initial_stock"]:
                lines.append({"variant": variant, "quantity": row["initial_stock"], "unit_price": variant.import_price})

    purchase_order = None
    inventory_updates = []
    if lines:
        purchase_order = create_purchase_order(
            supplier=supplier,
            items=lines,
            prefix="PO-BULK",
            import_date=import_date or timezone.now(),
            note=note or f"Bulk import of {len(products)} product(s)",
            user=user,
        )
        purchase_order, inventory_updates = import_purchase_order(purchase_order, import_date=import_date)
        for update in inventory_updates:
            Inventory.objects.filter(variant_id=update["base_variant_id"]).update(initial_stock=update["new_stock"])

    total_amount = to_money(sum((line["quantity"] * line["unit_price"] for line in lines), Decimal("0")))
    logger.info(
        "bulk_import_completed",
        extra={
            "supplier_code": supplier.supplier_code,
            "product_count": len(products),
            "line_count": len(lines),
            "row_count": prepared["row_count"],
        },
    )
    flush_catalog_cache_after_write()
    return {
        "product_count": len(products),
        "variant_count": prepared["variant_count"],
        "product_ids": [product.pk for product in products],
        "purchase_order": purchase_order,
        "inventory_updates": inventory_updates,
        "total_amount": total_amount,
        "warnings": prepared["warnings"],
    }
