from pathlib import Path

from django.core.management.base import BaseCommand, CommandError
from rest_framework.exceptions import ValidationError

from inventory import importing
from inventory.models import Supplier


class Command(BaseCommand):
    help = "Import products, variants and opening stock from an .xlsx, .xls or .csv file."

    def add_arguments(self, parser):
        parser.add_argument("path", help="Spreadsheet to import.")
        parser.add_argument("--supplier-code", dest="supplier_code", help="Supplier the opening stock is received from.")
        parser.add_argument("--note", default="", help="Note stored on the bulk purchase order.")
        parser.add_argument("--dry-run", action="store_true", help="Validate the file without writing anything.")

    def handle(self, *args, **options):
        path = Path(options["path"])
        if not path.is_file():
            raise CommandError(f"File not found: {path}")

        supplier = None
        if not options["dry_run"]:
            if not options["supplier_code"]:
                raise CommandError("--supplier-code is required unless --dry-run is given.")
            supplier = Supplier.objects.filter(supplier_code=options["supplier_code"]).first()
            if supplier is None:
                raise CommandError(f"Supplier {options['supplier_code']} does not exist.")

        try:
            with path.open("rb") as handle:
                prepared = importing.prepare_import(handle, path.name, size=path.stat().st_size)
        except ValidationError as exc:
            raise CommandError(str(exc.detail)) from exc

        self.stdout.write(
            f"Rows: {prepared['row_count']} | Products: {prepared['product_count']} | Variants: {prepared['variant_count']}"
        )
        for warning in prepared["warnings"]:
            self.stdout.write(self.style.WARNING(f"Row {warning['row']} [{warning['field']}]: {warning['message']}"))
        for error in prepared["errors"]:
            self.stdout.write(self.style.ERROR(f"Row {error['row']} [{error['field']}]: {error['message']}"))

        if not prepared["is_valid"]:
            raise CommandError(f"Import aborted: {len(prepared['errors'])} error(s).")
        if options["dry_run"]:
            self.stdout.write(self.style.SUCCESS("Dry run complete. File is valid."))
            return

        result = importing.import_products(prepared, supplier=supplier, note=options["note"])
        purchase_order = result["purchase_order"]
        self.stdout.write(
            self.style.SUCCESS(
                f"Imported {result['product_count']} product(s), {result['variant_count']} variant(s). "
                f"Purchase order: {purchase_order.purchase_order_code if purchase_order else '-'} "
                f"(total {result['total_amount']})."
            )
        )
