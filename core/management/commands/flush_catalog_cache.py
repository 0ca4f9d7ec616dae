from django.core.management.base import BaseCommand

from common.cache import flush_catalog_cache


class Command(BaseCommand):
    help = "Drop every cached catalog, supplier, purchase order and POS read."

    def handle(self, *args, **options):
        flush_catalog_cache()
        self.stdout.write(self.style.SUCCESS("Catalog cache flushed."))
