from django.core.management.base import BaseCommand
from payments.services import purge_stale_checkouts


class Command(BaseCommand):
    help = 'Expires abandoned pending checkouts and deletes finished ones older than the retention window'

    def add_arguments(self, parser):
        parser.add_argument('--retention-hours', type=int, default=24)

    def handle(self, *args, **options):
        expired, deleted = purge_stale_checkouts(retention_hours=options['retention_hours'])
        self.stdout.write(self.style.SUCCESS(f"Expired {expired} checkouts, deleted {deleted}."))
