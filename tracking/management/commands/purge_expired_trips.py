"""
Management command that deletes trip records past their retention window.

Run it periodically (cron, systemd timer). It catches deletions whose
in-process timer died with the process that scheduled them.
"""

from asgiref.sync import async_to_sync
from django.core.management.base import BaseCommand

from tracking.store import DjangoTripStore


class Command(BaseCommand):
    help = 'Delete stopped or arrived trips whose retention window has elapsed'

    def handle(self, *args, **options):
        store = DjangoTripStore()
        purged = async_to_sync(store.purge_expired)()

        for trip_id in purged:
            self.stdout.write(f'Deleted trip {trip_id}')
        self.stdout.write(self.style.SUCCESS(f'Purged {len(purged)} expired trip(s)'))
