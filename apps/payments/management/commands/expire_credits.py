from django.core.management.base import BaseCommand

from apps.payments.services import CreditLedger


class Command(BaseCommand):
    help = 'Mark confirmed credits whose selection window has passed as EXPIRED'

    def handle(self, *args, **options):
        self.stdout.write('Sweeping stale credits...')

        expired = CreditLedger.expire_stale_credits()

        if expired == 0:
            self.stdout.write(self.style.WARNING('No stale credits found'))
            return

        self.stdout.write(self.style.SUCCESS(f'Expired {expired} credit(s)'))
