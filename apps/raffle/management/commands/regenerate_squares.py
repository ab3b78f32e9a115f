from django.core.management.base import BaseCommand, CommandError

from apps.raffle.exceptions import RaffleError
from apps.raffle.grid import ensure_squares


class Command(BaseCommand):
    help = 'Recreate missing squares of an event grid (only before any square is sold)'

    def add_arguments(self, parser):
        parser.add_argument('event_id', type=str, help='Event UUID')

    def handle(self, *args, **options):
        event_id = options['event_id']

        try:
            created = ensure_squares(event_id)
        except RaffleError as e:
            raise CommandError(str(e))

        if created == 0:
            self.stdout.write(self.style.SUCCESS('Grid already complete'))
        else:
            self.stdout.write(self.style.SUCCESS(f'Created {created} missing square(s)'))
