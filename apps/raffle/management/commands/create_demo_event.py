"""
Management command to create a demo event with a few spent credits
"""
import random
from decimal import Decimal

from django.core.management.base import BaseCommand, CommandError

from apps.payments.models import PaymentCredit
from apps.payments.services import CreditLedger
from apps.raffle.exceptions import RaffleError
from apps.raffle.models import Event, Square
from apps.raffle.services import AllocationService, EventService

DEMO_NAMES = [
    'Ada Lovelace',
    'Grace Hopper',
    'Alan Turing',
    'Barbara Liskov',
    'Edsger Dijkstra',
    'Margaret Hamilton',
]


class Command(BaseCommand):
    help = 'Create a selling demo event and allocate some squares'

    def add_arguments(self, parser):
        parser.add_argument('--name', type=str, default='Demo raffle', help='Event name')
        parser.add_argument('--cols', type=int, default=10, help='Grid columns (default: 10)')
        parser.add_argument('--rows', type=int, default=10, help='Grid rows (default: 10)')
        parser.add_argument('--price', type=str, default='5.00', help='Square price (default: 5.00)')
        parser.add_argument(
            '--sold',
            type=int,
            default=5,
            help='Number of squares to allocate to demo customers (default: 5)'
        )

    def handle(self, *args, **options):
        try:
            event = EventService.create_event(
                name=options['name'],
                cols=options['cols'],
                rows=options['rows'],
                square_price=Decimal(options['price']),
            )
            EventService.transition(event.id, Event.SELLING)
        except RaffleError as e:
            raise CommandError(str(e))

        self.stdout.write(self.style.SUCCESS(f'Created event {event.id} ({event.total_squares} squares)'))

        sold = min(options['sold'], event.total_squares)
        squares = list(event.squares.filter(status=Square.AVAILABLE).values_list('id', flat=True))
        service = AllocationService()

        for i, square_id in enumerate(random.sample(squares, sold)):
            name = DEMO_NAMES[i % len(DEMO_NAMES)]
            credit = CreditLedger.create_credit(
                event_id=event.id,
                customer_name=name,
                email=f"demo{i}@example.com",
                payment_method=PaymentCredit.CASH,
            )
            purchase = service.allocate(credit.id, square_id)
            self.stdout.write(
                f'  {name} -> square {purchase.square.square_number} '
                f'({purchase.square.position}), code {purchase.confirmation_code}'
            )

        self.stdout.write(self.style.SUCCESS(f'Demo event ready, {sold} square(s) sold'))
