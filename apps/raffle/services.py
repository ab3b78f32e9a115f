import logging
from decimal import Decimal

from django.conf import settings
from django.db import IntegrityError, OperationalError, connection, transaction
from django.utils import timezone

from apps.payments.models import PaymentCredit
from apps.payments.services import CreditLedger
from . import grid
from .exceptions import (
    AllocationTimeoutError,
    ConflictError,
    ExpiredError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from .models import Event, Square, SquarePurchase, TimelineEntry

logger = logging.getLogger(__name__)


class EventService:
    """
    Event lifecycle: creation with its grid, status transitions and the
    winner declaration that completes the game.
    """

    TRANSITIONS = {
        Event.DRAFT: {Event.SELLING, Event.CANCELLED},
        Event.SELLING: {Event.SOLD_OUT, Event.LIVE, Event.COMPLETED, Event.CANCELLED},
        Event.SOLD_OUT: {Event.SELLING, Event.LIVE, Event.COMPLETED, Event.CANCELLED},
        Event.LIVE: {Event.COMPLETED, Event.CANCELLED},
        Event.COMPLETED: set(),
        Event.CANCELLED: set(),
    }

    WINNER_STATES = (Event.SELLING, Event.SOLD_OUT, Event.LIVE)

    @staticmethod
    def can_transition(current, target):
        return target in EventService.TRANSITIONS.get(current, set())

    @staticmethod
    def get_event(event_id):
        event = Event.objects.filter(pk=event_id).first()
        if event is None:
            raise NotFoundError("Event not found")
        return event

    @staticmethod
    def create_event(name, description='', cols=None, rows=None, square_price=None, actor=None):
        """
        Create a DRAFT event together with every square of its grid
        """
        cols = cols or settings.RAFFLE_GRID_COLS
        rows = rows or settings.RAFFLE_GRID_ROWS
        grid.validate_dimensions(cols, rows)

        price = Decimal(str(square_price if square_price is not None else settings.RAFFLE_SQUARE_PRICE))
        if price <= 0:
            raise ValidationError("Square price must be positive")

        with transaction.atomic():
            event = Event.objects.create(
                name=name,
                description=description or '',
                square_price=price,
                grid_cols=cols,
                grid_rows=rows,
                status=Event.DRAFT,
            )
            Square.objects.bulk_create(grid.build_squares(event))
            TimelineEntry.record(
                event.id,
                TimelineEntry.EVENT_CREATED,
                actor=actor,
                grid_cols=cols,
                grid_rows=rows,
                square_price=price,
            )

        logger.info(f"Created event {event.id} '{name}' with {event.total_squares} squares")
        return event

    @staticmethod
    def transition(event_id, target, actor=None):
        """
        Move an event to ``target`` if the lifecycle allows it.
        COMPLETED is only reachable through declare_winner.
        """
        if target not in dict(Event.STATUS_CHOICES):
            raise ValidationError(f"Unknown event status: {target}")
        if target == Event.COMPLETED:
            raise InvalidStateError("Declare a winner to complete an event")

        with transaction.atomic():
            event = Event.objects.select_for_update().filter(pk=event_id).first()
            if event is None:
                raise NotFoundError("Event not found")

            if event.status == target:
                return event
            if not EventService.can_transition(event.status, target):
                raise InvalidStateError(f"Cannot move event from {event.status} to {target}")

            if event.status == Event.SELLING:
                # Waits for in-flight selections, which hold their square lock.
                EventService._lock_squares(event)

            previous = event.status
            event.status = target
            event.save(update_fields=['status', 'updated_at'])
            TimelineEntry.record(
                event.id,
                TimelineEntry.STATUS_CHANGED,
                actor=actor,
                previous_status=previous,
                status=target,
            )

        logger.info(f"Event {event.id} moved {previous} -> {target}")
        return event

    @staticmethod
    def declare_winner(event_id, square_id, actor=None):
        """
        Set the winning square and complete the event in one transaction.

        The event row and then all of its squares are locked, so no selection
        can commit against the event while it is being completed.
        """
        with transaction.atomic():
            event = Event.objects.select_for_update().filter(pk=event_id).first()
            if event is None:
                raise NotFoundError("Event not found")

            EventService._lock_squares(event)

            square = Square.objects.filter(pk=square_id).first()
            if square is None:
                raise NotFoundError("Square not found")
            if square.event_id != event.id:
                raise ValidationError("Square does not belong to this event", code='SQUARE_EVENT_MISMATCH')
            if event.status not in EventService.WINNER_STATES:
                raise InvalidStateError(f"Cannot declare a winner for a {event.status.lower()} event")
            if square.status != Square.TAKEN:
                raise InvalidStateError("Square must be purchased to be selected as winner")

            purchase = SquarePurchase.objects.select_related('credit').get(square=square)

            event.winner_square = square
            event.status = Event.COMPLETED
            event.save(update_fields=['winner_square', 'status', 'updated_at'])

            TimelineEntry.record(
                event.id,
                TimelineEntry.EVENT_COMPLETED,
                actor=actor,
                winner_square_id=square.id,
                winner_square_number=square.square_number,
                winner_position=square.position,
                winner_name=purchase.customer_full_name,
            )

        logger.info(f"Event {event.id} completed, winner square {square.square_number} ({square.position})")
        return {
            'event': event,
            'square': square,
            'purchase': purchase,
        }

    @staticmethod
    def _lock_squares(event):
        list(
            Square.objects.select_for_update().filter(event=event).order_by('pk').values_list('pk', flat=True)
        )

    @staticmethod
    def mark_sold_out_if_full(event_id):
        """
        SELLING -> SOLD_OUT once no square is left. Conditional on the
        status so it never overrides a concurrent admin transition.
        """
        if Square.objects.filter(event_id=event_id, status=Square.AVAILABLE).exists():
            return False
        changed = Event.objects.filter(pk=event_id, status=Event.SELLING).update(
            status=Event.SOLD_OUT,
            updated_at=timezone.now(),
        )
        if changed:
            TimelineEntry.record(
                event_id,
                TimelineEntry.STATUS_CHANGED,
                previous_status=Event.SELLING,
                status=Event.SOLD_OUT,
            )
            logger.info(f"Event {event_id} sold out")
        return bool(changed)

    @staticmethod
    def winner_details(event):
        if event.status != Event.COMPLETED or event.winner_square_id is None:
            return None
        purchase = SquarePurchase.objects.select_related('square').filter(
            square_id=event.winner_square_id
        ).first()
        if purchase is None:
            return None
        return {
            'squareId': str(purchase.square.id),
            'squareNumber': purchase.square.square_number,
            'position': purchase.square.position,
            'customerName': purchase.customer_full_name,
            'confirmationCode': purchase.confirmation_code,
        }


class AllocationService:
    """
    Binds one confirmed, unexpired, unused credit to one available square.

    Every check and write happens inside a single transaction holding row
    locks on the credit and then the square. The writes are additionally
    conditional on the state that was checked, and the purchase table has
    unique keys on both square and credit, so a lost race surfaces as a
    ConflictError instead of a double booking.
    """

    def __init__(self, notifier=None, lock_timeout_ms=None):
        self.notifier = notifier
        if lock_timeout_ms is None:
            lock_timeout_ms = settings.RAFFLE_ALLOCATION_LOCK_TIMEOUT_MS
        self.lock_timeout_ms = lock_timeout_ms

    def allocate(self, credit_id, square_id, actor=None):
        try:
            with transaction.atomic():
                self._apply_lock_timeout()
                purchase = self._allocate(credit_id, square_id, actor)
                transaction.on_commit(lambda: self._after_commit(purchase), robust=True)
        except ExpiredError:
            # Runs after the rollback so the expiry itself is kept.
            CreditLedger.expire_credit(credit_id)
            raise
        except IntegrityError as e:
            raise self._conflict_from_integrity_error(credit_id, square_id, e)
        except OperationalError as e:
            if self._is_lock_timeout(e):
                logger.warning(f"Lock timeout allocating credit {credit_id} to square {square_id}")
                raise AllocationTimeoutError() from e
            raise

        logger.info(
            f"Allocated square {purchase.square.square_number} ({purchase.square.position}) "
            f"to credit {credit_id}, code {purchase.confirmation_code}"
        )
        return purchase

    def _allocate(self, credit_id, square_id, actor):
        now = timezone.now()

        credit = PaymentCredit.objects.select_for_update().filter(pk=credit_id).first()
        if credit is None:
            raise NotFoundError("Payment credit not found")

        if credit.status == PaymentCredit.EXPIRED:
            raise ExpiredError()
        if credit.status == PaymentCredit.USED:
            raise ConflictError.credit_used()
        if credit.status != PaymentCredit.CONFIRMED:
            raise InvalidStateError("credit not confirmed", code='CREDIT_NOT_CONFIRMED')
        if credit.is_expired(now):
            raise ExpiredError()
        if SquarePurchase.objects.filter(credit_id=credit.id).exists():
            raise ConflictError.credit_used()

        square = Square.objects.select_for_update().filter(pk=square_id).first()
        if square is None:
            raise NotFoundError("Square not found")
        if square.event_id != credit.event_id:
            raise ValidationError("square/event mismatch", code='SQUARE_EVENT_MISMATCH')

        # Read after the square lock. Leaving SELLING and declaring a winner
        # both lock every square of the event, so either change is observed.
        event = Event.objects.get(pk=square.event_id)
        if not event.is_selling:
            raise InvalidStateError("event not selling", code='EVENT_NOT_SELLING')

        if square.status != Square.AVAILABLE:
            raise ConflictError.square_taken()

        purchase = SquarePurchase.objects.create(
            square=square,
            credit=credit,
            confirmation_code=SquarePurchase.generate_confirmation_code(),
            customer_initials=SquarePurchase.initials_for(credit.customer_name),
            customer_full_name=credit.customer_name,
        )

        taken = Square.objects.filter(pk=square.pk, status=Square.AVAILABLE).update(
            status=Square.TAKEN,
            owner_id=credit.contact,
            selected_at=now,
        )
        if taken != 1:
            raise ConflictError.square_taken()

        used = PaymentCredit.objects.filter(pk=credit.pk, status=PaymentCredit.CONFIRMED).update(
            status=PaymentCredit.USED,
            updated_at=now,
        )
        if used != 1:
            raise ConflictError.credit_used()

        if actor is not None and getattr(actor, 'is_staff', False):
            TimelineEntry.record(
                event.id,
                TimelineEntry.SQUARE_ALLOCATED,
                actor=actor,
                square_id=square.id,
                square_number=square.square_number,
                credit_id=credit.id,
                customer_name=credit.customer_name,
                payment_method=credit.payment_method,
            )

        square.status = Square.TAKEN
        square.owner_id = credit.contact
        square.selected_at = now
        credit.status = PaymentCredit.USED
        purchase.square = square
        purchase.credit = credit
        return purchase

    def _after_commit(self, purchase):
        if self.notifier is not None:
            self.notifier.square_selected(purchase)
        EventService.mark_sold_out_if_full(purchase.square.event_id)

    def _apply_lock_timeout(self):
        if connection.vendor == 'postgresql' and self.lock_timeout_ms:
            with connection.cursor() as cursor:
                cursor.execute("SET LOCAL lock_timeout = %s", [f"{int(self.lock_timeout_ms)}ms"])

    @staticmethod
    def _is_lock_timeout(error):
        cause = error.__cause__
        sqlstate = getattr(cause, 'pgcode', None) or getattr(cause, 'sqlstate', None)
        if sqlstate == '55P03':
            return True
        message = str(error).lower()
        return 'database is locked' in message or 'database table is locked' in message

    @staticmethod
    def _conflict_from_integrity_error(credit_id, square_id, error):
        """
        A unique key on the purchase table rejected the insert: decide which
        side lost the race from the committed state.
        """
        logger.warning(f"Purchase constraint rejected allocation for credit {credit_id}: {str(error)}")
        if SquarePurchase.objects.filter(credit_id=credit_id).exists():
            return ConflictError.credit_used()
        if SquarePurchase.objects.filter(square_id=square_id).exists():
            return ConflictError.square_taken()
        return ConflictError("allocation conflict, please retry")

    @staticmethod
    def current_square(square_id):
        """
        Fresh committed state of a square, returned with square conflicts so
        the client can redraw without a reload
        """
        return Square.objects.select_related('purchase').filter(pk=square_id).first()
