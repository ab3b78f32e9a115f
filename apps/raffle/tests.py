"""
Tests for raffle app: grid, event lifecycle, square allocation and live updates
"""
import queue
import threading
import uuid
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest import skipUnless
from unittest.mock import MagicMock, patch

from django.apps import apps as django_apps
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import OperationalError, connection, transaction
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings, skipUnlessDBFeature
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from apps.payments.models import PaymentCredit
from apps.payments.services import CreditLedger
from .broadcast import InMemoryBroadcaster, event_channel
from .exceptions import (
    AllocationTimeoutError,
    ConflictError,
    ExpiredError,
    InvalidStateError,
    NotFoundError,
    RaffleError,
    ValidationError,
)
from .grid import column_label, ensure_squares, iter_cells, position_label, square_number, validate_dimensions
from .models import Event, Square, SquarePurchase, TimelineEntry
from .notifications import SQUARE_SELECTED, SquareNotifier
from .services import AllocationService, EventService
from .stream import KEEP_ALIVE, format_sse, sse_messages

User = get_user_model()


def make_selling_event(cols=3, rows=3, price='10.00', name='Spring raffle'):
    event = EventService.create_event(name=name, cols=cols, rows=rows, square_price=Decimal(price))
    return EventService.transition(event.id, Event.SELLING)


def make_credit(event, name='Jane Doe', email='jane@example.com', method=PaymentCredit.CASH, **kwargs):
    return CreditLedger.create_credit(
        event_id=event.id,
        customer_name=name,
        email=email,
        payment_method=method,
        **kwargs
    )


def expire_now(credit):
    PaymentCredit.objects.filter(pk=credit.pk).update(expires_at=timezone.now() - timedelta(seconds=1))


class GridTestCase(SimpleTestCase):
    """Test cases for grid coordinates and labels"""

    def test_column_labels(self):
        """Test spreadsheet style column letters"""
        self.assertEqual(column_label(0), 'A')
        self.assertEqual(column_label(25), 'Z')
        self.assertEqual(column_label(26), 'AA')
        self.assertEqual(column_label(27), 'AB')
        self.assertEqual(column_label(701), 'ZZ')
        self.assertEqual(column_label(702), 'AAA')

    def test_negative_column_rejected(self):
        with self.assertRaises(ValueError):
            column_label(-1)

    def test_position_label(self):
        """Test position combines column letters with the 1-based row"""
        self.assertEqual(position_label(0, 0), 'A1')
        self.assertEqual(position_label(2, 6), 'C7')
        self.assertEqual(position_label(26, 11), 'AA12')

    def test_square_number_is_row_major(self):
        self.assertEqual(square_number(0, 0, 12), 1)
        self.assertEqual(square_number(11, 0, 12), 12)
        self.assertEqual(square_number(0, 1, 12), 13)
        self.assertEqual(square_number(11, 11, 12), 144)

    def test_iter_cells(self):
        self.assertEqual(
            list(iter_cells(2, 2)),
            [(0, 0, 1, 'A1'), (1, 0, 2, 'B1'), (0, 1, 3, 'A2'), (1, 1, 4, 'B2')]
        )

    def test_validate_dimensions(self):
        validate_dimensions(1, 1)
        validate_dimensions(100, 100)
        for cols, rows in [(0, 5), (5, 0), (101, 1), (1, 101)]:
            with self.assertRaises(ValidationError):
                validate_dimensions(cols, rows)


class EventServiceTestCase(TestCase):
    """Test cases for EventService"""

    def test_create_event_generates_grid(self):
        """Test create_event stores one square per cell with unique numbers"""
        event = EventService.create_event(name='Gala', cols=3, rows=3, square_price=Decimal('5.00'))

        self.assertEqual(event.status, Event.DRAFT)
        squares = list(event.squares.order_by('square_number'))
        self.assertEqual(len(squares), 9)
        self.assertEqual([s.square_number for s in squares], list(range(1, 10)))
        self.assertTrue(all(s.status == Square.AVAILABLE for s in squares))
        self.assertEqual(squares[4].position, 'B2')
        self.assertEqual((squares[4].grid_x, squares[4].grid_y), (1, 1))
        self.assertTrue(
            TimelineEntry.objects.filter(event=event, entry_type=TimelineEntry.EVENT_CREATED).exists()
        )

    @override_settings(RAFFLE_GRID_COLS=4, RAFFLE_GRID_ROWS=2, RAFFLE_SQUARE_PRICE='7.50')
    def test_create_event_uses_configured_defaults(self):
        event = EventService.create_event(name='Defaults')

        self.assertEqual(event.total_squares, 8)
        self.assertEqual(event.squares.count(), 8)
        self.assertEqual(event.square_price, Decimal('7.50'))

    def test_create_event_rejects_bad_input(self):
        with self.assertRaises(ValidationError):
            EventService.create_event(name='Free', cols=3, rows=3, square_price=Decimal('0'))
        with self.assertRaises(ValidationError):
            EventService.create_event(name='Huge', cols=101, rows=3)
        self.assertEqual(Event.objects.count(), 0)

    def test_transition_follows_lifecycle(self):
        """Test allowed and refused transitions"""
        event = EventService.create_event(name='Gala', cols=2, rows=2)

        event = EventService.transition(event.id, Event.SELLING)
        self.assertEqual(event.status, Event.SELLING)

        event = EventService.transition(event.id, Event.SOLD_OUT)
        event = EventService.transition(event.id, Event.SELLING)
        self.assertEqual(event.status, Event.SELLING)

        with self.assertRaises(InvalidStateError):
            EventService.transition(event.id, Event.DRAFT)

        EventService.transition(event.id, Event.CANCELLED)
        with self.assertRaises(InvalidStateError):
            EventService.transition(event.id, Event.SELLING)

    def test_transition_to_completed_requires_winner(self):
        event = make_selling_event()

        with self.assertRaises(InvalidStateError):
            EventService.transition(event.id, Event.COMPLETED)

    def test_transition_same_status_is_noop(self):
        event = make_selling_event()
        entries = TimelineEntry.objects.filter(event=event).count()

        EventService.transition(event.id, Event.SELLING)

        self.assertEqual(TimelineEntry.objects.filter(event=event).count(), entries)

    def test_transition_unknown_event_or_status(self):
        with self.assertRaises(NotFoundError):
            EventService.transition(uuid.uuid4(), Event.SELLING)

        event = make_selling_event()
        with self.assertRaises(ValidationError):
            EventService.transition(event.id, 'PAUSED')


class EnsureSquaresTestCase(TestCase):
    """Test cases for grid repair"""

    def test_recreates_missing_cells_only(self):
        event = EventService.create_event(name='Gala', cols=3, rows=3)
        kept = set(event.squares.values_list('id', flat=True))
        removed = list(event.squares.filter(square_number__in=[2, 9]))
        Square.objects.filter(pk__in=[s.pk for s in removed]).delete()

        created = ensure_squares(event.id)

        self.assertEqual(created, 2)
        self.assertEqual(event.squares.count(), 9)
        self.assertTrue(kept - {s.pk for s in removed} <= set(event.squares.values_list('id', flat=True)))
        self.assertEqual(event.squares.get(square_number=9).position, 'C3')

    def test_complete_grid_is_untouched(self):
        event = EventService.create_event(name='Gala', cols=2, rows=2)
        self.assertEqual(ensure_squares(event.id), 0)

    def test_refused_once_squares_are_sold(self):
        event = make_selling_event()
        squares = list(event.squares.order_by('square_number'))
        AllocationService().allocate(make_credit(event).id, squares[0].id)
        squares[8].delete()

        with self.assertRaises(InvalidStateError):
            ensure_squares(event.id)

    def test_refused_for_unknown_or_closed_event(self):
        with self.assertRaises(NotFoundError):
            ensure_squares(uuid.uuid4())

        event = EventService.create_event(name='Gala', cols=2, rows=2)
        EventService.transition(event.id, Event.CANCELLED)
        with self.assertRaises(InvalidStateError):
            ensure_squares(event.id)


class AllocationServiceTestCase(TestCase):
    """Test cases for AllocationService"""

    def setUp(self):
        """Set up a selling 3x3 event"""
        self.broadcaster = InMemoryBroadcaster()
        self.service = AllocationService(notifier=SquareNotifier(self.broadcaster))
        self.event = make_selling_event()
        self.squares = list(self.event.squares.order_by('square_number'))

    def test_allocate_success(self):
        """Test allocation binds the credit to the square"""
        credit = make_credit(self.event)

        purchase = self.service.allocate(credit.id, self.squares[0].id)

        self.assertEqual(len(purchase.confirmation_code), 6)
        self.assertTrue(set(purchase.confirmation_code) <= set(SquarePurchase.CONFIRMATION_CODE_ALPHABET))
        self.assertEqual(purchase.customer_initials, 'JD')

        square = Square.objects.get(pk=self.squares[0].pk)
        self.assertEqual(square.status, Square.TAKEN)
        self.assertEqual(square.owner_id, 'jane@example.com')
        self.assertIsNotNone(square.selected_at)

        credit.refresh_from_db()
        self.assertEqual(credit.status, PaymentCredit.USED)
        self.assertEqual(credit.purchase.square_id, square.id)

    def test_owner_falls_back_to_phone(self):
        credit = make_credit(self.event, email=None, phone='+15551234567')

        self.service.allocate(credit.id, self.squares[0].id)

        self.assertEqual(Square.objects.get(pk=self.squares[0].pk).owner_id, '+15551234567')

    def test_credit_cannot_be_spent_twice(self):
        """Test a used credit is rejected for a second square"""
        credit = make_credit(self.event)
        self.service.allocate(credit.id, self.squares[0].id)

        with self.assertRaises(ConflictError) as ctx:
            self.service.allocate(credit.id, self.squares[1].id)

        self.assertEqual(ctx.exception.reason, ConflictError.CREDIT_USED)
        self.assertEqual(ctx.exception.code, 'CREDIT_ALREADY_USED')
        self.assertEqual(Square.objects.get(pk=self.squares[1].pk).status, Square.AVAILABLE)
        self.assertEqual(SquarePurchase.objects.count(), 1)

    def test_square_cannot_be_sold_twice(self):
        """Test the second credit on a taken square gets a conflict and stays spendable"""
        first = make_credit(self.event, name='Ann Lee', email='ann@example.com')
        second = make_credit(self.event, name='Bob Ray', email='bob@example.com')
        self.service.allocate(first.id, self.squares[4].id)

        with self.assertRaises(ConflictError) as ctx:
            self.service.allocate(second.id, self.squares[4].id)

        self.assertEqual(ctx.exception.reason, ConflictError.SQUARE_TAKEN)
        second.refresh_from_db()
        self.assertEqual(second.status, PaymentCredit.CONFIRMED)
        self.assertEqual(Square.objects.get(pk=self.squares[4].pk).owner_id, 'ann@example.com')

        # The losing credit can still claim another square
        self.service.allocate(second.id, self.squares[5].id)
        second.refresh_from_db()
        self.assertEqual(second.status, PaymentCredit.USED)

    def test_expired_credit_is_rejected_and_stays_expired(self):
        """Test an expired credit fails and is persisted as EXPIRED"""
        credit = make_credit(self.event)
        expire_now(credit)

        with self.assertRaises(ExpiredError):
            self.service.allocate(credit.id, self.squares[0].id)

        self.assertEqual(Square.objects.get(pk=self.squares[0].pk).status, Square.AVAILABLE)
        self.assertEqual(CreditLedger.get_credit(credit.id).status, PaymentCredit.EXPIRED)
        self.assertEqual(CreditLedger.get_credit(credit.id).status, PaymentCredit.EXPIRED)

        with self.assertRaises(ExpiredError):
            self.service.allocate(credit.id, self.squares[1].id)

    def test_pending_credit_is_rejected(self):
        credit = make_credit(self.event, method=PaymentCredit.GATEWAY)

        with self.assertRaises(InvalidStateError) as ctx:
            self.service.allocate(credit.id, self.squares[0].id)

        self.assertEqual(ctx.exception.code, 'CREDIT_NOT_CONFIRMED')

    def test_refunded_credit_is_rejected(self):
        credit = make_credit(self.event)
        CreditLedger.refund_credit(credit.id)

        with self.assertRaises(InvalidStateError):
            self.service.allocate(credit.id, self.squares[0].id)

    def test_event_must_be_selling(self):
        """Test allocation is refused once the event leaves SELLING"""
        credit = make_credit(self.event)
        EventService.transition(self.event.id, Event.LIVE)

        with self.assertRaises(InvalidStateError) as ctx:
            self.service.allocate(credit.id, self.squares[0].id)

        self.assertEqual(ctx.exception.code, 'EVENT_NOT_SELLING')
        credit.refresh_from_db()
        self.assertEqual(credit.status, PaymentCredit.CONFIRMED)

    def test_square_from_another_event(self):
        other = make_selling_event(name='Other raffle')
        credit = make_credit(self.event)

        with self.assertRaises(ValidationError):
            self.service.allocate(credit.id, other.squares.first().id)

    def test_unknown_credit_or_square(self):
        with self.assertRaises(NotFoundError):
            self.service.allocate(uuid.uuid4(), self.squares[0].id)

        credit = make_credit(self.event)
        with self.assertRaises(NotFoundError):
            self.service.allocate(credit.id, uuid.uuid4())

    def test_staff_allocation_is_recorded_in_timeline(self):
        admin = User.objects.create_user(username='desk', password='pass', is_staff=True)
        credit = make_credit(self.event)

        self.service.allocate(credit.id, self.squares[0].id, actor=admin)

        entry = TimelineEntry.objects.get(event=self.event, entry_type=TimelineEntry.SQUARE_ALLOCATED)
        self.assertEqual(entry.actor, admin)
        self.assertEqual(entry.details['square_number'], 1)

    def test_public_allocation_is_not_recorded_in_timeline(self):
        credit = make_credit(self.event)

        self.service.allocate(credit.id, self.squares[0].id)

        self.assertFalse(
            TimelineEntry.objects.filter(event=self.event, entry_type=TimelineEntry.SQUARE_ALLOCATED).exists()
        )

    def test_observers_are_notified_after_commit(self):
        """Test a committed selection is pushed to subscribers of the event"""
        subscriber = self.broadcaster.subscribe(event_channel(self.event.id))
        credit = make_credit(self.event, name='mary ann smith')

        with self.captureOnCommitCallbacks(execute=True):
            self.service.allocate(credit.id, self.squares[2].id)

        message = subscriber.get_nowait()
        self.assertEqual(message['type'], SQUARE_SELECTED)
        self.assertEqual(message['data']['squareId'], str(self.squares[2].id))
        self.assertEqual(message['data']['squareNumber'], 3)
        self.assertEqual(message['data']['ownerInitials'], 'MAS')
        self.assertEqual(message['data']['eventId'], str(self.event.id))

    def test_failed_allocation_notifies_nobody(self):
        subscriber = self.broadcaster.subscribe(event_channel(self.event.id))
        credit = make_credit(self.event)
        expire_now(credit)

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(ExpiredError):
                self.service.allocate(credit.id, self.squares[0].id)

        self.assertEqual(callbacks, [])
        self.assertTrue(subscriber.empty())

    def test_event_sells_out_after_last_square(self):
        event = make_selling_event(cols=2, rows=1, name='Tiny raffle')
        squares = list(event.squares.order_by('square_number'))

        with self.captureOnCommitCallbacks(execute=True):
            self.service.allocate(make_credit(event, email='a@example.com').id, squares[0].id)
        event.refresh_from_db()
        self.assertEqual(event.status, Event.SELLING)

        with self.captureOnCommitCallbacks(execute=True):
            self.service.allocate(make_credit(event, email='b@example.com').id, squares[1].id)
        event.refresh_from_db()
        self.assertEqual(event.status, Event.SOLD_OUT)
        self.assertTrue(
            TimelineEntry.objects.filter(
                event=event,
                entry_type=TimelineEntry.STATUS_CHANGED,
                details__status=Event.SOLD_OUT,
            ).exists()
        )

    def test_lock_timeout_is_reported_as_retryable(self):
        credit = make_credit(self.event)

        with patch.object(self.service, '_allocate', side_effect=OperationalError('database is locked')):
            with self.assertRaises(AllocationTimeoutError):
                self.service.allocate(credit.id, self.squares[0].id)

    def test_is_lock_timeout(self):
        error = OperationalError('canceling statement due to lock timeout')
        cause = Exception('lock timeout')
        cause.pgcode = '55P03'
        error.__cause__ = cause

        self.assertTrue(AllocationService._is_lock_timeout(error))
        self.assertTrue(AllocationService._is_lock_timeout(OperationalError('database is locked')))
        self.assertTrue(AllocationService._is_lock_timeout(
            OperationalError('database table is locked: raffle_square_purchases')
        ))
        self.assertFalse(AllocationService._is_lock_timeout(OperationalError('connection refused')))

    def test_constraint_violation_maps_to_conflict(self):
        """Test a unique key rejection is reported by which side lost"""
        credit = make_credit(self.event)
        self.service.allocate(credit.id, self.squares[0].id)
        other = make_credit(self.event, email='other@example.com')

        used = AllocationService._conflict_from_integrity_error(credit.id, self.squares[1].id, Exception('dup'))
        taken = AllocationService._conflict_from_integrity_error(other.id, self.squares[0].id, Exception('dup'))
        unknown = AllocationService._conflict_from_integrity_error(other.id, self.squares[1].id, Exception('dup'))

        self.assertEqual(used.reason, ConflictError.CREDIT_USED)
        self.assertEqual(taken.reason, ConflictError.SQUARE_TAKEN)
        self.assertIsNone(unknown.reason)
        self.assertEqual(unknown.status_code, status.HTTP_409_CONFLICT)


class DeclareWinnerTestCase(TestCase):
    """Test cases for winner declaration"""

    def setUp(self):
        self.event = make_selling_event()
        self.squares = list(self.event.squares.order_by('square_number'))
        self.credit = make_credit(self.event)
        AllocationService().allocate(self.credit.id, self.squares[3].id)

    def test_declare_winner_completes_event(self):
        result = EventService.declare_winner(self.event.id, self.squares[3].id)

        self.event.refresh_from_db()
        self.assertEqual(self.event.status, Event.COMPLETED)
        self.assertEqual(self.event.winner_square_id, self.squares[3].id)
        self.assertEqual(result['purchase'].customer_full_name, 'Jane Doe')
        entry = TimelineEntry.objects.get(event=self.event, entry_type=TimelineEntry.EVENT_COMPLETED)
        self.assertEqual(entry.details['winner_position'], 'A2')

        details = EventService.winner_details(self.event)
        self.assertEqual(details['squareNumber'], 4)

    def test_winner_must_be_taken(self):
        with self.assertRaises(InvalidStateError):
            EventService.declare_winner(self.event.id, self.squares[0].id)

        self.event.refresh_from_db()
        self.assertEqual(self.event.status, Event.SELLING)
        self.assertIsNone(self.event.winner_square_id)

    def test_winner_must_belong_to_event(self):
        other = make_selling_event(name='Other raffle')

        with self.assertRaises(ValidationError) as ctx:
            EventService.declare_winner(self.event.id, other.squares.first().id)

        self.assertEqual(ctx.exception.code, 'SQUARE_EVENT_MISMATCH')

    def test_unknown_event_or_square(self):
        with self.assertRaises(NotFoundError):
            EventService.declare_winner(uuid.uuid4(), self.squares[3].id)
        with self.assertRaises(NotFoundError):
            EventService.declare_winner(self.event.id, uuid.uuid4())

    def test_completed_event_cannot_be_completed_again(self):
        EventService.declare_winner(self.event.id, self.squares[3].id)

        with self.assertRaises(InvalidStateError):
            EventService.declare_winner(self.event.id, self.squares[3].id)

    def test_allocation_refused_after_completion(self):
        late = make_credit(self.event, email='late@example.com')
        EventService.declare_winner(self.event.id, self.squares[3].id)

        with self.assertRaises(InvalidStateError):
            AllocationService().allocate(late.id, self.squares[0].id)

    def test_draft_event_has_no_winner(self):
        event = EventService.create_event(name='Draft', cols=2, rows=2)

        with self.assertRaises(InvalidStateError):
            EventService.declare_winner(event.id, event.squares.first().id)


class BroadcastTestCase(SimpleTestCase):
    """Test cases for the in-process fan-out"""

    def test_publish_reaches_every_subscriber(self):
        broadcaster = InMemoryBroadcaster()
        first = broadcaster.subscribe('event:1')
        second = broadcaster.subscribe('event:1')
        elsewhere = broadcaster.subscribe('event:2')

        delivered = broadcaster.publish('event:1', {'type': 'ping'})

        self.assertEqual(delivered, 2)
        self.assertEqual(first.get_nowait(), {'type': 'ping'})
        self.assertEqual(second.get_nowait(), {'type': 'ping'})
        self.assertTrue(elsewhere.empty())

    def test_unsubscribe(self):
        broadcaster = InMemoryBroadcaster()
        subscriber = broadcaster.subscribe('event:1')

        broadcaster.unsubscribe('event:1', subscriber)
        broadcaster.unsubscribe('event:1', subscriber)
        broadcaster.unsubscribe('event:missing', subscriber)

        self.assertEqual(broadcaster.subscriber_count('event:1'), 0)
        self.assertEqual(broadcaster.publish('event:1', {'type': 'ping'}), 0)

    def test_slow_subscriber_drops_messages(self):
        """Test a full queue drops for that subscriber only"""
        broadcaster = InMemoryBroadcaster(max_queue_size=1)
        slow = broadcaster.subscribe('event:1')
        broadcaster.publish('event:1', {'n': 1})
        fast = broadcaster.subscribe('event:1')

        delivered = broadcaster.publish('event:1', {'n': 2})

        self.assertEqual(delivered, 1)
        self.assertEqual(slow.get_nowait(), {'n': 1})
        self.assertTrue(slow.empty())
        self.assertEqual(fast.get_nowait(), {'n': 2})

    def test_notifier_never_raises(self):
        broadcaster = MagicMock()
        broadcaster.publish.side_effect = RuntimeError('transport down')
        purchase = MagicMock()
        purchase.square.selected_at = timezone.now()

        self.assertEqual(SquareNotifier(broadcaster).square_selected(purchase), 0)


class StreamTestCase(SimpleTestCase):
    """Test cases for Server-Sent Events framing"""

    def test_format_sse(self):
        self.assertEqual(
            format_sse('squareSelected', {'squareNumber': 5}),
            'event: squareSelected\ndata: {"squareNumber": 5}\n\n'
        )
        self.assertEqual(
            format_sse('connected', {}, retry_ms=3000),
            'retry: 3000\nevent: connected\ndata: {}\n\n'
        )

    def test_stream_delivers_messages_and_releases_subscription(self):
        broadcaster = InMemoryBroadcaster()
        stream = sse_messages(broadcaster, 'event:1', heartbeat_seconds=1, max_seconds=30)

        connected = next(stream)
        self.assertIn('event: connected', connected)
        self.assertEqual(broadcaster.subscriber_count('event:1'), 1)

        broadcaster.publish('event:1', {'type': SQUARE_SELECTED, 'data': {'squareNumber': 7}})
        frame = next(stream)
        self.assertEqual(frame, 'event: squareSelected\ndata: {"squareNumber": 7}\n\n')

        stream.close()
        self.assertEqual(broadcaster.subscriber_count('event:1'), 0)

    def test_stream_sends_keep_alive(self):
        broadcaster = InMemoryBroadcaster()
        stream = sse_messages(broadcaster, 'event:1', heartbeat_seconds=0.01, max_seconds=30)

        next(stream)
        self.assertEqual(next(stream), KEEP_ALIVE)
        stream.close()

    def test_stream_ends_at_deadline(self):
        broadcaster = InMemoryBroadcaster()
        clock = iter([0, 10]).__next__

        frames = list(sse_messages(broadcaster, 'event:1', heartbeat_seconds=1, max_seconds=5, clock=clock))

        self.assertEqual(len(frames), 1)
        self.assertEqual(broadcaster.subscriber_count('event:1'), 0)


class RaffleAPITestCase(APITestCase):
    """Test cases for raffle endpoints"""

    def setUp(self):
        self.admin = User.objects.create_user(username='admin', password='pass', is_staff=True)
        self.event = make_selling_event()
        self.squares = list(self.event.squares.order_by('square_number'))

    def get_auth_headers(self):
        """Get JWT token for admin requests"""
        from rest_framework_simplejwt.tokens import RefreshToken
        refresh = RefreshToken.for_user(self.admin)
        return {'HTTP_AUTHORIZATION': f'Bearer {refresh.access_token}'}

    def select(self, credit, square):
        return self.client.post(
            reverse('raffle:square-select'),
            {'creditId': str(credit.id), 'squareId': str(square.id)},
            format='json'
        )

    def test_list_events(self):
        AllocationService().allocate(make_credit(self.event).id, self.squares[0].id)

        response = self.client.get(reverse('raffle:event-list'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['events']), 1)
        self.assertEqual(response.data['events'][0]['totalSquares'], 9)
        self.assertEqual(response.data['events'][0]['soldSquares'], 1)

    def test_create_event_requires_admin(self):
        data = {'name': 'New raffle', 'gridCols': 2, 'gridRows': 2}

        response = self.client.post(reverse('raffle:event-list'), data, format='json')
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

        response = self.client.post(reverse('raffle:event-list'), data, format='json', **self.get_auth_headers())
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['event']['status'], Event.DRAFT)
        self.assertEqual(response.data['event']['totalSquares'], 4)

    def test_create_event_invalid_grid(self):
        data = {'name': 'New raffle', 'gridCols': 0, 'gridRows': 2}

        response = self.client.post(reverse('raffle:event-list'), data, format='json', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_event_detail(self):
        response = self.client.get(reverse('raffle:event-detail', args=[self.event.id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['event']['name'], 'Spring raffle')
        self.assertIsNone(response.data['event']['winnerSquare'])

        response = self.client.get(reverse('raffle:event-detail', args=[uuid.uuid4()]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_list_squares(self):
        """Test square listing with status filter and poll interval"""
        AllocationService().allocate(make_credit(self.event).id, self.squares[0].id)

        response = self.client.get(reverse('raffle:event-squares', args=[self.event.id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['squares']), 9)
        self.assertEqual(response.data['squares'][0]['ownerInitials'], 'JD')
        self.assertEqual(response.data['squares'][0]['position'], 'A1')
        self.assertIn('pollIntervalSeconds', response.data)

        response = self.client.get(reverse('raffle:event-squares', args=[self.event.id]), {'status': 'AVAILABLE'})
        self.assertEqual(len(response.data['squares']), 8)

        response = self.client.get(reverse('raffle:event-squares', args=[self.event.id]), {'status': 'SOLD'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_select_square_success(self):
        credit = make_credit(self.event)

        response = self.select(credit, self.squares[6])

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['success'])
        self.assertEqual(len(response.data['confirmationCode']), 6)
        self.assertEqual(response.data['square']['squareNumber'], 7)
        self.assertEqual(response.data['square']['position'], 'A3')
        self.assertEqual(response.data['paymentMethod'], PaymentCredit.CASH)

    def test_select_taken_square_returns_fresh_state(self):
        """Test a conflict carries the square as it is now"""
        self.select(make_credit(self.event, name='Ann Lee', email='ann@example.com'), self.squares[0])

        response = self.select(make_credit(self.event, email='bob@example.com'), self.squares[0])

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['code'], 'SQUARE_NOT_AVAILABLE')
        self.assertEqual(response.data['square']['status'], Square.TAKEN)
        self.assertEqual(response.data['square']['ownerInitials'], 'AL')

    def test_select_with_used_credit(self):
        credit = make_credit(self.event)
        self.select(credit, self.squares[0])

        response = self.select(credit, self.squares[1])

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['code'], 'CREDIT_ALREADY_USED')
        self.assertNotIn('square', response.data)

    def test_select_with_expired_credit(self):
        credit = make_credit(self.event)
        expire_now(credit)

        response = self.select(credit, self.squares[0])

        self.assertEqual(response.status_code, status.HTTP_410_GONE)
        self.assertEqual(response.data['code'], 'CREDIT_EXPIRED')

    def test_select_unknown_credit(self):
        response = self.client.post(
            reverse('raffle:square-select'),
            {'creditId': str(uuid.uuid4()), 'squareId': str(self.squares[0].id)},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_select_invalid_payload(self):
        response = self.client.post(reverse('raffle:square-select'), {'creditId': 'nope'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_select_busy_returns_503(self):
        credit = make_credit(self.event)

        with patch.object(AllocationService, '_allocate', side_effect=OperationalError('database is locked')):
            response = self.select(credit, self.squares[0])

        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(response.data['code'], 'ALLOCATION_TIMEOUT')

    def test_change_status(self):
        url = reverse('raffle:event-status', args=[self.event.id])

        response = self.client.post(url, {'status': Event.LIVE}, format='json', **self.get_auth_headers())
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['event']['status'], Event.LIVE)

        response = self.client.post(url, {'status': Event.SELLING}, format='json', **self.get_auth_headers())
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post(url, {'status': Event.SELLING}, format='json')
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_declare_winner(self):
        self.select(make_credit(self.event, phone='+15550001111'), self.squares[2])
        url = reverse('raffle:event-winner', args=[self.event.id])

        response = self.client.post(url, {'squareId': str(self.squares[2].id)}, format='json', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['event']['status'], Event.COMPLETED)
        self.assertEqual(response.data['winner']['squareNumber'], 3)
        self.assertEqual(response.data['winner']['customerEmail'], 'jane@example.com')
        self.assertEqual(response.data['winner']['customerPhone'], '+15550001111')

        detail = self.client.get(reverse('raffle:event-detail', args=[self.event.id]))
        self.assertEqual(detail.data['event']['winnerSquare']['position'], 'C1')

    def test_declare_winner_untaken_square(self):
        url = reverse('raffle:event-winner', args=[self.event.id])

        response = self.client.post(url, {'squareId': str(self.squares[2].id)}, format='json', **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_timeline(self):
        response = self.client.get(reverse('raffle:event-timeline', args=[self.event.id]), **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        types = [entry['entryType'] for entry in response.data['entries']]
        self.assertEqual(types, [TimelineEntry.STATUS_CHANGED, TimelineEntry.EVENT_CREATED])

    @override_settings(RAFFLE_SSE_MAX_SECONDS=0.2, RAFFLE_SSE_HEARTBEAT_SECONDS=0.05)
    def test_stream_opens_with_connected_frame(self):
        """Test the stream greets, keeps alive, and releases its subscription when it ends"""
        broadcaster = django_apps.get_app_config('raffle').broadcaster
        channel = event_channel(self.event.id)

        response = self.client.get(reverse('raffle:event-stream', args=[self.event.id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response['Content-Type'], 'text/event-stream')
        self.assertEqual(response['Cache-Control'], 'no-cache')

        frames = list(response.streaming_content)
        self.assertIn(b'event: connected', frames[0])
        self.assertIn(b'retry: ', frames[0])
        self.assertIn(KEEP_ALIVE.encode(), frames[1:])
        self.assertEqual(broadcaster.subscriber_count(channel), 0)

    def test_stream_unknown_event(self):
        response = self.client.get(reverse('raffle:event-stream', args=[uuid.uuid4()]))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class RaffleAdminTestCase(TestCase):
    """Test cases for admin actions"""

    def setUp(self):
        self.admin = User.objects.create_superuser(username='root', password='pass', email='root@example.com')
        self.client.force_login(self.admin)

    def test_open_selling_action(self):
        draft = EventService.create_event(name='Draft', cols=2, rows=2)
        cancelled = EventService.create_event(name='Cancelled', cols=2, rows=2)
        EventService.transition(cancelled.id, Event.CANCELLED)

        response = self.client.post(
            reverse('admin:raffle_event_changelist'),
            {'action': 'open_selling_action', '_selected_action': [draft.pk, cancelled.pk]},
        )

        self.assertEqual(response.status_code, 302)
        draft.refresh_from_db()
        cancelled.refresh_from_db()
        self.assertEqual(draft.status, Event.SELLING)
        self.assertEqual(cancelled.status, Event.CANCELLED)


class RaffleCommandsTestCase(TestCase):
    """Test cases for raffle management commands"""

    def test_create_demo_event(self):
        out = StringIO()

        call_command('create_demo_event', '--cols', '3', '--rows', '3', '--sold', '4', stdout=out)

        event = Event.objects.get()
        self.assertEqual(event.status, Event.SELLING)
        self.assertEqual(event.squares.filter(status=Square.TAKEN).count(), 4)
        self.assertEqual(PaymentCredit.objects.filter(status=PaymentCredit.USED).count(), 4)
        self.assertIn('4 square(s) sold', out.getvalue())

    def test_regenerate_squares(self):
        event = EventService.create_event(name='Gala', cols=2, rows=2)
        event.squares.filter(square_number=4).delete()
        out = StringIO()

        call_command('regenerate_squares', str(event.id), stdout=out)

        self.assertEqual(event.squares.count(), 4)
        self.assertIn('Created 1 missing square(s)', out.getvalue())

    def test_regenerate_squares_unknown_event(self):
        with self.assertRaises(CommandError):
            call_command('regenerate_squares', str(uuid.uuid4()), stdout=StringIO())


def serializes_concurrent_writes():
    if connection.features.has_select_for_update:
        return True
    return connection.settings_dict.get('OPTIONS', {}).get('transaction_mode') == 'IMMEDIATE'


@skipUnless(serializes_concurrent_writes(), 'needs row locks or SQLite immediate transactions')
class ConcurrentAllocationTestCase(TransactionTestCase):
    """
    Real races between threads, each on its own database connection.
    Runs on PostgreSQL row locks and on SQLite with immediate transactions.
    """

    def race(self, pairs):
        barrier = threading.Barrier(len(pairs))
        outcomes = queue.Queue()

        def worker(credit_id, square_id):
            try:
                barrier.wait()
                AllocationService().allocate(credit_id, square_id)
                outcomes.put('ok')
            except RaffleError as e:
                outcomes.put(getattr(e, 'reason', None) or e.code)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker, args=pair) for pair in pairs]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        results = []
        while not outcomes.empty():
            results.append(outcomes.get_nowait())
        return results

    def test_many_credits_one_square(self):
        """Test exactly one of many simultaneous buyers gets the square"""
        event = make_selling_event(cols=2, rows=1)
        square = event.squares.order_by('square_number').first()
        credits = [
            make_credit(event, name=f'Customer {i}', email=f'c{i}@example.com')
            for i in range(8)
        ]

        results = self.race([(credit.id, square.id) for credit in credits])

        self.assertEqual(len(results), 8)
        self.assertEqual(results.count('ok'), 1)
        self.assertEqual(results.count(ConflictError.SQUARE_TAKEN), 7)
        self.assertEqual(SquarePurchase.objects.filter(square=square).count(), 1)
        self.assertEqual(PaymentCredit.objects.filter(status=PaymentCredit.USED).count(), 1)
        self.assertEqual(PaymentCredit.objects.filter(status=PaymentCredit.CONFIRMED).count(), 7)

    def test_one_credit_many_squares(self):
        """Test a credit spent from several tabs at once buys one square"""
        event = make_selling_event(cols=3, rows=3)
        credit = make_credit(event)
        squares = list(event.squares.order_by('square_number'))[:6]

        results = self.race([(credit.id, square.id) for square in squares])

        self.assertEqual(len(results), 6)
        self.assertEqual(results.count('ok'), 1)
        self.assertEqual(results.count(ConflictError.CREDIT_USED), 5)
        self.assertEqual(event.squares.filter(status=Square.TAKEN).count(), 1)
        self.assertEqual(SquarePurchase.objects.filter(credit=credit).count(), 1)


@skipUnlessDBFeature('has_select_for_update')
class StatusChangeLockingTestCase(TransactionTestCase):
    """
    Closing sales must wait for a selection that already holds its square lock
    """

    def test_close_sales_waits_for_locked_square(self):
        event = make_selling_event(cols=2, rows=1)
        square = event.squares.order_by('square_number').first()
        locked = threading.Event()
        release = threading.Event()
        finished = threading.Event()
        errors = []

        def hold_square():
            try:
                with transaction.atomic():
                    list(Square.objects.select_for_update().filter(pk=square.pk))
                    locked.set()
                    release.wait(5)
            finally:
                connection.close()

        def cancel_event():
            try:
                EventService.transition(event.id, Event.CANCELLED)
            except Exception as e:
                errors.append(e)
            finally:
                finished.set()
                connection.close()

        holder = threading.Thread(target=hold_square)
        holder.start()
        self.assertTrue(locked.wait(5))

        canceller = threading.Thread(target=cancel_event)
        canceller.start()

        self.assertFalse(finished.wait(0.5))
        event.refresh_from_db()
        self.assertEqual(event.status, Event.SELLING)

        release.set()
        holder.join()
        canceller.join()

        self.assertEqual(errors, [])
        event.refresh_from_db()
        self.assertEqual(event.status, Event.CANCELLED)


class HealthAPITestCase(APITestCase):
    """Test cases for the health endpoint"""

    def test_health(self):
        response = self.client.get(reverse('health'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'healthy')
        self.assertEqual(response.data['database'], 'ok')

    def test_health_database_down(self):
        broken = MagicMock()
        broken.cursor.side_effect = OperationalError('could not connect to server')

        with patch('core.views.connection', broken):
            response = self.client.get(reverse('health'))

        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(response.data['status'], 'unhealthy')
