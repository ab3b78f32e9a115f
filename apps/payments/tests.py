"""
Tests for payments app: credit ledger, expiry sweep and credit endpoints
"""
import uuid
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase
from rest_framework.throttling import ScopedRateThrottle

from apps.raffle.exceptions import InvalidStateError, NotFoundError, ValidationError
from apps.raffle.models import Event, TimelineEntry
from apps.raffle.services import AllocationService, EventService
from .models import PaymentCredit
from .scheduler import expire_stale_credits_job
from .services import CreditLedger

User = get_user_model()


def make_selling_event(price='10.00'):
    event = EventService.create_event(name='Spring raffle', cols=3, rows=3, square_price=Decimal(price))
    return EventService.transition(event.id, Event.SELLING)


def make_credit(event, method=PaymentCredit.CASH, **kwargs):
    kwargs.setdefault('customer_name', 'Jane Doe')
    kwargs.setdefault('email', 'jane@example.com')
    return CreditLedger.create_credit(event_id=event.id, payment_method=method, **kwargs)


def backdate(credit, minutes=1):
    PaymentCredit.objects.filter(pk=credit.pk).update(expires_at=timezone.now() - timedelta(minutes=minutes))


class PaymentCreditModelTestCase(TestCase):
    """Test cases for PaymentCredit helpers"""

    def setUp(self):
        self.event = make_selling_event()

    def test_contact_prefers_email(self):
        credit = make_credit(self.event, phone='+15551234567')
        self.assertEqual(credit.contact, 'jane@example.com')

        credit = make_credit(self.event, email=None, phone='+15551234567')
        self.assertEqual(credit.contact, '+15551234567')

    def test_can_select_square(self):
        credit = make_credit(self.event)
        self.assertTrue(credit.can_select_square())
        self.assertFalse(credit.can_select_square(now=credit.expires_at + timedelta(seconds=1)))

        pending = make_credit(self.event, method=PaymentCredit.GATEWAY)
        self.assertFalse(pending.can_select_square())

    def test_generate_reference(self):
        reference = PaymentCredit.generate_reference(PaymentCredit.CARD)
        self.assertTrue(reference.startswith('card_'))
        self.assertEqual(len(reference), len('card_') + 16)


class CreditLedgerTestCase(TestCase):
    """Test cases for CreditLedger"""

    def setUp(self):
        self.event = make_selling_event()

    def test_create_cash_credit(self):
        """Test cash credits are confirmed at once and priced from the event"""
        credit = make_credit(self.event)

        self.assertEqual(credit.status, PaymentCredit.CONFIRMED)
        self.assertEqual(credit.amount, Decimal('10.00'))
        self.assertTrue(credit.payment_reference.startswith('cash_'))
        self.assertGreater(credit.expires_at, timezone.now() + timedelta(minutes=29))
        self.assertTrue(
            TimelineEntry.objects.filter(event=self.event, entry_type=TimelineEntry.CREDIT_CREATED).exists()
        )

    def test_create_gateway_credit_is_pending(self):
        credit = make_credit(self.event, method=PaymentCredit.GATEWAY, payment_reference='pi_123')

        self.assertEqual(credit.status, PaymentCredit.PENDING)
        self.assertEqual(credit.payment_reference, 'pi_123')
        self.assertFalse(
            TimelineEntry.objects.filter(event=self.event, entry_type=TimelineEntry.CREDIT_CREATED).exists()
        )

    def test_create_credit_with_custom_window_and_amount(self):
        credit = make_credit(self.event, ttl=timedelta(minutes=2), amount='25.00')

        self.assertEqual(credit.amount, Decimal('25.00'))
        self.assertLess(credit.expires_at, timezone.now() + timedelta(minutes=3))

    def test_create_credit_requires_contact_and_name(self):
        with self.assertRaises(ValidationError):
            make_credit(self.event, email=None)
        with self.assertRaises(ValidationError):
            make_credit(self.event, customer_name='   ')
        with self.assertRaises(ValidationError):
            make_credit(self.event, method='CHEQUE')
        with self.assertRaises(ValidationError):
            make_credit(self.event, amount='0')

    def test_create_credit_amount_parsing(self):
        credit = make_credit(self.event, amount=12.5)
        self.assertEqual(credit.amount, Decimal('12.50'))

        for bad in ('ten', 'NaN', 'Infinity'):
            with self.assertRaises(ValidationError):
                make_credit(self.event, amount=bad)

    def test_create_credit_event_must_be_selling(self):
        draft = EventService.create_event(name='Draft', cols=2, rows=2)

        with self.assertRaises(InvalidStateError) as ctx:
            make_credit(draft)

        self.assertEqual(ctx.exception.code, 'EVENT_NOT_SELLING')

        with self.assertRaises(NotFoundError):
            CreditLedger.create_credit(event_id=uuid.uuid4(), customer_name='Jane', email='j@example.com')

    def test_duplicate_reference(self):
        make_credit(self.event, payment_reference='pay_1')

        with self.assertRaises(ValidationError) as ctx:
            make_credit(self.event, payment_reference='pay_1')

        self.assertEqual(ctx.exception.code, 'DUPLICATE_REFERENCE')
        self.assertEqual(PaymentCredit.objects.count(), 1)

    @override_settings(RAFFLE_CREDIT_TTL_MINUTES={'cash': 45, 'default': 5})
    def test_default_ttl(self):
        self.assertEqual(CreditLedger.default_ttl(PaymentCredit.CASH), timedelta(minutes=45))
        self.assertEqual(CreditLedger.default_ttl(PaymentCredit.CARD), timedelta(minutes=5))

    def test_confirm_credit(self):
        """Test PENDING -> CONFIRMED, idempotent on CONFIRMED"""
        credit = make_credit(self.event, method=PaymentCredit.GATEWAY)

        self.assertEqual(CreditLedger.confirm_credit(credit.id).status, PaymentCredit.CONFIRMED)
        self.assertEqual(CreditLedger.confirm_credit(credit.id).status, PaymentCredit.CONFIRMED)

    def test_confirm_refunded_credit(self):
        credit = make_credit(self.event, method=PaymentCredit.GATEWAY)
        CreditLedger.refund_credit(credit.id)

        with self.assertRaises(InvalidStateError):
            CreditLedger.confirm_credit(credit.id)

        with self.assertRaises(NotFoundError):
            CreditLedger.confirm_credit(uuid.uuid4())

    def test_refund_credit(self):
        admin = User.objects.create_user(username='admin', password='pass', is_staff=True)
        credit = make_credit(self.event)

        refunded = CreditLedger.refund_credit(credit.id, actor=admin)

        self.assertEqual(refunded.status, PaymentCredit.REFUNDED)
        entry = TimelineEntry.objects.get(event=self.event, entry_type=TimelineEntry.CREDIT_REFUNDED)
        self.assertEqual(entry.actor, admin)
        self.assertEqual(entry.details['previous_status'], PaymentCredit.CONFIRMED)

        # Refunding again is a no-op
        CreditLedger.refund_credit(credit.id)
        self.assertEqual(
            TimelineEntry.objects.filter(event=self.event, entry_type=TimelineEntry.CREDIT_REFUNDED).count(),
            1
        )

    def test_used_credit_cannot_be_refunded(self):
        credit = make_credit(self.event)
        AllocationService().allocate(credit.id, self.event.squares.first().id)

        with self.assertRaises(InvalidStateError):
            CreditLedger.refund_credit(credit.id)

    def test_get_credit_expires_lazily(self):
        """Test reading a credit past its window stores and returns EXPIRED"""
        credit = make_credit(self.event)
        backdate(credit)

        self.assertEqual(CreditLedger.get_credit(credit.id).status, PaymentCredit.EXPIRED)
        self.assertEqual(CreditLedger.get_credit(credit.id).status, PaymentCredit.EXPIRED)
        self.assertEqual(PaymentCredit.objects.get(pk=credit.pk).status, PaymentCredit.EXPIRED)

        with self.assertRaises(NotFoundError):
            CreditLedger.get_credit(uuid.uuid4())

    def test_expire_credit_never_touches_used_credit(self):
        credit = make_credit(self.event)
        AllocationService().allocate(credit.id, self.event.squares.first().id)
        backdate(credit)

        self.assertFalse(CreditLedger.expire_credit(credit.id))
        self.assertEqual(CreditLedger.get_credit(credit.id).status, PaymentCredit.USED)

    def test_expire_credit_needs_passed_window(self):
        credit = make_credit(self.event)

        self.assertFalse(CreditLedger.expire_credit(credit.id))
        self.assertTrue(CreditLedger.expire_credit(credit.id, now=credit.expires_at + timedelta(seconds=1)))

    def test_expire_stale_credits(self):
        """Test the sweep only expires confirmed credits past their window"""
        stale = [make_credit(self.event), make_credit(self.event)]
        fresh = make_credit(self.event)
        pending = make_credit(self.event, method=PaymentCredit.GATEWAY)
        for credit in stale + [pending]:
            backdate(credit)

        self.assertEqual(CreditLedger.expire_stale_credits(), 2)

        self.assertEqual(PaymentCredit.objects.get(pk=fresh.pk).status, PaymentCredit.CONFIRMED)
        self.assertEqual(PaymentCredit.objects.get(pk=pending.pk).status, PaymentCredit.PENDING)
        self.assertEqual(CreditLedger.expire_stale_credits(), 0)

    def test_credits_for_event(self):
        used = make_credit(self.event)
        make_credit(self.event, email='other@example.com')
        AllocationService().allocate(used.id, self.event.squares.first().id)

        credits = CreditLedger.credits_for_event(self.event.id)

        self.assertEqual(len(credits), 2)
        with self.assertRaises(NotFoundError):
            CreditLedger.credits_for_event(uuid.uuid4())


class CreditExpirySweepTestCase(TestCase):
    """Test cases for the scheduled sweep and its command"""

    def setUp(self):
        self.event = make_selling_event()
        self.credit = make_credit(self.event)
        backdate(self.credit)

    def test_job_expires_stale_credits(self):
        self.assertEqual(expire_stale_credits_job(), 1)
        self.assertEqual(PaymentCredit.objects.get(pk=self.credit.pk).status, PaymentCredit.EXPIRED)

    def test_job_survives_errors(self):
        with patch('apps.payments.services.CreditLedger.expire_stale_credits', side_effect=Exception('db down')):
            self.assertEqual(expire_stale_credits_job(), 0)

    def test_expire_credits_command(self):
        out = StringIO()

        call_command('expire_credits', stdout=out)
        self.assertIn('Expired 1 credit(s)', out.getvalue())

        out = StringIO()
        call_command('expire_credits', stdout=out)
        self.assertIn('No stale credits found', out.getvalue())


class CreditAPITestCase(APITestCase):
    """Test cases for credit endpoints"""

    def setUp(self):
        cache.clear()
        self.admin = User.objects.create_user(username='admin', password='pass', is_staff=True)
        self.event = make_selling_event()
        self.url = reverse('payments:credit-create')

    def get_auth_headers(self):
        """Get JWT token for admin requests"""
        from rest_framework_simplejwt.tokens import RefreshToken
        refresh = RefreshToken.for_user(self.admin)
        return {'HTTP_AUTHORIZATION': f'Bearer {refresh.access_token}'}

    def credit_payload(self, **overrides):
        data = {
            'eventId': str(self.event.id),
            'customerName': 'Jane Doe',
            'customerEmail': 'jane@example.com',
        }
        data.update(overrides)
        return data

    def test_create_gateway_credit(self):
        """Test anyone can open a gateway credit, which starts pending"""
        response = self.client.post(self.url, self.credit_payload(), format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], PaymentCredit.PENDING)
        self.assertEqual(response.data['paymentMethod'], PaymentCredit.GATEWAY)
        self.assertEqual(response.data['amount'], Decimal('10.00'))
        self.assertFalse(response.data['canSelectSquare'])

    def test_cash_credit_requires_admin(self):
        payload = self.credit_payload(paymentMethod=PaymentCredit.CASH)

        response = self.client.post(self.url, payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        response = self.client.post(self.url, payload, format='json', **self.get_auth_headers())
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], PaymentCredit.CONFIRMED)
        self.assertTrue(response.data['canSelectSquare'])

    def test_create_credit_validation(self):
        response = self.client.post(self.url, self.credit_payload(customerEmail=None), format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post(
            self.url,
            self.credit_payload(customerEmail=None, customerPhone='12'),
            format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post(
            self.url,
            self.credit_payload(customerEmail=None, customerPhone='+1 (555) 123-4567'),
            format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_create_credit_event_not_selling(self):
        EventService.transition(self.event.id, Event.LIVE)

        response = self.client.post(self.url, self.credit_payload(), format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'EVENT_NOT_SELLING')

    def test_create_credit_unknown_event(self):
        response = self.client.post(self.url, self.credit_payload(eventId=str(uuid.uuid4())), format='json')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_credit_detail(self):
        credit = make_credit(self.event)
        backdate(credit)

        response = self.client.get(reverse('payments:credit-detail', args=[credit.id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], PaymentCredit.EXPIRED)
        self.assertNotIn('customerEmail', response.data)

        response = self.client.get(reverse('payments:credit-detail', args=[uuid.uuid4()]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_confirm_credit(self):
        credit = make_credit(self.event, method=PaymentCredit.GATEWAY)
        url = reverse('payments:credit-confirm', args=[credit.id])

        response = self.client.post(url)
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

        response = self.client.post(url, **self.get_auth_headers())
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], PaymentCredit.CONFIRMED)

    def test_refund_credit(self):
        credit = make_credit(self.event)
        AllocationService().allocate(credit.id, self.event.squares.first().id)

        response = self.client.post(reverse('payments:credit-refund', args=[credit.id]), **self.get_auth_headers())
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        unused = make_credit(self.event, email='other@example.com')
        response = self.client.post(reverse('payments:credit-refund', args=[unused.id]), **self.get_auth_headers())
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], PaymentCredit.REFUNDED)

    def test_event_credits(self):
        """Test the admin credit list shows the square each credit bought"""
        credit = make_credit(self.event, customer_name='Ann Lee')
        make_credit(self.event, email='other@example.com')
        square = self.event.squares.get(square_number=5)
        purchase = AllocationService().allocate(credit.id, square.id)

        response = self.client.get(reverse('payments:event-credits', args=[self.event.id]), **self.get_auth_headers())

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)
        by_id = {row['creditId']: row for row in response.data['credits']}
        bought = by_id[str(credit.id)]
        self.assertEqual(bought['status'], PaymentCredit.USED)
        self.assertEqual(bought['selectedSquare']['position'], 'B2')
        self.assertEqual(bought['selectedSquare']['confirmationCode'], purchase.confirmation_code)

        response = self.client.get(reverse('payments:event-credits', args=[self.event.id]))
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_credit_creation_is_throttled(self):
        with patch.object(ScopedRateThrottle, 'THROTTLE_RATES', {'credits': '2/min', 'allocation': '2/min'}):
            codes = [
                self.client.post(self.url, self.credit_payload(), format='json').status_code
                for _ in range(3)
            ]

        self.assertEqual(codes, [status.HTTP_200_OK, status.HTTP_200_OK, status.HTTP_429_TOO_MANY_REQUESTS])
