import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.raffle.exceptions import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from apps.raffle.models import Event, TimelineEntry
from .models import PaymentCredit

logger = logging.getLogger(__name__)


class CreditLedger:
    """
    Lifecycle of payment credits: create, confirm, expire, refund.

    Spending a credit is done by the allocation engine, which is the only
    place a credit becomes USED.
    """

    @staticmethod
    def default_ttl(payment_method):
        minutes = settings.RAFFLE_CREDIT_TTL_MINUTES.get(payment_method.lower())
        if minutes is None:
            minutes = settings.RAFFLE_CREDIT_TTL_MINUTES['default']
        return timedelta(minutes=int(minutes))

    @staticmethod
    def initial_status(payment_method):
        """
        Gateway payments wait for the gateway to confirm them; cash and card
        payments are already settled when the credit is recorded.
        """
        if payment_method == PaymentCredit.GATEWAY:
            return PaymentCredit.PENDING
        return PaymentCredit.CONFIRMED

    @staticmethod
    def create_credit(event_id, customer_name, email=None, phone=None,
                      payment_method=PaymentCredit.GATEWAY, amount=None,
                      ttl=None, payment_reference=None, actor=None):
        """
        Record a payment as a credit that can later claim one square
        """
        if not (email or phone):
            raise ValidationError("Either customer email or phone is required")
        if not customer_name or not customer_name.strip():
            raise ValidationError("Customer name is required")
        if payment_method not in dict(PaymentCredit.METHOD_CHOICES):
            raise ValidationError(f"Unknown payment method: {payment_method}")

        event = Event.objects.filter(pk=event_id).first()
        if event is None:
            raise NotFoundError("Event not found")
        if not event.is_selling:
            raise InvalidStateError("Event is not currently selling squares", code='EVENT_NOT_SELLING')

        if amount is None:
            amount = event.square_price
        else:
            try:
                amount = Decimal(str(amount))
            except InvalidOperation:
                raise ValidationError(f"Invalid amount: {amount}")
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Amount must be positive")

        ttl = ttl if ttl is not None else CreditLedger.default_ttl(payment_method)
        reference = payment_reference or PaymentCredit.generate_reference(payment_method)

        try:
            with transaction.atomic():
                credit = PaymentCredit.objects.create(
                    event=event,
                    customer_name=customer_name.strip(),
                    customer_email=email or None,
                    customer_phone=phone or None,
                    payment_reference=reference,
                    payment_method=payment_method,
                    amount=amount,
                    status=CreditLedger.initial_status(payment_method),
                    expires_at=timezone.now() + ttl,
                )
                if payment_method != PaymentCredit.GATEWAY:
                    TimelineEntry.record(
                        event.id,
                        TimelineEntry.CREDIT_CREATED,
                        actor=actor,
                        credit_id=credit.id,
                        customer_name=credit.customer_name,
                        payment_method=payment_method,
                        amount=credit.amount,
                    )
        except IntegrityError:
            raise ValidationError(
                "A credit already exists for this payment reference",
                code='DUPLICATE_REFERENCE'
            )

        logger.info(
            f"Created {payment_method} credit {credit.id} for event {event.id} "
            f"({credit.status}, expires {credit.expires_at.isoformat()})"
        )
        return credit

    @staticmethod
    def confirm_credit(credit_id):
        """
        PENDING -> CONFIRMED once the payment is confirmed out of band.
        Confirming a CONFIRMED credit is a no-op.
        """
        with transaction.atomic():
            credit = PaymentCredit.objects.select_for_update().filter(pk=credit_id).first()
            if credit is None:
                raise NotFoundError("Payment credit not found")

            if credit.status == PaymentCredit.CONFIRMED:
                return credit
            if credit.status != PaymentCredit.PENDING:
                raise InvalidStateError(f"Cannot confirm a {credit.status.lower()} credit")

            credit.status = PaymentCredit.CONFIRMED
            credit.save(update_fields=['status', 'updated_at'])

        logger.info(f"Confirmed credit {credit.id}")
        return credit

    @staticmethod
    def expire_credit(credit_id, now=None):
        """
        CONFIRMED -> EXPIRED for a credit past its window.
        Conditional on both, so it can never move a credit out of USED or
        back to CONFIRMED. Returns True when a row changed.
        """
        now = now or timezone.now()
        changed = PaymentCredit.objects.filter(
            pk=credit_id,
            status=PaymentCredit.CONFIRMED,
            expires_at__lt=now,
        ).update(status=PaymentCredit.EXPIRED, updated_at=now)
        if changed:
            logger.info(f"Expired credit {credit_id}")
        return bool(changed)

    @staticmethod
    def get_credit(credit_id):
        """
        Fetch a credit, expiring it first if its window has passed
        """
        credit = PaymentCredit.objects.select_related('event').filter(pk=credit_id).first()
        if credit is None:
            raise NotFoundError("Payment credit not found")

        now = timezone.now()
        if credit.status == PaymentCredit.CONFIRMED and credit.is_expired(now):
            CreditLedger.expire_credit(credit.id, now=now)
            credit.refresh_from_db()
        return credit

    @staticmethod
    def refund_credit(credit_id, actor=None):
        """
        Cancel a credit that was never spent
        """
        with transaction.atomic():
            credit = PaymentCredit.objects.select_for_update().filter(pk=credit_id).first()
            if credit is None:
                raise NotFoundError("Payment credit not found")

            if credit.status == PaymentCredit.REFUNDED:
                return credit
            if credit.status == PaymentCredit.USED:
                raise InvalidStateError("Cannot refund a credit that has been used")

            previous_status = credit.status
            credit.status = PaymentCredit.REFUNDED
            credit.save(update_fields=['status', 'updated_at'])

            TimelineEntry.record(
                credit.event_id,
                TimelineEntry.CREDIT_REFUNDED,
                actor=actor,
                credit_id=credit.id,
                previous_status=previous_status,
                amount=credit.amount,
            )

        logger.info(f"Refunded credit {credit.id} (was {previous_status})")
        return credit

    @staticmethod
    def expire_stale_credits(now=None):
        """
        Bulk sweep of confirmed credits past their window.
        Only keeps reporting accurate; allocation checks expiry on its own.
        """
        now = now or timezone.now()
        count = PaymentCredit.objects.filter(
            status=PaymentCredit.CONFIRMED,
            expires_at__lt=now,
        ).update(status=PaymentCredit.EXPIRED, updated_at=now)
        return count

    @staticmethod
    def credits_for_event(event_id):
        if not Event.objects.filter(pk=event_id).exists():
            raise NotFoundError("Event not found")
        return PaymentCredit.objects.filter(
            event_id=event_id
        ).select_related('purchase', 'purchase__square').order_by('-created_at')
