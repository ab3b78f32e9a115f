import secrets
import uuid

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models


class Event(models.Model):
    """
    One raffle game with its own grid of squares and its own credits
    """
    DRAFT = 'DRAFT'
    SELLING = 'SELLING'
    SOLD_OUT = 'SOLD_OUT'
    LIVE = 'LIVE'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'

    STATUS_CHOICES = [
        (DRAFT, 'Draft'),
        (SELLING, 'Selling'),
        (SOLD_OUT, 'Sold out'),
        (LIVE, 'Live'),
        (COMPLETED, 'Completed'),
        (CANCELLED, 'Cancelled'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=DRAFT,
        db_index=True,
        help_text="Lifecycle state; only SELLING events accept credits and selections"
    )
    square_price = models.DecimalField(max_digits=10, decimal_places=2)
    grid_cols = models.PositiveIntegerField()
    grid_rows = models.PositiveIntegerField()
    winner_square = models.ForeignKey(
        'raffle.Square',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='+',
        help_text="Winning square, set when the event is completed"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'raffle_events'
        verbose_name = 'Event'
        verbose_name_plural = 'Events'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['-created_at'], name='raffle_event_created_idx'),
        ]

    def __str__(self):
        return f"{self.name} ({self.status})"

    @property
    def total_squares(self):
        return self.grid_cols * self.grid_rows

    @property
    def is_selling(self):
        return self.status == self.SELLING


class Square(models.Model):
    """
    One cell of an event grid, the unit of sale
    """
    AVAILABLE = 'AVAILABLE'
    TAKEN = 'TAKEN'
    RESERVED = 'RESERVED'

    STATUS_CHOICES = [
        (AVAILABLE, 'Available'),
        (TAKEN, 'Taken'),
        (RESERVED, 'Reserved'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name='squares')
    grid_x = models.PositiveIntegerField(help_text="0-based column")
    grid_y = models.PositiveIntegerField(help_text="0-based row")
    square_number = models.PositiveIntegerField(help_text="1-based, row-major")
    position = models.CharField(max_length=10, help_text="Column letters + row number, e.g. C7")
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=AVAILABLE,
        db_index=True
    )
    owner_id = models.CharField(max_length=255, null=True, blank=True)
    selected_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'raffle_squares'
        verbose_name = 'Square'
        verbose_name_plural = 'Squares'
        ordering = ['event', 'square_number']
        constraints = [
            models.UniqueConstraint(fields=['event', 'grid_x', 'grid_y'], name='uniq_square_cell'),
            models.UniqueConstraint(fields=['event', 'square_number'], name='uniq_square_number'),
        ]
        indexes = [
            models.Index(fields=['event', 'status'], name='raffle_square_status_idx'),
        ]

    def __str__(self):
        return f"Square {self.square_number} ({self.position}) - {self.status}"


class SquarePurchase(models.Model):
    """
    Durable record that one credit was spent on one square.

    Both one-to-one links are unique at the database level, so a credit can
    be spent once and a square sold once even if application checks race.
    """
    CONFIRMATION_CODE_ALPHABET = 'ABCDEFGHJKMNPQRSTUVWXYZ23456789'
    CONFIRMATION_CODE_LENGTH = 6

    square = models.OneToOneField(Square, on_delete=models.PROTECT, related_name='purchase')
    credit = models.OneToOneField(
        'payments.PaymentCredit',
        on_delete=models.PROTECT,
        related_name='purchase'
    )
    confirmation_code = models.CharField(max_length=12, unique=True, db_index=True)
    customer_initials = models.CharField(max_length=3)
    customer_full_name = models.CharField(max_length=255)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'raffle_square_purchases'
        verbose_name = 'Square purchase'
        verbose_name_plural = 'Square purchases'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.confirmation_code} - square {self.square_id}"

    @classmethod
    def generate_confirmation_code(cls):
        """
        Generate a random unique confirmation code.
        The alphabet leaves out characters that are easy to misread (0/O, 1/I/L).
        """
        while True:
            code = ''.join(
                secrets.choice(cls.CONFIRMATION_CODE_ALPHABET)
                for _ in range(cls.CONFIRMATION_CODE_LENGTH)
            )
            if not cls.objects.filter(confirmation_code=code).exists():
                return code

    @staticmethod
    def initials_for(full_name):
        """First letter of each name part, uppercased, at most three."""
        return ''.join(part[0].upper() for part in full_name.split() if part)[:3]


class TimelineEntry(models.Model):
    """
    Append-only audit trail of lifecycle and admin actions for an event
    """
    EVENT_CREATED = 'EVENT_CREATED'
    STATUS_CHANGED = 'STATUS_CHANGED'
    CREDIT_CREATED = 'CREDIT_CREATED'
    CREDIT_REFUNDED = 'CREDIT_REFUNDED'
    SQUARE_ALLOCATED = 'SQUARE_ALLOCATED'
    EVENT_COMPLETED = 'EVENT_COMPLETED'

    TYPE_CHOICES = [
        (EVENT_CREATED, 'Event created'),
        (STATUS_CHANGED, 'Status changed'),
        (CREDIT_CREATED, 'Credit created'),
        (CREDIT_REFUNDED, 'Credit refunded'),
        (SQUARE_ALLOCATED, 'Square allocated'),
        (EVENT_COMPLETED, 'Event completed'),
    ]

    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name='timeline')
    entry_type = models.CharField(max_length=30, choices=TYPE_CHOICES)
    details = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+'
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'raffle_timeline'
        verbose_name = 'Timeline entry'
        verbose_name_plural = 'Timeline entries'
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['event', 'created_at'], name='raffle_timeline_event_idx'),
        ]

    def __str__(self):
        return f"{self.entry_type} @ {self.created_at}"

    @classmethod
    def record(cls, event_id, entry_type, actor=None, **details):
        """
        Write an entry; callers run this inside the transaction of the action
        """
        if actor is not None and not getattr(actor, 'is_authenticated', False):
            actor = None
        return cls.objects.create(
            event_id=event_id,
            entry_type=entry_type,
            actor=actor,
            details=details,
        )
