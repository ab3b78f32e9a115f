import secrets
import uuid

from django.db import models
from django.utils import timezone


class PaymentCredit(models.Model):
    """
    A paid, not yet spent right to claim one square of an event
    """
    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    USED = 'USED'
    EXPIRED = 'EXPIRED'
    REFUNDED = 'REFUNDED'

    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (CONFIRMED, 'Confirmed'),
        (USED, 'Used'),
        (EXPIRED, 'Expired'),
        (REFUNDED, 'Refunded'),
    ]

    CASH = 'CASH'
    CARD = 'CARD'
    GATEWAY = 'GATEWAY'

    METHOD_CHOICES = [
        (CASH, 'Cash'),
        (CARD, 'Card'),
        (GATEWAY, 'Payment gateway'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    event = models.ForeignKey(
        'raffle.Event',
        on_delete=models.CASCADE,
        related_name='credits'
    )
    customer_name = models.CharField(max_length=255)
    customer_email = models.EmailField(max_length=255, null=True, blank=True)
    customer_phone = models.CharField(max_length=30, null=True, blank=True)
    payment_reference = models.CharField(
        max_length=255,
        unique=True,
        help_text="Opaque id of the payment in the external system"
    )
    payment_method = models.CharField(max_length=10, choices=METHOD_CHOICES)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=PENDING,
        db_index=True
    )
    expires_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'payment_credits'
        verbose_name = 'Payment credit'
        verbose_name_plural = 'Payment credits'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['event', 'created_at'], name='payment_credit_event_idx'),
            models.Index(fields=['status', 'expires_at'], name='payment_credit_expiry_idx'),
        ]

    def __str__(self):
        return f"Credit {self.id} - {self.customer_name} ({self.status})"

    @property
    def contact(self):
        return self.customer_email or self.customer_phone

    def is_expired(self, now=None):
        """Check if the selection window has passed"""
        return (now or timezone.now()) > self.expires_at

    def can_select_square(self, now=None):
        return self.status == self.CONFIRMED and not self.is_expired(now)

    @staticmethod
    def generate_reference(payment_method):
        """
        Generate a unique reference for payments recorded without one,
        e.g. cash taken at the desk
        """
        prefix = payment_method.lower()
        while True:
            reference = f"{prefix}_{secrets.token_hex(8)}"
            if not PaymentCredit.objects.filter(payment_reference=reference).exists():
                return reference
