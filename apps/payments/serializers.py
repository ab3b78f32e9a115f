from decimal import Decimal

from rest_framework import serializers

from .models import PaymentCredit


class CreditCreateSerializer(serializers.Serializer):
    """
    Serializer for recording a payment as a credit
    """
    eventId = serializers.UUIDField()
    customerName = serializers.CharField(max_length=255)
    customerEmail = serializers.EmailField(required=False, allow_blank=True, allow_null=True)
    customerPhone = serializers.CharField(max_length=30, required=False, allow_blank=True, allow_null=True)
    paymentMethod = serializers.ChoiceField(
        choices=PaymentCredit.METHOD_CHOICES,
        default=PaymentCredit.GATEWAY
    )
    paymentReference = serializers.CharField(max_length=255, required=False, allow_blank=True)
    amount = serializers.DecimalField(
        max_digits=10,
        decimal_places=2,
        min_value=Decimal('0.01'),
        required=False
    )
    ttlMinutes = serializers.IntegerField(
        required=False,
        min_value=1,
        max_value=24 * 60,
        help_text="Selection window in minutes; defaults per payment method"
    )

    def validate_customerPhone(self, value):
        if not value:
            return value
        cleaned = ''.join(ch for ch in value if ch.isdigit() or ch == '+')
        if len(cleaned.lstrip('+')) < 6:
            raise serializers.ValidationError("Phone number is too short")
        return cleaned

    def validate(self, attrs):
        if not (attrs.get('customerEmail') or attrs.get('customerPhone')):
            raise serializers.ValidationError("Either customerEmail or customerPhone is required")
        return attrs


class CreditSerializer(serializers.ModelSerializer):
    creditId = serializers.UUIDField(source='id')
    eventId = serializers.UUIDField(source='event_id')
    customerName = serializers.CharField(source='customer_name')
    paymentMethod = serializers.CharField(source='payment_method')
    expiresAt = serializers.DateTimeField(source='expires_at')
    canSelectSquare = serializers.SerializerMethodField()

    class Meta:
        model = PaymentCredit
        fields = [
            'creditId',
            'eventId',
            'customerName',
            'status',
            'amount',
            'paymentMethod',
            'expiresAt',
            'canSelectSquare',
        ]
        read_only_fields = fields

    def get_canSelectSquare(self, obj):
        return obj.can_select_square()


class AdminCreditSerializer(CreditSerializer):
    """
    Full credit view for admins, with the square it was spent on
    """
    customerEmail = serializers.CharField(source='customer_email')
    customerPhone = serializers.CharField(source='customer_phone')
    paymentReference = serializers.CharField(source='payment_reference')
    createdAt = serializers.DateTimeField(source='created_at')
    selectedSquare = serializers.SerializerMethodField()

    class Meta(CreditSerializer.Meta):
        fields = CreditSerializer.Meta.fields + [
            'customerEmail',
            'customerPhone',
            'paymentReference',
            'createdAt',
            'selectedSquare',
        ]
        read_only_fields = fields

    def get_selectedSquare(self, obj):
        purchase = getattr(obj, 'purchase', None)
        if purchase is None:
            return None
        return {
            'number': purchase.square.square_number,
            'position': purchase.square.position,
            'confirmationCode': purchase.confirmation_code,
        }
