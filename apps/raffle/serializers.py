from decimal import Decimal

from rest_framework import serializers

from .grid import MAX_GRID_SIDE
from .models import Event, Square, TimelineEntry


class SquareSerializer(serializers.ModelSerializer):
    """
    Public view of a square; owner identity is reduced to initials
    """
    squareNumber = serializers.IntegerField(source='square_number')
    gridX = serializers.IntegerField(source='grid_x')
    gridY = serializers.IntegerField(source='grid_y')
    ownerInitials = serializers.SerializerMethodField()
    selectedAt = serializers.DateTimeField(source='selected_at')

    class Meta:
        model = Square
        fields = [
            'id',
            'squareNumber',
            'gridX',
            'gridY',
            'position',
            'status',
            'ownerInitials',
            'selectedAt',
        ]
        read_only_fields = fields

    def get_ownerInitials(self, obj):
        purchase = getattr(obj, 'purchase', None)
        return purchase.customer_initials if purchase else None


class EventSerializer(serializers.ModelSerializer):
    squarePrice = serializers.DecimalField(source='square_price', max_digits=10, decimal_places=2)
    gridCols = serializers.IntegerField(source='grid_cols')
    gridRows = serializers.IntegerField(source='grid_rows')
    totalSquares = serializers.IntegerField(source='total_squares')
    soldSquares = serializers.SerializerMethodField()
    winnerSquareId = serializers.UUIDField(source='winner_square_id', allow_null=True)
    createdAt = serializers.DateTimeField(source='created_at')

    class Meta:
        model = Event
        fields = [
            'id',
            'name',
            'description',
            'status',
            'squarePrice',
            'gridCols',
            'gridRows',
            'totalSquares',
            'soldSquares',
            'winnerSquareId',
            'createdAt',
        ]
        read_only_fields = fields

    def get_soldSquares(self, obj):
        sold = getattr(obj, 'sold_squares', None)
        if sold is None:
            sold = obj.squares.filter(status=Square.TAKEN).count()
        return sold


class EventCreateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    gridCols = serializers.IntegerField(required=False, min_value=1, max_value=MAX_GRID_SIDE)
    gridRows = serializers.IntegerField(required=False, min_value=1, max_value=MAX_GRID_SIDE)
    squarePrice = serializers.DecimalField(
        required=False,
        max_digits=10,
        decimal_places=2,
        min_value=Decimal('0.01')
    )


class EventStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Event.STATUS_CHOICES)


class SquareSelectSerializer(serializers.Serializer):
    creditId = serializers.UUIDField()
    squareId = serializers.UUIDField()


class WinnerSerializer(serializers.Serializer):
    squareId = serializers.UUIDField()


class TimelineEntrySerializer(serializers.ModelSerializer):
    entryType = serializers.CharField(source='entry_type')
    actor = serializers.SerializerMethodField()
    createdAt = serializers.DateTimeField(source='created_at')

    class Meta:
        model = TimelineEntry
        fields = ['id', 'entryType', 'details', 'actor', 'createdAt']
        read_only_fields = fields

    def get_actor(self, obj):
        return obj.actor.get_username() if obj.actor_id else None
