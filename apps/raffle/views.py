from django.apps import apps as django_apps
from django.conf import settings
from django.db.models import Count, Q
from django.http import JsonResponse, StreamingHttpResponse
from django.views.decorators.http import require_GET
from drf_yasg import openapi
from drf_yasg.utils import swagger_auto_schema
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from .broadcast import event_channel
from .exceptions import ConflictError, RaffleError, error_response
from .models import Event, Square
from .serializers import (
    EventCreateSerializer,
    EventSerializer,
    EventStatusSerializer,
    SquareSelectSerializer,
    SquareSerializer,
    TimelineEntrySerializer,
    WinnerSerializer,
)
from .services import AllocationService, EventService
from .stream import sse_messages


def events_with_sales():
    return Event.objects.annotate(
        sold_squares=Count('squares', filter=Q(squares__status=Square.TAKEN))
    )


class EventListView(APIView):
    """
    List raffle events, or create one (admin)
    """

    def get_permissions(self):
        if self.request.method == 'POST':
            return [IsAdminUser()]
        return [AllowAny()]

    @swagger_auto_schema(
        operation_description="List events with their sale progress.",
        responses={200: EventSerializer(many=True)},
        tags=['Events']
    )
    def get(self, request):
        events = events_with_sales().order_by('-created_at')
        serializer = EventSerializer(events, many=True)
        return Response({'events': serializer.data}, status=status.HTTP_200_OK)

    @swagger_auto_schema(
        operation_description="Create a DRAFT event and generate every square of its grid. Grid size and price default to the configured values.",
        request_body=EventCreateSerializer,
        responses={
            201: openapi.Response(description="Event created", schema=EventSerializer),
            400: openapi.Response(description="Invalid input"),
            403: openapi.Response(description="Admin only"),
        },
        security=[{'Bearer': []}],
        tags=['Events']
    )
    def post(self, request):
        serializer = EventCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        try:
            event = EventService.create_event(
                name=data['name'],
                description=data.get('description', ''),
                cols=data.get('gridCols'),
                rows=data.get('gridRows'),
                square_price=data.get('squarePrice'),
                actor=request.user,
            )
        except RaffleError as e:
            return error_response(e)

        return Response(
            {'event': EventSerializer(event).data},
            status=status.HTTP_201_CREATED
        )


class EventDetailView(APIView):
    permission_classes = [AllowAny]

    @swagger_auto_schema(
        operation_description="Event details, including the winner once the event is completed.",
        responses={200: EventSerializer, 404: openapi.Response(description="Event not found")},
        tags=['Events']
    )
    def get(self, request, event_id):
        event = events_with_sales().filter(pk=event_id).first()
        if event is None:
            return Response({'error': 'Event not found'}, status=status.HTTP_404_NOT_FOUND)

        data = EventSerializer(event).data
        data['winnerSquare'] = EventService.winner_details(event)
        return Response({'event': data}, status=status.HTTP_200_OK)


class EventSquaresView(APIView):
    """
    Authoritative square state for an event.

    Clients poll this periodically in addition to listening on the event
    stream; it is how they catch up on updates the stream did not deliver.
    """
    permission_classes = [AllowAny]

    @swagger_auto_schema(
        operation_description="All squares of an event ordered by square number. Pass status=AVAILABLE to list only free squares.",
        manual_parameters=[
            openapi.Parameter(
                'status',
                openapi.IN_QUERY,
                type=openapi.TYPE_STRING,
                enum=[choice for choice, _ in Square.STATUS_CHOICES],
                required=False
            ),
        ],
        responses={200: SquareSerializer(many=True), 404: openapi.Response(description="Event not found")},
        tags=['Squares']
    )
    def get(self, request, event_id):
        if not Event.objects.filter(pk=event_id).exists():
            return Response({'error': 'Event not found'}, status=status.HTTP_404_NOT_FOUND)

        squares = Square.objects.filter(event_id=event_id).select_related('purchase').order_by('square_number')
        status_filter = request.query_params.get('status')
        if status_filter:
            if status_filter not in dict(Square.STATUS_CHOICES):
                return Response({'error': f'Unknown square status: {status_filter}'}, status=status.HTTP_400_BAD_REQUEST)
            squares = squares.filter(status=status_filter)

        return Response(
            {
                'squares': SquareSerializer(squares, many=True).data,
                'pollIntervalSeconds': settings.RAFFLE_POLL_INTERVAL_SECONDS,
            },
            status=status.HTTP_200_OK
        )


class EventStatusView(APIView):
    permission_classes = [IsAdminUser]

    @swagger_auto_schema(
        operation_description="Move an event through its lifecycle (e.g. DRAFT -> SELLING). COMPLETED is reached by declaring a winner.",
        request_body=EventStatusSerializer,
        responses={
            200: EventSerializer,
            400: openapi.Response(description="Transition not allowed"),
            404: openapi.Response(description="Event not found"),
        },
        security=[{'Bearer': []}],
        tags=['Events']
    )
    def post(self, request, event_id):
        serializer = EventStatusSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            event = EventService.transition(event_id, serializer.validated_data['status'], actor=request.user)
        except RaffleError as e:
            return error_response(e)

        return Response({'event': EventSerializer(event).data}, status=status.HTTP_200_OK)


class DeclareWinnerView(APIView):
    permission_classes = [IsAdminUser]

    @swagger_auto_schema(
        operation_description="Declare the winning square and complete the event. The square must have been purchased.",
        request_body=WinnerSerializer,
        responses={
            200: openapi.Response(description="Winner details"),
            400: openapi.Response(description="Square not taken, square/event mismatch or event not running"),
            404: openapi.Response(description="Event or square not found"),
        },
        security=[{'Bearer': []}],
        tags=['Events']
    )
    def post(self, request, event_id):
        serializer = WinnerSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            result = EventService.declare_winner(
                event_id,
                serializer.validated_data['squareId'],
                actor=request.user,
            )
        except RaffleError as e:
            return error_response(e)

        event, square, purchase = result['event'], result['square'], result['purchase']
        return Response(
            {
                'event': {
                    'id': str(event.id),
                    'status': event.status,
                    'winnerSquareId': str(event.winner_square_id),
                },
                'winner': {
                    'squareId': str(square.id),
                    'squareNumber': square.square_number,
                    'position': square.position,
                    'customerName': purchase.customer_full_name,
                    'customerEmail': purchase.credit.customer_email,
                    'customerPhone': purchase.credit.customer_phone,
                    'confirmationCode': purchase.confirmation_code,
                },
            },
            status=status.HTTP_200_OK
        )


class EventTimelineView(APIView):
    permission_classes = [IsAdminUser]

    @swagger_auto_schema(
        operation_description="Audit trail of lifecycle and admin actions for an event, newest first.",
        responses={200: TimelineEntrySerializer(many=True)},
        security=[{'Bearer': []}],
        tags=['Events']
    )
    def get(self, request, event_id):
        try:
            event = EventService.get_event(event_id)
        except RaffleError as e:
            return error_response(e)

        entries = event.timeline.select_related('actor').all()
        return Response(
            {'entries': TimelineEntrySerializer(entries, many=True).data},
            status=status.HTTP_200_OK
        )


class SelectSquareView(APIView):
    """
    Spend a payment credit on a square.

    Admin selections (e.g. for cash sales) go through the same allocation
    and are additionally written to the event timeline.
    """
    permission_classes = [AllowAny]
    throttle_scope = 'allocation'

    def get_allocation_service(self):
        return django_apps.get_app_config('raffle').allocation_service()

    @swagger_auto_schema(
        operation_description="Claim a square with a confirmed, unexpired, unused payment credit.",
        request_body=SquareSelectSerializer,
        responses={
            200: openapi.Response(description="Square claimed, returns confirmation code and square"),
            400: openapi.Response(description="Credit not confirmed, event not selling or square/event mismatch"),
            404: openapi.Response(description="Credit or square not found"),
            409: openapi.Response(description="Credit already used or square not available (includes fresh square state)"),
            410: openapi.Response(description="Credit expired"),
            503: openapi.Response(description="Busy, retry"),
        },
        tags=['Squares']
    )
    def post(self, request):
        serializer = SquareSelectSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        credit_id = serializer.validated_data['creditId']
        square_id = serializer.validated_data['squareId']
        try:
            purchase = self.get_allocation_service().allocate(credit_id, square_id, actor=request.user)
        except ConflictError as e:
            extra = {}
            if e.reason == ConflictError.SQUARE_TAKEN:
                square = AllocationService.current_square(square_id)
                if square is not None:
                    extra['square'] = SquareSerializer(square).data
            return error_response(e, **extra)
        except RaffleError as e:
            return error_response(e)

        square = purchase.square
        return Response(
            {
                'success': True,
                'confirmationCode': purchase.confirmation_code,
                'square': {
                    'id': str(square.id),
                    'squareNumber': square.square_number,
                    'gridX': square.grid_x,
                    'gridY': square.grid_y,
                    'position': square.position,
                },
                'paymentMethod': purchase.credit.payment_method,
            },
            status=status.HTTP_200_OK
        )


@require_GET
def event_stream(request, event_id):
    """
    Server-Sent Events stream of square selections for one event
    """
    if not Event.objects.filter(pk=event_id).exists():
        return JsonResponse({'error': 'Event not found'}, status=404)

    broadcaster = django_apps.get_app_config('raffle').broadcaster
    response = StreamingHttpResponse(
        sse_messages(broadcaster, event_channel(event_id)),
        content_type='text/event-stream',
    )
    response['Cache-Control'] = 'no-cache'
    response['X-Accel-Buffering'] = 'no'
    return response
