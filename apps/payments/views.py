from datetime import timedelta

from drf_yasg import openapi
from drf_yasg.utils import swagger_auto_schema
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.raffle.exceptions import RaffleError, error_response
from .models import PaymentCredit
from .serializers import AdminCreditSerializer, CreditCreateSerializer, CreditSerializer
from .services import CreditLedger


class CreditCreateView(APIView):
    """
    Record a payment as a credit.

    Anyone can open a gateway payment (it stays PENDING until confirmed);
    cash and card credits are confirmed on creation and need an admin.
    """
    permission_classes = [AllowAny]
    throttle_scope = 'credits'

    @swagger_auto_schema(
        operation_description="Create a payment credit for a selling event. GATEWAY credits start PENDING; CASH and CARD credits (admin only) start CONFIRMED.",
        request_body=CreditCreateSerializer,
        responses={
            200: CreditSerializer,
            400: openapi.Response(description="Invalid input or event not selling"),
            403: openapi.Response(description="Cash/card credits are admin only"),
            404: openapi.Response(description="Event not found"),
            429: openapi.Response(description="Too many requests"),
        },
        tags=['Payments']
    )
    def post(self, request):
        serializer = CreditCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        payment_method = data['paymentMethod']
        if payment_method != PaymentCredit.GATEWAY and not request.user.is_staff:
            return Response(
                {'error': 'Only admins can record cash or card payments'},
                status=status.HTTP_403_FORBIDDEN
            )

        ttl = timedelta(minutes=data['ttlMinutes']) if data.get('ttlMinutes') else None
        try:
            credit = CreditLedger.create_credit(
                event_id=data['eventId'],
                customer_name=data['customerName'],
                email=data.get('customerEmail'),
                phone=data.get('customerPhone'),
                payment_method=payment_method,
                amount=data.get('amount'),
                ttl=ttl,
                payment_reference=data.get('paymentReference') or None,
                actor=request.user,
            )
        except RaffleError as e:
            return error_response(e)

        return Response(CreditSerializer(credit).data, status=status.HTTP_200_OK)


class CreditDetailView(APIView):
    permission_classes = [AllowAny]

    @swagger_auto_schema(
        operation_description="Current status of a credit. Confirmed credits past their window are reported (and stored) as EXPIRED.",
        responses={200: CreditSerializer, 404: openapi.Response(description="Credit not found")},
        tags=['Payments']
    )
    def get(self, request, credit_id):
        try:
            credit = CreditLedger.get_credit(credit_id)
        except RaffleError as e:
            return error_response(e)

        return Response(CreditSerializer(credit).data, status=status.HTTP_200_OK)


class CreditConfirmView(APIView):
    """
    Called by the payment confirmation source (gateway integration or an
    admin) once the payment behind a PENDING credit has cleared
    """
    permission_classes = [IsAdminUser]

    @swagger_auto_schema(
        operation_description="Confirm a pending credit. Confirming an already confirmed credit is a no-op.",
        responses={
            200: openapi.Response(description="Credit status"),
            400: openapi.Response(description="Credit can no longer be confirmed"),
            404: openapi.Response(description="Credit not found"),
        },
        security=[{'Bearer': []}],
        tags=['Payments']
    )
    def post(self, request, credit_id):
        try:
            credit = CreditLedger.confirm_credit(credit_id)
        except RaffleError as e:
            return error_response(e)

        return Response(
            {'creditId': str(credit.id), 'status': credit.status},
            status=status.HTTP_200_OK
        )


class CreditRefundView(APIView):
    permission_classes = [IsAdminUser]

    @swagger_auto_schema(
        operation_description="Refund a credit that has not been spent.",
        responses={
            200: openapi.Response(description="Credit status"),
            400: openapi.Response(description="Credit already used"),
            404: openapi.Response(description="Credit not found"),
        },
        security=[{'Bearer': []}],
        tags=['Payments']
    )
    def post(self, request, credit_id):
        try:
            credit = CreditLedger.refund_credit(credit_id, actor=request.user)
        except RaffleError as e:
            return error_response(e)

        return Response(
            {'creditId': str(credit.id), 'status': credit.status},
            status=status.HTTP_200_OK
        )


class EventCreditsView(APIView):
    permission_classes = [IsAdminUser]

    @swagger_auto_schema(
        operation_description="All credits of an event with the square each was spent on.",
        responses={200: AdminCreditSerializer(many=True), 404: openapi.Response(description="Event not found")},
        security=[{'Bearer': []}],
        tags=['Payments']
    )
    def get(self, request, event_id):
        try:
            credits = CreditLedger.credits_for_event(event_id)
        except RaffleError as e:
            return error_response(e)

        return Response(
            {
                'count': len(credits),
                'credits': AdminCreditSerializer(credits, many=True).data,
            },
            status=status.HTTP_200_OK
        )
