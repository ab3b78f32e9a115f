import logging

from django.db import DatabaseError, connection
from django.utils import timezone
from drf_yasg.utils import swagger_auto_schema
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

logger = logging.getLogger(__name__)


class HealthView(APIView):
    """
    Liveness probe for the deployment: reports whether the database answers
    """
    permission_classes = [AllowAny]
    authentication_classes = []
    throttle_classes = []

    @swagger_auto_schema(
        operation_description="Service health. 503 when the database cannot be reached.",
        tags=['Health']
    )
    def get(self, request):
        try:
            with connection.cursor() as cursor:
                cursor.execute("SELECT 1")
            database = 'ok'
        except DatabaseError as e:
            logger.error(f"Health check database failure: {str(e)}")
            database = 'unavailable'

        healthy = database == 'ok'
        return Response(
            {
                'status': 'healthy' if healthy else 'unhealthy',
                'database': database,
                'timestamp': timezone.now().isoformat(),
                'service': 'raffle-service',
            },
            status=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        )
