"""
Error taxonomy for raffle and payment-credit operations.

Services raise these; views translate them into API responses using
``status_code`` and ``code``.
"""
from rest_framework import status
from rest_framework.response import Response


class RaffleError(Exception):
    """
    Base error with a machine readable code and a user-safe message
    """
    code = 'RAFFLE_ERROR'
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Raffle operation failed'

    def __init__(self, message=None, code=None):
        self.message = message or self.default_message
        if code:
            self.code = code
        super().__init__(self.message)

    def __str__(self):
        return self.message

    def as_dict(self):
        return {'error': self.message, 'code': self.code}


class NotFoundError(RaffleError):
    code = 'NOT_FOUND'
    status_code = status.HTTP_404_NOT_FOUND
    default_message = 'Resource not found'


class ValidationError(RaffleError):
    code = 'VALIDATION_ERROR'
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Invalid input'


class InvalidStateError(RaffleError):
    code = 'INVALID_STATE'
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Operation not permitted in the current state'


class ExpiredError(RaffleError):
    code = 'CREDIT_EXPIRED'
    status_code = status.HTTP_410_GONE
    default_message = 'Payment credit has expired'


class ConflictError(RaffleError):
    """
    Raised when a concurrent-safety rule rejects an operation.

    ``reason`` tells the caller whether retrying with another square can help
    (``square_taken``) or whether the credit itself is spent (``credit_used``).
    """
    CREDIT_USED = 'credit_used'
    SQUARE_TAKEN = 'square_taken'

    status_code = status.HTTP_409_CONFLICT
    default_message = 'Conflicting operation'

    def __init__(self, message=None, reason=None):
        self.reason = reason
        code = {
            self.CREDIT_USED: 'CREDIT_ALREADY_USED',
            self.SQUARE_TAKEN: 'SQUARE_NOT_AVAILABLE',
        }.get(reason, 'CONFLICT')
        super().__init__(message, code=code)

    @classmethod
    def credit_used(cls):
        return cls('credit already used', reason=cls.CREDIT_USED)

    @classmethod
    def square_taken(cls):
        return cls('square not available', reason=cls.SQUARE_TAKEN)


class AllocationTimeoutError(RaffleError):
    """
    Lock wait exceeded the configured bound; nothing was written and the
    request can be retried.
    """
    code = 'ALLOCATION_TIMEOUT'
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = 'Square selection is busy, please retry'


def error_response(exc, **extra):
    """
    API response for a raffle error, with optional extra payload such as the
    fresh state of a contested square
    """
    body = exc.as_dict()
    body.update(extra)
    return Response(body, status=exc.status_code)
