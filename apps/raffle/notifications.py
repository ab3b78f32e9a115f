import logging

from .broadcast import event_channel

logger = logging.getLogger(__name__)

SQUARE_SELECTED = 'squareSelected'


class SquareNotifier:
    """
    Fans out committed square selections to every observer of the event.

    Delivery is best effort: a failure here is logged and never reaches the
    caller, the allocation it reports on is already committed.
    """

    def __init__(self, broadcaster):
        self.broadcaster = broadcaster

    @staticmethod
    def square_selected_payload(purchase):
        square = purchase.square
        selected_at = square.selected_at or purchase.created_at
        return {
            'eventId': str(square.event_id),
            'squareId': str(square.id),
            'squareNumber': square.square_number,
            'ownerInitials': purchase.customer_initials,
            'selectedAt': selected_at.isoformat() if selected_at else None,
        }

    def square_selected(self, purchase):
        try:
            payload = self.square_selected_payload(purchase)
            return self.broadcaster.publish(
                event_channel(payload['eventId']),
                {'type': SQUARE_SELECTED, 'data': payload},
            )
        except Exception as e:
            logger.error(f"Failed to broadcast square selection {purchase.pk}: {str(e)}")
            return 0
