"""
In-process publish/subscribe transport for real-time square updates.

One broadcaster is created when the raffle app starts and is handed to the
notifier and the SSE stream view. Each subscriber owns a bounded queue; when a
slow subscriber's queue is full the message is dropped for that subscriber.
Nothing is persisted or replayed, clients reconcile by re-reading squares.
"""
import logging
import queue
import threading

logger = logging.getLogger(__name__)


def event_channel(event_id):
    return f"event:{event_id}"


class InMemoryBroadcaster:
    """
    Channel -> list of subscriber queues.
    Thread-safe; publish never blocks.
    """

    def __init__(self, max_queue_size=10):
        self.max_queue_size = max_queue_size
        self._lock = threading.Lock()
        self._subscribers = {}

    def subscribe(self, channel):
        subscriber = queue.Queue(maxsize=self.max_queue_size)
        with self._lock:
            self._subscribers.setdefault(channel, []).append(subscriber)
            total = len(self._subscribers[channel])
        logger.debug(f"Subscribed to {channel} (total subscribers: {total})")
        return subscriber

    def unsubscribe(self, channel, subscriber):
        """
        Remove a subscriber queue; unknown channels or queues are ignored
        """
        with self._lock:
            subscribers = self._subscribers.get(channel)
            if not subscribers:
                return
            try:
                subscribers.remove(subscriber)
            except ValueError:
                return
            if not subscribers:
                del self._subscribers[channel]
        logger.debug(f"Unsubscribed from {channel}")

    def publish(self, channel, message):
        """
        Deliver ``message`` to every current subscriber of ``channel``.
        Returns the number of subscribers that received it.
        """
        with self._lock:
            subscribers = list(self._subscribers.get(channel, ()))

        delivered = 0
        dropped = 0
        for subscriber in subscribers:
            try:
                subscriber.put_nowait(message)
                delivered += 1
            except queue.Full:
                dropped += 1

        if dropped:
            logger.warning(f"Dropped message on {channel} for {dropped} slow subscriber(s)")
        logger.info(f"Broadcast on {channel}: delivered={delivered}, dropped={dropped}")
        return delivered

    def subscriber_count(self, channel):
        with self._lock:
            return len(self._subscribers.get(channel, ()))
