"""
Server-Sent Events encoding and the per-connection message loop
"""
import json
import logging
import queue
import time

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder

logger = logging.getLogger(__name__)

KEEP_ALIVE = ': keep-alive\n\n'


def format_sse(event, data, retry_ms=None):
    lines = []
    if retry_ms is not None:
        lines.append(f"retry: {int(retry_ms)}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data, cls=DjangoJSONEncoder)}")
    return '\n'.join(lines) + '\n\n'


def sse_messages(broadcaster, channel, heartbeat_seconds=None, max_seconds=None, clock=time.monotonic):
    """
    Yield SSE frames for one connected client until ``max_seconds`` elapse.

    The subscription is made on first iteration and released when the
    generator is closed, so abandoned responses do not leak queues. Clients
    reconnect after the stream ends and re-read squares to catch up.
    """
    heartbeat_seconds = heartbeat_seconds or settings.RAFFLE_SSE_HEARTBEAT_SECONDS
    max_seconds = max_seconds or settings.RAFFLE_SSE_MAX_SECONDS

    subscriber = broadcaster.subscribe(channel)
    deadline = clock() + max_seconds
    try:
        yield format_sse(
            'connected',
            {'channel': channel, 'pollIntervalSeconds': settings.RAFFLE_POLL_INTERVAL_SECONDS},
            retry_ms=settings.RAFFLE_SSE_RETRY_MS,
        )
        while True:
            remaining = deadline - clock()
            if remaining <= 0:
                return
            try:
                message = subscriber.get(timeout=min(heartbeat_seconds, remaining))
            except queue.Empty:
                yield KEEP_ALIVE
                continue
            yield format_sse(message['type'], message['data'])
    finally:
        broadcaster.unsubscribe(channel, subscriber)
        logger.debug(f"SSE client left {channel}")
