"""
Realtime inventory broadcast.

Stock and order services publish state-change events to a channel per store
so POS terminals and public shop sessions can refresh without polling.
Delivery is fire-and-forget: a failed publish is logged and never fails the
operation that triggered it.

Broadcasters are injected into the services that use them; ``get_broadcaster``
only supplies the configured default.
"""
import json
import logging
import queue
import threading
from typing import Dict, List, Optional

import redis
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)

INVENTORY_CHANGED = 'inventory-changed'
ORDER_CREATED = 'order-created'
ORDER_UPDATED = 'order-updated'
PRODUCT_DELETED = 'product-deleted'


def store_channel(store_id) -> str:
    return f"store-{store_id}"


def make_event(event_type: str, **payload) -> Dict:
    """Build an event dict stamped with the current time."""
    event = {'type': event_type}
    event.update(payload)
    event['timestamp'] = timezone.now().isoformat()
    return event


class Subscription:
    """A live subscription to one channel."""

    def get(self, timeout: float) -> Optional[Dict]:
        """Wait up to ``timeout`` seconds for the next event; None on timeout."""
        raise NotImplementedError

    def close(self) -> None:
        pass


class Broadcaster:
    """Publish/subscribe interface used by the stock ledger and order services."""

    def publish(self, channel: str, event: Dict) -> None:
        raise NotImplementedError

    def subscribe(self, channel: str) -> Subscription:
        raise NotImplementedError


class NullBroadcaster(Broadcaster):
    """Discards every event."""

    def publish(self, channel, event):
        pass

    def subscribe(self, channel):
        return _QueueSubscription(queue.Queue(), lambda: None)


class _QueueSubscription(Subscription):
    def __init__(self, events: queue.Queue, on_close):
        self._events = events
        self._on_close = on_close

    def get(self, timeout):
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self):
        self._on_close()


class InMemoryBroadcaster(Broadcaster):
    """
    Process-local broadcaster.

    Keeps every published ``(channel, event)`` pair in ``published`` so tests
    can assert on the broadcast contract.
    """

    def __init__(self):
        self.published: List[tuple] = []
        self._subscribers: Dict[str, List[queue.Queue]] = {}
        self._lock = threading.Lock()

    def publish(self, channel, event):
        with self._lock:
            self.published.append((channel, event))
            listeners = list(self._subscribers.get(channel, []))
        for listener in listeners:
            listener.put(event)

    def subscribe(self, channel):
        events = queue.Queue()
        with self._lock:
            self._subscribers.setdefault(channel, []).append(events)

        def _remove():
            with self._lock:
                listeners = self._subscribers.get(channel, [])
                if events in listeners:
                    listeners.remove(events)

        return _QueueSubscription(events, _remove)

    def events(self, channel: Optional[str] = None, event_type: Optional[str] = None) -> List[Dict]:
        return [
            event for ch, event in self.published
            if (channel is None or ch == channel)
            and (event_type is None or event.get('type') == event_type)
        ]

    def clear(self):
        with self._lock:
            self.published.clear()


class _RedisSubscription(Subscription):
    def __init__(self, pubsub):
        self._pubsub = pubsub

    def get(self, timeout):
        message = self._pubsub.get_message(timeout=timeout)
        if not message or message.get('type') != 'message':
            return None
        try:
            return json.loads(message['data'])
        except (TypeError, ValueError):
            logger.warning(f"Dropping malformed broadcast payload: {message['data']!r}")
            return None

    def close(self):
        self._pubsub.close()


class RedisBroadcaster(Broadcaster):
    """Redis pub/sub broadcaster shared by every worker process."""

    def __init__(self, url: Optional[str] = None, client=None):
        self.client = client or redis.Redis.from_url(
            url or settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5
        )

    def publish(self, channel, event):
        self.client.publish(channel, json.dumps(event, cls=DjangoJSONEncoder))

    def subscribe(self, channel):
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(channel)
        return _RedisSubscription(pubsub)


_default_broadcaster: Optional[Broadcaster] = None
_default_lock = threading.Lock()


def get_broadcaster() -> Broadcaster:
    """Return the process-wide broadcaster named by ``INVENTORY_BROADCASTER``."""
    global _default_broadcaster
    if _default_broadcaster is None:
        with _default_lock:
            if _default_broadcaster is None:
                path = getattr(settings, 'INVENTORY_BROADCASTER', 'core.realtime.RedisBroadcaster')
                _default_broadcaster = import_string(path)()
                logger.info(f"Realtime broadcaster: {path}")
    return _default_broadcaster


def reset_broadcaster() -> None:
    """Drop the cached default so the next call re-reads settings."""
    global _default_broadcaster
    with _default_lock:
        _default_broadcaster = None


def safe_publish(broadcaster: Broadcaster, channel: str, event: Dict) -> None:
    """Publish, logging instead of raising on delivery failure."""
    try:
        broadcaster.publish(channel, event)
    except Exception as e:
        logger.error(f"Broadcast of {event.get('type')} to {channel} failed: {e}")
