"""
Live delivery status broadcasting.

Subscribers register on a channel (``shipment.<id>`` or ``delivery.<id>``) and
receive lifecycle events through a bounded in-memory queue. Delivery is best
effort and at most once: a subscriber whose queue is full misses the event.
The database stays the source of truth and clients can always re-read it.

Within one process the ChannelRegistry fans events out directly. When
BROADCAST_RELAY is on, events are written to the shared Django cache instead
and a relay thread in every process feeds its local registry, so events
published by the background worker reach subscribers held by web processes.
"""
import re
import json
import queue
import logging
import threading
from dataclasses import dataclass, field
from django.conf import settings
from django.core.cache import cache
from django.core.exceptions import PermissionDenied
from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone

logger = logging.getLogger(__name__)

DELIVERY_CONFIRMED = 'delivery.confirmed'
DELIVERY_STATUS_UPDATED = 'delivery.statusUpdated'
SIGNATURE_PROGRESS = 'signature.progress'
DELIVERY_LOCATION_UPDATED = 'delivery.locationUpdated'

EVENT_TYPES = frozenset([
    DELIVERY_CONFIRMED,
    DELIVERY_STATUS_UPDATED,
    SIGNATURE_PROGRESS,
    DELIVERY_LOCATION_UPDATED,
])

CHANNEL_PATTERN = re.compile(r'^(shipment|delivery)\.(\d+)$')


def shipment_channel(shipment_id):
    return f"shipment.{shipment_id}"


def delivery_channel(delivery_id):
    return f"delivery.{delivery_id}"


class Subscription:
    """A subscriber handle: one bounded queue of events for one channel"""

    def __init__(self, channel, user_id=None, maxsize=None):
        self.channel = channel
        self.user_id = user_id
        self.queue = queue.Queue(maxsize=maxsize or settings.BROADCAST_SUBSCRIBER_QUEUE_SIZE)
        self.dropped = 0

    def deliver(self, event):
        try:
            self.queue.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Dropped {event.get('event_type')} for a slow subscriber on {self.channel}")
            return False

    def get(self, timeout=None):
        """Next event; raises queue.Empty when none arrives within timeout"""
        return self.queue.get(timeout=timeout)

    def pending(self):
        """Every event received so far, without blocking"""
        events = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events


class ChannelRegistry:
    """channel -> set of Subscription"""

    def __init__(self):
        self._channels = {}
        self._lock = threading.Lock()

    def register(self, subscription):
        with self._lock:
            self._channels.setdefault(subscription.channel, set()).add(subscription)

    def unregister(self, subscription):
        with self._lock:
            subscribers = self._channels.get(subscription.channel)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._channels[subscription.channel]

    def subscribers(self, channel):
        with self._lock:
            return set(self._channels.get(channel, ()))

    def subscriber_count(self, channel=None):
        with self._lock:
            if channel is not None:
                return len(self._channels.get(channel, ()))
            return sum(len(subscribers) for subscribers in self._channels.values())

    def fan_out(self, channel, event):
        return sum(1 for subscription in self.subscribers(channel) if subscription.deliver(event))


@dataclass(frozen=True)
class ChannelAccess:
    """Who may listen on a channel"""
    channel: str
    exists: bool
    driver_id: int = None
    owner_ids: frozenset = field(default_factory=frozenset)


def parse_channel(channel):
    match = CHANNEL_PATTERN.match(channel or '')
    if not match:
        return None
    return match.group(1), int(match.group(2))


def resolve_channel_access(channel):
    """
    Load the facts needed to authorize a subscription. Returns None for
    channel names that are not delivery channels.
    """
    from erp_service.models import Shipment
    from .models import DeliveryConfirmation

    parsed = parse_channel(channel)
    if parsed is None:
        return None
    kind, object_id = parsed

    if kind == 'shipment':
        shipment = Shipment.objects.filter(id=object_id).first()
        if shipment is None:
            return ChannelAccess(channel=channel, exists=False)
        owners = DeliveryConfirmation.objects.filter(shipment_id=object_id).exclude(
            delivered_by__isnull=True
        ).values_list('delivered_by_id', flat=True)
        return ChannelAccess(channel=channel, exists=True, driver_id=shipment.assigned_driver_id,
                             owner_ids=frozenset(owners))

    delivery = DeliveryConfirmation.objects.select_related('shipment').filter(id=object_id).first()
    if delivery is None:
        return ChannelAccess(channel=channel, exists=False)
    owners = frozenset([delivery.delivered_by_id]) if delivery.delivered_by_id else frozenset()
    return ChannelAccess(channel=channel, exists=True, driver_id=delivery.shipment.assigned_driver_id,
                         owner_ids=owners)


def can_subscribe(user, access):
    """
    Only the assigned driver, the delivery's owner and supervisors may listen.
    """
    if access is None or not access.exists:
        return False
    if user is None or not getattr(user, 'is_authenticated', False):
        return False
    if getattr(user, 'is_supervisor', False):
        return True
    return user.id == access.driver_id or user.id in access.owner_ids


class CacheRelay:
    """
    Moves events between processes through the Django cache, which must then be
    a shared backend such as Redis.
    """
    SEQUENCE_KEY = 'broadcast:sequence'
    EVENT_KEY = 'broadcast:event:{}'
    EVENT_TTL = 60

    def __init__(self, poll_interval=0.5):
        self.poll_interval = poll_interval
        self._thread = None
        self._stop = threading.Event()
        self._lock = threading.Lock()

    def push(self, event):
        cache.add(self.SEQUENCE_KEY, 0, timeout=None)
        sequence = cache.incr(self.SEQUENCE_KEY)
        cache.set(self.EVENT_KEY.format(sequence), event, timeout=self.EVENT_TTL)

    def pull(self, registry, last_seen):
        current = cache.get(self.SEQUENCE_KEY) or 0
        if current <= last_seen:
            return last_seen
        keys = [self.EVENT_KEY.format(sequence) for sequence in range(last_seen + 1, current + 1)]
        events = cache.get_many(keys)
        for key in keys:
            event = events.get(key)
            if event is not None:
                registry.fan_out(event['channel'], event)
        return current

    def ensure_listening(self, registry):
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._listen, args=(registry,), name='broadcast-relay', daemon=True)
            self._thread.start()

    def stop(self):
        self._stop.set()

    def _listen(self, registry):
        last_seen = cache.get(self.SEQUENCE_KEY) or 0
        while not self._stop.is_set():
            try:
                last_seen = self.pull(registry, last_seen)
            except Exception as e:
                # Events published while the cache is unreachable are lost
                logger.error(f"Broadcast relay failed to read the cache: {e}")
            self._stop.wait(self.poll_interval)


class StatusBroadcaster:

    def __init__(self, registry=None, relay=None):
        self.registry = registry or ChannelRegistry()
        self.relay = relay

    def publish(self, channel, event_type, payload):
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type '{event_type}'")

        event = {
            'delivery_id': payload.get('delivery_id'),
            'shipment_id': payload.get('shipment_id'),
            **payload,
            'channel': channel,
            'event_type': event_type,
            'timestamp': timezone.now().isoformat(),
        }
        if self.relay is not None:
            try:
                self.relay.push(event)
            except Exception as e:
                # Subscribers miss this event; they re-read the delivery when they reconnect
                logger.error(f"Could not relay {event_type} on {channel}: {e}")
        else:
            delivered = self.registry.fan_out(channel, event)
            logger.debug(f"Published {event_type} on {channel} to {delivered} subscriber(s)")
        return event

    def publish_delivery_event(self, delivery, event_type, extra=None):
        """
        Publish an event about a delivery on both its shipment and delivery channels.
        """
        payload = {
            'delivery_id': delivery.pk,
            'shipment_id': delivery.shipment_id,
            'status': delivery.status,
            'sync_state': delivery.sync_state,
            'recipient_name': delivery.recipient_name,
            'delivered_at': delivery.delivered_at.isoformat() if delivery.delivered_at else None,
            'verification_hash': delivery.verification_hash,
            **(extra or {}),
        }
        return [
            self.publish(shipment_channel(delivery.shipment_id), event_type, payload),
            self.publish(delivery_channel(delivery.pk), event_type, payload),
        ]

    def subscribe(self, user, channel):
        access = resolve_channel_access(channel)
        if not can_subscribe(user, access):
            logger.warning(f"Refused subscription of user {getattr(user, 'pk', None)} to {channel}")
            raise PermissionDenied(f"Not allowed to subscribe to {channel}")

        subscription = Subscription(channel, user_id=user.pk)
        self.registry.register(subscription)
        if self.relay is not None:
            self.relay.ensure_listening(self.registry)
        logger.info(f"User {user.pk} subscribed to {channel}")
        return subscription

    def unsubscribe(self, subscription):
        self.registry.unregister(subscription)


def format_sse(event):
    return f"event: {event['event_type']}\ndata: {json.dumps(event, cls=DjangoJSONEncoder)}\n\n"


def event_stream(broadcaster, subscription, keepalive=None):
    """
    Server-Sent Events for one subscription. The subscription is released
    when the client disconnects and the generator is closed.
    """
    keepalive = keepalive or settings.BROADCAST_KEEPALIVE_SECONDS
    try:
        yield ": connected\n\n"
        while True:
            try:
                event = subscription.get(timeout=keepalive)
            except queue.Empty:
                yield ": keep-alive\n\n"
                continue
            yield format_sse(event)
    finally:
        broadcaster.unsubscribe(subscription)


_broadcaster = None
_broadcaster_lock = threading.Lock()


def get_broadcaster():
    """The broadcaster of this process"""
    global _broadcaster
    with _broadcaster_lock:
        if _broadcaster is None:
            _broadcaster = StatusBroadcaster(relay=CacheRelay() if settings.BROADCAST_RELAY else None)
        return _broadcaster
