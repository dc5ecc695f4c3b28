"""
Unit tests for live status broadcasting
"""
import json
from unittest.mock import patch
from django.core.cache import cache
from django.core.exceptions import PermissionDenied
from django.test import TestCase, SimpleTestCase

from .broadcasting import (
    StatusBroadcaster, ChannelRegistry, Subscription, ChannelAccess, CacheRelay,
    parse_channel, resolve_channel_access, can_subscribe, format_sse, event_stream,
    shipment_channel, delivery_channel,
    DELIVERY_CONFIRMED, DELIVERY_STATUS_UPDATED, SIGNATURE_PROGRESS,
)
from .testing import make_user, make_shipment, make_delivery


class ChannelRegistryTest(SimpleTestCase):
    """Test fan-out through the registry"""

    def test_fan_out_reaches_channel_subscribers_only(self):
        """Test that an event only reaches subscribers of its channel"""
        registry = ChannelRegistry()
        listener = Subscription('shipment.42')
        bystander = Subscription('shipment.43')
        registry.register(listener)
        registry.register(bystander)

        delivered = registry.fan_out('shipment.42', {'event_type': DELIVERY_CONFIRMED})

        self.assertEqual(delivered, 1)
        self.assertEqual(len(listener.pending()), 1)
        self.assertEqual(bystander.pending(), [])

    def test_full_queue_drops_events(self):
        """Test at most once delivery: a full subscriber queue drops the event"""
        registry = ChannelRegistry()
        slow = Subscription('delivery.1', maxsize=2)
        registry.register(slow)

        results = [registry.fan_out('delivery.1', {'event_type': DELIVERY_STATUS_UPDATED, 'n': n}) for n in range(3)]

        self.assertEqual(results, [1, 1, 0])
        self.assertEqual(slow.dropped, 1)
        self.assertEqual([event['n'] for event in slow.pending()], [0, 1])

    def test_unregister_removes_empty_channels(self):
        """Test that the last unsubscribe removes the channel"""
        registry = ChannelRegistry()
        subscription = Subscription('delivery.1')
        registry.register(subscription)
        self.assertEqual(registry.subscriber_count(), 1)

        registry.unregister(subscription)
        registry.unregister(subscription)

        self.assertEqual(registry.subscriber_count('delivery.1'), 0)
        self.assertEqual(registry.subscriber_count(), 0)


class ChannelAuthorizationTest(SimpleTestCase):
    """Test the pure authorization rule"""

    def setUp(self):
        self.access = ChannelAccess(channel='shipment.42', exists=True, driver_id=1, owner_ids=frozenset([2]))

    def user(self, pk, supervisor=False, authenticated=True):
        return type('User', (), {'id': pk, 'pk': pk, 'is_supervisor': supervisor, 'is_authenticated': authenticated})()

    def test_assigned_driver_and_owner_may_subscribe(self):
        """Test the assigned driver and the delivery owner"""
        self.assertTrue(can_subscribe(self.user(1), self.access))
        self.assertTrue(can_subscribe(self.user(2), self.access))

    def test_supervisor_may_subscribe(self):
        """Test that supervisors may listen to any existing channel"""
        self.assertTrue(can_subscribe(self.user(99, supervisor=True), self.access))

    def test_others_are_denied(self):
        """Test other drivers, anonymous users and unknown channels"""
        self.assertFalse(can_subscribe(self.user(3), self.access))
        self.assertFalse(can_subscribe(self.user(1, authenticated=False), self.access))
        self.assertFalse(can_subscribe(self.user(99, supervisor=True), None))
        self.assertFalse(can_subscribe(self.user(1), ChannelAccess(channel='shipment.7', exists=False)))

    def test_parse_channel(self):
        """Test channel name parsing"""
        self.assertEqual(parse_channel('shipment.42'), ('shipment', 42))
        self.assertEqual(parse_channel('delivery.7'), ('delivery', 7))
        self.assertIsNone(parse_channel('invoices.1'))
        self.assertIsNone(parse_channel('shipment.abc'))
        self.assertIsNone(parse_channel(None))


class StatusBroadcasterTest(TestCase):
    """
    Test cases for StatusBroadcaster
    """

    def setUp(self):
        self.driver = make_user('driver1')
        self.other_driver = make_user('driver2')
        self.supervisor = make_user('boss', role='supervisor')
        self.shipment = make_shipment(42, driver=self.driver)
        self.delivery = make_delivery(self.shipment, self.driver)
        self.broadcaster = StatusBroadcaster()

    def test_resolve_channel_access(self):
        """Test the facts loaded for shipment and delivery channels"""
        access = resolve_channel_access(shipment_channel(42))
        self.assertTrue(access.exists)
        self.assertEqual(access.driver_id, self.driver.pk)
        self.assertIn(self.driver.pk, access.owner_ids)

        self.assertTrue(resolve_channel_access(delivery_channel(self.delivery.pk)).exists)
        self.assertFalse(resolve_channel_access('shipment.999').exists)
        self.assertIsNone(resolve_channel_access('orders.1'))

    def test_subscribe_and_receive(self):
        """Test that the assigned driver receives events of the delivery"""
        subscription = self.broadcaster.subscribe(self.driver, delivery_channel(self.delivery.pk))

        events = self.broadcaster.publish_delivery_event(self.delivery, DELIVERY_CONFIRMED)

        self.assertEqual(len(events), 2)
        received = subscription.pending()
        self.assertEqual(len(received), 1)
        event = received[0]
        self.assertEqual(event['event_type'], DELIVERY_CONFIRMED)
        self.assertEqual(event['delivery_id'], self.delivery.pk)
        self.assertEqual(event['shipment_id'], 42)
        self.assertEqual(event['channel'], delivery_channel(self.delivery.pk))
        self.assertIn('timestamp', event)

    def test_unauthorized_subscription_is_refused(self):
        """Test that another driver cannot listen to the shipment"""
        with self.assertRaises(PermissionDenied):
            self.broadcaster.subscribe(self.other_driver, shipment_channel(42))
        with self.assertRaises(PermissionDenied):
            self.broadcaster.subscribe(self.supervisor, 'shipment.999')

    def test_supervisor_subscription(self):
        """Test that supervisors can listen to any shipment"""
        subscription = self.broadcaster.subscribe(self.supervisor, shipment_channel(42))
        self.broadcaster.publish(shipment_channel(42), SIGNATURE_PROGRESS, {'shipment_id': 42, 'stroke_count': 2})
        self.assertEqual(subscription.pending()[0]['stroke_count'], 2)

    def test_unknown_event_type(self):
        """Test that only the known event types can be published"""
        with self.assertRaises(ValueError):
            self.broadcaster.publish(shipment_channel(42), 'delivery.deleted', {})

    def test_event_stream(self):
        """Test the SSE framing and that closing the stream unsubscribes"""
        subscription = self.broadcaster.subscribe(self.driver, shipment_channel(42))
        stream = event_stream(self.broadcaster, subscription, keepalive=0.01)

        self.assertEqual(next(stream), ": connected\n\n")
        self.assertEqual(next(stream), ": keep-alive\n\n")

        self.broadcaster.publish_delivery_event(self.delivery, DELIVERY_CONFIRMED)
        chunk = next(stream)
        self.assertTrue(chunk.startswith(f"event: {DELIVERY_CONFIRMED}\ndata: "))
        self.assertEqual(json.loads(chunk.split('data: ', 1)[1])['delivery_id'], self.delivery.pk)

        stream.close()
        self.assertEqual(self.broadcaster.registry.subscriber_count(shipment_channel(42)), 0)

    def test_format_sse(self):
        """Test that an event is one SSE message"""
        message = format_sse({'event_type': DELIVERY_CONFIRMED, 'delivery_id': 1})
        self.assertTrue(message.endswith('\n\n'))
        self.assertIn('event: delivery.confirmed', message)


class CacheRelayTest(TestCase):
    """Test the cache relay used across processes"""

    def setUp(self):
        cache.clear()

    def test_events_pass_through_the_cache(self):
        """Test that a relayed event reaches the registry of another broadcaster"""
        relay = CacheRelay()
        publisher = StatusBroadcaster(relay=relay)
        listener_registry = ChannelRegistry()
        subscription = Subscription('delivery.5')
        listener_registry.register(subscription)

        publisher.publish('delivery.5', DELIVERY_STATUS_UPDATED, {'delivery_id': 5, 'shipment_id': 42})
        publisher.publish('delivery.6', DELIVERY_STATUS_UPDATED, {'delivery_id': 6, 'shipment_id': 42})
        last_seen = relay.pull(listener_registry, 0)

        self.assertEqual(last_seen, 2)
        self.assertEqual([event['delivery_id'] for event in subscription.pending()], [5])
        self.assertEqual(relay.pull(listener_registry, last_seen), last_seen)

    def test_unreachable_cache_does_not_fail_publish(self):
        """Test that an event is dropped, not raised, when the cache cannot be written"""
        relay = CacheRelay()
        publisher = StatusBroadcaster(relay=relay)

        with patch('delivery_service.broadcasting.cache') as mock_cache:
            mock_cache.incr.side_effect = ConnectionError('redis down')
            event = publisher.publish('delivery.5', DELIVERY_STATUS_UPDATED, {'delivery_id': 5, 'shipment_id': 42})

        self.assertEqual(event['event_type'], DELIVERY_STATUS_UPDATED)
        self.assertEqual(event['channel'], 'delivery.5')
        mock_cache.incr.assert_called_once_with(CacheRelay.SEQUENCE_KEY)
