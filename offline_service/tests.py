from datetime import timedelta
from unittest.mock import MagicMock, patch
from django.core.cache import cache
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from django_q.models import Schedule
from rest_framework import status
from rest_framework.test import APITestCase

from delivery_service.broadcasting import StatusBroadcaster
from delivery_service.models import DeliveryConfirmation
from delivery_service.services import DeliveryWorkflowService
from delivery_service.testing import (
    TemporaryMediaMixin, make_user, make_shipment, make_signature_payload, make_photo_payload,
)
from erp_service.rest import ERPConnectionError
from .connectivity import ConnectivityMonitor
from .models import OfflineQueueItem, QueueItemKind, QueueItemStatus
from .services import OfflineQueueService, CaptureNotReplayed
from .tasks import drain_device_queue, drain_offline_queues, purge_finished_queue_items, register_schedules


def offline_capture(recipient_name='Jane Doe', **overrides):
    capture = {
        'recipient_name': recipient_name,
        'gps_latitude': '6.5244',
        'gps_longitude': '3.3792',
        'signature': make_signature_payload(),
        'photos': [],
    }
    capture.update(overrides)
    return capture


class OfflineQueueServiceTest(TemporaryMediaMixin, TestCase):
    """
    Test cases for OfflineQueueService
    """

    def setUp(self):
        self.use_temporary_media()
        cache.clear()
        self.driver = make_user('driver1')
        self.shipment = make_shipment(42, driver=self.driver)
        self.workflow = DeliveryWorkflowService(broadcaster=StatusBroadcaster(), connectivity=ConnectivityMonitor())
        self.queue = OfflineQueueService('tablet-1', workflow=self.workflow)

    def enqueue_capture(self, **overrides):
        return self.queue.enqueue(
            QueueItemKind.DELIVERY_CONFIRMATION,
            {'shipment_id': 42, 'capture': offline_capture(**overrides)},
            user=self.driver,
        )

    def test_device_id_is_required(self):
        """Test that a queue belongs to a device"""
        with self.assertRaises(ValueError):
            OfflineQueueService('')

    def test_unknown_kind(self):
        """Test that only known item kinds can be queued"""
        with self.assertRaises(ValueError):
            self.queue.enqueue('invoice', {}, user=self.driver)

    def test_drain_replays_in_order(self):
        """Test that five queued captures become five deliveries, oldest first"""
        item_ids = [self.enqueue_capture(recipient_name=f"Recipient {n}") for n in range(5)]

        result = self.queue.drain()

        self.assertEqual(result, {'synced': 5, 'failed': 0, 'expired': 0})
        deliveries = list(DeliveryConfirmation.objects.order_by('pk'))
        self.assertEqual([d.recipient_name for d in deliveries], [f"Recipient {n}" for n in range(5)])
        self.assertTrue(all(d.device_id == 'tablet-1' for d in deliveries))
        for item_id, delivery in zip(item_ids, deliveries):
            item = OfflineQueueItem.objects.get(pk=item_id)
            self.assertEqual(item.status, QueueItemStatus.COMPLETED)
            self.assertEqual(item.delivery, delivery)
            self.assertIsNotNone(item.completed_at)

        self.assertEqual(self.queue.drain(), {'synced': 0, 'failed': 0, 'expired': 0})
        self.assertEqual(DeliveryConfirmation.objects.count(), 5)

    def test_rejected_capture_is_not_retried(self):
        """Test that a validation failure marks the item failed on its first attempt"""
        item_id = self.enqueue_capture(gps_latitude='95')

        result = self.queue.drain()

        self.assertEqual(result['failed'], 1)
        item = OfflineQueueItem.objects.get(pk=item_id)
        self.assertEqual(item.status, QueueItemStatus.FAILED)
        self.assertEqual(item.attempts, 1)
        self.assertTrue(item.last_error.startswith('INVALID_GPS_COORDINATES'))
        self.assertFalse(DeliveryConfirmation.objects.exists())

    def test_transient_error_is_retried(self):
        """Test that an unreachable ERP leaves the item pending until it runs out of attempts"""
        workflow = MagicMock()
        workflow.confirm_delivery.side_effect = ERPConnectionError('ERP unreachable')
        queue = OfflineQueueService('tablet-1', workflow=workflow)
        item_id = self.enqueue_capture()

        queue.drain()
        item = OfflineQueueItem.objects.get(pk=item_id)
        self.assertEqual(item.status, QueueItemStatus.PENDING)
        self.assertEqual(item.attempts, 1)
        self.assertEqual(item.last_error, 'ERP unreachable')

        queue.drain()
        queue.drain()
        item.refresh_from_db()
        self.assertEqual(item.status, QueueItemStatus.FAILED)
        self.assertEqual(item.attempts, 3)
        self.assertEqual(workflow.confirm_delivery.call_count, 3)

    def test_old_items_expire(self):
        """Test that captures older than the TTL are expired instead of replayed"""
        workflow = MagicMock()
        queue = OfflineQueueService('tablet-1', workflow=workflow)
        item_id = self.enqueue_capture()
        OfflineQueueItem.objects.filter(pk=item_id).update(created_at=timezone.now() - timedelta(hours=25))

        result = queue.drain()

        self.assertEqual(result['expired'], 1)
        item = OfflineQueueItem.objects.get(pk=item_id)
        self.assertEqual(item.status, QueueItemStatus.EXPIRED)
        self.assertIn('24 hours', item.last_error)
        workflow.confirm_delivery.assert_not_called()

    def test_stale_processing_item_is_reclaimed(self):
        """Test that an item abandoned in processing is replayed again"""
        item_id = self.enqueue_capture()
        OfflineQueueItem.objects.filter(pk=item_id).update(
            status=QueueItemStatus.PROCESSING, updated_at=timezone.now() - timedelta(minutes=11)
        )

        self.assertEqual(self.queue.drain()['synced'], 1)
        self.assertEqual(OfflineQueueItem.objects.get(pk=item_id).status, QueueItemStatus.COMPLETED)

    def test_interrupted_replay_is_not_duplicated(self):
        """Test that a capture confirmed before its worker died is completed, not confirmed twice"""
        item_id = self.enqueue_capture()
        self.assertEqual(self.queue.drain()['synced'], 1)
        delivery = DeliveryConfirmation.objects.get()
        self.assertEqual(delivery.metadata['offline_queue_item_id'], str(item_id))

        # The delivery committed but the item was never marked completed
        OfflineQueueItem.objects.filter(pk=item_id).update(
            status=QueueItemStatus.PROCESSING, delivery=None, completed_at=None,
            updated_at=timezone.now() - timedelta(minutes=11)
        )

        self.assertEqual(self.queue.drain()['synced'], 1)
        self.assertEqual(DeliveryConfirmation.objects.count(), 1)
        item = OfflineQueueItem.objects.get(pk=item_id)
        self.assertEqual(item.status, QueueItemStatus.COMPLETED)
        self.assertEqual(item.delivery, delivery)

    def test_recent_processing_item_is_left_alone(self):
        """Test that an item another drain is working on is not touched"""
        item_id = self.enqueue_capture()
        OfflineQueueItem.objects.filter(pk=item_id).update(status=QueueItemStatus.PROCESSING)

        self.assertEqual(self.queue.drain()['synced'], 0)
        self.assertEqual(OfflineQueueItem.objects.get(pk=item_id).status, QueueItemStatus.PROCESSING)

    def test_item_is_claimed_once(self):
        """Test that only one drain can claim an item"""
        item_id = self.enqueue_capture()
        self.assertTrue(self.queue._claim(item_id))
        self.assertFalse(OfflineQueueService('tablet-1')._claim(item_id))
        self.assertEqual(OfflineQueueItem.objects.get(pk=item_id).attempts, 1)

    def test_photos_follow_their_capture(self):
        """Test that queued photos wait for the capture they belong to"""
        capture_id = self.enqueue_capture()
        photo_id = self.queue.enqueue(
            QueueItemKind.PHOTO_UPLOAD,
            {'capture_item_id': str(capture_id), 'photos': [make_photo_payload()]},
            user=self.driver,
        )
        OfflineQueueItem.objects.filter(pk=photo_id).update(created_at=timezone.now() + timedelta(seconds=1))

        with self.assertRaises(CaptureNotReplayed):
            self.queue.replay(OfflineQueueItem.objects.get(pk=photo_id))

        self.assertEqual(self.queue.drain()['synced'], 2)
        delivery = OfflineQueueItem.objects.get(pk=capture_id).delivery
        self.assertEqual(OfflineQueueItem.objects.get(pk=photo_id).delivery, delivery)
        self.assertEqual(delivery.photos.count(), 1)

    def test_photos_of_a_failed_capture_fail(self):
        """Test that photos of a rejected capture are rejected too"""
        capture_id = self.enqueue_capture(gps_latitude='95')
        photo_id = self.queue.enqueue(
            QueueItemKind.PHOTO_UPLOAD,
            {'capture_item_id': str(capture_id), 'photos': [make_photo_payload()]},
            user=self.driver,
        )

        self.assertEqual(self.queue.drain()['failed'], 2)
        self.assertEqual(OfflineQueueItem.objects.get(pk=photo_id).status, QueueItemStatus.FAILED)

    def test_statistics_and_clear(self):
        """Test the per-status counts and clearing finished items"""
        self.enqueue_capture()
        self.enqueue_capture(gps_latitude='95')
        self.queue.drain()
        self.enqueue_capture()

        stats = self.queue.statistics()
        self.assertEqual(stats['counts'][QueueItemStatus.COMPLETED], 1)
        self.assertEqual(stats['counts'][QueueItemStatus.FAILED], 1)
        self.assertEqual(stats['counts'][QueueItemStatus.PENDING], 1)
        self.assertEqual(stats['total'], 3)
        self.assertTrue(stats['has_pending'])

        self.assertEqual(self.queue.clear(), 1)
        self.assertEqual(self.queue.clear([QueueItemStatus.FAILED]), 1)
        self.assertEqual(self.queue.statistics()['total'], 1)

    def test_queues_are_per_device(self):
        """Test that one device's drain leaves another device's queue alone"""
        self.enqueue_capture()
        other = OfflineQueueService('tablet-2', workflow=self.workflow)
        other.enqueue(QueueItemKind.DELIVERY_CONFIRMATION, {'shipment_id': 42, 'capture': offline_capture()}, user=self.driver)

        self.queue.drain()

        self.assertTrue(other.has_pending())
        self.assertFalse(self.queue.has_pending())


class ConnectivityMonitorTest(TestCase):
    """
    Test cases for ConnectivityMonitor
    """

    def setUp(self):
        cache.clear()
        self.driver = make_user('driver1')
        self.monitor = ConnectivityMonitor()

    def test_offline_and_back(self):
        """Test the offline flag and the last seen time"""
        self.monitor.mark_offline('tablet-1')
        self.assertTrue(self.monitor.is_offline('tablet-1'))
        self.assertFalse(self.monitor.is_offline('tablet-2'))

        self.assertFalse(self.monitor.mark_online('tablet-1'))
        self.assertFalse(self.monitor.is_offline('tablet-1'))
        self.assertIsNotNone(self.monitor.last_seen('tablet-1'))

    @patch('offline_service.connectivity.async_task')
    def test_reconnect_queues_a_drain(self, mock_async_task):
        """Test that coming back with pending captures queues a drain"""
        OfflineQueueService('tablet-1').enqueue(QueueItemKind.DELIVERY_CONFIRMATION, {'shipment_id': 42}, user=self.driver)
        self.monitor.mark_offline('tablet-1')

        self.assertTrue(self.monitor.mark_online('tablet-1'))
        mock_async_task.assert_called_once()
        self.assertEqual(mock_async_task.call_args[0], ('offline_service.tasks.drain_device_queue', 'tablet-1'))


class OfflineTasksTest(TestCase):
    """
    Test cases for the offline queue tasks
    """

    def setUp(self):
        self.driver = make_user('driver1')

    @patch('offline_service.tasks.OfflineQueueService')
    def test_drain_offline_queues(self, mock_service):
        """Test that every device with pending items is drained once"""
        mock_service.return_value.drain.return_value = {'synced': 1, 'failed': 0, 'expired': 0}
        for device_id in ('tablet-1', 'tablet-1', 'tablet-2'):
            OfflineQueueItem.objects.create(device_id=device_id, kind=QueueItemKind.DELIVERY_CONFIRMATION)
        OfflineQueueItem.objects.create(
            device_id='tablet-3', kind=QueueItemKind.DELIVERY_CONFIRMATION, status=QueueItemStatus.COMPLETED
        )

        results = drain_offline_queues()

        self.assertEqual(sorted(results), ['tablet-1', 'tablet-2'])
        self.assertEqual(mock_service.call_count, 2)

    @patch('offline_service.tasks.OfflineQueueService')
    def test_drain_device_queue(self, mock_service):
        """Test the task queued on reconnect"""
        mock_service.return_value.drain.return_value = {'synced': 0, 'failed': 0, 'expired': 0}
        self.assertEqual(drain_device_queue('tablet-1')['synced'], 0)
        mock_service.assert_called_once_with('tablet-1')

    def test_purge_finished_items(self):
        """Test that only old finished items are deleted"""
        old = timezone.now() - timedelta(days=31)
        kept_pending = OfflineQueueItem.objects.create(device_id='tablet-1', kind=QueueItemKind.PHOTO_UPLOAD)
        recent = OfflineQueueItem.objects.create(
            device_id='tablet-1', kind=QueueItemKind.PHOTO_UPLOAD, status=QueueItemStatus.COMPLETED
        )
        for item_status in OfflineQueueItem.FINISHED:
            OfflineQueueItem.objects.create(device_id='tablet-1', kind=QueueItemKind.PHOTO_UPLOAD, status=item_status)
        OfflineQueueItem.objects.exclude(pk__in=[kept_pending.pk, recent.pk]).update(updated_at=old)
        OfflineQueueItem.objects.filter(pk=kept_pending.pk).update(updated_at=old)

        self.assertEqual(purge_finished_queue_items(), 3)
        self.assertEqual(set(OfflineQueueItem.objects.values_list('pk', flat=True)), {kept_pending.pk, recent.pk})

    def test_register_schedules(self):
        """Test that the periodic jobs are created once"""
        register_schedules()
        register_schedules()
        self.assertEqual(Schedule.objects.filter(func__startswith='offline_service.tasks.').count(), 2)
        schedule = Schedule.objects.get(func='offline_service.tasks.drain_offline_queues')
        self.assertEqual(schedule.minutes, 5)


class OfflineQueueAPITest(TemporaryMediaMixin, APITestCase):
    """
    Test cases for the offline queue HTTP interface
    """

    def setUp(self):
        self.use_temporary_media()
        cache.clear()
        self.driver = make_user('driver1')
        self.other_driver = make_user('driver2')
        self.shipment = make_shipment(42, driver=self.driver)
        self.client.force_authenticate(user=self.driver)

    def enqueue(self, payload, kind=QueueItemKind.DELIVERY_CONFIRMATION):
        return self.client.post(
            reverse('offline-queue-items', args=['tablet-1']), {'kind': kind, 'payload': payload}, format='json'
        )

    def test_enqueue_and_list(self):
        """Test that a staged capture is listed for its author only"""
        response = self.enqueue({'shipment_id': 42, 'capture': offline_capture(connectivity='offline')})
        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        item = OfflineQueueItem.objects.get(pk=response.data['data']['queue_item_id'])
        self.assertNotIn('connectivity', item.payload['capture'])

        response = self.client.get(reverse('offline-queue-items', args=['tablet-1']), {'status': 'pending'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data']['count'], 1)

        self.client.force_authenticate(user=self.other_driver)
        response = self.client.get(reverse('offline-queue-items', args=['tablet-1']))
        self.assertEqual(response.data['data']['count'], 0)

    def test_enqueue_invalid_payload(self):
        """Test 422 for a payload that could never be replayed"""
        response = self.enqueue({'capture': offline_capture()})
        self.assertEqual(response.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)

        response = self.enqueue({'photos': [make_photo_payload()]}, kind=QueueItemKind.PHOTO_UPLOAD)
        self.assertEqual(response.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)

    def test_unknown_status_filter(self):
        """Test 400 for a status filter that does not exist"""
        response = self.client.get(reverse('offline-queue-items', args=['tablet-1']), {'status': 'lost'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_drain(self):
        """Test that draining through the API creates the delivery"""
        self.enqueue({'shipment_id': 42, 'capture': offline_capture()})

        response = self.client.post(reverse('offline-queue-drain', args=['tablet-1']))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data']['synced'], 1)
        self.assertEqual(DeliveryConfirmation.objects.get().recipient_name, 'Jane Doe')

    @patch('offline_service.connectivity.async_task')
    def test_connectivity_and_statistics(self, mock_async_task):
        """Test reporting offline, the statistics, then coming back online"""
        self.enqueue({'shipment_id': 42, 'capture': offline_capture()})

        response = self.client.post(reverse('device-connectivity', args=['tablet-1']), {'online': False}, format='json')
        self.assertFalse(response.data['data']['online'])

        response = self.client.get(reverse('offline-queue-statistics', args=['tablet-1']))
        self.assertTrue(response.data['data']['is_offline'])
        self.assertEqual(response.data['data']['counts']['pending'], 1)

        response = self.client.post(reverse('device-connectivity', args=['tablet-1']), {'online': True}, format='json')
        self.assertTrue(response.data['data']['drain_queued'])
        mock_async_task.assert_called_once()

    @patch('offline_service.connectivity.async_task')
    def test_another_drivers_device_is_refused(self, mock_async_task):
        """Test 403 for every device operation of a driver who is not using the device"""
        self.enqueue({'shipment_id': 42, 'capture': offline_capture()})
        self.client.force_authenticate(user=self.other_driver)

        responses = [
            self.client.post(reverse('device-connectivity', args=['tablet-1']), {'online': False}, format='json'),
            self.client.post(reverse('offline-queue-drain', args=['tablet-1'])),
            self.client.get(reverse('offline-queue-statistics', args=['tablet-1'])),
            self.enqueue({'shipment_id': 42, 'capture': offline_capture()}),
        ]

        self.assertEqual([response.status_code for response in responses], [status.HTTP_403_FORBIDDEN] * 4)
        self.assertFalse(ConnectivityMonitor().is_offline('tablet-1'))
        self.assertEqual(OfflineQueueItem.objects.get().status, QueueItemStatus.PENDING)
        self.assertEqual(OfflineQueueItem.objects.count(), 1)
        self.assertEqual(DeliveryConfirmation.objects.count(), 0)

    def test_device_of_the_last_delivery(self):
        """Test that a drained device still belongs to the driver of its last delivery"""
        self.enqueue({'shipment_id': 42, 'capture': offline_capture()})
        self.client.post(reverse('offline-queue-drain', args=['tablet-1']))

        self.client.force_authenticate(user=self.other_driver)
        response = self.client.get(reverse('offline-queue-statistics', args=['tablet-1']))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.driver)
        response = self.client.get(reverse('offline-queue-statistics', args=['tablet-1']))
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_unused_device_and_supervisor(self):
        """Test that a fresh device is open to any driver and every device to supervisors"""
        self.enqueue({'shipment_id': 42, 'capture': offline_capture()})

        self.client.force_authenticate(user=self.other_driver)
        response = self.client.post(reverse('device-connectivity', args=['tablet-2']), {'online': False}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)

        self.client.force_authenticate(user=make_user('boss', role='supervisor'))
        response = self.client.get(reverse('offline-queue-statistics', args=['tablet-1']))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data']['counts']['pending'], 1)
