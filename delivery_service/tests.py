import os
from decimal import Decimal
from unittest.mock import patch
from django.core.cache import cache
from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from erp_service.models import ShipmentStatus
from erp_service.rest import ERPConnectionError
from erp_service.services import ShipmentProvider
from offline_service.connectivity import ConnectivityMonitor
from offline_service.models import OfflineQueueItem, QueueItemKind
from .broadcasting import (
    StatusBroadcaster, Subscription, shipment_channel, delivery_channel,
    DELIVERY_CONFIRMED, DELIVERY_STATUS_UPDATED, SIGNATURE_PROGRESS, DELIVERY_LOCATION_UPDATED,
)
from .exceptions import (
    DeliveryValidationError, InvalidGpsCoordinates, InvalidSignature, InvalidPhoto,
    PhotoProcessingFailed, ShipmentNotDeliverable, DeliveryAccessDenied, SyncNotRetryable,
)
from .models import DeliveryConfirmation, DeliverySignature, DeliveryPhoto, DeliveryStatus, SyncState
from .photos import PhotoService
from .services import DeliveryWorkflowService, SYNC_TASK, CAPTURE_QUEUED, CAPTURE_CONFIRMED
from .sync import ERPSyncService
from .testing import (
    FakeERPClient, TemporaryMediaMixin, make_user, make_shipment, make_delivery,
    make_signature_payload, make_photo_payload,
)


def make_capture(**overrides):
    capture = {
        'recipient_name': 'Jane Doe',
        'delivery_notes': 'Left with reception',
        'gps_latitude': '6.5244',
        'gps_longitude': '3.3792',
        'gps_accuracy': '4.5',
        'signature': make_signature_payload(),
        'photos': [make_photo_payload()],
    }
    capture.update(overrides)
    return capture


def stored_files(root):
    return [os.path.join(path, name) for path, _, names in os.walk(root) for name in names]


class DeliveryWorkflowServiceTest(TemporaryMediaMixin, TestCase):
    """
    Test cases for DeliveryWorkflowService
    """

    def setUp(self):
        """Set up users, shipment 42 and a workflow with its own broadcaster"""
        self.use_temporary_media()
        cache.clear()
        self.driver = make_user('driver1')
        self.other_driver = make_user('driver2')
        self.supervisor = make_user('boss', role='supervisor')
        self.shipment = make_shipment(42, driver=self.driver)
        self.erp = FakeERPClient()
        self.broadcaster = StatusBroadcaster()
        self.workflow = DeliveryWorkflowService(
            shipment_provider=ShipmentProvider(client=self.erp),
            broadcaster=self.broadcaster,
            connectivity=ConnectivityMonitor(),
        )

    def listen(self, channel):
        subscription = Subscription(channel)
        self.broadcaster.registry.register(subscription)
        return subscription

    @patch('delivery_service.services.async_task')
    def test_confirm_delivery(self, mock_async_task):
        """Test that a full capture is stored, sealed and handed to the ERP worker"""
        with self.captureOnCommitCallbacks(execute=True):
            delivery = self.workflow.confirm_delivery(42, make_capture(), self.driver, device_id='tablet-1')

        self.assertEqual(delivery.sync_state, SyncState.PENDING)
        self.assertEqual(delivery.status, DeliveryStatus.DELIVERED)
        self.assertEqual(delivery.recipient_name, 'Jane Doe')
        self.assertEqual(delivery.gps_latitude, Decimal('6.52440000'))
        self.assertEqual(delivery.delivered_by, self.driver)
        self.assertEqual(delivery.device_id, 'tablet-1')
        self.assertEqual(len(delivery.verification_hash), 64)

        signature = delivery.get_signature()
        self.assertEqual(signature.quality_score, 1.0)
        self.assertTrue(signature.is_legally_valid())
        self.assertEqual(signature.stroke_count, 4)

        photos = list(delivery.photos.all())
        self.assertEqual(len(photos), 1)
        self.assertTrue(os.path.exists(photos[0].absolute_path))
        self.assertTrue(os.path.exists(photos[0].absolute_thumbnail_path))
        self.assertTrue(photos[0].path.startswith(f"delivery_photos/{delivery.pk}/"))

        mock_async_task.assert_called_once()
        self.assertEqual(mock_async_task.call_args[0], (SYNC_TASK, delivery.pk))
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.QUEUED)

    @patch('delivery_service.services.async_task')
    def test_confirmation_is_announced_before_sync(self, mock_async_task):
        """Test the event order: confirmed, signature, location, then the hand-off"""
        subscription = self.listen(shipment_channel(42))
        seen_at_dispatch = []
        mock_async_task.side_effect = lambda *args, **kwargs: seen_at_dispatch.append(subscription.queue.qsize())

        with self.captureOnCommitCallbacks(execute=True):
            self.workflow.confirm_delivery(42, make_capture(), self.driver)

        events = [event['event_type'] for event in subscription.pending()]
        self.assertEqual(events, [DELIVERY_CONFIRMED, SIGNATURE_PROGRESS, DELIVERY_LOCATION_UPDATED])
        self.assertEqual(seen_at_dispatch, [3])

    @patch('delivery_service.services.async_task')
    def test_nothing_is_announced_before_commit(self, mock_async_task):
        """Test that a rolled back capture never reaches subscribers or the worker"""
        subscription = self.listen(shipment_channel(42))
        with self.captureOnCommitCallbacks(execute=False) as callbacks:
            self.workflow.confirm_delivery(42, make_capture(), self.driver)

        self.assertEqual(len(callbacks), 1)
        self.assertEqual(subscription.pending(), [])
        mock_async_task.assert_not_called()

    @patch('delivery_service.services.async_task')
    def test_broadcast_failure_still_hands_off(self, mock_async_task):
        """Test that a committed delivery reaches the ERP worker when it cannot be announced"""
        with patch.object(self.broadcaster, 'publish', side_effect=ConnectionError('redis down')):
            with self.captureOnCommitCallbacks(execute=True):
                delivery = self.workflow.confirm_delivery(42, make_capture(), self.driver)

        self.assertEqual(DeliveryConfirmation.objects.count(), 1)
        mock_async_task.assert_called_once()
        self.assertEqual(mock_async_task.call_args[0], (SYNC_TASK, delivery.pk))
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.QUEUED)

    def test_status_defaults_and_explicit_status(self):
        """Test that the status defaults to delivered and can be given"""
        delivery = self.workflow.confirm_delivery(42, make_capture(status='confirmed', photos=[]), self.driver)
        self.assertEqual(delivery.status, DeliveryStatus.CONFIRMED)

        with self.assertRaises(DeliveryValidationError) as context:
            self.workflow.confirm_delivery(42, make_capture(status='lost'), self.driver)
        self.assertIn('status', context.exception.field_errors)

    def test_driver_not_assigned_is_denied(self):
        """Test that only the assigned driver or a supervisor may deliver"""
        with self.assertRaises(DeliveryAccessDenied):
            self.workflow.confirm_delivery(42, make_capture(), self.other_driver)
        self.assertFalse(DeliveryConfirmation.objects.exists())

        delivery = self.workflow.confirm_delivery(42, make_capture(photos=[]), self.supervisor)
        self.assertEqual(delivery.delivered_by, self.supervisor)

    def test_unknown_shipment(self):
        """Test that a shipment unknown to the ERP is not deliverable"""
        with self.assertRaises(ShipmentNotDeliverable) as context:
            self.workflow.confirm_delivery(77, make_capture(), self.driver)
        self.assertIn('shipment_id', context.exception.field_errors)

    def test_shipment_fetched_from_erp(self):
        """Test that a shipment missing locally is mirrored from the ERP"""
        self.erp.shipments[43] = {
            'id': 43, 'ref': 'SH00043', 'statut': 1, 'socname': 'Beta Ltd',
            'array_options': {'options_driver_login': 'driver1'},
        }
        delivery = self.workflow.confirm_delivery(43, make_capture(photos=[]), self.driver)
        self.assertEqual(delivery.shipment.reference, 'SH00043')
        self.assertEqual(delivery.shipment.assigned_driver, self.driver)

    def test_cancelled_shipment(self):
        """Test that a cancelled shipment cannot be delivered"""
        make_shipment(44, driver=self.driver, status=ShipmentStatus.CANCELLED)
        with self.assertRaises(ShipmentNotDeliverable):
            self.workflow.confirm_delivery(44, make_capture(), self.driver)

    def test_gps_out_of_range(self):
        """Test that latitude 90.0001 is rejected and nothing is written"""
        with self.assertRaises(InvalidGpsCoordinates) as context:
            self.workflow.confirm_delivery(42, make_capture(gps_latitude='90.0001'), self.driver)
        self.assertIn('gps_latitude', context.exception.field_errors)
        self.assertFalse(DeliveryConfirmation.objects.exists())

    def test_gps_bounds_are_inclusive(self):
        """Test that latitude 90 and longitude -180 are accepted"""
        delivery = self.workflow.confirm_delivery(
            42, make_capture(gps_latitude=90, gps_longitude=-180, photos=[]), self.driver
        )
        self.assertEqual(delivery.gps_latitude, Decimal('90'))
        self.assertEqual(delivery.gps_longitude, Decimal('-180'))

    def test_recipient_required(self):
        """Test that the recipient name is required"""
        with self.assertRaises(DeliveryValidationError) as context:
            self.workflow.confirm_delivery(42, make_capture(recipient_name='  '), self.driver)
        self.assertIn('recipient_name', context.exception.field_errors)

    @patch('delivery_service.validators.calculate_signature_quality', return_value=0.699)
    def test_low_quality_signature(self, mock_quality):
        """Test that a signature below 0.70 is rejected before anything is written"""
        with self.assertRaises(InvalidSignature) as context:
            self.workflow.confirm_delivery(42, make_capture(), self.driver)
        self.assertIn('signature', context.exception.field_errors)
        self.assertFalse(DeliveryConfirmation.objects.exists())
        self.assertFalse(DeliverySignature.objects.exists())

    def test_invalid_photo_is_rejected_before_writing(self):
        """Test that photos are validated before the record exists"""
        with self.assertRaises(InvalidPhoto) as context:
            self.workflow.confirm_delivery(42, make_capture(photos=[make_photo_payload(photo_data='xx')]), self.driver)
        self.assertIn('photos[0]', context.exception.field_errors)
        self.assertFalse(DeliveryConfirmation.objects.exists())
        self.assertEqual(stored_files(self.media_root), [])

    @patch('delivery_service.services.async_task')
    def test_thumbnail_failure_rolls_everything_back(self, mock_async_task):
        """Test atomicity: no record, signature, photo or file survives a failed thumbnail"""
        capture = make_capture(photos=[make_photo_payload(), make_photo_payload()])
        with patch.object(PhotoService, 'create_thumbnail', side_effect=[
            os.path.join(self.media_root, 'missing.jpg'), OSError('disk full')
        ]):
            with self.assertRaises(PhotoProcessingFailed):
                self.workflow.confirm_delivery(42, capture, self.driver)

        self.assertFalse(DeliveryConfirmation.objects.exists())
        self.assertFalse(DeliverySignature.objects.exists())
        self.assertFalse(DeliveryPhoto.objects.exists())
        self.assertEqual(stored_files(self.media_root), [])
        mock_async_task.assert_not_called()

    def test_verification_hash_is_stable(self):
        """Test that the stored hash can be recomputed after a database round trip"""
        delivery = self.workflow.confirm_delivery(42, make_capture(photos=[]), self.driver)
        stored = DeliveryConfirmation.objects.get(pk=delivery.pk)

        self.assertEqual(stored.calculate_verification_hash(), delivery.verification_hash)
        self.assertTrue(stored.verify_integrity())

        stored.recipient_name = 'John Doe'
        self.assertFalse(stored.verify_integrity())

    def test_delivery_is_sealed_once(self):
        """Test that the verification hash cannot be recomputed in place"""
        delivery = self.workflow.confirm_delivery(42, make_capture(photos=[]), self.driver)
        with self.assertRaises(ValueError):
            delivery.seal()

    def test_workflow_status(self):
        """Test the completeness summary of a full capture"""
        delivery = self.workflow.confirm_delivery(42, make_capture(), self.driver)
        summary = self.workflow.get_workflow_status(delivery)
        self.assertEqual(summary['completion_percentage'], 100.0)
        self.assertTrue(summary['integrity_verified'])
        self.assertFalse(summary['is_synced'])

    def test_offline_capture_is_queued(self):
        """Test that a disconnected device stages the capture instead of confirming"""
        outcome, queue_id = self.workflow.submit_capture(42, make_capture(), self.driver, 'tablet-1', connected=False)

        self.assertEqual(outcome, CAPTURE_QUEUED)
        item = OfflineQueueItem.objects.get(pk=queue_id)
        self.assertEqual(item.kind, QueueItemKind.DELIVERY_CONFIRMATION)
        self.assertEqual(item.payload['shipment_id'], 42)
        self.assertFalse(DeliveryConfirmation.objects.exists())

    def test_known_offline_device_is_queued(self):
        """Test that the connectivity monitor routes captures to the queue"""
        ConnectivityMonitor().mark_offline('tablet-1')
        outcome, _ = self.workflow.submit_capture(42, make_capture(), self.driver, 'tablet-1', connected=True)
        self.assertEqual(outcome, CAPTURE_QUEUED)

    def test_online_capture_is_confirmed(self):
        """Test the online route"""
        outcome, delivery = self.workflow.submit_capture(42, make_capture(photos=[]), self.driver, 'tablet-1')
        self.assertEqual(outcome, CAPTURE_CONFIRMED)
        self.assertIsInstance(delivery, DeliveryConfirmation)

    @patch('delivery_service.services.async_task')
    def test_photos_after_sync_trigger_a_new_sync(self, mock_async_task):
        """Test that a synced delivery goes back to pending when photos are added"""
        delivery = make_delivery(self.shipment, self.driver, sync_state=SyncState.SYNCED)

        with self.captureOnCommitCallbacks(execute=True):
            created = self.workflow.process_photos(delivery, [make_photo_payload()])

        self.assertEqual(len(created), 1)
        mock_async_task.assert_called_once()
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.QUEUED)

    @patch('delivery_service.services.async_task')
    def test_photos_during_sync_reopen_it(self, mock_async_task):
        """Test that photos added to a queued delivery send it back to pending for the worker holding it"""
        delivery = make_delivery(self.shipment, self.driver, sync_state=SyncState.QUEUED)

        with self.captureOnCommitCallbacks(execute=True):
            self.workflow.process_photos(delivery, [make_photo_payload()])

        mock_async_task.assert_not_called()
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.PENDING)

    def test_update_status(self):
        """Test a status change and its announcement"""
        delivery = make_delivery(self.shipment, self.driver)
        subscription = self.listen(delivery_channel(delivery.pk))

        self.workflow.update_status(delivery, DeliveryStatus.RETURNED, self.driver)

        delivery.refresh_from_db()
        self.assertEqual(delivery.status, DeliveryStatus.RETURNED)
        event = subscription.pending()[0]
        self.assertEqual(event['event_type'], DELIVERY_STATUS_UPDATED)
        self.assertEqual(event['previous_status'], DeliveryStatus.DELIVERED)
        with self.assertRaises(DeliveryAccessDenied):
            self.workflow.update_status(delivery, DeliveryStatus.FAILED, self.other_driver)

    def test_record_location(self):
        """Test that a live position is published without touching the capture"""
        delivery = make_delivery(self.shipment, self.driver)
        subscription = self.listen(shipment_channel(42))

        event = self.workflow.record_location(delivery, '6.6', '3.4', 10, self.driver)

        self.assertEqual(event['event_type'], DELIVERY_LOCATION_UPDATED)
        self.assertEqual(event['latitude'], '6.60000000')
        self.assertEqual(len(subscription.pending()), 1)
        delivery.refresh_from_db()
        self.assertEqual(delivery.gps_latitude, Decimal('6.52440000'))
        self.assertTrue(delivery.verify_integrity())

        with self.assertRaises(InvalidGpsCoordinates):
            self.workflow.record_location(delivery, '6.6', None, None, self.driver)
        with self.assertRaises(InvalidGpsCoordinates):
            self.workflow.record_location(delivery, '95', '3.4', None, self.driver)

    def test_signature_progress(self):
        """Test the running signature estimate on the shipment channel"""
        subscription = self.listen(shipment_channel(42))

        progress = self.workflow.report_signature_progress(42, make_signature_payload()['strokes'][:2], self.driver)

        self.assertEqual(progress['stroke_count'], 2)
        event = subscription.pending()[0]
        self.assertEqual(event['event_type'], SIGNATURE_PROGRESS)
        self.assertEqual(event['stage'], 'drawing')
        with self.assertRaises(DeliveryValidationError):
            self.workflow.report_signature_progress(42, 'scribble', self.driver)

    @patch('delivery_service.services.async_task')
    def test_request_resync(self, mock_async_task):
        """Test that only supervisors can re-sync and only failed deliveries"""
        delivery = make_delivery(self.shipment, self.driver, sync_state=SyncState.SYNC_FAILED, sync_error='rejected')

        with self.assertRaises(DeliveryAccessDenied):
            self.workflow.request_resync(delivery, self.driver)

        self.workflow.request_resync(delivery, self.supervisor)
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.QUEUED)
        self.assertEqual(delivery.sync_error, '')
        mock_async_task.assert_called_once()

        with self.assertRaises(SyncNotRetryable):
            self.workflow.request_resync(delivery, self.supervisor)


class DeliveryEndToEndTest(TemporaryMediaMixin, TestCase):
    """
    Shipment 42 delivered to Jane Doe, confirmed, announced and pushed to the ERP
    """

    def setUp(self):
        self.use_temporary_media()
        self.driver = make_user('driver1')
        self.shipment = make_shipment(42, driver=self.driver)
        self.erp = FakeERPClient()
        self.broadcaster = StatusBroadcaster()
        self.workflow = DeliveryWorkflowService(broadcaster=self.broadcaster, connectivity=ConnectivityMonitor())
        self.sync_service = ERPSyncService(client=self.erp, sleep=lambda seconds: None, broadcaster=self.broadcaster)

    def run_task_inline(self, func, delivery_id, **kwargs):
        return self.sync_service.sync(delivery_id).as_dict()

    def test_capture_to_erp(self):
        """Test the whole path from capture to a synced delivery"""
        subscription = Subscription(shipment_channel(42))
        self.broadcaster.registry.register(subscription)

        with patch('delivery_service.services.async_task', side_effect=self.run_task_inline):
            with self.captureOnCommitCallbacks(execute=True):
                delivery = self.workflow.confirm_delivery(42, make_capture(), self.driver)

        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.SYNCED)
        self.assertIsNotNone(delivery.erp_sync_timestamp)
        self.assertEqual(self.erp.methods(), [
            'update_shipment_status', 'upload_document', 'upload_document', 'insert_tracking'
        ])
        self.assertEqual(self.erp.calls[0]['payload']['recipient_name'], 'Jane Doe')

        events = subscription.pending()
        types = [event['event_type'] for event in events]
        self.assertEqual(types[0], DELIVERY_CONFIRMED)
        self.assertLess(types.index(DELIVERY_CONFIRMED), types.index(DELIVERY_STATUS_UPDATED))
        self.assertEqual(events[-1]['sync_state'], SyncState.SYNCED)
        self.assertTrue(all(event['shipment_id'] == 42 for event in events))


class DeliveryAPITest(TemporaryMediaMixin, APITestCase):
    """
    Test cases for the delivery HTTP interface
    """

    def setUp(self):
        self.use_temporary_media()
        cache.clear()
        self.driver = make_user('driver1')
        self.other_driver = make_user('driver2')
        self.supervisor = make_user('boss', role='supervisor')
        self.shipment = make_shipment(42, driver=self.driver)
        self.client.force_authenticate(user=self.driver)

    @patch('delivery_service.services.async_task')
    def test_confirm_delivery(self, mock_async_task):
        """Test 201 with the stored delivery"""
        response = self.client.post(reverse('confirm-delivery', args=[42]), make_capture(), format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        data = response.data['data']
        self.assertEqual(data['recipient_name'], 'Jane Doe')
        self.assertEqual(data['sync_state'], SyncState.PENDING)
        self.assertTrue(data['signature']['is_legally_valid'])
        self.assertEqual(len(data['photos']), 1)
        self.assertEqual(response.data['status'], 'success')

        signature = DeliverySignature.objects.get(delivery_id=data['id'])
        self.assertEqual(signature.ip_address, '127.0.0.1')

    def test_confirm_with_invalid_gps(self):
        """Test 422 with field errors"""
        response = self.client.post(
            reverse('confirm-delivery', args=[42]), make_capture(gps_latitude='90.0001'), format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)
        self.assertEqual(response.data['data']['error_code'], 'INVALID_GPS_COORDINATES')
        self.assertIn('gps_latitude', response.data['data']['field_errors'])

    @patch('delivery_service.services.async_task')
    def test_confirm_with_full_precision_gps(self, mock_async_task):
        """Test that a device fix with 14 decimals is accepted and stored to 8 places"""
        capture = make_capture(gps_latitude=40.71280012345678, gps_longitude=-74.00601234567891, gps_accuracy=3.456789)

        response = self.client.post(reverse('confirm-delivery', args=[42]), capture, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        delivery = DeliveryConfirmation.objects.get(pk=response.data['data']['id'])
        self.assertEqual(delivery.gps_latitude, Decimal('40.71280012'))
        self.assertEqual(delivery.gps_longitude, Decimal('-74.00601235'))
        self.assertEqual(delivery.gps_accuracy, Decimal('3.46'))
        self.assertTrue(delivery.verify_integrity())

    def test_confirm_with_missing_recipient(self):
        """Test that malformed captures are 422 as well"""
        capture = make_capture()
        del capture['recipient_name']
        response = self.client.post(reverse('confirm-delivery', args=[42]), capture, format='json')
        self.assertEqual(response.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)
        self.assertIn('recipient_name', response.data['data']['field_errors'])

    def test_confirm_by_other_driver(self):
        """Test 403 for a driver not assigned to the shipment"""
        self.client.force_authenticate(user=self.other_driver)
        response = self.client.post(reverse('confirm-delivery', args=[42]), make_capture(), format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_confirm_offline(self):
        """Test 202 when the device reports it is offline"""
        response = self.client.post(
            reverse('confirm-delivery', args=[42]), make_capture(connectivity='offline'),
            format='json', HTTP_X_DEVICE_ID='tablet-1'
        )

        self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)
        item = OfflineQueueItem.objects.get(pk=response.data['data']['queue_item_id'])
        self.assertEqual(item.device_id, 'tablet-1')
        self.assertNotIn('connectivity', item.payload['capture'])

    def test_confirm_offline_without_device(self):
        """Test that an offline capture needs a device id"""
        response = self.client.post(
            reverse('confirm-delivery', args=[42]), make_capture(connectivity='offline'), format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)

    @patch('erp_service.services.RESTServices')
    def test_confirm_when_erp_is_down(self, mock_rest):
        """Test 503 when the shipment must be fetched and the ERP is unreachable"""
        mock_rest.return_value.get_shipment.side_effect = ERPConnectionError('ERP unreachable')
        response = self.client.post(reverse('confirm-delivery', args=[99]), make_capture(), format='json')
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)

    def test_list_deliveries(self):
        """Test that drivers see their own deliveries and supervisors see all"""
        make_delivery(self.shipment, self.driver)
        make_delivery(make_shipment(43, driver=self.other_driver), self.other_driver)

        response = self.client.get(reverse('delivery-list'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data']['count'], 1)

        self.client.force_authenticate(user=self.supervisor)
        response = self.client.get(reverse('delivery-list'), {'shipment_id': 43})
        self.assertEqual(response.data['data']['count'], 1)

    def test_delivery_detail(self):
        """Test the detail with workflow status, 403 and 404"""
        delivery = make_delivery(self.shipment, self.driver)

        response = self.client.get(reverse('delivery-detail', args=[delivery.pk]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['data']['workflow_status']['integrity_verified'])

        self.client.force_authenticate(user=self.other_driver)
        self.assertEqual(self.client.get(reverse('delivery-detail', args=[delivery.pk])).status_code, 403)
        self.assertEqual(self.client.get(reverse('delivery-detail', args=[9999])).status_code, 404)

    def test_upload_photos(self):
        """Test adding photos to an existing delivery"""
        delivery = make_delivery(self.shipment, self.driver)
        response = self.client.post(
            reverse('delivery-photos', args=[delivery.pk]), {'photos': [make_photo_payload()]}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.assertEqual(len(response.data['data']), 1)
        self.assertTrue(response.data['data'][0]['thumbnail_url'].startswith('/media/delivery_photos/'))

    def test_upload_photos_offline(self):
        """Test that photos from an offline device are queued against the delivery"""
        delivery = make_delivery(self.shipment, self.driver)
        response = self.client.post(
            reverse('delivery-photos', args=[delivery.pk]),
            {'photos': [make_photo_payload()], 'connectivity': 'offline'},
            format='json', HTTP_X_DEVICE_ID='tablet-1'
        )
        self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)
        item = OfflineQueueItem.objects.get(pk=response.data['data']['queue_item_id'])
        self.assertEqual(item.kind, QueueItemKind.PHOTO_UPLOAD)
        self.assertEqual(item.payload['delivery_id'], delivery.pk)

    def test_update_status_and_location(self):
        """Test the status and location endpoints"""
        delivery = make_delivery(self.shipment, self.driver)

        response = self.client.post(reverse('delivery-status', args=[delivery.pk]), {'status': 'returned'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data']['status'], 'returned')

        response = self.client.post(
            reverse('delivery-location', args=[delivery.pk]),
            {'gps_latitude': '6.6', 'gps_longitude': '3.4', 'gps_accuracy': 8}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data']['event_type'], DELIVERY_LOCATION_UPDATED)

        response = self.client.post(
            reverse('delivery-location', args=[delivery.pk]), {'gps_latitude': '6.6'}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)

    @patch('delivery_service.services.async_task')
    def test_resync(self, mock_async_task):
        """Test 403 for drivers, 202 for a failed delivery and 409 otherwise"""
        failed = make_delivery(self.shipment, self.driver, sync_state=SyncState.SYNC_FAILED)
        synced = make_delivery(self.shipment, self.driver, sync_state=SyncState.SYNCED)

        self.assertEqual(self.client.post(reverse('delivery-resync', args=[failed.pk])).status_code, 403)

        self.client.force_authenticate(user=self.supervisor)
        self.assertEqual(self.client.post(reverse('delivery-resync', args=[failed.pk])).status_code, 202)
        self.assertEqual(self.client.post(reverse('delivery-resync', args=[synced.pk])).status_code, 409)

    def test_signature_progress(self):
        """Test the signature progress endpoint"""
        response = self.client.post(
            reverse('signature-progress', args=[42]),
            {'strokes': make_signature_payload()['strokes'], 'canvas_width': 400, 'canvas_height': 200},
            format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data']['stroke_count'], 4)

    def test_sync_statistics(self):
        """Test that drivers only count their own deliveries"""
        make_delivery(self.shipment, self.driver, sync_state=SyncState.SYNCED)
        make_delivery(make_shipment(43, driver=self.other_driver), self.other_driver)

        response = self.client.get(reverse('sync-statistics'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['data']['total'], 1)
        self.assertEqual(response.data['data']['success_rate'], 100.0)

    def test_sync_monitoring_is_for_supervisors(self):
        """Test 403 for drivers and 200 for supervisors"""
        self.assertEqual(self.client.get(reverse('sync-monitoring')).status_code, 403)
        self.client.force_authenticate(user=self.supervisor)
        response = self.client.get(reverse('sync-monitoring'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('queue_depth', response.data['data'])

    @patch('delivery_service.views.async_task')
    def test_batch_sync(self, mock_async_task):
        """Test that a batch sync is queued for supervisors only"""
        self.assertEqual(self.client.post(reverse('sync-batch'), {'delivery_ids': [1, 2]}, format='json').status_code, 403)

        self.client.force_authenticate(user=self.supervisor)
        response = self.client.post(reverse('sync-batch'), {'delivery_ids': [1, 2]}, format='json')
        self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)
        self.assertEqual(mock_async_task.call_args[0], ('delivery_service.tasks.sync_deliveries_batch', [1, 2]))

    def test_channel_events(self):
        """Test the SSE stream and that other drivers are refused"""
        url = reverse('channel-events', args=[shipment_channel(42)])

        response = self.client.get(url, HTTP_ACCEPT='text/event-stream')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response['Content-Type'], 'text/event-stream')
        self.assertEqual(next(iter(response.streaming_content)), b": connected\n\n")
        response.close()

        self.client.force_authenticate(user=self.other_driver)
        response = self.client.get(url, HTTP_ACCEPT='text/event-stream')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_requires_authentication(self):
        """Test that anonymous requests are refused"""
        self.client.force_authenticate(user=None)
        response = self.client.get(reverse('delivery-list'))
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))
