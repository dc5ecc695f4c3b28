"""
Unit tests for the ERP sync worker and its tasks
"""
from datetime import timedelta
from unittest.mock import patch, MagicMock
from django.conf import settings
from django.test import TestCase
from django.utils import timezone

from erp_service.models import get_or_create_posting_status
from erp_service.rest import ERPConnectionError, ERPRejectionError
from offline_service.models import OfflineQueueItem, QueueItemKind
from .broadcasting import StatusBroadcaster, Subscription, delivery_channel, DELIVERY_STATUS_UPDATED
from .models import DeliveryConfirmation, SyncState
from .photos import PhotoService
from .services import DeliveryWorkflowService
from .sync import ERPSyncService, next_delay
from .tasks import sync_pending_deliveries, resync_delivery, sync_delivery_to_erp, register_schedules
from .testing import (
    FakeERPClient, TemporaryMediaMixin, make_user, make_shipment, make_delivery, make_photo_payload
)


class NextDelayTest(TestCase):
    """Test the backoff schedule"""

    def test_doubles_from_base(self):
        """Test base, 2 x base, 4 x base"""
        self.assertEqual([next_delay(1), next_delay(2), next_delay(3)], [2, 4, 8])

    def test_capped(self):
        """Test that the delay never exceeds the cap"""
        self.assertEqual(next_delay(10), 60)
        self.assertEqual(next_delay(4, base=1, cap=5), 5)

    def test_no_delay_before_first_attempt(self):
        """Test attempt 0"""
        self.assertEqual(next_delay(0), 0)


class ERPSyncServiceTest(TemporaryMediaMixin, TestCase):
    """
    Test cases for ERPSyncService
    """

    def setUp(self):
        """Set up a driver, a shipment and a broadcaster to watch"""
        self.use_temporary_media()
        self.driver = make_user('driver1')
        self.shipment = make_shipment(42, driver=self.driver)
        self.broadcaster = StatusBroadcaster()
        self.sleeps = []

    def make_service(self, client, **kwargs):
        return ERPSyncService(client=client, sleep=self.sleeps.append, broadcaster=self.broadcaster, **kwargs)

    def test_sync_pushes_every_step(self):
        """Test the step order, idempotency keys and the final state"""
        delivery = make_delivery(self.shipment, self.driver)
        client = FakeERPClient()

        result = self.make_service(client).sync(delivery.pk)

        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(client.methods(), ['update_shipment_status', 'upload_document', 'insert_tracking'])
        self.assertEqual([call['idempotency_key'] for call in client.calls], [
            f"42:status:{delivery.pk}",
            f"42:delivery_signature:{delivery.pk}",
            f"42:tracking:{delivery.pk}",
        ])
        self.assertEqual(client.calls[1]['filename'], f"delivery_signature_{delivery.pk}.png")
        self.assertEqual(client.calls[1]['shipment_ref'], 'SH00042')

        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.SYNCED)
        self.assertIsNotNone(delivery.erp_sync_timestamp)
        self.assertEqual(delivery.sync_error, '')
        self.assertIsNone(delivery.sync_started_at)
        posting = get_or_create_posting_status(delivery)
        self.assertEqual(posting.status, 'success')
        self.assertEqual(posting.completed_steps, ['status', 'signature', 'tracking'])

    def test_sync_without_signature_or_gps(self):
        """Test that only the status update is sent for a bare delivery"""
        delivery = make_delivery(self.shipment, self.driver, signature=False, gps=False)
        client = FakeERPClient()

        self.assertTrue(self.make_service(client).sync(delivery.pk).success)
        self.assertEqual(client.methods(), ['update_shipment_status'])

    def test_photos_are_uploaded(self):
        """Test one document per photo with a deterministic filename"""
        delivery = make_delivery(self.shipment, self.driver, signature=False, gps=False)
        photo = PhotoService().process_photos(delivery, [make_photo_payload()])[0]
        client = FakeERPClient()

        self.make_service(client).sync(delivery.pk)

        upload = client.calls[1]
        self.assertEqual(upload['filename'], f"delivery_photo_{delivery.pk}_{photo.pk}.jpg")
        self.assertEqual(upload['idempotency_key'], f"42:delivery_photo:{delivery.pk}:{photo.pk}")

    def test_synced_delivery_is_not_pushed_again(self):
        """Test that syncing twice makes zero ERP calls the second time"""
        delivery = make_delivery(self.shipment, self.driver)
        client = FakeERPClient()
        service = self.make_service(client)
        service.sync(delivery.pk)
        calls = client.call_count

        result = service.sync(delivery.pk)

        self.assertTrue(result.success)
        self.assertEqual(client.call_count, calls)
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_attempts, 1)

    def test_retry_exhaustion(self):
        """Test three failed attempts with 2s and 4s waits, then SyncFailed"""
        delivery = make_delivery(self.shipment, self.driver)
        client = FakeERPClient(failures=[ERPConnectionError('ERP unreachable')] * 3)

        result = self.make_service(client).sync(delivery.pk)

        self.assertFalse(result.success)
        self.assertEqual(client.call_count, 3)
        self.assertEqual(self.sleeps, [2, 4])
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.SYNC_FAILED)
        self.assertEqual(delivery.sync_error, 'ERP sync failed after 3 attempts: ERP unreachable')
        self.assertEqual(delivery.sync_attempts, 3)
        posting = get_or_create_posting_status(delivery)
        self.assertEqual(posting.status, 'failed')
        self.assertEqual(posting.retry_count, 3)

    def test_transient_failure_then_success(self):
        """Test that a retry after one timeout completes the sync"""
        delivery = make_delivery(self.shipment, self.driver)
        client = FakeERPClient(failures=[ERPConnectionError('timed out')])

        result = self.make_service(client).sync(delivery.pk)

        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 2)
        self.assertEqual(self.sleeps, [2])
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.SYNCED)

    def test_completed_steps_are_not_repeated(self):
        """Test that a retry resumes after the last step the ERP accepted"""
        delivery = make_delivery(self.shipment, self.driver)
        client = FakeERPClient(failures=[None, ERPConnectionError('reset by peer')])

        self.assertTrue(self.make_service(client).sync(delivery.pk).success)

        self.assertEqual(client.methods(), [
            'update_shipment_status', 'upload_document', 'upload_document', 'insert_tracking'
        ])
        self.assertEqual(client.methods().count('update_shipment_status'), 1)

    def test_rejection_is_not_retried(self):
        """Test that a permanent rejection fails at once"""
        delivery = make_delivery(self.shipment, self.driver)
        client = FakeERPClient(failures=[ERPRejectionError('Shipment is closed', status_code=400)])

        result = self.make_service(client).sync(delivery.pk)

        self.assertFalse(result.success)
        self.assertEqual(client.call_count, 1)
        self.assertEqual(self.sleeps, [])
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.SYNC_FAILED)
        self.assertEqual(delivery.sync_error, 'ERP rejected delivery sync: Shipment is closed')

    def test_unexpected_error_is_terminal(self):
        """Test that an unexpected error aborts the sync"""
        delivery = make_delivery(self.shipment, self.driver)
        client = FakeERPClient(failures=[RuntimeError('boom')])

        result = self.make_service(client).sync(delivery.pk)

        self.assertFalse(result.success)
        self.assertEqual(result.error, 'ERP sync aborted: boom')
        self.assertEqual(client.call_count, 1)

    def test_failed_delivery_stays_failed(self):
        """Test that SyncFailed is terminal until a manual re-sync"""
        delivery = make_delivery(self.shipment, self.driver, sync_state=SyncState.SYNC_FAILED, sync_error='earlier')
        client = FakeERPClient()

        result = self.make_service(client).sync(delivery.pk)

        self.assertFalse(result.success)
        self.assertEqual(client.call_count, 0)
        self.assertEqual(result.error, 'earlier')

    def test_concurrent_claim_is_refused(self):
        """Test that a delivery held by another worker is not pushed twice"""
        delivery = make_delivery(self.shipment, self.driver)
        self.assertIsNotNone(DeliveryConfirmation.claim_for_sync(delivery.pk))
        client = FakeERPClient()

        result = self.make_service(client).sync(delivery.pk)

        self.assertFalse(result.success)
        self.assertEqual(result.error, 'Sync already in progress')
        self.assertEqual(client.call_count, 0)

    def test_stale_claim_is_taken_over(self):
        """Test that a claim older than the lock timeout no longer blocks"""
        delivery = make_delivery(self.shipment, self.driver)
        stale = timezone.now() - timedelta(seconds=settings.ERP_SYNC_LOCK_TIMEOUT + 60)
        DeliveryConfirmation.objects.filter(pk=delivery.pk).update(sync_started_at=stale)

        self.assertTrue(self.make_service(FakeERPClient()).sync(delivery.pk).success)

    def test_cancelled_sync_leaves_delivery_pending(self):
        """Test that cancel() stops before the next attempt"""
        delivery = make_delivery(self.shipment, self.driver)
        client = FakeERPClient()
        service = self.make_service(client)
        service.cancel()

        result = service.sync(delivery.pk)

        self.assertFalse(result.success)
        self.assertEqual(result.error, 'Sync cancelled')
        self.assertEqual(client.call_count, 0)
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.PENDING)
        self.assertIsNone(delivery.sync_started_at)

    @patch('delivery_service.services.async_task')
    def test_photos_added_during_sync_are_pushed(self, mock_async_task):
        """Test that a photo added after the photo step is pushed before the delivery is marked synced"""
        delivery = make_delivery(self.shipment, self.driver)
        workflow = DeliveryWorkflowService(broadcaster=self.broadcaster)
        client = FakeERPClient()
        added = []
        insert_tracking = client.insert_tracking

        def add_photo_then_track(*args, **kwargs):
            if not added:
                current = DeliveryConfirmation.objects.get(pk=delivery.pk)
                added.extend(workflow.process_photos(current, [make_photo_payload()]))
            return insert_tracking(*args, **kwargs)

        client.insert_tracking = add_photo_then_track

        result = self.make_service(client).sync(delivery.pk)

        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 1)
        photo = added[0]
        self.assertEqual(client.methods(), [
            'update_shipment_status', 'upload_document', 'insert_tracking', 'upload_document',
        ])
        self.assertEqual(client.calls[-1]['filename'], f"delivery_photo_{delivery.pk}_{photo.pk}.jpg")
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.SYNCED)
        self.assertIsNone(delivery.sync_started_at)
        posting = get_or_create_posting_status(delivery)
        self.assertEqual(posting.completed_steps, ['status', 'signature', 'tracking', f"photo:{photo.pk}"])
        mock_async_task.assert_not_called()

    def test_broadcast_failure_does_not_undo_sync(self):
        """Test that the delivery stays synced when its outcome cannot be announced"""
        delivery = make_delivery(self.shipment, self.driver)

        with patch.object(self.broadcaster, 'publish', side_effect=ConnectionError('redis down')):
            result = self.make_service(FakeERPClient()).sync(delivery.pk)

        self.assertTrue(result.success)
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.SYNCED)

    def test_missing_delivery(self):
        """Test that an unknown id fails without raising"""
        result = self.make_service(FakeERPClient()).sync(999)
        self.assertFalse(result.success)
        self.assertIn('does not exist', result.error)

    def test_outcome_is_broadcast(self):
        """Test that subscribers see the sync outcome"""
        delivery = make_delivery(self.shipment, self.driver)
        subscription = Subscription(delivery_channel(delivery.pk))
        self.broadcaster.registry.register(subscription)

        self.make_service(FakeERPClient()).sync(delivery.pk)

        events = subscription.pending()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]['event_type'], DELIVERY_STATUS_UPDATED)
        self.assertEqual(events[0]['sync_state'], SyncState.SYNCED)
        self.assertEqual(events[0]['delivery_id'], delivery.pk)


class SyncBatchAndStatisticsTest(TestCase):
    """
    Test batch sync and the statistics built on top of it
    """

    def setUp(self):
        self.driver = make_user('driver1')
        self.other_driver = make_user('driver2')
        self.shipment = make_shipment(42, driver=self.driver)
        self.broadcaster = StatusBroadcaster()

    def test_batch_of_five_with_two_rejections(self):
        """Test 5 deliveries, 3 synced and 2 rejected: success rate 60"""
        deliveries = [make_delivery(self.shipment, self.driver, signature=False, gps=False) for _ in range(5)]
        rejection = ERPRejectionError('Invalid status', status_code=422)
        client = FakeERPClient(failures=[None, None, None, rejection, rejection])
        service = ERPSyncService(client=client, sleep=lambda seconds: None, broadcaster=self.broadcaster)

        result = service.sync_batch([delivery.pk for delivery in deliveries])

        self.assertEqual(result['total'], 5)
        self.assertEqual(result['successful'], 3)
        self.assertEqual(result['failed'], 2)
        self.assertEqual(set(result['errors']), {deliveries[3].pk, deliveries[4].pk})

        stats = ERPSyncService.get_sync_statistics()
        self.assertEqual(stats['total'], 5)
        self.assertEqual(stats['synced'], 3)
        self.assertEqual(stats['failed'], 2)
        self.assertEqual(stats['pending'], 0)
        self.assertEqual(stats['success_rate'], 60.0)
        self.assertIsNotNone(stats['last_synced_at'])

    def test_statistics_when_empty(self):
        """Test a zero success rate without deliveries"""
        stats = ERPSyncService.get_sync_statistics()
        self.assertEqual(stats['total'], 0)
        self.assertEqual(stats['success_rate'], 0.0)

    def test_statistics_filters(self):
        """Test the user and date filters"""
        make_delivery(self.shipment, self.driver)
        make_delivery(self.shipment, self.other_driver, sync_state=SyncState.QUEUED)
        today = timezone.now().date().isoformat()

        self.assertEqual(ERPSyncService.get_sync_statistics({'user_id': self.other_driver.pk})['pending'], 1)
        self.assertEqual(ERPSyncService.get_sync_statistics({'date_from': today, 'date_to': today})['total'], 2)
        self.assertEqual(ERPSyncService.get_sync_statistics({'date_from': '2099-01-01'})['total'], 0)

    def test_monitoring_statistics(self):
        """Test queue depths and recent failures"""
        make_delivery(self.shipment, self.driver)
        failed = make_delivery(self.shipment, self.driver, sync_state=SyncState.SYNC_FAILED, sync_error='ERP rejected')
        OfflineQueueItem.objects.create(device_id='tablet-1', kind=QueueItemKind.DELIVERY_CONFIRMATION, payload={})

        stats = ERPSyncService(client=FakeERPClient(), broadcaster=self.broadcaster).get_sync_monitoring_stats()

        self.assertEqual(stats['queue_depth'], 1)
        self.assertEqual(stats['offline_queue_depth'], 1)
        self.assertFalse(stats['is_sync_in_progress'])
        self.assertEqual(stats['recent_failures'][0]['delivery_id'], failed.pk)
        self.assertEqual(stats['recent_failures'][0]['error'], 'ERP rejected')


class SyncTasksTest(TestCase):
    """
    Test the django-q tasks of the sync worker
    """

    def setUp(self):
        self.driver = make_user('driver1')
        self.shipment = make_shipment(42, driver=self.driver)

    @patch('delivery_service.services.async_task')
    def test_sweep_dispatches_lost_pending_deliveries(self, mock_async_task):
        """Test that old pending deliveries are queued and failed ones are left alone"""
        lost = make_delivery(self.shipment, self.driver)
        failed = make_delivery(self.shipment, self.driver, sync_state=SyncState.SYNC_FAILED)
        recent = make_delivery(self.shipment, self.driver)
        old = timezone.now() - timedelta(minutes=10)
        DeliveryConfirmation.objects.filter(pk__in=[lost.pk, failed.pk]).update(created_at=old)

        self.assertEqual(sync_pending_deliveries(), 1)

        mock_async_task.assert_called_once()
        self.assertEqual(mock_async_task.call_args[0][1], lost.pk)
        lost.refresh_from_db()
        recent.refresh_from_db()
        self.assertEqual(lost.sync_state, SyncState.QUEUED)
        self.assertEqual(recent.sync_state, SyncState.PENDING)

    @patch('delivery_service.services.async_task')
    def test_cancelled_sync_is_swept_again(self, mock_async_task):
        """Test that a delivery whose queued sync was cancelled is dispatched by the next sweep"""
        delivery = make_delivery(self.shipment, self.driver)
        DeliveryWorkflowService.dispatch_sync(delivery)
        service = ERPSyncService(client=FakeERPClient(), sleep=lambda seconds: None, broadcaster=StatusBroadcaster())
        service.cancel()

        result = service.sync(delivery.pk)

        self.assertEqual(result.error, 'Sync cancelled')
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.PENDING)
        self.assertIsNone(delivery.sync_started_at)

        old = timezone.now() - timedelta(hours=2)
        DeliveryConfirmation.objects.filter(pk=delivery.pk).update(created_at=old, updated_at=old)

        self.assertEqual(sync_pending_deliveries(), 1)
        self.assertEqual(mock_async_task.call_count, 2)
        delivery.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.QUEUED)

    @patch('delivery_service.services.async_task')
    def test_sweep_dispatches_lost_queued_deliveries(self, mock_async_task):
        """Test that queued deliveries nobody holds are dispatched again, live ones are not"""
        old = timezone.now() - timedelta(minutes=10)
        lost = make_delivery(self.shipment, self.driver, sync_state=SyncState.QUEUED)
        running = make_delivery(self.shipment, self.driver, sync_state=SyncState.QUEUED)
        abandoned = make_delivery(self.shipment, self.driver, sync_state=SyncState.QUEUED)
        recent = make_delivery(self.shipment, self.driver, sync_state=SyncState.QUEUED)
        DeliveryConfirmation.objects.filter(pk__in=[lost.pk, running.pk, abandoned.pk]).update(
            created_at=old, updated_at=old
        )
        DeliveryConfirmation.objects.filter(pk=running.pk).update(sync_started_at=timezone.now())
        DeliveryConfirmation.objects.filter(pk=abandoned.pk).update(
            sync_started_at=timezone.now() - timedelta(seconds=settings.ERP_SYNC_LOCK_TIMEOUT + 60)
        )

        self.assertEqual(sync_pending_deliveries(), 2)

        dispatched = {call[0][1] for call in mock_async_task.call_args_list}
        self.assertEqual(dispatched, {lost.pk, abandoned.pk})
        self.assertNotIn(recent.pk, dispatched)
        lost.refresh_from_db()
        self.assertGreater(lost.updated_at, old)

        # Dispatched again, so not lost any more
        mock_async_task.reset_mock()
        self.assertEqual(sync_pending_deliveries(), 0)

    @patch('delivery_service.services.async_task', side_effect=ConnectionError('broker down'))
    def test_dispatch_failure_leaves_delivery_pending(self, mock_async_task):
        """Test that a delivery whose hand-off fails stays pending for the next sweep"""
        lost = make_delivery(self.shipment, self.driver)
        DeliveryConfirmation.objects.filter(pk=lost.pk).update(created_at=timezone.now() - timedelta(minutes=10))

        self.assertEqual(sync_pending_deliveries(), 0)
        lost.refresh_from_db()
        self.assertEqual(lost.sync_state, SyncState.PENDING)

    @patch('delivery_service.tasks.ERPSyncService')
    def test_resync_resets_failed_delivery(self, mock_service_class):
        """Test that the admin re-sync resets the delivery and its posting before syncing"""
        delivery = make_delivery(self.shipment, self.driver, sync_state=SyncState.SYNC_FAILED, sync_error='rejected')
        posting = get_or_create_posting_status(delivery)
        posting.mark_failure('rejected')
        mock_service_class.return_value.sync.return_value = MagicMock(success=True, error='', as_dict=lambda: {'success': True})

        resync_delivery(delivery.pk)

        delivery.refresh_from_db()
        posting.refresh_from_db()
        self.assertEqual(delivery.sync_state, SyncState.PENDING)
        self.assertEqual(delivery.sync_error, '')
        self.assertEqual(posting.status, 'pending')
        mock_service_class.return_value.sync.assert_called_once_with(delivery.pk)

    @patch('delivery_service.tasks.ERPSyncService')
    def test_sync_task_returns_result(self, mock_service_class):
        """Test that the task returns the result as a dict for django-q"""
        mock_service_class.return_value.sync.return_value = MagicMock(
            success=False, error='down', as_dict=lambda: {'success': False, 'error': 'down'}
        )
        self.assertEqual(sync_delivery_to_erp(7), {'success': False, 'error': 'down'})

    def test_register_schedules(self):
        """Test that the pending sweep is scheduled every 5 minutes"""
        from django_q.models import Schedule

        register_schedules()
        register_schedules()

        schedules = Schedule.objects.filter(func='delivery_service.tasks.sync_pending_deliveries')
        self.assertEqual(schedules.count(), 1)
        self.assertEqual(schedules.first().minutes, 5)
