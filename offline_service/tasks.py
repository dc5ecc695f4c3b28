import logging
from datetime import timedelta
from django.conf import settings
from django.utils import timezone

from .models import OfflineQueueItem, QueueItemStatus
from .services import OfflineQueueService

logger = logging.getLogger(__name__)


def drain_device_queue(device_id):
	'''
		Replay the offline queue of one device. Queued when the device reconnects.
	'''
	return OfflineQueueService(device_id).drain()


def drain_offline_queues():
	'''
		Periodic fallback: drain every device that still has pending captures.
	'''
	device_ids = list(
		OfflineQueueItem.objects.filter(status=QueueItemStatus.PENDING)
		.order_by().values_list('device_id', flat=True).distinct()
	)
	results = {}
	for device_id in device_ids:
		results[device_id] = OfflineQueueService(device_id).drain()
	if results:
		logger.info(f"Periodic drain processed {len(results)} device queue(s)")
	return results


def purge_finished_queue_items(days=None):
	'''
		Delete finished items older than the retention window.
	'''
	days = days or settings.OFFLINE_QUEUE_RETENTION_DAYS
	cutoff = timezone.now() - timedelta(days=days)
	deleted, _ = OfflineQueueItem.objects.filter(
		status__in=OfflineQueueItem.FINISHED, updated_at__lt=cutoff
	).delete()
	logger.info(f"Purged {deleted} finished offline queue item(s) older than {days} days")
	return deleted


def register_schedules(sender=None, **kwargs):
	'''
		Create the periodic jobs of the offline queue (run after migrate).
	'''
	from django_q.models import Schedule

	Schedule.objects.update_or_create(
		func='offline_service.tasks.drain_offline_queues',
		defaults={'name': 'Drain offline queues', 'schedule_type': Schedule.MINUTES, 'minutes': 5},
	)
	Schedule.objects.update_or_create(
		func='offline_service.tasks.purge_finished_queue_items',
		defaults={'name': 'Purge finished offline queue items', 'schedule_type': Schedule.DAILY},
	)
