"""
Per-device connectivity state, kept in the Django cache
"""
import logging
from django.core.cache import cache
from django.utils import timezone
from django_q.tasks import async_task

logger = logging.getLogger(__name__)

OFFLINE_KEY = 'connectivity:offline:{}'
LAST_SEEN_KEY = 'connectivity:last_seen:{}'
STATE_TTL = 7 * 24 * 60 * 60

DRAIN_TASK = 'offline_service.tasks.drain_device_queue'


class ConnectivityMonitor:

	def __init__(self, cache_backend=None):
		self.cache = cache_backend or cache

	def is_offline(self, device_id) -> bool:
		return bool(device_id) and self.cache.get(OFFLINE_KEY.format(device_id)) is not None

	def last_seen(self, device_id):
		return self.cache.get(LAST_SEEN_KEY.format(device_id))

	def mark_offline(self, device_id):
		self.cache.set(OFFLINE_KEY.format(device_id), timezone.now().isoformat(), timeout=STATE_TTL)
		logger.info(f"Device {device_id} reported offline")

	def mark_online(self, device_id) -> bool:
		'''
			Record that the device is reachable again. When it still has captures waiting,
			a drain of its queue is queued right away. Returns True when a drain was queued.
		'''
		from .services import OfflineQueueService

		was_offline = self.is_offline(device_id)
		self.cache.delete(OFFLINE_KEY.format(device_id))
		self.cache.set(LAST_SEEN_KEY.format(device_id), timezone.now().isoformat(), timeout=STATE_TTL)
		if was_offline:
			logger.info(f"Device {device_id} is back online")

		if not OfflineQueueService(device_id).has_pending():
			return False

		async_task(DRAIN_TASK, device_id, q_options={
			'task_name': f'Drain-offline-queue-{device_id}',
		})
		logger.info(f"Queued a drain of the offline queue of device {device_id}")
		return True
