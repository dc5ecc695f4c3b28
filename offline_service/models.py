import uuid
from datetime import timedelta
from django.db import models
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone


class QueueItemKind(models.TextChoices):
	DELIVERY_CONFIRMATION = 'delivery_confirmation', 'Delivery Confirmation'
	PHOTO_UPLOAD = 'photo_upload', 'Photo Upload'


class QueueItemStatus(models.TextChoices):
	PENDING = 'pending', 'Pending'
	PROCESSING = 'processing', 'Processing'
	COMPLETED = 'completed', 'Completed'
	FAILED = 'failed', 'Failed'
	EXPIRED = 'expired', 'Expired'


class OfflineQueueItem(models.Model):
	"""
	A capture made while a device had no connection, staged until it can be replayed.
	Once the delivery record exists the item is superseded and marked completed.
	"""
	FINISHED = (QueueItemStatus.COMPLETED, QueueItemStatus.FAILED, QueueItemStatus.EXPIRED)

	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	device_id = models.CharField(max_length=128, db_index=True)
	user = models.ForeignKey(
		settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='offline_queue_items'
	)
	kind = models.CharField(max_length=30, choices=QueueItemKind.choices)
	payload = models.JSONField(default=dict, encoder=DjangoJSONEncoder)
	status = models.CharField(max_length=20, choices=QueueItemStatus.choices, default=QueueItemStatus.PENDING)
	attempts = models.PositiveIntegerField(default=0)
	last_error = models.TextField(blank=True, default='')
	delivery = models.ForeignKey(
		'delivery_service.DeliveryConfirmation', on_delete=models.SET_NULL, null=True, blank=True,
		related_name='offline_queue_items'
	)
	created_at = models.DateTimeField(default=timezone.now, db_index=True)
	updated_at = models.DateTimeField(auto_now=True)
	completed_at = models.DateTimeField(null=True, blank=True)

	@property
	def age(self):
		return timezone.now() - self.created_at

	def is_expired(self, now=None):
		now = now or timezone.now()
		return self.created_at < now - timedelta(hours=settings.OFFLINE_QUEUE_TTL_HOURS)

	def mark_completed(self, delivery=None):
		self.status = QueueItemStatus.COMPLETED
		self.delivery = delivery or self.delivery
		self.last_error = ''
		self.completed_at = timezone.now()
		self.save(update_fields=['status', 'delivery', 'last_error', 'completed_at', 'updated_at'])

	def mark_failed(self, error: str, retry: bool = False):
		'''
			Record a failed attempt. With retry the item goes back to pending until it runs out of attempts.
		'''
		self.last_error = error
		if retry and self.attempts < settings.OFFLINE_QUEUE_MAX_ATTEMPTS:
			self.status = QueueItemStatus.PENDING
		else:
			self.status = QueueItemStatus.FAILED
			self.completed_at = timezone.now()
		self.save(update_fields=['status', 'last_error', 'completed_at', 'updated_at'])

	def __str__(self):
		return f"{self.get_kind_display()} from {self.device_id} ({self.get_status_display()})"

	class Meta:
		db_table = 'offline_queue_items'
		verbose_name = 'Offline Queue Item'
		ordering = ['created_at']
		indexes = [
			models.Index(fields=['device_id', 'status', 'created_at']),
		]
