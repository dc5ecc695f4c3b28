import logging
from django.db import models
from django.conf import settings
from django.contrib.auth import get_user_model
from django.contrib.contenttypes.fields import GenericForeignKey
from django.contrib.contenttypes.models import ContentType
from django.utils import timezone

logger = logging.getLogger(__name__)


class ShipmentStatus(models.TextChoices):
	DRAFT = 'draft', 'Draft'
	VALIDATED = 'validated', 'Validated'
	IN_TRANSIT = 'in_transit', 'In Transit'
	DELIVERED = 'delivered', 'Delivered'
	CANCELLED = 'cancelled', 'Cancelled'


class Shipment(models.Model):
	"""
	Local mirror of a shipment held in the ERP. The primary key is the ERP's own row id.
	"""
	# ERP status codes as returned on the shipment resource
	ERP_STATUS_CODES = {
		-1: ShipmentStatus.CANCELLED,
		0: ShipmentStatus.DRAFT,
		1: ShipmentStatus.VALIDATED,
		2: ShipmentStatus.DELIVERED,
	}
	NON_DELIVERABLE = (ShipmentStatus.DRAFT, ShipmentStatus.CANCELLED)

	id = models.PositiveIntegerField(primary_key=True)
	reference = models.CharField(max_length=64, blank=True, default='')
	status = models.CharField(max_length=20, choices=ShipmentStatus.choices, default=ShipmentStatus.VALIDATED)
	customer_name = models.CharField(max_length=255, blank=True, default='')
	assigned_driver = models.ForeignKey(
		settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='assigned_shipments'
	)
	erp_data = models.JSONField(default=dict, blank=True)
	last_fetched_at = models.DateTimeField(null=True, blank=True)
	created_at = models.DateTimeField(auto_now_add=True)

	@property
	def is_deliverable(self):
		return self.status not in self.NON_DELIVERABLE

	@property
	def erp_reference(self):
		return self.reference or str(self.id)

	@classmethod
	def create_from_erp_data(cls, data: dict):
		"""
			Create or refresh the local mirror from an ERP shipment payload.
		"""
		try:
			status_code = int(data.get('statut', data.get('status', 1)))
		except (TypeError, ValueError):
			status_code = 1

		driver = None
		driver_login = (data.get('array_options') or {}).get('options_driver_login')
		if driver_login:
			driver = get_user_model().objects.filter(username=driver_login).first()
			if driver is None:
				logger.warning(f"Shipment {data.get('id')} is assigned to unknown driver '{driver_login}'")

		shipment, created = cls.objects.update_or_create(
			id=int(data['id']),
			defaults={
				'reference': data.get('ref') or '',
				'status': cls.ERP_STATUS_CODES.get(status_code, ShipmentStatus.VALIDATED),
				'customer_name': data.get('thirdparty_name') or data.get('socname') or '',
				'assigned_driver': driver,
				'erp_data': data,
				'last_fetched_at': timezone.now(),
			}
		)
		logger.info(f"{'Mirrored' if created else 'Refreshed'} shipment {shipment.id} from the ERP")
		return shipment

	def __str__(self):
		return f"Shipment {self.erp_reference} ({self.get_status_display()})"

	class Meta:
		db_table = 'erp_shipments'
		verbose_name = 'Shipment'
		verbose_name_plural = 'Shipments'


class ERPPostingStatus(models.Model):
	"""
	Tracks the status of data pushed to the ERP.
	"""
	# Generic foreign key to reference any model
	content_type = models.ForeignKey(ContentType, on_delete=models.CASCADE)
	object_id = models.PositiveIntegerField()
	related_object = GenericForeignKey('content_type', 'object_id')
	STATUS_CHOICES = [
		('pending', 'Pending'),
		('success', 'Success'),
		('failed', 'Failed'),
	]
	status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')
	created_at = models.DateTimeField(auto_now_add=True)
	updated_at = models.DateTimeField(auto_now=True)
	# Responses from the ERP, plus the list of steps already accepted
	response_data = models.JSONField(default=dict, blank=True)
	error_message = models.TextField(null=True, blank=True)
	request_payload = models.JSONField(null=True, blank=True)
	retry_count = models.PositiveIntegerField(default=0)

	@property
	def completed_steps(self):
		return list((self.response_data or {}).get('completed_steps', []))

	def complete_step(self, step: str, response=None):
		"""
			Records that the ERP accepted one step so later attempts can skip it.
		"""
		data = dict(self.response_data or {})
		steps = data.get('completed_steps', [])
		if step not in steps:
			steps.append(step)
		data['completed_steps'] = steps
		data.setdefault('responses', {})[step] = response
		self.response_data = data
		self.save(update_fields=['response_data', 'updated_at'])

	def mark_success(self):
		self.status = 'success'
		self.error_message = ""
		self.save(update_fields=['status', 'error_message', 'updated_at'])

	def mark_failure(self, error: str):
		self.status = 'failed'
		self.error_message = error
		self.save(update_fields=['status', 'error_message', 'updated_at'])

	def increment_retry(self):
		self.retry_count += 1
		self.save(update_fields=['retry_count', 'updated_at'])

	def reset(self):
		"""
			Back to pending for a manual re-sync; completed steps are kept.
		"""
		self.status = 'pending'
		self.error_message = ""
		self.save(update_fields=['status', 'error_message', 'updated_at'])

	def __str__(self):
		return f"Posting for {self.related_object} | Status: {self.get_status_display()} | On {str(self.created_at).split(' ')[0]}"

	class Meta:
		db_table = 'erp_posting_status'
		verbose_name_plural = "Posting Reports"


def get_or_create_posting_status(instance, request_payload=None):
	"""
	Retrieve an existing ERPPostingStatus record for instance or create a new one.
	"""
	content_type = ContentType.objects.get_for_model(instance)

	posting_status, created = ERPPostingStatus.objects.get_or_create(
		content_type=content_type,
		object_id=instance.id,
		defaults={
			'status': 'pending',
			'request_payload': request_payload,
		}
	)

	if not created and request_payload:
		posting_status.request_payload = request_payload
		posting_status.save(update_fields=['request_payload', 'updated_at'])

	return posting_status
