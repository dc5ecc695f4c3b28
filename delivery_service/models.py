import os
import hmac
import hashlib
import logging
from datetime import timedelta, timezone as dt_timezone
from decimal import Decimal
from django.db import models
from django.db.models import Q
from django.conf import settings
from django.utils import timezone

from erp_service.models import Shipment
from .validators import calculate_signature_hash, is_legally_valid

logger = logging.getLogger(__name__)

COORDINATE_PLACES = Decimal('0.00000001')
ACCURACY_PLACES = Decimal('0.01')


class DeliveryStatus(models.TextChoices):
    CONFIRMED = 'confirmed', 'Confirmed'
    DELIVERED = 'delivered', 'Delivered'
    FAILED = 'failed', 'Failed'
    RETURNED = 'returned', 'Returned'


class SyncState(models.TextChoices):
    PENDING = 'pending', 'Pending'
    QUEUED = 'queued', 'Queued'
    SYNCED = 'synced', 'Synced'
    SYNC_FAILED = 'sync_failed', 'Sync Failed'


class PhotoType(models.TextChoices):
    DELIVERY_PROOF = 'delivery_proof', 'Delivery Proof'
    SITE_PHOTO = 'site_photo', 'Site Photo'
    ISSUE_DOCUMENTATION = 'issue_documentation', 'Issue Documentation'


def normalize_coordinate(value):
    """Coordinates are stored with 8 decimal places; normalise before saving and hashing"""
    if value is None or value == '':
        return None
    return Decimal(str(value)).quantize(COORDINATE_PLACES)


def normalize_accuracy(value):
    if value is None or value == '':
        return None
    return Decimal(str(value)).quantize(ACCURACY_PLACES)


def _canonical(value):
    if value is None:
        return ''
    if hasattr(value, 'astimezone'):
        return value.astimezone(dt_timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
    if isinstance(value, (Decimal, float, int)) and not isinstance(value, bool):
        return str(normalize_coordinate(value))
    return str(value)


def compute_verification_hash(shipment_id, delivered_at, recipient_name, delivery_notes,
                              gps_latitude, gps_longitude, gps_accuracy, created_at):
    parts = [
        str(shipment_id),
        _canonical(delivered_at),
        _canonical(recipient_name),
        _canonical(delivery_notes),
        _canonical(gps_latitude),
        _canonical(gps_longitude),
        _canonical(gps_accuracy),
        _canonical(created_at),
    ]
    return hashlib.sha256('|'.join(parts).encode('utf-8')).hexdigest()


class DeliveryConfirmation(models.Model):
    """
    Proof that a shipment was handed over: who received it, when, where, and
    how far its push to the ERP has come.
    """
    shipment = models.ForeignKey(Shipment, on_delete=models.PROTECT, related_name='delivery_confirmations')
    delivered_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='delivery_confirmations'
    )
    device_id = models.CharField(max_length=128, blank=True, default='')

    # Capture data, covered by the verification hash
    delivered_at = models.DateTimeField()
    recipient_name = models.CharField(max_length=255)
    delivery_notes = models.TextField(blank=True, default='')
    gps_latitude = models.DecimalField(max_digits=11, decimal_places=8, null=True, blank=True)
    gps_longitude = models.DecimalField(max_digits=12, decimal_places=8, null=True, blank=True)
    gps_accuracy = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    verification_hash = models.CharField(max_length=64, blank=True, default='', editable=False)

    status = models.CharField(max_length=20, choices=DeliveryStatus.choices, default=DeliveryStatus.DELIVERED)
    sync_state = models.CharField(max_length=20, choices=SyncState.choices, default=SyncState.PENDING, db_index=True)
    erp_sync_timestamp = models.DateTimeField(null=True, blank=True)
    sync_error = models.TextField(blank=True, default='')
    sync_attempts = models.PositiveIntegerField(default=0)
    # Set while a sync worker holds this delivery
    sync_started_at = models.DateTimeField(null=True, blank=True)

    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def has_gps(self):
        return self.gps_latitude is not None and self.gps_longitude is not None

    @property
    def is_synced(self):
        return self.sync_state == SyncState.SYNCED

    def calculate_verification_hash(self):
        return compute_verification_hash(
            self.shipment_id, self.delivered_at, self.recipient_name, self.delivery_notes,
            self.gps_latitude, self.gps_longitude, self.gps_accuracy, self.created_at,
        )

    def seal(self):
        """
        Compute and store the verification hash. A delivery is sealed exactly once.
        """
        if self.verification_hash:
            raise ValueError(f"Delivery {self.pk} is already sealed")
        self.verification_hash = self.calculate_verification_hash()
        self.save(update_fields=['verification_hash'])
        return self.verification_hash

    def verify_integrity(self):
        return bool(self.verification_hash) and hmac.compare_digest(
            self.verification_hash, self.calculate_verification_hash()
        )

    def get_signature(self):
        try:
            return self.signature
        except DeliverySignature.DoesNotExist:
            return None

    def workflow_status(self):
        """
        Completeness of the proof of delivery.
        """
        signature = self.get_signature()
        checks = {
            'has_recipient': bool(self.recipient_name),
            'has_signature': signature is not None,
            'signature_valid': bool(signature and signature.is_legally_valid()),
            'has_photos': self.photos.exists(),
            'has_gps': self.has_gps,
        }
        completed = sum(1 for value in checks.values() if value)
        return {
            **checks,
            'is_synced': self.is_synced,
            'sync_state': self.sync_state,
            'integrity_verified': self.verify_integrity(),
            'completion_percentage': round(completed / len(checks) * 100, 2),
        }

    @classmethod
    def claim_for_sync(cls, delivery_id):
        """
        Take the per-delivery sync claim with a conditional update. Returns the
        claim timestamp, or None when another worker holds a live claim or the
        delivery is already synced.
        """
        now = timezone.now()
        stale = now - timedelta(seconds=settings.ERP_SYNC_LOCK_TIMEOUT)
        claimed = cls.objects.filter(pk=delivery_id).exclude(sync_state=SyncState.SYNCED).filter(
            Q(sync_started_at__isnull=True) | Q(sync_started_at__lt=stale)
        ).update(sync_started_at=now)
        return now if claimed else None

    @classmethod
    def release_sync_claim(cls, delivery_id, claim):
        cls.objects.filter(pk=delivery_id, sync_started_at=claim).update(sync_started_at=None)

    def reset_for_resync(self):
        """
        Manual re-sync of a delivery whose push failed permanently.
        """
        if self.sync_state != SyncState.SYNC_FAILED:
            return False
        self.sync_state = SyncState.PENDING
        self.sync_error = ''
        self.save(update_fields=['sync_state', 'sync_error', 'updated_at'])
        logger.info(f"Delivery {self.pk} reset for a manual ERP re-sync")
        return True

    def __str__(self):
        return f"Delivery {self.pk} of shipment {self.shipment_id} to {self.recipient_name}"

    class Meta:
        db_table = 'delivery_confirmations'
        verbose_name = 'Delivery Confirmation'
        verbose_name_plural = 'Delivery Confirmations'
        ordering = ['-created_at']


class DeliverySignature(models.Model):
    delivery = models.OneToOneField(DeliveryConfirmation, on_delete=models.CASCADE, related_name='signature')
    signature_data = models.TextField()
    signature_hash = models.CharField(max_length=64)
    quality_score = models.FloatField()
    stroke_data = models.JSONField(default=list)
    canvas_width = models.PositiveIntegerField(default=400)
    canvas_height = models.PositiveIntegerField(default=200)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.CharField(max_length=500, blank=True, default='')
    device_info = models.JSONField(default=dict, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def calculate_hash(self):
        return calculate_signature_hash(self.signature_data)

    def is_legally_valid(self):
        return is_legally_valid(self.quality_score, self.stroke_data, self.signature_data, self.signature_hash)

    @property
    def stroke_count(self):
        return len(self.stroke_data or [])

    def __str__(self):
        return f"Signature for delivery {self.delivery_id} (quality {self.quality_score:.2f})"

    class Meta:
        db_table = 'delivery_signatures'
        verbose_name = 'Delivery Signature'


class DeliveryPhoto(models.Model):
    delivery = models.ForeignKey(DeliveryConfirmation, on_delete=models.CASCADE, related_name='photos')
    photo_type = models.CharField(max_length=30, choices=PhotoType.choices, default=PhotoType.DELIVERY_PROOF)
    # Paths are relative to MEDIA_ROOT
    path = models.CharField(max_length=500)
    thumbnail_path = models.CharField(max_length=500, blank=True, default='')
    original_filename = models.CharField(max_length=255, blank=True, default='')
    mime_type = models.CharField(max_length=50, blank=True, default='')
    file_size = models.PositiveIntegerField()
    width = models.PositiveIntegerField(null=True, blank=True)
    height = models.PositiveIntegerField(null=True, blank=True)
    gps_latitude = models.DecimalField(max_digits=11, decimal_places=8, null=True, blank=True)
    gps_longitude = models.DecimalField(max_digits=12, decimal_places=8, null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    @property
    def absolute_path(self):
        return os.path.join(settings.MEDIA_ROOT, self.path)

    @property
    def absolute_thumbnail_path(self):
        return os.path.join(settings.MEDIA_ROOT, self.thumbnail_path) if self.thumbnail_path else ''

    @property
    def url(self):
        return f"{settings.MEDIA_URL}{self.path}"

    @property
    def thumbnail_url(self):
        return f"{settings.MEDIA_URL}{self.thumbnail_path}" if self.thumbnail_path else ''

    def __str__(self):
        return f"{self.get_photo_type_display()} for delivery {self.delivery_id}"

    class Meta:
        db_table = 'delivery_photos'
        verbose_name = 'Delivery Photo'
        ordering = ['created_at', 'id']
