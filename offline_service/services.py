"""
Offline capture queue: durable per-device staging of captures made without a
connection, replayed through the delivery workflow when the device is back.
"""
import logging
from datetime import timedelta
from django.conf import settings
from django.db.models import Count, F, Min
from django.utils import timezone

from delivery_service.exceptions import DeliveryWorkflowError, DeliveryValidationError
from delivery_service.models import DeliveryConfirmation
from .models import OfflineQueueItem, QueueItemKind, QueueItemStatus

logger = logging.getLogger(__name__)


class CaptureNotReplayed(Exception):
    """A photo upload refers to a queued capture that has not been replayed yet"""
    pass


class OfflineQueueService:
    """
    The offline queue of one device.
    """

    def __init__(self, device_id, workflow=None):
        if not device_id:
            raise ValueError("A device id is required")
        self.device_id = device_id
        self._workflow = workflow

    @property
    def workflow(self):
        if self._workflow is None:
            from delivery_service.services import DeliveryWorkflowService
            self._workflow = DeliveryWorkflowService()
        return self._workflow

    @property
    def items(self):
        return OfflineQueueItem.objects.filter(device_id=self.device_id)

    def enqueue(self, kind, payload, user=None):
        if kind not in QueueItemKind.values:
            raise ValueError(f"Unknown queue item kind '{kind}'")
        item = OfflineQueueItem.objects.create(device_id=self.device_id, kind=kind, payload=payload, user=user)
        logger.info(f"Queued {kind} {item.id} for device {self.device_id}")
        return item.id

    def users(self):
        """
        Ids of the users currently on this device: authors of open items and
        the driver of the device's last delivery.
        """
        users = set(self.items.filter(
            status__in=[QueueItemStatus.PENDING, QueueItemStatus.PROCESSING], user__isnull=False
        ).values_list('user_id', flat=True).distinct())
        last_driver = DeliveryConfirmation.objects.filter(
            device_id=self.device_id, delivered_by__isnull=False
        ).order_by('-created_at', '-pk').values_list('delivered_by_id', flat=True).first()
        if last_driver is not None:
            users.add(last_driver)
        return users

    def can_be_used_by(self, user):
        """
        Supervisors may act on any device, drivers on a device nobody else is using.
        """
        if user is None or not user.is_authenticated:
            return False
        if user.is_supervisor:
            return True
        return self.users() <= {user.pk}

    def has_pending(self):
        return self.items.filter(status=QueueItemStatus.PENDING).exists()

    def pending_items(self):
        return self.items.filter(status=QueueItemStatus.PENDING).order_by('created_at', 'id')

    def list_items(self, status=None):
        queryset = self.items.select_related('delivery').order_by('-created_at')
        if status:
            queryset = queryset.filter(status=status)
        return queryset

    def reclaim_stale(self, now=None):
        """
        Items left in processing by a worker that died go back to pending.
        """
        now = now or timezone.now()
        cutoff = now - timedelta(minutes=settings.OFFLINE_QUEUE_STALE_MINUTES)
        reclaimed = self.items.filter(status=QueueItemStatus.PROCESSING, updated_at__lt=cutoff).update(
            status=QueueItemStatus.PENDING, updated_at=now
        )
        if reclaimed:
            logger.warning(f"Reclaimed {reclaimed} stale item(s) on device {self.device_id}")
        return reclaimed

    def expire_items(self, now=None):
        now = now or timezone.now()
        cutoff = now - timedelta(hours=settings.OFFLINE_QUEUE_TTL_HOURS)
        expired = self.items.filter(status=QueueItemStatus.PENDING, created_at__lt=cutoff).update(
            status=QueueItemStatus.EXPIRED,
            last_error=f"Not replayed within {settings.OFFLINE_QUEUE_TTL_HOURS} hours",
            completed_at=now,
            updated_at=now,
        )
        if expired:
            logger.warning(f"Expired {expired} offline capture(s) on device {self.device_id}, manual follow-up needed")
        return expired

    def _claim(self, item_id):
        return self.items.filter(pk=item_id, status=QueueItemStatus.PENDING).update(
            status=QueueItemStatus.PROCESSING, attempts=F('attempts') + 1, updated_at=timezone.now()
        ) == 1

    def drain(self, now=None):
        """
        Replay pending items oldest first, each at most once in this pass.
        Returns {synced, failed, expired}.
        """
        now = now or timezone.now()
        result = {'synced': 0, 'failed': 0, 'expired': 0}

        self.reclaim_stale(now)
        result['expired'] = self.expire_items(now)

        for item_id in list(self.pending_items().values_list('id', flat=True)):
            if not self._claim(item_id):
                # Picked up by a concurrent drain
                continue
            item = OfflineQueueItem.objects.select_related('user').get(pk=item_id)
            try:
                delivery = self.replay(item)
            except DeliveryWorkflowError as e:
                item.mark_failed(f"{e.error_code}: {e.message}")
                logger.warning(f"Offline item {item.id} rejected: {e.message}")
                result['failed'] += 1
                continue
            except Exception as e:
                logger.exception(f"Offline item {item.id} failed on attempt {item.attempts}")
                item.mark_failed(str(e), retry=True)
                result['failed'] += 1
                continue

            item.mark_completed(delivery)
            result['synced'] += 1

        logger.info(f"Drained offline queue of device {self.device_id}: {result}")
        return result

    def replay(self, item):
        payload = item.payload or {}
        if item.kind == QueueItemKind.DELIVERY_CONFIRMATION:
            # A replay interrupted after its delivery committed is completed, not replayed twice
            delivery = DeliveryConfirmation.objects.filter(
                device_id=self.device_id, metadata__offline_queue_item_id=str(item.id)
            ).first()
            if delivery is not None:
                logger.warning(f"Offline item {item.id} was already replayed as delivery {delivery.pk}")
                return delivery

            capture = dict(payload.get('capture') or {})
            capture['metadata'] = {**(capture.get('metadata') or {}), 'offline_queue_item_id': str(item.id)}
            return self.workflow.confirm_delivery(
                payload.get('shipment_id'), capture, item.user, device_id=self.device_id
            )

        delivery = self._photo_target(payload)
        self.workflow.ensure_can_access_delivery(item.user, delivery)
        self.workflow.process_photos(delivery, payload.get('photos') or [])
        return delivery

    def _photo_target(self, payload):
        if payload.get('delivery_id'):
            delivery = DeliveryConfirmation.objects.select_related('shipment').filter(pk=payload['delivery_id']).first()
            if delivery is None:
                raise DeliveryValidationError(f"Delivery {payload['delivery_id']} does not exist")
            return delivery

        capture = self.items.filter(pk=payload.get('capture_item_id')).select_related('delivery__shipment').first()
        if capture is None:
            raise DeliveryValidationError("Photos refer to no delivery and no queued capture")
        if capture.status == QueueItemStatus.COMPLETED and capture.delivery is not None:
            return capture.delivery
        if capture.status in (QueueItemStatus.FAILED, QueueItemStatus.EXPIRED):
            raise DeliveryValidationError(f"The capture these photos belong to {capture.get_status_display().lower()}")
        raise CaptureNotReplayed(f"Capture {capture.id} has not been replayed yet")

    def statistics(self):
        counts = {status: 0 for status in QueueItemStatus.values}
        for row in self.items.order_by().values('status').annotate(count=Count('id')):
            counts[row['status']] = row['count']
        oldest = self.items.filter(status=QueueItemStatus.PENDING).aggregate(oldest=Min('created_at'))['oldest']
        return {
            'device_id': self.device_id,
            'counts': counts,
            'total': sum(counts.values()),
            'has_pending': counts[QueueItemStatus.PENDING] > 0,
            'oldest_pending_at': oldest,
        }

    def clear(self, statuses=(QueueItemStatus.COMPLETED,)):
        deleted, _ = self.items.filter(status__in=statuses).delete()
        return deleted
