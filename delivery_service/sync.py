"""
ERP synchronization of confirmed deliveries.

A sync pushes, in order: the shipment status, the signature image, every
photo and, when the delivery has coordinates, a tracking row. Each step is
idempotent on the ERP side (natural key of shipment, document type and
delivery) and steps the ERP already accepted are recorded on the delivery's
ERPPostingStatus so a later attempt picks up where the last one stopped.

Transient errors are retried up to ERP_SYNC_MAX_ATTEMPTS times with
exponential backoff; a rejection from the ERP is terminal at once.
"""
import logging
import threading
from datetime import timedelta
from dataclasses import dataclass, asdict
from django.conf import settings
from django.db.models import Count, F, Max, Q, Sum
from django.utils import timezone
from django.utils.dateparse import parse_date

from core_service.helpers import decode_base64
from erp_service.models import get_or_create_posting_status
from erp_service.rest import RESTServices, ERPConnectionError, ERPRejectionError
from erp_service.util import format_datetime_to_iso8601, to_unix_timestamp
from offline_service.models import OfflineQueueItem, QueueItemStatus
from .broadcasting import get_broadcaster, DELIVERY_STATUS_UPDATED
from .models import DeliveryConfirmation, SyncState

logger = logging.getLogger(__name__)

AWAITING_SYNC = (SyncState.PENDING, SyncState.QUEUED)


def next_delay(attempt, base=None, cap=None):
    """
    Seconds to wait after the given failed attempt (1-based): base, 2 x base,
    4 x base ... never more than cap.
    """
    base = settings.ERP_SYNC_BACKOFF_BASE if base is None else base
    cap = settings.ERP_SYNC_BACKOFF_CAP if cap is None else cap
    if attempt < 1:
        return 0
    return min(base * (2 ** (attempt - 1)), cap)


@dataclass
class SyncResult:
    delivery_id: int
    success: bool
    sync_state: str
    attempts: int = 0
    error: str = ''

    def as_dict(self):
        return asdict(self)


def _image_extension(data_uri, default='png'):
    header = (data_uri or '').split(',', 1)[0]
    for mime, extension in (('image/jpeg', 'jpg'), ('image/png', 'png'), ('image/gif', 'gif')):
        if mime in header:
            return extension
    return default


class ERPSyncService:
    """
    Pushes deliveries to the ERP. The client, the sleep used between attempts
    and the broadcaster are injectable; the default sleep waits on the
    cancellation event so cancel() interrupts a backoff.
    """

    def __init__(self, client=None, max_attempts=None, sleep=None, broadcaster=None):
        self._client = client
        self.max_attempts = max_attempts or settings.ERP_SYNC_MAX_ATTEMPTS
        self._cancelled = threading.Event()
        self.sleep = sleep or self._cancelled.wait
        self.broadcaster = broadcaster or get_broadcaster()

    @property
    def client(self):
        if self._client is None:
            self._client = RESTServices()
        return self._client

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self):
        return self._cancelled.is_set()

    def sync(self, delivery_id) -> SyncResult:
        try:
            delivery = DeliveryConfirmation.objects.select_related('shipment', 'delivered_by').get(pk=delivery_id)
        except DeliveryConfirmation.DoesNotExist:
            logger.error(f"Cannot sync delivery {delivery_id}: it does not exist")
            return SyncResult(delivery_id, False, '', error=f"Delivery {delivery_id} does not exist")

        if delivery.is_synced:
            logger.info(f"Delivery {delivery_id} is already synced, nothing to push")
            return SyncResult(delivery_id, True, delivery.sync_state)
        if delivery.sync_state == SyncState.SYNC_FAILED:
            # Terminal until someone asks for a manual re-sync
            return SyncResult(delivery_id, False, delivery.sync_state, error=delivery.sync_error)

        claim = DeliveryConfirmation.claim_for_sync(delivery_id)
        if claim is None:
            delivery.refresh_from_db(fields=['sync_state'])
            if delivery.is_synced:
                return SyncResult(delivery_id, True, delivery.sync_state)
            logger.warning(f"Delivery {delivery_id} is being synced by another worker")
            return SyncResult(delivery_id, False, delivery.sync_state, error="Sync already in progress")

        try:
            return self._sync_claimed(delivery)
        finally:
            DeliveryConfirmation.release_sync_claim(delivery_id, claim)

    def _sync_claimed(self, delivery):
        posting = get_or_create_posting_status(delivery, request_payload={
            'shipment_id': delivery.shipment_id,
            'delivery_id': delivery.pk,
            'verification_hash': delivery.verification_hash,
        })
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            delivery.refresh_from_db(fields=['sync_state'])
            if delivery.is_synced:
                return SyncResult(delivery.pk, True, delivery.sync_state, attempt - 1)
            if self.cancelled:
                # Back to pending so the periodic sweep dispatches it again
                DeliveryConfirmation.objects.filter(pk=delivery.pk, sync_state=SyncState.QUEUED).update(
                    sync_state=SyncState.PENDING, updated_at=timezone.now()
                )
                delivery.refresh_from_db(fields=['sync_state'])
                logger.warning(f"ERP sync of delivery {delivery.pk} cancelled after {attempt - 1} attempt(s)")
                return SyncResult(delivery.pk, False, delivery.sync_state, attempt - 1, "Sync cancelled")

            DeliveryConfirmation.objects.filter(pk=delivery.pk).update(sync_attempts=F('sync_attempts') + 1)
            delivery.sync_attempts += 1
            try:
                self._reopen(delivery)
                self.push(delivery, posting)
                while not self._close(delivery):
                    logger.info(f"Photos were added to delivery {delivery.pk} during its sync, pushing them as well")
                    self._reopen(delivery)
                    self.push(delivery, posting)
            except ERPConnectionError as e:
                last_error = e
                posting.increment_retry()
                logger.warning(f"ERP sync attempt {attempt}/{self.max_attempts} for delivery {delivery.pk} failed: {e}")
                if attempt < self.max_attempts:
                    self.sleep(next_delay(attempt))
                continue
            except ERPRejectionError as e:
                return self._mark_failed(delivery, posting, f"ERP rejected delivery sync: {e}", attempt)
            except Exception as e:
                logger.exception(f"Unexpected error while syncing delivery {delivery.pk}")
                return self._mark_failed(delivery, posting, f"ERP sync aborted: {e}", attempt)

            return self._mark_synced(delivery, posting, attempt)

        return self._mark_failed(
            delivery, posting, f"ERP sync failed after {self.max_attempts} attempts: {last_error}", self.max_attempts
        )

    def push(self, delivery, posting):
        """
        Run every step the ERP has not accepted yet for this delivery.
        """
        done = set(posting.completed_steps)
        shipment = delivery.shipment
        shipment_id = delivery.shipment_id

        if 'status' not in done:
            response = self.client.update_shipment_status(shipment_id, {
                'status': delivery.status,
                'date_delivery': to_unix_timestamp(delivery.delivered_at),
                'delivery_id': delivery.pk,
                'recipient_name': delivery.recipient_name,
                'delivered_by': delivery.delivered_by.get_username() if delivery.delivered_by else None,
                'note_private': f"Delivered to {delivery.recipient_name} on "
                                f"{format_datetime_to_iso8601(delivery.delivered_at)}. "
                                f"Verification: {delivery.verification_hash}",
            }, idempotency_key=f"{shipment_id}:status:{delivery.pk}")
            posting.complete_step('status', response)

        signature = delivery.get_signature()
        if signature is not None and 'signature' not in done:
            extension = _image_extension(signature.signature_data)
            response = self.client.upload_document(
                shipment.erp_reference,
                f"delivery_signature_{delivery.pk}.{extension}",
                decode_base64(signature.signature_data),
                idempotency_key=f"{shipment_id}:delivery_signature:{delivery.pk}",
            )
            posting.complete_step('signature', response)

        for photo in delivery.photos.all():
            step = f"photo:{photo.pk}"
            if step in done:
                continue
            with open(photo.absolute_path, 'rb') as f:
                content = f.read()
            extension = photo.path.rsplit('.', 1)[-1]
            response = self.client.upload_document(
                shipment.erp_reference,
                f"delivery_photo_{delivery.pk}_{photo.pk}.{extension}",
                content,
                idempotency_key=f"{shipment_id}:delivery_photo:{delivery.pk}:{photo.pk}",
            )
            posting.complete_step(step, response)

        if delivery.has_gps and 'tracking' not in done:
            response = self.client.insert_tracking(shipment_id, {
                'latitude': str(delivery.gps_latitude),
                'longitude': str(delivery.gps_longitude),
                'accuracy': str(delivery.gps_accuracy) if delivery.gps_accuracy is not None else None,
                'tracking_date': to_unix_timestamp(delivery.delivered_at),
                'tracking_type': 'delivery',
                'delivery_id': delivery.pk,
                'note': f"Delivery confirmed - {delivery.recipient_name}",
            }, idempotency_key=f"{shipment_id}:tracking:{delivery.pk}")
            posting.complete_step('tracking', response)

    @staticmethod
    def _reopen(delivery):
        DeliveryConfirmation.objects.filter(pk=delivery.pk, sync_state=SyncState.PENDING).update(
            sync_state=SyncState.QUEUED, updated_at=timezone.now()
        )

    @staticmethod
    def _close(delivery):
        """
        Mark the delivery synced unless photos were added while it was being
        pushed, in which case it is back to pending and False is returned.
        """
        now = timezone.now()
        closed = DeliveryConfirmation.objects.filter(pk=delivery.pk, sync_state=SyncState.QUEUED).update(
            sync_state=SyncState.SYNCED, erp_sync_timestamp=now, sync_error='', updated_at=now
        )
        if closed:
            delivery.sync_state = SyncState.SYNCED
            delivery.erp_sync_timestamp = now
            delivery.sync_error = ''
            return True

        delivery.refresh_from_db(fields=['sync_state'])
        if delivery.sync_state != SyncState.PENDING:
            raise RuntimeError(f"Delivery {delivery.pk} changed to {delivery.sync_state} while being pushed")
        return False

    def _mark_synced(self, delivery, posting, attempts):
        posting.mark_success()
        logger.info(f"Delivery {delivery.pk} synced to the ERP (shipment {delivery.shipment_id})")
        self._announce(delivery)
        return SyncResult(delivery.pk, True, delivery.sync_state, attempts)

    def _mark_failed(self, delivery, posting, message, attempts):
        delivery.sync_state = SyncState.SYNC_FAILED
        delivery.sync_error = message
        delivery.save(update_fields=['sync_state', 'sync_error', 'updated_at'])
        posting.mark_failure(message)
        logger.error(f"Delivery {delivery.pk}: {message}")
        self._announce(delivery)
        return SyncResult(delivery.pk, False, delivery.sync_state, attempts, message)

    def _announce(self, delivery):
        try:
            self.broadcaster.publish_delivery_event(delivery, DELIVERY_STATUS_UPDATED, {
                'sync_error': delivery.sync_error,
                'erp_sync_timestamp': delivery.erp_sync_timestamp.isoformat() if delivery.erp_sync_timestamp else None,
            })
        except Exception:
            logger.exception(f"Could not announce the sync outcome of delivery {delivery.pk}")

    def sync_batch(self, delivery_ids):
        """
        Sync each delivery on its own; a failure never undoes another delivery's success.
        """
        result = {'total': len(delivery_ids), 'successful': 0, 'failed': 0, 'errors': {}}
        for delivery_id in delivery_ids:
            outcome = self.sync(delivery_id)
            if outcome.success:
                result['successful'] += 1
            else:
                result['failed'] += 1
                result['errors'][delivery_id] = outcome.error
        logger.info(f"ERP batch sync finished: {result['successful']}/{result['total']} succeeded")
        return result

    @staticmethod
    def get_sync_statistics(filters=None):
        filters = filters or {}
        queryset = DeliveryConfirmation.objects.all()

        if filters.get('user_id'):
            queryset = queryset.filter(delivered_by_id=filters['user_id'])
        date_from = filters.get('date_from')
        if date_from:
            queryset = queryset.filter(created_at__date__gte=parse_date(date_from) if isinstance(date_from, str) else date_from)
        date_to = filters.get('date_to')
        if date_to:
            queryset = queryset.filter(created_at__date__lte=parse_date(date_to) if isinstance(date_to, str) else date_to)

        counts = queryset.aggregate(
            total=Count('id'),
            synced=Count('id', filter=Q(sync_state=SyncState.SYNCED)),
            pending=Count('id', filter=Q(sync_state__in=AWAITING_SYNC)),
            failed=Count('id', filter=Q(sync_state=SyncState.SYNC_FAILED)),
            last_synced_at=Max('erp_sync_timestamp'),
        )
        total = counts['total']
        counts['success_rate'] = round(counts['synced'] / total * 100, 2) if total else 0.0
        return counts

    def get_sync_monitoring_stats(self):
        stats = self.get_sync_statistics()
        live_claims = timezone.now() - timedelta(seconds=settings.ERP_SYNC_LOCK_TIMEOUT)
        recent_failures = DeliveryConfirmation.objects.filter(sync_state=SyncState.SYNC_FAILED).order_by('-updated_at')[:10]

        stats.update({
            'queue_depth': DeliveryConfirmation.objects.filter(sync_state__in=AWAITING_SYNC).count(),
            'offline_queue_depth': OfflineQueueItem.objects.filter(status=QueueItemStatus.PENDING).count(),
            'is_sync_in_progress': DeliveryConfirmation.objects.filter(sync_started_at__gte=live_claims).exists(),
            'total_attempts': DeliveryConfirmation.objects.aggregate(total=Sum('sync_attempts'))['total'] or 0,
            'recent_failures': [
                {
                    'delivery_id': delivery.pk,
                    'shipment_id': delivery.shipment_id,
                    'error': delivery.sync_error,
                    'failed_at': delivery.updated_at,
                }
                for delivery in recent_failures
            ],
        })
        return stats
