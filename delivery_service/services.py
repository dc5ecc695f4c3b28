"""
Delivery workflow: validate a capture, persist it atomically, hand it to
the ERP worker and announce it to live subscribers.
"""
import logging
from datetime import datetime
from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django_q.tasks import async_task

from core_service.models import CustomUser
from erp_service.models import get_or_create_posting_status
from erp_service.services import ShipmentProvider
from offline_service.connectivity import ConnectivityMonitor
from offline_service.models import QueueItemKind
from offline_service.services import OfflineQueueService
from .broadcasting import (
    get_broadcaster, shipment_channel,
    DELIVERY_CONFIRMED, DELIVERY_STATUS_UPDATED, SIGNATURE_PROGRESS, DELIVERY_LOCATION_UPDATED,
)
from .exceptions import (
    DeliveryValidationError, InvalidGpsCoordinates, InvalidSignature,
    ShipmentNotDeliverable, DeliveryAccessDenied, SyncNotRetryable,
)
from .models import (
    DeliveryConfirmation, DeliverySignature, DeliveryStatus, SyncState, normalize_coordinate, normalize_accuracy,
)
from .photos import PhotoService
from .validators import validate_gps, validate_signature, calculate_signature_hash, estimate_progress, parse_strokes

logger = logging.getLogger(__name__)

SYNC_TASK = 'delivery_service.tasks.sync_delivery_to_erp'

CAPTURE_CONFIRMED = 'confirmed'
CAPTURE_QUEUED = 'queued'


class DeliveryWorkflowService:
    """
    Entry point for proof-of-delivery captures.
    """

    def __init__(self, shipment_provider=None, photo_service=None, broadcaster=None, connectivity=None):
        self.shipment_provider = shipment_provider or ShipmentProvider()
        self.photo_service = photo_service or PhotoService()
        self.broadcaster = broadcaster or get_broadcaster()
        self.connectivity = connectivity or ConnectivityMonitor()

    # Access control

    def resolve_shipment(self, shipment_id):
        shipment = self.shipment_provider.get_shipment(shipment_id)
        if shipment is None:
            raise ShipmentNotDeliverable(
                f"Shipment {shipment_id} does not exist",
                {'shipment_id': [f"Shipment {shipment_id} does not exist"]}
            )
        if not shipment.is_deliverable:
            raise ShipmentNotDeliverable(
                f"Shipment {shipment_id} cannot be delivered in status {shipment.status}",
                {'shipment_id': [f"Shipment is {shipment.get_status_display().lower()}"]}
            )
        return shipment

    @staticmethod
    def ensure_can_deliver(user: CustomUser, shipment):
        if user is not None and (user.is_supervisor or shipment.assigned_driver_id == user.pk):
            return
        raise DeliveryAccessDenied(f"You are not assigned to shipment {shipment.pk}")

    @staticmethod
    def ensure_can_access_delivery(user: CustomUser, delivery):
        if user is not None and (
            user.is_supervisor
            or delivery.delivered_by_id == user.pk
            or delivery.shipment.assigned_driver_id == user.pk
        ):
            return
        raise DeliveryAccessDenied(f"You do not have access to delivery {delivery.pk}")

    # Validation

    @staticmethod
    def _parse_delivered_at(value):
        if not value:
            return timezone.now()
        if isinstance(value, datetime):
            parsed = value
        else:
            parsed = parse_datetime(str(value))
            if parsed is None:
                raise DeliveryValidationError('Invalid delivery time', {'delivered_at': ['Not a valid date and time']})
        if timezone.is_naive(parsed):
            parsed = timezone.make_aware(parsed)
        return parsed

    def validate_capture(self, capture_input):
        """
        Check a capture before anything is written. Returns the cleaned
        values, the signature validation result and the photo validation results.
        """
        gps_errors = validate_gps(capture_input.get('gps_latitude'), capture_input.get('gps_longitude'))
        if gps_errors:
            raise InvalidGpsCoordinates('Invalid GPS coordinates', gps_errors)

        recipient_name = (capture_input.get('recipient_name') or '').strip()
        if not recipient_name:
            raise DeliveryValidationError('Recipient name is required', {'recipient_name': ['This field is required']})

        status = capture_input.get('status') or DeliveryStatus.DELIVERED
        if status not in DeliveryStatus.values:
            raise DeliveryValidationError('Invalid delivery status', {'status': [f"'{status}' is not a delivery status"]})

        signature_result = None
        signature = capture_input.get('signature')
        if signature:
            signature_result = validate_signature(signature)
            if not signature_result['valid']:
                raise InvalidSignature('Signature is not acceptable', {'signature': signature_result['errors']})

        photos = capture_input.get('photos') or []
        photo_results = self.photo_service.validate(photos) if photos else []

        cleaned = {
            'recipient_name': recipient_name,
            'status': status,
            'delivered_at': self._parse_delivered_at(capture_input.get('delivered_at')),
            'delivery_notes': (capture_input.get('delivery_notes') or '').strip(),
            'gps_latitude': normalize_coordinate(capture_input.get('gps_latitude')),
            'gps_longitude': normalize_coordinate(capture_input.get('gps_longitude')),
            'gps_accuracy': normalize_accuracy(capture_input.get('gps_accuracy')),
        }
        return cleaned, signature_result, photo_results

    # Capture

    def submit_capture(self, shipment_id, capture_input, user, device_id=None, connected=True):
        """
        Route a capture: straight to confirmation when the device is online,
        onto the device's offline queue otherwise. Returns (outcome, result)
        where result is the delivery or the queue item id.
        """
        if device_id and (not connected or self.connectivity.is_offline(device_id)):
            queue_id = OfflineQueueService(device_id).enqueue(
                QueueItemKind.DELIVERY_CONFIRMATION,
                {'shipment_id': shipment_id, 'capture': capture_input},
                user=user,
            )
            return CAPTURE_QUEUED, queue_id
        return CAPTURE_CONFIRMED, self.confirm_delivery(shipment_id, capture_input, user, device_id=device_id)

    def confirm_delivery(self, shipment_id, capture_input, user, device_id=None):
        shipment = self.resolve_shipment(shipment_id)
        self.ensure_can_deliver(user, shipment)
        cleaned, signature_result, photo_results = self.validate_capture(capture_input)

        with transaction.atomic():
            delivery = DeliveryConfirmation.objects.create(
                shipment=shipment,
                delivered_by=user,
                device_id=device_id or '',
                metadata=capture_input.get('metadata') or {},
                **cleaned
            )
            if signature_result is not None:
                self._create_signature(delivery, capture_input, signature_result)
            if photo_results:
                self.photo_service.process_photos(delivery, capture_input['photos'], validated=photo_results)
            delivery.seal()
            transaction.on_commit(lambda: self._after_confirmation(delivery))

        logger.info(f"Delivery {delivery.pk} confirmed for shipment {shipment.pk} by {user.get_username()}")
        return delivery

    @staticmethod
    def _create_signature(delivery, capture_input, signature_result):
        signature = capture_input['signature']
        return DeliverySignature.objects.create(
            delivery=delivery,
            signature_data=signature['signature_data'],
            signature_hash=calculate_signature_hash(signature['signature_data']),
            quality_score=signature_result['quality_score'],
            stroke_data=[[list(point) for point in stroke] for stroke in parse_strokes(signature.get('strokes'))],
            canvas_width=signature.get('canvas_width') or 400,
            canvas_height=signature.get('canvas_height') or 200,
            ip_address=capture_input.get('ip_address'),
            user_agent=(capture_input.get('user_agent') or '')[:500],
            device_info=signature.get('device_info') or {},
            metadata={
                'client_quality_score': signature.get('quality_score'),
                'warnings': signature_result['warnings'],
            },
        )

    def _after_confirmation(self, delivery):
        """
        Runs once the delivery is committed. Announcing is best effort; the
        hand-off to the ERP worker always happens.
        """
        try:
            self._announce_confirmation(delivery)
        except Exception:
            logger.exception(f"Could not announce delivery {delivery.pk}, handing it to the ERP worker anyway")
        self.dispatch_sync(delivery)

    def _announce_confirmation(self, delivery):
        self.broadcaster.publish_delivery_event(delivery, DELIVERY_CONFIRMED)
        signature = delivery.get_signature()
        if signature is not None:
            self.broadcaster.publish(shipment_channel(delivery.shipment_id), SIGNATURE_PROGRESS, {
                'delivery_id': delivery.pk,
                'shipment_id': delivery.shipment_id,
                'stage': 'completed',
                'stroke_count': signature.stroke_count,
                'quality_score': signature.quality_score,
                'is_legally_valid': signature.is_legally_valid(),
            })
        if delivery.has_gps:
            self.broadcaster.publish_delivery_event(delivery, DELIVERY_LOCATION_UPDATED, {
                'latitude': str(delivery.gps_latitude),
                'longitude': str(delivery.gps_longitude),
                'accuracy': str(delivery.gps_accuracy) if delivery.gps_accuracy is not None else None,
            })

    @staticmethod
    def dispatch_sync(delivery):
        """
        Hand the delivery to the ERP worker. If the task queue is unavailable the
        delivery stays pending and the periodic sweep dispatches it later.
        """
        DeliveryConfirmation.objects.filter(
            pk=delivery.pk, sync_state__in=[SyncState.PENDING, SyncState.QUEUED]
        ).update(sync_state=SyncState.QUEUED, updated_at=timezone.now())
        try:
            async_task(SYNC_TASK, delivery.pk, q_options={
                'task_name': f'Delivery-{delivery.pk}-to-ERP',
            })
        except Exception as e:
            DeliveryConfirmation.objects.filter(pk=delivery.pk, sync_state=SyncState.QUEUED).update(
                sync_state=SyncState.PENDING
            )
            logger.error(f"Could not queue ERP sync of delivery {delivery.pk}, left pending: {e}")
            return False
        return True

    def process_photos(self, delivery, photos):
        """
        Attach photos to an existing delivery. A delivery that had already
        reached the ERP goes back to pending and is dispatched again. One that
        is queued or being pushed goes back to pending too, which tells the
        worker holding it to push the new photos before it marks it synced.
        """
        with transaction.atomic():
            # Row lock; serializes with the worker marking the delivery synced
            sync_state = DeliveryConfirmation.objects.select_for_update().values_list(
                'sync_state', flat=True
            ).get(pk=delivery.pk)
            created = self.photo_service.process_photos(delivery, photos)
            if created and sync_state in (SyncState.SYNCED, SyncState.QUEUED):
                DeliveryConfirmation.objects.filter(pk=delivery.pk).update(
                    sync_state=SyncState.PENDING, updated_at=timezone.now()
                )
                delivery.sync_state = SyncState.PENDING
                if sync_state == SyncState.SYNCED:
                    transaction.on_commit(lambda: self.dispatch_sync(delivery))
        return created

    # Lifecycle updates

    def update_status(self, delivery, status, user):
        self.ensure_can_access_delivery(user, delivery)
        if status not in DeliveryStatus.values:
            raise DeliveryValidationError('Invalid delivery status', {'status': [f"'{status}' is not a delivery status"]})

        previous = delivery.status
        delivery.status = status
        delivery.save(update_fields=['status', 'updated_at'])
        logger.info(f"Delivery {delivery.pk} status changed from {previous} to {status} by {user.get_username()}")
        self.broadcaster.publish_delivery_event(delivery, DELIVERY_STATUS_UPDATED, {'previous_status': previous})
        return delivery

    def record_location(self, delivery, latitude, longitude, accuracy, user):
        """
        Live position of the driver around a delivery. Announced only; the
        captured coordinates of the delivery never change.
        """
        self.ensure_can_access_delivery(user, delivery)
        if latitude is None or longitude is None:
            raise InvalidGpsCoordinates('Both coordinates are required', {
                'gps_latitude' if latitude is None else 'gps_longitude': ['This field is required'],
            })
        gps_errors = validate_gps(latitude, longitude)
        if gps_errors:
            raise InvalidGpsCoordinates('Invalid GPS coordinates', gps_errors)

        events = self.broadcaster.publish_delivery_event(delivery, DELIVERY_LOCATION_UPDATED, {
            'latitude': str(normalize_coordinate(latitude)),
            'longitude': str(normalize_coordinate(longitude)),
            'accuracy': accuracy,
            'reported_by': user.pk,
        })
        return events[0]

    def report_signature_progress(self, shipment_id, strokes, user, canvas_size=None):
        shipment = self.resolve_shipment(shipment_id)
        self.ensure_can_deliver(user, shipment)
        try:
            progress = estimate_progress(strokes, canvas_size)
        except ValueError as e:
            raise DeliveryValidationError('Invalid stroke data', {'strokes': [str(e)]})

        self.broadcaster.publish(shipment_channel(shipment.pk), SIGNATURE_PROGRESS, {
            'delivery_id': None,
            'shipment_id': shipment.pk,
            'stage': 'drawing',
            **progress,
        })
        return progress

    def request_resync(self, delivery, user):
        """
        Manual re-sync; the only way out of SyncFailed.
        """
        if user is None or not user.is_supervisor:
            raise DeliveryAccessDenied("Only supervisors can re-sync deliveries")
        if not delivery.reset_for_resync():
            raise SyncNotRetryable(f"Delivery {delivery.pk} is {delivery.get_sync_state_display()}, only failed syncs can be retried")

        get_or_create_posting_status(delivery).reset()
        self.dispatch_sync(delivery)
        return delivery

    @staticmethod
    def get_workflow_status(delivery):
        return delivery.workflow_status()
