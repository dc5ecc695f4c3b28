import logging
from datetime import timedelta
from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from .models import DeliveryConfirmation, SyncState
from .sync import ERPSyncService

logger = logging.getLogger(__name__)

# Deliveries waiting this long without a worker holding them lost their hand-off
PENDING_SWEEP_MINUTES = 5


def sync_delivery_to_erp(delivery_id):
    """
    Push one delivery to the ERP; the task django-q runs for every confirmation.
    """
    result = ERPSyncService().sync(delivery_id)
    if not result.success:
        logger.error(f"ERP sync of delivery {delivery_id} did not succeed: {result.error}")
    return result.as_dict()


def sync_deliveries_batch(delivery_ids):
    return ERPSyncService().sync_batch(list(delivery_ids))


def sync_pending_deliveries():
    """
    Periodic sweep for deliveries that never reached the worker: pending ones,
    and queued ones whose task was lost, cancelled or killed. Deliveries in
    SyncFailed are left alone.
    """
    from .services import DeliveryWorkflowService

    now = timezone.now()
    cutoff = now - timedelta(minutes=PENDING_SWEEP_MINUTES)
    live_claims = now - timedelta(seconds=settings.ERP_SYNC_LOCK_TIMEOUT)
    lost = DeliveryConfirmation.objects.filter(
        Q(sync_state=SyncState.PENDING, created_at__lt=cutoff)
        | Q(sync_state=SyncState.QUEUED, updated_at__lt=cutoff)
    ).filter(
        Q(sync_started_at__isnull=True) | Q(sync_started_at__lt=live_claims)
    ).order_by('created_at')
    dispatched = sum(1 for delivery in lost if DeliveryWorkflowService.dispatch_sync(delivery))
    if dispatched:
        logger.info(f"Dispatched {dispatched} pending delivery sync(s)")
    return dispatched


def resync_delivery(delivery_id):
    """
    Manual re-sync started from the admin.
    """
    from erp_service.models import get_or_create_posting_status

    delivery = DeliveryConfirmation.objects.get(pk=delivery_id)
    if delivery.reset_for_resync():
        get_or_create_posting_status(delivery).reset()
    return sync_delivery_to_erp(delivery_id)


def register_schedules(sender=None, **kwargs):
    """
    Create the periodic jobs of the ERP worker (run after migrate).
    """
    from django_q.models import Schedule

    Schedule.objects.update_or_create(
        func='delivery_service.tasks.sync_pending_deliveries',
        defaults={'name': 'Sweep pending delivery syncs', 'schedule_type': Schedule.MINUTES, 'minutes': 5},
    )
