import json
import logging
from django.conf import settings
from django.core.exceptions import PermissionDenied as SubscriptionDenied
from django.db.models import Q
from django.http import StreamingHttpResponse
from django_q.tasks import async_task
from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes, renderer_classes
from rest_framework.renderers import BaseRenderer, JSONRenderer
from erp_service.rest import ERPError, ERPConnectionError
from offline_service.models import QueueItemKind
from offline_service.services import OfflineQueueService
from overrides.authenticate import CombinedAuthentication
from overrides.rest_framework import APIResponse, CustomPagination
from .broadcasting import get_broadcaster, event_stream
from .exceptions import DeliveryWorkflowError, DeliveryAccessDenied, SyncNotRetryable
from .models import DeliveryConfirmation
from .serializers import (
	DeliveryCaptureSerializer, DeliveryConfirmationSerializer, DeliveryPhotoSerializer,
	PhotoUploadSerializer, StatusUpdateSerializer, LocationSerializer,
	SignatureProgressSerializer, BatchSyncSerializer
)
from .services import DeliveryWorkflowService, CAPTURE_QUEUED
from .sync import ERPSyncService

logger = logging.getLogger(__name__)

BATCH_SYNC_TASK = 'delivery_service.tasks.sync_deliveries_batch'


class EventStreamRenderer(BaseRenderer):
	media_type = 'text/event-stream'
	format = 'sse'
	charset = 'utf-8'

	def render(self, data, accepted_media_type=None, renderer_context=None):
		if isinstance(data, bytes):
			return data
		if isinstance(data, str):
			return data.encode(self.charset)
		# Error envelopes sent before the stream starts
		return f"event: error\ndata: {json.dumps(data)}\n\n".encode(self.charset)


def workflow_error_response(error: DeliveryWorkflowError):
	if isinstance(error, DeliveryAccessDenied):
		code = status.HTTP_403_FORBIDDEN
	elif isinstance(error, SyncNotRetryable):
		code = status.HTTP_409_CONFLICT
	else:
		code = status.HTTP_422_UNPROCESSABLE_ENTITY
	return APIResponse(
		status=code,
		message=error.message,
		data={'error_code': error.error_code, 'field_errors': error.field_errors}
	)


def erp_error_response(error: ERPError):
	code = status.HTTP_503_SERVICE_UNAVAILABLE if isinstance(error, ERPConnectionError) else status.HTTP_502_BAD_GATEWAY
	return APIResponse(status=code, message=f"ERP unavailable: {error}")


def validation_failed(errors):
	return APIResponse(
		status=status.HTTP_422_UNPROCESSABLE_ENTITY,
		message='Validation error',
		data={'error_code': 'VALIDATION_ERROR', 'field_errors': errors}
	)


def get_device_id(request):
	return request.headers.get('X-Device-Id') or request.data.get('device_id') or ''


def get_client_ip(request):
	forwarded = request.META.get('HTTP_X_FORWARDED_FOR')
	if forwarded:
		return forwarded.split(',')[0].strip()
	return request.META.get('REMOTE_ADDR')


def get_delivery(pk):
	return DeliveryConfirmation.objects.select_related('shipment', 'delivered_by').filter(pk=pk).first()


def delivery_not_found(pk):
	return APIResponse(status=status.HTTP_404_NOT_FOUND, message=f"Delivery {pk} not found")


@api_view(['POST'])
@authentication_classes([CombinedAuthentication])
def confirm_delivery(request, shipment_id):
	"""
		Capture the proof of delivery of a shipment. Devices that report themselves
		offline, or that the connectivity monitor knows to be offline, have the
		capture staged on their offline queue instead.
	"""
	serializer = DeliveryCaptureSerializer(data=request.data)
	if not serializer.is_valid():
		return validation_failed(serializer.errors)

	capture = dict(serializer.validated_data)
	connected = capture.pop('connectivity') != 'offline'
	device_id = get_device_id(request)
	if not connected and not device_id:
		return validation_failed({'device_id': ['A device id is required to queue an offline capture']})

	capture['ip_address'] = get_client_ip(request)
	capture['user_agent'] = request.META.get('HTTP_USER_AGENT', '')

	try:
		outcome, result = DeliveryWorkflowService().submit_capture(
			shipment_id, capture, request.user, device_id=device_id, connected=connected
		)
	except DeliveryWorkflowError as e:
		logger.warning(f"Delivery capture for shipment {shipment_id} rejected: {e.message}")
		return workflow_error_response(e)
	except ERPError as e:
		logger.error(f"Could not look up shipment {shipment_id} in the ERP: {e}")
		return erp_error_response(e)
	except Exception as e:
		logger.exception(f"Unexpected error confirming delivery of shipment {shipment_id}")
		return APIResponse(
			status=status.HTTP_500_INTERNAL_SERVER_ERROR,
			message=f"An error occurred while confirming the delivery: {e}"
		)

	if outcome == CAPTURE_QUEUED:
		return APIResponse(
			status=status.HTTP_202_ACCEPTED,
			message='Capture queued for sync when the device is back online',
			data={'queue_item_id': str(result), 'device_id': device_id}
		)
	return APIResponse(
		status=status.HTTP_201_CREATED,
		message=f"Delivery {result.pk} confirmed for shipment {shipment_id}",
		data=DeliveryConfirmationSerializer(result).data
	)


@api_view(['GET'])
@authentication_classes([CombinedAuthentication])
def get_deliveries(request):
	"""
		Deliveries the user captured or is the assigned driver for; supervisors see all.
		Filters: shipment_id, status, sync_state
	"""
	queryset = DeliveryConfirmation.objects.select_related('shipment', 'delivered_by').prefetch_related('photos')
	if not request.user.is_supervisor:
		queryset = queryset.filter(Q(delivered_by=request.user) | Q(shipment__assigned_driver=request.user))

	shipment_id = request.query_params.get('shipment_id')
	if shipment_id:
		queryset = queryset.filter(shipment_id=shipment_id)
	status_filter = request.query_params.get('status')
	if status_filter:
		queryset = queryset.filter(status=status_filter)
	sync_state = request.query_params.get('sync_state')
	if sync_state:
		queryset = queryset.filter(sync_state=sync_state)

	paginator = CustomPagination()
	page = paginator.paginate_queryset(queryset.order_by('-created_at'), request)
	serializer = DeliveryConfirmationSerializer(page, many=True)
	return APIResponse(
		status=status.HTTP_200_OK,
		message='Deliveries fetched successfully',
		data=paginator.get_paginated_response(serializer.data).data
	)


@api_view(['GET'])
@authentication_classes([CombinedAuthentication])
def get_delivery_detail(request, pk):
	delivery = get_delivery(pk)
	if delivery is None:
		return delivery_not_found(pk)
	try:
		DeliveryWorkflowService.ensure_can_access_delivery(request.user, delivery)
	except DeliveryAccessDenied as e:
		return workflow_error_response(e)

	data = DeliveryConfirmationSerializer(delivery).data
	data['workflow_status'] = DeliveryWorkflowService.get_workflow_status(delivery)
	return APIResponse(status=status.HTTP_200_OK, message='Delivery fetched successfully', data=data)


@api_view(['POST'])
@authentication_classes([CombinedAuthentication])
def upload_photos(request, pk):
	delivery = get_delivery(pk)
	if delivery is None:
		return delivery_not_found(pk)

	serializer = PhotoUploadSerializer(data=request.data)
	if not serializer.is_valid():
		return validation_failed(serializer.errors)

	workflow = DeliveryWorkflowService()
	photos = [dict(photo) for photo in serializer.validated_data['photos']]
	device_id = get_device_id(request)
	try:
		workflow.ensure_can_access_delivery(request.user, delivery)
		if serializer.validated_data['connectivity'] == 'offline' and device_id:
			queue_id = OfflineQueueService(device_id).enqueue(
				QueueItemKind.PHOTO_UPLOAD, {'delivery_id': delivery.pk, 'photos': photos}, user=request.user
			)
			return APIResponse(
				status=status.HTTP_202_ACCEPTED,
				message='Photos queued for upload when the device is back online',
				data={'queue_item_id': str(queue_id), 'device_id': device_id}
			)
		created = workflow.process_photos(delivery, photos)
	except DeliveryWorkflowError as e:
		logger.warning(f"Photos for delivery {pk} rejected: {e.message}")
		return workflow_error_response(e)

	return APIResponse(
		status=status.HTTP_201_CREATED,
		message=f"{len(created)} photo(s) added to delivery {pk}",
		data=DeliveryPhotoSerializer(created, many=True).data
	)


@api_view(['POST'])
@authentication_classes([CombinedAuthentication])
def update_delivery_status(request, pk):
	delivery = get_delivery(pk)
	if delivery is None:
		return delivery_not_found(pk)

	serializer = StatusUpdateSerializer(data=request.data)
	if not serializer.is_valid():
		return validation_failed(serializer.errors)

	try:
		delivery = DeliveryWorkflowService().update_status(delivery, serializer.validated_data['status'], request.user)
	except DeliveryWorkflowError as e:
		return workflow_error_response(e)
	return APIResponse(
		status=status.HTTP_200_OK,
		message=f"Delivery {pk} is now {delivery.get_status_display().lower()}",
		data=DeliveryConfirmationSerializer(delivery).data
	)


@api_view(['POST'])
@authentication_classes([CombinedAuthentication])
def record_location(request, pk):
	delivery = get_delivery(pk)
	if delivery is None:
		return delivery_not_found(pk)

	serializer = LocationSerializer(data=request.data)
	if not serializer.is_valid():
		return validation_failed(serializer.errors)

	try:
		event = DeliveryWorkflowService().record_location(
			delivery,
			serializer.validated_data.get('gps_latitude'),
			serializer.validated_data.get('gps_longitude'),
			serializer.validated_data.get('gps_accuracy'),
			request.user,
		)
	except DeliveryWorkflowError as e:
		return workflow_error_response(e)
	return APIResponse(status=status.HTTP_200_OK, message='Location published', data=event)


@api_view(['POST'])
@authentication_classes([CombinedAuthentication])
def resync_delivery(request, pk):
	delivery = get_delivery(pk)
	if delivery is None:
		return delivery_not_found(pk)
	try:
		DeliveryWorkflowService().request_resync(delivery, request.user)
	except DeliveryWorkflowError as e:
		return workflow_error_response(e)
	return APIResponse(status=status.HTTP_202_ACCEPTED, message=f"ERP re-sync of delivery {pk} queued")


@api_view(['POST'])
@authentication_classes([CombinedAuthentication])
def signature_progress(request, shipment_id):
	serializer = SignatureProgressSerializer(data=request.data)
	if not serializer.is_valid():
		return validation_failed(serializer.errors)

	canvas_size = None
	if serializer.validated_data.get('canvas_width') and serializer.validated_data.get('canvas_height'):
		canvas_size = (serializer.validated_data['canvas_width'], serializer.validated_data['canvas_height'])
	try:
		progress = DeliveryWorkflowService().report_signature_progress(
			shipment_id, serializer.validated_data['strokes'], request.user, canvas_size
		)
	except DeliveryWorkflowError as e:
		return workflow_error_response(e)
	except ERPError as e:
		return erp_error_response(e)
	return APIResponse(status=status.HTTP_200_OK, message='Signature progress published', data=progress)


@api_view(['GET'])
@authentication_classes([CombinedAuthentication])
def sync_statistics(request):
	"""
		ERP sync statistics. Filters: user_id, date_from, date_to (YYYY-MM-DD).
		Drivers only ever see their own deliveries.
	"""
	filters = {
		'user_id': request.query_params.get('user_id'),
		'date_from': request.query_params.get('date_from'),
		'date_to': request.query_params.get('date_to'),
	}
	if not request.user.is_supervisor:
		filters['user_id'] = request.user.pk
	return APIResponse(
		status=status.HTTP_200_OK,
		message='Sync statistics fetched successfully',
		data=ERPSyncService.get_sync_statistics(filters)
	)


@api_view(['GET'])
@authentication_classes([CombinedAuthentication])
def sync_monitoring(request):
	if not request.user.is_supervisor:
		return APIResponse(status=status.HTTP_403_FORBIDDEN, message='Only supervisors can monitor the ERP sync')
	return APIResponse(
		status=status.HTTP_200_OK,
		message='Sync monitoring fetched successfully',
		data=ERPSyncService().get_sync_monitoring_stats()
	)


@api_view(['POST'])
@authentication_classes([CombinedAuthentication])
def sync_batch(request):
	if not request.user.is_supervisor:
		return APIResponse(status=status.HTTP_403_FORBIDDEN, message='Only supervisors can start a batch sync')

	serializer = BatchSyncSerializer(data=request.data)
	if not serializer.is_valid():
		return validation_failed(serializer.errors)

	delivery_ids = serializer.validated_data['delivery_ids']
	async_task(BATCH_SYNC_TASK, delivery_ids, q_options={
		'task_name': f'ERP-batch-sync-{len(delivery_ids)}-deliveries',
	})
	logger.info(f"{request.user.get_username()} queued a batch ERP sync of {len(delivery_ids)} deliveries")
	return APIResponse(
		status=status.HTTP_202_ACCEPTED,
		message=f"Batch sync of {len(delivery_ids)} deliveries queued",
		data={'delivery_ids': delivery_ids}
	)


@api_view(['GET'])
@authentication_classes([CombinedAuthentication])
@renderer_classes([EventStreamRenderer, JSONRenderer])
def channel_events(request, channel):
	"""
		Server-Sent Events stream of a shipment.<id> or delivery.<id> channel
	"""
	broadcaster = get_broadcaster()
	try:
		subscription = broadcaster.subscribe(request.user, channel)
	except SubscriptionDenied as e:
		return APIResponse(status=status.HTTP_403_FORBIDDEN, message=str(e))

	response = StreamingHttpResponse(
		event_stream(broadcaster, subscription, settings.BROADCAST_KEEPALIVE_SECONDS),
		content_type='text/event-stream'
	)
	response['Cache-Control'] = 'no-cache'
	response['X-Accel-Buffering'] = 'no'
	return response
