import logging
from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes
from overrides.authenticate import CombinedAuthentication
from overrides.rest_framework import APIResponse, CustomPagination
from .connectivity import ConnectivityMonitor
from .models import QueueItemStatus
from .serializers import QueueItemInputSerializer, OfflineQueueItemSerializer, ConnectivitySerializer
from .services import OfflineQueueService

logger = logging.getLogger(__name__)


def device_access_denied(request, device_id):
	logger.warning(f"User {request.user.pk} refused on device {device_id}, which another user is working on")
	return APIResponse(status=status.HTTP_403_FORBIDDEN, message=f"You do not have access to device {device_id}")


@api_view(['GET', 'POST'])
@authentication_classes([CombinedAuthentication])
def queue_items(request, device_id):
	"""
		GET lists the device's queue (filter: status), POST stages a capture or a photo upload.
	"""
	queue = OfflineQueueService(device_id)

	if request.method == 'GET':
		status_filter = request.query_params.get('status')
		if status_filter and status_filter not in QueueItemStatus.values:
			return APIResponse(status=status.HTTP_400_BAD_REQUEST, message=f"Unknown status '{status_filter}'")
		queryset = queue.list_items(status_filter)
		if not request.user.is_supervisor:
			queryset = queryset.filter(user=request.user)

		paginator = CustomPagination()
		page = paginator.paginate_queryset(queryset, request)
		return APIResponse(
			status=status.HTTP_200_OK,
			message='Offline queue fetched successfully',
			data=paginator.get_paginated_response(OfflineQueueItemSerializer(page, many=True).data).data
		)

	if not queue.can_be_used_by(request.user):
		return device_access_denied(request, device_id)

	serializer = QueueItemInputSerializer(data=request.data)
	if not serializer.is_valid():
		return APIResponse(
			status=status.HTTP_422_UNPROCESSABLE_ENTITY,
			message='Validation error',
			data={'error_code': 'VALIDATION_ERROR', 'field_errors': serializer.errors}
		)

	queue_id = queue.enqueue(serializer.validated_data['kind'], serializer.validated_data['payload'], user=request.user)
	return APIResponse(
		status=status.HTTP_201_CREATED,
		message='Item queued',
		data={'queue_item_id': str(queue_id), 'device_id': device_id}
	)


@api_view(['POST'])
@authentication_classes([CombinedAuthentication])
def drain_queue(request, device_id):
	queue = OfflineQueueService(device_id)
	if not queue.can_be_used_by(request.user):
		return device_access_denied(request, device_id)

	try:
		result = queue.drain()
	except Exception as e:
		logger.exception(f"Draining the offline queue of device {device_id} failed")
		return APIResponse(
			status=status.HTTP_500_INTERNAL_SERVER_ERROR,
			message=f"An error occurred while draining the offline queue: {e}"
		)
	return APIResponse(status=status.HTTP_200_OK, message='Offline queue drained', data=result)


@api_view(['GET'])
@authentication_classes([CombinedAuthentication])
def queue_statistics(request, device_id):
	queue = OfflineQueueService(device_id)
	if not queue.can_be_used_by(request.user):
		return device_access_denied(request, device_id)

	data = queue.statistics()
	data['is_offline'] = ConnectivityMonitor().is_offline(device_id)
	return APIResponse(status=status.HTTP_200_OK, message='Offline queue statistics fetched successfully', data=data)


@api_view(['POST'])
@authentication_classes([CombinedAuthentication])
def update_connectivity(request, device_id):
	'''
		Devices report going offline and coming back. Coming back with captures
		waiting queues a drain of the device's queue.
	'''
	if not OfflineQueueService(device_id).can_be_used_by(request.user):
		return device_access_denied(request, device_id)

	serializer = ConnectivitySerializer(data=request.data)
	if not serializer.is_valid():
		return APIResponse(status=status.HTTP_400_BAD_REQUEST, message='Validation error', data=serializer.errors)

	monitor = ConnectivityMonitor()
	if not serializer.validated_data['online']:
		monitor.mark_offline(device_id)
		return APIResponse(status=status.HTTP_200_OK, message=f"Device {device_id} marked offline",
						   data={'device_id': device_id, 'online': False, 'drain_queued': False})

	drain_queued = monitor.mark_online(device_id)
	return APIResponse(status=status.HTTP_200_OK, message=f"Device {device_id} marked online",
					   data={'device_id': device_id, 'online': True, 'drain_queued': drain_queued})
