from rest_framework import serializers
from delivery_service.serializers import DeliveryCaptureSerializer, PhotoInputSerializer
from .models import OfflineQueueItem, QueueItemKind


class ConfirmationPayloadSerializer(serializers.Serializer):
	shipment_id = serializers.IntegerField()
	capture = DeliveryCaptureSerializer()


class PhotoPayloadSerializer(serializers.Serializer):
	delivery_id = serializers.IntegerField(required=False, allow_null=True)
	capture_item_id = serializers.UUIDField(required=False, allow_null=True)
	photos = PhotoInputSerializer(many=True, allow_empty=False)

	def validate(self, attrs):
		if not attrs.get('delivery_id') and not attrs.get('capture_item_id'):
			raise serializers.ValidationError('Either delivery_id or capture_item_id is required')
		return attrs


class QueueItemInputSerializer(serializers.Serializer):
	kind = serializers.ChoiceField(choices=QueueItemKind.choices)
	payload = serializers.DictField()

	def validate(self, attrs):
		'''
			Check the payload against the shape its replay expects.
		'''
		payload_serializer_class = (
			ConfirmationPayloadSerializer if attrs['kind'] == QueueItemKind.DELIVERY_CONFIRMATION
			else PhotoPayloadSerializer
		)
		payload_serializer = payload_serializer_class(data=attrs['payload'])
		if not payload_serializer.is_valid():
			raise serializers.ValidationError({'payload': payload_serializer.errors})

		payload = dict(payload_serializer.validated_data)
		if 'capture' in payload:
			capture = dict(payload['capture'])
			capture.pop('connectivity', None)
			payload['capture'] = capture
		if payload.get('capture_item_id'):
			payload['capture_item_id'] = str(payload['capture_item_id'])
		attrs['payload'] = payload
		return attrs


class OfflineQueueItemSerializer(serializers.ModelSerializer):
	delivery_id = serializers.IntegerField(read_only=True)

	class Meta:
		model = OfflineQueueItem
		fields = [
			'id', 'device_id', 'kind', 'status', 'attempts', 'last_error',
			'delivery_id', 'created_at', 'updated_at', 'completed_at'
		]


class ConnectivitySerializer(serializers.Serializer):
	online = serializers.BooleanField()
