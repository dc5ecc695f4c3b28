from rest_framework import serializers
from .models import DeliveryConfirmation, DeliverySignature, DeliveryPhoto, DeliveryStatus

CONNECTIVITY_CHOICES = ['online', 'offline']


def coordinate_field():
    # Range checks happen in the workflow so out of range values get field-level 422s
    return serializers.FloatField(required=False, allow_null=True)


class SignatureInputSerializer(serializers.Serializer):
    signature_data = serializers.CharField()
    strokes = serializers.JSONField(required=False)
    canvas_width = serializers.IntegerField(required=False, min_value=1)
    canvas_height = serializers.IntegerField(required=False, min_value=1)
    quality_score = serializers.FloatField(required=False, allow_null=True)
    device_info = serializers.DictField(required=False)


class PhotoInputSerializer(serializers.Serializer):
    photo_data = serializers.CharField()
    photo_type = serializers.CharField(required=False)
    original_filename = serializers.CharField(required=False, allow_blank=True, max_length=255)
    gps_latitude = coordinate_field()
    gps_longitude = coordinate_field()
    metadata = serializers.DictField(required=False)


class DeliveryCaptureSerializer(serializers.Serializer):
    """
    Shape of a capture posted by the driver app. Business rules (GPS bounds,
    signature quality, photo content) are enforced by the workflow.
    """
    recipient_name = serializers.CharField(max_length=255)
    delivered_at = serializers.DateTimeField(required=False, allow_null=True)
    delivery_notes = serializers.CharField(required=False, allow_blank=True)
    status = serializers.CharField(required=False)
    gps_latitude = coordinate_field()
    gps_longitude = coordinate_field()
    gps_accuracy = serializers.FloatField(required=False, allow_null=True, min_value=0)
    signature = SignatureInputSerializer(required=False, allow_null=True)
    photos = PhotoInputSerializer(many=True, required=False)
    metadata = serializers.DictField(required=False)
    connectivity = serializers.ChoiceField(choices=CONNECTIVITY_CHOICES, required=False, default='online')


class PhotoUploadSerializer(serializers.Serializer):
    photos = PhotoInputSerializer(many=True, allow_empty=False)
    connectivity = serializers.ChoiceField(choices=CONNECTIVITY_CHOICES, required=False, default='online')


class StatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=DeliveryStatus.choices)


class LocationSerializer(serializers.Serializer):
    gps_latitude = coordinate_field()
    gps_longitude = coordinate_field()
    gps_accuracy = serializers.FloatField(required=False, allow_null=True)


class SignatureProgressSerializer(serializers.Serializer):
    strokes = serializers.JSONField()
    canvas_width = serializers.IntegerField(required=False, min_value=1)
    canvas_height = serializers.IntegerField(required=False, min_value=1)


class BatchSyncSerializer(serializers.Serializer):
    delivery_ids = serializers.ListField(child=serializers.IntegerField(), allow_empty=False, max_length=500)


class DeliverySignatureSerializer(serializers.ModelSerializer):
    stroke_count = serializers.ReadOnlyField()
    is_legally_valid = serializers.SerializerMethodField()

    def get_is_legally_valid(self, obj):
        return obj.is_legally_valid()

    class Meta:
        model = DeliverySignature
        fields = [
            'id', 'signature_hash', 'quality_score', 'stroke_count', 'is_legally_valid',
            'canvas_width', 'canvas_height', 'device_info', 'created_at'
        ]


class DeliveryPhotoSerializer(serializers.ModelSerializer):
    url = serializers.ReadOnlyField()
    thumbnail_url = serializers.ReadOnlyField()

    class Meta:
        model = DeliveryPhoto
        fields = [
            'id', 'photo_type', 'url', 'thumbnail_url', 'original_filename', 'mime_type',
            'file_size', 'width', 'height', 'gps_latitude', 'gps_longitude', 'created_at'
        ]


class DeliveryConfirmationSerializer(serializers.ModelSerializer):
    signature = serializers.SerializerMethodField()
    photos = DeliveryPhotoSerializer(many=True, read_only=True)
    shipment_reference = serializers.CharField(source='shipment.erp_reference', read_only=True)
    delivered_by = serializers.CharField(source='delivered_by.username', read_only=True, default=None)

    def get_signature(self, obj):
        signature = obj.get_signature()
        return DeliverySignatureSerializer(signature).data if signature is not None else None

    class Meta:
        model = DeliveryConfirmation
        fields = [
            'id', 'shipment', 'shipment_reference', 'delivered_by', 'device_id',
            'delivered_at', 'recipient_name', 'delivery_notes',
            'gps_latitude', 'gps_longitude', 'gps_accuracy', 'verification_hash',
            'status', 'sync_state', 'erp_sync_timestamp', 'sync_error', 'sync_attempts',
            'signature', 'photos', 'metadata', 'created_at', 'updated_at'
        ]
