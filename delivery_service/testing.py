"""
Fixtures shared by the test modules of the delivery and offline apps
"""
import io
import shutil
import tempfile
import base64
from PIL import Image, ImageDraw
from django.test import override_settings
from django.utils import timezone

from core_service.models import CustomUser
from erp_service.models import Shipment, ShipmentStatus
from .models import DeliveryConfirmation, DeliverySignature, normalize_coordinate, normalize_accuracy
from .validators import calculate_signature_hash


def zigzag_strokes(count=4, points=20, left=20, right=380, top=20, bottom=180):
    """Strokes that sweep the canvas from left to right, alternating top and bottom"""
    strokes = []
    step = (right - left) / (points - 1)
    for index in range(count):
        offset = index * 2
        strokes.append([
            [round(left + i * step, 1), top + offset if i % 2 == 0 else bottom - offset]
            for i in range(points)
        ])
    return strokes


def encode_image(image, format='PNG'):
    buffer = io.BytesIO()
    image.save(buffer, format=format)
    mime = 'jpeg' if format == 'JPEG' else format.lower()
    return f"data:image/{mime};base64,{base64.b64encode(buffer.getvalue()).decode('ascii')}"


def draw_signature(strokes, size=(400, 200), transparent=False):
    if transparent:
        image = Image.new('RGBA', size, (255, 255, 255, 0))
        ink = (0, 0, 0, 255)
    else:
        image = Image.new('RGB', size, (255, 255, 255))
        ink = (0, 0, 0)
    draw = ImageDraw.Draw(image)
    for stroke in strokes:
        draw.line([tuple(point) for point in stroke], fill=ink, width=3)
    return encode_image(image, 'PNG')


def make_signature_payload(strokes=None, transparent=False, **extra):
    strokes = zigzag_strokes() if strokes is None else strokes
    payload = {
        'signature_data': draw_signature(strokes, transparent=transparent),
        'strokes': strokes,
        'canvas_width': 400,
        'canvas_height': 200,
        'device_info': {'platform': 'android'},
    }
    payload.update(extra)
    return payload


def make_photo_data(size=(640, 480), format='JPEG', color=(90, 140, 60)):
    return encode_image(Image.new('RGB', size, color), format)


def make_photo_payload(**extra):
    payload = {
        'photo_data': make_photo_data(),
        'photo_type': 'delivery_proof',
        'original_filename': 'doorstep.jpg',
        'gps_latitude': '6.52440000',
        'gps_longitude': '3.37920000',
    }
    payload.update(extra)
    return payload


def make_user(username, role=CustomUser.ROLE_DRIVER, **extra):
    return CustomUser.objects.create_user(username=username, password='testpass123', role=role, **extra)


def make_shipment(shipment_id=42, driver=None, status=ShipmentStatus.VALIDATED, reference=None):
    return Shipment.objects.create(
        id=shipment_id,
        reference=reference or f"SH{shipment_id:05d}",
        status=status,
        customer_name='Acme Stores',
        assigned_driver=driver,
    )


class FakeERPClient:
    """
    Stands in for erp_service.rest.RESTServices. Each call pops the next entry
    of failures; an exception entry is raised, None lets the call through.
    """

    def __init__(self, failures=None, shipments=None):
        self.failures = list(failures or [])
        self.shipments = shipments or {}
        self.calls = []

    def _call(self, method, idempotency_key=None, **details):
        self.calls.append({'method': method, 'idempotency_key': idempotency_key, **details})
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        return {'ok': True, 'method': method, 'call': len(self.calls)}

    @property
    def call_count(self):
        return len(self.calls)

    def methods(self):
        return [call['method'] for call in self.calls]

    def get_shipment(self, shipment_id):
        return self.shipments.get(int(shipment_id))

    def update_shipment_status(self, shipment_id, payload, idempotency_key=None):
        return self._call('update_shipment_status', idempotency_key, shipment_id=shipment_id, payload=payload)

    def upload_document(self, shipment_ref, filename, content, idempotency_key=None, subdir=''):
        return self._call('upload_document', idempotency_key, shipment_ref=shipment_ref, filename=filename,
                          size=len(content))

    def insert_tracking(self, shipment_id, payload, idempotency_key=None):
        return self._call('insert_tracking', idempotency_key, shipment_id=shipment_id, payload=payload)


def make_delivery(shipment, user, signature=True, gps=True, **fields):
    """A sealed confirmation written straight to the database"""
    values = {
        'delivered_at': timezone.now(),
        'recipient_name': 'Jane Doe',
        'gps_latitude': normalize_coordinate('6.5244') if gps else None,
        'gps_longitude': normalize_coordinate('3.3792') if gps else None,
        'gps_accuracy': normalize_accuracy('5.00') if gps else None,
    }
    values.update(fields)
    delivery = DeliveryConfirmation.objects.create(shipment=shipment, delivered_by=user, **values)
    if signature:
        payload = make_signature_payload()
        DeliverySignature.objects.create(
            delivery=delivery,
            signature_data=payload['signature_data'],
            signature_hash=calculate_signature_hash(payload['signature_data']),
            quality_score=1.0,
            stroke_data=payload['strokes'],
        )
    delivery.seal()
    return delivery


class TemporaryMediaMixin:
    """Points MEDIA_ROOT at a throwaway directory for the duration of a test"""

    def use_temporary_media(self):
        self.media_root = tempfile.mkdtemp(prefix='podsync-media-')
        media_override = override_settings(MEDIA_ROOT=self.media_root)
        media_override.enable()
        self.addCleanup(media_override.disable)
        self.addCleanup(shutil.rmtree, self.media_root, True)
        return self.media_root
