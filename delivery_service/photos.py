"""
Photo persistence for delivery confirmations
"""
import io
import os
import uuid
import logging
from PIL import Image, ImageOps
from django.conf import settings
from django.db import transaction

from core_service.helpers import write_bytes, remove_files
from .exceptions import InvalidPhoto, PhotoProcessingFailed
from .models import DeliveryPhoto, PhotoType, normalize_coordinate
from .validators import validate_photo

logger = logging.getLogger(__name__)

EXTENSIONS = {'JPEG': 'jpg', 'PNG': 'png', 'GIF': 'gif'}
MIME_TYPES = {'JPEG': 'image/jpeg', 'PNG': 'image/png', 'GIF': 'image/gif'}


class PhotoService:
    """
    Validates, stores and thumbnails the photos of one delivery. A batch is
    all or nothing: if any photo fails, no row is kept and every file written
    for the batch is deleted.
    """

    def validate(self, photos):
        """
        Validate a batch before anything is written. Returns the validation
        results in order; raises InvalidPhoto with per-photo field errors.
        """
        field_errors = {}
        results = []
        for index, photo in enumerate(photos):
            photo_type = photo.get('photo_type') or PhotoType.DELIVERY_PROOF
            result = validate_photo({**photo, 'photo_type': photo_type})
            errors = list(result['errors'])
            if photo_type not in PhotoType.values:
                errors.append(f"Unknown photo type '{photo_type}'")
            if errors:
                field_errors[f'photos[{index}]'] = errors
            results.append(result)

        if field_errors:
            raise InvalidPhoto('One or more photos are invalid', field_errors)
        return results

    @staticmethod
    def directory_for(delivery):
        return os.path.join(settings.MEDIA_ROOT, 'delivery_photos', str(delivery.pk))

    def create_thumbnail(self, content, directory, name):
        with Image.open(io.BytesIO(content)) as image:
            thumbnail = ImageOps.fit(ImageOps.exif_transpose(image).convert('RGB'), settings.PHOTO_THUMBNAIL_SIZE)
        buffer = io.BytesIO()
        thumbnail.save(buffer, format='JPEG', quality=85)
        return write_bytes(buffer.getvalue(), directory, f"thumb_{name}.jpg")

    def process_photos(self, delivery, photos, validated=None):
        if not photos:
            return []
        validated = validated or self.validate(photos)
        directory = self.directory_for(delivery)
        written = []

        try:
            with transaction.atomic():
                created = []
                for photo, result in zip(photos, validated):
                    name = uuid.uuid4().hex
                    path = write_bytes(result['content'], directory, f"{name}.{EXTENSIONS[result['format']]}")
                    written.append(path)
                    thumbnail_path = self.create_thumbnail(result['content'], directory, name)
                    written.append(thumbnail_path)

                    created.append(DeliveryPhoto.objects.create(
                        delivery=delivery,
                        photo_type=photo.get('photo_type') or PhotoType.DELIVERY_PROOF,
                        path=os.path.relpath(path, settings.MEDIA_ROOT),
                        thumbnail_path=os.path.relpath(thumbnail_path, settings.MEDIA_ROOT),
                        original_filename=photo.get('original_filename') or '',
                        mime_type=MIME_TYPES[result['format']],
                        file_size=result['file_size'],
                        width=result['width'],
                        height=result['height'],
                        gps_latitude=normalize_coordinate(photo.get('gps_latitude')),
                        gps_longitude=normalize_coordinate(photo.get('gps_longitude')),
                        metadata={**(photo.get('metadata') or {}), 'warnings': result['warnings']},
                    ))
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            remove_files(*written)
            logger.error(f"Photo processing failed for delivery {delivery.pk}, removed {len(written)} file(s): {e}")
            raise PhotoProcessingFailed(f"Photo processing failed: {e}") from e
        except Exception:
            remove_files(*written)
            raise

        logger.info(f"Stored {len(created)} photo(s) for delivery {delivery.pk}")
        return created
