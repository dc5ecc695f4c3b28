"""
File cleanup for delivery photos.

Photos are usually removed through the cascade from their delivery, which
does not call DeliveryPhoto.delete(), so the files are removed here.
"""
import logging
from django.db.models.signals import post_delete
from django.dispatch import receiver

from core_service.helpers import remove_files
from .models import DeliveryPhoto

logger = logging.getLogger(__name__)


@receiver(post_delete, sender=DeliveryPhoto)
def remove_photo_files(sender, instance, **kwargs):
    try:
        removed = remove_files(instance.absolute_path, instance.absolute_thumbnail_path)
    except OSError as e:
        logger.error(f"Could not remove files of photo {instance.pk}: {e}")
        return
    if removed:
        logger.info(f"Removed {removed} file(s) of photo {instance.pk}")
