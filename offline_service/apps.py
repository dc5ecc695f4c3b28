from django.apps import AppConfig
from django.db.models.signals import post_migrate


class OfflineServiceConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'offline_service'
    verbose_name = '2. Offline Capture Queue'

    def ready(self):
        from .tasks import register_schedules
        post_migrate.connect(register_schedules, sender=self)
