from django.apps import AppConfig
from django.db.models.signals import post_migrate


class DeliveryServiceConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'delivery_service'
    verbose_name = '1. Delivery Service'

    def ready(self):
        # Import signal handlers to register them
        import delivery_service.signals
        from .tasks import register_schedules
        post_migrate.connect(register_schedules, sender=self)
