from django.apps import AppConfig


class ErpServiceConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'erp_service'
    verbose_name = 'ERP Service'
