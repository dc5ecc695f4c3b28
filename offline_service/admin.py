from django.contrib import admin
from unfold.admin import ModelAdmin
from .models import OfflineQueueItem


@admin.register(OfflineQueueItem)
class OfflineQueueItemAdmin(ModelAdmin):
	list_display = ('id', 'device_id', 'kind', 'status', 'attempts', 'user', 'created_at', 'completed_at')
	list_filter = ('kind', 'status', 'created_at')
	search_fields = ('id', 'device_id', 'user__username', 'last_error')
	readonly_fields = ('id', 'device_id', 'user', 'kind', 'payload', 'attempts', 'last_error', 'delivery', 'created_at', 'updated_at', 'completed_at')
