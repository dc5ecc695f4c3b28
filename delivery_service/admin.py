from django.contrib import admin, messages
from django.utils.html import format_html
from unfold.admin import ModelAdmin
from django_q.tasks import async_task

from .models import DeliveryConfirmation, DeliverySignature, DeliveryPhoto, SyncState

RESYNC_TASK = 'delivery_service.tasks.resync_delivery'


class DeliverySignatureInline(admin.StackedInline):
    model = DeliverySignature
    extra = 0
    can_delete = False
    fields = ('quality_score', 'signature_hash', 'canvas_width', 'canvas_height', 'ip_address', 'user_agent', 'preview')
    readonly_fields = fields

    def preview(self, obj):
        if not obj.signature_data:
            return ""
        return format_html('<img src="{}" style="max-width: 400px; background: #fff;" />', obj.signature_data)


class DeliveryPhotoInline(admin.TabularInline):
    model = DeliveryPhoto
    extra = 0
    can_delete = False
    fields = ('photo_type', 'thumbnail', 'original_filename', 'mime_type', 'file_size', 'width', 'height')
    readonly_fields = fields

    def thumbnail(self, obj):
        if not obj.thumbnail_url:
            return ""
        return format_html('<a href="{}" target="_blank"><img src="{}" height="60" /></a>', obj.url, obj.thumbnail_url)


@admin.register(DeliveryConfirmation)
class DeliveryConfirmationAdmin(ModelAdmin):
    list_display = ('id', 'shipment', 'recipient_name', 'delivered_by', 'delivered_at', 'status', 'sync_state', 'sync_attempts')
    list_filter = ('status', 'sync_state', 'delivered_at')
    search_fields = ('id', 'shipment__id', 'shipment__reference', 'recipient_name', 'delivered_by__username', 'device_id')
    readonly_fields = (
        'shipment', 'delivered_by', 'device_id', 'delivered_at', 'recipient_name', 'delivery_notes',
        'gps_latitude', 'gps_longitude', 'gps_accuracy', 'verification_hash', 'sync_state',
        'erp_sync_timestamp', 'sync_error', 'sync_attempts', 'sync_started_at', 'created_at', 'updated_at'
    )
    inlines = [DeliverySignatureInline, DeliveryPhotoInline]
    actions = ['resync_selected_deliveries']

    def resync_selected_deliveries(self, request, queryset):
        """
            Re-sync the selected deliveries whose ERP push failed.
        """
        failed = list(queryset.filter(sync_state=SyncState.SYNC_FAILED).values_list('id', flat=True))
        if not failed:
            self.message_user(request, "No failed deliveries selected.", messages.WARNING)
            return

        for delivery_id in failed:
            async_task(RESYNC_TASK, delivery_id, q_options={
                'task_name': f'[Resync] Delivery-{delivery_id}-to-ERP',
            })
        self.message_user(request, f"Re-sync started for {len(failed)} deliveries!", messages.SUCCESS)

    resync_selected_deliveries.short_description = "Re-sync selected failed deliveries"
