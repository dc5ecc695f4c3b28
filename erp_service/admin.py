import logging
from django.contrib import admin, messages
from django.urls import path, reverse
from django.utils.html import format_html
from django.shortcuts import redirect
from unfold.admin import ModelAdmin
from django_q.tasks import async_task

from .models import Shipment, ERPPostingStatus

logger = logging.getLogger(__name__)

RESYNC_TASK = 'delivery_service.tasks.resync_delivery'


def is_resyncable(posting):
	return posting.status == "failed" and posting.content_type.model == 'deliveryconfirmation'


@admin.register(Shipment)
class ShipmentAdmin(ModelAdmin):
	list_display = ('id', 'reference', 'customer_name', 'status', 'assigned_driver', 'last_fetched_at')
	list_filter = ('status',)
	search_fields = ('id', 'reference', 'customer_name', 'assigned_driver__username')
	readonly_fields = ('erp_data', 'last_fetched_at', 'created_at')


@admin.register(ERPPostingStatus)
class ERPPostingStatusAdmin(ModelAdmin):
	search_fields = [
		'content_type__model',
		'object_id',
		'status',
		'error_message__icontains',
	]
	list_display = ('item_object', 'status', 'retry_count', 'created_at', 'retry_button')
	list_filter = ('status', 'content_type')
	readonly_fields = ('content_type', 'object_id', 'request_payload', 'response_data', 'error_message', 'retry_count')
	actions = ['retry_selected_posting']

	def item_object(self, obj):
		return str(obj.related_object)

	def retry_button(self, obj):
		"""
			Adds a 'Retry' button for individual failed delivery postings.
		"""
		if is_resyncable(obj):
			return format_html(
				'<a class="bg-primary-600 border border-transparent font-medium px-3 py-2 rounded text-white" '
				'style="width: fit-content !important;" href="{}">Retry</a>',
				reverse('admin:erp-retry-single-posting', args=[obj.id])
			)
		return ""

	retry_button.short_description = "Retry Posting"

	def retry_single_posting_view(self, request, posting_id):
		"""
			Manual re-sync of a delivery whose ERP push failed permanently.
		"""
		try:
			posting = ERPPostingStatus.objects.get(id=posting_id)
			if is_resyncable(posting):
				async_task(RESYNC_TASK, posting.object_id, q_options={
					'task_name': f'[Resync] Delivery-{posting.object_id}-to-ERP',
				})
				self.message_user(request, f"Re-sync started for posting {posting_id}!", messages.SUCCESS)
			else:
				self.message_user(request, "This posting cannot be retried.", messages.WARNING)
		except ERPPostingStatus.DoesNotExist:
			self.message_user(request, "Posting not found.", messages.ERROR)

		return redirect(request.META.get('HTTP_REFERER', reverse('admin:erp_service_erppostingstatus_changelist')))

	def get_urls(self):
		urls = super().get_urls()
		custom_urls = [
			path('<int:posting_id>/retry-posting/', self.admin_site.admin_view(self.retry_single_posting_view),
				 name='erp-retry-single-posting'),
		]
		return custom_urls + urls

	def retry_selected_posting(self, request, queryset):
		"""
			Custom admin action to re-sync selected failed postings.
		"""
		fails = [posting for posting in queryset.filter(status="failed") if is_resyncable(posting)]

		if not fails:
			self.message_user(request, "No eligible failed postings selected.", messages.WARNING)
			return

		for failed in fails:
			async_task(RESYNC_TASK, failed.object_id, q_options={
				'task_name': f'[Resync] Delivery-{failed.object_id}-to-ERP',
			})

		self.message_user(request, f"Re-sync started for {len(fails)} selected postings!", messages.SUCCESS)

	retry_selected_posting.short_description = "Retry selected failed postings"
