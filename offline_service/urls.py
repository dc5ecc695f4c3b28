from django.urls import path
from . import views

urlpatterns = [
	path('offline/<str:device_id>/items', views.queue_items, name='offline-queue-items'),
	path('offline/<str:device_id>/drain', views.drain_queue, name='offline-queue-drain'),
	path('offline/<str:device_id>/statistics', views.queue_statistics, name='offline-queue-statistics'),
	path('devices/<str:device_id>/connectivity', views.update_connectivity, name='device-connectivity'),
]
