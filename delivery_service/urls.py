from django.urls import path
from . import views

urlpatterns = [
    # Capture
    path('shipments/<int:shipment_id>/confirm', views.confirm_delivery, name='confirm-delivery'),
    path('shipments/<int:shipment_id>/signature-progress', views.signature_progress, name='signature-progress'),

    # Deliveries
    path('deliveries/', views.get_deliveries, name='delivery-list'),
    path('deliveries/<int:pk>', views.get_delivery_detail, name='delivery-detail'),
    path('deliveries/<int:pk>/photos', views.upload_photos, name='delivery-photos'),
    path('deliveries/<int:pk>/status', views.update_delivery_status, name='delivery-status'),
    path('deliveries/<int:pk>/location', views.record_location, name='delivery-location'),
    path('deliveries/<int:pk>/resync', views.resync_delivery, name='delivery-resync'),

    # ERP sync
    path('deliveries/sync/statistics', views.sync_statistics, name='sync-statistics'),
    path('deliveries/sync/monitoring', views.sync_monitoring, name='sync-monitoring'),
    path('deliveries/sync/batch', views.sync_batch, name='sync-batch'),

    # Live updates
    path('channels/<str:channel>/events', views.channel_events, name='channel-events'),
]
