# api/urls.py

from django.urls import path, include
from rest_framework.routers import DefaultRouter
from . import views

# Create router and register viewsets
router = DefaultRouter()
router.register(r'blood-requests', views.BloodRequestViewSet, basename='blood-request')
router.register(r'active-requests', views.ActiveRequestViewSet, basename='active-request')
router.register(r'emergency-alerts', views.EmergencyAlertViewSet, basename='emergency-alert')
router.register(r'institutions', views.InstitutionViewSet, basename='institution')
router.register(r'donors', views.DonorViewSet, basename='donor')
router.register(r'schedules', views.DonationScheduleViewSet, basename='schedule')
router.register(r'inventory/units', views.BloodUnitViewSet, basename='blood-unit')
router.register(r'inventory/alerts', views.InventoryAlertViewSet, basename='inventory-alert')
router.register(r'notifications', views.NotificationViewSet, basename='notification')

app_name = 'api'

# Function endpoints go first so router detail routes don't swallow them
urlpatterns = [
    # Inventory
    path('inventory/stats/', views.inventory_stats, name='inventory-stats'),
    path('inventory/reserve/', views.reserve_inventory, name='inventory-reserve'),
    path('inventory/summary/', views.inventory_summary, name='inventory-summary'),
    path('inventory/stock/', views.adjust_inventory_stock, name='inventory-stock'),
    path('inventory/process-expired/', views.process_expired_inventory, name='inventory-process-expired'),
    path('inventory/check-alerts/', views.check_inventory_alerts, name='inventory-check-alerts'),

    # Requests
    path('requests/statistics/', views.request_statistics, name='request-statistics'),
    path('blood-banks/nearby/', views.nearby_blood_banks, name='nearby-blood-banks'),

    # Notifications
    path('notifications/preferences/', views.notification_preferences, name='notification-preferences'),
    path('notifications/process/', views.process_notifications, name='notification-process'),
    path('notifications/stats/', views.notification_stats, name='notification-stats'),
    path('notifications/send/', views.send_notification, name='notification-send'),

    # Donor self-service
    path('donors/me/', views.my_donor_profile, name='donor-me'),
    path('donors/me/availability/', views.toggle_my_availability, name='donor-me-availability'),
    path('donors/me/nearby-requests/', views.my_nearby_requests, name='donor-me-nearby-requests'),

    # Realtime
    path('realtime/events/', views.realtime_events, name='realtime-events'),

    # Dashboard
    path('stats/', views.dashboard_stats, name='dashboard-stats'),
    path('leaderboard/', views.donor_leaderboard, name='donor-leaderboard'),
    path('health/', views.health, name='health'),

    # Router URLs
    path('', include(router.urls)),
]
