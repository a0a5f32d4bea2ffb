from django.contrib import admin
from django.utils import timezone

from .models import BloodUnit, InventoryStock, InventoryTransaction, InventoryAlert


@admin.register(BloodUnit)
class BloodUnitAdmin(admin.ModelAdmin):
    list_display = ['batch_number', 'blood_type', 'institution', 'status', 'quality_score', 'expiry_date']
    list_filter = ['status', 'blood_type', 'institution']
    search_fields = ['batch_number', 'institution__name']
    readonly_fields = ['reserved_for', 'reserved_at', 'expired_at', 'created_at', 'updated_at']


@admin.register(InventoryStock)
class InventoryStockAdmin(admin.ModelAdmin):
    list_display = ['institution', 'blood_type', 'current_stock', 'reserved_stock', 'available_display', 'status_display']
    list_filter = ['blood_type', 'institution']
    readonly_fields = ['last_updated', 'updated_by']

    @admin.display(description='Available')
    def available_display(self, obj):
        return obj.available_stock

    @admin.display(description='Status')
    def status_display(self, obj):
        return obj.stock_status


@admin.register(InventoryTransaction)
class InventoryTransactionAdmin(admin.ModelAdmin):
    list_display = ['id', 'transaction_type', 'blood_type', 'quantity', 'blood_request', 'performed_by', 'created_at']
    list_filter = ['transaction_type', 'blood_type']

    def has_change_permission(self, request, obj=None):
        # Ledger rows are append-only
        return False


@admin.register(InventoryAlert)
class InventoryAlertAdmin(admin.ModelAdmin):
    list_display = ['id', 'alert_type', 'severity', 'blood_type', 'institution', 'resolved', 'created_at']
    list_filter = ['alert_type', 'severity', 'resolved']
    actions = ['mark_resolved']

    @admin.action(description='Mark selected alerts as resolved')
    def mark_resolved(self, request, queryset):
        updated = queryset.filter(resolved=False).update(
            resolved=True, resolved_at=timezone.now(), resolved_by=request.user
        )
        self.message_user(request, f'Resolved {updated} alert(s).')
