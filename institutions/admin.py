# institutions/admin.py
from django.contrib import admin
from django.utils.html import format_html

from .models import (
    Institution, BloodRequest, DonorResponse, DonorMatch, RequestUpdate,
    RequestCoordination, EmergencyAlert, PrioritizationRule,
)
from . import services


class DonorMatchInline(admin.TabularInline):
    model = DonorMatch
    extra = 0
    fields = ['donor', 'match_score', 'compatibility_score', 'distance_km', 'status', 'contacted_at']
    readonly_fields = fields
    ordering = ['-match_score', '-compatibility_score']


class RequestUpdateInline(admin.TabularInline):
    model = RequestUpdate
    extra = 0
    fields = ['update_type', 'old_value', 'new_value', 'updated_by', 'notes', 'created_at']
    readonly_fields = fields


@admin.register(BloodRequest)
class BloodRequestAdmin(admin.ModelAdmin):
    list_display = [
        'id',
        'patient_name',
        'blood_type',
        'units_needed',
        'urgency_level',
        'priority_score',
        'status',
        'response_summary',
        'expires_at',
    ]
    list_filter = ['status', 'urgency_level', 'request_type', 'blood_type', 'created_at']
    search_fields = ['patient_name', 'hospital_name', 'location', 'institution__name']
    readonly_fields = [
        'priority_score', 'response_count', 'escalation_count', 'matched_at',
        'inventory_reserved', 'created_at', 'updated_at',
    ]
    inlines = [DonorMatchInline, RequestUpdateInline]
    actions = ['cancel_requests', 'expire_requests']

    fieldsets = (
        ('Request Information', {
            'fields': ('requester', 'institution', 'patient_name', 'patient_age', 'hospital_name',
                       'blood_type', 'units_needed', 'urgency_level', 'request_type', 'status')
        }),
        ('Contact & Location', {
            'fields': ('contact_name', 'contact_phone', 'location', 'latitude', 'longitude')
        }),
        ('Notes', {
            'fields': ('medical_notes', 'additional_info', 'tags'),
            'classes': ('collapse',)
        }),
        ('Coordination', {
            'fields': ('assigned_coordinator', 'emergency_alert', 'priority_score', 'response_count',
                       'escalation_count', 'matched_at', 'expires_at', 'inventory_reserved')
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    @admin.display(description='Donors')
    def response_summary(self, obj):
        matches = obj.matches.count()
        accepted = obj.matches.filter(status='accepted').count()
        return format_html(
            '<span style="color: blue;">Matched: {}</span> | '
            '<span style="color: green;">Accepted: {}</span> / {}',
            matches, accepted, obj.units_needed
        )

    @admin.action(description='Cancel selected requests')
    def cancel_requests(self, request, queryset):
        cancelled = 0
        for blood_request in queryset.filter(status__in=BloodRequest.ACTIVE_STATUSES):
            services.cancel_request(blood_request, request.user, notes='Cancelled from admin')
            cancelled += 1
        self.message_user(request, f'Cancelled {cancelled} request(s).')

    @admin.action(description='Expire overdue requests now')
    def expire_requests(self, request, queryset):
        count = services.expire_overdue_requests()
        self.message_user(request, f'Expired {count} request(s).')


@admin.register(Institution)
class InstitutionAdmin(admin.ModelAdmin):
    list_display = ['name', 'institution_type', 'location', 'contact_phone', 'is_verified', 'is_active', 'total_requests']
    list_filter = ['institution_type', 'is_verified', 'is_active']
    search_fields = ['name', 'location', 'license_number']

    @admin.display(description='Requests')
    def total_requests(self, obj):
        total = obj.blood_requests.count()
        active = obj.blood_requests.filter(status__in=BloodRequest.ACTIVE_STATUSES).count()
        return format_html('Total: {} | Active: {}', total, active)


@admin.register(DonorResponse)
class DonorResponseAdmin(admin.ModelAdmin):
    list_display = ['donor', 'blood_request', 'response_type', 'status', 'eta_minutes', 'created_at']
    list_filter = ['response_type', 'status']
    search_fields = ['donor__full_name']


@admin.register(RequestCoordination)
class RequestCoordinationAdmin(admin.ModelAdmin):
    list_display = ['blood_request', 'coordinator', 'role', 'status', 'created_at']
    list_filter = ['role', 'status']


@admin.register(EmergencyAlert)
class EmergencyAlertAdmin(admin.ModelAdmin):
    list_display = ['id', 'alert_type', 'severity', 'units_required', 'status', 'deadline', 'created_at']
    list_filter = ['alert_type', 'severity', 'status']


@admin.register(PrioritizationRule)
class PrioritizationRuleAdmin(admin.ModelAdmin):
    list_display = ['rule_name', 'priority_score', 'is_active']
    list_editable = ['is_active']
