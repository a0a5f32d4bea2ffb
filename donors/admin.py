from django.contrib import admin

from bloodlink.conf import get_setting
from .models import DonorProfile, DonationHistory, DonationSchedule


@admin.register(DonorProfile)
class DonorProfileAdmin(admin.ModelAdmin):
    list_display   = ['full_name', 'blood_type', 'donation_count', 'points', 'is_available', 'receive_alerts', 'can_donate_display']
    list_filter    = ['blood_type', 'is_available', 'receive_alerts']
    search_fields  = ['full_name', 'user__username', 'phone']
    ordering       = ['-points']
    readonly_fields = ['donation_count', 'last_donation_date', 'total_responses', 'accepted_responses', 'created_at', 'updated_at']

    fieldsets = (
        ('Personal Info', {
            'fields': ('user', 'full_name', 'phone', 'blood_type', 'location')
        }),
        ('Location', {
            'fields': ('allow_location', 'latitude', 'longitude')
        }),
        ('Donation Stats', {
            'fields': ('donation_count', 'points', 'last_donation_date', 'is_available', 'receive_alerts')
        }),
        ('Responses', {
            'fields': ('total_responses', 'accepted_responses'),
        }),
        ('Health', {
            'fields': ('medical_conditions',),
            'classes': ('collapse',),
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',),
        }),
    )

    @admin.display(boolean=True, description='Can Donate Now')
    def can_donate_display(self, obj):
        return obj.can_donate

    # Admin action: manually award points (e.g. for offline donation)
    actions = ['award_points_manually']

    @admin.action(description='Award donation points to selected donors')
    def award_points_manually(self, request, queryset):
        points = get_setting('POINTS_PER_DONATION')
        updated = 0
        for donor in queryset:
            donor.points += points
            donor.save(update_fields=['points'])
            updated += 1
        self.message_user(request, f'Awarded {points} points to {updated} donor(s).')


@admin.register(DonationHistory)
class DonationHistoryAdmin(admin.ModelAdmin):
    list_display  = ['donor', 'institution', 'blood_request', 'date_donated', 'units_donated']
    list_filter   = ['date_donated']
    search_fields = ['donor__full_name', 'institution__name']


@admin.register(DonationSchedule)
class DonationScheduleAdmin(admin.ModelAdmin):
    list_display  = ['donor', 'institution', 'scheduled_date', 'blood_type', 'units_to_donate', 'status', 'reminder_sent']
    list_filter   = ['status', 'blood_type', 'reminder_sent']
    search_fields = ['donor__full_name', 'institution__name']
