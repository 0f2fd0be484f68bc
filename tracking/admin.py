"""
Admin configuration for the tracking app.
"""

from django.contrib import admin
from .models import Trip


@admin.register(Trip)
class TripAdmin(admin.ModelAdmin):
    list_display = [
        'trip_id',
        'status',
        'timestamp',
        'stopped_at',
        'expires_at',
        'date_added',
    ]
    list_filter = ['status', 'date_added']
    search_fields = ['trip_id']
    readonly_fields = [
        'trip_id',
        'destination',
        'current_location',
        'route',
        'timestamp',
        'stopped_at',
        'date_added',
    ]
    ordering = ['-date_added']
