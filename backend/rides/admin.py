"""Tells what to show in the Django admin interface for rides app"""

from django.contrib import admin
from .models import RideRequest, ChatMessage, CallSession

@admin.register(RideRequest)
class RideRequestAdmin(admin.ModelAdmin):
    """Ride Request admin"""
    list_display = ['id', 'driver', 'status', 'ride_option', 'final_fare', 'created_at', 'accepted_at', 'completed_at']
    list_filter = ['status', 'ride_option', 'charity', 'created_at']
    search_fields = ['driver__name', 'driver__license_plate', 'pickup_address', 'dropoff_address']
    readonly_fields = ['created_at', 'updated_at', 'accepted_at', 'completed_at', 'cancelled_at']
    date_hierarchy = 'created_at'


@admin.register(ChatMessage)
class ChatMessageAdmin(admin.ModelAdmin):
    list_display = ("id", "ride", "sender", "created_at")
    list_filter = ("sender",)
    search_fields = ("ride__id", "text")


@admin.register(CallSession)
class CallSessionAdmin(admin.ModelAdmin):
    list_display = ("ride", "call_id", "status", "call_type", "caller", "updated_at")
    list_filter = ("status", "call_type")
