from django.contrib import admin
from drivers.models import DriverProfile


@admin.register(DriverProfile)
class DriverProfileAdmin(admin.ModelAdmin):
    """Admin panel for managing Driver Profiles"""

    list_display = [
        "name",
        "license_plate",
        "vehicle_model",
        "vehicle_color",
        "status",
        "created_at",
    ]

    list_filter = [
        "status",
    ]

    search_fields = [
        "name",
        "license_plate",
    ]

    readonly_fields = [
        "created_at",
    ]

    ordering = ("name",)
