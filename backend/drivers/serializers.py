from rest_framework import serializers
from drivers.models import DriverProfile


class DriverProfileSerializer(serializers.ModelSerializer):
    """
    Full driver profile serializer
    """

    class Meta:
        model = DriverProfile
        fields = [
            "id",
            "name",
            "license_plate",
            "vehicle_model",
            "vehicle_color",
            "status",
            "created_at",
        ]
        read_only_fields = ["id", "status", "created_at"]


class DriverBasicSerializer(serializers.ModelSerializer):
    """
    Lite version of driver info for ride details 
    (the driver/vehicle assignment the rider sees once a ride is accepted).
    """
    vehicle = serializers.CharField(source="vehicle_description", read_only=True)

    class Meta:
        model = DriverProfile
        fields = [
            "id",
            "name",
            "license_plate",
            "vehicle_model",
            "vehicle_color",
            "vehicle",
        ]


class DriverStatusSerializer(serializers.Serializer):
    """
    Serializer for updating driver availability (available/offline).
    """
    status = serializers.ChoiceField(choices=["available", "offline"])
