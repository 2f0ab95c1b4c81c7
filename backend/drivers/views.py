from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status

from drivers.models import DriverProfile
from drivers.serializers import (
    DriverProfileSerializer,
    DriverStatusSerializer,
)
from rides.serializers import RideRequestSerializer
from rides.models import RideRequest
from services.ride_management import get_current_driver_ride
from services.ride_management.exceptions import DriverNotAvailableError

from drivers import services


# Utility: look up the driver named in the URL
def require_driver(driver_id):
    try:
        return True, DriverProfile.objects.get(id=driver_id)
    except DriverProfile.DoesNotExist:
        return False, Response(
            {"success": False, "error": "driver_not_found", "message": "Driver profile not found"},
            status=status.HTTP_404_NOT_FOUND,
        )


class DriverRegisterView(APIView):
    """Register a driver/vehicle profile (no identity management)."""

    def get(self, request):
        profiles = DriverProfile.objects.all()
        serializer = DriverProfileSerializer(profiles, many=True)
        return Response({"count": len(serializer.data), "drivers": serializer.data})

    def post(self, request):
        serializer = DriverProfileSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        profile = serializer.save()
        return Response(DriverProfileSerializer(profile).data, status=status.HTTP_201_CREATED)


class DriverProfileView(APIView):

    def get(self, request, driver_id):
        ok, profile = require_driver(driver_id)
        if ok is False:
            return profile  # Response object

        serializer = DriverProfileSerializer(profile)
        return Response(serializer.data)


class DriverStatusView(APIView):

    def get(self, request, driver_id):
        ok, profile = require_driver(driver_id)
        if ok is False:
            return profile

        return Response({"status": profile.status})

    def put(self, request, driver_id):
        ok, profile = require_driver(driver_id)
        if ok is False:
            return profile

        serializer = DriverStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        new_status = serializer.validated_data["status"]

        try:
            services.update_driver_status(profile, new_status)
        except DriverNotAvailableError as e:
            return Response(
                {"success": False, "error": "driver_busy", "message": str(e)},
                status=status.HTTP_409_CONFLICT,
            )

        return Response({
            "message": f"Status updated to {new_status}",
            "status": new_status
        })


class DriverCurrentRideView(APIView):
    """Polling fallback for the driver's assigned ride."""

    def get(self, request, driver_id):
        ok, profile = require_driver(driver_id)
        if ok is False:
            return profile

        ride = get_current_driver_ride(profile.id)
        if not ride:
            return Response({"has_active_ride": False, "message": "No active ride"})

        serializer = RideRequestSerializer(ride)
        return Response({"has_active_ride": True, "ride": serializer.data})


class DriverRideHistoryView(APIView):

    def get(self, request, driver_id):
        ok, profile = require_driver(driver_id)
        if ok is False:
            return profile

        completed = RideRequest.objects.filter(driver=profile, status="completed").select_related("driver")
        serializer = RideRequestSerializer(completed, many=True)

        return Response({"count": len(serializer.data), "rides": serializer.data})
