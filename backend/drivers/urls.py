from django.urls import path
from .views import (
    DriverRegisterView,
    DriverProfileView,
    DriverStatusView,
    DriverCurrentRideView,
    DriverRideHistoryView,
)

urlpatterns = [
    path("", DriverRegisterView.as_view(), name="driver-register"),
    path("<int:driver_id>/", DriverProfileView.as_view(), name="driver-profile"),
    path("<int:driver_id>/status/", DriverStatusView.as_view(), name="driver-status"),
    path("<int:driver_id>/current-ride/", DriverCurrentRideView.as_view(), name="driver-current-ride"),
    path("<int:driver_id>/history/", DriverRideHistoryView.as_view(), name="driver-history"),
]
