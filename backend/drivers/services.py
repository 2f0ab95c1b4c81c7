from drivers.models import DriverProfile
from services.ride_management import get_current_driver_ride
from services.ride_management.exceptions import DriverNotAvailableError


# Demo fleet used by `manage.py seed_drivers`
DEMO_FLEET = [
    {"name": "Juan P.", "license_plate": "5482-ABC", "vehicle_model": "Toyota Corolla", "vehicle_color": "Silver"},
    {"name": "Maria G.", "license_plate": "1234-XYZ", "vehicle_model": "Nissan Versa", "vehicle_color": "White"},
    {"name": "Carlos R.", "license_plate": "9876-DEF", "vehicle_model": "Suzuki Swift", "vehicle_color": "Red"},
    {"name": "Sofia L.", "license_plate": "4567-GHI", "vehicle_model": "Kia Rio", "vehicle_color": "Black"},
]


# DRIVER STATUS UPDATE
def update_driver_status(profile: DriverProfile, new_status: str):
    """
    Update driver availability status.
    A driver with an active ride stays busy until the ride completes.
    """
    if profile.status == 'busy' and get_current_driver_ride(profile.id) is not None:
        raise DriverNotAvailableError("Finish the current ride before changing status")

    profile.status = new_status
    profile.save(update_fields=["status"])
    return profile


def seed_demo_fleet():
    """Create the demo drivers; existing plates are left untouched. Returns how many were created."""
    created = 0
    for entry in DEMO_FLEET:
        _, was_created = DriverProfile.objects.get_or_create(
            license_plate=entry["license_plate"],
            defaults=entry,
        )
        created += int(was_created)
    return created
