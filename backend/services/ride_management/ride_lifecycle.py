"""
Core ride lifecycle operations.

Every status change is a conditional update in the ride store, so two
callers racing on the same ride (two drivers accepting, or a driver
accepting while the rider cancels) get exactly one winner. Broadcasts run
only after the change commits.

    pending -> accepted -> in_progress -> completed
    pending -> cancelled                    (cancel_ride)
    accepted | in_progress -> cancelled     (abandon_ride, frees the driver)
"""

import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List
from dataclasses import dataclass

from django.db import IntegrityError, transaction
from django.utils import timezone

from drivers.models import DriverProfile
from realtime import broadcast
from rides import store
from rides.constants import get_multiplier
from rides.models import RideRequest
from services.communication import call_signaling, chat_relay
from services.pricing import FareEstimator
from .exceptions import (
    RideValidationError,
    RideNotFoundError,
    RideNotAvailableError,
    DriverNotFoundError,
    DriverNotAvailableError,
)

logger = logging.getLogger(__name__)

NO_LONGER_AVAILABLE = "This ride is no longer available."


@dataclass
class RideResult:
    """Result object for ride operations."""
    success: bool
    ride: Optional[RideRequest] = None
    message: str = ""
    error_code: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


def validate_ride_request(data) -> Dict[str, Any]:
    """
    Check a booking payload without touching the store.

    Raises:
        RideValidationError: `missing` names every invalid or absent field
    """
    from rides.serializers import RideRequestCreateSerializer

    serializer = RideRequestCreateSerializer(data=data)
    if not serializer.is_valid():
        missing = list(serializer.errors.keys())
        raise RideValidationError(
            "Ride request is incomplete or invalid: " + ", ".join(missing),
            missing=missing,
            details=serializer.errors,
        )
    return serializer.validated_data


# ===================== Rider Operations =====================

def create_ride_request(
    data,
    client_request_id: Optional[str] = None,
    estimator: Optional[FareEstimator] = None,
) -> RideResult:
    """
    Create a new pending ride request and tell every driver dashboard.

    Args:
        data: Booking payload (pickup, dropoff, final_fare, ride_option, charity)
        client_request_id: Optional retry key; a repeated key returns the original ride
        estimator: FareEstimator to use (defaults to one built from settings)

    Returns:
        RideResult with the created ride

    Raises:
        RideValidationError: If pickup, dropoff or a positive final_fare is missing
        FareEstimationError: If the route cannot be priced (retryable)
    """
    validated = validate_ride_request(data)
    client_request_id = client_request_id or validated.get('client_request_id') or None

    existing = store.find_by_client_request_id(client_request_id)
    if existing:
        return _replayed(existing)

    pickup = validated['pickup']
    dropoff = validated['dropoff']
    ride_option = validated['ride_option']
    multiplier = get_multiplier(ride_option)

    # Priced outside the transaction so the routing call never holds a lock
    estimator = estimator or FareEstimator()
    estimate = estimator.estimate(
        (pickup['lat'], pickup['lng']),
        (dropoff['lat'], dropoff['lng']),
        multiplier,
    )

    try:
        with transaction.atomic():
            ride = store.insert_ride(
                pickup_latitude=_coordinate(pickup['lat']),
                pickup_longitude=_coordinate(pickup['lng']),
                pickup_address=pickup.get('address', ''),
                dropoff_latitude=_coordinate(dropoff['lat']),
                dropoff_longitude=_coordinate(dropoff['lng']),
                dropoff_address=dropoff.get('address', ''),
                ride_option=ride_option,
                ride_option_multiplier=multiplier,
                suggested_fare=f"{estimate.suggested_fare:.2f}",
                final_fare=validated['final_fare'],
                distance_km=estimate.distance_km,
                travel_time_minutes=estimate.travel_time_minutes,
                charity=validated.get('charity', ''),
                client_request_id=client_request_id,
            )
            transaction.on_commit(broadcast.publish_pending_rides)
    except IntegrityError:
        # Same retry key committed by a concurrent request
        existing = store.find_by_client_request_id(client_request_id)
        if existing is None:
            raise
        return _replayed(existing)

    logger.info("Ride %s created (fare %s, option %s)", ride.id, ride.final_fare, ride.ride_option)
    ride = store.get_ride(ride.id)

    return RideResult(
        success=True,
        ride=ride,
        message="Looking for a driver...",
        extra={"replayed": False, "estimate_source": estimate.source},
    )


def _coordinate(value) -> Decimal:
    return Decimal(str(round(float(value), 6)))


def _replayed(ride: RideRequest) -> RideResult:
    logger.info("Replaying ride %s for repeated client request id", ride.id)
    return RideResult(
        success=True,
        ride=ride,
        message="Ride already requested",
        extra={"replayed": True},
    )


@transaction.atomic
def cancel_ride(ride_id: int, actor: str = "rider", reason: str = "") -> RideResult:
    """
    Cancel a pending ride.

    Shares the pending check with accept_ride: whichever reaches the store
    first wins, the other gets RideNotAvailableError.

    Args:
        ride_id: ID of the ride to cancel
        actor: "rider" or "driver"
        reason: Cancellation reason

    Returns:
        RideResult with cancellation status
    """
    cancelled = store.compare_and_set_status(
        ride_id,
        'pending',
        'cancelled',
        cancelled_at=timezone.now(),
        cancelled_by=actor,
        cancellation_reason=reason or "",
    )
    if not cancelled:
        if store.ride_exists(ride_id):
            raise RideNotAvailableError(NO_LONGER_AVAILABLE)
        raise RideNotFoundError("Ride not found")

    chat_relay.purge_ride_chat(ride_id)
    call_signaling.clear_call(ride_id)

    ride = store.get_ride(ride_id)
    message = "Ride cancelled by the rider." if actor == "rider" else "Ride cancelled."
    transaction.on_commit(lambda: broadcast.publish_ride_event(ride, 'ride_cancelled', message))
    transaction.on_commit(broadcast.publish_pending_rides)

    logger.info("Ride %s cancelled by %s", ride_id, actor)
    return RideResult(
        success=True,
        ride=ride,
        message="Ride cancelled successfully",
    )


# ===================== Driver Operations =====================

@transaction.atomic
def accept_ride(ride_id: int, driver_id: int) -> RideResult:
    """
    Claim a pending ride for a driver.

    The driver is marked busy and the ride moves pending -> accepted with
    the driver attached in one conditional update; if either step does not
    apply, the whole transaction rolls back.

    Args:
        ride_id: ID of the ride to accept
        driver_id: DriverProfile ID of the accepting driver

    Returns:
        RideResult with the accepted ride

    Raises:
        DriverNotFoundError: Unknown driver
        DriverNotAvailableError: Driver is offline or already on a ride
        RideNotAvailableError: Ride exists but is no longer pending
        RideNotFoundError: No such ride
    """
    try:
        driver = DriverProfile.objects.get(id=driver_id)
    except DriverProfile.DoesNotExist:
        raise DriverNotFoundError("Driver profile not found")

    claimed = DriverProfile.objects.filter(id=driver.id, status='available').update(status='busy')
    if not claimed:
        raise DriverNotAvailableError("Please set your status to available before accepting rides")

    accepted = store.compare_and_set_status(
        ride_id,
        'pending',
        'accepted',
        driver=driver,
        accepted_at=timezone.now(),
    )
    if not accepted:
        if store.ride_exists(ride_id):
            raise RideNotAvailableError(NO_LONGER_AVAILABLE)
        raise RideNotFoundError("Ride not found")

    ride = store.get_ride(ride_id)
    transaction.on_commit(lambda: broadcast.publish_ride_event(
        ride,
        'ride_accepted',
        'Your ride has been accepted! The driver is on the way.',
        extra={"driver_id": driver.id},
    ))
    transaction.on_commit(broadcast.publish_pending_rides)

    logger.info("Ride %s accepted by driver %s", ride_id, driver.id)
    return RideResult(
        success=True,
        ride=ride,
        message="Ride accepted! Navigate to the pickup location."
    )


def _check_assigned_driver(ride: RideRequest, driver_id: Optional[int]):
    if driver_id is None:
        return
    try:
        driver_id = int(driver_id)
    except (TypeError, ValueError):
        raise RideValidationError("driver_id must be a driver id", missing=["driver_id"])
    if ride.driver_id != driver_id:
        raise RideNotAvailableError("This ride is assigned to another driver.")


@transaction.atomic
def mark_driver_arrived(ride_id: int, driver_id: Optional[int] = None) -> RideResult:
    """Driver reached the pickup point: accepted -> in_progress."""
    ride = store.get_ride(ride_id)
    _check_assigned_driver(ride, driver_id)

    started = store.compare_and_set_status(ride_id, 'accepted', 'in_progress', started_at=timezone.now())
    if not started:
        raise RideNotAvailableError(f"Cannot start trip - ride is {ride.status}")

    ride = store.get_ride(ride_id)
    transaction.on_commit(lambda: broadcast.publish_ride_event(
        ride, 'driver_arrived', 'Your driver has arrived.'
    ))
    return RideResult(success=True, ride=ride, message="Trip started")


@transaction.atomic
def signal_trip_complete(ride_id: int, driver_id: Optional[int] = None) -> RideResult:
    """
    Driver reached the destination; the rider is asked to confirm payment.

    The ride stays in_progress until complete_ride. Repeated signals are no-ops.
    """
    ride = store.get_ride(ride_id, for_update=True)
    _check_assigned_driver(ride, driver_id)

    if ride.status != 'in_progress':
        raise RideNotAvailableError(f"Cannot finish trip - ride is {ride.status}")
    if ride.trip_completed_at is not None:
        return RideResult(success=True, ride=ride, message="Waiting for payment", extra={"already_signalled": True})

    store.update_fields_if_status(ride_id, 'in_progress', trip_completed_at=timezone.now())

    ride = store.get_ride(ride_id)
    transaction.on_commit(lambda: broadcast.publish_ride_event(
        ride, 'trip_completed', 'You have arrived. Please confirm your payment.'
    ))
    return RideResult(success=True, ride=ride, message="Waiting for payment", extra={"already_signalled": False})


@transaction.atomic
def complete_ride(ride_id: int) -> RideResult:
    """
    Complete a ride once payment is confirmed.

    Args:
        ride_id: ID of the ride to complete

    Returns:
        RideResult with completion status; completing twice is not an error
    """
    ride = store.get_ride(ride_id)
    if ride.status == 'completed':
        return RideResult(
            success=True,
            ride=ride,
            message="Ride already completed",
            extra={"already_completed": True},
        )

    completed = store.compare_and_set_status(
        ride_id,
        RideRequest.ASSIGNED_ACTIVE_STATUSES,
        'completed',
        completed_at=timezone.now(),
    )
    if not completed:
        ride = store.get_ride(ride_id)
        if ride.status == 'completed':
            return RideResult(success=True, ride=ride, message="Ride already completed",
                              extra={"already_completed": True})
        raise RideNotAvailableError(f"Cannot complete - ride is {ride.status}")

    # Make driver available
    DriverProfile.objects.filter(id=ride.driver_id).update(status='available')

    chat_relay.purge_ride_chat(ride_id)
    call_signaling.clear_call(ride_id)

    ride = store.get_ride(ride_id)
    transaction.on_commit(lambda: broadcast.publish_ride_event(
        ride, 'ride_completed', 'Ride completed. Thank you for riding with us!'
    ))

    logger.info("Ride %s completed", ride_id)
    return RideResult(
        success=True,
        ride=ride,
        message="Ride completed successfully",
        extra={"already_completed": False},
    )


@transaction.atomic
def abandon_ride(
    ride_id: int,
    actor: str = "rider",
    reason: str = "",
    driver_id: Optional[int] = None,
) -> RideResult:
    """
    End an assigned ride before payment: accepted|in_progress -> cancelled.

    Either party may walk away once a driver is assigned. The assignment is
    dropped and the driver becomes available again, so a session reset never
    leaves a driver stuck on a ride nobody is serving. Races with
    complete_ride through the same conditional update.

    Args:
        ride_id: ID of the ride to end
        actor: "rider" or "driver"
        reason: Free-text reason stored on the ride
        driver_id: When given, must be the assigned driver

    Raises:
        RideNotAvailableError: Ride is not accepted or in progress, or belongs to another driver
        RideNotFoundError: No such ride
    """
    ride = store.get_ride(ride_id)
    _check_assigned_driver(ride, driver_id)

    released_driver_id = ride.driver_id
    abandoned = store.compare_and_set_status(
        ride_id,
        RideRequest.ASSIGNED_ACTIVE_STATUSES,
        'cancelled',
        driver=None,
        cancelled_at=timezone.now(),
        cancelled_by=actor,
        cancellation_reason=reason or "",
    )
    if not abandoned:
        ride = store.get_ride(ride_id)
        raise RideNotAvailableError(f"Cannot end ride - ride is {ride.status}")

    DriverProfile.objects.filter(id=released_driver_id, status='busy').update(status='available')

    chat_relay.purge_ride_chat(ride_id)
    call_signaling.clear_call(ride_id)

    ride = store.get_ride(ride_id)
    message = "The rider cancelled the ride." if actor == "rider" else "The driver cancelled the ride."
    transaction.on_commit(lambda: broadcast.publish_ride_event(
        ride, 'ride_cancelled', message, extra={"driver_id": released_driver_id}
    ))

    logger.info("Ride %s abandoned by %s, driver %s released", ride_id, actor, released_driver_id)
    return RideResult(
        success=True,
        ride=ride,
        message="Ride cancelled",
        extra={"released_driver_id": released_driver_id},
    )


# ===================== Queries =====================

def get_ride(ride_id: int) -> RideRequest:
    """Authoritative ride snapshot used by polling and reconnecting sessions."""
    return store.get_ride(ride_id)


def list_pending_rides() -> List[RideRequest]:
    """Authoritative pending list used by polling and the driver feed."""
    return store.list_pending()


def get_current_driver_ride(driver_id: int) -> Optional[RideRequest]:
    """Get driver's current active ride."""
    return RideRequest.objects.filter(
        driver_id=driver_id,
        status__in=RideRequest.ASSIGNED_ACTIVE_STATUSES,
    ).select_related('driver').first()
