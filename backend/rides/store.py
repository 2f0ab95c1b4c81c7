"""
Authoritative ride storage.

Every read of ride state (HTTP polling, WebSocket snapshots, the coordinator)
goes through this module so all of them observe the same committed rows.
Status changes are conditional UPDATEs: the row only changes if its current
status is one of the expected ones, and the caller learns whether it did.
"""

import logging
from typing import Iterable, List, Optional, Union

from django.utils import timezone

from services.ride_management.exceptions import CorruptRideError, RideNotFoundError
from .models import RideRequest

logger = logging.getLogger(__name__)


def insert_ride(**fields) -> RideRequest:
    """Store a new ride as pending."""
    fields['status'] = 'pending'
    fields.pop('driver', None)
    return RideRequest.objects.create(**fields)


def ride_exists(ride_id: int) -> bool:
    return RideRequest.objects.filter(id=ride_id).exists()


def find_by_client_request_id(client_request_id: str) -> Optional[RideRequest]:
    if not client_request_id:
        return None
    return RideRequest.objects.select_related('driver').filter(
        client_request_id=client_request_id
    ).first()


def get_ride(ride_id: int, for_update: bool = False) -> RideRequest:
    """
    Fetch a single ride.

    `for_update` locks the row until the surrounding transaction ends
    (ignored on SQLite, where the transaction already holds the write lock).

    Raises:
        RideNotFoundError: no such ride
        CorruptRideError: the stored row violates the ride invariants
    """
    queryset = RideRequest.objects.select_related('driver')
    if for_update:
        queryset = RideRequest.objects.select_for_update()
    try:
        ride = queryset.get(id=ride_id)
    except RideRequest.DoesNotExist:
        raise RideNotFoundError("Ride not found")

    errors = ride.integrity_errors()
    if errors:
        logger.error("Rejecting corrupt ride %s: %s", ride.id, "; ".join(errors))
        raise CorruptRideError(f"Ride {ride.id} is in an invalid state")
    return ride


def list_pending() -> List[RideRequest]:
    """All valid pending rides, oldest first. Invalid rows are logged and skipped."""
    rides = []
    queryset = RideRequest.objects.select_related('driver').filter(
        status='pending'
    ).order_by('created_at', 'id')
    for ride in queryset:
        errors = ride.integrity_errors()
        if errors:
            logger.error("Excluding corrupt pending ride %s: %s", ride.id, "; ".join(errors))
            continue
        rides.append(ride)
    return rides


def compare_and_set_status(
    ride_id: int,
    expected: Union[str, Iterable[str]],
    new_status: str,
    **changes,
) -> bool:
    """
    Move a ride to `new_status` only if its status is currently `expected`.

    Runs as one UPDATE statement, so concurrent callers racing on the same
    ride get exactly one winner. Returns whether the update applied.
    """
    if isinstance(expected, str):
        expected = [expected]
    updated = RideRequest.objects.filter(
        id=ride_id,
        status__in=list(expected),
    ).update(status=new_status, updated_at=timezone.now(), **changes)
    return updated == 1


def update_fields_if_status(ride_id: int, expected: Union[str, Iterable[str]], **changes) -> bool:
    """Conditional update that leaves status untouched."""
    if isinstance(expected, str):
        expected = [expected]
    updated = RideRequest.objects.filter(
        id=ride_id,
        status__in=list(expected),
    ).update(updated_at=timezone.now(), **changes)
    return updated == 1
