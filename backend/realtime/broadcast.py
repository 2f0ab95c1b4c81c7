"""
Ride event fan-out over the channel layer.

Two kinds of groups carry every state change:

1. `pending_rides` - joined by every driver dashboard. Each change to the set
   of pending rides publishes a full `ride_list_update` snapshot built from
   the same read the polling endpoint serves.
2. `ride_<id>` - the ride room, joined by the rider and, once assigned, the
   driver. Acceptance, arrival, trip-complete, completion, cancellation,
   chat and call events go here.

Every event carries a fresh `event_id` so clients can drop duplicates.
Publishing never raises: a failed push only delays clients until their next
poll, and the caller's committed state stands.
"""

from __future__ import annotations

import logging
import uuid
from typing import Dict, Any, List, Optional

from channels.layers import get_channel_layer
from asgiref.sync import async_to_sync
from django.utils import timezone

logger = logging.getLogger(__name__)

PENDING_RIDES_GROUP = "pending_rides"


def ride_group_name(ride_id: int) -> str:
    return f"ride_{ride_id}"


def build_event(event_type: str, **fields) -> Dict[str, Any]:
    """Wrap a payload with its type, a unique event id and a send time."""
    return {
        "type": event_type,
        "event_id": uuid.uuid4().hex,
        "sent_at": timezone.now().isoformat(),
        **fields,
    }


def serialize_ride(ride) -> Dict[str, Any]:
    from rides.serializers import RideRequestSerializer
    return dict(RideRequestSerializer(ride).data)


def pending_rides_snapshot() -> List[Dict[str, Any]]:
    """Authoritative pending list, serialized. Shared by push and polling."""
    from rides import store
    return [serialize_ride(ride) for ride in store.list_pending()]


def build_ride_list_event() -> Dict[str, Any]:
    rides = pending_rides_snapshot()
    return build_event("ride_list_update", rides=rides, count=len(rides))


# ---------------------- Sync Broadcast Functions ----------------------

def _group_send(group: str, event: Dict[str, Any]) -> Dict[str, Any]:
    try:
        channel_layer = get_channel_layer()
        if not channel_layer:
            return {"broadcasted": False, "reason": "no_channel_layer"}

        async_to_sync(channel_layer.group_send)(group, event)
        return {"broadcasted": True, "group": group, "event_id": event["event_id"]}

    except Exception as e:
        logger.exception("Broadcast of %s to %s failed", event.get("type"), group)
        return {"broadcasted": False, "error": str(e)}


def publish_pending_rides() -> Dict[str, Any]:
    """Send the current pending-ride list to every driver dashboard."""
    try:
        event = build_ride_list_event()
    except Exception as e:
        logger.exception("Could not build pending ride snapshot")
        return {"broadcasted": False, "error": str(e)}
    return _group_send(PENDING_RIDES_GROUP, event)


def publish_ride_event(
    ride,
    event_type: str,
    message: str = "",
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Publish a ride state change to the ride's room with a full ride snapshot.
    
    Args:
        ride: RideRequest after the change
        event_type: ride_accepted, driver_arrived, trip_completed, ride_completed or ride_cancelled
        message: Human-readable text for the UI
        extra: Additional payload fields
    """
    try:
        event = build_event(
            event_type,
            ride_id=ride.id,
            status=ride.status,
            message=message,
            ride=serialize_ride(ride),
            **(extra or {}),
        )
    except Exception as e:
        logger.exception("Could not build %s event for ride %s", event_type, getattr(ride, "id", None))
        return {"broadcasted": False, "error": str(e)}
    return _group_send(ride_group_name(ride.id), event)


def publish_to_ride(ride_id: int, event_type: str, **payload) -> Dict[str, Any]:
    """Publish a room event that does not need a ride snapshot (chat, calls)."""
    event = build_event(event_type, ride_id=ride_id, **payload)
    return _group_send(ride_group_name(ride_id), event)
