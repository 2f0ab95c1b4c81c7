"""Ride room WebSocket consumer: status events, chat and call signaling."""

import logging
from typing import Dict, Any, List, Optional
from urllib.parse import parse_qs

from channels.db import database_sync_to_async

from .base import BaseConsumer
from realtime.broadcast import build_event, ride_group_name, serialize_ride

logger = logging.getLogger(__name__)

ROLES = ("rider", "driver")


class RideConsumer(BaseConsumer):
    """
    WebSocket consumer for one ride's room.
    
    URL: ws/ride/<ride_id>/<role>/ (role is rider or driver)

    The rider may join until the ride completes or is cancelled; the driver only once a
    driver is assigned (and, when ?driver_id= is given, only that driver).
    Joining never replays earlier events; a ride_snapshot is sent instead.
    """

    async def get_groups(self) -> Optional[List[str]]:
        kwargs = self.scope["url_route"]["kwargs"]
        self.role = kwargs.get("role")
        try:
            self.ride_id = int(kwargs.get("ride_id"))
        except (TypeError, ValueError):
            return None

        if self.role not in ROLES:
            return None

        query = parse_qs(self.scope.get("query_string", b"").decode())
        driver_id = query.get("driver_id", [None])[0]

        if not await self._can_join(driver_id):
            logger.info("Rejected %s from ride %s room", self.role, self.ride_id)
            return None
        return [ride_group_name(self.ride_id)]

    async def on_connect(self):
        await self.send_json({
            "type": "connection_established",
            "ride_id": self.ride_id,
            "role": self.role,
            "message": "Ride room connection established",
        })
        await self._send_snapshot()

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        """Handle ride room messages."""
        from services.ride_management.exceptions import (
            RideValidationError,
            RideNotFoundError,
            ChatClosedError,
            CallStateError,
        )

        try:
            if msg_type == "refresh":
                await self._send_snapshot()
            elif msg_type == "chat_message":
                await self._post_chat(data.get("text", ""))
            elif msg_type == "call_initiate":
                await self._call("initiate", data.get("call_type", "voice"))
            elif msg_type == "call_answer":
                await self._call("answer")
            elif msg_type == "call_end":
                await self._call("end")
            else:
                await self.send_error(f"Unknown message type: {msg_type}")
        except (RideValidationError, RideNotFoundError, ChatClosedError, CallStateError) as e:
            await self.send_error(str(e))

    # ---------------------- Database Helpers ----------------------

    @database_sync_to_async
    def _can_join(self, driver_id) -> bool:
        """Ride must exist and not be finished; a driver must be the assigned one."""
        from rides.models import RideRequest
        try:
            ride = RideRequest.objects.get(id=self.ride_id)
        except RideRequest.DoesNotExist:
            return False

        if ride.status in RideRequest.TERMINAL_STATUSES:
            return False
        if self.role == "driver":
            if ride.driver_id is None:
                return False
            if driver_id is not None and str(ride.driver_id) != str(driver_id):
                return False
        return True

    @database_sync_to_async
    def _build_snapshot(self) -> Dict[str, Any]:
        from rides import store
        from services.communication.call_signaling import get_call_state

        ride = store.get_ride(self.ride_id)
        return build_event(
            "ride_snapshot",
            ride_id=ride.id,
            status=ride.status,
            ride=serialize_ride(ride),
            call=get_call_state(ride.id),
        )

    async def _send_snapshot(self):
        from services.ride_management.exceptions import CorruptRideError, RideNotFoundError

        try:
            snapshot = await self._build_snapshot()
        except (CorruptRideError, RideNotFoundError) as e:
            await self.send_error(str(e))
            return
        await self.send_json(snapshot)

    @database_sync_to_async
    def _post_chat(self, text: str):
        from services.communication.chat_relay import post_message
        post_message(self.ride_id, self.role, text)

    @database_sync_to_async
    def _call(self, action: str, call_type: str = "voice"):
        from services.communication import call_signaling
        if action == "initiate":
            return call_signaling.initiate_call(self.ride_id, self.role, call_type)
        if action == "answer":
            return call_signaling.answer_call(self.ride_id, self.role)
        return call_signaling.end_call(self.ride_id, self.role)
