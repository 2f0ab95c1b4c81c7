"""Driver dashboard WebSocket consumer: the live pending-ride list."""

import logging
from typing import Dict, Any, List, Optional

from channels.db import database_sync_to_async

from .base import BaseConsumer
from realtime.broadcast import PENDING_RIDES_GROUP, build_ride_list_event

logger = logging.getLogger(__name__)


class DriverConsumer(BaseConsumer):
    """
    WebSocket consumer for driver dashboards.
    
    Handles:
        - Pending ride list pushes (ride_list_update)
        - refresh_rides requests, answered with a fresh snapshot

    A snapshot is sent right after connecting, so a reconnecting dashboard
    never depends on replay of the updates it missed.
    """

    async def get_groups(self) -> Optional[List[str]]:
        return [PENDING_RIDES_GROUP]

    async def on_connect(self):
        await self.send_json({
            "type": "connection_established",
            "message": "Driver dashboard connected",
        })
        await self._send_snapshot()

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        """Handle driver-specific messages."""
        
        if msg_type == "refresh_rides":
            await self._send_snapshot()
        else:
            await self.send_error(f"Unknown message type: {msg_type}")

    async def _send_snapshot(self):
        event = await database_sync_to_async(build_ride_list_event)()
        await self.send_json(event)
