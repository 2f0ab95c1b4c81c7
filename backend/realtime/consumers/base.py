"""Base WebSocket consumer with shared functionality for all consumers."""

import logging
from typing import Dict, Any, List, Optional, Set

from channels.generic.websocket import AsyncJsonWebsocketConsumer

logger = logging.getLogger(__name__)


class BaseConsumer(AsyncJsonWebsocketConsumer):
    """
    Base consumer with shared connection management and helper methods.
    
    Subclasses should override:
        - get_groups(): return list of groups to join on connect, or None to reject
        - handle_message(msg_type, data): handle incoming messages
    """

    async def connect(self):
        # Track joined groups for cleanup
        self.joined_groups: Set[str] = set()

        groups = await self.get_groups()
        if groups is None:
            await self.close(code=4404)
            return

        for group in groups:
            await self._join_group(group)

        await self.accept()
        await self.on_connect()

    async def get_groups(self) -> Optional[List[str]]:
        """Override in subclass to choose the groups for this connection."""
        return []

    async def on_connect(self):
        """Override in subclass for custom connect logic."""
        await self.send_json({
            "type": "connection_established",
        })

    async def disconnect(self, close_code):
        """Leave all joined groups on disconnect."""
        try:
            for group in list(getattr(self, "joined_groups", ())):
                await self._leave_group(group)
            await self.on_disconnect(close_code)
        except Exception:
            logger.exception("Error during disconnect for channel %s", self.channel_name)

    async def on_disconnect(self, close_code):
        """Override in subclass for custom disconnect logic."""
        pass

    async def receive_json(self, data: Dict[str, Any]):
        """Route incoming messages to appropriate handlers."""
        msg_type = data.get("type") if isinstance(data, dict) else None
        if not msg_type:
            await self.send_error("Message type is required")
            return
        
        try:
            await self.handle_message(msg_type, data)
        except Exception:
            logger.exception("Error handling message type %s", msg_type)
            await self.send_error(f"Error processing {msg_type}")

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        """Override in subclass to handle specific message types."""
        await self.send_error(f"Unknown message type: {msg_type}")

    # ---------------------- Group Management Helpers ----------------------

    async def _join_group(self, group_name: str):
        """Join a channel group and track it."""
        await self.channel_layer.group_add(group_name, self.channel_name)
        self.joined_groups.add(group_name)

    async def _leave_group(self, group_name: str):
        """Leave a channel group and untrack it."""
        await self.channel_layer.group_discard(group_name, self.channel_name)
        self.joined_groups.discard(group_name)

    # ---------------------- Response Helpers ----------------------

    async def send_error(self, message: str):
        """Send an error message to the client."""
        await self.send_json({
            "type": "error",
            "message": message,
        })

    # ---------------------- Common Event Handlers ----------------------
    # group_send events built by realtime.broadcast are already in client
    # format (type, event_id, sent_at, payload), so they are forwarded as-is.

    async def forward_event(self, event):
        await self.send_json(event)

    async def ride_list_update(self, event):
        """Full pending-ride snapshot for driver dashboards."""
        await self.forward_event(event)

    async def ride_accepted(self, event):
        """Sent when a ride is accepted."""
        await self.forward_event(event)

    async def driver_arrived(self, event):
        await self.forward_event(event)

    async def trip_completed(self, event):
        """Driver finished the trip; rider is asked to pay."""
        await self.forward_event(event)

    async def ride_completed(self, event):
        """Sent when a ride is completed."""
        await self.forward_event(event)

    async def ride_cancelled(self, event):
        """Sent when a ride is cancelled."""
        await self.forward_event(event)

    async def chat_message(self, event):
        await self.forward_event(event)

    async def call_updated(self, event):
        await self.forward_event(event)
