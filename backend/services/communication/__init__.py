"""
Communication service - ride-scoped chat and call signaling.

Modules:
    - chat_relay: ordered per-ride chat log with room fan-out
    - call_signaling: none/ringing/active/ended call state per ride
"""

from .chat_relay import post_message, list_messages, purge_ride_chat
from .call_signaling import (
    get_call_state,
    initiate_call,
    answer_call,
    end_call,
    auto_answer,
    clear_call,
)

__all__ = [
    "post_message",
    "list_messages",
    "purge_ride_chat",
    "get_call_state",
    "initiate_call",
    "answer_call",
    "end_call",
    "auto_answer",
    "clear_call",
]
