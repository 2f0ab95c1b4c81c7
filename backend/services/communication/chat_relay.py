"""
Ride-scoped chat.

Messages are appended to the ride's log and pushed to the ride room. The log
only lives as long as the ride is active: completion or cancellation drops it.
"""

import logging
from typing import List, Optional

from django.conf import settings
from django.db import transaction

from realtime import broadcast
from rides import store
from rides.models import ChatMessage
from services.ride_management.exceptions import ChatClosedError, RideValidationError

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000
SENDER_ROLES = ('rider', 'driver')

# Canned answer used by the simulated driver reply
AUTO_REPLY_TEXT = "Ok, I'm on my way."


def serialize_message(message: ChatMessage):
    return {
        "id": message.id,
        "ride_id": message.ride_id,
        "sender": message.sender,
        "text": message.text,
        "created_at": message.created_at.isoformat(),
    }


def post_message(ride_id: int, sender: str, text: str) -> ChatMessage:
    """
    Append a message to a ride's chat and publish it to the ride room.

    Raises:
        RideValidationError: Bad sender or empty/oversized text
        RideNotFoundError: No such ride
        ChatClosedError: Ride is not accepted or in progress
    """
    if sender not in SENDER_ROLES:
        raise RideValidationError("Sender must be rider or driver", missing=['sender'])
    text = (text or "").strip()
    if not text:
        raise RideValidationError("Message text is required", missing=['text'])
    if len(text) > MAX_MESSAGE_LENGTH:
        raise RideValidationError(
            f"Message text is limited to {MAX_MESSAGE_LENGTH} characters", missing=['text']
        )

    with transaction.atomic():
        # Row lock keeps the message from racing the ride's completion purge
        ride = store.get_ride(ride_id, for_update=True)
        if not ride.is_chat_open:
            raise ChatClosedError("Chat is only available while the ride is active")

        message = ChatMessage.objects.create(ride=ride, sender=sender, text=text)
        payload = serialize_message(message)
        transaction.on_commit(
            lambda: broadcast.publish_to_ride(ride_id, 'chat_message', message=payload)
        )

    if sender == 'rider' and settings.CHAT_AUTO_REPLY_ENABLED:
        schedule_simulated_reply(ride_id)

    return message


def list_messages(ride_id: int, after_id: Optional[int] = None) -> List[ChatMessage]:
    """Chat log in submission order; `after_id` returns only newer messages."""
    store.get_ride(ride_id)
    queryset = ChatMessage.objects.filter(ride_id=ride_id).order_by('id')
    if after_id is not None:
        queryset = queryset.filter(id__gt=after_id)
    return list(queryset)


def purge_ride_chat(ride_id: int) -> int:
    deleted, _ = ChatMessage.objects.filter(ride_id=ride_id).delete()
    if deleted:
        logger.debug("Dropped %s chat messages for ride %s", deleted, ride_id)
    return deleted


# ---------------------- Simulated counterpart ----------------------

def schedule_simulated_reply(ride_id: int):
    """
    SIMULATED: stands in for a human driver typing back.

    Only enabled through CHAT_AUTO_REPLY_ENABLED; real deployments leave it off.
    """
    from rides.tasks import simulated_chat_reply_task

    try:
        simulated_chat_reply_task.apply_async(
            args=[ride_id],
            countdown=settings.CHAT_AUTO_REPLY_DELAY_SECONDS,
        )
    except Exception:
        logger.exception("Failed to schedule simulated chat reply for ride %s", ride_id)
