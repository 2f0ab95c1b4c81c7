"""
Celery tasks for ride-related background processing.

Both tasks are SIMULATED counterparts: they stand in for the other person
answering a call or replying in chat, and can be removed once real peer
signaling exists without touching the call or chat state machines.
"""

from celery import shared_task
import logging

logger = logging.getLogger(__name__)


@shared_task
def auto_answer_call_task(ride_id: int, call_id: str):
    """
    Answer a ringing call after the configured delay.
    
    Scheduled when a call starts. If the call was ended or replaced in
    the meantime, nothing changes.
    """
    from services.communication import auto_answer
    
    try:
        answered = auto_answer(ride_id, call_id)
        if answered:
            logger.info(f"Simulated answer for call {call_id} on ride {ride_id}")
        return answered
    except Exception as e:
        logger.error(f"Error auto-answering call {call_id} on ride {ride_id}: {e}")
        return False


@shared_task
def simulated_chat_reply_task(ride_id: int):
    """Post the canned driver reply if the ride's chat is still open."""
    from services.communication.chat_relay import post_message, AUTO_REPLY_TEXT
    from services.ride_management.exceptions import ChatClosedError, RideNotFoundError
    
    try:
        post_message(ride_id, 'driver', AUTO_REPLY_TEXT)
        return True
    except (ChatClosedError, RideNotFoundError):
        logger.info(f"Chat for ride {ride_id} closed before simulated reply")
        return False
