"""
Call signaling state per ride.

    none -> ringing -> active -> ended
    ringing -> ended

`ended` is shown briefly by clients and counts as `none` when starting the
next call. Each transition is a conditional update, so a late auto-answer
cannot resurrect a call that was hung up, and two parties cannot both start
a call. No audio or video is carried here.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from realtime import broadcast
from rides import store
from rides.models import CallSession
from services.ride_management.exceptions import CallStateError, RideValidationError

logger = logging.getLogger(__name__)

CALL_ROLES = ('rider', 'driver')
CALL_TYPES = ('voice', 'video')
IDLE_STATUSES = ('none', 'ended')
LIVE_STATUSES = ('ringing', 'active')


def serialize_call(session: Optional[CallSession], ride_id: int) -> Dict[str, Any]:
    if session is None:
        return {
            "ride_id": ride_id,
            "call_id": None,
            "status": "none",
            "call_type": None,
            "caller": None,
        }
    return {
        "ride_id": ride_id,
        "call_id": str(session.call_id),
        "status": session.status,
        "call_type": session.call_type,
        "caller": session.caller or None,
        "started_at": session.started_at.isoformat() if session.started_at else None,
        "answered_at": session.answered_at.isoformat() if session.answered_at else None,
        "ended_at": session.ended_at.isoformat() if session.ended_at else None,
    }


def get_call_state(ride_id: int) -> Dict[str, Any]:
    store.get_ride(ride_id)
    return serialize_call(CallSession.objects.filter(ride_id=ride_id).first(), ride_id)


def _publish(ride_id: int):
    state = serialize_call(CallSession.objects.filter(ride_id=ride_id).first(), ride_id)
    transaction.on_commit(lambda: broadcast.publish_to_ride(ride_id, 'call_updated', call=state))
    return state


def _transition(ride_id: int, expected, error_message: str, only_call_id=None, **changes) -> Dict[str, Any]:
    queryset = CallSession.objects.filter(ride_id=ride_id, status__in=list(expected))
    if only_call_id is not None:
        queryset = queryset.filter(call_id=only_call_id)
    if not queryset.update(updated_at=timezone.now(), **changes):
        raise CallStateError(error_message)
    return _publish(ride_id)


def initiate_call(ride_id: int, caller: str, call_type: str = 'voice') -> Dict[str, Any]:
    """
    Start ringing the other party.

    Raises:
        CallStateError: Ride not active, or a call is already ringing/active
    """
    if caller not in CALL_ROLES:
        raise RideValidationError("Caller must be rider or driver", missing=['role'])
    if call_type not in CALL_TYPES:
        raise RideValidationError("Call type must be voice or video", missing=['call_type'])

    with transaction.atomic():
        ride = store.get_ride(ride_id, for_update=True)
        if not ride.is_chat_open:
            raise CallStateError("Calls are only available while the ride is active")

        CallSession.objects.get_or_create(ride=ride)
        call_id = uuid.uuid4()
        state = _transition(
            ride_id,
            IDLE_STATUSES,
            "A call is already in progress",
            status='ringing',
            call_id=call_id,
            call_type=call_type,
            caller=caller,
            started_at=timezone.now(),
            answered_at=None,
            ended_at=None,
        )
        transaction.on_commit(lambda: schedule_auto_answer(ride_id, call_id))

    logger.info("Ride %s: %s started a %s call", ride_id, caller, call_type)
    return state


def answer_call(ride_id: int, role: Optional[str] = None) -> Dict[str, Any]:
    """Ringing -> active. The caller cannot answer their own call."""
    with transaction.atomic():
        session = CallSession.objects.filter(ride_id=ride_id).first()
        if session is None:
            store.get_ride(ride_id)
            raise CallStateError("There is no call to answer")
        if role is not None and role == session.caller:
            raise CallStateError("The caller cannot answer their own call")
        return _transition(
            ride_id,
            ('ringing',),
            "There is no ringing call to answer",
            status='active',
            answered_at=timezone.now(),
        )


def end_call(ride_id: int, role: Optional[str] = None) -> Dict[str, Any]:
    """Either party hangs up from ringing or active."""
    with transaction.atomic():
        if not CallSession.objects.filter(ride_id=ride_id).exists():
            store.get_ride(ride_id)
            raise CallStateError("There is no call to end")
        state = _transition(
            ride_id,
            LIVE_STATUSES,
            "There is no call in progress",
            status='ended',
            ended_at=timezone.now(),
        )
    logger.info("Ride %s: call ended by %s", ride_id, role or "unknown")
    return state


def clear_call(ride_id: int) -> int:
    """Drop the ride's call state (ride completed or cancelled)."""
    deleted, _ = CallSession.objects.filter(ride_id=ride_id).delete()
    return deleted


# ---------------------- Simulated counterpart ----------------------

def auto_answer(ride_id: int, call_id) -> bool:
    """
    SIMULATED: the other party "picks up" after a fixed delay.

    Applies only if the very same call is still ringing; a call that was
    ended or replaced in the meantime is left alone. Returns whether it applied.
    """
    with transaction.atomic():
        try:
            _transition(
                ride_id,
                ('ringing',),
                "Call no longer ringing",
                only_call_id=call_id,
                status='active',
                answered_at=timezone.now(),
            )
        except CallStateError:
            logger.debug("Auto-answer skipped for ride %s call %s", ride_id, call_id)
            return False
    return True


def schedule_auto_answer(ride_id: int, call_id):
    """SIMULATED: queue the auto-answer; replace with real peer negotiation."""
    from rides.tasks import auto_answer_call_task

    try:
        auto_answer_call_task.apply_async(
            args=[ride_id, str(call_id)],
            countdown=settings.CALL_AUTO_ANSWER_SECONDS,
        )
    except Exception:
        logger.exception("Failed to schedule auto-answer for ride %s", ride_id)
