"""
Per-party ride session state machines.

A session is built for one connected rider or driver with an injected API
client and scheduler. It changes state only through its transition table;
pushed WebSocket events and polled snapshots both feed the same table, so
whichever arrives first advances the session and the other is ignored.

Rider:
    Idle -> Calculating -> Idle                       (estimate)
    Idle -> AwaitingDriver                            (booking submitted)
    AwaitingDriver -> DriverEnRoute | Idle            (accepted | cancelled)
    DriverEnRoute -> InProgress -> PaymentPending     (arrived, trip complete)
    PaymentPending -> VerifyingPayment -> Confirmed -> Idle
    DriverEnRoute | InProgress | PaymentPending -> Idle   (ride abandoned)

Driver:
    Dashboard -> DriverEnRoute -> InProgress -> PaymentRequest -> Dashboard
    Dashboard -> DriverEnRoute                        (assigned ride resumed)
    DriverEnRoute | InProgress | PaymentRequest -> Dashboard   (ride abandoned)
"""

import logging
import threading
import uuid
from collections import deque
from typing import Any, Callable, Dict, List, Optional

from .exceptions import RideClientError, RideNotFound, RideUnavailable
from .scheduler import ThreadingScheduler

logger = logging.getLogger(__name__)

NO_LONGER_AVAILABLE = "This ride is no longer available."

# Bounded memory of processed event ids
SEEN_EVENTS_LIMIT = 500


class RiderState:
    IDLE = "Idle"
    CALCULATING = "Calculating"
    AWAITING_DRIVER = "AwaitingDriver"
    DRIVER_EN_ROUTE = "DriverEnRoute"
    IN_PROGRESS = "InProgress"
    PAYMENT_PENDING = "PaymentPending"
    VERIFYING_PAYMENT = "VerifyingPayment"
    CONFIRMED = "Confirmed"


class DriverState:
    DASHBOARD = "Dashboard"
    DRIVER_EN_ROUTE = "DriverEnRoute"
    IN_PROGRESS = "InProgress"
    PAYMENT_REQUEST = "PaymentRequest"


# Rider states with a ride the server still considers live
LIVE_RIDER_STATES = (
    RiderState.AWAITING_DRIVER,
    RiderState.DRIVER_EN_ROUTE,
    RiderState.IN_PROGRESS,
    RiderState.PAYMENT_PENDING,
)


# (state, trigger) -> next state. Anything not listed is ignored.
RIDER_TRANSITIONS = {
    (RiderState.IDLE, "estimate_started"): RiderState.CALCULATING,
    (RiderState.CALCULATING, "estimate_finished"): RiderState.IDLE,
    (RiderState.IDLE, "booking_submitted"): RiderState.AWAITING_DRIVER,
    (RiderState.AWAITING_DRIVER, "ride_accepted"): RiderState.DRIVER_EN_ROUTE,
    (RiderState.AWAITING_DRIVER, "ride_cancelled"): RiderState.IDLE,
    (RiderState.DRIVER_EN_ROUTE, "driver_arrived"): RiderState.IN_PROGRESS,
    (RiderState.IN_PROGRESS, "trip_completed"): RiderState.PAYMENT_PENDING,
    (RiderState.PAYMENT_PENDING, "payment_submitted"): RiderState.VERIFYING_PAYMENT,
    (RiderState.VERIFYING_PAYMENT, "payment_verified"): RiderState.CONFIRMED,
    (RiderState.CONFIRMED, "confirmation_shown"): RiderState.IDLE,
    (RiderState.DRIVER_EN_ROUTE, "ride_cancelled"): RiderState.IDLE,
    (RiderState.IN_PROGRESS, "ride_cancelled"): RiderState.IDLE,
    (RiderState.PAYMENT_PENDING, "ride_cancelled"): RiderState.IDLE,
}

DRIVER_TRANSITIONS = {
    (DriverState.DASHBOARD, "accept_succeeded"): DriverState.DRIVER_EN_ROUTE,
    (DriverState.DRIVER_EN_ROUTE, "driver_arrived"): DriverState.IN_PROGRESS,
    (DriverState.IN_PROGRESS, "trip_completed"): DriverState.PAYMENT_REQUEST,
    (DriverState.PAYMENT_REQUEST, "ride_completed"): DriverState.DASHBOARD,
    (DriverState.DRIVER_EN_ROUTE, "ride_completed"): DriverState.DASHBOARD,
    (DriverState.IN_PROGRESS, "ride_completed"): DriverState.DASHBOARD,
    (DriverState.DASHBOARD, "ride_resumed"): DriverState.DRIVER_EN_ROUTE,
    (DriverState.DRIVER_EN_ROUTE, "ride_cancelled"): DriverState.DASHBOARD,
    (DriverState.IN_PROGRESS, "ride_cancelled"): DriverState.DASHBOARD,
    (DriverState.PAYMENT_REQUEST, "ride_cancelled"): DriverState.DASHBOARD,
}

# Ride events whose payload belongs to one ride
RIDE_EVENTS = {"ride_accepted", "driver_arrived", "trip_completed", "ride_completed", "ride_cancelled"}


def derive_triggers(ride: Dict[str, Any]) -> List[str]:
    """
    Ride events implied by an authoritative snapshot, in graph order.

    Replaying them through the transition table walks a session that missed
    pushes forward one valid step at a time.
    """
    status = ride.get("status")
    triggers = []
    if status in ("accepted", "in_progress", "completed"):
        triggers.append("ride_accepted")
    if status in ("in_progress", "completed"):
        triggers.append("driver_arrived")
    if status == "completed" or (status == "in_progress" and ride.get("trip_completed_at")):
        triggers.append("trip_completed")
    if status == "completed":
        triggers.append("ride_completed")
    if status == "cancelled":
        triggers.append("ride_cancelled")
    return triggers


class _BaseSession:
    """Event de-duplication, transitions, chat and call handling shared by both roles."""

    role = ""
    transitions: Dict = {}

    def __init__(self, api, scheduler=None):
        self.api = api
        self.scheduler = scheduler or ThreadingScheduler()
        self.state = ""
        self.ride: Optional[Dict[str, Any]] = None
        self.chat: List[Dict[str, Any]] = []
        self.call: Optional[Dict[str, Any]] = None
        self.error: Optional[str] = None
        self.history: List[tuple] = []
        self._listeners: List[Callable] = []
        self._seen_events = set()
        self._seen_order = deque()
        self._seen_messages = set()
        self._lock = threading.RLock()

    # ---------------------- Observers ----------------------

    def subscribe(self, listener: Callable):
        """Call `listener(session)` after every state or data change."""
        self._listeners.append(listener)

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Session listener failed")

    # ---------------------- Transitions ----------------------

    @property
    def ride_id(self) -> Optional[int]:
        return self.ride.get("id") if self.ride else None

    def _apply(self, trigger: str, ride: Optional[Dict[str, Any]] = None) -> bool:
        next_state = self.transitions.get((self.state, trigger))
        if next_state is None:
            logger.debug("%s session ignored %s in state %s", self.role, trigger, self.state)
            return False
        if ride is not None:
            self.ride = ride
        self.history.append((self.state, next_state, trigger))
        self.state = next_state
        self._on_enter(next_state, trigger)
        return True

    def _on_enter(self, state: str, trigger: str):
        """Hook for subclasses."""
        pass

    def _remember(self, event_id: Optional[str]) -> bool:
        """False if the event was already processed."""
        if not event_id:
            return True
        if event_id in self._seen_events:
            return False
        self._seen_events.add(event_id)
        self._seen_order.append(event_id)
        if len(self._seen_order) > SEEN_EVENTS_LIMIT:
            self._seen_events.discard(self._seen_order.popleft())
        return True

    def _is_own_ride(self, ride_id) -> bool:
        return self.ride_id is not None and ride_id is not None and int(ride_id) == int(self.ride_id)

    def _sync_from_snapshot(self, ride: Dict[str, Any]):
        if not self._is_own_ride(ride.get("id")):
            return
        self.ride = ride
        for trigger in derive_triggers(ride):
            self._apply(trigger, ride)

    # ---------------------- Inbound events ----------------------

    def handle_event(self, event: Dict[str, Any]) -> bool:
        """
        Apply one pushed event. Returns whether it changed anything.

        Duplicates (same event_id) and events for other rides are dropped.
        """
        with self._lock:
            if not self._remember(event.get("event_id")):
                return False
            changed = self._dispatch(event)
        if changed:
            self._notify()
        return changed

    def _dispatch(self, event: Dict[str, Any]) -> bool:
        event_type = event.get("type")

        if event_type in RIDE_EVENTS:
            if not self._is_own_ride(event.get("ride_id")):
                return False
            return self._apply(event_type, event.get("ride"))

        if event_type == "ride_snapshot":
            before = self.state
            self._sync_from_snapshot(event.get("ride") or {})
            if event.get("call") is not None and self._is_own_ride(event.get("ride_id")):
                self.call = event["call"]
            return before != self.state

        if event_type == "chat_message":
            message = event.get("message") or {}
            if not self._is_own_ride(message.get("ride_id", event.get("ride_id"))):
                return False
            return self._add_message(message)

        if event_type == "call_updated":
            if not self._is_own_ride(event.get("ride_id")):
                return False
            self.call = event.get("call")
            return True

        return False

    def _add_message(self, message: Dict[str, Any]) -> bool:
        message_id = message.get("id")
        if message_id in self._seen_messages:
            return False
        self._seen_messages.add(message_id)
        self.chat.append(message)
        self.chat.sort(key=lambda m: m.get("id") or 0)
        return True

    def _clear_ride(self):
        self.ride = None
        self.chat = []
        self.call = None
        self._seen_messages = set()

    # ---------------------- Chat & calls ----------------------

    def _run(self, action: Callable, *args, **kwargs):
        """Call the API; on failure keep state, record the error and return None."""
        try:
            result = action(*args, **kwargs)
        except RideClientError as e:
            self.error = e.message
            logger.info("%s session call failed: %s", self.role, e.message)
            self._notify()
            return None
        self.error = None
        return result

    def send_chat(self, text: str) -> bool:
        if self.ride_id is None:
            self.error = "There is no active ride to chat about."
            return False
        message = self._run(self.api.send_chat, self.ride_id, self.role, text)
        if message is None:
            return False
        with self._lock:
            self._add_message({**message, "ride_id": message.get("ride", self.ride_id)})
        self._notify()
        return True

    def _call_action(self, action: str, call_type: str = "voice") -> bool:
        if self.ride_id is None:
            self.error = "There is no active ride to call about."
            return False
        call = self._run(self.api.call_action, self.ride_id, action, self.role, call_type)
        if call is None:
            return False
        with self._lock:
            self.call = call
        self._notify()
        return True

    def start_call(self, call_type: str = "voice") -> bool:
        return self._call_action("initiate", call_type)

    def answer_call(self) -> bool:
        return self._call_action("answer")

    def end_call(self) -> bool:
        return self._call_action("end")


class RiderSession(_BaseSession):
    """The rider's view of one booking at a time."""

    role = "rider"
    transitions = RIDER_TRANSITIONS

    def __init__(self, api, scheduler=None, verification_delay: float = 2.5,
                 display_delay: float = 3.0, lang: str = "es"):
        super().__init__(api, scheduler)
        self.state = RiderState.IDLE
        self.verification_delay = verification_delay
        self.display_delay = display_delay
        self.lang = lang

        self.selection_mode: Optional[str] = "pickup"
        self.pickup: Optional[Dict[str, Any]] = None
        self.dropoff: Optional[Dict[str, Any]] = None
        self.ride_option = "viaje"
        self.charity = ""
        self.estimate: Optional[Dict[str, Any]] = None
        self.final_fare: Optional[str] = None
        self.confirmation_message: Optional[str] = None

        self._client_request_id: Optional[str] = None
        # Bumped on every reset so stale timers do nothing
        self._generation = 0

    # ---------------------- Route selection ----------------------

    def select_mode(self, mode: Optional[str]):
        if mode not in ("pickup", "dropoff", None):
            raise ValueError("mode must be pickup, dropoff or None")
        self.selection_mode = mode

    def set_point(self, lat: float, lng: float, address: str = ""):
        """Place the point being selected, then move on to the next one."""
        if self.selection_mode == "pickup":
            self.set_pickup(lat, lng, address)
        elif self.selection_mode == "dropoff":
            self.set_dropoff(lat, lng, address)

    def set_pickup(self, lat: float, lng: float, address: str = ""):
        self.pickup = {"lat": lat, "lng": lng, "address": address}
        self.selection_mode = "dropoff" if self.dropoff is None else None
        self._maybe_calculate()

    def set_dropoff(self, lat: float, lng: float, address: str = ""):
        self.dropoff = {"lat": lat, "lng": lng, "address": address}
        self.selection_mode = None
        self._maybe_calculate()

    def set_ride_option(self, ride_option: str):
        self.ride_option = ride_option
        self._maybe_calculate()

    def set_charity(self, charity: str):
        self.charity = charity or ""

    def set_final_fare(self, amount):
        """The rider's offer; any positive amount, not tied to the suggestion."""
        self.final_fare = str(amount)

    def _maybe_calculate(self):
        if self.pickup and self.dropoff and self.state == RiderState.IDLE:
            self.calculate()

    def calculate(self) -> bool:
        """Idle -> Calculating -> Idle, storing the estimate or the error."""
        with self._lock:
            if not (self.pickup and self.dropoff):
                return False
            if not self._apply("estimate_started"):
                return False
        self._notify()

        estimate = self._run(self.api.estimate_fare, self.pickup, self.dropoff, self.ride_option)
        with self._lock:
            if estimate is not None:
                self.estimate = estimate
                self.final_fare = f"{float(estimate.get('suggested_fare', 0)):.2f}"
            self._apply("estimate_finished")
        self._notify()
        return estimate is not None

    # ---------------------- Booking ----------------------

    def book(self) -> bool:
        """Submit the ride. A retry after a failure reuses the same request key."""
        with self._lock:
            if self.state != RiderState.IDLE:
                return False
            missing = [name for name, value in (("pickup", self.pickup), ("dropoff", self.dropoff))
                       if not value]
            try:
                fare_ok = self.final_fare is not None and float(self.final_fare) > 0
            except ValueError:
                fare_ok = False
            if not fare_ok:
                missing.append("final_fare")
            if missing:
                self.error = "Missing: " + ", ".join(missing)
                self._notify()
                return False
            if self._client_request_id is None:
                self._client_request_id = uuid.uuid4().hex
            payload = {
                "pickup": self.pickup,
                "dropoff": self.dropoff,
                "final_fare": self.final_fare,
                "ride_option": self.ride_option,
                "charity": self.charity,
            }
            request_id = self._client_request_id

        ride = self._run(self.api.create_ride, payload, request_id)
        if ride is None:
            return False

        with self._lock:
            self._client_request_id = None
            self._clear_ride()
            self.ride = ride
            self._apply("booking_submitted", ride)
            # A replayed booking may already be further along
            self._sync_from_snapshot(ride)
        self._notify()
        return True

    def cancel_request(self) -> bool:
        """Rider cancels while waiting for a driver."""
        if self.state != RiderState.AWAITING_DRIVER:
            return False
        try:
            self.api.cancel_ride(self.ride_id, actor="rider")
        except (RideUnavailable, RideNotFound) as e:
            # Accepted meanwhile: catch up instead of pretending it was cancelled
            self.error = e.message
            self.refresh()
            return False
        except RideClientError as e:
            self.error = e.message
            self._notify()
            return False

        with self._lock:
            self.error = None
            self._apply("ride_cancelled")
        self._notify()
        return True

    # ---------------------- Payment ----------------------

    def confirm_payment(self) -> bool:
        """PaymentPending -> VerifyingPayment; the ride is completed on the server first."""
        if self.state != RiderState.PAYMENT_PENDING:
            return False
        ride = self._run(self.api.complete_ride, self.ride_id)
        if ride is None:
            return False
        with self._lock:
            self._apply("payment_submitted", ride)
        self._notify()
        return True

    def _on_enter(self, state: str, trigger: str):
        if state == RiderState.VERIFYING_PAYMENT:
            self.scheduler.call_later(self.verification_delay, self._payment_verified, self._generation)
        elif state == RiderState.CONFIRMED:
            self.scheduler.call_later(self.display_delay, self._confirmation_shown, self._generation)
        elif state == RiderState.IDLE and trigger in ("ride_cancelled", "confirmation_shown"):
            if trigger == "ride_cancelled" and self.error is None:
                self.error = "Your ride was cancelled."
            self._reset_booking()

    def _payment_verified(self, generation: int):
        with self._lock:
            if generation != self._generation:
                return
            ride_id = self.ride_id
        message = None
        try:
            message = self.api.get_confirmation(ride_id, self.lang)
        except RideClientError as e:
            logger.info("Confirmation message unavailable: %s", e.message)
        with self._lock:
            if generation != self._generation:
                return
            self.confirmation_message = message or "Your ride is confirmed!"
            self._apply("payment_verified")
        self._notify()

    def _confirmation_shown(self, generation: int):
        with self._lock:
            if generation != self._generation:
                return
            self._apply("confirmation_shown")
        self._notify()

    # ---------------------- Reset & polling ----------------------

    def _reset_booking(self):
        self._generation += 1
        self._clear_ride()
        self.estimate = None
        self.final_fare = None
        self.pickup = None
        self.dropoff = None
        self.selection_mode = "pickup"
        self.confirmation_message = None
        self._client_request_id = None

    def reset(self):
        """
        Back to Idle from anywhere.

        A ride still waiting for a driver is cancelled; one a driver already
        holds is abandoned, which releases that driver on the server.
        """
        with self._lock:
            ride_id = self.ride_id
            previous = self.state
            self.history.append((previous, RiderState.IDLE, "reset"))
            self.state = RiderState.IDLE
            self.error = None
            self._reset_booking()

        if ride_id is not None and previous in LIVE_RIDER_STATES:
            self._end_ride(ride_id, previous)
        self._notify()

    def _end_ride(self, ride_id: int, previous: str):
        reason = "Rider reset the session"
        try:
            if previous == RiderState.AWAITING_DRIVER:
                try:
                    self.api.cancel_ride(ride_id, actor="rider", reason=reason)
                    return
                except RideUnavailable:
                    # Accepted meanwhile
                    logger.info("Ride %s was accepted before the reset; abandoning it", ride_id)
            self.api.abandon_ride(ride_id, actor="rider", reason=reason)
        except RideClientError as e:
            logger.info("Ending ride %s on reset not applied: %s", ride_id, e.message)

    def refresh(self) -> bool:
        """Poll the authoritative ride and catch up. Returns whether state changed."""
        ride_id = self.ride_id
        if ride_id is None:
            return False
        try:
            ride = self.api.get_ride(ride_id)
        except RideNotFound as e:
            with self._lock:
                if self.ride_id == ride_id and self.state == RiderState.AWAITING_DRIVER:
                    self.error = e.message
                    self._apply("ride_cancelled")
            self._notify()
            return True
        except RideClientError as e:
            self.error = e.message
            self._notify()
            return False

        with self._lock:
            before = self.state
            self._sync_from_snapshot(ride)
            changed = before != self.state
        self._notify()
        return changed


class DriverSession(_BaseSession):
    """A driver's dashboard and the ride they are serving."""

    role = "driver"
    transitions = DRIVER_TRANSITIONS

    def __init__(self, api, driver_id: int, scheduler=None):
        super().__init__(api, scheduler)
        self.driver_id = driver_id
        self.state = DriverState.DASHBOARD
        self.pending_rides: List[Dict[str, Any]] = []

    def _dispatch(self, event: Dict[str, Any]) -> bool:
        if event.get("type") == "ride_list_update":
            self.pending_rides = list(event.get("rides") or [])
            return True
        return super()._dispatch(event)

    def _on_enter(self, state: str, trigger: str):
        if state == DriverState.DASHBOARD:
            self._clear_ride()

    def accept(self, ride_id: int) -> bool:
        """Try to claim a ride; losing the race refreshes the list."""
        if self.state != DriverState.DASHBOARD:
            return False
        try:
            ride = self.api.accept_ride(ride_id, self.driver_id)
        except (RideUnavailable, RideNotFound) as e:
            with self._lock:
                self.pending_rides = [r for r in self.pending_rides if r.get("id") != ride_id]
            self.refresh()
            # Set after the refresh, which clears errors on success
            self.error = NO_LONGER_AVAILABLE if e.code in ("ride_not_available", "ride_not_found") else e.message
            self._notify()
            return False
        except RideClientError as e:
            self.error = e.message
            self._notify()
            return False

        with self._lock:
            self.error = None
            self.pending_rides = [r for r in self.pending_rides if r.get("id") != ride_id]
            self._clear_ride()
            self._apply("accept_succeeded", ride)
        self._notify()
        return True

    def mark_arrived(self) -> bool:
        if self.state != DriverState.DRIVER_EN_ROUTE:
            return False
        ride = self._run(self.api.mark_arrived, self.ride_id, self.driver_id)
        if ride is None:
            return False
        with self._lock:
            self._apply("driver_arrived", ride)
        self._notify()
        return True

    def finish_trip(self) -> bool:
        """Ask the rider to pay."""
        if self.state != DriverState.IN_PROGRESS:
            return False
        ride = self._run(self.api.signal_trip_complete, self.ride_id, self.driver_id)
        if ride is None:
            return False
        with self._lock:
            self._apply("trip_completed", ride)
        self._notify()
        return True

    def reset(self):
        """Back to the dashboard; a ride still being served is abandoned so the driver is free again."""
        with self._lock:
            ride_id = self.ride_id
            serving = self.state != DriverState.DASHBOARD
            self.history.append((self.state, DriverState.DASHBOARD, "reset"))
            self.state = DriverState.DASHBOARD
            self.error = None
            self._clear_ride()

        if serving and ride_id is not None:
            try:
                self.api.abandon_ride(ride_id, actor="driver", reason="Driver reset the session",
                                      driver_id=self.driver_id)
            except RideClientError as e:
                logger.info("Ending ride %s on reset not applied: %s", ride_id, e.message)
        self.refresh()

    def _resume(self, ride: Dict[str, Any]):
        """Pick up the ride the server still assigns to this driver."""
        self._clear_ride()
        if self._apply("ride_resumed", ride):
            self._sync_from_snapshot(ride)

    def refresh(self) -> bool:
        """
        Dashboard: resume an assigned ride if the server has one, otherwise
        re-read pending rides. Serving a ride: re-read that ride.
        """
        if self.state == DriverState.DASHBOARD:
            try:
                current = self.api.current_ride(self.driver_id)
            except RideClientError as e:
                self.error = e.message
                self._notify()
                return False
            if current is not None:
                with self._lock:
                    if self.state == DriverState.DASHBOARD:
                        self._resume(current)
                self._notify()
                return True

            rides = self._run(self.api.list_pending)
            if rides is None:
                return False
            with self._lock:
                self.pending_rides = rides
            self._notify()
            return True

        ride_id = self.ride_id
        ride = self._run(self.api.get_ride, ride_id)
        if ride is None:
            return False
        with self._lock:
            before = self.state
            self._sync_from_snapshot(ride)
            changed = before != self.state
        if changed and self.state == DriverState.DASHBOARD:
            return self.refresh() or changed
        self._notify()
        return changed
