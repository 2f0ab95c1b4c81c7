"""End-to-end smoke run of one ride against a live server.

Prerequisites:
1. `python manage.py runserver` (ASGI) must be running.
2. `python manage.py seed_drivers` has been run at least once.

The script will:
- Pick two available demo drivers and open their dashboard WebSockets.
- Book a ride as the rider and open the rider's ride-room WebSocket.
- Let both drivers accept at once; exactly one must win.
- Walk the ride through arrival, trip complete and payment.

Run after `pip install -e .`: `python backend/scripts/smoke_ride_flow.py`
"""

from __future__ import annotations

import os
import threading
import time

from client import (
    DriverSession,
    DriverState,
    RealtimeListener,
    RideApiClient,
    RiderSession,
    RiderState,
    driver_feed_url,
    driver_poller,
    ride_room_url,
    rider_poller,
)

BASE_URL = os.environ.get("CHARITY_DRIVE_BASE_URL", "http://127.0.0.1:8000")

PICKUP = (-16.4957, -68.1335, "Plaza Murillo, La Paz")
DROPOFF = (-16.5106, -68.1261, "Sopocachi, La Paz")


def _wait_for(predicate, timeout: float, label: str) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.1)
    raise TimeoutError(f"Timed out waiting for {label}")


def _available_drivers(api: RideApiClient):
    drivers = api.list_drivers()
    available = [d for d in drivers if d["status"] == "available"]
    if len(available) < 2:
        raise RuntimeError("Need two available drivers; run `manage.py seed_drivers` first.")
    return available[:2]


def main() -> None:
    api = RideApiClient(BASE_URL)
    profiles = _available_drivers(api)
    print(f"[HTTP] Drivers: {', '.join(p['name'] for p in profiles)}")

    drivers = [DriverSession(api, p["id"]) for p in profiles]
    listeners = [RealtimeListener(driver_feed_url(BASE_URL), d).start() for d in drivers]
    # Polling runs alongside the sockets so a dropped event still converges
    pollers = [driver_poller(d).start() for d in drivers]
    for listener in listeners:
        if not listener.connected.wait(timeout=5):
            raise TimeoutError("Driver WebSocket failed to connect within 5 seconds")

    rider = RiderSession(api, lang="en")
    rider.set_pickup(*PICKUP)
    rider.set_dropoff(*DROPOFF)
    print(f"[HTTP] Estimate: {rider.estimate}")
    rider.set_final_fare("50.00")
    if not rider.book():
        raise RuntimeError(f"Booking failed: {rider.error}")
    ride_id = rider.ride_id
    print(f"[HTTP] Ride #{ride_id} booked, state={rider.state}")

    rider_listener = RealtimeListener(ride_room_url(BASE_URL, ride_id, "rider"), rider).start()
    rider_listener.connected.wait(timeout=5)
    pollers.append(rider_poller(rider).start())

    _wait_for(lambda: all(any(r["id"] == ride_id for r in d.pending_rides) for d in drivers),
              10, "ride to reach both dashboards")
    print("[WS] Both dashboards show the ride")

    results = {}
    barrier = threading.Barrier(len(drivers))

    def race(session):
        barrier.wait()
        results[session.driver_id] = session.accept(ride_id)

    threads = [threading.Thread(target=race, args=(d,)) for d in drivers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [d for d in drivers if results.get(d.driver_id)]
    if len(winners) != 1:
        raise AssertionError(f"Expected exactly one winner, got {results}")
    winner = winners[0]
    print(f"[RESULT] Driver {winner.driver_id} won; loser saw: "
          f"{[d.error for d in drivers if d is not winner]}")

    _wait_for(lambda: rider.state == RiderState.DRIVER_EN_ROUTE, 10, "rider to see acceptance")
    rider.send_chat("I'm at the corner")

    winner.mark_arrived()
    winner.finish_trip()
    _wait_for(lambda: rider.state == RiderState.PAYMENT_PENDING, 10, "payment request")

    rider.confirm_payment()
    _wait_for(lambda: rider.state == RiderState.CONFIRMED, 10, "confirmation")
    print(f"[RESULT] {rider.confirmation_message}")

    winner.refresh()
    if winner.state != DriverState.DASHBOARD:
        raise AssertionError(f"Driver stuck in {winner.state}")

    for listener in listeners + [rider_listener]:
        listener.stop()
    for poller in pollers:
        poller.stop()
    print("[DONE] Ride flow smoke check completed.")


if __name__ == "__main__":
    main()
