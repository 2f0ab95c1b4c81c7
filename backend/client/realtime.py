"""
Keeps a session current: WebSocket push plus a polling fallback.

Both feed the session's transition table, so a missed or duplicated push
is harmless. The listener refreshes on every (re)connect because the
server does not replay events sent while the socket was down.
"""

import json
import logging
import threading
from typing import Optional

import websocket

logger = logging.getLogger(__name__)

RIDER_POLL_INTERVAL = 2.5
DRIVER_POLL_INTERVAL = 3.0
RECONNECT_DELAY = 2.0


def ws_base_url(base_url: str) -> str:
    """http(s)://host -> ws(s)://host"""
    base_url = base_url.rstrip("/")
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://"):]
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://"):]
    return base_url


def driver_feed_url(base_url: str) -> str:
    return f"{ws_base_url(base_url)}/ws/driver/"


def ride_room_url(base_url: str, ride_id: int, role: str, driver_id: Optional[int] = None) -> str:
    url = f"{ws_base_url(base_url)}/ws/ride/{ride_id}/{role}/"
    if driver_id is not None:
        url += f"?driver_id={driver_id}"
    return url


class RealtimeListener:
    """
    Feeds one WebSocket into a session, reconnecting until stopped.

    Args:
        url: WebSocket URL (see driver_feed_url / ride_room_url)
        session: RiderSession or DriverSession
    """

    def __init__(self, url: str, session, reconnect_delay: float = RECONNECT_DELAY):
        self.url = url
        self.session = session
        self.reconnect_delay = reconnect_delay
        self.connected = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._app: Optional[websocket.WebSocketApp] = None

    def on_open(self, ws):
        logger.info("Connected to %s", self.url)
        self.connected.set()
        # Catch up on anything sent while disconnected
        self.session.refresh()

    def on_message(self, ws, message):
        try:
            payload = json.loads(message)
        except ValueError:
            logger.warning("Ignoring non-JSON frame from %s", self.url)
            return
        if payload.get("type") == "error":
            logger.info("Server error on %s: %s", self.url, payload.get("message"))
            return
        self.session.handle_event(payload)

    def on_error(self, ws, error):
        logger.warning("WebSocket error on %s: %s", self.url, error)

    def on_close(self, ws, status_code=None, reason=None):
        self.connected.clear()
        logger.info("Disconnected from %s (%s)", self.url, status_code)

    def _run(self):
        while not self._stop.is_set():
            self._app = websocket.WebSocketApp(
                self.url,
                on_open=self.on_open,
                on_message=self.on_message,
                on_error=self.on_error,
                on_close=self.on_close,
            )
            self._app.run_forever()
            if self._stop.wait(self.reconnect_delay):
                break

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()
        return self

    def stop(self):
        self._stop.set()
        if self._app is not None:
            self._app.close()
        if self._thread is not None:
            self._thread.join(timeout=5)


class Poller:
    """Calls session.refresh() on a fixed interval until stopped."""

    def __init__(self, session, interval: float):
        self.session = session
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self) -> bool:
        try:
            return self.session.refresh()
        except Exception:
            logger.exception("Polling refresh failed")
            return False

    def _run(self):
        while not self._stop.wait(self.interval):
            self.poll_once()

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()
        return self

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)


def rider_poller(session) -> Poller:
    return Poller(session, RIDER_POLL_INTERVAL)


def driver_poller(session) -> Poller:
    return Poller(session, DRIVER_POLL_INTERVAL)
