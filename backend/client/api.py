"""
HTTP client for the ride API.

Every call has a bounded timeout. Failures come back as
client.exceptions so sessions can keep their state and surface the message.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from .exceptions import (
    ConnectivityError,
    RideClientError,
    RideNotFound,
    RideUnavailable,
    ServerError,
    ServiceUnavailable,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10


class RideApiClient:
    """Thin wrapper over the /api/rides/ and /api/driver/ endpoints."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.api_root = f"{self.base_url}/api"
        self.timeout = timeout
        self.http = session or requests.Session()

    # ---------------------- Transport ----------------------

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.api_root}{path}"
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise ConnectivityError(f"Could not reach the ride service: {e}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code < 400:
            return body
        raise self._error_for(response.status_code, body)

    @staticmethod
    def _error_for(status_code: int, body: Dict[str, Any]) -> RideClientError:
        message = body.get("message") or body.get("detail") or f"Request failed ({status_code})"
        code = body.get("error")
        if status_code == 400:
            return ValidationFailed(message, code, status_code, missing=body.get("missing"))
        if status_code == 404:
            return RideNotFound(message, code, status_code)
        if status_code == 409:
            return RideUnavailable(message, code, status_code)
        if status_code in (502, 503, 504):
            return ServiceUnavailable(message, code, status_code)
        return ServerError(message, code, status_code)

    # ---------------------- Rider ----------------------

    def estimate_fare(self, pickup: Dict, dropoff: Dict, ride_option: str = "viaje") -> Dict[str, Any]:
        return self._request("POST", "/rides/estimate/", json={
            "pickup": pickup,
            "dropoff": dropoff,
            "ride_option": ride_option,
        })

    def create_ride(self, payload: Dict[str, Any], client_request_id: Optional[str] = None) -> Dict[str, Any]:
        headers = {"Idempotency-Key": client_request_id} if client_request_id else {}
        return self._request("POST", "/rides/", json=payload, headers=headers)["ride"]

    def cancel_ride(self, ride_id: int, actor: str = "rider", reason: str = "") -> Dict[str, Any]:
        return self._request("POST", f"/rides/{ride_id}/cancel/", json={
            "actor": actor,
            "reason": reason,
        })["ride"]

    def abandon_ride(self, ride_id: int, actor: str, reason: str = "",
                     driver_id: Optional[int] = None) -> Dict[str, Any]:
        """End an accepted or in-progress ride; the server releases the driver."""
        return self._request("POST", f"/rides/{ride_id}/abandon/", json={
            "actor": actor,
            "reason": reason,
            "driver_id": driver_id,
        })["ride"]

    def complete_ride(self, ride_id: int) -> Dict[str, Any]:
        return self._request("POST", f"/rides/{ride_id}/complete/")["ride"]

    def get_confirmation(self, ride_id: int, lang: str = "es") -> str:
        return self._request("GET", f"/rides/{ride_id}/confirmation/", params={"lang": lang})["message"]

    # ---------------------- Shared reads ----------------------

    def get_ride(self, ride_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/rides/{ride_id}/")["ride"]

    def list_pending(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/rides/")["rides"]

    # ---------------------- Driver ----------------------

    def list_drivers(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/driver/")["drivers"]

    def current_ride(self, driver_id: int) -> Optional[Dict[str, Any]]:
        body = self._request("GET", f"/driver/{driver_id}/current-ride/")
        return body["ride"] if body.get("has_active_ride") else None

    def accept_ride(self, ride_id: int, driver_id: int) -> Dict[str, Any]:
        return self._request("POST", f"/rides/{ride_id}/accept/", json={"driver_id": driver_id})["ride"]

    def mark_arrived(self, ride_id: int, driver_id: Optional[int] = None) -> Dict[str, Any]:
        return self._request("POST", f"/rides/{ride_id}/arrived/", json={"driver_id": driver_id})["ride"]

    def signal_trip_complete(self, ride_id: int, driver_id: Optional[int] = None) -> Dict[str, Any]:
        return self._request("POST", f"/rides/{ride_id}/trip-complete/", json={"driver_id": driver_id})["ride"]

    # ---------------------- Chat & calls ----------------------

    def send_chat(self, ride_id: int, sender: str, text: str) -> Dict[str, Any]:
        return self._request("POST", f"/rides/{ride_id}/chat/", json={"sender": sender, "text": text})["message"]

    def call_action(self, ride_id: int, action: str, role: str, call_type: str = "voice") -> Dict[str, Any]:
        return self._request("POST", f"/rides/{ride_id}/call/{action}/", json={
            "role": role,
            "call_type": call_type,
        })["call"]
