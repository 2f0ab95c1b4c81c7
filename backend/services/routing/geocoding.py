"""
Nominatim (OpenStreetMap) geocoding proxy.

Reverse lookups turn a tapped map point into a display address; searches
turn typed text into candidate points.
"""

import logging
from typing import Dict, List, Optional

import requests
from django.conf import settings

logger = logging.getLogger(__name__)

ADDRESS_NOT_FOUND = "Address not found"
MIN_SEARCH_LENGTH = 3


class GeocodingError(Exception):
    """Raised when the geocoding service fails."""
    pass


class NominatimGeocoder:
    """Thin client for the Nominatim reverse/search endpoints."""

    def __init__(self, base_url: Optional[str] = None, user_agent: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.base_url = (base_url or settings.NOMINATIM_BASE_URL).rstrip('/')
        self.user_agent = user_agent or settings.GEOCODER_USER_AGENT
        self.timeout = timeout if timeout is not None else settings.GEOCODER_TIMEOUT_SECONDS

    def _get(self, path: str, params: Dict, lang: str):
        headers = {
            'User-Agent': self.user_agent,
            'Accept-Language': lang,
        }
        try:
            response = requests.get(
                f"{self.base_url}/{path}",
                params={**params, 'format': 'json'},
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            logger.warning("Nominatim %s failed: %s", path, e)
            raise GeocodingError(f"Geocoding request failed: {e}")
        except ValueError as e:
            raise GeocodingError(f"Invalid geocoding response: {e}")

    def reverse(self, lat: float, lng: float, lang: str = 'es') -> Dict:
        """Address for a point; `address` is "Address not found" when Nominatim has none."""
        data = self._get('reverse', {'lat': lat, 'lon': lng}, lang)
        address = data.get('display_name') if isinstance(data, dict) else None
        return {
            'lat': float(lat),
            'lng': float(lng),
            'address': address or ADDRESS_NOT_FOUND,
        }

    def search(self, query: str, lang: str = 'es', limit: int = 5) -> List[Dict]:
        """Candidate places for free text. Queries shorter than 3 characters return nothing."""
        query = (query or '').strip()
        if len(query) < MIN_SEARCH_LENGTH:
            return []

        data = self._get('search', {'q': query, 'limit': limit}, lang)
        results = []
        for item in data or []:
            try:
                results.append({
                    'lat': float(item['lat']),
                    'lng': float(item['lon']),
                    'address': item.get('display_name') or ADDRESS_NOT_FOUND,
                })
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed Nominatim result: %r", item)
        return results
