"""
Routing service - external route and address lookups.

Modules:
    - directions: driving distance/duration/polyline (Google Directions)
    - geocoding: address lookups (Nominatim)
"""

from .directions import (
    GoogleDirectionsService,
    RouteInfo,
    RoutingServiceError,
    RoutingUnavailableError,
    NoRouteFoundError,
)
from .geocoding import NominatimGeocoder, GeocodingError

__all__ = [
    "GoogleDirectionsService",
    "RouteInfo",
    "RoutingServiceError",
    "RoutingUnavailableError",
    "NoRouteFoundError",
    "NominatimGeocoder",
    "GeocodingError",
]
