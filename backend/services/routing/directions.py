"""
Google Directions API service for route distance, duration and geometry.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import requests
from django.conf import settings

logger = logging.getLogger(__name__)


class RoutingServiceError(Exception):
    """Base exception for routing collaborator errors."""
    pass


class RoutingUnavailableError(RoutingServiceError):
    """The routing service could not be reached or refused to answer."""
    pass


class NoRouteFoundError(RoutingServiceError):
    """The routing service answered, but there is no drivable route."""
    pass


@dataclass
class RouteInfo:
    distance_km: float
    duration_minutes: float
    polyline: str = ""


# Statuses meaning "the service works, the route does not exist"
NO_ROUTE_STATUSES = {'ZERO_RESULTS', 'NOT_FOUND'}


class GoogleDirectionsService:
    """
    Service for interacting with Google Directions API.
    
    Responsibilities:
    - Fetch driving distance/duration and polyline between two coordinates
    - Bound every request with a timeout
    - Translate API failures into RoutingServiceError subclasses
    """
    
    BASE_URL = "https://maps.googleapis.com/maps/api/directions/json"
    
    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key if api_key is not None else settings.GOOGLE_MAPS_API_KEY
        self.timeout = timeout if timeout is not None else settings.ROUTING_TIMEOUT_SECONDS

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)
    
    def get_route(
        self,
        origin_lat: float,
        origin_lng: float,
        dest_lat: float,
        dest_lng: float
    ) -> RouteInfo:
        """
        Fetch the driving route between two points.
        
        Args:
            origin_lat: Origin latitude
            origin_lng: Origin longitude
            dest_lat: Destination latitude
            dest_lng: Destination longitude
            
        Returns:
            RouteInfo with distance in km, duration in minutes and polyline
            
        Raises:
            RoutingUnavailableError: key missing, network failure, timeout or API refusal
            NoRouteFoundError: the API found no route between the points
        """
        if not self.api_key:
            raise RoutingUnavailableError("Google Maps API key is not configured")
        
        params = {
            'origin': f"{origin_lat},{origin_lng}",
            'destination': f"{dest_lat},{dest_lng}",
            'key': self.api_key,
            'mode': 'driving',
        }
        
        try:
            response = requests.get(self.BASE_URL, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise RoutingUnavailableError(f"API request failed: {str(e)}")
        except ValueError as e:
            raise RoutingUnavailableError(f"Invalid API response: {str(e)}")
        
        api_status = data.get('status')
        if api_status in NO_ROUTE_STATUSES:
            raise NoRouteFoundError("No route found between the specified coordinates")
        if api_status != 'OK':
            error_message = data.get('error_message', api_status or 'Unknown error')
            raise RoutingUnavailableError(f"Directions API error: {error_message}")
        
        routes = data.get('routes', [])
        if not routes or not routes[0].get('legs'):
            raise NoRouteFoundError("No route found between the specified coordinates")
        
        leg = routes[0]['legs'][0]
        try:
            distance_m = float(leg['distance']['value'])
            duration_s = float(leg['duration']['value'])
        except (KeyError, TypeError, ValueError):
            raise RoutingUnavailableError("Directions API response is missing distance or duration")

        polyline = routes[0].get('overview_polyline', {}).get('points', '')
        
        return RouteInfo(
            distance_km=distance_m / 1000.0,
            duration_minutes=duration_s / 60.0,
            polyline=polyline,
        )
