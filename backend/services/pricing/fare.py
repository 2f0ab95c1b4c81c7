"""
Fare estimation.

Turns a pickup/dropoff pair and a ride-option multiplier into a distance,
a travel time and a suggested price. The routing service is asked first;
when it cannot answer, a great-circle distance and a fixed average speed
stand in so riders can still book.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Optional, Tuple

from django.conf import settings

from common.utils import calculate_distance_km
from services.routing.directions import (
    GoogleDirectionsService,
    NoRouteFoundError,
    RoutingUnavailableError,
)

logger = logging.getLogger(__name__)

Point = Tuple[float, float]


class FareEstimationError(Exception):
    """Raised when no fare can be computed; the caller may retry."""
    retryable = True


@dataclass
class FareEstimate:
    distance_km: float
    travel_time_minutes: int
    suggested_fare: float
    multiplier: float
    source: str  # "routing", "fallback" or "same_point"
    polyline: str = ""

    def as_dict(self):
        return asdict(self)


class FareEstimator:
    """
    Compute suggested fares.

    suggested_fare = distance_km x base_rate_per_km x multiplier, rounded to
    cents. The rider's own offer is never checked against it.
    """

    def __init__(
        self,
        routing: Optional[GoogleDirectionsService] = None,
        base_rate_per_km: Optional[float] = None,
        average_speed_kmh: Optional[float] = None,
    ):
        self.routing = routing if routing is not None else GoogleDirectionsService()
        self.base_rate_per_km = float(
            base_rate_per_km if base_rate_per_km is not None else settings.FARE_BASE_RATE_PER_KM
        )
        self.average_speed_kmh = float(
            average_speed_kmh if average_speed_kmh is not None else settings.FALLBACK_AVERAGE_SPEED_KMH
        )

    def estimate(self, pickup: Point, dropoff: Point, multiplier=1.0) -> FareEstimate:
        """
        Estimate distance, duration and suggested fare.

        Raises:
            FareEstimationError: the routing service reports there is no route
        """
        multiplier = float(multiplier)
        pickup = (float(pickup[0]), float(pickup[1]))
        dropoff = (float(dropoff[0]), float(dropoff[1]))

        if pickup == dropoff:
            return FareEstimate(0.0, 0, 0.0, multiplier, "same_point")

        source = "routing"
        polyline = ""
        try:
            route = self.routing.get_route(pickup[0], pickup[1], dropoff[0], dropoff[1])
            distance_km = route.distance_km
            minutes = route.duration_minutes
            polyline = route.polyline
        except NoRouteFoundError as e:
            logger.info("No route between %s and %s: %s", pickup, dropoff, e)
            raise FareEstimationError("No route found between pickup and dropoff. Please try again.")
        except RoutingUnavailableError as e:
            if self.routing.is_configured:
                logger.warning("Routing service unavailable, using straight-line estimate: %s", e)
            source = "fallback"
            distance_km = calculate_distance_km(pickup[0], pickup[1], dropoff[0], dropoff[1])
            minutes = distance_km / self.average_speed_kmh * 60

        return FareEstimate(
            distance_km=distance_km,
            travel_time_minutes=int(round(minutes)),
            suggested_fare=self.suggested_fare(distance_km, multiplier),
            multiplier=multiplier,
            source=source,
            polyline=polyline,
        )

    def suggested_fare(self, distance_km: float, multiplier=1.0) -> float:
        return round(distance_km * self.base_rate_per_km * float(multiplier), 2)
