"""Pricing service - fare estimation."""

from .fare import FareEstimator, FareEstimate, FareEstimationError

__all__ = [
    "FareEstimator",
    "FareEstimate",
    "FareEstimationError",
]
