"""Fair-value models and the engine that dispatches to them."""

from polyedge.pricing.engine import PricingEngine
from polyedge.pricing.result import ARB_BOTH, PricingResult
from polyedge.pricing.smart_money import SmartMoneyTracker
from polyedge.pricing.weather import WeatherPricer

__all__ = [
    "ARB_BOTH",
    "PricingEngine",
    "PricingResult",
    "SmartMoneyTracker",
    "WeatherPricer",
]
