"""
Price estimates for collection requests.

Factors are applied in a fixed order, surge, then urgency, then time of day,
and recorded in the estimate's breakdown so a quoted price can be reproduced.
"""
import math
from datetime import datetime, timedelta, timezone

from schemas import GeoPoint, PriceEstimate
from wastebolt.errors import UnsupportedWasteType, ValidationError
from wastebolt.settings import Settings
from wastebolt.surge import SurgeController


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class PricingEngine:
    def __init__(self, surge: SurgeController, settings: Settings):
        self._surge = surge
        self._settings = settings
        self._local_tz = timezone(timedelta(hours=settings.local_utc_offset_hours))

    def local_hour(self, now: datetime) -> int:
        # Naive datetimes are taken to already be local time
        if now.tzinfo is None:
            return now.hour
        return now.astimezone(self._local_tz).hour

    def is_peak(self, now: datetime) -> bool:
        hour = self.local_hour(now)
        return self._settings.peak_start_hour <= hour <= self._settings.peak_end_hour

    def base_price(self, waste_type: str, quantity: float) -> float:
        rate = self._settings.per_kg_rates.get(waste_type)
        if rate is None:
            raise UnsupportedWasteType(waste_type)
        return round(rate * quantity, 2)

    def estimate(
        self,
        waste_type: str,
        quantity: float,
        urgency: str,
        location: GeoPoint,
        now: datetime,
    ) -> PriceEstimate:
        base_price = self.base_price(waste_type, quantity)
        urgency_factor = self._settings.urgency_factors.get(urgency)
        if urgency_factor is None:
            raise ValidationError([{"field": "urgency", "message": f"unknown urgency {urgency!r}"}])

        surge_factor = self._surge.current_multiplier(location, now)
        time_factor = self._settings.peak_factor if self.is_peak(now) else 1.0

        multiplier = 1.0
        multiplier *= surge_factor
        multiplier *= urgency_factor
        multiplier *= time_factor

        return PriceEstimate(
            base_price=base_price,
            surge_multiplier=round(multiplier, 4),
            final_price=round_half_up(base_price * multiplier),
            currency=self._settings.currency,
            breakdown={
                "surge": surge_factor,
                "urgency": urgency_factor,
                "time_of_day": time_factor,
            },
        )
