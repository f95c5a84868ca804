"""Client for Open-Meteo geocoding and daily forecasts (free, no key)."""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from pydantic import BaseModel, Field

from polyedge.config import GEOCODING_URL, HTTP_TIMEOUT, OPEN_METEO_URL, WEATHER_FORECAST_DAYS

logger = logging.getLogger(__name__)


class Coordinates(BaseModel):
    latitude: float
    longitude: float


class DailyForecast(BaseModel):
    """Daily temperature extremes keyed by local date (YYYY-MM-DD)."""

    time: list[str] = Field(default_factory=list)
    temperature_2m_max: list[Optional[float]] = Field(default_factory=list)
    temperature_2m_min: list[Optional[float]] = Field(default_factory=list)

    def high_for(self, date_str: str) -> Optional[float]:
        try:
            idx = self.time.index(date_str)
        except ValueError:
            return None
        if idx >= len(self.temperature_2m_max):
            return None
        return self.temperature_2m_max[idx]


class OpenMeteoClient:
    """Geocode city names and fetch daily max/min temperature forecasts."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or httpx.AsyncClient(timeout=HTTP_TIMEOUT)
        self._geocode_cache: dict[str, Coordinates] = {}

    async def close(self) -> None:
        await self._client.aclose()

    async def geocode(self, city: str) -> Optional[Coordinates]:
        key = city.lower().strip()
        if key in self._geocode_cache:
            return self._geocode_cache[key]

        try:
            resp = await self._client.get(
                GEOCODING_URL,
                params={"name": city, "count": 1, "language": "en", "format": "json"},
            )
            resp.raise_for_status()
            results = resp.json().get("results") or []
        except Exception:
            logger.warning("geocode_error", extra={"city": city}, exc_info=True)
            return None

        if not results:
            return None

        coords = Coordinates(latitude=results[0]["latitude"], longitude=results[0]["longitude"])
        self._geocode_cache[key] = coords
        return coords

    async def fetch_daily_forecast(
        self, coords: Coordinates, fahrenheit: bool
    ) -> Optional[DailyForecast]:
        try:
            resp = await self._client.get(
                OPEN_METEO_URL,
                params={
                    "latitude": coords.latitude,
                    "longitude": coords.longitude,
                    "daily": "temperature_2m_max,temperature_2m_min",
                    "temperature_unit": "fahrenheit" if fahrenheit else "celsius",
                    "timezone": "auto",
                    "forecast_days": WEATHER_FORECAST_DAYS,
                },
            )
            resp.raise_for_status()
            daily = resp.json().get("daily")
        except Exception:
            logger.warning("forecast_error", extra={"coords": coords.model_dump()}, exc_info=True)
            return None

        if not daily:
            return None
        return DailyForecast.model_validate(daily)
