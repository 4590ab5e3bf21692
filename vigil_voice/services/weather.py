from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict

import aiohttp

logger = logging.getLogger("vigil_voice")

GEOCODE_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"

WMO_CODES: dict[int, str] = {
    0: "clear sky",
    1: "mainly clear",
    2: "partly cloudy",
    3: "overcast",
    45: "fog",
    48: "freezing fog",
    51: "light drizzle",
    53: "moderate drizzle",
    55: "dense drizzle",
    56: "freezing drizzle",
    57: "freezing drizzle",
    61: "light rain",
    63: "moderate rain",
    65: "heavy rain",
    66: "freezing rain",
    67: "freezing rain",
    71: "light snow",
    73: "moderate snow",
    75: "heavy snow",
    77: "snow grains",
    80: "rain showers",
    81: "heavy rain showers",
    82: "violent rain showers",
    85: "snow showers",
    86: "heavy snow showers",
    95: "thunderstorm",
    96: "thunderstorm with hail",
    99: "severe thunderstorm with hail",
}


@dataclass(slots=True)
class WeatherReport:
    where: str
    line: str

    def spoken(self) -> str:
        return f"{self.where}: {self.line}"


class WeatherClient:
    """Open-Meteo geocoding plus forecast; no API key needed."""

    def __init__(self, timeout_seconds: int = 10) -> None:
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _get_json(self, url: str, params: Dict[str, str]) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        async with self._session.get(url, params=params) as response:
            text = await response.text()
            if response.status != 200:
                raise RuntimeError(f"Open-Meteo error {response.status}: {text[:200]}")
            data = json.loads(text)
        if not isinstance(data, dict):
            raise RuntimeError("Open-Meteo returned non-object payload")
        return data

    async def lookup(self, place: str, when: str = "now") -> WeatherReport:
        geo = await self._get_json(
            GEOCODE_URL,
            {"name": place, "count": "1", "language": "en", "format": "json"},
        )
        results = geo.get("results") or []
        if not results:
            raise LookupError(f"location not found: {place}")
        hit = results[0]
        where = ", ".join(str(part) for part in (hit.get("name"), hit.get("admin1"), hit.get("country")) if part)

        forecast = await self._get_json(
            FORECAST_URL,
            {
                "latitude": str(hit.get("latitude")),
                "longitude": str(hit.get("longitude")),
                "timezone": "auto",
                "current_weather": "true",
                "daily": "weather_code,temperature_2m_max,temperature_2m_min",
            },
        )
        return WeatherReport(where=where, line=self._describe(forecast, when))

    @staticmethod
    def _describe(forecast: Dict[str, Any], when: str) -> str:
        if when == "tomorrow":
            daily = forecast.get("daily") or {}
            try:
                code = int(daily["weather_code"][1])
                high = round(float(daily["temperature_2m_max"][1]))
                low = round(float(daily["temperature_2m_min"][1]))
            except (KeyError, IndexError, TypeError, ValueError) as exc:
                raise RuntimeError("Open-Meteo daily forecast missing") from exc
            return f"tomorrow: {low}° / {high}°, {WMO_CODES.get(code, 'conditions')}"

        current = forecast.get("current_weather") or {}
        if "temperature" not in current:
            raise RuntimeError("Open-Meteo current weather missing")
        description = WMO_CODES.get(int(current.get("weathercode", -1)), "current conditions")
        return f"{round(float(current['temperature']))}° with {description}"

    async def spoken_report(self, place: str, when: str = "now") -> str:
        try:
            report = await self.lookup(place, when)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[weather] lookup_failed place=%s when=%s error=%s", place, when, exc)
            return f"I couldn't get weather for {place}."
        return report.spoken()
