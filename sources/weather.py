"""WeatherXM weather requester.

Finds the nearest station within 10 km of the plot and reads its latest
observation:

    GET {base}/stations/near?lat=..&lon=..&radius=10000  -> [{"id": ...}, ...]
    GET {base}/stations/{id}/latest                      -> {"observation": {...}}

Wind is reported in m/s and converted to km/h. A field the station does not
report stays None.
"""

import logging

import httpx

from schemas.observation import WeatherObservation

logger = logging.getLogger(__name__)

STATION_SEARCH_RADIUS_M = 10_000
MS_TO_KMH = 3.6


class NoStationError(Exception):
    """No weather station within the search radius."""


class WeatherXMClient:
    """One weather requester.

    Attributes:
        name: Requester name used in consensus logs.
        base_url: WeatherXM API base URL.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._headers = {"X-API-KEY": api_key}

    async def aclose(self) -> None:
        await self._client.aclose()

    async def observe(self, lat: float, lon: float) -> WeatherObservation:
        """Return the latest observation of the station nearest (lat, lon).

        Raises:
            NoStationError: If no station is within range or it has no data.
            httpx.HTTPStatusError: On a non-2xx response.
        """
        near = await self._client.get(
            f"{self.base_url}/stations/near",
            params={"lat": lat, "lon": lon, "radius": STATION_SEARCH_RADIUS_M},
            headers=self._headers,
        )
        near.raise_for_status()
        stations = near.json()
        if not stations:
            raise NoStationError(f"no WeatherXM station within 10km of {lat},{lon}")
        station_id = stations[0]["id"]

        latest = await self._client.get(f"{self.base_url}/stations/{station_id}/latest", headers=self._headers)
        latest.raise_for_status()
        obs = latest.json().get("observation")
        if not obs:
            raise NoStationError(f"station {station_id} has no latest observation")

        wind = obs.get("wind_speed")
        return WeatherObservation(
            temperature=obs.get("temperature"),
            precipitation=obs.get("precipitation_accumulated"),
            humidity=obs.get("humidity"),
            wind_speed=wind * MS_TO_KMH if wind is not None else None,
        )
