"""Vegetation (greenness) requesters.

Two providers implement VegetationSource:

    SentinelHubClient  Statistical API, NDVI from Sentinel-2 L2A bands B04 and
                       B08, max 30% cloud cover, one 7-day aggregation window.
                       Authenticated with a short-lived OAuth token.
    PlanetClient       Data API quick-search for recent PSScene items; reads
                       the ndvi property of the newest item.

Both look at a bounding box of ±0.005° around the plot over the last 7 days.
A provider with no usable value returns greenness=None rather than a guess.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

import httpx

from schemas.observation import VegetationObservation

logger = logging.getLogger(__name__)

BBOX_DELTA_DEG = 0.005
LOOKBACK_DAYS = 7
MAX_CLOUD_COVERAGE = 30
TOKEN_REFRESH_MARGIN_SECONDS = 60

NDVI_EVALSCRIPT = """//VERSION=3
function setup() {
  return {
    input: [{ bands: ["B04", "B08", "dataMask"] }],
    output: [
      { id: "ndvi", bands: 1, sampleType: "FLOAT32" },
      { id: "dataMask", bands: 1 }
    ]
  };
}
function evaluatePixel(sample) {
  const ndvi = (sample.B08 - sample.B04) / (sample.B08 + sample.B04);
  return { ndvi: [ndvi], dataMask: [sample.dataMask] };
}"""


def bounding_box(lat: float, lon: float) -> list[float]:
    """[min_lon, min_lat, max_lon, max_lat] around the plot."""
    return [lon - BBOX_DELTA_DEG, lat - BBOX_DELTA_DEG, lon + BBOX_DELTA_DEG, lat + BBOX_DELTA_DEG]


class VegetationSource(ABC):
    """Interface every vegetation requester implements."""

    name: str

    @abstractmethod
    async def observe(self, lat: float, lon: float) -> VegetationObservation:
        ...

    async def aclose(self) -> None:
        pass


# ── Sentinel Hub ─────────────────────────────────────────────────────────────

class SentinelTokenProvider:
    """Caches the OAuth client-credentials token and refreshes it near expiry.

    Shared by every SentinelHubClient so a run fetches one token, not one per
    requester per policy.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.token_url = token_url
        self._credentials = {"client_id": client_id, "client_secret": client_secret}
        self._client = client or httpx.AsyncClient(timeout=15)
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def token(self) -> str:
        async with self._lock:
            if self._token is None or time.monotonic() >= self._expires_at:
                response = await self._client.post(
                    self.token_url,
                    data={"grant_type": "client_credentials", **self._credentials},
                )
                response.raise_for_status()
                body = response.json()
                self._token = body["access_token"]
                lifetime = body.get("expires_in", 300)
                self._expires_at = time.monotonic() + max(lifetime - TOKEN_REFRESH_MARGIN_SECONDS, 0)
                logger.debug("Refreshed Sentinel Hub token (valid %ss).", lifetime)
            return self._token

    def invalidate(self) -> None:
        self._token = None


class SentinelHubClient(VegetationSource):
    """One Sentinel Hub Statistical API requester."""

    def __init__(
        self,
        name: str,
        base_url: str,
        tokens: SentinelTokenProvider,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.tokens = tokens
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    def statistics_request(self, lat: float, lon: float, now: datetime | None = None) -> dict:
        now = now or datetime.now(timezone.utc)
        time_range = {
            "from": f"{(now - timedelta(days=LOOKBACK_DAYS)).date().isoformat()}T00:00:00Z",
            "to": f"{now.date().isoformat()}T23:59:59Z",
        }
        return {
            "input": {
                "bounds": {
                    "bbox": bounding_box(lat, lon),
                    "properties": {"crs": "http://www.opengis.net/def/crs/EPSG/0/4326"},
                },
                "data": [{
                    "type": "sentinel-2-l2a",
                    "dataFilter": {"timeRange": time_range, "maxCloudCoverage": MAX_CLOUD_COVERAGE},
                }],
            },
            "aggregation": {
                "timeRange": time_range,
                "aggregationInterval": {"of": f"P{LOOKBACK_DAYS}D"},
                "evalscript": NDVI_EVALSCRIPT,
            },
        }

    async def observe(self, lat: float, lon: float) -> VegetationObservation:
        """Mean NDVI over the plot for the lookback window.

        An expired token (401) is refreshed once and the request retried.
        """
        body = self.statistics_request(lat, lon)
        response = await self._post(body)
        if response.status_code == 401:
            self.tokens.invalidate()
            response = await self._post(body)
        response.raise_for_status()

        intervals = response.json().get("data") or []
        if not intervals:
            logger.warning("%s: no Sentinel-2 scenes for %s,%s in the last %d days.", self.name, lat, lon, LOOKBACK_DAYS)
            return VegetationObservation()
        stats = intervals[-1].get("outputs", {}).get("ndvi", {}).get("bands", {}).get("B0", {}).get("stats", {})
        mean = stats.get("mean")
        if isinstance(mean, str):
            # The API reports "NaN" when every pixel was masked.
            mean = None
        return VegetationObservation(greenness=mean)

    async def _post(self, body: dict) -> httpx.Response:
        token = await self.tokens.token()
        return await self._client.post(
            f"{self.base_url}/statistics",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )


# ── Planet ───────────────────────────────────────────────────────────────────

class PlanetClient(VegetationSource):
    """One Planet Data API requester."""

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(auth=(api_key, ""), timeout=timeout_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    def search_request(self, lat: float, lon: float, now: datetime | None = None) -> dict:
        now = now or datetime.now(timezone.utc)
        west, south, east, north = bounding_box(lat, lon)
        return {
            "item_types": ["PSScene"],
            "filter": {
                "type": "AndFilter",
                "config": [
                    {
                        "type": "GeometryFilter",
                        "field_name": "geometry",
                        "config": {
                            "type": "Polygon",
                            "coordinates": [[
                                [west, south], [east, south], [east, north], [west, north], [west, south],
                            ]],
                        },
                    },
                    {
                        "type": "DateRangeFilter",
                        "field_name": "acquired",
                        "config": {"gte": (now - timedelta(days=LOOKBACK_DAYS)).isoformat()},
                    },
                ],
            },
        }

    async def observe(self, lat: float, lon: float) -> VegetationObservation:
        response = await self._client.post(f"{self.base_url}/quick-search", json=self.search_request(lat, lon))
        response.raise_for_status()
        features = response.json().get("features") or []
        if not features:
            return VegetationObservation()
        return VegetationObservation(greenness=features[0].get("properties", {}).get("ndvi"))
