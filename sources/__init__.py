"""External data requesters: policy service, weather and vegetation providers."""

from sources.policy_service import PolicyServiceClient
from sources.vegetation import PlanetClient, SentinelHubClient, SentinelTokenProvider, VegetationSource
from sources.weather import WeatherXMClient

__all__ = [
    "PolicyServiceClient",
    "WeatherXMClient",
    "VegetationSource",
    "SentinelHubClient",
    "SentinelTokenProvider",
    "PlanetClient",
]
