"""Observation schemas.

Raw environmental readings for one plot, as returned by a single requester.
Every field is optional: a provider that cannot report a field leaves it None
and the per-field median simply has one fewer vote for it. No field is ever
defaulted to a "typical" value, because a made-up reading would count towards
quorum and could mask a provider outage.
"""

from pydantic import BaseModel, ConfigDict, Field


class WeatherObservation(BaseModel):
    """Current weather at a plot.

    Attributes:
        temperature: Air temperature in °C.
        precipitation: Accumulated precipitation in mm.
        humidity: Relative humidity in percent (0–100).
        wind_speed: Wind speed in km/h.
    """

    model_config = ConfigDict(frozen=True)

    temperature: float | None = None
    precipitation: float | None = Field(default=None, ge=0)
    humidity: float | None = Field(default=None, ge=0, le=100)
    wind_speed: float | None = Field(default=None, ge=0)


class VegetationObservation(BaseModel):
    """Recent vegetation health over a plot's bounding box.

    Attributes:
        greenness: Mean greenness index (NDVI) over the lookback window.
            Ranges from -1.0 to 1.0; healthy crops sit around 0.6–0.8.
    """

    model_config = ConfigDict(frozen=True)

    greenness: float | None = Field(default=None, ge=-1.0, le=1.0)


WEATHER_FIELDS = ("temperature", "precipitation", "humidity", "wind_speed")
VEGETATION_FIELDS = ("greenness",)
