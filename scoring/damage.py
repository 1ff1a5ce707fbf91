"""Damage scorer: deterministic damage index from consensus observations.

Scores:
- Weather damage: one band per stressor (temperature, precipitation,
  humidity, wind). Only the widest band a reading falls in counts; the
  stressor scores are summed and capped at 100.
- Vegetation damage: step function of mean greenness.
- Combined index: integer-weighted average, floored, capped at 100.

All arithmetic after band lookup is integer arithmetic with floor division,
so the index and payout match what the settlement contract re-derives.
Same input always produces the same output.
"""

from core.errors import ConfigurationError
from schemas.observation import VegetationObservation, WeatherObservation
from schemas.policy import ActivePolicy
from schemas.report import DamageReport
from utils.units import parse_units


class DamageScorer:
    """Compute damage scores, the combined index and payout amounts."""

    # (lower bound, upper bound, score): a reading below lower or above upper
    # scores that band. Widest band first.
    TEMPERATURE_BANDS = ((5, 45, 40), (10, 40, 25), (15, 35, 10))
    # (threshold, score): a reading strictly above threshold scores.
    PRECIPITATION_BANDS = ((100, 30), (50, 15))   # mm
    HUMIDITY_BANDS = ((95, 15), (90, 8))          # %
    WIND_BANDS = ((80, 20), (60, 10))             # km/h
    # (minimum greenness, score): the first band the reading reaches.
    GREENNESS_BANDS = ((0.7, 0), (0.6, 10), (0.5, 25), (0.4, 40), (0.3, 60), (0.2, 80))
    GREENNESS_FLOOR_SCORE = 100

    MAX_SCORE = 100

    def __init__(self, weather_weight: float = 0.6, vegetation_weight: float = 0.4) -> None:
        """Convert the weights to integer percentages once.

        Raises:
            ConfigurationError: If the weights do not add up to 1.
        """
        self.weather_weight = round(weather_weight * 100)
        self.vegetation_weight = round(vegetation_weight * 100)
        if self.weather_weight < 0 or self.vegetation_weight < 0:
            raise ConfigurationError("damage weights must be non-negative")
        if self.weather_weight + self.vegetation_weight != 100:
            raise ConfigurationError(
                f"damage weights must sum to 1.0, got {weather_weight} + {vegetation_weight}"
            )

    # ── Scores ───────────────────────────────────────────────────────────────

    def weather_damage(self, weather: WeatherObservation) -> int:
        """Weather damage score in [0, 100]. Missing readings add nothing."""
        score = (
            self._temperature(weather.temperature)
            + self._above(weather.precipitation, self.PRECIPITATION_BANDS)
            + self._above(weather.humidity, self.HUMIDITY_BANDS)
            + self._above(weather.wind_speed, self.WIND_BANDS)
        )
        return min(score, self.MAX_SCORE)

    def vegetation_damage(self, vegetation: VegetationObservation) -> int:
        """Vegetation damage score in [0, 100].

        Raises:
            ValueError: If greenness is missing.
        """
        greenness = vegetation.greenness
        if greenness is None:
            raise ValueError("vegetation damage needs a greenness reading")
        for minimum, score in self.GREENNESS_BANDS:
            if greenness >= minimum:
                return score
        return self.GREENNESS_FLOOR_SCORE

    def combined_index(self, weather_damage: int, vegetation_damage: int) -> int:
        weighted = self.weather_weight * weather_damage + self.vegetation_weight * vegetation_damage
        return min(weighted // 100, self.MAX_SCORE)

    def payout_amount(self, sum_insured_units: int, combined_index: int) -> int:
        """Payout in base units: floor(sum_insured * index / 100)."""
        return sum_insured_units * combined_index // 100

    def assess(
        self,
        policy: ActivePolicy,
        weather: WeatherObservation,
        vegetation: VegetationObservation,
        assessed_at: int,
    ) -> DamageReport:
        """Score a policy's observations into a DamageReport.

        Args:
            policy: The policy being assessed.
            weather: Consensus weather reading.
            vegetation: Consensus vegetation reading.
            assessed_at: Unix seconds to stamp the report with.
        """
        weather_score = self.weather_damage(weather)
        vegetation_score = self.vegetation_damage(vegetation)
        index = self.combined_index(weather_score, vegetation_score)
        return DamageReport(
            policy_id=policy.policy_id,
            on_chain_policy_id=policy.on_chain_policy_id,
            weather_damage=weather_score,
            vegetation_damage=vegetation_score,
            combined_index=index,
            payout_amount=self.payout_amount(parse_units(policy.sum_insured), index),
            assessed_at=assessed_at,
        )

    # ── Private ──────────────────────────────────────────────────────────────

    def _temperature(self, value: float | None) -> int:
        if value is None:
            return 0
        for low, high, score in self.TEMPERATURE_BANDS:
            if value < low or value > high:
                return score
        return 0

    @staticmethod
    def _above(value: float | None, bands: tuple[tuple[float, int], ...]) -> int:
        if value is None:
            return 0
        for threshold, score in bands:
            if value > threshold:
                return score
        return 0
