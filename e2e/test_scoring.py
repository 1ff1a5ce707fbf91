"""Tests for DamageScorer.

Band edges are checked on both sides because the settlement contract
re-derives the same numbers and a one-off difference means a rejected report.
"""

from decimal import Decimal

import pytest

from core.errors import ConfigurationError
from schemas.observation import VegetationObservation, WeatherObservation
from schemas.policy import ActivePolicy
from scoring.damage import DamageScorer


def make_policy(sum_insured="1000", **overrides):
    fields = dict(
        policy_id="pol-1",
        on_chain_policy_id=7,
        sum_insured=Decimal(sum_insured),
        plot_latitude=-1.28,
        plot_longitude=36.82,
    )
    fields.update(overrides)
    return ActivePolicy(**fields)


def calm_weather(**overrides):
    fields = dict(temperature=25.0, precipitation=0.0, humidity=50.0, wind_speed=10.0)
    fields.update(overrides)
    return WeatherObservation(**fields)


@pytest.fixture
def scorer():
    return DamageScorer()


class TestWeatherDamage:
    def test_calm_weather_scores_zero(self, scorer):
        assert scorer.weather_damage(calm_weather()) == 0

    @pytest.mark.parametrize("temp,expected", [
        (4.9, 40), (5, 25), (9.9, 25), (10, 10), (14.9, 10), (15, 0),
        (35, 0), (35.1, 10), (40, 10), (40.1, 25), (45, 25), (45.1, 40),
    ])
    def test_temperature_bands(self, scorer, temp, expected):
        assert scorer.weather_damage(calm_weather(temperature=temp)) == expected

    @pytest.mark.parametrize("precip,expected", [(50, 0), (50.1, 15), (100, 15), (100.1, 30)])
    def test_precipitation_bands(self, scorer, precip, expected):
        assert scorer.weather_damage(calm_weather(precipitation=precip)) == expected

    @pytest.mark.parametrize("humidity,expected", [(90, 0), (90.5, 8), (95, 8), (95.5, 15)])
    def test_humidity_bands(self, scorer, humidity, expected):
        assert scorer.weather_damage(calm_weather(humidity=humidity)) == expected

    @pytest.mark.parametrize("wind,expected", [(60, 0), (60.1, 10), (80, 10), (80.1, 20)])
    def test_wind_bands(self, scorer, wind, expected):
        assert scorer.weather_damage(calm_weather(wind_speed=wind)) == expected

    def test_only_widest_band_counts_per_stressor(self, scorer):
        # 2°C is below 5, 10 and 15; only the <5 band applies.
        assert scorer.weather_damage(calm_weather(temperature=2)) == 40

    def test_stressors_add_up(self, scorer):
        weather = calm_weather(temperature=42, precipitation=60, humidity=92, wind_speed=65)
        assert scorer.weather_damage(weather) == 25 + 15 + 8 + 10

    def test_capped_at_100(self, scorer):
        weather = calm_weather(temperature=50, precipitation=150, humidity=99, wind_speed=90)
        assert scorer.weather_damage(weather) == 100

    def test_missing_reading_adds_nothing(self, scorer):
        assert scorer.weather_damage(WeatherObservation(temperature=2)) == 40

    def test_extreme_heat_alone(self, scorer):
        weather = WeatherObservation(temperature=50, precipitation=0, humidity=50, wind_speed=0)
        assert scorer.weather_damage(weather) == 40

    def test_hotter_never_scores_lower(self, scorer):
        readings = [t / 2 for t in range(50, 121)]
        scores = [scorer.weather_damage(calm_weather(temperature=t)) for t in readings]
        assert scores == sorted(scores)

    def test_colder_never_scores_lower(self, scorer):
        readings = [t / 2 for t in range(50, -21, -1)]
        scores = [scorer.weather_damage(calm_weather(temperature=t)) for t in readings]
        assert scores == sorted(scores)

    def test_wetter_never_scores_lower(self, scorer):
        scores = [scorer.weather_damage(calm_weather(precipitation=p)) for p in range(0, 201, 5)]
        assert scores == sorted(scores)

    def test_more_humid_never_scores_lower(self, scorer):
        readings = [h / 2 for h in range(100, 201)]
        scores = [scorer.weather_damage(calm_weather(humidity=h)) for h in readings]
        assert scores == sorted(scores)

    def test_windier_never_scores_lower(self, scorer):
        scores = [scorer.weather_damage(calm_weather(wind_speed=w)) for w in range(0, 121, 2)]
        assert scores == sorted(scores)


class TestVegetationDamage:
    @pytest.mark.parametrize("greenness,expected", [
        (0.85, 0), (0.7, 0), (0.69, 10), (0.65, 10), (0.6, 10), (0.55, 25), (0.45, 40),
        (0.35, 60), (0.2, 80), (0.19, 100), (-0.3, 100),
    ])
    def test_bands(self, scorer, greenness, expected):
        assert scorer.vegetation_damage(VegetationObservation(greenness=greenness)) == expected

    def test_lower_greenness_never_scores_lower(self, scorer):
        readings = [x / 100 for x in range(100, -101, -5)]
        scores = [scorer.vegetation_damage(VegetationObservation(greenness=g)) for g in readings]
        assert scores == sorted(scores)

    def test_missing_greenness_raises(self, scorer):
        with pytest.raises(ValueError):
            scorer.vegetation_damage(VegetationObservation())


class TestCombinedIndex:
    def test_below_threshold_example(self, scorer):
        assert scorer.combined_index(40, 10) == 28

    def test_above_threshold_example(self, scorer):
        assert scorer.combined_index(70, 50) == 62

    def test_floors(self, scorer):
        # 60*33 + 40*0 = 1980 -> 19.8 -> 19
        assert scorer.combined_index(33, 0) == 19

    def test_bounded(self, scorer):
        assert scorer.combined_index(100, 100) == 100
        assert scorer.combined_index(0, 0) == 0

    def test_custom_weights(self):
        scorer = DamageScorer(weather_weight=0.5, vegetation_weight=0.5)
        assert scorer.combined_index(41, 0) == 20

    def test_weights_not_summing_to_one_rejected(self):
        with pytest.raises(ConfigurationError):
            DamageScorer(weather_weight=0.7, vegetation_weight=0.4)

    def test_float_weights_are_integerised(self):
        scorer = DamageScorer(weather_weight=0.6, vegetation_weight=0.4)
        assert (scorer.weather_weight, scorer.vegetation_weight) == (60, 40)


class TestPayout:
    def test_payout_floors(self, scorer):
        assert scorer.payout_amount(1_000_001, 33) == 330_000

    def test_assess_builds_report(self, scorer):
        weather = calm_weather(temperature=42, precipitation=60, humidity=92, wind_speed=65)   # 58
        vegetation = VegetationObservation(greenness=0.45)                                   # 40
        report = scorer.assess(make_policy(sum_insured="250.5"), weather, vegetation, assessed_at=1_700_000_000)

        assert report.weather_damage == 58
        assert report.vegetation_damage == 40
        assert report.combined_index == (60 * 58 + 40 * 40) // 100
        assert report.payout_amount == 250_500_000 * report.combined_index // 100
        assert report.on_chain_policy_id == 7
        assert report.assessed_at == 1_700_000_000

    def test_assess_is_deterministic(self, scorer):
        weather = calm_weather(temperature=3)
        vegetation = VegetationObservation(greenness=0.25)
        first = scorer.assess(make_policy(), weather, vegetation, assessed_at=1)
        second = scorer.assess(make_policy(), weather, vegetation, assessed_at=1)
        assert first == second
