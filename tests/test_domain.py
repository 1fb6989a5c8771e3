"""Tests for the domain value types."""
import pytest

from gpuctl.domain import (AcousticLimits, FanCurve, FanCurvePoint, FanSpeedPercent,
                           PcieLink, PowerConstraints, PowerLimitWatts, Temperature)
from gpuctl.errors import DomainValidationError


class TestFanSpeedPercent:

    def test_accepts_full_range(self):
        for value in range(0, 101):
            assert FanSpeedPercent(value).value == value

    @pytest.mark.parametrize("value", [-1, 101, 150])
    def test_rejects_out_of_range(self, value):
        with pytest.raises(DomainValidationError):
            FanSpeedPercent(value)

    @pytest.mark.parametrize("value", [50.0, "50", True, None])
    def test_rejects_non_integers(self, value):
        with pytest.raises(DomainValidationError):
            FanSpeedPercent(value)

    def test_validation_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            FanSpeedPercent(101)

    def test_fraction_and_str(self):
        assert FanSpeedPercent(75).fraction == 0.75
        assert str(FanSpeedPercent(75)) == "75%"


class TestTemperature:

    def test_negative_is_allowed(self):
        assert Temperature(-10).celsius == -10

    def test_bool_is_rejected(self):
        with pytest.raises(DomainValidationError):
            Temperature(True)

    def test_ordering(self):
        assert Temperature(40) < Temperature(41)
        assert str(Temperature(45)) == "45°C"


class TestPower:

    def test_constraints_reject_inverted_range(self):
        with pytest.raises(DomainValidationError):
            PowerConstraints(400, 100, 300)

    def test_constraints_reject_default_outside_range(self):
        with pytest.raises(DomainValidationError):
            PowerConstraints(100, 400, 450)

    def test_limit_within_constraints(self):
        constraints = PowerConstraints(100, 400, 300)
        assert PowerLimitWatts(100, constraints).watts == 100
        assert PowerLimitWatts(400, constraints).milliwatts == 400000

    @pytest.mark.parametrize("watts", [99, 401])
    def test_limit_outside_constraints(self, watts):
        with pytest.raises(DomainValidationError, match="valid range: 100-400W"):
            PowerLimitWatts(watts, PowerConstraints(100, 400, 300))

    def test_limit_equality_ignores_constraints(self):
        assert (PowerLimitWatts(250, PowerConstraints(100, 400, 300))
                == PowerLimitWatts(250, PowerConstraints(200, 300, 250)))


class TestFanCurve:

    @pytest.fixture
    def curve(self):
        return FanCurve.parse(["40:30", "60:50", "80:100"], default_speed=10)

    @pytest.mark.parametrize("celsius,expected", [
        (25, 10),
        (39, 10),
        (40, 30),
        (59, 30),
        (60, 50),
        (79, 50),
        (80, 100),
        (100, 100),
    ])
    def test_speed_at(self, curve, celsius, expected):
        assert curve.speed_at(Temperature(celsius)) == FanSpeedPercent(expected)

    def test_speed_at_accepts_plain_int(self, curve):
        assert curve.speed_at(60).value == 50

    def test_rejects_unsorted_points(self):
        with pytest.raises(DomainValidationError, match="sorted"):
            FanCurve.parse(["60:50", "40:30"], default_speed=30)

    def test_rejects_duplicate_temperatures(self):
        with pytest.raises(DomainValidationError, match="Duplicate"):
            FanCurve.parse(["40:30", "40:50"], default_speed=30)

    def test_rejects_empty(self):
        with pytest.raises(DomainValidationError):
            FanCurve((), FanSpeedPercent(30))

    def test_rejects_out_of_range_speed(self):
        with pytest.raises(DomainValidationError):
            FanCurve.parse(["40:130"], default_speed=30)

    @pytest.mark.parametrize("raw", ["40", "40:30:20", "forty:30"])
    def test_rejects_malformed_pairs(self, raw):
        with pytest.raises(DomainValidationError):
            FanCurve.parse([raw], default_speed=30)

    def test_parse_accepts_pairs(self):
        curve = FanCurve.parse([(40, 30), (70, 80)], default_speed=20)
        assert curve.points == (
            FanCurvePoint(Temperature(40), FanSpeedPercent(30)),
            FanCurvePoint(Temperature(70), FanSpeedPercent(80)),
        )

    def test_default_curve(self):
        curve = FanCurve.default_curve()
        assert curve.default_speed.value == 30
        assert [p.temperature.celsius for p in curve.points] == [40, 60, 75, 85]
        assert curve.speed_at(90).value == 100


def test_acoustic_limits_accepts():
    limits = AcousticLimits(min=Temperature(60), current=Temperature(80), max=Temperature(90))
    assert limits.accepts(Temperature(60))
    assert limits.accepts(Temperature(90))
    assert not limits.accepts(Temperature(59))
    assert not limits.accepts(Temperature(91))
    assert AcousticLimits(None, None, None).accepts(Temperature(200))


def test_pcie_bandwidth_efficiency():
    assert PcieLink(4, 4, 16, 16).bandwidth_efficiency == 100.0
    assert PcieLink(2, 4, 8, 16).bandwidth_efficiency == 25.0
