"""
Tests for signal conditioning, lock-in demodulation and impedance assembly.
"""

import math

import pytest
import numpy as np

from lcr.acquire import RawCapture
from lcr.bands import BandSelector
from lcr.errors import DegenerateMeasurement, MalformedCapture
from lcr.lockin import (
    IntegralPair,
    assemble,
    current_floor,
    demodulate,
    impedance_from_integrals,
    integrate_abs_difference,
    integrate_trapezoid,
    legacy_impedance,
    polar_to_complex,
)
from lcr.signal import ConditionedTrace, codes_to_volts, condition
from lcr.util import wrap_phase


@pytest.fixture
def window():
    return BandSelector().window(1000.0, min_periods=15)


def _trace(voltage, current):
    voltage = np.asarray(voltage, dtype=float)
    current = np.asarray(current, dtype=float)
    return ConditionedTrace(channels=(voltage + current, current),
                            load_voltage=voltage, load_current=current)


class TestConditioning:
    """ADC codes to load voltage and current."""

    def test_half_scale_code_is_one_volt(self):
        """Code 8192 with zero DC bias is 1.0 V."""
        result = codes_to_volts([8192], dc_bias=0.0)
        assert result[0] == 1.0, f"Expected 1.0, got {result[0]}"

    def test_dc_bias_scales_range(self):
        assert codes_to_volts([8192], dc_bias=1.0)[0] == pytest.approx(0.5)

    def test_load_voltage_and_current(self):
        """U = V(IN1) - V(IN2), I = V(IN2) / R_shunt."""
        raw = RawCapture.from_channels((np.full(8, 8192), np.full(8, 4096)))
        trace = condition(raw, shunt=1000.0)

        np.testing.assert_allclose(trace.load_voltage, 0.5)
        np.testing.assert_allclose(trace.load_current, 0.5e-3)
        assert len(trace) == 8

    def test_uses_signal_size(self):
        raw = RawCapture.from_channels((np.arange(100), np.arange(100)), max_size=40)
        assert len(condition(raw, shunt=10.0)) == 40

    def test_channel_length_mismatch(self):
        """Channels of different length are rejected, not silently truncated."""
        raw = RawCapture(channels=(np.zeros(10), np.zeros(9)), signal_size=9)
        with pytest.raises(MalformedCapture):
            condition(raw, shunt=1000.0)

    def test_signal_size_exceeds_capture(self):
        raw = RawCapture(channels=(np.zeros(10), np.zeros(10)), signal_size=11)
        with pytest.raises(MalformedCapture):
            condition(raw, shunt=1000.0)

    def test_invalid_shunt(self):
        raw = RawCapture.from_channels((np.zeros(4), np.zeros(4)))
        with pytest.raises(ValueError):
            condition(raw, shunt=0.0)


class TestIntegrators:
    """Numerical integration rules."""

    def test_abs_difference_of_constant_is_zero(self):
        """The legacy rule integrates a constant to exactly zero."""
        t = np.arange(100) * 1e-3
        assert integrate_abs_difference(np.full(100, 3.0), t) == 0.0

    def test_trapezoid_of_constant(self):
        t = np.arange(100) * 1e-3
        assert integrate_trapezoid(np.full(100, 3.0), t) == pytest.approx(3.0 * t[-1])

    def test_trapezoid_exact_for_linear(self):
        t = np.linspace(0.0, 2.0, 11)
        assert integrate_trapezoid(t, t) == pytest.approx(2.0)

    def test_abs_difference_loses_sign(self):
        t = np.arange(10, dtype=float)
        up = integrate_abs_difference(t, t)
        down = integrate_abs_difference(-t, t)
        assert up == down == pytest.approx(4.5)

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            integrate_trapezoid(np.zeros(5), np.zeros(4))

    def test_short_input(self):
        assert integrate_trapezoid(np.array([1.0]), np.array([0.0])) == 0.0


class TestDemodulation:
    """Lock-in products and integrals."""

    def test_recovers_amplitude_ratio_and_phase(self, window):
        """A voltage leading the current by 30 degrees is recovered."""
        t = np.arange(window.n_samples) * window.sample_period
        w = window.angular_frequency
        voltage = 2.0 * np.sin(w * t + math.radians(30.0))
        current = 0.5 * np.sin(w * t)

        v, i = demodulate(_trace(voltage, current), window)
        magnitude, phase = impedance_from_integrals(v, i)

        assert magnitude == pytest.approx(4.0, rel=1e-2)
        assert phase == pytest.approx(30.0, abs=0.5)

    def test_dc_trace_gives_negligible_output(self, window):
        """A constant trace has no component at the excitation frequency."""
        n = window.n_samples
        v, i = demodulate(_trace(np.full(n, 1.0), np.full(n, 1e-3)), window)
        span = window.t[-1]

        assert v.amplitude < 0.01 * span
        assert i.amplitude < 0.01 * 1e-3 * span

    def test_abs_difference_does_not_reject_dc(self, window):
        """The legacy rule responds to a DC trace where a lock-in should not."""
        n = window.n_samples
        v, _ = demodulate(_trace(np.full(n, 1.0), np.full(n, 1e-3)), window,
                          integrator='abs-difference')
        assert v.amplitude > 0

    def test_uses_shorter_of_trace_and_time_base(self, window):
        """Demodulation uses min(len(trace), len(t)) samples."""
        t = np.arange(100) * window.sample_period
        trace = _trace(np.sin(window.angular_frequency * t), np.ones(100))
        v, i = demodulate(trace, window)
        assert np.isfinite(v.x) and np.isfinite(i.x)

    def test_unknown_integrator(self, window):
        n = window.n_samples
        with pytest.raises(ValueError, match="Unknown integrator"):
            demodulate(_trace(np.zeros(n), np.zeros(n)), window, integrator='simpson')


class TestAssembly:
    """Impedance from voltage/current integrals."""

    def test_pure_ratio(self):
        """X_v=1, Y_v=0, X_i=0.5, Y_i=0 gives ratio 2 and zero phase."""
        sample = assemble(IntegralPair(1.0, 0.0), IntegralPair(0.5, 0.0), frequency=1000.0)

        assert sample.magnitude == pytest.approx(2.0)
        assert sample.phase_deg == pytest.approx(0.0)
        assert sample.impedance == pytest.approx(2.0 + 0.0j)

    def test_quadrature_voltage(self):
        """A voltage 90 degrees ahead of the current is purely reactive."""
        sample = assemble(IntegralPair(0.0, 1.0), IntegralPair(1.0, 0.0), frequency=1000.0)

        assert sample.phase_deg == pytest.approx(90.0)
        assert sample.impedance.real == pytest.approx(0.0, abs=1e-12)
        assert sample.impedance.imag == pytest.approx(1.0)

    def test_zero_current_is_degenerate(self):
        with pytest.raises(DegenerateMeasurement):
            assemble(IntegralPair(1.0, 0.0), IntegralPair(0.0, 0.0), frequency=1000.0)

    def test_nan_current_is_degenerate(self):
        with pytest.raises(ArithmeticError):
            assemble(IntegralPair(1.0, 0.0), IntegralPair(float('nan'), 0.0), frequency=1000.0)

    def test_coordinates_are_kept(self):
        sample = assemble(IntegralPair(1.0, 0.0), IntegralPair(1.0, 0.0),
                          frequency=5000.0, repeat=2, average=3)
        assert (sample.frequency, sample.repeat, sample.average) == (5000.0, 2, 3)

    def test_phase_difference_is_wrapped(self):
        """Raw difference 170 - (-170) = 340 wraps to -20 degrees."""
        v = IntegralPair(math.cos(math.radians(170)), math.sin(math.radians(170)))
        i = IntegralPair(math.cos(math.radians(-170)), math.sin(math.radians(-170)))
        _, phase = impedance_from_integrals(v, i)
        assert phase == pytest.approx(-20.0)

    def test_current_floor_is_one_code_over_window(self, window):
        """The floor is the in-phase integral of a one-code shunt current."""
        one_code = 2.0 / 16384 / 8200.0
        floor = current_floor(window, shunt=8200.0)
        assert floor == pytest.approx(one_code * window.t[-1] / 2, rel=1e-2)

    def test_current_floor_scales_with_window(self):
        selector = BandSelector()
        short = current_floor(selector.window(1000.0, min_periods=5), shunt=100.0)
        long = current_floor(selector.window(1000.0, min_periods=15), shunt=100.0)
        assert long == pytest.approx(3 * short, rel=2e-2)

    def test_below_floor_is_degenerate(self, window):
        floor = current_floor(window, shunt=8200.0)
        with pytest.raises(DegenerateMeasurement):
            assemble(IntegralPair(1.0, 0.0), IntegralPair(0.5 * floor, 0.0),
                     frequency=1000.0, min_current=floor)

    def test_legacy_impedance_differs_from_polar(self):
        """The legacy |Z| + j*dphi packing is not the rectangular impedance."""
        legacy = legacy_impedance(1.0, math.pi / 2)
        correct = polar_to_complex(1.0, 90.0)

        assert legacy == pytest.approx(1.0 + 1j * math.pi / 2)
        assert correct == pytest.approx(0.0 + 1.0j)
        assert abs(legacy - correct) > 1.0

    def test_legacy_matches_polar_at_zero_phase(self):
        assert legacy_impedance(5.0, 0.0) == polar_to_complex(5.0, 0.0)


class TestWrapPhase:
    """Phase normalization into (-180, 180]."""

    @pytest.mark.parametrize("value, expected", [
        (0.0, 0.0),
        (180.0, 180.0),
        (-180.0, 180.0),
        (190.0, -170.0),
        (-190.0, 170.0),
        (540.0, 180.0),
        (-179.0, -179.0),
        (360.0, 0.0),
    ])
    def test_reference_values(self, value, expected):
        result = wrap_phase(value)
        assert result == pytest.approx(expected), f"Expected {expected}, got {result}"
