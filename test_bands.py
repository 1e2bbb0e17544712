"""
Tests for decimation band selection, acquisition windows and the retry loop.
"""

import pytest
import numpy as np

from lcr.acquire import RawCapture, acquire
from lcr.bands import AcquisitionWindow, BandEntry, BandSelector, DEFAULT_BANDS
from lcr.errors import AcquisitionTimeout, MalformedCapture, UnsupportedFrequency
from lcr.sim import SimulatedPitaya


@pytest.fixture
def selector():
    return BandSelector()


class TestBandSelector:
    """Frequency to decimation mapping."""

    @pytest.mark.parametrize("bound, decimation", [
        (160000.0, 1),
        (20000.0, 8),
        (2500.0, 64),
        (160.0, 1024),
        (20.0, 8192),
        (2.5, 65536),
    ])
    def test_boundary_belongs_to_higher_band(self, selector, bound, decimation):
        """A frequency exactly on a lower bound selects that bound's band."""
        assert selector.select(bound).decimation == decimation

    @pytest.mark.parametrize("freq, decimation", [
        (159999.9, 8),
        (19999.9, 64),
        (2499.9, 1024),
        (159.9, 8192),
        (19.9, 65536),
    ])
    def test_just_below_boundary(self, selector, freq, decimation):
        """Just below a bound falls into the next lower band."""
        assert selector.select(freq).decimation == decimation

    def test_inside_bands(self, selector):
        """Frequencies well inside a band are deterministic."""
        assert selector.select(1e6).decimation == 1
        assert selector.select(50e3).decimation == 8
        assert selector.select(1000.0).decimation == 1024
        assert selector.select(1000.0) == selector.select(1000.0)

    @pytest.mark.parametrize("freq", [2.4, 1.0, 0.0, -5.0, float('nan'), 70e6])
    def test_unsupported_frequency(self, selector, freq):
        """Frequencies outside the table raise instead of falling through."""
        with pytest.raises(UnsupportedFrequency):
            selector.select(freq)

    def test_unsupported_is_value_error(self, selector):
        with pytest.raises(ValueError):
            selector.select(1.0)

    def test_table_must_decrease(self):
        """Band bounds must be strictly decreasing."""
        with pytest.raises(ValueError, match="strictly decreasing"):
            BandSelector([BandEntry(20.0, 8192), BandEntry(160.0, 1024)])
        with pytest.raises(ValueError):
            BandSelector([BandEntry(160.0, 1024), BandEntry(160.0, 8192)])

    def test_empty_table(self):
        with pytest.raises(ValueError):
            BandSelector([])

    def test_default_table(self):
        assert [b.decimation for b in DEFAULT_BANDS] == [1, 8, 64, 1024, 8192, 65536]


class TestAcquisitionWindow:
    """Per-frequency sampling constants."""

    def test_window_at_1khz(self, selector):
        """1 kHz uses decimation 1024 and 15 periods worth of samples."""
        window = selector.window(1000.0, min_periods=15)
        assert window.decimation == 1024
        assert window.n_samples == round(15 * 125e6 / (1000.0 * 1024))
        assert window.sample_period == pytest.approx(1024 / 125e6)
        assert len(window.t) == window.n_samples - 1
        np.testing.assert_allclose(window.t[:4], np.arange(4) * window.sample_period)

    def test_window_spans_min_periods(self, selector):
        """The window covers approximately min_periods signal periods."""
        for freq in [3.0, 100.0, 5000.0, 30000.0, 200000.0, 1e6]:
            window = selector.window(freq, min_periods=15)
            span = window.n_samples * window.sample_period
            assert span * freq == pytest.approx(15, rel=0.01)

    @pytest.mark.parametrize("bound", [b.lower_bound for b in DEFAULT_BANDS])
    def test_sample_count_positive_in_every_band(self, selector, bound):
        """N is a positive integer at the bottom of each band."""
        window = selector.window(bound, min_periods=1)
        assert isinstance(window.n_samples, int)
        assert window.n_samples > 0

    def test_window_too_short(self):
        """A window with fewer than three samples is rejected."""
        with pytest.raises(ValueError, match="too short"):
            AcquisitionWindow.create(frequency=62.5e6, decimation=1, min_periods=1)

    def test_window_exceeds_buffer(self):
        """A window longer than the buffer is rejected."""
        with pytest.raises(ValueError, match="exceeds"):
            AcquisitionWindow.create(frequency=160.0, decimation=1024, min_periods=15,
                                     max_samples=1000)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            AcquisitionWindow.create(frequency=0.0, decimation=1, min_periods=15)
        with pytest.raises(ValueError):
            AcquisitionWindow.create(frequency=1000.0, decimation=1024, min_periods=0)

    def test_time_base_is_read_only(self, selector):
        window = selector.window(1000.0, min_periods=15)
        with pytest.raises(ValueError):
            window.t[0] = 1.0


class _RecordingSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


class TestAcquire:
    """Bounded retry loop around the acquisition device."""

    @pytest.fixture
    def window(self, selector):
        return selector.window(1000.0, min_periods=15)

    def test_immediate_capture(self, window):
        device = SimulatedPitaya()
        device.start_excitation(1000.0, 1.0)
        sleep = _RecordingSleep()

        capture = acquire(device, window, retries=5, interval=1e-3, sleep=sleep)

        assert capture.signal_size == 16384
        assert device.attempts == 1
        assert sleep.calls == []

    def test_succeeds_on_last_attempt(self, window):
        """A capture on attempt k succeeds with a budget of exactly k."""
        device = SimulatedPitaya(trigger_after=4)
        device.start_excitation(1000.0, 1.0)
        sleep = _RecordingSleep()

        capture = acquire(device, window, retries=5, interval=1e-3, sleep=sleep)

        assert capture is not None
        assert device.attempts == 5
        assert sleep.calls == [1e-3] * 4

    def test_timeout_when_budget_exhausted(self, window):
        """The timeout is raised after exactly `retries` attempts, not earlier."""
        device = SimulatedPitaya(trigger_after=5)
        device.start_excitation(1000.0, 1.0)
        sleep = _RecordingSleep()

        with pytest.raises(AcquisitionTimeout, match="5 attempts"):
            acquire(device, window, retries=5, interval=1e-3, sleep=sleep)

        assert device.attempts == 5
        assert len(sleep.calls) == 4

    def test_timeout_is_timeout_error(self, window):
        device = SimulatedPitaya(trigger_after=10)
        with pytest.raises(TimeoutError):
            acquire(device, window, retries=2, interval=0.0, sleep=_RecordingSleep())

    def test_signal_size_limited_by_max_size(self, window):
        """signal_size is min(max_size, captured length)."""
        device = SimulatedPitaya()
        device.start_excitation(1000.0, 1.0)

        capture = acquire(device, window, max_size=4000, retries=1)

        assert capture.signal_size == 4000
        assert all(len(ch) == 4000 for ch in capture.channels)

    def test_invalid_budget(self, window):
        with pytest.raises(ValueError):
            acquire(SimulatedPitaya(), window, retries=0)


class TestRawCapture:
    """Capture construction and truncation."""

    def test_truncates_to_shorter_of_request_and_capture(self):
        a = np.arange(100)
        capture = RawCapture.from_channels((a, a), max_size=1000)
        assert capture.signal_size == 100

        capture = RawCapture.from_channels((a, a), max_size=10)
        assert capture.signal_size == 10
        np.testing.assert_array_equal(capture.channels[0], np.arange(10))

    def test_length_mismatch(self):
        with pytest.raises(MalformedCapture, match="disagree"):
            RawCapture.from_channels((np.zeros(10), np.zeros(12)))

    def test_single_channel(self):
        with pytest.raises(MalformedCapture):
            RawCapture.from_channels((np.zeros(10),))
