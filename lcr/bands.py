"""
Decimation band selection and per-frequency acquisition windows.

The ADC samples at 125 MHz. To keep a roughly constant number of signal
periods in the capture buffer, the sample clock is decimated more heavily
for lower excitation frequencies:

    lower bound [Hz]   decimation
    160000             1
    20000              8
    2500               64
    160                1024
    20                 8192
    2.5                65536
"""

from dataclasses import dataclass, field
from typing import Sequence, Tuple

import numpy as np

from .errors import UnsupportedFrequency

#: ADC sample rate of the Red Pitaya (Hz)
SAMPLE_RATE = 125e6

#: Acquisition buffer length per channel (samples)
BUFFER_SIZE = 16 * 1024

#: Highest frequency the generator can produce (Hz)
MAX_FREQUENCY = 62.5e6


@dataclass(frozen=True)
class BandEntry:
    """One row of the band table: frequencies >= ``lower_bound`` use ``decimation``."""
    lower_bound: float
    decimation: int


DEFAULT_BANDS: Tuple[BandEntry, ...] = (
    BandEntry(160000.0, 1),
    BandEntry(20000.0, 8),
    BandEntry(2500.0, 64),
    BandEntry(160.0, 1024),
    BandEntry(20.0, 8192),
    BandEntry(2.5, 65536),
)


class BandSelector:
    """
    Map an excitation frequency to its decimation band.

    Bands are scanned from the highest lower bound downwards and the first
    bound the frequency meets or exceeds wins, so a frequency sitting exactly
    on a boundary belongs to the higher band.
    """

    def __init__(self, bands: Sequence[BandEntry] = DEFAULT_BANDS,
                 max_frequency: float = MAX_FREQUENCY):
        if not bands:
            raise ValueError("band table must not be empty")
        bounds = [b.lower_bound for b in bands]
        if any(hi <= lo for hi, lo in zip(bounds, bounds[1:])):
            raise ValueError(f"band lower bounds must be strictly decreasing, got {bounds}")
        if bounds[-1] <= 0:
            raise ValueError("lowest band bound must be positive")
        if any(b.decimation < 1 for b in bands):
            raise ValueError("decimation factors must be >= 1")

        self.bands = tuple(bands)
        self.max_frequency = max_frequency

    @property
    def min_frequency(self) -> float:
        """Lowest frequency covered by the table."""
        return self.bands[-1].lower_bound

    def select(self, frequency: float) -> BandEntry:
        """Return the band for ``frequency`` or raise ``UnsupportedFrequency``."""
        if not np.isfinite(frequency) or frequency > self.max_frequency:
            raise UnsupportedFrequency(
                f"Frequency {frequency} Hz outside supported range "
                f"[{self.min_frequency}, {self.max_frequency:g}] Hz"
            )
        for band in self.bands:
            if frequency >= band.lower_bound:
                return band
        raise UnsupportedFrequency(
            f"Frequency {frequency} Hz is below the lowest band ({self.min_frequency} Hz)"
        )

    def window(self, frequency: float, min_periods: int,
               sample_rate: float = SAMPLE_RATE,
               max_samples: int = BUFFER_SIZE) -> 'AcquisitionWindow':
        """Select the band for ``frequency`` and derive its acquisition window."""
        band = self.select(frequency)
        return AcquisitionWindow.create(
            frequency=frequency,
            decimation=band.decimation,
            min_periods=min_periods,
            sample_rate=sample_rate,
            max_samples=max_samples,
        )


@dataclass(frozen=True)
class AcquisitionWindow:
    """
    Sampling constants for one excitation frequency.

    Attributes
    ----------
    frequency : float
        Excitation frequency (Hz)
    decimation : int
        Sample clock divider
    n_samples : int
        Samples spanning ``min_periods`` signal periods,
        ``round(min_periods * sample_rate / (frequency * decimation))``
    sample_period : float
        Time between samples, ``decimation / sample_rate`` (s)
    t : np.ndarray
        Time base of length ``n_samples - 1``; ``t[k] = k * sample_period``
    """
    frequency: float
    decimation: int
    n_samples: int
    sample_period: float
    t: np.ndarray = field(repr=False, compare=False)

    @classmethod
    def create(cls, frequency: float, decimation: int, min_periods: int,
               sample_rate: float = SAMPLE_RATE,
               max_samples: int = BUFFER_SIZE) -> 'AcquisitionWindow':
        if frequency <= 0:
            raise ValueError(f"frequency must be > 0, got {frequency}")
        if min_periods < 1:
            raise ValueError(f"min_periods must be >= 1, got {min_periods}")

        n_samples = int(round(min_periods * sample_rate / (frequency * decimation)))
        # The time base has n_samples - 1 points; fewer than two cannot be integrated
        if n_samples < 3:
            raise ValueError(
                f"Window of {n_samples} samples at {frequency:g} Hz (decimation {decimation}) "
                f"is too short; raise min_periods or use a lower decimation"
            )
        if n_samples > max_samples:
            raise ValueError(
                f"Window of {n_samples} samples at {frequency:g} Hz (decimation {decimation}) "
                f"exceeds the {max_samples}-sample buffer; lower min_periods"
            )

        sample_period = decimation / sample_rate
        t = np.arange(n_samples - 1) * sample_period
        t.setflags(write=False)

        return cls(
            frequency=frequency,
            decimation=decimation,
            n_samples=n_samples,
            sample_period=sample_period,
            t=t,
        )

    @property
    def angular_frequency(self) -> float:
        return 2 * np.pi * self.frequency
