"""
LcrMeter: frequency-sweep impedance measurement with a Red Pitaya.

Combines band selection, triggered acquisition, signal conditioning and
lock-in demodulation into a swept, averaged impedance measurement.

Usage:
    from lcr.pitaya import RedPitaya
    from lcr.util import create_print_callback

    rp = RedPitaya(ip='192.168.1.100')
    meter = LcrMeter(rp)

    config = SweepConfig(start='1kHz', end='10kHz', step='1kHz', shunt='8.2k')
    answer = input("Short connection calibration. continue? [y|n] :")
    result = meter.sweep(config, parse_confirmation(answer),
                         on_measurement=create_print_callback())

    result.save_csv('impedance.csv')
    rp.close()
"""

import csv
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Union

import numpy as np

from .acquire import (
    AcquisitionDevice,
    Excitation,
    acquire,
    DEFAULT_RETRIES,
    DEFAULT_RETRY_INTERVAL,
)
from .bands import AcquisitionWindow, BandSelector, BUFFER_SIZE, MAX_FREQUENCY, SAMPLE_RATE
from .errors import (
    LcrError,
    AcquisitionTimeout,
    DegenerateMeasurement,
    CalibrationAborted,
    UnsupportedFrequency,
)
from .lockin import INTEGRATORS, ImpedanceSample, assemble, current_floor, demodulate
from .signal import condition
from .util import format_frequency, parse_si, print_table_header, progress_printer, wrap_phase

#: Generator output limit (Vpp)
MAX_AMPLITUDE = 2.0

#: Upper limit on calibration repeats
MAX_CALIBRATION_REPEATS = 10

#: Upper limit on periods per acquisition window
MAX_MIN_PERIODS = 20

FAILURE_POLICIES = ('skip', 'abort')

# Fields that accept SI strings, with their unit
_SI_FIELDS = {
    'start': 'Hz',
    'end': 'Hz',
    'step': 'Hz',
    'amplitude': 'V',
    'shunt': 'Ohm',
    'dc_bias': 'V',
    'retry_interval': 's',
}


@dataclass(frozen=True)
class SweepConfig:
    """
    Parameters of one impedance sweep. Validated on construction.

    Frequencies, amplitude, shunt and bias accept SI strings such as
    ``'10kHz'``, ``'1V'`` or ``'8.2k'``.

    Attributes
    ----------
    start, end, step : float
        Sweep from ``start`` while ``frequency < end`` in steps of ``step`` (Hz)
    amplitude : float
        Excitation amplitude (Vpp, 0..2)
    averaging : int
        Measurements averaged into one record
    calibration : bool
        If True, repeat every frequency ``calibration_repeats`` times
    calibration_repeats : int
        Middle-loop count in calibration mode (1..10)
    min_periods : int
        Signal periods per acquisition window (1..20)
    shunt : float
        Shunt resistance (Ohm)
    dc_bias : float
        DC bias compensation applied to ADC codes (V)
    buffer_size : int
        Samples requested per channel
    sample_rate : float
        Undecimated ADC rate (Hz)
    retries : int
        Acquisition attempts before timing out
    retry_interval : float
        Pause between attempts (s)
    on_failure : str
        'skip' records a gap for a failed point, 'abort' re-raises
    integrator : str
        'trapezoid' or 'abs-difference'
    """
    start: float = 1000.0
    end: float = 10000.0
    step: float = 1000.0
    amplitude: float = 1.0
    averaging: int = 5
    calibration: bool = False
    calibration_repeats: int = 1
    min_periods: int = 15
    shunt: float = 8200.0
    dc_bias: float = 0.0
    buffer_size: int = BUFFER_SIZE
    sample_rate: float = SAMPLE_RATE
    retries: int = DEFAULT_RETRIES
    retry_interval: float = DEFAULT_RETRY_INTERVAL
    on_failure: str = 'skip'
    integrator: str = 'trapezoid'

    def __post_init__(self):
        for name, unit in _SI_FIELDS.items():
            value = getattr(self, name)
            if isinstance(value, str):
                object.__setattr__(self, name, parse_si(value, unit=unit))

        if not 0 < self.start <= MAX_FREQUENCY:
            raise ValueError(f"start must be in (0, {MAX_FREQUENCY:g}] Hz, got {self.start}")
        if not 0 < self.end <= MAX_FREQUENCY:
            raise ValueError(f"end must be in (0, {MAX_FREQUENCY:g}] Hz, got {self.end}")
        if self.end <= self.start:
            raise ValueError(f"end ({self.end}) must be greater than start ({self.start})")
        if self.step <= 0:
            raise ValueError(f"step must be > 0, got {self.step}")
        if not 0 <= self.amplitude <= MAX_AMPLITUDE:
            raise ValueError(f"amplitude must be in [0, {MAX_AMPLITUDE}] Vpp, got {self.amplitude}")
        if self.averaging < 1:
            raise ValueError(f"averaging must be >= 1, got {self.averaging}")
        if not 1 <= self.calibration_repeats <= MAX_CALIBRATION_REPEATS:
            raise ValueError(
                f"calibration_repeats must be in [1, {MAX_CALIBRATION_REPEATS}], "
                f"got {self.calibration_repeats}"
            )
        if not 1 <= self.min_periods <= MAX_MIN_PERIODS:
            raise ValueError(f"min_periods must be in [1, {MAX_MIN_PERIODS}], got {self.min_periods}")
        if self.shunt <= 0:
            raise ValueError(f"shunt must be > 0, got {self.shunt}")
        if self.dc_bias >= 2.0:
            raise ValueError(f"dc_bias must be < 2 V, got {self.dc_bias}")
        if not 1 <= self.buffer_size <= BUFFER_SIZE:
            raise ValueError(f"buffer_size must be in [1, {BUFFER_SIZE}], got {self.buffer_size}")
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be > 0, got {self.sample_rate}")
        if self.retries < 1:
            raise ValueError(f"retries must be >= 1, got {self.retries}")
        if self.retry_interval < 0:
            raise ValueError(f"retry_interval must be >= 0, got {self.retry_interval}")
        if self.on_failure not in FAILURE_POLICIES:
            raise ValueError(f"Invalid on_failure: {self.on_failure}. Must be one of {FAILURE_POLICIES}")
        if self.integrator not in INTEGRATORS:
            raise ValueError(f"Invalid integrator: {self.integrator}. Must be one of {list(INTEGRATORS)}")

    @property
    def repeats(self) -> int:
        """Middle-loop iterations per frequency."""
        return self.calibration_repeats if self.calibration else 1

    def frequencies(self) -> np.ndarray:
        """Sweep frequencies: ``start + k*step`` for all values below ``end``."""
        count = int(np.ceil((self.end - self.start) / self.step))
        freqs = self.start + np.arange(count + 1) * self.step
        return freqs[freqs < self.end]


class Confirmation(Enum):
    """Outcome of the short-circuit calibration prompt."""
    CONFIRMED = 'confirmed'
    DECLINED = 'declined'
    INVALID = 'invalid'


def parse_confirmation(answer: Optional[str]) -> Confirmation:
    """Map a prompt answer to a :class:`Confirmation` ('y'/'Y' or 'n'/'N')."""
    if answer is None:
        return Confirmation.INVALID
    answer = answer.strip()
    if answer in ('y', 'Y'):
        return Confirmation.CONFIRMED
    if answer in ('n', 'N'):
        return Confirmation.DECLINED
    return Confirmation.INVALID


@dataclass(frozen=True)
class AveragedRecord:
    """Mean impedance of one (frequency, repeat) point."""
    index: int
    frequency: float
    repeat: int
    real: float
    imag: float
    count: int

    @property
    def impedance(self) -> complex:
        return complex(self.real, self.imag)

    @property
    def magnitude(self) -> float:
        return float(np.hypot(self.real, self.imag))

    @property
    def phase_deg(self) -> float:
        return wrap_phase(float(np.degrees(np.arctan2(self.imag, self.real))))


@dataclass(frozen=True)
class SweepGap:
    """A (frequency, repeat) point abandoned after a per-measurement failure."""
    frequency: float
    repeat: int
    average: int
    error: LcrError


@dataclass
class SweepResult:
    """Records, gaps and raw samples of one sweep, in acquisition order."""
    config: SweepConfig
    records: List[AveragedRecord] = field(default_factory=list)
    gaps: List[SweepGap] = field(default_factory=list)
    samples: List[ImpedanceSample] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)

    def frequencies(self) -> np.ndarray:
        return np.array([r.frequency for r in self.records], dtype=float)

    def impedances(self) -> np.ndarray:
        return np.array([r.impedance for r in self.records], dtype=complex)

    def save_csv(self, filename: str) -> None:
        """
        Save the averaged records to a CSV file.

        Raises
        ------
        RuntimeError
            If the sweep produced no records
        """
        if not self.records:
            raise RuntimeError("No sweep results to save. Run sweep() first.")

        with open(filename, 'w', newline='') as f:
            writer = csv.writer(f)
            writer.writerow(['Frequency (Hz)', 'Repeat', 'Re(Z) (Ohm)', 'Im(Z) (Ohm)',
                             '|Z| (Ohm)', 'Phase (deg)'])
            for r in self.records:
                writer.writerow([r.frequency, r.repeat, r.real, r.imag, r.magnitude, r.phase_deg])


class LcrMeter:
    """
    Swept, averaged impedance measurement.

    Runs three nested loops: frequency sweep, calibration repeats, and
    averaging. Each averaging pass selects the decimation band, acquires a
    triggered capture, conditions it, demodulates it and assembles one
    :class:`ImpedanceSample`; the samples of a pass are averaged into one
    :class:`AveragedRecord`.
    """

    def __init__(
        self,
        device: AcquisitionDevice,
        excitation: Optional[Excitation] = None,
        selector: Optional[BandSelector] = None,
        sleep: Callable[[float], None] = time.sleep,
        debug_level: int = 0,
        quiet: bool = False,
    ):
        """
        Parameters
        ----------
        device : AcquisitionDevice
            Source of raw captures (``try_acquire(decimation)``)
        excitation : Excitation, optional
            Signal generator; defaults to ``device`` when it provides
            ``start_excitation``
        selector : BandSelector, optional
            Decimation band table; defaults to the Red Pitaya bands
        sleep : callable
            Sleep used between acquisition attempts
        debug_level : int
            Debug verbosity (0=off, 1=per-measurement details, 2=also retries)
        quiet : bool
            If True, suppress informational messages
        """
        if excitation is None and hasattr(device, 'start_excitation'):
            excitation = device

        self.device = device
        self.excitation = excitation
        self.selector = selector or BandSelector()
        self.sleep = sleep
        self.debug_level = debug_level
        self.quiet = quiet

        # Last sweep results (kept even if the sweep raised)
        self.result: Optional[SweepResult] = None

    def measure(self, window: AcquisitionWindow, config: SweepConfig,
                repeat: int = 0, average: int = 0) -> ImpedanceSample:
        """
        Perform one acquisition/demodulation pass at ``window.frequency``.

        Assumes the excitation is already running at that frequency. A current
        below one ADC code across the shunt raises DegenerateMeasurement.
        """
        raw = acquire(
            self.device,
            window,
            max_size=config.buffer_size,
            retries=config.retries,
            interval=config.retry_interval,
            sleep=self.sleep,
            debug_level=self.debug_level,
        )
        trace = condition(raw, shunt=config.shunt, dc_bias=config.dc_bias)
        voltage, current = demodulate(trace, window, integrator=config.integrator)
        min_current = current_floor(window, config.shunt, config.dc_bias, config.integrator)
        sample = assemble(voltage, current, window.frequency, repeat=repeat, average=average,
                          min_current=min_current)

        if self.debug_level >= 1:
            print(f'  avg {average}: |V|={sample.voltage_amplitude:.4g} |I|={sample.current_amplitude:.4g} '
                  f'Z={sample.impedance.real:.4g}{sample.impedance.imag:+.4g}j', file=sys.stderr)

        return sample

    def sweep(
        self,
        config: SweepConfig,
        confirmation: Union[Confirmation, bool],
        on_measurement: Optional[Callable] = None,
    ) -> SweepResult:
        """
        Run the full sweep and return its records.

        Parameters
        ----------
        config : SweepConfig
            Sweep parameters
        confirmation : Confirmation or bool
            Result of the short-circuit calibration prompt. Anything but
            ``Confirmation.CONFIRMED`` (or True) aborts before the generator
            or the acquisition is touched.
        on_measurement : callable, optional
            Callback invoked after each record with kwargs:
                - freq_hz: float - frequency of the record
                - repeat: int - calibration repeat index
                - real: float - mean real part of Z (Ohm)
                - imag: float - mean imaginary part of Z (Ohm)
                - magnitude: float - |Z| (Ohm)
                - phase_deg: float - phase of Z in degrees
                - index: int - current point index (0-based)
                - total: int - total number of points
            Without a callback (and unless ``quiet``), progress is printed
            to stderr.

        Returns
        -------
        SweepResult
            Also stored as ``self.result``

        Raises
        ------
        CalibrationAborted
            If the confirmation was declined or invalid
        UnsupportedFrequency, MalformedCapture
            Immediately, located at the failing frequency; records collected
            so far stay in ``self.result``. A window that does not fit the
            buffer at some frequency is reported as UnsupportedFrequency.
        AcquisitionTimeout, DegenerateMeasurement
            Only when ``config.on_failure == 'abort'``
        """
        if confirmation is True:
            confirmation = Confirmation.CONFIRMED
        if confirmation is not Confirmation.CONFIRMED:
            raise CalibrationAborted(
                f"Short connection calibration not confirmed ({getattr(confirmation, 'value', confirmation)})"
            )

        freqs = config.frequencies()
        total = len(freqs) * config.repeats
        result = SweepResult(config=config)
        self.result = result

        if not self.quiet:
            mode = f"calibration ×{config.repeats}" if config.calibration else "measurement"
            print(f"Sweep ({mode}): {format_frequency(freqs[0])} to {format_frequency(freqs[-1])}, "
                  f"{len(freqs)} points, {config.averaging} averages, shunt {config.shunt:g} Ω")
            if on_measurement is not None:
                print_table_header()

        # Without a row printer, report progress on stderr instead
        show_progress = not self.quiet and on_measurement is None

        try:
            index = 0
            for freq_hz in freqs:
                freq_hz = float(freq_hz)
                try:
                    window = self.selector.window(
                        freq_hz,
                        config.min_periods,
                        sample_rate=config.sample_rate,
                        max_samples=config.buffer_size,
                    )
                except LcrError as e:
                    raise e.locate(freq_hz, 0, 0)
                except ValueError as e:
                    # Window too short or too long for the band at this frequency
                    raise UnsupportedFrequency(str(e)).locate(freq_hz, 0, 0) from e
                if self.debug_level >= 1:
                    print(f'{format_frequency(freq_hz)}: decimation={window.decimation} '
                          f'N={window.n_samples} T={window.sample_period:.3e} s', file=sys.stderr)

                if self.excitation is not None:
                    self.excitation.start_excitation(freq_hz, config.amplitude)

                for repeat in range(config.repeats):
                    record = self._measure_point(window, config, repeat, index, result)
                    if record is not None:
                        result.records.append(record)
                        if on_measurement:
                            on_measurement(
                                freq_hz=record.frequency,
                                repeat=record.repeat,
                                real=record.real,
                                imag=record.imag,
                                magnitude=record.magnitude,
                                phase_deg=record.phase_deg,
                                index=index,
                                total=total,
                            )
                    index += 1
                    if show_progress:
                        progress_printer(index, total)
        finally:
            if self.excitation is not None and hasattr(self.excitation, 'stop_excitation'):
                self.excitation.stop_excitation()

        if not self.quiet and result.gaps:
            print(f"Sweep finished with {len(result.gaps)} skipped point(s)", file=sys.stderr)

        return result

    def _measure_point(self, window: AcquisitionWindow, config: SweepConfig,
                       repeat: int, index: int, result: SweepResult) -> Optional[AveragedRecord]:
        """Run the averaging loop for one (frequency, repeat); None if the point was skipped."""
        samples = []
        for average in range(config.averaging):
            try:
                sample = self.measure(window, config, repeat=repeat, average=average)
            except (AcquisitionTimeout, DegenerateMeasurement) as e:
                e.locate(window.frequency, repeat, average)
                if config.on_failure == 'abort':
                    raise
                result.gaps.append(SweepGap(window.frequency, repeat, average, e))
                if not self.quiet:
                    print(f'  Skipping {format_frequency(window.frequency)} repeat {repeat}: {e}',
                          file=sys.stderr)
                return None
            except LcrError as e:
                raise e.locate(window.frequency, repeat, average)
            samples.append(sample)

        result.samples.extend(samples)
        impedance = np.array([s.impedance for s in samples], dtype=complex)
        return AveragedRecord(
            index=index,
            frequency=window.frequency,
            repeat=repeat,
            real=float(np.mean(impedance.real)),
            imag=float(np.mean(impedance.imag)),
            count=len(samples),
        )
