"""
Simulated Red Pitaya for tests and demos.

Models the LCR front end: OUT1 drives the device under test in series with
the shunt resistor to ground. IN1 sees the generator voltage, IN2 the
voltage across the shunt. Captures are synthesized as raw 14-bit codes.
"""

from typing import Callable, Iterable, Optional, Union

import numpy as np

from .acquire import RawCapture
from .bands import BUFFER_SIZE, SAMPLE_RATE
from .signal import FULL_SCALE_CODES

Impedance = Union[complex, float, Callable[[float], complex]]


def series_rc(r: float, c: float) -> Callable[[float], complex]:
    """Impedance of a resistor in series with a capacitor."""
    def z(f: float) -> complex:
        return complex(r, -1.0 / (2 * np.pi * f * c))
    return z


def series_rl(r: float, l: float) -> Callable[[float], complex]:
    """Impedance of a resistor in series with an inductor."""
    def z(f: float) -> complex:
        return complex(r, 2 * np.pi * f * l)
    return z


class SimulatedPitaya:
    """
    Synthetic acquisition device and generator.

    Parameters
    ----------
    impedance : complex or callable
        DUT impedance in Ohms, or a function of frequency returning it
    shunt : float
        Shunt resistance in Ohms
    trigger_after : int
        Failed attempts before each capture triggers
    dead_frequencies : iterable of float
        Frequencies at which the trigger never fires
    start_phase : float
        Generator phase (rad) at the first captured sample
    noise : float
        Standard deviation of additive noise in ADC codes
    seed : int, optional
        Seed for the noise generator
    """

    def __init__(
        self,
        impedance: Impedance = 1000.0,
        shunt: float = 8200.0,
        trigger_after: int = 0,
        dead_frequencies: Iterable[float] = (),
        start_phase: float = 0.0,
        noise: float = 0.0,
        seed: Optional[int] = None,
        dc_bias: float = 0.0,
        sample_rate: float = SAMPLE_RATE,
        buffer_size: int = BUFFER_SIZE,
    ):
        self.impedance = impedance
        self.shunt = shunt
        self.trigger_after = trigger_after
        self.dead_frequencies = set(dead_frequencies)
        self.start_phase = start_phase
        self.noise = noise
        self.dc_bias = dc_bias
        self.sample_rate = sample_rate
        self.buffer_size = buffer_size
        self._rng = np.random.default_rng(seed)

        self.frequency: Optional[float] = None
        self.amplitude = 0.0
        self.enabled = False

        self.attempts = 0
        self.captures = 0
        self._pending = trigger_after

    def dut_impedance(self, frequency: float) -> complex:
        if callable(self.impedance):
            return complex(self.impedance(frequency))
        return complex(self.impedance)

    def start_excitation(self, frequency: float, amplitude: float) -> None:
        self.frequency = frequency
        self.amplitude = amplitude
        self.enabled = True

    def stop_excitation(self) -> None:
        self.enabled = False

    def _to_codes(self, volts: np.ndarray) -> np.ndarray:
        codes = volts * FULL_SCALE_CODES / (2.0 - self.dc_bias)
        if self.noise:
            codes = codes + self._rng.normal(0.0, self.noise, size=codes.shape)
        half = FULL_SCALE_CODES // 2
        return np.clip(np.rint(codes), -half, half - 1).astype(np.int32)

    def try_acquire(self, decimation: int) -> Optional[RawCapture]:
        self.attempts += 1
        if self.frequency in self.dead_frequencies:
            return None
        if self._pending > 0:
            self._pending -= 1
            return None
        self._pending = self.trigger_after

        n = self.buffer_size
        if not self.enabled or self.frequency is None:
            zeros = np.zeros(n, dtype=np.int32)
            self.captures += 1
            return RawCapture.from_channels((zeros, zeros.copy()), max_size=n)

        t = np.arange(n) * decimation / self.sample_rate
        w = 2 * np.pi * self.frequency
        peak = self.amplitude / 2

        # Shunt voltage = V_gen * Rs / (Z + Rs)
        divider = self.shunt / (self.dut_impedance(self.frequency) + self.shunt)
        v_in1 = peak * np.sin(w * t + self.start_phase)
        v_in2 = peak * abs(divider) * np.sin(w * t + self.start_phase + np.angle(divider))

        self.captures += 1
        return RawCapture.from_channels((self._to_codes(v_in1), self._to_codes(v_in2)), max_size=n)
