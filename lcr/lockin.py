"""
Lock-in demodulation and impedance assembly.

The load voltage and current traces are multiplied by sine and cosine
references at the excitation frequency and integrated over the acquisition
window. For a trace ``A * sin(w*t + phi)`` the sine product integrates to
``~ A*cos(phi) * T/2`` and the cosine product to ``~ A*sin(phi) * T/2``, so
``atan2(Y, X)`` recovers ``phi`` and the ``T/2`` factor cancels in the
voltage/current ratio.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Tuple

import numpy as np

from .bands import AcquisitionWindow
from .errors import DegenerateMeasurement
from .signal import ConditionedTrace, codes_to_volts
from .util import wrap_phase

#: Default absolute floor on the current integral; the sweep uses current_floor()
MIN_CURRENT_AMPLITUDE = 1e-15


def integrate_trapezoid(values: np.ndarray, t: np.ndarray) -> float:
    """Trapezoidal rule: ``sum(dt_k * (f_k + f_{k+1}) / 2)``."""
    values = np.asarray(values, dtype=np.float64)
    t = np.asarray(t, dtype=np.float64)
    if values.shape != t.shape:
        raise ValueError(f"values and time base differ in shape: {values.shape} vs {t.shape}")
    if len(values) < 2:
        return 0.0
    return float(np.sum(np.diff(t) * (values[:-1] + values[1:]) / 2.0))


def integrate_abs_difference(values: np.ndarray, t: np.ndarray) -> float:
    """
    Absolute-difference rule: ``sum(|dt_k| * |f_k - f_{k+1}| / 2)``.

    This is the integrator of the legacy C lcr firmware. It is not a true
    integral (a constant trace integrates to exactly zero and the sign of
    the product is lost), and is kept only for comparison with data taken
    by that firmware.
    """
    values = np.asarray(values, dtype=np.float64)
    t = np.asarray(t, dtype=np.float64)
    if values.shape != t.shape:
        raise ValueError(f"values and time base differ in shape: {values.shape} vs {t.shape}")
    if len(values) < 2:
        return 0.0
    return float(np.sum(np.abs(np.diff(t)) * np.abs(values[:-1] - values[1:]) / 2.0))


INTEGRATORS: Dict[str, Callable[[np.ndarray, np.ndarray], float]] = {
    'trapezoid': integrate_trapezoid,
    'abs-difference': integrate_abs_difference,
}


@dataclass(frozen=True)
class QuadratureProducts:
    """Traces multiplied by the sine/cosine references."""
    voltage_sin: np.ndarray
    voltage_cos: np.ndarray
    current_sin: np.ndarray
    current_cos: np.ndarray


@dataclass(frozen=True)
class IntegralPair:
    """In-phase (``x``) and quadrature (``y``) integrals of one quantity."""
    x: float
    y: float

    @property
    def amplitude(self) -> float:
        return float(np.hypot(self.x, self.y))

    @property
    def phase(self) -> float:
        """Phase in radians relative to the sine reference."""
        return float(np.arctan2(self.y, self.x))


def quadrature_products(trace: ConditionedTrace, window: AcquisitionWindow) -> QuadratureProducts:
    """
    Multiply the traces by ``sin(w*t)`` and ``cos(w*t)``.

    Only the first ``min(len(trace), len(window.t))`` samples are used.
    """
    n = min(len(trace), len(window.t))
    if n < 2:
        raise ValueError(f"Need at least two samples to demodulate, got {n}")

    wt = window.t[:n] * window.angular_frequency
    ref_sin = np.sin(wt)
    ref_cos = np.cos(wt)
    v = trace.load_voltage[:n]
    i = trace.load_current[:n]

    return QuadratureProducts(
        voltage_sin=v * ref_sin,
        voltage_cos=v * ref_cos,
        current_sin=i * ref_sin,
        current_cos=i * ref_cos,
    )


def demodulate(
    trace: ConditionedTrace,
    window: AcquisitionWindow,
    integrator: str = 'trapezoid',
) -> Tuple[IntegralPair, IntegralPair]:
    """
    Lock-in demodulate load voltage and current.

    Parameters
    ----------
    trace : ConditionedTrace
        Conditioned load voltage/current
    window : AcquisitionWindow
        Supplies the time base and the excitation frequency
    integrator : str
        'trapezoid' (default) or 'abs-difference'

    Returns
    -------
    voltage, current : IntegralPair
    """
    try:
        integrate = INTEGRATORS[integrator]
    except KeyError:
        raise ValueError(f"Unknown integrator {integrator!r}. Must be one of {list(INTEGRATORS)}") from None

    products = quadrature_products(trace, window)
    t = window.t[:len(products.voltage_sin)]

    voltage = IntegralPair(
        x=integrate(products.voltage_sin, t),
        y=integrate(products.voltage_cos, t),
    )
    current = IntegralPair(
        x=integrate(products.current_sin, t),
        y=integrate(products.current_cos, t),
    )
    return voltage, current


@dataclass(frozen=True)
class ImpedanceSample:
    """One impedance measurement (one pass of the averaging loop)."""
    frequency: float
    repeat: int
    average: int
    voltage_amplitude: float
    voltage_phase: float
    current_amplitude: float
    current_phase: float
    impedance: complex

    @property
    def magnitude(self) -> float:
        return abs(self.impedance)

    @property
    def phase_deg(self) -> float:
        return wrap_phase(float(np.degrees(np.angle(self.impedance))))


def impedance_from_integrals(voltage: IntegralPair, current: IntegralPair,
                             min_current: float = MIN_CURRENT_AMPLITUDE) -> Tuple[float, float]:
    """
    Return ``(magnitude, phase_deg)`` of V/I.

    The phase difference is wrapped to (-180, 180].

    Raises
    ------
    DegenerateMeasurement
        If the current amplitude is not finite or at/below ``min_current``
    """
    current_amplitude = current.amplitude
    if not np.isfinite(current_amplitude) or current_amplitude <= min_current:
        raise DegenerateMeasurement(
            f"Current amplitude {current_amplitude:g} too small to compute impedance"
        )
    magnitude = voltage.amplitude / current_amplitude
    phase_deg = wrap_phase(np.degrees(voltage.phase - current.phase))
    return magnitude, phase_deg


def current_floor(window: AcquisitionWindow, shunt: float, dc_bias: float = 0.0,
                  integrator: str = 'trapezoid') -> float:
    """
    Integral amplitude of a one-code current over ``window``.

    A sinusoid whose shunt voltage spans a single ADC code is the smallest
    current the front end can resolve. Its in-phase integral, taken with the
    same rule as the measurement, is the threshold below which the current
    is indistinguishable from quantization noise.
    """
    one_code = codes_to_volts(1, dc_bias) / shunt
    ref = np.sin(window.angular_frequency * window.t)
    return INTEGRATORS[integrator](one_code * ref * ref, window.t)


def polar_to_complex(magnitude: float, phase_deg: float) -> complex:
    """``magnitude * exp(j * phase)``, i.e. real = |Z|cos(phi), imag = |Z|sin(phi)."""
    phi = np.radians(phase_deg)
    return complex(magnitude * np.cos(phi), magnitude * np.sin(phi))


def legacy_impedance(magnitude: float, phase_rad: float) -> complex:
    """
    Impedance as combined by the legacy C lcr firmware: ``|Z| + j * dphi``.

    The amplitude ratio and the phase difference (radians) are packed into
    the real and imaginary parts directly. This is not a polar-to-rectangular
    conversion; use :func:`polar_to_complex` for real measurements.
    """
    return complex(magnitude, phase_rad)


def assemble(voltage: IntegralPair, current: IntegralPair, frequency: float,
             repeat: int = 0, average: int = 0,
             min_current: float = MIN_CURRENT_AMPLITUDE) -> ImpedanceSample:
    """Build an :class:`ImpedanceSample` from the voltage/current integrals."""
    magnitude, phase_deg = impedance_from_integrals(voltage, current, min_current=min_current)
    return ImpedanceSample(
        frequency=frequency,
        repeat=repeat,
        average=average,
        voltage_amplitude=voltage.amplitude,
        voltage_phase=voltage.phase,
        current_amplitude=current.amplitude,
        current_phase=current.phase,
        impedance=polar_to_complex(magnitude, phase_deg),
    )
