"""
Signal conditioning: raw 14-bit ADC codes to load voltage and current.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .acquire import RawCapture
from .errors import MalformedCapture

#: ADC codes corresponding to the full-scale input range
FULL_SCALE_CODES = 16384


@dataclass(frozen=True)
class ConditionedTrace:
    """
    Voltages derived from one capture.

    Attributes
    ----------
    channels : tuple of np.ndarray
        Per-channel voltage (V), IN1 then IN2
    load_voltage : np.ndarray
        Voltage across the device under test, V(IN1) - V(IN2)
    load_current : np.ndarray
        Current through the shunt (and DUT), V(IN2) / R_shunt
    """
    channels: Tuple[np.ndarray, ...]
    load_voltage: np.ndarray
    load_current: np.ndarray

    def __len__(self) -> int:
        return len(self.load_voltage)


def codes_to_volts(codes, dc_bias: float = 0.0,
                   full_scale_codes: int = FULL_SCALE_CODES) -> np.ndarray:
    """Convert ADC codes to volts, ``codes * (2 - dc_bias) / full_scale_codes``."""
    # Multiply before dividing so integer codes keep full precision
    return (np.asarray(codes, dtype=np.float64) * (2.0 - dc_bias)) / full_scale_codes


def condition(raw: RawCapture, shunt: float, dc_bias: float = 0.0,
              full_scale_codes: int = FULL_SCALE_CODES) -> ConditionedTrace:
    """
    Turn a raw capture into load voltage and current traces.

    Parameters
    ----------
    raw : RawCapture
        Capture with at least two channels (IN1, IN2)
    shunt : float
        Shunt resistance in Ohms
    dc_bias : float
        DC bias compensation (V)
    full_scale_codes : int
        Codes spanning the input range

    Returns
    -------
    ConditionedTrace
        Traces of length ``raw.signal_size``

    Raises
    ------
    MalformedCapture
        If channels are missing, disagree in length, or are shorter than
        ``signal_size``
    """
    if shunt <= 0:
        raise ValueError(f"shunt must be > 0, got {shunt}")
    if full_scale_codes <= 0:
        raise ValueError(f"full_scale_codes must be > 0, got {full_scale_codes}")
    if len(raw.channels) < 2:
        raise MalformedCapture(f"Expected two channels, got {len(raw.channels)}")

    lengths = [len(ch) for ch in raw.channels]
    if len(set(lengths)) != 1:
        raise MalformedCapture(f"Channel lengths disagree: {lengths}")
    if raw.signal_size < 1 or raw.signal_size > lengths[0]:
        raise MalformedCapture(
            f"signal_size {raw.signal_size} does not fit captured length {lengths[0]}"
        )

    n = raw.signal_size
    volts = tuple(codes_to_volts(ch[:n], dc_bias, full_scale_codes) for ch in raw.channels)
    v_in1, v_in2 = volts[0], volts[1]

    return ConditionedTrace(
        channels=volts,
        load_voltage=v_in1 - v_in2,
        load_current=v_in2 / shunt,
    )
