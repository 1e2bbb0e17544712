"""
LCR meter tools for the Red Pitaya.

This package drives a sine excitation through a device under test, samples
the voltage across it and the current through a shunt resistor, and computes
the complex impedance over a frequency sweep using lock-in demodulation.

Submodules:
    lcr.meter - Sweep/average controller (LcrMeter, SweepConfig)
    lcr.bands - Decimation band selection and acquisition windows
    lcr.acquire - Acquisition device contract and retry loop
    lcr.signal - Raw ADC codes to load voltage/current
    lcr.lockin - Lock-in demodulation and impedance assembly
    lcr.pitaya - SCPI interface to a Red Pitaya board
    lcr.sim - Simulated instrument for tests and demos
    lcr.util - Utility functions for parsing, formatting and plotting
"""

from .errors import (
    LcrError,
    UnsupportedFrequency,
    AcquisitionTimeout,
    MalformedCapture,
    DegenerateMeasurement,
    CalibrationAborted,
)
from .meter import (
    LcrMeter,
    SweepConfig,
    SweepResult,
    Confirmation,
    parse_confirmation,
)

__version__ = "1.0.0"
__all__ = [
    "LcrError",
    "UnsupportedFrequency",
    "AcquisitionTimeout",
    "MalformedCapture",
    "DegenerateMeasurement",
    "CalibrationAborted",
    "LcrMeter",
    "SweepConfig",
    "SweepResult",
    "Confirmation",
    "parse_confirmation",
]
