"""
Exception types raised by the impedance engine.

Every error can carry the sweep coordinates (frequency, repeat, average) of
the measurement that produced it. The sweep controller fills these in before
re-raising or recording a gap.
"""

from typing import Optional


class LcrError(Exception):
    """Base class for all LCR meter errors."""

    def __init__(
        self,
        message: str,
        frequency: Optional[float] = None,
        repeat: Optional[int] = None,
        average: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.frequency = frequency
        self.repeat = repeat
        self.average = average

    def locate(self, frequency: float, repeat: int, average: int) -> 'LcrError':
        """Attach sweep coordinates and return self (for ``raise err.locate(...)``)."""
        self.frequency = frequency
        self.repeat = repeat
        self.average = average
        return self

    def __str__(self) -> str:
        if self.frequency is None:
            return self.message
        return (
            f"{self.message} (frequency={self.frequency:g} Hz, "
            f"repeat={self.repeat}, average={self.average})"
        )


class UnsupportedFrequency(LcrError, ValueError):
    """No decimation band covers the requested frequency."""


class MalformedCapture(LcrError, ValueError):
    """Captured channels disagree in length or contain unusable data."""


class AcquisitionTimeout(LcrError, TimeoutError):
    """The acquisition device never triggered within the retry budget."""


class DegenerateMeasurement(LcrError, ArithmeticError):
    """Current amplitude is zero or too small to divide by."""


class CalibrationAborted(LcrError, RuntimeError):
    """The short-circuit confirmation was declined or invalid."""
