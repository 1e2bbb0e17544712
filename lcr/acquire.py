"""
Acquisition device contract and the bounded retry loop around it.

An acquisition device is anything with a non-blocking
``try_acquire(decimation)`` that returns a :class:`RawCapture` once the
trigger has fired, or ``None`` while it is still waiting. The retry loop in
:func:`acquire` turns that into a blocking call with a fixed back-off and a
finite attempt budget.
"""

import sys
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple

import numpy as np

from .bands import AcquisitionWindow, BUFFER_SIZE
from .errors import AcquisitionTimeout, MalformedCapture

#: Default number of attempts before giving up
DEFAULT_RETRIES = 150_000

#: Default pause between attempts (s)
DEFAULT_RETRY_INTERVAL = 1e-3


@dataclass(frozen=True)
class RawCapture:
    """
    Raw ADC codes from one triggered acquisition.

    ``channels[0]`` is IN1, ``channels[1]`` is IN2. ``signal_size`` is the
    number of samples callers may read from each channel.
    """
    channels: Tuple[np.ndarray, ...]
    signal_size: int

    @classmethod
    def from_channels(cls, channels, max_size: int = BUFFER_SIZE) -> 'RawCapture':
        """Build a capture, truncating to ``min(max_size, captured length)``."""
        arrays = tuple(np.asarray(ch) for ch in channels)
        if len(arrays) < 2:
            raise MalformedCapture(f"Expected two channels, got {len(arrays)}")
        lengths = {a.shape[0] for a in arrays}
        if len(lengths) != 1:
            raise MalformedCapture(
                f"Channel lengths disagree: {[a.shape[0] for a in arrays]}"
            )
        signal_size = min(max_size, lengths.pop())
        return cls(channels=tuple(a[:signal_size] for a in arrays), signal_size=signal_size)


class AcquisitionDevice(Protocol):
    def try_acquire(self, decimation: int) -> Optional[RawCapture]:
        """Return a capture if the trigger has fired, else None."""
        ...


class Excitation(Protocol):
    def start_excitation(self, frequency: float, amplitude: float) -> None:
        """Drive a sine of ``amplitude`` Vpp at ``frequency`` Hz."""
        ...

    def stop_excitation(self) -> None:
        ...


def acquire(
    device: AcquisitionDevice,
    window: AcquisitionWindow,
    max_size: int = BUFFER_SIZE,
    retries: int = DEFAULT_RETRIES,
    interval: float = DEFAULT_RETRY_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
    debug_level: int = 0,
) -> RawCapture:
    """
    Ask ``device`` for a triggered capture at the window's decimation.

    Parameters
    ----------
    device : AcquisitionDevice
        Source of raw captures
    window : AcquisitionWindow
        Supplies the decimation factor
    max_size : int
        Upper bound on the returned ``signal_size``
    retries : int
        Maximum number of ``try_acquire`` attempts (>= 1)
    interval : float
        Pause between failed attempts (s); no pause after the last one
    sleep : callable
        Sleep function, replaceable in tests
    debug_level : int
        >= 2 prints a line for every failed attempt to stderr

    Returns
    -------
    RawCapture
        Capture with ``signal_size = min(max_size, captured length)``

    Raises
    ------
    AcquisitionTimeout
        If all ``retries`` attempts report "not triggered"
    """
    if retries < 1:
        raise ValueError(f"retries must be >= 1, got {retries}")
    if max_size < 1:
        raise ValueError(f"max_size must be >= 1, got {max_size}")

    for attempt in range(1, retries + 1):
        capture = device.try_acquire(window.decimation)
        if capture is not None:
            if capture.signal_size > max_size:
                capture = RawCapture.from_channels(capture.channels, max_size=max_size)
            if debug_level >= 1:
                print(f'  acquired {capture.signal_size} samples after {attempt} attempt(s)',
                      file=sys.stderr)
            return capture

        if debug_level >= 2:
            print(f'  attempt {attempt}/{retries}: not triggered', file=sys.stderr)
        if attempt < retries:
            sleep(interval)

    raise AcquisitionTimeout(
        f"Signal acquisition was not triggered after {retries} attempts "
        f"(decimation {window.decimation})"
    )
