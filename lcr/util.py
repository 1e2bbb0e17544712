"""
Utility functions for impedance sweep analysis and visualization.
"""

import re
import sys
from typing import Optional, Callable

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.ticker import FuncFormatter


def _format_frequency_tick(value, pos):
    """Format frequency tick labels in Hz/KHz/MHz."""
    if value >= 1e6:
        return f'{value/1e6:.0f} MHz' if value >= 10e6 else f'{value/1e6:.1f} MHz'
    elif value >= 1e3:
        return f'{value/1e3:.0f} KHz' if value >= 10e3 else f'{value/1e3:.1f} KHz'
    else:
        return f'{value:.0f} Hz'


def format_frequency(value: float) -> str:
    """Format frequency value with appropriate units (Hz/KHz/MHz)."""
    if value >= 1e6:
        return f'{value/1e6:.3f} MHz' if value < 100e6 else f'{value/1e6:.2f} MHz'
    elif value >= 1e3:
        return f'{value/1e3:.3f} KHz' if value < 100e3 else f'{value/1e3:.2f} KHz'
    else:
        return f'{value:.2f} Hz'


def format_impedance(value: float) -> str:
    """Format an impedance magnitude with Ω/kΩ/MΩ units."""
    if abs(value) >= 1e6:
        return f'{value/1e6:.3f} MΩ'
    elif abs(value) >= 1e3:
        return f'{value/1e3:.3f} kΩ'
    else:
        return f'{value:.3f} Ω'


def parse_si(value: str, unit: str = 'Hz') -> float:
    """
    Parse a string with SI prefixes into a numeric value.

    Supports standard SI prefixes with case sensitivity:
    - u/µ = micro (10^-6)
    - m = milli (10^-3)
    - k/K = kilo (10^3)
    - M = mega (10^6)

    Parameters
    ----------
    value : str
        String to parse, e.g., '10KHz', '1V', '8.2k', '8.2kOhm', '-100mV'
    unit : str, optional
        Expected unit ('Hz', 'V', 'Ohm', ...). Default is 'Hz'.
        Used to validate the input.

    Returns
    -------
    float
        Numeric value in base units

    Examples
    --------
    >>> parse_si('10KHz', unit='Hz')
    10000.0
    >>> parse_si('500mV', unit='V')
    0.5
    >>> parse_si('8.2k', unit='Ohm')
    8200.0
    >>> parse_si('2.5Hz')
    2.5
    >>> parse_si('-100mV', unit='V')
    -0.1
    """
    original_value = value
    value = value.strip()

    # Case-sensitive for prefix to distinguish m (milli) from M (mega)
    match = re.match(r'^(-?[\d.]+(?:[eE][+-]?\d+)?)\s*([uµmkKMG]?)([a-zA-ZΩ]+)?$', value)
    if not match:
        raise ValueError(f"Invalid format: {original_value}")

    try:
        number = float(match.group(1))
    except ValueError:
        raise ValueError(f"Invalid number in: {original_value}") from None
    prefix = match.group(2)
    found_unit = match.group(3) if match.group(3) else None

    if found_unit == 'Ω':
        found_unit = 'Ohm'
    if found_unit and found_unit.upper() != unit.upper():
        raise ValueError(f"Expected unit '{unit}' but found '{found_unit}' in: {original_value}")

    multipliers = {
        '': 1,
        'u': 1e-6,
        'µ': 1e-6,
        'm': 1e-3,
        'k': 1e3,
        'K': 1e3,
        'M': 1e6,
        'G': 1e9,
    }

    return number * multipliers[prefix]


def wrap_phase(deg: float) -> float:
    """
    Wrap a phase angle in degrees to (-180, 180].

    -180 itself maps to +180 so that every angle has exactly one
    representation.
    """
    wrapped = ((deg + 180.0) % 360.0) - 180.0
    if wrapped <= -180.0:
        wrapped += 360.0
    return wrapped


def create_print_callback(quiet: bool = False) -> Optional[Callable]:
    """
    Create an ``on_measurement`` callback that prints one table row per record.

    Returns None when ``quiet`` is set, so callers can skip the call.
    """
    if quiet:
        return None

    def callback(freq_hz, repeat, real, imag, magnitude, phase_deg, index, total, **kwargs):
        freq_str = format_frequency(freq_hz)
        print(
            f'{freq_str:>13}  {repeat:>3}  {real:>12.3f}  {imag:>12.3f}  '
            f'{format_impedance(magnitude):>12}  {phase_deg:>8.2f}°  [{index + 1}/{total}]'
        )

    return callback


def print_table_header(file=None) -> None:
    """Print the column header matching ``create_print_callback`` rows."""
    file = file or sys.stdout
    print(f"{'Frequency':>13}  {'Rep':>3}  {'Re(Z) [Ω]':>12}  {'Im(Z) [Ω]':>12}  "
          f"{'|Z|':>12}  {'Phase':>9}", file=file)
    print(f"{'-'*13}  {'-'*3}  {'-'*12}  {'-'*12}  {'-'*12}  {'-'*9}", file=file)


def progress_printer(current: int, total: int, file=None) -> None:
    """
    Rewrite one status line with the sweep progress.

    The line is finished with a newline once ``current`` reaches ``total``.
    Writes to stderr unless ``file`` is given.
    """
    file = file or sys.stderr
    end = "\n" if current >= total else ""
    file.write(f"\r Sweep: {current}/{total} points ({100.0 * current / total:.0f}%){end}")
    file.flush()


def plot_impedance(freqs: np.ndarray, impedance: np.ndarray, title: Optional[str] = None):
    """
    Plot impedance magnitude and phase against frequency.

    Parameters
    ----------
    freqs : np.ndarray
        Frequency points in Hz
    impedance : np.ndarray
        Complex impedance at each frequency (Ohm)
    title : str, optional
        Figure title

    Returns
    -------
    fig, (ax_mag, ax_phase)
    """
    freqs = np.asarray(freqs, dtype=float)
    impedance = np.asarray(impedance, dtype=complex)

    fig, (ax_mag, ax_phase) = plt.subplots(2, 1, sharex=True, figsize=(8, 6))

    ax_mag.loglog(freqs, np.abs(impedance), marker='o', label="Measured")
    ax_phase.semilogx(freqs, np.degrees(np.angle(impedance)), marker='o', label="Measured")

    ax_mag.set_ylabel("|Z| [Ω]")
    ax_mag.grid(True, which="both", ls=":")
    ax_mag.legend(loc="best")

    ax_phase.set_ylabel("Phase [deg]")
    ax_phase.set_xlabel("Frequency")
    ax_phase.grid(True, which="both", ls=":")

    ax_phase.xaxis.set_major_formatter(FuncFormatter(_format_frequency_tick))

    if title:
        fig.suptitle(title)
    fig.tight_layout()

    return fig, (ax_mag, ax_phase)
