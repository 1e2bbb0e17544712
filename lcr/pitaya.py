"""
SCPI interface to a Red Pitaya board.

Provides the excitation (generator output 1) and the triggered two-channel
acquisition used by the LCR meter. Talks to the board's SCPI server over a
raw TCP socket (port 5000) through pyvisa.

Generator and acquisition settings are exposed as properties generated from
parameter tables. Values read from the board are cached; setting a property
to its cached value sends nothing.
"""

from enum import Enum
from typing import Any, Dict, Optional, Tuple, TYPE_CHECKING, Literal
import sys

import numpy as np
import pyvisa

from .acquire import RawCapture
from .bands import BUFFER_SIZE
from .errors import MalformedCapture
from .util import parse_si

#: Default SCPI server port on the board
SCPI_PORT = 5000

DECIMATIONS = [1, 8, 64, 1024, 8192, 65536]

TRIGGER_SOURCES = ['DISABLED', 'NOW', 'CH1_PE', 'CH1_NE', 'CH2_PE', 'CH2_NE',
                   'EXT_PE', 'EXT_NE', 'AWG_PE', 'AWG_NE']


class Type(Enum):
    """Parameter type enum for SCPI value formatting."""
    UNITLESS = 1
    VOLTAGE = 2
    STRING = 3
    FREQUENCY = 4
    BOOLEAN = 5


# Parameter table structure: (name, type, scpi_template, valid_values)
ACQ_PARAMS = [
    ('decimation', Type.UNITLESS, 'ACQ:DEC', DECIMATIONS),
    ('trigger_level', Type.VOLTAGE, 'ACQ:TRIG:LEV', None),
    ('trigger_delay', Type.UNITLESS, 'ACQ:TRIG:DLY', None),
    ('averaging', Type.BOOLEAN, 'ACQ:AVG', None),
    ('units', Type.STRING, 'ACQ:DATA:UNITS', ['RAW', 'VOLTS']),
    ('data_format', Type.STRING, 'ACQ:DATA:FORMAT', ['ASCII', 'BIN']),
]

GEN_PARAMS = [
    ('enabled', Type.BOOLEAN, 'OUTPUT{ch}:STATE', None),
    ('function', Type.STRING, 'SOUR{ch}:FUNC',
     ['SINE', 'SQUARE', 'TRIANGLE', 'SAWU', 'SAWD', 'PWM', 'ARBITRARY', 'DC', 'DC_NEG']),
    ('frequency', Type.FREQUENCY, 'SOUR{ch}:FREQ:FIX', None),
    ('_amplitude_raw', Type.VOLTAGE, 'SOUR{ch}:VOLT', None),
    ('offset', Type.VOLTAGE, 'SOUR{ch}:VOLT:OFFS', None),
    ('phase', Type.UNITLESS, 'SOUR{ch}:PHAS', None),
]


def _normalize_value(value: Any, ptype: Type) -> Any:
    """Parse SI unit strings and normalize values based on type."""
    if not isinstance(value, str):
        return value

    match ptype:
        case Type.VOLTAGE:
            return parse_si(value, unit='V')
        case Type.FREQUENCY:
            return parse_si(value, unit='Hz')
        case _:
            return value


class RedPitaya:
    """
    Red Pitaya board used as LCR front end.

    Implements the excitation (``start_excitation``/``stop_excitation``) and
    acquisition (``try_acquire``) contracts of :class:`lcr.meter.LcrMeter`.

    Example:
        rp = RedPitaya(ip='192.168.1.100')

        rp.start_excitation(frequency=1000.0, amplitude=1.0)  # 1 kHz, 1 Vpp
        capture = None
        while capture is None:
            capture = rp.try_acquire(decimation=1024)

        rp.close()
    """

    if TYPE_CHECKING:
        @property
        def decimation(self) -> int:
            """Sample clock divider (1, 8, 64, 1024, 8192, 65536)."""
            ...
        @decimation.setter
        def decimation(self, value: int) -> None: ...

        @property
        def trigger_level(self) -> float:
            """Trigger level in volts. Accepts SI strings like '100mV'."""
            ...
        @trigger_level.setter
        def trigger_level(self, value: float | str) -> None: ...

        @property
        def trigger_delay(self) -> int:
            """Trigger delay in samples."""
            ...
        @trigger_delay.setter
        def trigger_delay(self, value: int) -> None: ...

        @property
        def averaging(self) -> bool:
            """Whether decimated samples are averaged."""
            ...
        @averaging.setter
        def averaging(self, value: bool) -> None: ...

        @property
        def units(self) -> Literal['RAW', 'VOLTS']:
            """Units of acquired data."""
            ...
        @units.setter
        def units(self, value: Literal['RAW', 'VOLTS']) -> None: ...

        @property
        def data_format(self) -> Literal['ASCII', 'BIN']:
            """Transfer format of acquired data."""
            ...
        @data_format.setter
        def data_format(self, value: Literal['ASCII', 'BIN']) -> None: ...

    def __init__(
        self,
        ip: Optional[str] = None,
        port: int = SCPI_PORT,
        trigger: str = 'NOW',
        buffer_size: int = BUFFER_SIZE,
        visa_backend: Optional[str] = None,
        inst=None,
        debug_level: int = 0,
    ):
        """
        Open the SCPI connection and put the board in a known state.

        Args:
            ip: IP address or hostname of the board. Required unless ``inst``
                is given.
            port: SCPI server port (default 5000)
            trigger: Acquisition trigger source ('NOW' triggers immediately,
                'CH1_PE' on a rising edge of IN1, ...)
            buffer_size: Maximum samples returned per channel
            visa_backend: pyvisa backend, e.g. '@py' for pyvisa-py
            inst: Already-open pyvisa resource (bypasses connection setup)
            debug_level: Debug verbosity level:
                0 = no debug output
                1 = print SCPI commands to stderr
                2 = print SCPI commands to stderr and check the error queue after each write
        """
        trigger = trigger.upper()
        if trigger not in TRIGGER_SOURCES:
            raise ValueError(f"Invalid trigger: {trigger}. Must be one of {TRIGGER_SOURCES}")

        self.debug_level = debug_level
        self.trigger = trigger
        self.buffer_size = buffer_size
        # Cache stores committed values: {scpi_command: (value, type)}
        self._cache: Dict[str, Tuple[Any, Type]] = {}
        self._armed = False
        self.rm = None

        if inst is None:
            if ip is None:
                raise ValueError("Either ip or inst must be given")
            self.rm = pyvisa.ResourceManager() if visa_backend is None else pyvisa.ResourceManager(visa_backend)
            resource = f"TCPIP0::{ip}::{port}::SOCKET"
            if self.debug_level >= 1:
                print(f"< Using VISA resource: {resource}", file=sys.stderr)
            inst = self.rm.open_resource(resource)
            inst.read_termination = "\r\n"
            inst.write_termination = "\r\n"
            inst.timeout = 10_000

        self.inst = inst
        self.generator = Generator(self, channel=1)

        self._write("GEN:RST")
        self._write("ACQ:RST")
        self.units = 'RAW'
        self.data_format = 'ASCII'
        self.trigger_delay = 0

    def _write(self, cmd: str, check_errors: bool = True) -> None:
        """
        Execute SCPI write command.

        Args:
            cmd: SCPI command to write
            check_errors: If True (default), check for errors when debug_level >= 2
        """
        if not self.debug_level:
            self.inst.write(cmd)
        else:
            print(f"> {cmd}", file=sys.stderr)
            self.inst.write(cmd)
            if self.debug_level >= 2 and check_errors:
                self._check_error(cmd)

    def _query(self, cmd: str) -> str:
        """Execute SCPI query command."""
        if not self.debug_level:
            return self.inst.query(cmd)
        else:
            print(f"> {cmd}", file=sys.stderr)
            result = self.inst.query(cmd)
            print(f"< {result.strip()}", file=sys.stderr)
            return result

    def _check_error(self, last_cmd: str = "") -> None:
        """
        Check the SCPI error queue and raise if an error is pending.

        Only called when debug_level >= 2 to help diagnose issues.
        """
        error_response = self.inst.query("SYST:ERR?").strip()
        # Error format: 'code,"message"' e.g. '0,"No error"'
        try:
            code_str, message = error_response.split(',', 1)
            code = int(code_str)
        except ValueError:
            print(f"  Error response: {error_response}", file=sys.stderr)
            return
        if code != 0:
            cmd_info = f" after command: {last_cmd}" if last_cmd else ""
            raise RuntimeError(f"SCPI Error {code}: {message.strip()}{cmd_info}")

    def _parse_value(self, value_str: str, ptype: Type) -> Any:
        """Parse a value from SCPI response according to its type."""
        value_str = value_str.strip()

        match ptype:
            case Type.BOOLEAN:
                val = value_str.upper()
                if val in ('ON', '1'):
                    return True
                elif val in ('OFF', '0'):
                    return False
                else:
                    raise ValueError(f"Invalid boolean value: {value_str!r}")
            case Type.VOLTAGE | Type.FREQUENCY:
                return float(value_str)
            case Type.UNITLESS:
                try:
                    return int(value_str) if '.' not in value_str else float(value_str)
                except ValueError:
                    return value_str
            case Type.STRING:
                return value_str

    def clear_cache(self) -> None:
        """Forget cached parameter values so the next read queries the board."""
        self._cache.clear()

    # ------------------- excitation -------------------

    def start_excitation(self, frequency: float, amplitude: float) -> None:
        """
        Output a sine on OUT1.

        A pending acquisition is dropped, so the next ``try_acquire`` re-arms
        and never returns a buffer captured under the previous excitation.

        Args:
            frequency: Frequency in Hz
            amplitude: Peak-to-peak amplitude in volts
        """
        self._armed = False
        gen = self.generator
        gen.function = 'SINE'
        gen.frequency = frequency
        gen.amplitude = amplitude
        gen.offset = 0.0
        gen.enabled = True

    def stop_excitation(self) -> None:
        """Switch OUT1 off."""
        self.generator.enabled = False

    # ------------------- acquisition -------------------

    def arm(self, decimation: int) -> None:
        """Start a new acquisition at ``decimation`` and set the trigger source."""
        self.decimation = decimation
        self._write("ACQ:START")
        self._write(f"ACQ:TRIG {self.trigger}")
        self._armed = True

    def triggered(self) -> bool:
        """True once the trigger fired and the buffer is filled."""
        status = self._query("ACQ:TRIG:STAT?").strip().upper()
        if status != 'TD':
            return False
        return self._query("ACQ:TRIG:FILL?").strip() == '1'

    def try_acquire(self, decimation: int) -> Optional[RawCapture]:
        """
        Non-blocking acquisition attempt.

        Arms the board if no acquisition is pending, then checks the trigger
        once. Returns the capture of IN1/IN2 if it fired, None otherwise.
        """
        if not self._armed or self.decimation != decimation:
            self.arm(decimation)

        if not self.triggered():
            return None

        self._armed = False
        in1 = self._read_channel(1)
        in2 = self._read_channel(2)
        return RawCapture.from_channels((in1, in2), max_size=self.buffer_size)

    def _read_channel(self, channel: int) -> np.ndarray:
        """Read raw codes of one input channel from the last acquisition."""
        reply = self._query(f"ACQ:SOUR{channel}:DATA?").strip()
        return self.parse_data(reply, channel)

    @staticmethod
    def parse_data(reply: str, channel: int = 0) -> np.ndarray:
        """Parse an ASCII data block like ``{12,-5,33}`` into integer codes."""
        if not reply.startswith('{') or not reply.endswith('}'):
            raise MalformedCapture(f"Unexpected data block for IN{channel}: {reply[:20]!r}")
        body = reply[1:-1].strip()
        if not body:
            raise MalformedCapture(f"No waveform data received for IN{channel}")
        try:
            values = np.array([float(x) for x in body.split(',')])
        except ValueError:
            raise MalformedCapture(f"Non-numeric data in IN{channel} block") from None
        return np.rint(values).astype(np.int32)

    def close(self) -> None:
        """Switch the output off, stop acquisition and close the VISA session."""
        try:
            self.stop_excitation()
            self._write("ACQ:STOP")
        finally:
            try:
                self.inst.close()
            finally:
                if self.rm is not None:
                    self.rm.close()


class Generator:
    """
    Signal generator output.

    Provides property-based access to generator parameters of one output.
    Properties are automatically generated from GEN_PARAMS table.
    """

    if TYPE_CHECKING:
        @property
        def enabled(self) -> bool:
            """Whether the output is switched on."""
            ...
        @enabled.setter
        def enabled(self, value: bool) -> None: ...

        @property
        def function(self) -> Literal['SINE', 'SQUARE', 'TRIANGLE', 'SAWU', 'SAWD', 'PWM', 'ARBITRARY', 'DC', 'DC_NEG']:
            """Waveform function."""
            ...
        @function.setter
        def function(self, value: str) -> None: ...

        @property
        def frequency(self) -> float:
            """Output frequency in Hz. Accepts SI strings like '1kHz'."""
            ...
        @frequency.setter
        def frequency(self, value: float | str) -> None: ...

        @property
        def offset(self) -> float:
            """DC offset in volts. Accepts SI strings like '100mV'."""
            ...
        @offset.setter
        def offset(self, value: float | str) -> None: ...

        @property
        def phase(self) -> float:
            """Phase offset in degrees."""
            ...
        @phase.setter
        def phase(self, value: float) -> None: ...

    def __init__(self, board: RedPitaya, channel: int = 1):
        """
        Args:
            board: Parent RedPitaya instance
            channel: 1-based output number
        """
        self._board = board
        self._channel = channel

    @property
    def amplitude(self) -> float:
        """
        Output amplitude (peak-to-peak volts). Accepts SI strings like '1V'.

        The board takes the one-sided amplitude, so this property converts.
        """
        return self._amplitude_raw * 2

    @amplitude.setter
    def amplitude(self, value: float | str) -> None:
        self._amplitude_raw = _normalize_value(value, Type.VOLTAGE) / 2


def _generate_properties(cls, params, scpi_cmd_fn):
    """
    Generate and attach properties to a class from a parameter table.

    Args:
        cls: Class to attach properties to
        params: Parameter table (list of tuples)
        scpi_cmd_fn: Function to generate SCPI command from template and instance
    """
    for name, ptype, scpi_template, valid_values in params:
        def make_getter(ptype, scpi_template):
            def getter(self):
                board = self if isinstance(self, RedPitaya) else self._board
                scpi_cmd = scpi_cmd_fn(self, scpi_template)

                if scpi_cmd in board._cache:
                    return board._cache[scpi_cmd][0]

                result = board._query(f"{scpi_cmd}?")
                parsed = board._parse_value(result, ptype)
                board._cache[scpi_cmd] = (parsed, ptype)
                return parsed
            return getter

        def make_setter(name, ptype, scpi_template, valid_values):
            def setter(self, value):
                board = self if isinstance(self, RedPitaya) else self._board

                value = _normalize_value(value, ptype)

                if valid_values is not None:
                    value_upper = str(value).upper()
                    if not any(value_upper == str(v).upper() for v in valid_values):
                        raise ValueError(f"Invalid {name}: {value}. Must be one of {valid_values}")

                # Skip if unchanged
                scpi_cmd = scpi_cmd_fn(self, scpi_template)
                if scpi_cmd in board._cache:
                    cached_value = board._cache[scpi_cmd][0]
                    if ptype in (Type.VOLTAGE, Type.FREQUENCY):
                        if isinstance(value, (int, float)) and isinstance(cached_value, (int, float)):
                            if abs(value - cached_value) < 1e-9:
                                return
                    elif value == cached_value:
                        return

                value_str = ('ON' if value else 'OFF') if ptype == Type.BOOLEAN else str(value)
                board._write(f"{scpi_cmd} {value_str}")
                board._cache[scpi_cmd] = (value, ptype)
            return setter

        prop = property(
            make_getter(ptype, scpi_template),
            make_setter(name, ptype, scpi_template, valid_values)
        )

        setattr(cls, name, prop)


# Generate all properties at module import time
_generate_properties(
    RedPitaya,
    ACQ_PARAMS,
    lambda _, template: template
)

_generate_properties(
    Generator,
    GEN_PARAMS,
    lambda self, template: template.format(ch=self._channel)
)

del _generate_properties
