#!/usr/bin/env python3
"""
Muxtronics PowerBank — Python controller

Talks to the power bank over its (USB-CDC or real) serial port: reads and
decodes the 51-byte status frame, sends the configuration commands, and can
run as a UPS watchdog that powers the host off after a sustained loss of
external power.

Requires: pyserial (`pip install pyserial`)
"""

import logging
import struct
import subprocess
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Optional

import serial

__version__ = "0.4.0"

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants — command bytes
# ---------------------------------------------------------------------------
CMD_GET_STATE = 0x70
CMD_GET_NAME = 0x42
CMD_GET_DESCRIPTION = 0xFF
CMD_SET_NAME = 0x43
CMD_SET_REGISTER = 0x71
CMD_HV_INC = 0x73
CMD_HV_DEC = 0x74
CMD_USB_ON = 0x75
CMD_USB_OFF = 0x76
CMD_HV_ON = 0x77
CMD_HV_OFF = 0x78

# Reply sizes
FRAME_LEN = 51
NAME_REPLY_LEN = 18
NAME_LEN = 16  # leading bytes of the name reply that hold the name
DESCRIPTION_LEN = 24

# Status frame layout
OFF_TEMPERATURE = 0x00
OFF_BATTERY_VOLTAGE = 0x02
OFF_CHARGING_CURRENT = 0x04
OFF_HV_OUTPUT_CURRENT = 0x06
OFF_USB_OUTPUT_CURRENT = 0x08
OFF_HV_OUTPUT_VOLTAGE = 0x0A
OFF_CHARGER_REGISTERS = 0x18
CHARGER_REGISTER_COUNT = 10
OFF_STATUS_FLAGS = 0x22
OFF_OUTPUT_FLAGS = 0x23
OFF_UPTIME = 0x24

TEMPERATURE_DIVISOR = 100.0
MILLI_DIVISOR = 1000.0

# Status flags (offset 0x22), bit 7 down to bit 0
FLAG_AUTO_SEND = 0x80
FLAG_VIRTUAL_SERIAL_CONNECTED = 0x40
FLAG_CHARGING_PORT_PLUGGED_IN = 0x20
FLAG_WARNINGS_ENABLED = 0x10
FLAG_CHARGER_FAULT = 0x08
FLAG_BATTERY_OVERVOLTAGE = 0x04
FLAG_BATTERY_TOO_COLD = 0x02
FLAG_BATTERY_TOO_HOT = 0x01

STATUS_FLAGS = {
    "auto_send": FLAG_AUTO_SEND,
    "virtual_serial_connected": FLAG_VIRTUAL_SERIAL_CONNECTED,
    "charging_port_plugged_in": FLAG_CHARGING_PORT_PLUGGED_IN,
    "warnings_enabled": FLAG_WARNINGS_ENABLED,
    "charger_fault": FLAG_CHARGER_FAULT,
    "battery_overvoltage": FLAG_BATTERY_OVERVOLTAGE,
    "battery_too_cold": FLAG_BATTERY_TOO_COLD,
    "battery_too_hot": FLAG_BATTERY_TOO_HOT,
}

# Output flags (offset 0x23)
FLAG_HV_OUTPUT_ON = 0x80
FLAG_USB_OUTPUT_ON = 0x40

OUTPUT_FLAGS = {
    "hv_output_on": FLAG_HV_OUTPUT_ON,
    "usb_output_on": FLAG_USB_OUTPUT_ON,
}

# Serial line settings: 9600 8N2
DEFAULT_PORT = "/dev/ttyACM0"
DEFAULT_BAUD = 9600
POLL_TIMEOUT = 0.1  # 100 ms per chunk
STATE_ATTEMPTS = 5

# UPS mode
DEFAULT_POWER_OFF_AFTER = 60
DEFAULT_SHUTDOWN_COMMAND = "/sbin/poweroff"
DEFAULT_POLL_INTERVAL = 0.5

REGISTER_INDEX_MAX = 9


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class PowerBankError(Exception):
    """Base class for everything this module raises."""


class TransportError(PowerBankError, IOError):
    """The serial channel failed (open, write, read, short write)."""


class DeviceSilentError(PowerBankError, IOError):
    """No bytes arrived within one poll window."""


class StateTimeoutError(DeviceSilentError):
    """Every status request attempt timed out."""


class MalformedFrameError(PowerBankError, ValueError):
    """A reply is too short for the field being decoded."""


class MissingParameterError(PowerBankError, ValueError):
    pass


class NameTooLongError(PowerBankError, ValueError):
    pass


class IndexOutOfRangeError(PowerBankError, ValueError):
    pass


# ---------------------------------------------------------------------------
# Frame decoding
# ---------------------------------------------------------------------------
def _check_span(data: bytes, offset: int, width: int):
    if offset < 0 or offset + width > len(data):
        raise MalformedFrameError(
            f"frame of {len(data)} bytes has no field at "
            f"0x{offset:02x}..0x{offset + width - 1:02x}"
        )


def parse_int16(data: bytes, offset: int) -> int:
    """Signed 16-bit little-endian value at offset."""
    _check_span(data, offset, 2)
    return struct.unpack_from("<h", data, offset)[0]


def parse_uint32(data: bytes, offset: int) -> int:
    """Unsigned 32-bit little-endian value at offset."""
    _check_span(data, offset, 4)
    return struct.unpack_from("<I", data, offset)[0]


def parse_byte(data: bytes, offset: int) -> int:
    _check_span(data, offset, 1)
    return data[offset]


def parse_milli(data: bytes, offset: int) -> float:
    """Milli-unit int16 at offset, returned in base units (mV -> V, mA -> A)."""
    return parse_int16(data, offset) / MILLI_DIVISOR


def parse_temperature(data: bytes) -> float:
    """Temperature in degrees Celsius (centidegrees on the wire)."""
    return parse_int16(data, OFF_TEMPERATURE) / TEMPERATURE_DIVISOR


def parse_charger_registers(data: bytes) -> tuple:
    """The 10-byte charger chip register shadow, in frame order."""
    _check_span(data, OFF_CHARGER_REGISTERS, CHARGER_REGISTER_COUNT)
    end = OFF_CHARGER_REGISTERS + CHARGER_REGISTER_COUNT
    return tuple(data[OFF_CHARGER_REGISTERS:end])


def parse_flag(data: bytes, offset: int, mask: int) -> bool:
    return bool(parse_byte(data, offset) & mask)


def parse_uptime(data: bytes) -> int:
    return parse_uint32(data, OFF_UPTIME)


def parse_string(data: bytes, length: int) -> str:
    """Decode the leading `length` bytes of a reply as a NUL-padded string."""
    if len(data) < length:
        raise MalformedFrameError(
            f"reply of {len(data)} bytes is shorter than {length}"
        )
    raw = bytes(data[:length]).split(b"\x00", 1)[0]
    return raw.decode("utf-8", errors="replace")


def encode_name(name: Optional[str]) -> bytes:
    """Encode a device name as the 16-byte zero-padded set-name payload."""
    raw = name.encode("utf-8") if name else b""
    if len(raw) > NAME_LEN:
        raise NameTooLongError(
            f"Name is {len(raw)} bytes long, the maximum is {NAME_LEN}"
        )
    return raw.ljust(NAME_LEN, b"\x00")


def _to_hex(nibble: int) -> str:
    return "0123456789abcdef"[nibble & 0x0F]


def check_register_index(index: int):
    if index < 0 or index > REGISTER_INDEX_MAX:
        raise IndexOutOfRangeError(
            f"Register index must be 0-{REGISTER_INDEX_MAX}, got {index}"
        )


def encode_register(index: int, value: int) -> bytes:
    """Build the set-register payload: index digit plus two hex nibbles."""
    check_register_index(index)
    if value < 0 or value > 0xFF:
        # The device only takes a nibble pair; keep the wire format as is.
        log.warning("register value %d does not fit one byte, sending 0x%02x",
                    value, value & 0xFF)
    value &= 0xFF
    text = str(index) + _to_hex(value >> 4) + _to_hex(value)
    return text.encode("ascii")


@dataclass(frozen=True)
class DeviceState:
    """Decoded snapshot of one status frame."""

    temperature: float
    battery_voltage: float
    charging_current: float
    hv_output_current: float
    usb_output_current: float
    hv_output_voltage: float
    charger_registers: tuple
    status_flags: int
    auto_send: bool
    virtual_serial_connected: bool
    charging_port_plugged_in: bool
    warnings_enabled: bool
    charger_fault: bool
    battery_overvoltage: bool
    battery_too_cold: bool
    battery_too_hot: bool
    output_flags: int
    hv_output_on: bool
    usb_output_on: bool
    uptime: int

    @classmethod
    def from_frame(cls, frame: bytes) -> "DeviceState":
        if len(frame) != FRAME_LEN:
            raise MalformedFrameError(
                f"status frame is {len(frame)} bytes, expected {FRAME_LEN}"
            )
        flags = {
            name: parse_flag(frame, OFF_STATUS_FLAGS, mask)
            for name, mask in STATUS_FLAGS.items()
        }
        flags.update(
            (name, parse_flag(frame, OFF_OUTPUT_FLAGS, mask))
            for name, mask in OUTPUT_FLAGS.items()
        )
        return cls(
            temperature=parse_temperature(frame),
            battery_voltage=parse_milli(frame, OFF_BATTERY_VOLTAGE),
            charging_current=parse_milli(frame, OFF_CHARGING_CURRENT),
            hv_output_current=parse_milli(frame, OFF_HV_OUTPUT_CURRENT),
            usb_output_current=parse_milli(frame, OFF_USB_OUTPUT_CURRENT),
            hv_output_voltage=parse_milli(frame, OFF_HV_OUTPUT_VOLTAGE),
            charger_registers=parse_charger_registers(frame),
            status_flags=parse_byte(frame, OFF_STATUS_FLAGS),
            output_flags=parse_byte(frame, OFF_OUTPUT_FLAGS),
            uptime=parse_uptime(frame),
            **flags,
        )

    def as_dict(self) -> dict:
        d = asdict(self)
        d["charger_registers"] = list(self.charger_registers)
        return d


# ---------------------------------------------------------------------------
# PowerBank class
# ---------------------------------------------------------------------------
class PowerBank:
    """Protocol engine and command set for the power bank.

    Usage::

        with PowerBank("/dev/ttyACM0") as bank:
            print(bank.read_state())
            bank.set_usb("on")
    """

    def __init__(self, port: str = DEFAULT_PORT, baud: int = DEFAULT_BAUD,
                 timeout: float = POLL_TIMEOUT,
                 state_attempts: int = STATE_ATTEMPTS):
        if state_attempts < 1:
            raise ValueError("state_attempts must be >= 1")
        self._port = port
        self._baud = baud
        self._timeout = timeout
        self._state_attempts = state_attempts
        self._ser: Optional[serial.Serial] = None

    @property
    def port(self) -> str:
        return self._port

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    # -- Context manager -----------------------------------------------------

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -- Connection lifecycle ------------------------------------------------

    def connect(self):
        """Open the serial port (9600 8N2, raw) and flush stale bytes."""
        try:
            self._ser = serial.Serial(
                self._port, self._baud,
                bytesize=8, parity="N", stopbits=2,
                timeout=self._timeout, rtscts=False, xonxoff=False,
            )
            self._ser.reset_input_buffer()
            self._ser.reset_output_buffer()
        except serial.SerialException as e:
            self._ser = None
            raise TransportError(f"Failed opening {self._port}: {e}") from e
        log.debug("opened %s at %d baud", self._port, self._baud)

    def close(self):
        if self._ser is not None and self._ser.is_open:
            self._ser.close()
        self._ser = None

    def _channel(self) -> serial.Serial:
        if self._ser is None:
            raise TransportError("Not connected")
        return self._ser

    # -- Low-level I/O -------------------------------------------------------

    def send_command(self, code: int, payload: bytes = b""):
        """Write a command byte and its payload in one all-or-nothing write."""
        data = bytes([code]) + bytes(payload)
        try:
            written = self._channel().write(data)
        except serial.SerialException as e:
            raise TransportError(f"Problem sending command 0x{code:02x}: {e}") from e
        if written != len(data):
            raise TransportError(
                f"Short write for command 0x{code:02x}: {written} of {len(data)} bytes"
            )

    def _read_chunk(self, n: int) -> bytes:
        """Read up to n bytes, waiting at most one poll window."""
        try:
            return self._channel().read(n)
        except serial.SerialException as e:
            raise TransportError(f"Problem receiving from power bank: {e}") from e

    def _flush_input(self):
        try:
            self._channel().reset_input_buffer()
        except serial.SerialException as e:
            raise TransportError(f"Problem flushing power bank input: {e}") from e

    def read_exact(self, n: int) -> bytes:
        """Read exactly n bytes; a silent poll window is fatal."""
        buf = bytearray()
        while len(buf) < n:
            chunk = self._read_chunk(n - len(buf))
            if not chunk:
                raise DeviceSilentError(
                    f"Power bank went silent after {len(buf)} of {n} bytes"
                )
            buf += chunk
        return bytes(buf)

    # -- Status (request 0x70) -----------------------------------------------

    def fetch_state(self) -> bytes:
        """Request and return one raw 51-byte status frame.

        A timeout mid-frame abandons the whole exchange: the partial frame is
        dropped and the request byte is sent again, up to `state_attempts`
        times. Channel errors are not retried.
        """
        for attempt in range(1, self._state_attempts + 1):
            if attempt > 1:
                self._flush_input()
            self.send_command(CMD_GET_STATE)
            buf = bytearray()
            while len(buf) < FRAME_LEN:
                chunk = self._read_chunk(FRAME_LEN - len(buf))
                if not chunk:
                    break
                buf += chunk
            if len(buf) == FRAME_LEN:
                return bytes(buf)
            log.debug("status request %d/%d timed out after %d bytes",
                      attempt, self._state_attempts, len(buf))
        raise StateTimeoutError(
            f"No status frame after {self._state_attempts} attempts"
        )

    def read_state(self) -> DeviceState:
        return DeviceState.from_frame(self.fetch_state())

    def fetch_name(self) -> str:
        self.send_command(CMD_GET_NAME)
        return parse_string(self.read_exact(NAME_REPLY_LEN), NAME_LEN)

    def fetch_description(self) -> str:
        self.send_command(CMD_GET_DESCRIPTION)
        return parse_string(self.read_exact(DESCRIPTION_LEN), DESCRIPTION_LEN)

    # -- Commands ------------------------------------------------------------

    @staticmethod
    def _is_on(parameter: Optional[str]) -> bool:
        if parameter is None:
            raise MissingParameterError("Parameter missing (on/off)")
        return parameter.lower() == "on"

    def set_usb(self, parameter: Optional[str]):
        """Switch the USB output: "on" (any case) enables, anything else disables."""
        self.send_command(CMD_USB_ON if self._is_on(parameter) else CMD_USB_OFF)

    def set_hv(self, parameter: Optional[str]):
        """Switch the HV output: "on" (any case) enables, anything else disables."""
        self.send_command(CMD_HV_ON if self._is_on(parameter) else CMD_HV_OFF)

    def inc_hv(self):
        """Step the HV rail up one of its 64 levels."""
        self.send_command(CMD_HV_INC)

    def dec_hv(self):
        """Step the HV rail down one of its 64 levels."""
        self.send_command(CMD_HV_DEC)

    def set_name(self, name: Optional[str]):
        self.send_command(CMD_SET_NAME, encode_name(name))

    def set_register(self, index: int, value: Optional[int]):
        """Write one charger chip register (see the BQ24295 data sheet)."""
        if value is None:
            raise MissingParameterError("Parameter missing (register value)")
        self.send_command(CMD_SET_REGISTER, encode_register(index, value))


# ---------------------------------------------------------------------------
# UPS monitor
# ---------------------------------------------------------------------------
class PowerState(Enum):
    POWERED = "powered"
    SUSPECT = "suspect"
    SHUTDOWN_TRIGGERED = "shutdown-triggered"


def run_shutdown_command(command: str):
    """Run the shutdown command through the shell; its status is only logged."""
    log.warning("running shutdown command: %s", command)
    result = subprocess.run(command, shell=True, check=False)
    log.info("shutdown command exited with %s", result.returncode)


class UPSMonitor:
    """Power the host off when external power stays away for a grace period.

    Each cycle polls the bank. If the charging port is unplugged the monitor
    waits `power_off_after` seconds without looking, polls once more, and runs
    the shutdown action if power is still absent. Polling resumes afterwards
    either way; the shutdown action is expected to end the process.
    """

    def __init__(self, bank: PowerBank,
                 power_off_after: float = DEFAULT_POWER_OFF_AFTER,
                 shutdown_command: str = DEFAULT_SHUTDOWN_COMMAND,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 action: Optional[Callable[[], None]] = None):
        if power_off_after < 0:
            raise ValueError("power_off_after must be >= 0")
        if poll_interval < 0:
            raise ValueError("poll_interval must be >= 0")
        self._bank = bank
        self._power_off_after = float(power_off_after)
        self._poll_interval = float(poll_interval)
        self._shutdown_command = shutdown_command
        self._action = action or (lambda: run_shutdown_command(self._shutdown_command))
        self._stop = threading.Event()
        self.state = PowerState.POWERED

    def _transition(self, new_state: PowerState):
        if new_state is not self.state:
            log.info("power state %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def step(self) -> PowerState:
        """Run one poll cycle and return the state it ended in."""
        if self._bank.read_state().charging_port_plugged_in:
            self._transition(PowerState.POWERED)
            return self.state

        self._transition(PowerState.SUSPECT)
        log.warning("external power lost, re-checking in %.0f s",
                    self._power_off_after)
        self._stop.wait(self._power_off_after)
        if self._stop.is_set():
            return self.state

        if self._bank.read_state().charging_port_plugged_in:
            log.warning("external power is back")
            self._transition(PowerState.POWERED)
        else:
            self._transition(PowerState.SHUTDOWN_TRIGGERED)
            self._action()
        return self.state

    def run(self):
        """Poll until stop() is called."""
        self._stop.clear()
        while not self._stop.is_set():
            self.step()
            self._stop.wait(self._poll_interval)

    def stop(self):
        self._stop.set()


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------
_FLAG_MESSAGES = [
    ("battery_overvoltage", "Battery overvoltage!!"),
    ("auto_send", "Statemachine is in auto send mode"),
    ("virtual_serial_connected", "Virtual serial port connected"),
    ("charging_port_plugged_in", "Charging port plugged in"),
    ("warnings_enabled", "Warnings enabled"),
    ("charger_fault", "Charger fault"),
    ("battery_too_cold", "Battery too cold!"),
    ("battery_too_hot", "Battery too hot!!!"),
    ("hv_output_on", "HV output on"),
    ("usb_output_on", "USB output on"),
]


def format_dump(state: DeviceState, name: str, description: str = "") -> str:
    lines = [
        f"name:\t{name}",
        f"description:\t{description}",
        f"temperature:\t{state.temperature:f} degrees celsius",
        f"battery voltage:\t{state.battery_voltage:f} V",
        f"charging current:\t{state.charging_current:f} A",
        f"HV output current:\t{state.hv_output_current:f} A",
        f"HV output voltage:\t{state.hv_output_voltage:f} V",
        f"USB output current:\t{state.usb_output_current:f} A",
        f"Battery uptime:\t{state.uptime} seconds",
        "BQ24295 registers:\t" + " ".join(f"{r:02x}" for r in state.charger_registers),
    ]
    lines += [msg for attr, msg in _FLAG_MESSAGES if getattr(state, attr)]
    return "\n".join(lines)


_JSON_VALUES = [
    ("battery_voltage", "battery-voltage"),
    ("charging_current", "charging-current"),
    ("hv_output_current", "HV-output-current"),
    ("hv_output_voltage", "HV-output-voltage"),
    ("usb_output_current", "USB-output-current"),
    ("uptime", "battery-uptime"),
]

# Keys as the C powerbankcontrol printed them, misspelling included
_JSON_FLAGS = [
    ("battery_overvoltage", "battery-overvoltage"),
    ("auto_send", "auto-send-statemachine"),
    ("virtual_serial_connected", "virtual-serial-port-connected"),
    ("charging_port_plugged_in", "charging-port-pluggend-in"),
    ("warnings_enabled", "warnings-enabled"),
    ("charger_fault", "charger-fault"),
    ("battery_too_cold", "battery-too-cold"),
    ("battery_too_hot", "battery-too-hot"),
    ("hv_output_on", "hv-output"),
    ("usb_output_on", "usb-output"),
]


def dump_dict(state: DeviceState, name: str, description: str) -> dict:
    """JSON dump keyed like the C tool's `-j` output, plus temperature."""
    d = {"name": name, "descr": description}
    d.update((key, getattr(state, attr)) for attr, key in _JSON_VALUES)
    d.update((f"bq24295-reg-{i}", reg) for i, reg in enumerate(state.charger_registers))
    d.update((key, getattr(state, attr)) for attr, key in _JSON_FLAGS)
    d["temperature"] = state.temperature
    return d


@dataclass(frozen=True)
class GraphConfig:
    """Terminal geometry and refresh rate for graph mode."""

    width: int = 80
    height: int = 24
    interval: float = 0.2

    @property
    def voltage_scale(self) -> float:
        return (self.width - 1) / 24.0  # 24 V full width

    @property
    def current_scale(self) -> float:
        return (self.width - 1) / 3.0  # 3 A full width

    @property
    def rows_per_header(self) -> int:
        return max(1, self.height - 3)


GRAPH_LEGEND = (
    "| battery voltage, * charging current, + hv output current,\n"
    "- hv output voltage, # usb output current"
)


def _plot(line: list, x: float, mark: str):
    """Place mark at column x, clamped so the row never changes width."""
    mark = mark[:len(line)]
    col = min(max(int(x), 0), len(line) - len(mark))
    line[col:col + len(mark)] = list(mark)


def _blank(config: GraphConfig) -> list:
    return [" "] * max(1, config.width - 1)


def graph_scale_row(config: GraphConfig) -> str:
    line = _blank(config)
    for amps in (1, 2):
        _plot(line, config.current_scale * amps, f"C{amps}")
    for volts in (3, 5, 10, 15, 20):
        _plot(line, config.voltage_scale * volts, f"V{volts}")
    return "".join(line)


def graph_row(state: DeviceState, config: GraphConfig) -> str:
    line = _blank(config)
    _plot(line, state.battery_voltage * config.voltage_scale, "|")
    _plot(line, state.charging_current * config.current_scale, "*")
    _plot(line, state.hv_output_current * config.current_scale, "+")
    _plot(line, state.hv_output_voltage * config.voltage_scale, "-")
    _plot(line, state.usb_output_current * config.current_scale, "#")
    return "".join(line)


def run_graph(bank: PowerBank, config: GraphConfig, out: Callable[[str], None] = print,
              rows: Optional[int] = None):
    """Plot one row per status frame; repeat the legend every screenful."""
    count = 0
    while rows is None or count < rows:
        if count % config.rows_per_header == 0:
            out(GRAPH_LEGEND)
            out(graph_scale_row(config))
        out(graph_row(bank.read_state(), config))
        count += 1
        time.sleep(config.interval)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def _cmd_dump(bank: PowerBank, args):
    import json as _json

    state = bank.read_state()
    name = bank.fetch_name()
    description = bank.fetch_description()
    if args.json:
        print(_json.dumps(dump_dict(state, name, description), indent=2))
    else:
        print(format_dump(state, name, description))


def _cmd_graph(bank: PowerBank, args):
    import shutil

    size = shutil.get_terminal_size()
    config = GraphConfig(width=size.columns, height=size.lines,
                         interval=args.interval / 1000.0)
    run_graph(bank, config)


def _cmd_ups(bank: PowerBank, args):
    UPSMonitor(bank, power_off_after=args.power_off_after,
               shutdown_command=args.shutdown_command).run()


def _cmd_set_name(bank: PowerBank, args):
    bank.set_name(args.name)
    print(f"Name: {args.name or ''}")


def _cmd_set_register(bank: PowerBank, args):
    bank.set_register(args.index, args.value)
    print(f"Register {args.index}: 0x{args.value & 0xFF:02x}")


def _cmd_set_usb(bank: PowerBank, args):
    bank.set_usb(args.state)
    print("USB output ON" if args.state.lower() == "on" else "USB output OFF")


def _cmd_set_hv(bank: PowerBank, args):
    bank.set_hv(args.state)
    print("HV output ON" if args.state.lower() == "on" else "HV output OFF")


def _cmd_inc_hv(bank: PowerBank, args):
    bank.inc_hv()
    print("HV rail stepped up")


def _cmd_dec_hv(bank: PowerBank, args):
    bank.dec_hv()
    print("HV rail stepped down")


def _check_switch(args):
    if args.state is None:
        raise MissingParameterError("Parameter missing (on/off)")


def _check_set_name(args):
    encode_name(args.name)


def _check_set_register(args):
    check_register_index(args.index)
    if args.value is None:
        raise MissingParameterError("Parameter missing (register value)")


# Run before the port is opened
CHECKS = {
    "set-name": _check_set_name,
    "set-register": _check_set_register,
    "set-usb": _check_switch,
    "set-hv": _check_switch,
}

COMMANDS = {
    "dump": _cmd_dump,
    "graph": _cmd_graph,
    "ups": _cmd_ups,
    "set-name": _cmd_set_name,
    "set-register": _cmd_set_register,
    "set-usb": _cmd_set_usb,
    "set-hv": _cmd_set_hv,
    "inc-hv": _cmd_inc_hv,
    "dec-hv": _cmd_dec_hv,
}


def _build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="powerbankcontrol",
        description="Muxtronics PowerBank command-line interface",
    )
    parser.add_argument(
        "-p", "--port",
        default=DEFAULT_PORT,
        help="(USB-)serial device of the power bank (default: %(default)s)",
    )
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="log protocol details to stderr")
    parser.add_argument("--version", action="version",
                        version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    # -- dump ----------------------------------------------------------------
    p = sub.add_parser("dump", help="dump configuration & state")
    p.add_argument("-j", "--json", action="store_true", help="JSON output")

    # -- graph ---------------------------------------------------------------
    p = sub.add_parser("graph", help="live terminal graph of all measurements")
    p.add_argument("-i", "--interval", type=int, default=200,
                   help="refresh interval in ms (default: %(default)s)")

    # -- ups -----------------------------------------------------------------
    p = sub.add_parser("ups", help="shut the system down after power loss")
    p.add_argument("-D", "--power-off-after", type=int,
                   default=DEFAULT_POWER_OFF_AFTER,
                   help="seconds without power before shutdown (default: %(default)s)")
    p.add_argument("-s", "--shutdown-command", default=DEFAULT_SHUTDOWN_COMMAND,
                   help="command that powers the system down (default: %(default)s)")

    # -- configuration -------------------------------------------------------
    p = sub.add_parser("set-name", help="configure the name of the bank")
    p.add_argument("name", nargs="?")

    p = sub.add_parser("set-register", help="write a BQ24295 charger register")
    p.add_argument("index", type=int, help="register index 0-9")
    p.add_argument("value", type=int, nargs="?")

    p = sub.add_parser("set-usb", help="switch USB power (on/off)")
    p.add_argument("state", nargs="?")

    p = sub.add_parser("set-hv", help="switch HV power (on/off)")
    p.add_argument("state", nargs="?")

    sub.add_parser("inc-hv", help="increase HV voltage (one of 64 steps)")
    sub.add_parser("dec-hv", help="decrease HV voltage (one of 64 steps)")

    return parser


def _cli(argv=None):
    import sys

    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    bank = PowerBank(args.port)
    try:
        check = CHECKS.get(args.command)
        if check is not None:
            check(args)
        bank.connect()
        COMMANDS[args.command](bank, args)
    except (PowerBankError, ValueError, IOError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass
    finally:
        bank.close()


if __name__ == "__main__":
    _cli()
