"""Shared fixtures for PowerBank tests."""

import struct
from unittest.mock import MagicMock, patch

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from powerbank import PowerBank, FRAME_LEN


def build_frame(temperature=0, battery_mv=0, charging_ma=0, hv_current_ma=0,
                usb_current_ma=0, hv_mv=0, registers=bytes(10), flags=0,
                outputs=0, uptime=0):
    """Build a 51-byte status frame from raw wire values."""
    d = bytearray(FRAME_LEN)
    struct.pack_into("<hhhhhh", d, 0, temperature, battery_mv, charging_ma,
                     hv_current_ma, usb_current_ma, hv_mv)
    d[0x18:0x22] = registers
    d[0x22] = flags
    d[0x23] = outputs
    struct.pack_into("<I", d, 0x24, uptime)
    return bytes(d)


@pytest.fixture
def fake_frame():
    """A frame with known values.

    Values:
        temperature=25.5 C, battery=3.7 V, charging=0.5 A,
        hv_current=1.25 A, usb_current=-0.1 A, hv_voltage=12.0 V,
        registers=00..09, flags=0x30 (plugged in + warnings),
        outputs=0x80 (HV on), uptime=0x01020304 s
    """
    return build_frame(
        temperature=2550, battery_mv=3700, charging_ma=500,
        hv_current_ma=1250, usb_current_ma=-100, hv_mv=12000,
        registers=bytes(range(10)), flags=0x30, outputs=0x80,
        uptime=0x01020304,
    )


@pytest.fixture
def unplugged_frame():
    return build_frame(battery_mv=3700, flags=0x00)


@pytest.fixture
def plugged_frame():
    return build_frame(battery_mv=4100, flags=0x20)


@pytest.fixture
def mock_bank():
    """A PowerBank instance with serial fully mocked out.

    - _ser is a MagicMock whose write() accepts every byte
    - read() returns b"" (silent) unless a test sets a side_effect
    """
    with patch("powerbank.serial.Serial"):
        bank = PowerBank("/dev/fake")

    bank._ser = MagicMock()
    bank._ser.is_open = True
    bank._ser.write = MagicMock(side_effect=lambda data: len(data))
    bank._ser.read = MagicMock(return_value=b"")
    return bank


def written(bank):
    """All bytes written to the mocked port, one entry per write call."""
    return [c.args[0] for c in bank._ser.write.call_args_list]
