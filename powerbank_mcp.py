#!/usr/bin/env python3
"""
Muxtronics PowerBank MCP Server

Exposes the power bank as MCP tools for LLM-driven monitoring and control.

Requires: Python 3.10+, fastmcp (`pip install fastmcp`), pyserial

Run:
    python powerbank_mcp.py                   # stdio transport
"""

import json
from typing import Optional

from fastmcp import FastMCP

from powerbank import PowerBank

mcp = FastMCP(
    "Muxtronics PowerBank",
    instructions=(
        "Monitors and controls a Muxtronics power bank over its USB serial "
        "port. Always connect() first, then use other tools. read_state() "
        "returns battery voltage, currents, temperature, uptime, charger "
        "registers and status flags. Output switches and HV rail steps are "
        "fire-and-forget: read_state() afterwards to confirm."
    ),
)

# Global device handle — one connection at a time
_bank: Optional[PowerBank] = None


def _require_connection() -> PowerBank:
    if _bank is None:
        raise RuntimeError("Not connected. Call connect() first.")
    return _bank


def _fmt(value: float, decimals: int = 3) -> float:
    """Round a float for clean JSON output."""
    return round(value, decimals)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def connect(port: str) -> str:
    """Connect to the power bank.

    Args:
        port: Serial port path, e.g. "/dev/ttyACM0" (Linux) or "COM3" (Windows).
    """
    global _bank
    if _bank is not None:
        return json.dumps({"error": "Already connected. disconnect() first."})

    bank = PowerBank(port)
    bank.connect()
    _bank = bank
    return json.dumps({"status": "connected", "port": port})


@mcp.tool()
def disconnect() -> str:
    """Close the serial port. Outputs are left as they are."""
    global _bank
    if _bank is None:
        return json.dumps({"status": "already disconnected"})

    _bank.close()
    _bank = None
    return json.dumps({"status": "disconnected"})


@mcp.tool()
def read_state() -> str:
    """Read one status frame from the power bank.

    Returns temperature (C), battery voltage (V), charging/HV/USB currents (A),
    HV output voltage (V), uptime (s), the 10 BQ24295 charger registers and
    every status flag (charging port plugged in, charger fault, outputs on...).
    """
    bank = _require_connection()
    state = bank.read_state().as_dict()

    for key in ["battery_voltage", "hv_output_voltage", "charging_current",
                "hv_output_current", "usb_output_current"]:
        state[key] = _fmt(state[key])
    state["temperature"] = _fmt(state["temperature"], 2)

    return json.dumps(state)


@mcp.tool()
def read_info() -> str:
    """Read the device name and description together with the current state."""
    bank = _require_connection()
    info = {"name": bank.fetch_name(), "description": bank.fetch_description()}
    info.update(bank.read_state().as_dict())
    return json.dumps(info)


@mcp.tool()
def set_usb(on: bool) -> str:
    """Switch the USB output on or off.

    Args:
        on: True to enable the USB output, False to disable it.
    """
    bank = _require_connection()
    bank.set_usb("on" if on else "off")
    return json.dumps({"status": "ok", "usb_output": "on" if on else "off"})


@mcp.tool()
def set_hv(on: bool) -> str:
    """Switch the high-voltage output on or off.

    Args:
        on: True to enable the HV output, False to disable it.
    """
    bank = _require_connection()
    bank.set_hv("on" if on else "off")
    return json.dumps({"status": "ok", "hv_output": "on" if on else "off"})


@mcp.tool()
def inc_hv() -> str:
    """Step the HV rail voltage up by one of its 64 levels."""
    bank = _require_connection()
    bank.inc_hv()
    return json.dumps({"status": "ok", "hv_rail": "up"})


@mcp.tool()
def dec_hv() -> str:
    """Step the HV rail voltage down by one of its 64 levels."""
    bank = _require_connection()
    bank.dec_hv()
    return json.dumps({"status": "ok", "hv_rail": "down"})


@mcp.tool()
def set_name(name: str) -> str:
    """Set the device name (at most 16 bytes once UTF-8 encoded).

    Args:
        name: New name. An empty string clears it.
    """
    bank = _require_connection()
    bank.set_name(name)
    return json.dumps({"status": "ok", "name": name})


@mcp.tool()
def set_register(index: int, value: int) -> str:
    """Write one BQ24295 charger chip register.

    See http://www.ti.com/lit/ds/symlink/bq24295.pdf for the register map.
    Only the low byte of value is sent.

    Args:
        index: Register index, 0-9.
        value: Register value, 0-255.
    """
    bank = _require_connection()
    bank.set_register(index, value)
    return json.dumps({"status": "ok", "register": index, "value": value & 0xFF})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main():
    mcp.run()


if __name__ == "__main__":
    main()
