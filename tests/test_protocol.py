"""Frame-level decoding and encoding tests -- no mocking needed."""

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import build_frame
from powerbank import (
    DeviceState,
    MalformedFrameError,
    NameTooLongError,
    IndexOutOfRangeError,
    STATUS_FLAGS,
    OUTPUT_FLAGS,
    FRAME_LEN,
    encode_name,
    encode_register,
    parse_charger_registers,
    parse_flag,
    parse_int16,
    parse_milli,
    parse_string,
    parse_temperature,
    parse_uint32,
    parse_uptime,
)


# ---------------------------------------------------------------------------
# Field accessors
# ---------------------------------------------------------------------------

class TestAccessors:

    def test_int16_little_endian(self):
        assert parse_int16(bytes([0xE8, 0x03]), 0) == 1000

    def test_int16_negative(self):
        assert parse_int16(bytes([0x9C, 0xFF]), 0) == -100

    def test_milli(self):
        assert parse_milli(bytes([0x00, 0x00, 0xE8, 0x03]), 2) == 1.0

    def test_temperature_centidegrees(self):
        assert parse_temperature(bytes([0xF6, 0x09])) == pytest.approx(25.5)

    def test_uint32_low_byte_first(self):
        assert parse_uint32(bytes([0x04, 0x03, 0x02, 0x01]), 0) == 0x01020304

    def test_uptime_full_range(self):
        frame = build_frame(uptime=0xFFFFFFFF)
        assert parse_uptime(frame) == 0xFFFFFFFF

    def test_charger_registers_in_order(self):
        frame = build_frame(registers=bytes([9, 8, 7, 6, 5, 4, 3, 2, 1, 0]))
        assert parse_charger_registers(frame) == (9, 8, 7, 6, 5, 4, 3, 2, 1, 0)

    def test_flag(self):
        assert parse_flag(bytes([0x20]), 0, 0x20) is True
        assert parse_flag(bytes([0x20]), 0, 0x10) is False


# ---------------------------------------------------------------------------
# Short frames
# ---------------------------------------------------------------------------

class TestShortFrames:

    def test_int16_past_end(self):
        with pytest.raises(MalformedFrameError):
            parse_int16(bytes([0x01]), 0)

    def test_milli_past_end(self):
        with pytest.raises(MalformedFrameError):
            parse_milli(bytes(11), 0x0A)

    def test_uptime_truncated(self):
        with pytest.raises(MalformedFrameError):
            parse_uptime(bytes(0x27))

    def test_registers_truncated(self):
        with pytest.raises(MalformedFrameError):
            parse_charger_registers(bytes(0x21))

    def test_flag_past_end(self):
        with pytest.raises(MalformedFrameError):
            parse_flag(bytes(0x22), 0x22, 0x20)

    def test_empty_frame(self):
        with pytest.raises(MalformedFrameError):
            parse_temperature(b"")

    def test_from_frame_one_byte_short(self):
        with pytest.raises(MalformedFrameError):
            DeviceState.from_frame(bytes(FRAME_LEN - 1))

    def test_from_frame_too_long(self):
        with pytest.raises(MalformedFrameError):
            DeviceState.from_frame(bytes(FRAME_LEN + 9))

    def test_malformed_is_value_error(self):
        with pytest.raises(ValueError):
            DeviceState.from_frame(b"\x00")


# ---------------------------------------------------------------------------
# DeviceState
# ---------------------------------------------------------------------------

class TestDeviceState:

    def test_known_values(self, fake_frame):
        state = DeviceState.from_frame(fake_frame)
        assert state.temperature == pytest.approx(25.5)
        assert state.battery_voltage == pytest.approx(3.7)
        assert state.charging_current == pytest.approx(0.5)
        assert state.hv_output_current == pytest.approx(1.25)
        assert state.usb_output_current == pytest.approx(-0.1)
        assert state.hv_output_voltage == pytest.approx(12.0)
        assert state.charger_registers == tuple(range(10))
        assert state.uptime == 0x01020304
        assert state.charging_port_plugged_in is True
        assert state.warnings_enabled is True
        assert state.charger_fault is False
        assert state.hv_output_on is True
        assert state.usb_output_on is False

    def test_scenario_one_volt_plugged_in(self):
        frame = bytearray(FRAME_LEN)
        frame[0:12] = bytes([0x64, 0x00, 0xE8, 0x03, 0x00, 0x00,
                             0x00, 0x00, 0x00, 0x00, 0xE8, 0x03])
        frame[0x22] = 0x20
        state = DeviceState.from_frame(bytes(frame))
        assert state.battery_voltage == 1.0
        assert state.charging_port_plugged_in is True
        assert state.charging_current == 0
        assert state.hv_output_current == 0
        assert state.usb_output_current == 0

    def test_deterministic(self, fake_frame):
        assert DeviceState.from_frame(fake_frame) == DeviceState.from_frame(fake_frame)

    def test_all_byte_values_decode(self):
        for value in range(256):
            DeviceState.from_frame(bytes([value]) * FRAME_LEN)

    def test_immutable(self, fake_frame):
        state = DeviceState.from_frame(fake_frame)
        with pytest.raises(Exception):
            state.battery_voltage = 0.0

    def test_as_dict_exposes_every_field(self, fake_frame):
        d = DeviceState.from_frame(fake_frame).as_dict()
        for name in list(STATUS_FLAGS) + list(OUTPUT_FLAGS):
            assert name in d
        assert d["charger_registers"] == list(range(10))
        assert d["uptime"] == 0x01020304


class TestFlagIndependence:

    @pytest.mark.parametrize("bit", range(8))
    def test_status_bit_changes_one_flag(self, bit):
        base = DeviceState.from_frame(build_frame(flags=0x00)).as_dict()
        flipped = DeviceState.from_frame(build_frame(flags=1 << bit)).as_dict()
        changed = [n for n in STATUS_FLAGS if base[n] != flipped[n]]
        assert changed == [n for n, m in STATUS_FLAGS.items() if m == 1 << bit]

    def test_status_bit_order(self):
        names = list(STATUS_FLAGS)
        for i, name in enumerate(names):
            state = DeviceState.from_frame(build_frame(flags=0x80 >> i))
            assert getattr(state, name) is True
            assert sum(getattr(state, n) for n in names) == 1

    def test_output_flags(self):
        hv = DeviceState.from_frame(build_frame(outputs=0x80))
        usb = DeviceState.from_frame(build_frame(outputs=0x40))
        assert (hv.hv_output_on, hv.usb_output_on) == (True, False)
        assert (usb.hv_output_on, usb.usb_output_on) == (False, True)

    def test_output_flags_ignore_status_byte(self):
        state = DeviceState.from_frame(build_frame(flags=0xFF, outputs=0x00))
        assert state.hv_output_on is False
        assert state.usb_output_on is False


# ---------------------------------------------------------------------------
# Names and strings
# ---------------------------------------------------------------------------

class TestNames:

    def test_encode_pads_to_16(self):
        assert encode_name("bank") == b"bank" + bytes(12)

    def test_encode_exactly_16(self):
        assert encode_name("A" * 16) == b"A" * 16

    def test_encode_too_long(self):
        with pytest.raises(NameTooLongError):
            encode_name("A" * 17)

    def test_encode_multibyte_counts_bytes(self):
        assert encode_name("café-küche") == "café-küche".encode("utf-8") + bytes(4)

    def test_encode_multibyte_too_long(self):
        with pytest.raises(NameTooLongError):
            encode_name("ü" * 9)  # 18 bytes

    def test_multibyte_round_trip(self):
        reply = encode_name("Süd-Bank") + b"\x0d\x0a"
        assert parse_string(reply, 16) == "Süd-Bank"

    def test_encode_none_clears(self):
        assert encode_name(None) == bytes(16)

    def test_name_reply_round_trip(self):
        # 18-byte reply: 16 name bytes plus two trailing protocol bytes
        reply = encode_name("garage-ups") + b"\x0d\x0a"
        assert parse_string(reply, 16) == "garage-ups"

    def test_description_full_width(self):
        text = b"PowerBank fw 1.4 muxtron"
        assert parse_string(text, 24) == text.decode()

    def test_string_reply_too_short(self):
        with pytest.raises(MalformedFrameError):
            parse_string(b"abc", 16)


# ---------------------------------------------------------------------------
# Register payload
# ---------------------------------------------------------------------------

class TestRegisterPayload:

    def test_index_9_value_255(self):
        assert encode_register(9, 255) == b"9ff"

    def test_lowercase_hex(self):
        assert encode_register(0, 0xA5) == b"0a5"

    def test_index_10_rejected(self):
        with pytest.raises(IndexOutOfRangeError):
            encode_register(10, 0)

    def test_negative_index_rejected(self):
        with pytest.raises(IndexOutOfRangeError):
            encode_register(-1, 0)

    def test_value_masked_to_one_byte(self, caplog):
        assert encode_register(3, 0x1AB) == b"3ab"
        assert "does not fit one byte" in caplog.text
