"""Tests for the register decode engine and its default SGC-120 rule table."""

import pytest

from pysgc_bridge.blocks import (
    DEFAULT_RULES,
    BitFlag,
    BlockDecoder,
    BlockRule,
    decode,
    get_default_decoder,
    round_tenths,
    s16,
    scale_tenths,
    u32,
)
from pysgc_bridge.types import UNKNOWN_BLOCK, WordOrder


# ============================================================================
# Primitives
# ============================================================================


def test_s16() -> None:
    assert s16([0x7FFF], 0) == 32767
    assert s16([0x8000], 0) == -32768
    assert s16([0xFFEC], 0) == -20


def test_round_tenths_half_up() -> None:
    assert round_tenths(0.25) == 0.3
    assert round_tenths(0.35) == 0.4
    assert round_tenths(-0.25) == -0.3


def test_scale_tenths() -> None:
    assert scale_tenths(500) == 50.0
    assert scale_tenths(5) == 0.5
    assert scale_tenths(-10) == -1.0


def test_u32_word_order() -> None:
    regs = [0x0001, 0x0002]
    assert u32(regs, 0, WordOrder.HIGH_FIRST) == 0x00010002
    assert u32(regs, 0, WordOrder.LOW_FIRST) == 0x00020001


def test_bit_flag_range() -> None:
    assert BitFlag("x", 15).read(0x8000) is True
    with pytest.raises(ValueError):
        BitFlag("x", 16)


# ============================================================================
# Default rule table
# ============================================================================


def test_gen_volt_freq() -> None:
    block = decode(3, 1, [230, 231, 229, 400, 401, 399, 500, 501, 499])
    assert block.block == "GEN_VOLT_FREQ"
    assert block.provisional is False
    assert block.fields["voltageL1"] == 230
    assert block.fields["voltageL3"] == 229
    assert block.fields["voltageL31"] == 399
    assert block.fields["frequency"] == 50.0
    assert block.fields["frequencyL2"] == 50.1
    assert block.fields["frequencyL3"] == 49.9
    assert block.fields["avgVoltage"] == 230


def test_gen_volt_freq_average_rounds_half_up() -> None:
    block = decode(3, 1, [230, 231, 231, 0, 0, 0, 0, 0, 0])
    assert block.fields["avgVoltage"] == 231


def test_mains_volt_freq() -> None:
    block = decode(3, 14, [220, 221, 222, 380, 381, 382, 600, 600, 600])
    assert block.block == "MAINS_VOLT_FREQ"
    assert block.fields["mainsVoltageL2"] == 221
    assert block.fields["mainsFrequency"] == 60.0
    assert block.provisional is True


def test_run_hours_high_first() -> None:
    block = decode(3, 60, [0x0001, 0x0002, 30, 0, 150])
    assert block.block == "RUN_HOURS"
    assert dict(block.fields) == {"runHours": 65538, "runMinutes": 30, "totalStarts": 150}


def test_run_hours_word_order_override() -> None:
    block = decode(3, 60, [0x0001, 0x0002, 30, 0, 150], word_order=WordOrder.LOW_FIRST)
    assert block.fields["runHours"] == 0x00020001
    assert block.fields["totalStarts"] == 150 << 16


def test_current() -> None:
    block = decode(3, 23, [123, 0, 1000])
    assert dict(block.fields) == {"currentL1": 12.3, "currentL2": 0.0, "currentL3": 100.0}


def test_active_power_signed() -> None:
    block = decode(3, 29, [100, 0xFFF6, 5])
    assert block.fields["activePowerL1"] == 10.0
    assert block.fields["activePowerL2"] == -1.0
    assert block.fields["activePowerL3"] == 0.5
    assert block.fields["activePower"] == 9.5


def test_engine() -> None:
    block = decode(3, 51, [45, 0xFFEC, 80, 1234, 138, 245, 1500, 12, 3])
    assert block.block == "ENGINE"
    assert block.fields["oilPressure"] == 4.5
    assert block.fields["engineTemp"] == -2.0
    assert block.fields["fuelLevel"] == 80
    assert block.fields["fuelLiters"] == 123.4
    assert block.fields["chargeAltVoltage"] == 13.8
    assert block.fields["batteryVoltage"] == 24.5
    assert block.fields["rpm"] == 1500
    assert block.fields["starts"] == 12
    assert block.fields["trips"] == 3
    assert block.fields["running"] is True


def test_engine_not_running_at_threshold() -> None:
    block = decode(3, 51, [0, 0, 0, 0, 0, 0, 100, 0, 0])
    assert block.fields["running"] is False


def test_alarm() -> None:
    assert dict(decode(3, 66, [0]).fields) == {"alarmCode": 0, "alarmActive": False}
    assert dict(decode(3, 66, [7]).fields) == {"alarmCode": 7, "alarmActive": True}


def test_operating_mode() -> None:
    block = decode(3, 78, [0x0004])
    assert dict(block.fields) == {"operatingModeCode": 4, "manualMode": False, "autoMode": True}


def test_status_blocks() -> None:
    mains = decode(3, 11000, [0x0203])
    assert dict(mains.fields) == {"mainsStateCode": 2, "mainsBreakerClosed": True, "mainsHealthy": True}
    gen = decode(3, 11001, [0x0102])
    assert dict(gen.fields) == {"genStateCode": 1, "genBreakerClosed": False, "genAvailable": True}


def test_mains_504() -> None:
    block = decode(3, 504, [219, 220, 221, 599])
    assert block.block == "MAINS_504"
    assert block.fields["mainsFrequency"] == 59.9


def test_input_registers_decode_like_holding() -> None:
    assert decode(4, 66, [1]).block == "ALARM"


# ============================================================================
# Unknown blocks and decoder behavior
# ============================================================================


def test_unmapped_address_is_unknown() -> None:
    block = decode(3, 999, [1, 2])
    assert block.is_unknown
    assert block.block == UNKNOWN_BLOCK
    assert block.registers == (1, 2)
    assert dict(block.fields) == {}


def test_too_few_registers_is_unknown() -> None:
    block = decode(3, 1, [230] * 5)
    assert block.is_unknown
    assert len(block.registers) == 5


def test_write_function_never_decodes() -> None:
    assert decode(6, 66, [1]).is_unknown


def test_extra_registers_still_match() -> None:
    assert decode(3, 66, [0, 0, 0]).block == "ALARM"


def test_decode_is_idempotent() -> None:
    regs = [45, 0xFFEC, 80, 1234, 138, 245, 1500, 12, 3]
    assert decode(3, 51, regs).to_dict() == decode(3, 51, regs).to_dict()


def test_decoded_fields_are_read_only() -> None:
    block = decode(3, 66, [1])
    with pytest.raises(TypeError):
        block.fields["alarmCode"] = 0  # type: ignore[index]


def test_provisional_rules_marked() -> None:
    provisional = {r.block for r in DEFAULT_RULES if r.provisional}
    assert "RUN_HOURS" in provisional
    assert "MAINS_STATUS" in provisional
    assert "ENGINE" not in provisional
    assert decode(3, 60, [0] * 5).to_dict()["provisional"] is True
    assert "provisional" not in decode(3, 51, [0] * 9).to_dict()


def test_default_rules_have_unique_addresses() -> None:
    addresses = [r.address for r in get_default_decoder().rules]
    assert len(addresses) == len(set(addresses))


def test_duplicate_address_raises() -> None:
    extractor = lambda regs, order: {"x": regs[0]}  # noqa: E731
    with pytest.raises(ValueError, match="Ambiguous decode rules at address 29"):
        BlockDecoder([BlockRule("A", 29, 3, extractor), BlockRule("B", 29, 9, extractor)])


def test_with_rules_returns_new_decoder() -> None:
    base = get_default_decoder()
    extended = base.with_rules(BlockRule("SPARE", 700, 1, lambda regs, order: {"spare": regs[0]}))
    assert dict(extended.decode(3, 700, [42]).fields) == {"spare": 42}
    assert base.decode(3, 700, [42]).is_unknown


def test_with_rules_rejects_overlap() -> None:
    with pytest.raises(ValueError):
        get_default_decoder().with_rules(BlockRule("MAINS_29", 29, 9, lambda regs, order: {}))


def test_block_rule_validation() -> None:
    with pytest.raises(ValueError):
        BlockRule("BAD", 0, 0, lambda regs, order: {})
