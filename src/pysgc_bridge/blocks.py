"""
Register decode engine: map (function, start address, registers) to a typed DecodedBlock.

Rules live in an explicit table keyed by (start address, minimum register count).
The table is checked for ambiguity when a decoder is built; a response whose
address has no rule, or too few registers for it, decodes to an UNKNOWN block.

The default table follows the SGC-120 register map used by the fleet. Rules
marked provisional were derived from observed traffic rather than vendor
documentation (32-bit word order, status/mode bit meanings, alternate maps).
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Sequence

from .types import UNKNOWN_BLOCK, DecodedBlock, FieldValue, FunctionCode, WordOrder

logger = logging.getLogger(__name__)

READ_FUNCTIONS = frozenset({FunctionCode.READ_HOLDING_REGISTERS, FunctionCode.READ_INPUT_REGISTERS})

Extractor = Callable[[Sequence[int], WordOrder], dict[str, FieldValue]]

RUNNING_RPM_THRESHOLD = 100


# ============================================================================
# Field extraction primitives
# ============================================================================


def u16(regs: Sequence[int], i: int) -> int:
    return regs[i] & 0xFFFF


def s16(regs: Sequence[int], i: int) -> int:
    """Two's-complement reinterpretation of one register."""
    v = u16(regs, i)
    return v - 0x10000 if v & 0x8000 else v


def round_tenths(value: float | int | Decimal) -> float:
    """Round to one decimal place, half-up (not banker's rounding)."""
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def scale_tenths(raw: int) -> float:
    """Raw integer expressed in tenths -> float with one decimal."""
    return round_tenths(Decimal(raw) / 10)


def u32(regs: Sequence[int], i: int, word_order: WordOrder) -> int:
    """Combine regs[i] and regs[i + 1] as (high << 16) | low."""
    first, second = u16(regs, i), u16(regs, i + 1)
    if word_order == WordOrder.HIGH_FIRST:
        high, low = first, second
    else:
        high, low = second, first
    return (high << 16) | low


def high_byte(regs: Sequence[int], i: int) -> int:
    return (u16(regs, i) >> 8) & 0xFF


def low_byte(regs: Sequence[int], i: int) -> int:
    return u16(regs, i) & 0xFF


@dataclass(frozen=True)
class BitFlag:
    """A named boolean at a bit position (0 = LSB) of a 16-bit register."""

    name: str
    bit: int

    def __post_init__(self) -> None:
        if not 0 <= self.bit <= 15:
            raise ValueError(f"bit must be 0-15, got {self.bit}")

    def read(self, value: int) -> bool:
        return bool((value >> self.bit) & 1)


def bit_flags(value: int, flags: Iterable[BitFlag]) -> dict[str, bool]:
    return {f.name: f.read(value) for f in flags}


# ============================================================================
# Rule table
# ============================================================================


@dataclass(frozen=True)
class BlockRule:
    """One decode rule: matches an exact start address with at least min_count registers."""

    block: str
    address: int
    min_count: int
    extract: Extractor
    word_order: WordOrder = WordOrder.HIGH_FIRST
    provisional: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.address <= 0xFFFF:
            raise ValueError(f"address must be 0-65535, got {self.address}")
        if self.min_count < 1:
            raise ValueError(f"min_count must be >= 1, got {self.min_count}")

    @property
    def key(self) -> tuple[int, int]:
        return (self.address, self.min_count)

    def matches(self, start_address: int, count: int) -> bool:
        return start_address == self.address and count >= self.min_count


def _voltage_block(volt: str, freq: str) -> Extractor:
    """Three phase-neutral voltages, three phase-phase voltages, three frequencies (tenths of Hz)."""

    def extract(regs: Sequence[int], word_order: WordOrder) -> dict[str, FieldValue]:
        l1, l2, l3 = u16(regs, 0), u16(regs, 1), u16(regs, 2)
        return {
            f"{volt}L1": l1,
            f"{volt}L2": l2,
            f"{volt}L3": l3,
            f"{volt}L12": u16(regs, 3),
            f"{volt}L23": u16(regs, 4),
            f"{volt}L31": u16(regs, 5),
            freq: scale_tenths(u16(regs, 6)),
            f"{freq}L2": scale_tenths(u16(regs, 7)),
            f"{freq}L3": scale_tenths(u16(regs, 8)),
        }

    return extract


def _gen_volt_freq(regs: Sequence[int], word_order: WordOrder) -> dict[str, FieldValue]:
    out = _voltage_block("voltage", "frequency")(regs, word_order)
    total = Decimal(u16(regs, 0) + u16(regs, 1) + u16(regs, 2)) / 3
    out["avgVoltage"] = int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return out


def _run_hours(regs: Sequence[int], word_order: WordOrder) -> dict[str, FieldValue]:
    return {
        "runHours": u32(regs, 0, word_order),
        "runMinutes": u16(regs, 2),
        "totalStarts": u32(regs, 3, word_order),
    }


def _current(regs: Sequence[int], word_order: WordOrder) -> dict[str, FieldValue]:
    return {
        "currentL1": scale_tenths(u16(regs, 0)),
        "currentL2": scale_tenths(u16(regs, 1)),
        "currentL3": scale_tenths(u16(regs, 2)),
    }


def _active_power(regs: Sequence[int], word_order: WordOrder) -> dict[str, FieldValue]:
    phases = [s16(regs, i) for i in range(3)]
    return {
        "activePowerL1": scale_tenths(phases[0]),
        "activePowerL2": scale_tenths(phases[1]),
        "activePowerL3": scale_tenths(phases[2]),
        "activePower": scale_tenths(sum(phases)),
    }


def _engine(regs: Sequence[int], word_order: WordOrder) -> dict[str, FieldValue]:
    rpm = u16(regs, 6)
    return {
        "oilPressure": scale_tenths(u16(regs, 0)),
        "engineTemp": scale_tenths(s16(regs, 1)),
        "fuelLevel": u16(regs, 2),
        "fuelLiters": scale_tenths(u16(regs, 3)),
        "chargeAltVoltage": scale_tenths(u16(regs, 4)),
        "batteryVoltage": scale_tenths(u16(regs, 5)),
        "rpm": rpm,
        "starts": u16(regs, 7),
        "trips": u16(regs, 8),
        "running": rpm > RUNNING_RPM_THRESHOLD,
    }


def _alarm(regs: Sequence[int], word_order: WordOrder) -> dict[str, FieldValue]:
    code = u16(regs, 0)
    return {"alarmCode": code, "alarmActive": code != 0}


# Mode register low byte mirrors the values written to the mode register (16)
_MODE_FLAGS = (BitFlag("manualMode", 0), BitFlag("autoMode", 2))


def _operating_mode(regs: Sequence[int], word_order: WordOrder) -> dict[str, FieldValue]:
    out: dict[str, FieldValue] = {"operatingModeCode": low_byte(regs, 0)}
    out.update(bit_flags(low_byte(regs, 0), _MODE_FLAGS))
    return out


_MAINS_STATUS_FLAGS = (BitFlag("mainsBreakerClosed", 0), BitFlag("mainsHealthy", 1))
_GEN_STATUS_FLAGS = (BitFlag("genBreakerClosed", 0), BitFlag("genAvailable", 1))


def _status_block(prefix: str, flags: tuple[BitFlag, ...]) -> Extractor:
    """State code in the high byte, declared flags in the low byte."""

    def extract(regs: Sequence[int], word_order: WordOrder) -> dict[str, FieldValue]:
        out: dict[str, FieldValue] = {f"{prefix}StateCode": high_byte(regs, 0)}
        out.update(bit_flags(low_byte(regs, 0), flags))
        return out

    return extract


def _mains_504(regs: Sequence[int], word_order: WordOrder) -> dict[str, FieldValue]:
    return {
        "mainsVoltageL1": u16(regs, 0),
        "mainsVoltageL2": u16(regs, 1),
        "mainsVoltageL3": u16(regs, 2),
        "mainsFrequency": scale_tenths(u16(regs, 3)),
    }


DEFAULT_RULES: tuple[BlockRule, ...] = (
    BlockRule("RUN_HOURS", 60, 5, _run_hours, word_order=WordOrder.HIGH_FIRST, provisional=True),
    BlockRule("GEN_VOLT_FREQ", 1, 9, _gen_volt_freq),
    BlockRule("MAINS_VOLT_FREQ", 14, 9, _voltage_block("mainsVoltage", "mainsFrequency"), provisional=True),
    BlockRule("CURRENT", 23, 3, _current, provisional=True),
    BlockRule("ACTIVE_POWER", 29, 3, _active_power, provisional=True),
    BlockRule("ENGINE", 51, 9, _engine),
    BlockRule("ALARM", 66, 1, _alarm),
    BlockRule("OPERATING_MODE", 78, 1, _operating_mode, provisional=True),
    BlockRule("MAINS_STATUS", 11000, 1, _status_block("mains", _MAINS_STATUS_FLAGS), provisional=True),
    BlockRule("GEN_STATUS", 11001, 1, _status_block("gen", _GEN_STATUS_FLAGS), provisional=True),
    BlockRule("MAINS_504", 504, 4, _mains_504, provisional=True),
)


class BlockDecoder:
    """
    Immutable decode table. Construction fails on ambiguous rules (two rules
    sharing a start address) so overlapping maps are caught at startup.
    """

    def __init__(self, rules: Iterable[BlockRule] = DEFAULT_RULES) -> None:
        self._rules: tuple[BlockRule, ...] = tuple(rules)
        by_address: dict[int, BlockRule] = {}
        for rule in self._rules:
            existing = by_address.get(rule.address)
            if existing is not None:
                raise ValueError(
                    f"Ambiguous decode rules at address {rule.address}: "
                    f"{existing.block} (min {existing.min_count}) and {rule.block} (min {rule.min_count})"
                )
            by_address[rule.address] = rule
        self._by_address = by_address
        logger.debug("BlockDecoder built with %d rules", len(self._rules))

    @property
    def rules(self) -> tuple[BlockRule, ...]:
        return self._rules

    def with_rules(self, *rules: BlockRule) -> "BlockDecoder":
        """Return a new decoder with extra rules appended; this decoder is unchanged."""
        return BlockDecoder(self._rules + rules)

    def find_rule(self, start_address: int, count: int) -> BlockRule | None:
        rule = self._by_address.get(start_address)
        if rule is not None and rule.matches(start_address, count):
            return rule
        return None

    def decode(
        self,
        function_code: int,
        start_address: int,
        registers: Sequence[int],
        *,
        word_order: WordOrder | None = None,
    ) -> DecodedBlock:
        """
        Decode registers read from start_address. Never raises for unmapped
        blocks; returns an UNKNOWN block carrying the raw registers instead.
        word_order overrides the rule's declared 32-bit convention (per device).
        """
        regs = tuple(registers)
        rule = self.find_rule(start_address, len(regs)) if function_code in READ_FUNCTIONS else None
        if rule is None:
            return DecodedBlock(block=UNKNOWN_BLOCK, start_address=start_address, registers=regs)
        fields = rule.extract(regs, word_order or rule.word_order)
        return DecodedBlock(
            block=rule.block,
            start_address=start_address,
            fields=fields,
            provisional=rule.provisional,
        )


_default_decoder: BlockDecoder | None = None


def get_default_decoder() -> BlockDecoder:
    """Shared decoder over DEFAULT_RULES (stateless, safe to share)."""
    global _default_decoder
    if _default_decoder is None:
        _default_decoder = BlockDecoder()
    return _default_decoder


def decode(
    function_code: int,
    start_address: int,
    registers: Sequence[int],
    *,
    word_order: WordOrder | None = None,
) -> DecodedBlock:
    """Decode with the default rule table."""
    return get_default_decoder().decode(function_code, start_address, registers, word_order=word_order)
