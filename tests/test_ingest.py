"""Tests for telemetry ingest: pair alignment, per-pair failures, folding and sinks."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from pysgc_bridge.codec import encode_read_request, encode_write_single_request, to_hex
from pysgc_bridge.crc import crc_bytes
from pysgc_bridge.ingest import TelemetryIngest
from pysgc_bridge.registry import DeviceRegistry
from pysgc_bridge.state import UnifiedStateStore
from pysgc_bridge.types import OutcomeStatus

TS = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def read_req(start: int, qty: int, unit_id: int = 1) -> str:
    return to_hex(encode_read_request(unit_id, start, qty))


def read_resp(registers: list[int], unit_id: int = 1) -> str:
    body = bytes([unit_id, 3, 2 * len(registers)]) + b"".join(r.to_bytes(2, "big") for r in registers)
    return to_hex(body + crc_bytes(body))


def exception_resp(code: int, unit_id: int = 1) -> str:
    body = bytes([unit_id, 0x83, code])
    return to_hex(body + crc_bytes(body))


@pytest.fixture
def ingest() -> TelemetryIngest:
    return TelemetryIngest(clock=lambda: TS)


ENGINE_REGS = [45, 0xFFEC, 80, 1234, 138, 245, 1500, 12, 3]


def test_no_response_end_to_end(ingest: TelemetryIngest) -> None:
    envelope = {"modbusRequest": [read_req(60, 5)], "modbusResponse": [""]}
    result = ingest.process("Ciklo1", envelope)
    assert len(result.outcomes) == 1
    assert result.outcomes[0].status == OutcomeStatus.NO_RESPONSE
    assert result.decoded_fields == {}
    assert result.update is None
    assert "Ciklo1" not in ingest.store


def test_decodes_and_folds_blocks(ingest: TelemetryIngest) -> None:
    envelope = {
        "modbusRequest": [read_req(51, 9), read_req(66, 1)],
        "modbusResponse": [read_resp(ENGINE_REGS), read_resp([0])],
    }
    result = ingest.process("Ciklo1", envelope)
    assert [o.status for o in result.outcomes] == [OutcomeStatus.DECODED, OutcomeStatus.DECODED]
    assert result.update is not None
    assert result.update.timestamp == TS
    assert result.decoded_fields["rpm"] == 1500
    assert result.decoded_fields["alarmActive"] is False
    assert ingest.store.get("Ciklo1")["engineTemp"] == -2.0


def test_partial_failure_keeps_decoded_fields(ingest: TelemetryIngest) -> None:
    envelope = {
        "modbusRequest": [read_req(60, 5), read_req(51, 9), read_req(66, 1), read_req(1, 9)],
        "modbusResponse": ["", read_resp(ENGINE_REGS), exception_resp(2), "01030A00E6AAAA"],
    }
    result = ingest.process("Ciklo1", envelope)
    statuses = [o.status for o in result.outcomes]
    assert statuses == [
        OutcomeStatus.NO_RESPONSE,
        OutcomeStatus.DECODED,
        OutcomeStatus.MODBUS_EXCEPTION,
        OutcomeStatus.INCONSISTENT_BYTE_COUNT,
    ]
    assert result.outcomes[2].error == "MODBUS_EXCEPTION_2 (ILLEGAL_DATA_ADDRESS)"
    assert result.outcomes[2].block is None
    assert len(result.failures) == 3
    assert result.decoded_fields["rpm"] == 1500


def test_last_write_in_envelope_wins(ingest: TelemetryIngest) -> None:
    envelope = {
        "modbusRequest": [read_req(66, 1), read_req(66, 1)],
        "modbusResponse": [read_resp([3]), read_resp([0])],
    }
    result = ingest.process("Gen1", envelope)
    assert result.decoded_fields["alarmCode"] == 0
    assert result.decoded_fields["alarmActive"] is False


def test_unknown_block_contributes_no_fields(ingest: TelemetryIngest) -> None:
    envelope = {"modbusRequest": [read_req(999, 2)], "modbusResponse": [read_resp([1, 2])]}
    result = ingest.process("Gen1", envelope)
    assert result.outcomes[0].status == OutcomeStatus.DECODED
    assert result.outcomes[0].block.is_unknown  # type: ignore[union-attr]
    assert result.update is None


def test_write_echo_is_acknowledged(ingest: TelemetryIngest) -> None:
    frame = to_hex(encode_write_single_request(1, 1, 100))
    result = ingest.process("Gen1", {"modbusRequest": [frame], "modbusResponse": [frame]})
    assert result.outcomes[0].status == OutcomeStatus.WRITE_ACK
    assert result.outcomes[0].ok
    assert result.failures == ()


def test_malformed_request_and_missing_request(ingest: TelemetryIngest) -> None:
    envelope = {"modbusRequest": ["0103", ""], "modbusResponse": [read_resp([0]), read_resp([0])]}
    result = ingest.process("Gen1", envelope)
    assert [o.status for o in result.outcomes] == [
        OutcomeStatus.MALFORMED_REQUEST,
        OutcomeStatus.MALFORMED_REQUEST,
    ]


def test_more_requests_than_responses(ingest: TelemetryIngest) -> None:
    envelope = {"modbusRequest": [read_req(66, 1), read_req(78, 1)], "modbusResponse": [read_resp([0])]}
    result = ingest.process("Gen1", envelope)
    assert [o.status for o in result.outcomes] == [OutcomeStatus.DECODED, OutcomeStatus.NO_RESPONSE]


def test_function_mismatch_is_malformed(ingest: TelemetryIngest) -> None:
    body = bytes([1, 4, 2, 0, 0])
    resp = to_hex(body + crc_bytes(body))
    result = ingest.process("Gen1", {"modbusRequest": [read_req(66, 1)], "modbusResponse": [resp]})
    assert result.outcomes[0].status == OutcomeStatus.MALFORMED_RESPONSE


def test_crc_mismatch_lenient_by_default(ingest: TelemetryIngest) -> None:
    bad = read_resp([7])[:-4] + "0000"
    result = ingest.process("Gen1", {"modbusRequest": [read_req(66, 1)], "modbusResponse": [bad]})
    assert result.outcomes[0].status == OutcomeStatus.DECODED
    assert result.outcomes[0].to_dict()["crcOk"] is False
    assert result.decoded_fields["alarmCode"] == 7


def test_crc_mismatch_strict() -> None:
    ingest = TelemetryIngest(strict_crc=True)
    bad = read_resp([7])[:-4] + "0000"
    result = ingest.process("Gen1", {"modbusRequest": [read_req(66, 1)], "modbusResponse": [bad]})
    assert result.outcomes[0].status == OutcomeStatus.CRC_MISMATCH
    assert result.update is None


def test_device_word_order_from_registry() -> None:
    registry = DeviceRegistry([{"device_id": "Gen1", "unit_id": 1, "word_order": "low_first"}])
    ingest = TelemetryIngest(registry=registry)
    envelope = {"modbusRequest": [read_req(60, 5)], "modbusResponse": [read_resp([1, 2, 0, 0, 0])]}
    assert ingest.process("Gen1", envelope).decoded_fields["runHours"] == 0x00020001
    assert ingest.process("Other", envelope).decoded_fields["runHours"] == 0x00010002


def test_sinks_receive_merged_state() -> None:
    store = UnifiedStateStore({"Gen1": {"fuelLevel": 90}})
    sink = MagicMock()
    ingest = TelemetryIngest(store, sinks=[sink], clock=lambda: TS)
    ingest.process("Gen1", {"modbusRequest": [read_req(66, 1)], "modbusResponse": [read_resp([0])]})
    sink.deliver.assert_called_once()
    update, state = sink.deliver.call_args[0]
    assert update.fields == {"alarmCode": 0, "alarmActive": False}
    assert state == {"fuelLevel": 90, "alarmCode": 0, "alarmActive": False}


def test_sinks_not_called_without_fields() -> None:
    sink = MagicMock()
    ingest = TelemetryIngest(sinks=[sink])
    ingest.process("Gen1", {"modbusRequest": [read_req(60, 5)], "modbusResponse": [""]})
    sink.deliver.assert_not_called()


def test_failing_sink_does_not_break_ingest() -> None:
    bad, good = MagicMock(), MagicMock()
    bad.deliver.side_effect = OSError("disk full")
    ingest = TelemetryIngest(sinks=[bad, good])
    result = ingest.process("Gen1", {"modbusRequest": [read_req(66, 1)], "modbusResponse": [read_resp([0])]})
    assert result.update is not None
    good.deliver.assert_called_once()


def test_batch_result_to_dict(ingest: TelemetryIngest) -> None:
    envelope = {"modbusRequest": [read_req(66, 1), read_req(60, 5)], "modbusResponse": [read_resp([5]), ""]}
    out = ingest.process("Gen1", envelope).to_dict()
    assert out["deviceId"] == "Gen1"
    assert out["fields"] == {"alarmCode": 5, "alarmActive": True}
    assert out["outcomes"][0]["decoded"]["block"] == "ALARM"
    assert out["outcomes"][1] == {
        "index": 1,
        "status": "NO_RESPONSE",
        "ok": False,
        "startAddress": 60,
        "functionCode": 3,
        "error": "NO_RESPONSE",
    }
