"""
Telemetry ingest: align the request/response hex arrays of one gateway envelope,
decode every pair, and fold the decoded blocks into one per-device update.

One bad pair never discards the rest of the envelope: failures become
PairOutcome entries reported next to the decoded ones.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from .blocks import BlockDecoder, get_default_decoder
from .codec import parse_request, parse_response
from .errors import (
    CrcMismatchError,
    InconsistentByteCountError,
    MalformedRequestError,
    MalformedResponseError,
    ModbusExceptionError,
    NoResponseError,
)
from .registry import DeviceRegistry
from .state import StateSink, UnifiedStateStore
from .types import (
    BatchResult,
    DeviceUpdate,
    FieldValue,
    OutcomeStatus,
    PairOutcome,
    ParsedRequest,
    WordOrder,
)

logger = logging.getLogger(__name__)

REQUEST_KEY = "modbusRequest"
RESPONSE_KEY = "modbusResponse"


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


class TelemetryIngest:
    """
    Decode envelopes into DeviceUpdates, merge them into the unified state and
    hand them to the configured sinks.
    """

    def __init__(
        self,
        store: UnifiedStateStore | None = None,
        *,
        decoder: BlockDecoder | None = None,
        registry: DeviceRegistry | None = None,
        sinks: Iterable[StateSink] = (),
        strict_crc: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store if store is not None else UnifiedStateStore()
        self._decoder = decoder if decoder is not None else get_default_decoder()
        self._registry = registry
        self._sinks = list(sinks)
        self._strict_crc = strict_crc
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def store(self) -> UnifiedStateStore:
        return self._store

    def add_sink(self, sink: StateSink) -> None:
        self._sinks.append(sink)

    def _word_order(self, device_id: str) -> WordOrder | None:
        if self._registry is None:
            return None
        info = self._registry.get(device_id)
        return info.word_order if info is not None else None

    def decode_pair(
        self,
        index: int,
        request_hex: str | None,
        response_hex: str | None,
        *,
        word_order: WordOrder | None = None,
    ) -> PairOutcome:
        """Decode one aligned pair; every failure is returned as an outcome, never raised."""
        if not request_hex:
            return PairOutcome(index, OutcomeStatus.MALFORMED_REQUEST, error="Missing request")
        try:
            request = parse_request(request_hex)
        except MalformedRequestError as e:
            return PairOutcome(index, OutcomeStatus.MALFORMED_REQUEST, error=str(e))

        if not response_hex:
            return PairOutcome(
                index, OutcomeStatus.NO_RESPONSE, request=request, error=str(NoResponseError("NO_RESPONSE"))
            )

        try:
            response = parse_response(response_hex)
        except InconsistentByteCountError as e:
            return PairOutcome(index, OutcomeStatus.INCONSISTENT_BYTE_COUNT, request=request, error=str(e))
        except MalformedResponseError as e:
            return PairOutcome(index, OutcomeStatus.MALFORMED_RESPONSE, request=request, error=str(e))

        if response.is_exception:
            exc = ModbusExceptionError(response.exception_code or 0, response.function_code)
            return PairOutcome(
                index,
                OutcomeStatus.MODBUS_EXCEPTION,
                request=request,
                response=response,
                error=f"MODBUS_EXCEPTION_{exc.code} ({exc.name})",
            )

        if response.function_code != request.function_code:
            return PairOutcome(
                index,
                OutcomeStatus.MALFORMED_RESPONSE,
                request=request,
                response=response,
                error=f"Function mismatch: request {request.function_code}, response {response.function_code}",
            )

        if not response.crc_ok:
            if self._strict_crc:
                return PairOutcome(
                    index,
                    OutcomeStatus.CRC_MISMATCH,
                    request=request,
                    response=response,
                    error=str(CrcMismatchError(response_hex)),
                )
            logger.warning("CRC mismatch accepted (lenient) for pair %d: %s", index, response_hex)

        if response.is_write_echo:
            return PairOutcome(index, OutcomeStatus.WRITE_ACK, request=request, response=response)

        block = self._decoder.decode(
            request.function_code,
            request.start_address,
            response.registers,
            word_order=word_order,
        )
        return PairOutcome(index, OutcomeStatus.DECODED, request=request, response=response, block=block)

    def process(self, device_id: str, envelope: Mapping[str, Any]) -> BatchResult:
        """
        Decode all pairs of an envelope and deliver the folded update.

        Fields decoded later in the envelope overwrite earlier ones. The unified
        state and the sinks are only touched when at least one field decoded.
        """
        requests = _as_list(envelope.get(REQUEST_KEY))
        responses = _as_list(envelope.get(RESPONSE_KEY))
        word_order = self._word_order(device_id)
        timestamp = self._clock()

        outcomes: list[PairOutcome] = []
        for i in range(max(len(requests), len(responses))):
            req = requests[i] if i < len(requests) else None
            resp = responses[i] if i < len(responses) else None
            if not req and not resp:
                continue
            outcomes.append(self.decode_pair(i, req, resp, word_order=word_order))

        fields: dict[str, FieldValue] = {}
        for outcome in outcomes:
            if outcome.block is None:
                if not outcome.ok:
                    self._log_failure(device_id, outcome)
                continue
            if outcome.block.is_unknown:
                logger.info(
                    "UNKNOWN BLOCK for %s: start %d, len %d",
                    device_id,
                    outcome.block.start_address,
                    len(outcome.block.registers),
                )
                continue
            fields.update(outcome.block.fields)

        update = DeviceUpdate(device_id=device_id, timestamp=timestamp, fields=fields) if fields else None
        result = BatchResult(device_id=device_id, timestamp=timestamp, outcomes=tuple(outcomes), update=update)

        if update is not None:
            merged = self._store.merge(device_id, fields)
            logger.debug("Decoded %d fields for %s", len(fields), device_id)
            for sink in self._sinks:
                try:
                    sink.deliver(update, merged)
                except Exception as e:
                    logger.error("State sink %s failed for %s: %s", type(sink).__name__, device_id, e)
        return result

    def _log_failure(self, device_id: str, outcome: PairOutcome) -> None:
        request: ParsedRequest | None = outcome.request
        where = f"start {request.start_address}" if request is not None else "unparsed request"
        if outcome.status == OutcomeStatus.NO_RESPONSE:
            logger.info("No response from %s for %s", device_id, where)
        else:
            logger.warning("%s from %s (%s): %s", outcome.status.value, device_id, where, outcome.error)
