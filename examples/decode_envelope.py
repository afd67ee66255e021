#!/usr/bin/env python3
"""Example: decode a captured gateway envelope offline and print the merged fields."""

import sys

from pysgc_bridge import TelemetryIngest
from pysgc_bridge.codec import encode_read_request, to_hex
from pysgc_bridge.crc import crc_bytes


def read_response(registers: list[int], unit_id: int = 1) -> str:
    body = bytes([unit_id, 3, 2 * len(registers)]) + b"".join(r.to_bytes(2, "big") for r in registers)
    return to_hex(body + crc_bytes(body))


def main() -> None:
    # Shape of a message on devices/data/<deviceId>
    envelope = {
        "modbusRequest": [
            to_hex(encode_read_request(1, 51, 9)),
            to_hex(encode_read_request(1, 66, 1)),
            to_hex(encode_read_request(1, 60, 5)),
        ],
        "modbusResponse": [
            read_response([45, 850, 80, 1234, 138, 245, 1800, 12, 3]),
            read_response([0]),
            "",  # timed out
        ],
    }

    result = TelemetryIngest().process("Ciklo1", envelope)
    for outcome in result.outcomes:
        print(f"pair {outcome.index}: {outcome.status.value}" + (f" ({outcome.error})" if outcome.error else ""))
    for name, value in sorted(result.decoded_fields.items()):
        print(f"  {name} = {value}")
    if result.failures:
        sys.exit(1)


if __name__ == "__main__":
    main()
