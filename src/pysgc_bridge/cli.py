#!/usr/bin/env python3
"""CLI for pysgc-bridge using Typer: frame tools, offline decode, commands and the bridge service."""

import json
import logging
import signal
import time
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from . import __version__  # type: ignore
from .blocks import get_default_decoder
from .bridge import Bridge
from .codec import (
    encode_read_request,
    encode_write_multiple_request,
    encode_write_single_request,
    hex_to_bytes,
    parse_request,
    parse_response,
    to_hex,
)
from .config import BridgeConfig
from .crc import crc16, crc_bytes
from .errors import MalformedRequestError, MalformedResponseError
from .ingest import TelemetryIngest
from .orchestrator import ACTIONS, RESTORE_DELAY_S, CommandOrchestrator
from .registry import DeviceRegistry
from .suspension import SuspensionStore
from .transport import MqttTransport

app = typer.Typer(
    name="pysgc",
    help="Modbus RTU over MQTT bridge for SGC-120 generator controllers.",
    no_args_is_help=True,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Shared options and helpers
# ============================================================================

BrokerHostOption = Annotated[
    Optional[str],
    typer.Option("--broker", "-b", help="MQTT broker hostname", envvar="PYSGC_BROKER_HOST"),
]
BrokerPortOption = Annotated[
    int,
    typer.Option("--port", "-p", help="MQTT broker port", envvar="PYSGC_BROKER_PORT"),
]
UserOption = Annotated[
    Optional[str],
    typer.Option("--user", help="MQTT username", envvar="PYSGC_MQTT_USER"),
]
PasswordOption = Annotated[
    Optional[str],
    typer.Option("--password", help="MQTT password", envvar="PYSGC_MQTT_PASSWORD"),
]
TlsOption = Annotated[
    bool,
    typer.Option("--tls/--no-tls", help="Use TLS to the broker", envvar="PYSGC_MQTT_TLS"),
]
InsecureOption = Annotated[
    bool,
    typer.Option("--insecure", help="Do not verify the broker certificate", envvar="PYSGC_MQTT_INSECURE"),
]
DevicesFileOption = Annotated[
    Optional[Path],
    typer.Option("--devices", help="Device registry JSON (default: packaged registry)", envvar="PYSGC_DEVICES_FILE"),
]
SuspensionFileOption = Annotated[
    Path,
    typer.Option("--suspension-file", help="Durable suspended-devices JSON", envvar="PYSGC_SUSPENSION_FILE"),
]
TimeoutOption = Annotated[
    float,
    typer.Option("--timeout", "-t", help="Broker connection timeout in seconds", envvar="PYSGC_TIMEOUT"),
]
UnitIdOption = Annotated[
    int,
    typer.Option("--unit-id", "-u", help="Modbus unit ID", envvar="PYSGC_UNIT_ID"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]

DEFAULT_SUSPENSION_FILE = Path("state/suspended.json")


def setup_logging(verbose: bool, default_level: int = logging.WARNING) -> None:
    """Configure logging based on verbose flag."""
    level = logging.DEBUG if verbose else default_level
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s" if not verbose else "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def parse_int(value: str) -> int:
    """Parse an unsigned 16-bit integer, decimal or 0x hex."""
    v = value.strip()
    num = int(v, 16) if v.lower().startswith("0x") else int(v)
    if not 0 <= num <= 65535:
        raise ValueError(f"Unsigned 16-bit integer out of range: {num}")
    return num


def load_registry(devices: Optional[Path]) -> DeviceRegistry:
    if devices is None:
        return DeviceRegistry()
    if not devices.is_file():
        typer.echo(f"Error: Device registry not found: {devices}", err=True)
        raise typer.Exit(2)
    try:
        return DeviceRegistry(path=devices)
    except ValueError as e:
        typer.echo(f"Error: Invalid device registry {devices}: {e}", err=True)
        raise typer.Exit(2)


def create_transport(
    broker: Optional[str],
    port: int,
    user: Optional[str],
    password: Optional[str],
    tls: bool,
    insecure: bool,
) -> MqttTransport:
    """Create and return an MqttTransport instance."""
    if not broker:
        typer.echo("Error: --broker is required for this command", err=True)
        raise typer.Exit(2)
    return MqttTransport(
        broker,
        port,
        username=user,
        password=password,
        client_id=f"pysgc-cli-{int(time.time())}",
        tls=tls,
        tls_insecure=insecure,
    )


def echo_frame(frame: bytes, json_output: bool) -> None:
    if json_output:
        typer.echo(json.dumps({"hex": to_hex(frame), "length": len(frame)}))
    else:
        typer.echo(to_hex(frame))


# ============================================================================
# Frame tools (offline)
# ============================================================================


@app.command()
def crc(
    hex_data: Annotated[str, typer.Argument(help="Bytes to checksum, as hex (e.g. 0103003C0005)")],
    json_output: JsonOption = False,
) -> None:
    """Compute the CRC16/MODBUS of a hex byte string."""
    try:
        data = hex_to_bytes(hex_data)
    except ValueError as e:
        typer.echo(f"Error: Invalid hex: {e}", err=True)
        raise typer.Exit(2)
    value = crc16(data)
    wire = crc_bytes(data).hex().upper()
    if json_output:
        typer.echo(json.dumps({"crc": f"0x{value:04X}", "wire": wire, "frame": to_hex(data) + wire}))
    else:
        typer.echo(f"CRC: 0x{value:04X}  wire: {wire}  frame: {to_hex(data)}{wire}")


@app.command(name="encode-read")
def encode_read(
    start: Annotated[str, typer.Argument(help="Start address (decimal or 0x hex)")],
    quantity: Annotated[str, typer.Argument(help="Number of registers")],
    unit_id: UnitIdOption = 1,
    json_output: JsonOption = False,
) -> None:
    """Build a read-holding-registers (fc 3) request frame."""
    try:
        frame = encode_read_request(unit_id, parse_int(start), parse_int(quantity))
    except ValueError as e:
        typer.echo(f"Error: Invalid value: {e}", err=True)
        raise typer.Exit(2)
    echo_frame(frame, json_output)


@app.command(name="encode-write")
def encode_write(
    address: Annotated[str, typer.Argument(help="Register address")],
    value: Annotated[str, typer.Argument(help="Value to write (decimal or 0x hex)")],
    unit_id: UnitIdOption = 1,
    json_output: JsonOption = False,
) -> None:
    """Build a write-single-register (fc 6) request frame."""
    try:
        frame = encode_write_single_request(unit_id, parse_int(address), parse_int(value))
    except ValueError as e:
        typer.echo(f"Error: Invalid value: {e}", err=True)
        raise typer.Exit(2)
    echo_frame(frame, json_output)


@app.command(name="encode-write-multiple")
def encode_write_multiple(
    start: Annotated[str, typer.Argument(help="Start address")],
    values: Annotated[list[str], typer.Argument(help="Register values (space-separated)")],
    unit_id: UnitIdOption = 1,
    json_output: JsonOption = False,
) -> None:
    """Build a write-multiple-registers (fc 16) request frame."""
    try:
        frame = encode_write_multiple_request(unit_id, parse_int(start), [parse_int(v) for v in values])
    except ValueError as e:
        typer.echo(f"Error: Invalid value: {e}", err=True)
        raise typer.Exit(2)
    echo_frame(frame, json_output)


@app.command()
def decode(
    request: Annotated[str, typer.Argument(help="Request frame hex")],
    response: Annotated[str, typer.Argument(help="Response frame hex")],
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Decode one request/response pair offline.

    Shows the parsed frames and the decoded register block (or the exception).
    """
    setup_logging(verbose)

    try:
        req = parse_request(request)
        resp = parse_response(response)
    except MalformedRequestError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)
    except MalformedResponseError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)

    out: dict[str, Any] = {
        "unitId": resp.unit_id,
        "functionCode": resp.function_code,
        "startAddress": req.start_address,
        "quantity": req.quantity,
        "crcOk": resp.crc_ok,
    }
    if resp.is_exception:
        out["exceptionCode"] = resp.exception_code
    elif resp.is_write_echo:
        out["address"] = resp.address
        out["value"] = resp.value
    else:
        block = get_default_decoder().decode(req.function_code, req.start_address, resp.registers)
        out["registers"] = list(resp.registers)
        out["decoded"] = block.to_dict()

    if json_output:
        typer.echo(json.dumps(out, indent=2))
        return
    for key, val in out.items():
        if key == "decoded":
            typer.echo(f"Block:           {val['block']}")
            for name, field_value in val.items():
                if name not in ("block", "startAddress", "registers"):
                    typer.echo(f"  {name} = {field_value}")
        else:
            typer.echo(f"{key + ':':<17}{val}")


@app.command()
def ingest(
    envelope_file: Annotated[Path, typer.Argument(help="JSON envelope {modbusRequest: [...], modbusResponse: [...]}")],
    device: Annotated[str, typer.Option("--device", "-d", help="Device id the envelope came from")] = "offline",
    strict_crc: Annotated[bool, typer.Option("--strict-crc", help="Reject responses with a bad CRC")] = False,
    verbose: VerboseOption = False,
) -> None:
    """Run a captured gateway envelope through telemetry ingest and print the batch result."""
    setup_logging(verbose)

    if not envelope_file.is_file():
        typer.echo(f"Error: Envelope file not found: {envelope_file}", err=True)
        raise typer.Exit(2)
    try:
        with open(envelope_file, "r", encoding="utf-8") as f:
            envelope = json.load(f)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: Invalid JSON: {e}", err=True)
        raise typer.Exit(2)
    if not isinstance(envelope, dict):
        typer.echo("Error: Envelope must be a JSON object", err=True)
        raise typer.Exit(2)

    result = TelemetryIngest(strict_crc=strict_crc).process(device, envelope)
    typer.echo(json.dumps(result.to_dict(), indent=2))


@app.command()
def rules(json_output: JsonOption = False) -> None:
    """List the register decode table."""
    table = [
        {
            "block": r.block,
            "address": r.address,
            "minCount": r.min_count,
            "wordOrder": r.word_order.value,
            "provisional": r.provisional,
        }
        for r in get_default_decoder().rules
    ]
    if json_output:
        typer.echo(json.dumps(table, indent=2))
        return
    for row in table:
        flag = "  (provisional)" if row["provisional"] else ""
        typer.echo(f"{row['address']:>6}  min {row['minCount']:<2} {row['block']}{flag}")


# ============================================================================
# Commands and suspension state
# ============================================================================


@app.command()
def command(
    device_id: Annotated[str, typer.Argument(help="Device id (e.g. Ciklo1)")],
    action: Annotated[str, typer.Argument(help="start, stop, manual, auto, ack or reset")],
    broker: BrokerHostOption = None,
    port: BrokerPortOption = 8883,
    user: UserOption = None,
    password: PasswordOption = None,
    tls: TlsOption = True,
    insecure: InsecureOption = False,
    devices: DevicesFileOption = None,
    suspension_file: SuspensionFileOption = DEFAULT_SUSPENSION_FILE,
    timeout: TimeoutOption = 10.0,
    wait_restore: Annotated[
        bool,
        typer.Option(
            "--wait-restore/--no-wait-restore",
            help="After start/stop, stay connected until the polling list is restored",
        ),
    ] = True,
    restore_delay: Annotated[
        float,
        typer.Option(
            "--restore-delay",
            help="Seconds between start/stop and the polling-list restore",
            envvar="PYSGC_RESTORE_DELAY",
            min=0.0,
        ),
    ] = RESTORE_DELAY_S,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Publish a control command to a generator and suspend bridge polling for it.

    start/stop are followed by a polling-list restore; the process stays
    connected until it has been sent unless --no-wait-restore is given.
    Use 'resume' to re-enable polling.
    """
    setup_logging(verbose)

    action = action.strip().lower()
    if action not in ACTIONS:
        typer.echo(f"Error: Unknown action {action!r}. Choose from: {', '.join(ACTIONS)}", err=True)
        raise typer.Exit(2)

    registry = load_registry(devices)
    if device_id not in registry:
        typer.echo(f"Error: Unknown device: {device_id!r}", err=True)
        raise typer.Exit(2)

    transport = create_transport(broker, port, user, password, tls, insecure)
    with transport:
        try:
            connected = transport.connect(wait=timeout)
        except OSError as e:
            typer.echo(f"Error: Connection error: {e}", err=True)
            raise typer.Exit(3)
        if not connected:
            typer.echo(f"Error: Could not connect to {broker}:{port}", err=True)
            raise typer.Exit(3)

        orchestrator = CommandOrchestrator(
            transport, registry, SuspensionStore(suspension_file), restore_delay=restore_delay
        )
        try:
            result = orchestrator.issue_command(device_id, action)
            if json_output:
                typer.echo(json.dumps(result.to_dict()))
            elif result.success:
                typer.echo(f"OK: {action} sent to {device_id}: {result.frame_hex}")
            else:
                typer.echo(f"Error: {result.error}", err=True)
            if not result.success:
                raise typer.Exit(3)
            if result.warning and not json_output:
                typer.echo(f"Warning: {result.warning}", err=True)

            if not ACTIONS[action].arms_restore:
                return
            if not wait_restore:
                typer.echo(
                    f"Warning: not waiting; the polling list of {device_id} will not be restored", err=True
                )
                return
            typer.echo(f"Waiting {restore_delay:g}s for polling-list restore...", err=True)
            if not orchestrator.wait_for_restores(timeout=restore_delay + timeout):
                typer.echo(f"Error: Polling-list restore for {device_id} was not sent", err=True)
                raise typer.Exit(3)
        finally:
            orchestrator.cancel_timers()


@app.command()
def resume(
    device_id: Annotated[str, typer.Argument(help="Device id to resume polling for")],
    suspension_file: SuspensionFileOption = DEFAULT_SUSPENSION_FILE,
    verbose: VerboseOption = False,
) -> None:
    """Clear a device's poll suspension (the explicit manual reset)."""
    setup_logging(verbose)
    store = SuspensionStore(suspension_file)
    if store.clear(device_id):
        typer.echo(f"OK: Polling resumed for {device_id}")
    else:
        typer.echo(f"{device_id} was not suspended")


@app.command()
def suspended(
    suspension_file: SuspensionFileOption = DEFAULT_SUSPENSION_FILE,
    json_output: JsonOption = False,
) -> None:
    """List devices whose bridge polling is suspended."""
    entries = SuspensionStore(suspension_file).all()
    if json_output:
        typer.echo(json.dumps({s.device_id: s.suspended_at.isoformat() for s in entries}, indent=2))
        return
    if not entries:
        typer.echo("No suspended devices")
    for s in entries:
        typer.echo(f"{s.device_id}  since {s.suspended_at.isoformat()}")


# ============================================================================
# Service
# ============================================================================


@app.command()
def run(
    broker: BrokerHostOption = None,
    port: BrokerPortOption = 8883,
    user: UserOption = None,
    password: PasswordOption = None,
    tls: TlsOption = True,
    insecure: InsecureOption = False,
    devices: DevicesFileOption = None,
    suspension_file: SuspensionFileOption = DEFAULT_SUSPENSION_FILE,
    state_file: Annotated[
        Optional[Path], typer.Option("--state-file", help="Merged device state JSON", envvar="PYSGC_STATE_FILE")
    ] = Path("state/generators_state.json"),
    history_file: Annotated[
        Optional[Path], typer.Option("--history-file", help="Append decoded updates as JSON lines", envvar="PYSGC_HISTORY_FILE")
    ] = None,
    interval: Annotated[float, typer.Option("--interval", "-i", help="Bridge polling interval in seconds")] = 10.0,
    strict_crc: Annotated[bool, typer.Option("--strict-crc", help="Reject responses with a bad CRC")] = False,
    verbose: VerboseOption = False,
) -> None:
    """
    Run the bridge: decode telemetry from devices/data/# and poll active devices.

    Press Ctrl+C to stop gracefully.
    """
    setup_logging(verbose, default_level=logging.INFO)

    if not broker:
        typer.echo("Error: --broker is required for this command", err=True)
        raise typer.Exit(2)
    if devices is not None and not devices.is_file():
        typer.echo(f"Error: Device registry not found: {devices}", err=True)
        raise typer.Exit(2)

    try:
        config = BridgeConfig(
            broker_host=broker,
            broker_port=port,
            username=user,
            password=password,
            tls=tls,
            tls_insecure=insecure,
            devices_file=devices,
            suspension_file=suspension_file,
            state_file=state_file,
            history_file=history_file,
            poll_interval_s=interval,
            strict_crc=strict_crc,
        )
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)

    bridge = Bridge(config)
    signal.signal(signal.SIGTERM, lambda *_: bridge.stop())
    try:
        bridge.run()
    except KeyboardInterrupt:
        typer.echo("\nStopped by user", err=True)
    except Exception as e:
        typer.echo(f"Error: Unexpected error: {e}", err=True)
        if verbose:
            import traceback
            traceback.print_exc()
        raise typer.Exit(4)
    finally:
        bridge.stop()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"pysgc-bridge {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, is_eager=True, help="Show version and exit"),
    ] = None,
) -> None:
    """pysgc - Modbus RTU over MQTT bridge for SGC-120 generator controllers."""
    pass


if __name__ == "__main__":
    app()
