#!/usr/bin/env python3
"""Example: send a start command to one generator and wait for the polling-list restore."""

import sys

from pysgc_bridge import CommandOrchestrator, DeviceRegistry, MqttTransport, SuspensionStore


def main() -> None:
    broker = "mqtt.example.com"  # change to your broker
    port = 8883
    device_id = "Ciklo1"

    with MqttTransport(broker, port, username="user", password="secret") as transport:
        if not transport.connect(wait=10.0):
            print(f"Could not connect to {broker}:{port}", file=sys.stderr)
            sys.exit(1)

        orchestrator = CommandOrchestrator(transport, DeviceRegistry(), SuspensionStore("state/suspended.json"))
        result = orchestrator.issue_command(device_id, "start")
        if not result.success:
            print(f"Command failed: {result.error}", file=sys.stderr)
            sys.exit(1)
        print(f"Sent {result.frame_hex}; {device_id} is {orchestrator.state_of(device_id).value}")

        # The restore timer re-publishes the polling list; bridge polling stays
        # suspended until orchestrator.resume_polling(device_id) is called.
        if not orchestrator.wait_for_restores(timeout=60.0):
            print("Polling-list restore was not sent", file=sys.stderr)
            sys.exit(1)


if __name__ == "__main__":
    main()
