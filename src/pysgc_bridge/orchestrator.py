"""
CommandOrchestrator: publish control commands and drive the per-device
poll-suspend / poll-restore state machine.

A device becomes SUSPENDED once a command for it has been published, so the
bridge's own periodic polling stops emitting requests that could race with
the controller's reply. start/stop also arm a one-shot restore timer that
re-publishes the full polling list to the gateway. The suspension is only
cleared by resume_polling(): the gateway resumes its own polling after the
restore, and resuming ours automatically as well double-polls the controller.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from .codec import encode_read_request, encode_write_multiple_request, encode_write_single_request, to_hex
from .errors import DeviceNotFoundError, PySGCBridgeError, TransportDisconnectedError, UnknownActionError
from .registry import DeviceRegistry
from .suspension import SuspensionStore
from .transport import Transport
from .types import CommandResult, DeviceState

logger = logging.getLogger(__name__)

RESTORE_DELAY_S = 30.0
RESTORE_PERIODICITY_S = 30

COMMAND_KEY = "modbusCommand"
REQUEST_KEY = "modbusRequest"
PERIODICITY_KEY = "modbusPeriodicitySeconds"

# Register 0 takes the start/stop pulse, register 16 the mode/acknowledge word
_CONTROL_ADDRESS = 0
_MODE_ADDRESS = 16


@dataclass(frozen=True)
class ActionSpec:
    """How an action is encoded: fc 16 with values, or fc 6 with a single value."""

    address: int
    values: tuple[int, ...]
    multiple: bool
    arms_restore: bool = False

    def encode(self, unit_id: int) -> bytes:
        if self.multiple:
            return encode_write_multiple_request(unit_id, self.address, list(self.values))
        return encode_write_single_request(unit_id, self.address, self.values[0])


ACTIONS: dict[str, ActionSpec] = {
    "start": ActionSpec(_CONTROL_ADDRESS, (2,), multiple=True, arms_restore=True),
    "stop": ActionSpec(_CONTROL_ADDRESS, (1,), multiple=True, arms_restore=True),
    "manual": ActionSpec(_MODE_ADDRESS, (1,), multiple=False),
    "auto": ActionSpec(_MODE_ADDRESS, (4,), multiple=False),
    "ack": ActionSpec(_MODE_ADDRESS, (64,), multiple=False),
    "reset": ActionSpec(_MODE_ADDRESS, (64,), multiple=False),
}

# (start address, quantity) read by the gateway after a restore, in order
POLL_BLOCKS: tuple[tuple[int, int], ...] = (
    (60, 5),  # run hours
    (1, 9),  # generator voltage / frequency
    (51, 9),  # engine
    (14, 9),  # mains voltage
    (23, 3),  # current / breaker
    (29, 3),  # active power
    (66, 1),  # alarm
    (11000, 1),  # mains status
    (11001, 1),  # generator status
)
POLL_ACK = (1, 100)  # trailing write-single (address, value)

# What the bridge itself polls for active devices
PERIODIC_POLL_BLOCK = (60, 5)


def build_command_frame(action: str, unit_id: int) -> bytes:
    """Frame for a control action. Raises UnknownActionError."""
    spec = ACTIONS.get(action)
    if spec is None:
        raise UnknownActionError(action)
    return spec.encode(unit_id)


def build_poll_list(unit_id: int) -> list[str]:
    """The full polling register list as uppercase hex strings."""
    requests = [to_hex(encode_read_request(unit_id, start, qty)) for start, qty in POLL_BLOCKS]
    requests.append(to_hex(encode_write_single_request(unit_id, *POLL_ACK)))
    return requests


def command_envelope(frame: bytes) -> dict[str, Any]:
    return {COMMAND_KEY: to_hex(frame), PERIODICITY_KEY: 0}


def restore_envelope(unit_id: int, periodicity: int = RESTORE_PERIODICITY_S) -> dict[str, Any]:
    return {REQUEST_KEY: build_poll_list(unit_id), PERIODICITY_KEY: periodicity}


class TimerHandle(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def _thread_timer(delay: float, fn: Callable[[], None]) -> TimerHandle:
    t = threading.Timer(delay, fn)
    t.daemon = True
    return t


class CommandOrchestrator:
    """Per-device ACTIVE/SUSPENDED state machine with at most one pending restore timer per device."""

    def __init__(
        self,
        transport: Transport,
        registry: DeviceRegistry,
        suspensions: SuspensionStore | None = None,
        *,
        restore_delay: float = RESTORE_DELAY_S,
        restore_periodicity: int = RESTORE_PERIODICITY_S,
        timer_factory: TimerFactory = _thread_timer,
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._suspensions = suspensions if suspensions is not None else SuspensionStore()
        self._restore_delay = restore_delay
        self._restore_periodicity = restore_periodicity
        self._timer_factory = timer_factory
        self._timers: dict[str, TimerHandle] = {}
        self._timers_lock = threading.Lock()
        self._timers_changed = threading.Condition(self._timers_lock)
        self._device_locks: dict[str, threading.Lock] = {}

    @property
    def suspensions(self) -> SuspensionStore:
        return self._suspensions

    def _lock(self, device_id: str) -> threading.Lock:
        return self._device_locks.setdefault(device_id, threading.Lock())

    def state_of(self, device_id: str) -> DeviceState:
        return DeviceState.SUSPENDED if self._suspensions.is_suspended(device_id) else DeviceState.ACTIVE

    def pending_restores(self) -> list[str]:
        with self._timers_lock:
            return sorted(self._timers)

    # ------------------------------------------------------------------ commands

    def issue_command(self, device_id: str, action: str) -> CommandResult:
        """
        Publish a control command. Never raises: unknown action, unknown device,
        a disconnected transport or a frame error all give success=False and
        leave the suspension state untouched.

        Once the frame is published the command counts as sent. If the
        suspension cannot be persisted after that, the result is still
        successful (and start/stop still arm the restore) but carries a warning.
        """
        warning: str | None = None
        try:
            spec = ACTIONS.get(action) if isinstance(action, str) else None
            if spec is None:
                raise UnknownActionError(action)
            device = self._registry.lookup(device_id)
            frame = spec.encode(device.unit_id)
            with self._lock(device_id):
                if not self._transport.is_connected:
                    raise TransportDisconnectedError()
                self._transport.publish(device_id, command_envelope(frame))
                try:
                    self._suspensions.suspend(device_id)
                except OSError as e:
                    warning = f"Command sent but suspension not persisted: {e}"
                    logger.error("Command %r for %s: %s", action, device_id, warning)
        except (UnknownActionError, DeviceNotFoundError, TransportDisconnectedError) as e:
            logger.warning("Command %r for %s rejected: %s", action, device_id, e)
            return CommandResult(False, device_id, str(action), error=str(e))
        except (PySGCBridgeError, ValueError, OSError) as e:
            logger.error("Command %r for %s failed: %s", action, device_id, e)
            return CommandResult(False, device_id, action, error=f"Command failed: {e}")

        frame_hex = to_hex(frame)
        if warning is None:
            logger.info("Command %s sent to %s: %s (polling suspended)", action, device_id, frame_hex)
        if spec.arms_restore:
            self._arm_restore(device_id)
        return CommandResult(True, device_id, action, frame_hex=frame_hex, warning=warning)

    def resume_polling(self, device_id: str) -> bool:
        """Explicit manual reset: clear the device's suspension. Pending restore timers are left alone."""
        with self._lock(device_id):
            cleared = self._suspensions.clear(device_id)
        if cleared:
            logger.info("Polling resumed for %s", device_id)
        return cleared

    # ------------------------------------------------------------------ restore timers

    def _arm_restore(self, device_id: str) -> None:
        timer: TimerHandle | None = None

        def fire() -> None:
            self._restore(device_id)
            with self._timers_changed:
                if self._timers.get(device_id) is timer:
                    del self._timers[device_id]
                    self._timers_changed.notify_all()

        timer = self._timer_factory(self._restore_delay, fire)
        with self._timers_lock:
            previous = self._timers.pop(device_id, None)
            if previous is not None:
                previous.cancel()
                logger.debug("Restore timer for %s re-armed", device_id)
            self._timers[device_id] = timer
        timer.start()

    def _restore(self, device_id: str) -> None:
        """Re-publish the full polling list. The suspension stays in place."""
        if not self._transport.is_connected:
            logger.warning("Restore for %s skipped: transport not connected", device_id)
            return
        try:
            device = self._registry.lookup(device_id)
            self._transport.publish(device_id, restore_envelope(device.unit_id, self._restore_periodicity))
        except PySGCBridgeError as e:
            logger.error("Restore for %s failed: %s", device_id, e)
            return
        logger.info("Polling list restored for %s", device_id)

    def wait_for_restores(self, timeout: float | None = None) -> bool:
        """Block until every pending restore has fired; False if timeout expired first."""
        with self._timers_changed:
            return self._timers_changed.wait_for(lambda: not self._timers, timeout)

    def cancel_timers(self) -> None:
        with self._timers_changed:
            timers, self._timers = self._timers, {}
            self._timers_changed.notify_all()
        for t in timers.values():
            t.cancel()

    # ------------------------------------------------------------------ periodic polling

    def poll_active_devices(self) -> list[str]:
        """
        Publish the periodic run-hours read for every registered device that is
        not suspended. Returns the device ids polled.
        """
        polled: list[str] = []
        if not self._transport.is_connected:
            logger.debug("Periodic poll skipped: transport not connected")
            return polled
        start, qty = PERIODIC_POLL_BLOCK
        for device in self._registry:
            with self._lock(device.device_id):
                if self._suspensions.is_suspended(device.device_id):
                    continue
                frame = encode_read_request(device.unit_id, start, qty)
                try:
                    self._transport.publish(device.device_id, command_envelope(frame))
                except TransportDisconnectedError as e:
                    logger.warning("Periodic poll for %s failed: %s", device.device_id, e)
                    break
            polled.append(device.device_id)
            logger.debug("Periodic poll sent to %s: %s", device.device_id, to_hex(frame))
        return polled
