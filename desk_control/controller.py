"""
IKEA Idåsen / Linak Standing Desk Controller

Keeps a connection to one desk alive (scan, connect, discover, subscribe,
retry forever) and moves it with the firmware's move-to characteristic.
"""

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from bleak.backends.characteristic import BleakGATTCharacteristic

from desk_control.errors import (
    DeskCommunicationError,
    DeskConnectionError,
    DeskError,
    DeskNotFoundError,
    DisconnectedError,
    InvalidPositionCommandError,
    MalformedPayloadError,
    MissingCharacteristicsError,
    MissingServicesError,
    NotConnectedError,
    OperationCancelledError,
)
from desk_control.peripheral import Peripheral, PeripheralBridge, RadioState, peripheral_address
from desk_control.protocol import (
    CMD_STOP,
    CMD_UNDEFINED,
    MAX_POSITION,
    MIN_POSITION,
    UUID_COMMAND,
    UUID_CONTROL_SERVICE,
    UUID_MOVE_TO,
    UUID_MOVE_TO_SERVICE,
    UUID_POSITION,
    UUID_POSITION_SERVICE,
    DeskState,
    decode_state,
    encode_move_to,
    raw_target,
)

logger = logging.getLogger(__name__)

# === TIMING (seconds) ===
RETRY_INTERVAL = 5.0
SETTLE_DELAY = 0.8
POLL_INTERVAL = 0.5

ConnectedCallback = Callable[[DeskState], Awaitable[None]]
DisconnectedCallback = Callable[[], Awaitable[None]]


class ConnectionState(enum.Enum):
    POWERED_OFF = "powered_off"
    IDLE = "idle"
    SCANNING = "scanning"
    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    DISCOVERING_SERVICES = "discovering_services"
    READY = "ready"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class Connection:
    """Characteristic handles of a live desk session."""

    device_id: str
    position: BleakGATTCharacteristic
    command: BleakGATTCharacteristic
    move_to: BleakGATTCharacteristic


@dataclass(eq=False)
class MoveTask:
    """An in-progress movement towards a raw target position."""

    target: int
    is_moving: bool = False
    cancelled: bool = False
    runner: asyncio.Task | None = None

    def cancel(self) -> None:
        self.cancelled = True

    async def join(self) -> None:
        """Wait for the move loop to exit, whatever its outcome."""
        if self.runner is not None:
            await asyncio.wait({self.runner})


class DeskController:
    """Controller for IKEA Idåsen / Linak standing desk."""

    def __init__(
        self,
        address: str | None = None,
        *,
        min_position: float = MIN_POSITION,
        max_position: float = MAX_POSITION,
        retry_interval: float = RETRY_INTERVAL,
        settle_delay: float = SETTLE_DELAY,
        poll_interval: float = POLL_INTERVAL,
        bridge: PeripheralBridge | None = None,
    ):
        self.min_position = min_position
        self.max_position = max_position
        self.retry_interval = retry_interval
        self.settle_delay = settle_delay
        self.poll_interval = poll_interval

        self._bridge = bridge or PeripheralBridge(UUID_CONTROL_SERVICE, address)
        self._state = ConnectionState.IDLE
        self._started = False
        self._powered_on = False
        self._shutting_down = False

        self._connection: Connection | None = None
        self._desk_state: DeskState | None = None
        self._move: MoveTask | None = None

        self._ready = asyncio.Event()
        self._setup_lock = asyncio.Lock()
        self._command_lock = asyncio.Lock()
        self._retry_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

        self._on_connected: list[ConnectedCallback] = []
        self._on_disconnected: list[DisconnectedCallback] = []
        self._on_state_changed: list[ConnectedCallback] = []

        self._bridge.on_state(self._on_radio_state)
        self._bridge.on_discover(self._on_discover)
        self._bridge.on_disconnect(self._on_disconnect)
        self._bridge.on_characteristic_update(self._on_characteristic_update)

    # === PROPERTIES ===

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def desk_state(self) -> DeskState | None:
        """Last published desk state, None while disconnected."""
        return self._desk_state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.READY and self._connection is not None

    @property
    def is_moving(self) -> bool:
        return self._move is not None

    # === REGISTER EVENTS ===

    def on_connected(self, callback: ConnectedCallback) -> None:
        """Register a callback receiving the first DeskState of every connection."""
        self._on_connected.append(callback)

    def on_disconnected(self, callback: DisconnectedCallback) -> None:
        self._on_disconnected.append(callback)

    def on_state_changed(self, callback: ConnectedCallback) -> None:
        """Register a callback receiving every DeskState that differs from the previous one."""
        self._on_state_changed.append(callback)

    # === LIFECYCLE ===

    async def start(self) -> None:
        """Start the connection lifecycle. Connecting happens in the background."""
        if self._started:
            return

        self._started = True
        self._shutting_down = False
        await self._bridge.start()

    async def wait_until_ready(self, timeout: float = 30.0) -> DeskState:
        """
        Wait until the desk is connected.

        Raises:
            DeskNotFoundError: If the desk is not ready within the timeout
        """
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise DeskNotFoundError(f"Desk not ready after {timeout:.0f}s. Is it powered on?") from e
        return self._desk_state

    async def shutdown(self) -> None:
        """Stop any movement, disconnect and stop retrying."""
        self._shutting_down = True

        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None

        move = self._move
        if move is not None:
            move.cancel()
            await move.join()

        await self._bridge.close()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self._teardown(ConnectionState.IDLE)
        self._started = False
        self._powered_on = False

    # === EVENTS ===

    async def _on_radio_state(self, state: RadioState) -> None:
        if state is not RadioState.POWERED_ON:
            self._powered_on = False
            await self._teardown(ConnectionState.POWERED_OFF)
            return

        if self._powered_on:
            return

        self._powered_on = True
        self._set_state(ConnectionState.IDLE)
        self._spawn(self._setup())

    async def _on_discover(self, peripheral: Peripheral) -> None:
        self._set_state(ConnectionState.DISCOVERED)
        self._spawn(self._setup())

    async def _on_disconnect(self) -> None:
        # Failures during setup schedule their own retry
        if self._connection is None:
            return

        await self._teardown(ConnectionState.DISCONNECTED)
        self._schedule_retry()

    async def _on_characteristic_update(self, characteristic: BleakGATTCharacteristic, data: bytes) -> None:
        connection = self._connection
        if connection is None or characteristic.handle != connection.position.handle:
            return

        try:
            desk_state = decode_state(connection.device_id, data, self.min_position)
        except MalformedPayloadError as e:
            logger.warning("Ignoring position update: %s", e)
            return

        # Speed drops to zero when someone stops the desk with its own buttons
        move = self._move
        if move is not None and move.is_moving and desk_state.speed == 0:
            logger.info("Desk stopped externally at %.2fcm, cancelling move", desk_state.position)
            move.cancel()

        if desk_state != self._desk_state:
            self._desk_state = desk_state
            await self._emit(self._on_state_changed, desk_state)

    # === SETUP ===

    async def _setup(self) -> None:
        if not (self._started and self._powered_on) or self._shutting_down:
            return

        async with self._setup_lock:
            if self._connection is not None or self._bridge.is_scanning:
                return

            try:
                peripheral = self._bridge.peripheral
                if peripheral is not None:
                    await self._connect_and_discover(peripheral)
                else:
                    self._set_state(ConnectionState.SCANNING)
                    await self._bridge.find_peripheral()
            except DeskError as e:
                logger.error("Failed to connect: %s", e)
                self._set_state(ConnectionState.DISCONNECTED)
                self._schedule_retry()

    def _schedule_retry(self) -> None:
        if self._shutting_down or not self._powered_on:
            return
        if self._retry_task is not None and not self._retry_task.done():
            return

        logger.debug("Retrying in %.1fs", self.retry_interval)
        self._retry_task = asyncio.create_task(self._retry())

    async def _retry(self) -> None:
        await asyncio.sleep(self.retry_interval)
        self._retry_task = None
        await self._setup()

    async def _discover(self) -> dict[str, list[BleakGATTCharacteristic]]:
        services = await self._bridge.discover_services(None)
        if not services:
            raise MissingServicesError("Desk exposes no services")

        found = {}
        for service in services:
            found[service.uuid.lower()] = await self._bridge.discover_characteristics(None, service)

        missing = [
            uuid
            for uuid in (UUID_POSITION_SERVICE, UUID_CONTROL_SERVICE, UUID_MOVE_TO_SERVICE)
            if uuid not in found
        ]
        if missing:
            raise MissingServicesError(f"Missing services: {', '.join(missing)}")

        return found

    @staticmethod
    def _characteristic(
        found: dict[str, list[BleakGATTCharacteristic]], service_uuid: str, uuid: str
    ) -> BleakGATTCharacteristic:
        for characteristic in found[service_uuid]:
            if characteristic.uuid.lower() == uuid:
                return characteristic
        raise MissingCharacteristicsError(f"Missing characteristic {uuid}")

    async def _connect_and_discover(self, peripheral: Peripheral) -> None:
        device_id = peripheral_address(peripheral)
        logger.info("Connecting to %s...", device_id)

        self._set_state(ConnectionState.CONNECTING)
        await self._bridge.connect()

        self._set_state(ConnectionState.DISCOVERING_SERVICES)
        found = await self._discover()
        position = self._characteristic(found, UUID_POSITION_SERVICE, UUID_POSITION)
        command = self._characteristic(found, UUID_CONTROL_SERVICE, UUID_COMMAND)
        move_to = self._characteristic(found, UUID_MOVE_TO_SERVICE, UUID_MOVE_TO)

        await self._bridge.read_value(position)
        await self._bridge.set_notify_value(True, position)

        connection = Connection(device_id=device_id, position=position, command=command, move_to=move_to)
        desk_state = self._read_state(connection)

        self._connection = connection
        self._desk_state = desk_state
        self._set_state(ConnectionState.READY)
        self._ready.set()

        logger.info("Connected to %s at %.2fcm", device_id, desk_state.position)
        await self._emit(self._on_connected, desk_state)

    async def _teardown(self, state: ConnectionState) -> None:
        connection, self._connection = self._connection, None
        self._desk_state = None
        self._ready.clear()

        if self._move is not None:
            self._move.cancel()

        if state is ConnectionState.POWERED_OFF and self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None

        self._set_state(state)

        if connection is not None:
            logger.info("Disconnected from %s", connection.device_id)
            await self._emit(self._on_disconnected)

    # === DESK STATE ===

    def _read_state(self, connection: Connection) -> DeskState:
        return decode_state(
            connection.device_id,
            self._bridge.value(connection.position),
            self.min_position,
        )

    def _require_connection(self) -> Connection:
        if self._state is not ConnectionState.READY or self._connection is None:
            raise NotConnectedError("Desk is not connected")
        return self._connection

    # === MOVE ===

    async def move(self, position: float) -> bool:
        """
        Move the desk to a position in cm.

        Any movement in progress is stopped first, so at most one movement
        sequence is ever live.

        Args:
            position: Target position, within min_position..max_position

        Returns:
            True if the target was reached, False if the move was stopped,
            superseded, overridden at the desk, lost with the connection or
            failed mid-write (a STOP is then attempted)

        Raises:
            InvalidPositionCommandError: If the position is out of range
            NotConnectedError: If the desk is not connected
        """
        if not self.min_position <= position <= self.max_position:
            raise InvalidPositionCommandError(
                f"Position {position} outside {self.min_position}-{self.max_position}"
            )
        self._require_connection()

        async with self._command_lock:
            await self._stop_move()

            connection = self._require_connection()
            target = raw_target(position, self.min_position)
            if self._read_state(connection).raw_position == target:
                logger.debug("Desk already at %.2fcm", position)
                return True

            move = MoveTask(target=target)
            move.runner = asyncio.create_task(self._run_move(connection, move))
            self._move = move
            logger.info("Moving to %.2fcm", position)

        return await asyncio.shield(move.runner)

    async def _run_move(self, connection: Connection, move: MoveTask) -> bool:
        try:
            return await self._perform_move(connection, move)
        except (DeskConnectionError, NotConnectedError, OperationCancelledError) as e:
            logger.warning("Move aborted: %s", e)
            return False
        except DeskCommunicationError as e:
            logger.warning("Move failed: %s", e)
            await self._release_motor(connection)
            return False
        finally:
            if self._move is move:
                self._move = None

    async def _perform_move(self, connection: Connection, move: MoveTask) -> bool:
        payload = encode_move_to(move.target)

        # The move-to characteristic ignores targets until it has seen an UNDEFINED command
        await self._bridge.write_value(CMD_UNDEFINED, connection.command)
        # Writing the target right away is unreliable on real hardware
        await asyncio.sleep(self.settle_delay)

        while not move.cancelled:
            pause = asyncio.ensure_future(asyncio.sleep(self.poll_interval))
            try:
                await self._bridge.write_value(payload, connection.move_to)
                await pause
            finally:
                pause.cancel()

            # Arriving also drops the speed to zero, so check the target before cancellation
            desk_state = self._read_state(connection)
            if desk_state.raw_position == move.target:
                await self._bridge.write_value(CMD_STOP, connection.command)
                await self._bridge.write_value(CMD_UNDEFINED, connection.command)
                logger.info("✅ Done: %.2fcm", desk_state.position)
                return True

            if move.cancelled:
                break
            move.is_moving = True

        logger.info("🛑 Move cancelled")
        return False

    async def _release_motor(self, connection: Connection) -> None:
        try:
            await self._bridge.write_value(CMD_STOP, connection.command)
        except DeskError as e:
            logger.warning("Could not stop desk after failed move: %s", e)

    async def _stop_move(self) -> None:
        move = self._move
        if move is None:
            return

        move.cancel()
        await move.join()
        if self._move is move:
            self._move = None

    async def stop(self) -> None:
        """
        Stop desk movement.

        Returns only after any move loop has exited, then sends STOP.

        Raises:
            NotConnectedError: If the desk is not connected
        """
        connection = self._require_connection()

        async with self._command_lock:
            await self._stop_move()
            try:
                await self._bridge.write_value(CMD_STOP, connection.command)
            except DisconnectedError as e:
                raise NotConnectedError(f"Lost connection while stopping: {e}") from e

        logger.info("🛑 Stopped")

    # === UTILS ===

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("Connection state %s -> %s", self._state.value, state.value)
        self._state = state

    async def _emit(self, callbacks: list[Callable[..., Awaitable[None]]], *args) -> None:
        for callback in callbacks:
            try:
                await callback(*args)
            except Exception:
                logger.exception("Desk event callback failed")

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
