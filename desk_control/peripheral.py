"""
Peripheral bridge.

Wraps bleak's client and scanner so every BLE primitive (connect, discover,
read, write, notify) becomes a single awaitable pending operation. At most one
operation per category is in flight; a disconnect fails all of them.
"""

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.backends.service import BleakGATTService
from bleak.exc import BleakError

from desk_control.errors import (
    ConnectFailedError,
    DeskCommunicationError,
    DeskError,
    DisconnectedError,
    NotConnectedError,
    OperationCancelledError,
    RadioNotReadyError,
)

logger = logging.getLogger(__name__)

RADIO_POLL_INTERVAL = 5.0


class RadioState(enum.Enum):
    UNKNOWN = "unknown"
    POWERED_OFF = "powered_off"
    POWERED_ON = "powered_on"


class OperationCategory(enum.Enum):
    CONNECT = "connect"
    DISCOVER_SERVICES = "discover-services"
    DISCOVER_CHARACTERISTICS = "discover-characteristics"
    DISCOVER_DESCRIPTORS = "discover-descriptors"
    READ = "read"
    WRITE = "write"
    NOTIFY = "notify"


class PendingOperation:
    """One outstanding hardware request. Resolves exactly once."""

    def __init__(self, category: OperationCategory, loop: asyncio.AbstractEventLoop, subject: Any = None):
        self.category = category
        self.subject = subject
        self.future: asyncio.Future = loop.create_future()

    @property
    def done(self) -> bool:
        return self.future.done()

    def resolve(self, result: Any = None) -> bool:
        if self.future.done():
            return False
        self.future.set_result(result)
        return True

    def fail(self, error: BaseException) -> bool:
        if self.future.done():
            return False
        self.future.set_exception(error)
        # Nobody may be awaiting a superseded operation any more
        self.future.exception()
        return True

    def __repr__(self) -> str:
        return f"<PendingOperation {self.category.value} done={self.done}>"


Peripheral = BLEDevice | str
StateHandler = Callable[[RadioState], Awaitable[None]]
DiscoverHandler = Callable[[Peripheral], Awaitable[None]]
DisconnectHandler = Callable[[], Awaitable[None]]
UpdateHandler = Callable[[BleakGATTCharacteristic, bytes], Awaitable[None]]


def peripheral_address(peripheral: Peripheral | None) -> str | None:
    """Return the bleak address of a discovered peripheral."""
    if peripheral is None:
        return None
    if isinstance(peripheral, str):
        return peripheral
    return peripheral.address


class PeripheralBridge:
    """Serialized, awaitable access to a single BLE peripheral."""

    def __init__(
        self,
        service_uuid: str,
        address: str | None = None,
        *,
        client_class: Callable[..., BleakClient] = BleakClient,
        scanner_class: Callable[..., BleakScanner] = BleakScanner,
        radio_poll_interval: float = RADIO_POLL_INTERVAL,
    ):
        self.service_uuid = service_uuid.lower()
        self.address = address
        self.radio_poll_interval = radio_poll_interval

        self._client_class = client_class
        self._scanner_class = scanner_class

        self._loop: asyncio.AbstractEventLoop | None = None
        self._peripheral: Peripheral | None = None
        self._client: BleakClient | None = None
        self._scanner: BleakScanner | None = None
        self._connected = False
        self._radio_state = RadioState.UNKNOWN

        self._pending: dict[OperationCategory, PendingOperation] = {}
        self._values: dict[int, bytes] = {}

        self._on_state: StateHandler | None = None
        self._on_discover: DiscoverHandler | None = None
        self._on_disconnect: DisconnectHandler | None = None
        self._on_characteristic_update: UpdateHandler | None = None

        self._events: asyncio.Queue | None = None
        self._workers: list[asyncio.Task] = []
        self._actions: set[asyncio.Task] = set()

    # === PROPERTIES ===

    @property
    def peripheral(self) -> Peripheral | None:
        return self._peripheral

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_scanning(self) -> bool:
        return self._scanner is not None

    @property
    def radio_state(self) -> RadioState:
        return self._radio_state

    def value(self, characteristic: BleakGATTCharacteristic) -> bytes | None:
        """Last value seen for a characteristic, from a read or a notification."""
        return self._values.get(characteristic.handle)

    def pending(self, category: OperationCategory) -> PendingOperation | None:
        """The operation of a category that is still awaiting its callback, if any."""
        operation = self._pending.get(category)
        if operation is None or operation.done:
            return None
        return operation

    # === REGISTER EVENTS ===

    def on_state(self, handler: StateHandler) -> None:
        self._on_state = handler

    def on_discover(self, handler: DiscoverHandler) -> None:
        self._on_discover = handler

    def on_disconnect(self, handler: DisconnectHandler) -> None:
        self._on_disconnect = handler

    def on_characteristic_update(self, handler: UpdateHandler) -> None:
        self._on_characteristic_update = handler

    # === LIFECYCLE ===

    async def start(self) -> None:
        """Start the event worker and the radio watcher."""
        if self._loop is not None:
            return

        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._dispatch_events()),
            asyncio.create_task(self._watch_radio()),
        ]

    async def close(self) -> None:
        """Stop scanning, disconnect and stop the background workers."""
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            await self._stop_scanner(scanner)

        client = self._client
        if client is not None and self._connected:
            try:
                await client.disconnect()
            except BleakError as e:
                logger.debug("Error during disconnect: %s", e)
        self._fail_all(DisconnectedError("Bridge closed"))
        self._connected = False
        self._client = None

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._loop = None

    # === ACTIONS ===

    async def find_peripheral(self) -> None:
        """
        Locate the desk.

        A bound address is used directly and reported as discovered right away.
        Otherwise a scan filtered by the service UUID runs until the first match.

        Raises:
            RadioNotReadyError: If the radio is not powered on or a scan is already active
        """
        if self._radio_state is not RadioState.POWERED_ON or self._scanner is not None:
            raise RadioNotReadyError(f"Cannot scan, radio is {self._radio_state.value}")

        if self.address:
            self._did_discover(self.address)
            return

        scanner = self._scanner_class(
            detection_callback=self._handle_detection,
            service_uuids=[self.service_uuid],
        )
        self._scanner = scanner
        try:
            await scanner.start()
        except BleakError as e:
            self._scanner = None
            raise RadioNotReadyError(f"Failed to start scan: {e}") from e

        logger.info("Scanning for peripherals advertising %s", self.service_uuid)

    async def connect(self) -> None:
        """
        Connect to the discovered peripheral. No-op if already connected.

        Raises:
            RadioNotReadyError: If the radio is not powered on
            ConnectFailedError: If the platform reports a failure
            DisconnectedError: If the link dropped before the connect completed
        """
        peripheral = self._peripheral
        if self._connected or peripheral is None:
            return

        if self._radio_state is not RadioState.POWERED_ON:
            raise RadioNotReadyError(f"Cannot connect, radio is {self._radio_state.value}")

        async def action():
            client = self._client_class(peripheral, disconnected_callback=self._handle_disconnect)
            self._client = client
            await client.connect()
            return client

        client = await self._perform(OperationCategory.CONNECT, action, join=True)
        # A disconnect delivered between completion and resumption already dropped the client
        if client is None or self._client is not client:
            raise DisconnectedError("Peripheral disconnected while connecting")
        self._connected = True

    async def discover_services(self, uuids: list[str] | None = None) -> list[BleakGATTService]:
        """Discover services, optionally filtered by UUID."""
        client = self._require_client()

        async def action():
            return [s for s in client.services if uuids is None or s.uuid in uuids]

        return await self._perform(OperationCategory.DISCOVER_SERVICES, action)

    async def discover_characteristics(
        self, uuids: list[str] | None, service: BleakGATTService
    ) -> list[BleakGATTCharacteristic]:
        """Discover the characteristics of a service, optionally filtered by UUID."""
        self._require_client()

        async def action():
            return [c for c in service.characteristics if uuids is None or c.uuid in uuids]

        return await self._perform(OperationCategory.DISCOVER_CHARACTERISTICS, action, subject=service)

    async def discover_descriptors(self, characteristic: BleakGATTCharacteristic) -> list:
        """Discover the descriptors of a characteristic."""
        self._require_client()

        async def action():
            return list(characteristic.descriptors)

        return await self._perform(
            OperationCategory.DISCOVER_DESCRIPTORS, action, subject=characteristic
        )

    async def read_value(self, characteristic: BleakGATTCharacteristic) -> bytes:
        """
        Read a characteristic.

        A read already in flight is joined instead of issuing a second one.
        """
        client = self._require_client()

        async def action():
            return await client.read_gatt_char(characteristic)

        return await self._perform(
            OperationCategory.READ, action, subject=characteristic, join=True
        )

    async def write_value(self, data: bytes, characteristic: BleakGATTCharacteristic) -> None:
        """Write with response. Supersedes any write still pending."""
        client = self._require_client()

        async def action():
            await client.write_gatt_char(characteristic, data, response=True)

        await self._perform(OperationCategory.WRITE, action, subject=characteristic)

    async def set_notify_value(self, enabled: bool, characteristic: BleakGATTCharacteristic) -> None:
        """Enable or disable notifications. Supersedes any notify request still pending."""
        client = self._require_client()

        async def action():
            if enabled:
                await client.start_notify(characteristic, self._handle_notification)
            else:
                await client.stop_notify(characteristic)

        await self._perform(OperationCategory.NOTIFY, action, subject=characteristic)

    def update_radio_state(self, state: RadioState) -> None:
        """Report a radio state change. Safe to call from any thread."""
        self._call_in_loop(self._did_update_radio_state, state)

    # === DELEGATE (may run off the event loop thread) ===

    def _handle_detection(self, device: BLEDevice, advertisement_data: AdvertisementData) -> None:
        service_uuids = [u.lower() for u in advertisement_data.service_uuids or []]
        if self.service_uuid in service_uuids:
            self._call_in_loop(self._did_discover, device)

    def _handle_disconnect(self, client: BleakClient) -> None:
        self._call_in_loop(self._did_disconnect, client)

    def _handle_notification(self, characteristic: BleakGATTCharacteristic, data: bytearray) -> None:
        self._call_in_loop(self._did_update_value, characteristic, bytes(data))

    def _call_in_loop(self, callback: Callable[..., None], *args) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            callback(*args)
        else:
            loop.call_soon_threadsafe(callback, *args)

    # === EVENTS ===

    def _did_update_radio_state(self, state: RadioState) -> None:
        if state is self._radio_state:
            return

        logger.info("Bluetooth radio is %s", state.value)
        self._radio_state = state

        if state is not RadioState.POWERED_ON:
            self._fail_all(DisconnectedError("Bluetooth radio powered off"))
            self._connected = False
            self._client = None
            self._release_scanner()

        self._dispatch(self._on_state, state)

    def _did_discover(self, peripheral: Peripheral) -> None:
        if self._peripheral is not None:
            return

        self._peripheral = peripheral
        logger.info("Discovered peripheral %s", peripheral_address(peripheral))
        self._release_scanner()

        self._dispatch(self._on_discover, peripheral)

    def _did_disconnect(self, client: BleakClient) -> None:
        if client is not self._client:
            logger.debug("Ignoring disconnect from a stale client")
            return

        self._fail_all(DisconnectedError("Peripheral disconnected"))
        self._client = None

        if not self._connected:
            return

        self._connected = False
        logger.info("Peripheral %s disconnected", peripheral_address(self._peripheral))
        self._dispatch(self._on_disconnect)

    def _did_update_value(
        self,
        characteristic: BleakGATTCharacteristic,
        data: bytes,
        answering: PendingOperation | None = None,
    ) -> None:
        self._values[characteristic.handle] = data

        pending = answering or self._pending.get(OperationCategory.READ)
        if (
            pending is not None
            and not pending.done
            and pending.subject.handle == characteristic.handle
            and pending.resolve(data)
        ):
            return

        self._dispatch(self._on_characteristic_update, characteristic, data)

    # === UTILS ===

    def _require_client(self) -> BleakClient:
        if not self._connected or self._client is None:
            raise NotConnectedError("Not connected to peripheral")
        return self._client

    async def _perform(
        self,
        category: OperationCategory,
        action: Callable[[], Awaitable[Any]],
        *,
        subject: Any = None,
        join: bool = False,
    ) -> Any:
        current = self.pending(category)
        if current is not None:
            if join:
                return await asyncio.shield(current.future)
            logger.debug("Cancelling pending %s operation", category.value)
            current.fail(OperationCancelledError(f"Superseded by a new {category.value} request"))

        operation = PendingOperation(category, self._loop, subject)
        self._pending[category] = operation

        task = self._loop.create_task(action())
        self._actions.add(task)
        task.add_done_callback(lambda t: self._did_complete(operation, t))

        try:
            return await asyncio.shield(operation.future)
        finally:
            if self._pending.get(category) is operation:
                del self._pending[category]

    def _did_complete(self, operation: PendingOperation, task: asyncio.Task) -> None:
        self._actions.discard(task)

        if task.cancelled():
            operation.fail(OperationCancelledError(f"{operation.category.value} aborted"))
            return

        error = task.exception()
        if error is not None:
            if not operation.fail(self._translate(operation.category, error)):
                logger.debug("Ignoring late %s failure: %s", operation.category.value, error)
            return

        if operation.category is OperationCategory.READ:
            self._did_update_value(operation.subject, bytes(task.result()), answering=operation)
        elif not operation.resolve(task.result()):
            logger.debug("Ignoring late %s completion", operation.category.value)

    @staticmethod
    def _translate(category: OperationCategory, error: BaseException) -> BaseException:
        if isinstance(error, DeskError):
            return error
        if category is OperationCategory.CONNECT:
            failure = ConnectFailedError(f"Connection failed: {error}")
        else:
            failure = DeskCommunicationError(f"{category.value} failed: {error}")
        failure.__cause__ = error
        return failure

    def _fail_all(self, error: DeskError) -> None:
        for operation in list(self._pending.values()):
            operation.fail(error)
        self._pending.clear()

    def _dispatch(self, handler: Callable[..., Awaitable[None]] | None, *args) -> None:
        if handler is None or self._events is None:
            return
        self._events.put_nowait((handler, args))

    async def _dispatch_events(self) -> None:
        while True:
            handler, args = await self._events.get()
            try:
                await handler(*args)
            except Exception:
                logger.exception("Peripheral event handler failed")

    async def _watch_radio(self) -> None:
        while True:
            # The radio check needs the adapter to itself
            if not self._connected and self._scanner is None and self.pending(OperationCategory.CONNECT) is None:
                self._did_update_radio_state(await self._check_radio())
            await asyncio.sleep(self.radio_poll_interval)

    async def _check_radio(self) -> RadioState:
        try:
            scanner = self._scanner_class()
            await scanner.start()
            await scanner.stop()
        except (BleakError, OSError) as e:
            logger.debug("Radio check failed: %s", e)
            return RadioState.POWERED_OFF
        return RadioState.POWERED_ON

    def _release_scanner(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            self._spawn(self._stop_scanner(scanner))

    async def _stop_scanner(self, scanner: BleakScanner) -> None:
        try:
            await scanner.stop()
        except BleakError as e:
            logger.debug("Error stopping scan: %s", e)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._actions.add(task)
        task.add_done_callback(self._actions.discard)
