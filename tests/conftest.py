"""
Shared fakes for the desk test suite.

FakeDesk simulates the Linak firmware behind a bleak-shaped client, FakeRadio
hands out bleak-shaped scanners. Both are injected through the
``client_class`` / ``scanner_class`` parameters of PeripheralBridge.
"""

import asyncio
import struct
from types import SimpleNamespace

import pytest
from bleak.exc import BleakError

from desk_control.controller import DeskController
from desk_control.peripheral import PeripheralBridge
from desk_control.protocol import (
    UUID_COMMAND,
    UUID_CONTROL_SERVICE,
    UUID_MOVE_TO,
    UUID_MOVE_TO_SERVICE,
    UUID_POSITION,
    UUID_POSITION_SERVICE,
)

DESK_ADDRESS = "AA:BB:CC:DD:EE:FF"


class FakeCharacteristic:
    def __init__(self, uuid: str, handle: int):
        self.uuid = uuid
        self.handle = handle
        self.descriptors = []

    def __repr__(self) -> str:
        return f"<FakeCharacteristic {self.uuid}>"


class FakeService:
    def __init__(self, uuid: str, characteristics: list[FakeCharacteristic]):
        self.uuid = uuid
        self.characteristics = characteristics


def desk_services() -> list[FakeService]:
    return [
        FakeService(UUID_CONTROL_SERVICE, [FakeCharacteristic(UUID_COMMAND, 10)]),
        FakeService(UUID_POSITION_SERVICE, [FakeCharacteristic(UUID_POSITION, 20)]),
        FakeService(UUID_MOVE_TO_SERVICE, [FakeCharacteristic(UUID_MOVE_TO, 30)]),
    ]


class FakeDesk:
    """
    Simulated desk firmware.

    Each move-to write travels ``step`` raw units towards the target and
    notifies the new position. ``step=None`` arrives at once, ``step=0`` never
    moves.
    """

    def __init__(self, raw_position: int = 0, step: int | None = None):
        self.raw_position = raw_position
        self.raw_speed = 0
        self.step = step
        self.services = desk_services()

        self.writes: list[tuple[str, bytes]] = []
        self.reads = 0
        self.connects = 0
        self.connect_error: Exception | None = None
        self.on_write = None
        self.connect_gate: asyncio.Event | None = None
        self.read_gate: asyncio.Event | None = None
        self.write_gate: asyncio.Event | None = None
        self.notify_gate: asyncio.Event | None = None

        self.client: "FakeClient | None" = None
        self.notify_callback = None

    def client_class(self, peripheral, disconnected_callback=None) -> "FakeClient":
        self.client = FakeClient(self, peripheral, disconnected_callback)
        return self.client

    def characteristic(self, uuid: str) -> FakeCharacteristic:
        for service in self.services:
            for characteristic in service.characteristics:
                if characteristic.uuid == uuid:
                    return characteristic
        raise KeyError(uuid)

    def payload(self) -> bytes:
        return struct.pack("<Hh", self.raw_position, self.raw_speed)

    def writes_to(self, uuid: str) -> list[bytes]:
        return [data for target, data in self.writes if target == uuid]

    def notify(self, raw_position: int | None = None, raw_speed: int | None = None) -> None:
        if raw_position is not None:
            self.raw_position = raw_position
        if raw_speed is not None:
            self.raw_speed = raw_speed
        if self.notify_callback is not None:
            self.notify_callback(self.characteristic(UUID_POSITION), bytearray(self.payload()))

    def drop(self) -> None:
        """Simulate the desk going out of range."""
        client = self.client
        self.notify_callback = None
        if client is not None and client.is_connected:
            client.is_connected = False
            if client.disconnected_callback is not None:
                client.disconnected_callback(client)

    def travel(self, target: int) -> None:
        if self.step == 0:
            return
        if self.step is None or abs(target - self.raw_position) <= self.step:
            self.notify(target, 0)
            return
        direction = 1 if target > self.raw_position else -1
        self.notify(self.raw_position + direction * self.step, direction * self.step)


class FakeClient:
    """Stand-in for bleak.BleakClient bound to a FakeDesk."""

    def __init__(self, desk: FakeDesk, peripheral, disconnected_callback=None):
        self.desk = desk
        self.peripheral = peripheral
        self.disconnected_callback = disconnected_callback
        self.is_connected = False

    @property
    def services(self) -> list[FakeService]:
        return self.desk.services

    async def connect(self) -> None:
        self.desk.connects += 1
        await asyncio.sleep(0)
        if self.desk.connect_gate is not None:
            await self.desk.connect_gate.wait()
        if self.desk.connect_error is not None:
            raise self.desk.connect_error
        self.is_connected = True

    async def disconnect(self) -> None:
        self.is_connected = False

    async def read_gatt_char(self, characteristic) -> bytearray:
        self.desk.reads += 1
        if self.desk.read_gate is not None:
            await self.desk.read_gate.wait()
        return bytearray(self.desk.payload())

    async def write_gatt_char(self, characteristic, data, response=False) -> None:
        if self.desk.write_gate is not None:
            await self.desk.write_gate.wait()
        data = bytes(data)
        self.desk.writes.append((characteristic.uuid, data))
        if self.desk.on_write is not None:
            self.desk.on_write(characteristic.uuid, data)
        if characteristic.uuid == UUID_MOVE_TO:
            self.desk.travel(struct.unpack("<H", data)[0])

    async def start_notify(self, characteristic, callback) -> None:
        if self.desk.notify_gate is not None:
            await self.desk.notify_gate.wait()
        self.desk.notify_callback = callback

    async def stop_notify(self, characteristic) -> None:
        self.desk.notify_callback = None


class FakeRadio:
    """Bluetooth adapter: hands out scanners that fail while powered off."""

    def __init__(self, powered: bool = True):
        self.powered = powered
        self.active: list["FakeScanner"] = []

    def scanner_class(self, detection_callback=None, service_uuids=None) -> "FakeScanner":
        return FakeScanner(self, detection_callback, service_uuids)

    def advertise(self, address: str, service_uuids: list[str], name: str = "Desk 1234") -> None:
        device = SimpleNamespace(address=address, name=name)
        advertisement = SimpleNamespace(service_uuids=service_uuids)
        for scanner in list(self.active):
            if scanner.detection_callback is not None:
                scanner.detection_callback(device, advertisement)


class FakeScanner:
    def __init__(self, radio: FakeRadio, detection_callback=None, service_uuids=None):
        self.radio = radio
        self.detection_callback = detection_callback
        self.service_uuids = service_uuids

    async def start(self) -> None:
        if not self.radio.powered:
            raise BleakError("Bluetooth device is turned off")
        self.radio.active.append(self)

    async def stop(self) -> None:
        if self in self.radio.active:
            self.radio.active.remove(self)


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Wait until predicate() is true, failing the test after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def desk():
    return FakeDesk(raw_position=3800)


@pytest.fixture
def radio():
    return FakeRadio()


@pytest.fixture
def make_bridge(desk, radio):
    def factory(address: str | None = DESK_ADDRESS) -> PeripheralBridge:
        return PeripheralBridge(
            UUID_CONTROL_SERVICE,
            address,
            client_class=desk.client_class,
            scanner_class=radio.scanner_class,
            radio_poll_interval=0.01,
        )

    return factory


@pytest.fixture
async def bridge(make_bridge):
    bridge = make_bridge()
    await bridge.start()
    yield bridge
    await bridge.close()


@pytest.fixture
async def make_controller(make_bridge):
    controllers = []

    def factory(address: str | None = DESK_ADDRESS, **kwargs) -> DeskController:
        options = {"retry_interval": 0.05, "settle_delay": 0, "poll_interval": 0.01}
        options.update(kwargs)
        controller = DeskController(bridge=make_bridge(address), **options)
        controllers.append(controller)
        return controller

    yield factory

    for controller in controllers:
        await controller.shutdown()


@pytest.fixture
def controller(make_controller):
    return make_controller()


@pytest.fixture
async def ready_controller(controller, desk):
    await controller.start()
    await controller.wait_until_ready(2.0)
    yield controller
