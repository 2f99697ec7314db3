"""Tests for PeripheralBridge: one pending operation per category, lifecycle events."""

import asyncio

import pytest
from bleak.exc import BleakError

from conftest import DESK_ADDRESS, eventually
from desk_control.errors import (
    ConnectFailedError,
    DisconnectedError,
    NotConnectedError,
    OperationCancelledError,
    RadioNotReadyError,
)
from desk_control.peripheral import OperationCategory, PendingOperation, RadioState
from desk_control.protocol import UUID_COMMAND, UUID_CONTROL_SERVICE, UUID_POSITION


async def connected(bridge):
    await eventually(lambda: bridge.radio_state is RadioState.POWERED_ON)
    await bridge.find_peripheral()
    await bridge.connect()
    return bridge


class TestPendingOperation:
    async def test_resolves_exactly_once(self):
        operation = PendingOperation(OperationCategory.READ, asyncio.get_running_loop())
        assert operation.resolve(b"\x01")
        assert not operation.resolve(b"\x02")
        assert not operation.fail(DisconnectedError("gone"))
        assert await operation.future == b"\x01"

    async def test_failed_operation_does_not_warn_when_unawaited(self):
        operation = PendingOperation(OperationCategory.WRITE, asyncio.get_running_loop())
        assert operation.fail(OperationCancelledError("superseded"))
        assert operation.done


class TestRadio:
    async def test_radio_watcher_reports_powered_on(self, bridge):
        await eventually(lambda: bridge.radio_state is RadioState.POWERED_ON)

    async def test_radio_watcher_reports_powered_off(self, radio, make_bridge):
        radio.powered = False
        bridge = make_bridge()
        await bridge.start()
        try:
            await eventually(lambda: bridge.radio_state is RadioState.POWERED_OFF)
            with pytest.raises(RadioNotReadyError):
                await bridge.find_peripheral()
        finally:
            await bridge.close()

    async def test_state_handler_is_called(self, make_bridge):
        states = []
        bridge = make_bridge()

        async def on_state(state):
            states.append(state)

        bridge.on_state(on_state)
        await bridge.start()
        try:
            await eventually(lambda: states == [RadioState.POWERED_ON])
        finally:
            await bridge.close()


class TestDiscovery:
    async def test_bound_address_is_discovered_immediately(self, bridge):
        discovered = []

        async def on_discover(peripheral):
            discovered.append(peripheral)

        bridge.on_discover(on_discover)
        await eventually(lambda: bridge.radio_state is RadioState.POWERED_ON)
        await bridge.find_peripheral()

        await eventually(lambda: discovered == [DESK_ADDRESS])
        assert not bridge.is_scanning

    async def test_scan_stops_at_first_matching_advertisement(self, radio, make_bridge):
        discovered = []
        bridge = make_bridge(address=None)

        async def on_discover(peripheral):
            discovered.append(peripheral)

        bridge.on_discover(on_discover)
        await bridge.start()
        try:
            await eventually(lambda: bridge.radio_state is RadioState.POWERED_ON)
            await bridge.find_peripheral()
            assert bridge.is_scanning

            radio.advertise("11:22:33:44:55:66", ["0000180f-0000-1000-8000-00805f9b34fb"])
            radio.advertise("AA:AA:AA:AA:AA:AA", [UUID_CONTROL_SERVICE.upper()])
            radio.advertise("BB:BB:BB:BB:BB:BB", [UUID_CONTROL_SERVICE])

            await eventually(lambda: len(discovered) == 1)
            assert discovered[0].address == "AA:AA:AA:AA:AA:AA"
            assert bridge.peripheral is discovered[0]
            assert not bridge.is_scanning
        finally:
            await bridge.close()

    async def test_second_scan_while_scanning_is_rejected(self, make_bridge):
        bridge = make_bridge(address=None)
        await bridge.start()
        try:
            await eventually(lambda: bridge.radio_state is RadioState.POWERED_ON)
            await bridge.find_peripheral()
            with pytest.raises(RadioNotReadyError):
                await bridge.find_peripheral()
        finally:
            await bridge.close()

    async def test_discover_services_filters_by_uuid(self, bridge):
        await connected(bridge)
        services = await bridge.discover_services([UUID_CONTROL_SERVICE])
        assert [s.uuid for s in services] == [UUID_CONTROL_SERVICE]

        characteristics = await bridge.discover_characteristics(None, services[0])
        assert [c.uuid for c in characteristics] == [UUID_COMMAND]
        assert await bridge.discover_descriptors(characteristics[0]) == []


class TestConnect:
    async def test_connect_is_idempotent(self, bridge, desk):
        await connected(bridge)
        await bridge.connect()
        assert bridge.is_connected
        assert desk.connects == 1

    async def test_concurrent_connects_join(self, bridge, desk):
        await eventually(lambda: bridge.radio_state is RadioState.POWERED_ON)
        await bridge.find_peripheral()
        await asyncio.gather(bridge.connect(), bridge.connect())
        assert desk.connects == 1

    async def test_platform_failure_becomes_connect_failed(self, bridge, desk):
        desk.connect_error = BleakError("Device with address not found")
        with pytest.raises(ConnectFailedError) as excinfo:
            await connected(bridge)
        assert isinstance(excinfo.value.__cause__, BleakError)
        assert not bridge.is_connected

    async def test_disconnect_between_completion_and_resume(self, bridge, desk):
        await eventually(lambda: bridge.radio_state is RadioState.POWERED_ON)
        await bridge.find_peripheral()
        desk.connect_gate = asyncio.Event()

        connect = asyncio.create_task(bridge.connect())
        await eventually(lambda: bridge.pending(OperationCategory.CONNECT) is not None)
        # Runs after the operation resolves, before connect() resumes
        bridge.pending(OperationCategory.CONNECT).future.add_done_callback(lambda _: desk.drop())
        desk.connect_gate.set()

        with pytest.raises(DisconnectedError):
            await connect
        assert not bridge.is_connected

        desk.connect_gate = None
        await bridge.connect()
        assert bridge.is_connected
        assert desk.connects == 2

    async def test_operations_require_connection(self, bridge, desk):
        with pytest.raises(NotConnectedError):
            await bridge.write_value(b"\xff\x00", desk.characteristic(UUID_COMMAND))


class TestOperations:
    async def test_concurrent_reads_are_joined(self, bridge, desk):
        await connected(bridge)
        position = desk.characteristic(UUID_POSITION)
        desk.read_gate = asyncio.Event()

        first = asyncio.create_task(bridge.read_value(position))
        second = asyncio.create_task(bridge.read_value(position))
        await eventually(lambda: desk.reads == 1)
        desk.read_gate.set()

        assert await first == await second == desk.payload()
        assert desk.reads == 1
        assert bridge.value(position) == desk.payload()

    async def test_new_write_cancels_pending_write(self, bridge, desk):
        await connected(bridge)
        command = desk.characteristic(UUID_COMMAND)
        desk.write_gate = asyncio.Event()

        first = asyncio.create_task(bridge.write_value(b"\x47\x00", command))
        await eventually(lambda: bridge.pending(OperationCategory.WRITE) is not None)
        second = asyncio.create_task(bridge.write_value(b"\xff\x00", command))

        with pytest.raises(OperationCancelledError):
            await first
        desk.write_gate.set()
        await second

        assert bridge.pending(OperationCategory.WRITE) is None

    async def test_update_for_other_characteristic_does_not_answer_read(self, bridge, desk):
        updates = []

        async def on_update(characteristic, data):
            updates.append(characteristic.uuid)

        bridge.on_characteristic_update(on_update)
        await connected(bridge)
        await bridge.set_notify_value(True, desk.characteristic(UUID_POSITION))
        desk.read_gate = asyncio.Event()

        read = asyncio.create_task(bridge.read_value(desk.characteristic(UUID_COMMAND)))
        await eventually(lambda: desk.reads == 1)
        desk.notify(raw_position=100, raw_speed=0)

        await eventually(lambda: updates == [UUID_POSITION])
        assert not read.done()
        assert bridge.pending(OperationCategory.READ) is not None

        desk.read_gate.set()
        assert await read == desk.payload()
        assert updates == [UUID_POSITION]

    async def test_new_notify_request_cancels_pending_one(self, bridge, desk):
        await connected(bridge)
        position = desk.characteristic(UUID_POSITION)
        desk.notify_gate = asyncio.Event()

        first = asyncio.create_task(bridge.set_notify_value(True, position))
        await eventually(lambda: bridge.pending(OperationCategory.NOTIFY) is not None)
        second = asyncio.create_task(bridge.set_notify_value(False, position))

        with pytest.raises(OperationCancelledError):
            await first
        await second
        assert bridge.pending(OperationCategory.NOTIFY) is None
        desk.notify_gate.set()

    async def test_disconnect_fails_pending_operations(self, bridge, desk):
        disconnects = []

        async def on_disconnect():
            disconnects.append(True)

        bridge.on_disconnect(on_disconnect)
        await connected(bridge)
        desk.read_gate = asyncio.Event()

        read = asyncio.create_task(bridge.read_value(desk.characteristic(UUID_POSITION)))
        await eventually(lambda: desk.reads == 1)
        desk.drop()

        with pytest.raises(DisconnectedError):
            await read
        assert not bridge.is_connected
        await eventually(lambda: disconnects == [True])
        desk.read_gate.set()

    async def test_radio_power_off_fails_pending_operations(self, bridge, desk, radio):
        await connected(bridge)
        desk.read_gate = asyncio.Event()

        read = asyncio.create_task(bridge.read_value(desk.characteristic(UUID_POSITION)))
        await eventually(lambda: desk.reads == 1)
        radio.powered = False
        bridge.update_radio_state(RadioState.POWERED_OFF)

        with pytest.raises(DisconnectedError):
            await read
        assert bridge.radio_state is RadioState.POWERED_OFF
        assert not bridge.is_connected
        desk.read_gate.set()

    async def test_notifications_reach_update_handler(self, bridge, desk):
        updates = []

        async def on_update(characteristic, data):
            updates.append((characteristic.uuid, data))

        bridge.on_characteristic_update(on_update)
        await connected(bridge)
        position = desk.characteristic(UUID_POSITION)
        await bridge.set_notify_value(True, position)

        desk.notify(raw_position=100, raw_speed=5)

        await eventually(lambda: len(updates) == 1)
        assert updates[0] == (UUID_POSITION, b"\x64\x00\x05\x00")
        assert bridge.value(position) == b"\x64\x00\x05\x00"
