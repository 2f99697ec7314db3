"""
Long-running desk service: one DeskController wired to one MQTTBridge.
"""

import asyncio
import logging
import sys
from functools import partial

from desk_control.config import DeviceStore, Settings, load_settings
from desk_control.controller import DeskController
from desk_control.errors import DeskError
from desk_control.logging_config import setup_logging
from desk_control.protocol import DeskState
from desk_mqtt.bridge import Command, CommandKind, MQTTBridge

logger = logging.getLogger(__name__)


async def apply_command(desk: DeskController, command: Command) -> None:
    """Run a bus command against the desk. Rejected commands are logged and dropped."""
    try:
        if command.kind is CommandKind.STOP:
            await desk.stop()
        elif command.kind is CommandKind.OPEN:
            await desk.move(desk.max_position)
        elif command.kind is CommandKind.CLOSE:
            await desk.move(desk.min_position)
        elif command.kind is CommandKind.MOVE_TO:
            await desk.move(command.position)
    except DeskError as e:
        logger.warning("Dropping command %s: %s", command.kind.value, e)


def wire(desk: DeskController, bridge: MQTTBridge, store: DeviceStore) -> None:
    """Connect controller events to the bridge and bridge commands to the controller."""

    async def on_connected(desk_state: DeskState):
        store.save_address(desk_state.device_id)
        await bridge.desk_did_connect(desk_state)

    desk.on_connected(on_connected)
    desk.on_disconnected(bridge.desk_did_disconnect)
    desk.on_state_changed(bridge.did_receive_desk_state)
    bridge.on_command(partial(apply_command, desk))


async def run_service(settings: Settings) -> None:
    store = DeviceStore(settings.state_file)
    address = settings.desk_address or store.load_address()

    desk = DeskController(
        address,
        min_position=settings.min_position,
        max_position=settings.max_position,
    )
    bridge = MQTTBridge(
        settings.mqtt_identifier,
        settings.mqtt_url,
        settings.mqtt_username,
        settings.mqtt_password,
    )
    wire(desk, bridge, store)

    logger.info("Starting desk service (desk %s)", address or "unknown, scanning")
    await desk.start()
    try:
        await bridge.run()
    finally:
        await bridge.close()
        await desk.shutdown()


def main():
    """Entry point for desk-mqtt command."""
    try:
        settings = load_settings()
    except ValueError as e:
        print(f"❌ {e}")
        sys.exit(1)

    setup_logging(settings.log_level)
    try:
        asyncio.run(run_service(settings))
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    main()
