"""
CLI interface for desk control.

Provides command-line tools for scanning BLE devices and controlling the desk.
"""

import asyncio
import logging
import sys
from contextlib import suppress

from desk_control.config import DeviceStore, load_settings
from desk_control.controller import DeskController
from desk_control.errors import (
    DeskCommandError,
    DeskCommunicationError,
    DeskError,
    DeskNotFoundError,
)
from desk_control.logging_config import setup_logging
from desk_control.protocol import DeskState
from desk_control.scanner import print_devices, scan_devices

CONNECT_TIMEOUT = 30.0


async def run_scan():
    """Scan for BLE devices."""
    print("🔍 Scanning for BLE devices (10 seconds)...\n")
    devices = await scan_devices(timeout=10.0)
    print_devices(devices)

    desks = [d for d in devices if d.is_desk]
    if desks:
        print(f"\n✅ Found {len(desks)} desk(s):")
        for desk in desks:
            print(f"   • {desk.name} ({desk.address})")
        print("\nSet DESK_ADDRESS to skip scanning on the next run.")
    else:
        print("\n⚠️  No desks found. Make sure your desk is powered on.")


def _format_state(state: DeskState) -> str:
    return f"📏 Position: {state.position:.2f}cm (speed {state.speed:.2f}, raw {state.raw_position})"


async def run_control(args: list[str]):
    """Run a desk command."""
    settings = load_settings()
    store = DeviceStore(settings.state_file)
    desk = DeskController(
        settings.desk_address or store.load_address(),
        min_position=settings.min_position,
        max_position=settings.max_position,
    )

    async def remember(state: DeskState):
        store.save_address(state.device_id)

    desk.on_connected(remember)

    try:
        print("🔍 Searching for desk...")
        await desk.start()
        state = await desk.wait_until_ready(CONNECT_TIMEOUT)
        print(f"🔗 Connected to {state.device_id}")

        if not args or args[0] == "state":
            print(_format_state(state))

        elif args[0] == "goto":
            if len(args) < 2:
                print("Usage: goto <cm>")
                sys.exit(2)
            await _move(desk, float(args[1]))

        elif args[0] in ("up", "down"):
            delta = float(args[1]) if len(args) > 1 else 1.0
            if args[0] == "down":
                delta = -delta
            target = max(desk.min_position, min(desk.max_position, state.position + delta))
            await _move(desk, target)

        elif args[0] == "open":
            await _move(desk, desk.max_position)

        elif args[0] == "close":
            await _move(desk, desk.min_position)

        elif args[0] == "stop":
            await desk.stop()
            print("🛑 Stopped")

        else:
            print(f"Unknown command: {args[0]}")
            print_control_help()
            sys.exit(2)

    except DeskNotFoundError as e:
        print(f"❌ {e}")
        sys.exit(1)
    except DeskCommandError as e:
        print(f"❌ Command rejected: {e}")
        sys.exit(2)
    except DeskCommunicationError as e:
        print(f"❌ Communication error: {e}")
        sys.exit(1)
    except ValueError as e:
        print(f"❌ Invalid number: {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        print("\n🛑 Interrupted")
        with suppress(DeskError):
            await desk.stop()
    finally:
        await desk.shutdown()


async def _move(desk: DeskController, position: float):
    print(f"📏 Moving to {position:.2f}cm...")
    reached = await desk.move(position)
    final = desk.desk_state
    where = f"{final.position:.2f}cm" if final else "unknown position"
    if reached:
        print(f"✅ Done: {where}")
    else:
        print(f"⚠️  Stopped early at {where}")


def print_control_help():
    """Print help for desk control commands."""
    print(
        """
Usage: desk-control [-v] [command] [args]

Commands:
  (no command)     Show current position
  state            Show current position, speed and raw value
  goto <cm>        Move to a position in cm
  up [cm]          Move up by cm (default: 1)
  down [cm]        Move down by cm (default: 1)
  open             Move to the highest position
  close            Move to the lowest position
  stop             Stop any movement

Environment:
  DESK_ADDRESS     Address of the desk (skips scanning)
  DESK_MIN_POSITION / DESK_MAX_POSITION   Position range in cm (62 / 127)

Examples:
  desk-control                  # Show current position
  desk-control up 3             # Move up 3 cm
  desk-control goto 105         # Move to 105 cm
"""
    )


def main_scan():
    """Entry point for desk-scan command."""
    setup_logging(logging.WARNING)
    asyncio.run(run_scan())


def main_control():
    """Entry point for desk-control command."""
    args = sys.argv[1:]
    if args and args[0] in ("-h", "--help", "help"):
        print_control_help()
        return

    verbose = bool(args) and args[0] in ("-v", "--verbose")
    if verbose:
        args = args[1:]
    setup_logging(logging.INFO if verbose else logging.WARNING)

    asyncio.run(run_control(args))


if __name__ == "__main__":
    main_control()
