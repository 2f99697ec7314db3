"""
MCP Server for IKEA Standing Desk Control.

Exposes desk control as tools that LLMs can call via the Model Context Protocol.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastmcp import Context, FastMCP

from desk_control import (
    DeskCommandError,
    DeskCommunicationError,
    DeskController,
    DeskNotFoundError,
    DeskState,
)
from desk_control.config import DeviceStore, load_settings

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30.0
MAX_STEP_CM = 25.0

_desk: DeskController | None = None
_desk_lock = asyncio.Lock()


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Disconnect the shared desk when the server stops."""
    try:
        yield
    finally:
        await close_desk_connection()


# Create MCP server
mcp = FastMCP(
    "Standing Desk Controller",
    instructions="Control your IKEA Idåsen / Linak standing desk via BLE. "
    "Tools: get_state (check position), move_up/move_down (relative movement in cm), "
    "move_to_position (absolute positioning in cm), open_desk/close_desk (highest/lowest), "
    "stop_desk (emergency stop).",
    lifespan=lifespan,
)


async def get_desk() -> DeskController:
    """
    Return the shared desk controller, starting it on first use.

    The controller stays connected between tool calls and reconnects on its own.

    Raises:
        DeskNotFoundError: If the desk is not ready within CONNECT_TIMEOUT
    """
    global _desk

    async with _desk_lock:
        if _desk is None:
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
            await desk.start()
            _desk = desk

    await _desk.wait_until_ready(CONNECT_TIMEOUT)
    return _desk


async def close_desk_connection() -> None:
    """Shut down the shared controller, if one was started."""
    global _desk

    async with _desk_lock:
        desk, _desk = _desk, None
    if desk is not None:
        await desk.shutdown()


def _describe(desk: DeskController) -> str:
    state = desk.desk_state
    if state is None:
        return "unknown position"
    return f"{state.position:.2f}cm"


async def _move(desk: DeskController, position: float) -> str:
    reached = await desk.move(position)
    if reached:
        return f"Moved to {_describe(desk)}. Target was {position:.2f}cm"
    return f"Movement stopped early at {_describe(desk)}. Target was {position:.2f}cm"


@mcp.tool()
async def get_state(ctx: Context) -> str:
    """
    Get the current desk position and speed.

    Returns the position in centimeters and the current speed.
    """
    try:
        desk = await get_desk()
        state = desk.desk_state
        if state is None:
            return "Error: Desk disconnected"
        return (
            f"Current position: {state.position:.2f}cm (speed {state.speed:.2f}). "
            f"Range: {desk.min_position:.0f}-{desk.max_position:.0f}cm"
        )
    except DeskNotFoundError:
        return "Error: Desk not found. Is it powered on?"


@mcp.tool()
async def move_to_position(ctx: Context, position_cm: float) -> str:
    """
    Move the desk to a specific position in centimeters.

    Args:
        position_cm: Target position in centimeters (valid range: 62-127cm by default)

    Returns:
        Result of the movement including final position.
    """
    try:
        desk = await get_desk()
        return await _move(desk, position_cm)
    except DeskNotFoundError:
        return "Error: Desk not found. Is it powered on?"
    except DeskCommandError as e:
        return f"Error: {e}"
    except DeskCommunicationError as e:
        return f"Error: Communication failed - {e}"


async def _move_by(delta: float) -> str:
    try:
        desk = await get_desk()
        state = desk.desk_state
        if state is None:
            return "Error: Desk disconnected"
        target = max(desk.min_position, min(desk.max_position, state.position + delta))
        return await _move(desk, target)
    except DeskNotFoundError:
        return "Error: Desk not found. Is it powered on?"
    except DeskCommandError as e:
        return f"Error: {e}"
    except DeskCommunicationError as e:
        return f"Error: Communication failed - {e}"


@mcp.tool()
async def move_up(ctx: Context, cm: float = 2.0) -> str:
    """
    Move the desk up by the specified number of centimeters.

    The target is clamped to the desk's range.

    Args:
        cm: How many centimeters to move up (default: 2.0)

    Returns:
        Result of the movement including final position.
    """
    if cm <= 0:
        return "Error: cm must be positive"
    if cm > MAX_STEP_CM:
        return f"Error: Maximum movement is {MAX_STEP_CM:.0f}cm at a time for safety"
    return await _move_by(cm)


@mcp.tool()
async def move_down(ctx: Context, cm: float = 2.0) -> str:
    """
    Move the desk down by the specified number of centimeters.

    The target is clamped to the desk's range.

    Args:
        cm: How many centimeters to move down (default: 2.0)

    Returns:
        Result of the movement including final position.
    """
    if cm <= 0:
        return "Error: cm must be positive"
    if cm > MAX_STEP_CM:
        return f"Error: Maximum movement is {MAX_STEP_CM:.0f}cm at a time for safety"
    return await _move_by(-cm)


@mcp.tool()
async def open_desk(ctx: Context) -> str:
    """Raise the desk to its highest position."""
    try:
        desk = await get_desk()
        return await _move(desk, desk.max_position)
    except DeskNotFoundError:
        return "Error: Desk not found. Is it powered on?"
    except DeskCommandError as e:
        return f"Error: {e}"
    except DeskCommunicationError as e:
        return f"Error: Communication failed - {e}"


@mcp.tool()
async def close_desk(ctx: Context) -> str:
    """Lower the desk to its lowest position."""
    try:
        desk = await get_desk()
        return await _move(desk, desk.min_position)
    except DeskNotFoundError:
        return "Error: Desk not found. Is it powered on?"
    except DeskCommandError as e:
        return f"Error: {e}"
    except DeskCommunicationError as e:
        return f"Error: Communication failed - {e}"


@mcp.tool()
async def stop_desk(ctx: Context) -> str:
    """
    Emergency stop - immediately halt desk movement.

    Use this if the desk is moving and you need to stop it immediately.
    """
    try:
        desk = await get_desk()
        await desk.stop()
        return f"Desk stopped at {_describe(desk)}"
    except DeskNotFoundError:
        return "Error: Desk not found. Is it powered on?"
    except DeskCommandError as e:
        return f"Error: {e}"
    except DeskCommunicationError as e:
        return f"Error: Communication failed - {e}"


def run_server():
    """Run the MCP server."""
    mcp.run()


if __name__ == "__main__":
    run_server()
