"""
Throttle / debounce helper for asyncio callers.

Usage:
    debouncer = Limiter(Policy.DEBOUNCE, interval=0.2)
    await debouncer.perform(publish_status)
"""

import asyncio
import enum
from collections.abc import Awaitable, Callable

Action = Callable[[], Awaitable[None]]


class Policy(enum.Enum):
    THROTTLE = "throttle"
    DEBOUNCE = "debounce"


class Limiter:
    """Rate-limits actions by throttling (first wins) or debouncing (last wins)."""

    def __init__(self, policy: Policy, interval: float):
        self.policy = policy
        self.interval = interval
        self._is_throttling = False
        self._is_debouncing = False
        self._debounce_action: Action | None = None
        self._tasks: set[asyncio.Task] = set()

    async def perform(self, action: Action) -> None:
        """
        Submit an action.

        Returns once the action has been started or dropped. The action itself
        runs as a background task.
        """
        if self.policy is Policy.THROTTLE:
            await self._throttle(action)
        else:
            await self._debounce(action)

    async def _throttle(self, action: Action) -> None:
        if self._is_throttling:
            return

        self._is_throttling = True
        try:
            self._run(action)
            await asyncio.sleep(self.interval)
        finally:
            self._is_throttling = False

    async def _debounce(self, action: Action) -> None:
        self._debounce_action = action

        if self._is_debouncing:
            return

        self._is_debouncing = True
        try:
            await asyncio.sleep(self.interval)
            if self._debounce_action is not None:
                self._run(self._debounce_action)
        finally:
            self._debounce_action = None
            self._is_debouncing = False

    def _run(self, action: Action) -> None:
        task = asyncio.ensure_future(action())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for actions that are already running."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
