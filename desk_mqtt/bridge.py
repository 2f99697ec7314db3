"""
MQTT bridge for the desk controller.

Republishes desk state and forwards textual commands back to the controller.

Topics (prefix ``ikea-desk-control/<identifier>``):
    connected   "true" / "false", also the last-will message
    status      {"position": float, "speed": float}
    command     STOP, OPEN, CLOSE, ANNOUNCE or a position in cm

Commands are also accepted on the global ``ikea-desk-control/command`` topic.
"""

import asyncio
import enum
import json
import logging
import math
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from urllib.parse import urlsplit

import aiomqtt

from desk_control.config import DEFAULT_MQTT_URL
from desk_control.limiter import Limiter, Policy
from desk_control.protocol import DeskState

logger = logging.getLogger(__name__)

TOPIC_ROOT = "ikea-desk-control"
STATUS_DEBOUNCE = 0.2
RECONNECT_INTERVAL = 5.0


class CommandKind(enum.Enum):
    STOP = "stop"
    OPEN = "open"
    CLOSE = "close"
    ANNOUNCE = "announce"
    MOVE_TO = "move_to"


KEYWORDS = {
    "stop": CommandKind.STOP,
    "open": CommandKind.OPEN,
    "close": CommandKind.CLOSE,
    "announce": CommandKind.ANNOUNCE,
}


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    position: float | None = None


CommandCallback = Callable[[Command], Awaitable[None]]


def parse_command(text: str) -> Command | None:
    """Parse a command payload. Returns None (and logs) for anything unrecognised."""
    command = text.strip().lower()
    if not command:
        logger.warning("Received empty command")
        return None

    if command in KEYWORDS:
        return Command(KEYWORDS[command])

    try:
        position = float(command)
    except ValueError:
        logger.warning("Received invalid command: %s", command)
        return None

    if not math.isfinite(position):
        logger.warning("Received invalid command: %s", command)
        return None

    return Command(CommandKind.MOVE_TO, position)


class MQTTBridge:
    """Publishes desk events to an MQTT broker and relays its commands."""

    def __init__(
        self,
        identifier: str,
        url: str = DEFAULT_MQTT_URL,
        username: str | None = None,
        password: str | None = None,
        *,
        reconnect_interval: float = RECONNECT_INTERVAL,
        status_debounce: float = STATUS_DEBOUNCE,
        client_class: Callable[..., aiomqtt.Client] = aiomqtt.Client,
    ):
        self.identifier = identifier
        self.url = url
        self.username = username
        self.password = password
        self.reconnect_interval = reconnect_interval
        self.topic_prefix = f"{TOPIC_ROOT}/{identifier}"

        self._client_class = client_class
        self._client: aiomqtt.Client | None = None
        self._on_command: CommandCallback | None = None

        self._is_connected = False
        self._desk_state: DeskState | None = None

        self._debouncer = Limiter(Policy.DEBOUNCE, status_debounce)
        self._tasks: set[asyncio.Task] = set()

    # === TOPICS ===

    def topic(self, name: str) -> str:
        return f"{self.topic_prefix}/{name}"

    def global_topic(self, name: str) -> str:
        return f"{TOPIC_ROOT}/{name}"

    def status_payload(self) -> str | None:
        if self._desk_state is None:
            return None
        return json.dumps({"position": self._desk_state.position, "speed": self._desk_state.speed})

    def _client_options(self) -> dict:
        parts = urlsplit(self.url)
        secure = parts.scheme in ("mqtts", "ssl", "tls")
        options = {
            "hostname": parts.hostname or "localhost",
            "port": parts.port or (8883 if secure else 1883),
            "username": self.username or parts.username,
            "password": self.password or parts.password,
            "will": aiomqtt.Will(self.topic("connected"), payload="false"),
        }
        if secure:
            options["tls_context"] = ssl.create_default_context()
        return options

    # === REGISTER EVENTS ===

    def on_command(self, callback: CommandCallback) -> None:
        self._on_command = callback

    # === RUN ===

    async def run(self) -> None:
        """Stay connected to the broker forever, reconnecting after failures."""
        while True:
            try:
                async with self._client_class(**self._client_options()) as client:
                    self._client = client
                    logger.info("Connected to MQTT broker at %s", self.url)

                    await client.subscribe(self.global_topic("command"), qos=1)
                    await client.subscribe(self.topic("command"), qos=1)
                    await self.publish()

                    async for message in client.messages:
                        await self.handle_message(message.payload)
            except aiomqtt.MqttError as e:
                logger.warning("MQTT connection lost: %s. Reconnecting in %.0fs", e, self.reconnect_interval)
            finally:
                self._client = None

            await asyncio.sleep(self.reconnect_interval)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._debouncer.drain()

    # === MESSAGES ===

    async def handle_message(self, payload) -> None:
        if isinstance(payload, (bytes, bytearray)):
            text = payload.decode(errors="replace")
        else:
            text = "" if payload is None else str(payload)

        command = parse_command(text)
        if command is None:
            return

        if command.kind is CommandKind.ANNOUNCE:
            await self.publish()
            return

        if self._on_command is not None:
            # Runs on its own so a STOP can interrupt a move still in progress
            self._spawn(self._on_command(command))

    # === PUBLISH ===

    async def publish(self) -> None:
        await self._publish_connected()
        self._publish_desk_state()

    async def _publish_connected(self) -> None:
        client = self._client
        if client is None:
            return
        try:
            await client.publish(self.topic("connected"), "true" if self._is_connected else "false", qos=1)
        except aiomqtt.MqttError as e:
            logger.warning("Failed to publish connection state: %s", e)

    def _publish_desk_state(self) -> None:
        payload = self.status_payload()
        if payload is None:
            return

        async def publish():
            client = self._client
            if client is None:
                return
            try:
                await client.publish(self.topic("status"), payload, qos=0)
            except aiomqtt.MqttError as e:
                logger.debug("Failed to publish desk state: %s", e)

        self._spawn(self._debouncer.perform(publish))

    # === DESK EVENTS ===

    async def desk_did_connect(self, desk_state: DeskState) -> None:
        if self._is_connected:
            return

        self._is_connected = True
        self._desk_state = desk_state
        await self.publish()

    async def desk_did_disconnect(self) -> None:
        if not self._is_connected:
            return

        self._is_connected = False
        await self._publish_connected()

    async def did_receive_desk_state(self, desk_state: DeskState) -> None:
        if desk_state == self._desk_state:
            return

        self._desk_state = desk_state
        self._publish_desk_state()

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
