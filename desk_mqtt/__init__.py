"""
MQTT bridge for the standing desk.

Republishes desk state to an MQTT broker and turns broker messages into
move/stop commands for the DeskController.
"""

from desk_mqtt.bridge import Command, CommandKind, MQTTBridge, parse_command
from desk_mqtt.service import run_service

__all__ = ["MQTTBridge", "Command", "CommandKind", "parse_command", "run_service"]
