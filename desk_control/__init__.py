"""
Desk Control - keeps an IKEA Idåsen / Linak standing desk connected over BLE.

This package bridges bleak's BLE operations into serialized, cancellable
awaitables and drives the desk's connection lifecycle and move-to protocol.
"""

from desk_control.controller import ConnectionState, DeskController
from desk_control.errors import (
    ConnectFailedError,
    DeskCommandError,
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
    RadioNotReadyError,
)
from desk_control.peripheral import OperationCategory, PeripheralBridge, RadioState
from desk_control.protocol import MAX_POSITION, MIN_POSITION, DeskState

__all__ = [
    # Controller
    "DeskController",
    "ConnectionState",
    "DeskState",
    "MIN_POSITION",
    "MAX_POSITION",
    # Peripheral bridge
    "PeripheralBridge",
    "OperationCategory",
    "RadioState",
    # Errors
    "DeskError",
    "DeskNotFoundError",
    "DeskConnectionError",
    "RadioNotReadyError",
    "ConnectFailedError",
    "MissingServicesError",
    "MissingCharacteristicsError",
    "DisconnectedError",
    "DeskCommunicationError",
    "MalformedPayloadError",
    "OperationCancelledError",
    "DeskCommandError",
    "NotConnectedError",
    "InvalidPositionCommandError",
]
