"""Exceptions raised by the desk controller and its peripheral bridge."""


class DeskError(Exception):
    """Base exception for desk controller errors."""

    pass


class DeskNotFoundError(DeskError):
    """Raised when the desk does not become ready in time."""

    pass


class DeskConnectionError(DeskError):
    """Raised when the connection lifecycle fails. Drives the retry loop, never the caller."""

    pass


class RadioNotReadyError(DeskConnectionError):
    """Raised when the Bluetooth radio is not powered on or already scanning."""

    pass


class ConnectFailedError(DeskConnectionError):
    """Raised when the platform reports a failed connection attempt."""

    pass


class MissingServicesError(DeskConnectionError):
    """Raised when a required GATT service is absent."""

    pass


class MissingCharacteristicsError(DeskConnectionError):
    """Raised when a required GATT characteristic is absent."""

    pass


class DisconnectedError(DeskConnectionError):
    """Raised for every pending operation when the peripheral disconnects."""

    pass


class DeskCommunicationError(DeskError):
    """Raised when BLE communication fails during operation."""

    pass


class MalformedPayloadError(DeskCommunicationError):
    """Raised when a characteristic value cannot be decoded."""

    pass


class OperationCancelledError(DeskCommunicationError):
    """Raised when a pending operation is superseded by a newer one of the same kind."""

    pass


class DeskCommandError(DeskError):
    """Base class for rejected move/stop commands."""

    pass


class NotConnectedError(DeskCommandError):
    """Raised when a command arrives while the desk is not ready."""

    pass


class InvalidPositionCommandError(DeskCommandError):
    """Raised when a move target is outside the desk's range."""

    pass
