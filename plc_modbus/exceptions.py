"""
Modbus Client Errors
====================

Error taxonomy shared by the codec, the connection manager and the client.

    ModbusError
        UnreachableError    - reachability probe failed before connecting
        ConnectError        - TCP handshake / socket failure
        TransportError      - send/receive failed on an established link
            ModbusTimeoutError - no response inside the read timeout
        EncodingError       - caller supplied invalid request parameters
        ProtocolError       - malformed frame, mismatch or device exception
"""

from enum import Enum
from typing import Optional


class ModbusError(Exception):
    """Base class for every error raised by this package."""


class UnreachableError(ModbusError):
    """Host did not answer the pre-connect reachability probe."""

    def __init__(self, host: str, timeout_ms: int):
        self.host = host
        self.timeout_ms = timeout_ms
        super().__init__(f"Host {host} unreachable (probe timeout {timeout_ms} ms)")


class ConnectError(ModbusError):
    """Socket-level failure while opening the connection."""


class TransportError(ModbusError):
    """Send or receive failed on an established connection."""


class ModbusTimeoutError(TransportError):
    """No complete response arrived within the configured read timeout."""


class EncodingError(ModbusError, ValueError):
    """Invalid request parameters (quantity, address, payload or value)."""


class ProtocolErrorKind(Enum):
    """Why a response frame was rejected."""
    MALFORMED = "malformed"
    TRANSACTION_MISMATCH = "transaction_mismatch"
    LENGTH_MISMATCH = "length_mismatch"
    UNIT_MISMATCH = "unit_mismatch"
    FUNCTION_MISMATCH = "function_mismatch"
    ECHO_MISMATCH = "echo_mismatch"
    DEVICE_EXCEPTION = "device_exception"


class ProtocolError(ModbusError):
    """
    Response frame could not be accepted.

    Attributes:
        kind: ProtocolErrorKind describing the failed check
        code: Modbus exception code reported by the device (DEVICE_EXCEPTION only)
    """

    def __init__(self, message: str,
                 kind: ProtocolErrorKind = ProtocolErrorKind.MALFORMED,
                 code: Optional[int] = None):
        self.kind = kind
        self.code = code
        super().__init__(message)

    @property
    def exception_code(self):
        """Exception code as an ExceptionCode member when known, else the raw int."""
        if self.code is None:
            return None
        # Imported lazily, codec imports this module
        from plc_modbus.codec import ExceptionCode
        try:
            return ExceptionCode(self.code)
        except ValueError:
            return self.code

    @property
    def is_device_exception(self) -> bool:
        return self.kind is ProtocolErrorKind.DEVICE_EXCEPTION

    @property
    def is_framing_error(self) -> bool:
        """The stream may no longer be aligned on frame boundaries."""
        return self.kind in _FRAMING_KINDS


_FRAMING_KINDS = (
    ProtocolErrorKind.MALFORMED,
    ProtocolErrorKind.LENGTH_MISMATCH,
    ProtocolErrorKind.TRANSACTION_MISMATCH,
)
