"""
Modbus TCP Frame Codec
======================

Pure functions translating typed requests/responses to and from wire bytes.

MBAP Header Format (7 bytes):
    Transaction ID:  2 bytes (0x0000-0xFFFF, incrementing)
    Protocol ID:     2 bytes (always 0x0000 for Modbus)
    Length:          2 bytes (byte count of Unit ID + PDU)
    Unit ID:         1 byte

PDU Format:
    Function Code:   1 byte
    Data:            Variable (function-specific)

Supported Function Codes:
    FC01: Read Coils
    FC02: Read Discrete Inputs
    FC03: Read Holding Registers
    FC04: Read Input Registers
    FC05: Write Single Coil
    FC06: Write Single Register
    FC15: Write Multiple Coils
    FC16: Write Multiple Registers

Every function code maps to one FunctionSpec entry; encoding and decoding
dispatch on the entry's kind. All integers on the wire are big-endian.
Coil payloads are packed LSB-first: bit i lives in byte i // 8 at
position i % 8.
"""

import math
import struct
import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from plc_modbus.exceptions import EncodingError, ProtocolError, ProtocolErrorKind

logger = logging.getLogger(__name__)


MBAP_HEADER_LENGTH = 7
MAX_ADU_LENGTH = 260        # 7-byte MBAP + 253-byte PDU
EXCEPTION_FLAG = 0x80
COIL_ON = 0xFF00
COIL_OFF = 0x0000


class FunctionCode(IntEnum):
    """Modbus function codes handled by this client."""
    READ_COILS = 0x01
    READ_DISCRETE_INPUTS = 0x02
    READ_HOLDING_REGISTERS = 0x03
    READ_INPUT_REGISTERS = 0x04
    WRITE_SINGLE_COIL = 0x05
    WRITE_SINGLE_REGISTER = 0x06
    WRITE_MULTIPLE_COILS = 0x0F
    WRITE_MULTIPLE_REGISTERS = 0x10


class ExceptionCode(IntEnum):
    """Modbus exception codes."""
    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03
    SLAVE_DEVICE_FAILURE = 0x04
    ACKNOWLEDGE = 0x05
    SLAVE_DEVICE_BUSY = 0x06
    MEMORY_PARITY_ERROR = 0x08
    GATEWAY_PATH_UNAVAILABLE = 0x0A
    GATEWAY_TARGET_FAILED = 0x0B


class FunctionKind(Enum):
    """Encoding/decoding strategy of a function code."""
    BIT_READ = "bit_read"
    REGISTER_READ = "register_read"
    SINGLE_COIL = "single_coil"
    SINGLE_REGISTER = "single_register"
    MULTIPLE_COILS = "multiple_coils"
    MULTIPLE_REGISTERS = "multiple_registers"


@dataclass(frozen=True)
class FunctionSpec:
    kind: FunctionKind
    max_quantity: int


FUNCTION_TABLE: Dict[FunctionCode, FunctionSpec] = {
    FunctionCode.READ_COILS: FunctionSpec(FunctionKind.BIT_READ, 2000),
    FunctionCode.READ_DISCRETE_INPUTS: FunctionSpec(FunctionKind.BIT_READ, 2000),
    FunctionCode.READ_HOLDING_REGISTERS: FunctionSpec(FunctionKind.REGISTER_READ, 125),
    FunctionCode.READ_INPUT_REGISTERS: FunctionSpec(FunctionKind.REGISTER_READ, 125),
    FunctionCode.WRITE_SINGLE_COIL: FunctionSpec(FunctionKind.SINGLE_COIL, 1),
    FunctionCode.WRITE_SINGLE_REGISTER: FunctionSpec(FunctionKind.SINGLE_REGISTER, 1),
    FunctionCode.WRITE_MULTIPLE_COILS: FunctionSpec(FunctionKind.MULTIPLE_COILS, 1968),
    FunctionCode.WRITE_MULTIPLE_REGISTERS: FunctionSpec(FunctionKind.MULTIPLE_REGISTERS, 123),
}

_WRITE_KINDS = (
    FunctionKind.SINGLE_COIL,
    FunctionKind.SINGLE_REGISTER,
    FunctionKind.MULTIPLE_COILS,
    FunctionKind.MULTIPLE_REGISTERS,
)


def hexdump(data: bytes) -> str:
    return bytes(data).hex(" ")


def function_spec(function_code: int) -> FunctionSpec:
    """Look up the FunctionSpec for a raw or enum function code."""
    try:
        return FUNCTION_TABLE[FunctionCode(function_code)]
    except ValueError:
        raise EncodingError(f"Unsupported function code: {function_code}") from None


# ==================== MBAP HEADER ====================

@dataclass(frozen=True)
class MbapHeader:
    """
    Modbus Application Protocol header.

    Attributes:
        transaction_id: Request/response correlation number (u16)
        protocol_id: Always 0 for Modbus
        length: Number of bytes following the length field (unit id + PDU)
        unit_id: Addressed unit (u8)
    """
    transaction_id: int
    protocol_id: int
    length: int
    unit_id: int

    _FORMAT = '>HHHB'

    def pack(self) -> bytes:
        return struct.pack(self._FORMAT, self.transaction_id, self.protocol_id,
                           self.length, self.unit_id)

    @classmethod
    def unpack(cls, data: bytes) -> 'MbapHeader':
        if len(data) < MBAP_HEADER_LENGTH:
            raise ProtocolError(
                f"MBAP header needs {MBAP_HEADER_LENGTH} bytes, got {len(data)}",
                ProtocolErrorKind.MALFORMED,
            )
        return cls(*struct.unpack(cls._FORMAT, bytes(data[:MBAP_HEADER_LENGTH])))


def frame_length_from_header(header: bytes) -> int:
    """Total ADU size (header included) announced by an MBAP header."""
    return 6 + MbapHeader.unpack(header).length


# ==================== BIT PACKING ====================

def pack_bits(bits: Sequence[bool]) -> bytes:
    """
    Pack a bit sequence LSB-first into ceil(len/8) bytes.

    Bit i maps to bit (i % 8) of byte (i // 8), starting at byte 0.

    Example:
        >>> pack_bits([True, False, True])
        b'\\x05'
    """
    if len(bits) == 0:
        return b""
    array = np.fromiter((1 if bit else 0 for bit in bits), dtype=np.uint8, count=len(bits))
    return np.packbits(array, bitorder='little').tobytes()


def unpack_bits(data: bytes, count: int) -> List[bool]:
    """Unpack the first `count` LSB-first bits of `data`."""
    if count > len(data) * 8:
        raise ProtocolError(
            f"{count} bits requested from {len(data)} bytes",
            ProtocolErrorKind.MALFORMED,
        )
    array = np.frombuffer(bytes(data), dtype=np.uint8)
    return np.unpackbits(array, count=count, bitorder='little').astype(bool).tolist()


# ==================== REQUESTS ====================

Payload = Union[None, bool, int, Sequence[bool], Sequence[int]]


def _check_range(name: str, value: int, low: int, high: int):
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise EncodingError(f"{name} must be an integer, got {value!r}")
    if not low <= value <= high:
        raise EncodingError(f"{name} {value} out of range [{low}, {high}]")


def _to_word(value: int) -> int:
    """16-bit wire pattern of a register value (signed values as two's complement)."""
    _check_range("Register value", value, -0x8000, 0xFFFF)
    return int(value) & 0xFFFF


@dataclass(frozen=True)
class ModbusRequest:
    """
    One typed Modbus request.

    Attributes:
        transaction_id: MBAP transaction id
        unit_id: Addressed unit
        function_code: FunctionCode
        address: Starting address
        quantity: Number of bits/registers (1 for single writes)
        value: Wire value of single writes (0xFF00/0x0000 or register word)
        payload: Coil states or register words of multiple writes
    """
    transaction_id: int
    unit_id: int
    function_code: FunctionCode
    address: int
    quantity: int = 1
    value: Optional[int] = None
    payload: Tuple = field(default_factory=tuple)

    @property
    def kind(self) -> FunctionKind:
        return FUNCTION_TABLE[self.function_code].kind

    def pdu(self) -> bytes:
        """Function code and function-specific data."""
        kind = self.kind
        pdu = struct.pack('>BH', self.function_code, self.address)

        if kind in (FunctionKind.BIT_READ, FunctionKind.REGISTER_READ):
            pdu += struct.pack('>H', self.quantity)
        elif kind in (FunctionKind.SINGLE_COIL, FunctionKind.SINGLE_REGISTER):
            pdu += struct.pack('>H', self.value)
        elif kind == FunctionKind.MULTIPLE_COILS:
            data = pack_bits(self.payload)
            pdu += struct.pack('>HB', self.quantity, len(data)) + data
        elif kind == FunctionKind.MULTIPLE_REGISTERS:
            data = struct.pack(f'>{self.quantity}H', *self.payload)
            pdu += struct.pack('>HB', self.quantity, len(data)) + data

        return pdu

    def encode(self) -> bytes:
        """Full ADU: MBAP header followed by the PDU."""
        pdu = self.pdu()
        header = MbapHeader(self.transaction_id, 0, len(pdu) + 1, self.unit_id)
        return header.pack() + pdu


def build_request(transaction_id: int, unit_id: int, function_code: int,
                  address: int, quantity: int = 1,
                  payload: Payload = None) -> ModbusRequest:
    """
    Validate request parameters and build a ModbusRequest.

    Args:
        transaction_id: Transaction id (0-65535)
        unit_id: Unit id (0-255)
        function_code: One of FunctionCode
        address: Starting address (0-65535)
        quantity: Number of items; must be 1 for single writes
        payload: bool for FC05, int for FC06, sequence for FC15/FC16,
                 None for reads

    Returns:
        ModbusRequest ready to encode

    Raises:
        EncodingError: On any invalid parameter
    """
    spec = function_spec(function_code)
    code = FunctionCode(function_code)

    _check_range("Transaction id", transaction_id, 0, 0xFFFF)
    _check_range("Unit id", unit_id, 0, 0xFF)
    _check_range("Address", address, 0, 0xFFFF)
    _check_range("Quantity", quantity, 0, 0xFFFF)

    if quantity == 0:
        raise EncodingError(f"FC{code:02d} quantity must be at least 1")
    if quantity > spec.max_quantity:
        raise EncodingError(
            f"FC{code:02d} quantity {quantity} exceeds maximum {spec.max_quantity}"
        )
    if address + quantity > 0x10000:
        raise EncodingError(
            f"Address range {address}+{quantity} exceeds the 16-bit address space"
        )

    value = None
    items: Tuple = ()

    if spec.kind in (FunctionKind.BIT_READ, FunctionKind.REGISTER_READ):
        if payload is not None:
            raise EncodingError(f"FC{code:02d} takes no payload")

    elif spec.kind == FunctionKind.SINGLE_COIL:
        if not isinstance(payload, (bool, np.bool_)) and payload not in (0, 1):
            raise EncodingError(f"Coil value must be a bool, got {payload!r}")
        value = COIL_ON if payload else COIL_OFF

    elif spec.kind == FunctionKind.SINGLE_REGISTER:
        if payload is None:
            raise EncodingError("FC06 requires a register value")
        value = _to_word(payload)

    else:
        if payload is None or isinstance(payload, (bool, int)):
            raise EncodingError(f"FC{code:02d} requires a sequence payload")
        if len(payload) != quantity:
            raise EncodingError(
                f"FC{code:02d} payload has {len(payload)} items, quantity is {quantity}"
            )
        if spec.kind == FunctionKind.MULTIPLE_COILS:
            items = tuple(bool(bit) for bit in payload)
        else:
            items = tuple(_to_word(word) for word in payload)

    return ModbusRequest(
        transaction_id=transaction_id,
        unit_id=unit_id,
        function_code=code,
        address=address,
        quantity=quantity,
        value=value,
        payload=items,
    )


def encode_request(transaction_id: int, unit_id: int, function_code: int,
                   address: int, quantity: int = 1,
                   payload: Payload = None) -> bytes:
    """
    Encode a request into MBAP-prefixed bytes.

    Example:
        >>> encode_request(0, 1, FunctionCode.READ_HOLDING_REGISTERS, 0, 1).hex(" ")
        '00 00 00 00 00 06 01 03 00 00 00 01'
    """
    return build_request(transaction_id, unit_id, function_code,
                         address, quantity, payload).encode()


def expected_response_length(function_code: int, quantity: int) -> int:
    """Size in bytes of a successful response to the given request."""
    kind = function_spec(function_code).kind
    if kind == FunctionKind.BIT_READ:
        return 9 + math.ceil(quantity / 8)
    if kind == FunctionKind.REGISTER_READ:
        return 9 + 2 * quantity
    return 12


# ==================== RESPONSES ====================

@dataclass
class ModbusResponse:
    """
    Parsed response.

    `values` holds coil states (bit reads), unsigned words (register reads)
    or the echoed [address, value_or_quantity] pair (writes).
    """
    header: MbapHeader
    function_code: FunctionCode
    data: bytes
    values: List = field(default_factory=list)
    byte_count: Optional[int] = None


def _decode_bits(request: ModbusRequest, data: bytes) -> Tuple[Optional[int], List]:
    byte_count = data[0]
    payload = data[1:]
    expected = math.ceil(request.quantity / 8)
    if byte_count != len(payload):
        raise ProtocolError(
            f"Byte count {byte_count} disagrees with {len(payload)} payload bytes",
            ProtocolErrorKind.MALFORMED,
        )
    if byte_count != expected:
        raise ProtocolError(
            f"Expected {expected} bytes for {request.quantity} bits, got {byte_count}",
            ProtocolErrorKind.MALFORMED,
        )
    return byte_count, unpack_bits(payload, request.quantity)


def _decode_registers(request: ModbusRequest, data: bytes) -> Tuple[Optional[int], List]:
    byte_count = data[0]
    payload = data[1:]
    if byte_count != len(payload) or byte_count != 2 * request.quantity:
        raise ProtocolError(
            f"Expected {2 * request.quantity} register bytes, "
            f"byte count {byte_count}, received {len(payload)}",
            ProtocolErrorKind.MALFORMED,
        )
    return byte_count, list(struct.unpack(f'>{request.quantity}H', payload))


def _decode_echo(request: ModbusRequest, data: bytes) -> Tuple[Optional[int], List]:
    if len(data) != 4:
        raise ProtocolError(
            f"Write confirmation must carry 4 bytes, got {len(data)}",
            ProtocolErrorKind.MALFORMED,
        )
    address, second = struct.unpack('>HH', data)
    expected = request.value if request.kind in (
        FunctionKind.SINGLE_COIL, FunctionKind.SINGLE_REGISTER) else request.quantity

    if address != request.address or second != expected:
        raise ProtocolError(
            f"FC{request.function_code:02d} echo mismatch: sent "
            f"({request.address:#06x}, {expected:#06x}), "
            f"received ({address:#06x}, {second:#06x})",
            ProtocolErrorKind.ECHO_MISMATCH,
        )
    return None, [address, second]


_DECODERS = {
    FunctionKind.BIT_READ: _decode_bits,
    FunctionKind.REGISTER_READ: _decode_registers,
    FunctionKind.SINGLE_COIL: _decode_echo,
    FunctionKind.SINGLE_REGISTER: _decode_echo,
    FunctionKind.MULTIPLE_COILS: _decode_echo,
    FunctionKind.MULTIPLE_REGISTERS: _decode_echo,
}


def decode_response(request: ModbusRequest, raw: bytes) -> ModbusResponse:
    """
    Validate and decode a response frame against the request it answers.

    Args:
        request: The request that was sent (expected transaction id,
                 unit id, function code and, for writes, echoed fields)
        raw: Complete response ADU

    Returns:
        ModbusResponse with decoded values

    Raises:
        ProtocolError: Malformed frame, any header/echo mismatch, or an
                       exception response from the device
    """
    raw = bytes(raw)
    if len(raw) < 8:
        raise ProtocolError(f"Response too short ({len(raw)} bytes)",
                            ProtocolErrorKind.MALFORMED)

    header = MbapHeader.unpack(raw)

    if header.transaction_id != request.transaction_id:
        raise ProtocolError(
            f"Transaction id mismatch: expected {request.transaction_id}, "
            f"got {header.transaction_id}",
            ProtocolErrorKind.TRANSACTION_MISMATCH,
        )
    if header.protocol_id != 0:
        raise ProtocolError(f"Invalid protocol id: {header.protocol_id:#x}",
                            ProtocolErrorKind.MALFORMED)
    if header.length != len(raw) - 6:
        raise ProtocolError(
            f"Header length {header.length} but {len(raw) - 6} bytes follow",
            ProtocolErrorKind.LENGTH_MISMATCH,
        )
    if header.unit_id != request.unit_id:
        raise ProtocolError(
            f"Unit id mismatch: expected {request.unit_id}, got {header.unit_id}",
            ProtocolErrorKind.UNIT_MISMATCH,
        )

    function_byte = raw[7]
    if function_byte == request.function_code | EXCEPTION_FLAG:
        if len(raw) < 9:
            raise ProtocolError("Exception response without exception code",
                                ProtocolErrorKind.MALFORMED)
        code = raw[8]
        try:
            name = ExceptionCode(code).name
        except ValueError:
            name = "UNKNOWN"
        raise ProtocolError(
            f"Device exception {code:#04x} ({name}) for FC{request.function_code:02d}",
            ProtocolErrorKind.DEVICE_EXCEPTION,
            code=code,
        )
    if function_byte != request.function_code:
        raise ProtocolError(
            f"Function code mismatch: expected {request.function_code:#04x}, "
            f"got {function_byte:#04x}",
            ProtocolErrorKind.FUNCTION_MISMATCH,
        )

    data = raw[8:]
    if not data:
        raise ProtocolError("Response carries no data", ProtocolErrorKind.MALFORMED)

    byte_count, values = _DECODERS[request.kind](request, data)
    return ModbusResponse(
        header=header,
        function_code=request.function_code,
        data=data,
        values=values,
        byte_count=byte_count,
    )


def is_write(function_code: int) -> bool:
    return function_spec(function_code).kind in _WRITE_KINDS
