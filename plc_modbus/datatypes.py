"""
Register Data Types
===================

Conversions between raw 16-bit Modbus registers and typed PLC values.

PLC words are 16 bits wide; the top bit is the sign bit and negative numbers
are stored as two's complement. A REAL occupies two consecutive registers
holding the four bytes of an IEEE 754 single-precision value. Most PLCs put
the low-order word first (RegisterOrder.LOW_HIGH).
"""

import struct
from enum import Enum
from typing import List, Sequence

import numpy as np

from plc_modbus.exceptions import EncodingError


class RegisterOrder(Enum):
    """Word order of 32-bit values spread over two registers."""
    LOW_HIGH = "low_high"   # word[0] = low 16 bits (PLC convention)
    HIGH_LOW = "high_low"   # word[0] = high 16 bits


class DataType(Enum):
    """Value types stored in PLC memory."""
    BIT = "bit"
    INT16 = "int16"
    REAL = "real"


def _check_words(words: Sequence[int]):
    for word in words:
        if isinstance(word, bool) or not 0 <= int(word) <= 0xFFFF:
            raise EncodingError(f"Register word {word!r} out of range [0, 65535]")


def registers_to_float(words: Sequence[int],
                       order: RegisterOrder = RegisterOrder.LOW_HIGH) -> float:
    """
    Compose an IEEE 754 float from two registers.

    Args:
        words: Exactly two unsigned 16-bit words
        order: LOW_HIGH if words[0] carries the low-order 16 bits

    Returns:
        Decoded float (single precision widened to Python float)

    Example:
        >>> registers_to_float([0x0000, 0x3F80])
        1.0
    """
    if len(words) != 2:
        raise EncodingError(f"A float needs exactly 2 registers, got {len(words)}")
    _check_words(words)

    if order == RegisterOrder.LOW_HIGH:
        low, high = words
    else:
        high, low = words

    return struct.unpack('>f', struct.pack('>HH', high, low))[0]


def float_to_registers(value: float,
                       order: RegisterOrder = RegisterOrder.LOW_HIGH) -> List[int]:
    """Split a float into two registers, inverse of registers_to_float."""
    if not np.isfinite(value):
        raise EncodingError(f"Cannot encode non-finite float {value}")
    try:
        high, low = struct.unpack('>HH', struct.pack('>f', value))
    except OverflowError:
        raise EncodingError(f"Float {value} exceeds single precision range") from None

    if order == RegisterOrder.LOW_HIGH:
        return [low, high]
    return [high, low]


def register_to_int16(word: int) -> int:
    """Signed value of one register, two's complement of its own 16 bits."""
    _check_words([word])
    return word - 0x10000 if word & 0x8000 else word


def registers_to_int16(words: Sequence[int]) -> List[int]:
    """Signed values of a block of registers."""
    _check_words(words)
    return np.asarray(words, dtype=np.uint16).view(np.int16).tolist()


def int16_to_register(value: int) -> int:
    """Register word for a signed (or already unsigned) 16-bit value."""
    if isinstance(value, bool) or not -0x8000 <= value <= 0xFFFF:
        raise EncodingError(f"Value {value!r} does not fit a 16-bit register")
    return value & 0xFFFF
