"""
Test Suite for the Modbus TCP Frame Codec
=========================================

Tests validate:
    - MBAP header and PDU encoding (golden frames)
    - Request validation
    - Response decoding and every rejection path
    - Coil bit packing
"""

import struct
import unittest

from plc_modbus.codec import (
    ExceptionCode,
    FunctionCode,
    MbapHeader,
    build_request,
    decode_response,
    encode_request,
    expected_response_length,
    frame_length_from_header,
    pack_bits,
    unpack_bits,
)
from plc_modbus.exceptions import EncodingError, ProtocolError, ProtocolErrorKind


def make_frame(transaction_id: int, unit_id: int, pdu: bytes, length: int = None) -> bytes:
    """Build a response ADU around a PDU."""
    if length is None:
        length = len(pdu) + 1
    return struct.pack('>HHHB', transaction_id, 0, length, unit_id) + pdu


class TestEncodeRequest(unittest.TestCase):
    """Test request frame construction"""

    def test_read_holding_register_golden_frame(self):
        """FC03 start 0 quantity 1, unit 1, transaction 0"""
        frame = encode_request(0, 1, FunctionCode.READ_HOLDING_REGISTERS, 0x0000, 0x0001)
        self.assertEqual(frame, bytes.fromhex("00 00 00 00 00 06 01 03 00 00 00 01"))

    def test_transaction_id_and_address_big_endian(self):
        frame = encode_request(0x1234, 7, FunctionCode.READ_INPUT_REGISTERS, 0x0A0B, 10)
        self.assertEqual(frame[:2], b'\x12\x34')
        self.assertEqual(frame[2:4], b'\x00\x00')
        self.assertEqual(frame[6], 7)
        self.assertEqual(frame[7], 0x04)
        self.assertEqual(frame[8:10], b'\x0a\x0b')
        self.assertEqual(frame[10:12], b'\x00\x0a')

    def test_fixed_size_functions_have_length_six(self):
        cases = [
            (FunctionCode.READ_COILS, 8, None),
            (FunctionCode.READ_DISCRETE_INPUTS, 8, None),
            (FunctionCode.READ_HOLDING_REGISTERS, 2, None),
            (FunctionCode.READ_INPUT_REGISTERS, 2, None),
            (FunctionCode.WRITE_SINGLE_COIL, 1, True),
            (FunctionCode.WRITE_SINGLE_REGISTER, 1, 42),
        ]
        for code, quantity, payload in cases:
            with self.subTest(code=code):
                frame = encode_request(1, 1, code, 100, quantity, payload)
                self.assertEqual(struct.unpack('>H', frame[4:6])[0], 6)
                self.assertEqual(len(frame), 12)

    def test_header_length_matches_trailing_bytes(self):
        cases = [
            (FunctionCode.READ_COILS, 2000, None),
            (FunctionCode.READ_HOLDING_REGISTERS, 125, None),
            (FunctionCode.WRITE_MULTIPLE_COILS, 1, [True]),
            (FunctionCode.WRITE_MULTIPLE_COILS, 17, [True] * 17),
            (FunctionCode.WRITE_MULTIPLE_COILS, 1968, [False] * 1968),
            (FunctionCode.WRITE_MULTIPLE_REGISTERS, 1, [1]),
            (FunctionCode.WRITE_MULTIPLE_REGISTERS, 123, list(range(123))),
        ]
        for code, quantity, payload in cases:
            with self.subTest(code=code, quantity=quantity):
                frame = encode_request(9, 1, code, 0, quantity, payload)
                self.assertEqual(frame_length_from_header(frame[:7]), len(frame))

    def test_single_coil_values(self):
        on = encode_request(0, 1, FunctionCode.WRITE_SINGLE_COIL, 5, 1, True)
        off = encode_request(0, 1, FunctionCode.WRITE_SINGLE_COIL, 5, 1, False)
        self.assertEqual(on[-2:], b'\xff\x00')
        self.assertEqual(off[-2:], b'\x00\x00')

    def test_single_register_negative_value(self):
        frame = encode_request(0, 1, FunctionCode.WRITE_SINGLE_REGISTER, 0, 1, -2)
        self.assertEqual(frame[-2:], b'\xff\xfe')

    def test_multiple_coils_packing(self):
        """[True, False, True] packs to byte count 1 and 0b00000101 at any start address"""
        for start in (0, 3, 1000):
            with self.subTest(start=start):
                frame = encode_request(0, 1, FunctionCode.WRITE_MULTIPLE_COILS, start, 3,
                                       [True, False, True])
                self.assertEqual(struct.unpack('>H', frame[4:6])[0], 8)
                self.assertEqual(struct.unpack('>H', frame[10:12])[0], 3)
                self.assertEqual(frame[12], 1)
                self.assertEqual(frame[13], 0b00000101)

    def test_multiple_registers_frame(self):
        frame = encode_request(3, 1, FunctionCode.WRITE_MULTIPLE_REGISTERS, 0x10, 2,
                               [0x0102, 0xA0B0])
        self.assertEqual(frame, bytes.fromhex(
            "00 03 00 00 00 0b 01 10 00 10 00 02 04 01 02 a0 b0"
        ))

    def test_zero_quantity_rejected(self):
        for code in (FunctionCode.READ_COILS, FunctionCode.READ_HOLDING_REGISTERS):
            with self.subTest(code=code):
                with self.assertRaises(EncodingError):
                    encode_request(0, 1, code, 0, 0)

    def test_quantity_above_maximum_rejected(self):
        with self.assertRaises(EncodingError):
            encode_request(0, 1, FunctionCode.READ_COILS, 0, 2001)
        with self.assertRaises(EncodingError):
            encode_request(0, 1, FunctionCode.READ_HOLDING_REGISTERS, 0, 126)
        with self.assertRaises(EncodingError):
            encode_request(0, 1, FunctionCode.WRITE_MULTIPLE_REGISTERS, 0, 124, [0] * 124)

    def test_payload_length_mismatch_rejected(self):
        with self.assertRaises(EncodingError):
            encode_request(0, 1, FunctionCode.WRITE_MULTIPLE_COILS, 0, 4, [True, False])

    def test_address_range_overflow_rejected(self):
        with self.assertRaises(EncodingError):
            encode_request(0, 1, FunctionCode.READ_HOLDING_REGISTERS, 0xFFFF, 2)

    def test_register_value_out_of_range_rejected(self):
        with self.assertRaises(EncodingError):
            encode_request(0, 1, FunctionCode.WRITE_SINGLE_REGISTER, 0, 1, 70000)

    def test_unsupported_function_code_rejected(self):
        with self.assertRaises(EncodingError):
            encode_request(0, 1, 0x2B, 0, 1)

    def test_expected_response_length(self):
        self.assertEqual(expected_response_length(FunctionCode.READ_COILS, 9), 11)
        self.assertEqual(expected_response_length(FunctionCode.READ_INPUT_REGISTERS, 3), 15)
        self.assertEqual(expected_response_length(FunctionCode.WRITE_SINGLE_COIL, 1), 12)
        self.assertEqual(expected_response_length(FunctionCode.WRITE_MULTIPLE_REGISTERS, 10), 12)


class TestDecodeResponse(unittest.TestCase):
    """Test response validation and decoding"""

    def setUp(self):
        self.read_regs = build_request(5, 1, FunctionCode.READ_HOLDING_REGISTERS, 100, 2)
        self.read_coils = build_request(6, 1, FunctionCode.READ_COILS, 0, 10)

    def test_register_read(self):
        raw = make_frame(5, 1, bytes([3, 4]) + struct.pack('>HH', 0xFFFE, 0x0010))
        response = decode_response(self.read_regs, raw)
        self.assertEqual(response.values, [0xFFFE, 0x0010])
        self.assertEqual(response.byte_count, 4)
        self.assertEqual(response.header.transaction_id, 5)

    def test_coil_read(self):
        raw = make_frame(6, 1, bytes([1, 2, 0b10000101, 0b00000010]))
        response = decode_response(self.read_coils, raw)
        self.assertEqual(response.values, [True, False, True, False, False,
                                           False, False, True, False, True])

    def test_exception_response(self):
        raw = make_frame(5, 1, bytes([0x83, 0x02]))
        with self.assertRaises(ProtocolError) as ctx:
            decode_response(self.read_regs, raw)
        self.assertEqual(ctx.exception.kind, ProtocolErrorKind.DEVICE_EXCEPTION)
        self.assertEqual(ctx.exception.code, 2)
        self.assertEqual(ctx.exception.exception_code, ExceptionCode.ILLEGAL_DATA_ADDRESS)

    def test_unknown_exception_code_kept_raw(self):
        raw = make_frame(5, 1, bytes([0x83, 0x42]))
        with self.assertRaises(ProtocolError) as ctx:
            decode_response(self.read_regs, raw)
        self.assertEqual(ctx.exception.exception_code, 0x42)

    def test_too_short(self):
        with self.assertRaises(ProtocolError) as ctx:
            decode_response(self.read_regs, b'\x00\x05\x00\x00\x00\x01\x01')
        self.assertEqual(ctx.exception.kind, ProtocolErrorKind.MALFORMED)

    def test_transaction_mismatch(self):
        raw = make_frame(4, 1, bytes([3, 4, 0, 1, 0, 2]))
        with self.assertRaises(ProtocolError) as ctx:
            decode_response(self.read_regs, raw)
        self.assertEqual(ctx.exception.kind, ProtocolErrorKind.TRANSACTION_MISMATCH)

    def test_protocol_id_nonzero(self):
        raw = bytearray(make_frame(5, 1, bytes([3, 4, 0, 1, 0, 2])))
        raw[3] = 1
        with self.assertRaises(ProtocolError) as ctx:
            decode_response(self.read_regs, bytes(raw))
        self.assertEqual(ctx.exception.kind, ProtocolErrorKind.MALFORMED)

    def test_length_mismatch(self):
        raw = make_frame(5, 1, bytes([3, 4, 0, 1, 0, 2]), length=9)
        with self.assertRaises(ProtocolError) as ctx:
            decode_response(self.read_regs, raw)
        self.assertEqual(ctx.exception.kind, ProtocolErrorKind.LENGTH_MISMATCH)

    def test_unit_mismatch(self):
        raw = make_frame(5, 2, bytes([3, 4, 0, 1, 0, 2]))
        with self.assertRaises(ProtocolError) as ctx:
            decode_response(self.read_regs, raw)
        self.assertEqual(ctx.exception.kind, ProtocolErrorKind.UNIT_MISMATCH)

    def test_function_mismatch(self):
        raw = make_frame(5, 1, bytes([4, 4, 0, 1, 0, 2]))
        with self.assertRaises(ProtocolError) as ctx:
            decode_response(self.read_regs, raw)
        self.assertEqual(ctx.exception.kind, ProtocolErrorKind.FUNCTION_MISMATCH)

    def test_register_byte_count_mismatch(self):
        raw = make_frame(5, 1, bytes([3, 2, 0, 1]))
        with self.assertRaises(ProtocolError):
            decode_response(self.read_regs, raw)

    def test_write_echo_accepted(self):
        request = build_request(1, 1, FunctionCode.WRITE_SINGLE_REGISTER, 10, 1, 1234)
        raw = make_frame(1, 1, struct.pack('>BHH', 6, 10, 1234))
        self.assertEqual(decode_response(request, raw).values, [10, 1234])

    def test_write_echo_value_mismatch(self):
        request = build_request(1, 1, FunctionCode.WRITE_SINGLE_COIL, 10, 1, True)
        raw = make_frame(1, 1, struct.pack('>BHH', 5, 10, 0x0000))
        with self.assertRaises(ProtocolError) as ctx:
            decode_response(request, raw)
        self.assertEqual(ctx.exception.kind, ProtocolErrorKind.ECHO_MISMATCH)

    def test_multiple_write_echo_quantity_mismatch(self):
        request = build_request(1, 1, FunctionCode.WRITE_MULTIPLE_REGISTERS, 0, 3, [1, 2, 3])
        raw = make_frame(1, 1, struct.pack('>BHH', 16, 0, 2))
        with self.assertRaises(ProtocolError) as ctx:
            decode_response(request, raw)
        self.assertEqual(ctx.exception.kind, ProtocolErrorKind.ECHO_MISMATCH)


class TestBitPacking(unittest.TestCase):
    """Test LSB-first coil packing"""

    def test_pack_bits(self):
        self.assertEqual(pack_bits([True, False, True]), b'\x05')
        self.assertEqual(pack_bits([False] * 8 + [True]), b'\x00\x01')
        self.assertEqual(pack_bits([]), b'')

    def test_unpack_bits_ignores_padding(self):
        self.assertEqual(unpack_bits(b'\xff', 3), [True, True, True])

    def test_unpack_bits_too_many_requested(self):
        with self.assertRaises(ProtocolError):
            unpack_bits(b'\x01', 9)


class TestMbapHeader(unittest.TestCase):

    def test_pack_unpack(self):
        header = MbapHeader(0xBEEF, 0, 6, 0x11)
        self.assertEqual(header.pack(), bytes.fromhex("be ef 00 00 00 06 11"))
        self.assertEqual(MbapHeader.unpack(header.pack()), header)


if __name__ == '__main__':
    unittest.main(verbosity=2)
