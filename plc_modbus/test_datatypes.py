"""
Test Suite for register data types and transaction ids
"""

import math
import unittest

from plc_modbus.datatypes import (
    RegisterOrder,
    float_to_registers,
    int16_to_register,
    register_to_int16,
    registers_to_float,
    registers_to_int16,
)
from plc_modbus.exceptions import EncodingError
from plc_modbus.transaction import TransactionCounter


class TestFloatConversion(unittest.TestCase):
    """Test REAL values spread over two registers"""

    def test_low_high_one(self):
        self.assertEqual(registers_to_float([0x0000, 0x3F80], RegisterOrder.LOW_HIGH), 1.0)

    def test_high_low_one(self):
        self.assertEqual(registers_to_float([0x3F80, 0x0000], RegisterOrder.HIGH_LOW), 1.0)

    def test_default_order_is_low_high(self):
        self.assertEqual(registers_to_float([0x0000, 0xC120]), -10.0)

    def test_wrong_word_count(self):
        for words in ([], [0x3F80], [0, 0, 0]):
            with self.subTest(words=words):
                with self.assertRaises(EncodingError):
                    registers_to_float(words)

    def test_word_out_of_range(self):
        with self.assertRaises(EncodingError):
            registers_to_float([0x10000, 0])

    def test_float_to_registers(self):
        self.assertEqual(float_to_registers(1.0), [0x0000, 0x3F80])
        self.assertEqual(float_to_registers(1.0, RegisterOrder.HIGH_LOW), [0x3F80, 0x0000])

    def test_float_survives_register_split(self):
        words = float_to_registers(7.25, RegisterOrder.HIGH_LOW)
        self.assertAlmostEqual(registers_to_float(words, RegisterOrder.HIGH_LOW), 7.25)

    def test_non_finite_rejected(self):
        for value in (math.inf, -math.inf, math.nan):
            with self.subTest(value=value):
                with self.assertRaises(EncodingError):
                    float_to_registers(value)

    def test_out_of_single_precision_range(self):
        with self.assertRaises(EncodingError):
            float_to_registers(1e39)


class TestInt16Conversion(unittest.TestCase):
    """Signed values come from each register's own 16 bits"""

    def test_register_to_int16(self):
        self.assertEqual(register_to_int16(0x0000), 0)
        self.assertEqual(register_to_int16(0x7FFF), 32767)
        self.assertEqual(register_to_int16(0x8000), -32768)
        self.assertEqual(register_to_int16(0xFFFF), -1)

    def test_sign_independent_per_register(self):
        # A positive register next to a negative one keeps its own sign
        self.assertEqual(registers_to_int16([0x00FF, 0xFF00, 0x0001]), [255, -256, 1])

    def test_int16_to_register(self):
        self.assertEqual(int16_to_register(-1), 0xFFFF)
        self.assertEqual(int16_to_register(-32768), 0x8000)
        self.assertEqual(int16_to_register(1234), 1234)
        with self.assertRaises(EncodingError):
            int16_to_register(-32769)


class TestTransactionCounter(unittest.TestCase):

    def test_returns_current_then_increments(self):
        counter = TransactionCounter()
        self.assertEqual(counter.next(), 0)
        self.assertEqual(counter.next(), 1)
        self.assertEqual(counter.peek(), 2)

    def test_wraps_at_16_bits(self):
        counter = TransactionCounter(start=65535)
        self.assertEqual(counter.next(), 65535)
        self.assertEqual(counter.next(), 0)

    def test_invalid_start(self):
        with self.assertRaises(ValueError):
            TransactionCounter(start=65536)

    def test_independent_instances(self):
        a, b = TransactionCounter(), TransactionCounter()
        a.next()
        a.next()
        self.assertEqual(b.next(), 0)


if __name__ == '__main__':
    unittest.main(verbosity=2)
