"""
PLC Modbus - Modbus TCP client for programmable controllers

Provides client-side Modbus TCP communication including:
- MBAP framing and response validation for FC01-FC06, FC15, FC16
- Connection management with reachability probe and liveness/reconnect loop
- REAL / INT16 register conversions
- Structured connection event log

Usage:
    from plc_modbus import ModbusTCPClient

    with ModbusTCPClient("192.168.1.10", unit_id=1) as client:
        if client.connect():
            values = client.read_holding_registers(0, 10)
            if not values:
                print(client.last_error)
"""

from .client import ModbusTCPClient
from .codec import ExceptionCode, FunctionCode, decode_response, encode_request
from .config import ClientConfig, setup_logging
from .connection import ConnectionManager, ConnectionState
from .datatypes import (
    DataType,
    RegisterOrder,
    float_to_registers,
    registers_to_float,
    registers_to_int16,
)
from .events import ConnectionEvent, EventLog, EventType, Severity
from .exceptions import (
    ConnectError,
    EncodingError,
    ModbusError,
    ModbusTimeoutError,
    ProtocolError,
    ProtocolErrorKind,
    TransportError,
    UnreachableError,
)
from .reachability import always_reachable, ping_host
from .transaction import TransactionCounter

__all__ = [
    'ModbusTCPClient',
    'FunctionCode',
    'ExceptionCode',
    'encode_request',
    'decode_response',
    'ClientConfig',
    'setup_logging',
    'ConnectionManager',
    'ConnectionState',
    'DataType',
    'RegisterOrder',
    'registers_to_float',
    'float_to_registers',
    'registers_to_int16',
    'ConnectionEvent',
    'EventLog',
    'EventType',
    'Severity',
    'ModbusError',
    'UnreachableError',
    'ConnectError',
    'TransportError',
    'ModbusTimeoutError',
    'EncodingError',
    'ProtocolError',
    'ProtocolErrorKind',
    'ping_host',
    'always_reachable',
    'TransactionCounter',
]
