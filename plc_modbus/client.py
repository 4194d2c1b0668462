"""
Modbus TCP Client
=================

Public façade for talking to one programmable controller.

Features:
    - Connection management with background liveness/reconnect
    - Read operations (FC01/02/03/04)
    - Write operations (FC05/06/15/16)
    - REAL / INT16 helpers on top of register reads and writes
    - One request in flight at a time

Error policy:
    Invalid arguments raise EncodingError. Transport, timeout and protocol
    failures never raise out of a request method: it returns an empty list,
    False or None and the cause is kept in `last_error` (None after a
    successful request). Malformed frames and transaction id mismatches
    also drop the socket, and the liveness loop reconnects.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Union

from plc_modbus.codec import (
    FunctionCode,
    ModbusRequest,
    ModbusResponse,
    build_request,
    decode_response,
    expected_response_length,
    is_write,
)
from plc_modbus.config import ClientConfig
from plc_modbus.connection import ConnectionManager, ReachableProbe
from plc_modbus.datatypes import (
    DataType,
    RegisterOrder,
    float_to_registers,
    registers_to_float,
    registers_to_int16,
)
from plc_modbus.events import EventLog, EventType, Severity
from plc_modbus.exceptions import ConnectError, ModbusError, ProtocolError, UnreachableError
from plc_modbus.reachability import ping_host
from plc_modbus.transaction import TransactionCounter

logger = logging.getLogger(__name__)


class ModbusTCPClient:
    """
    Modbus TCP client for one controller.

    Implements Modbus protocol framing:
    - MBAP (Modbus Application Protocol) header
    - Function codes FC01-FC06, FC15, FC16
    """

    def __init__(self,
                 host: str,
                 port: int = 502,
                 unit_id: int = 1,
                 timeout_s: float = 3.0,
                 liveness_interval_s: float = 8.0,
                 read_timeout_s: Optional[float] = None,
                 reachable: ReachableProbe = ping_host,
                 on_failure=None,
                 events: Optional[EventLog] = None):
        """
        Initialize Modbus client.

        Args:
            host: Controller IP address or hostname
            port: Modbus TCP port (default 502)
            unit_id: Unit identifier placed in every request (default 1)
            timeout_s: Connect timeout in seconds
            liveness_interval_s: Seconds between liveness checks
            read_timeout_s: Response timeout in seconds (default: timeout_s)
            reachable: Reachability probe, reachable(host, timeout_ms) -> bool
            on_failure: Liveness failure callback (default: reconnect)
            events: Event sink (a new EventLog if omitted)
        """
        if not 0 <= unit_id <= 255:
            raise ValueError(f"unit_id {unit_id} out of range [0, 255]")

        self.unit_id = unit_id
        self.events = events if events is not None else EventLog()
        self.connection = ConnectionManager(
            host,
            port=port,
            timeout_s=timeout_s,
            read_timeout_s=read_timeout_s,
            liveness_interval_s=liveness_interval_s,
            reachable=reachable,
            on_failure=on_failure,
            events=self.events,
        )
        self.transactions = TransactionCounter()
        self.last_error: Optional[ModbusError] = None
        self.last_rx_time: Optional[datetime] = None

        self.stats = {
            'reads': 0,
            'writes': 0,
            'errors': 0,
            'exceptions': 0,
        }

    @classmethod
    def from_config(cls, config: ClientConfig, **kwargs) -> 'ModbusTCPClient':
        """Build a client from a ClientConfig; kwargs are passed through."""
        return cls(
            config.host,
            port=config.port,
            unit_id=config.unit_id,
            timeout_s=config.connect_timeout_s,
            liveness_interval_s=config.liveness_interval_s,
            read_timeout_s=config.read_timeout_s,
            **kwargs,
        )

    @property
    def host(self) -> str:
        return self.connection.host

    @property
    def port(self) -> int:
        return self.connection.port

    # ==================== CONNECTION ====================

    def connect(self) -> bool:
        """
        Connect to the controller.

        Returns:
            True if connection successful, False otherwise (see last_error)
        """
        try:
            self.connection.connect()
        except (UnreachableError, ConnectError) as e:
            self.last_error = e
            logger.error(f"Modbus connection failed to {self.host}:{self.port}: {e}")
            return False
        self.last_error = None
        return True

    def disconnect(self):
        """Disconnect and stop the liveness loop. Safe to call repeatedly."""
        self.connection.disconnect()

    close = disconnect

    def __enter__(self) -> 'ModbusTCPClient':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def is_healthy(self) -> bool:
        """Connected, and the last request (if any) succeeded."""
        return self.connection.is_connected() and self.last_error is None

    # ==================== REQUEST PIPELINE ====================

    def _execute(self, function_code: FunctionCode, address: int,
                 quantity: int = 1, payload=None) -> Optional[ModbusResponse]:
        """
        Run one request/response exchange while holding the connection.

        Returns:
            Decoded response, or None on transport/protocol failure
        """
        with self.connection.exclusive():
            request = build_request(self.transactions.next(), self.unit_id,
                                    function_code, address, quantity, payload)

            self.stats['writes' if is_write(function_code) else 'reads'] += 1

            if not self.connection.send(request.encode()):
                return self._failed(request, self.connection.last_error)

            raw = self.connection.receive(expected_response_length(function_code, quantity))
            if not raw:
                # Already recorded and torn down by the connection
                return self._failed(request, self.connection.last_error)

            try:
                response = decode_response(request, raw)
            except ProtocolError as e:
                if e.is_framing_error:
                    self.connection.discard(e)
                    return self._failed(request, e)
                return self._failed(request, e, record=True)

        self.last_rx_time = datetime.now()
        self.last_error = None
        return response

    def _failed(self, request: ModbusRequest, error: Optional[ModbusError],
                record: bool = False) -> None:
        self.last_error = error
        self.stats['errors'] += 1

        if isinstance(error, ProtocolError) and error.is_device_exception:
            self.stats['exceptions'] += 1

        if record and isinstance(error, ProtocolError):
            if error.is_device_exception:
                event_type = EventType.DEVICE_EXCEPTION
            else:
                event_type = EventType.PROTOCOL_ERROR
            self.events.record(event_type, Severity.WARNING, self.host, self.port, details={
                'function_code': int(request.function_code),
                'address': request.address,
                'kind': error.kind.value,
                'code': error.code,
            })

        logger.error(f"FC{request.function_code:02d} at {request.address} "
                     f"failed for {self.host}: {error}")
        return None

    # ==================== READS ====================

    def read_coils(self, address: int, count: int = 1) -> List[bool]:
        """
        Read coils (FC01).

        Args:
            address: Starting coil address
            count: Number of coils to read (1-2000)

        Returns:
            Coil states in ascending address order, [] on failure
        """
        response = self._execute(FunctionCode.READ_COILS, address, count)
        return response.values if response else []

    def read_discrete_inputs(self, address: int, count: int = 1) -> List[bool]:
        """
        Read discrete inputs (FC02).

        Returns:
            Input states in ascending address order, [] on failure
        """
        response = self._execute(FunctionCode.READ_DISCRETE_INPUTS, address, count)
        return response.values if response else []

    def read_holding_registers(self, address: int, count: int = 1) -> List[int]:
        """
        Read holding registers (FC03).

        Args:
            address: Starting register address (0-65535)
            count: Number of registers to read (1-125)

        Returns:
            Raw unsigned register words, [] on failure
        """
        response = self._execute(FunctionCode.READ_HOLDING_REGISTERS, address, count)
        return response.values if response else []

    def read_input_registers(self, address: int, count: int = 1) -> List[int]:
        """Read input registers (FC04). Raw unsigned words, [] on failure."""
        response = self._execute(FunctionCode.READ_INPUT_REGISTERS, address, count)
        return response.values if response else []

    # ==================== WRITES ====================

    def write_single_coil(self, address: int, value: bool) -> bool:
        """
        Write single coil (FC05).

        Args:
            address: Coil address
            value: True (ON) or False (OFF)

        Returns:
            True if the controller echoed the request, False otherwise
        """
        return self._execute(FunctionCode.WRITE_SINGLE_COIL, address, 1, bool(value)) is not None

    def write_single_register(self, address: int, value: int) -> bool:
        """
        Write single register (FC06).

        Args:
            address: Register address
            value: Value to write (-32768 to 65535, negatives as two's complement)

        Returns:
            True if the controller echoed the request, False otherwise
        """
        return self._execute(FunctionCode.WRITE_SINGLE_REGISTER, address, 1, value) is not None

    def write_multiple_coils(self, address: int, values: Sequence[bool]) -> bool:
        """Write consecutive coils (FC15) starting at address."""
        return self._execute(FunctionCode.WRITE_MULTIPLE_COILS, address,
                             len(values), list(values)) is not None

    def write_multiple_registers(self, address: int, values: Sequence[int]) -> bool:
        """Write consecutive registers (FC16) starting at address."""
        return self._execute(FunctionCode.WRITE_MULTIPLE_REGISTERS, address,
                             len(values), list(values)) is not None

    # ==================== TYPED VALUES ====================

    registers_to_float = staticmethod(registers_to_float)

    def _read_words(self, address: int, count: int, input_registers: bool) -> List[int]:
        if input_registers:
            return self.read_input_registers(address, count)
        return self.read_holding_registers(address, count)

    def read_float(self, address: int, order: RegisterOrder = RegisterOrder.LOW_HIGH,
                   input_registers: bool = False) -> Optional[float]:
        """
        Read a REAL stored in two consecutive registers.

        Returns:
            Decoded float, or None on failure
        """
        words = self._read_words(address, 2, input_registers)
        if len(words) != 2:
            return None
        return registers_to_float(words, order)

    def write_float(self, address: int, value: float,
                    order: RegisterOrder = RegisterOrder.LOW_HIGH) -> bool:
        """Write a REAL into two consecutive holding registers (FC16)."""
        return self.write_multiple_registers(address, float_to_registers(value, order))

    def read_int16(self, address: int, count: int = 1,
                   input_registers: bool = False) -> List[int]:
        """Read registers as signed 16-bit values, [] on failure."""
        words = self._read_words(address, count, input_registers)
        return registers_to_int16(words) if words else []

    def read_value(self, address: int, data_type: DataType,
                   order: RegisterOrder = RegisterOrder.LOW_HIGH) -> Union[bool, int, float, None]:
        """Read one BIT (coil), INT16 or REAL (holding registers); None on failure."""
        if data_type == DataType.BIT:
            values = self.read_coils(address, 1)
        elif data_type == DataType.INT16:
            values = self.read_int16(address, 1)
        elif data_type == DataType.REAL:
            return self.read_float(address, order)
        else:
            raise ValueError(f"Unsupported data type: {data_type}")
        return values[0] if values else None

    # ==================== STATUS ====================

    def get_status(self) -> Dict:
        """Get client status"""
        return {
            'unit_id': self.unit_id,
            'connection': self.connection.get_status(),
            'next_transaction_id': self.transactions.peek(),
            'last_error': str(self.last_error) if self.last_error else None,
            'last_rx_time': self.last_rx_time.isoformat() if self.last_rx_time else None,
            'stats': self.stats.copy(),
        }


if __name__ == "__main__":
    from plc_modbus.config import setup_logging

    setup_logging()
    config = ClientConfig.from_env()
    with ModbusTCPClient.from_config(config) as client:
        if client.connect():
            logger.info(f"Holding register 0: {client.read_holding_registers(0, 1)}")
        else:
            logger.error(f"Could not connect: {client.last_error}")
