"""
Loopback Modbus TCP Server
==========================

In-process Modbus TCP server used to exercise the client end to end.

Runs an asyncio server on its own thread so blocking client code can talk
to it from the test thread. Supports FC01-FC06, FC15 and FC16 against an
in-memory MemoryBank, and exposes hooks to misbehave on purpose:

    respond          - False: swallow requests (client times out)
    forced_exception - exception code returned for every request
    tamper           - callable rewriting each response frame
    drop_connections - close every accepted connection
"""

import asyncio
import struct
import logging
import threading
from typing import Callable, Dict, List, Optional

from plc_modbus.codec import ExceptionCode, FunctionCode, pack_bits, unpack_bits

logger = logging.getLogger(__name__)


class MemoryBank:
    """Coil and register storage behind the loopback server."""

    def __init__(self, size: int = 10000):
        self.size = size
        self.coils = [False] * size
        self.discrete_inputs = [False] * size
        self.holding_registers = [0] * size
        self.input_registers = [0] * size


class LoopbackModbusServer:
    """
    Threaded asyncio Modbus TCP server bound to localhost.

    Usage:
        server = LoopbackModbusServer(unit_id=1).start()
        ... connect a client to server.host / server.port ...
        server.stop()
    """

    def __init__(self, unit_id: int = 1, host: str = "127.0.0.1", port: int = 0,
                 bank: Optional[MemoryBank] = None):
        self.unit_id = unit_id
        self.host = host
        self.port = port
        self.bank = bank if bank is not None else MemoryBank()

        self.respond = True
        self.forced_exception: Optional[int] = None
        self.tamper: Optional[Callable[[bytes], bytes]] = None
        self.requests: List[bytes] = []

        self.stats = {
            "connections_total": 0,
            "connections_active": 0,
            "exceptions_total": 0,
        }

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: List[asyncio.StreamWriter] = []
        self._ready = threading.Event()

        self._handlers: Dict[int, Callable[[bytes], bytes]] = {
            FunctionCode.READ_COILS: self._handle_read_bits,
            FunctionCode.READ_DISCRETE_INPUTS: self._handle_read_bits,
            FunctionCode.READ_HOLDING_REGISTERS: self._handle_read_registers,
            FunctionCode.READ_INPUT_REGISTERS: self._handle_read_registers,
            FunctionCode.WRITE_SINGLE_COIL: self._handle_write_coil,
            FunctionCode.WRITE_SINGLE_REGISTER: self._handle_write_register,
            FunctionCode.WRITE_MULTIPLE_COILS: self._handle_write_coils,
            FunctionCode.WRITE_MULTIPLE_REGISTERS: self._handle_write_registers,
        }

    # ==================== LIFECYCLE ====================

    def start(self) -> 'LoopbackModbusServer':
        """Start the server thread and wait until it is listening."""
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="loopback-modbus-server",
                                        daemon=True)
        self._thread.start()
        if not self._ready.wait(timeout=5):
            raise RuntimeError("Loopback Modbus server did not start")
        return self

    def _run(self):
        asyncio.set_event_loop(self._loop)
        self._loop.run_until_complete(self._start())
        self._ready.set()
        self._loop.run_forever()

        pending = asyncio.all_tasks(self._loop)
        for task in pending:
            task.cancel()
        self._loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        self._loop.close()

    async def _start(self):
        self._server = await asyncio.start_server(self._handle_connection, self.host, self.port)
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Loopback Modbus server listening on {self.host}:{self.port}")

    def stop(self):
        """Close all connections and stop the server thread."""
        if self._loop is None:
            return
        asyncio.run_coroutine_threadsafe(self._stop(), self._loop).result(timeout=5)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)
        self._loop = None
        self._ready.clear()

    async def _stop(self):
        self._close_writers()
        self._server.close()
        try:
            await asyncio.wait_for(self._server.wait_closed(), timeout=2)
        except asyncio.TimeoutError:
            logger.warning("Loopback Modbus server did not close cleanly")

    def drop_connections(self):
        """Close every accepted connection; the listener stays up."""
        async def _drop():
            self._close_writers()
        asyncio.run_coroutine_threadsafe(_drop(), self._loop).result(timeout=5)

    def _close_writers(self):
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()

    @property
    def connections_active(self) -> int:
        return self.stats["connections_active"]

    # ==================== CONNECTION HANDLING ====================

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        addr = writer.get_extra_info('peername')
        logger.debug(f"Loopback connection from {addr}")
        self._writers.append(writer)
        self.stats["connections_total"] += 1
        self.stats["connections_active"] += 1

        try:
            while True:
                header = await reader.readexactly(7)
                transaction_id, protocol_id, length, unit_id = struct.unpack('>HHHB', header)
                pdu = await reader.readexactly(length - 1)
                self.requests.append(header + pdu)

                if protocol_id != 0 or unit_id != self.unit_id:
                    logger.warning(f"Ignoring frame for unit {unit_id} protocol {protocol_id:#x}")
                    continue
                if not self.respond:
                    continue

                response_pdu = self._process_request(pdu)
                response = struct.pack('>HHHB', transaction_id, 0,
                                       len(response_pdu) + 1, unit_id) + response_pdu
                if self.tamper is not None:
                    response = self.tamper(response)

                writer.write(response)
                await writer.drain()

        except (asyncio.IncompleteReadError, ConnectionError):
            logger.debug(f"Loopback connection closed by {addr}")
        finally:
            if writer in self._writers:
                self._writers.remove(writer)
            self.stats["connections_active"] -= 1
            writer.close()

    def _process_request(self, pdu: bytes) -> bytes:
        function_code = pdu[0]

        if self.forced_exception is not None:
            return self._build_exception_response(function_code, self.forced_exception)

        handler = self._handlers.get(function_code)
        if handler is None:
            return self._build_exception_response(function_code, ExceptionCode.ILLEGAL_FUNCTION)

        try:
            return handler(pdu)
        except IndexError:
            return self._build_exception_response(function_code,
                                                  ExceptionCode.ILLEGAL_DATA_ADDRESS)

    def _build_exception_response(self, function_code: int, exception_code: int) -> bytes:
        self.stats["exceptions_total"] += 1
        return struct.pack('BB', function_code | 0x80, exception_code)

    def _check_range(self, address: int, count: int):
        if address + count > self.bank.size:
            raise IndexError(f"{address}+{count} beyond {self.bank.size}")

    # ==================== FUNCTION HANDLERS ====================

    def _handle_read_bits(self, pdu: bytes) -> bytes:
        function_code = pdu[0]
        address, count = struct.unpack('>HH', pdu[1:5])
        self._check_range(address, count)
        table = (self.bank.coils if function_code == FunctionCode.READ_COILS
                 else self.bank.discrete_inputs)
        data = pack_bits(table[address:address + count])
        return struct.pack('BB', function_code, len(data)) + data

    def _handle_read_registers(self, pdu: bytes) -> bytes:
        function_code = pdu[0]
        address, count = struct.unpack('>HH', pdu[1:5])
        self._check_range(address, count)
        table = (self.bank.holding_registers if function_code == FunctionCode.READ_HOLDING_REGISTERS
                 else self.bank.input_registers)
        words = table[address:address + count]
        return struct.pack('BB', function_code, 2 * count) + struct.pack(f'>{count}H', *words)

    def _handle_write_coil(self, pdu: bytes) -> bytes:
        address, value = struct.unpack('>HH', pdu[1:5])
        if value not in (0x0000, 0xFF00):
            return self._build_exception_response(5, ExceptionCode.ILLEGAL_DATA_VALUE)
        self._check_range(address, 1)
        self.bank.coils[address] = value == 0xFF00
        return struct.pack('>BHH', 5, address, value)

    def _handle_write_register(self, pdu: bytes) -> bytes:
        address, value = struct.unpack('>HH', pdu[1:5])
        self._check_range(address, 1)
        self.bank.holding_registers[address] = value
        return struct.pack('>BHH', 6, address, value)

    def _handle_write_coils(self, pdu: bytes) -> bytes:
        address, count, byte_count = struct.unpack('>HHB', pdu[1:6])
        if byte_count != (count + 7) // 8:
            return self._build_exception_response(15, ExceptionCode.ILLEGAL_DATA_VALUE)
        self._check_range(address, count)
        self.bank.coils[address:address + count] = unpack_bits(pdu[6:6 + byte_count], count)
        return struct.pack('>BHH', 15, address, count)

    def _handle_write_registers(self, pdu: bytes) -> bytes:
        address, count, byte_count = struct.unpack('>HHB', pdu[1:6])
        if byte_count != count * 2:
            return self._build_exception_response(16, ExceptionCode.ILLEGAL_DATA_VALUE)
        self._check_range(address, count)
        self.bank.holding_registers[address:address + count] = list(
            struct.unpack(f'>{count}H', pdu[6:6 + byte_count])
        )
        return struct.pack('>BHH', 16, address, count)
