"""
Modbus TCP Connection Manager
=============================

Owns the TCP socket to one controller and keeps it usable across transient
network faults.

Connection states:
    DISCONNECTED - No socket
    CONNECTING   - Reachability probe / TCP handshake in progress
    CONNECTED    - Socket open, requests may be exchanged

Sequence:
    1. connect(): probe host, open TCP socket (CONNECTED)
    2. Liveness thread starts, ticking every liveness_interval_s
    3. Each tick checks the socket and re-probes the host
    4. On failure the failure callback runs (default: reconnect with the
       last-used parameters); a failed reconnect is retried next tick
    5. disconnect(): stop and join the liveness thread, close the socket

Locking:
    One re-entrant I/O lock guards every send/receive pair and every
    probe/reconnect sequence, so a reconnect can never interleave with an
    in-flight request. disconnect() shuts the socket down before taking the
    lock, which unblocks a receive that is waiting on the controller.
"""

import select
import socket
import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Dict, Optional

from plc_modbus.codec import (
    MAX_ADU_LENGTH,
    MBAP_HEADER_LENGTH,
    frame_length_from_header,
    hexdump,
)
from plc_modbus.events import EventLog, EventType, Severity
from plc_modbus.exceptions import (
    ConnectError,
    ModbusError,
    ModbusTimeoutError,
    ProtocolError,
    ProtocolErrorKind,
    TransportError,
    UnreachableError,
)
from plc_modbus.reachability import ping_host

logger = logging.getLogger(__name__)

ReachableProbe = Callable[[str, int], bool]


class ConnectionState(Enum):
    """TCP connection states"""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class ConnectionManager:
    """
    Socket owner with a background liveness watchdog.

    send() and receive() fail closed: they return False / b"" and leave the
    typed error in `last_error` instead of raising.
    """

    def __init__(self,
                 host: str,
                 port: int = 502,
                 timeout_s: float = 3.0,
                 read_timeout_s: Optional[float] = None,
                 liveness_interval_s: float = 8.0,
                 reachable: ReachableProbe = ping_host,
                 on_failure: Optional[Callable[['ConnectionManager'], None]] = None,
                 events: Optional[EventLog] = None):
        """
        Initialize connection manager.

        Args:
            host: Controller IP address or hostname
            port: Modbus TCP port (default 502)
            timeout_s: Connect and probe timeout in seconds
            read_timeout_s: Response timeout in seconds (default: timeout_s)
            liveness_interval_s: Seconds between liveness checks
            reachable: Probe called as reachable(host, timeout_ms)
            on_failure: Called with this manager when a liveness check fails
                        (default: reconnect())
            events: Event sink shared with the owning client
        """
        self.host = host
        self.port = port
        self.timeout_s = timeout_s
        self.read_timeout_s = read_timeout_s if read_timeout_s is not None else timeout_s
        self.liveness_interval_s = liveness_interval_s
        self.reachable = reachable
        self.on_failure = on_failure
        self.events = events if events is not None else EventLog()

        self.state = ConnectionState.DISCONNECTED
        self.socket: Optional[socket.socket] = None
        self.last_error: Optional[ModbusError] = None

        self._io_lock = threading.RLock()
        self._lifecycle_lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._liveness_thread: Optional[threading.Thread] = None

        self.stats = {
            'connections': 0,
            'disconnections': 0,
            'reconnects': 0,
            'liveness_failures': 0,
            'bytes_sent': 0,
            'bytes_received': 0,
            'errors': 0,
        }

    @property
    def timeout_ms(self) -> int:
        return int(self.timeout_s * 1000)

    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self.socket is not None

    # ==================== CONNECT / DISCONNECT ====================

    def connect(self, host: Optional[str] = None, port: Optional[int] = None,
                timeout_s: Optional[float] = None):
        """
        Probe the host, open the TCP connection and start the liveness loop.

        Parameters left as None keep their previous values; the ones used
        here are remembered for later reconnects.

        Raises:
            UnreachableError: Reachability probe failed (no TCP attempt made)
            ConnectError: Socket-level failure
        """
        with self._io_lock:
            if host is not None:
                self.host = host
            if port is not None:
                self.port = port
            if timeout_s is not None:
                self.timeout_s = timeout_s
            self._open()
        self._start_liveness()

    def _open(self):
        """Probe and open a fresh socket. Caller holds the I/O lock."""
        self._close_socket()
        self.state = ConnectionState.CONNECTING
        self.events.record(EventType.CONNECT_ATTEMPT, Severity.DEBUG, self.host, self.port)

        if not self.reachable(self.host, self.timeout_ms):
            self.state = ConnectionState.DISCONNECTED
            error = UnreachableError(self.host, self.timeout_ms)
            self.last_error = error
            self.events.record(EventType.UNREACHABLE, Severity.WARNING, self.host, self.port)
            raise error

        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout_s)
        except OSError as e:
            self.state = ConnectionState.DISCONNECTED
            error = ConnectError(f"Connection to {self.host}:{self.port} failed: {e}")
            self.last_error = error
            self.events.record(EventType.CONNECT_FAILED, Severity.ERROR, self.host, self.port,
                               details={'error': str(e)})
            raise error from e

        sock.settimeout(self.read_timeout_s)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self.socket = sock
        self.state = ConnectionState.CONNECTED
        self.last_error = None
        self.stats['connections'] += 1
        self.events.record(EventType.CONNECTED, Severity.INFO, self.host, self.port)
        logger.info(f"Modbus connected to {self.host}:{self.port}")

    def disconnect(self):
        """
        Stop the liveness loop and close the connection.

        Idempotent. Once this returns, no liveness callback fires until the
        next connect().
        """
        was_open = self.socket is not None
        with self._lifecycle_lock:
            stop_event, thread = self._stop_event, self._liveness_thread
            self._stop_event = None
            self._liveness_thread = None

        if stop_event is not None:
            stop_event.set()

        # Unblock a receive waiting on the controller so the lock frees up
        self._interrupt()

        if thread is not None and thread is not threading.current_thread():
            thread.join()

        with self._io_lock:
            was_open = was_open or self.socket is not None
            self._close_socket()

        if was_open:
            self.stats['disconnections'] += 1
            self.events.record(EventType.DISCONNECTED, Severity.INFO, self.host, self.port)
            logger.info(f"Modbus disconnected from {self.host}:{self.port}")

    def reconnect(self):
        """
        Tear down the socket and connect again with the last-used parameters.

        Raises:
            UnreachableError, ConnectError: Reconnect attempt failed
        """
        with self._io_lock:
            self.stats['reconnects'] += 1
            self.events.record(EventType.RECONNECT_ATTEMPT, Severity.INFO, self.host, self.port)
            try:
                self._open()
            except ModbusError as e:
                self.events.record(EventType.RECONNECT_FAILED, Severity.WARNING,
                                   self.host, self.port, details={'error': str(e)})
                raise
            self.events.record(EventType.RECONNECTED, Severity.INFO, self.host, self.port)

    def _interrupt(self):
        sock = self.socket
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Socket shutdown for {self.host}:{self.port}: {e}")

    def _close_socket(self):
        sock, self.socket = self.socket, None
        self.state = ConnectionState.DISCONNECTED
        if sock is not None:
            sock.close()

    # ==================== LIVENESS ====================

    def _start_liveness(self):
        with self._lifecycle_lock:
            if self._liveness_thread is not None and self._liveness_thread.is_alive():
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._liveness_loop,
                args=(stop_event,),
                name=f"modbus-liveness-{self.host}:{self.port}",
                daemon=True,
            )
            self._stop_event = stop_event
            self._liveness_thread = thread
            thread.start()

    def _liveness_loop(self, stop_event: threading.Event):
        logger.debug(f"Liveness loop started for {self.host}:{self.port} "
                     f"(interval {self.liveness_interval_s}s)")

        while not stop_event.wait(self.liveness_interval_s):
            with self._io_lock:
                if stop_event.is_set():
                    break
                if self._link_alive():
                    continue

                self.stats['liveness_failures'] += 1
                self.events.record(EventType.LINK_LOST, Severity.WARNING, self.host, self.port)
                callback = self.on_failure or ConnectionManager.reconnect
                try:
                    callback(self)
                except ModbusError as e:
                    logger.warning(f"Reconnect to {self.host}:{self.port} failed: {e}")
                except Exception as e:
                    logger.error(f"Liveness callback failed for {self.host}:{self.port}: {e}",
                                 exc_info=True)

        logger.debug(f"Liveness loop stopped for {self.host}:{self.port}")

    def _link_alive(self) -> bool:
        """Socket still open and host still answering the probe."""
        if not self.is_connected() or not self._socket_open():
            return False
        return self.reachable(self.host, self.timeout_ms)

    def _socket_open(self) -> bool:
        sock = self.socket
        if sock is None or sock.fileno() == -1:
            return False
        try:
            readable, _, _ = select.select([sock], [], [], 0)
            if readable:
                # Readable with nothing to peek means the peer closed
                return len(sock.recv(1, socket.MSG_PEEK)) > 0
        except (OSError, ValueError):
            return False
        return True

    # ==================== TRANSPORT ====================

    @contextmanager
    def exclusive(self):
        """Hold the I/O lock across one request/response exchange."""
        with self._io_lock:
            yield self

    def send(self, data: bytes) -> bool:
        """
        Write one request frame.

        Returns:
            True if all bytes were written, False otherwise (see last_error)
        """
        with self._io_lock:
            sock = self.socket
            if not self.is_connected():
                self.last_error = TransportError(f"Not connected to {self.host}:{self.port}")
                return False
            try:
                sock.sendall(data)
            except socket.timeout:
                self._fail(ModbusTimeoutError(f"Send to {self.host}:{self.port} timed out"))
                return False
            except OSError as e:
                self._fail(TransportError(f"Send to {self.host}:{self.port} failed: {e}"))
                return False

            self.stats['bytes_sent'] += len(data)
            logger.debug(f"TX {self.host}:{self.port} {hexdump(data)}")
            return True

    def receive(self, max_length: int = MAX_ADU_LENGTH) -> bytes:
        """
        Read one complete MBAP frame.

        The header is read first; its length field decides how many more
        bytes belong to the frame. Only one request is ever in flight, so
        bytes still pending after the frame mean the declared length was
        wrong. Such a frame is rejected as malformed and the socket dropped.

        Args:
            max_length: Largest acceptable frame, normally the expected
                        response size of the pending request

        Returns:
            Frame bytes, or b"" on failure (see last_error)
        """
        with self._io_lock:
            sock = self.socket
            if not self.is_connected():
                self.last_error = TransportError(f"Not connected to {self.host}:{self.port}")
                return b""
            try:
                header = self._recv_exactly(sock, MBAP_HEADER_LENGTH)
                total = frame_length_from_header(header)
                limit = min(max_length, MAX_ADU_LENGTH)
                if total < MBAP_HEADER_LENGTH + 1 or total > limit:
                    raise ProtocolError(
                        f"Frame length {total} outside [8, {limit}]",
                        ProtocolErrorKind.MALFORMED,
                    )
                frame = header + self._recv_exactly(sock, total - MBAP_HEADER_LENGTH)
                if self._bytes_pending(sock):
                    raise ProtocolError(
                        f"Unexpected bytes after {total}-byte frame from {self.host}:{self.port}",
                        ProtocolErrorKind.MALFORMED,
                    )
            except socket.timeout:
                self._fail(ModbusTimeoutError(
                    f"No response from {self.host}:{self.port} within {self.read_timeout_s}s"
                ))
                return b""
            except (TransportError, ProtocolError) as e:
                self._fail(e)
                return b""
            except OSError as e:
                self._fail(TransportError(f"Receive from {self.host}:{self.port} failed: {e}"))
                return b""

            self.stats['bytes_received'] += len(frame)
            logger.debug(f"RX {self.host}:{self.port} {hexdump(frame)}")
            return frame

    @staticmethod
    def _recv_exactly(sock: socket.socket, count: int) -> bytes:
        buf = bytearray()
        while len(buf) < count:
            chunk = sock.recv(count - len(buf))
            if not chunk:
                raise TransportError("Connection closed by peer")
            buf.extend(chunk)
        return bytes(buf)

    @staticmethod
    def _bytes_pending(sock: socket.socket) -> bool:
        readable, _, _ = select.select([sock], [], [], 0)
        if not readable:
            return False
        # Peer close reads as b"" and is left for the next request to report
        return len(sock.recv(1, socket.MSG_PEEK)) > 0

    def discard(self, error: ModbusError):
        """Drop a stream that is no longer frame aligned; liveness reconnects."""
        with self._io_lock:
            self._fail(error)

    def _fail(self, error: ModbusError):
        """Record a fault and drop the socket; liveness reconnects."""
        self.last_error = error
        self.stats['errors'] += 1
        if isinstance(error, ModbusTimeoutError):
            self.events.record(EventType.TIMEOUT, Severity.ERROR, self.host, self.port,
                               details={'error': str(error)})
        elif isinstance(error, ProtocolError):
            self.events.record(EventType.PROTOCOL_ERROR, Severity.WARNING, self.host, self.port,
                               details={'kind': error.kind.value, 'error': str(error)})
        else:
            self.events.record(EventType.TRANSPORT_ERROR, Severity.ERROR, self.host, self.port,
                               details={'error': str(error)})
        self._close_socket()

    def get_status(self) -> Dict:
        """Get connection status"""
        thread = self._liveness_thread
        return {
            'host': self.host,
            'port': self.port,
            'state': self.state.value,
            'liveness_running': thread is not None and thread.is_alive(),
            'last_error': str(self.last_error) if self.last_error else None,
            'stats': self.stats.copy(),
        }
