"""
Connection Event Log
====================

Structured record of connection lifecycle events.

The connection manager and client never print; they record ConnectionEvent
objects here. Events are:
    - kept in a bounded in-memory buffer for inspection and tests
    - counted per type
    - forwarded to subscriber callbacks
    - mirrored to the Python logging module at a severity-mapped level
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of connection events"""
    # Connection lifecycle
    CONNECT_ATTEMPT = "connect_attempt"
    CONNECTED = "connected"
    UNREACHABLE = "unreachable"
    CONNECT_FAILED = "connect_failed"
    DISCONNECTED = "disconnected"

    # Liveness
    LINK_LOST = "link_lost"
    RECONNECT_ATTEMPT = "reconnect_attempt"
    RECONNECTED = "reconnected"
    RECONNECT_FAILED = "reconnect_failed"

    # Requests
    TRANSPORT_ERROR = "transport_error"
    TIMEOUT = "timeout"
    PROTOCOL_ERROR = "protocol_error"
    DEVICE_EXCEPTION = "device_exception"


class Severity(Enum):
    """Severity levels for connection events"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS = {
    Severity.DEBUG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


@dataclass
class ConnectionEvent:
    """Single connection event record"""
    timestamp: datetime
    event_type: EventType
    severity: Severity
    host: Optional[str] = None
    port: Optional[int] = None
    details: Optional[Dict] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        data = {
            'timestamp': self.timestamp.isoformat(),
            'event_type': self.event_type.value,
            'severity': self.severity.value,
        }
        if self.host:
            data['host'] = self.host
        if self.port is not None:
            data['port'] = self.port
        if self.details:
            data['details'] = self.details
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class EventLog:
    """
    Thread-safe structured event sink.

    Events arrive from both the request thread and the liveness thread,
    so all mutation happens under one lock. Subscribers are called outside it.
    """

    def __init__(self, max_events: int = 1000):
        """
        Args:
            max_events: Size of the in-memory ring of recent events
        """
        self.max_events = max_events
        self.events: List[ConnectionEvent] = []
        self.events_by_type: Dict[EventType, int] = {}
        self._subscribers: List[Callable[[ConnectionEvent], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[ConnectionEvent], None]):
        """Register a callback invoked with every new event."""
        with self._lock:
            self._subscribers.append(callback)

    def record(self,
               event_type: EventType,
               severity: Severity = Severity.INFO,
               host: Optional[str] = None,
               port: Optional[int] = None,
               details: Optional[Dict] = None) -> ConnectionEvent:
        """
        Record an event.

        Args:
            event_type: Type of event
            severity: Event severity
            host: Remote host involved
            port: Remote port involved
            details: Additional details dictionary

        Returns:
            Created ConnectionEvent
        """
        event = ConnectionEvent(
            timestamp=datetime.now(),
            event_type=event_type,
            severity=severity,
            host=host,
            port=port,
            details=details,
        )

        with self._lock:
            self.events.append(event)
            if len(self.events) > self.max_events:
                self.events = self.events[-self.max_events:]
            self.events_by_type[event_type] = self.events_by_type.get(event_type, 0) + 1
            subscribers = list(self._subscribers)

        message = f"[{event_type.value}] {host or 'N/A'}:{port if port is not None else 'N/A'}"
        if details:
            message += f" {details}"
        logger.log(_LOG_LEVELS[severity], message)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {event_type.value}: {e}", exc_info=True)

        return event

    def get_events(self,
                   event_type: Optional[EventType] = None,
                   limit: int = 100) -> List[ConnectionEvent]:
        """Most recent events, optionally filtered by type, oldest first."""
        with self._lock:
            events = list(self.events)
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:]

    def count(self, event_type: EventType) -> int:
        with self._lock:
            return self.events_by_type.get(event_type, 0)

    def clear(self):
        with self._lock:
            self.events.clear()
            self.events_by_type.clear()
