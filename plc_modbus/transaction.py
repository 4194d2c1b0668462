"""Transaction identifier tracking for Modbus TCP requests."""

import threading


class TransactionCounter:
    """
    16-bit transaction id generator.

    Ids only need to be unique among outstanding requests on one connection.
    With a single in-flight request, a wrapping counter is sufficient.
    """

    MODULUS = 0x10000

    def __init__(self, start: int = 0):
        if not 0 <= start < self.MODULUS:
            raise ValueError(f"Transaction id start {start} out of range [0, 65535]")
        self._value = start
        self._lock = threading.Lock()

    def next(self) -> int:
        """Return the current id, then advance it (65535 wraps to 0)."""
        with self._lock:
            value = self._value
            self._value = (self._value + 1) % self.MODULUS
            return value

    def peek(self) -> int:
        return self._value

    def reset(self, start: int = 0):
        with self._lock:
            self._value = start % self.MODULUS
