"""Thread-safe identity allocation for catalogued images."""

import threading


class IdentityAllocator:
    """
    Hands out monotonically increasing integer ids.

    One allocator is owned by whoever stores fingerprints; it replaces a
    process-wide counter, so two catalogs never share id state.
    """

    def __init__(self, start: int = 0):
        self._next = start
        self._lock = threading.Lock()

    def allocate(self) -> int:
        with self._lock:
            value = self._next
            self._next += 1
            return value

    def peek(self) -> int:
        """The id the next allocate() call will return."""
        with self._lock:
            return self._next

    def reset(self, value: int):
        """Continue allocation from value, e.g. after reloading a catalog."""
        with self._lock:
            self._next = value
