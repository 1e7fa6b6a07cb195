"""Host SSH port reservation.

In-memory only: the held set is rebuilt from persisted VmRecord.ssh_port
values at start-up via :meth:`PortAllocator.reserve`.
"""

from __future__ import annotations

from agentvm._logging import get_logger
from agentvm.exceptions import ResourceExhaustedError

logger = get_logger(__name__)


class PortAllocator:
    """Hands out unique ports from a fixed inclusive range, lowest first.

    Not thread-safe; callers serialize access under the orchestrator's
    registry lock.
    """

    __slots__ = ("_end", "_held", "_start")

    def __init__(self, start: int, end: int) -> None:
        if start > end:
            raise ValueError(f"Empty port range: {start}-{end}")
        self._start = start
        self._end = end
        self._held: set[int] = set()

    @property
    def held(self) -> frozenset[int]:
        return frozenset(self._held)

    @property
    def capacity(self) -> int:
        return self._end - self._start + 1

    def allocate(self) -> int:
        """Reserve the lowest free port.

        Raises:
            ResourceExhaustedError: Every port in the range is held
        """
        for port in range(self._start, self._end + 1):
            if port not in self._held:
                self._held.add(port)
                return port
        raise ResourceExhaustedError(
            "No free SSH ports",
            context={"range_start": self._start, "range_end": self._end, "held": len(self._held)},
        )

    def reserve(self, port: int) -> bool:
        """Mark a specific port held (start-up rebuild).

        Ports outside the range are still tracked so that a narrowed range
        never hands out a port a surviving VM already uses.

        Returns:
            False if the port was already held
        """
        if port in self._held:
            logger.warning("SSH port reserved twice", extra={"port": port})
            return False
        self._held.add(port)
        return True

    def release(self, port: int | None) -> None:
        """Return a port to the pool. Idempotent."""
        if port is not None:
            self._held.discard(port)

    def is_held(self, port: int) -> bool:
        return port in self._held
