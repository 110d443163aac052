"""Port allocation for preview servers.

Hands out ports from a fixed inclusive range by rejection sampling and keeps
the held set until the owner releases it.
"""

from __future__ import annotations

import random
import threading
from typing import Any

from appforge.config import PortRangeConfig
from appforge.errors import PortExhausted
from appforge.utils import console


class PortAllocator:
    """Tracks which ports in ``[min_port, max_port]`` are in use.

    Acquire and release are serialised with a lock so the allocator is safe
    even when touched from executor threads.
    """

    def __init__(
        self,
        min_port: int = 4110,
        max_port: int = 4990,
        max_attempts: int = 100,
        rng: random.Random | None = None,
    ) -> None:
        if min_port > max_port:
            raise ValueError(f"Invalid port range {min_port}-{max_port}")
        self.min_port = min_port
        self.max_port = max_port
        self.max_attempts = max_attempts
        self._rng = rng or random.Random()
        self._held: set[int] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: PortRangeConfig) -> "PortAllocator":
        return cls(config.min_port, config.max_port, config.max_attempts)

    def acquire(self) -> int:
        """Return a port that no one else holds.

        Raises:
            PortExhausted: If ``max_attempts`` samples all hit held ports.
        """
        with self._lock:
            for _ in range(self.max_attempts):
                port = self._rng.randint(self.min_port, self.max_port)
                if port not in self._held:
                    self._held.add(port)
                    console.print(f"[cyan][PortAllocator][/cyan] Allocated port {port}")
                    return port
        raise PortExhausted(self.min_port, self.max_port, self.max_attempts)

    def release(self, port: int) -> None:
        """Return *port* to the pool.  Releasing an unheld port is a no-op."""
        with self._lock:
            if port not in self._held:
                return
            self._held.discard(port)
        console.print(f"[cyan][PortAllocator][/cyan] Freed port {port}")

    def is_held(self, port: int) -> bool:
        with self._lock:
            return port in self._held

    @property
    def held(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._held)

    @property
    def capacity(self) -> int:
        return self.max_port - self.min_port + 1

    def port_range(self) -> range:
        return range(self.min_port, self.max_port + 1)

    def info(self) -> dict[str, Any]:
        with self._lock:
            allocated = len(self._held)
        return {
            "min": self.min_port,
            "max": self.max_port,
            "total": self.capacity,
            "allocated": allocated,
            "available": self.capacity - allocated,
        }
