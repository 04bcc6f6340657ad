"""VXLAN network identifiers (VNIDs): limits, ranges and an in-memory allocator."""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from typing import Optional

# Maximum VXLAN Virtual Network Identifier (24 bits, RFC 7348).
MAX_VNID = (1 << 24) - 1
# VNIDs 2 to 9 are reserved for future special cases.
MIN_VNID = 10
# VNID 0 belongs to the default namespace and can reach every network.
GLOBAL_VNID = 0


class NetIDError(Exception):
    """Base class for netid allocation failures."""


class RangeFullError(NetIDError):
    """Raised when no netids are left in the range."""

    def __init__(self, message: str = "range is full") -> None:
        super().__init__(message)


class NotInRangeError(NetIDError):
    """Raised when a netid lies outside the allocator's range."""

    def __init__(self, message: str = "provided netid is not in the valid range") -> None:
        super().__init__(message)


class AlreadyAllocatedError(NetIDError):
    """Raised when a netid has already been reserved."""

    def __init__(self, message: str = "provided netid is already allocated") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class NetIDRange:
    """A contiguous block of netids starting at ``base`` and holding ``size`` ids."""

    base: int
    size: int

    def __post_init__(self) -> None:
        if self.base < MIN_VNID:
            raise ValueError(f"invalid netid base, must be greater than {MIN_VNID}")
        if self.size <= 0:
            raise ValueError("invalid netid size, must be greater than zero")
        if self.base + self.size - 1 > MAX_VNID:
            raise ValueError(f"netid range exceeded max value {MAX_VNID}")

    @classmethod
    def from_bounds(cls, min_id: int, max_id: int) -> "NetIDRange":
        """Build a range covering ``min_id`` to ``max_id`` inclusive."""
        return cls(min_id, max_id - min_id + 1)

    def contains(self, netid: int) -> bool:
        """Whether ``netid`` falls within the range."""
        return self._offset(netid) is not None

    def _offset(self, netid: int) -> Optional[int]:
        if netid >= self.base and netid - self.base < self.size:
            return netid - self.base
        return None

    def __contains__(self, netid: object) -> bool:
        return isinstance(netid, int) and self.contains(netid)

    def __str__(self) -> str:
        return f"{self.base}-{self.base + self.size - 1}"


class NetIDAllocator:
    """Thread-safe in-memory allocator of netids out of a :class:`NetIDRange`."""

    def __init__(self, netid_range: NetIDRange, rng: Optional[random.Random] = None) -> None:
        self.range = netid_range
        self._allocated: set[int] = set()
        self._lock = threading.Lock()
        self._rng = rng or random.Random()

    def free(self) -> int:
        """Number of netids left in the range."""
        with self._lock:
            return self.range.size - len(self._allocated)

    def allocate(self, netid: int) -> None:
        """Reserve ``netid``; raises NotInRangeError or AlreadyAllocatedError."""
        offset = self.range._offset(netid)
        if offset is None:
            raise NotInRangeError()
        with self._lock:
            if offset in self._allocated:
                raise AlreadyAllocatedError()
            self._allocated.add(offset)

    def allocate_next(self) -> int:
        """Reserve any free netid; raises RangeFullError when none are left."""
        size = self.range.size
        with self._lock:
            if len(self._allocated) >= size:
                raise RangeFullError()
            start = self._rng.randrange(size)
            for step in range(size):
                offset = (start + step) % size
                if offset not in self._allocated:
                    self._allocated.add(offset)
                    return self.range.base + offset
        raise RangeFullError()

    def release(self, netid: int) -> None:
        """Return ``netid`` to the pool; unknown or out-of-range ids are ignored."""
        offset = self.range._offset(netid)
        if offset is None:
            return
        with self._lock:
            self._allocated.discard(offset)

    def has(self, netid: int) -> bool:
        """Whether ``netid`` is currently allocated."""
        offset = self.range._offset(netid)
        if offset is None:
            return False
        with self._lock:
            return offset in self._allocated