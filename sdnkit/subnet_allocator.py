"""Allocation of per-host subnets out of one or more cluster CIDRs."""

from __future__ import annotations

import ipaddress
import threading
from typing import Optional, Union

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class SubnetAllocatorFullError(Exception):
    """Raised when every known range is exhausted."""

    def __init__(self, message: str = "no subnets available.") -> None:
        super().__init__(message)


def _parse_cidr(text: str) -> IPNetwork:
    return ipaddress.ip_network(text, strict=False)


class SubnetRange:
    """Hands out subnets of a single CIDR, each leaving ``host_bits`` for hosts."""

    def __init__(self, network: IPNetwork, host_bits: int) -> None:
        free_bits = network.max_prefixlen - network.prefixlen
        if host_bits == 0:
            raise ValueError("host capacity cannot be zero.")
        if host_bits > free_bits:
            raise ValueError("subnet capacity cannot be larger than number of networks available.")
        self.network = network
        self.host_bits = host_bits
        self.subnet_bits = free_bits - host_bits
        self.next_offset = 0
        self._allocated: set[str] = set()

        # For IPv4, when the subnet number spills into the octet shared with the
        # host part, rotate it so that subnets with all-zero bits in that shared
        # octet are handed out first (10.1.0.0/26, 10.1.1.0/26, ... then .64).
        self._left_shift = 0
        self._left_mask = 0
        self._right_shift = 0
        self._right_mask = 0
        if (
            network.max_prefixlen == 32
            and host_bits % 8 != 0
            and (host_bits - 1) // 8 != (host_bits + self.subnet_bits - 1) // 8
        ):
            self._left_shift = 8 - host_bits % 8
            self._left_mask = (1 << self.subnet_bits) - 1
            self._right_shift = self.subnet_bits - self._left_shift
            self._right_mask = (1 << self._left_shift) - 1

    def mark_allocated(self, subnet: IPNetwork) -> bool:
        """Mark ``subnet`` as in use if it lies in this range; report whether it does."""
        key = str(subnet)
        if subnet.network_address in self.network:
            self._allocated.add(key)
        return key in self._allocated

    def release(self, subnet: IPNetwork) -> bool:
        """Mark ``subnet`` as free if it lies in this range; report whether it does."""
        if subnet.network_address not in self.network:
            return False
        self._allocated.discard(str(subnet))
        return True

    def allocate(self) -> Optional[IPNetwork]:
        """Return a new subnet, or None when the range is full."""
        addr_len = self.network.max_prefixlen
        # Cap the search space at 2**24 subnets.
        num_subnets = 1 << min(self.subnet_bits, 24)
        network_int = int(self.network.network_address)
        prefix = self.network.prefixlen + self.subnet_bits
        network_type = type(self.network)

        for i in range(num_subnets):
            n = (i + self.next_offset) % num_subnets
            base = n
            if self._left_shift:
                base = ((base << self._left_shift) & self._left_mask) | (
                    (base >> self._right_shift) & self._right_mask
                )
            elif addr_len == 128 and self.subnet_bits >= 16 and base & 0xFFFF == 0:
                # An all-zero low word would be compressed out of the address text.
                continue

            subnet = network_type((network_int | (base << self.host_bits), prefix))
            key = str(subnet)
            if key not in self._allocated:
                self._allocated.add(key)
                self.next_offset = n + 1
                return subnet

        self.next_offset = 0
        return None


class SubnetAllocator:
    """Thread-safe allocator over an ordered list of :class:`SubnetRange`."""

    def __init__(self) -> None:
        self.ranges: list[SubnetRange] = []
        self._lock = threading.Lock()

    def add_network_range(self, network: str, host_bits: int) -> None:
        """Add the CIDR ``network``, split into subnets with ``host_bits`` host bits."""
        with self._lock:
            self.ranges.append(SubnetRange(_parse_cidr(network), host_bits))

    def mark_allocated_network(self, subnet: str) -> None:
        """Record ``subnet`` as already in use."""
        with self._lock:
            parsed = _parse_cidr(subnet)
            if not any(snr.mark_allocated(parsed) for snr in self.ranges):
                raise ValueError(f"network {subnet} does not belong to any known range")

    def allocate_network(self) -> str:
        """Return the next free subnet in CIDR form."""
        with self._lock:
            for snr in self.ranges:
                subnet = snr.allocate()
                if subnet is not None:
                    return str(subnet)
        raise SubnetAllocatorFullError()

    def release_network(self, subnet: str) -> None:
        """Return ``subnet`` to its range."""
        with self._lock:
            parsed = _parse_cidr(subnet)
            if not any(snr.release(parsed) for snr in self.ranges):
                raise ValueError(f"network {subnet} does not belong to any known range")