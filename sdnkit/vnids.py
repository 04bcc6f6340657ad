"""Master-side bookkeeping of namespace to VNID assignments."""

from __future__ import annotations

import enum
import logging
import threading
from typing import Iterable, Optional

from sdnkit.netid import (
    GLOBAL_VNID,
    MAX_VNID,
    MIN_VNID,
    AlreadyAllocatedError,
    NetIDAllocator,
    NetIDError,
    NetIDRange,
)

log = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"


class PodNetworkAction(str, enum.Enum):
    """Ways in which a namespace's pod network can be changed."""

    GLOBAL = "global"
    JOIN = "join"
    ISOLATE = "isolate"


class VNIDError(Exception):
    """Raised when a VNID cannot be assigned, updated or released."""


class VNIDMap:
    """Maps namespace names to VNIDs and keeps the netid allocator in step."""

    def __init__(
        self,
        allow_renumbering: bool = True,
        admin_namespaces: Iterable[str] = (DEFAULT_NAMESPACE,),
        allocator: Optional[NetIDAllocator] = None,
    ) -> None:
        self.allow_renumbering = allow_renumbering
        self.admin_namespaces = frozenset(admin_namespaces)
        self.allocator = allocator or NetIDAllocator(NetIDRange.from_bounds(MIN_VNID, MAX_VNID))
        self.ids: dict[str, int] = {}
        self._lock = threading.RLock()

    def get_vnid(self, name: str) -> Optional[int]:
        """The VNID of namespace ``name``, or None if it has none."""
        return self.ids.get(name)

    def set_vnid(self, name: str, netid: int) -> None:
        """Record ``netid`` as the VNID of namespace ``name``."""
        self.ids[name] = netid

    def unset_vnid(self, name: str) -> Optional[int]:
        """Forget the VNID of ``name`` and return it, or None if it had none."""
        return self.ids.pop(name, None)

    def vnid_count(self, netid: int) -> int:
        """How many namespaces currently use ``netid``."""
        return sum(1 for value in self.ids.values() if value == netid)

    def is_admin_namespace(self, name: str) -> bool:
        """Whether ``name`` is an admin namespace that lives on the global VNID."""
        return name in self.admin_namespaces

    def mark_allocated_net_id(self, netid: int) -> None:
        """Reserve an existing ``netid`` in the allocator; shared ids are accepted."""
        if netid < MIN_VNID:
            return
        try:
            self.allocator.allocate(netid)
        except AlreadyAllocatedError:
            # Expected when project networks have been joined.
            pass
        except NetIDError as err:
            raise VNIDError(f"unable to allocate netid {netid}: {err}") from err

    def allocate_net_id(self, name: str) -> tuple[int, bool]:
        """Return ``(netid, existed)``, allocating a new netid if ``name`` has none."""
        with self._lock:
            existing = self.get_vnid(name)
            if existing is not None:
                return existing, True

            if self.is_admin_namespace(name):
                netid = GLOBAL_VNID
            else:
                netid = self.allocator.allocate_next()

            self.set_vnid(name, netid)
            log.info("Allocated netid %d for namespace %r", netid, name)
            return netid, False

    def release_net_id(self, name: str) -> None:
        """Drop the VNID of ``name``, freeing it once no namespace uses it."""
        with self._lock:
            netid = self.unset_vnid(name)
            if netid is None:
                raise VNIDError(f"netid not found for namespace {name!r}")

            if netid == GLOBAL_VNID:
                return

            if self.vnid_count(netid) == 0:
                try:
                    self.allocator.release(netid)
                except NetIDError as err:
                    raise VNIDError(
                        f"error while releasing netid {netid} for namespace {name!r}, {err}"
                    ) from err
                log.info("Released netid %d for namespace %r", netid, name)
            else:
                log.debug("netid %d for namespace %r is still in use", netid, name)

    def update_net_id(self, name: str, action: PodNetworkAction, args: str = "") -> int:
        """Apply ``action`` to namespace ``name`` and return its new VNID."""
        with self._lock:
            old_netid = self.get_vnid(name)
            if old_netid is None:
                raise VNIDError(f"netid not found for namespace {name!r}")

            allocated = False
            if action == PodNetworkAction.GLOBAL:
                netid = GLOBAL_VNID
            elif action == PodNetworkAction.JOIN:
                joined = self.get_vnid(args)
                if joined is None:
                    raise VNIDError(f"netid not found for namespace {args!r}")
                netid = joined
            elif action == PodNetworkAction.ISOLATE:
                if name == DEFAULT_NAMESPACE:
                    raise VNIDError(f"network isolation for namespace {name!r} is not allowed")
                if self.vnid_count(old_netid) == 1:
                    return old_netid
                netid = self.allocator.allocate_next()
                allocated = True
            else:
                raise VNIDError(f"invalid pod network action: {action}")

            try:
                self.release_net_id(name)
            except VNIDError:
                if allocated:
                    self.allocator.release(netid)
                raise

            self.set_vnid(name, netid)
            log.info("Updated netid %d for namespace %r", netid, name)
            return netid