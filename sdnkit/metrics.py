"""Node networking metrics and the periodic gathering of ARP and pod IP counts."""

from __future__ import annotations

import ipaddress
import logging
import os
import threading
import time
from typing import Optional

log = logging.getLogger(__name__)

HOST_LOCAL_DATA_DIR = "/var/lib/cni/networks"
POD_IP_DATA_DIR = HOST_LOCAL_DATA_DIR + "/openshift-sdn/"
ARP_PATH = "/proc/net/arp"
ARP_GC_THRESH_PATH = "/proc/sys/net/ipv4/neigh/default/gc_thresh2"

SDN_NAMESPACE = "openshift"
SDN_SUBSYSTEM = "sdn"

OVS_FLOWS_KEY = "ovs_flows"
OVS_OPERATIONS_KEY = "ovs_operations"
ARP_CACHE_AVAILABLE_ENTRIES_KEY = "arp_cache_entries"
POD_IPS_KEY = "pod_ips"
POD_OPERATIONS_ERRORS_KEY = "pod_operations_errors"
POD_OPERATIONS_LATENCY_KEY = "pod_operations_latency"
VNID_NOT_FOUND_ERRORS_KEY = "vnid_not_found_errors"

# OVS operation result types.
OVS_OPERATION_SUCCESS = "success"
OVS_OPERATION_FAILURE = "failure"
# Pod operation types.
POD_OPERATION_SETUP = "setup"
POD_OPERATION_TEARDOWN = "teardown"


def _fq_name(namespace: str, subsystem: str, name: str) -> str:
    return "_".join(part for part in (namespace, subsystem, name) if part)


class _Metric:
    def __init__(self, name: str, help_text: str, namespace: str = "", subsystem: str = "") -> None:
        self.name = _fq_name(namespace, subsystem, name)
        self.help_text = help_text
        self._lock = threading.Lock()


class Gauge(_Metric):
    """A value that can go up and down."""

    def __init__(self, name: str, help_text: str, namespace: str = "", subsystem: str = "") -> None:
        super().__init__(name, help_text, namespace, subsystem)
        self._value = 0.0

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value -= amount


class Counter(_Metric):
    """A cumulative value that only increases."""

    def __init__(self, name: str, help_text: str, namespace: str = "", subsystem: str = "") -> None:
        super().__init__(name, help_text, namespace, subsystem)
        self._value = 0.0

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += amount


class _Summary(_Metric):
    def __init__(self, name: str, help_text: str) -> None:
        super().__init__(name, help_text)
        self._count = 0
        self._sum = 0.0

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def sum(self) -> float:
        with self._lock:
            return self._sum

    def observe(self, value: float) -> None:
        with self._lock:
            self._count += 1
            self._sum += value


class _Labeled(_Metric):
    def __init__(
        self,
        name: str,
        help_text: str,
        label_names: tuple[str, ...] | list[str],
        namespace: str = "",
        subsystem: str = "",
    ) -> None:
        super().__init__(name, help_text, namespace, subsystem)
        self.label_names = tuple(label_names)
        self._children: dict[tuple[str, ...], object] = {}

    def _key(self, values: tuple[str, ...]) -> tuple[str, ...]:
        if len(values) != len(self.label_names):
            raise ValueError(
                f"expected {len(self.label_names)} label values, got {len(values)}"
            )
        return tuple(str(value) for value in values)


class LabeledCounter(_Labeled):
    """A family of counters told apart by label values."""

    def labels(self, *values: str) -> Counter:
        key = self._key(values)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = Counter(self.name, self.help_text)
                self._children[key] = child
            return child  # type: ignore[return-value]


class LabeledSummary(_Labeled):
    """A family of summaries (count and sum of observations) told apart by label values."""

    def labels(self, *values: str) -> _Summary:
        key = self._key(values)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = _Summary(self.name, self.help_text)
                self._children[key] = child
            return child  # type: ignore[return-value]


OVS_FLOWS = Gauge(OVS_FLOWS_KEY, "Number of Open vSwitch flows", SDN_NAMESPACE, SDN_SUBSYSTEM)
OVS_OPERATIONS_RESULT = LabeledCounter(
    OVS_OPERATIONS_KEY,
    "Cumulative number of OVS operations by result type",
    ["result_type"],
    SDN_NAMESPACE,
    SDN_SUBSYSTEM,
)
ARP_CACHE_AVAILABLE_ENTRIES = Gauge(
    ARP_CACHE_AVAILABLE_ENTRIES_KEY,
    "Number of available entries in the ARP cache",
    SDN_NAMESPACE,
    SDN_SUBSYSTEM,
)
POD_IPS = Gauge(POD_IPS_KEY, "Number of allocated pod IPs", SDN_NAMESPACE, SDN_SUBSYSTEM)
POD_OPERATIONS_ERRORS = LabeledCounter(
    POD_OPERATIONS_ERRORS_KEY,
    "Cumulative number of SDN operation errors by operation type",
    ["operation_type"],
    SDN_NAMESPACE,
    SDN_SUBSYSTEM,
)
POD_OPERATIONS_LATENCY = LabeledSummary(
    POD_OPERATIONS_LATENCY_KEY,
    "Latency in microseconds of SDN operations by operation type",
    ["operation_type"],
    SDN_NAMESPACE,
    SDN_SUBSYSTEM,
)
VNID_NOT_FOUND_ERRORS = Counter(
    VNID_NOT_FOUND_ERRORS_KEY, "Number of VNID-not-found errors", SDN_NAMESPACE, SDN_SUBSYSTEM
)


def since_in_microseconds(start: float) -> float:
    """Whole microseconds elapsed since ``start``, a :func:`time.monotonic` reading."""
    return float(int((time.monotonic() - start) * 1_000_000))


def update_arp_metrics(
    arp_path: str = ARP_PATH, thresh_path: str = ARP_GC_THRESH_PATH
) -> Optional[int]:
    """Set the available-ARP-entries gauge; return the value set, or None if it was not."""
    try:
        with open(arp_path, encoding="utf-8", errors="replace") as handle:
            data = handle.read()
    except OSError as err:
        log.error("failed to read ARP entries for metrics: %s", err)
        return None
    # Skip the header line.
    used = len(data.split("\n")) - 1

    # gc_thresh2 isn't the absolute max, but it's where garbage collection
    # (and thus trouble) can start.
    try:
        with open(thresh_path, encoding="utf-8", errors="replace") as handle:
            raw = handle.read()
    except FileNotFoundError:
        return None
    except OSError as err:
        log.error("failed to read max ARP entries for metrics: %s %s", type(err).__name__, err)
        return None

    try:
        maximum = int(raw.strip())
    except ValueError as err:
        log.error("failed to parse max ARP entries %r for metrics: %s", raw, err)
        return None

    available = max(maximum - used, 0)
    ARP_CACHE_AVAILABLE_ENTRIES.set(available)
    return available


def _is_ip(name: str) -> bool:
    if "%" in name:
        return False
    try:
        ipaddress.ip_address(name)
    except ValueError:
        return False
    return True


def update_pod_ip_metrics(data_dir: str = POD_IP_DATA_DIR) -> Optional[int]:
    """Set the pod IP gauge from the IP-named entries in ``data_dir``; return the count."""
    try:
        names = os.listdir(data_dir)
    except FileNotFoundError:
        # No pods started yet.
        return None
    except OSError as err:
        log.error("failed to read pod IPs for metrics: %s", err)
        names = []

    count = sum(1 for name in names if _is_ip(name))
    POD_IPS.set(count)
    return count


def gather_periodic_metrics() -> None:
    """Refresh the metrics that are gathered on a timer."""
    update_arp_metrics()
    update_pod_ip_metrics()