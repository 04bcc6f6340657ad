# sdnkit

Pieces of an overlay cluster network that can be used from Python on their
own: identifier and subnet allocation, egress packet marks, node iptables
chains, a CNI request server and a few in-process metrics. The package has no
dependencies outside the standard library.

## Modules

- `sdnkit.netid` holds the VNID limits `MIN_VNID` (10), `MAX_VNID` (2**24 - 1)
  and `GLOBAL_VNID` (0). `NetIDRange(base, size)` or
  `NetIDRange.from_bounds(min_id, max_id)` describes a block of ids and raises
  `ValueError` for bounds outside those limits. `NetIDAllocator` is a
  thread-safe in-memory allocator over a range, with `allocate`,
  `allocate_next`, `release`, `has` and `free`. Its errors are
  `RangeFullError`, `NotInRangeError` and `AlreadyAllocatedError`, all
  subclasses of `NetIDError`. `allocate_next` picks a free id starting from a
  random point in the range.
- `sdnkit.subnet_allocator`: `SubnetAllocator` splits one or more cluster
  CIDRs (IPv4 or IPv6) into per-host subnets, each one leaving `host_bits` bits
  for hosts. `allocate_network` raises `SubnetAllocatorFullError` when every
  range is used up. `mark_allocated_network` and `release_network` raise
  `ValueError` for a subnet that lies in no known range. For IPv4 ranges where
  the subnet number spills into a shared octet, subnets with zero bits in that
  octet are handed out first. For IPv6, subnets whose low 16 bits are all zero
  are skipped.
- `sdnkit.vnids`: `VNIDMap` keeps the namespace-to-VNID mapping together with
  a `NetIDAllocator`. Admin namespaces (by default `"default"`) get the global
  VNID. `update_net_id` applies a `PodNetworkAction`: `GLOBAL`, `JOIN` (with
  the other namespace's name as `args`) or `ISOLATE`. Failures raise
  `VNIDError`.
- `sdnkit.egress`: `get_mark_for_vnid(vnid, masquerade_bit)` returns the hex
  packet mark for a VNID. The mark is never 0 and never has the masquerade
  bit set. `egress_ip_label(link_name)` returns `"<link>:eip"`, or raises
  `ValueError` when that would be longer than 15 characters.
- `sdnkit.iptables`: `NodeIPTables` creates and repairs the node's firewall,
  masquerade and blocking chains (`setup`, `node_chains`). It adds and removes
  SNAT/REJECT rules for egress IPs (`add_egress_ip_rules`,
  `delete_egress_ip_rules`). It also finds and deletes rules left behind for
  egress IPs that are no longer in use (`find_stale_egress_ip_rules`,
  `sync_egress_ip_rules`). It works against any backend with the methods of
  `CommandIPTables`. That backend runs the `iptables` and `iptables-save`
  commands and raises `IPTablesError` when they fail.
- `sdnkit.cniserver`: `CNIServer` serves HTTP on a private Unix socket in its
  run directory. It recreates the directory with mode 0700 unless it already
  has that mode, and writes `config.json` there. Each POST to `/` is parsed
  with `pod_request_from_json` into a `PodRequest` and passed to your handler.
  The handler's return value becomes a 200 JSON response. An exception it
  raises, or a malformed request (`CNIRequestError`), becomes a 400 response
  carrying the message. `read_config` reads the config file back as a
  `Config`. `gather_cni_args` splits a `CNI_ARGS` value into a dict.
- `sdnkit.metrics`: simple thread-safe `Gauge`, `Counter`, `LabeledCounter`
  and `LabeledSummary` objects, with module-level instances such as
  `ARP_CACHE_AVAILABLE_ENTRIES` and `POD_IPS`. `update_arp_metrics` and
  `update_pod_ip_metrics` set those gauges from `/proc` and the host-local IPAM
  directory. Both accept other paths. `gather_periodic_metrics` runs both.
  `since_in_microseconds` measures from a `time.monotonic()` reading.

## Install

```
pip install .
```

Running the tests:

```
pip install .[test]
pytest
```

## Examples

Allocate VNIDs:

```python
from sdnkit.netid import NetIDRange, NetIDAllocator

ids = NetIDAllocator(NetIDRange.from_bounds(201, 300))
vnid = ids.allocate_next()   # some id between 201 and 300
ids.release(vnid)
print(ids.free())            # 100
```

Hand out host subnets:

```python
from sdnkit.subnet_allocator import SubnetAllocator

subnets = SubnetAllocator()
subnets.add_network_range("10.1.0.0/16", 8)
print(subnets.allocate_network())  # 10.1.0.0/24
print(subnets.allocate_network())  # 10.1.1.0/24
subnets.release_network("10.1.0.0/24")
```

Track namespaces:

```python
from sdnkit.vnids import VNIDMap, PodNetworkAction

vmap = VNIDMap(allow_renumbering=True)
vmap.allocate_net_id("alpha")      # (netid, False)
vmap.allocate_net_id("bravo")
vmap.update_net_id("alpha", PodNetworkAction.JOIN, "bravo")
```

Packet marks:

```python
from sdnkit.egress import get_mark_for_vnid

get_mark_for_vnid(0xab, 0x1)   # "0x010000aa"
get_mark_for_vnid(0, 0)        # "0xff000000"
```

Serve CNI requests:

```python
from sdnkit.cniserver import CNIServer, Config

def handle(request):
    return b"{}"

server = CNIServer("/run/sdn/cniserver", Config(mtu=1450, service_network_cidr="172.30.0.0/16"))
server.start(handle)
...
server.stop()
```

`NodeIPTables`, `CNIServer` and the metrics collectors touch the real system:
iptables, Unix sockets and files under `/proc`. They need Linux, and driving
iptables through `CommandIPTables` also needs root.

## What it does not do

sdnkit is a set of parts, not a running network agent. It has no command-line
program and no daemon. It does not watch a cluster API for nodes, namespaces or
host subnets, and it does not store allocations anywhere but in memory. It does
not program Open vSwitch flows or add addresses to interfaces: `egress` only
computes marks and labels. The CNI server only passes requests to the handler
you give it and does not set up pod networking itself.