"""Node iptables rules for cluster traffic: firewall, masquerading and egress IPs."""

from __future__ import annotations

import enum
import logging
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence

log = logging.getLogger(__name__)

TUN0 = "tun0"

TABLE_FILTER = "filter"
TABLE_NAT = "nat"

MASQUERADE_CHAIN = "OPENSHIFT-MASQUERADE"
FIREWALL_ALLOW_CHAIN = "OPENSHIFT-FIREWALL-ALLOW"

MASQ_RULE_RE = re.compile(r"-A OPENSHIFT-MASQUERADE .* --to-source ([^ ]*)")
FILTER_RULE_RE = re.compile(r"-A OPENSHIFT-FIREWALL-ALLOW -d ([^ ]*)/32 .* -j REJECT")


class RulePosition(str, enum.Enum):
    """Where a new rule goes in its chain."""

    APPEND = "-A"
    PREPEND = "-I"


class IPTablesError(Exception):
    """Raised when an iptables operation fails."""


class IPTables(Protocol):
    """Operations that :class:`NodeIPTables` needs from an iptables backend."""

    def ensure_chain(self, table: str, chain: str) -> bool: ...

    def ensure_rule(self, position: RulePosition, table: str, chain: str, *args: str) -> bool: ...

    def flush_chain(self, table: str, chain: str) -> None: ...

    def delete_rule(self, table: str, chain: str, *args: str) -> None: ...

    def save(self, table: str) -> str: ...


Runner = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]


def _run(args: Sequence[str]) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(list(args), capture_output=True, text=True, check=False)


class CommandIPTables:
    """iptables backend that runs the ``iptables`` and ``iptables-save`` commands."""

    def __init__(
        self,
        binary: str = "iptables",
        save_binary: str = "iptables-save",
        runner: Optional[Runner] = None,
    ) -> None:
        self.binary = binary
        self.save_binary = save_binary
        self._runner = runner or _run

    def _exec(self, table: str, op: str, chain: str, *args: str) -> "subprocess.CompletedProcess[str]":
        return self._runner([self.binary, "-w", "-t", table, op, chain, *args])

    @staticmethod
    def _fail(what: str, result: "subprocess.CompletedProcess[str]") -> IPTablesError:
        output = (result.stderr or result.stdout or "").strip()
        return IPTablesError(f"{what} failed with exit code {result.returncode}: {output}")

    def ensure_chain(self, table: str, chain: str) -> bool:
        """Create ``chain`` in ``table``; return whether it already existed."""
        result = self._exec(table, "-N", chain)
        if result.returncode == 0:
            return False
        if result.returncode == 1:
            return True
        raise self._fail(f"creating chain {chain!r}", result)

    def _rule_exists(self, table: str, chain: str, args: Sequence[str]) -> bool:
        result = self._exec(table, "-C", chain, *args)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise self._fail(f"checking rule in {chain!r}", result)

    def ensure_rule(self, position: RulePosition, table: str, chain: str, *args: str) -> bool:
        """Add the rule unless present; return whether it already existed."""
        if self._rule_exists(table, chain, args):
            return True
        op = RulePosition(position).value
        result = self._exec(table, op, chain, *args)
        if result.returncode != 0:
            raise self._fail(f"adding rule to {chain!r}", result)
        return False

    def flush_chain(self, table: str, chain: str) -> None:
        """Remove every rule from ``chain``."""
        result = self._exec(table, "-F", chain)
        if result.returncode != 0:
            raise self._fail(f"flushing chain {chain!r}", result)

    def delete_rule(self, table: str, chain: str, *args: str) -> None:
        """Delete the rule if it is present."""
        if not self._rule_exists(table, chain, args):
            return
        result = self._exec(table, "-D", chain, *args)
        if result.returncode != 0:
            raise self._fail(f"deleting rule from {chain!r}", result)

    def save(self, table: str) -> str:
        """Dump ``table`` in iptables-save format."""
        result = self._runner([self.save_binary, "-t", table])
        if result.returncode != 0:
            raise self._fail(f"saving table {table!r}", result)
        return result.stdout


@dataclass
class Chain:
    """A managed chain, the jump to it from ``src_chain`` and its rules."""

    table: str
    name: str
    src_chain: str = ""
    src_rule: list[str] = field(default_factory=list)
    rules: list[list[str]] = field(default_factory=list)


class NodeIPTables:
    """Keeps the node's SDN iptables chains and egress IP rules in place."""

    def __init__(
        self,
        ipt: IPTables,
        cluster_network_cidrs: Sequence[str],
        masquerade_services: bool,
        vxlan_port: int,
        masquerade_bit: int,
    ) -> None:
        self.ipt = ipt
        self.cluster_network_cidrs = list(cluster_network_cidrs)
        self.masquerade_services = masquerade_services
        self.vxlan_port = vxlan_port
        self.masquerade_bit_hex = hex(1 << masquerade_bit)
        self.egress_ips: dict[str, str] = {}
        self._lock = threading.Lock()

    def setup(self) -> None:
        """Create or repair all chains and rules."""
        self._sync_rules()

    def _add_chain_rules(self, chain: Chain) -> bool:
        all_existed = True
        for rule in chain.rules:
            try:
                existed = self.ipt.ensure_rule(RulePosition.APPEND, chain.table, chain.name, *rule)
            except Exception as err:
                raise IPTablesError(f"failed to ensure rule {rule} exists: {err}") from err
            if not existed:
                all_existed = False
        return all_existed

    def _sync_rules(self) -> None:
        with self._lock:
            start = time.monotonic()
            log.debug("Syncing openshift iptables rules")
            try:
                # Chains are processed in reverse so that prepended jumps from a
                # shared parent end up in the order of node_chains().
                for chain in reversed(self.node_chains()):
                    try:
                        chain_existed = self.ipt.ensure_chain(chain.table, chain.name)
                    except Exception as err:
                        raise IPTablesError(
                            f"failed to ensure chain {chain.name} exists: {err}"
                        ) from err
                    if chain.src_chain:
                        try:
                            self.ipt.ensure_rule(
                                RulePosition.PREPEND,
                                chain.table,
                                chain.src_chain,
                                *chain.src_rule,
                                "-j",
                                chain.name,
                            )
                        except Exception as err:
                            raise IPTablesError(
                                f"failed to ensure rule from {chain.src_chain} to "
                                f"{chain.name} exists: {err}"
                            ) from err

                    rules_existed = self._add_chain_rules(chain)
                    if chain_existed and not rules_existed:
                        # The chain held other rules (probably for another
                        # subnet); flush it and add ours again.
                        try:
                            self.ipt.flush_chain(chain.table, chain.name)
                        except Exception as err:
                            raise IPTablesError(
                                f"failed to flush chain {chain.name}: {err}"
                            ) from err
                        self._add_chain_rules(chain)

                for egress_ip, mark in self.egress_ips.items():
                    self._ensure_egress_ip_rules(egress_ip, mark)
            finally:
                log.debug("syncIPTableRules took %.3fs", time.monotonic() - start)

    def node_chains(self) -> list[Chain]:
        """The chains this node manages, in the order they should run."""
        chains = [
            Chain(
                table=TABLE_FILTER,
                name=FIREWALL_ALLOW_CHAIN,
                src_chain="INPUT",
                src_rule=["-m", "comment", "--comment", "firewall overrides"],
                rules=[
                    ["-p", "udp", "--dport", str(self.vxlan_port), "-m", "comment",
                     "--comment", "VXLAN incoming", "-j", "ACCEPT"],
                    ["-i", TUN0, "-m", "comment", "--comment", "from SDN to localhost",
                     "-j", "ACCEPT"],
                    ["-i", "docker0", "-m", "comment", "--comment", "from docker to localhost",
                     "-j", "ACCEPT"],
                ],
            ),
            Chain(
                table=TABLE_FILTER,
                name="OPENSHIFT-ADMIN-OUTPUT-RULES",
                src_chain="FORWARD",
                src_rule=["-i", TUN0, "!", "-o", TUN0, "-m", "comment", "--comment",
                          "administrator overrides"],
            ),
        ]

        bit = self.masquerade_bit_hex
        # Skip traffic kube-proxy already marked for masquerading.
        masq_rules = [["-m", "mark", "--mark", f"{bit}/{bit}", "-j", "RETURN"]]
        masq2_rules: list[list[str]] = []
        filter_rules: list[list[str]] = []
        for cidr in self.cluster_network_cidrs:
            if self.masquerade_services:
                masq_rules.append(["-s", cidr, "-m", "comment", "--comment",
                                   "masquerade pod-to-service and pod-to-external traffic",
                                   "-j", "MASQUERADE"])
            else:
                masq_rules.append(["-s", cidr, "-m", "comment", "--comment",
                                   "masquerade pod-to-external traffic",
                                   "-j", "OPENSHIFT-MASQUERADE-2"])
                masq2_rules.append(["-d", cidr, "-m", "comment", "--comment",
                                    "masquerade pod-to-external traffic", "-j", "RETURN"])
            filter_rules.append(["-s", cidr, "-m", "comment", "--comment",
                                 "attempted resend after connection close",
                                 "-m", "conntrack", "--ctstate", "INVALID", "-j", "DROP"])
            filter_rules.append(["-d", cidr, "-m", "comment", "--comment",
                                 "forward traffic from SDN", "-j", "ACCEPT"])
            filter_rules.append(["-s", cidr, "-m", "comment", "--comment",
                                 "forward traffic to SDN", "-j", "ACCEPT"])

        chains.append(Chain(
            table=TABLE_NAT,
            name=MASQUERADE_CHAIN,
            src_chain="POSTROUTING",
            src_rule=["-m", "comment", "--comment", "rules for masquerading OpenShift traffic"],
            rules=masq_rules,
        ))
        chains.append(Chain(
            table=TABLE_FILTER,
            name="OPENSHIFT-FIREWALL-FORWARD",
            src_chain="FORWARD",
            src_rule=["-m", "comment", "--comment", "firewall overrides"],
            rules=filter_rules,
        ))
        if not self.masquerade_services:
            masq2_rules.append(["-j", "MASQUERADE"])
            chains.append(Chain(table=TABLE_NAT, name="OPENSHIFT-MASQUERADE-2", rules=masq2_rules))

        # Block access to the machine config server; the chain is shared
        # between OUTPUT and FORWARD.
        chains.append(Chain(
            table=TABLE_FILTER,
            name="OPENSHIFT-BLOCK-OUTPUT",
            src_chain="OUTPUT",
            src_rule=["-m", "comment", "--comment", "firewall overrides"],
            rules=[
                ["-p", "tcp", "-m", "tcp", "--dport", "22623", "--syn", "-j", "REJECT"],
                ["-p", "tcp", "-m", "tcp", "--dport", "22624", "--syn", "-j", "REJECT"],
            ],
        ))
        chains.append(Chain(
            table=TABLE_FILTER,
            name="OPENSHIFT-BLOCK-OUTPUT",
            src_chain="FORWARD",
            src_rule=["-m", "comment", "--comment", "firewall overrides"],
        ))
        return chains

    def _snat_args(self, cidr: str, egress_ip: str, mark: str) -> list[str]:
        return ["-s", cidr, "-m", "mark", "--mark", mark, "-j", "SNAT", "--to-source", egress_ip]

    @staticmethod
    def _reject_args(egress_ip: str) -> list[str]:
        return ["-d", egress_ip, "-m", "conntrack", "--ctstate", "NEW", "-j", "REJECT"]

    def _ensure_egress_ip_rules(self, egress_ip: str, mark: str) -> None:
        for cidr in self.cluster_network_cidrs:
            self.ipt.ensure_rule(RulePosition.PREPEND, TABLE_NAT, MASQUERADE_CHAIN,
                                 *self._snat_args(cidr, egress_ip, mark))
        self.ipt.ensure_rule(RulePosition.APPEND, TABLE_FILTER, FIREWALL_ALLOW_CHAIN,
                             *self._reject_args(egress_ip))

    def add_egress_ip_rules(self, egress_ip: str, mark: str) -> None:
        """SNAT traffic carrying ``mark`` to ``egress_ip`` and refuse new inbound connections to it."""
        with self._lock:
            self._ensure_egress_ip_rules(egress_ip, mark)
            self.egress_ips[egress_ip] = mark

    def delete_egress_ip_rules(self, egress_ip: str, mark: str) -> None:
        """Remove the rules added by :meth:`add_egress_ip_rules`."""
        with self._lock:
            self.egress_ips.pop(egress_ip, None)
            for cidr in self.cluster_network_cidrs:
                self.ipt.delete_rule(TABLE_NAT, MASQUERADE_CHAIN,
                                     *self._snat_args(cidr, egress_ip, mark))
            self.ipt.delete_rule(TABLE_FILTER, FIREWALL_ALLOW_CHAIN, *self._reject_args(egress_ip))

    def find_stale_egress_ip_rules(self, table: str, pattern: "re.Pattern[str]") -> dict[str, str]:
        """Map each egress IP found by ``pattern`` in ``table`` but no longer in use to its rule."""
        saved = self.ipt.save(table)
        rules: dict[str, str] = {}
        for line in saved.split("\n"):
            match = pattern.search(line)
            if match is None:
                continue
            rules[match.group(1)] = match.group(0)
        with self._lock:
            current = set(self.egress_ips)
        return {ip: rule for ip, rule in rules.items() if ip not in current}

    def sync_egress_ip_rules(self) -> None:
        """Delete iptables rules left behind for egress IPs that are gone."""
        stale = []
        for table, pattern, chain, kind, expected_len in (
            (TABLE_NAT, MASQ_RULE_RE, MASQUERADE_CHAIN, "masquerade", 12),
            (TABLE_FILTER, FILTER_RULE_RE, FIREWALL_ALLOW_CHAIN, "filter", 10),
        ):
            try:
                rules = self.find_stale_egress_ip_rules(table, pattern)
            except Exception as err:
                log.warning("Error looking for stale egress IP iptables rules: %s", err)
                rules = {}
            stale.append((table, chain, kind, expected_len, rules))

        for table, chain, kind, expected_len, rules in stale:
            for ip, rule in rules.items():
                log.info("Deleting iptables %s rule for stale egress IP %s", kind, ip)
                args = rule.split(" ")
                if len(args) != expected_len:
                    log.warning(
                        "Error deleting iptables %s rule for stale egress IP %s: "
                        "unexpected rule format %r", kind, ip, rule,
                    )
                    continue
                try:
                    self.ipt.delete_rule(table, chain, *args[2:])
                except Exception as err:
                    log.warning(
                        "Error deleting iptables %s rule for stale egress IP %s: %s", kind, ip, err
                    )