import subprocess

import pytest

from sdnkit.iptables import (
    FILTER_RULE_RE,
    MASQ_RULE_RE,
    Chain,
    CommandIPTables,
    IPTablesError,
    NodeIPTables,
    RulePosition,
)

CIDR = "10.128.0.0/14"


class FakeIPTables:
    def __init__(self):
        self.chains = {}
        self.extra_save = {}
        self.deleted = []
        self.fail_chains = False

    def ensure_chain(self, table, chain):
        if self.fail_chains:
            raise RuntimeError("boom")
        key = (table, chain)
        if key in self.chains:
            return True
        self.chains[key] = []
        return False

    def ensure_rule(self, position, table, chain, *args):
        rules = self.chains.setdefault((table, chain), [])
        rule = tuple(args)
        if rule in rules:
            return True
        if position == RulePosition.PREPEND:
            rules.insert(0, rule)
        else:
            rules.append(rule)
        return False

    def flush_chain(self, table, chain):
        self.chains[(table, chain)] = []

    def delete_rule(self, table, chain, *args):
        self.deleted.append((table, chain, tuple(args)))
        rules = self.chains.get((table, chain), [])
        if tuple(args) in rules:
            rules.remove(tuple(args))

    def save(self, table):
        lines = [
            f"-A {chain} {' '.join(rule)}"
            for (tbl, chain), rules in self.chains.items()
            if tbl == table
            for rule in rules
        ]
        lines.extend(self.extra_save.get(table, []))
        return "\n".join(lines)


def make_node(ipt, masquerade_services=False):
    return NodeIPTables(ipt, [CIDR], masquerade_services, 4789, 0)


def test_setup_creates_chains_and_jumps():
    ipt = FakeIPTables()
    make_node(ipt).setup()
    assert ("filter", "OPENSHIFT-FIREWALL-ALLOW") in ipt.chains
    assert ("nat", "OPENSHIFT-MASQUERADE-2") in ipt.chains
    jump = ("-m", "comment", "--comment", "firewall overrides", "-j", "OPENSHIFT-FIREWALL-ALLOW")
    assert jump in ipt.chains[("filter", "INPUT")]
    assert ipt.chains[("filter", "OPENSHIFT-BLOCK-OUTPUT")] == [
        ("-p", "tcp", "-m", "tcp", "--dport", "22623", "--syn", "-j", "REJECT"),
        ("-p", "tcp", "-m", "tcp", "--dport", "22624", "--syn", "-j", "REJECT"),
    ]


def test_forward_jumps_keep_declared_order():
    ipt = FakeIPTables()
    make_node(ipt).setup()
    targets = [rule[-1] for rule in ipt.chains[("filter", "FORWARD")]]
    assert targets == [
        "OPENSHIFT-ADMIN-OUTPUT-RULES",
        "OPENSHIFT-FIREWALL-FORWARD",
        "OPENSHIFT-BLOCK-OUTPUT",
    ]


def test_setup_is_idempotent():
    ipt = FakeIPTables()
    node = make_node(ipt)
    node.setup()
    snapshot = {k: list(v) for k, v in ipt.chains.items()}
    node.setup()
    assert ipt.chains == snapshot


def test_masquerade_services_omits_second_chain():
    chains = make_node(FakeIPTables(), masquerade_services=True).node_chains()
    names = [c.name for c in chains]
    assert "OPENSHIFT-MASQUERADE-2" not in names
    masq = next(c for c in chains if c.name == "OPENSHIFT-MASQUERADE")
    assert masq.rules[1][-1] == "MASQUERADE"


def test_masquerade_bit_return_rule():
    chains = make_node(FakeIPTables()).node_chains()
    masq = next(c for c in chains if c.name == "OPENSHIFT-MASQUERADE")
    assert masq.rules[0] == ["-m", "mark", "--mark", "0x1/0x1", "-j", "RETURN"]
    assert isinstance(masq, Chain) and masq.src_chain == "POSTROUTING"


def test_stale_chain_contents_are_flushed():
    ipt = FakeIPTables()
    ipt.chains[("filter", "OPENSHIFT-FIREWALL-FORWARD")] = [("-s", "10.1.0.0/16", "-j", "ACCEPT")]
    make_node(ipt).setup()
    rules = ipt.chains[("filter", "OPENSHIFT-FIREWALL-FORWARD")]
    assert ("-s", "10.1.0.0/16", "-j", "ACCEPT") not in rules
    assert len(rules) == 3


def test_add_and_delete_egress_ip_rules():
    ipt = FakeIPTables()
    node = make_node(ipt)
    node.setup()
    node.add_egress_ip_rules("172.17.0.100", "0x0000002a")
    snat = ("-s", CIDR, "-m", "mark", "--mark", "0x0000002a", "-j", "SNAT",
            "--to-source", "172.17.0.100")
    assert ipt.chains[("nat", "OPENSHIFT-MASQUERADE")][0] == snat
    assert node.egress_ips == {"172.17.0.100": "0x0000002a"}

    node.delete_egress_ip_rules("172.17.0.100", "0x0000002a")
    assert snat not in ipt.chains[("nat", "OPENSHIFT-MASQUERADE")]
    assert node.egress_ips == {}


def test_setup_restores_egress_rules():
    ipt = FakeIPTables()
    node = make_node(ipt)
    node.add_egress_ip_rules("172.17.0.100", "0x0000002a")
    ipt.chains.clear()
    node.setup()
    reject = ("-d", "172.17.0.100", "-m", "conntrack", "--ctstate", "NEW", "-j", "REJECT")
    assert reject in ipt.chains[("filter", "OPENSHIFT-FIREWALL-ALLOW")]


def test_find_stale_rules_skips_current_ips():
    ipt = FakeIPTables()
    node = make_node(ipt)
    node.add_egress_ip_rules("172.17.0.100", "0x0000002a")
    ipt.extra_save["nat"] = [
        f"-A OPENSHIFT-MASQUERADE -s {CIDR} -m mark --mark 0x0000002b -j SNAT --to-source 172.17.0.101"
    ]
    stale = node.find_stale_egress_ip_rules("nat", MASQ_RULE_RE)
    assert list(stale) == ["172.17.0.101"]
    assert stale["172.17.0.101"].endswith("--to-source 172.17.0.101")


def test_sync_egress_ip_rules_deletes_stale():
    ipt = FakeIPTables()
    node = make_node(ipt)
    ipt.extra_save["nat"] = [
        f"-A OPENSHIFT-MASQUERADE -s {CIDR} -m mark --mark 0x0000002b -j SNAT --to-source 172.17.0.101",
        "-A OPENSHIFT-MASQUERADE -m mark --mark 0x1 -j SNAT --to-source 172.17.0.102",
    ]
    ipt.extra_save["filter"] = [
        "-A OPENSHIFT-FIREWALL-ALLOW -d 172.17.0.101/32 -m conntrack --ctstate NEW "
        "-j REJECT --reject-with icmp-port-unreachable"
    ]
    node.sync_egress_ip_rules()
    assert ipt.deleted == [
        ("nat", "OPENSHIFT-MASQUERADE",
         ("-s", CIDR, "-m", "mark", "--mark", "0x0000002b", "-j", "SNAT",
          "--to-source", "172.17.0.101")),
        ("filter", "OPENSHIFT-FIREWALL-ALLOW",
         ("-d", "172.17.0.101/32", "-m", "conntrack", "--ctstate", "NEW", "-j", "REJECT")),
    ]
    assert FILTER_RULE_RE.search(ipt.extra_save["filter"][0]).group(1) == "172.17.0.101"


def test_chain_failure_raises():
    ipt = FakeIPTables()
    ipt.fail_chains = True
    with pytest.raises(IPTablesError):
        make_node(ipt).setup()


class Recorder:
    def __init__(self, codes, stdout=""):
        self.codes = list(codes)
        self.calls = []
        self.stdout = stdout

    def __call__(self, args):
        self.calls.append(list(args))
        return subprocess.CompletedProcess(args, self.codes.pop(0), self.stdout, "err")


def test_command_ensure_rule_existing():
    runner = Recorder([0])
    ipt = CommandIPTables(runner=runner)
    assert ipt.ensure_rule(RulePosition.APPEND, "nat", "X", "-j", "RETURN") is True
    assert runner.calls == [["iptables", "-w", "-t", "nat", "-C", "X", "-j", "RETURN"]]


def test_command_ensure_rule_adds():
    runner = Recorder([1, 0])
    ipt = CommandIPTables(runner=runner)
    assert ipt.ensure_rule(RulePosition.PREPEND, "nat", "X", "-j", "RETURN") is False
    assert runner.calls[1] == ["iptables", "-w", "-t", "nat", "-I", "X", "-j", "RETURN"]


def test_command_ensure_chain_codes():
    assert CommandIPTables(runner=Recorder([1])).ensure_chain("filter", "X") is True
    assert CommandIPTables(runner=Recorder([0])).ensure_chain("filter", "X") is False
    with pytest.raises(IPTablesError):
        CommandIPTables(runner=Recorder([2])).ensure_chain("filter", "X")


def test_command_delete_missing_rule_is_noop():
    runner = Recorder([1])
    CommandIPTables(runner=runner).delete_rule("filter", "X", "-j", "DROP")
    assert len(runner.calls) == 1


def test_command_save_returns_output():
    runner = Recorder([0], stdout="*nat\nCOMMIT\n")
    assert CommandIPTables(runner=runner).save("nat") == "*nat\nCOMMIT\n"
    assert runner.calls == [["iptables-save", "-t", "nat"]]