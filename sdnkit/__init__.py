"""Overlay cluster network parts: VNID and subnet allocation, egress marks, iptables chains, a CNI request server and metrics."""

__version__ = "0.1.0"