"""Helpers for egress IP handling on a node: packet marks and address labels."""

from __future__ import annotations

# An address label must start with the link name plus ":" and be at most this long.
_MAX_LABEL_LENGTH = 15


def get_mark_for_vnid(vnid: int, masquerade_bit: int) -> str:
    """Hex packet mark for ``vnid``: never 0, never has ``masquerade_bit`` set,
    and distinct from the mark of every other valid VNID."""
    if vnid == 0:
        vnid = 0xFF000000
    if vnid & masquerade_bit:
        vnid = (vnid | 0x01000000) ^ masquerade_bit
    return f"0x{vnid & 0xFFFFFFFF:08x}"


def egress_ip_label(link_name: str) -> str:
    """Address label used for egress IPs on the link named ``link_name``."""
    label = link_name + ":eip"
    if len(label) > _MAX_LABEL_LENGTH:
        raise ValueError(f"link name {link_name!r} is too long")
    return label