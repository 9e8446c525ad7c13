"""
Decoded rule values.

decode_entry() copies everything out of a native `struct ipt_entry` /
`struct ip6t_entry` into a Rule, so the result stays valid after the entry,
its table handle or the relay are gone. Only the fixed IP header part of
the entry is decoded; match and target extensions are left opaque.
"""

import ipaddress
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, NamedTuple, Optional, Union

from .native import (
    ffi, IPT_INV_VIA_IN, IPT_INV_VIA_OUT, IPT_INV_SRCIP, IPT_INV_DSTIP,
)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class Counters(NamedTuple):
    """Packet and byte counters, always handled as a pair"""
    packets: int = 0
    bytes: int = 0


@dataclass(frozen=True)
class AddressMask:
    """
    Address plus mask exactly as stored in the entry.

    libiptc accepts non-contiguous masks, so the mask is kept as an address
    rather than folded into a prefix length.
    """
    address: IPAddress
    mask: IPAddress

    @property
    def prefixlen(self) -> Optional[int]:
        """Prefix length, or None if the mask is not contiguous"""
        bits = int(self.mask)
        width = self.mask.max_prefixlen
        length = bin(bits).count('1')
        if bits != ((1 << width) - 1) ^ ((1 << (width - length)) - 1):
            return None
        return length

    @property
    def network(self) -> Union[ipaddress.IPv4Network, ipaddress.IPv6Network]:
        """
        The matched network with host bits cleared.

        Raises:
            ValueError: the mask is not contiguous
        """
        prefixlen = self.prefixlen
        if prefixlen is None:
            raise ValueError(f"non-contiguous mask {self.mask}")
        return ipaddress.ip_network((self.address, prefixlen), strict=False)

    def __str__(self) -> str:
        prefixlen = self.prefixlen
        if prefixlen is None:
            masked = ipaddress.ip_address(int(self.address) & int(self.mask))
            return f"{masked}/{self.mask}"
        return str(self.network)


@dataclass(frozen=True)
class InvertFlags:
    """One flag per inverted ('!') selector"""
    src: bool = False
    dst: bool = False
    in_interface: bool = False
    out_interface: bool = False

    @classmethod
    def from_invflags(cls, invflags: int) -> "InvertFlags":
        return cls(
            src=bool(invflags & IPT_INV_SRCIP),
            dst=bool(invflags & IPT_INV_DSTIP),
            in_interface=bool(invflags & IPT_INV_VIA_IN),
            out_interface=bool(invflags & IPT_INV_VIA_OUT),
        )


def _not(flag: bool) -> str:
    return "!" if flag else ""


@dataclass(frozen=True)
class Rule:
    family: str
    src: AddressMask
    dst: AddressMask
    in_interface: str = ""
    out_interface: str = ""
    inverted: InvertFlags = field(default_factory=InvertFlags)
    target: str = ""
    counters: Counters = field(default_factory=Counters)

    def __str__(self) -> str:
        inv = self.inverted
        return (
            f"in: {_not(inv.in_interface)}{self.in_interface or '*'}, "
            f"out: {_not(inv.out_interface)}{self.out_interface or '*'}, "
            f"{_not(inv.src)}{self.src} -> {_not(inv.dst)}{self.dst} -> {self.target or '-'}: "
            f"{self.counters.packets} packets, {self.counters.bytes} bytes"
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation"""
        return {
            'family': self.family,
            'src': str(self.src),
            'dst': str(self.dst),
            'in_interface': self.in_interface,
            'out_interface': self.out_interface,
            'inverted': {
                'src': self.inverted.src,
                'dst': self.inverted.dst,
                'in_interface': self.inverted.in_interface,
                'out_interface': self.inverted.out_interface,
            },
            'target': self.target,
            'packets': self.counters.packets,
            'bytes': self.counters.bytes,
        }


def ipv4_from_word(word: int) -> ipaddress.IPv4Address:
    """
    An in_addr read as a host-order uint32 still holds the address in
    network byte order in memory (on x86: octets at bits 0, 8, 16, 24).
    """
    return ipaddress.IPv4Address(word.to_bytes(4, sys.byteorder))


def ipv6_from_in6(addr) -> ipaddress.IPv6Address:
    return ipaddress.IPv6Address(bytes(ffi.buffer(addr.__in6_u.u6_addr8, 16)))


def interface_name(raw) -> str:
    """NUL-terminated char[IFNAMSIZ] to str"""
    return ffi.string(raw).decode('utf-8', errors='replace')


def decode_raw(raw, family: str, target: str = "") -> Rule:
    """
    Build a Rule from a `struct ipt_entry *` (family 'ipv4') or
    `struct ip6t_entry *` (family 'ipv6'). Pure: no native calls.
    """
    counters = Counters(int(raw.counters.pcnt), int(raw.counters.bcnt))

    if family == 'ipv4':
        ip = raw.ip
        src = AddressMask(ipv4_from_word(ip.src.s_addr), ipv4_from_word(ip.smsk.s_addr))
        dst = AddressMask(ipv4_from_word(ip.dst.s_addr), ipv4_from_word(ip.dmsk.s_addr))
    elif family == 'ipv6':
        ip = raw.ipv6
        src = AddressMask(ipv6_from_in6(ip.src), ipv6_from_in6(ip.smsk))
        dst = AddressMask(ipv6_from_in6(ip.dst), ipv6_from_in6(ip.dmsk))
    else:
        raise ValueError(f"Invalid family: {family}. Use 'ipv4' or 'ipv6'")

    return Rule(
        family=family,
        src=src,
        dst=dst,
        in_interface=interface_name(ip.iniface),
        out_interface=interface_name(ip.outiface),
        inverted=InvertFlags.from_invflags(ip.invflags),
        target=target,
        counters=counters,
    )


def decode_entry(entry, handle) -> Rule:
    """
    Decode a live RuleEntry of `handle` into a Rule.

    The entry header and its target name are copied out in a single relayed
    call, so native memory is only ever read on the relay thread. Entries
    without a resolvable target decode with target "".

    Raises:
        ValueError: the entry is empty
        StaleEntryError: the handle was mutated after the entry was read
    """
    if entry.is_empty:
        raise ValueError("cannot decode the end-of-chain entry")

    raw, target = handle.snapshot_entry(entry)
    return decode_raw(raw, handle.family, target or "")
