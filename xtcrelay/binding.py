"""
Thin per-family adapter over libiptc / libip6tc.

IptcBinding exposes the native primitives with the prefix stripped
(`iptc_is_chain` and `ip6tc_is_chain` both become `is_chain`), str in and
out instead of char pointers, and None instead of NULL. It does no error
handling of its own: int results are returned raw for the caller to apply
the tri-state convention, and errno is left for the relay to read. Methods
that call into the library must run on the relay thread.
"""

from typing import Optional, Tuple

from .native import FAMILIES, c_string, ffi, load_library
from .rule import Counters


def _cstr(value: str) -> bytes:
    return value.encode('utf-8')


def _byte_buffer(data: bytes):
    buf = ffi.new("unsigned char[]", len(data))
    ffi.memmove(buf, data, len(data))
    return buf


class IptcBinding:
    """libiptc (family 'ipv4') or libip6tc (family 'ipv6') loaded through cffi"""

    def __init__(self, lib, family: str = 'ipv4'):
        if family not in FAMILIES:
            raise ValueError(f"Invalid family: {family}. Use 'ipv4' or 'ipv6'")
        self.family = family
        self.prefix, self.entry_type, self._dump_name = FAMILIES[family]
        self._lib = lib

    def __repr__(self) -> str:
        return f"IptcBinding(family={self.family!r})"

    def _fn(self, name: str):
        return getattr(self._lib, f"{self.prefix}_{name}")

    def op_name(self, name: str) -> str:
        """Native function name, used to label relayed calls"""
        return f"{self.prefix}_{name}"

    # -- error probe companion --------------------------------------------

    def strerror(self, errno: int) -> str:
        """Message for `errno` as worded by this library variant"""
        return c_string(self._fn("strerror")(errno)) or ""

    # -- session ----------------------------------------------------------

    def init(self, table: str):
        handle = self._fn("init")(_cstr(table))
        return None if handle == ffi.NULL else handle

    def free(self, handle) -> None:
        self._fn("free")(handle)

    def commit(self, handle) -> int:
        return self._fn("commit")(handle)

    def dump_entries(self, handle) -> None:
        getattr(self._lib, self._dump_name)(handle)

    # -- chains -----------------------------------------------------------

    def is_chain(self, chain: str, handle) -> int:
        return self._fn("is_chain")(_cstr(chain), handle)

    def builtin(self, chain: str, handle) -> int:
        return self._fn("builtin")(_cstr(chain), handle)

    def first_chain(self, handle) -> Optional[str]:
        return c_string(self._fn("first_chain")(handle))

    def next_chain(self, handle) -> Optional[str]:
        return c_string(self._fn("next_chain")(handle))

    def get_policy(self, chain: str, handle) -> Tuple[Optional[str], Counters]:
        counters = ffi.new("struct xt_counters *")
        policy = c_string(self._fn("get_policy")(_cstr(chain), counters, handle))
        return policy, Counters(int(counters.pcnt), int(counters.bcnt))

    def set_policy(self, chain: str, policy: str, counters: Optional[Counters], handle) -> int:
        c = ffi.NULL
        if counters is not None:
            c = ffi.new("struct xt_counters *", {'pcnt': counters.packets, 'bcnt': counters.bytes})
        return self._fn("set_policy")(_cstr(chain), _cstr(policy), c, handle)

    def create_chain(self, chain: str, handle) -> int:
        return self._fn("create_chain")(_cstr(chain), handle)

    def delete_chain(self, chain: str, handle) -> int:
        return self._fn("delete_chain")(_cstr(chain), handle)

    def rename_chain(self, old: str, new: str, handle) -> int:
        return self._fn("rename_chain")(_cstr(old), _cstr(new), handle)

    def get_references(self, chain: str, handle) -> Tuple[int, int]:
        ref = ffi.new("unsigned int *")
        rc = self._fn("get_references")(ref, _cstr(chain), handle)
        return rc, int(ref[0])

    def flush_entries(self, chain: str, handle) -> int:
        return self._fn("flush_entries")(_cstr(chain), handle)

    def zero_entries(self, chain: str, handle) -> int:
        return self._fn("zero_entries")(_cstr(chain), handle)

    # -- rules ------------------------------------------------------------

    def first_rule(self, chain: str, handle):
        entry = self._fn("first_rule")(_cstr(chain), handle)
        return None if entry == ffi.NULL else entry

    def next_rule(self, previous, handle):
        entry = self._fn("next_rule")(previous, handle)
        return None if entry == ffi.NULL else entry

    def get_target(self, entry, handle) -> Optional[str]:
        return c_string(self._fn("get_target")(entry, handle))

    def insert_entry(self, chain: str, entry, rulenum: int, handle) -> int:
        return self._fn("insert_entry")(_cstr(chain), entry, rulenum, handle)

    def append_entry(self, chain: str, entry, handle) -> int:
        return self._fn("append_entry")(_cstr(chain), entry, handle)

    def check_entry(self, chain: str, entry, matchmask: bytes, handle) -> int:
        mask = _byte_buffer(matchmask)
        return self._fn("check_entry")(_cstr(chain), entry, mask, handle)

    def delete_entry(self, chain: str, entry, matchmask: bytes, handle) -> int:
        mask = _byte_buffer(matchmask)
        return self._fn("delete_entry")(_cstr(chain), entry, mask, handle)

    def delete_num_entry(self, chain: str, rulenum: int, handle) -> int:
        return self._fn("delete_num_entry")(_cstr(chain), rulenum, handle)

    # -- counters ---------------------------------------------------------

    def read_counter(self, chain: str, rulenum: int, handle) -> Optional[Counters]:
        c = self._fn("read_counter")(_cstr(chain), rulenum, handle)
        if c == ffi.NULL:
            return None
        return Counters(int(c.pcnt), int(c.bcnt))

    def zero_counter(self, chain: str, rulenum: int, handle) -> int:
        return self._fn("zero_counter")(_cstr(chain), rulenum, handle)

    def set_counter(self, chain: str, rulenum: int, counters: Counters, handle) -> int:
        c = ffi.new("struct xt_counters *", {'pcnt': counters.packets, 'bcnt': counters.bytes})
        return self._fn("set_counter")(_cstr(chain), rulenum, c, handle)

    # -- entries owned by the caller -----------------------------------------

    def entry_from_bytes(self, data: bytes):
        """
        Copy a complete serialized entry (header, matches and target, as
        laid out by the kernel) into new memory.

        Returns:
            (typed pointer, owning buffer); the buffer must outlive the pointer
        """
        size = ffi.sizeof(self.entry_type)
        if len(data) < size:
            raise ValueError(f"entry data shorter than {self.entry_type} ({len(data)} < {size})")
        buf = _byte_buffer(data)
        return ffi.cast(self.entry_type + " *", buf), buf

    def entry_size(self, entry) -> int:
        """Total size of an entry including matches and target"""
        return int(entry.next_offset)

    def snapshot(self, entry):
        """Copy the fixed header of `entry` into Python-owned memory"""
        copy = ffi.new(self.entry_type + " *")
        ffi.memmove(copy, entry, ffi.sizeof(self.entry_type))
        return copy


def load_binding(family: str = 'ipv4', config=None) -> IptcBinding:
    """
    Load the native library for `family` using the sonames from `config`
    (RelayConfig), or the defaults.
    """
    if config is None:
        from .config import RelayConfig
        config = RelayConfig()
    return IptcBinding(load_library(family, config.libraries(family)), family)
