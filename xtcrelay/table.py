"""
Table sessions over libiptc / libip6tc.

A TableHandle owns one `struct xtc_handle *` obtained from `*_init()`.
Every method that touches it is submitted to the Relay, and the token
itself is only read or cleared on the relay thread, so a free() racing
with another caller can never hand a freed token to the library.

Rule entries returned by first_rule()/next_rule() point into the session's
memory. Structural changes (insert, append, delete, flush, chain create /
delete / rename, commit, free) bump a generation counter; using an entry
from an older generation raises StaleEntryError instead of reading freed
memory.

Rule numbers are 1-based throughout this API.

Usage:
    with Relay() as relay, TableHandle.open(relay, load_binding('ipv4'), 'filter') as t:
        for chain in t.chains():
            policy, counters = t.get_policy(chain)
"""

import errno as errno_codes
import itertools
import logging
from enum import Enum
from typing import Iterator, Optional, Tuple

from .errors import (
    HandleFreedError, InvalidChainLabel, StaleEntryError,
)
from .relay import Outcome, check_tristate, failed, succeeded
from .rule import Counters, Rule, decode_entry

logger = logging.getLogger(__name__)

IPTC_LABEL_ACCEPT = "ACCEPT"
IPTC_LABEL_DROP = "DROP"
IPTC_LABEL_QUEUE = "QUEUE"
IPTC_LABEL_RETURN = "RETURN"

# xt_chainlabel is char[XT_TABLE_MAXNAMELEN], NUL included
CHAIN_MAXNAMELEN = 31


class ChainLabel(str):
    """A chain or policy name accepted by libiptc"""

    def __new__(cls, value):
        if isinstance(value, ChainLabel):
            return value
        if not isinstance(value, str):
            raise InvalidChainLabel(f"chain name must be str, not {type(value).__name__}")
        if not value:
            raise InvalidChainLabel("chain name must not be empty")
        if len(value) > CHAIN_MAXNAMELEN:
            raise InvalidChainLabel(f"chain name {value!r} longer than {CHAIN_MAXNAMELEN} characters")
        if not value.isascii() or any(c.isspace() or not c.isprintable() for c in value):
            raise InvalidChainLabel(f"chain name {value!r} contains invalid characters")
        return super().__new__(cls, value)

    @property
    def is_standard_target(self) -> bool:
        return self in STANDARD_TARGETS


ACCEPT = ChainLabel(IPTC_LABEL_ACCEPT)
DROP = ChainLabel(IPTC_LABEL_DROP)
QUEUE = ChainLabel(IPTC_LABEL_QUEUE)
RETURN = ChainLabel(IPTC_LABEL_RETURN)

STANDARD_TARGETS = frozenset([IPTC_LABEL_ACCEPT, IPTC_LABEL_DROP, IPTC_LABEL_QUEUE, IPTC_LABEL_RETURN])


class TableState(Enum):
    OPEN = "open"
    COMMITTED = "committed"
    FREED = "freed"


class RuleEntry:
    """
    Reference to one rule record.

    Entries produced by iteration belong to their TableHandle and a
    generation of it. Entries built with TableHandle.entry_from_bytes()
    belong to the caller and never go stale.
    """

    __slots__ = ('pointer', 'handle', 'generation', '_owner')

    def __init__(self, pointer=None, handle=None, generation=None, owner=None):
        self.pointer = pointer
        self.handle = handle
        self.generation = generation
        self._owner = owner

    @property
    def is_empty(self) -> bool:
        """True for the end-of-chain sentinel"""
        return self.pointer is None

    @property
    def caller_owned(self) -> bool:
        return self._owner is not None

    def __bool__(self) -> bool:
        return not self.is_empty

    def __repr__(self) -> str:
        if self.is_empty:
            return "RuleEntry(<end>)"
        origin = "caller" if self.caller_owned else f"gen {self.generation}"
        return f"RuleEntry({origin})"


class TableHandle:
    """
    One open table session.

    Use TableHandle.open() rather than the constructor.
    """

    def __init__(self, relay, binding, name: str, token):
        self._relay = relay
        self._binding = binding
        self.name = name
        self._token = token
        self._state = TableState.OPEN
        self._generation = 0
        self._chain_cursor: Optional[Tuple[int, int]] = None
        self._cursor_ids = itertools.count(1)

    @classmethod
    def open(cls, relay, binding, name: str) -> "TableHandle":
        """
        Open table `name` (e.g. 'filter', 'nat').

        Raises:
            NativeCallError: the table does not exist, module not loaded,
                permission denied, ...
        """
        def operation():
            token = binding.init(name)
            return failed() if token is None else succeeded(token)

        token = relay.submit(operation, binding.op_name("init"), binding.strerror,
                             undo=binding.free)
        logger.info("opened %s table %r", binding.family, name)
        handle = cls(relay, binding, name, token)
        relay.track(handle)
        return handle

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):  # @UnusedVariable
        self.free()
        return False

    def __repr__(self) -> str:
        return f"TableHandle({self.name!r}, family={self.family!r}, state={self._state.value})"

    @property
    def family(self) -> str:
        return self._binding.family

    @property
    def binding(self):
        return self._binding

    @property
    def state(self) -> TableState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def freed(self) -> bool:
        return self._state is TableState.FREED

    # -- relay plumbing (closures below run on the relay thread) ----------

    def _submit(self, name: str, fn, mutates: bool = False):
        binding = self._binding

        def operation() -> Outcome:
            token = self._token
            if token is None:
                raise HandleFreedError(self.name)
            outcome = fn(token)
            # a rejected mutation or a delete that matched nothing moves no rules
            if mutates and outcome.ok and outcome.value is not False:
                self._generation += 1
            return outcome

        return self._relay.submit(operation, binding.op_name(name), binding.strerror)

    def _tristate(self, name: str, call, mutates: bool = False) -> None:
        op = self._binding.op_name(name)

        def fn(token) -> Outcome:
            return Outcome(check_tristate(call(token), op))

        self._submit(name, fn, mutates)

    def _errno(self) -> int:
        return self._relay.probe.last_errno()

    def _null_result(self, value) -> Outcome:
        """NULL is only a failure when errno says so"""
        if value is None and self._errno() != 0:
            return failed()
        return succeeded(value)

    def _check_live(self, entry: RuleEntry) -> None:
        if entry.is_empty:
            raise ValueError("the end-of-chain entry cannot be used here")
        if entry.caller_owned:
            return
        if entry.handle is not self:
            raise StaleEntryError(f"entry belongs to another table handle ({entry.handle!r})")
        if entry.generation != self._generation:
            raise StaleEntryError(
                f"entry from generation {entry.generation} used after table {self.name!r} "
                f"changed (generation {self._generation}); restart the iteration"
            )

    def check_entry_valid(self, entry: RuleEntry) -> None:
        """Raise StaleEntryError if `entry` can no longer be used with this handle"""
        self._check_live(entry)

    # -- chains -----------------------------------------------------------

    def is_chain(self, chain: str) -> bool:
        chain = ChainLabel(chain)
        op = self._binding.op_name("is_chain")
        return self._submit(
            "is_chain",
            lambda token: succeeded(check_tristate(self._binding.is_chain(chain, token), op)),
        )

    def is_builtin(self, chain: str) -> bool:
        chain = ChainLabel(chain)
        op = self._binding.op_name("builtin")
        return self._submit(
            "builtin",
            lambda token: succeeded(check_tristate(self._binding.builtin(chain, token), op)),
        )

    def _first_chain(self) -> Tuple[Optional[ChainLabel], int]:
        cursor_id = next(self._cursor_ids)

        def fn(token) -> Outcome:
            name = self._binding.first_chain(token)
            self._chain_cursor = (cursor_id, self._generation)
            outcome = self._null_result(name)
            return outcome._replace(value=None if name is None else ChainLabel(name))

        return self._submit("first_chain", fn), cursor_id

    def first_chain(self) -> Optional[ChainLabel]:
        """First chain of the table, None if there is none"""
        return self._first_chain()[0]

    def next_chain(self, cursor: Optional[int] = None) -> Optional[ChainLabel]:
        """
        Next chain after the previous first_chain()/next_chain(), None at
        the end.

        Raises:
            StaleEntryError: the table changed, or (with `cursor`) another
                iteration restarted the handle's chain cursor
        """
        def fn(token) -> Outcome:
            if self._chain_cursor is None:
                raise StaleEntryError("next_chain() called before first_chain()")
            current_id, generation = self._chain_cursor
            if generation != self._generation:
                raise StaleEntryError(f"table {self.name!r} changed during chain iteration")
            if cursor is not None and cursor != current_id:
                raise StaleEntryError("chain iteration was restarted by another caller")
            name = self._binding.next_chain(token)
            outcome = self._null_result(name)
            return outcome._replace(value=None if name is None else ChainLabel(name))

        return self._submit("next_chain", fn)

    def get_policy(self, chain: str) -> Tuple[Optional[str], Counters]:
        """
        Policy and policy counters of a built-in chain; (None, Counters())
        for a user-defined chain.
        """
        chain = ChainLabel(chain)

        def fn(token) -> Outcome:
            policy, counters = self._binding.get_policy(chain, token)
            if policy is None:
                if self._errno() != 0:
                    return failed()
                return succeeded((None, Counters()))
            return succeeded((policy, counters))

        return self._submit("get_policy", fn)

    def set_policy(self, chain: str, policy: str, counters: Optional[Counters] = None) -> None:
        chain, policy = ChainLabel(chain), ChainLabel(policy)
        self._tristate("set_policy", lambda token: self._binding.set_policy(chain, policy, counters, token))

    def create_chain(self, chain: str) -> None:
        chain = ChainLabel(chain)
        self._tristate("create_chain", lambda token: self._binding.create_chain(chain, token), mutates=True)

    def delete_chain(self, chain: str) -> None:
        chain = ChainLabel(chain)
        self._tristate("delete_chain", lambda token: self._binding.delete_chain(chain, token), mutates=True)

    def rename_chain(self, old: str, new: str) -> None:
        old, new = ChainLabel(old), ChainLabel(new)
        self._tristate("rename_chain", lambda token: self._binding.rename_chain(old, new, token), mutates=True)

    def get_references(self, chain: str) -> int:
        """Number of rules jumping to `chain`"""
        chain = ChainLabel(chain)
        op = self._binding.op_name("get_references")

        def fn(token) -> Outcome:
            rc, refs = self._binding.get_references(chain, token)
            return Outcome(check_tristate(rc, op), refs)

        return self._submit("get_references", fn)

    def flush_entries(self, chain: str) -> None:
        chain = ChainLabel(chain)
        self._tristate("flush_entries", lambda token: self._binding.flush_entries(chain, token), mutates=True)

    def zero_entries(self, chain: str) -> None:
        chain = ChainLabel(chain)
        self._tristate("zero_entries", lambda token: self._binding.zero_entries(chain, token))

    # -- rules ------------------------------------------------------------

    def _wrap(self, pointer) -> RuleEntry:
        return RuleEntry(pointer, self, self._generation)

    def first_rule(self, chain: str) -> RuleEntry:
        """First rule of `chain`; an empty entry if the chain has no rules"""
        chain = ChainLabel(chain)

        def fn(token) -> Outcome:
            pointer = self._binding.first_rule(chain, token)
            outcome = self._null_result(pointer)
            return outcome._replace(value=self._wrap(pointer))

        return self._submit("first_rule", fn)

    def next_rule(self, previous: RuleEntry) -> RuleEntry:
        """Rule after `previous`; an empty entry at the end of the chain"""
        def fn(token) -> Outcome:
            self._check_live(previous)
            pointer = self._binding.next_rule(previous.pointer, token)
            outcome = self._null_result(pointer)
            return outcome._replace(value=self._wrap(pointer))

        return self._submit("next_rule", fn)

    def get_target(self, entry: RuleEntry) -> str:
        """Target name of `entry`; "" when the entry has none"""
        def fn(token) -> Outcome:
            self._check_live(entry)
            target = self._binding.get_target(entry.pointer, token)
            outcome = self._null_result(target)
            return outcome._replace(value=target or "")

        return self._submit("get_target", fn)

    def snapshot_entry(self, entry: RuleEntry):
        """
        Copy the fixed header of `entry` and resolve its target in one
        relayed call. Returns (header copy, target or "").
        """
        def fn(token) -> Outcome:
            self._check_live(entry)
            raw = self._binding.snapshot(entry.pointer)
            target = self._binding.get_target(entry.pointer, token) or ""
            return succeeded((raw, target))

        return self._submit("get_target", fn)

    def decode(self, entry: RuleEntry) -> Rule:
        return decode_entry(entry, self)

    def entry_from_bytes(self, data: bytes) -> RuleEntry:
        """Wrap a serialized entry built by the caller, for insert/append/check/delete"""
        pointer, owner = self._binding.entry_from_bytes(data)
        return RuleEntry(pointer, None, None, owner)

    def _matchmask(self, entry: RuleEntry, matchmask: Optional[bytes]) -> bytes:
        size = self._binding.entry_size(entry.pointer)
        if matchmask is None:
            return b'\xff' * size
        if len(matchmask) < size:
            raise ValueError(f"matchmask must cover the whole entry ({len(matchmask)} < {size} bytes)")
        return bytes(matchmask)

    def insert_entry(self, chain: str, entry: RuleEntry, rulenum: int) -> None:
        """Insert `entry` so that it becomes rule number `rulenum` (1-based)"""
        chain = ChainLabel(chain)
        if rulenum < 1:
            raise ValueError(f"rule numbers start at 1, got {rulenum}")

        def call(token):
            self._check_live(entry)
            # libiptc counts insert positions from 0
            return self._binding.insert_entry(chain, entry.pointer, rulenum - 1, token)

        self._tristate("insert_entry", call, mutates=True)

    def append_entry(self, chain: str, entry: RuleEntry) -> None:
        chain = ChainLabel(chain)

        def call(token):
            self._check_live(entry)
            return self._binding.append_entry(chain, entry.pointer, token)

        self._tristate("append_entry", call, mutates=True)

    def _match_entry(self, name: str, chain: str, entry: RuleEntry,
                     matchmask: Optional[bytes], mutates: bool) -> bool:
        chain = ChainLabel(chain)
        op = self._binding.op_name(name)

        def fn(token) -> Outcome:
            self._check_live(entry)
            mask = self._matchmask(entry, matchmask)
            known_chain = check_tristate(self._binding.is_chain(chain, token), self._binding.op_name("is_chain"))
            rc = getattr(self._binding, name)(chain, entry.pointer, mask, token)
            if check_tristate(rc, op):
                return succeeded(True)
            # ENOENT means "no such rule" only when the chain exists
            if known_chain and self._errno() == errno_codes.ENOENT:
                return succeeded(False)
            return failed()

        return self._submit(name, fn, mutates)

    def check_entry(self, chain: str, entry: RuleEntry, matchmask: Optional[bytes] = None) -> bool:
        """True if `chain` holds a rule matching `entry` under `matchmask`"""
        return self._match_entry("check_entry", chain, entry, matchmask, mutates=False)

    def delete_entry(self, chain: str, entry: RuleEntry, matchmask: Optional[bytes] = None) -> bool:
        """Delete the first rule matching `entry`; False if there was none"""
        return self._match_entry("delete_entry", chain, entry, matchmask, mutates=True)

    def delete_num_entry(self, chain: str, rulenum: int) -> None:
        chain = ChainLabel(chain)
        if rulenum < 1:
            raise ValueError(f"rule numbers start at 1, got {rulenum}")
        # libiptc counts from 0 here too
        self._tristate(
            "delete_num_entry",
            lambda token: self._binding.delete_num_entry(chain, rulenum - 1, token),
            mutates=True,
        )

    # -- counters ---------------------------------------------------------

    def read_counter(self, chain: str, rulenum: int) -> Counters:
        chain = ChainLabel(chain)
        if rulenum < 1:
            raise ValueError(f"rule numbers start at 1, got {rulenum}")

        def fn(token) -> Outcome:
            counters = self._binding.read_counter(chain, rulenum, token)
            return failed() if counters is None else succeeded(counters)

        return self._submit("read_counter", fn)

    def zero_counter(self, chain: str, rulenum: int) -> None:
        chain = ChainLabel(chain)
        if rulenum < 1:
            raise ValueError(f"rule numbers start at 1, got {rulenum}")
        self._tristate("zero_counter", lambda token: self._binding.zero_counter(chain, rulenum, token))

    def set_counter(self, chain: str, rulenum: int, counters: Counters) -> None:
        chain = ChainLabel(chain)
        if rulenum < 1:
            raise ValueError(f"rule numbers start at 1, got {rulenum}")
        counters = Counters(*counters)
        self._tristate("set_counter", lambda token: self._binding.set_counter(chain, rulenum, counters, token))

    # -- session ----------------------------------------------------------

    def commit(self) -> None:
        """
        Apply every pending change to the kernel. What further changes on
        this handle mean afterwards is up to libiptc.
        """
        op = self._binding.op_name("commit")

        def fn(token) -> Outcome:
            ok = check_tristate(self._binding.commit(token), op)
            if ok:
                self._state = TableState.COMMITTED
            return Outcome(ok)

        self._submit("commit", fn, mutates=True)
        logger.info("committed %s table %r", self.family, self.name)

    def free(self) -> None:
        """Release the session. Safe to call any number of times."""
        freed = []

        def operation() -> Outcome:
            token = self._token
            if token is None:
                return succeeded()
            self._token = None
            self._generation += 1
            self._state = TableState.FREED
            self._binding.free(token)
            freed.append(True)
            return succeeded()

        if self._state is TableState.FREED:
            return
        self._relay.submit(operation, self._binding.op_name("free"), self._binding.strerror)
        if freed:
            logger.info("freed %s table %r", self.family, self.name)

    def dump_entries(self) -> None:
        """libiptc's own debugging dump of the whole table, to stdout"""
        self._submit("dump_entries", lambda token: succeeded(self._binding.dump_entries(token)))

    # -- iteration --------------------------------------------------------

    def chains(self) -> Iterator[ChainLabel]:
        from .cursor import iter_chains
        return iter_chains(self)

    def rules(self, chain: str) -> Iterator[RuleEntry]:
        from .cursor import iter_rules
        return iter_rules(self, chain)
