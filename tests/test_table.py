#!/usr/bin/env python3
"""
Tests for table sessions and iteration, against the in-memory fake libiptc
"""

import errno
import threading

import pytest

from fakes import FakeBinding, build_entry
from xtcrelay.cursor import iter_chains, iter_rules, snapshot_table
from xtcrelay.errors import (
    HandleFreedError, InvalidChainLabel, InvalidReturnError, NativeCallError,
    RelayTimeout, StaleEntryError, StaleLibraryError,
)
from xtcrelay.relay import Outcome, Relay
from xtcrelay.rule import Counters
from xtcrelay.table import ACCEPT, ChainLabel, RuleEntry, TableHandle, TableState


@pytest.fixture
def relay():
    with Relay() as r:
        yield r


@pytest.fixture
def binding():
    return FakeBinding('ipv4')


@pytest.fixture
def table(relay, binding):
    handle = TableHandle.open(relay, binding, 'filter')
    yield handle
    handle.free()


# ============================================================================
# Chain labels
# ============================================================================

class TestChainLabel:

    def test_valid(self):
        label = ChainLabel("MY-CHAIN_1")
        assert label == "MY-CHAIN_1"
        assert isinstance(label, str)

    def test_standard_targets(self):
        assert ACCEPT.is_standard_target
        assert not ChainLabel("LOGDROP").is_standard_target

    @pytest.mark.parametrize("value", ["", "has space", "tab\there", "x" * 32, "naïve", None, 5])
    def test_invalid(self, value):
        with pytest.raises(InvalidChainLabel):
            ChainLabel(value)

    def test_invalid_is_value_error(self):
        with pytest.raises(ValueError):
            ChainLabel("")

    def test_max_length(self):
        assert len(ChainLabel("x" * 31)) == 31


# ============================================================================
# Session lifecycle
# ============================================================================

class TestSession:

    def test_open_unknown_table(self, relay, binding):
        with pytest.raises(NativeCallError) as exc_info:
            TableHandle.open(relay, binding, 'mangle')
        assert exc_info.value.errno == errno.ENOENT
        assert exc_info.value.operation == "iptc_init"

    def test_open_failure_without_errno(self, relay, binding):
        binding.fail_next['init'] = 0
        with pytest.raises(StaleLibraryError):
            TableHandle.open(relay, binding, 'filter')

    def test_free_twice_is_noop(self, relay, binding):
        handle = TableHandle.open(relay, binding, 'filter')
        handle.free()
        handle.free()
        assert handle.state is TableState.FREED
        assert binding.call_names().count("free") == 1

    def test_use_after_free(self, relay, binding):
        handle = TableHandle.open(relay, binding, 'filter')
        handle.free()
        with pytest.raises(HandleFreedError):
            handle.is_chain("INPUT")
        with pytest.raises(HandleFreedError):
            handle.first_chain()

    def test_context_manager_frees(self, relay, binding):
        with TableHandle.open(relay, binding, 'filter') as handle:
            assert handle.state is TableState.OPEN
        assert handle.state is TableState.FREED
        assert binding.sessions[0].freed

    def test_relay_stop_frees_open_handles(self, binding):
        relay = Relay().start()
        handle = TableHandle.open(relay, binding, 'filter')
        relay.stop()
        assert handle.state is TableState.FREED
        assert binding.sessions[0].freed
        # the usual nesting order ends with the handle's own free()
        handle.free()

    def test_nested_with_relay_exits_first(self, binding):
        relay = Relay().start()
        with TableHandle.open(relay, binding, 'filter') as handle:
            relay.stop()
        assert handle.freed
        assert binding.call_names().count("free") == 1

    def test_open_timeout_frees_session(self, binding):
        release = threading.Event()

        def slow_init(name):
            if name == "init":
                release.wait(5)

        binding.hook = slow_init
        with Relay(submit_timeout=0.05) as relay:
            with pytest.raises(RelayTimeout) as exc_info:
                TableHandle.open(relay, binding, 'filter')
            assert exc_info.value.started
            release.set()
            # queued behind the abandoned init, so it runs after the undo
            assert relay.submit(lambda: Outcome(True, 1), "barrier", str) == 1
        assert len(binding.sessions) == 1
        assert binding.sessions[0].freed

    def test_commit(self, table, binding):
        table.commit()
        assert table.state is TableState.COMMITTED
        assert binding.sessions[0].commits == 1

    def test_commit_failure(self, table, binding):
        binding.fail_next['commit'] = errno.EPERM
        with pytest.raises(NativeCallError) as exc_info:
            table.commit()
        assert exc_info.value.errno == errno.EPERM
        assert table.state is TableState.OPEN

    def test_commit_impossible_return(self, table, binding):
        binding.tristate_override['commit'] = 3
        with pytest.raises(InvalidReturnError):
            table.commit()

    def test_native_calls_on_relay_thread(self, table, binding, relay):
        list(table.chains())
        for entry in table.rules("INPUT"):
            table.decode(entry)
        assert binding.call_threads() == {relay.thread_ident}

    def test_shared_between_threads(self, table):
        results = []

        def reader():
            results.append(table.is_builtin("FORWARD"))

        threads = [threading.Thread(target=reader) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        assert results == [True] * 8

    def test_repr(self, table):
        assert "filter" in repr(table)
        assert table.family == 'ipv4'


# ============================================================================
# Chains
# ============================================================================

class TestChains:

    def test_chain_order(self, table):
        assert list(table.chains()) == ["INPUT", "FORWARD", "OUTPUT"]

    def test_first_next_then_none(self, table):
        assert table.first_chain() == "INPUT"
        assert table.next_chain() == "FORWARD"
        assert table.next_chain() == "OUTPUT"
        assert table.next_chain() is None

    def test_chain_labels_returned(self, table):
        assert all(isinstance(c, ChainLabel) for c in table.chains())

    def test_end_distinguished_from_error(self, table, binding):
        table.first_chain()
        binding.fail_next['next_chain'] = errno.EINVAL
        with pytest.raises(NativeCallError):
            table.next_chain()

    def test_next_before_first(self, table):
        with pytest.raises(StaleEntryError):
            table.next_chain()

    def test_iteration_invalidated_by_mutation(self, table):
        chains = iter_chains(table)
        assert next(chains) == "INPUT"
        table.create_chain("NEW")
        with pytest.raises(StaleEntryError):
            next(chains)

    def test_iteration_invalidated_by_restart(self, table):
        first = iter_chains(table)
        next(first)
        second = iter_chains(table)
        next(second)
        with pytest.raises(StaleEntryError):
            next(first)
        assert next(second) == "FORWARD"

    def test_is_chain_and_builtin(self, table):
        assert table.is_chain("INPUT")
        assert not table.is_chain("NOPE")
        assert table.is_builtin("OUTPUT")
        table.create_chain("USER")
        assert table.is_chain("USER")
        assert not table.is_builtin("USER")

    def test_is_chain_impossible_return(self, table, binding):
        binding.tristate_override['is_chain'] = -1
        with pytest.raises(InvalidReturnError):
            table.is_chain("INPUT")

    def test_invalid_label_never_relayed(self, table, binding):
        before = len(binding.calls)
        with pytest.raises(InvalidChainLabel):
            table.is_chain("bad name")
        assert len(binding.calls) == before

    def test_policy(self, table):
        assert table.get_policy("FORWARD") == ("DROP", Counters(0, 0))
        table.set_policy("FORWARD", "ACCEPT", Counters(5, 500))
        assert table.get_policy("FORWARD") == ("ACCEPT", Counters(5, 500))

    def test_user_chain_has_no_policy(self, table):
        table.create_chain("USER")
        assert table.get_policy("USER") == (None, Counters())

    def test_policy_unknown_chain(self, table):
        with pytest.raises(NativeCallError) as exc_info:
            table.get_policy("MISSING")
        assert exc_info.value.errno == errno.ENOENT

    def test_create_existing_chain(self, table):
        with pytest.raises(NativeCallError) as exc_info:
            table.create_chain("INPUT")
        assert exc_info.value.errno == errno.EEXIST
        assert exc_info.value.operation == "iptc_create_chain"

    def test_rename_and_delete_chain(self, table):
        table.create_chain("OLD")
        table.rename_chain("OLD", "NEW")
        assert not table.is_chain("OLD")
        assert list(table.chains())[-1] == "NEW"
        table.delete_chain("NEW")
        assert list(table.chains()) == ["INPUT", "FORWARD", "OUTPUT"]

    def test_references(self, table):
        table.create_chain("LOGDROP")
        assert table.get_references("LOGDROP") == 0
        table.append_entry("INPUT", table.entry_from_bytes(build_entry(target="LOGDROP")))
        assert table.get_references("LOGDROP") == 1


# ============================================================================
# Rules
# ============================================================================

class TestRules:

    def test_iterate_rules(self, table):
        targets = [table.get_target(e) for e in table.rules("INPUT")]
        assert targets == ["ACCEPT", "DROP"]

    def test_empty_chain(self, table):
        entry = table.first_rule("FORWARD")
        assert entry.is_empty
        assert not entry
        assert list(iter_rules(table, "FORWARD")) == []

    def test_first_rule_unknown_chain(self, table):
        with pytest.raises(NativeCallError):
            table.first_rule("MISSING")

    def test_target_absent(self, table, binding):
        entry = table.first_rule("INPUT")
        binding.fail_next['get_target'] = 0
        assert table.get_target(entry) == ""

    def test_target_error(self, table, binding):
        entry = table.first_rule("INPUT")
        binding.fail_next['get_target'] = errno.EINVAL
        with pytest.raises(NativeCallError):
            table.get_target(entry)

    def test_entry_stale_after_mutation(self, table):
        entry = table.first_rule("INPUT")
        table.flush_entries("OUTPUT")
        with pytest.raises(StaleEntryError):
            table.next_rule(entry)
        with pytest.raises(StaleEntryError):
            table.decode(entry)

    def test_rule_iteration_stale_after_delete(self, table):
        rules = table.rules("INPUT")
        next(rules)
        table.delete_num_entry("INPUT", 2)
        with pytest.raises(StaleEntryError):
            next(rules)

    def test_append_iterated_entry(self, table):
        entry = table.first_rule("INPUT")
        table.append_entry("FORWARD", entry)
        forward = [table.decode(e) for e in table.rules("FORWARD")]
        assert [str(r.src) for r in forward] == ["192.0.2.0/24"]
        with pytest.raises(StaleEntryError):
            table.decode(entry)

    def test_insert_iterated_entry(self, table):
        table.insert_entry("FORWARD", table.first_rule("INPUT"), 1)
        assert table.check_entry("FORWARD", table.first_rule("INPUT")) is True

    def test_delete_iterated_entry(self, table):
        assert table.delete_entry("OUTPUT", table.first_rule("OUTPUT")) is True
        assert list(table.rules("OUTPUT")) == []

    def test_failed_mutation_keeps_entries_valid(self, table):
        chains = iter_chains(table)
        assert next(chains) == "INPUT"
        entry = table.first_rule("INPUT")
        generation = table.generation
        with pytest.raises(NativeCallError):
            table.create_chain("INPUT")
        with pytest.raises(NativeCallError):
            table.append_entry("MISSING", entry)
        assert table.generation == generation
        assert table.decode(entry).target == "ACCEPT"
        assert next(chains) == "FORWARD"

    def test_delete_without_match_keeps_entries_valid(self, table):
        entry = table.first_rule("INPUT")
        other = table.entry_from_bytes(build_entry(src="203.0.113.9", smsk="255.255.255.255"))
        assert table.delete_entry("OUTPUT", other) is False
        assert table.next_rule(entry)

    def test_entry_from_other_handle(self, relay, binding, table):
        with TableHandle.open(relay, binding, 'filter') as other:
            entry = other.first_rule("INPUT")
            with pytest.raises(StaleEntryError):
                table.get_target(entry)

    def test_entry_stale_after_free(self, relay, binding):
        handle = TableHandle.open(relay, binding, 'filter')
        entry = handle.first_rule("INPUT")
        handle.free()
        with pytest.raises(HandleFreedError):
            handle.next_rule(entry)

    def test_empty_entry_rejected(self, table):
        with pytest.raises(ValueError):
            table.get_target(RuleEntry())

    def test_counter_operations_keep_entries_valid(self, table):
        entry = table.first_rule("INPUT")
        table.zero_entries("INPUT")
        table.set_counter("INPUT", 1, Counters(1, 2))
        assert table.get_target(entry) == "ACCEPT"

    def test_insert_is_one_based(self, table):
        table.insert_entry("INPUT", table.entry_from_bytes(build_entry(target="RETURN")), 1)
        table.insert_entry("INPUT", table.entry_from_bytes(build_entry(target="QUEUE")), 4)
        assert [table.get_target(e) for e in table.rules("INPUT")] == ["RETURN", "ACCEPT", "DROP", "QUEUE"]

    def test_insert_past_end(self, table):
        with pytest.raises(NativeCallError) as exc_info:
            table.insert_entry("FORWARD", table.entry_from_bytes(build_entry()), 2)
        assert exc_info.value.errno == errno.E2BIG

    @pytest.mark.parametrize("method", ["delete_num_entry", "read_counter", "zero_counter"])
    def test_rule_number_zero_rejected(self, table, method):
        with pytest.raises(ValueError):
            getattr(table, method)("INPUT", 0)

    def test_append_and_check(self, table):
        data = build_entry(src="198.51.100.7", smsk="255.255.255.255", target="DROP")
        entry = table.entry_from_bytes(data)
        assert table.check_entry("FORWARD", entry) is False
        table.append_entry("FORWARD", entry)
        assert table.check_entry("FORWARD", entry) is True

    def test_check_entry_unknown_chain_is_error(self, table):
        entry = table.entry_from_bytes(build_entry())
        with pytest.raises(NativeCallError) as exc_info:
            table.check_entry("MISSING", entry)
        assert exc_info.value.errno == errno.ENOENT

    def test_delete_entry(self, table):
        entry = table.entry_from_bytes(build_entry(outiface="lo", target="ACCEPT"))
        assert table.delete_entry("OUTPUT", entry) is True
        assert table.delete_entry("OUTPUT", entry) is False
        assert list(table.rules("OUTPUT")) == []

    def test_matchmask_ignores_masked_bytes(self, table):
        # counters differ from the stored rule; a zero mask matches anyway
        entry = table.entry_from_bytes(build_entry(outiface="lo", target="ACCEPT", packets=99))
        size = table.binding.entry_size(entry.pointer)
        assert table.check_entry("OUTPUT", entry, b"\x00" * size) is True

    def test_short_matchmask(self, table):
        entry = table.entry_from_bytes(build_entry())
        with pytest.raises(ValueError):
            table.check_entry("OUTPUT", entry, b"\xff")

    def test_short_entry_bytes(self, table):
        with pytest.raises(ValueError):
            table.entry_from_bytes(b"\x00" * 8)

    def test_delete_num_entry(self, table):
        table.delete_num_entry("INPUT", 1)
        assert [table.get_target(e) for e in table.rules("INPUT")] == ["DROP"]
        with pytest.raises(NativeCallError):
            table.delete_num_entry("INPUT", 5)

    def test_counters(self, table):
        assert table.read_counter("INPUT", 1) == Counters(10, 840)
        table.set_counter("INPUT", 2, Counters(3, 4))
        assert table.read_counter("INPUT", 2) == Counters(3, 4)
        table.zero_counter("INPUT", 1)
        assert table.read_counter("INPUT", 1) == Counters(0, 0)
        with pytest.raises(NativeCallError):
            table.read_counter("INPUT", 9)

    def test_zero_entries(self, table):
        table.zero_entries("INPUT")
        assert table.read_counter("INPUT", 1) == Counters(0, 0)

    def test_flush(self, table):
        table.flush_entries("INPUT")
        assert table.first_rule("INPUT").is_empty

    def test_dump_entries(self, table, capsys):
        table.dump_entries()
        assert "Chain INPUT: 2 rules" in capsys.readouterr().out


# ============================================================================
# Whole-table snapshot
# ============================================================================

class TestSnapshot:

    def test_snapshot_table(self, table):
        table.create_chain("USER")
        data = snapshot_table(table)
        assert [c['chain'] for c in data] == ["INPUT", "FORWARD", "OUTPUT", "USER"]
        assert data[0]['policy'] == "ACCEPT"
        assert data[0]['packets'] == 0
        assert len(data[0]['rules']) == 2
        assert data[0]['rules'][0]['target'] == "ACCEPT"
        assert data[3]['builtin'] is False
        assert data[3]['references'] == 0
        assert data[3]['policy'] is None
