"""
Iteration over chains and rules of a TableHandle.

Both generators drive the handle's first/next operations one relayed call
at a time. If the table is changed while a generator is suspended, the
next step raises StaleEntryError rather than walking freed memory.
"""

import logging
from typing import Iterator, List

from .rule import Rule

logger = logging.getLogger(__name__)


def iter_chains(handle) -> Iterator[str]:
    """
    Yield every chain name, built-in chains first in kernel hook order
    (e.g. INPUT, FORWARD, OUTPUT for 'filter'), then user chains.

    libiptc keeps a single chain cursor per handle: starting a second
    iteration invalidates the first one.
    """
    chain, cursor = handle._first_chain()
    while chain is not None:
        yield chain
        chain = handle.next_chain(cursor)


def iter_rules(handle, chain: str) -> Iterator:
    """Yield the RuleEntry objects of `chain` in rule order"""
    entry = handle.first_rule(chain)
    while not entry.is_empty:
        yield entry
        entry = handle.next_rule(entry)


def decoded_rules(handle, chain: str) -> Iterator[Rule]:
    for entry in iter_rules(handle, chain):
        yield handle.decode(entry)


def snapshot_table(handle) -> List[dict]:
    """
    Read the whole table into plain data:
    [{'chain', 'builtin', 'policy', 'packets', 'bytes', 'references', 'rules'}, ...]
    """
    chains = list(iter_chains(handle))
    result = []
    for chain in chains:
        builtin = handle.is_builtin(chain)
        policy, counters = handle.get_policy(chain) if builtin else (None, None)
        rules = [rule.to_dict() for rule in decoded_rules(handle, chain)]
        item = {
            'chain': str(chain),
            'builtin': builtin,
            'policy': policy,
            'rules': rules,
        }
        if builtin:
            item['packets'] = counters.packets
            item['bytes'] = counters.bytes
        else:
            item['references'] = handle.get_references(chain)
        result.append(item)
    logger.debug("read %d chains from table %r", len(result), handle.name)
    return result
