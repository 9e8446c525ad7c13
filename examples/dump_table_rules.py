#!/usr/bin/env python3
"""
Example: list every chain and rule of a table

Opens the table through a Relay, holds the xtables lock while reading, and
prints chains with their policies followed by the decoded rules.

Usage:
    sudo python3 dump_table_rules.py [table] [ipv4|ipv6]
"""

import sys

from xtcrelay import Relay, TableHandle, XtablesLock, load_binding, XtcError


def dump(table_name: str, family: str) -> None:
    with Relay() as relay:
        lock = XtablesLock(relay)
        with lock.held(wait=True, timeout=5):
            with TableHandle.open(relay, load_binding(family), table_name) as table:
                for chain in table.chains():
                    if table.is_builtin(chain):
                        policy, counters = table.get_policy(chain)
                        print(f"Chain {chain} (policy {policy}, {counters.packets} packets)")
                    else:
                        print(f"Chain {chain} ({table.get_references(chain)} references)")

                    for num, entry in enumerate(table.rules(chain), 1):
                        print(f"  {num:3d}  {table.decode(entry)}")


def main() -> int:
    table_name = sys.argv[1] if len(sys.argv) > 1 else 'filter'
    family = sys.argv[2] if len(sys.argv) > 2 else 'ipv4'
    try:
        dump(table_name, family)
    except XtcError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
