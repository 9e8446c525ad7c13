#!/usr/bin/env python3
"""
Example: walk one chain rule by rule with first_rule()/next_rule()

Usage:
    sudo python3 dump_chain.py [chain] [table]
"""

import sys

from xtcrelay import Relay, TableHandle, load_binding


def main() -> int:
    chain = sys.argv[1] if len(sys.argv) > 1 else 'INPUT'
    table_name = sys.argv[2] if len(sys.argv) > 2 else 'filter'

    with Relay() as relay, TableHandle.open(relay, load_binding('ipv4'), table_name) as table:
        if not table.is_chain(chain):
            print(f"{table_name} has no chain {chain}", file=sys.stderr)
            return 1

        entry = table.first_rule(chain)
        while entry:
            rule = table.decode(entry)
            print(f"{rule.src} -> {rule.dst}: {rule.target or '(no target)'}")
            entry = table.next_rule(entry)
    return 0


if __name__ == '__main__':
    sys.exit(main())
