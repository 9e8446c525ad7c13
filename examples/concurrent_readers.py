#!/usr/bin/env python3
"""
Example: several threads sharing one Relay

Each thread opens its own session on a different table. All native calls
still run one at a time on the relay thread, so errors never leak from one
thread's call into another's.
"""

import threading

from xtcrelay import Relay, TableHandle, load_binding, NativeCallError


def count_rules(relay, binding, table_name, results):
    try:
        with TableHandle.open(relay, binding, table_name) as table:
            results[table_name] = {chain: sum(1 for _ in table.rules(chain)) for chain in table.chains()}
    except NativeCallError as e:
        # e.g. the table's kernel module is not loaded
        results[table_name] = str(e)


def main():
    binding = load_binding('ipv4')
    results = {}
    with Relay() as relay:
        threads = [
            threading.Thread(target=count_rules, args=(relay, binding, name, results))
            for name in ('filter', 'nat', 'mangle', 'raw')
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        print(f"relay served {relay.calls_served} native calls")

    for name, chains in results.items():
        print(f"{name}: {chains}")


if __name__ == '__main__':
    main()
