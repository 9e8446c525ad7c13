#!/usr/bin/env python3
"""
xtcrelay-dump - read an iptables / ip6tables table through xtcrelay

Takes the xtables lock, opens the table, and prints every chain with its
policy, counters and decoded rules.

Requirements:
    - Python 3.8+
    - cffi>=1.0.0
    - libip4tc / libip6tc
    - Root/sudo access (CAP_NET_ADMIN)

Usage:
    sudo xtcrelay-dump filter                # JSON
    sudo xtcrelay-dump -6 --summary filter   # one line per rule
    sudo xtcrelay-dump --chain INPUT filter  # one chain only
    sudo xtcrelay-dump --raw nat             # libiptc's own dump
    sudo xtcrelay-dump --wait 5 filter       # wait up to 5s for the lock
"""

import argparse
import json
import sys
from typing import Any, Dict, Optional

from . import __version__
from .binding import load_binding
from .config import load_config
from .cursor import decoded_rules, snapshot_table
from .errors import ConfigError, LockUnavailableError, XtcError
from .lock import XtablesLock
from .log import configure_logging
from .native import lock_primitive_from_config
from .relay import Relay
from .table import TableHandle

# exit status used by iptables when the lock cannot be taken
EXIT_LOCK_UNAVAILABLE = 4


def capture_table(relay, binding, table: str, chain: Optional[str] = None) -> Dict[str, Any]:
    """
    Read `table` (or a single chain of it) into a JSON-ready dict.
    """
    with TableHandle.open(relay, binding, table) as handle:
        if chain is None:
            chains = snapshot_table(handle)
        else:
            if not handle.is_chain(chain):
                raise XtcError(f"{table}: no chain named {chain!r}")
            chains = [{
                'chain': chain,
                'builtin': handle.is_builtin(chain),
                'rules': [rule.to_dict() for rule in decoded_rules(handle, chain)],
            }]

    return {
        'table': table,
        'family': binding.family,
        'chains': chains,
        '_metadata': {
            'version': __version__,
            'python_version': f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        },
    }


def print_summary(relay, binding, table: str, chain: Optional[str] = None) -> None:
    with TableHandle.open(relay, binding, table) as handle:
        chains = [chain] if chain is not None else list(handle.chains())
        for name in chains:
            if handle.is_builtin(name):
                policy, counters = handle.get_policy(name)
                print(f"Chain {name} (policy {policy}: {counters.packets} packets, {counters.bytes} bytes)")
            else:
                print(f"Chain {name} ({handle.get_references(name)} references)")
            for num, rule in enumerate(decoded_rules(handle, name), 1):
                print(f"  {num:3d}  {rule}")


def print_raw(relay, binding, table: str) -> None:
    with TableHandle.open(relay, binding, table) as handle:
        sys.stdout.flush()
        handle.dump_entries()


def main() -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(
        prog='xtcrelay-dump',
        description='Dump an iptables/ip6tables table with decoded rules',
        epilog='Note: Run with sudo/root; the xtables lock is held while reading',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('--version', '-v', action='version',
                        version=f'xtcrelay-dump {__version__}')

    parser.add_argument('table', nargs='?', default='filter',
                        help='Table name (default: filter)')

    parser.add_argument('-6', '--ipv6', dest='family', action='store_const',
                        const='ipv6', default='ipv4',
                        help='Use ip6tables tables')

    parser.add_argument('--chain', '-C', metavar='NAME',
                        help='Only dump this chain')

    output = parser.add_mutually_exclusive_group()
    output.add_argument('--summary', '-s', action='store_true',
                        help='One line per rule instead of JSON')
    output.add_argument('--raw', action='store_true',
                        help="libiptc's own dump of the table")

    parser.add_argument('--compact', '-c', action='store_true',
                        help='Compact JSON output (default: pretty-print)')

    parser.add_argument('--wait', '-w', metavar='SECONDS', nargs='?', type=int,
                        const=0, default=None,
                        help='Wait for the xtables lock (forever, or at most SECONDS)')

    parser.add_argument('--config', metavar='FILE',
                        help='YAML configuration file')

    parser.add_argument('--verbose', action='store_true',
                        help='Log relayed calls to stderr')

    args = parser.parse_args()

    if args.raw and args.chain:
        parser.error("--raw dumps the whole table and cannot be combined with --chain")
    if args.wait is not None and args.wait < 0:
        parser.error("--wait takes a non-negative number of seconds")

    try:
        config = load_config(args.config)
        configure_logging("DEBUG" if args.verbose else config.log_level, config.log_file)
    except (ConfigError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        binding = load_binding(args.family, config)
        with Relay.from_config(config) as relay:
            lock = XtablesLock(relay, lock_primitive_from_config(config))
            with lock.held(wait=args.wait is not None, timeout=args.wait or 0):
                if args.raw:
                    print_raw(relay, binding, args.table)
                elif args.summary:
                    print_summary(relay, binding, args.table, args.chain)
                else:
                    snapshot = capture_table(relay, binding, args.table, args.chain)
                    if not args.compact:
                        print(json.dumps(snapshot, indent=2, sort_keys=False))
                    else:
                        print(json.dumps(snapshot, separators=(',', ':')))
        return 0

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130
    except LockUnavailableError as e:
        print(f"Another app is currently holding the xtables lock: {e}", file=sys.stderr)
        if args.wait is None:
            print("Perhaps you want to use the --wait option?", file=sys.stderr)
        return EXIT_LOCK_UNAVAILABLE
    except (XtcError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
