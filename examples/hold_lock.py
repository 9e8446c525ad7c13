#!/usr/bin/env python3
"""
Example: hold the xtables lock for a few seconds

While this runs, `iptables -L` reports that another app is holding the
xtables lock (or waits, with --wait).
"""

import sys
import time

from xtcrelay import Relay, XtablesLock, LockUnavailableError, load_config


def main() -> int:
    seconds = float(sys.argv[1]) if len(sys.argv) > 1 else 5.0
    config = load_config()

    with Relay.from_config(config) as relay:
        lock = XtablesLock(relay, config=config)
        try:
            lock.acquire()
        except LockUnavailableError as e:
            print(f"lock busy: {e}")
            return 4

        print(f"holding {config.lock_file} for {seconds}s")
        try:
            time.sleep(seconds)
        finally:
            lock.release()
    print("released")
    return 0


if __name__ == '__main__':
    sys.exit(main())
