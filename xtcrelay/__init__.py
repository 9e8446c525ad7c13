"""
xtcrelay - thread-safe access to libiptc / libip6tc from Python

libiptc is not reentrant, keeps global state and reports errors through
errno. xtcrelay runs every native call on one dedicated relay thread, in
submission order, and reads errno right after each call, so any number of
Python threads can share rule tables and the xtables lock safely.

Modules:
    relay: the serialized call relay
    table: table sessions (TableHandle), chain labels, rule entries
    cursor: chain and rule iteration
    rule: decoding of rule entries into Rule values
    lock: the xtables advisory lock
    binding / native: cffi declarations and loading of the libraries
    config / log: configuration file and logging setup

Example:
    >>> from xtcrelay import Relay, TableHandle, load_binding
    >>> with Relay() as relay:
    ...     with TableHandle.open(relay, load_binding('ipv4'), 'filter') as table:
    ...         chains = list(table.chains())
"""

__version__ = "1.0.0"
__author__ = "Harry Coin"
__email__ = "hcoin@quietfountain.com"
__license__ = "MIT"

from .errors import (
    XtcError, NativeCallError, LockUnavailableError, StaleLibraryError,
    RelayError, RelayClosedError, RelayTimeout,
    MisuseError, RelayMisuseError, HandleFreedError, StaleEntryError,
    LockStateError, InvalidReturnError, InvalidChainLabel, ConfigError,
)
from .relay import Relay, Outcome, succeeded, failed, check_tristate
from .rule import Rule, AddressMask, InvertFlags, Counters, decode_entry
from .table import (
    TableHandle, TableState, RuleEntry, ChainLabel,
    ACCEPT, DROP, QUEUE, RETURN,
)
from .cursor import iter_chains, iter_rules, decoded_rules, snapshot_table
from .lock import XtablesLock
from .binding import IptcBinding, load_binding
from .config import RelayConfig, load_config
from .log import configure_logging

__all__ = [
    "Relay", "Outcome", "succeeded", "failed", "check_tristate",
    "TableHandle", "TableState", "RuleEntry", "ChainLabel",
    "ACCEPT", "DROP", "QUEUE", "RETURN",
    "iter_chains", "iter_rules", "decoded_rules", "snapshot_table",
    "Rule", "AddressMask", "InvertFlags", "Counters", "decode_entry",
    "XtablesLock",
    "IptcBinding", "load_binding",
    "RelayConfig", "load_config",
    "configure_logging",
    "XtcError", "NativeCallError", "LockUnavailableError", "StaleLibraryError",
    "RelayError", "RelayClosedError", "RelayTimeout",
    "MisuseError", "RelayMisuseError", "HandleFreedError", "StaleEntryError",
    "LockStateError", "InvalidReturnError", "InvalidChainLabel", "ConfigError",
    "__version__",
]
