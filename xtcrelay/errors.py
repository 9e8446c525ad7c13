"""
Exception hierarchy for xtcrelay.

Four kinds of outcome can come back from a relayed native call:

- NativeCallError: the call failed and errno described why.
- StaleLibraryError: the call failed but errno was 0. libiptc documents
  this as a version mismatch between the library and the kernel/headers.
- MisuseError and subclasses: a programming invariant was broken (double
  lock, freed handle, impossible return value). These are not retryable.
- End of iteration is not an exception at all (None / empty RuleEntry).
"""

from typing import Optional


class XtcError(Exception):
    """Base class for every error raised by xtcrelay"""
    pass


class NativeCallError(XtcError):
    """A native call reported failure and errno described it"""

    def __init__(self, operation: str, errno: int, message: str):
        self.operation = operation
        self.errno = errno
        self.message = message
        super().__init__(f"{operation}: {message}")


class LockUnavailableError(NativeCallError):
    """The xtables lock is held by someone else or the wait timed out"""
    pass


class StaleLibraryError(XtcError):
    """A native call failed without setting errno (library version mismatch)"""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(
            f"{operation}: failed without an error code; "
            f"libiptc version probably does not match the running kernel"
        )


class RelayError(XtcError):
    """The relay could not deliver a call"""
    pass


class RelayClosedError(RelayError):
    pass


class RelayTimeout(RelayError):
    """The caller stopped waiting for a relayed call"""

    def __init__(self, operation: str, timeout: float, started: bool):
        self.operation = operation
        self.timeout = timeout
        self.started = started
        state = "while running" if started else "while queued"
        super().__init__(f"{operation}: timed out after {timeout}s {state}")


class MisuseError(XtcError):
    """A programming invariant was violated; retrying will not help"""
    pass


class RelayMisuseError(MisuseError):
    pass


class HandleFreedError(MisuseError):
    def __init__(self, table: Optional[str] = None):
        self.table = table
        super().__init__(f"table handle {table!r} has already been freed")


class StaleEntryError(MisuseError):
    """A rule entry or cursor outlived a mutation of its table handle"""
    pass


class LockStateError(MisuseError):
    pass


class InvalidReturnError(MisuseError):
    """A native primitive returned a value outside its documented range"""

    def __init__(self, operation: str, value):
        self.operation = operation
        self.value = value
        super().__init__(f"{operation}: invalid return value {value!r}")


class InvalidChainLabel(XtcError, ValueError):
    pass


class ConfigError(XtcError):
    pass
