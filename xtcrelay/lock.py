"""
The xtables lock: the advisory lock iptables, ip6tables, firewalld and
friends take before touching a rule table.

XtablesLock relays acquire/release through the same Relay as the table
operations. "Held by us" is tracked here as well as in the native helper,
so misuse is caught before anything reaches the lock file.
"""

import errno as errno_codes
import logging
from contextlib import contextmanager

from .errors import InvalidReturnError, LockStateError, LockUnavailableError
from .relay import Outcome, default_error_factory

logger = logging.getLogger(__name__)

# errno values meaning "someone else has it", as opposed to e.g. EACCES
_UNAVAILABLE = frozenset([errno_codes.EWOULDBLOCK, errno_codes.EAGAIN, errno_codes.ETIMEDOUT])


def lock_error_factory(operation: str, errno: int, message: str) -> Exception:
    if errno in _UNAVAILABLE:
        return LockUnavailableError(operation, errno, message)
    if errno in (errno_codes.EALREADY, errno_codes.ENOLCK):
        # the helper's own view of the lock disagrees with ours
        return LockStateError(f"{operation}: {message}")
    return default_error_factory(operation, errno, message)


def _lock_outcome(rc: int, operation: str) -> Outcome:
    """The helper returns 0 on success and 1 on failure"""
    if rc == 0:
        return Outcome(True, True)
    if rc == 1:
        return Outcome(False, False)
    raise InvalidReturnError(operation, rc)


class XtablesLock:
    """
    Process-wide xtables lock.

    Args:
        relay: a started Relay
        primitive: object with acquire(wait, timeout), release(),
            describe_error(errno); defaults to NativeLockPrimitive built
            from `config`
        config: RelayConfig used when `primitive` is not given
    """

    def __init__(self, relay, primitive=None, config=None):
        if primitive is None:
            from .config import load_config
            from .native import lock_primitive_from_config
            primitive = lock_primitive_from_config(config or load_config())
        self._relay = relay
        self._primitive = primitive
        self._held = False

    @property
    def is_held(self) -> bool:
        return self._held

    def acquire(self, wait: bool = False, timeout: int = 0) -> bool:
        """
        Take the lock.

        Args:
            wait: keep retrying while another process holds it
            timeout: give up after this many seconds; 0 with wait=True waits
                forever

        Raises:
            LockStateError: already held by this process
            LockUnavailableError: busy (wait=False) or timed out
            NativeCallError: the lock file could not be opened
        """
        if timeout < 0:
            raise ValueError(f"timeout must be >= 0, got {timeout}")

        def operation() -> Outcome:
            if self._held:
                raise LockStateError("xtables lock is already held by this process")
            outcome = _lock_outcome(self._primitive.acquire(wait, timeout), "xtables_lock_acquire")
            if outcome.ok:
                self._held = True
            return outcome

        # bounded by the lock's own timeout, never by the relay's
        self._relay.submit(
            operation, "xtables_lock_acquire", self._primitive.describe_error,
            timeout=None, error_factory=lock_error_factory,
        )
        logger.info("xtables lock acquired")
        return True

    def release(self) -> bool:
        """
        Raises:
            LockStateError: not held by this process
        """
        def operation() -> Outcome:
            if not self._held:
                raise LockStateError("xtables lock is not held by this process")
            outcome = _lock_outcome(self._primitive.release(), "xtables_lock_release")
            # the descriptor is gone even when close() reported an error
            self._held = False
            return outcome

        self._relay.submit(
            operation, "xtables_lock_release", self._primitive.describe_error,
            timeout=None, error_factory=lock_error_factory,
        )
        logger.info("xtables lock released")
        return True

    @contextmanager
    def held(self, wait: bool = False, timeout: int = 0):
        """
        with lock.held(wait=True, timeout=5):
            ... table operations ...
        """
        self.acquire(wait, timeout)
        try:
            yield self
        finally:
            self.release()
