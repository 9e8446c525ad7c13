"""
Serialized native-call relay.

libiptc and the xtables lock keep global state and report errors through
errno, so they are only well defined when driven from one thread, one call
at a time. A Relay owns a single worker thread (Python threads are OS
threads, so the worker never migrates) and a FIFO queue of CallRequests.
For each request the worker resets errno, runs the operation, reads errno
right away if the operation failed, and resolves the request's Future
before taking the next one.

Usage:
    with Relay() as relay:
        handle = TableHandle.open(relay, load_binding('ipv4'), 'filter')
"""

import logging
import queue
import threading
import weakref
from concurrent.futures import CancelledError, Future, TimeoutError as FutureTimeout
from typing import Any, Callable, NamedTuple, Optional

from .errors import (
    InvalidReturnError, NativeCallError, RelayClosedError, RelayMisuseError,
    RelayTimeout, StaleLibraryError,
)

logger = logging.getLogger(__name__)


class Outcome(NamedTuple):
    """Result of a relayed operation: ok=False means 'go read errno'"""
    ok: bool
    value: Any = None


def succeeded(value: Any = None) -> Outcome:
    return Outcome(True, value)


def failed(value: Any = None) -> Outcome:
    return Outcome(False, value)


def check_tristate(rc: int, operation: str) -> bool:
    """
    Map a libiptc int result: 1 -> True, 0 -> False, anything else is an
    invariant violation.
    """
    if rc == 1:
        return True
    if rc == 0:
        return False
    raise InvalidReturnError(operation, rc)


def default_error_factory(operation: str, errno: int, message: str) -> Exception:
    if not errno or not message:
        return StaleLibraryError(operation)
    return NativeCallError(operation, errno, message)


class CallRequest:
    __slots__ = ('operation', 'name', 'describe_error', 'error_factory', 'undo',
                 'future', 'lock', 'abandoned')

    def __init__(self, operation: Callable[[], Outcome], name: str,
                 describe_error: Callable[[int], str],
                 error_factory: Callable[[str, int, str], Exception] = default_error_factory,
                 undo: Optional[Callable[[Any], None]] = None):
        self.operation = operation
        self.name = name
        self.describe_error = describe_error
        self.error_factory = error_factory
        self.undo = undo
        self.future: Future = Future()
        # hand-over between a caller giving up and the worker finishing
        self.lock = threading.Lock()
        self.abandoned = False


_STOP = object()

# submit() timeout meaning "use the relay's submit_timeout"
DEFAULT_TIMEOUT = object()


class Relay:
    """
    One worker thread executing native calls strictly in submission order.

    Args:
        probe: errno reader with reset() and last_errno(); defaults to the
            cffi errno of the worker thread
        thread_name: name given to the worker thread
        submit_timeout: default timeout for submit(), None waits forever
    """

    def __init__(self, probe=None, thread_name: str = "xtc-relay",
                 submit_timeout: Optional[float] = None):
        if probe is None:
            from .native import ErrnoProbe
            probe = ErrnoProbe()
        self.probe = probe
        self.thread_name = thread_name
        self.submit_timeout = submit_timeout

        self._queue: "queue.Queue" = queue.Queue()
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self._resources: "weakref.WeakSet" = weakref.WeakSet()
        self.calls_served = 0

    @classmethod
    def from_config(cls, config, probe=None) -> "Relay":
        return cls(probe=probe, thread_name=config.thread_name,
                   submit_timeout=config.submit_timeout)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):  # @UnusedVariable
        self.stop()
        return False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._closed

    @property
    def thread_ident(self) -> Optional[int]:
        return self._thread.ident if self._thread is not None else None

    @property
    def native_id(self) -> Optional[int]:
        """OS thread id of the worker"""
        return getattr(self._thread, 'native_id', None)

    def track(self, resource) -> None:
        """
        Have stop() call resource.free() if it is still open then.
        Only a weak reference is kept.
        """
        self._resources.add(resource)

    def start(self) -> "Relay":
        with self._state_lock:
            if self._closed:
                raise RelayClosedError("relay has been stopped and cannot be restarted")
            if self._thread is not None:
                return self
            self._thread = threading.Thread(target=self._run, name=self.thread_name, daemon=True)
            self._thread.start()
        logger.debug("relay %s started", self.thread_name)
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Free resources still registered with track(), then stop accepting
        requests; requests already queued are still served before the
        worker exits.
        """
        if self.running and threading.get_ident() != self.thread_ident:
            for resource in list(self._resources):
                if not resource.freed:
                    logger.warning("%r still open when relay %s stopped, freeing it",
                                   resource, self.thread_name)
                    try:
                        resource.free()
                    except Exception:  # the relay still has to stop
                        logger.exception("freeing %r failed", resource)

        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
            if thread is not None:
                self._queue.put(_STOP)

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.debug("relay %s stopped after %d calls", self.thread_name, self.calls_served)

    def submit(self, operation: Callable[[], Outcome], name: str,
               describe_error: Callable[[int], str],
               timeout: Any = DEFAULT_TIMEOUT,
               error_factory: Callable[[str, int, str], Exception] = default_error_factory,
               undo: Optional[Callable[[Any], None]] = None) -> Any:
        """
        Run `operation` on the worker thread and wait for its outcome.

        Args:
            timeout: seconds to wait; None waits forever; by default the
                relay's submit_timeout
            undo: called on the worker with the value of a successful
                outcome that arrives after the caller timed out

        Returns:
            The outcome's value when ok is True

        Raises:
            NativeCallError / StaleLibraryError: the operation failed
            RelayTimeout: the caller gave up waiting; the relay stays in sync
            RelayClosedError: the relay is not running
            RelayMisuseError: called from the worker thread itself
            Any exception raised by the operation itself
        """
        if threading.get_ident() == self.thread_ident:
            raise RelayMisuseError(f"{name}: relayed call issued from the relay thread")

        request = CallRequest(operation, name, describe_error, error_factory, undo)
        with self._state_lock:
            if self._closed or self._thread is None:
                raise RelayClosedError(f"{name}: relay is not running")
            self._queue.put(request)

        if timeout is DEFAULT_TIMEOUT:
            timeout = self.submit_timeout
        try:
            return request.future.result(timeout)
        except FutureTimeout:
            pass
        except CancelledError:
            raise RelayClosedError(f"{name}: relay stopped before the call ran") from None

        # still queued: the worker will skip it
        if request.future.cancel():
            raise RelayTimeout(name, timeout, False)
        with request.lock:
            finished = request.future.done()
            if not finished:
                request.abandoned = True
        if finished:
            return request.future.result()
        logger.warning("%s: caller timed out after %ss, result will be discarded", name, timeout)
        raise RelayTimeout(name, timeout, True)

    def _run(self) -> None:
        while True:
            request = self._queue.get()
            if request is _STOP:
                break
            if not request.future.set_running_or_notify_cancel():
                logger.debug("%s: abandoned while queued, skipped", request.name)
                continue
            self._serve(request)

        # nothing can be queued after _STOP, but be explicit about leftovers
        while True:
            try:
                request = self._queue.get_nowait()
            except queue.Empty:
                break
            if request is not _STOP:
                request.future.cancel()

    def _serve(self, request: CallRequest) -> None:
        error = None
        try:
            self.probe.reset()
            outcome = request.operation()
            if not isinstance(outcome, Outcome):
                raise InvalidReturnError(request.name, outcome)
            if not outcome.ok:
                errno = self.probe.last_errno()
                message = request.describe_error(errno) if errno else ""
                error = request.error_factory(request.name, errno, message)
        except Exception as e:  # delivered to the caller
            logger.debug("%s raised %r", request.name, e)
            error = e
            outcome = None

        self.calls_served += 1
        with request.lock:
            if error is None and request.abandoned and request.undo is not None:
                self._undo(request, outcome.value)
            if error is None:
                logger.debug("%s ok", request.name)
                request.future.set_result(outcome.value)
            else:
                logger.debug("%s failed: %s", request.name, error)
                request.future.set_exception(error)

    def _undo(self, request: CallRequest, value: Any) -> None:
        logger.warning("%s: completed after its caller gave up, undoing", request.name)
        try:
            self.probe.reset()
            request.undo(value)
        except Exception:  # no caller left to receive it
            logger.exception("%s: undo failed", request.name)
