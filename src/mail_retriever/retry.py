# =============================================================================
# Retry Controller
# =============================================================================
# Owns the one live session of a retriever and runs units of protocol work
# against it with bounded retry.
#
# Failures are handled in two explicit steps:
#   1. describe_error() turns an exception into a plain ErrorDescription
#      (kind, message, origin).
#   2. classify() maps that description onto a FailureClass:
#        RECONNECT  - the connection is unusable: discard it, back off, retry
#        RETRY      - the response was bad but the connection may be fine:
#                     keep it, back off, retry
#        SERVER     - the server refused the command: raise immediately
#        FATAL      - anything else (including certificate failures): raise
#                     immediately
#
# The backoff before attempt n+1 is n * retry_delay seconds. A unit of work
# is re-run from its start after a failure, so every unit the engines hand
# over must be safe to repeat.
#
# Session lifetime is modeled as a lease: the outermost `async with
# controller.lease()` disconnects on exit, exactly once, whichever way the
# call ends.
# =============================================================================

import asyncio
import logging
import poplib
import ssl
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from aioimaplib import aioimaplib

from mail_retriever.errors import ErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Substring of ssl error messages for a failed trust chain
CERTIFICATE_FAILURE = "certificate verify failed"


class FailureClass(str, Enum):
    """How the controller reacts to a failure."""
    RECONNECT = "reconnect"
    RETRY = "retry"
    SERVER = "server"
    FATAL = "fatal"


@dataclass(frozen=True)
class ErrorDescription:
    """
    A structured description of a failure.

    Attributes:
        kind: The error category.
        message: The error message as raised.
        origin: Qualified name of the exception class.
    """
    kind: ErrorKind
    message: str
    origin: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message} ({self.origin})"


_RECONNECT_KINDS = frozenset({
    ErrorKind.CONNECTION_RESET,
    ErrorKind.CONNECTION_ABORTED,
    ErrorKind.BROKEN_PIPE,
    ErrorKind.TIMEOUT,
    ErrorKind.NOT_CONNECTED,
    ErrorKind.IO,
    ErrorKind.TLS,
    ErrorKind.BYE,
})


def _origin(exc: BaseException) -> str:
    cls = type(exc)
    return f"{cls.__module__}.{cls.__qualname__}"


def _error_kind(exc: BaseException) -> ErrorKind:
    # Order matters: SSLError and the socket errors are OSError subclasses
    if isinstance(exc, ssl.SSLError):
        return ErrorKind.TLS
    if isinstance(exc.__cause__, ssl.SSLError):
        return ErrorKind.TLS
    if isinstance(exc, ConnectionResetError):
        return ErrorKind.CONNECTION_RESET
    if isinstance(exc, ConnectionAbortedError):
        return ErrorKind.CONNECTION_ABORTED
    if isinstance(exc, BrokenPipeError):
        return ErrorKind.BROKEN_PIPE
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, aioimaplib.CommandTimeout)):
        return ErrorKind.TIMEOUT
    declared = getattr(exc, "kind", None)
    if isinstance(declared, ErrorKind):
        return declared
    if isinstance(exc, (aioimaplib.Abort, aioimaplib.IncompleteRead, OSError, EOFError)):
        return ErrorKind.IO
    if isinstance(exc, poplib.error_proto):
        return ErrorKind.NO_RESPONSE
    return ErrorKind.OTHER


def describe_error(exc: BaseException) -> ErrorDescription:
    """
    Describe an exception raised by a transport.

    A wrapper exception whose cause is a TLS error is described as TLS, and
    the cause's message is kept so certificate failures stay recognizable.
    """
    kind = _error_kind(exc)
    message = str(exc) or type(exc).__name__
    if kind is ErrorKind.TLS and not isinstance(exc, ssl.SSLError):
        message = f"{message}: {exc.__cause__}"
    return ErrorDescription(kind=kind, message=message, origin=_origin(exc))


def classify(description: ErrorDescription) -> FailureClass:
    """
    Map an error description onto a failure class.

    Args:
        description: The failure to classify.

    Returns:
        The FailureClass deciding how the controller reacts.

    Example:
        >>> classify(ErrorDescription(ErrorKind.BROKEN_PIPE, "EPIPE", "x"))
        <FailureClass.RECONNECT: 'reconnect'>
    """
    if description.kind is ErrorKind.TLS and CERTIFICATE_FAILURE in description.message.lower():
        return FailureClass.FATAL
    if description.kind in _RECONNECT_KINDS:
        return FailureClass.RECONNECT
    if description.kind is ErrorKind.BAD_RESPONSE:
        return FailureClass.RETRY
    if description.kind is ErrorKind.NO_RESPONSE:
        return FailureClass.SERVER
    return FailureClass.FATAL


# =============================================================================
# Session State
# =============================================================================

@dataclass(frozen=True)
class Absent:
    """No session is open."""


@dataclass(frozen=True)
class Connected(Generic[T]):
    """
    A usable session.

    Attributes:
        transport: The connected, authenticated transport.
        generation: Which connect produced it (1 for the first).
    """
    transport: T
    generation: int


SessionState = Absent | Connected


class SessionController(Generic[T]):
    """
    Runs units of work against a lazily opened session, with bounded retry.

    Usage:
        >>> controller = SessionController(open_transport, max_retries=3)
        >>> async with controller.lease():
        ...     uids = await controller.run(lambda t: t.uid_search("ALL"))

    Attributes:
        max_retries: Extra attempts allowed after the first one fails.
        retry_delay: Base backoff in seconds.
        connects: Number of sessions opened so far.
        discards: Number of sessions thrown away after a connection failure.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[T]],
        *,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the controller.

        Args:
            connect: Coroutine factory returning a connected, authenticated
                     transport. Transports must provide async `logout()` and
                     `close()`.
            max_retries: Extra attempts after the first failure.
            retry_delay: Base backoff in seconds.
            sleep: Awaitable used for backoff (replaceable in tests).
        """
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.connects = 0
        self.discards = 0
        self._connect = connect
        self._sleep = sleep
        self._state: SessionState = Absent()
        self._depth = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def generation(self) -> int:
        """Generation of the current session, or 0 if none is open."""
        if isinstance(self._state, Connected):
            return self._state.generation
        return 0

    @property
    def is_connected(self) -> bool:
        return isinstance(self._state, Connected)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def session(self) -> T:
        """Return the live transport, connecting first if needed."""
        if isinstance(self._state, Connected):
            return self._state.transport

        transport = await self._connect()
        self.connects += 1
        self._state = Connected(transport=transport, generation=self.connects)
        logger.debug(f"Session opened (generation {self.connects})")
        return transport

    async def reset(self) -> None:
        """Throw away a broken session without a protocol goodbye."""
        state, self._state = self._state, Absent()
        if isinstance(state, Connected):
            self.discards += 1
            logger.debug(f"Discarding session (generation {state.generation})")
            try:
                await state.transport.close()
            except Exception as e:
                logger.warning(f"Error while discarding session: {e}")

    async def disconnect(self) -> None:
        """Log out and clear the session. Safe to call when absent."""
        state, self._state = self._state, Absent()
        if isinstance(state, Connected):
            try:
                await state.transport.logout()
            except Exception as e:
                logger.warning(f"Error during logout: {e}")
            finally:
                try:
                    await state.transport.close()
                except Exception as e:
                    logger.warning(f"Error while closing session: {e}")
            logger.debug(f"Session closed (generation {state.generation})")

    @asynccontextmanager
    async def lease(self) -> AsyncIterator["SessionController[T]"]:
        """
        Hold the session for the duration of a call.

        Leases nest; only the outermost one disconnects when it ends.
        """
        self._depth += 1
        try:
            yield self
        finally:
            self._depth -= 1
            if self._depth == 0:
                await self.disconnect()

    async def open(self) -> T:
        """Open the session (with retry) and return the live transport."""
        return await self.run(_current, label="connect")

    # =========================================================================
    # Retry Loop
    # =========================================================================

    async def run(self, work: Callable[[T], Awaitable[R]], *, label: str = "work") -> R:
        """
        Run one unit of work, retrying per the failure class.

        Args:
            work: Coroutine function taking the live transport. It is re-run
                  from the start on each retry.
            label: Name used in log messages.

        Returns:
            Whatever `work` returns.

        Raises:
            RetrievalError: On a SERVER/FATAL failure, or when all
                            max_retries + 1 attempts failed.
        """
        attempts = self.max_retries + 1
        async with self.lease():
            for attempt in range(1, attempts + 1):
                try:
                    transport = await self.session()
                    return await work(transport)
                except RetrievalError:
                    raise
                except Exception as exc:
                    description = describe_error(exc)
                    failure = classify(description)

                    if failure is FailureClass.RECONNECT:
                        await self.reset()

                    if failure in (FailureClass.SERVER, FailureClass.FATAL):
                        logger.error(f"{label} failed ({failure.value}): {description}")
                        raise RetrievalError(failure, description, attempt) from exc
                    if attempt == attempts:
                        logger.error(
                            f"{label} failed after {attempt} attempts ({failure.value}): "
                            f"{description}"
                        )
                        raise RetrievalError(failure, description, attempt) from exc

                    delay = attempt * self.retry_delay
                    logger.warning(
                        f"{label} attempt {attempt}/{attempts} failed ({failure.value}): "
                        f"{description}; retrying in {delay:.1f}s"
                    )
                    await self._sleep(delay)

        # Unreachable: the loop either returns or raises
        raise AssertionError("retry loop exited without a result")


async def _current(transport: T) -> T:
    return transport


# =============================================================================
# Exceptions
# =============================================================================

class RetrievalError(Exception):
    """
    The classified failure of a retrieval call.

    Attributes:
        failure: The FailureClass that ended the call.
        description: What went wrong.
        attempts: How many attempts were made.
    """

    def __init__(
        self,
        failure: FailureClass,
        description: ErrorDescription,
        attempts: int = 1,
    ) -> None:
        super().__init__(f"{failure.value} failure after {attempts} attempt(s): {description}")
        self.failure = failure
        self.description = description
        self.attempts = attempts


class UIDValidityError(RetrievalError):
    """Raised when a mailbox's UIDVALIDITY changes in the middle of a call."""

    def __init__(self, mailbox: str, expected: int | None, actual: int | None) -> None:
        description = ErrorDescription(
            kind=ErrorKind.OTHER,
            message=f"UIDVALIDITY of {mailbox} changed from {expected} to {actual}",
            origin=f"{__name__}.UIDValidityError",
        )
        super().__init__(FailureClass.FATAL, description)
        self.mailbox = mailbox
        self.expected = expected
        self.actual = actual
