"""
Connection lifecycle state machine.

Everything the controller does in response to a transport event is decided
here by ``transition()``, a pure function of the current state, the retry
counters and the event. It returns the next state, the next counters and a
list of effects for the controller to carry out. No I/O happens in this
module, so the whole lifecycle can be exercised without a live transport.

States:
    IDLE -> CONNECTING -> (AWAITING_PAIRING ->) OPEN
    OPEN -> CLOSED_RETRYABLE -> CONNECTING
    OPEN -> CLOSED_TERMINAL
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import RetryLimitExceeded
from .backoff import delay
from .classifier import DisconnectCause, DisconnectClassifier


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    OPEN = "open"
    CLOSED_RETRYABLE = "closed_retryable"
    CLOSED_TERMINAL = "closed_terminal"


@dataclass(frozen=True)
class RetryCounters:
    pairing_attempts: int = 0
    connection_attempts: int = 0
    # Failed bridge opens back off on their own count and never clear the session
    open_failures: int = 0


@dataclass(frozen=True)
class LifecyclePolicy:
    """Retry limits and delays (seconds) used by ``transition()``."""

    max_connection_attempts: int = 10
    base_delay: float = 5.0
    step_delay: float = 2.0
    cap_delay: float = 30.0
    fresh_session_delay: float = 3.0

    max_pairing_attempts: int = 5
    pairing_base_delay: float = 5.0
    pairing_max_delay: float = 15.0
    pairing_cooldown: float = 10.0

    classifier: DisconnectClassifier = field(default_factory=DisconnectClassifier)


# =========================================================================
# EVENTS
# =========================================================================


class Event:
    """Base class for everything that can drive a transition."""


@dataclass
class Start(Event):
    pass


@dataclass
class ReconnectDue(Event):
    pass


@dataclass
class HandshakeOpened(Event):
    user_id: Optional[str] = None
    is_new_login: bool = False


@dataclass
class PairingRequired(Event):
    pass


@dataclass
class ConnectionClosed(Event):
    status_code: Optional[int] = None
    reason: str = ""


@dataclass
class OpenFailed(Event):
    reason: str = ""


@dataclass
class CredentialsChanged(Event):
    update: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MessagesReceived(Event):
    messages: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class PairingCodeIssued(Event):
    code: str = ""
    attempt: int = 0


@dataclass
class PairingFailed(Event):
    reason: str = ""


@dataclass
class PairingRetryDue(Event):
    pass


@dataclass
class PairingAborted(Event):
    reason: str = ""


@dataclass
class SessionResetRequested(Event):
    requested_by: str = ""


@dataclass
class SessionClearFailed(Event):
    reason: str = ""


@dataclass
class Shutdown(Event):
    pass


# =========================================================================
# EFFECTS
# =========================================================================


class Effect:
    """Base class for side effects the controller must perform."""


@dataclass
class OpenTransport(Effect):
    pass


@dataclass
class CloseTransport(Effect):
    pass


@dataclass
class ClearSession(Effect):
    reason: str = ""


@dataclass
class PersistCredentials(Effect):
    update: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScheduleReconnect(Effect):
    delay: float = 0.0
    reason: str = ""


@dataclass
class RequestPairingCode(Effect):
    attempt: int = 1


@dataclass
class SchedulePairingRetry(Effect):
    delay: float = 0.0


@dataclass
class CancelPairing(Effect):
    pass


@dataclass
class CancelTimers(Effect):
    pass


@dataclass
class NotifyReady(Effect):
    user_id: Optional[str] = None
    is_new_login: bool = False


@dataclass
class DispatchMessages(Effect):
    messages: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ReportTerminal(Effect):
    reason: str = ""


@dataclass
class Transition:
    state: ConnectionState
    counters: RetryCounters
    effects: List[Effect] = field(default_factory=list)
    cause: Optional[DisconnectCause] = None


# States in which a live transport handle may report a disconnect
_LIVE_STATES = (
    ConnectionState.CONNECTING,
    ConnectionState.AWAITING_PAIRING,
    ConnectionState.OPEN,
)


def transition(
    state: ConnectionState,
    counters: RetryCounters,
    event: Event,
    policy: LifecyclePolicy,
) -> Transition:
    """Compute the next state, counters and effects for ``event``."""
    if isinstance(event, Shutdown):
        return Transition(ConnectionState.IDLE, counters, [CancelTimers(), CancelPairing(), CloseTransport()])

    if isinstance(event, CredentialsChanged):
        # Persist even when the connection is on its way down; the handle
        # that produced the update was live when it did.
        return Transition(state, counters, [PersistCredentials(event.update)])

    if state is ConnectionState.CLOSED_TERMINAL:
        return Transition(state, counters)

    if isinstance(event, Start):
        if state is ConnectionState.IDLE:
            return Transition(ConnectionState.CONNECTING, counters, [OpenTransport()])
        return Transition(state, counters)

    if isinstance(event, ReconnectDue):
        if state in (ConnectionState.IDLE, ConnectionState.CLOSED_RETRYABLE):
            return Transition(ConnectionState.CONNECTING, counters, [OpenTransport()])
        return Transition(state, counters)

    if isinstance(event, HandshakeOpened):
        if state in (ConnectionState.CONNECTING, ConnectionState.AWAITING_PAIRING):
            return Transition(
                ConnectionState.OPEN,
                RetryCounters(),
                [CancelPairing(), NotifyReady(event.user_id, event.is_new_login)],
            )
        return Transition(state, counters)

    if isinstance(event, (PairingRequired, PairingRetryDue)):
        if state is ConnectionState.CONNECTING and isinstance(event, PairingRequired):
            return _begin_pairing(counters, policy)
        if state is ConnectionState.AWAITING_PAIRING:
            return _begin_pairing(counters, policy)
        return Transition(state, counters)

    if isinstance(event, PairingCodeIssued):
        return Transition(state, counters)

    if isinstance(event, PairingFailed):
        if state is not ConnectionState.AWAITING_PAIRING:
            return Transition(state, counters)
        if counters.pairing_attempts < policy.max_pairing_attempts:
            wait = delay(counters.pairing_attempts, 0.0, policy.pairing_base_delay, policy.pairing_max_delay)
            return Transition(state, counters, [SchedulePairingRetry(wait)])
        return _pairing_exhausted(counters, policy)

    if isinstance(event, PairingAborted):
        return _terminal(counters, f"pairing aborted: {event.reason}")

    if isinstance(event, ConnectionClosed):
        if state not in _LIVE_STATES:
            return Transition(state, counters)
        return _on_closed(counters, event, policy)

    if isinstance(event, OpenFailed):
        if state is not ConnectionState.CONNECTING:
            return Transition(state, counters)
        return _retry_open(counters, policy)

    if isinstance(event, SessionResetRequested):
        return _fresh_session(
            f"session reset requested by {event.requested_by or 'operator'}",
            policy,
            cause=None,
        )

    if isinstance(event, SessionClearFailed):
        return _terminal(counters, f"session could not be cleared: {event.reason}")

    if isinstance(event, MessagesReceived):
        if state is ConnectionState.OPEN and event.messages:
            return Transition(state, counters, [DispatchMessages(event.messages)])
        return Transition(state, counters)

    return Transition(state, counters)


def _begin_pairing(counters: RetryCounters, policy: LifecyclePolicy) -> Transition:
    if counters.pairing_attempts >= policy.max_pairing_attempts:
        return _pairing_exhausted(counters, policy)

    attempt = counters.pairing_attempts + 1
    return Transition(
        ConnectionState.AWAITING_PAIRING,
        replace(counters, pairing_attempts=attempt),
        [RequestPairingCode(attempt)],
    )


def _pairing_exhausted(counters: RetryCounters, policy: LifecyclePolicy) -> Transition:
    return Transition(
        ConnectionState.CLOSED_RETRYABLE,
        replace(counters, pairing_attempts=0),
        [
            CancelPairing(),
            CloseTransport(),
            ClearSession(str(RetryLimitExceeded("pairing", policy.max_pairing_attempts, policy.max_pairing_attempts))),
            ScheduleReconnect(policy.pairing_cooldown, "pairing cooldown"),
        ],
    )


def _on_closed(counters: RetryCounters, event: ConnectionClosed, policy: LifecyclePolicy) -> Transition:
    cause = policy.classifier.classify(event.status_code, event.reason)

    if cause is DisconnectCause.LOGGED_OUT:
        result = _terminal(counters, "logged out")
        result.cause = cause
        return result

    if cause.requires_fresh_session:
        return _fresh_session(f"{cause.value}: {event.reason}", policy, cause=cause)

    return _retry_with_backoff(counters, policy, cause=cause)


def _fresh_session(reason: str, policy: LifecyclePolicy, cause: Optional[DisconnectCause]) -> Transition:
    return Transition(
        ConnectionState.CLOSED_RETRYABLE,
        RetryCounters(),
        [
            CancelPairing(),
            CloseTransport(),
            ClearSession(reason),
            ScheduleReconnect(policy.fresh_session_delay, "fresh session"),
        ],
        cause=cause,
    )


def _retry_with_backoff(counters: RetryCounters, policy: LifecyclePolicy, cause: DisconnectCause) -> Transition:
    wait = delay(counters.connection_attempts, policy.base_delay, policy.step_delay, policy.cap_delay)
    attempts = counters.connection_attempts + 1
    effects: List[Effect] = [CancelPairing(), CloseTransport()]

    if attempts >= policy.max_connection_attempts:
        effects.append(ClearSession(str(RetryLimitExceeded("connection", attempts, policy.max_connection_attempts))))
        next_counters = RetryCounters()
    else:
        next_counters = replace(counters, connection_attempts=attempts)

    effects.append(
        ScheduleReconnect(wait, f"attempt {attempts}/{policy.max_connection_attempts}")
    )
    return Transition(ConnectionState.CLOSED_RETRYABLE, next_counters, effects, cause=cause)


def _retry_open(counters: RetryCounters, policy: LifecyclePolicy) -> Transition:
    wait = delay(counters.open_failures, policy.base_delay, policy.step_delay, policy.cap_delay)
    failures = counters.open_failures + 1
    return Transition(
        ConnectionState.CLOSED_RETRYABLE,
        replace(counters, open_failures=failures),
        [CancelPairing(), CloseTransport(), ScheduleReconnect(wait, f"bridge unreachable, failure {failures}")],
        cause=DisconnectCause.UNKNOWN,
    )


def _terminal(counters: RetryCounters, reason: str) -> Transition:
    return Transition(
        ConnectionState.CLOSED_TERMINAL,
        counters,
        [CancelTimers(), CancelPairing(), CloseTransport(), ReportTerminal(reason)],
    )
