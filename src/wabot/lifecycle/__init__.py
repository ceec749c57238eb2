"""
Connection lifecycle: disconnect classification, retry policy, session
persistence and the state machine that ties them together.
"""

from .backoff import delay
from .classifier import DisconnectCause, DisconnectClassifier
from .session_store import Session, SessionStore
from .state import ConnectionState, LifecyclePolicy, RetryCounters, Transition, transition

__all__ = [
    "ConnectionState",
    "DisconnectCause",
    "DisconnectClassifier",
    "LifecyclePolicy",
    "RetryCounters",
    "Session",
    "SessionStore",
    "Transition",
    "delay",
    "transition",
]
