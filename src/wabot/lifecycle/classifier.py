"""
Disconnect classification.

The bridge reports a numeric status code and a free-text reason for every
closed connection. Matching on the reason text is brittle, so the rules live
here as an ordered list and the state machine only ever sees the resulting
``DisconnectCause``.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from ..errors import AuthInvalidError, LoggedOutError, TransientNetworkError, WabotError

logger = logging.getLogger(__name__)


class DisconnectCause(str, Enum):
    LOGGED_OUT = "logged_out"
    AUTH_FAILURE = "auth_failure"
    CONNECTION_FAILURE = "connection_failure"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"

    @property
    def requires_fresh_session(self) -> bool:
        """Causes that invalidate the stored credentials before reconnecting."""
        return self in (
            DisconnectCause.AUTH_FAILURE,
            DisconnectCause.CONNECTION_FAILURE,
            DisconnectCause.NETWORK_ERROR,
        )

    def as_error(self, reason: str) -> WabotError:
        """The error-taxonomy view of this cause, for logs and status."""
        if self is DisconnectCause.LOGGED_OUT:
            return LoggedOutError(reason)
        if self.requires_fresh_session:
            return AuthInvalidError(reason)
        return TransientNetworkError(reason)


# Baileys' DisconnectReason.loggedOut
LOGGED_OUT_STATUS_CODE = 401

DEFAULT_CONNECTION_FAILURE_MARKERS = ("Connection Failure", "QR refs attempts ended")
DEFAULT_AUTH_FAILURE_MARKERS = ("401", "403")
DEFAULT_NETWORK_ERROR_MARKERS = ("connection reset", "ECONNRESET", "timed out", "timeout")


@dataclass
class ClassificationRule:
    """A reason-text rule: any marker found in the reason maps to ``cause``."""

    cause: DisconnectCause
    markers: Tuple[str, ...]
    case_sensitive: bool = True

    def matches(self, reason: str) -> bool:
        if not self.case_sensitive:
            lowered = reason.lower()
            return any(m.lower() in lowered for m in self.markers)
        return any(m in reason for m in self.markers)


@dataclass
class DisconnectClassifier:
    """
    Maps ``(status_code, reason)`` to a ``DisconnectCause``.

    The logged-out status code always wins; after that the rules are tried
    in order and the first match decides. Anything unmatched is ``UNKNOWN``
    (a generic drop).
    """

    logged_out_status_code: int = LOGGED_OUT_STATUS_CODE
    rules: List[ClassificationRule] = field(default_factory=list)

    def __post_init__(self):
        if not self.rules:
            self.rules = self.default_rules()

    @staticmethod
    def default_rules(
        connection_failure_markers: Iterable[str] = DEFAULT_CONNECTION_FAILURE_MARKERS,
        auth_failure_markers: Iterable[str] = DEFAULT_AUTH_FAILURE_MARKERS,
        network_error_markers: Iterable[str] = DEFAULT_NETWORK_ERROR_MARKERS,
    ) -> List[ClassificationRule]:
        return [
            ClassificationRule(DisconnectCause.CONNECTION_FAILURE, tuple(connection_failure_markers)),
            ClassificationRule(DisconnectCause.AUTH_FAILURE, tuple(auth_failure_markers)),
            ClassificationRule(
                DisconnectCause.NETWORK_ERROR, tuple(network_error_markers), case_sensitive=False
            ),
        ]

    def classify(self, status_code: Optional[int], reason: Optional[str]) -> DisconnectCause:
        if status_code is not None and status_code == self.logged_out_status_code:
            return DisconnectCause.LOGGED_OUT

        reason = reason or ""
        for rule in self.rules:
            if rule.matches(reason):
                logger.debug(f"Disconnect reason {reason!r} matched rule {rule.cause.value}")
                return rule.cause

        return DisconnectCause.UNKNOWN
