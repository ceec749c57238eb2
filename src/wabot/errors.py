"""
Error taxonomy for the WhatsApp session bot.

Lifecycle failures are caught at the boundary of a single connection or
pairing attempt and turned into the next state-machine event; these classes
exist so the seams (config, store, transport) can say which kind of failure
happened.
"""


class WabotError(Exception):
    """Base class for all bot errors."""


class TransientNetworkError(WabotError):
    """Connection dropped; retry with backoff, session intact."""


class AuthInvalidError(WabotError):
    """Credentials rejected; session must be cleared and re-paired."""


class LoggedOutError(WabotError):
    """Device was logged out; no automatic recovery."""


class ConfigInvalid(WabotError):
    """Configuration cannot work as given (e.g. malformed phone number)."""


class RetryLimitExceeded(WabotError):
    """Retries exhausted; forces a session clear and cooldown."""

    def __init__(self, what: str, attempts: int, limit: int):
        super().__init__(f"{what}: {attempts}/{limit} attempts used")
        self.what = what
        self.attempts = attempts
        self.limit = limit


class SessionStoreError(WabotError):
    """Persisted credential material could not be read, written or removed."""


class TransportError(WabotError):
    """The bridge transport failed a request."""

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status
