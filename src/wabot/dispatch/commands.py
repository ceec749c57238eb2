"""
Command primitives: roles, the command record, prefix parsing and the
per-user rate limiter.
"""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple


class Role(str, Enum):
    """Who is talking to the bot"""
    USER = "user"
    ADMIN = "admin"
    OWNER = "owner"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    @property
    def display(self) -> str:
        return _ROLE_DISPLAY[self]

    def satisfies(self, required: "Role") -> bool:
        return self.rank >= required.rank


_ROLE_RANK = {Role.USER: 0, Role.ADMIN: 1, Role.OWNER: 2}
_ROLE_DISPLAY = {Role.USER: "👤 User", Role.ADMIN: "⚙️ Admin", Role.OWNER: "👑 Owner"}


@dataclass
class BotCommand:
    """A prefix command handled without leaving the bot"""
    name: str
    handler: Callable[..., Awaitable[None]]
    description: str
    usage: str = ""
    role: Role = Role.USER
    category: str = "general"
    public: bool = False  # reachable by anyone even in private mode
    aliases: List[str] = field(default_factory=list)


@dataclass
class ParsedCommand:
    name: str
    args: List[str]


def parse_command(text: Optional[str], prefix: str) -> Optional[ParsedCommand]:
    """
    Split ``.name arg1 arg2`` into a lower-cased name and its arguments.

    Returns None when the text does not start with the prefix or names
    nothing.
    """
    if not text or not prefix or not text.startswith(prefix):
        return None
    parts = text[len(prefix):].split()
    if not parts:
        return None
    return ParsedCommand(name=parts[0].lower(), args=parts[1:])


def jid_to_number(jid: str) -> str:
    """``27683913716:12@s.whatsapp.net`` -> ``27683913716``"""
    user = jid.split("@", 1)[0]
    return user.split(":", 1)[0]


def digits_only(number: Optional[str]) -> str:
    return re.sub(r"\D", "", number or "")


class RateLimiter:
    """
    Fixed-window limiter: at most ``max_requests`` per ``window`` seconds
    for each user.
    """

    def __init__(self, max_requests: int = 10, window: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}

    def is_limited(self, user: str) -> bool:
        """Count one request for ``user``; True if it exceeds the limit"""
        now = self._clock()
        count, reset_at = self._windows.get(user, (0, now + self.window))

        if now > reset_at:
            self._windows[user] = (1, now + self.window)
            return False

        if count >= self.max_requests:
            return True

        self._windows[user] = (count + 1, reset_at)
        return False

    def reset(self, user: Optional[str] = None):
        if user is None:
            self._windows.clear()
        else:
            self._windows.pop(user, None)
