"""
Runtime command visibility.

Owners can open a command to everyone and admins can close it again while
the bot runs. Settings are kept in memory and fall back to the configured
default mode after a restart.
"""

import logging
from typing import Dict, Iterable, List

logger = logging.getLogger(__name__)

PUBLIC = "public"
PRIVATE = "private"


class CommandVisibility:
    """Per-command public/private overrides on top of the default mode."""

    def __init__(self, always_public: Iterable[str] = ()):
        self.always_public = frozenset(always_public)
        self._public = set(self.always_public)
        self._private = set()

    def make_public(self, name: str, requested_by: str = "") -> bool:
        self._private.discard(name)
        self._public.add(name)
        logger.info(f"Command '{name}' made public by {requested_by or 'unknown'}")
        return True

    def make_private(self, name: str, requested_by: str = "") -> bool:
        if name in self.always_public:
            return False
        self._public.discard(name)
        self._private.add(name)
        logger.info(f"Command '{name}' made private by {requested_by or 'unknown'}")
        return True

    def is_public(self, name: str) -> bool:
        return name in self._public

    def status(self, name: str, private_mode: bool) -> str:
        if name in self._public:
            return PUBLIC
        if name in self._private:
            return PRIVATE
        return PRIVATE if private_mode else PUBLIC

    def reset(self):
        self._public = set(self.always_public)
        self._private.clear()
        logger.info("Command visibility reset to defaults")

    @property
    def public_commands(self) -> List[str]:
        return sorted(self._public)

    @property
    def private_commands(self) -> List[str]:
        return sorted(self._private)

    def stats(self, private_mode: bool) -> Dict[str, object]:
        return {
            "public": len(self._public),
            "private": len(self._private),
            "default_mode": PRIVATE if private_mode else PUBLIC,
        }
