"""
Short-lived confirmations awaiting a follow-up message from the same user.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple


@dataclass
class PendingAction:
    sender: str
    action: str
    expires_at: float


class PendingActions:
    """
    Table of actions waiting for confirmation, keyed by (sender, action).

    Example:
        pending = PendingActions(ttl=60)
        pending.put("27683913716", "resetsession")
        ...
        if pending.take("27683913716", "resetsession"):
            do_it()
    """

    def __init__(self, ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._actions: Dict[Tuple[str, str], PendingAction] = {}

    def put(self, sender: str, action: str, ttl: Optional[float] = None) -> PendingAction:
        """Register (or refresh) a pending action"""
        pending = PendingAction(
            sender=sender,
            action=action,
            expires_at=self._clock() + (self.ttl if ttl is None else ttl),
        )
        self._actions[(sender, action)] = pending
        return pending

    def take(self, sender: str, action: str) -> bool:
        """Consume a pending action; False if missing or expired"""
        self.purge()
        return self._actions.pop((sender, action), None) is not None

    def pending_for(self, sender: str):
        self.purge()
        return [p for (who, _), p in self._actions.items() if who == sender]

    def purge(self):
        now = self._clock()
        for key in [k for k, p in self._actions.items() if p.expires_at <= now]:
            del self._actions[key]

    def __len__(self):
        self.purge()
        return len(self._actions)
