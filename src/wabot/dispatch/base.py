"""
Message dispatcher interface.

The connection controller hands every inbound, non-self message to a
dispatcher once the connection is open, and tells it when the connection
becomes ready.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class ReadyInfo:
    """What the controller knows when a connection opens."""
    user_id: Optional[str] = None
    is_new_login: bool = False
    first_connect: bool = False


class MessageDispatcher(ABC):

    @abstractmethod
    async def on_ready(self, handle, info: ReadyInfo) -> None:
        """Called on every transition into the open state"""
        pass

    @abstractmethod
    async def dispatch(self, handle, message) -> None:
        """
        Handle one inbound message.

        Args:
            handle: Open transport handle to reply through
            message: WhatsAppMessage
        """
        pass
