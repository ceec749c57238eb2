"""
Base Transport

Abstract interface between the lifecycle controller and whatever speaks the
WhatsApp wire protocol. The controller treats a transport purely as an event
source and a request sink.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..lifecycle.session_store import Session
from ..lifecycle.state import Event

EventCallback = Callable[[Event], Awaitable[None]]


@dataclass
class TransportOptions:
    """
    Socket options forwarded to the protocol library when a session opens.
    """
    browser: Tuple[str, str, str] = ("WhatsApp Bot", "Chrome", "1.0.0")
    version: Optional[List[int]] = None  # filled from fetch_version()

    # Timeouts (milliseconds)
    connect_timeout_ms: int = 60000
    default_query_timeout_ms: int = 60000
    keep_alive_interval_ms: int = 30000
    retry_request_delay_ms: int = 1000
    max_msg_retry_count: int = 5

    # Behaviour
    mark_online_on_connect: bool = True
    sync_full_history: bool = False
    ignore_broadcasts: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "browser": list(self.browser),
            "version": self.version,
            "connectTimeoutMs": self.connect_timeout_ms,
            "defaultQueryTimeoutMs": self.default_query_timeout_ms,
            "keepAliveIntervalMs": self.keep_alive_interval_ms,
            "retryRequestDelayMs": self.retry_request_delay_ms,
            "maxMsgRetryCount": self.max_msg_retry_count,
            "markOnlineOnConnect": self.mark_online_on_connect,
            "syncFullHistory": self.sync_full_history,
            "ignoreBroadcasts": self.ignore_broadcasts,
        }


class TransportHandle(ABC):
    """
    One open connection to the messaging network.

    A handle reports its lifecycle through the callback given to
    ``Transport.open()``; once ``close()`` has been called it reports nothing
    further.
    """

    @property
    @abstractmethod
    def user_id(self) -> Optional[str]:
        """JID of the logged-in account, once known"""
        pass

    @abstractmethod
    async def request_pairing_code(self, phone_number: str) -> str:
        """Ask the network for a pairing code for ``phone_number``"""
        pass

    @abstractmethod
    async def send_message(self, jid: str, text: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def mark_read(self, keys: List[Dict[str, Any]]) -> None:
        pass

    @abstractmethod
    async def send_presence(self, presence: str, jid: str) -> None:
        """Send a presence update ("composing", "paused", ...)"""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class Transport(ABC):
    """Factory for transport handles."""

    @abstractmethod
    async def fetch_version(self) -> Dict[str, Any]:
        """
        Fetch the protocol version the network currently expects.

        Returns:
            {"version": [2, 3000, 1015901307], "isLatest": True}
        """
        pass

    @abstractmethod
    async def open(
        self,
        options: TransportOptions,
        session: Optional[Session],
        on_event: EventCallback,
    ) -> TransportHandle:
        """
        Open a connection with the given credentials.

        Args:
            options: Socket options
            session: Stored credentials, or None to start unregistered
            on_event: Coroutine called for every lifecycle event of the handle

        Returns:
            Open (not necessarily authenticated) handle
        """
        pass
