"""
WhatsApp Bridge Client

Connects to the Node.js WhatsApp bridge, which runs the WhatsApp Web
protocol library and forwards its socket events over a WebSocket.

Architecture:
    ConnectionController <-> WhatsAppBridgeTransport <-> Bridge (Node.js) <-> WhatsApp

Bridge events (one JSON object per WebSocket text frame):
    {"type": "connection.update", "connection": "open", "isNewLogin": true, "user": {"id": "..."}}
    {"type": "connection.update", "qr": "..."}
    {"type": "connection.update", "connection": "close",
     "lastDisconnect": {"statusCode": 428, "message": "Connection Closed"}}
    {"type": "creds.update", "creds": {...}}
    {"type": "messages.upsert", "messages": [...]}
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from ...errors import TransportError
from ...lifecycle.session_store import Session
from ...lifecycle.state import (
    ConnectionClosed,
    CredentialsChanged,
    Event,
    HandshakeOpened,
    MessagesReceived,
    PairingRequired,
)
from ..base import EventCallback, Transport, TransportHandle, TransportOptions

logger = logging.getLogger(__name__)


@dataclass
class WhatsAppMessage:
    """Incoming WhatsApp message in the protocol library's shape."""
    id: str
    remote_jid: str
    from_me: bool = False
    participant: Optional[str] = None
    text: Optional[str] = None
    quoted_participant: Optional[str] = None  # author of the message replied to
    mentioned_jids: tuple = ()

    @property
    def is_group(self) -> bool:
        return self.remote_jid.endswith("@g.us")

    @property
    def sender_jid(self) -> str:
        """Author of the message (participant in groups, chat JID otherwise)."""
        return self.participant or self.remote_jid

    @property
    def key(self) -> Dict[str, Any]:
        key = {"remoteJid": self.remote_jid, "id": self.id, "fromMe": self.from_me}
        if self.participant:
            key["participant"] = self.participant
        return key

    @classmethod
    def from_bridge(cls, data: Dict[str, Any]) -> "WhatsAppMessage":
        """Create from a ``messages.upsert`` entry."""
        key = data.get("key") or {}
        content = data.get("message") or {}
        extended = content.get("extendedTextMessage") or {}
        context = extended.get("contextInfo") or {}

        text = content.get("conversation") or extended.get("text")
        quoted_participant = None
        if context.get("quotedMessage"):
            quoted_participant = context.get("participant") or context.get("remoteJid")

        return cls(
            id=key.get("id", ""),
            remote_jid=key.get("remoteJid", ""),
            from_me=key.get("fromMe", False),
            participant=key.get("participant"),
            text=text,
            quoted_participant=quoted_participant,
            mentioned_jids=tuple(context.get("mentionedJid") or ()),
        )


def translate_bridge_event(data: Dict[str, Any]) -> List[Event]:
    """
    Convert one bridge event into lifecycle events.

    A single ``connection.update`` can carry both a QR refresh and a state
    change, so this returns a list.
    """
    event_type = data.get("type")
    events: List[Event] = []

    if event_type == "connection.update":
        if data.get("qr"):
            events.append(PairingRequired())

        connection = data.get("connection")
        if connection == "open":
            user = data.get("user") or {}
            events.append(HandshakeOpened(
                user_id=user.get("id"),
                is_new_login=bool(data.get("isNewLogin", False)),
            ))
        elif connection == "close":
            last = data.get("lastDisconnect") or {}
            events.append(ConnectionClosed(
                status_code=last.get("statusCode"),
                reason=last.get("message") or "Unknown reason",
            ))
        elif connection == "connecting":
            logger.info("Connecting to WhatsApp...")

    elif event_type == "creds.update":
        events.append(CredentialsChanged(update=data.get("creds") or {}))

    elif event_type == "messages.upsert":
        events.append(MessagesReceived(messages=list(data.get("messages") or [])))

    else:
        logger.debug(f"Unknown bridge event type: {event_type}")

    return events


class BridgeHandle(TransportHandle):
    """One bridge-side socket, addressed by its session id."""

    def __init__(
        self,
        http_url: str,
        http_session: aiohttp.ClientSession,
        session_id: str,
        on_event: EventCallback,
    ):
        self.http_url = http_url
        self.session_id = session_id
        self._http_session = http_session
        self._on_event = on_event
        self._ws = None
        self._listener: Optional[asyncio.Task] = None
        self._closing = False
        self._user_id: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    async def attach(self, ws_url: str):
        """Connect the event WebSocket and start forwarding events."""
        try:
            self._ws = await self._http_session.ws_connect(
                ws_url, params={"sessionId": self.session_id}
            )
        except aiohttp.ClientError as e:
            raise TransportError(f"Cannot connect to WebSocket at {ws_url}: {e}") from e

        self._listener = asyncio.create_task(self._listen())
        logger.info(f"Connected to WhatsApp bridge WebSocket: {ws_url}")

    async def _listen(self):
        reason = "Bridge WebSocket closed"
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning(f"Ignoring malformed bridge frame: {msg.data[:100]}")
                        continue
                    await self._forward(data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"Bridge WebSocket error: {self._ws.exception()}"
                    break
        except asyncio.CancelledError:
            raise
        except aiohttp.ClientError as e:
            reason = f"Bridge WebSocket error: {e}"

        if not self._closing:
            logger.warning(reason)
            await self._on_event(ConnectionClosed(status_code=None, reason=reason))

    async def _forward(self, data: Dict[str, Any]):
        for event in translate_bridge_event(data):
            if isinstance(event, HandshakeOpened) and event.user_id:
                self._user_id = event.user_id
            if self._closing:
                return
            await self._on_event(event)

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        payload = {"sessionId": self.session_id, **payload}
        try:
            async with self._http_session.post(f"{self.http_url}{path}", json=payload) as resp:
                if resp.status != 200:
                    error = await resp.text()
                    raise TransportError(f"Bridge {path} failed: {error}", status=resp.status)
                return await resp.json()
        except aiohttp.ClientError as e:
            raise TransportError(f"Bridge {path} failed: {e}") from e

    async def request_pairing_code(self, phone_number: str) -> str:
        data = await self._post("/auth/pairing-code", {"phoneNumber": phone_number})
        code = data.get("code")
        if not code:
            raise TransportError("Bridge returned no pairing code")
        return code

    async def send_message(self, jid: str, text: str) -> Dict[str, Any]:
        """
        Send a text message.

        Args:
            jid: Chat JID (e.g. "27683913716@s.whatsapp.net" or "...@g.us")
            text: Message text

        Returns:
            Response with messageId
        """
        return await self._post("/send", {"jid": jid, "content": {"text": text}})

    async def mark_read(self, keys: List[Dict[str, Any]]) -> None:
        await self._post("/read", {"keys": keys})

    async def send_presence(self, presence: str, jid: str) -> None:
        await self._post("/presence", {"presence": presence, "jid": jid})

    async def close(self) -> None:
        """Close the bridge socket without reporting a disconnect."""
        if self._closing:
            return
        self._closing = True

        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

        try:
            await self._post("/session/close", {})
        except TransportError as e:
            logger.debug(f"Bridge session close failed: {e}")

        if self._ws:
            await self._ws.close()
            self._ws = None

        await self._http_session.close()
        logger.info("Disconnected from WhatsApp bridge")


class WhatsAppBridgeTransport(Transport):
    """
    Transport backed by the Node.js WhatsApp bridge.

    Example:
        transport = WhatsAppBridgeTransport("http://localhost:3000", "ws://localhost:3001")
        handle = await transport.open(TransportOptions(), session, on_event)
        await handle.send_message("27683913716@s.whatsapp.net", "Hello!")
    """

    def __init__(
        self,
        http_url: str = "http://localhost:3000",
        ws_url: str = "ws://localhost:3001",
    ):
        self.http_url = http_url.rstrip("/")
        self.ws_url = ws_url

    async def fetch_version(self) -> Dict[str, Any]:
        try:
            async with aiohttp.ClientSession() as http:
                async with http.get(f"{self.http_url}/version") as resp:
                    resp.raise_for_status()
                    return await resp.json()
        except aiohttp.ClientError as e:
            raise TransportError(
                f"Cannot reach WhatsApp bridge at {self.http_url}. "
                f"Make sure the bridge is running: {e}"
            ) from e

    async def open(
        self,
        options: TransportOptions,
        session: Optional[Session],
        on_event: EventCallback,
    ) -> TransportHandle:
        http_session = aiohttp.ClientSession()
        payload = {
            "options": options.to_dict(),
            "creds": session.to_dict() if session else None,
        }

        try:
            async with http_session.post(f"{self.http_url}/session/open", json=payload) as resp:
                if resp.status != 200:
                    error = await resp.text()
                    raise TransportError(f"Bridge refused session: {error}", status=resp.status)
                data = await resp.json()

            handle = BridgeHandle(self.http_url, http_session, data["sessionId"], on_event)
            await handle.attach(self.ws_url)
            return handle

        except (aiohttp.ClientError, KeyError, TransportError) as e:
            await http_session.close()
            if isinstance(e, TransportError):
                raise
            raise TransportError(f"Cannot open bridge session at {self.http_url}: {e}") from e
