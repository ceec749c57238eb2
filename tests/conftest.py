"""
Shared fixtures: an in-memory transport that lets tests script the
events a bridge would send.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from wabot.channels.base import Transport, TransportHandle, TransportOptions
from wabot.dispatch.base import MessageDispatcher, ReadyInfo
from wabot.lifecycle.state import LifecyclePolicy


class FakeHandle(TransportHandle):
    def __init__(self, on_event, session, options):
        self.on_event = on_event
        self.session = session
        self.options = options
        self.closed = False
        self.sent: List[tuple] = []
        self.read: List[Dict[str, Any]] = []
        self.presence: List[tuple] = []
        self.pairing_requests: List[str] = []
        self.pairing_results: List[Any] = []
        self._user_id: Optional[str] = None

    @property
    def user_id(self):
        return self._user_id

    async def emit(self, event):
        await self.on_event(event)

    async def request_pairing_code(self, phone_number: str) -> str:
        self.pairing_requests.append(phone_number)
        result = self.pairing_results.pop(0) if self.pairing_results else "ABCD-1234"
        if isinstance(result, Exception):
            raise result
        return result

    async def send_message(self, jid: str, text: str):
        self.sent.append((jid, text))
        return {"success": True, "messageId": f"sent-{len(self.sent)}"}

    async def mark_read(self, keys):
        self.read.extend(keys)

    async def send_presence(self, presence: str, jid: str):
        self.presence.append((presence, jid))

    async def close(self):
        self.closed = True


class FakeTransport(Transport):
    def __init__(self):
        self.handles: List[FakeHandle] = []
        self.open_errors: List[Exception] = []
        self.version = {"version": [2, 3000, 1015901307], "isLatest": True}
        self.opened = asyncio.Event()

    @property
    def latest(self) -> FakeHandle:
        return self.handles[-1]

    async def fetch_version(self):
        return self.version

    async def open(self, options: TransportOptions, session, on_event) -> FakeHandle:
        if self.open_errors:
            raise self.open_errors.pop(0)
        handle = FakeHandle(on_event, session, options)
        self.handles.append(handle)
        self.opened.set()
        return handle


class RecordingDispatcher(MessageDispatcher):
    def __init__(self):
        self.ready: List[ReadyInfo] = []
        self.messages = []

    async def on_ready(self, handle, info):
        self.ready.append(info)

    async def dispatch(self, handle, message):
        self.messages.append(message)


async def wait_until(predicate, timeout: float = 2.0):
    """Poll ``predicate`` until true, yielding to the loop in between."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def inbound(msg_id: str, text: str, jid: str = "27111111111@s.whatsapp.net",
            from_me: bool = False, participant: Optional[str] = None) -> Dict[str, Any]:
    """A messages.upsert entry as the bridge forwards it."""
    key = {"remoteJid": jid, "id": msg_id, "fromMe": from_me}
    if participant:
        key["participant"] = participant
    return {
        "key": key,
        "message": {"conversation": text},
        "pushName": "Tester",
        "messageTimestamp": 1706745600,
    }


@pytest.fixture
def fast_policy():
    return LifecyclePolicy(
        base_delay=0.01,
        step_delay=0.01,
        cap_delay=0.05,
        fresh_session_delay=0.01,
        pairing_base_delay=0.01,
        pairing_max_delay=0.02,
        pairing_cooldown=0.01,
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()
