"""
Test the connection controller end to end against a scripted transport
"""

import asyncio
from dataclasses import replace

import pytest

from conftest import inbound, wait_until
from wabot.errors import SessionStoreError, TransportError
from wabot.lifecycle.controller import ConnectionController
from wabot.lifecycle.session_store import Session, SessionStore
from wabot.lifecycle.state import (
    ConnectionClosed,
    ConnectionState,
    CredentialsChanged,
    HandshakeOpened,
    MessagesReceived,
    PairingFailed,
    PairingRequired,
    RetryCounters,
)

BOT_JID = "27683913716:1@s.whatsapp.net"
GENERIC_DROP = ConnectionClosed(status_code=428, reason="Connection Closed")


class BrokenClearStore(SessionStore):
    def clear(self):
        raise SessionStoreError("permission denied")


class ControllerHarness:

    def setup_method(self):
        self.printed = []

    def make(self, transport, dispatcher, policy, store, phone="0683913716", **kwargs):
        self.controller = ConnectionController(
            transport,
            store,
            dispatcher,
            policy=policy,
            phone_number=phone,
            pairing_settle_delay=0,
            console=self.printed.append,
            **kwargs,
        )
        self.task = asyncio.create_task(self.controller.run())
        return self.controller

    async def finish(self):
        await self.controller.stop()
        return await asyncio.wait_for(self.task, timeout=2)

    async def open(self, transport):
        await wait_until(lambda: transport.handles)
        await transport.latest.emit(HandshakeOpened(user_id=BOT_JID))
        await wait_until(lambda: self.controller.state is ConnectionState.OPEN)
        await self.controller.join()


class TestFreshPairing(ControllerHarness):

    @pytest.mark.asyncio
    async def test_pairs_and_opens(self, tmp_path, transport, dispatcher, fast_policy):
        store = SessionStore(tmp_path / "sessions")
        controller = self.make(transport, dispatcher, fast_policy, store)

        await wait_until(lambda: transport.handles)
        handle = transport.latest
        assert handle.session is None
        assert handle.options.version == [2, 3000, 1015901307]

        await handle.emit(PairingRequired())
        await wait_until(lambda: self.printed)
        assert handle.pairing_requests == ["27683913716"]
        assert controller.state is ConnectionState.AWAITING_PAIRING
        assert "PAIRING CODE: ABCD-1234" in self.printed[0]

        await handle.emit(CredentialsChanged({"registered": True, "me": {"id": BOT_JID}}))
        await handle.emit(HandshakeOpened(user_id=BOT_JID, is_new_login=True))
        await wait_until(lambda: controller.state is ConnectionState.OPEN)
        await controller.join()

        assert controller.counters == RetryCounters()
        assert store.load().is_registered
        assert dispatcher.ready[0].first_connect
        assert dispatcher.ready[0].is_new_login

        assert await self.finish() is ConnectionState.IDLE
        assert handle.closed

    @pytest.mark.asyncio
    async def test_qr_refresh_while_requesting_is_ignored(self, tmp_path, transport, dispatcher, fast_policy):
        store = SessionStore(tmp_path / "sessions")
        controller = self.make(transport, dispatcher, fast_policy, store)
        await wait_until(lambda: transport.handles)
        handle = transport.latest

        await handle.emit(PairingRequired())
        await handle.emit(PairingRequired())
        await controller.join()
        await wait_until(lambda: self.printed)

        assert len(handle.pairing_requests) == 1
        assert controller.counters.pairing_attempts == 1
        await self.finish()

    @pytest.mark.asyncio
    async def test_failed_pairing_retries(self, tmp_path, transport, dispatcher, fast_policy):
        store = SessionStore(tmp_path / "sessions")
        controller = self.make(transport, dispatcher, fast_policy, store)
        await wait_until(lambda: transport.handles)
        handle = transport.latest
        handle.pairing_results = [RuntimeError("rate-overlimit"), "WXYZ-9876"]

        await handle.emit(PairingRequired())
        await wait_until(lambda: self.printed)

        assert len(handle.pairing_requests) == 2
        assert "WXYZ-9876" in self.printed[0]
        assert controller.counters.pairing_attempts == 2
        await self.finish()

    @pytest.mark.asyncio
    async def test_single_pairing_retry_timer(self, tmp_path, transport, dispatcher, fast_policy):
        store = SessionStore(tmp_path / "sessions")
        policy = replace(fast_policy, pairing_base_delay=5, pairing_max_delay=5)
        controller = self.make(transport, dispatcher, policy, store)
        await wait_until(lambda: transport.handles)
        handle = transport.latest
        handle.pairing_results = [RuntimeError("rate-overlimit")]

        await handle.emit(PairingRequired())
        await wait_until(lambda: controller.pending_timers == ["pairing"])
        timer = controller._timers["pairing"]

        # A second failure report and a QR refresh while the retry is pending
        await controller.post(PairingFailed("rate-overlimit"))
        await handle.emit(PairingRequired())
        await controller.join()

        assert controller.pending_timers == ["pairing"]
        assert controller._timers["pairing"] is timer
        assert len(handle.pairing_requests) == 1
        assert controller.counters.pairing_attempts == 1

        await self.finish()
        assert controller.pending_timers == []
        assert timer.cancelled()

    @pytest.mark.asyncio
    async def test_missing_phone_number_is_terminal(self, tmp_path, transport, dispatcher, fast_policy):
        store = SessionStore(tmp_path / "sessions")
        controller = self.make(transport, dispatcher, fast_policy, store, phone=None)
        await wait_until(lambda: transport.handles)

        await transport.latest.emit(PairingRequired())
        await wait_until(lambda: controller.state is ConnectionState.CLOSED_TERMINAL)

        assert controller.pending_timers == []
        assert "PHONE_NUMBER" in controller.terminal_reason
        await self.finish()


class TestDisconnects(ControllerHarness):

    def saved_store(self, tmp_path, cls=SessionStore):
        store = cls(tmp_path / "sessions")
        store.save(Session(creds={"registered": True, "me": {"id": BOT_JID}}))
        return store

    @pytest.mark.asyncio
    async def test_auth_failure_clears_and_reconnects(self, tmp_path, transport, dispatcher, fast_policy):
        store = self.saved_store(tmp_path)
        controller = self.make(transport, dispatcher, fast_policy, store)
        await self.open(transport)
        first = transport.latest
        assert first.session.is_registered

        await first.emit(ConnectionClosed(status_code=500, reason="Stream Errored (401)"))
        await wait_until(lambda: len(transport.handles) == 2)

        assert first.closed
        assert store.load() is None
        assert transport.latest.session is None
        assert controller.counters.connection_attempts == 0
        assert "AuthInvalidError" in controller.status()["last_error"]
        await self.finish()

    @pytest.mark.asyncio
    async def test_generic_drops_clear_at_limit(self, tmp_path, transport, dispatcher, fast_policy):
        store = self.saved_store(tmp_path)
        policy = replace(fast_policy, max_connection_attempts=4)
        controller = self.make(transport, dispatcher, policy, store)
        await wait_until(lambda: transport.handles)

        for drop in range(1, 4):
            await transport.latest.emit(GENERIC_DROP)
            await wait_until(lambda: len(transport.handles) == drop + 1)
            assert controller.counters.connection_attempts == drop
            assert store.load() is not None

        await transport.latest.emit(GENERIC_DROP)
        await wait_until(lambda: len(transport.handles) == 5)
        assert store.load() is None
        assert controller.counters.connection_attempts == 0
        await self.finish()

    @pytest.mark.asyncio
    async def test_counter_resets_on_open(self, tmp_path, transport, dispatcher, fast_policy):
        store = self.saved_store(tmp_path)
        controller = self.make(transport, dispatcher, fast_policy, store)
        await wait_until(lambda: transport.handles)

        await transport.latest.emit(GENERIC_DROP)
        await wait_until(lambda: len(transport.handles) == 2)
        assert controller.counters.connection_attempts == 1

        await self.open(transport)
        assert controller.counters.connection_attempts == 0
        assert not dispatcher.ready[0].is_new_login
        await self.finish()

    @pytest.mark.asyncio
    async def test_logged_out_is_terminal(self, tmp_path, transport, dispatcher, fast_policy):
        store = self.saved_store(tmp_path)
        controller = self.make(transport, dispatcher, fast_policy, store)
        await self.open(transport)

        await transport.latest.emit(ConnectionClosed(status_code=401, reason="Connection Failure"))
        await controller.join()
        await asyncio.sleep(0.05)

        assert controller.state is ConnectionState.CLOSED_TERMINAL
        assert controller.pending_timers == []
        assert len(transport.handles) == 1
        assert transport.latest.closed
        assert controller.status()["terminal_reason"] == "logged out"
        await self.finish()

    @pytest.mark.asyncio
    async def test_stale_handle_events_dropped(self, tmp_path, transport, dispatcher, fast_policy):
        store = self.saved_store(tmp_path)
        controller = self.make(transport, dispatcher, fast_policy, store)
        await self.open(transport)
        first = transport.latest

        await first.emit(GENERIC_DROP)
        await wait_until(lambda: len(transport.handles) == 2)
        await self.open(transport)

        # The replaced handle reports its close late
        await first.emit(GENERIC_DROP)
        await controller.join()

        assert controller.state is ConnectionState.OPEN
        assert controller.pending_timers == []
        assert len(transport.handles) == 2
        await self.finish()

    @pytest.mark.asyncio
    async def test_open_failure_backs_off(self, tmp_path, transport, dispatcher, fast_policy):
        store = self.saved_store(tmp_path)
        transport.open_errors = [TransportError("bridge down")]
        controller = self.make(transport, dispatcher, fast_policy, store)

        await wait_until(lambda: transport.handles)
        assert controller.counters.open_failures == 1
        assert controller.counters.connection_attempts == 0
        assert controller.state is ConnectionState.CONNECTING
        await self.finish()

    @pytest.mark.asyncio
    async def test_unreachable_bridge_keeps_session(self, tmp_path, transport, dispatcher, fast_policy):
        store = self.saved_store(tmp_path)
        policy = replace(fast_policy, max_connection_attempts=3)
        transport.open_errors = [TransportError("Cannot reach WhatsApp bridge") for _ in range(3)]
        controller = self.make(transport, dispatcher, policy, store)

        await self.open(transport)

        assert store.load().is_registered
        assert transport.latest.session.is_registered
        assert controller.counters == RetryCounters()
        await self.finish()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_reconnect(self, tmp_path, transport, dispatcher, fast_policy):
        store = self.saved_store(tmp_path)
        policy = replace(fast_policy, base_delay=0.3, cap_delay=0.3)
        controller = self.make(transport, dispatcher, policy, store)
        await self.open(transport)

        await transport.latest.emit(GENERIC_DROP)
        await controller.join()
        assert controller.pending_timers == ["reconnect"]

        assert await self.finish() is ConnectionState.IDLE
        assert controller.pending_timers == []
        await asyncio.sleep(0.4)
        assert len(transport.handles) == 1
        assert store.load() is not None

    @pytest.mark.asyncio
    async def test_failed_clear_is_terminal(self, tmp_path, transport, dispatcher, fast_policy):
        store = self.saved_store(tmp_path, cls=BrokenClearStore)
        controller = self.make(transport, dispatcher, fast_policy, store)
        await self.open(transport)

        await transport.latest.emit(ConnectionClosed(status_code=None, reason="Connection Failure"))
        await wait_until(lambda: controller.state is ConnectionState.CLOSED_TERMINAL)
        await asyncio.sleep(0.05)

        assert controller.pending_timers == []
        assert len(transport.handles) == 1
        await self.finish()

    @pytest.mark.asyncio
    async def test_operator_reset(self, tmp_path, transport, dispatcher, fast_policy):
        store = self.saved_store(tmp_path)
        controller = self.make(transport, dispatcher, fast_policy, store)
        await self.open(transport)

        await controller.request_session_reset("27683913716")
        await wait_until(lambda: len(transport.handles) == 2)

        assert store.load() is None
        await self.finish()


class TestMessageDelivery(ControllerHarness):

    @pytest.mark.asyncio
    async def test_dispatches_once_and_skips_own(self, tmp_path, transport, dispatcher, fast_policy):
        controller = self.make(transport, dispatcher, fast_policy, SessionStore(tmp_path / "s"), auto_read=True)
        await self.open(transport)

        await transport.latest.emit(MessagesReceived([
            inbound("m1", ".ping"),
            inbound("m1", ".ping"),
            inbound("m2", "mine", from_me=True),
        ]))
        await transport.latest.emit(MessagesReceived([inbound("m1", ".ping")]))
        await controller.join()

        assert [m.id for m in dispatcher.messages] == ["m1"]
        assert dispatcher.messages[0].text == ".ping"
        assert transport.latest.read == [{"remoteJid": "27111111111@s.whatsapp.net", "id": "m1", "fromMe": False}]
        await self.finish()

    @pytest.mark.asyncio
    async def test_malformed_entries_do_not_stop_delivery(self, tmp_path, transport, dispatcher, fast_policy):
        controller = self.make(transport, dispatcher, fast_policy, SessionStore(tmp_path / "s"))
        await self.open(transport)

        long_timestamp = inbound("m1", ".ping")
        long_timestamp["messageTimestamp"] = {"low": 1706745600, "high": 0, "unsigned": True}
        await transport.latest.emit(MessagesReceived(["garbage", long_timestamp, None, inbound("m2", ".menu")]))
        await controller.join()

        assert [m.id for m in dispatcher.messages] == ["m1", "m2"]
        assert not self.task.done()
        assert controller.state is ConnectionState.OPEN
        await self.finish()

    @pytest.mark.asyncio
    async def test_messages_before_open_ignored(self, tmp_path, transport, dispatcher, fast_policy):
        controller = self.make(transport, dispatcher, fast_policy, SessionStore(tmp_path / "s"))
        await wait_until(lambda: transport.handles)

        await transport.latest.emit(MessagesReceived([inbound("m1", ".ping")]))
        await controller.join()

        assert dispatcher.messages == []
        await self.finish()

    @pytest.mark.asyncio
    async def test_auto_typing(self, tmp_path, transport, dispatcher, fast_policy):
        controller = self.make(
            transport, dispatcher, fast_policy, SessionStore(tmp_path / "s"),
            auto_typing=True, typing_duration=0,
        )
        await self.open(transport)

        await transport.latest.emit(MessagesReceived([inbound("m1", "hello")]))
        await controller.join()

        jid = "27111111111@s.whatsapp.net"
        assert transport.latest.presence == [("composing", jid), ("paused", jid)]
        await self.finish()
