"""
Connection Controller

Owns the single transport handle, the lifecycle state and the retry
counters. Transport events, timer firings and pairing outcomes all go
through one queue and are processed one at a time; each is fed to
``transition()`` and the resulting effects are carried out here.

Events from a handle that has since been closed or replaced are dropped, so
a stale disconnect can never start a second reconnect cycle.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..channels.base import Transport, TransportHandle, TransportOptions
from ..channels.whatsapp.client import WhatsAppMessage
from ..dispatch.base import MessageDispatcher, ReadyInfo
from ..errors import ConfigInvalid, SessionStoreError, WabotError
from .pairing import PairingController
from .session_store import Session, SessionStore
from .state import (
    CancelPairing,
    CancelTimers,
    ClearSession,
    CloseTransport,
    ConnectionClosed,
    ConnectionState,
    DispatchMessages,
    Effect,
    Event,
    LifecyclePolicy,
    NotifyReady,
    OpenFailed,
    OpenTransport,
    PairingAborted,
    PairingCodeIssued,
    PairingFailed,
    PairingRequired,
    PairingRetryDue,
    PersistCredentials,
    ReconnectDue,
    ReportTerminal,
    RequestPairingCode,
    RetryCounters,
    ScheduleReconnect,
    SchedulePairingRetry,
    SessionClearFailed,
    SessionResetRequested,
    Shutdown,
    Start,
    transition,
)

logger = logging.getLogger(__name__)

RECONNECT_TIMER = "reconnect"
PAIRING_TIMER = "pairing"

# Remembered inbound message ids, for at-most-once dispatch
DISPATCH_HISTORY = 1000

_STOP = object()


class ConnectionController:
    """
    Lifecycle controller for one WhatsApp session.

    Example:
        controller = ConnectionController(transport, SessionStore("./sessions"),
                                          dispatcher, LifecyclePolicy(), "27683913716")
        task = asyncio.create_task(controller.run())
        ...
        await controller.stop()
        await task
    """

    def __init__(
        self,
        transport: Transport,
        store: SessionStore,
        dispatcher: MessageDispatcher,
        policy: Optional[LifecyclePolicy] = None,
        phone_number: Optional[str] = None,
        transport_options: Optional[TransportOptions] = None,
        pairing_settle_delay: float = 3.0,
        country_code: str = "27",
        national_length: int = 9,
        auto_read: bool = False,
        auto_typing: bool = False,
        typing_duration: float = 1.0,
        console: Callable[[str], None] = print,
    ):
        self.transport = transport
        self.store = store
        self.dispatcher = dispatcher
        self.policy = policy or LifecyclePolicy()
        self.transport_options = transport_options or TransportOptions()
        self.auto_read = auto_read
        self.auto_typing = auto_typing
        self.typing_duration = typing_duration

        self.state = ConnectionState.IDLE
        self.counters = RetryCounters()
        self.terminal_reason: Optional[str] = None
        self.last_error: Optional[WabotError] = None

        self.pairing = PairingController(
            phone_number=phone_number,
            post_event=self.post,
            max_attempts=self.policy.max_pairing_attempts,
            settle_delay=pairing_settle_delay,
            country_code=country_code,
            national_length=national_length,
            console=console,
        )

        self._queue: asyncio.Queue = asyncio.Queue()
        self._handle: Optional[TransportHandle] = None
        self._generation = 0
        self._session: Optional[Session] = None
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._background: set = set()
        self._dispatched: "OrderedDict[str, None]" = OrderedDict()
        self._opened_once = False
        self._stopping = False

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    @property
    def handle(self) -> Optional[TransportHandle]:
        return self._handle

    @property
    def pending_timers(self) -> List[str]:
        return sorted(self._timers)

    def status(self) -> Dict[str, Any]:
        """Snapshot of the lifecycle for operator-facing commands."""
        return {
            "state": self.state.value,
            "connection_attempts": self.counters.connection_attempts,
            "open_failures": self.counters.open_failures,
            "pairing_attempts": self.counters.pairing_attempts,
            "user_id": self._handle.user_id if self._handle else None,
            "pending_timers": self.pending_timers,
            "terminal_reason": self.terminal_reason,
            "last_error": repr(self.last_error) if self.last_error else None,
        }

    async def post(self, event: Event):
        """Queue a controller-originated event."""
        await self._queue.put((None, event))

    async def request_session_reset(self, requested_by: str = ""):
        await self.post(SessionResetRequested(requested_by=requested_by))

    async def run(self) -> ConnectionState:
        """
        Process events until ``stop()`` is called.

        Returns:
            The final connection state
        """
        await self.post(Start())
        try:
            while True:
                generation, event = await self._queue.get()
                try:
                    if event is _STOP:
                        break
                    await self._process(generation, event)
                finally:
                    self._queue.task_done()
        finally:
            await self._cleanup()
        return self.state

    async def stop(self):
        """Shut down without treating the close as a retryable disconnect."""
        if self._stopping:
            return
        self._stopping = True
        await self._queue.put((None, Shutdown()))
        await self._queue.put((None, _STOP))

    async def join(self):
        """Wait until every queued event and background delivery has finished."""
        while True:
            await self._queue.join()
            if not self._background:
                return
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # EVENT PROCESSING
    # =========================================================================

    def _callback(self, generation: int):
        async def on_event(event: Event):
            await self._queue.put((generation, event))
        return on_event

    async def _process(self, generation: Optional[int], event: Event):
        if generation is not None and generation != self._generation:
            logger.debug(f"Dropping {type(event).__name__} from superseded transport handle")
            return

        if isinstance(event, PairingRequired) and (self.pairing.busy or PAIRING_TIMER in self._timers):
            logger.debug("Pairing already in progress; ignoring refresh")
            return

        if isinstance(event, (PairingCodeIssued, PairingFailed)):
            self.pairing.resolve()

        if isinstance(event, ConnectionClosed):
            logger.info(f"Connection closed due to: {event.reason} (status {event.status_code})")

        previous = self.state
        result = transition(self.state, self.counters, event, self.policy)

        if result.cause is not None:
            self.last_error = result.cause.as_error(event.reason)
            logger.warning(f"Disconnect classified as {result.cause.value} ({type(self.last_error).__name__})")
        if result.state is not previous:
            logger.info(f"Connection state: {previous.value} -> {result.state.value} ({type(event).__name__})")

        self.state = result.state
        self.counters = result.counters

        for effect in result.effects:
            await self._apply(effect)

    async def _apply(self, effect: Effect):
        if isinstance(effect, OpenTransport):
            await self._open_transport()
        elif isinstance(effect, CloseTransport):
            await self._close_transport()
        elif isinstance(effect, ClearSession):
            await self._clear_session(effect.reason)
        elif isinstance(effect, PersistCredentials):
            self._persist_credentials(effect.update)
        elif isinstance(effect, ScheduleReconnect):
            if self._schedule(RECONNECT_TIMER, effect.delay, ReconnectDue()):
                logger.info(f"Reconnecting in {effect.delay:g} seconds... ({effect.reason})")
        elif isinstance(effect, RequestPairingCode):
            await self._request_pairing(effect.attempt)
        elif isinstance(effect, SchedulePairingRetry):
            if self._schedule(PAIRING_TIMER, effect.delay, PairingRetryDue()):
                logger.info(f"Retrying pairing code generation in {effect.delay:g} seconds...")
        elif isinstance(effect, CancelPairing):
            self._cancel_timer(PAIRING_TIMER)
            await self.pairing.cancel()
        elif isinstance(effect, CancelTimers):
            for purpose in list(self._timers):
                self._cancel_timer(purpose)
        elif isinstance(effect, NotifyReady):
            await self._notify_ready(effect)
        elif isinstance(effect, DispatchMessages):
            self._deliver(effect.messages)
        elif isinstance(effect, ReportTerminal):
            self.terminal_reason = effect.reason
            logger.error(
                f"Connection closed permanently: {effect.reason}. "
                f"Re-pair the device and restart the bot."
            )

    # =========================================================================
    # EFFECTS
    # =========================================================================

    async def _open_transport(self):
        await self._close_transport()
        self._generation += 1
        generation = self._generation
        session = self._load_session()

        options = self.transport_options
        try:
            info = await self.transport.fetch_version()
            version = info.get("version")
            if version:
                options = replace(options, version=list(version))
                logger.info(f"Using WA v{'.'.join(str(v) for v in version)}, isLatest: {info.get('isLatest')}")
        except Exception as e:
            logger.warning(f"Could not fetch latest WA version, using bridge default: {e}")

        try:
            handle = await self.transport.open(options, session, self._callback(generation))
        except Exception as e:
            logger.error(f"Error creating WhatsApp connection: {e}")
            await self.post(OpenFailed(reason=str(e)))
            return

        if generation != self._generation:
            # Superseded while opening
            await handle.close()
            return
        self._handle = handle

    async def _close_transport(self):
        handle, self._handle = self._handle, None
        self._generation += 1
        if handle is None:
            return
        try:
            await handle.close()
        except Exception as e:
            logger.warning(f"Error closing transport handle: {e}")

    def _load_session(self) -> Optional[Session]:
        try:
            session = self.store.load()
        except SessionStoreError as e:
            logger.error(f"Failed to load session, starting unregistered: {e}")
            session = None

        if session is None:
            logger.info("No stored session found; pairing will be required")
        self._session = session
        return session

    def _persist_credentials(self, update: Dict[str, Any]):
        session = (self._session or Session()).merge(update)
        self._session = session
        try:
            self.store.save(session)
        except SessionStoreError as e:
            logger.error(f"Failed to persist credentials: {e}")

    async def _clear_session(self, reason: str):
        last_error = None
        for _ in range(2):
            try:
                self.store.clear()
            except SessionStoreError as e:
                last_error = e
                logger.error(f"Failed to clear session data: {e}")
                continue
            self._session = None
            logger.warning(f"Session invalidated ({reason})")
            return

        logger.critical(
            f"Cannot clear session data at {self.store.session_dir}; "
            f"refusing to continue with stale credentials: {last_error}"
        )
        await self.post(SessionClearFailed(reason=str(last_error)))

    async def _request_pairing(self, attempt: int):
        if self._handle is None:
            logger.warning("Pairing requested without an open transport handle")
            return
        try:
            self.pairing.begin(self._handle, attempt)
        except ConfigInvalid as e:
            logger.error(f"Cannot pair: {e}")
            await self.post(PairingAborted(reason=str(e)))

    async def _notify_ready(self, effect: NotifyReady):
        logger.info("WhatsApp connection established successfully!")
        logger.info(f"Bot Number: {effect.user_id}")

        info = ReadyInfo(
            user_id=effect.user_id,
            is_new_login=effect.is_new_login,
            first_connect=not self._opened_once,
        )
        self._opened_once = True
        try:
            await self.dispatcher.on_ready(self._handle, info)
        except Exception as e:
            logger.error(f"Ready notification failed: {e}")

    def _deliver(self, messages: List[Dict[str, Any]]):
        batch: List[WhatsAppMessage] = []
        for raw in messages:
            try:
                message = WhatsAppMessage.from_bridge(raw)
            except Exception:
                logger.exception(f"Skipping malformed inbound message: {raw!r:.200}")
                continue
            if message.from_me or not message.id:
                continue
            if message.id in self._dispatched:
                logger.debug(f"Skipping already dispatched message {message.id}")
                continue
            self._dispatched[message.id] = None
            if len(self._dispatched) > DISPATCH_HISTORY:
                self._dispatched.popitem(last=False)
            batch.append(message)

        if batch:
            task = asyncio.create_task(self._dispatch_batch(self._handle, batch))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _dispatch_batch(self, handle: TransportHandle, batch: List[WhatsAppMessage]):
        for message in batch:
            if self.auto_read:
                try:
                    await handle.mark_read([message.key])
                except Exception as e:
                    logger.warning(f"Failed to mark message read: {e}")

            try:
                await self.dispatcher.dispatch(handle, message)
            except Exception:
                logger.exception(f"Error handling message {message.id}")

            if self.auto_typing:
                await self._show_typing(handle, message.remote_jid)

    async def _show_typing(self, handle: TransportHandle, jid: str):
        try:
            await handle.send_presence("composing", jid)
            await asyncio.sleep(self.typing_duration)
            await handle.send_presence("paused", jid)
        except Exception as e:
            logger.warning(f"Failed to update presence: {e}")

    # =========================================================================
    # TIMERS
    # =========================================================================

    def _schedule(self, purpose: str, delay: float, event: Event) -> bool:
        if purpose in self._timers:
            logger.warning(f"A {purpose} timer is already pending; not scheduling another")
            return False
        loop = asyncio.get_running_loop()
        self._timers[purpose] = loop.call_later(delay, self._fire, purpose, event)
        return True

    def _fire(self, purpose: str, event: Event):
        self._timers.pop(purpose, None)
        self._queue.put_nowait((None, event))

    def _cancel_timer(self, purpose: str):
        timer = self._timers.pop(purpose, None)
        if timer:
            timer.cancel()

    async def _cleanup(self):
        for purpose in list(self._timers):
            self._cancel_timer(purpose)
        await self.pairing.cancel()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._close_transport()
