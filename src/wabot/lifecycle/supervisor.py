"""
Process Supervisor

Builds the connection controller from configuration, runs it, turns SIGINT
and SIGTERM into a graceful shutdown, and restarts the controller after an
internal fault (a bug, not a disconnect) within a bounded budget.
"""

import asyncio
import logging
import signal
from typing import Optional

from ..channels.base import Transport
from ..channels.whatsapp.client import WhatsAppBridgeTransport
from ..config.schema import BotConfig
from ..dispatch.base import MessageDispatcher
from ..dispatch.handler import CommandDispatcher
from . import backoff
from .controller import ConnectionController
from .session_store import SessionStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAULT = 1


class Supervisor:
    """
    Owns one ConnectionController at a time.

    Example:
        config = load_config()
        exit_code = await Supervisor(config).run()
    """

    def __init__(
        self,
        config: BotConfig,
        transport: Optional[Transport] = None,
        dispatcher: Optional[MessageDispatcher] = None,
    ):
        self.config = config
        self.transport = transport or WhatsAppBridgeTransport(
            config.bridge.http_url, config.bridge.ws_url
        )
        self.dispatcher = dispatcher or CommandDispatcher(
            config,
            status_provider=self._status,
            reset_session=self._reset_session,
        )
        self.controller: Optional[ConnectionController] = None
        self.restarts = 0
        self._stop_requested = asyncio.Event()

    def build_controller(self) -> ConnectionController:
        config = self.config
        return ConnectionController(
            transport=self.transport,
            store=SessionStore(config.session_dir),
            dispatcher=self.dispatcher,
            policy=config.lifecycle_policy(),
            phone_number=config.pairing.phone_number,
            transport_options=config.bridge.transport_options(),
            pairing_settle_delay=config.pairing.settle_delay,
            country_code=config.pairing.country_code,
            national_length=config.pairing.national_length,
            auto_read=config.auto_read,
            auto_typing=config.auto_typing,
        )

    def _status(self):
        return self.controller.status() if self.controller else {}

    async def _reset_session(self, requested_by: str):
        if self.controller:
            await self.controller.request_session_reset(requested_by)

    def request_stop(self, signame: str = ""):
        if signame:
            logger.info(f"Received {signame}, shutting down gracefully...")
        self._stop_requested.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig.name)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                logger.debug(f"Cannot install handler for {sig.name}")

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context):
        exc = context.get("exception")
        logger.error(f"Unhandled error in background task: {context.get('message')}", exc_info=exc)

    async def run(self) -> int:
        """
        Run until a signal arrives or the restart budget is spent.

        Returns:
            Process exit code
        """
        loop = asyncio.get_running_loop()
        self._install_signal_handlers(loop)
        loop.set_exception_handler(self._on_loop_exception)

        logger.info(f"Starting {self.config.name}...")
        logger.info(f"Mode: {'Private' if self.config.private_mode else 'Public'}")
        logger.info(f"Prefix: {self.config.prefix}")

        try:
            return await self._supervise()
        finally:
            self._remove_signal_handlers(loop)
            loop.set_exception_handler(None)

    async def _supervise(self) -> int:
        budget = self.config.supervisor

        while not self._stop_requested.is_set():
            self.controller = self.build_controller()
            run_task = asyncio.create_task(self.controller.run())
            stop_task = asyncio.create_task(self._stop_requested.wait())

            done, _ = await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

            if run_task not in done:
                await self._shutdown(run_task)
                return EXIT_OK

            stop_task.cancel()
            exc = run_task.exception()
            if exc is None:
                logger.info("Connection controller stopped")
                return EXIT_OK

            self.restarts += 1
            logger.error(
                f"Connection controller crashed ({self.restarts}/{budget.max_restarts}): {exc}",
                exc_info=exc,
            )
            if self.restarts > budget.max_restarts:
                logger.critical("Restart budget exhausted; exiting")
                return EXIT_FAULT

            wait = backoff.delay(self.restarts - 1, budget.restart_delay, budget.restart_delay,
                                 budget.restart_delay * budget.max_restarts)
            logger.info(f"Restarting connection controller in {wait:g} seconds...")
            try:
                await asyncio.wait_for(self._stop_requested.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

        return EXIT_OK

    async def _shutdown(self, run_task: asyncio.Task):
        await self.controller.stop()
        try:
            await asyncio.wait_for(run_task, timeout=self.config.supervisor.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("Shutdown timed out; cancelling connection controller")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")
        logger.info("Shutdown complete")
