"""Session lifecycle: the single owner of status, QR payload and client handle.

All mutations of the (status, qr_code, handle) triple happen while holding
``self._lock`` and are followed, still under the lock, by exactly one broadcast
of the resulting snapshot. Automation-client callbacks never mutate state
directly: they are posted to an inbox and applied by one consumer task in
arrival order. Long waits (browser start-up, logout) happen outside the lock.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Optional

from ..config import BROWSER_HEADLESS, QR_TIMEOUT_MS, SESSION_NAME, TOKENS_DIR
from ..constants import CONNECTION_STATE_CONNECTED
from ..models.session import CommandOutcome, SessionSnapshot, SessionStatus
from .broadcaster import StatusBroadcaster
from .client import AutomationClient, ClientHandle
from .errors import AutomationFailure

logger = logging.getLogger(__name__)

_QR = "qr"
_STATUS = "status"


class SessionStateMachine:
    """Owns the WhatsApp session and serializes its lifecycle transitions."""

    def __init__(
        self,
        client: AutomationClient,
        broadcaster: StatusBroadcaster,
        *,
        session_name: str = SESSION_NAME,
        client_options: Optional[dict[str, Any]] = None,
    ) -> None:
        self._client = client
        self._broadcaster = broadcaster
        self._session_name = session_name
        self._client_options = client_options or {
            "headless": BROWSER_HEADLESS,
            "auto_close_ms": QR_TIMEOUT_MS,
            "session_folder": str(TOKENS_DIR),
        }

        self._lock = asyncio.Lock()
        self._status = SessionStatus.NOT_LOGGED
        self._qr_code: Optional[str] = None
        self._last_qr: Optional[str] = None
        self._handle: Optional[ClientHandle] = None

        # Callbacks are accepted only from the session generation that is current
        self._generation = 0
        self._active_generation: Optional[int] = None
        self._start_in_flight = False
        self._logout_in_flight = False
        self._cancel_requested = False

        self._inbox: asyncio.Queue[tuple[int, str, str]] = asyncio.Queue()
        self._consumer: Optional[asyncio.Task[None]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None

        broadcaster.bind(self.current_snapshot)

    # ── Queries ──────────────────────────────────────────────────────────────

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def has_handle(self) -> bool:
        return self._handle is not None

    @property
    def handle(self) -> Optional[ClientHandle]:
        return self._handle

    def is_ready(self) -> bool:
        return self._handle is not None and self._status.is_connected

    def current_snapshot(self) -> SessionSnapshot:
        qr_code = self._qr_code if self._status is SessionStatus.QR_READ else None
        return SessionSnapshot(status=self._status, qr_code=qr_code)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def open(self) -> None:
        """Start the callback consumer. Idempotent."""
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="session-callbacks")

    async def settle(self) -> None:
        """Wait until every callback posted so far has been applied."""
        await self.open()
        await self._inbox.join()

    async def close(self) -> None:
        """Shut down: stop consuming callbacks and close the client handle."""
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

        async with self._lock:
            handle = self._handle
            self._handle = None
            self._active_generation = None

        if handle is not None:
            logger.info("Closing WhatsApp client...")
            await self._close_quietly(handle)
            logger.info("WhatsApp client closed.")

    # ── Commands ─────────────────────────────────────────────────────────────

    async def start(self) -> CommandOutcome:
        """Bring up a session; may take minutes while the QR code waits to be scanned.

        Raises AutomationFailure if the client cannot create the session or
        report its connection state.
        """
        await self.open()

        async with self._lock:
            if self._logout_in_flight:
                logger.warning("Session start requested while a logout is still running")
                return CommandOutcome(
                    ok=False,
                    rejected=True,
                    status=self._status,
                    message="Logout in progress; try again once it completes.",
                    snapshot=self.current_snapshot(),
                )
            if self._start_in_flight or self._handle is not None or self._status.is_active:
                logger.warning(
                    f"Session start requested but already started or in progress (status={self._status.value})"
                )
                return CommandOutcome(
                    ok=False,
                    rejected=True,
                    status=self._status,
                    message="Session already active or starting.",
                    snapshot=self.current_snapshot(),
                )
            self._start_in_flight = True
            self._cancel_requested = False
            self._generation += 1
            generation = self._generation
            self._active_generation = generation
            self._last_qr = None
            logger.info(f"Starting WhatsApp session: {self._session_name}")
            self._transition(SessionStatus.STARTING)

        try:
            return await self._bring_up(generation)
        finally:
            self._start_in_flight = False

    async def logout(self) -> CommandOutcome:
        """Log the session out; a no-op that normalizes status when nothing is running.

        Raises AutomationFailure if the client handle fails to log out.
        """
        async with self._lock:
            handle = self._handle
            if self._logout_in_flight:
                logger.warning("Logout requested while another logout is still running")
                return CommandOutcome(
                    ok=False,
                    rejected=True,
                    status=self._status,
                    message="Logout already in progress.",
                    snapshot=self.current_snapshot(),
                )
            if handle is None:
                if self._start_in_flight:
                    logger.warning("Logout requested while the session is starting; cancelling start")
                    self._cancel_requested = True
                    return CommandOutcome(
                        ok=True,
                        status=self._status,
                        message="Logout requested; the session will be closed once it finishes starting.",
                        snapshot=self.current_snapshot(),
                    )
                logger.warning("Logout called but no active session found.")
                self._transition(SessionStatus.NOT_LOGGED)
                return CommandOutcome(
                    ok=False,
                    rejected=True,
                    status=self._status,
                    message="No active session to log out.",
                    snapshot=self.current_snapshot(),
                )
            # The session's own disconnect callbacks are ignored from here on, so
            # the transition below is the only one this logout produces.
            self._handle = None
            self._active_generation = None
            # Held until the old browser is closed, so no new session shares its profile
            self._logout_in_flight = True

        try:
            logger.info("Attempting to logout...")
            try:
                await handle.logout()
            except Exception as e:
                logger.error(f"Error during logout: {e}", exc_info=True)
                async with self._lock:
                    self._transition(SessionStatus.ERROR)
                await self._close_quietly(handle)
                raise AutomationFailure(f"Logout failed: {e}", snapshot=self.current_snapshot()) from e

            async with self._lock:
                self._transition(SessionStatus.NOT_LOGGED)
            logger.info("Logout successful.")
            await self._close_quietly(handle)
        finally:
            self._logout_in_flight = False
        return CommandOutcome(
            ok=True,
            status=self._status,
            message="Logout successful.",
            snapshot=self.current_snapshot(),
        )

    # ── Automation client callbacks ──────────────────────────────────────────

    def on_qr(self, generation: int, payload: str) -> None:
        self._post(generation, _QR, payload)

    def on_status(self, generation: int, status: str) -> None:
        self._post(generation, _STATUS, status)

    # ── Internals ────────────────────────────────────────────────────────────

    async def _bring_up(self, generation: int) -> CommandOutcome:
        try:
            handle = await self._client.create_session(
                self._session_name,
                lambda payload: self.on_qr(generation, payload),
                lambda status: self.on_status(generation, status),
                dict(self._client_options),
            )
        except Exception as e:
            logger.error(f"Error starting WhatsApp session: {e}", exc_info=True)
            await self._inbox.join()
            async with self._lock:
                self._active_generation = None
                self._handle = None
                self._transition(SessionStatus.ERROR)
            raise AutomationFailure(f"Failed to start session: {e}", snapshot=self.current_snapshot()) from e

        logger.info("WhatsApp client instance created.")
        await self._inbox.join()

        async with self._lock:
            if self._cancel_requested or self._active_generation != generation:
                cancelled = True
            else:
                cancelled = False
                self._handle = handle
                already_connected = self._status.is_connected

        if cancelled:
            logger.info("Session start was cancelled by a logout request; closing client.")
            try:
                await handle.logout()
            except Exception as e:
                logger.warning(f"Logout of cancelled session failed: {e}")
            await self._close_quietly(handle)
            async with self._lock:
                if self._active_generation == generation:
                    self._active_generation = None
                self._transition(SessionStatus.NOT_LOGGED)
            return self._outcome(True, "Session start cancelled.")

        if already_connected:
            logger.info("Client status already updated to logged in state by callback.")
            return self._outcome(True, "Session initialization started.")

        try:
            connection_state = await handle.get_connection_state()
        except Exception as e:
            logger.error(f"Error getting connection state after create: {e}", exc_info=True)
            async with self._lock:
                if self._handle is handle:
                    self._handle = None
                    self._active_generation = None
                self._transition(SessionStatus.ERROR)
            await self._close_quietly(handle)
            raise AutomationFailure(
                f"Could not read connection state: {e}", snapshot=self.current_snapshot()
            ) from e

        logger.info(f"Current connection state after create: {connection_state}")
        discard = False
        async with self._lock:
            if self._handle is not handle:
                # A disconnect callback already retired this handle
                pass
            elif self._status.is_connected:
                pass
            elif connection_state == CONNECTION_STATE_CONNECTED:
                self._transition(SessionStatus.IS_LOGGED)
            else:
                logger.warning("Client created but connection state is not CONNECTED.")
                self._handle = None
                self._active_generation = None
                self._transition(SessionStatus.NOT_LOGGED)
                discard = True

        if discard:
            await self._close_quietly(handle)
        return self._outcome(self.is_ready(), "Session initialization started.")

    def _outcome(self, ok: bool, message: str) -> CommandOutcome:
        return CommandOutcome(ok=ok, status=self._status, message=message, snapshot=self.current_snapshot())

    def _post(self, generation: int, kind: str, value: str) -> None:
        item = (generation, kind, value)
        loop = self._loop
        if loop is not None and loop.is_running() and threading.get_ident() != self._loop_thread:
            loop.call_soon_threadsafe(self._inbox.put_nowait, item)
        else:
            self._inbox.put_nowait(item)

    async def _consume(self) -> None:
        while True:
            generation, kind, value = await self._inbox.get()
            try:
                async with self._lock:
                    retired = self._apply(generation, kind, value)
                if retired is not None:
                    await self._close_quietly(retired)
            except Exception as e:
                logger.error(f"Failed to apply {kind} callback: {e}", exc_info=True)
            finally:
                self._inbox.task_done()

    def _apply(self, generation: int, kind: str, value: str) -> Optional[ClientHandle]:
        """Apply one callback; returns a handle that must be closed, if any."""
        if generation != self._active_generation:
            logger.debug(f"Ignoring stale {kind} callback from session generation {generation}")
            return None

        if kind == _QR:
            logger.info("QR Code Received")
            self._last_qr = value
            self._transition(SessionStatus.QR_READ, value)
            return None

        logger.info(f"Status callback received: {value}")
        status = SessionStatus.parse(value)
        if status is None:
            logger.debug(f"Ignoring unrecognized status: {value}")
            return None
        if status is SessionStatus.QR_READ:
            if self._last_qr is None:
                logger.warning("qrRead reported before any QR code was received; ignoring")
                return None
            self._transition(status, self._last_qr)
            return None

        retired = None
        if (status.is_disconnect or status is SessionStatus.ERROR) and self._handle is not None:
            logger.warning(f"Session disconnected or token deleted ({status.value}). Resetting client.")
            retired = self._handle
            self._handle = None
            self._active_generation = None
        self._transition(status)
        return retired

    def _transition(self, status: SessionStatus, qr_code: Optional[str] = None) -> None:
        """Set status (and QR, only for qrRead) then broadcast. Caller holds the lock."""
        new_qr = qr_code if status is SessionStatus.QR_READ else None
        if status is self._status and new_qr == self._qr_code:
            return
        self._status = status
        self._qr_code = new_qr
        logger.info(f"Session Status Updated: {status.value}")
        self._broadcaster.broadcast(self.current_snapshot())

    async def _close_quietly(self, handle: ClientHandle) -> None:
        try:
            await handle.close()
        except Exception as e:
            logger.warning(f"Error closing WhatsApp client: {e}")
