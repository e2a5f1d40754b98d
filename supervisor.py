"""Session supervisor — connection state machine, login challenges, reconnects.

Owns exactly one messaging session at a time. Everything that can change
session state arrives as an item on the daemon's event queue:

    Envelope(generation, event)          events pumped from the current session
    Envelope(generation, StreamEnded())  the session's event source is exhausted
    ReconnectDue(token)                  the reconnect timer fired

The daemon consumes that queue one item at a time and hands each item to
dispatch(), so no two handlers ever run concurrently. Envelopes from a
superseded session (including its end-of-stream marker) and stale
reconnect tokens are dropped. When the current session's stream ends,
dispatch() sets `exhausted` and the daemon shuts down.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from channels import (
    LOGGED_OUT,
    ConnectionUpdate,
    ContactInfo,
    CredentialsUpdate,
    InboundMessage,
    MessagingSession,
    SessionEvent,
    SessionFactory,
)
from credentials import CredentialStore
from retry import RetryPolicy

log = logging.getLogger(__name__)


class Phase(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_CHALLENGE = "awaiting_challenge"
    OPEN = "open"
    CLOSED = "closed"
    LOGGED_OUT = "logged_out"


class ChallengeKind(enum.Enum):
    QR = "qr"
    PAIRING_CODE = "pairing_code"


@dataclass(frozen=True)
class SessionState:
    phase: Phase
    challenge_kind: ChallengeKind | None = None
    challenge: str | None = None
    reason: str = ""


@dataclass(frozen=True)
class StreamEnded:
    """End-of-stream marker pumped after a session's last event."""


@dataclass(frozen=True)
class Envelope:
    generation: int
    event: SessionEvent | StreamEnded


@dataclass(frozen=True)
class ReconnectDue:
    token: int


Emit = Callable[[Any], Awaitable[None]]
MessageHandler = Callable[[InboundMessage], Awaitable[Any]]


class SessionSupervisor:
    def __init__(
        self,
        session_factory: SessionFactory,
        credentials: CredentialStore,
        emit: Emit,
        reconnect_delay: float = 5.0,
        auth_method: str = "qr",
        pairing_phone: str = "",
        pairing_retry: RetryPolicy | None = None,
        on_message: MessageHandler | None = None,
        on_logout: Callable[[], None] | None = None,
    ):
        self._factory = session_factory
        self.credentials = credentials
        self._emit = emit
        self.reconnect_delay = reconnect_delay
        self.auth_method = auth_method
        self.pairing_phone = pairing_phone
        self.pairing_retry = pairing_retry or RetryPolicy(attempts=2, delay=1.0)
        self.on_message = on_message
        self.on_logout = on_logout

        self.state = SessionState(Phase.IDLE)
        self.ready = False
        self.last_error = ""
        self.connect_attempts = 0
        self.exhausted = False

        self._session: MessagingSession | None = None
        self._pump_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._reconnect_token = 0
        self._generation = 0
        self._started = False
        self._stopped = False

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Open a new session with the stored credentials.

        A factory failure on the very first start propagates (the
        collaborator cannot be built at all). Every later failure, and
        every connect failure, becomes a Closed state with a reconnect.
        """
        if self._stopped:
            return
        if self.state.phase is Phase.LOGGED_OUT:
            log.warning("Not starting: session is logged out")
            return

        self._cancel_reconnect()
        await self._teardown()
        generation = self._generation
        self.connect_attempts += 1
        self._set_state(SessionState(Phase.CONNECTING))

        creds = self.credentials.load()
        try:
            session = self._factory(creds)
        except Exception as e:
            if not self._started:
                raise
            log.exception("Could not create messaging session")
            self._close_transient(f"session setup failed: {e}")
            return
        self._started = True

        try:
            await session.connect()
        except Exception as e:
            log.warning("Connect failed: %s", e)
            try:
                await session.disconnect()
            except Exception as exc:
                log.debug("Disconnect after failed connect: %s", exc)
            self._close_transient(f"connect failed: {e}")
            return

        self._session = session
        self._pump_task = asyncio.create_task(self._pump(session, generation))
        log.info("Session started (%s credentials)", "stored" if creds else "no")

    async def stop(self) -> None:
        """Cancel timers and the event pump, disconnect the session."""
        self._stopped = True
        self.ready = False
        self._cancel_reconnect()
        await self._teardown()

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def probe(self, jid: str) -> ContactInfo:
        """Contact metadata lookup through the current session."""
        if self._session is None:
            raise ConnectionError("no active session")
        return await self._session.fetch_contact(jid)

    # ─── Dispatch ─────────────────────────────────────────────────

    async def dispatch(self, item: Envelope | ReconnectDue) -> None:
        """Handle one queue item. Called only from the daemon's event loop."""
        if isinstance(item, ReconnectDue):
            if item.token != self._reconnect_token or self._stopped:
                log.debug("Dropping stale reconnect (token %d)", item.token)
                return
            log.info("Reconnecting...")
            await self.start()
            return

        if item.generation != self._generation:
            log.debug("Dropping event from superseded session: %s", type(item.event).__name__)
            return

        event = item.event
        if isinstance(event, StreamEnded):
            log.info("Session event stream ended")
            self.exhausted = True
        elif isinstance(event, ConnectionUpdate):
            await self._on_connection_update(event)
        elif isinstance(event, CredentialsUpdate):
            self._on_credentials(event)
        elif isinstance(event, InboundMessage):
            if not self.ready:
                log.debug("Session not open, dropping message from %s", event.remote_jid)
                return
            if self.on_message is not None:
                await self.on_message(event)

    async def _on_connection_update(self, update: ConnectionUpdate) -> None:
        if update.qr:
            await self._on_challenge(update.qr)
        if update.connection == "open":
            self._on_open()
        elif update.connection == "close":
            await self._on_close(update)

    def _on_credentials(self, update: CredentialsUpdate) -> None:
        try:
            self.credentials.save(update.creds)
        except OSError as e:
            log.error("Failed to persist credentials (session continues): %s", e)
            return
        log.debug("Credentials updated (%d keys)", len(update.creds))

    async def _on_challenge(self, qr: str) -> None:
        self.ready = False
        if self.auth_method == "pairing_code" and self.pairing_phone:
            if self.state.challenge_kind is ChallengeKind.PAIRING_CODE:
                return  # code already issued for this attempt; QR refreshes don't matter
            session = self._session
            try:
                if session is None:
                    raise ConnectionError("no active session")
                code = await self.pairing_retry.run(
                    session.request_pairing_code, self.pairing_phone,
                    label="pairing code request",
                )
            except Exception as e:
                self.last_error = f"pairing code request failed: {e}"
                log.error("Pairing code request for %s failed, showing QR instead: %s",
                          self.pairing_phone, e)
            else:
                self._set_state(SessionState(
                    Phase.AWAITING_CHALLENGE, ChallengeKind.PAIRING_CODE, code,
                ))
                log.warning("Pairing code for %s: %s", self.pairing_phone, code)
                return

        self._set_state(SessionState(Phase.AWAITING_CHALLENGE, ChallengeKind.QR, qr))
        log.info("QR code received, scan it at /qr")
        log.debug("QR payload: %s", qr)

    def _on_open(self) -> None:
        self._set_state(SessionState(Phase.OPEN))
        self.ready = True
        self.last_error = ""
        self.connect_attempts = 0
        log.info("Connected! Listening for incoming private messages")

    async def _on_close(self, update: ConnectionUpdate) -> None:
        self.ready = False
        code = update.close_code
        reason = update.close_reason or (f"status {code}" if code is not None else "unknown")

        if code == LOGGED_OUT:
            self._cancel_reconnect()
            await self._teardown()
            self._set_state(SessionState(Phase.LOGGED_OUT, reason=reason))
            self.credentials.clear()
            if self.on_logout is not None:
                try:
                    self.on_logout()
                except Exception:
                    log.exception("on_logout callback failed")
            log.error("Logged out (%s). Clear the credential store and restart.", reason)
            return

        await self._teardown()
        self._close_transient(reason)

    def _close_transient(self, reason: str) -> None:
        self.last_error = reason
        self._set_state(SessionState(Phase.CLOSED, reason=reason))
        self._schedule_reconnect()
        log.warning("Disconnected: %s, reconnecting in %gs", reason, self.reconnect_delay)

    # ─── Internals ────────────────────────────────────────────────

    def _set_state(self, state: SessionState) -> None:
        if state.phase is not self.state.phase:
            log.debug("Session state: %s -> %s", self.state.phase.value, state.phase.value)
        self.state = state

    def _schedule_reconnect(self) -> None:
        """Arm the single reconnect timer, replacing any pending one."""
        self._cancel_reconnect()
        token = self._reconnect_token
        self._reconnect_task = asyncio.create_task(self._reconnect_after(token))

    async def _reconnect_after(self, token: int) -> None:
        await asyncio.sleep(self.reconnect_delay)
        await self._emit(ReconnectDue(token))

    def _cancel_reconnect(self) -> None:
        # Bumping the token also invalidates a ReconnectDue already queued
        self._reconnect_token += 1
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _pump(self, session: MessagingSession, generation: int) -> None:
        """Forward session events into the queue, tagged with their generation."""
        saw_close = False
        try:
            async for event in session.events():
                if isinstance(event, ConnectionUpdate) and event.connection == "close":
                    saw_close = True
                await self._emit(Envelope(generation, event))
        except Exception as e:
            log.warning("Session event stream failed: %s", e)
            if not saw_close:
                await self._emit(Envelope(generation, ConnectionUpdate(
                    connection="close", close_reason=f"transport error: {e}",
                )))
            return
        await self._emit(Envelope(generation, StreamEnded()))

    async def _teardown(self) -> None:
        """Retire the current session; its queued events become stale."""
        self._generation += 1
        task, self._pump_task = self._pump_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        session, self._session = self._session, None
        if session is not None:
            try:
                await session.disconnect()
            except Exception as e:
                log.debug("Session disconnect failed (non-critical): %s", e)

    # ─── Status ───────────────────────────────────────────────────

    def status_text(self) -> str:
        """Human-readable one-liner for the status page."""
        st = self.state
        if st.phase is Phase.IDLE:
            return "Initializing..."
        if st.phase is Phase.CONNECTING:
            return "Connecting to WhatsApp..."
        if st.phase is Phase.AWAITING_CHALLENGE:
            if st.challenge_kind is ChallengeKind.PAIRING_CODE:
                return (f"Waiting for login: enter pairing code {st.challenge} in WhatsApp "
                        "(Linked devices > Link with phone number)")
            return "Waiting for login: scan the QR code at /qr"
        if st.phase is Phase.OPEN:
            return "Connected! Listening for incoming private messages..."
        if st.phase is Phase.CLOSED:
            if self.reconnect_pending:
                return f"Disconnected: {st.reason}. Reconnecting in {self.reconnect_delay:g}s..."
            return f"Disconnected: {st.reason}"
        return "Logged out. Clear the credential store and restart."
