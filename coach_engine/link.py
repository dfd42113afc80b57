"""
TranscriptionLink — duplex streaming channel to the recognition service.

State machine
-------------
  IDLE → AUTHENTICATING → CONNECTED → ACTIVE → CLOSING → CLOSED
  ERROR is reachable from every non-terminal state.

  AUTHENTICATING  token being minted (also the first step of every reconnect)
  CONNECTED       socket open, waiting for SessionBegins
  ACTIVE          SessionBegins received; audio frames are forwarded

Audio is best-effort: send() forwards a frame only while ACTIVE and only when
the previous write has completed.  Anything else is dropped and counted, so a
slow socket can never back-pressure the capture thread.

Inbound JSON messages are parsed into TranscriptEvents and put on ``events``
in arrival order.  Malformed messages are logged and discarded.

An unexpected close triggers reconnection with exponential backoff
(base · 2^(n-1), capped at the ceiling) up to ``max_reconnect_attempts``;
after that the link enters ERROR and every ``on_failure`` listener is told.
Close codes that reconnecting cannot fix (auth / billing) fail immediately.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional
from urllib.parse import urlencode

import websockets

from .config import LinkConfig, ServiceConfig
from .errors import (
    AuthError,
    CoachEngineError,
    LinkError,
    MalformedMessageError,
    NonRetryableCloseError,
    ReconnectExhaustedError,
)
from .models import AudioFrame, EventKind, TranscriptEvent, Word
from .token_provider import TokenProvider, fetch_token_with_retry

log = logging.getLogger("coach_engine.link")

# 4001 not authorized, 4002 insufficient funds, 4003 free-tier user on a paid feature
NON_RETRYABLE_CLOSE_CODES = frozenset({4001, 4002, 4003})

TERMINATE_MESSAGE = json.dumps({"terminate_session": True})


class LinkState(Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"
    ERROR = "error"


_TRANSITIONS: dict[LinkState, frozenset[LinkState]] = {
    LinkState.IDLE:           frozenset({LinkState.AUTHENTICATING, LinkState.CLOSING, LinkState.ERROR}),
    LinkState.AUTHENTICATING: frozenset({LinkState.CONNECTED, LinkState.CLOSING, LinkState.ERROR}),
    LinkState.CONNECTED:      frozenset({LinkState.ACTIVE, LinkState.AUTHENTICATING, LinkState.CLOSING, LinkState.ERROR}),
    LinkState.ACTIVE:         frozenset({LinkState.AUTHENTICATING, LinkState.CLOSING, LinkState.ERROR}),
    LinkState.CLOSING:        frozenset({LinkState.CLOSED}),
    LinkState.CLOSED:         frozenset(),
    LinkState.ERROR:          frozenset(),
}


def backoff_delay(attempt: int, base: float = 1.0, ceiling: float = 30.0) -> float:
    """Delay before reconnect ``attempt`` (1-based): 1, 2, 4, 8, 16, 30, 30, …"""
    return min(base * 2 ** (attempt - 1), ceiling)


# ---------------------------------------------------------------------------
# Wire parsing
# ---------------------------------------------------------------------------

def _parse_word(raw: dict) -> Word:
    try:
        return Word(
            text=str(raw["text"]),
            start_ms=int(raw["start"]),
            end_ms=int(raw["end"]),
            confidence=float(raw.get("confidence", 0.0)),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise MalformedMessageError(f"bad word entry {raw!r}: {exc}") from exc


def _optional_int(value) -> Optional[int]:
    return None if value is None else int(value)


def parse_message(raw: str | bytes) -> TranscriptEvent:
    """Parse one inbound service message.  Raises MalformedMessageError."""
    if isinstance(raw, (bytes, bytearray)):
        raise MalformedMessageError("unexpected binary message from service")
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise MalformedMessageError(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedMessageError("message is not a JSON object")

    if data.get("error"):
        return TranscriptEvent(kind=EventKind.ERROR, error=str(data["error"]))

    message_type = data.get("message_type")
    try:
        kind = EventKind(message_type)
    except ValueError as exc:
        raise MalformedMessageError(f"unknown message_type {message_type!r}") from exc

    if kind is EventKind.SESSION_BEGINS:
        return TranscriptEvent(kind=kind, session_id=data.get("session_id"))
    if kind not in (EventKind.PARTIAL, EventKind.FINAL):
        return TranscriptEvent(kind=kind)

    text = data.get("text") or ""
    if not isinstance(text, str):
        raise MalformedMessageError("transcript text is not a string")
    raw_words = data.get("words") or []
    if not isinstance(raw_words, list):
        raise MalformedMessageError("words is not a list")
    words = tuple(_parse_word(w) for w in raw_words)
    try:
        return TranscriptEvent(
            kind=kind,
            text=text,
            words=words,
            confidence=float(data.get("confidence") or 0.0),
            audio_start_ms=_optional_int(data.get("audio_start")),
            audio_end_ms=_optional_int(data.get("audio_end")),
        )
    except (TypeError, ValueError) as exc:
        raise MalformedMessageError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Link
# ---------------------------------------------------------------------------

ConnectionListener = Callable[[bool], None]
FailureListener = Callable[[CoachEngineError], None]


class TranscriptionLink:
    """One streaming session with the recognition service.  Single use."""

    def __init__(
        self,
        token_provider: TokenProvider,
        service: Optional[ServiceConfig] = None,
        link_config: Optional[LinkConfig] = None,
        *,
        connect: Callable[[str], Awaitable] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        terminate_timeout: float = 1.0,
    ):
        self.service = service or ServiceConfig()
        self.link_config = link_config or LinkConfig()
        self._tokens = token_provider
        self._connect = connect
        self._sleep = sleep
        self.terminate_timeout = terminate_timeout

        self.state = LinkState.IDLE
        self.events: asyncio.Queue[TranscriptEvent] = asyncio.Queue()
        self.session_id: Optional[str] = None
        self.last_error: Optional[CoachEngineError] = None

        self._ws = None
        self._receiver_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._session_begun = asyncio.Event()
        self._terminated = asyncio.Event()
        self._closing_requested = False

        self._connection_listeners: list[ConnectionListener] = []
        self._failure_listeners: list[FailureListener] = []

        self.frames_sent = 0
        self.frames_dropped = 0
        self.malformed_count = 0
        self.reconnect_attempts = 0

    # -- Listeners -------------------------------------------------------------

    def on_connection_change(self, listener: ConnectionListener) -> None:
        self._connection_listeners.append(listener)

    def on_failure(self, listener: FailureListener) -> None:
        self._failure_listeners.append(listener)

    @property
    def is_active(self) -> bool:
        return self.state is LinkState.ACTIVE

    def _set_state(self, new_state: LinkState) -> None:
        prev = self.state
        if new_state not in _TRANSITIONS[prev]:
            raise LinkError(f"illegal link transition {prev.value} → {new_state.value}")
        self.state = new_state
        log.info("event=link_state from=%s to=%s", prev.value, new_state.value)
        if (prev is LinkState.ACTIVE) != (new_state is LinkState.ACTIVE):
            connected = new_state is LinkState.ACTIVE
            for listener in list(self._connection_listeners):
                try:
                    listener(connected)
                except Exception:
                    log.exception("event=connection_listener_error")

    # -- Connect ---------------------------------------------------------------

    async def connect(self) -> None:
        """Authenticate, open the socket and wait for SessionBegins.

        Raises AuthError or LinkError; the link is then in ERROR.
        """
        if self.state is not LinkState.IDLE:
            raise LinkError(f"connect() not allowed in state {self.state.value}")
        try:
            await self._open_session()
        except (AuthError, LinkError) as exc:
            await self._teardown_socket()
            self._fail(exc, notify=False)
            raise

    async def _open_session(self) -> None:
        if self.state is not LinkState.AUTHENTICATING:
            self._set_state(LinkState.AUTHENTICATING)
        token = await fetch_token_with_retry(self._tokens, self.link_config, sleep=self._sleep)

        query = urlencode({"sample_rate": self.service.sample_rate, "token": token})
        url = f"{self.service.ws_url}?{query}"
        try:
            ws = await self._connect(url)
        except (websockets.InvalidHandshake, OSError, asyncio.TimeoutError) as exc:
            raise LinkError(f"Could not open transcription socket: {exc}") from exc

        self._ws = ws
        self._session_begun = asyncio.Event()
        self._terminated = asyncio.Event()
        self._set_state(LinkState.CONNECTED)
        receiver = asyncio.create_task(self._receive_loop(ws), name="link_receiver")
        self._receiver_task = receiver

        begun = asyncio.create_task(self._session_begun.wait())
        try:
            done, _ = await asyncio.wait(
                {begun, receiver},
                timeout=self.service.session_begin_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            begun.cancel()

        if not self._session_begun.is_set():
            if receiver in done:
                code = getattr(ws, "close_code", None)
                reason = getattr(ws, "close_reason", "") or ""
                if code in NON_RETRYABLE_CLOSE_CODES:
                    raise NonRetryableCloseError(code, reason)
                raise LinkError(f"Socket closed before the session began (code={code} reason={reason})")
            raise LinkError(
                f"Service did not acknowledge the session within {self.service.session_begin_timeout:.0f}s"
            )
        self._set_state(LinkState.ACTIVE)

    # -- Send ------------------------------------------------------------------

    def send(self, frame: AudioFrame) -> bool:
        """Forward one frame if the link is ACTIVE and idle.  Never blocks, never queues."""
        if self.state is not LinkState.ACTIVE or self._ws is None:
            self.frames_dropped += 1
            log.debug("event=frame_dropped seq=%d reason=state_%s", frame.seq, self.state.value)
            return False
        if self._send_task is not None and not self._send_task.done():
            self.frames_dropped += 1
            log.debug("event=frame_dropped seq=%d reason=send_in_flight", frame.seq)
            return False
        self._send_task = asyncio.create_task(self._write(self._ws, frame))
        return True

    async def _write(self, ws, frame: AudioFrame) -> None:
        try:
            await ws.send(frame.pcm)
            self.frames_sent += 1
        except websockets.ConnectionClosed:
            self.frames_dropped += 1
            log.debug("event=frame_dropped seq=%d reason=socket_closed", frame.seq)

    # -- Receive ---------------------------------------------------------------

    async def _receive_loop(self, ws) -> None:
        try:
            async for raw in ws:
                self._handle_message(raw)
        except websockets.ConnectionClosed as exc:
            log.debug("event=link_receive_closed error=%s", exc)
        code = getattr(ws, "close_code", None)
        reason = getattr(ws, "close_reason", "") or ""
        log.info("event=link_socket_closed code=%s reason=%s", code, reason)
        self._on_disconnect(ws, code, reason)

    def _handle_message(self, raw) -> None:
        try:
            event = parse_message(raw)
        except MalformedMessageError as exc:
            self.malformed_count += 1
            log.warning("event=malformed_message count=%d error=%s", self.malformed_count, exc)
            return

        if event.kind is EventKind.SESSION_BEGINS:
            self.session_id = event.session_id
            log.info("event=session_begins session_id=%s", event.session_id)
            self._session_begun.set()
        elif event.kind is EventKind.SESSION_TERMINATED:
            log.info("event=session_terminated")
            self._terminated.set()
        elif event.kind is EventKind.ERROR:
            log.error("event=service_error error=%s", event.error)
        self.events.put_nowait(event)

    def _on_disconnect(self, ws, code: Optional[int], reason: str) -> None:
        if ws is not self._ws:
            return
        if self._closing_requested or self.state is not LinkState.ACTIVE:
            # Operator close, or a handshake still in progress (connect() reports it).
            return
        self._ws = None
        self._receiver_task = None
        if code in NON_RETRYABLE_CLOSE_CODES:
            self._fail(NonRetryableCloseError(code, reason))
            return
        self._set_state(LinkState.AUTHENTICATING)
        cause = LinkError(f"Unexpected close (code={code} reason={reason})")
        self._reconnect_task = asyncio.create_task(self._reconnect(cause), name="link_reconnect")

    # -- Reconnect -------------------------------------------------------------

    async def _reconnect(self, cause: LinkError) -> None:
        cfg = self.link_config
        last_exc: CoachEngineError = cause
        for attempt in range(1, cfg.max_reconnect_attempts + 1):
            delay = backoff_delay(attempt, cfg.backoff_base, cfg.backoff_ceiling)
            self.reconnect_attempts = attempt
            log.warning(
                "event=link_reconnect attempt=%d/%d delay=%.1fs cause=%s",
                attempt, cfg.max_reconnect_attempts, delay, last_exc,
            )
            await self._sleep(delay)
            if self._closing_requested:
                return
            try:
                await self._open_session()
            except NonRetryableCloseError as exc:
                await self._teardown_socket()
                self._fail(exc)
                return
            except (AuthError, LinkError) as exc:
                last_exc = exc
                await self._teardown_socket()
                continue
            log.info("event=link_reconnected attempt=%d", attempt)
            self.reconnect_attempts = 0
            return

        self._fail(ReconnectExhaustedError(cfg.max_reconnect_attempts, last_exc))

    def _fail(self, error: CoachEngineError, notify: bool = True) -> None:
        """Enter ERROR and, unless the caller re-raises instead, tell the failure listeners."""
        if self.state not in (LinkState.ERROR, LinkState.CLOSED, LinkState.CLOSING):
            self._set_state(LinkState.ERROR)
        self.last_error = error
        log.error("event=link_failed error=%s", error)
        if not notify:
            return
        for listener in list(self._failure_listeners):
            try:
                listener(error)
            except Exception:
                log.exception("event=failure_listener_error")

    # -- Close -----------------------------------------------------------------

    async def close(self) -> None:
        """Operator shutdown: suppress reconnection, end the session, release the socket."""
        if self.state in (LinkState.CLOSED, LinkState.CLOSING):
            return
        if self.state is LinkState.ERROR and self._closing_requested:
            return
        self._closing_requested = True

        task, self._reconnect_task = self._reconnect_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                log.debug("event=reconnect_cancelled")

        was_active = self.state is LinkState.ACTIVE
        if self.state is not LinkState.ERROR:
            self._set_state(LinkState.CLOSING)

        if was_active and self._ws is not None:
            await self._terminate_session(self._ws)
        await self._teardown_socket()

        if self.state is LinkState.CLOSING:
            self._set_state(LinkState.CLOSED)
        log.info(
            "event=link_closed frames_sent=%d frames_dropped=%d malformed=%d",
            self.frames_sent, self.frames_dropped, self.malformed_count,
        )

    async def _terminate_session(self, ws) -> None:
        try:
            await ws.send(TERMINATE_MESSAGE)
        except websockets.ConnectionClosed:
            log.debug("event=terminate_skipped reason=socket_closed")
            return
        waiter = asyncio.create_task(self._terminated.wait())
        waits = {waiter}
        if self._receiver_task is not None:
            waits.add(self._receiver_task)
        try:
            await asyncio.wait(waits, timeout=self.terminate_timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if not self._terminated.is_set():
            log.warning("event=terminate_unacknowledged timeout=%.1fs", self.terminate_timeout)

    async def _teardown_socket(self) -> None:
        ws, self._ws = self._ws, None
        for attr in ("_send_task", "_receiver_task"):
            task = getattr(self, attr)
            setattr(self, attr, None)
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if ws is not None:
            try:
                await ws.close()
            except (websockets.ConnectionClosed, OSError) as exc:
                log.debug("event=socket_close_error error=%s", exc)
