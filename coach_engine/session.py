"""
SessionManager — one coaching session at a time.

Wiring
------
  FrameSource ──(capture thread → call_soon_threadsafe)──▶ MetricEstimator.add_volume
                                                        └─▶ TranscriptionLink.send
  TranscriptionLink.events ──(dispatch task)──▶ TranscriptLog
                                             └─▶ MetricEstimator ──▶ WarningDebouncer
  CoachingFeedbackLoop (Ticker) reads TranscriptLog snapshots

Every timer (speed decay, debounce, feedback ticker, reconnect backoff) and the
dispatch task are owned here and torn down on stop().
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

import websockets

from .audio import FrameSource, MicrophoneFrameSource
from .config import AudioConfig, CoachEngineConfig
from .debounce import WarningDebouncer
from .errors import AuthError, CoachEngineError, SessionStateError
from .feedback import CoachingFeedbackLoop
from .link import TranscriptionLink
from .metrics import MetricEstimator
from .models import (
    SESSION_TYPES,
    AudioFrame,
    EventKind,
    FeedbackItem,
    MetricState,
    Session,
    SessionState,
    TranscriptEvent,
    TranscriptLog,
    utc_now,
)
from .report import build_report, write_report
from .token_provider import TokenProvider

log = logging.getLogger("coach_engine.session")

SESSION_TIPS: dict[str, tuple[str, ...]] = {
    "interview": (
        "Speak clearly and confidently",
        "Answer questions thoroughly but concisely",
        "Maintain positive tone and enthusiasm",
    ),
    "presentation": (
        "Vary your speaking pace for emphasis",
        "Use pauses effectively",
        "Engage your audience with questions",
    ),
    "sales": (
        "Ask open-ended questions",
        "Listen actively to responses",
        "Build rapport and trust",
    ),
    "general": (
        "Speak naturally and confidently",
        "Maintain good pacing",
        "Express yourself clearly",
    ),
}

FrameSourceFactory = Callable[[AudioConfig], FrameSource]


@dataclass
class SessionCallbacks:
    """Host hooks.  All are called on the event loop and must not block."""
    on_transcript: Optional[Callable[[str, bool], None]] = None            # (text, is_final)
    on_feedback: Optional[Callable[[list[FeedbackItem]], None]] = None
    on_warning: Optional[Callable[[Optional[str], str], None]] = None      # (message | None, metric)
    on_connection_change: Optional[Callable[[bool], None]] = None
    on_metrics: Optional[Callable[[dict], None]] = None
    on_notice: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[CoachEngineError], None]] = None


@dataclass
class StopResult:
    stopped: bool
    message: str
    report_path: Optional[Path] = None
    session_id: Optional[str] = None


class SessionManager:

    def __init__(
        self,
        config: Optional[CoachEngineConfig] = None,
        token_provider: Optional[TokenProvider] = None,
        *,
        frame_source_factory: Optional[FrameSourceFactory] = None,
        connect: Callable[[str], Awaitable] = websockets.connect,
        link_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        callbacks: Optional[SessionCallbacks] = None,
    ):
        self.config = config or CoachEngineConfig()
        self.token_provider = token_provider
        self._frame_source_factory = frame_source_factory or MicrophoneFrameSource
        self._connect = connect
        self._link_sleep = link_sleep
        self.callbacks = callbacks or SessionCallbacks()

        self.session: Optional[Session] = None
        self.last_report_path: Optional[Path] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._transcripts: Optional[TranscriptLog] = None
        self._estimator: Optional[MetricEstimator] = None
        self._debouncer: Optional[WarningDebouncer] = None
        self._feedback: Optional[CoachingFeedbackLoop] = None
        self._link: Optional[TranscriptionLink] = None
        self._source: Optional[FrameSource] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._abort_task: Optional[asyncio.Task] = None
        self._pending_stop: Optional[asyncio.Future] = None
        self._connected_once = False

    @property
    def active(self) -> bool:
        return self.session is not None

    @property
    def link(self) -> Optional[TranscriptionLink]:
        return self._link

    @property
    def metrics(self) -> Optional[MetricState]:
        return self._estimator.state if self._estimator else None

    # -- Start -----------------------------------------------------------------

    async def start(self, session_type: str = "general") -> Session:
        """Open audio, connect the link, then start the feedback loop.

        Raises SessionStateError if a session is already running (the running
        one is untouched) and DeviceError / AuthError / LinkError if the
        session cannot reach ACTIVE.  A session that never reached ACTIVE has
        collected nothing, so no report is written for it.

        A stop() issued while connecting is honoured here: the session is
        finished as soon as it comes up and the returned session is CLOSED.
        """
        if self.session is not None:
            log.warning("event=start_rejected reason=already_active session_id=%s", self.session.id)
            raise SessionStateError("A coaching session is already active")
        if session_type not in SESSION_TYPES:
            raise ValueError(f"Unknown session type {session_type!r}; expected one of {', '.join(SESSION_TYPES)}")
        if self.token_provider is None:
            raise AuthError("No token provider configured")

        cfg = self.config
        session = Session(id=str(uuid.uuid4()), session_type=session_type, state=SessionState.CONNECTING)
        self.session = session
        self._loop = asyncio.get_running_loop()
        self._connected_once = False

        self._transcripts = TranscriptLog()
        self._estimator = MetricEstimator(cfg.metrics, on_update=self._on_metrics)
        self._debouncer = WarningDebouncer(cfg.warnings, on_warning=self._on_warning)
        self._feedback = CoachingFeedbackLoop(
            session, self._transcripts, cfg.feedback,
            on_feedback=self._on_feedback, on_notice=self._on_notice,
        )
        self._link = TranscriptionLink(
            self.token_provider, cfg.service, cfg.link,
            connect=self._connect, sleep=self._link_sleep,
        )
        self._link.on_connection_change(self._on_connection_change)
        self._link.on_failure(self._on_link_failure)
        self._source = self._frame_source_factory(cfg.audio)
        self._source.on_frame(self._on_frame_threadsafe)

        log.info("event=session_starting session_id=%s type=%s", session.id, session_type)
        try:
            self._source.open()
            await self._link.connect()
        except CoachEngineError as exc:
            log.error("event=session_start_failed session_id=%s error=%s", session.id, exc)
            await self._teardown()
            self.session = None
            self._settle_pending_stop(StopResult(stopped=False, message=f"session failed to start: {exc}"))
            raise
        except asyncio.CancelledError:
            await self._teardown()
            self.session = None
            self._settle_pending_stop(StopResult(stopped=False, message="session start cancelled"))
            raise

        session.state = SessionState.ACTIVE
        self._dispatch_task = asyncio.create_task(self._dispatch(self._link), name="session_dispatch")
        self._feedback.start()
        log.info(
            "event=session_active session_id=%s type=%s tips=%s",
            session.id, session_type, " | ".join(SESSION_TIPS[session_type]),
        )
        if self._pending_stop is not None:
            log.info("event=stop_honoured session_id=%s reason=requested_while_connecting", session.id)
            self._settle_pending_stop(await self._finish(session, grace=False))
        return session

    # -- Stop ------------------------------------------------------------------

    async def stop(self) -> StopResult:
        session = self.session
        if session is not None and session.state is SessionState.CONNECTING:
            # start() finishes the session once connected and resolves this.
            if self._pending_stop is None:
                log.info("event=stop_deferred session_id=%s reason=connecting", session.id)
                self._pending_stop = asyncio.get_running_loop().create_future()
            return await asyncio.shield(self._pending_stop)
        if session is None or session.state is not SessionState.ACTIVE:
            log.info("event=stop_ignored reason=no_active_session")
            return StopResult(stopped=False, message="no active session")
        return await self._finish(session, grace=True)

    def _settle_pending_stop(self, result: StopResult) -> None:
        pending, self._pending_stop = self._pending_stop, None
        if pending is not None and not pending.done():
            pending.set_result(result)

    async def _finish(self, session: Session, grace: bool) -> StopResult:
        session.state = SessionState.STOPPING
        log.info("event=session_stopping session_id=%s grace=%s", session.id, grace)

        self._feedback.cancel()
        self._source.close()
        if grace and self.config.feedback.stop_grace_sec > 0:
            await asyncio.sleep(self.config.feedback.stop_grace_sec)

        self._feedback.fold_word_counts()
        session.end_time = utc_now()
        session.state = SessionState.CLOSED

        report_path: Optional[Path] = None
        try:
            report_path = write_report(build_report(session, self._transcripts), self.config.report.directory)
        except OSError as exc:
            log.error("event=report_write_failed session_id=%s error=%s", session.id, exc)
        self.last_report_path = report_path

        await self._link.close()
        await self._teardown()
        self.session = None
        log.info(
            "event=session_stopped session_id=%s duration_sec=%.1f feedbacks=%d total_words=%d error=%s",
            session.id, session.elapsed_sec(), len(session.feedbacks),
            session.analytics.total_words, session.error,
        )
        message = "session stopped" if session.error is None else f"session ended with error: {session.error}"
        return StopResult(stopped=True, message=message, report_path=report_path, session_id=session.id)

    async def _abort(self, error: CoachEngineError) -> None:
        session = self.session
        if session is None or session.state is SessionState.CLOSED:
            return
        session.error = str(error)
        log.error("event=session_failed session_id=%s state=%s error=%s", session.id, session.state.value, error)
        self._call(self.callbacks.on_error, error)
        if session.state is SessionState.ACTIVE:
            await self._finish(session, grace=False)
        # STOPPING: the stop already in flight writes the report with the error.

    async def _teardown(self) -> None:
        if self._feedback:
            self._feedback.cancel()
        if self._estimator:
            self._estimator.close()
        if self._debouncer:
            self._debouncer.cancel_all()
        if self._source:
            self._source.close()
        if self._link:
            await self._link.close()

        task, self._dispatch_task = self._dispatch_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # -- Status ----------------------------------------------------------------

    def status(self) -> dict:
        session = self.session
        if session is None:
            return {"active": False}
        return {
            "active": True,
            "sessionId": session.id,
            "sessionType": session.session_type,
            "state": session.state.value,
            "startTime": session.start_time.isoformat(),
            "duration": int(session.elapsed_sec() * 1000),
            "analytics": session.analytics.model_dump(by_alias=True),
            "feedbackCount": len(session.feedbacks),
            "metrics": self._estimator.state.snapshot() if self._estimator else None,
            "warnings": dict(self._debouncer.active) if self._debouncer else {},
            "linkState": self._link.state.value if self._link else None,
            "tips": list(SESSION_TIPS[session.session_type]),
        }

    # -- Audio path ------------------------------------------------------------

    def _on_frame_threadsafe(self, frame: AudioFrame) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._on_frame, frame)

    def _on_frame(self, frame: AudioFrame) -> None:
        if self._estimator is not None:
            self._estimator.add_volume(frame.rms)
        if self._link is not None:
            self._link.send(frame)

    # -- Event path ------------------------------------------------------------

    async def _dispatch(self, link: TranscriptionLink) -> None:
        while True:
            event = await link.events.get()
            try:
                self._route(event)
            except Exception:
                log.exception("event=dispatch_error kind=%s", event.kind.value)

    def _route(self, event: TranscriptEvent) -> None:
        if event.kind is EventKind.ERROR:
            self._on_notice(f"Transcription service error: {event.error}")
            return
        record = self._transcripts.add(event)
        if record is None:
            return
        self._estimator.process(event)
        self._call(self.callbacks.on_transcript, record.text, record.is_final)

    def _on_metrics(self, state: MetricState) -> None:
        if self._debouncer is not None:
            self._debouncer.evaluate(state)
        self._call(self.callbacks.on_metrics, state.snapshot())

    def _on_warning(self, message: Optional[str], metric: str) -> None:
        self._call(self.callbacks.on_warning, message, metric)

    def _on_feedback(self, items: list[FeedbackItem]) -> None:
        self._call(self.callbacks.on_feedback, items)

    def _on_notice(self, message: str) -> None:
        self._call(self.callbacks.on_notice, message)

    def _on_connection_change(self, connected: bool) -> None:
        if connected:
            if self._connected_once and self._estimator is not None:
                self._estimator.reset_window()
            self._connected_once = True
        log.info("event=connection_change connected=%s", connected)
        self._call(self.callbacks.on_connection_change, connected)

    def _on_link_failure(self, error: CoachEngineError) -> None:
        self._abort_task = asyncio.create_task(self._abort(error), name="session_abort")

    @staticmethod
    def _call(callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            log.exception("event=host_callback_error callback=%s", getattr(callback, "__name__", callback))
