"""
CoachingFeedbackLoop — periodic coaching over the recent Final transcripts.

Every ``interval_sec`` while the session is active, the Finals received in the
last ``window_sec`` are scored on four independent dimensions: sentiment,
question usage, pace and recognizer confidence.  One FeedbackItem per dimension
is appended to the session.  A dimension that raises is logged and skipped.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from . import analysis
from .config import FeedbackConfig
from .models import (
    FeedbackItem,
    FeedbackLevel,
    FeedbackType,
    Session,
    TranscriptLog,
    TranscriptRecord,
    utc_now,
)
from .timers import Ticker

log = logging.getLogger("coach_engine.feedback")

NO_RECENT_SPEECH = "No recent speech detected - continue speaking for feedback"

FeedbackListener = Callable[[list[FeedbackItem]], None]
NoticeListener = Callable[[str], None]


class CoachingFeedbackLoop:

    def __init__(
        self,
        session: Session,
        transcripts: TranscriptLog,
        config: Optional[FeedbackConfig] = None,
        *,
        on_feedback: Optional[FeedbackListener] = None,
        on_notice: Optional[NoticeListener] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.config = config or FeedbackConfig()
        self._transcripts = transcripts
        self._on_feedback = on_feedback
        self._on_notice = on_notice
        self._clock = clock
        self._ticker = Ticker(self.config.interval_sec, self.tick, name="feedback_loop")
        self._counted_finals = 0
        self.notices = 0

    @property
    def running(self) -> bool:
        return self._ticker.running

    def start(self) -> None:
        self._ticker.start()
        log.info("event=feedback_loop_started interval_sec=%.1f window_sec=%.1f",
                 self.config.interval_sec, self.config.window_sec)

    def cancel(self) -> None:
        self._ticker.cancel()

    # -- Tick ------------------------------------------------------------------

    def tick(self) -> list[FeedbackItem]:
        now = self._clock()
        recent = self._transcripts.finals_since(now - timedelta(seconds=self.config.window_sec))
        if not recent:
            self.notices += 1
            log.info("event=feedback_skipped reason=no_recent_speech")
            self._notify_notice(NO_RECENT_SPEECH)
            return []

        self.fold_word_counts(now)
        self.session.analytics.avg_confidence = analysis.mean_confidence(recent)

        items: list[FeedbackItem] = []
        for name, build in (
            ("sentiment", self._sentiment),
            ("question", self._questions),
            ("pace", self._pace),
            ("confidence", self._confidence),
        ):
            try:
                item = build(recent)
            except Exception:
                log.exception("event=feedback_dimension_error dimension=%s", name)
                continue
            if item is not None:
                items.append(item)

        self.session.feedbacks.extend(items)
        a = self.session.analytics
        log.info(
            "event=feedback_tick transcripts=%d items=%d total_words=%d sentiment=%.1f "
            "questions=%.1f pace_wpm=%.0f avg_confidence=%.3f",
            len(recent), len(items), a.total_words, a.sentiment_score,
            a.question_ratio, a.speaking_pace_wpm, a.avg_confidence,
        )
        if items and self._on_feedback is not None:
            try:
                self._on_feedback(items)
            except Exception:
                log.exception("event=feedback_listener_error")
        return items

    def fold_word_counts(self, now: Optional[datetime] = None) -> None:
        """Add the words of every Final not counted yet, then refresh the session pace."""
        finals = self._transcripts.finals()
        for record in finals[self._counted_finals:]:
            self.session.analytics.total_words += record.word_count
        self._counted_finals = len(finals)
        minutes = self.session.elapsed_sec(now or self._clock()) / 60.0
        self.session.analytics.speaking_pace_wpm = self.session.analytics.total_words / max(minutes, 0.1)

    # -- Dimensions ------------------------------------------------------------

    def _sentiment(self, recent: Sequence[TranscriptRecord]) -> FeedbackItem:
        pct = analysis.positive_percentage(recent)
        self.session.analytics.sentiment_score = pct
        if pct > 70:
            return FeedbackItem(
                type=FeedbackType.SENTIMENT, level=FeedbackLevel.POSITIVE,
                message=f"Excellent positive tone! ({pct:.1f}% positive)",
                suggestion="Keep up this enthusiastic energy!",
            )
        if pct < 30:
            return FeedbackItem(
                type=FeedbackType.SENTIMENT, level=FeedbackLevel.WARNING,
                message=f"Tone could be more positive ({pct:.1f}% positive)",
                suggestion="Try using more positive language and enthusiastic expressions",
            )
        return FeedbackItem(
            type=FeedbackType.SENTIMENT, level=FeedbackLevel.NEUTRAL,
            message=f"Balanced tone ({pct:.1f}% positive)",
            suggestion="Consider adding more enthusiasm for key points",
        )

    def _questions(self, recent: Sequence[TranscriptRecord]) -> FeedbackItem:
        ratio = analysis.question_ratio(" ".join(t.text for t in recent))
        self.session.analytics.question_ratio = ratio
        if ratio > 30:
            return FeedbackItem(
                type=FeedbackType.QUESTION, level=FeedbackLevel.POSITIVE,
                message=f"Great use of questions! ({ratio:.1f}% question ratio)",
                suggestion="Questions help engage your audience effectively",
            )
        if ratio < 10:
            return FeedbackItem(
                type=FeedbackType.QUESTION, level=FeedbackLevel.WARNING,
                message=f"Consider asking more questions ({ratio:.1f}% question ratio)",
                suggestion="Questions can help engage your audience and gather feedback",
            )
        return FeedbackItem(
            type=FeedbackType.QUESTION, level=FeedbackLevel.NEUTRAL,
            message=f"Moderate question usage ({ratio:.1f}% question ratio)",
        )

    def _pace(self, recent: Sequence[TranscriptRecord]) -> Optional[FeedbackItem]:
        if analysis.timed_speech_sec(recent) < 1.0:
            log.debug("event=pace_skipped reason=too_little_timed_speech")
            return None
        wpm = analysis.window_wpm(recent)
        if wpm > 180:
            return FeedbackItem(
                type=FeedbackType.PACE, level=FeedbackLevel.WARNING,
                message=f"Speaking quite fast ({wpm:.0f} WPM)",
                suggestion="Try slowing down slightly for better clarity and emphasis",
            )
        if wpm < 120:
            return FeedbackItem(
                type=FeedbackType.PACE, level=FeedbackLevel.WARNING,
                message=f"Speaking quite slowly ({wpm:.0f} WPM)",
                suggestion="Consider picking up the pace slightly to maintain engagement",
            )
        return FeedbackItem(
            type=FeedbackType.PACE, level=FeedbackLevel.POSITIVE,
            message=f"Good speaking pace ({wpm:.0f} WPM)",
            suggestion="Maintain this comfortable speaking speed",
        )

    def _confidence(self, recent: Sequence[TranscriptRecord]) -> FeedbackItem:
        pct = analysis.mean_confidence(recent) * 100
        if pct > 90:
            return FeedbackItem(
                type=FeedbackType.CONFIDENCE, level=FeedbackLevel.POSITIVE,
                message=f"Excellent speech clarity! ({pct:.1f}% confidence)",
                suggestion="Your speech is very clear and well-articulated",
            )
        if pct < 70:
            return FeedbackItem(
                type=FeedbackType.CONFIDENCE, level=FeedbackLevel.WARNING,
                message=f"Speech clarity could improve ({pct:.1f}% confidence)",
                suggestion="Try speaking more clearly and distinctly",
            )
        return FeedbackItem(
            type=FeedbackType.CONFIDENCE, level=FeedbackLevel.NEUTRAL,
            message=f"Good speech clarity ({pct:.1f}% confidence)",
        )

    def _notify_notice(self, message: str) -> None:
        if self._on_notice is None:
            return
        try:
            self._on_notice(message)
        except Exception:
            log.exception("event=notice_listener_error")
