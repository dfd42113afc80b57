"""
MetricEstimator — live talking speed, clarity, volume and performance confidence.

All smoothing state lives in one MetricState owned by the estimator, scoped to
a single session.  Volume comes from audio frames; everything else from
non-empty Partial/Final transcript events.

Talking speed
  Words (keyed by start offset, so revisions of the same word replace rather
  than duplicate) sit in a sliding window that keeps words starting within
  ``speed_window_sec`` of the newest word end.  raw = words / span · 60, and the
  span must exceed ``min_window_sec``.  Exposed speed moves 30% toward raw.
  After each Final a decay ticker multiplies speed by 0.9 per tick and snaps it
  to 0 on the third idle tick.  The next transcript event cancels it.

Clarity
  sqrt(recognizer confidence) · volume modifier · articulation modifier,
  smoothed quickly when falling and slowly when rising.

Performance confidence
  50% volume, 10% speed goodness, 30% inverse filler ratio, 10% recognizer
  confidence.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Callable, Optional, Sequence

from .config import MetricsConfig
from .models import MetricState, TranscriptEvent, Word
from .timers import Ticker

log = logging.getLogger("coach_engine.metrics")

FILLER_RE = re.compile(r"\b(uh|um|er|ah|like|so|you know|basically|actually)\b")

MetricsListener = Callable[[MetricState], None]


def count_fillers(text: str) -> int:
    return len(FILLER_RE.findall(text.lower()))


def speed_goodness(wpm: float) -> float:
    """1.0 on [130, 170] WPM, linear down to 0.2 at 110 and 190, 0.2 outside."""
    if 130.0 <= wpm <= 170.0:
        return 1.0
    if 110.0 <= wpm < 130.0:
        return 0.2 + 0.8 * (wpm - 110.0) / 20.0
    if 170.0 < wpm <= 190.0:
        return 0.2 + 0.8 * (190.0 - wpm) / 20.0
    return 0.2


def volume_modifier(volume: float, floor: float) -> float:
    if volume >= floor:
        return 1.0
    return 0.5 + 0.5 * max(0.0, volume) / floor


def articulation_modifier(words: Sequence[Word], expected_ms: float) -> float:
    """Penalise average word durations far from the expected one (never below 0.6)."""
    if not words:
        return 1.0
    avg_ms = sum(w.end_ms - w.start_ms for w in words) / len(words)
    deviation = abs(avg_ms - expected_ms) / expected_ms
    return max(0.6, 1.0 - 0.5 * max(0.0, deviation - 0.5))


class MetricEstimator:

    def __init__(self, config: Optional[MetricsConfig] = None, on_update: Optional[MetricsListener] = None):
        self.config = config or MetricsConfig()
        self.state = MetricState(
            clarity=self.config.initial_clarity,
            talking_speed_wpm=self.config.initial_wpm,
        )
        self._on_update = on_update
        self._window: dict[int, Word] = {}
        self._volume_seeded = False
        self._idle_ticks = 0
        self._decay = Ticker(self.config.decay_interval, self._decay_tick, name="speed_decay")

    @property
    def decay_running(self) -> bool:
        return self._decay.running

    # -- Inputs ----------------------------------------------------------------

    def add_volume(self, rms: float) -> None:
        if not self._volume_seeded:
            self.state.volume_rms = rms
            self._volume_seeded = True
            return
        self.state.volume_rms += self.config.volume_smoothing * (rms - self.state.volume_rms)

    def process(self, event: TranscriptEvent) -> bool:
        """Fold one transcript event into the metrics.  Returns False if ignored."""
        if not event.is_transcript or not event.has_text:
            return False

        self._decay.cancel()
        self.state.recognizer_confidence = event.confidence
        self._update_window(event.words)
        self._update_speed()
        self._update_clarity(event)
        self._update_confidence(event)

        if event.is_final:
            self._idle_ticks = 0
            self._decay.start()

        log.debug(
            "event=metrics_update kind=%s wpm=%.1f clarity=%.3f confidence=%.3f",
            event.kind.value, self.state.talking_speed_wpm, self.state.clarity, self.state.confidence,
        )
        self._notify()
        return True

    def reset_window(self) -> None:
        """Forget word timings; a new service session restarts its audio clock at 0."""
        self._window.clear()

    def close(self) -> None:
        self._decay.cancel()

    # -- Talking speed ---------------------------------------------------------

    def _update_window(self, words: Sequence[Word]) -> None:
        for word in words:
            self._window[word.start_ms] = word
        if not self._window:
            return
        newest_end = max(w.end_ms for w in self._window.values())
        cutoff = newest_end - self.config.speed_window_sec * 1000
        for start in [s for s in self._window if s < cutoff]:
            del self._window[start]

    def _update_speed(self) -> None:
        if not self._window:
            return
        oldest_start = min(self._window)
        newest_end = max(w.end_ms for w in self._window.values())
        span_sec = (newest_end - oldest_start) / 1000.0
        if span_sec <= self.config.min_window_sec:
            return
        raw = len(self._window) / span_sec * 60.0
        self.state.talking_speed_wpm += self.config.speed_smoothing * (raw - self.state.talking_speed_wpm)

    def _decay_tick(self) -> None:
        self._idle_ticks += 1
        if self._idle_ticks >= self.config.decay_zero_ticks:
            self.state.talking_speed_wpm = 0.0
            self._decay.cancel()
            log.debug("event=speed_decayed_to_zero ticks=%d", self._idle_ticks)
        else:
            self.state.talking_speed_wpm = max(0.0, self.state.talking_speed_wpm * self.config.decay_factor)
        self._notify()

    # -- Clarity / confidence --------------------------------------------------

    def _update_clarity(self, event: TranscriptEvent) -> None:
        cfg = self.config
        raw = (
            math.sqrt(max(0.0, event.confidence))
            * volume_modifier(self.state.volume_rms, cfg.volume_floor)
            * articulation_modifier(event.words, cfg.expected_word_ms)
        )
        alpha = cfg.clarity_fall_smoothing if raw < self.state.clarity else cfg.clarity_rise_smoothing
        clarity = self.state.clarity + alpha * (raw - self.state.clarity)
        self.state.clarity = min(1.0, max(0.0, clarity))

    def _update_confidence(self, event: TranscriptEvent) -> None:
        cfg = self.config
        word_count = len(event.text.split())
        filler_ratio = min(1.0, count_fillers(event.text) / word_count) if word_count else 0.0
        score = (
            0.5 * min(1.0, self.state.volume_rms / cfg.volume_target)
            + 0.1 * speed_goodness(self.state.talking_speed_wpm)
            + 0.3 * (1.0 - filler_ratio)
            + 0.1 * event.confidence
        )
        self.state.confidence = min(1.0, max(0.0, score))

    def _notify(self) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(self.state)
        except Exception:
            log.exception("event=metrics_listener_error")
