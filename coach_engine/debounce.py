"""
WarningDebouncer — per-metric sustained-breach warnings.

A metric entering its bad range arms a one-shot timer (if not already armed).
When the timer fires and the latest value is still bad, one warning is shown
for that metric.  A good value cancels the timer and clears the shown warning
(``on_warning(None, metric)``).  Metrics never block one another.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .config import WarningConfig
from .models import MetricState
from .timers import OneShotTimer

log = logging.getLogger("coach_engine.debounce")

WarningListener = Callable[[Optional[str], str], None]

METRICS = ("confidence", "clarity", "pace")


class WarningDebouncer:

    def __init__(self, config: Optional[WarningConfig] = None, on_warning: Optional[WarningListener] = None):
        self.config = config or WarningConfig()
        self._on_warning = on_warning
        self._timers: dict[str, OneShotTimer] = {
            metric: OneShotTimer(self.config.debounce_sec, lambda m=metric: self._fire(m), name=f"debounce_{metric}")
            for metric in METRICS
        }
        self._latest: dict[str, float] = {}
        self.active: dict[str, str] = {}

    def evaluate(self, state: MetricState) -> None:
        self.update("confidence", state.confidence)
        self.update("clarity", state.clarity)
        self.update("pace", state.talking_speed_wpm)

    def update(self, metric: str, value: float) -> None:
        self._latest[metric] = value
        timer = self._timers[metric]
        if self.is_bad(metric, value):
            if metric not in self.active:
                if not timer.running:
                    log.debug("event=debounce_armed metric=%s value=%.3f", metric, value)
                timer.start()
            return

        timer.cancel()
        if metric in self.active:
            del self.active[metric]
            log.info("event=warning_cleared metric=%s value=%.3f", metric, value)
            self._emit(None, metric)

    def is_bad(self, metric: str, value: float) -> bool:
        cfg = self.config
        if metric == "confidence":
            return value < cfg.confidence_bad_below
        if metric == "clarity":
            return value < cfg.clarity_bad_below
        if metric == "pace":
            # 0 WPM means not speaking, which is not a pacing problem.
            return value > 0 and (value < cfg.pace_bad_below or value > cfg.pace_bad_above)
        raise KeyError(metric)

    def cancel_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()

    def _fire(self, metric: str) -> None:
        value = self._latest.get(metric)
        if value is None or not self.is_bad(metric, value) or metric in self.active:
            return
        message = self._message(metric, value)
        self.active[metric] = message
        log.warning("event=warning_shown metric=%s value=%.3f", metric, value)
        self._emit(message, metric)

    def _message(self, metric: str, value: float) -> str:
        if metric == "confidence":
            return f"You sound less confident ({value * 100:.0f}%). Speak up and cut the filler words."
        if metric == "clarity":
            return f"Speech clarity is low ({value * 100:.0f}%). Try speaking more clearly and distinctly."
        if value > self.config.pace_bad_above:
            return f"Speaking pace is quite fast ({value:.0f} WPM). Consider slowing down for better clarity."
        return f"Speaking pace is quite slow ({value:.0f} WPM). Pick up the pace slightly to keep engagement."

    def _emit(self, message: Optional[str], metric: str) -> None:
        if self._on_warning is None:
            return
        try:
            self._on_warning(message, metric)
        except Exception:
            log.exception("event=warning_listener_error metric=%s", metric)
