"""
config.py — Live Coaching Engine · Runtime Configuration
=========================================================
Pydantic models for every tunable parameter across the coaching pipeline.
Round-trips through a JSON file.  Consumers:
  • server.py   — GET/PUT /config endpoints, builds the SessionManager
  • __main__.py — loads config from --config, applies CLI overrides
  • session.py  — hands each section to the component it configures
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("coach_engine.config")


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class ServiceConfig(BaseModel):
    """Recognition service endpoints (passed to the token provider + link)."""
    ws_url: str = Field(default="wss://api.assemblyai.com/v2/realtime/ws", description="Duplex streaming endpoint")
    token_url: str = Field(default="https://api.assemblyai.com/v2/realtime/token", description="Temporary token endpoint")
    token_expires_in: int = Field(default=300, ge=60, le=3600, description="Token lifetime (seconds)")
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Sample rate the service expects")
    session_begin_timeout: float = Field(default=10.0, gt=0.0, le=60.0, description="Wait for SessionBegins (seconds)")
    http_timeout: float = Field(default=10.0, gt=0.0, le=120.0, description="Token request timeout (seconds)")


class AudioConfig(BaseModel):
    """Microphone capture parameters (passed to the frame source)."""
    device: Optional[int] = Field(default=None, description="Input device index (None = system default)")
    frame_ms: int = Field(default=100, ge=50, le=2000, description="Frame length sent to the service (ms)")
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Rate frames are resampled to")


class LinkConfig(BaseModel):
    """Authentication retry + reconnection backoff for the transcription link."""
    token_attempts: int = Field(default=3, ge=1, le=10, description="Token fetch attempts before giving up")
    token_retry_delay: float = Field(default=0.5, ge=0.0, le=10.0, description="Fixed delay between token attempts (seconds)")
    backoff_base: float = Field(default=1.0, gt=0.0, le=10.0, description="First reconnect delay (seconds)")
    backoff_ceiling: float = Field(default=30.0, gt=0.0, le=300.0, description="Reconnect delay ceiling (seconds)")
    max_reconnect_attempts: int = Field(default=8, ge=0, le=100, description="Reconnect attempts before escalating")


class MetricsConfig(BaseModel):
    """Smoothing and decay constants for the metric estimator."""
    speed_window_sec: float = Field(default=4.0, gt=0.0, le=30.0, description="Sliding word window (seconds)")
    min_window_sec: float = Field(default=1.0, ge=0.0, le=10.0, description="Windows at or below this are ignored")
    speed_smoothing: float = Field(default=0.3, gt=0.0, le=1.0, description="Talking-speed smoothing factor")
    decay_interval: float = Field(default=0.15, gt=0.0, le=5.0, description="Idle decay tick (seconds)")
    decay_factor: float = Field(default=0.9, ge=0.0, lt=1.0, description="Multiplicative decay per tick")
    decay_zero_ticks: int = Field(default=3, ge=1, le=100, description="Idle ticks before speed snaps to zero")
    clarity_fall_smoothing: float = Field(default=0.3, gt=0.0, le=1.0, description="Clarity smoothing when falling")
    clarity_rise_smoothing: float = Field(default=0.1, gt=0.0, le=1.0, description="Clarity smoothing when rising")
    volume_smoothing: float = Field(default=0.3, gt=0.0, le=1.0, description="Volume smoothing factor")
    volume_floor: float = Field(default=0.1, gt=0.0, le=1.0, description="RMS below this penalises clarity")
    volume_target: float = Field(default=0.2, gt=0.0, le=1.0, description="RMS that scores full volume confidence")
    expected_word_ms: float = Field(default=300.0, gt=0.0, le=2000.0, description="Expected average word duration (ms)")
    initial_clarity: float = Field(default=0.5, ge=0.0, le=1.0, description="Clarity before any speech")
    initial_wpm: float = Field(default=150.0, ge=0.0, le=400.0, description="Talking speed before any speech")


class WarningConfig(BaseModel):
    """Bad ranges and debounce for live warnings."""
    debounce_sec: float = Field(default=3.0, ge=0.0, le=60.0, description="Sustained breach before warning (seconds)")
    confidence_bad_below: float = Field(default=0.3, ge=0.0, le=1.0, description="Confidence warning threshold")
    clarity_bad_below: float = Field(default=0.3, ge=0.0, le=1.0, description="Clarity warning threshold")
    pace_bad_below: float = Field(default=110.0, ge=0.0, le=400.0, description="Too-slow threshold (WPM)")
    pace_bad_above: float = Field(default=190.0, ge=0.0, le=400.0, description="Too-fast threshold (WPM)")


class FeedbackConfig(BaseModel):
    """Periodic coaching loop timing."""
    interval_sec: float = Field(default=10.0, gt=0.0, le=300.0, description="Feedback tick interval (seconds)")
    window_sec: float = Field(default=30.0, gt=0.0, le=600.0, description="Final transcripts analysed per tick (seconds)")
    stop_grace_sec: float = Field(default=2.0, ge=0.0, le=30.0, description="Wait for trailing finals on stop (seconds)")


class ReportConfig(BaseModel):
    """Where the end-of-session report is written."""
    directory: str = Field(default=".", description="Directory for coaching_report_*.json files")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class CoachEngineConfig(BaseModel):
    """Complete runtime configuration for the coaching engine."""
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    link: LinkConfig = Field(default_factory=LinkConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    warnings: WarningConfig = Field(default_factory=WarningConfig)
    feedback: FeedbackConfig = Field(default_factory=FeedbackConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)

    # -- Files -----------------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "CoachEngineConfig":
        """Read a JSON config file.

        A missing file means "use the defaults".  An unreadable or invalid one
        is logged and also falls back to the defaults, so a bad edit never
        keeps the engine from starting.
        """
        source = Path(path)
        if not source.is_file():
            log.info("event=config_defaults reason=missing path=%s", source)
            return cls()
        try:
            config = cls.model_validate_json(source.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("event=config_defaults reason=invalid path=%s error=%s", source, exc)
            return cls()
        log.info("event=config_loaded path=%s", source)
        return config

    def save(self, path: str | Path) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
        log.info("event=config_saved path=%s", target)

    def merge_patch(self, patch: dict) -> "CoachEngineConfig":
        """Apply a partial update and re-validate.

        ``{"feedback": {"interval_sec": 5}}`` changes one field and keeps every
        other section as it is.  Raises pydantic.ValidationError for values out
        of range; ``self`` is never modified.
        """
        merged = _merge_into(self.model_dump(), patch)
        return CoachEngineConfig.model_validate(merged)


def _merge_into(target: dict, patch: dict) -> dict:
    for key, value in patch.items():
        current = target.get(key)
        target[key] = _merge_into(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return target
