"""End-of-session report: one JSON document per session, written at stop()."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import Field

from .models import (
    CamelModel,
    FeedbackItem,
    Session,
    SessionAnalytics,
    TranscriptLog,
    TranscriptRecord,
    utc_now,
)

log = logging.getLogger("coach_engine.report")


class SessionInfo(CamelModel):
    id: str
    type: str
    start_time: datetime
    end_time: datetime
    duration: int                    # milliseconds
    error: Optional[str] = None


class ReportSummary(CamelModel):
    total_feedbacks: int = 0
    feedbacks_by_type: dict[str, int] = Field(default_factory=dict)
    feedbacks_by_level: dict[str, int] = Field(default_factory=dict)


class CoachingReport(CamelModel):
    session: SessionInfo
    analytics: SessionAnalytics
    feedbacks: list[FeedbackItem]
    transcripts: list[TranscriptRecord]
    final_transcripts: list[TranscriptRecord]
    summary: ReportSummary


def build_report(session: Session, transcripts: TranscriptLog) -> CoachingReport:
    end = session.end_time or utc_now()
    feedbacks = list(session.feedbacks)
    return CoachingReport(
        session=SessionInfo(
            id=session.id,
            type=session.session_type,
            start_time=session.start_time,
            end_time=end,
            duration=int((end - session.start_time).total_seconds() * 1000),
            error=session.error,
        ),
        analytics=session.analytics.model_copy(),
        feedbacks=feedbacks,
        transcripts=transcripts.all(),
        final_transcripts=transcripts.finals(),
        summary=ReportSummary(
            total_feedbacks=len(feedbacks),
            feedbacks_by_type=dict(Counter(f.type.value for f in feedbacks)),
            feedbacks_by_level=dict(Counter(f.level.value for f in feedbacks)),
        ),
    )


def report_filename(when: Optional[datetime] = None) -> str:
    stamp = (when or utc_now()).isoformat(timespec="milliseconds").replace(":", "-").replace(".", "-")
    return f"coaching_report_{stamp}.json"


def write_report(report: CoachingReport, directory: str | Path = ".") -> Path:
    out_dir = Path(directory)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / report_filename(report.session.end_time)
    path.write_text(report.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
    log.info(
        "event=report_written path=%s feedbacks=%d transcripts=%d",
        path, report.summary.total_feedbacks, len(report.transcripts),
    )
    return path
