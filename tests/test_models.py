"""Tests for transcript events and the transcript log."""

from datetime import timedelta

import pytest

from coach_engine.models import (
    EventKind,
    MetricState,
    Session,
    TranscriptEvent,
    TranscriptLog,
    TranscriptRecord,
    Word,
    utc_now,
)

from fakes import final_event, spaced_words


def test_event_rejects_word_ending_before_it_starts():
    with pytest.raises(ValueError):
        TranscriptEvent(kind=EventKind.FINAL, text="hi", words=(Word("hi", 500, 100),))


def test_event_rejects_out_of_order_words():
    with pytest.raises(ValueError):
        TranscriptEvent(
            kind=EventKind.FINAL,
            text="a b",
            words=(Word("a", 400, 500), Word("b", 100, 200)),
        )


def test_event_flags():
    final = final_event("hello")
    partial = final_event("hello", kind=EventKind.PARTIAL)
    begins = TranscriptEvent(kind=EventKind.SESSION_BEGINS, session_id="x")
    assert final.is_final and final.is_transcript and final.has_text
    assert partial.is_transcript and not partial.is_final
    assert not begins.is_transcript
    assert not final_event("   ").has_text


def test_record_keeps_word_timings_and_counts_words():
    record = TranscriptRecord.from_event(final_event("one two three", spaced_words("one two three")))
    assert record.word_count == 3
    assert record.is_final
    assert [(w.start, w.end) for w in record.words] == [(0, 300), (300, 600), (600, 900)]
    dumped = record.model_dump(by_alias=True)
    assert "isFinal" in dumped


def test_log_ignores_empty_and_non_transcript_events():
    log = TranscriptLog()
    assert log.add(final_event("")) is None
    assert log.add(TranscriptEvent(kind=EventKind.SESSION_TERMINATED)) is None
    assert log.total_count == 0


def test_log_counts_and_average_confidence():
    log = TranscriptLog()
    log.add(final_event("hello", confidence=0.8))
    log.add(final_event("hello there", confidence=0.6, kind=EventKind.PARTIAL))
    log.add(final_event("hello there friend", confidence=1.0))

    assert (log.total_count, log.final_count, log.partial_count) == (3, 2, 1)
    assert log.avg_confidence == pytest.approx(0.8)
    assert [r.text for r in log.finals()] == ["hello", "hello there friend"]


def test_log_readers_get_copies():
    log = TranscriptLog()
    log.add(final_event("hello"))
    snapshot = log.all()
    snapshot.clear()
    assert len(log.all()) == 1


def test_finals_since_filters_by_timestamp():
    log = TranscriptLog()
    log.add(final_event("recent"))
    assert len(log.finals_since(utc_now() - timedelta(seconds=30))) == 1
    assert log.finals_since(utc_now() + timedelta(seconds=1)) == []


def test_session_elapsed_uses_end_time():
    session = Session(id="s", session_type="general")
    session.end_time = session.start_time + timedelta(seconds=90)
    assert session.elapsed_sec() == pytest.approx(90.0)


def test_metric_snapshot_keys():
    snap = MetricState().snapshot()
    assert set(snap) == {"volumeRms", "recognizerConfidence", "confidence", "clarity", "talkingSpeedWpm"}
    assert snap["talkingSpeedWpm"] == 150.0
