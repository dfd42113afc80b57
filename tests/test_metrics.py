"""Tests for the live metric estimator."""

import asyncio

import pytest

from coach_engine.config import MetricsConfig
from coach_engine.metrics import (
    MetricEstimator,
    articulation_modifier,
    count_fillers,
    speed_goodness,
    volume_modifier,
)
from coach_engine.models import EventKind, TranscriptEvent, Word

from fakes import final_event, spaced_words, wait_until


@pytest.mark.asyncio
async def test_hello_world_scenario():
    """Single short Final: speed unchanged (span too short), clarity rises slowly, confidence is weighted."""
    estimator = MetricEstimator()
    estimator.add_volume(0.15)

    estimator.process(final_event("hello world", [("hello", 0, 300), ("world", 300, 600)], confidence=0.9))

    state = estimator.state
    assert state.talking_speed_wpm == pytest.approx(150.0)
    assert state.clarity == pytest.approx(0.5448683, abs=1e-6)
    assert state.confidence == pytest.approx(0.865)
    assert state.recognizer_confidence == pytest.approx(0.9)
    estimator.close()


@pytest.mark.asyncio
async def test_speed_moves_toward_raw_rate():
    estimator = MetricEstimator()
    text = "one two three four five six seven eight"
    estimator.process(final_event(text, spaced_words(text, word_ms=250), kind=EventKind.PARTIAL))
    # 8 words over 2 s = 240 WPM raw; 150 + 0.3 * 90
    assert estimator.state.talking_speed_wpm == pytest.approx(177.0)


@pytest.mark.asyncio
async def test_revised_words_replace_rather_than_duplicate():
    estimator = MetricEstimator()
    text = "one two three four five six seven eight"
    words = spaced_words(text, word_ms=250)
    estimator.process(final_event(text, words, kind=EventKind.PARTIAL))
    first = estimator.state.talking_speed_wpm
    estimator.process(final_event(text, words, kind=EventKind.PARTIAL))
    # Same 8 words again: raw stays 240, so speed keeps converging instead of doubling
    assert estimator.state.talking_speed_wpm == pytest.approx(first + 0.3 * (240.0 - first))


@pytest.mark.asyncio
async def test_window_drops_old_words():
    estimator = MetricEstimator()
    early = spaced_words("a b c d", start_ms=0, word_ms=300)
    late = spaced_words("e f g h", start_ms=10_000, word_ms=300)
    estimator.process(final_event("a b c d", early, kind=EventKind.PARTIAL))
    estimator.process(final_event("e f g h", late, kind=EventKind.PARTIAL))
    assert sorted(estimator._window) == [10_000, 10_300, 10_600, 10_900]


@pytest.mark.asyncio
async def test_empty_and_non_transcript_events_are_ignored():
    updates = []
    estimator = MetricEstimator(on_update=updates.append)
    assert estimator.process(final_event("   ")) is False
    assert estimator.process(TranscriptEvent(kind=EventKind.SESSION_BEGINS)) is False
    assert updates == []
    assert estimator.state.clarity == 0.5


@pytest.mark.asyncio
async def test_decay_reaches_zero_after_final():
    estimator = MetricEstimator(MetricsConfig(decay_interval=0.01))
    estimator.process(final_event("hello world", [("hello", 0, 300), ("world", 300, 600)]))
    assert estimator.decay_running

    await wait_until(lambda: not estimator.decay_running)
    assert estimator.state.talking_speed_wpm == 0.0


@pytest.mark.asyncio
async def test_decay_multiplies_before_snapping():
    seen = []
    estimator = MetricEstimator(MetricsConfig(decay_interval=0.01), on_update=lambda s: seen.append(s.talking_speed_wpm))
    estimator.process(final_event("hello", [("hello", 0, 300)]))
    await wait_until(lambda: not estimator.decay_running)
    # process, tick 1 (×0.9), tick 2 (×0.9), tick 3 (→0)
    assert seen == pytest.approx([150.0, 135.0, 121.5, 0.0])
    assert all(v >= 0 for v in seen)


@pytest.mark.asyncio
async def test_new_event_cancels_decay():
    estimator = MetricEstimator(MetricsConfig(decay_interval=0.05))
    estimator.process(final_event("hello", [("hello", 0, 300)]))
    assert estimator.decay_running
    estimator.process(final_event("hello again", [("hello", 0, 300), ("again", 300, 600)], kind=EventKind.PARTIAL))
    assert not estimator.decay_running
    await asyncio.sleep(0.12)
    assert estimator.state.talking_speed_wpm == pytest.approx(150.0)


def test_volume_seeds_then_smooths():
    estimator = MetricEstimator()
    estimator.add_volume(0.2)
    assert estimator.state.volume_rms == pytest.approx(0.2)
    estimator.add_volume(0.0)
    assert estimator.state.volume_rms == pytest.approx(0.14)


def test_fillers_counted_on_word_boundaries():
    assert count_fillers("Um, so I was like, you know, basically done") == 5
    assert count_fillers("Umbrella sofa") == 0


@pytest.mark.parametrize("wpm, expected", [
    (150, 1.0), (130, 1.0), (170, 1.0), (120, 0.6), (180, 0.6), (100, 0.2), (0, 0.2), (250, 0.2),
])
def test_speed_goodness(wpm, expected):
    assert speed_goodness(wpm) == pytest.approx(expected)


def test_quiet_audio_penalises_clarity():
    assert volume_modifier(0.2, 0.1) == 1.0
    assert volume_modifier(0.05, 0.1) == pytest.approx(0.75)
    assert volume_modifier(0.0, 0.1) == pytest.approx(0.5)


def test_articulation_modifier_floor():
    assert articulation_modifier([Word("a", 0, 300)], 300) == 1.0
    assert articulation_modifier([Word("a", 0, 5000)], 300) == pytest.approx(0.6)
    assert articulation_modifier([], 300) == 1.0
