"""Tests for sustained-breach warning debounce."""

import asyncio

import pytest

from coach_engine.config import WarningConfig
from coach_engine.debounce import WarningDebouncer
from coach_engine.models import MetricState


def make_debouncer():
    shown = []
    debouncer = WarningDebouncer(WarningConfig(debounce_sec=0.05), lambda msg, metric: shown.append((metric, msg)))
    return debouncer, shown


@pytest.mark.asyncio
async def test_short_dip_never_warns():
    debouncer, shown = make_debouncer()
    debouncer.update("clarity", 0.1)
    await asyncio.sleep(0.02)
    debouncer.update("clarity", 0.8)
    await asyncio.sleep(0.08)
    assert shown == []


@pytest.mark.asyncio
async def test_sustained_breach_warns_exactly_once():
    debouncer, shown = make_debouncer()
    debouncer.update("confidence", 0.1)
    await asyncio.sleep(0.03)
    debouncer.update("confidence", 0.15)
    await asyncio.sleep(0.1)
    debouncer.update("confidence", 0.2)
    await asyncio.sleep(0.1)

    assert len(shown) == 1
    metric, message = shown[0]
    assert metric == "confidence"
    assert "15%" in message
    assert "confidence" in debouncer.active


@pytest.mark.asyncio
async def test_shown_warning_does_not_rearm_timer():
    debouncer, shown = make_debouncer()
    debouncer.update("clarity", 0.1)
    await asyncio.sleep(0.1)
    assert "clarity" in debouncer.active

    debouncer.update("clarity", 0.05)
    assert not debouncer._timers["clarity"].running
    await asyncio.sleep(0.1)
    assert len(shown) == 1


@pytest.mark.asyncio
async def test_recovery_clears_warning():
    debouncer, shown = make_debouncer()
    debouncer.update("pace", 230)
    await asyncio.sleep(0.1)
    debouncer.update("pace", 150)

    assert shown[0][0] == "pace" and "fast" in shown[0][1]
    assert shown[-1] == ("pace", None)
    assert debouncer.active == {}


@pytest.mark.asyncio
async def test_metrics_are_independent():
    debouncer, shown = make_debouncer()
    debouncer.update("clarity", 0.1)
    await asyncio.sleep(0.03)
    debouncer.update("pace", 80)
    debouncer.update("clarity", 0.9)
    await asyncio.sleep(0.1)

    assert [m for m, msg in shown if msg] == ["pace"]
    assert "slow" in shown[0][1]


@pytest.mark.asyncio
async def test_evaluate_reads_all_three_metrics():
    debouncer, shown = make_debouncer()
    debouncer.evaluate(MetricState(confidence=0.1, clarity=0.1, talking_speed_wpm=250))
    await asyncio.sleep(0.1)
    assert sorted(m for m, _ in shown) == ["clarity", "confidence", "pace"]
    debouncer.cancel_all()


@pytest.mark.asyncio
async def test_cancel_all_stops_pending_warnings():
    debouncer, shown = make_debouncer()
    debouncer.update("clarity", 0.1)
    debouncer.cancel_all()
    await asyncio.sleep(0.1)
    assert shown == []


def test_zero_pace_is_not_a_pacing_problem():
    debouncer = WarningDebouncer()
    assert not debouncer.is_bad("pace", 0)
    assert debouncer.is_bad("pace", 100)
    assert debouncer.is_bad("pace", 200)
    assert not debouncer.is_bad("pace", 150)
