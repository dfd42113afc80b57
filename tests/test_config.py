"""Tests for the runtime configuration layer."""

import json

import pytest
from pydantic import ValidationError

from coach_engine.config import CoachEngineConfig


def test_defaults_match_documented_constants():
    cfg = CoachEngineConfig()
    assert cfg.service.sample_rate == 16000
    assert cfg.audio.frame_ms == 100
    assert cfg.link.token_attempts == 3
    assert cfg.link.backoff_ceiling == 30.0
    assert cfg.metrics.speed_window_sec == 4.0
    assert cfg.warnings.debounce_sec == 3.0
    assert (cfg.warnings.pace_bad_below, cfg.warnings.pace_bad_above) == (110.0, 190.0)
    assert cfg.feedback.interval_sec == 10.0
    assert cfg.feedback.window_sec == 30.0


def test_load_missing_file_returns_defaults(tmp_path):
    cfg = CoachEngineConfig.load(tmp_path / "nope.json")
    assert cfg == CoachEngineConfig()


def test_load_corrupt_file_returns_defaults(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{ this is not json", encoding="utf-8")
    assert CoachEngineConfig.load(path) == CoachEngineConfig()


def test_save_then_load(tmp_path):
    path = tmp_path / "nested" / "config.json"
    cfg = CoachEngineConfig().merge_patch({"feedback": {"interval_sec": 5}, "audio": {"device": 2}})
    cfg.save(path)

    assert json.loads(path.read_text())["feedback"]["interval_sec"] == 5
    assert CoachEngineConfig.load(path) == cfg


def test_merge_patch_only_touches_named_keys():
    base = CoachEngineConfig()
    updated = base.merge_patch({"warnings": {"debounce_sec": 1.5}})

    assert updated.warnings.debounce_sec == 1.5
    assert updated.warnings.clarity_bad_below == base.warnings.clarity_bad_below
    assert updated.metrics == base.metrics
    assert base.warnings.debounce_sec == 3.0


def test_merge_patch_rejects_out_of_range_values():
    with pytest.raises(ValidationError):
        CoachEngineConfig().merge_patch({"metrics": {"decay_factor": 1.5}})
