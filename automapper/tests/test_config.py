import random

import pytest

from automapper.pipeline.config import GenerationOptions, PipelineConfig
from automapper.pipeline.determinism import make_rng
from automapper.pipeline.utils_config import (
    apply_dotted_overrides,
    parse_override_value,
    parse_overrides,
)


def test_parse_override_values():
    assert parse_override_value("true") is True
    assert parse_override_value("Off") is False
    assert parse_override_value("none") is None
    assert parse_override_value("7") == 7
    assert parse_override_value("0.25") == 0.25
    assert parse_override_value("mono_sum") == "mono_sum"


def test_parse_overrides_requires_equals():
    assert parse_overrides(["a.b=1", "c = x"]) == {"a.b": 1, "c": "x"}
    with pytest.raises(ValueError):
        parse_overrides(["a.b"])


def test_dotted_overrides_reach_nested_tables():
    config = PipelineConfig()
    apply_dotted_overrides(config, {
        "filter.beat_weight": 0.5,
        "filter.base_accept_rate.3": 0.9,
        "stage_d.playability.min_gap_ms.1": 300.0,
        "seed": 4,
    })
    assert config.filter.beat_weight == 0.5
    assert config.filter.base_accept_rate[3] == 0.9
    assert "3" not in config.filter.base_accept_rate
    assert config.stage_d.playability.min_gap_ms[1] == 300.0
    assert config.seed == 4


def test_unknown_override_raises():
    with pytest.raises(AttributeError):
        apply_dotted_overrides(PipelineConfig(), {"filter.nope": 1})


def test_configs_are_independent():
    a, b = PipelineConfig(), PipelineConfig()
    a.filter.base_accept_rate[3] = 0.1
    assert b.filter.base_accept_rate[3] == 0.80


def test_options_are_clamped():
    opts = GenerationOptions(difficulty=9, bpm=-5, min_note_interval=-1, maimai_intensity=3).normalized()
    assert opts.difficulty == 5
    assert opts.bpm == 120.0
    assert opts.min_note_interval == 0.0
    assert opts.maimai_intensity == 1.0
    assert GenerationOptions(difficulty=0).normalized().difficulty == 1


def test_seeded_rng():
    config = PipelineConfig(seed=3)
    assert make_rng(config).random() == random.Random(3).random()
    assert make_rng(PipelineConfig(deterministic=True)).random() == random.Random(0).random()
    assert make_rng(seed=9).random() == random.Random(9).random()
