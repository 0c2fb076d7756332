"""Tests for pipeline parameters and profiles."""

from __future__ import annotations

import json

import pytest

from omr_config import (
    DEFAULT_CONFIG,
    PipelineConfig,
    cell_resembles_anchor,
    get_profile,
    grid_cell_aspect,
    load_config,
    option_letters,
)


def test_default_parameters():
    config = DEFAULT_CONFIG

    assert config.page_size == (595, 842)
    assert config.options == "ABCDE"
    assert config.num_questions == 20
    assert config.fill_threshold == 0.4
    assert config.epsilon_ratio == 0.04
    assert config.min_anchor_area == 400.0


def test_strict_profile():
    strict = get_profile("strict")

    assert strict.epsilon_ratio == 0.02
    assert strict.min_anchor_area == 1000.0
    assert strict.num_questions == 50
    with pytest.raises(ValueError):
        get_profile("loose")


def test_option_letters():
    assert option_letters(4) == "ABCD"
    with pytest.raises(ValueError):
        option_letters(0)
    with pytest.raises(ValueError):
        option_letters(27)


@pytest.mark.parametrize(
    "changes",
    [
        {"num_questions": 0},
        {"fill_threshold": 1.0},
        {"epsilon_ratio": 0.0},
        {"aspect_min": 1.2, "aspect_max": 1.1},
        {"blur_kernel": 4},
        {"page_width": 0},
    ],
)
def test_invalid_parameters_are_rejected(changes):
    with pytest.raises(ValueError):
        PipelineConfig(**changes).validate()


def test_cell_aspect_against_anchor_band():
    assert grid_cell_aspect(20, 5) == pytest.approx((499 / 5) / (746 / 20))
    assert cell_resembles_anchor(8, 5)
    assert not cell_resembles_anchor(20, 5)
    assert not cell_resembles_anchor(10, 5)
    assert DEFAULT_CONFIG.cell_resembles_anchor(7)
    with pytest.raises(ValueError, match="anchors"):
        PipelineConfig(num_questions=8).validate()


def test_replace_ignores_none():
    config = DEFAULT_CONFIG.replace(num_questions=None, fill_threshold=0.5)

    assert config.num_questions == 20
    assert config.fill_threshold == 0.5
    assert DEFAULT_CONFIG.fill_threshold == 0.4


def test_dict_round_trip_rejects_unknown_keys():
    assert PipelineConfig.from_dict(DEFAULT_CONFIG.to_dict()) == DEFAULT_CONFIG
    with pytest.raises(ValueError, match="bubble_radius"):
        PipelineConfig.from_dict({"bubble_radius": 8})


def test_load_config_from_json(tmp_path):
    path = tmp_path / "omr.json"
    path.write_text(json.dumps({"profile": "strict", "fill_threshold": 0.3}), encoding="utf-8")

    from_file = load_config(path)
    overridden = load_config(path, profile="default")

    assert from_file.num_questions == 50
    assert from_file.fill_threshold == 0.3
    assert overridden.num_questions == 20
    assert overridden.fill_threshold == 0.3
    assert load_config() is DEFAULT_CONFIG


def test_load_config_requires_an_object(tmp_path):
    path = tmp_path / "omr.json"
    path.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(ValueError):
        load_config(path)
