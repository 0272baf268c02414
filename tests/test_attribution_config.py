import json

import pytest

from journey_attribution.utils.attribution_config import (
    DEFAULT_CUSTOM_CHANNEL_WEIGHTS,
    AttributionConfig,
    load_attribution_config,
    save_attribution_config,
    validate_attribution_config,
)


@pytest.fixture(autouse=True)
def _data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("ATTRIBUTION_DATA_DIR", str(tmp_path))
    return tmp_path


def test_load_returns_defaults_when_no_file(_data_dir):
    cfg = load_attribution_config()
    assert cfg == AttributionConfig()
    assert cfg.custom_channel_weights == DEFAULT_CUSTOM_CHANNEL_WEIGHTS
    assert cfg.custom_channel_weights is not DEFAULT_CUSTOM_CHANNEL_WEIGHTS


def test_save_then_load_persists_values(_data_dir):
    save_attribution_config(AttributionConfig(time_decay_half_life_days=3.5, top_paths_limit=25))
    on_disk = json.loads((_data_dir / "attribution_config.json").read_text())
    assert on_disk["time_decay_half_life_days"] == 3.5

    cfg = load_attribution_config()
    assert cfg.time_decay_half_life_days == 3.5
    assert cfg.top_paths_limit == 25


def test_corrupt_file_falls_back_to_defaults(_data_dir):
    (_data_dir / "attribution_config.json").write_text("{not json")
    assert load_attribution_config() == AttributionConfig()

    (_data_dir / "attribution_config.json").write_text(json.dumps({"time_decay_half_life_days": -1}))
    assert load_attribution_config() == AttributionConfig()


@pytest.mark.parametrize(
    "overrides",
    [
        {"time_decay_half_life_days": 0},
        {"position_first_pct": -0.1},
        {"position_first_pct": 0.6, "position_last_pct": 0.5},
        {"custom_channel_weights": {"email": 0.0}},
    ],
)
def test_invalid_config_is_rejected(overrides):
    with pytest.raises(ValueError):
        validate_attribution_config(AttributionConfig(**overrides))
    with pytest.raises(ValueError):
        save_attribution_config(AttributionConfig(**overrides))
