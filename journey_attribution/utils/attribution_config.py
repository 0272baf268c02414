from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict

logger = logging.getLogger(__name__)


DEFAULT_CUSTOM_CHANNEL_WEIGHTS: Dict[str, float] = {
    "referral": 1.8,
    "paid_search": 1.5,
    "marketplace": 1.4,
    "paid_social": 1.3,
    "review_sites": 1.2,
    "organic_search": 1.0,
    "email": 0.8,
    "social_organic": 0.7,
    "direct": 0.5,
}


@dataclass
class AttributionConfig:
    """Tunable knobs for the attribution models and reports."""

    time_decay_half_life_days: float = 7.0
    position_first_pct: float = 0.4
    position_last_pct: float = 0.4
    custom_channel_weights: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_CUSTOM_CHANNEL_WEIGHTS)
    )
    # Used for the dashboard ROI estimate only; there is no spend source.
    assumed_cost_per_touchpoint: float = 50.0
    dashboard_window_days: int = 30
    dashboard_top_channels: int = 10
    dashboard_top_paths: int = 5
    top_paths_limit: int = 10


_BASE_DIR = Path(__file__).resolve().parent.parent


def _config_path() -> Path:
    data_dir = Path(os.getenv("ATTRIBUTION_DATA_DIR", str(_BASE_DIR / "data")))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "attribution_config.json"


def validate_attribution_config(cfg: AttributionConfig) -> None:
    if cfg.time_decay_half_life_days <= 0:
        raise ValueError("time_decay_half_life_days must be positive")
    if cfg.position_first_pct < 0 or cfg.position_last_pct < 0:
        raise ValueError("position_first_pct and position_last_pct must be non-negative")
    if cfg.position_first_pct + cfg.position_last_pct > 1.0:
        raise ValueError("position_first_pct + position_last_pct must not exceed 1.0")
    if any(w <= 0 for w in cfg.custom_channel_weights.values()):
        raise ValueError("custom_channel_weights must all be positive")


def load_attribution_config() -> AttributionConfig:
    path = _config_path()
    if not path.exists():
        return AttributionConfig()
    try:
        raw = json.loads(path.read_text())
        cfg = AttributionConfig(**raw)
        validate_attribution_config(cfg)
    except Exception as exc:
        logger.warning("Ignoring unreadable attribution config at %s: %s", path, exc)
        return AttributionConfig()
    return cfg


def save_attribution_config(cfg: AttributionConfig) -> None:
    validate_attribution_config(cfg)
    path = _config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(cfg), indent=2))
