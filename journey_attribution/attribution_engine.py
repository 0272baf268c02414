"""
Patient Journey Attribution Engine.

Computes per-touchpoint credit for a single patient journey under six models:
  - First-touch
  - Last-touch
  - Linear
  - Time-decay (exponential, 7-day half-life by default)
  - Position-based (U-shaped)
  - Custom (channel-weighted)

Credit vectors are fractions that sum to 1.0 across a journey's touchpoints.
The pure functions take plain sequences; ``calculate_attribution`` applies
them to a ``PatientJourney`` in place without committing.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence

from .services_engagement import calculate_engagement_score
from .utils.attribution_config import DEFAULT_CUSTOM_CHANNEL_WEIGHTS, AttributionConfig

logger = logging.getLogger(__name__)


ATTRIBUTION_MODELS = [
    "first_touch",
    "last_touch",
    "linear",
    "time_decay",
    "position_based",
    "custom",
]

PATH_SEPARATOR = " > "


# ---------------------------------------------------------------------------
# Core credit functions
# ---------------------------------------------------------------------------

def first_touch_credits(n: int) -> List[float]:
    """100% credit to the first touchpoint."""
    return [1.0 if i == 0 else 0.0 for i in range(n)]


def last_touch_credits(n: int) -> List[float]:
    """100% credit to the last touchpoint."""
    return [1.0 if i == n - 1 else 0.0 for i in range(n)]


def linear_credits(n: int) -> List[float]:
    """Equal credit across all touchpoints."""
    if n == 0:
        return []
    share = 1.0 / n
    return [share] * n


def time_decay_credits(
    timestamps: Sequence[datetime],
    conversion_ts: Optional[datetime],
    half_life_days: float = 7.0,
) -> List[float]:
    """More credit to touchpoints closer to conversion. Exponential decay.

    Without a conversion instant there is nothing to decay towards, so every
    touchpoint receives the linear share.
    """
    n = len(timestamps)
    if n == 0:
        return []
    if conversion_ts is None:
        return linear_credits(n)

    days_ago = [(conversion_ts - ts).total_seconds() / 86400.0 for ts in timestamps]
    # Decay relative to the nearest touchpoint; it weighs 1.0, so the sum never underflows.
    nearest = min(days_ago)
    weights = [math.pow(0.5, (d - nearest) / half_life_days) for d in days_ago]
    total_weight = sum(weights) or 1.0
    return [w / total_weight for w in weights]


def position_based_credits(n: int, first_pct: float = 0.4, last_pct: float = 0.4) -> List[float]:
    """U-shaped: 40% first, 40% last, 20% split among middle touchpoints."""
    if n == 0:
        return []
    if n == 1:
        return [1.0]
    if n == 2:
        return [0.5, 0.5]
    middle_share = (1.0 - first_pct - last_pct) / (n - 2)
    return [first_pct] + [middle_share] * (n - 2) + [last_pct]


def custom_credits(
    channels: Sequence[str],
    channel_weights: Optional[Mapping[str, float]] = None,
) -> List[float]:
    """Credit proportional to a static per-channel weight; unknown channels weigh 1.0."""
    if not channels:
        return []
    table = DEFAULT_CUSTOM_CHANNEL_WEIGHTS if channel_weights is None else channel_weights
    weights = [float(table.get(ch, 1.0)) for ch in channels]
    total_weight = sum(weights)
    return [w / total_weight for w in weights]


def compute_credits(
    channels: Sequence[str],
    timestamps: Sequence[datetime],
    conversion_ts: Optional[datetime] = None,
    config: Optional[AttributionConfig] = None,
) -> Dict[str, List[float]]:
    """
    Compute all six credit vectors for one journey.

    Parameters
    ----------
    channels : channel of each touchpoint, in journey order
    timestamps : timestamp of each touchpoint, same order and length
    conversion_ts : conversion instant, or None when not yet converted
    config : model parameters; defaults apply when omitted

    Returns
    -------
    dict of model name -> list of per-touchpoint credits
    """
    if len(channels) != len(timestamps):
        raise ValueError("channels and timestamps must have the same length")
    cfg = config or AttributionConfig()
    n = len(channels)
    return {
        "first_touch": first_touch_credits(n),
        "last_touch": last_touch_credits(n),
        "linear": linear_credits(n),
        "time_decay": time_decay_credits(timestamps, conversion_ts, cfg.time_decay_half_life_days),
        "position_based": position_based_credits(n, cfg.position_first_pct, cfg.position_last_pct),
        "custom": custom_credits(channels, cfg.custom_channel_weights),
    }


def build_conversion_path(channels: Sequence[str]) -> str:
    return PATH_SEPARATOR.join(channels)


# ---------------------------------------------------------------------------
# Journey-level entry point
# ---------------------------------------------------------------------------

def calculate_attribution(journey, config: Optional[AttributionConfig] = None) -> None:
    """
    Recompute credits, path summary and engagement score for a journey.

    Every model is re-derived from scratch over the full touchpoint sequence.
    Mutates the journey and its touchpoints in place; persisting is left to
    the caller. A journey without touchpoints is left untouched.
    """
    tps = list(journey.touchpoints)
    if not tps:
        return

    channels = [tp.channel for tp in tps]
    credits = compute_credits(
        channels,
        [tp.timestamp for tp in tps],
        conversion_ts=journey.conversion_date,
        config=config,
    )
    for i, tp in enumerate(tps):
        tp.credits = {model: credits[model][i] for model in ATTRIBUTION_MODELS}

    journey.path_length = len(tps)
    journey.conversion_path = build_conversion_path(channels)
    journey.engagement_score = calculate_engagement_score(
        tps,
        converted=bool(journey.converted),
    )
    logger.debug(
        "Recomputed attribution for patient=%s over %d touchpoints",
        journey.patient_id,
        len(tps),
    )
