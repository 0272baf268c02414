"""Read-side attribution reporting over persisted patient journeys.

Reports never mutate journeys. Each entry point reads one snapshot of the
journeys in its window and folds it in memory; model comparison folds the
same snapshot once per model so all six reports agree on their inputs.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, time as dt_time, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
from sqlalchemy.orm import Session, selectinload

from .attribution_engine import ATTRIBUTION_MODELS
from .errors import ValidationError
from .models_journeys import PatientJourney
from .utils.attribution_config import AttributionConfig, load_attribution_config

logger = logging.getLogger(__name__)

# Only these models hand a whole conversion to a single channel.
WHOLE_CONVERSION_CHANNEL_ATTR = {
    "first_touch": "first_touch_channel",
    "last_touch": "last_touch_channel",
}


# ---------------------------------------------------------------------------
# Date windows and queries
# ---------------------------------------------------------------------------

def _to_bound(value: Any, *, end: bool) -> datetime:
    """Parse a window bound. Date-only values cover the whole day."""
    if isinstance(value, datetime):
        ts = pd.Timestamp(value)
        date_only = False
    elif isinstance(value, date):
        ts = pd.Timestamp(value)
        date_only = True
    else:
        raw = str(value or "").strip()
        try:
            ts = pd.to_datetime(raw)
        except (ValueError, TypeError):
            raise ValidationError(f"Invalid date: {value!r}", field="end_date" if end else "start_date")
        if pd.isna(ts):
            raise ValidationError(f"Invalid date: {value!r}", field="end_date" if end else "start_date")
        date_only = len(raw) <= 10
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    out = ts.to_pydatetime()
    if date_only and end:
        out = datetime.combine(out.date(), dt_time.max)
    return out


def resolve_window(start_date: Any, end_date: Any) -> Tuple[datetime, datetime]:
    start = _to_bound(start_date, end=False)
    end = _to_bound(end_date, end=True)
    if start > end:
        start, end = _to_bound(end_date, end=False), _to_bound(start_date, end=True)
    return start, end


def _converted_in_window(db: Session, start: datetime, end: datetime) -> List[PatientJourney]:
    return (
        db.query(PatientJourney)
        .options(selectinload(PatientJourney.touchpoints))
        .filter(
            PatientJourney.converted == True,  # noqa: E712
            PatientJourney.conversion_date >= start,
            PatientJourney.conversion_date <= end,
        )
        .all()
    )


def _started_in_window(db: Session, start: datetime, end: datetime) -> List[PatientJourney]:
    return (
        db.query(PatientJourney)
        .filter(
            PatientJourney.journey_start_date >= start,
            PatientJourney.journey_start_date <= end,
        )
        .all()
    )


def _mean(values: Iterable[Optional[float]]) -> Optional[float]:
    series = pd.Series([v for v in values if v is not None], dtype="float64")
    if series.empty:
        return None
    return float(series.mean())


# ---------------------------------------------------------------------------
# Channel report
# ---------------------------------------------------------------------------

def _new_channel_row() -> Dict[str, float]:
    return {"conversions": 0, "attributed_conversions": 0.0, "revenue": 0.0, "touchpoints": 0}


def build_attribution_report(journeys: Sequence[PatientJourney], model: str) -> Dict[str, Any]:
    """
    Fold converted journeys into a per-channel report for one model.

    ``conversions`` is a whole-conversion count and is only filled for
    first/last touch; ``attributed_conversions`` is the sum of fractional
    credit and is filled for every model.
    """
    if model not in ATTRIBUTION_MODELS:
        raise ValidationError(f"Unknown model '{model}'. Available: {', '.join(ATTRIBUTION_MODELS)}", field="model")

    channels: Dict[str, Dict[str, float]] = defaultdict(_new_channel_row)
    for j in journeys:
        ltv = float(j.lifetime_value or 0.0)
        for tp in j.touchpoints:
            credit = float((tp.credits or {}).get(model, 0.0) or 0.0)
            row = channels[tp.channel]
            row["attributed_conversions"] += credit
            row["revenue"] += ltv * credit
            row["touchpoints"] += 1
        channel_attr = WHOLE_CONVERSION_CHANNEL_ATTR.get(model)
        if channel_attr and getattr(j, channel_attr):
            channels[getattr(j, channel_attr)]["conversions"] += 1

    n = len(journeys)
    channel_performance = {
        ch: {
            "conversions": int(row["conversions"]),
            "attributed_conversions": round(row["attributed_conversions"], 4),
            "revenue": round(row["revenue"], 2),
            "touchpoints": int(row["touchpoints"]),
        }
        for ch, row in sorted(channels.items(), key=lambda kv: (-kv[1]["revenue"], kv[0]))
    }
    return {
        "model": model,
        "total_conversions": n,
        "total_revenue": round(sum(float(j.lifetime_value or 0.0) for j in journeys), 2),
        "channel_performance": channel_performance,
        "avg_path_length": sum(j.path_length or 0 for j in journeys) / n if n else 0.0,
        "avg_journey_duration": sum(j.journey_duration or 0 for j in journeys) / n if n else 0.0,
    }


def get_attribution_report(
    db: Session,
    start_date: Any,
    end_date: Any,
    model: str = "last_touch",
) -> Dict[str, Any]:
    """Channel revenue and credit for journeys converted inside the window."""
    if model not in ATTRIBUTION_MODELS:
        raise ValidationError(f"Unknown model '{model}'. Available: {', '.join(ATTRIBUTION_MODELS)}", field="model")
    start, end = resolve_window(start_date, end_date)
    return build_attribution_report(_converted_in_window(db, start, end), model)


def compare_attribution_models(db: Session, start_date: Any, end_date: Any) -> Dict[str, Dict[str, Any]]:
    """Run the channel report once per model over the same journeys."""
    start, end = resolve_window(start_date, end_date)
    journeys = _converted_in_window(db, start, end)
    return {model: build_attribution_report(journeys, model) for model in ATTRIBUTION_MODELS}


def format_model_comparison(comparison: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Pivot a model comparison into channel -> model -> {conversions, revenue}."""
    channels: Dict[str, Dict[str, Dict[str, float]]] = defaultdict(dict)
    for model, report in comparison.items():
        for ch, metrics in (report.get("channel_performance") or {}).items():
            channels[ch][model] = {
                "conversions": metrics.get("attributed_conversions", 0.0),
                "revenue": metrics.get("revenue", 0.0),
            }
    return {"models": list(comparison.keys()), "channels": dict(channels)}


# ---------------------------------------------------------------------------
# Funnel and paths
# ---------------------------------------------------------------------------

def get_conversion_funnel(db: Session, start_date: Any, end_date: Any) -> Dict[str, Any]:
    """Conversion and multi-touch rates for journeys that started inside the window."""
    start, end = resolve_window(start_date, end_date)
    journeys = _started_in_window(db, start, end)

    total = len(journeys)
    converted = [j for j in journeys if j.converted]
    multi_touch = sum(1 for j in journeys if (j.path_length or 0) >= 2)

    avg_time_to_convert: Optional[Dict[str, Optional[float]]] = None
    if converted:
        ttc = [j.time_to_conversion or {} for j in converted]
        avg_time_to_convert = {
            "avg_days": _mean(j.journey_duration for j in converted),
            "avg_hours_from_first": _mean(t.get("hours_from_first_touch") for t in ttc),
            "avg_hours_from_last": _mean(t.get("hours_from_last_touch") for t in ttc),
        }

    return {
        "total_journeys": total,
        "converted": len(converted),
        "multi_touch_journeys": multi_touch,
        "conversion_rate": len(converted) / total * 100 if total > 0 else 0.0,
        "multi_touch_rate": multi_touch / total * 100 if total > 0 else 0.0,
        "avg_time_to_convert": avg_time_to_convert,
    }


def get_top_conversion_paths(
    db: Session,
    start_date: Any,
    end_date: Any,
    limit: int = 10,
) -> List[Dict[str, Any]]:
    """Most frequent channel paths among journeys converted inside the window."""
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValidationError("limit must be a positive integer", field="limit")
    start, end = resolve_window(start_date, end_date)
    journeys = _converted_in_window(db, start, end)
    if not journeys:
        return []

    df = pd.DataFrame(
        [
            {
                "path": j.conversion_path or "",
                "lifetime_value": float(j.lifetime_value or 0.0),
                "journey_duration": j.journey_duration,
            }
            for j in journeys
        ]
    )
    df["journey_duration"] = pd.to_numeric(df["journey_duration"], errors="coerce")
    grouped = (
        df.groupby("path", dropna=False)
        .agg(
            count=("path", "size"),
            avg_revenue=("lifetime_value", "mean"),
            avg_duration=("journey_duration", "mean"),
        )
        .reset_index()
        .sort_values(["count", "path"], ascending=[False, True])
        .head(limit)
    )

    out: List[Dict[str, Any]] = []
    for row in grouped.to_dict("records"):
        out.append(
            {
                "path": row["path"],
                "count": int(row["count"]),
                "avg_revenue": round(float(row["avg_revenue"]), 2),
                "avg_duration": None if pd.isna(row["avg_duration"]) else round(float(row["avg_duration"]), 2),
            }
        )
    return out


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

def get_attribution_dashboard(
    db: Session,
    start_date: Any = None,
    end_date: Any = None,
    config: Optional[AttributionConfig] = None,
) -> Dict[str, Any]:
    """Funnel, last-touch channel performance and top paths in one payload.

    The window defaults to the trailing ``dashboard_window_days``. ROI is an
    estimate against ``assumed_cost_per_touchpoint``; no spend data is read.
    """
    cfg = config or load_attribution_config()
    end = end_date if end_date is not None else datetime.utcnow()
    start = start_date if start_date is not None else _to_bound(end, end=True) - timedelta(days=cfg.dashboard_window_days)
    start, end = resolve_window(start, end)

    funnel = get_conversion_funnel(db, start, end)
    report = get_attribution_report(db, start, end, "last_touch")
    top_paths = get_top_conversion_paths(db, start, end, cfg.dashboard_top_paths)

    channel_performance = []
    for ch, metrics in report["channel_performance"].items():
        cost = metrics["touchpoints"] * cfg.assumed_cost_per_touchpoint
        roi = metrics["revenue"] / cost if metrics["revenue"] > 0 and cost > 0 else 0.0
        channel_performance.append({"channel": ch, **metrics, "roi": round(roi, 4)})
    channel_performance.sort(key=lambda x: -x["revenue"])

    logger.debug("Built attribution dashboard for %s..%s", start, end)
    return {
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "summary": {
            "total_conversions": report["total_conversions"],
            "total_revenue": report["total_revenue"],
            "avg_journey_length": round(report["avg_path_length"], 1),
            "avg_journey_duration": round(report["avg_journey_duration"], 1),
            "conversion_rate": round(funnel["conversion_rate"], 1),
        },
        "funnel": funnel,
        "channel_performance": channel_performance[: cfg.dashboard_top_channels],
        "top_conversion_paths": top_paths,
    }
