"""
Journey tracking: touchpoint ingestion, conversion and revenue updates.

Each store-bound operation runs one read-entire-journey -> recompute ->
write-entire-journey cycle. Writes for the same patient are serialized by an
in-process lock per patient id; across processes the ``version`` column on
``PatientJourney`` turns a lost update into ``ConcurrentUpdateError``.

Touchpoints must arrive in non-decreasing timestamp order. An older
touchpoint than the journey's current last one is rejected rather than
re-sorted, so positional models and the conversion path stay meaningful.
"""

from __future__ import annotations

import logging
import math
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Mapping, Optional

import pandas as pd
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .attribution_engine import calculate_attribution
from .errors import ConcurrentUpdateError, NotFoundError, ValidationError
from .models_journeys import (
    CHANNELS,
    CONVERSION_TYPES,
    DEVICES,
    MEDIUMS,
    REFERRAL_SOURCES,
    ConversionType,
    JourneyTouchpoint,
    PatientJourney,
)
from .utils.attribution_config import AttributionConfig

logger = logging.getLogger(__name__)


# Tracking pixels and webhooks send camelCase; the store uses snake_case.
FIELD_ALIASES: Dict[str, str] = {
    "landingPage": "landing_page",
    "referrerUrl": "referrer_url",
    "pageViews": "page_views",
    "sessionDuration": "session_duration",
    "sessionId": "session_id",
    "valueAdded": "value_added",
    "conversionDate": "conversion_date",
    "conversionType": "conversion_type",
    "appointmentId": "external_reference",
    "appointment_id": "external_reference",
    "appointmentDate": "first_appointment_date",
    "appointment_date": "first_appointment_date",
    "referralSource": "referral_source",
    "referringPatientId": "referring_patient_id",
    "referringProvider": "referring_provider",
}

TOUCHPOINT_STRING_FIELDS = (
    "source",
    "campaign",
    "content",
    "keyword",
    "landing_page",
    "referrer_url",
    "session_id",
    "browser",
    "os",
)

# Entries live only while some caller holds or waits on the patient's lock.
_registry_lock = threading.Lock()
_patient_locks: Dict[str, threading.Lock] = {}
_lock_holders: Dict[str, int] = {}


# ---------------------------------------------------------------------------
# Payload validation
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.utcnow()


def _normalize_keys(data: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in (data or {}).items():
        out[FIELD_ALIASES.get(key, key)] = value
    return out


def _parse_timestamp(value: Any, field: str) -> Optional[datetime]:
    """Parse ISO-8601 strings or datetimes to naive UTC. None/empty -> None."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        ts = pd.to_datetime(value, utc=True)
    except (ValueError, TypeError, OverflowError):
        raise ValidationError(f"{field} is not a valid timestamp: {value!r}", field=field)
    if pd.isna(ts):
        raise ValidationError(f"{field} is not a valid timestamp: {value!r}", field=field)
    return ts.tz_convert(None).to_pydatetime()


def _non_negative_int(value: Any, field: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a non-negative integer", field=field)
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            raise ValidationError(f"{field} must be a non-negative integer", field=field)
        return int(value)
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer", field=field)
    return value


def _non_negative_float(value: Any, field: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a non-negative number", field=field)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a non-negative number", field=field)
    if math.isnan(number) or number < 0:
        raise ValidationError(f"{field} must be a non-negative number", field=field)
    return number


def _optional_enum(value: Any, field: str, allowed) -> Optional[str]:
    if value is None or value == "":
        return None
    if value not in allowed:
        raise ValidationError(f"Unknown {field} '{value}'. Allowed: {', '.join(allowed)}", field=field)
    return value


def validate_touchpoint_payload(data: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Validate and normalize one raw marketing event into touchpoint fields."""
    raw = _normalize_keys(data)

    channel = raw.get("channel")
    if not channel:
        raise ValidationError("channel is required", field="channel")
    if channel not in CHANNELS:
        raise ValidationError(f"Unknown channel '{channel}'. Allowed: {', '.join(CHANNELS)}", field="channel")

    location = raw.get("location")
    if location is not None and not isinstance(location, dict):
        raise ValidationError("location must be an object with city/state/country", field="location")

    out: Dict[str, Any] = {
        "timestamp": _parse_timestamp(raw.get("timestamp"), "timestamp") or _utcnow(),
        "channel": channel,
        "medium": _optional_enum(raw.get("medium"), "medium", MEDIUMS),
        "device": _optional_enum(raw.get("device"), "device", DEVICES),
        "page_views": _non_negative_int(raw.get("page_views"), "page_views", default=1),
        "interactions": _non_negative_int(raw.get("interactions"), "interactions", default=0),
        "session_duration": _non_negative_float(raw.get("session_duration"), "session_duration"),
        "value_added": _non_negative_float(raw.get("value_added"), "value_added") or 0.0,
        "location": location,
    }
    for key in TOUCHPOINT_STRING_FIELDS:
        value = raw.get(key)
        out[key] = str(value) if value not in (None, "") else None
    return out


# ---------------------------------------------------------------------------
# Journey mutations (in memory, no commit)
# ---------------------------------------------------------------------------

def new_journey(patient_id: str) -> PatientJourney:
    if not patient_id or not str(patient_id).strip():
        raise ValidationError("patient_id is required", field="patient_id")
    now = _utcnow()
    return PatientJourney(
        patient_id=str(patient_id).strip(),
        converted=False,
        conversion_type=ConversionType.NOT_CONVERTED,
        lifetime_value=0.0,
        first_year_revenue=0.0,
        channel_counts={},
        campaigns=[],
        session_ids=[],
        path_length=0,
        engagement_score=0.0,
        referral_source="none",
        created_at=now,
        updated_at=now,
    )


def add_touchpoint(
    journey: PatientJourney,
    data: Optional[Mapping[str, Any]],
    config: Optional[AttributionConfig] = None,
) -> PatientJourney:
    """Append a touchpoint and recompute every attribution model."""
    fields = validate_touchpoint_payload(data)
    existing = list(journey.touchpoints)
    if existing and fields["timestamp"] < existing[-1].timestamp:
        raise ValidationError(
            f"Touchpoint at {fields['timestamp'].isoformat()} is older than the last recorded "
            f"touchpoint ({existing[-1].timestamp.isoformat()})",
            field="timestamp",
        )

    tp = JourneyTouchpoint(position=len(existing), credits={}, **fields)
    journey.touchpoints.append(tp)

    counts = dict(journey.channel_counts or {})
    counts[tp.channel] = counts.get(tp.channel, 0) + 1
    journey.channel_counts = counts

    if not existing:
        journey.first_touch_channel = tp.channel
        journey.journey_start_date = tp.timestamp
        journey.utm_params = {
            "source": tp.source,
            "medium": tp.medium,
            "campaign": tp.campaign,
            "term": tp.keyword,
            "content": tp.content,
        }
    journey.last_touch_channel = tp.channel

    campaigns = list(journey.campaigns or [])
    if tp.campaign and tp.campaign not in campaigns:
        campaigns.append(tp.campaign)
        journey.campaigns = campaigns
        if not journey.primary_campaign:
            journey.primary_campaign = tp.campaign

    sessions = list(journey.session_ids or [])
    if tp.session_id and tp.session_id not in sessions:
        sessions.append(tp.session_id)
        journey.session_ids = sessions

    calculate_attribution(journey, config)
    journey.updated_at = _utcnow()
    return journey


def mark_converted(
    journey: PatientJourney,
    data: Optional[Mapping[str, Any]] = None,
    config: Optional[AttributionConfig] = None,
) -> PatientJourney:
    """
    Record the conversion and recompute, now decaying towards the conversion instant.

    Converting an already-converted journey keeps ``converted`` set but
    overwrites the conversion metadata with the new values.
    """
    raw = _normalize_keys(data)
    conversion_date = _parse_timestamp(raw.get("conversion_date"), "conversion_date") or _utcnow()
    conversion_type = raw.get("conversion_type") or ConversionType.APPOINTMENT_BOOKED
    if conversion_type not in CONVERSION_TYPES or conversion_type == ConversionType.NOT_CONVERTED:
        raise ValidationError(f"Unknown conversion_type '{conversion_type}'", field="conversion_type")
    appointment_date = _parse_timestamp(raw.get("first_appointment_date"), "first_appointment_date")
    reference = raw.get("external_reference")
    if journey.journey_start_date and conversion_date < journey.journey_start_date:
        raise ValidationError(
            f"conversion_date {conversion_date.isoformat()} is before the journey start "
            f"({journey.journey_start_date.isoformat()})",
            field="conversion_date",
        )

    if journey.converted:
        logger.info(
            "Patient %s re-converted; replacing conversion recorded at %s",
            journey.patient_id,
            journey.conversion_date,
        )

    journey.converted = True
    journey.conversion_date = conversion_date
    journey.conversion_type = conversion_type
    journey.external_reference = str(reference) if reference not in (None, "") else None
    journey.first_appointment_date = appointment_date

    if journey.journey_start_date:
        delta = conversion_date - journey.journey_start_date
        journey.journey_duration = math.floor(delta.total_seconds() / 86400.0)

    tps = list(journey.touchpoints)
    if tps:
        journey.time_to_conversion = {
            "hours_from_first_touch": (conversion_date - tps[0].timestamp).total_seconds() / 3600.0,
            "hours_from_last_touch": (conversion_date - tps[-1].timestamp).total_seconds() / 3600.0,
        }

    calculate_attribution(journey, config)
    journey.updated_at = _utcnow()
    return journey


def update_revenue(
    journey: PatientJourney,
    lifetime_value: Any = None,
    first_year_revenue: Any = None,
) -> PatientJourney:
    """Set revenue metrics; missing values reset to 0."""
    ltv = _non_negative_float(lifetime_value, "lifetime_value")
    fyr = _non_negative_float(first_year_revenue, "first_year_revenue")
    journey.lifetime_value = ltv or 0.0
    journey.first_year_revenue = fyr or 0.0
    journey.updated_at = _utcnow()
    return journey


def update_referral(journey: PatientJourney, data: Optional[Mapping[str, Any]]) -> PatientJourney:
    raw = _normalize_keys(data)
    source = raw.get("referral_source") or "none"
    if source not in REFERRAL_SOURCES:
        raise ValidationError(f"Unknown referral_source '{source}'", field="referral_source")
    journey.referral_source = source
    journey.referring_patient_id = raw.get("referring_patient_id")
    journey.referring_provider = raw.get("referring_provider")
    if "notes" in raw:
        journey.notes = raw.get("notes")
    journey.updated_at = _utcnow()
    return journey


# ---------------------------------------------------------------------------
# Journey store operations
# ---------------------------------------------------------------------------

@contextmanager
def patient_lock(patient_id: str) -> Iterator[None]:
    """Serialize read-modify-write cycles for one patient within this process."""
    with _registry_lock:
        lock = _patient_locks.setdefault(patient_id, threading.Lock())
        _lock_holders[patient_id] = _lock_holders.get(patient_id, 0) + 1
    try:
        with lock:
            yield
    finally:
        with _registry_lock:
            _lock_holders[patient_id] -= 1
            if not _lock_holders[patient_id]:
                del _lock_holders[patient_id]
                del _patient_locks[patient_id]


def journey_key(patient_id: Any) -> str:
    """Canonical store key for a patient id: surrounding whitespace is ignored."""
    return str(patient_id or "").strip()


def get_journey(db: Session, patient_id: str) -> Optional[PatientJourney]:
    key = journey_key(patient_id)
    if not key:
        return None
    return db.query(PatientJourney).filter(PatientJourney.patient_id == key).one_or_none()


def _require_journey(db: Session, patient_id: str) -> PatientJourney:
    journey = get_journey(db, patient_id)
    if journey is None:
        raise NotFoundError(f"No attribution journey found for patient '{patient_id}'")
    return journey


def _commit(db: Session, journey: PatientJourney) -> PatientJourney:
    try:
        db.commit()
    except (StaleDataError, IntegrityError) as exc:
        db.rollback()
        logger.warning("Concurrent update rejected for patient %s: %s", journey.patient_id, exc)
        raise ConcurrentUpdateError(
            f"Journey for patient '{journey.patient_id}' was modified concurrently; retry the request"
        ) from exc
    db.refresh(journey)
    return journey


def record_touchpoint(
    db: Session,
    patient_id: str,
    payload: Optional[Mapping[str, Any]],
    config: Optional[AttributionConfig] = None,
) -> PatientJourney:
    """Add a touchpoint for a patient, creating the journey on first contact."""
    key = journey_key(patient_id)
    with patient_lock(key):
        journey = get_journey(db, key)
        created = journey is None
        if created:
            journey = new_journey(key)
        add_touchpoint(journey, payload, config)
        if created:
            db.add(journey)
            logger.info("Started attribution journey for patient %s via %s", key, journey.first_touch_channel)
        return _commit(db, journey)


def record_conversion(
    db: Session,
    patient_id: str,
    payload: Optional[Mapping[str, Any]] = None,
    config: Optional[AttributionConfig] = None,
) -> PatientJourney:
    """Mark a patient's journey converted. Raises NotFoundError when no journey exists."""
    key = journey_key(patient_id)
    with patient_lock(key):
        journey = _require_journey(db, key)
        mark_converted(journey, payload, config)
        logger.info(
            "Patient %s converted (%s) after %s touchpoints",
            key,
            journey.conversion_type,
            journey.path_length,
        )
        return _commit(db, journey)


def record_revenue(
    db: Session,
    patient_id: str,
    lifetime_value: Any = None,
    first_year_revenue: Any = None,
) -> PatientJourney:
    key = journey_key(patient_id)
    with patient_lock(key):
        journey = _require_journey(db, key)
        update_revenue(journey, lifetime_value, first_year_revenue)
        return _commit(db, journey)


def record_referral(db: Session, patient_id: str, payload: Optional[Mapping[str, Any]]) -> PatientJourney:
    key = journey_key(patient_id)
    with patient_lock(key):
        journey = _require_journey(db, key)
        update_referral(journey, payload)
        return _commit(db, journey)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def serialize_touchpoint(tp: JourneyTouchpoint) -> Dict[str, Any]:
    return {
        "position": tp.position,
        "timestamp": _iso(tp.timestamp),
        "channel": tp.channel,
        "medium": tp.medium,
        "source": tp.source,
        "campaign": tp.campaign,
        "content": tp.content,
        "keyword": tp.keyword,
        "landing_page": tp.landing_page,
        "referrer_url": tp.referrer_url,
        "page_views": tp.page_views,
        "interactions": tp.interactions,
        "session_duration": tp.session_duration,
        "session_id": tp.session_id,
        "device": tp.device,
        "browser": tp.browser,
        "os": tp.os,
        "location": tp.location,
        "value_added": tp.value_added,
        "credits": dict(tp.credits or {}),
    }


def serialize_journey(journey: PatientJourney, include_touchpoints: bool = True) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "patient_id": journey.patient_id,
        "journey_start_date": _iso(journey.journey_start_date),
        "converted": bool(journey.converted),
        "conversion_date": _iso(journey.conversion_date),
        "conversion_type": journey.conversion_type,
        "external_reference": journey.external_reference,
        "first_appointment_date": _iso(journey.first_appointment_date),
        "journey_duration": journey.journey_duration,
        "lifetime_value": float(journey.lifetime_value or 0.0),
        "first_year_revenue": float(journey.first_year_revenue or 0.0),
        "first_touch_channel": journey.first_touch_channel,
        "last_touch_channel": journey.last_touch_channel,
        "channel_counts": dict(journey.channel_counts or {}),
        "campaigns": list(journey.campaigns or []),
        "primary_campaign": journey.primary_campaign,
        "conversion_path": journey.conversion_path,
        "path_length": journey.path_length,
        "time_to_conversion": journey.time_to_conversion,
        "utm_params": journey.utm_params,
        "referral_source": journey.referral_source,
        "referring_patient_id": journey.referring_patient_id,
        "referring_provider": journey.referring_provider,
        "engagement_score": float(journey.engagement_score or 0.0),
        "session_ids": list(journey.session_ids or []),
        "notes": journey.notes,
        "updated_at": _iso(journey.updated_at),
    }
    if include_touchpoints:
        out["touchpoints"] = [serialize_touchpoint(tp) for tp in journey.touchpoints]
    return out
