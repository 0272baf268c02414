from fastapi import FastAPI, Depends, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy.orm import Session
from typing import Optional, Dict, Any
from dataclasses import asdict
import logging

from journey_attribution.db import Base, engine, get_db
from journey_attribution.errors import ConcurrentUpdateError, NotFoundError, ValidationError
from journey_attribution.attribution_engine import ATTRIBUTION_MODELS
from journey_attribution.models_journeys import CHANNELS, CONVERSION_TYPES
from journey_attribution.services_journey_tracking import (
    get_journey,
    record_conversion,
    record_referral,
    record_revenue,
    record_touchpoint,
    serialize_journey,
)
from journey_attribution.services_attribution_reports import (
    compare_attribution_models,
    format_model_comparison,
    get_attribution_dashboard,
    get_attribution_report,
    get_conversion_funnel,
    get_top_conversion_paths,
)
from journey_attribution.utils.attribution_config import (
    AttributionConfig,
    load_attribution_config,
    save_attribution_config,
)

logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(title="Patient Journey Attribution API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== Pydantic Models ====================

class Location(BaseModel):
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None


class TouchpointPayload(BaseModel):
    """Raw marketing event forwarded by tracking pixels and webhooks."""

    patient_id: str
    channel: Optional[str] = None
    timestamp: Optional[str] = None  # ISO-8601, defaults to now
    medium: Optional[str] = None
    source: Optional[str] = None
    campaign: Optional[str] = None
    content: Optional[str] = None
    keyword: Optional[str] = None
    landing_page: Optional[str] = None
    referrer_url: Optional[str] = None
    page_views: Optional[Any] = None
    interactions: Optional[Any] = None
    session_duration: Optional[float] = None
    session_id: Optional[str] = None
    device: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    location: Optional[Location] = None


class ConversionPayload(BaseModel):
    conversion_date: Optional[str] = None
    conversion_type: Optional[str] = None
    external_reference: Optional[str] = None  # e.g. booking id; stored, not interpreted
    first_appointment_date: Optional[str] = None


class RevenuePayload(BaseModel):
    lifetime_value: Optional[float] = None
    first_year_revenue: Optional[float] = None


class ReferralPayload(BaseModel):
    referral_source: Optional[str] = None
    referring_patient_id: Optional[str] = None
    referring_provider: Optional[str] = None
    notes: Optional[str] = None


class AttributionSettingsModel(BaseModel):
    time_decay_half_life_days: float = 7.0
    position_first_pct: float = 0.4
    position_last_pct: float = 0.4
    custom_channel_weights: Dict[str, float] = {}
    assumed_cost_per_touchpoint: float = 50.0
    dashboard_window_days: int = 30
    dashboard_top_channels: int = 10
    dashboard_top_paths: int = 5
    top_paths_limit: int = 10


# ==================== Helpers ====================

def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConcurrentUpdateError):
        return HTTPException(status_code=409, detail=str(exc))
    raise exc


def _period(start_date: str, end_date: str) -> Dict[str, str]:
    return {"start": start_date, "end": end_date}


# ==================== Settings ====================

@app.get("/api/health")
def health():
    return {"status": "ok", "attribution_models": ATTRIBUTION_MODELS}


@app.get("/api/settings")
def get_settings():
    return asdict(load_attribution_config())


@app.post("/api/settings")
def update_settings(new_settings: AttributionSettingsModel):
    data = new_settings.model_dump()
    if not data["custom_channel_weights"]:
        data.pop("custom_channel_weights")
    cfg = AttributionConfig(**data)
    try:
        save_attribution_config(cfg)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return asdict(cfg)


# ==================== Tracking ====================

@app.get("/api/attribution/models")
def list_attribution_models():
    return {"models": ATTRIBUTION_MODELS, "channels": list(CHANNELS), "conversion_types": list(CONVERSION_TYPES)}


@app.post("/api/attribution/track")
def track_touchpoint(payload: TouchpointPayload, db: Session = Depends(get_db)):
    data = payload.model_dump(exclude={"patient_id"}, exclude_none=True)
    try:
        journey = record_touchpoint(db, payload.patient_id, data, config=load_attribution_config())
    except (ValidationError, ConcurrentUpdateError) as e:
        raise _http_error(e)
    return {"success": True, "message": "Touchpoint tracked successfully", "data": serialize_journey(journey)}


@app.put("/api/attribution/{patient_id}/convert")
def convert_patient(patient_id: str, payload: ConversionPayload = ConversionPayload(), db: Session = Depends(get_db)):
    try:
        journey = record_conversion(db, patient_id, payload.model_dump(exclude_none=True), config=load_attribution_config())
    except (ValidationError, NotFoundError, ConcurrentUpdateError) as e:
        raise _http_error(e)
    return {"success": True, "message": "Patient marked as converted", "data": serialize_journey(journey)}


@app.put("/api/attribution/{patient_id}/revenue")
def update_patient_revenue(patient_id: str, payload: RevenuePayload, db: Session = Depends(get_db)):
    try:
        journey = record_revenue(db, patient_id, payload.lifetime_value, payload.first_year_revenue)
    except (ValidationError, NotFoundError, ConcurrentUpdateError) as e:
        raise _http_error(e)
    return {"success": True, "message": "Revenue updated successfully", "data": serialize_journey(journey)}


@app.put("/api/attribution/{patient_id}/referral")
def update_patient_referral(patient_id: str, payload: ReferralPayload, db: Session = Depends(get_db)):
    try:
        journey = record_referral(db, patient_id, payload.model_dump(exclude_none=True))
    except (ValidationError, NotFoundError, ConcurrentUpdateError) as e:
        raise _http_error(e)
    return {"success": True, "message": "Referral updated successfully", "data": serialize_journey(journey)}


@app.get("/api/attribution/patient/{patient_id}")
def get_patient_journey(patient_id: str, db: Session = Depends(get_db)):
    journey = get_journey(db, patient_id)
    if journey is None:
        return {"success": True, "message": "No attribution data found for this patient", "data": None}
    return {"success": True, "data": serialize_journey(journey)}


# ==================== Reports ====================

@app.get("/api/attribution/report")
def attribution_report(
    start_date: str = Query(...),
    end_date: str = Query(...),
    model: str = "last_touch",
    db: Session = Depends(get_db),
):
    try:
        report = get_attribution_report(db, start_date, end_date, model)
    except ValidationError as e:
        raise _http_error(e)
    return {"success": True, "period": _period(start_date, end_date), "attribution_model": model, "report": report}


@app.get("/api/attribution/funnel")
def conversion_funnel(start_date: str = Query(...), end_date: str = Query(...), db: Session = Depends(get_db)):
    try:
        funnel = get_conversion_funnel(db, start_date, end_date)
    except ValidationError as e:
        raise _http_error(e)
    return {"success": True, "period": _period(start_date, end_date), "funnel": funnel}


@app.get("/api/attribution/top-paths")
def top_conversion_paths(
    start_date: str = Query(...),
    end_date: str = Query(...),
    limit: Optional[int] = None,
    db: Session = Depends(get_db),
):
    lim = limit if limit is not None else load_attribution_config().top_paths_limit
    try:
        paths = get_top_conversion_paths(db, start_date, end_date, lim)
    except ValidationError as e:
        raise _http_error(e)
    return {"success": True, "period": _period(start_date, end_date), "paths": paths}


@app.get("/api/attribution/comparison")
def model_comparison(start_date: str = Query(...), end_date: str = Query(...), db: Session = Depends(get_db)):
    try:
        comparison = compare_attribution_models(db, start_date, end_date)
    except ValidationError as e:
        raise _http_error(e)
    return {
        "success": True,
        "period": _period(start_date, end_date),
        "comparison": format_model_comparison(comparison),
        "raw_data": comparison,
    }


@app.get("/api/attribution/dashboard")
def attribution_dashboard(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    db: Session = Depends(get_db),
):
    try:
        dashboard = get_attribution_dashboard(db, start_date, end_date)
    except ValidationError as e:
        raise _http_error(e)
    return {"success": True, **dashboard}
