"""SQLAlchemy models for patient acquisition journeys and their touchpoints."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .db import Base


CHANNELS = (
    "organic_search",  # Google/Bing organic
    "paid_search",  # Google Ads, Bing Ads
    "social_organic",
    "social_paid",
    "email",
    "direct",  # typed URL
    "referral",  # patient/provider referral
    "display_ads",
    "video_ads",
    "content",  # blog posts, articles
    "review_sites",  # Google Reviews, Yelp, Healthgrades
    "marketplace",
    "events",  # health fairs, community events
    "print",
    "radio",
    "tv",
    "partnership",  # insurance/corporate partnerships
    "retargeting",
    "sms",
    "affiliate",
    "other",
)

MEDIUMS = ("cpc", "cpm", "organic", "referral", "email", "social", "display", "affiliate", "other")

DEVICES = ("desktop", "mobile", "tablet")


class ConversionType:
    """Conversion type values stored on ``PatientJourney.conversion_type``."""

    APPOINTMENT_BOOKED = "appointment_booked"
    ACCOUNT_CREATED = "account_created"
    FORM_SUBMITTED = "form_submitted"
    CALL_MADE = "call_made"
    NOT_CONVERTED = "not_converted"


CONVERSION_TYPES = (
    ConversionType.APPOINTMENT_BOOKED,
    ConversionType.ACCOUNT_CREATED,
    ConversionType.FORM_SUBMITTED,
    ConversionType.CALL_MADE,
    ConversionType.NOT_CONVERTED,
)

REFERRAL_SOURCES = ("patient", "provider", "insurance", "corporate", "none", "other")


class PatientJourney(Base):
    __tablename__ = "patient_journeys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String(128), nullable=False, unique=True, index=True)
    version = Column(Integer, nullable=False)

    journey_start_date = Column(DateTime, nullable=True, index=True)
    conversion_date = Column(DateTime, nullable=True, index=True)
    journey_duration = Column(Integer, nullable=True)  # whole days, first touch -> conversion

    converted = Column(Boolean, nullable=False, default=False, index=True)
    conversion_type = Column(String(32), nullable=False, default=ConversionType.NOT_CONVERTED)
    external_reference = Column(String(255), nullable=True)  # e.g. booking / appointment id
    first_appointment_date = Column(DateTime, nullable=True)

    lifetime_value = Column(Float, nullable=False, default=0.0)
    first_year_revenue = Column(Float, nullable=False, default=0.0)

    first_touch_channel = Column(String(32), nullable=True, index=True)
    last_touch_channel = Column(String(32), nullable=True, index=True)
    channel_counts = Column(JSON, nullable=False, default=dict)
    conversion_path = Column(Text, nullable=True)  # e.g. "organic_search > email > paid_search"
    path_length = Column(Integer, nullable=False, default=0, index=True)

    campaigns = Column(JSON, nullable=False, default=list)
    primary_campaign = Column(String(255), nullable=True)
    time_to_conversion = Column(JSON, nullable=True)  # {hours_from_first_touch, hours_from_last_touch}
    utm_params = Column(JSON, nullable=True)  # source/medium/campaign/term/content of the first touch

    referral_source = Column(String(32), nullable=False, default="none")
    referring_patient_id = Column(String(128), nullable=True)
    referring_provider = Column(String(255), nullable=True)

    engagement_score = Column(Float, nullable=False, default=0.0)
    session_ids = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    touchpoints = relationship(
        "JourneyTouchpoint",
        back_populates="journey",
        cascade="all, delete-orphan",
        order_by="JourneyTouchpoint.position",
    )

    __mapper_args__ = {"version_id_col": version}


class JourneyTouchpoint(Base):
    __tablename__ = "journey_touchpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    journey_id = Column(Integer, ForeignKey("patient_journeys.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    timestamp = Column(DateTime, nullable=False, index=True)
    channel = Column(String(32), nullable=False, index=True)
    medium = Column(String(32), nullable=True)
    source = Column(String(255), nullable=True)  # google, facebook, jane_marketplace, ...
    campaign = Column(String(255), nullable=True, index=True)
    content = Column(String(512), nullable=True)  # ad content, email subject, post title
    keyword = Column(String(255), nullable=True)

    landing_page = Column(String(1024), nullable=True)
    referrer_url = Column(String(1024), nullable=True)
    page_views = Column(Integer, nullable=False, default=1)
    session_duration = Column(Float, nullable=True)  # seconds
    session_id = Column(String(128), nullable=True)

    device = Column(String(16), nullable=True)
    browser = Column(String(64), nullable=True)
    os = Column(String(64), nullable=True)
    location = Column(JSON, nullable=True)  # {city, state, country}

    interactions = Column(Integer, nullable=False, default=0)  # clicks, form submissions, ...
    value_added = Column(Float, nullable=False, default=0.0)

    credits = Column(JSON, nullable=False, default=dict)  # model -> fraction, computed only

    journey = relationship("PatientJourney", back_populates="touchpoints")
