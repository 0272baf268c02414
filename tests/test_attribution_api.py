import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from journey_attribution.db import Base, get_db
from journey_attribution.main import app


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("ATTRIBUTION_DATA_DIR", str(tmp_path))
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides.clear()
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    engine.dispose()


def _track(client, patient_id, channel, timestamp, **extra):
    body = {"patient_id": patient_id, "channel": channel, "timestamp": timestamp, **extra}
    return client.post("/api/attribution/track", json=body)


def _seed(client):
    assert _track(client, "p-1", "organic_search", "2026-01-01T09:00:00Z", campaign="spring").status_code == 200
    assert _track(client, "p-1", "email", "2026-01-04T09:00:00Z").status_code == 200
    assert _track(client, "p-1", "paid_search", "2026-01-07T09:00:00Z", campaign="brand").status_code == 200
    res = client.put("/api/attribution/p-1/convert", json={"conversion_date": "2026-01-08T09:00:00Z"})
    assert res.status_code == 200
    res = client.put("/api/attribution/p-1/revenue", json={"lifetime_value": 1000, "first_year_revenue": 400})
    assert res.status_code == 200

    assert _track(client, "p-2", "referral", "2026-01-02T10:00:00Z").status_code == 200
    assert client.put("/api/attribution/p-2/convert", json={"conversion_date": "2026-01-03T10:00:00Z"}).status_code == 200
    assert client.put("/api/attribution/p-2/revenue", json={"lifetime_value": 500}).status_code == 200

    assert _track(client, "p-3", "direct", "2026-01-05T12:00:00Z").status_code == 200


def test_track_creates_journey_and_returns_credits(client):
    res = _track(
        client,
        "p-1",
        "social_paid",
        "2026-02-01T08:00:00Z",
        campaign="winter",
        source="facebook",
        medium="cpc",
        pageViews=3,
    )
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    journey = body["data"]
    assert journey["patient_id"] == "p-1"
    assert journey["path_length"] == 1
    assert journey["first_touch_channel"] == "social_paid"
    assert journey["converted"] is False
    assert journey["touchpoints"][0]["credits"]["linear"] == 1.0


def test_track_rejects_unknown_channel_and_missing_patient(client):
    assert _track(client, "p-1", "carrier_pigeon", "2026-02-01T08:00:00Z").status_code == 400
    assert client.post("/api/attribution/track", json={"channel": "email"}).status_code == 422
    assert _track(client, "", "email", "2026-02-01T08:00:00Z").status_code == 400


def test_convert_unknown_patient_is_404(client):
    res = client.put("/api/attribution/nobody/convert", json={})
    assert res.status_code == 404
    assert client.put("/api/attribution/nobody/revenue", json={"lifetime_value": 10}).status_code == 404


def test_convert_rejects_unknown_conversion_type(client):
    assert _track(client, "p-1", "email", "2026-02-01T08:00:00Z").status_code == 200
    res = client.put("/api/attribution/p-1/convert", json={"conversion_type": "vibes"})
    assert res.status_code == 400


def test_patient_journey_roundtrip(client):
    _seed(client)
    res = client.get("/api/attribution/patient/p-1")
    assert res.status_code == 200
    journey = res.json()["data"]
    assert journey["converted"] is True
    assert journey["conversion_type"] == "appointment_booked"
    assert journey["conversion_path"] == "organic_search > email > paid_search"
    assert journey["journey_duration"] == 7
    assert journey["lifetime_value"] == 1000.0
    assert journey["primary_campaign"] == "spring"
    assert [tp["channel"] for tp in journey["touchpoints"]] == ["organic_search", "email", "paid_search"]
    assert journey["touchpoints"][1]["credits"]["position_based"] == pytest.approx(0.2)

    missing = client.get("/api/attribution/patient/nobody").json()
    assert missing["success"] is True
    assert missing["data"] is None


def test_referral_update(client):
    _seed(client)
    res = client.put(
        "/api/attribution/p-2/referral",
        json={"referral_source": "patient", "referring_patient_id": "p-1"},
    )
    assert res.status_code == 200
    assert res.json()["data"]["referral_source"] == "patient"
    assert client.put("/api/attribution/p-2/referral", json={"referral_source": "gossip"}).status_code == 400


def test_report_endpoint_defaults_to_last_touch(client):
    _seed(client)
    res = client.get("/api/attribution/report", params={"start_date": "2026-01-01", "end_date": "2026-01-31"})
    assert res.status_code == 200
    body = res.json()
    assert body["attribution_model"] == "last_touch"
    report = body["report"]
    assert report["total_conversions"] == 2
    assert report["total_revenue"] == 1500.0
    assert report["channel_performance"]["paid_search"]["conversions"] == 1
    assert report["channel_performance"]["referral"]["revenue"] == 500.0

    bad = client.get(
        "/api/attribution/report",
        params={"start_date": "2026-01-01", "end_date": "2026-01-31", "model": "markov"},
    )
    assert bad.status_code == 400
    missing = client.get("/api/attribution/report", params={"start_date": "2026-01-01"})
    assert missing.status_code == 422


def test_funnel_and_top_paths_endpoints(client):
    _seed(client)
    params = {"start_date": "2026-01-01", "end_date": "2026-01-31"}
    funnel = client.get("/api/attribution/funnel", params=params).json()["funnel"]
    assert funnel["total_journeys"] == 3
    assert funnel["converted"] == 2
    assert funnel["conversion_rate"] == pytest.approx(200 / 3)

    paths = client.get("/api/attribution/top-paths", params={**params, "limit": 1}).json()["paths"]
    assert len(paths) == 1
    assert paths[0]["count"] == 1
    assert client.get("/api/attribution/top-paths", params={**params, "limit": 0}).status_code == 400


def test_comparison_endpoint_pivots_by_channel(client):
    _seed(client)
    res = client.get("/api/attribution/comparison", params={"start_date": "2026-01-01", "end_date": "2026-01-31"})
    assert res.status_code == 200
    body = res.json()
    assert set(body["raw_data"]) == set(body["comparison"]["models"])
    assert body["comparison"]["channels"]["email"]["linear"]["revenue"] == pytest.approx(333.33, abs=0.01)
    assert body["comparison"]["channels"]["email"]["last_touch"]["revenue"] == 0.0


def test_dashboard_endpoint(client):
    _seed(client)
    res = client.get("/api/attribution/dashboard", params={"start_date": "2026-01-01", "end_date": "2026-01-31"})
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["summary"]["total_conversions"] == 2
    assert body["channel_performance"][0]["channel"] == "paid_search"
    assert body["channel_performance"][0]["roi"] == pytest.approx(1000.0 / 50.0)


def test_settings_roundtrip_and_validation(client):
    defaults = client.get("/api/settings").json()
    assert defaults["time_decay_half_life_days"] == 7.0
    assert defaults["custom_channel_weights"]["referral"] == 1.8

    res = client.post("/api/settings", json={"time_decay_half_life_days": 14.0, "custom_channel_weights": {"tv": 2.0}})
    assert res.status_code == 200
    assert client.get("/api/settings").json()["custom_channel_weights"] == {"tv": 2.0}

    bad = client.post("/api/settings", json={"position_first_pct": 0.7, "position_last_pct": 0.7})
    assert bad.status_code == 400


def test_convert_before_first_touch_is_400(client):
    assert _track(client, "p-1", "email", "2024-01-01T08:00:00Z").status_code == 200
    res = client.put("/api/attribution/p-1/convert", json={"conversion_date": "1990-01-01T00:00:00Z"})
    assert res.status_code == 400
    assert client.get("/api/attribution/patient/p-1").json()["data"]["converted"] is False
