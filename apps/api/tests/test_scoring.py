from __future__ import annotations

import uuid
from collections.abc import Generator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadcore import events
from leadcore.core.auth import AuthUser, get_current_user
from leadcore.core.config import get_settings
from leadcore.core.database import Base, get_db
from leadcore.leads.models import SALES_STAGE_CONVERTED, Lead
from leadcore.leads.repository import LeadRepository
from leadcore.main import app
from leadcore.metrics import lead_score_refresh_total
from leadcore.middleware.rate_limit import reset_rate_limiter
from leadcore.scoring.service import (
    ScoringEngine,
    SourceMultiplierCache,
    compute_score,
    decay_factor,
    multiplier_for_rate,
    scoring_engine,
)
from leadcore.tracking.repository import TrackingRepository

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


@dataclass
class Event:
    event_type: str
    occurred_at: datetime


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "scoring-test-secret")
    monkeypatch.delenv("SCORING_SOURCE_MULTIPLIER_ENABLED", raising=False)
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def roles() -> list[str]:
    return ["leads.score.read", "leads.score.refresh"]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="analyst-1", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(
    session: Session,
    *,
    created_at: datetime,
    call_attempts: int = 0,
    tenant_id: str = "org-1",
    source: str = "FACEBOOK",
    sales_stage: str | None = None,
) -> Lead:
    lead = Lead(
        tenant_id=tenant_id,
        first_name="Score",
        email=f"{uuid.uuid4().hex[:8]}@example.com",
        source=source,
        created_at=created_at,
        call_attempts=call_attempts,
        sales_stage=sales_stage,
    )
    session.add(lead)
    session.commit()
    return lead


def test_fresh_lead_with_recent_pricing_view_scores_95() -> None:
    assert compute_score([Event("PRICING_VIEW", NOW)], created_at=NOW - timedelta(hours=1), call_attempts=0, now=NOW) == 95


def test_events_older_than_decay_window_count_for_nothing() -> None:
    stale = [Event("PRICING_VIEW", NOW - timedelta(days=31))]
    assert compute_score(stale, created_at=NOW - timedelta(hours=2), call_attempts=0, now=NOW) == 70
    assert compute_score(stale, created_at=NOW - timedelta(days=40), call_attempts=0, now=NOW) == 50


def test_linear_decay_rounds_half_up() -> None:
    half_decayed = [Event("PRICING_VIEW", NOW - timedelta(days=15))]
    assert compute_score(half_decayed, created_at=NOW - timedelta(days=2), call_attempts=0, now=NOW) == 63


def test_future_events_never_outweigh_their_nominal_weight() -> None:
    ahead = [Event("PAGE_VIEW", NOW + timedelta(days=300))]
    assert decay_factor(NOW + timedelta(days=300), NOW) == 1.0
    assert compute_score(ahead, created_at=NOW - timedelta(days=10), call_attempts=0, now=NOW) == 52


def test_stored_future_event_scores_like_a_present_one(db_session: Session) -> None:
    lead = _create_lead(db_session, created_at=NOW - timedelta(days=10))
    TrackingRepository().append_event(db_session, lead.id, "PRICING_VIEW", occurred_at=NOW + timedelta(days=90))
    db_session.commit()

    assert scoring_engine.score(db_session, lead.id, now=NOW) == 75


def test_call_attempt_penalty_applies_above_three() -> None:
    created = NOW - timedelta(days=5)
    assert compute_score([], created_at=created, call_attempts=3, now=NOW) == 50
    assert compute_score([], created_at=created, call_attempts=4, now=NOW) == 40


def test_score_is_clamped_and_unknown_events_weigh_nothing() -> None:
    busy = [Event("PRICING_VIEW", NOW)] * 10
    assert compute_score(busy, created_at=NOW, call_attempts=0, now=NOW) == 100
    assert compute_score([Event("WEBINAR_JOIN", NOW)], created_at=NOW - timedelta(days=2), call_attempts=0, now=NOW) == 50
    assert compute_score([], created_at=NOW - timedelta(days=2), call_attempts=5, now=NOW, multiplier=0.0) == 0


def test_naive_timestamps_are_treated_as_utc() -> None:
    naive = [Event("EMAIL_CLICK", NOW.replace(tzinfo=None))]
    assert compute_score(naive, created_at=NOW.replace(tzinfo=None) - timedelta(days=2), call_attempts=0, now=NOW) == 65


def test_source_multiplier_curve() -> None:
    assert multiplier_for_rate(9, 9, min_sample=10) == 1.0
    assert multiplier_for_rate(100, 0, min_sample=10) == pytest.approx(0.6)
    assert multiplier_for_rate(100, 10, min_sample=10) == pytest.approx(1.0)
    assert multiplier_for_rate(100, 50, min_sample=10) == pytest.approx(1.4)


def test_source_multiplier_cache_expires_after_a_day(db_session: Session) -> None:
    calls: list[tuple[str, str]] = []

    class CountingRepository(LeadRepository):
        def source_conversion_counts(self, session: Session, tenant_id: str, source: str) -> tuple[int, int]:
            calls.append((tenant_id, source))
            return 20, 4

    clock_value = [0.0]
    cache = SourceMultiplierCache(repository=CountingRepository(), clock=lambda: clock_value[0])

    assert cache.get(db_session, "org-1", "FACEBOOK", min_sample=10) == pytest.approx(1.4)
    assert cache.get(db_session, "org-1", "FACEBOOK", min_sample=10) == pytest.approx(1.4)
    assert len(calls) == 1

    clock_value[0] = 24 * 60 * 60 + 1
    cache.get(db_session, "org-1", "FACEBOOK", min_sample=10)
    assert len(calls) == 2
    assert cache.snapshot() == {("org-1", "FACEBOOK"): pytest.approx(1.4)}


def test_engine_applies_conversion_multiplier_when_enabled(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("SCORING_SOURCE_MULTIPLIER_ENABLED", "true")
    get_settings.cache_clear()
    old = NOW - timedelta(days=10)
    for _ in range(10):
        _create_lead(db_session, created_at=old, source="GOOGLE_ADS")
    target = _create_lead(db_session, created_at=old, source="GOOGLE_ADS")

    engine = ScoringEngine(multipliers=SourceMultiplierCache())
    # No conversions in a large enough sample: 50 * 0.6.
    assert engine.score(db_session, target.id, now=NOW) == 30


def test_engine_rewards_converting_sources(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCORING_SOURCE_MULTIPLIER_ENABLED", "true")
    get_settings.cache_clear()
    old = NOW - timedelta(days=10)
    for _ in range(5):
        _create_lead(db_session, created_at=old, source="FACEBOOK", sales_stage=SALES_STAGE_CONVERTED)
    for _ in range(4):
        _create_lead(db_session, created_at=old, source="FACEBOOK")
    target = _create_lead(db_session, created_at=old, source="FACEBOOK")

    engine = ScoringEngine(multipliers=SourceMultiplierCache())
    # Half the source converted: capped at 1.4.
    assert engine.score(db_session, target.id, now=NOW) == 70


def test_engine_scores_stored_events(db_session: Session) -> None:
    lead = _create_lead(db_session, created_at=NOW - timedelta(days=3))
    TrackingRepository().append_event(db_session, lead.id, "FORM_INTERACTION", occurred_at=NOW)
    TrackingRepository().append_event(db_session, lead.id, "DOWNLOAD", occurred_at=NOW - timedelta(days=30))
    db_session.commit()

    assert scoring_engine.score(db_session, lead.id, now=NOW) == 60


def test_refresh_bulk_persists_scores_and_reports_failures(db_session: Session) -> None:
    lead = _create_lead(db_session, created_at=NOW - timedelta(days=3), call_attempts=4)
    missing = uuid.uuid4()
    refreshed_before = lead_score_refresh_total.labels(status="refreshed")._value.get()
    failed_before = lead_score_refresh_total.labels(status="failed")._value.get()

    result = scoring_engine.refresh_bulk(db_session, [lead.id, missing], now=NOW)

    assert result.refreshed == 1
    assert result.failed == [{"lead_id": str(missing), "error": "Lead not found"}]
    db_session.refresh(lead)
    assert lead.score == 40
    assert lead_score_refresh_total.labels(status="refreshed")._value.get() == refreshed_before + 1
    assert lead_score_refresh_total.labels(status="failed")._value.get() == failed_before + 1

    refreshed_events = [event for event in events.published_events if event["event_type"] == "lead.score_refreshed"]
    assert refreshed_events[-1]["payload"] == {"lead_id": str(lead.id), "previous": 50, "score": 40}


def test_score_endpoint_returns_live_and_stored_score(client: TestClient, db_session: Session) -> None:
    lead = _create_lead(db_session, created_at=datetime.now(timezone.utc) - timedelta(days=3))

    response = client.get(f"/api/v1/leads/{lead.id}/score")

    assert response.status_code == 200
    assert response.json() == {"lead_id": str(lead.id), "score": 50, "stored_score": 50}


def test_score_endpoint_unknown_lead_returns_envelope(client: TestClient) -> None:
    response = client.get(f"/api/v1/leads/{uuid.uuid4()}/score", headers={"X-Correlation-Id": "score-404"})
    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "lead_not_found"
    assert body["correlation_id"] == "score-404"


@pytest.mark.parametrize("roles", [["leads.attribution.read"]])
def test_score_endpoint_requires_role(client: TestClient) -> None:
    response = client.get(f"/api/v1/leads/{uuid.uuid4()}/score")
    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: leads.score.read"


def test_refresh_endpoint_by_tenant(client: TestClient, db_session: Session) -> None:
    first = _create_lead(db_session, created_at=datetime.now(timezone.utc) - timedelta(days=3), call_attempts=5)
    _create_lead(db_session, created_at=datetime.now(timezone.utc) - timedelta(days=3), tenant_id="org-2")

    response = client.post("/api/v1/leads/scores/refresh", json={"tenant_id": "org-1"})

    assert response.status_code == 200
    assert response.json() == {"refreshed": 1, "failed": []}
    db_session.refresh(first)
    assert first.score == 40


def test_refresh_endpoint_requires_a_target(client: TestClient) -> None:
    response = client.post("/api/v1/leads/scores/refresh", json={})
    assert response.status_code == 422
    assert response.json()["code"] == "lead_score_refresh_failed"


def test_bearer_token_roles_are_honoured(db_session: Session) -> None:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    lead = _create_lead(db_session, created_at=datetime.now(timezone.utc) - timedelta(days=3))
    token = jwt.encode({"sub": "analyst-2", "roles": ["leads.score.read"]}, "scoring-test-secret", algorithm="HS256")

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as test_client:
            allowed = test_client.get(
                f"/api/v1/leads/{lead.id}/score",
                headers={"Authorization": f"Bearer {token}"},
            )
            anonymous = test_client.get(f"/api/v1/leads/{lead.id}/score")
    finally:
        app.dependency_overrides.clear()

    assert allowed.status_code == 200
    assert anonymous.status_code == 403
