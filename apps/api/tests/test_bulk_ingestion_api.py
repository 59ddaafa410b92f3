from __future__ import annotations

from collections.abc import Generator
from datetime import date, datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadcore import audit, events
from leadcore.core.config import get_settings
from leadcore.core.database import Base, get_db
from leadcore.leads.models import Lead
from leadcore.leads.repository import LeadRepository
from leadcore.leads.seed import seed_branch_mapping, seed_credential
from leadcore.leads.service import ResponseDateRoutePolicy
from leadcore.main import app
from leadcore.middleware.rate_limit import reset_rate_limiter
from leadcore.tracking.models import Touchpoint

API_KEY = "provider-secret"
HEADERS = {"X-API-Key": API_KEY, "X-Forwarded-For": "203.0.113.7"}


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
    monkeypatch.delenv("INGESTION_DEDUP_POLICY", raising=False)
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    seed_credential(
        db_session,
        provider_id="provider-42",
        tenant_id="org-1",
        api_key=API_KEY,
        allowed_ips=["203.0.113.0/24"],
    )
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _days_ago(days: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).date().isoformat()


def _lead(index: int, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "first_name": f"Lead{index}",
        "last_name": "Martin",
        "email": f"lead{index}@example.com",
        "phone": f"06000000{index:02d}",
        "source": "facebook",
        "date_reponse": _days_ago(2),
    }
    payload.update(overrides)
    return payload


def _post(client: TestClient, leads: Any) -> Any:
    return client.post("/api/v1/leads/bulk", json={"leads": leads}, headers=HEADERS)


def test_bulk_ingestion_routes_by_response_date(client: TestClient, db_session: Session) -> None:
    response = _post(client, [_lead(1), _lead(2, date_reponse=_days_ago(90), source="google")])

    assert response.status_code == 200
    body = response.json()
    assert body == {
        "success": True,
        "total": 2,
        "created": 2,
        "created_prospection": 1,
        "created_crm": 1,
        "merged": 0,
        "skipped": 0,
        "quarantined": 0,
        "errors": [],
    }

    fresh = db_session.scalar(select(Lead).where(Lead.email == "lead1@example.com"))
    assert fresh is not None
    assert fresh.status == "PROSPECT"
    assert fresh.sales_stage == "NOUVEAU"
    assert fresh.tenant_id == "org-1"
    assert fresh.provider_id == "provider-42"
    assert fresh.source == "FACEBOOK"
    assert fresh.channel == "FACEBOOK"
    assert fresh.score == 70

    cold = db_session.scalar(select(Lead).where(Lead.email == "lead2@example.com"))
    assert cold is not None
    assert cold.status == "PROSPECTION"
    assert cold.sales_stage is None
    assert cold.channel == "GOOGLE_ADS"

    touchpoints = db_session.scalars(select(Touchpoint).where(Touchpoint.lead_id == fresh.id)).all()
    assert [(tp.touchpoint_type, tp.source) for tp in touchpoints] == [("LEAD_GENERATION", "FACEBOOK")]

    assert [entry["action"] for entry in audit.audit_entries] == ["create", "create"]
    ingested = [event for event in events.published_events if event["event_type"] == "lead.ingested"]
    assert len(ingested) == 2
    assert ingested[0]["meta"]["provider_id"] == "provider-42"
    assert ingested[0]["payload"]["outcome"] == "created_crm"


def test_invalid_item_is_quarantined_without_aborting_batch(client: TestClient, db_session: Session) -> None:
    leads = [_lead(0), _lead(1), _lead(2, email=None, phone=None), _lead(3), _lead(4)]
    response = _post(client, leads)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["total"] == 5
    assert body["created"] == 4
    assert body["quarantined"] == 1
    assert body["errors"] == [{"index": 2, "error": "Either email or phone is required"}]
    assert db_session.scalar(select(func.count(Lead.id))) == 4


def test_duplicate_submission_merges_into_existing_lead(client: TestClient, db_session: Session) -> None:
    first = _lead(1, city=None)
    second = _lead(1, city="Lyon", last_name="Durand")

    body = _post(client, [first, second]).json()
    assert body["created"] == 1
    assert body["merged"] == 1
    assert body["errors"] == []

    leads = db_session.scalars(select(Lead).where(Lead.email == "lead1@example.com")).all()
    assert len(leads) == 1
    assert leads[0].city == "Lyon"
    assert leads[0].last_name == "Martin"
    assert leads[0].row_version == 2

    touchpoints = db_session.scalars(select(Touchpoint).where(Touchpoint.lead_id == leads[0].id)).all()
    assert sorted(tp.sequence for tp in touchpoints) == [1, 2]
    assert [entry["action"] for entry in audit.audit_entries] == ["create", "merge"]

    # Replaying the same batch creates nothing new.
    replay = _post(client, [first]).json()
    assert replay["created"] == 0
    assert replay["merged"] == 1
    assert db_session.scalar(select(func.count(Lead.id))) == 1


def test_duplicate_is_matched_by_phone_when_email_absent(client: TestClient, db_session: Session) -> None:
    body = _post(client, [_lead(1), _lead(1, email=None, phone="06 00 00 00 01")]).json()
    assert body["created"] == 1
    assert body["merged"] == 1
    assert db_session.scalar(select(func.count(Lead.id))) == 1


def test_overwrite_policy_replaces_existing_values(
    client: TestClient,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("INGESTION_DEDUP_POLICY", "overwrite")
    get_settings.cache_clear()

    _post(client, [_lead(1), _lead(1, last_name="Durand")])

    lead = db_session.scalar(select(Lead).where(Lead.email == "lead1@example.com"))
    assert lead is not None
    assert lead.last_name == "Durand"


def test_skip_policy_leaves_existing_lead_untouched(
    client: TestClient,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("INGESTION_DEDUP_POLICY", "skip")
    get_settings.cache_clear()

    body = _post(client, [_lead(1), _lead(1, last_name="Durand", city="Lyon")]).json()
    assert body["created"] == 1
    assert body["skipped"] == 1

    lead = db_session.scalar(select(Lead).where(Lead.email == "lead1@example.com"))
    assert lead is not None
    assert lead.last_name == "Martin"
    assert lead.city is None
    assert [entry["action"] for entry in audit.audit_entries] == ["create"]


def test_branch_mapping_assigns_internal_tenant(client: TestClient, db_session: Session) -> None:
    seed_branch_mapping(db_session, tenant_id="org-1", external_branch_id="7", internal_tenant_id="org-lyon")

    body = _post(client, [_lead(1, branch_id=7), _lead(2, branch_id=8)]).json()
    assert body["created"] == 2

    mapped = db_session.scalar(select(Lead).where(Lead.email == "lead1@example.com"))
    unmapped = db_session.scalar(select(Lead).where(Lead.email == "lead2@example.com"))
    assert mapped is not None and unmapped is not None
    assert mapped.tenant_id == "org-lyon"
    assert mapped.branch_ref == "7"
    assert unmapped.tenant_id == "org-1"


def test_persistence_failure_is_reported_per_item(
    client: TestClient,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    original_create = LeadRepository.create

    def failing_create(self: LeadRepository, session: Session, values: dict[str, Any]) -> Lead:
        if values["first_name"] == "Boom":
            raise IntegrityError("INSERT INTO lead", {}, Exception("duplicate key value"))
        return original_create(self, session, values)

    monkeypatch.setattr(LeadRepository, "create", failing_create)

    body = _post(client, [_lead(0), _lead(1, first_name="Boom"), _lead(2)]).json()

    assert body["created"] == 2
    assert body["quarantined"] == 1
    assert body["errors"] == [{"index": 1, "error": "Persistence failure: duplicate key value"}]
    assert db_session.scalar(select(func.count(Lead.id))) == 2


def test_missing_or_unknown_api_key_is_unauthorized(client: TestClient) -> None:
    missing = client.post("/api/v1/leads/bulk", json={"leads": []})
    assert missing.status_code == 401
    assert missing.json()["success"] is False

    unknown = client.post("/api/v1/leads/bulk", json={"leads": []}, headers={"X-API-Key": "wrong"})
    assert unknown.status_code == 401
    assert unknown.json()["error"] == "Invalid API key"


def test_ip_outside_allowlist_is_forbidden(client: TestClient) -> None:
    response = client.post(
        "/api/v1/leads/bulk",
        json={"leads": [_lead(1)]},
        headers={"X-API-Key": API_KEY, "X-Forwarded-For": "198.51.100.1"},
    )
    assert response.status_code == 403
    assert response.json() == {
        "success": False,
        "error": "IP address not allowed",
        "correlation_id": response.headers["x-correlation-id"],
    }

    no_forwarding = client.post("/api/v1/leads/bulk", json={"leads": []}, headers={"X-API-Key": API_KEY})
    assert no_forwarding.status_code == 403


@pytest.mark.parametrize(
    "kwargs",
    [
        {"json": {"items": []}},
        {"json": {"leads": "not-a-list"}},
        {"json": [{"first_name": "A"}]},
        {"content": b"{not json", "headers": {"Content-Type": "application/json"}},
    ],
)
def test_malformed_body_is_rejected(client: TestClient, kwargs: dict[str, Any]) -> None:
    headers = {**HEADERS, **kwargs.pop("headers", {})}
    response = client.post("/api/v1/leads/bulk", headers=headers, **kwargs)
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_empty_batch_is_accepted(client: TestClient) -> None:
    body = _post(client, []).json()
    assert body["success"] is True
    assert body["total"] == 0
    assert body["created"] == 0


def test_branches_lists_callers_mapped_branch_ids(client: TestClient, db_session: Session) -> None:
    seed_branch_mapping(db_session, tenant_id="org-1", external_branch_id="5", internal_tenant_id="agency-lyon")
    seed_branch_mapping(db_session, tenant_id="org-1", external_branch_id="3", internal_tenant_id="agency-paris")
    seed_branch_mapping(db_session, tenant_id="org-other", external_branch_id="9", internal_tenant_id="agency-nice")

    response = client.get("/api/v1/branches", headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {"success": True, "branches": [{"id": "3"}, {"id": "5"}]}


def test_branches_requires_valid_key_and_allowed_ip(client: TestClient) -> None:
    unauthorized = client.get("/api/v1/branches", headers={"X-API-Key": "wrong"})
    assert unauthorized.status_code == 401
    assert unauthorized.json()["success"] is False

    forbidden = client.get("/api/v1/branches", headers={"X-API-Key": API_KEY, "X-Forwarded-For": "198.51.100.1"})
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == "IP address not allowed"


ROUTE_NOW = datetime(2026, 10, 18, 15, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("response_date", "now", "expected"),
    [
        (date(2026, 10, 18), ROUTE_NOW, True),
        (date(2026, 9, 19), ROUTE_NOW, True),
        (date(2026, 9, 18), ROUTE_NOW, False),
        (date(2026, 9, 18), datetime(2026, 10, 18, 0, 0, tzinfo=timezone.utc), True),
        (date(2026, 11, 17), ROUTE_NOW, True),
        (date(2026, 11, 18), ROUTE_NOW, False),
        (None, ROUTE_NOW, False),
    ],
)
def test_crm_route_counts_started_days_either_side(response_date: date | None, now: datetime, expected: bool) -> None:
    policy = ResponseDateRoutePolicy(window_days=30)
    assert policy.is_crm_route({"response_date": response_date}, now) is expected
