from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadcore import events
from leadcore.core.config import get_settings
from leadcore.errors import LeadNotFoundError
from leadcore.leads.models import Lead, ensure_utc, utcnow
from leadcore.leads.repository import LeadRepository
from leadcore.metrics import observe_score_refresh
from leadcore.tracking.models import BehavioralEventType
from leadcore.tracking.repository import TrackingRepository

logger = logging.getLogger("leadcore.scoring")
tracer = trace.get_tracer("leadcore.scoring")

BASE_SCORE = 50
FRESHNESS_BONUS = 20
FRESHNESS_WINDOW = timedelta(hours=24)
DECAY_DAYS = 30
CALL_ATTEMPT_THRESHOLD = 3
CALL_ATTEMPT_PENALTY = 10

EVENT_WEIGHTS: dict[BehavioralEventType, int] = {
    BehavioralEventType.PAGE_VIEW: 2,
    BehavioralEventType.FORM_INTERACTION: 10,
    BehavioralEventType.EMAIL_OPEN: 5,
    BehavioralEventType.EMAIL_CLICK: 15,
    BehavioralEventType.PRICING_VIEW: 25,
    BehavioralEventType.DOWNLOAD: 20,
    BehavioralEventType.UNRECOGNIZED: 0,
}


class ScoredEvent(Protocol):
    event_type: str
    occurred_at: datetime


def decay_factor(occurred_at: datetime, now: datetime) -> float:
    # Events stamped in the future weigh as if they happened now.
    days_ago = max(0.0, (ensure_utc(now) - ensure_utc(occurred_at)).total_seconds() / 86400)
    return max(0.0, 1 - days_ago / DECAY_DAYS)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_score(
    events: Iterable[ScoredEvent],
    created_at: datetime,
    call_attempts: int,
    now: datetime,
    multiplier: float = 1.0,
) -> int:
    """Pure predictive score for a lead.

    Base 50, plus each event's weight scaled by a linear 30-day decay, plus 20 when
    the lead is under a day old, minus 10 after more than three call attempts. The
    total is scaled by the source multiplier, clamped to [0, 100] and rounded.
    """
    score = float(BASE_SCORE)
    for event in events:
        weight = EVENT_WEIGHTS[BehavioralEventType.parse(event.event_type)]
        score += weight * decay_factor(event.occurred_at, now)

    if ensure_utc(now) - ensure_utc(created_at) < FRESHNESS_WINDOW:
        score += FRESHNESS_BONUS

    if call_attempts > CALL_ATTEMPT_THRESHOLD:
        score -= CALL_ATTEMPT_PENALTY

    score *= multiplier
    return round_half_up(min(100.0, max(0.0, score)))


def multiplier_for_rate(total: int, converted: int, min_sample: int) -> float:
    if total < min_sample or total <= 0:
        return 1.0
    rate_percent = converted / total * 100
    return min(1.4, max(0.6, 0.6 + rate_percent / 25))


class SourceMultiplierCache:
    """Per (tenant, source) conversion multipliers, recomputed after a day."""

    ttl_seconds = 24 * 60 * 60

    def __init__(
        self,
        repository: LeadRepository | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository or LeadRepository()
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], tuple[float, float]] = {}

    def get(self, session: Session, tenant_id: str, source: str, min_sample: int) -> float:
        key = (tenant_id, source)
        now = self._clock()
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None and now - cached[1] < self.ttl_seconds:
                return cached[0]

        try:
            total, converted = self.repository.source_conversion_counts(session, tenant_id, source)
        except SQLAlchemyError as exc:
            logger.warning("scoring.multiplier.failed", extra={"tenant_id": tenant_id, "error": str(exc)})
            return 1.0

        multiplier = multiplier_for_rate(total, converted, min_sample)
        with self._lock:
            self._entries[key] = (multiplier, now)
        return multiplier

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def snapshot(self) -> dict[tuple[str, str], float]:
        with self._lock:
            return {key: value for key, (value, _) in self._entries.items()}


source_multipliers = SourceMultiplierCache()


@dataclass
class ScoreRefreshResult:
    refreshed: int = 0
    failed: list[dict[str, Any]] = field(default_factory=list)


class ScoringEngine:
    def __init__(
        self,
        lead_repository: LeadRepository | None = None,
        tracking_repository: TrackingRepository | None = None,
        multipliers: SourceMultiplierCache | None = None,
    ) -> None:
        self.lead_repository = lead_repository or LeadRepository()
        self.tracking_repository = tracking_repository or TrackingRepository()
        self.multipliers = multipliers or source_multipliers

    def multiplier_for(self, session: Session, lead: Lead) -> float:
        settings = get_settings()
        if not settings.scoring_source_multiplier_enabled:
            return 1.0
        return self.multipliers.get(session, lead.tenant_id, lead.source, settings.scoring_source_min_sample)

    def compute_for_lead(self, session: Session, lead: Lead, now: datetime | None = None) -> int:
        now = now or utcnow()
        lead_events = self.tracking_repository.list_events(session, lead.id)
        return compute_score(
            lead_events,
            created_at=lead.created_at,
            call_attempts=lead.call_attempts,
            now=now,
            multiplier=self.multiplier_for(session, lead),
        )

    def score(self, session: Session, lead_id: uuid.UUID, now: datetime | None = None) -> int:
        lead = self.lead_repository.get(session, lead_id)
        if lead is None:
            raise LeadNotFoundError(str(lead_id))
        return self.compute_for_lead(session, lead, now)

    def refresh(self, session: Session, lead_id: uuid.UUID, now: datetime | None = None) -> int:
        lead = self.lead_repository.get(session, lead_id)
        if lead is None:
            raise LeadNotFoundError(str(lead_id))
        previous = lead.score
        new_score = self.compute_for_lead(session, lead, now)
        self.lead_repository.write_score(session, lead, new_score)
        session.commit()
        if previous != new_score:
            events.publish(
                {
                    "event_id": str(uuid.uuid4()),
                    "event_type": "lead.score_refreshed",
                    "occurred_at": utcnow().isoformat(),
                    "tenant_id": lead.tenant_id,
                    "version": 1,
                    "payload": {"lead_id": str(lead.id), "previous": previous, "score": new_score},
                }
            )
        return new_score

    def refresh_bulk(
        self,
        session: Session,
        lead_ids: Iterable[uuid.UUID],
        now: datetime | None = None,
    ) -> ScoreRefreshResult:
        result = ScoreRefreshResult()
        lead_ids = list(lead_ids)
        with tracer.start_as_current_span("leads.scoring.refresh") as span:
            span.set_attribute("scoring.requested", len(lead_ids))
            for lead_id in lead_ids:
                try:
                    self.refresh(session, lead_id, now)
                except LeadNotFoundError as exc:
                    result.failed.append({"lead_id": str(lead_id), "error": str(exc)})
                except SQLAlchemyError as exc:
                    session.rollback()
                    result.failed.append({"lead_id": str(lead_id), "error": str(exc)})
                else:
                    result.refreshed += 1

            span.set_attribute("scoring.refreshed", result.refreshed)
            span.set_attribute("scoring.failed", len(result.failed))
            if result.failed:
                span.set_status(Status(StatusCode.ERROR))

        observe_score_refresh("refreshed", result.refreshed)
        observe_score_refresh("failed", len(result.failed))
        logger.info(
            "scoring.refresh.completed",
            extra={"refreshed": result.refreshed, "failed": len(result.failed)},
        )
        return result


scoring_engine = ScoringEngine()
