from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Protocol

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadcore import audit, events
from leadcore.core.config import get_settings
from leadcore.errors import LeadValidationError, PersistenceFailureError
from leadcore.leads.mapping import BranchMapper, MappingOutcome
from leadcore.leads.models import SALES_STAGE_NEW, Lead, LeadChannel, LeadStatus, ensure_utc, utcnow
from leadcore.leads.repository import LeadRepository
from leadcore.leads.schemas import BulkIngestionResult, BulkLeadError, LeadRead
from leadcore.leads.validation import parse_date, validate_and_sanitize
from leadcore.metrics import observe_ingestion_batch
from leadcore.scoring.service import ScoringEngine, scoring_engine
from leadcore.tracking.models import TouchpointType
from leadcore.tracking.repository import TrackingRepository

logger = logging.getLogger("leadcore.leads.ingestion")
tracer = trace.get_tracer("leadcore.leads.ingestion")

# Fields a duplicate submission may contribute to an existing lead.
MERGEABLE_FIELDS = (
    "last_name",
    "email",
    "phone",
    "street",
    "zip_code",
    "city",
    "exam_ref",
    "branch_ref",
    "provider_id",
    "consent_date",
    "response_date",
)


class DedupPolicy(str, Enum):
    MERGE = "merge"
    OVERWRITE = "overwrite"
    SKIP = "skip"


class ItemOutcome(str, Enum):
    CREATED_CRM = "created_crm"
    CREATED_PROSPECTION = "created_prospection"
    MERGED = "merged"
    SKIPPED = "skipped"


class CrmRoutePolicy(Protocol):
    def is_crm_route(self, lead: Mapping[str, Any], now: datetime) -> bool: ...


@dataclass(frozen=True)
class ResponseDateRoutePolicy:
    """Leads whose response date lies within the window of now go straight to the CRM queue.

    The distance is counted in started days on either side of now, so a response dated
    exactly `window_days` ago falls out of the window once that day has begun.
    """

    window_days: int = 30

    def is_crm_route(self, lead: Mapping[str, Any], now: datetime) -> bool:
        response_date = lead.get("response_date")
        if not isinstance(response_date, date):
            return False
        responded_at = datetime.combine(response_date, time.min, tzinfo=timezone.utc)
        elapsed = abs((ensure_utc(now) - responded_at).total_seconds())
        return math.ceil(elapsed / 86400) <= self.window_days


def channel_for_source(source: str) -> LeadChannel:
    normalized = source.lower()
    if "facebook" in normalized:
        return LeadChannel.FACEBOOK
    if "google" in normalized:
        return LeadChannel.GOOGLE_ADS
    if "website" in normalized or "site" in normalized:
        return LeadChannel.WEBSITE
    return LeadChannel.IMPORT


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _persistence_reason(exc: SQLAlchemyError) -> str:
    original = getattr(exc, "orig", None)
    message = str(original) if original is not None else str(exc)
    return message.splitlines()[0] if message else exc.__class__.__name__


def lead_values_from_item(
    sanitized: Mapping[str, Any],
    *,
    tenant_id: str,
    provider_id: str | None,
) -> dict[str, Any]:
    branch_id = sanitized.get("branch_id")
    return {
        "tenant_id": tenant_id,
        "branch_ref": str(branch_id) if branch_id else None,
        "provider_id": provider_id,
        "first_name": sanitized["first_name"],
        "last_name": sanitized["last_name"],
        "email": sanitized["email"],
        "phone": sanitized["phone"],
        "street": _optional_text(sanitized.get("street")),
        "zip_code": _optional_text(sanitized.get("zip")),
        "city": _optional_text(sanitized.get("city")),
        "exam_ref": _optional_text(sanitized.get("examen_id")),
        "source": sanitized["source"],
        "channel": channel_for_source(sanitized["source"]).value,
        "consent_date": parse_date(sanitized.get("date_consentement")),
        "response_date": parse_date(sanitized.get("date_reponse")),
    }


def merge_changes(existing: Lead, incoming: Mapping[str, Any], policy: DedupPolicy) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for field_name in MERGEABLE_FIELDS:
        value = incoming.get(field_name)
        if _is_empty(value):
            continue
        current = getattr(existing, field_name)
        if policy is DedupPolicy.OVERWRITE and current != value:
            changes[field_name] = value
        elif policy is DedupPolicy.MERGE and _is_empty(current):
            changes[field_name] = value
    if policy is DedupPolicy.OVERWRITE and incoming.get("first_name") and existing.first_name != incoming["first_name"]:
        changes["first_name"] = incoming["first_name"]
    return changes


class IngestionPipeline:
    """Bulk lead ingestion: validate, map, route, deduplicate and persist each item.

    Items are processed in submission order, one transaction per item. A bad item is
    reported by its index and never aborts the rest of the batch.
    """

    def __init__(
        self,
        *,
        dedup_policy: DedupPolicy | None = None,
        route_policy: CrmRoutePolicy | None = None,
        mapper: BranchMapper | None = None,
        lead_repository: LeadRepository | None = None,
        tracking_repository: TrackingRepository | None = None,
        scoring: ScoringEngine | None = None,
    ) -> None:
        self._dedup_policy = dedup_policy
        self._route_policy = route_policy
        self.mapper = mapper
        self.lead_repository = lead_repository or LeadRepository()
        self.tracking_repository = tracking_repository or TrackingRepository()
        self.scoring = scoring or scoring_engine

    @property
    def dedup_policy(self) -> DedupPolicy:
        if self._dedup_policy is not None:
            return self._dedup_policy
        return DedupPolicy(get_settings().ingestion_dedup_policy)

    @property
    def route_policy(self) -> CrmRoutePolicy:
        if self._route_policy is not None:
            return self._route_policy
        return ResponseDateRoutePolicy(window_days=get_settings().ingestion_crm_window_days)

    def ingest_bulk(
        self,
        session: Session,
        items: Sequence[Any],
        *,
        provider_id: str | None,
        default_tenant_id: str,
        now: datetime | None = None,
    ) -> BulkIngestionResult:
        now = now or utcnow()
        mapper = self.mapper or BranchMapper.for_session(session)
        dedup_policy = self.dedup_policy
        route_policy = self.route_policy
        result = BulkIngestionResult(total=len(items))

        with tracer.start_as_current_span("leads.ingest_bulk") as span:
            span.set_attribute("ingestion.total", len(items))
            span.set_attribute("ingestion.dedup_policy", dedup_policy.value)

            for index, raw in enumerate(items):
                try:
                    sanitized = validate_and_sanitize(raw)
                except LeadValidationError as exc:
                    result.errors.append(BulkLeadError(index=index, error=exc.reason))
                    logger.info("ingestion.item.rejected", extra={"index": index, "reason": exc.reason})
                    continue

                mapping = mapper.resolve_outcome(sanitized.get("branch_id"), default_tenant_id)
                try:
                    outcome, lead, before = self._persist_item(
                        session,
                        sanitized,
                        mapping=mapping,
                        provider_id=provider_id,
                        dedup_policy=dedup_policy,
                        route_policy=route_policy,
                        now=now,
                    )
                    session.commit()
                except SQLAlchemyError as exc:
                    session.rollback()
                    failure = PersistenceFailureError(_persistence_reason(exc))
                    result.errors.append(BulkLeadError(index=index, error=str(failure)))
                    logger.error(
                        "ingestion.item.persistence_failed",
                        extra={"index": index, "tenant_id": mapping.tenant_id, "error": failure.reason},
                    )
                    continue

                self._count(result, outcome)
                if outcome is not ItemOutcome.SKIPPED:
                    self._announce(lead, outcome, before, mapping)

            result.quarantined = len(result.errors)
            span.set_attribute("ingestion.created", result.created)
            span.set_attribute("ingestion.merged", result.merged)
            span.set_attribute("ingestion.skipped", result.skipped)
            span.set_attribute("ingestion.quarantined", result.quarantined)
            if result.quarantined:
                span.set_status(Status(StatusCode.ERROR, "items quarantined"))

        observe_ingestion_batch(
            size=result.total,
            created=result.created,
            merged=result.merged,
            skipped=result.skipped,
            quarantined=result.quarantined,
        )
        logger.info(
            "ingestion.batch.completed",
            extra={
                "tenant_id": default_tenant_id,
                "total": result.total,
                "created": result.created,
                "merged": result.merged,
                "skipped": result.skipped,
                "quarantined": result.quarantined,
            },
        )
        return result

    def _persist_item(
        self,
        session: Session,
        sanitized: Mapping[str, Any],
        *,
        mapping: MappingOutcome,
        provider_id: str | None,
        dedup_policy: DedupPolicy,
        route_policy: CrmRoutePolicy,
        now: datetime,
    ) -> tuple[ItemOutcome, Lead, dict[str, Any] | None]:
        values = lead_values_from_item(sanitized, tenant_id=mapping.tenant_id, provider_id=provider_id)
        existing = self.lead_repository.find_duplicate(session, mapping.tenant_id, values["email"], values["phone"])

        if existing is not None:
            if dedup_policy is DedupPolicy.SKIP:
                return ItemOutcome.SKIPPED, existing, None
            before = LeadRead.model_validate(existing).model_dump(mode="json")
            changes = merge_changes(existing, values, dedup_policy)
            if changes:
                self.lead_repository.update(session, existing, changes)
            self._record_touchpoint(session, existing, values["source"], mapping, now)
            return ItemOutcome.MERGED, existing, before

        if route_policy.is_crm_route(values, now):
            values["status"] = LeadStatus.PROSPECT.value
            values["sales_stage"] = SALES_STAGE_NEW
            outcome = ItemOutcome.CREATED_CRM
        else:
            values["status"] = LeadStatus.PROSPECTION.value
            values["sales_stage"] = None
            outcome = ItemOutcome.CREATED_PROSPECTION

        lead = self.lead_repository.create(session, values)
        self._record_touchpoint(session, lead, values["source"], mapping, now)
        self.lead_repository.write_score(session, lead, self.scoring.compute_for_lead(session, lead, now))
        return outcome, lead, None

    def _record_touchpoint(
        self,
        session: Session,
        lead: Lead,
        source: str,
        mapping: MappingOutcome,
        now: datetime,
    ) -> None:
        self.tracking_repository.append_touchpoint(
            session,
            lead.id,
            {
                "touchpoint_type": TouchpointType.LEAD_GENERATION.value,
                "source": source,
                "medium": "api",
                "touchpoint_metadata": {"ingestion": "BULK_API", "mapping": mapping.status.value},
                "occurred_at": now,
            },
        )

    @staticmethod
    def _count(result: BulkIngestionResult, outcome: ItemOutcome) -> None:
        if outcome is ItemOutcome.CREATED_CRM:
            result.created += 1
            result.created_crm += 1
        elif outcome is ItemOutcome.CREATED_PROSPECTION:
            result.created += 1
            result.created_prospection += 1
        elif outcome is ItemOutcome.MERGED:
            result.merged += 1
        else:
            result.skipped += 1

    @staticmethod
    def _announce(
        lead: Lead,
        outcome: ItemOutcome,
        before: dict[str, Any] | None,
        mapping: MappingOutcome,
    ) -> None:
        after = LeadRead.model_validate(lead).model_dump(mode="json")
        audit.record(
            actor=lead.provider_id or "api",
            entity_type="lead",
            entity_id=str(lead.id),
            action="merge" if outcome is ItemOutcome.MERGED else "create",
            before=before,
            after=after,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "lead.ingested",
                "occurred_at": utcnow().isoformat(),
                "tenant_id": lead.tenant_id,
                "version": 1,
                "payload": {
                    "lead_id": str(lead.id),
                    "outcome": outcome.value,
                    "status": lead.status,
                    "mapping": mapping.status.value,
                },
            }
        )


ingestion_pipeline = IngestionPipeline()
