from __future__ import annotations

import uuid
from typing import Any

from celery import Celery

from leadcore.core.config import get_settings
from leadcore.core.database import SessionLocal
from leadcore.leads.repository import LeadRepository
from leadcore.scoring.service import scoring_engine

settings = get_settings()

celery_app = Celery("leadcore", broker=settings.redis_url, backend=settings.redis_url)

# Swapped out in tests to bind the task to a throwaway engine.
session_factory = SessionLocal


@celery_app.task(name="leadcore.scoring.refresh")
def refresh_scores_task(lead_ids: list[str] | None = None, tenant_id: str | None = None) -> dict[str, Any]:
    session = session_factory()
    try:
        if lead_ids is not None:
            ids = [uuid.UUID(str(value)) for value in lead_ids]
        elif tenant_id is not None:
            ids = LeadRepository().list_ids_for_tenant(session, tenant_id)
        else:
            ids = []
        result = scoring_engine.refresh_bulk(session, ids)
        return {"refreshed": result.refreshed, "failed": result.failed}
    finally:
        session.close()
