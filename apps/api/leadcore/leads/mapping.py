from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from leadcore.errors import MappingLookupFailedError
from leadcore.leads.repository import BranchMappingRepository
from leadcore.metrics import observe_mapping_degraded

logger = logging.getLogger("leadcore.leads.mapping")


class MappingStatus(str, Enum):
    DEFAULT = "DEFAULT"
    MAPPED = "MAPPED"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    LOOKUP_FAILED = "LOOKUP_FAILED"


@dataclass(frozen=True)
class MappingOutcome:
    tenant_id: str
    status: MappingStatus

    @property
    def degraded(self) -> bool:
        return self.status in (MappingStatus.NOT_CONFIGURED, MappingStatus.LOOKUP_FAILED)


class BranchMapper:
    """Maps a provider's external branch id to an internal tenant.

    The lookup never fails the caller: an unknown branch or a broken lookup falls back
    to the default tenant. Each lookup runs in its own short-lived session so a failed
    read cannot poison the transaction that writes the lead.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        repository: BranchMappingRepository | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.repository = repository or BranchMappingRepository()

    @classmethod
    def for_session(cls, session: Session) -> BranchMapper:
        return cls(sessionmaker(bind=session.get_bind(), autocommit=False, autoflush=False))

    def resolve(self, external_branch_id: Any, default_tenant_id: str) -> str:
        return self.resolve_outcome(external_branch_id, default_tenant_id).tenant_id

    def resolve_outcome(self, external_branch_id: Any, default_tenant_id: str) -> MappingOutcome:
        if not external_branch_id:
            return MappingOutcome(tenant_id=default_tenant_id, status=MappingStatus.DEFAULT)

        branch_key = str(external_branch_id)
        try:
            internal_tenant_id = self._lookup(default_tenant_id, branch_key)
        except MappingLookupFailedError as exc:
            observe_mapping_degraded("lookup_failed")
            logger.warning(
                "mapping.degraded",
                extra={"reason": "lookup_failed", "tenant_id": default_tenant_id, "error": str(exc.cause)},
            )
            return MappingOutcome(tenant_id=default_tenant_id, status=MappingStatus.LOOKUP_FAILED)

        if internal_tenant_id is None:
            observe_mapping_degraded("not_configured")
            logger.info("mapping.degraded", extra={"reason": "not_configured", "tenant_id": default_tenant_id})
            return MappingOutcome(tenant_id=default_tenant_id, status=MappingStatus.NOT_CONFIGURED)

        return MappingOutcome(tenant_id=internal_tenant_id, status=MappingStatus.MAPPED)

    def _lookup(self, tenant_id: str, external_branch_id: str) -> str | None:
        session: Session | None = None
        try:
            session = self._session_factory()
            return self.repository.get_internal_tenant(session, tenant_id, external_branch_id)
        except Exception as exc:
            # Whatever breaks the lookup, the item still lands in the default tenant.
            raise MappingLookupFailedError(external_branch_id, exc) from exc
        finally:
            if session is not None:
                session.close()
