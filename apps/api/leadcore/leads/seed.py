from __future__ import annotations

from sqlalchemy.orm import Session

from leadcore.leads.credentials import hash_api_key
from leadcore.leads.models import BranchMapping, IngestionCredential
from leadcore.leads.repository import BranchMappingRepository, CredentialRepository


def seed_credential(
    session: Session,
    *,
    provider_id: str,
    tenant_id: str,
    api_key: str,
    allowed_ips: list[str] | None = None,
    is_active: bool = True,
) -> IngestionCredential:
    credential = CredentialRepository().create(
        session,
        {
            "provider_id": provider_id,
            "tenant_id": tenant_id,
            "api_key_hash": hash_api_key(api_key),
            "allowed_ips": allowed_ips,
            "is_active": is_active,
        },
    )
    session.commit()
    return credential


def seed_branch_mapping(
    session: Session,
    *,
    tenant_id: str,
    external_branch_id: str,
    internal_tenant_id: str,
) -> BranchMapping:
    mapping = BranchMappingRepository().create(
        session,
        {
            "tenant_id": tenant_id,
            "external_branch_id": external_branch_id,
            "internal_tenant_id": internal_tenant_id,
        },
    )
    session.commit()
    return mapping
