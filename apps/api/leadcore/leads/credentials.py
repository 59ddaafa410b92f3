from __future__ import annotations

import hashlib
import ipaddress
import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from leadcore.core.context import UNKNOWN_CLIENT_IP
from leadcore.leads.repository import CredentialRepository
from leadcore.metrics import observe_credential_rejection

logger = logging.getLogger("leadcore.leads.credentials")

ALLOW_ANY_IP = "*"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def ip_matches(source_ip: str, entry: str) -> bool:
    entry = entry.strip()
    if entry == ALLOW_ANY_IP:
        return True
    if not source_ip or source_ip == UNKNOWN_CLIENT_IP:
        return False
    try:
        address = ipaddress.ip_address(source_ip)
    except ValueError:
        return False
    try:
        if "/" in entry:
            return address in ipaddress.ip_network(entry, strict=False)
        return address == ipaddress.ip_address(entry)
    except ValueError:
        return False


def ip_allowed(source_ip: str, allowed_ips: list[str] | None) -> bool:
    if not allowed_ips:
        return True
    return any(ip_matches(source_ip, entry) for entry in allowed_ips)


@dataclass(frozen=True)
class GateDecision:
    provider_id: str | None
    tenant_id: str | None
    ip_allowed: bool


class CredentialGate:
    """Resolves an API key to its provider and checks the caller IP against the allowlist."""

    def __init__(self, repository: CredentialRepository | None = None) -> None:
        self.repository = repository or CredentialRepository()

    def authorize(self, session: Session, api_key: str | None, source_ip: str) -> GateDecision:
        if not api_key:
            observe_credential_rejection("missing_key")
            logger.info("credential.rejected", extra={"reason": "missing_key", "source_ip": source_ip})
            return GateDecision(provider_id=None, tenant_id=None, ip_allowed=False)

        credential = self.repository.get_active_by_hash(session, hash_api_key(api_key))
        if credential is None:
            observe_credential_rejection("unknown_key")
            logger.info("credential.rejected", extra={"reason": "unknown_key", "source_ip": source_ip})
            return GateDecision(provider_id=None, tenant_id=None, ip_allowed=False)

        allowed = ip_allowed(source_ip, credential.allowed_ips)
        if not allowed:
            observe_credential_rejection("ip_not_allowed")
            logger.warning(
                "credential.rejected",
                extra={"reason": "ip_not_allowed", "source_ip": source_ip, "tenant_id": credential.tenant_id},
            )
        return GateDecision(provider_id=credential.provider_id, tenant_id=credential.tenant_id, ip_allowed=allowed)
