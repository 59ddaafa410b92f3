from __future__ import annotations


class LeadCoreError(Exception):
    """Base error for the ingestion, scoring and attribution core."""


class LeadValidationError(LeadCoreError):
    """Raised for a single malformed lead item. The message is the reason reported to callers."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class MappingLookupFailedError(LeadCoreError):
    """Internal signal for a broken branch mapping lookup. Never surfaced to callers."""

    def __init__(self, external_branch_id: str, cause: Exception) -> None:
        self.external_branch_id = external_branch_id
        self.cause = cause
        super().__init__(f"Branch mapping lookup failed for {external_branch_id}: {cause}")


class PersistenceFailureError(LeadCoreError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Persistence failure: {reason}")


class LeadNotFoundError(LeadCoreError):
    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__("Lead not found")
