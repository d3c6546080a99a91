"""Typed failures raised by the delegation engine."""

from __future__ import annotations


class DelegationEngineError(Exception):
    """Base class for every engine failure surfaced to callers."""


class PolicyViolationError(DelegationEngineError, ValueError):
    """Configuration or input rejected by pool/session policy."""


class InvalidTransitionError(DelegationEngineError):
    """Requested state change is not allowed from the entity's current state."""


class NotFoundError(DelegationEngineError, LookupError):
    """Referenced pool, session, work item or delegation request does not exist."""


class VersionConflictError(DelegationEngineError):
    """Work item changed since the caller read it; reload and reapply."""

    def __init__(self, *, item_id: str, expected_version: int, current_version: int) -> None:
        super().__init__(
            f"Work item {item_id} has been modified. "
            f"Your version: {expected_version}, server version: {current_version}.",
        )
        self.item_id = item_id
        self.expected_version = expected_version
        self.current_version = current_version
