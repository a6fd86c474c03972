from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

Json = Dict[str, Any]


@dataclass
class EngineError(Exception):
    """Canonical error type for reward and combat-power operations.

    `code` is the stable error kind callers switch on; `retryable` tells them
    whether repeating the call can succeed (never true for kinds that mean
    the operation already happened).
    """

    code: str
    reason: str
    details: Json = field(default_factory=dict)

    retryable = False

    def __str__(self) -> str:
        if not self.details:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class NotFoundError(EngineError):
    def __init__(self, reason: str, details: Json | None = None) -> None:
        super().__init__("not_found", reason, dict(details or {}))


class NotOwnerError(EngineError):
    def __init__(self, reason: str, details: Json | None = None) -> None:
        super().__init__("not_owner", reason, dict(details or {}))


class AlreadyClaimedError(EngineError):
    def __init__(self, reason: str, details: Json | None = None) -> None:
        super().__init__("already_claimed", reason, dict(details or {}))


class AlreadyDistributedError(EngineError):
    def __init__(self, reason: str, details: Json | None = None) -> None:
        super().__init__("already_distributed", reason, dict(details or {}))


class BlockCreationError(EngineError):
    def __init__(self, reason: str, details: Json | None = None) -> None:
        super().__init__("block_creation_failed", reason, dict(details or {}))


class InvalidParticipantError(EngineError):
    def __init__(self, reason: str, details: Json | None = None) -> None:
        super().__init__("invalid_participant", reason, dict(details or {}))


class PersistenceError(EngineError):
    """Transient storage failure (lock timeout, I/O). Safe to retry."""

    retryable = True

    def __init__(self, reason: str, details: Json | None = None) -> None:
        super().__init__("persistence_failed", reason, dict(details or {}))


class FatalInconsistencyError(EngineError):
    """A claimed entry with no matching balance credit. Needs out-of-band reconciliation."""

    def __init__(self, reason: str, details: Json | None = None) -> None:
        super().__init__("fatal_inconsistency", reason, dict(details or {}))
