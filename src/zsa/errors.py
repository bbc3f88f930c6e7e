from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, FrozenSet


@dataclass(eq=False)
class ZsaError(Exception):
    """Canonical error type for key, ledger, store and tx-tool failures."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class ValidationError(ZsaError):
    """Malformed or out-of-range input. Raised before any mutation."""


class NotFoundError(ZsaError):
    """Unknown asset id or internal token id."""


class ConflictError(ZsaError):
    """Operation inconsistent with the token's current state."""


class SupplyOverflowError(ValidationError, ConflictError):
    """Issuance would push total supply past MAX_ISSUE."""


class StorageError(ZsaError):
    """Durable write/read failed after the automatic retry."""


@dataclass(eq=False)
class ExternalToolError(ZsaError):
    """Failure of the external transaction tool during deploy.

    `kind` classifies the failure; `details` carries the tool's diagnostic
    text (stderr/stdout excerpt, exit code) for operators.
    """

    kind: str = "failed"

    KINDS: ClassVar[FrozenSet[str]] = frozenset(
        {
            "spawn",
            "timeout",
            "validation",
            "broadcast",
            "mining",
            "status",
            "no_json",
            "parse",
            "malformed",
            "failed",
        }
    )

    def __post_init__(self) -> None:
        if self.kind not in self.KINDS:
            self.kind = "failed"
