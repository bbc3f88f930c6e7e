"""Pure precondition checks for ledger operations.

Each admit_* function inspects inputs (and the current token record, when the
operation targets one) and returns a Verdict. Nothing here mutates state; the
ledger turns a rejection into an exception with Verdict.raise_for().
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Type

from zsa.crypto.asset_id import DESC_DELIMITER
from zsa.errors import (
    ConflictError,
    NotFoundError,
    SupplyOverflowError,
    ValidationError,
    ZsaError,
)
from zsa.ledger.constants import MAX_ISSUE, STATUS_DEPLOYED, SYMBOL_MAX_LEN, SYMBOL_MIN_LEN
from zsa.ledger.types import Token

_KIND_TO_ERROR: Dict[str, Type[ZsaError]] = {
    "validation": ValidationError,
    "not_found": NotFoundError,
    "conflict": ConflictError,
    "overflow": SupplyOverflowError,
}


@dataclass(frozen=True)
class Verdict:
    ok: bool
    kind: str
    code: str
    reason: str
    details: Optional[Dict[str, Any]] = None

    def __iter__(self) -> Iterator[Any]:
        """Allow `ok, verdict = admit_x(...)` unpacking."""
        yield self.ok
        yield None if self.ok else self

    @staticmethod
    def admit() -> "Verdict":
        return Verdict(True, "ok", "ok", "admitted", None)

    @staticmethod
    def reject(kind: str, code: str, reason: str, details: Optional[Dict[str, Any]] = None) -> "Verdict":
        return Verdict(False, kind, code, reason, details)

    def raise_for(self) -> None:
        if self.ok:
            return
        raise _KIND_TO_ERROR.get(self.kind, ValidationError)(self.code, self.reason, self.details)


def parse_amount(value: Any) -> Optional[int]:
    """Accept an int or a decimal string; None for anything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        s = value.strip()
        if s.isdigit() and s.isascii():
            return int(s)
    return None


def _blank(v: Any) -> bool:
    return v is None or not str(v).strip()


def admit_create(*, name: Any, symbol: Any, recipient_address: Any, initial_supply: Any) -> Verdict:
    missing = [k for k, v in (("name", name), ("symbol", symbol), ("recipientAddress", recipient_address)) if _blank(v)]
    if _blank(initial_supply):
        missing.append("initialSupply")
    if missing:
        return Verdict.reject("validation", "missing_fields", "missing required fields", {"missing": missing})

    # Length is checked on the stored (upper-cased) form.
    sym = str(symbol).strip().upper()
    if not SYMBOL_MIN_LEN <= len(sym) <= SYMBOL_MAX_LEN:
        return Verdict.reject(
            "validation",
            "invalid_symbol",
            f"symbol must be between {SYMBOL_MIN_LEN} and {SYMBOL_MAX_LEN} characters",
            {"length": len(sym)},
        )

    for label, v in (("name", name), ("symbol", symbol)):
        if DESC_DELIMITER in str(v):
            return Verdict.reject("validation", f"invalid_{label}", f"{label} must not contain {DESC_DELIMITER!r}")

    supply = parse_amount(initial_supply)
    if supply is None or supply < 0:
        return Verdict.reject("validation", "invalid_supply", "initial supply must be a non-negative integer")
    if supply > MAX_ISSUE:
        return Verdict.reject("validation", "supply_exceeds_max", f"supply exceeds maximum: {MAX_ISSUE}")

    return Verdict.admit()


def _not_found(asset_id: str) -> Verdict:
    return Verdict.reject("not_found", "token_not_found", "token not found", {"assetId": asset_id})


def admit_issue(token: Optional[Token], *, asset_id: str, amount: Any, recipient_address: Any) -> Verdict:
    n = parse_amount(amount)
    if n is None or n <= 0:
        return Verdict.reject("validation", "invalid_amount", "issue amount must be a positive integer")
    if n > MAX_ISSUE:
        return Verdict.reject("validation", "amount_exceeds_max", f"amount exceeds maximum: {MAX_ISSUE}")
    if _blank(recipient_address):
        return Verdict.reject("validation", "missing_fields", "recipient address is required", {"missing": ["recipientAddress"]})

    if token is None:
        return _not_found(asset_id)
    if token.finalized:
        return Verdict.reject("conflict", "token_finalized", "token is finalized; no more tokens can be issued")
    if int(token.total_supply) + n > MAX_ISSUE:
        return Verdict.reject(
            "overflow",
            "supply_exceeds_max",
            "total supply would exceed maximum",
            {"totalSupply": token.total_supply, "amount": str(n)},
        )
    return Verdict.admit()


def admit_finalize(token: Optional[Token], *, asset_id: str) -> Verdict:
    if token is None:
        return _not_found(asset_id)
    if token.finalized:
        return Verdict.reject("conflict", "already_finalized", "token is already finalized")
    return Verdict.admit()


def admit_burn(token: Optional[Token], *, asset_id: str, amount: Any) -> Verdict:
    n = parse_amount(amount)
    if n is None or n <= 0:
        return Verdict.reject("validation", "invalid_amount", "burn amount must be greater than zero")

    if token is None:
        return _not_found(asset_id)
    if n > int(token.total_supply):
        return Verdict.reject(
            "conflict",
            "burn_exceeds_supply",
            "burn amount exceeds total supply",
            {"totalSupply": token.total_supply, "amount": str(n)},
        )
    return Verdict.admit()


def admit_deploy(token: Optional[Token], *, asset_id: str) -> Verdict:
    if token is None:
        return _not_found(asset_id)
    if token.status == STATUS_DEPLOYED:
        return Verdict.reject("conflict", "already_deployed", "token already deployed")
    return Verdict.admit()
