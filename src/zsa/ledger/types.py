"""zsa.ledger.types

Token and HistoryEntry records.

On disk (and on the wire) records are camelCase JSON objects; supplies are
decimal strings so that values up to 2^64-1 survive any JSON consumer.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from zsa.errors import ConflictError
from zsa.ledger.constants import (
    H_BURN,
    H_CREATION,
    H_FINALIZATION,
    H_ISSUANCE,
    HISTORY_TYPES,
    MAX_ISSUE,
    TOKEN_STATUSES,
)

Json = Dict[str, Any]


def _opt_str(v: Any) -> Optional[str]:
    return None if v is None else str(v)


@dataclass(frozen=True)
class HistoryEntry:
    type: str
    timestamp: str
    amount: Optional[str] = None
    recipient: Optional[str] = None
    transaction_id: Optional[str] = None
    finalized: Optional[bool] = None

    def to_json(self) -> Json:
        out: Json = {"type": self.type}
        if self.amount is not None:
            out["amount"] = self.amount
        if self.recipient is not None:
            out["recipient"] = self.recipient
        if self.transaction_id is not None:
            out["transactionId"] = self.transaction_id
        if self.finalized is not None:
            out["finalized"] = self.finalized
        out["timestamp"] = self.timestamp
        return out

    @staticmethod
    def from_json(j: Json) -> "HistoryEntry":
        fin = j.get("finalized")
        return HistoryEntry(
            type=str(j.get("type", "")),
            timestamp=str(j.get("timestamp", "")),
            amount=_opt_str(j.get("amount")),
            recipient=_opt_str(j.get("recipient")),
            transaction_id=_opt_str(j.get("transactionId")),
            finalized=None if fin is None else bool(fin),
        )


@dataclass
class Token:
    id: str
    name: str
    symbol: str
    description: str
    initial_supply: str
    total_supply: str
    issuer: str
    asset_id: str
    asset_desc_hash: str
    asset_desc: str
    recipient_address: str
    finalized: bool
    network: str
    status: str
    created_at: str
    burned_supply: str = "0"
    deployed_at: Optional[str] = None
    transaction_id: Optional[str] = None
    transaction: Optional[Json] = None
    history: List[HistoryEntry] = field(default_factory=list)

    def add_history(self, entry: HistoryEntry) -> None:
        self.history.append(entry)

    def has_deployment(self) -> bool:
        return any(h.type == "deployment" for h in self.history)

    def to_json(self) -> Json:
        return {
            "id": self.id,
            "name": self.name,
            "symbol": self.symbol,
            "description": self.description,
            "initialSupply": self.initial_supply,
            "totalSupply": self.total_supply,
            "burnedSupply": self.burned_supply,
            "issuer": self.issuer,
            "assetId": self.asset_id,
            "assetDescHash": self.asset_desc_hash,
            "assetDesc": self.asset_desc,
            "recipientAddress": self.recipient_address,
            "finalized": self.finalized,
            "network": self.network,
            "status": self.status,
            "createdAt": self.created_at,
            "deployedAt": self.deployed_at,
            "transactionId": self.transaction_id,
            "transaction": copy.deepcopy(self.transaction),
            "history": [h.to_json() for h in self.history],
        }

    @staticmethod
    def from_json(j: Json) -> "Token":
        if not isinstance(j, dict):
            raise ValueError("token record must be a JSON object")
        history = j.get("history")
        tx = j.get("transaction")
        return Token(
            id=str(j["id"]),
            name=str(j.get("name", "")),
            symbol=str(j.get("symbol", "")),
            description=str(j.get("description", "") or ""),
            initial_supply=str(j.get("initialSupply", "0")),
            total_supply=str(j.get("totalSupply", "0")),
            burned_supply=str(j.get("burnedSupply", "0") or "0"),
            issuer=str(j.get("issuer", "")),
            asset_id=str(j["assetId"]),
            asset_desc_hash=str(j.get("assetDescHash", "")),
            asset_desc=str(j.get("assetDesc", "")),
            recipient_address=str(j.get("recipientAddress", "")),
            finalized=bool(j.get("finalized", False)),
            network=str(j.get("network", "")),
            status=str(j.get("status", "")),
            created_at=str(j.get("createdAt", "")),
            deployed_at=_opt_str(j.get("deployedAt")),
            transaction_id=_opt_str(j.get("transactionId")),
            transaction=copy.deepcopy(tx) if isinstance(tx, dict) else None,
            history=[HistoryEntry.from_json(h) for h in history if isinstance(h, dict)] if isinstance(history, list) else [],
        )


def supply_from_history(token: Token) -> int:
    """initial + sum(issuance) - sum(burn), recomputed from the audit log."""
    total = int(token.initial_supply)
    for h in token.history:
        if h.type == H_ISSUANCE:
            total += int(h.amount or 0)
        elif h.type == H_BURN:
            total -= int(h.amount or 0)
    return total


def check_token_invariants(token: Token) -> None:
    """Raise ConflictError if the record breaks the supply or finality rules."""
    if token.status not in TOKEN_STATUSES:
        raise ConflictError("invariant_violation", f"unknown status {token.status!r}", {"assetId": token.asset_id})
    unknown = sorted({h.type for h in token.history} - HISTORY_TYPES)
    if unknown:
        raise ConflictError("invariant_violation", "unknown history entry types", {"types": unknown})

    total = int(token.total_supply)
    if not 0 <= total <= MAX_ISSUE:
        raise ConflictError("invariant_violation", "total supply out of range", {"assetId": token.asset_id})

    if supply_from_history(token) != total:
        raise ConflictError("invariant_violation", "total supply disagrees with history", {"assetId": token.asset_id})

    burned = sum(int(h.amount or 0) for h in token.history if h.type == H_BURN)
    if burned != int(token.burned_supply):
        raise ConflictError("invariant_violation", "burned supply disagrees with history", {"assetId": token.asset_id})

    closed = False
    for h in token.history:
        if h.type == H_ISSUANCE and closed:
            raise ConflictError("invariant_violation", "issuance recorded after finalization", {"assetId": token.asset_id})
        if h.type == H_FINALIZATION or (h.type == H_CREATION and h.finalized):
            closed = True
    if closed and not token.finalized:
        raise ConflictError("invariant_violation", "finalization recorded but flag is unset", {"assetId": token.asset_id})
