# src/zsa/ledger/constants.py
"""Issuance constants (ZIP 227)."""

from __future__ import annotations

# Protocol cap on any asset's total supply.
MAX_ISSUE: int = 2**64 - 1

SYMBOL_MIN_LEN: int = 2
SYMBOL_MAX_LEN: int = 10

# Sink for burned supply.
INCINERATOR_ADDRESS: str = "zt1incinerator0000000000000000000000000000000000000000000000000000000000"

DEFAULT_NETWORK: str = "zcash-testnet"

# Token.status
STATUS_PENDING = "pending"
STATUS_DEPLOYING = "deploying"
STATUS_DEPLOYED = "deployed"
STATUS_FAILED = "failed"
STATUS_PENDING_FINALIZATION = "pending_finalization"
STATUS_PENDING_BURN = "pending_burn"

TOKEN_STATUSES = frozenset(
    {
        STATUS_PENDING,
        STATUS_DEPLOYING,
        STATUS_DEPLOYED,
        STATUS_FAILED,
        STATUS_PENDING_FINALIZATION,
        STATUS_PENDING_BURN,
    }
)

# HistoryEntry.type
H_CREATION = "creation"
H_ISSUANCE = "issuance"
H_FINALIZATION = "finalization"
H_DEPLOYMENT = "deployment"
H_DEPLOYMENT_FAILED = "deployment_failed"
H_BURN = "burn"

HISTORY_TYPES = frozenset({H_CREATION, H_ISSUANCE, H_FINALIZATION, H_DEPLOYMENT, H_DEPLOYMENT_FAILED, H_BURN})
