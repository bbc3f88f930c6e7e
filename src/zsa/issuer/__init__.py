# src/zsa/issuer/__init__.py
"""
Transaction tool boundary.

The ledger depends only on the TransactionIssuer protocol; SubprocessTxTool
is the production implementation that shells out to the Rust tx-tool.
"""

from __future__ import annotations

__all__ = [
    "tx_tool",
]
