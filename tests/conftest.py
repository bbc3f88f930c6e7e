from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, List, Optional

import pytest

# Ensure local "src/" takes precedence over any globally-installed "zsa" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from zsa.issuer.tx_tool import IssueRequest, IssueResult, build_issuance_transaction  # noqa: E402
from zsa.ledger.issuance import IssuanceLedger  # noqa: E402
from zsa.runtime.key_store import IssuerKeyStore  # noqa: E402
from zsa.runtime.token_store import JsonFileTokenStore  # noqa: E402


class FakeTxIssuer:
    """In-memory TransactionIssuer: records requests, returns canned results."""

    def __init__(self) -> None:
        self.requests: List[IssueRequest] = []
        self.keys: List[Optional[str]] = []
        self.fail_with: Optional[BaseException] = None
        self.next_tx_id = "tx-0001"

    def build(self, **kwargs: Any) -> dict:
        return build_issuance_transaction(**kwargs)

    def issue(self, request: IssueRequest, idempotency_key: Optional[str] = None) -> IssueResult:
        self.requests.append(request)
        self.keys.append(idempotency_key)
        if self.fail_with is not None:
            raise self.fail_with
        return IssueResult(tx_id=self.next_tx_id, height=12)


@pytest.fixture
def tx_issuer() -> FakeTxIssuer:
    return FakeTxIssuer()


@pytest.fixture
def key_store(tmp_path: Path) -> IssuerKeyStore:
    return IssuerKeyStore(str(tmp_path / "keys" / "issuance-keys.json"))


@pytest.fixture
def token_store(tmp_path: Path) -> JsonFileTokenStore:
    return JsonFileTokenStore(str(tmp_path / "tokens"))


@pytest.fixture
def ledger(token_store: JsonFileTokenStore, key_store: IssuerKeyStore, tx_issuer: FakeTxIssuer) -> IssuanceLedger:
    return IssuanceLedger(store=token_store, key_store=key_store, tx_issuer=tx_issuer)

