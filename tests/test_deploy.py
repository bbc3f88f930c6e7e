from __future__ import annotations

import pytest

from zsa.errors import ConflictError, ExternalToolError, NotFoundError
from zsa.ledger.constants import (
    H_DEPLOYMENT,
    H_DEPLOYMENT_FAILED,
    STATUS_DEPLOYED,
    STATUS_DEPLOYING,
    STATUS_FAILED,
)
from zsa.ledger.issuance import IssuanceLedger
from zsa.ledger.types import check_token_invariants


def _token(ledger: IssuanceLedger, supply: str = "1000"):
    return ledger.create_token("Deploy", "DPL", "for deploy tests", supply, "zaddr1")


def _force_status(ledger: IssuanceLedger, asset_id: str, status: str) -> None:
    def mut(tokens):
        for t in tokens:
            if t["assetId"] == asset_id:
                t["status"] = status

    ledger.store.update(mut)


def test_deploy_success(ledger: IssuanceLedger, tx_issuer) -> None:
    token = _token(ledger)
    res = ledger.deploy_token(token.asset_id)

    assert res.success is True
    assert res.transaction_id == "tx-0001"
    assert res.asset_id == token.asset_id
    assert res.transaction["tx_id"] == "tx-0001"
    assert res.transaction["height"] == 12

    stored = ledger.require_token(token.asset_id)
    assert stored.status == STATUS_DEPLOYED
    assert stored.transaction_id == "tx-0001"
    assert stored.deployed_at
    assert stored.history[-1].type == H_DEPLOYMENT
    assert stored.history[-1].transaction_id == "tx-0001"
    check_token_invariants(stored)

    req = tx_issuer.requests[0]
    assert req.asset_desc_hash == token.asset_desc_hash
    assert req.asset_name == "Deploy"
    assert req.recipient == "zaddr1"
    assert req.amount == 1000
    assert req.first_issuance is True
    assert req.finalize is False
    assert req.mine is False
    assert tx_issuer.keys == [f"{token.asset_id}:1"]


def test_deploy_mine_and_finalize_flags(ledger: IssuanceLedger, tx_issuer) -> None:
    token = ledger.create_token("Fixed", "FIX", "", "5", "zaddr1", True)
    ledger.deploy_token(token.asset_id, mine=True)

    req = tx_issuer.requests[0]
    assert req.mine is True
    assert req.finalize is True


def test_deploy_mine_default_from_ledger(token_store, key_store, tx_issuer) -> None:
    ledger = IssuanceLedger(store=token_store, key_store=key_store, tx_issuer=tx_issuer, mine_by_default=True)
    token = _token(ledger)
    ledger.deploy_token(token.asset_id)
    assert tx_issuer.requests[0].mine is True


def test_deploy_twice_conflicts(ledger: IssuanceLedger, tx_issuer) -> None:
    token = _token(ledger)
    ledger.deploy_token(token.asset_id)

    with pytest.raises(ConflictError) as ei:
        ledger.deploy_token(token.asset_id)
    assert ei.value.code == "already_deployed"
    assert len(tx_issuer.requests) == 1


def test_deploy_unknown_asset(ledger: IssuanceLedger, tx_issuer) -> None:
    with pytest.raises(NotFoundError):
        ledger.deploy_token("00" + "55" * 64)
    assert tx_issuer.requests == []


def test_tool_failure_marks_failed_and_keeps_kind(ledger: IssuanceLedger, tx_issuer) -> None:
    token = _token(ledger)
    tx_issuer.fail_with = ExternalToolError(
        "tx_tool_failed",
        "broadcast failed: transaction did not pass consensus validation",
        {"exitCode": 1},
        kind="broadcast",
    )

    with pytest.raises(ExternalToolError) as ei:
        ledger.deploy_token(token.asset_id)
    assert ei.value.kind == "broadcast"

    stored = ledger.require_token(token.asset_id)
    assert stored.status == STATUS_FAILED
    assert stored.history[-1].type == H_DEPLOYMENT_FAILED
    assert stored.transaction_id is None
    check_token_invariants(stored)


def test_unexpected_issuer_error_is_wrapped(ledger: IssuanceLedger, tx_issuer) -> None:
    token = _token(ledger)
    tx_issuer.fail_with = RuntimeError("socket closed")

    with pytest.raises(ExternalToolError) as ei:
        ledger.deploy_token(token.asset_id)
    assert ei.value.kind == "failed"
    assert ei.value.code == "tx_tool_failed"
    assert "socket closed" in ei.value.reason
    assert isinstance(ei.value.__cause__, RuntimeError)
    assert ledger.require_token(token.asset_id).status == STATUS_FAILED


def test_retry_after_failure_uses_new_idempotency_key(ledger: IssuanceLedger, tx_issuer) -> None:
    token = _token(ledger)
    tx_issuer.fail_with = ExternalToolError("tx_tool_timeout", "timed out", None, kind="timeout")
    with pytest.raises(ExternalToolError):
        ledger.deploy_token(token.asset_id)

    tx_issuer.fail_with = None
    res = ledger.deploy_token(token.asset_id)

    assert res.success is True
    assert tx_issuer.keys == [f"{token.asset_id}:1", f"{token.asset_id}:2"]
    assert tx_issuer.requests[1].first_issuance is True
    assert tx_issuer.requests[1].amount == 1000


def test_redeploy_after_issue_mints_only_new_supply(ledger: IssuanceLedger, tx_issuer) -> None:
    token = _token(ledger)
    ledger.deploy_token(token.asset_id)
    ledger.issue_more(token.asset_id, "250", "zaddr1")

    stored = ledger.require_token(token.asset_id)
    assert IssuanceLedger.deploy_amount(stored) == 250

    tx_issuer.next_tx_id = "tx-0002"
    res = ledger.deploy_token(token.asset_id)

    assert res.transaction_id == "tx-0002"
    req = tx_issuer.requests[1]
    assert req.amount == 250
    assert req.first_issuance is False
    assert tx_issuer.keys[1] == f"{token.asset_id}:2"


def test_deploy_amount_before_first_deploy_is_total_supply(ledger: IssuanceLedger) -> None:
    token = _token(ledger, "40")
    ledger.issue_more(token.asset_id, "2", "zaddr1")
    ledger.burn_tokens(token.asset_id, "12")
    assert IssuanceLedger.deploy_amount(ledger.require_token(token.asset_id)) == 30


def test_deploying_blocks_mutations_until_recovered(ledger: IssuanceLedger) -> None:
    token = _token(ledger)
    _force_status(ledger, token.asset_id, STATUS_DEPLOYING)

    for call in (
        lambda: ledger.issue_more(token.asset_id, "1", "zaddr1"),
        lambda: ledger.finalize_token(token.asset_id),
        lambda: ledger.burn_tokens(token.asset_id, "1"),
        lambda: ledger.deploy_token(token.asset_id),
    ):
        with pytest.raises(ConflictError) as ei:
            call()
        assert ei.value.code == "deploy_in_progress"

    recovered = ledger.recover_stale_deployment(token.asset_id)
    assert recovered.status == STATUS_FAILED
    assert recovered.history[-1].type == H_DEPLOYMENT_FAILED

    assert ledger.issue_more(token.asset_id, "1", "zaddr1").token.total_supply == "1001"


def test_recover_requires_deploying(ledger: IssuanceLedger) -> None:
    token = _token(ledger)
    with pytest.raises(ConflictError) as ei:
        ledger.recover_stale_deployment(token.asset_id)
    assert ei.value.code == "not_deploying"
    with pytest.raises(NotFoundError):
        ledger.recover_stale_deployment("00" + "66" * 64)


def test_in_flight_deploy_is_recorded_before_tool_runs(ledger: IssuanceLedger, tx_issuer) -> None:
    token = _token(ledger)
    seen = {}

    real_issue = tx_issuer.issue

    def spy(request, idempotency_key=None):
        stored = ledger.require_token(token.asset_id)
        seen["status"] = stored.status
        seen["transaction"] = stored.transaction
        return real_issue(request, idempotency_key)

    tx_issuer.issue = spy
    ledger.deploy_token(token.asset_id)

    assert seen["status"] == STATUS_DEPLOYING
    assert seen["transaction"]["type"] == "issue_request"
    assert seen["transaction"]["idempotencyKey"] == f"{token.asset_id}:1"
    assert seen["transaction"]["request"]["amount"] == 1000
