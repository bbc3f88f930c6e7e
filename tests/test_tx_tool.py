from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from zsa.errors import ExternalToolError
from zsa.issuer.tx_tool import (
    IDEMPOTENCY_ENV,
    IssueRequest,
    SubprocessTxTool,
    build_issuance_transaction,
    describe_deploy_error,
    parse_status_error,
    parse_tool_output,
)
from zsa.ledger.constants import MAX_ISSUE


def _request(**overrides) -> IssueRequest:
    fields = dict(
        asset_desc_hash="ab" * 32,
        asset_name="PepeCoin",
        recipient="zaddr1",
        amount=1000,
        first_issuance=True,
    )
    fields.update(overrides)
    return IssueRequest(**fields)


def _python_tool(script: str) -> list:
    return [sys.executable, "-c", script]


# ---- request model ----


def test_request_defaults() -> None:
    req = _request()
    assert req.finalize is False
    assert req.mine is False
    assert req.model_dump()["amount"] == 1000


@pytest.mark.parametrize(
    "overrides",
    [
        dict(asset_desc_hash="AB" * 32),
        dict(asset_desc_hash="ab" * 31),
        dict(asset_name=""),
        dict(recipient=""),
        dict(amount=-1),
        dict(amount=MAX_ISSUE + 1),
        dict(unexpected="x"),
    ],
)
def test_request_rejects_bad_fields(overrides: dict) -> None:
    with pytest.raises(PydanticValidationError):
        _request(**overrides)


def test_build_issuance_transaction() -> None:
    tx = build_issuance_transaction(
        issuer="ab" * 32,
        asset_id="00" + "ab" * 64,
        asset_desc="A|AA|",
        asset_desc_hash="cd" * 32,
        recipients=[{"address": "zaddr1", "amount": 5}],
        finalize=True,
        network="zcash-testnet",
    )
    assert tx["type"] == "issuance"
    assert tx["network"] == "zcash-testnet"
    assert tx["actions"] == [{"recipients": [{"address": "zaddr1", "amount": "5"}], "finalize": True}]
    assert tx["createdAt"].endswith("Z")


# ---- output parsing ----


@pytest.mark.parametrize(
    "stderr,kind",
    [
        ("Issue command failed: validation failed: bad hash", "validation"),
        ("noise\nIssue command failed: broadcast failed: rejected\n", "broadcast"),
        ("Error: Issue command failed: mining failed: no template", "mining"),
        ("Issue command failed: something else", "status"),
    ],
)
def test_parse_status_error(stderr: str, kind: str) -> None:
    got = parse_status_error(stderr)
    assert got is not None
    assert got[0] == kind


def test_parse_status_error_uses_last_status_line() -> None:
    stderr = "Issue command failed: validation failed: old\nIssue command failed: broadcast failed: new"
    assert parse_status_error(stderr) == ("broadcast", "broadcast failed: new")


def test_parse_status_error_without_status_line() -> None:
    assert parse_status_error("") is None
    assert parse_status_error("panicked at src/main.rs") is None


def test_parse_tool_output_success_skips_preamble() -> None:
    out = parse_tool_output(0, 'Compiling...\n{"tx_id": "abc", "height": 7}\n', "")
    assert out.tx_id == "abc"
    assert out.model_dump()["height"] == 7


@pytest.mark.parametrize(
    "returncode,stdout,stderr,code,kind",
    [
        (1, "", "Issue command failed: validation failed: x", "tx_tool_failed", "validation"),
        (101, "", "thread main panicked", "tx_tool_failed", "failed"),
        (0, "done", "", "tx_tool_no_json", "no_json"),
        (0, "{not json", "", "tx_tool_bad_json", "parse"),
        (0, '{"height": 1}', "", "tx_tool_no_tx_id", "malformed"),
        (0, '{"tx_id": ""}', "", "tx_tool_no_tx_id", "malformed"),
    ],
)
def test_parse_tool_output_failures(returncode: int, stdout: str, stderr: str, code: str, kind: str) -> None:
    with pytest.raises(ExternalToolError) as ei:
        parse_tool_output(returncode, stdout, stderr)
    assert ei.value.code == code
    assert ei.value.kind == kind


def test_nonzero_exit_keeps_diagnostics() -> None:
    with pytest.raises(ExternalToolError) as ei:
        parse_tool_output(2, "", "thread main panicked")
    assert ei.value.details == {"exitCode": 2, "stderr": "thread main panicked"}
    assert "code 2" in ei.value.reason


def test_unknown_kind_falls_back_to_failed() -> None:
    assert ExternalToolError("x", "y", None, kind="weird").kind == "failed"


# ---- subprocess driver ----


def test_subprocess_tool_success(tmp_path: Path) -> None:
    out_file = tmp_path / "seen.json"
    script = (
        "import json, os, sys\n"
        "req = json.load(open(sys.argv[sys.argv.index('--asset-file') + 1]))\n"
        f"json.dump({{'req': req, 'key': os.environ.get('{IDEMPOTENCY_ENV}')}}, open({str(out_file)!r}, 'w'))\n"
        "print('building...')\n"
        "print(json.dumps({'tx_id': 'deadbeef', 'amount': req['amount']}))\n"
    )
    tool = SubprocessTxTool(_python_tool(script), timeout_s=30)

    res = tool.issue(_request(mine=True), "asset:1")

    assert res.tx_id == "deadbeef"
    assert res.model_dump()["amount"] == 1000
    seen = json.loads(out_file.read_text(encoding="utf-8"))
    assert seen["key"] == "asset:1"
    assert seen["req"]["mine"] is True
    assert seen["req"]["asset_name"] == "PepeCoin"


def test_subprocess_tool_removes_asset_file(tmp_path: Path) -> None:
    out_file = tmp_path / "path.txt"
    script = (
        "import sys\n"
        f"open({str(out_file)!r}, 'w').write(sys.argv[sys.argv.index('--asset-file') + 1])\n"
        "print('{\"tx_id\": \"t\"}')\n"
    )
    SubprocessTxTool(_python_tool(script), timeout_s=30).issue(_request())
    assert not Path(out_file.read_text(encoding="utf-8")).exists()


def test_subprocess_tool_reports_status_failure() -> None:
    script = "import sys\nsys.stderr.write('Issue command failed: broadcast failed: rejected\\n')\nsys.exit(1)\n"
    with pytest.raises(ExternalToolError) as ei:
        SubprocessTxTool(_python_tool(script), timeout_s=30).issue(_request())
    assert ei.value.kind == "broadcast"
    assert ei.value.details["exitCode"] == 1


def test_subprocess_tool_missing_tx_id() -> None:
    script = "print('{\"ok\": true}')\n"
    with pytest.raises(ExternalToolError) as ei:
        SubprocessTxTool(_python_tool(script), timeout_s=30).issue(_request())
    assert ei.value.kind == "malformed"


def test_subprocess_tool_spawn_failure(tmp_path: Path) -> None:
    tool = SubprocessTxTool([str(tmp_path / "no-such-binary")], timeout_s=5)
    with pytest.raises(ExternalToolError) as ei:
        tool.issue(_request())
    assert ei.value.kind == "spawn"
    assert ei.value.code == "tx_tool_spawn_failed"


def test_subprocess_tool_timeout() -> None:
    tool = SubprocessTxTool(_python_tool("import time\ntime.sleep(30)\n"), timeout_s=0.5)
    with pytest.raises(ExternalToolError) as ei:
        tool.issue(_request(), "asset:3")
    assert ei.value.kind == "timeout"
    assert ei.value.details == {"idempotencyKey": "asset:3"}


def test_subprocess_tool_requires_command() -> None:
    with pytest.raises(ValueError):
        SubprocessTxTool([])


# ---- operator messages ----


@pytest.mark.parametrize(
    "kind,reason,needle",
    [
        ("validation", "bad hash", "Issuance validation failed: bad hash"),
        ("broadcast", "broadcast failed: transaction did not pass consensus validation", "--mine"),
        ("spawn", "failed to start", "cargo"),
        ("timeout", "timed out", "may still have been broadcast"),
        ("status", "other", "Issue command failed: other"),
    ],
)
def test_describe_deploy_error(kind: str, reason: str, needle: str) -> None:
    assert needle in describe_deploy_error(ExternalToolError("tx_tool_failed", reason, None, kind=kind))
