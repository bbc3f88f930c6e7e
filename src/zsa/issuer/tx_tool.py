# src/zsa/issuer/tx_tool.py
"""Boundary to the external transaction tool.

The ledger never builds or broadcasts a real issuance bundle itself. It
depends on a TransactionIssuer with two capabilities:

  build(...) -> dict          unbroadcast issuance payload kept on the token
  issue(request, key) -> IssueResult
                              build + broadcast (+ optionally mine) via the
                              external tool; raises ExternalToolError

SubprocessTxTool drives the Rust `zcash_tx_tool issue` command: the request
is written to a temp JSON file passed as --asset-file, stdout carries the JSON
result, and failures are reported on stderr as "Issue command failed: ...".
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from zsa.errors import ExternalToolError
from zsa.ledger.constants import MAX_ISSUE
from zsa.structured_logging import log_event
from zsa.util.clock import now_iso

Json = Dict[str, Any]

log = logging.getLogger("zsa.tx_tool")

ISSUANCE_TX_VERSION = 1
STATUS_MARKER = "Issue command failed:"
IDEMPOTENCY_ENV = "ZSA_IDEMPOTENCY_KEY"


class IssueRequest(BaseModel):
    """JSON document handed to the tool via --asset-file."""

    model_config = ConfigDict(extra="forbid")

    asset_desc_hash: str = Field(..., pattern=r"^[0-9a-f]{64}$")
    asset_name: str = Field(..., min_length=1)
    recipient: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0, le=MAX_ISSUE)
    first_issuance: bool
    finalize: bool = False
    mine: bool = False


class IssueResult(BaseModel):
    """Tool output. Only tx_id is required; anything else is kept."""

    model_config = ConfigDict(extra="allow")

    tx_id: str = Field(..., min_length=1)


class TransactionIssuer(Protocol):
    def build(
        self,
        *,
        issuer: str,
        asset_id: str,
        asset_desc: str,
        asset_desc_hash: str,
        recipients: List[Json],
        finalize: bool,
        network: str,
    ) -> Json: ...

    def issue(self, request: IssueRequest, idempotency_key: Optional[str] = None) -> IssueResult: ...


def build_issuance_transaction(
    *,
    issuer: str,
    asset_id: str,
    asset_desc: str,
    asset_desc_hash: str,
    recipients: List[Json],
    finalize: bool,
    network: str,
) -> Json:
    """Unsigned, unbroadcast issuance payload (one issue action)."""
    return {
        "version": ISSUANCE_TX_VERSION,
        "type": "issuance",
        "network": network,
        "issuer": issuer,
        "assetId": asset_id,
        "assetDesc": asset_desc,
        "assetDescHash": asset_desc_hash,
        "actions": [
            {
                "recipients": [{"address": str(r["address"]), "amount": str(r["amount"])} for r in recipients],
                "finalize": bool(finalize),
            }
        ],
        "createdAt": now_iso(),
    }


def parse_status_error(stderr: str) -> Optional[Tuple[str, str]]:
    """Find the tool's last status line and classify it.

    Returns (kind, message) or None when no status line is present.
    """
    if not stderr:
        return None
    lines = [ln.strip() for ln in stderr.splitlines() if ln.strip()]
    for line in reversed(lines):
        idx = line.find(STATUS_MARKER)
        if idx == -1:
            continue
        message = line[idx + len(STATUS_MARKER):].strip()
        if message.startswith("validation failed"):
            return "validation", message
        if message.startswith("broadcast failed"):
            return "broadcast", message
        if message.startswith("mining failed"):
            return "mining", message
        return "status", message
    return None


def parse_tool_output(returncode: int, stdout: str, stderr: str) -> IssueResult:
    stdout = stdout or ""
    stderr = (stderr or "").strip()

    if returncode != 0:
        parsed = parse_status_error(stderr)
        details = {"exitCode": returncode, "stderr": stderr or None}
        if parsed is not None:
            kind, message = parsed
            raise ExternalToolError("tx_tool_failed", message, details, kind=kind)
        raise ExternalToolError("tx_tool_failed", f"issue command failed (code {returncode})", details, kind="failed")

    start = stdout.find("{")
    if start == -1:
        raise ExternalToolError(
            "tx_tool_no_json",
            f"issue command did not return JSON. Output: {stdout.strip()}",
            {"stdout": stdout.strip()},
            kind="no_json",
        )

    try:
        raw = json.loads(stdout[start:].strip())
    except ValueError as e:
        raise ExternalToolError(
            "tx_tool_bad_json",
            f"failed to parse issue command output as JSON: {e}",
            {"stdout": stdout.strip()},
            kind="parse",
        ) from e

    try:
        return IssueResult.model_validate(raw)
    except PydanticValidationError as e:
        raise ExternalToolError(
            "tx_tool_no_tx_id",
            "issue command did not return a transaction id",
            {"stdout": stdout.strip()},
            kind="malformed",
        ) from e


class SubprocessTxTool:
    def __init__(self, command: Sequence[str], *, cwd: Optional[str] = None, timeout_s: float = 900.0) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.cwd = cwd
        self.timeout_s = float(timeout_s)

    def build(self, **kwargs: Any) -> Json:
        return build_issuance_transaction(**kwargs)

    def issue(self, request: IssueRequest, idempotency_key: Optional[str] = None) -> IssueResult:
        fd, asset_file = tempfile.mkstemp(prefix="issue-", suffix=".json")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(request.model_dump(), f)

        cmd = [*self.command, "--asset-file", asset_file]
        env = dict(os.environ)
        if idempotency_key:
            env[IDEMPOTENCY_ENV] = idempotency_key

        log_event(log, "tx_tool_start", command=cmd[0], cwd=self.cwd, idempotency_key=idempotency_key)
        try:
            proc = subprocess.run(
                cmd,
                cwd=self.cwd or None,
                env=env,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
            )
        except OSError as e:
            raise ExternalToolError(
                "tx_tool_spawn_failed",
                f"failed to start `{cmd[0]}` process",
                {"cause": str(e)},
                kind="spawn",
            ) from e
        except subprocess.TimeoutExpired as e:
            raise ExternalToolError(
                "tx_tool_timeout",
                f"issue command timed out after {self.timeout_s}s; outcome unknown",
                {"idempotencyKey": idempotency_key},
                kind="timeout",
            ) from e
        finally:
            try:
                os.unlink(asset_file)
            except OSError:
                pass

        if proc.stderr:
            log_event(log, "tx_tool_stderr", level=logging.WARNING, exit_code=proc.returncode, stderr=proc.stderr.strip()[-4000:])

        return parse_tool_output(proc.returncode, proc.stdout, proc.stderr)


def describe_deploy_error(err: ExternalToolError) -> str:
    """Operator-facing message for a failed deploy."""
    if err.kind == "validation":
        return f"Issuance validation failed: {err.reason}"
    if err.kind == "broadcast" and "transaction did not pass consensus validation" in err.reason:
        return (
            "The node rejected the issuance transaction (consensus validation failed). "
            "If you are using a local Zebra node, try rerunning with mining enabled (--mine) "
            "or verify the node allows shielded asset issuance."
        )
    if err.kind == "spawn":
        return "Failed to execute the transaction tool. Ensure Rust is installed and `cargo` is available on the PATH."
    if err.kind == "timeout":
        return f"{err.reason}. The transaction may still have been broadcast; check the chain before redeploying."
    return f"Issue command failed: {err.reason}"
