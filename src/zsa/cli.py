# src/zsa/cli.py
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from zsa.config import load_config
from zsa.env import load_dotenv_if_present
from zsa.errors import (
    ConflictError,
    ExternalToolError,
    NotFoundError,
    StorageError,
    ValidationError,
    ZsaError,
)
from zsa.issuer.tx_tool import TransactionIssuer, describe_deploy_error
from zsa.ledger.issuance import IssuanceLedger, ledger_from_config
from zsa.structured_logging import configure_structured_logging, log_event

log = logging.getLogger("zsa.cli")

# Exit codes by error class. SupplyOverflowError is a ValidationError first.
_EXIT_CODES = (
    (ValidationError, 2),
    (NotFoundError, 3),
    (ConflictError, 4),
    (ExternalToolError, 5),
    (StorageError, 6),
)


def _parse_args(argv: List[str]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="zsa-issuance", description="Issue and track ZSA custom assets")
    ap.add_argument("--config", default=None, help="JSON/YAML config file (default: ZSA_CONFIG_PATH)")
    ap.add_argument("--log-level", default=None, help="Override ZSA_LOG_LEVEL")

    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("issuer", help="Print the issuer identifier (creates keys on first use)")

    p = sub.add_parser("create", help="Create a new token")
    p.add_argument("--name", required=True)
    p.add_argument("--symbol", required=True)
    p.add_argument("--description", default="")
    p.add_argument("--supply", required=True, help="Initial supply (integer)")
    p.add_argument("--recipient", required=True, help="Recipient shielded address")
    p.add_argument("--finalize", action="store_true", help="Finalize at creation")

    p = sub.add_parser("issue", help="Issue more of a token (if not finalized)")
    p.add_argument("asset_id")
    p.add_argument("--amount", required=True)
    p.add_argument("--recipient", required=True)

    p = sub.add_parser("finalize", help="Finalize a token (no further issuance)")
    p.add_argument("asset_id")

    p = sub.add_parser("burn", help="Burn supply to the incinerator address")
    p.add_argument("asset_id")
    p.add_argument("--amount", required=True)
    p.add_argument("--address", default=None, help="Burn address (default: incinerator)")

    p = sub.add_parser("deploy", help="Build and broadcast the issuance transaction")
    p.add_argument("asset_id")
    mine = p.add_mutually_exclusive_group()
    mine.add_argument("--mine", dest="mine", action="store_true", default=None, help="Mine a block after broadcast")
    mine.add_argument("--no-mine", dest="mine", action="store_false")

    p = sub.add_parser("recover", help="Mark a token stuck in 'deploying' as failed")
    p.add_argument("asset_id")

    p = sub.add_parser("list", help="List created tokens")
    p.add_argument("--issuer", default=None, help="Only tokens of this issuer")

    p = sub.add_parser("info", help="Show one token")
    p.add_argument("asset_id", nargs="?", default=None)
    p.add_argument("--id", dest="token_id", default=None, help="Look up by internal id instead")

    return ap.parse_args(argv)


def _emit(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _exit_code(err: ZsaError) -> int:
    for cls, code in _EXIT_CODES:
        if isinstance(err, cls):
            return code
    return 1


def run(args: argparse.Namespace, ledger: IssuanceLedger) -> Dict[str, Any] | List[Any]:
    cmd = args.cmd

    if cmd == "issuer":
        return {"issuer": ledger.issuer()}

    if cmd == "create":
        token = ledger.create_token(
            args.name,
            args.symbol,
            args.description,
            args.supply,
            args.recipient,
            finalize=bool(args.finalize),
        )
        return token.to_json()

    if cmd == "issue":
        out = ledger.issue_more(args.asset_id, args.amount, args.recipient)
        return {"token": out.token.to_json(), "amountIssued": out.amount_issued, "transaction": out.transaction}

    if cmd == "finalize":
        fin = ledger.finalize_token(args.asset_id)
        return {"token": fin.token.to_json(), "transaction": fin.transaction}

    if cmd == "burn":
        burned = ledger.burn_tokens(args.asset_id, args.amount, args.address)
        return {"token": burned.token.to_json(), "burnAddress": burned.burn_address, "amountBurned": burned.amount_burned}

    if cmd == "deploy":
        res = ledger.deploy_token(args.asset_id, mine=args.mine)
        return {
            "success": res.success,
            "transactionId": res.transaction_id,
            "assetId": res.asset_id,
            "token": res.token.to_json(),
            "transaction": res.transaction,
        }

    if cmd == "recover":
        return ledger.recover_stale_deployment(args.asset_id).to_json()

    if cmd == "list":
        tokens = ledger.get_by_issuer(args.issuer) if args.issuer else ledger.get_all_tokens()
        return [t.to_json() for t in tokens]

    if cmd == "info":
        if args.token_id:
            token = ledger.get_by_id(args.token_id)
            if token is None:
                raise NotFoundError("token_not_found", "token not found", {"id": args.token_id})
            return token.to_json()
        if not args.asset_id:
            raise ValidationError("missing_fields", "asset_id or --id is required")
        return ledger.require_token(args.asset_id).to_json()

    raise ValidationError("unknown_command", f"unknown command: {cmd}")


def main(argv: Optional[List[str]] = None, *, tx_issuer: Optional[TransactionIssuer] = None) -> int:
    load_dotenv_if_present()
    args = _parse_args(list(sys.argv[1:] if argv is None else argv))

    try:
        cfg = load_config(config_path=args.config)
    except (OSError, ValueError) as e:
        print(f"ERROR: invalid configuration: {e}", file=sys.stderr)
        return 2

    configure_structured_logging(args.log_level or cfg.log_level)
    try:
        ledger = ledger_from_config(cfg, tx_issuer=tx_issuer)
        _emit(run(args, ledger))
        return 0
    except ExternalToolError as e:
        print(describe_deploy_error(e), file=sys.stderr)
        log_event(log, "command_failed", level=logging.DEBUG, cmd=args.cmd, error=str(e))
        return _exit_code(e)
    except ZsaError as e:
        print(str(e), file=sys.stderr)
        log_event(log, "command_failed", level=logging.DEBUG, cmd=args.cmd, error=str(e))
        return _exit_code(e)


if __name__ == "__main__":
    raise SystemExit(main())
