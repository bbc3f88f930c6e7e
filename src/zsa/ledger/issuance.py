# src/zsa/ledger/issuance.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from zsa.config import IssuanceConfig
from zsa.crypto.asset_id import compute_asset_id, desc_hash, serialize_description
from zsa.errors import ConflictError, ExternalToolError, NotFoundError, StorageError, ValidationError
from zsa.issuer.tx_tool import IssueRequest, IssueResult, SubprocessTxTool, TransactionIssuer
from zsa.ledger.admission import (
    admit_burn,
    admit_create,
    admit_deploy,
    admit_finalize,
    admit_issue,
    parse_amount,
)
from zsa.ledger.constants import (
    DEFAULT_NETWORK,
    H_BURN,
    H_CREATION,
    H_DEPLOYMENT,
    H_DEPLOYMENT_FAILED,
    H_FINALIZATION,
    H_ISSUANCE,
    INCINERATOR_ADDRESS,
    STATUS_DEPLOYED,
    STATUS_DEPLOYING,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PENDING_BURN,
    STATUS_PENDING_FINALIZATION,
)
from zsa.ledger.types import HistoryEntry, Json, Token
from zsa.runtime.key_store import IssuerKeyStore
from zsa.runtime.token_store import TokenStore, open_token_store
from zsa.structured_logging import log_event
from zsa.util.clock import Clock, now_iso

log = logging.getLogger("zsa.ledger")


@dataclass(frozen=True)
class IssueOutcome:
    token: Token
    transaction: Json
    amount_issued: str


@dataclass(frozen=True)
class FinalizeOutcome:
    token: Token
    transaction: Json


@dataclass(frozen=True)
class BurnOutcome:
    token: Token
    burn_address: str
    amount_burned: str


@dataclass(frozen=True)
class DeploymentResult:
    success: bool
    transaction_id: str
    asset_id: str
    token: Token
    transaction: Json


def _locate(tokens: List[Json], asset_id: str) -> Tuple[int, Optional[Token]]:
    for i, raw in enumerate(tokens):
        if raw.get("assetId") == asset_id:
            try:
                return i, Token.from_json(raw)
            except (KeyError, TypeError, ValueError) as e:
                raise StorageError("record_corrupt", f"token record is malformed: {e}", {"assetId": asset_id}) from e
    return -1, None


def _blocked_by_deploy(token: Optional[Token]) -> None:
    if token is not None and token.status == STATUS_DEPLOYING:
        raise ConflictError("deploy_in_progress", "a deployment of this token is in progress", {"assetId": token.asset_id})


class IssuanceLedger:
    """Owns the token collection: creation, supply changes, finality, deploys.

    Every mutation is one store.update() call, so it runs under the store's
    single-writer exclusion against a freshly read collection, and its
    preconditions are checked before anything is changed. deploy_token is
    the exception: the external tool runs between two separate updates
    (enter `deploying`, then record the outcome) so the store lock is never
    held across the subprocess.
    """

    def __init__(
        self,
        *,
        store: TokenStore,
        key_store: IssuerKeyStore,
        tx_issuer: TransactionIssuer,
        network: str = DEFAULT_NETWORK,
        mine_by_default: bool = False,
        clock: Clock = now_iso,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.store = store
        self.key_store = key_store
        self.tx_issuer = tx_issuer
        self.network = network
        self.mine_by_default = bool(mine_by_default)
        self.clock = clock
        self.id_factory = id_factory

    # ---- identity ----

    def issuer(self) -> str:
        return self.key_store.issuer()

    @staticmethod
    def incinerator_address() -> str:
        return INCINERATOR_ADDRESS

    # ---- mutations ----

    def create_token(
        self,
        name: str,
        symbol: str,
        description: Optional[str],
        initial_supply: Any,
        recipient_address: str,
        finalize: bool = False,
    ) -> Token:
        admit_create(
            name=name,
            symbol=symbol,
            recipient_address=recipient_address,
            initial_supply=initial_supply,
        ).raise_for()

        name = str(name).strip()
        symbol = str(symbol).strip().upper()
        description = str(description or "")
        recipient = str(recipient_address).strip()
        supply = int(parse_amount(initial_supply))  # type: ignore[arg-type]
        finalize = bool(finalize)

        issuer = self.key_store.issuer()
        asset_desc = serialize_description(name, symbol, description)
        asset_id, h = compute_asset_id(issuer, asset_desc)

        tx = self.tx_issuer.build(
            issuer=issuer,
            asset_id=asset_id,
            asset_desc=asset_desc,
            asset_desc_hash=h.hex(),
            recipients=[{"address": recipient, "amount": str(supply)}],
            finalize=finalize,
            network=self.network,
        )

        now = self.clock()
        token = Token(
            id=self.id_factory(),
            name=name,
            symbol=symbol,
            description=description,
            initial_supply=str(supply),
            total_supply=str(supply),
            burned_supply="0",
            issuer=issuer,
            asset_id=asset_id,
            asset_desc_hash=h.hex(),
            asset_desc=asset_desc,
            recipient_address=recipient,
            finalized=finalize,
            network=self.network,
            status=STATUS_PENDING,
            created_at=now,
            transaction=tx,
        )
        token.add_history(
            HistoryEntry(type=H_CREATION, timestamp=now, amount=str(supply), recipient=recipient, finalized=finalize)
        )

        def mut(tokens: List[Json]) -> None:
            for raw in tokens:
                if raw.get("assetId") == asset_id:
                    raise ConflictError(
                        "asset_exists",
                        "an asset with this issuer and description already exists",
                        {"assetId": asset_id},
                    )
                if raw.get("id") == token.id:
                    raise ConflictError("id_exists", "token id already in use", {"id": token.id})
            tokens.append(token.to_json())

        self.store.update(mut)
        log_event(log, "token_created", asset_id=asset_id, id=token.id, symbol=symbol, supply=str(supply), finalized=finalize)
        return token

    def issue_more(self, asset_id: str, amount: Any, recipient_address: str) -> IssueOutcome:
        recipient = str(recipient_address or "").strip()

        def mut(tokens: List[Json]) -> IssueOutcome:
            idx, token = _locate(tokens, asset_id)
            admit_issue(token, asset_id=asset_id, amount=amount, recipient_address=recipient).raise_for()
            _blocked_by_deploy(token)
            assert token is not None
            n = int(parse_amount(amount))  # type: ignore[arg-type]

            tx = self.tx_issuer.build(
                issuer=token.issuer,
                asset_id=token.asset_id,
                asset_desc=token.asset_desc,
                asset_desc_hash=token.asset_desc_hash,
                recipients=[{"address": recipient, "amount": str(n)}],
                finalize=False,
                network=token.network,
            )

            token.total_supply = str(int(token.total_supply) + n)
            token.status = STATUS_PENDING
            token.transaction = tx
            token.add_history(HistoryEntry(type=H_ISSUANCE, timestamp=self.clock(), amount=str(n), recipient=recipient))
            tokens[idx] = token.to_json()
            return IssueOutcome(token=token, transaction=tx, amount_issued=str(n))

        out = self.store.update(mut)
        log_event(log, "token_issued", asset_id=asset_id, amount=out.amount_issued, total_supply=out.token.total_supply)
        return out

    def finalize_token(self, asset_id: str) -> FinalizeOutcome:
        def mut(tokens: List[Json]) -> FinalizeOutcome:
            idx, token = _locate(tokens, asset_id)
            admit_finalize(token, asset_id=asset_id).raise_for()
            _blocked_by_deploy(token)
            assert token is not None

            # Finalization issues nothing; it is an issue action with amount 0.
            tx = self.tx_issuer.build(
                issuer=token.issuer,
                asset_id=token.asset_id,
                asset_desc=token.asset_desc,
                asset_desc_hash=token.asset_desc_hash,
                recipients=[{"address": token.recipient_address, "amount": "0"}],
                finalize=True,
                network=token.network,
            )

            token.finalized = True
            token.status = STATUS_PENDING_FINALIZATION
            token.transaction = tx
            token.add_history(HistoryEntry(type=H_FINALIZATION, timestamp=self.clock()))
            tokens[idx] = token.to_json()
            return FinalizeOutcome(token=token, transaction=tx)

        out = self.store.update(mut)
        log_event(log, "token_finalized", asset_id=asset_id)
        return out

    def burn_tokens(self, asset_id: str, amount: Any, burn_address: Optional[str] = None) -> BurnOutcome:
        address = str(burn_address or "").strip() or INCINERATOR_ADDRESS

        def mut(tokens: List[Json]) -> BurnOutcome:
            idx, token = _locate(tokens, asset_id)
            admit_burn(token, asset_id=asset_id, amount=amount).raise_for()
            _blocked_by_deploy(token)
            assert token is not None
            n = int(parse_amount(amount))  # type: ignore[arg-type]

            token.total_supply = str(int(token.total_supply) - n)
            token.burned_supply = str(int(token.burned_supply or "0") + n)
            token.status = STATUS_PENDING_BURN
            token.add_history(HistoryEntry(type=H_BURN, timestamp=self.clock(), amount=str(n), recipient=address))
            tokens[idx] = token.to_json()
            return BurnOutcome(token=token, burn_address=address, amount_burned=str(n))

        out = self.store.update(mut)
        log_event(log, "token_burned", asset_id=asset_id, amount=out.amount_burned, total_supply=out.token.total_supply)
        return out

    # ---- deployment ----

    @staticmethod
    def deploy_amount(token: Token) -> int:
        """Supply the next deploy must mint.

        First deploy: the whole current supply. Later deploys: the issuance
        recorded since the last successful deployment.
        """
        if not token.has_deployment():
            return int(token.total_supply)
        pending = 0
        for h in token.history:
            if h.type == H_DEPLOYMENT:
                pending = 0
            elif h.type == H_ISSUANCE:
                pending += int(h.amount or 0)
        return pending

    def deploy_token(
        self,
        asset_id: str,
        *,
        mine: Optional[bool] = None,
        finalize: Optional[bool] = None,
    ) -> DeploymentResult:
        should_mine = self.mine_by_default if mine is None else bool(mine)

        def begin(tokens: List[Json]) -> Tuple[IssueRequest, str]:
            idx, token = _locate(tokens, asset_id)
            admit_deploy(token, asset_id=asset_id).raise_for()
            _blocked_by_deploy(token)
            assert token is not None

            attempt = 1 + sum(1 for h in token.history if h.type in (H_DEPLOYMENT, H_DEPLOYMENT_FAILED))
            key = f"{token.asset_id}:{attempt}"
            try:
                request = IssueRequest(
                    asset_desc_hash=token.asset_desc_hash or desc_hash(token.asset_desc).hex(),
                    asset_name=token.name,
                    recipient=token.recipient_address,
                    amount=self.deploy_amount(token),
                    first_issuance=not token.has_deployment(),
                    finalize=token.finalized if finalize is None else bool(finalize),
                    mine=should_mine,
                )
            except PydanticValidationError as e:
                raise ValidationError("invalid_deploy_request", str(e), {"assetId": asset_id}) from e

            token.status = STATUS_DEPLOYING
            token.transaction = {"type": "issue_request", "idempotencyKey": key, "request": request.model_dump()}
            tokens[idx] = token.to_json()
            return request, key

        request, key = self.store.update(begin)
        log_event(log, "deploy_started", asset_id=asset_id, idempotency_key=key, amount=str(request.amount), mine=should_mine)

        try:
            result = self.tx_issuer.issue(request, key)
        except ExternalToolError as e:
            self._record_deploy_failure(asset_id, e)
            raise
        except Exception as e:
            err = ExternalToolError("tx_tool_failed", str(e) or type(e).__name__, {"cause": type(e).__name__}, kind="failed")
            self._record_deploy_failure(asset_id, err)
            raise err from e

        return self._record_deploy_success(asset_id, result)

    def _record_deploy_success(self, asset_id: str, result: IssueResult) -> DeploymentResult:
        now = self.clock()
        tx = result.model_dump()

        def finish(tokens: List[Json]) -> Token:
            idx, token = _locate(tokens, asset_id)
            if token is None:
                raise NotFoundError("token_not_found", "token not found", {"assetId": asset_id})
            token.status = STATUS_DEPLOYED
            token.transaction_id = result.tx_id
            token.deployed_at = now
            token.transaction = tx
            token.add_history(HistoryEntry(type=H_DEPLOYMENT, timestamp=now, transaction_id=result.tx_id))
            tokens[idx] = token.to_json()
            return token

        try:
            token = self.store.update(finish)
        except StorageError:
            # Broadcast happened; only the bookkeeping is missing.
            log_event(log, "deploy_record_failed", level=logging.ERROR, asset_id=asset_id, tx_id=result.tx_id)
            raise

        log_event(log, "deploy_succeeded", asset_id=asset_id, tx_id=result.tx_id)
        return DeploymentResult(success=True, transaction_id=result.tx_id, asset_id=asset_id, token=token, transaction=tx)

    def _record_deploy_failure(self, asset_id: str, err: ExternalToolError) -> None:
        """Best-effort compensating write; never masks `err`."""
        log_event(log, "deploy_failed", level=logging.WARNING, asset_id=asset_id, kind=err.kind, reason=err.reason)

        def mark(tokens: List[Json]) -> None:
            idx, token = _locate(tokens, asset_id)
            if token is None:
                return
            token.status = STATUS_FAILED
            token.add_history(HistoryEntry(type=H_DEPLOYMENT_FAILED, timestamp=self.clock()))
            tokens[idx] = token.to_json()

        try:
            self.store.update(mark)
        except Exception as e:
            log_event(log, "deploy_failure_record_failed", level=logging.ERROR, asset_id=asset_id, error=str(e))

    def recover_stale_deployment(self, asset_id: str) -> Token:
        """Mark a token stuck in `deploying` (crashed deploy) as failed."""

        def mut(tokens: List[Json]) -> Token:
            idx, token = _locate(tokens, asset_id)
            if token is None:
                raise NotFoundError("token_not_found", "token not found", {"assetId": asset_id})
            if token.status != STATUS_DEPLOYING:
                raise ConflictError("not_deploying", "token has no deployment in progress", {"status": token.status})
            token.status = STATUS_FAILED
            token.add_history(HistoryEntry(type=H_DEPLOYMENT_FAILED, timestamp=self.clock()))
            tokens[idx] = token.to_json()
            return token

        token = self.store.update(mut)
        log_event(log, "deploy_recovered", level=logging.WARNING, asset_id=asset_id)
        return token

    # ---- queries ----

    def get_all_tokens(self) -> List[Token]:
        out: List[Token] = []
        for raw in self.store.read_all():
            try:
                out.append(Token.from_json(raw))
            except (KeyError, TypeError, ValueError) as e:
                log_event(log, "token_record_skipped", level=logging.WARNING, error=str(e))
        return out

    def get_by_asset_id(self, asset_id: str) -> Optional[Token]:
        return next((t for t in self.get_all_tokens() if t.asset_id == asset_id), None)

    def get_by_id(self, token_id: str) -> Optional[Token]:
        return next((t for t in self.get_all_tokens() if t.id == token_id), None)

    def get_by_issuer(self, issuer: str) -> List[Token]:
        return [t for t in self.get_all_tokens() if t.issuer == issuer]

    def require_token(self, asset_id: str) -> Token:
        token = self.get_by_asset_id(asset_id)
        if token is None:
            raise NotFoundError("token_not_found", "token not found", {"assetId": asset_id})
        return token


def ledger_from_config(cfg: IssuanceConfig, *, tx_issuer: Optional[TransactionIssuer] = None) -> IssuanceLedger:
    return IssuanceLedger(
        store=open_token_store(cfg),
        key_store=IssuerKeyStore(cfg.keys_path),
        tx_issuer=tx_issuer
        or SubprocessTxTool(cfg.tx_tool_command, cwd=cfg.tx_tool_cwd, timeout_s=cfg.tx_tool_timeout_s),
        network=cfg.network,
        mine_by_default=cfg.mine_by_default,
    )
