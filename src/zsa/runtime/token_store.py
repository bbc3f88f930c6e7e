# src/zsa/runtime/token_store.py
from __future__ import annotations

import json
import logging
import os
import random
import sqlite3
import tempfile
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, TypeVar

from zsa.config import IssuanceConfig
from zsa.errors import StorageError
from zsa.runtime.single_writer import SingleWriterLock
from zsa.structured_logging import log_event
from zsa.util.clock import now_ms

Json = Dict[str, Any]
T = TypeVar("T")

log = logging.getLogger("zsa.store")

COLLECTION_FILE = "created-tokens.json"
LOCK_FILE = ".ledger.lock"


def _dump(obj: Any) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False) + "\n"


class TokenStore(ABC):
    """Durable, insertion-ordered collection of token records (JSON dicts).

    Contract:
      - read_all() never raises on an absent or unreadable store; it returns []
      - update(mut) is a serialized read-modify-write: `mut` receives the full
        list, mutates it in place, and its return value is handed back. If
        `mut` raises, nothing is written.
    """

    @abstractmethod
    def exists(self) -> bool: ...

    @abstractmethod
    def read_all(self) -> List[Json]: ...

    @abstractmethod
    def update(self, mut: Callable[[List[Json]], T]) -> T: ...


class JsonFileTokenStore(TokenStore):
    """Collection file + one `<id>.json` per token, both rewritten in full.

    Writes are temp-file + fsync + os.replace, so a crash never leaves a
    truncated record. A failed write is retried once after recreating the
    directory and dropping the stale temp file.
    """

    def __init__(self, tokens_dir: str, *, lock_timeout_s: float = 30.0) -> None:
        self.tokens_dir = Path(tokens_dir)
        self.collection_path = self.tokens_dir / COLLECTION_FILE
        self._lock = SingleWriterLock(str(self.tokens_dir / LOCK_FILE), timeout_s=lock_timeout_s)

    def exists(self) -> bool:
        return self.collection_path.is_file()

    def token_path(self, token_id: str) -> Path:
        return self.tokens_dir / f"{token_id}.json"

    def _load(self, *, strict: bool = True) -> List[Json]:
        """Parse the collection. Non-object entries fail a strict load; a
        lenient load skips them and logs `token_store_entry_dropped`."""
        if not self.collection_path.exists():
            return []
        data = json.loads(self.collection_path.read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError("token collection is not a JSON array")
        tokens = [t for t in data if isinstance(t, dict)]
        dropped = len(data) - len(tokens)
        if dropped:
            if strict:
                raise ValueError(f"token collection has {dropped} non-object entries")
            log_event(
                log,
                "token_store_entry_dropped",
                level=logging.WARNING,
                path=str(self.collection_path),
                count=dropped,
            )
        return tokens

    def read_all(self) -> List[Json]:
        try:
            return self._load(strict=False)
        except (OSError, ValueError) as e:
            log_event(log, "token_store_unreadable", level=logging.WARNING, path=str(self.collection_path), error=str(e))
            return []

    def _write_once(self, path: Path, text: str) -> None:
        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}-", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def atomic_write(self, path: Path, text: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._write_once(path, text)
            return
        except OSError as e:
            log_event(log, "token_store_write_retry", level=logging.WARNING, path=str(path), error=str(e))

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            for stale in path.parent.glob(f".{path.name}-*.tmp"):
                try:
                    stale.unlink()
                except OSError:
                    pass
            self._write_once(path, text)
        except OSError as e:
            raise StorageError("write_failed", f"cannot persist {path.name}: {e}", {"path": str(path)}) from e

    def _write_all(self, tokens: List[Json]) -> None:
        self.atomic_write(self.collection_path, _dump(tokens))
        for t in tokens:
            self.atomic_write(self.token_path(str(t["id"])), _dump(t))

    def update(self, mut: Callable[[List[Json]], T]) -> T:
        with self._lock.held():
            try:
                tokens = self._load()
            except (OSError, ValueError) as e:
                # Refuse to rewrite over a collection we could not parse.
                raise StorageError("collection_unreadable", str(e), {"path": str(self.collection_path)}) from e
            result = mut(tokens)
            self._write_all(tokens)
            return result


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


class SqliteTokenStore(TokenStore):
    """Token records in one SQLite table; RMW inside BEGIN IMMEDIATE.

    Cross-process safe: SQLite admits one writer at a time and update()
    holds the write lock for its whole read-modify-write.
    """

    def __init__(self, path: str, *, write_deadline_s: float = 30.0) -> None:
        self.path = str(path)
        self.write_deadline_ms = max(250, int(write_deadline_s * 1000))
        self.init_schema()

    def _connect(self) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        con = sqlite3.connect(self.path, timeout=self.write_deadline_ms / 1000.0, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA synchronous=FULL;")
        con.execute(f"PRAGMA busy_timeout={self.write_deadline_ms};")
        return con

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return "database is locked" in msg or "database is busy" in msg

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Write transaction with bounded retry on writer-lock contention.

        Policy: retry BEGIN IMMEDIATE with exponential backoff + jitter until
        the deadline, then fail closed.
        """
        deadline_ts = now_ms() + self.write_deadline_ms
        base_sleep = _env_int("ZSA_SQLITE_WRITE_BACKOFF_BASE_MS", 5) / 1000.0
        max_sleep = 0.25

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e) or now_ms() >= deadline_ts:
                        raise
                    sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
                    time.sleep(sleep_s * (0.5 + random.random()))
                    attempt += 1

            try:
                yield con
                con.execute("COMMIT;")
            except BaseException:
                try:
                    con.execute("ROLLBACK;")
                except sqlite3.Error:
                    pass
                raise

    def init_schema(self) -> None:
        try:
            with self.write_tx() as con:
                con.execute(
                    """
                    CREATE TABLE IF NOT EXISTS tokens (
                      seq INTEGER PRIMARY KEY AUTOINCREMENT,
                      id TEXT NOT NULL UNIQUE,
                      asset_id TEXT NOT NULL UNIQUE,
                      token_json TEXT NOT NULL,
                      updated_ts_ms INTEGER NOT NULL
                    );
                    """
                )
        except (sqlite3.Error, OSError) as e:
            raise StorageError("schema_init_failed", str(e), {"path": self.path}) from e

    def exists(self) -> bool:
        return Path(self.path).is_file()

    @staticmethod
    def _rows(con: sqlite3.Connection) -> List[sqlite3.Row]:
        return con.execute("SELECT id, token_json FROM tokens ORDER BY seq ASC;").fetchall()

    def read_all(self) -> List[Json]:
        try:
            with self.connection() as con:
                return [json.loads(str(r["token_json"])) for r in self._rows(con)]
        except (sqlite3.Error, ValueError, OSError) as e:
            log_event(log, "token_store_unreadable", level=logging.WARNING, path=self.path, error=str(e))
            return []

    def update(self, mut: Callable[[List[Json]], T]) -> T:
        try:
            with self.write_tx() as con:
                rows = self._rows(con)
                before = {str(r["id"]): str(r["token_json"]) for r in rows}
                tokens = [json.loads(s) for s in before.values()]

                result = mut(tokens)

                ts = now_ms()
                for t in tokens:
                    payload = json.dumps(t, ensure_ascii=False)
                    if before.get(str(t["id"])) == payload:
                        continue
                    con.execute(
                        """
                        INSERT INTO tokens(id, asset_id, token_json, updated_ts_ms)
                        VALUES(?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                          token_json=excluded.token_json,
                          updated_ts_ms=excluded.updated_ts_ms;
                        """,
                        (str(t["id"]), str(t["assetId"]), payload, ts),
                    )
                return result
        except (sqlite3.Error, OSError) as e:
            raise StorageError("write_failed", str(e), {"path": self.path}) from e


def open_token_store(cfg: IssuanceConfig) -> TokenStore:
    if cfg.store_backend == "sqlite":
        return SqliteTokenStore(cfg.sqlite_path, write_deadline_s=cfg.lock_timeout_s)
    return JsonFileTokenStore(cfg.tokens_dir, lock_timeout_s=cfg.lock_timeout_s)
