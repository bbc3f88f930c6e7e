# src/zsa/runtime/key_store.py
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

from zsa.crypto.keys import IssuerKeys, KeyDerivation
from zsa.errors import StorageError
from zsa.structured_logging import log_event

log = logging.getLogger("zsa.keys")


class IssuerKeyStore:
    """Process-wide issuer identity backed by a single JSON key record.

    Guarantees:
      - the record is generated at most once per path: publication is a
        create-if-absent (hard link of a fully written temp file), never a
        read-then-write, so racing first-time callers converge on one identity
      - an existing record is never overwritten or regenerated
      - a corrupt record is an error, not a reason to mint a new identity
    """

    def __init__(self, path: str, *, derivation: Optional[KeyDerivation] = None) -> None:
        self.path = Path(path)
        self.derivation = derivation or KeyDerivation()
        self._lock = threading.Lock()
        self._cached: Optional[IssuerKeys] = None

    def exists(self) -> bool:
        return self.path.is_file()

    def _read(self) -> IssuerKeys:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return IssuerKeys.from_json(raw, derivation=self.derivation)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StorageError("key_record_unreadable", f"cannot load issuer key record: {e}", {"path": str(self.path)}) from e

    def _publish(self, keys: IssuerKeys) -> bool:
        """Write `keys` unless a record already exists. True if ours won."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(keys.to_json(), indent=2, sort_keys=True) + "\n"

        fd, tmp_path = tempfile.mkstemp(prefix=".keys-", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            try:
                os.link(tmp_path, self.path)
                return True
            except FileExistsError:
                return False
        except OSError as e:
            raise StorageError("key_record_write_failed", f"cannot persist issuer key record: {e}", {"path": str(self.path)}) from e
        finally:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass

    def load_or_create(self) -> IssuerKeys:
        with self._lock:
            if self._cached is not None:
                return self._cached

            if self.exists():
                keys = self._read()
            else:
                fresh = self.derivation.generate_issuer_keys()
                if self._publish(fresh):
                    keys = fresh
                    log_event(log, "issuer_keys_created", path=str(self.path), issuer=keys.issuer)
                else:
                    # Lost the first-launch race; adopt the winner's identity.
                    keys = self._read()
                    log_event(log, "issuer_keys_race_lost", path=str(self.path), issuer=keys.issuer)

            self._cached = keys
            return keys

    def issuer(self) -> str:
        return self.load_or_create().issuer
