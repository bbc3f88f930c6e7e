# src/zsa/crypto/asset_id.py
"""Content-addressed asset identifiers (ZIP 227).

  asset_desc      = "name|symbol|description"
  asset_desc_hash = BLAKE2b-256("ZSA-AssetDescCRH", asset_desc)
  AssetId         = 0x00 || issuer (32 bytes) || asset_desc_hash (32 bytes)

All functions here are pure.
"""

from __future__ import annotations

import hashlib
import re
from typing import Tuple

from zsa.errors import ValidationError

DESC_DELIMITER = "|"

ASSET_ID_TAG = b"\x00"
ASSET_ID_HEX_LEN = 130

DESC_HASH_DOMAIN = b"ZSA-AssetDescCRH"
ASSET_DIGEST_DOMAIN = b"ZSA-Asset-Digest"
ASSET_BASE_DOMAIN = b"z.cash:OrchardZSA"

_HEX64 = re.compile(r"^[0-9a-f]{64}$")
_ASSET_ID = re.compile(r"^00[0-9a-f]{128}$")


def serialize_description(name: str, symbol: str, description: str = "") -> str:
    for label, value in (("name", name), ("symbol", symbol)):
        if DESC_DELIMITER in str(value):
            raise ValidationError(
                f"invalid_{label}",
                f"{label} must not contain the reserved delimiter {DESC_DELIMITER!r}",
            )
    return f"{name}{DESC_DELIMITER}{symbol}{DESC_DELIMITER}{description or ''}"


def deserialize_description(serialized: str) -> Tuple[str, str, str]:
    """Split at the first two delimiters; the description keeps any later ones."""
    parts = str(serialized).split(DESC_DELIMITER, 2)
    parts += [""] * (3 - len(parts))
    return parts[0], parts[1], parts[2]


def desc_hash(serialized: str) -> bytes:
    return hashlib.blake2b(str(serialized).encode("utf-8"), digest_size=32, person=DESC_HASH_DOMAIN).digest()


def is_issuer(value: str) -> bool:
    return isinstance(value, str) and bool(_HEX64.match(value))


def is_asset_id(value: str) -> bool:
    return isinstance(value, str) and bool(_ASSET_ID.match(value))


def compute_asset_id(issuer: str, serialized: str) -> Tuple[str, bytes]:
    """Return (asset_id hex, raw asset_desc_hash)."""
    if not is_issuer(issuer):
        raise ValidationError("invalid_issuer", "issuer must be 64 lowercase hex characters")
    h = desc_hash(serialized)
    raw = ASSET_ID_TAG + bytes.fromhex(issuer) + h
    return raw.hex(), h


def compute_asset_digest(asset_id: str) -> bytes:
    if not is_asset_id(asset_id):
        raise ValidationError("invalid_asset_id", "asset id must be 130 hex characters starting with 00")
    return hashlib.blake2b(bytes.fromhex(asset_id), digest_size=64, person=ASSET_DIGEST_DOMAIN).digest()


def compute_asset_base(asset_digest: bytes) -> str:
    # Hash stand-in for GroupHash^P("z.cash:OrchardZSA", digest); not a curve point.
    h = hashlib.sha256()
    h.update(ASSET_BASE_DOMAIN)
    h.update(bytes(asset_digest))
    return h.hexdigest()
