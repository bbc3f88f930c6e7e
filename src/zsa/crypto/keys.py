# src/zsa/crypto/keys.py
"""Issuance key derivation (ZIP 227 / ZIP 32 shaped).

Chain:
  seed --MKG--> master (key, chain_code)
       --CKDh m/227'/133'/account'--> isk (issuance authorizing key)
       --[isk]G, x-only--> ik (issuance validating key)
       --hex--> issuer identifier

Every step is a method on KeyDerivation so an alternative backend can be
dropped in by subclassing without touching asset id or ledger code.
"""

from __future__ import annotations

import hashlib
import secrets
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives.asymmetric import ec

from zsa.errors import ValidationError
from zsa.util.clock import now_iso

Json = Dict[str, Any]

SEED_MIN_BYTES = 32
SEED_MAX_BYTES = 252

# 16-byte BLAKE2b personalizations.
MKG_DOMAIN = b"ZcashSA_Issue_V1"
EXPAND_DOMAIN = b"Zcash_ExpandSeed"
CKD_DOMAIN = 0x81

PURPOSE = 227
COIN_TYPE = 133
HARDENED = 0x80000000

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


@dataclass(frozen=True)
class MasterKeyMaterial:
    key: bytes
    chain_code: bytes


@dataclass(frozen=True)
class IssuanceKeyMaterial:
    isk: bytes
    chain_code: bytes


@dataclass(frozen=True)
class IssuerKeys:
    """The process-wide issuer identity, as persisted in the key record."""

    seed: bytes
    master: MasterKeyMaterial
    issuance: IssuanceKeyMaterial
    ik: bytes
    issuer: str
    created_at: str = field(default_factory=now_iso)

    @property
    def isk(self) -> bytes:
        return self.issuance.isk

    def to_json(self) -> Json:
        return {
            "seed": self.seed.hex(),
            "masterKey": self.master.key.hex(),
            "chainCode": self.master.chain_code.hex(),
            "isk": self.issuance.isk.hex(),
            "iskChainCode": self.issuance.chain_code.hex(),
            "ik": self.ik.hex(),
            "issuer": self.issuer,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_json(j: Json, *, derivation: Optional["KeyDerivation"] = None) -> "IssuerKeys":
        """Load a persisted key record verbatim.

        Records written before `iskChainCode` was stored get the issuance
        chain code re-derived from the master material.
        """
        if not isinstance(j, dict):
            raise ValueError("key record must be a JSON object")

        master = MasterKeyMaterial(key=bytes.fromhex(str(j["masterKey"])), chain_code=bytes.fromhex(str(j["chainCode"])))
        isk = bytes.fromhex(str(j["isk"]))
        raw_cc = j.get("iskChainCode")
        if raw_cc:
            issuance = IssuanceKeyMaterial(isk=isk, chain_code=bytes.fromhex(str(raw_cc)))
        else:
            derived = (derivation or KeyDerivation()).derive_issuance_key(master)
            issuance = IssuanceKeyMaterial(isk=isk, chain_code=derived.chain_code)

        return IssuerKeys(
            seed=bytes.fromhex(str(j["seed"])),
            master=master,
            issuance=issuance,
            ik=bytes.fromhex(str(j["ik"])),
            issuer=str(j["issuer"]),
            created_at=str(j.get("createdAt") or ""),
        )


def _blake2b_512(person: bytes, data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=64, person=person).digest()


def _check_seed(seed: bytes) -> None:
    if not isinstance(seed, (bytes, bytearray)):
        raise ValidationError("invalid_seed", "seed must be bytes")
    if not SEED_MIN_BYTES <= len(seed) <= SEED_MAX_BYTES:
        raise ValidationError(
            "invalid_seed",
            f"seed length must be between {SEED_MIN_BYTES} and {SEED_MAX_BYTES} bytes",
            {"length": len(seed)},
        )


class KeyDerivation:
    def generate_seed(self, length: int = SEED_MIN_BYTES) -> bytes:
        if isinstance(length, bool) or not isinstance(length, int):
            raise ValidationError("invalid_seed", "seed length must be an int")
        if not SEED_MIN_BYTES <= length <= SEED_MAX_BYTES:
            raise ValidationError(
                "invalid_seed",
                f"seed length must be between {SEED_MIN_BYTES} and {SEED_MAX_BYTES} bytes",
                {"length": length},
            )
        return secrets.token_bytes(length)

    def derive_master(self, seed: bytes) -> MasterKeyMaterial:
        _check_seed(seed)
        i = _blake2b_512(MKG_DOMAIN, bytes(seed))
        return MasterKeyMaterial(key=i[:32], chain_code=i[32:])

    def _ckd_hardened(self, key: bytes, chain_code: bytes, index: int) -> tuple[bytes, bytes]:
        # PRF^expand(c_par, [CKDDomain] || sk_par || I2LEOSP32(i)), hardened only.
        data = chain_code + bytes([CKD_DOMAIN]) + key + struct.pack("<I", index | HARDENED)
        i = _blake2b_512(EXPAND_DOMAIN, data)
        return i[:32], i[32:]

    def derive_issuance_key(self, master: MasterKeyMaterial, account: int = 0) -> IssuanceKeyMaterial:
        if isinstance(account, bool) or not isinstance(account, int) or not 0 <= account < HARDENED:
            raise ValidationError("invalid_account", "account must be an int in [0, 2^31)", {"account": account})

        key, cc = master.key, master.chain_code
        for index in (PURPOSE, COIN_TYPE, account):
            key, cc = self._ckd_hardened(key, cc, index)
        return IssuanceKeyMaterial(isk=key, chain_code=cc)

    def derive_validating_key(self, isk: bytes) -> bytes:
        """ik = x-only encoding of [isk]G on secp256k1 (BIP-340 style)."""
        if len(isk) != 32:
            raise ValidationError("invalid_isk", "isk must be 32 bytes", {"length": len(isk)})
        d = int.from_bytes(isk, "big")
        if not 0 < d < SECP256K1_ORDER:
            raise ValidationError("invalid_isk", "isk is not a valid secp256k1 scalar")
        priv = ec.derive_private_key(d, ec.SECP256K1())
        x = priv.public_key().public_numbers().x
        return x.to_bytes(32, "big")

    def encode_issuer(self, ik: bytes) -> str:
        if len(ik) != 32:
            raise ValidationError("invalid_ik", "ik must be 32 bytes", {"length": len(ik)})
        return bytes(ik).hex()

    def derive_issuer_keys(self, seed: bytes, account: int = 0) -> IssuerKeys:
        master = self.derive_master(seed)
        issuance = self.derive_issuance_key(master, account)
        ik = self.derive_validating_key(issuance.isk)
        return IssuerKeys(
            seed=bytes(seed),
            master=master,
            issuance=issuance,
            ik=ik,
            issuer=self.encode_issuer(ik),
        )

    def generate_issuer_keys(self, seed_length: int = SEED_MIN_BYTES, account: int = 0) -> IssuerKeys:
        return self.derive_issuer_keys(self.generate_seed(seed_length), account)
