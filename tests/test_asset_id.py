from __future__ import annotations

import pytest

from zsa.crypto.asset_id import (
    ASSET_ID_HEX_LEN,
    compute_asset_base,
    compute_asset_digest,
    compute_asset_id,
    desc_hash,
    deserialize_description,
    is_asset_id,
    is_issuer,
    serialize_description,
)
from zsa.errors import ValidationError

ISSUER = "ab" * 32


def test_serialize_joins_with_delimiter() -> None:
    assert serialize_description("PepeCoin", "PEPE", "a frog") == "PepeCoin|PEPE|a frog"
    assert serialize_description("PepeCoin", "PEPE") == "PepeCoin|PEPE|"


def test_description_keeps_later_delimiters() -> None:
    s = serialize_description("Gold", "GLD", "backed | audited | vaulted")
    assert deserialize_description(s) == ("Gold", "GLD", "backed | audited | vaulted")


def test_deserialize_pads_missing_parts() -> None:
    assert deserialize_description("OnlyName") == ("OnlyName", "", "")


@pytest.mark.parametrize(
    "name,symbol,code",
    [("Pe|pe", "PEPE", "invalid_name"), ("Pepe", "PE|PE", "invalid_symbol")],
)
def test_delimiter_rejected_in_name_and_symbol(name: str, symbol: str, code: str) -> None:
    with pytest.raises(ValidationError) as ei:
        serialize_description(name, symbol, "")
    assert ei.value.code == code


def test_asset_id_shape() -> None:
    asset_id, h = compute_asset_id(ISSUER, "PepeCoin|PEPE|")
    assert len(asset_id) == ASSET_ID_HEX_LEN
    assert asset_id.startswith("00")
    assert asset_id[2:66] == ISSUER
    assert asset_id[66:] == h.hex()
    assert h == desc_hash("PepeCoin|PEPE|")
    assert is_asset_id(asset_id)


def test_asset_id_is_deterministic() -> None:
    assert compute_asset_id(ISSUER, "A|AA|") == compute_asset_id(ISSUER, "A|AA|")


def test_asset_id_changes_with_any_input() -> None:
    base, _ = compute_asset_id(ISSUER, "A|AA|x")
    assert compute_asset_id("cd" * 32, "A|AA|x")[0] != base
    assert compute_asset_id(ISSUER, "A|AA|y")[0] != base
    assert compute_asset_id(ISSUER, "B|AA|x")[0] != base


@pytest.mark.parametrize("issuer", ["", "ab" * 31, "AB" * 32, "zz" * 32, "ab" * 33])
def test_asset_id_rejects_bad_issuer(issuer: str) -> None:
    assert not is_issuer(issuer)
    with pytest.raises(ValidationError):
        compute_asset_id(issuer, "A|AA|")


def test_is_asset_id_rejects_wrong_tag_or_length() -> None:
    asset_id, _ = compute_asset_id(ISSUER, "A|AA|")
    assert not is_asset_id("01" + asset_id[2:])
    assert not is_asset_id(asset_id[:-2])
    assert not is_asset_id(None)  # type: ignore[arg-type]


def test_digest_and_base() -> None:
    asset_id, _ = compute_asset_id(ISSUER, "A|AA|")
    digest = compute_asset_digest(asset_id)
    assert len(digest) == 64
    assert digest == compute_asset_digest(asset_id)

    base = compute_asset_base(digest)
    assert len(base) == 64
    assert base == compute_asset_base(digest)
    assert base != compute_asset_base(compute_asset_digest(compute_asset_id(ISSUER, "B|BB|")[0]))


def test_digest_rejects_malformed_asset_id() -> None:
    with pytest.raises(ValidationError):
        compute_asset_digest("00abc")
