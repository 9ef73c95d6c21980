from __future__ import annotations

import base64

import pytest

from taxrouter.core.config import DEFAULT_DEV_SECRET_BOX_KEY, Settings
from taxrouter.core.errors import ConfigError, MalformedCiphertext
from taxrouter.services.crypto.secret_box import (
    MASKED_SSN,
    NONCE_SIZE,
    SealKind,
    SecretBox,
    last_four_matches,
    load_secret_box,
    mask_ssn,
    mask_stored_ssn,
)
from taxrouter.services.crypto.utils import b64decode_str, b64encode_bytes


KEY = bytes(range(32))


def _box() -> SecretBox:
    return SecretBox(KEY)


def test_seal_open_roundtrip_with_fresh_nonce() -> None:
    box = _box()
    first = box.seal("p@ss:word/with?reserved")
    second = box.seal("p@ss:word/with?reserved")

    assert first.startswith("ENC_PWD:")
    assert first != second
    assert box.open(first) == "p@ss:word/with?reserved"
    assert box.open(second) == "p@ss:word/with?reserved"


def test_ssn_kind_uses_its_own_prefix() -> None:
    box = _box()
    sealed = box.seal("123-45-6789", SealKind.SSN)

    assert sealed.startswith("ENC_SSN:")
    assert box.open(sealed, SealKind.SSN) == "123-45-6789"
    with pytest.raises(MalformedCiphertext):
        box.open(sealed, SealKind.PASSWORD)


def test_wrong_key_fails_authentication() -> None:
    sealed = _box().seal("secret")
    other = SecretBox(bytes(32))

    with pytest.raises(MalformedCiphertext):
        other.open(sealed)


def test_tampered_ciphertext_is_rejected() -> None:
    box = _box()
    sealed = box.seal("secret")
    payload = bytearray(b64decode_str(sealed[len("ENC_PWD:"):]))
    payload[-1] ^= 0x01
    tampered = "ENC_PWD:" + b64encode_bytes(bytes(payload))

    with pytest.raises(MalformedCiphertext):
        box.open(tampered)


@pytest.mark.parametrize(
    "value",
    [
        "plaintext",
        "ENC_PWD:!!!not-base64!!!",
        "ENC_PWD:" + base64.b64encode(b"\x00" * (NONCE_SIZE + 4)).decode("ascii"),
        "ENC_PWD:",
    ],
)
def test_malformed_values_are_rejected(value: str) -> None:
    with pytest.raises(MalformedCiphertext):
        _box().open(value)


def test_open_if_sealed_passes_plaintext_through() -> None:
    box = _box()
    assert box.open_if_sealed("legacy-password") == "legacy-password"
    assert box.open_if_sealed(box.seal("new-password")) == "new-password"


def test_key_length_is_enforced_and_repr_is_redacted() -> None:
    with pytest.raises(ConfigError):
        SecretBox(b"short")
    assert "redacted" in repr(_box())


def test_default_key_refused_in_production() -> None:
    with pytest.raises(ConfigError):
        load_secret_box(Settings(environment="production", ssn_encryption_key=None))
    with pytest.raises(ConfigError):
        load_secret_box(Settings(environment="production", ssn_encryption_key=DEFAULT_DEV_SECRET_BOX_KEY))


def test_default_key_allowed_outside_production() -> None:
    box = load_secret_box(Settings(environment="development", ssn_encryption_key=None))
    assert box.open(box.seal("x")) == "x"


def test_configured_key_must_decode_to_32_bytes() -> None:
    good = base64.b64encode(KEY).decode("ascii")
    box = load_secret_box(Settings(environment="production", ssn_encryption_key=good))
    assert box.open(_box().seal("shared")) == "shared"

    with pytest.raises(ConfigError):
        load_secret_box(Settings(environment="production", ssn_encryption_key=base64.b64encode(b"x" * 16).decode()))


@pytest.mark.parametrize(
    "value, expected",
    [
        ("123-45-6789", "***-**-6789"),
        ("123456789", "***-**-6789"),
        ("12345", MASKED_SSN),
        ("", MASKED_SSN),
        (None, MASKED_SSN),
    ],
)
def test_mask_ssn(value: str | None, expected: str) -> None:
    assert mask_ssn(value) == expected


def test_mask_stored_ssn_opens_sealed_values() -> None:
    box = _box()
    assert mask_stored_ssn(box, box.seal("987-65-4321", SealKind.SSN)) == "***-**-4321"
    assert mask_stored_ssn(box, "987654321") == "***-**-4321"
    assert mask_stored_ssn(box, None) is None
    assert mask_stored_ssn(box, "ENC_SSN:garbage") == MASKED_SSN


def test_last_four_matching() -> None:
    assert last_four_matches("123-45-6789", "6789")
    assert not last_four_matches("123-45-6789", "6780")
    assert not last_four_matches("123-45-6789", "789")
    # A stored value that is not nine digits never matches.
    assert not last_four_matches("6789", "6789")
