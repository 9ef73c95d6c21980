"""Authenticated encryption for credentials and identity numbers at rest.

Sealed values are self-describing strings: a category prefix followed by
base64(nonce || ciphertext || tag) under AES-256-GCM with a fresh 96-bit nonce
per seal. Unsealed values are still accepted by callers that opt into
pass-through, so stored plaintext can be migrated without downtime.
"""

from __future__ import annotations

import binascii
from enum import Enum
import logging
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from taxrouter.core.config import DEFAULT_DEV_SECRET_BOX_KEY, Settings
from taxrouter.core.errors import ConfigError, MalformedCiphertext
from taxrouter.services.crypto.utils import b64decode_str, b64encode_bytes, constant_time_equals


logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16

MASKED_SSN = "***-**-****"
_NON_DIGITS = re.compile(r"\D")


class SealKind(str, Enum):
    PASSWORD = "ENC_PWD:"
    SSN = "ENC_SSN:"

    @property
    def prefix(self) -> str:
        return self.value


class SecretBox:
    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise ConfigError(f"secret box key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    def __repr__(self) -> str:
        return "SecretBox(key=<redacted>)"

    def seal(self, plaintext: str, kind: SealKind = SealKind.PASSWORD) -> str:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return kind.prefix + b64encode_bytes(nonce + ciphertext)

    def open(self, sealed: str, kind: SealKind = SealKind.PASSWORD) -> str:
        if not self.is_sealed(sealed, kind):
            raise MalformedCiphertext(f"value is missing the {kind.name.lower()} prefix")
        try:
            payload = b64decode_str(sealed[len(kind.prefix):])
        except (binascii.Error, ValueError) as exc:
            raise MalformedCiphertext("sealed value is not valid base64") from exc
        if len(payload) < NONCE_SIZE + TAG_SIZE:
            raise MalformedCiphertext("sealed value is truncated")
        nonce, ciphertext = payload[:NONCE_SIZE], payload[NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise MalformedCiphertext("sealed value failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedCiphertext("sealed value is not utf-8 text") from exc

    @staticmethod
    def is_sealed(value: str | None, kind: SealKind = SealKind.PASSWORD) -> bool:
        return bool(value) and value.startswith(kind.prefix)

    def open_if_sealed(self, value: str, kind: SealKind = SealKind.PASSWORD) -> str:
        # Plaintext stays readable while stored rows are migrated to sealed form.
        if self.is_sealed(value, kind):
            return self.open(value, kind)
        return value


def load_secret_box(settings: Settings) -> SecretBox:
    configured = settings.ssn_encryption_key
    is_default = not configured or configured.strip() == DEFAULT_DEV_SECRET_BOX_KEY
    if is_default and settings.environment.lower() == "production":
        raise ConfigError("SSN_ENCRYPTION_KEY must be set to a non-default key in production")
    if not configured:
        logger.warning("secret_box_default_key_in_use environment=%s", settings.environment)
        configured = DEFAULT_DEV_SECRET_BOX_KEY
    try:
        key = b64decode_str(configured.strip())
    except (binascii.Error, ValueError) as exc:
        raise ConfigError("SSN_ENCRYPTION_KEY is not valid base64") from exc
    return SecretBox(key)


def digits_only(value: str) -> str:
    return _NON_DIGITS.sub("", value)


def mask_ssn(plaintext: str | None) -> str:
    """Return ***-**-NNNN for a nine-digit number, a fully masked value otherwise."""
    if not plaintext:
        return MASKED_SSN
    digits = digits_only(plaintext)
    if len(digits) != 9:
        return MASKED_SSN
    return f"***-**-{digits[-4:]}"


def last_four_matches(stored_plaintext: str, presented: str) -> bool:
    # Stored values that are not exactly nine digits never match.
    stored_digits = digits_only(stored_plaintext)
    presented_digits = digits_only(presented)
    if len(stored_digits) != 9 or len(presented_digits) != 4:
        return False
    return constant_time_equals(stored_digits[-4:], presented_digits)


def mask_stored_ssn(secret_box: SecretBox, stored: str | None) -> str | None:
    """Mask an identity number as stored, opening it first when it is sealed."""
    if not stored:
        return None
    try:
        plaintext = secret_box.open_if_sealed(stored, SealKind.SSN)
    except MalformedCiphertext:
        logger.error("ssn_unseal_failed_for_masking")
        return MASKED_SSN
    return mask_ssn(plaintext)
