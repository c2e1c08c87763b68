"""Field-level authenticated encryption for persisted message text.

Envelopes are ``<nonce-hex>:<tag-hex>:<ciphertext-hex>`` (AES-256-GCM). Values
that are not shaped like an envelope are rows written before encryption was
introduced and are returned unchanged by :meth:`FieldCodec.open`.
"""

import base64
import binascii
import logging
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from palaver.errors import PalaverError

logger = logging.getLogger(__name__)

KEY_ENV_VAR = "PALAVER_ENCRYPTION_KEY"
KEY_LENGTH = 32
NONCE_LENGTH = 16
TAG_LENGTH = 16

_HEX = re.compile(r"^[0-9a-fA-F]*$")


class EncryptionKeyError(PalaverError):
    pass


class DecryptionError(PalaverError):
    pass


def generate_key() -> str:
    return base64.b64encode(os.urandom(KEY_LENGTH)).decode("ascii")


def decode_key(value: str | bytes | None) -> bytes:
    if value is None or value == "" or value == b"":
        raise EncryptionKeyError(
            f"{KEY_ENV_VAR} is not set. Generate one with: palaver keygen"
        )
    if isinstance(value, bytes) and len(value) == KEY_LENGTH:
        return value
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncryptionKeyError(f"{KEY_ENV_VAR} must be base64 encoded") from e
    if len(raw) != KEY_LENGTH:
        raise EncryptionKeyError(
            f"{KEY_ENV_VAR} must decode to {KEY_LENGTH} bytes, got {len(raw)}"
        )
    return raw


def is_envelope(value: str) -> bool:
    parts = value.split(":")
    if len(parts) != 3:
        return False
    nonce, tag, ciphertext = parts
    if not all(_HEX.match(part) for part in parts):
        return False
    if len(ciphertext) % 2:
        return False
    return len(nonce) == NONCE_LENGTH * 2 and len(tag) == TAG_LENGTH * 2


class FieldCodec:
    def __init__(self, key: str | bytes | None = None):
        self._key = key
        self._aead: AESGCM | None = None

    @classmethod
    def from_env(cls) -> "FieldCodec":
        return cls(os.environ.get(KEY_ENV_VAR))

    def _cipher(self) -> AESGCM:
        # Key problems surface on first use so legacy plaintext stays readable.
        if self._aead is None:
            self._aead = AESGCM(decode_key(self._key))
        return self._aead

    def validate(self) -> None:
        self._cipher()

    def seal(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._cipher().encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def open(self, value: str) -> str:
        if not value or not is_envelope(value):
            return value

        nonce_hex, tag_hex, ciphertext_hex = value.split(":")
        nonce = bytes.fromhex(nonce_hex)
        tag = bytes.fromhex(tag_hex)
        ciphertext = bytes.fromhex(ciphertext_hex)
        try:
            plaintext = self._cipher().decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            logger.error("Envelope failed authentication")
            raise DecryptionError("Failed to decrypt data: authentication failed") from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Failed to decrypt data: not valid UTF-8") from e

    def seal_optional(self, plaintext: str | None) -> str | None:
        return None if plaintext is None else self.seal(plaintext)

    def open_optional(self, value: str | None) -> str | None:
        return None if value is None else self.open(value)
