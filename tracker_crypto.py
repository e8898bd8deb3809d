"""Password based encryption for everything the tracker sends over the network.

Keys are derived with Argon2id and data is sealed with AES-256-GCM. The KDF
parameters are fixed: changing them makes previously encrypted data
undecryptable.
"""

from __future__ import annotations

import base64
import json
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

T = TypeVar("T")

CIPHER = "AES-256-GCM"
KDF = "Argon2id"
KDF_PARAMS: Dict[str, int] = {
    "time_cost": 2,
    "memory_cost": 19456,
    "parallelism": 2,
    "hash_len": 32,
}
SALT_LENGTH = 16
NONCE_LENGTH = 12
ENVELOPE_VERSION = 1


class CryptoError(Exception):
    """Raised when encryption or decryption fails."""


class DecryptionError(CryptoError):
    """Wrong password, or the ciphertext/metadata was tampered with."""


class PayloadDecodeError(CryptoError):
    """Decryption worked but the plaintext is not the expected payload."""


class EnvelopeFormatError(CryptoError):
    """The envelope itself is malformed (missing fields, bad base64)."""


def derive_key(password: str, salt: bytes) -> bytes:
    """Derive the 32-byte AES key for ``password`` and ``salt``."""
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=KDF_PARAMS["time_cost"],
        memory_cost=KDF_PARAMS["memory_cost"],
        parallelism=KDF_PARAMS["parallelism"],
        hash_len=KDF_PARAMS["hash_len"],
        type=Type.ID,
    )


def encrypt(
    plaintext: bytes,
    password: str,
    *,
    associated_data: Optional[bytes] = None,
) -> Tuple[bytes, bytes, bytes]:
    """Encrypt ``plaintext``; returns ``(ciphertext, salt, nonce)``.

    A fresh salt and nonce are drawn for every call.
    """
    salt = os.urandom(SALT_LENGTH)
    nonce = os.urandom(NONCE_LENGTH)
    key = derive_key(password, salt)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, associated_data)
    return ciphertext, salt, nonce


def decrypt(
    ciphertext: bytes,
    password: str,
    salt: bytes,
    nonce: bytes,
    *,
    associated_data: Optional[bytes] = None,
) -> bytes:
    if len(nonce) != NONCE_LENGTH:
        raise EnvelopeFormatError(f"Invalid nonce length: {len(nonce)}")
    key = derive_key(password, salt)
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, associated_data)
    except InvalidTag as exc:
        raise DecryptionError("Unable to decrypt: invalid password or corrupted data") from exc


@dataclass(frozen=True)
class PayloadCodec(Generic[T]):
    """Names a payload type and converts it to and from bytes."""

    name: str
    encode: Callable[[T], bytes]
    decode: Callable[[bytes], T]


def json_codec(name: str) -> "PayloadCodec[Any]":
    """Codec for any JSON serializable value, encoded compactly."""
    return PayloadCodec(
        name=name,
        encode=lambda value: json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8"),
        decode=lambda data: json.loads(data.decode("utf-8")),
    )


@dataclass(frozen=True)
class Encrypted(Generic[T]):
    """An encrypted value of type ``T`` together with its salt and nonce.

    The payload type name is authenticated as associated data, so an
    envelope produced for one payload type cannot be passed off as another.
    """

    payload_type: str
    ciphertext: bytes
    salt: bytes
    nonce: bytes

    @classmethod
    def encrypt_typed(cls, value: T, password: str, codec: PayloadCodec[T]) -> "Encrypted[T]":
        plaintext = codec.encode(value)
        ciphertext, salt, nonce = encrypt(
            plaintext, password, associated_data=_build_aad(codec.name)
        )
        return cls(payload_type=codec.name, ciphertext=ciphertext, salt=salt, nonce=nonce)

    def decrypt_typed(self, password: str, codec: PayloadCodec[T]) -> T:
        if self.payload_type != codec.name:
            raise PayloadDecodeError(
                f"Envelope holds {self.payload_type!r}, expected {codec.name!r}"
            )
        plaintext = decrypt(
            self.ciphertext,
            password,
            self.salt,
            self.nonce,
            associated_data=_build_aad(self.payload_type),
        )
        try:
            return codec.decode(plaintext)
        except (ValueError, TypeError, KeyError, UnicodeDecodeError) as exc:
            raise PayloadDecodeError(f"Decrypted payload is not a valid {codec.name}: {exc}") from exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": ENVELOPE_VERSION,
            "cipher": CIPHER,
            "kdf": KDF,
            "payload": self.payload_type,
            "salt_b64": _b64encode(self.salt),
            "nonce_b64": _b64encode(self.nonce),
            "ciphertext": _b64encode(self.ciphertext),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Encrypted[Any]":
        if not isinstance(data, dict):
            raise EnvelopeFormatError("Encrypted envelope must be a JSON object")
        if data.get("version") != ENVELOPE_VERSION:
            raise EnvelopeFormatError("Unsupported envelope version")
        if data.get("cipher") != CIPHER:
            raise EnvelopeFormatError("Unsupported cipher")
        if data.get("kdf") != KDF:
            raise EnvelopeFormatError("Unsupported KDF")

        payload_type = data.get("payload")
        if not isinstance(payload_type, str):
            raise EnvelopeFormatError("Encrypted envelope missing payload type")

        try:
            salt = _b64decode(data["salt_b64"])
            nonce = _b64decode(data["nonce_b64"])
            ciphertext = _b64decode(data["ciphertext"])
        except KeyError as exc:
            raise EnvelopeFormatError(f"Encrypted envelope missing field: {exc}") from exc
        except ValueError as exc:
            raise EnvelopeFormatError(f"Encrypted envelope contains invalid base64 data: {exc}") from exc
        return cls(payload_type=payload_type, ciphertext=ciphertext, salt=salt, nonce=nonce)


def _build_aad(payload_type: str) -> bytes:
    payload = {
        "version": ENVELOPE_VERSION,
        "cipher": CIPHER,
        "kdf": KDF,
        "payload": payload_type,
    }
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True).encode("utf-8")


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(value: Any) -> bytes:
    if not isinstance(value, str):
        raise ValueError("expected a base64 string")
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as exc:
        raise ValueError("invalid base64") from exc


__all__ = [
    "CryptoError",
    "DecryptionError",
    "Encrypted",
    "EnvelopeFormatError",
    "KDF_PARAMS",
    "PayloadCodec",
    "PayloadDecodeError",
    "decrypt",
    "derive_key",
    "encrypt",
    "json_codec",
]
