from __future__ import annotations

import os
import struct
from dataclasses import dataclass, field
from typing import Optional

from argon2.low_level import Type as _ArgonType, hash_secret_raw as _argon_hash
from Cryptodome.Cipher import ChaCha20_Poly1305

from .constants import (
    ARGON_TIME_COST,
    ARGON_MEMORY_COST_KIB,
    ARGON_PARALLELISM,
    ARGON_MAX_TIME_COST,
    ARGON_MAX_MEMORY_COST_KIB,
    ARGON_MAX_PARALLELISM,
    ENCRYPTION_VERSION,
    KDF_ARGON2ID,
)
from .errors import ArchiveFormatError


# 24-byte nonce selects XChaCha20-Poly1305 in PyCryptodomex
NONCE_SIZE = 24
TAG_SIZE = 16
KEY_SIZE = 32
SALT_SIZE = 16

# version u8, kdf_id u8, time_cost u32, memory_cost_kib u32, parallelism u8, salt[16]
_PARAMS_STRUCT = struct.Struct("<BBIIB16s")


@dataclass(frozen=True)
class KdfParams:
    time_cost: int = ARGON_TIME_COST
    memory_cost_kib: int = ARGON_MEMORY_COST_KIB
    parallelism: int = ARGON_PARALLELISM

    def validate(self) -> None:
        if not 1 <= self.time_cost <= ARGON_MAX_TIME_COST:
            raise ValueError(f"Argon2 time cost out of range: {self.time_cost}")
        if not 1 <= self.parallelism <= ARGON_MAX_PARALLELISM:
            raise ValueError(f"Argon2 parallelism out of range: {self.parallelism}")
        # Argon2 requires at least 8 KiB per lane
        if not 8 * self.parallelism <= self.memory_cost_kib <= ARGON_MAX_MEMORY_COST_KIB:
            raise ValueError(f"Argon2 memory cost out of range: {self.memory_cost_kib} KiB")


@dataclass
class EncryptionParams:
    salt: bytes
    kdf: KdfParams = field(default_factory=KdfParams)

    def pack(self) -> bytes:
        return _PARAMS_STRUCT.pack(
            ENCRYPTION_VERSION,
            KDF_ARGON2ID,
            self.kdf.time_cost,
            self.kdf.memory_cost_kib,
            self.kdf.parallelism,
            self.salt,
        )

    @classmethod
    def unpack(cls, raw: bytes) -> "EncryptionParams":
        if len(raw) < _PARAMS_STRUCT.size:
            raise ArchiveFormatError("Encryption parameters field too short")
        version, kdf_id, time_cost, memory_cost_kib, parallelism, salt = _PARAMS_STRUCT.unpack(
            raw[: _PARAMS_STRUCT.size]
        )
        if version != ENCRYPTION_VERSION:
            raise ArchiveFormatError(f"Unsupported entry encryption version: {version}")
        if kdf_id != KDF_ARGON2ID:
            raise ArchiveFormatError(f"Unsupported KDF for encrypted entry: {kdf_id}")
        kdf = KdfParams(time_cost=time_cost, memory_cost_kib=memory_cost_kib, parallelism=parallelism)
        try:
            kdf.validate()
        except ValueError as e:
            raise ArchiveFormatError(f"Unsupported Argon2 parameters in archive: {e}") from e
        return cls(salt=salt, kdf=kdf)


class EncryptionContext:
    """Per-entry key derived from a password; seals payloads with XChaCha20-Poly1305."""

    def __init__(self, key: bytes, params: EncryptionParams):
        if len(key) != KEY_SIZE:
            raise ValueError("Key must be 32 bytes for XChaCha20-Poly1305")
        self.key = key
        self.params = params

    @classmethod
    def create(cls, password: str, kdf: Optional[KdfParams] = None) -> "EncryptionContext":
        kdf = kdf or KdfParams()
        kdf.validate()
        params = EncryptionParams(salt=os.urandom(SALT_SIZE), kdf=kdf)
        return cls(_derive_key(password, params), params)

    @classmethod
    def from_params(cls, password: str, params: EncryptionParams) -> "EncryptionContext":
        return cls(_derive_key(password, params), params)

    def encrypt(self, aad: bytes, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=nonce)
        cipher.update(aad)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        return nonce + ciphertext + tag

    def decrypt(self, aad: bytes, payload: bytes) -> Optional[bytes]:
        """Return the plaintext, or None when the tag does not verify."""
        if len(payload) < NONCE_SIZE + TAG_SIZE:
            raise ArchiveFormatError("Encrypted payload too short")
        nonce = payload[:NONCE_SIZE]
        tag = payload[-TAG_SIZE:]
        ciphertext = payload[NONCE_SIZE:-TAG_SIZE]
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=nonce)
        cipher.update(aad)
        try:
            return cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError:
            return None

    def overhead(self) -> int:
        return NONCE_SIZE + TAG_SIZE

    def export_params(self) -> EncryptionParams:
        return self.params


def _derive_key(password: str, params: EncryptionParams) -> bytes:
    return _argon_hash(
        password.encode("utf-8"),
        params.salt,
        time_cost=params.kdf.time_cost,
        memory_cost=params.kdf.memory_cost_kib,
        parallelism=params.kdf.parallelism,
        hash_len=KEY_SIZE,
        type=_ArgonType.ID,
    )
