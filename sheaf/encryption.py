from __future__ import annotations

import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

from argon2.low_level import Type as ArgonType, hash_secret_raw
from Cryptodome.Cipher import ChaCha20_Poly1305

from .errors import AuthenticationError


NONCE_SIZE = 24  # XChaCha20-Poly1305
TAG_SIZE = 16
KEY_SIZE = 32
SALT_SIZE = 16

# Argon2id defaults for new archives
ARGON_TIME_COST = 3
ARGON_MEMORY_COST_KIB = 256 * 1024  # 256 MiB
ARGON_PARALLELISM = 4

# Upper bounds accepted when reading parameters back from an archive
MAX_ARGON_TIME_COST = 64
MAX_ARGON_MEMORY_COST_KIB = 4 * 1024 * 1024  # 4 GiB
MAX_ARGON_PARALLELISM = 64


@dataclass
class EncryptionParams:
    salt: bytes
    time_cost: int = ARGON_TIME_COST
    memory_cost_kib: int = ARGON_MEMORY_COST_KIB
    parallelism: int = ARGON_PARALLELISM

    def validate(self) -> None:
        if len(self.salt) != SALT_SIZE:
            raise ValueError("KDF salt must be 16 bytes")
        if not 1 <= self.time_cost <= MAX_ARGON_TIME_COST:
            raise ValueError(f"Unsupported Argon2 time cost: {self.time_cost}")
        if not 1 <= self.parallelism <= MAX_ARGON_PARALLELISM:
            raise ValueError(f"Unsupported Argon2 parallelism: {self.parallelism}")
        if not 8 * self.parallelism <= self.memory_cost_kib <= MAX_ARGON_MEMORY_COST_KIB:
            raise ValueError(f"Unsupported Argon2 memory cost: {self.memory_cost_kib} KiB")


def _derive_key(password: str, params: EncryptionParams) -> bytes:
    return hash_secret_raw(
        password.encode("utf-8"),
        params.salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost_kib,
        parallelism=params.parallelism,
        hash_len=KEY_SIZE,
        type=ArgonType.ID,
    )


class EncryptionContext:
    """Record payload AEAD keyed from a password via Argon2id."""

    def __init__(self, key: bytes, params: EncryptionParams):
        if len(key) != KEY_SIZE:
            raise ValueError("Key must be 32 bytes")
        self.key = key
        self.params = params

    @classmethod
    def create(cls, password: str, params: Optional[EncryptionParams] = None) -> "EncryptionContext":
        """Fresh context for a new archive; a random salt is drawn when ``params`` is None."""
        if params is None:
            params = EncryptionParams(salt=os.urandom(SALT_SIZE))
        params.validate()
        return cls(_derive_key(password, params), params)

    @classmethod
    def from_params(cls, password: str, params: EncryptionParams) -> "EncryptionContext":
        params.validate()
        return cls(_derive_key(password, params), params)

    def _derive_nonce(self, nonce_material: bytes) -> bytes:
        return hmac.new(self.key, b"SHEAF_REC_NONCE" + nonce_material, hashlib.sha512).digest()[:NONCE_SIZE]

    def encrypt(self, aad: bytes, plaintext: bytes, *, nonce_material: bytes) -> bytes:
        nonce = self._derive_nonce(nonce_material)
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=nonce)
        cipher.update(aad)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        return nonce + ciphertext + tag

    def decrypt(self, aad: bytes, payload: bytes) -> bytes:
        if len(payload) < NONCE_SIZE + TAG_SIZE:
            raise AuthenticationError("Encrypted payload too short")
        nonce = payload[:NONCE_SIZE]
        tag = payload[-TAG_SIZE:]
        ciphertext = payload[NONCE_SIZE:-TAG_SIZE]
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=nonce)
        cipher.update(aad)
        try:
            return cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError as exc:
            raise AuthenticationError("Record authentication failed (wrong password or corrupted archive)") from exc

    def overhead(self) -> int:
        return NONCE_SIZE + TAG_SIZE

    def export_params(self) -> EncryptionParams:
        return self.params
