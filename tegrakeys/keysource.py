# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .logger import log
from .util import GenerationError, timestamp

SYMMETRIC_BITS = (128, 256)
RSA_BITS = (2048, 3072)
RSA_PUBLIC_EXPONENT = 65537

KIND_RSA = "RSA-keypair"
KIND_AES256 = "AES-256"
KIND_AES128 = "AES-128"

ORIGIN_LOCAL = "local"
ORIGIN_NETHSM = "nethsm"


@dataclass(frozen=True)
class KeyMaterial:
    """One generated key, as handed out by a KeySource.

    'data' holds the raw key bytes for symmetric keys and the PEM encoded
    private key (which embeds the public key) for RSA key pairs.
    """

    id: str
    role: str
    kind: str
    bits: int
    data: bytes = field(repr=False)
    origin: str
    generated_at: str = field(default_factory=timestamp)

    @property
    def is_symmetric(self) -> bool:
        return self.kind != KIND_RSA

    def private_key(self) -> rsa.RSAPrivateKey:
        if self.is_symmetric:
            raise TypeError(f"{self.role} is a symmetric key")
        return serialization.load_pem_private_key(
            self.data, password=None, backend=default_backend()
        )


class KeyInventory:
    """Role -> HSM key ID record, kept in generation order"""

    def __init__(self, source: str):
        self.source = source
        self.created_at = timestamp()
        self.entries = []

    def add(self, key: KeyMaterial):
        self.entries.append((key.role, key.id, key.generated_at))

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


def symmetric_kind(bits: int) -> str:
    return KIND_AES256 if bits == 256 else KIND_AES128


def check_symmetric_bits(bits: int, role: str):
    if bits not in SYMMETRIC_BITS:
        raise GenerationError(
            f"Unsupported symmetric key size {bits}, "
            f"only {' and '.join(map(str, SYMMETRIC_BITS))} bits are supported.",
            role=role,
        )


def check_rsa_bits(bits: int, role: str):
    if bits not in RSA_BITS:
        raise GenerationError(
            f"Unsupported RSA key size {bits}, "
            f"only {' and '.join(map(str, RSA_BITS))} bits are supported.",
            role=role,
        )


class KeySource(ABC):
    """Where key material comes from.

    The provisioning workflow only talks to this interface, so it behaves the
    same whether keys come from the local CSPRNG or from an HSM appliance.
    """

    origin: str = ""

    def open(self):
        """Prepare the source for a run (e.g. authenticate). Optional."""

    def close(self):
        """Release resources held by the source. Optional."""

    @abstractmethod
    def generate_symmetric(self, bits: int, role: str) -> KeyMaterial:
        pass

    @abstractmethod
    def generate_asymmetric(self, bits: int, role: str) -> KeyMaterial:
        pass

    def describe(self) -> str:
        return self.origin

    def new_inventory(self) -> KeyInventory | None:
        """Record of generated key IDs, for sources that keep the keys"""
        return None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self.close()


class LocalKeySource(KeySource):
    origin = ORIGIN_LOCAL

    def __init__(self):
        self._counter = 0

    def _next_id(self, role: str) -> str:
        self._counter += 1
        return f"local-{role.lower()}-{self._counter}"

    def generate_symmetric(self, bits: int, role: str) -> KeyMaterial:
        check_symmetric_bits(bits, role)
        try:
            key = os.urandom(bits // 8)
        except NotImplementedError as e:
            raise GenerationError(f"No system random source available: {e}", role=role)
        if len(key) != bits // 8:
            raise GenerationError(
                f"Random source returned {len(key)} bytes, {bits // 8} expected.",
                role=role,
            )
        log.print(f"Generated {bits}-bit {role} key")
        return KeyMaterial(
            id=self._next_id(role),
            role=role,
            kind=symmetric_kind(bits),
            bits=bits,
            data=key,
            origin=self.origin,
        )

    def generate_asymmetric(self, bits: int, role: str) -> KeyMaterial:
        check_rsa_bits(bits, role)
        try:
            private_key = rsa.generate_private_key(
                public_exponent=RSA_PUBLIC_EXPONENT,
                key_size=bits,
                backend=default_backend(),
            )
            pem = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            )
        except (ValueError, TypeError) as e:
            raise GenerationError(f"RSA key generation failed: {e}", role=role)
        log.print(f"Generated RSA {bits} key pair for {role}")
        return KeyMaterial(
            id=self._next_id(role),
            role=role,
            kind=KIND_RSA,
            bits=bits,
            data=pem,
            origin=self.origin,
        )
