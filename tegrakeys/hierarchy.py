# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later

from collections import namedtuple
from dataclasses import dataclass, field

from .encoding import EncodedKey
from .keysource import KeyInventory, KeyMaterial, KeySource
from .logger import log
from .tools import PublicKeyHash
from .util import FatalError, GenerationError

KeySpec = namedtuple("KeySpec", ["role", "symmetric", "bits", "description"])

# Generation order. It only matters for the inventory record and key IDs.
KEY_PLAN = (
    KeySpec("RSA", False, 3072, "bootloader signing key"),
    KeySpec("SBK", True, 256, "Secure Boot Key"),
    KeySpec("KEK", True, 256, "OEM K1 key encryption key"),
    KeySpec("SYM", True, 256, "EKB symmetric key"),
    KeySpec("SYM2", True, 128, "EKB secondary symmetric key"),
    KeySpec("AUTH", True, 128, "EKB authentication key"),
    KeySpec("UEFI-PK", False, 2048, "UEFI Platform Key"),
    KeySpec("UEFI-KEK", False, 2048, "UEFI Key Exchange Key"),
    KeySpec("UEFI-DB1", False, 2048, "UEFI Signature Database key"),
    KeySpec("UEFI-DB2", False, 2048, "UEFI Signature Database key 2"),
)

SIGNING_KEY_ROLE = "RSA"


@dataclass
class KeyHierarchy:
    keys: dict[str, KeyMaterial] = field(default_factory=dict)
    encoded: dict[str, EncodedKey] = field(default_factory=dict)
    public_key_hash: PublicKeyHash | None = None

    def __getitem__(self, role) -> KeyMaterial:
        return self.keys[role]


class KeyHierarchyBuilder:
    def __init__(self, source: KeySource, hash_tool, plan=KEY_PLAN):
        self.source = source
        self.hash_tool = hash_tool
        self.plan = plan

    def _materialize(self, entry: KeySpec) -> KeyMaterial:
        log.print(f"Generating {entry.description} ({entry.role})...")
        try:
            if entry.symmetric:
                key = self.source.generate_symmetric(entry.bits, entry.role)
            else:
                key = self.source.generate_asymmetric(entry.bits, entry.role)
        except FatalError as e:
            raise e.at(role=entry.role)
        if entry.symmetric and len(key.data) != entry.bits // 8:
            raise GenerationError(
                f"Key source returned {len(key.data)} bytes, "
                f"{entry.bits // 8} expected",
                role=entry.role,
            )
        return key

    def build(self, inventory: KeyInventory | None = None) -> KeyHierarchy:
        hierarchy = KeyHierarchy()
        seen = set()
        for entry in self.plan:
            key = self._materialize(entry)
            if key.data in seen:
                raise GenerationError(
                    "Key source returned the same key twice", role=entry.role
                )
            seen.add(key.data)
            hierarchy.keys[entry.role] = key
            if inventory is not None:
                inventory.add(key)
            if entry.symmetric:
                try:
                    hierarchy.encoded[entry.role] = EncodedKey(key.data)
                except FatalError as e:
                    raise e.at(role=entry.role)

        log.print("Computing public key hash of the signing key...")
        try:
            hierarchy.public_key_hash = self.hash_tool.public_key_hash(
                hierarchy.keys[SIGNING_KEY_ROLE].data
            )
        except FatalError as e:
            raise e.at(role=SIGNING_KEY_ROLE)
        return hierarchy
