# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later

import os
import re
import shutil
import tempfile
from collections import namedtuple

from .certs import CertificateRecord
from .hierarchy import KeyHierarchy, KeyInventory
from .logger import log
from .util import EncodingError, WriteError, atomic_write

FUSE_MAGIC_ID = "0x45535546"  # "FUSE"
FUSE_FORMAT_VERSION = "1.0.0"

BOOT_SECURITY_INFO = "0x209"
SECURITY_MODE = "0x1"

FuseEntry = namedtuple("FuseEntry", ["name", "size", "value"])

UEFI_KEYS_DIR = "uefi_keys"
UEFI_KEYS_CONF = os.path.join(UEFI_KEYS_DIR, "uefi_keys.conf")
EKB_IMAGE = os.path.join("bootloader", "eks_t234.img")
FUSE_XML = "fuse.xml"
INVENTORY_FILE = "nethsm_key_inventory.txt"

# Files whose presence means a previous run left keys behind
EXISTING_OUTPUT_MARKERS = ("rsa.pem", "sbk.key", "kek.key", UEFI_KEYS_DIR)

# role -> {encoding attribute: file name}
SYMMETRIC_KEY_FILES = {
    "SBK": {"word_list": "sbk.key", "prefixed": "sbk_xml.key"},
    "KEK": {"word_list": "kek.key", "prefixed": "kek_xml.key", "bare": "kek_optee.key"},
    "SYM": {"bare": "sym_t234.key"},
    "SYM2": {"bare": "sym2_t234.key"},
    "AUTH": {"bare": "auth_t234.key"},
}

PRIVATE_FILE_MODE = 0o600
PUBLIC_FILE_MODE = 0o644


class FuseDescriptor:
    """Values to burn into the one-time programmable fuses, in burn order"""

    SIZES = (
        ("PublicKeyHash", 64),
        ("SecureBootKey", 32),
        ("OemK1", 32),
        ("BootSecurityInfo", 4),
        ("SecurityMode", 4),
    )

    def __init__(self, public_key_hash: str, secure_boot_key: str, oem_k1: str):
        values = (
            public_key_hash,
            secure_boot_key,
            oem_k1,
            BOOT_SECURITY_INFO,
            SECURITY_MODE,
        )
        self.entries = tuple(
            FuseEntry(name, size, value)
            for (name, size), value in zip(self.SIZES, values)
        )
        for entry in self.entries[:3]:
            self._check_value(entry)

    @staticmethod
    def _check_value(entry: FuseEntry):
        if not entry.value:
            raise EncodingError(f"Fuse {entry.name} has no value")
        if not re.fullmatch(r"0x[0-9a-f]+", entry.value):
            raise EncodingError(f"Fuse {entry.name} value {entry.value!r} is malformed")
        if len(entry.value) - 2 != entry.size * 2:
            raise EncodingError(
                f"Fuse {entry.name} value is {(len(entry.value) - 2) // 2} bytes, "
                f"{entry.size} expected"
            )

    @classmethod
    def from_hierarchy(cls, hierarchy: KeyHierarchy):
        return cls(
            hierarchy.public_key_hash.value,
            hierarchy.encoded["SBK"].prefixed,
            hierarchy.encoded["KEK"].prefixed,
        )

    def render(self) -> str:
        lines = [
            f'<genericfuse MagicId="{FUSE_MAGIC_ID}" version="{FUSE_FORMAT_VERSION}">'
        ]
        for entry in self.entries:
            lines.append(
                f'  <fuse name="{entry.name}" size="{entry.size}" '
                f'value="{entry.value}"/>'
            )
        lines.append("</genericfuse>")
        return "\n".join(lines) + "\n"


def render_uefi_keys_conf(records: list[CertificateRecord]) -> str:
    """Map key/certificate/signature list files onto the UEFI variable slots"""
    stems = {record.role: record.stem for record in records}
    return (
        f'UEFI_DB_1_KEY_FILE="{stems["UEFI-DB1"]}.key";  # UEFI payload signing key\n'
        f'UEFI_DB_1_CERT_FILE="{stems["UEFI-DB1"]}.crt"; '
        "# UEFI payload signing key certificate\n"
        "\n"
        f'UEFI_DEFAULT_PK_ESL="{stems["UEFI-PK"]}.esl"    '
        "# Platform Key EFI Signature List\n"
        f'UEFI_DEFAULT_KEK_ESL_0="{stems["UEFI-KEK"]}.esl" '
        "# Key Exchange Key EFI Signature List\n"
        "\n"
        f'UEFI_DEFAULT_DB_ESL_0="{stems["UEFI-DB1"]}.esl" '
        "# Signature Database Key 1 EFI Signature List\n"
        f'UEFI_DEFAULT_DB_ESL_1="{stems["UEFI-DB2"]}.esl" '
        "# Signature Database Key 2 EFI Signature List\n"
    )


def render_inventory(inventory: KeyInventory) -> str:
    lines = [
        "NetHSM Key Inventory for Tegra Security Keys",
        f"Generated on: {inventory.created_at}",
        f"NetHSM URL: {inventory.source}",
        "-" * 40,
    ]
    for role, key_id, generated_at in inventory:
        label = role.replace("-", " ")
        lines.append(f"{label} Key ID: {key_id} (generated {generated_at})")
    return "\n".join(lines) + "\n"


def existing_outputs(output_dir: str) -> list[str]:
    return [
        name
        for name in EXISTING_OUTPUT_MARKERS
        if os.path.exists(os.path.join(output_dir, name))
    ]


class ArtifactWriter:
    """Writes every artifact of a run into a staging directory first.

    Only promote() touches the output directory, after all keys, certificates
    and external artifacts exist. A run that aborts earlier leaves the output
    directory as it was.
    """

    def __init__(self, output_dir: str):
        self.output_dir = output_dir
        self.staging_dir = None
        self.written = []

    def open(self):
        try:
            os.makedirs(self.output_dir, exist_ok=True)
            # inside the output directory so promotion is a same-filesystem rename
            self.staging_dir = tempfile.mkdtemp(
                prefix=".tegrakeys-", dir=self.output_dir
            )
        except OSError as e:
            raise WriteError(f"Cannot create staging directory: {e}")
        return self.staging_dir

    def discard(self):
        if self.staging_dir is not None:
            shutil.rmtree(self.staging_dir, ignore_errors=True)
            self.staging_dir = None

    def staged_path(self, name: str) -> str:
        return os.path.join(self.staging_dir, name)

    def write(self, name: str, data: bytes | str, mode: int = PRIVATE_FILE_MODE):
        path = self.staged_path(name)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
        except OSError as e:
            raise WriteError(f"Cannot create directory for {name}: {e}")
        atomic_write(path, data, mode)
        self.written.append(name)

    def write_keys(self, hierarchy: KeyHierarchy):
        self.write("rsa.pem", hierarchy["RSA"].data)
        pubkey_hash = hierarchy.public_key_hash
        self.write("rsa.pubkey", pubkey_hash.public_key, PUBLIC_FILE_MODE)
        self.write("rsa.hash", pubkey_hash.hash_file, PUBLIC_FILE_MODE)
        for role, files in SYMMETRIC_KEY_FILES.items():
            encoded = hierarchy.encoded[role]
            for attribute, name in files.items():
                self.write(name, getattr(encoded, attribute) + "\n")

    def write_uefi(self, records: list[CertificateRecord]):
        for record in records:
            stem = os.path.join(UEFI_KEYS_DIR, record.stem)
            self.write(stem + ".key", record.signing_key.data)
            self.write(stem + ".crt", record.certificate_pem, PUBLIC_FILE_MODE)
            self.write(stem + ".esl", record.signature_list, PUBLIC_FILE_MODE)
        self.write(UEFI_KEYS_CONF, render_uefi_keys_conf(records), PUBLIC_FILE_MODE)

    def write_fuse_descriptor(self, descriptor: FuseDescriptor):
        self.write(FUSE_XML, descriptor.render())

    def write_inventory(self, inventory: KeyInventory):
        self.write(INVENTORY_FILE, render_inventory(inventory), PUBLIC_FILE_MODE)

    def promote(self) -> list[str]:
        """Move everything staged (including files the external tools created)
        into the output directory. Each file is replaced atomically."""
        staged = []
        for root, _, files in os.walk(self.staging_dir):
            rel_root = os.path.relpath(root, self.staging_dir)
            for name in sorted(files):
                staged.append(os.path.normpath(os.path.join(rel_root, name)))
        # tool outputs first, then our own files in the order they were written
        written = [os.path.normpath(name) for name in self.written]
        order = [name for name in staged if name not in written] + written

        promoted = []
        for rel_path in order:
            target = os.path.join(self.output_dir, rel_path)
            try:
                os.makedirs(os.path.dirname(target), exist_ok=True)
                os.replace(self.staged_path(rel_path), target)
            except OSError as e:
                raise WriteError(f"Cannot move {rel_path} into place: {e}")
            promoted.append(rel_path)
        self.discard()
        log.print(f"Wrote {len(promoted)} files to {self.output_dir}")
        return promoted
