# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later

import datetime
import struct
import uuid
from dataclasses import dataclass, field

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

from .keysource import KeyMaterial
from .logger import log
from .util import CollaboratorError, FatalError

CERT_VALIDITY_DAYS = 3650

# UEFI role -> (file stem, certificate common name)
UEFI_ROLES = {
    "UEFI-PK": ("PK", "my Platform Key"),
    "UEFI-KEK": ("KEK", "my Key Exchange Key"),
    "UEFI-DB1": ("db_1", "my Signature Database key"),
    "UEFI-DB2": ("db_2", "my another Signature Database key"),
}

# EFI_CERT_X509_GUID from the UEFI specification
EFI_CERT_X509_GUID = uuid.UUID("a5c059a1-94e4-4aa7-87b5-ab155c2bf072")

# SignatureType GUID, SignatureListSize, SignatureHeaderSize, SignatureSize
EFI_SIGNATURE_LIST_HEADER = "<16sIII"
EFI_SIGNATURE_OWNER_SIZE = 16


@dataclass(frozen=True)
class SignatureListGroup:
    """GUID shared by the signature lists of one key exchange generation"""

    guid: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class CertificateRecord:
    role: str
    subject_cn: str
    not_after: datetime.datetime
    signing_key: KeyMaterial = field(repr=False)
    certificate_pem: bytes = field(repr=False)
    signature_list: bytes = field(repr=False, default=b"")
    self_signed: bool = True

    @property
    def stem(self) -> str:
        return UEFI_ROLES[self.role][0]


def build_signature_list(certificate_der: bytes, owner_guid: str) -> bytes:
    """Wrap one DER certificate into an EFI_SIGNATURE_LIST.

    The list holds a single EFI_SIGNATURE_DATA entry whose owner is
    'owner_guid'. Produces the same layout as efitools' cert-to-efi-sig-list.
    """
    try:
        owner = uuid.UUID(owner_guid)
    except (ValueError, TypeError):
        raise CollaboratorError(f"Invalid signature owner GUID {owner_guid!r}")
    if not certificate_der:
        raise CollaboratorError("Cannot build a signature list without a certificate")
    signature_size = EFI_SIGNATURE_OWNER_SIZE + len(certificate_der)
    list_size = struct.calcsize(EFI_SIGNATURE_LIST_HEADER) + signature_size
    header = struct.pack(
        EFI_SIGNATURE_LIST_HEADER,
        EFI_CERT_X509_GUID.bytes_le,
        list_size,
        0,
        signature_size,
    )
    return header + owner.bytes_le + certificate_der


def parse_signature_list(data: bytes) -> tuple[str, bytes]:
    """Return (owner GUID, DER certificate) of a single entry X.509 list"""
    header_len = struct.calcsize(EFI_SIGNATURE_LIST_HEADER)
    if len(data) < header_len + EFI_SIGNATURE_OWNER_SIZE:
        raise CollaboratorError("Signature list is truncated")
    sig_type, list_size, header_size, sig_size = struct.unpack(
        EFI_SIGNATURE_LIST_HEADER, data[:header_len]
    )
    if uuid.UUID(bytes_le=sig_type) != EFI_CERT_X509_GUID:
        raise CollaboratorError("Signature list does not hold X.509 certificates")
    if list_size != len(data) or sig_size != list_size - header_len - header_size:
        raise CollaboratorError("Signature list sizes are inconsistent")
    start = header_len + header_size
    owner = uuid.UUID(bytes_le=data[start : start + EFI_SIGNATURE_OWNER_SIZE])
    return str(owner), data[start + EFI_SIGNATURE_OWNER_SIZE :]


class NativeSignatureListConverter:
    """Certificate to signature list conversion done in-process"""

    name = "built-in"

    def convert(self, certificate_pem: bytes, guid: str) -> bytes:
        try:
            cert = x509.load_pem_x509_certificate(certificate_pem)
        except ValueError as e:
            raise CollaboratorError(f"Malformed certificate: {e}")
        return build_signature_list(
            cert.public_bytes(serialization.Encoding.DER), guid
        )


def self_signed_certificate(
    key: KeyMaterial, common_name: str, now: datetime.datetime | None = None
) -> x509.Certificate:
    private_key = key.private_key()
    now = now or datetime.datetime.now(datetime.timezone.utc)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=CERT_VALIDITY_DAYS))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )


class CertificateIssuer:
    """Self-signed certificates and signature lists for the UEFI key hierarchy"""

    def __init__(self, converter=None):
        self.converter = converter or NativeSignatureListConverter()

    def issue(
        self, role: str, key: KeyMaterial, group: SignatureListGroup
    ) -> CertificateRecord:
        if role not in UEFI_ROLES:
            raise FatalError(f"Unknown UEFI role {role}", role=role)
        _, common_name = UEFI_ROLES[role]
        try:
            cert = self_signed_certificate(key, common_name)
        except (ValueError, TypeError) as e:
            raise CollaboratorError(f"Certificate creation failed: {e}", role=role)
        cert_pem = cert.public_bytes(serialization.Encoding.PEM)
        try:
            esl = self.converter.convert(cert_pem, group.guid)
        except FatalError as e:
            raise e.at(role=role)
        log.print(f"Issued certificate '{common_name}' and signature list for {role}")
        return CertificateRecord(
            role=role,
            subject_cn=common_name,
            not_after=cert.not_valid_after_utc,
            signing_key=key,
            certificate_pem=cert_pem,
            signature_list=esl,
        )

    def issue_all(
        self, keys: dict[str, KeyMaterial], group: SignatureListGroup
    ) -> list[CertificateRecord]:
        records = []
        for role in UEFI_ROLES:
            if role not in keys:
                raise FatalError("UEFI key was not generated", role=role)
            records.append(self.issue(role, keys[role], group))
        return records
