# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later

import configparser
import os
import secrets
import time
from typing import IO

import httpx
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from tegrakeys.config import DEFAULT_HSM_TIMEOUT
from tegrakeys.keysource import (
    KIND_RSA,
    ORIGIN_NETHSM,
    KeyInventory,
    KeyMaterial,
    KeySource,
    check_rsa_bits,
    check_symmetric_bits,
    symmetric_kind,
)
from tegrakeys.logger import log
from tegrakeys.util import ExportError, GenerationError, PreconditionError, timestamp

from .exceptions import handle_exceptions

SECTION = "nethsm"
ENV_VARS = {
    "url": "NETHSM_URL",
    "username": "NETHSM_USERNAME",
    "password": "NETHSM_PASSWORD",
}

API_PREFIX = "/api/v1"

KEY_TYPE_RSA = "RSA"
KEY_TYPE_GENERIC = "Generic"

MECHANISMS = {
    KEY_TYPE_RSA: ["RSA_Signature_PKCS1", "RSA_Signature_PSS_SHA256"],
    KEY_TYPE_GENERIC: ["AES_Encryption_CBC", "AES_Decryption_CBC"],
}

FORMAT_PEM = "PEM"
FORMAT_RAW = "RAW"


def read_hsm_config(
    configfile: IO | None = None, environ=None, timeout: float = DEFAULT_HSM_TIMEOUT
) -> dict:
    """Collect the NetHSM connection settings.

    Values from the [nethsm] section of 'configfile' win over the NETHSM_URL,
    NETHSM_USERNAME and NETHSM_PASSWORD environment variables. All three must
    end up non-empty.
    """
    environ = os.environ if environ is None else environ
    settings = {name: environ.get(var, "") for name, var in ENV_VARS.items()}
    settings["timeout"] = timeout

    if configfile is not None:
        config = configparser.ConfigParser()
        try:
            config.read_file(configfile)
        except configparser.Error as e:
            raise PreconditionError(f"Invalid NetHSM config file: {e}", stage="config")
        if not config.has_section(SECTION):
            raise PreconditionError(
                f"NetHSM config file has no [{SECTION}] section.", stage="config"
            )
        for option in ("url", "username", "password"):
            if config.has_option(SECTION, option):
                settings[option] = config.get(SECTION, option)
        if config.has_option(SECTION, "timeout"):
            try:
                settings["timeout"] = config.getfloat(SECTION, "timeout")
            except ValueError:
                raise PreconditionError(
                    f"Invalid NetHSM timeout {config.get(SECTION, 'timeout')!r}",
                    stage="config",
                )

    missing = [
        ENV_VARS[name]
        for name in ("url", "username", "password")
        if not settings[name].strip()
    ]
    if missing:
        raise PreconditionError(
            "NetHSM settings not set. Please set: " + ", ".join(missing),
            stage="config",
        )
    settings["url"] = settings["url"].strip().rstrip("/")
    return settings


def establish_session(
    settings: dict, transport: httpx.BaseTransport | None = None
) -> httpx.Client:
    log.print(f"Connecting to NetHSM appliance at {settings['url']}...")
    session = httpx.Client(
        base_url=settings["url"] + API_PREFIX,
        auth=(settings["username"], settings["password"]),
        timeout=settings.get("timeout", DEFAULT_HSM_TIMEOUT),
        transport=transport,
    )
    try:
        # Listing keys needs a valid login, so it doubles as a credential check
        response = session.get("/keys")
        response.raise_for_status()
    except httpx.HTTPError as e:
        session.close()
        message = handle_exceptions(e, settings["url"])
        raise PreconditionError(
            f"Failed to connect to NetHSM appliance: {message}", stage="session"
        )
    log.print("Session creation successful.")
    return session


def generate_key(session: httpx.Client, key_id: str, key_type: str, bits: int):
    body = {
        "id": key_id,
        "type": key_type,
        "length": bits,
        "mechanisms": MECHANISMS[key_type],
        "exportable": True,
    }
    try:
        response = session.post("/keys/generate", json=body)
        response.raise_for_status()
    except httpx.HTTPError as e:
        message = handle_exceptions(e, f"generate {key_id}")
        raise GenerationError(f"Key generation failed: {message}")
    log.print(f"Generated {key_type} {bits} key {key_id} on the NetHSM.")


def export_key(session: httpx.Client, key_id: str, key_format: str) -> bytes:
    try:
        response = session.get(f"/keys/{key_id}/export", params={"format": key_format})
        response.raise_for_status()
    except httpx.HTTPError as e:
        message = handle_exceptions(e, f"export {key_id}")
        raise ExportError(f"Key export failed: {message}")
    return response.content


def close_connection(session: httpx.Client):
    session.close()
    log.print("Connection closed successfully.")


def make_key_id(role: str) -> str:
    """Role-scoped key ID: role, generation time and a random suffix.

    Several keys are generated within the same second, the suffix keeps their
    IDs apart.
    """
    slug = "".join(c for c in role.lower() if c.isalnum())
    return f"tegra-{slug}-{int(time.time())}-{secrets.token_hex(4)}"


class NetHSMKeySource(KeySource):
    """Keys generated inside a NetHSM appliance and exported over its REST API"""

    origin = ORIGIN_NETHSM

    def __init__(self, settings: dict, transport: httpx.BaseTransport | None = None):
        self.settings = settings
        self.transport = transport
        self.session = None

    @property
    def url(self) -> str:
        return self.settings["url"]

    def describe(self) -> str:
        return f"{self.origin} ({self.url})"

    def new_inventory(self) -> KeyInventory:
        return KeyInventory(self.url)

    def open(self):
        if self.session is None:
            self.session = establish_session(self.settings, self.transport)

    def close(self):
        if self.session is not None:
            close_connection(self.session)
            self.session = None

    def _generate(self, role: str, key_type: str, bits: int):
        if self.session is None:
            raise PreconditionError("NetHSM session is not open.", role=role)
        key_id = make_key_id(role)
        generated_at = timestamp()
        try:
            generate_key(self.session, key_id, key_type, bits)
        except GenerationError as e:
            raise e.at(role=role)
        return key_id, generated_at

    def generate_symmetric(self, bits: int, role: str) -> KeyMaterial:
        check_symmetric_bits(bits, role)
        key_id, generated_at = self._generate(role, KEY_TYPE_GENERIC, bits)
        try:
            key = export_key(self.session, key_id, FORMAT_RAW)
        except ExportError as e:
            raise e.at(role=role)
        if len(key) != bits // 8:
            raise ExportError(
                f"Exported key {key_id} is {len(key)} bytes, {bits // 8} expected.",
                role=role,
            )
        return KeyMaterial(
            id=key_id,
            role=role,
            kind=symmetric_kind(bits),
            bits=bits,
            data=key,
            origin=self.origin,
            generated_at=generated_at,
        )

    def generate_asymmetric(self, bits: int, role: str) -> KeyMaterial:
        check_rsa_bits(bits, role)
        key_id, generated_at = self._generate(role, KEY_TYPE_RSA, bits)
        try:
            pem = export_key(self.session, key_id, FORMAT_PEM)
        except ExportError as e:
            raise e.at(role=role)
        try:
            private_key = serialization.load_pem_private_key(
                pem, password=None, backend=default_backend()
            )
        except (ValueError, TypeError) as e:
            raise ExportError(
                f"Exported key {key_id} is not a PEM private key: {e}", role=role
            )
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ExportError(f"Exported key {key_id} is not an RSA key", role=role)
        if private_key.key_size != bits:
            raise ExportError(
                f"Exported key {key_id} is RSA {private_key.key_size}, "
                f"RSA {bits} expected.",
                role=role,
            )
        return KeyMaterial(
            id=key_id,
            role=role,
            kind=KIND_RSA,
            bits=bits,
            data=pem,
            origin=self.origin,
            generated_at=generated_at,
        )
