# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later
"""Wrappers around the external tools of the Linux_for_Tegra tree.

Each wrapper has a fixed input/output contract. A tool that exits with a
non-zero status, cannot be started or prints output we cannot parse raises
CollaboratorError; nothing is retried.
"""

import os
import re
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field

from .logger import log
from .util import CollaboratorError, PreconditionError

PUBLIC_KEY_HASH_BYTES = 64
HEX_VALUE = re.compile(r"0x[0-9a-fA-F]+")


def extract_trailing_token(output: str, marker: str) -> str:
    """Return the last whitespace separated token of the first line of
    'output' containing 'marker'."""
    if not marker:
        raise CollaboratorError("Empty output marker")
    for line in output.splitlines():
        if marker in line:
            tokens = line.split()
            # the marker itself must not be the whole line
            if tokens and not line.rstrip().endswith(marker):
                return tokens[-1]
            raise CollaboratorError(f"Line with '{marker}' carries no value: {line!r}")
    raise CollaboratorError(f"Tool output contains no line with '{marker}'")


def tool_command(path: str, use_sudo: bool = False) -> list[str]:
    """Python scripts run with the current interpreter, anything else directly"""
    if os.path.sep in path:
        path = os.path.abspath(path)
    if path.endswith(".py"):
        cmd = [sys.executable, path]
    else:
        cmd = [path]
    return (["sudo"] if use_sudo else []) + cmd


def run_tool(
    args: list[str], description: str, cwd: str | None = None
) -> subprocess.CompletedProcess:
    log.print(f"Executing {' '.join(args)}")
    try:
        # tools may print bytes that are not valid UTF-8
        result = subprocess.run(
            args,
            cwd=cwd,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
    except OSError as e:
        raise CollaboratorError(f"Cannot run {description}: {e}")
    if result.returncode != 0:
        details = (result.stderr or result.stdout).strip().splitlines()[-5:]
        raise CollaboratorError(
            f"{description} failed with exit code {result.returncode}"
            + (": " + " / ".join(details) if details else "")
        )
    return result


def check_tool_exists(path: str | None, description: str):
    if path is None:
        return
    if os.path.sep not in path:
        return  # resolved through PATH when executed
    if not os.path.isfile(path):
        raise PreconditionError(
            f"{description} not found at {path}", stage="precondition"
        )


@dataclass(frozen=True)
class PublicKeyHash:
    """tegra-fuse format hash of the RSA signing key plus the tool's files"""

    value: str
    public_key: bytes = field(repr=False)
    hash_file: bytes = field(repr=False)


class TegraSignTool:
    """tegrasign_v3.py --pubkeyhash <public key> <hash> --key <private key>"""

    description = "tegrasign"

    def __init__(self, path: str, marker: str, use_sudo: bool = False):
        self.path = path
        self.marker = marker
        self.use_sudo = use_sudo

    def check(self):
        check_tool_exists(self.path, self.description)

    def public_key_hash(self, private_key_pem: bytes) -> PublicKeyHash:
        with tempfile.TemporaryDirectory(prefix="tegrakeys-sign-") as workdir:
            key_path = os.path.join(workdir, "rsa.pem")
            pubkey_path = os.path.join(workdir, "rsa.pubkey")
            hash_path = os.path.join(workdir, "rsa.hash")
            with open(key_path, "wb") as f:
                f.write(private_key_pem)
            os.chmod(key_path, 0o600)
            result = run_tool(
                tool_command(self.path, self.use_sudo)
                + ["--pubkeyhash", pubkey_path, hash_path, "--key", key_path],
                self.description,
                cwd=workdir,
            )
            value = extract_trailing_token(result.stdout, self.marker)
            if not HEX_VALUE.fullmatch(value):
                raise CollaboratorError(
                    f"{self.description} printed a malformed hash value {value!r}"
                )
            if len(value) - 2 != 2 * PUBLIC_KEY_HASH_BYTES:
                raise CollaboratorError(
                    f"{self.description} printed a {(len(value) - 2) // 2} byte hash, "
                    f"{PUBLIC_KEY_HASH_BYTES} bytes expected"
                )
            try:
                with open(pubkey_path, "rb") as f:
                    public_key = f.read()
                with open(hash_path, "rb") as f:
                    hash_file = f.read()
            except OSError as e:
                raise CollaboratorError(
                    f"{self.description} did not write {e.filename}"
                )
        return PublicKeyHash(
            value=value.lower(), public_key=public_key, hash_file=hash_file
        )


class CertToEslTool:
    """cert-to-efi-sig-list -g <GUID> <certificate> <signature list>"""

    description = "cert-to-efi-sig-list"
    name = "cert-to-efi-sig-list"

    def __init__(self, path: str):
        self.path = path

    def check(self):
        check_tool_exists(self.path, self.description)

    def convert(self, certificate_pem: bytes, guid: str) -> bytes:
        with tempfile.TemporaryDirectory(prefix="tegrakeys-esl-") as workdir:
            crt_path = os.path.join(workdir, "cert.crt")
            esl_path = os.path.join(workdir, "cert.esl")
            with open(crt_path, "wb") as f:
                f.write(certificate_pem)
            run_tool(
                tool_command(self.path) + ["-g", guid, crt_path, esl_path],
                self.description,
                cwd=workdir,
            )
            try:
                with open(esl_path, "rb") as f:
                    esl = f.read()
            except OSError:
                raise CollaboratorError(f"{self.description} did not write {esl_path}")
        if not esl:
            raise CollaboratorError(f"{self.description} wrote an empty signature list")
        return esl


class UefiDtsGenerator:
    """gen_uefi_keys_dts.sh <uefi_keys.conf>, only the exit status matters"""

    description = "gen_uefi_keys_dts.sh"

    def __init__(self, path: str, use_sudo: bool = False):
        self.path = path
        self.use_sudo = use_sudo

    def check(self):
        check_tool_exists(self.path, self.description)

    def generate(self, workdir: str, conf_path: str):
        run_tool(
            tool_command(self.path, self.use_sudo) + [conf_path],
            self.description,
            cwd=workdir,
        )


class EkbBuilder:
    """gen_ekb.py, packs the OP-TEE symmetric keys into an encrypted key blob"""

    description = "gen_ekb.py"

    def __init__(self, path: str, chip: str = "t234", use_sudo: bool = False):
        self.path = path
        self.chip = chip
        self.use_sudo = use_sudo

    def check(self):
        check_tool_exists(self.path, self.description)

    def build(
        self,
        workdir: str,
        oem_k1_key: str,
        sym_key: str,
        sym2_key: str,
        auth_key: str,
        output: str,
    ):
        # gen_ekb.py does not create the output directory itself
        os.makedirs(os.path.join(workdir, os.path.dirname(output)), exist_ok=True)
        run_tool(
            tool_command(self.path, self.use_sudo)
            + [
                "-chip",
                self.chip,
                "-oem_k1_key",
                oem_k1_key,
                "-in_sym_key",
                sym_key,
                "-in_sym_key2",
                sym2_key,
                "-in_auth_key",
                auth_key,
                "-out",
                output,
            ],
            self.description,
            cwd=workdir,
        )
        out_path = os.path.join(workdir, output)
        if not os.path.isfile(out_path) or os.path.getsize(out_path) == 0:
            raise CollaboratorError(f"{self.description} did not write {output}")
