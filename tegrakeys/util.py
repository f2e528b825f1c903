# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later

import os
import re
import tempfile
import time


def get_chunks(source: bytes, chunk_len: int):
    """Returns an iterator over 'chunk_len' chunks of 'source'"""
    return (source[i : i + chunk_len] for i in range(0, len(source), chunk_len))


def hexify(s, uppercase=False):
    format_str = "%02X" if uppercase else "%02x"
    return "".join(format_str % c for c in s)


def strip_chip_name(chip_name):
    """Strip chip name to normalized form, e.g. `T234` -> `t234`"""
    return re.sub(r"[-_ ]", "", chip_name.lower())


def timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S%z")


def atomic_write(path: str, data: bytes | str, mode: int | None = None):
    """Write 'data' to a temporary file next to 'path' and rename it into place.

    Readers see either the previous file or the complete new one, never a
    partially written file.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    directory = os.path.dirname(os.path.abspath(path))
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp"
        )
    except OSError as e:
        raise WriteError(f"Cannot write {path}: {e}")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as e:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise WriteError(f"Cannot write {path}: {e}")


class FatalError(RuntimeError):
    """
    Wrapper class for errors that abort a provisioning run. They are not caused
    by internal bugs, but by the key source, external tools or the environment.

    'stage' and 'role' identify where the run stopped, so an operator can decide
    whether to start over.
    """

    def __init__(self, message, stage=None, role=None):
        RuntimeError.__init__(self, message)
        self.message = message
        self.stage = stage
        self.role = role

    def __str__(self):
        where = "/".join(p for p in (self.stage, self.role) if p)
        return f"[{where}] {self.message}" if where else self.message

    def at(self, stage=None, role=None):
        """Fill in missing context while the error propagates upwards"""
        if self.stage is None:
            self.stage = stage
        if self.role is None:
            self.role = role
        return self


class PreconditionError(FatalError):
    """Missing NetHSM credentials, existing outputs without --force, bad tools"""


class GenerationError(FatalError):
    """Entropy, library or HSM key generation failure"""


class ExportError(FatalError):
    """HSM export failure or exported key of unexpected format/length"""


class EncodingError(FatalError):
    """Key byte length does not match any supported encoding"""


class CollaboratorError(FatalError):
    """An external tool failed or produced output that cannot be parsed"""


class WriteError(FatalError):
    """Artifact could not be persisted"""
