# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later

import configparser
import os

from .logger import log
from .util import PreconditionError

SECTION = "tegrakeys"
CONFIG_ENV_VAR = "TEGRAKEYS_CFGFILE"
CONFIG_FILE_NAMES = ("tegrakeys.cfg", "setup.cfg", "tox.ini")

CONFIG_OPTIONS = [
    "l4t_dir",
    "tegrasign",
    "uefi_dts_gen",
    "gen_ekb",
    "cert_to_esl",
    "fuse_hash_marker",
    "hsm_timeout",
    "chip",
    "use_sudo",
]

# Locations of the collaborators relative to a Linux_for_Tegra directory
L4T_TEGRASIGN = os.path.join("bootloader", "tegrasign_v3.py")
L4T_UEFI_DTS_GEN = os.path.join("tools", "gen_uefi_keys_dts.sh")
L4T_GEN_EKB = os.path.join(
    "source", "optee", "samples", "hwkey-agent", "host", "tool", "gen_ekb", "gen_ekb.py"
)

DEFAULT_L4T_DIR = os.path.join("..", "JP", "Linux_for_Tegra")
DEFAULT_FUSE_HASH_MARKER = "tegra-fuse format"
DEFAULT_HSM_TIMEOUT = 30.0
DEFAULT_CHIP = "t234"


def config_search_dirs() -> list[str]:
    """Current directory, then the per-user config directory, then home"""
    home = os.path.expanduser("~")
    if os.name == "posix":
        user_dir = os.path.join(home, ".config", SECTION)
    else:
        user_dir = os.path.join(home, "AppData", "Local", SECTION)
    return [os.getcwd(), user_dir, home]


def read_config(path: str, verbose: bool = False) -> configparser.ConfigParser | None:
    """Parse 'path'. Files that are missing, unreadable or have no [tegrakeys]
    section give None."""
    if not os.path.isfile(path):
        return None
    cfg = configparser.ConfigParser(interpolation=None)
    try:
        cfg.read(path, encoding="UTF-8")
    except (UnicodeDecodeError, configparser.Error) as e:
        if verbose:
            log.note(f"Ignoring invalid config file {path}: {e}")
        return None
    if not cfg.has_section(SECTION):
        return None
    unknown = sorted(set(cfg.options(SECTION)) - set(CONFIG_OPTIONS))
    if verbose and unknown:
        plural = "s" if len(unknown) > 1 else ""
        log.note(f"Ignoring unknown config file option{plural}: {', '.join(unknown)}")
    return cfg


def load_config_file(verbose: bool = False):
    """Find and parse the tegrakeys config file.

    A file named by TEGRAKEYS_CFGFILE is used when it is valid. Otherwise the
    first valid tegrakeys.cfg, setup.cfg or tox.ini in config_search_dirs()
    wins. Returns the parser, holding at least an empty [tegrakeys] section,
    and the path of the file or None.
    """
    candidates = [
        os.path.join(directory, name)
        for directory in config_search_dirs()
        for name in CONFIG_FILE_NAMES
    ]
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path is not None:
        candidates.insert(0, env_path)

    for path in candidates:
        # the environment variable file is checked quietly
        cfg = read_config(path, verbose and path != env_path)
        if cfg is None:
            continue
        if verbose:
            origin = f" (set with {CONFIG_ENV_VAR})" if path == env_path else ""
            log.print(
                f"Loaded custom configuration from {os.path.abspath(path)}{origin}"
            )
        return cfg, path

    cfg = configparser.ConfigParser(interpolation=None)
    cfg[SECTION] = {}
    return cfg, None


class ToolPaths:
    """Resolved locations of the external tools and their tunables.

    Explicit paths win over the config file, the config file wins over the
    Linux_for_Tegra defaults.
    """

    def __init__(self, cfg: configparser.SectionProxy, **overrides):
        def pick(name, default=None):
            value = overrides.get(name)
            if value is None:
                value = cfg.get(name, fallback=None)
            return default if value in (None, "") else value

        self.l4t_dir = pick("l4t_dir", DEFAULT_L4T_DIR)
        self.tegrasign = pick("tegrasign", os.path.join(self.l4t_dir, L4T_TEGRASIGN))
        self.uefi_dts_gen = pick(
            "uefi_dts_gen", os.path.join(self.l4t_dir, L4T_UEFI_DTS_GEN)
        )
        self.gen_ekb = pick("gen_ekb", os.path.join(self.l4t_dir, L4T_GEN_EKB))
        self.cert_to_esl = pick("cert_to_esl")
        self.fuse_hash_marker = pick("fuse_hash_marker", DEFAULT_FUSE_HASH_MARKER)
        self.chip = pick("chip", DEFAULT_CHIP)
        try:
            self.hsm_timeout = float(pick("hsm_timeout", DEFAULT_HSM_TIMEOUT))
        except ValueError:
            raise PreconditionError(
                f"Invalid hsm_timeout {pick('hsm_timeout')!r} in config file",
                stage="config",
            )
        use_sudo = overrides.get("use_sudo")
        if use_sudo is None:
            use_sudo = cfg.getboolean("use_sudo", fallback=False)
        self.use_sudo = use_sudo

    def __repr__(self):
        return (
            f"ToolPaths(tegrasign={self.tegrasign!r}, "
            f"uefi_dts_gen={self.uefi_dts_gen!r}, gen_ekb={self.gen_ekb!r}, "
            f"cert_to_esl={self.cert_to_esl!r})"
        )
