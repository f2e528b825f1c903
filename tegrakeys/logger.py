# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later

import os
import sys
import time
from abc import ABC, abstractmethod

ANSI_CODES = {
    "red": "\033[1;31m",
    "yellow": "\033[0;33m",
    "blue": "\033[1;36m",
    "green": "\033[0;32m",
    "normal": "\033[0m",
    "line_up": "\033[1A",
    "line_clear": "\x1b[2K",
}

COLOR_TERMS = ("xterm", "xterm-256color", "screen", "screen-256color", "linux", "vt100")

# verbosity -> forced state of the smart terminal features (None: detect)
VERBOSITY_LEVELS = {
    "auto": None,
    "verbose": False,
    "silent": None,
    "compact": True,
}


def terminal_supports_ansi(stream=None) -> bool:
    stream = sys.stdout if stream is None else stream
    if not (hasattr(stream, "isatty") and stream.isatty()):
        return False
    if os.getenv("NO_COLOR", "").strip().lower() in ("1", "true", "yes"):
        return False
    return os.getenv("TERM", "").lower() in COLOR_TERMS


class TemplateLogger(ABC):
    """Interface every tegrakeys logger implements, see TegraKeysLogger.set_logger"""

    @abstractmethod
    def print(self, *args, **kwargs):
        """Plain message."""

    @abstractmethod
    def note(self, message: str):
        pass

    @abstractmethod
    def warning(self, message: str):
        pass

    @abstractmethod
    def error(self, message: str):
        """Error message, shown even when output is silenced."""

    @abstractmethod
    def stage(self, title: str | None = None, finish: bool = False):
        """Open a titled provisioning stage, or finish the open one."""

    @abstractmethod
    def set_verbosity(self, verbosity: str):
        pass


class TegraKeysLogger(TemplateLogger):
    ansi_red: str = ""
    ansi_yellow: str = ""
    ansi_blue: str = ""
    ansi_green: str = ""
    ansi_normal: str = ""
    ansi_line_up: str = ""
    ansi_line_clear: str = ""

    _stage_active: bool = False
    _stage_title: str | None = None
    _stage_started: float = 0.0
    _newline_count: int = 0
    _kept_lines: list[str] = []

    _smart_features: bool = False
    _verbosity: str | None = None
    _print_anyway: bool = False

    def __new__(cls):
        if not hasattr(cls, "instance"):
            cls.instance = super(TegraKeysLogger, cls).__new__(cls)
            cls.instance.set_verbosity("auto")
        return cls.instance

    @classmethod
    def _del(cls) -> None:
        if hasattr(cls, "instance"):
            del cls.instance

    @classmethod
    def _set_smart_features(cls, override: bool | None = None):
        enabled = terminal_supports_ansi() if override is None else override
        cls.instance._smart_features = enabled
        for name, code in ANSI_CODES.items():
            setattr(cls.instance, f"ansi_{name}", code if enabled else "")

    def print(self, *args, **kwargs):
        if self._verbosity == "silent" and not self._print_anyway:
            return
        if self._stage_active:
            # lines to erase once the stage finishes
            self._newline_count += "".join(map(str, args)).count("\n")
            if kwargs.get("end", "\n") == "\n":
                self._newline_count += 1
        print(*args, **kwargs)
        self._print_anyway = False

    def _labelled(self, color: str, label: str, message: str):
        line = f"{color}{label}:{self.ansi_normal} {message}"
        if self._stage_active:
            self._kept_lines.append(line)
        self.print(line)

    def note(self, message: str):
        self._labelled(self.ansi_blue, "Note", message)

    def warning(self, message: str):
        self._labelled(self.ansi_yellow, "Warning", message)

    def error(self, message: str):
        self._print_anyway = True
        self.print(f"{self.ansi_red}{message}{self.ansi_normal}", file=sys.stderr)

    def _open_stage(self, title: str | None):
        # a stage left open by an aborted run is dropped, its lines stay on screen
        self._kept_lines.clear()
        self._newline_count = 0
        self._stage_active = True
        self._stage_title = title
        self._stage_started = time.monotonic()
        if title:
            self.print(f"{title}...")

    def _close_stage(self):
        self._stage_active = False
        if self._smart_features:
            erase = f"{self.ansi_line_up}{self.ansi_line_clear}" * self._newline_count
            self.print(erase, end="", flush=True)
            for line in self._kept_lines:
                self.print(line)
        if self._stage_title:
            elapsed = time.monotonic() - self._stage_started
            self.print(
                f"{self.ansi_green}{self._stage_title} done "
                f"({elapsed:.1f} s){self.ansi_normal}"
            )
        self._kept_lines.clear()
        self._newline_count = 0
        self._stage_title = None

    def stage(self, title: str | None = None, finish: bool = False):
        """
        Start or finish a provisioning stage.

        On terminals with ANSI support the detail lines of a stage that finishes
        are erased and replaced by a single "<title> done" line, so the output
        of a successful run lists the completed stages. Notes and warnings are
        printed again below the erased lines.
        """
        if not finish:
            self._open_stage(title)
        elif self._stage_active:
            self._close_stage()

    def set_logger(self, new_logger):
        """Replace the singleton's behaviour with that of another TemplateLogger"""
        self.__class__ = new_logger.__class__

    def set_verbosity(self, verbosity: str):
        """
        auto: colors and collapsing stages when the terminal supports them;
        verbose: plain output, nothing collapsed;
        silent: errors only;
        compact: colors and collapsing stages regardless of the terminal
        """
        if verbosity not in VERBOSITY_LEVELS:
            raise ValueError(f"Invalid verbosity level: {verbosity}")
        if verbosity == self._verbosity:
            return
        self._verbosity = verbosity
        if verbosity != "silent":
            self._set_smart_features(VERBOSITY_LEVELS[verbosity])


log = TegraKeysLogger()
