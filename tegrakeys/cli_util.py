# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later

from typing import Any

import rich_click as click

from tegrakeys.util import strip_chip_name

SUPPORTED_CHIPS = ["t234"]


class ChipType(click.Choice):
    """Accept chip names in any case and with a hyphen, e.g. T234 or t-234"""

    def convert(
        self, value: str, param: click.Parameter | None, ctx: click.Context
    ) -> Any:
        return super().convert(strip_chip_name(value), param, ctx)


class Group(click.RichGroup):
    """Command group that also accepts the underscore spelling of multi-word
    options and commands, e.g. '--output_dir keys' or 'fuse_xml', matching the
    option names of the config file."""

    OPTION_ALIASES = {
        "--output_dir": "--output-dir",
        "--hsm_config": "--hsm-config",
        "--l4t_dir": "--l4t-dir",
        "--uefi_dts_gen": "--uefi-dts-gen",
        "--gen_ekb": "--gen-ekb",
        "--cert_to_esl": "--cert-to-esl",
        "--pubkey_hash": "--pubkey-hash",
        "--skip_dts": "--skip-dts",
        "--skip_ekb": "--skip-ekb",
        "--input_format": "--input-format",
    }

    def _resolve_alias(self, arg: str) -> str:
        name, sep, value = arg.partition("=")
        if name not in self.OPTION_ALIASES:
            return arg
        return f"{self.OPTION_ALIASES[name]}{sep}{value}"

    def parse_args(self, ctx: click.Context, args: list[str]):
        return super().parse_args(ctx, [self._resolve_alias(arg) for arg in args])

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        rv = super().get_command(ctx, cmd_name)
        if rv is not None or "_" not in cmd_name:
            return rv
        return super().get_command(ctx, cmd_name.replace("_", "-"))

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        # report the dashed name for underscore aliases too
        _, cmd, args = super().resolve_command(ctx, args)
        if cmd is None:
            return None, None, args
        return cmd.name, cmd, args
