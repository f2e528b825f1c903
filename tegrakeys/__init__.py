# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later

__all__ = [
    "generate_keys",
    "encode_key",
    "fuse_xml",
    "check_hsm",
    "select_key_source",
    "main",
]

__version__ = "1.0.0"

import os
import sys
from typing import IO

import rich_click as click

from tegrakeys.artifacts import PUBLIC_FILE_MODE, FuseDescriptor
from tegrakeys.certs import CertificateIssuer
from tegrakeys.cli_util import SUPPORTED_CHIPS, ChipType, Group
from tegrakeys.config import DEFAULT_HSM_TIMEOUT, ToolPaths, load_config_file
from tegrakeys.encoding import (
    CONTINUOUS_PREFIXED,
    ENCODINGS,
    KEY_INPUT_AUTO,
    KEY_INPUTS,
    WORD_LIST,
    encode,
    load_key_file,
)
from tegrakeys.keysource import KeySource, LocalKeySource
from tegrakeys.logger import log
from tegrakeys.nethsm import NetHSMKeySource, read_hsm_config
from tegrakeys.tools import CertToEslTool, EkbBuilder, TegraSignTool, UefiDtsGenerator
from tegrakeys.util import FatalError, atomic_write
from tegrakeys.workflow import run_workflow

MODE_LOCAL = "local"
MODE_NETHSM = "nethsm"


def select_key_source(
    mode: str,
    hsm_config: IO | None = None,
    timeout: float = DEFAULT_HSM_TIMEOUT,
    transport=None,
) -> KeySource:
    """The only place where local and remote key generation differ.

    In NetHSM mode the connection settings are validated here, before a
    single key is generated.
    """
    if mode == MODE_LOCAL:
        return LocalKeySource()
    if mode == MODE_NETHSM:
        settings = read_hsm_config(hsm_config, timeout=timeout)
        return NetHSMKeySource(settings, transport=transport)
    raise FatalError(f"Unknown key generation mode '{mode}'", stage="precondition")


def generate_keys(
    mode: str,
    output_dir: str,
    paths: ToolPaths,
    force: bool = False,
    hsm_config: IO | None = None,
    skip_dts: bool = False,
    skip_ekb: bool = False,
    transport=None,
):
    source = select_key_source(mode, hsm_config, paths.hsm_timeout, transport)
    log.print(f"Key source: {source.describe()}")
    converter = CertToEslTool(paths.cert_to_esl) if paths.cert_to_esl else None
    hash_tool = TegraSignTool(paths.tegrasign, paths.fuse_hash_marker, paths.use_sudo)
    return run_workflow(
        source,
        output_dir,
        hash_tool=hash_tool,
        issuer=CertificateIssuer(converter),
        dts_generator=(
            None if skip_dts else UefiDtsGenerator(paths.uefi_dts_gen, paths.use_sudo)
        ),
        ekb_builder=(
            None if skip_ekb else EkbBuilder(paths.gen_ekb, paths.chip, paths.use_sudo)
        ),
        force=force,
    )


def encode_key(
    keyfile: IO, key_format: str = WORD_LIST, input_format: str = KEY_INPUT_AUTO
) -> str:
    key = load_key_file(keyfile.read(), input_format)
    return encode(key, key_format)


def fuse_xml(
    pubkey_hash: str,
    sbk_file: IO,
    kek_file: IO,
    output: str | None = None,
    input_format: str = KEY_INPUT_AUTO,
) -> str:
    """Render the fuse descriptor from existing SBK and KEK key files"""
    descriptor = FuseDescriptor(
        pubkey_hash.strip().lower(),
        encode(load_key_file(sbk_file.read(), input_format), CONTINUOUS_PREFIXED),
        encode(load_key_file(kek_file.read(), input_format), CONTINUOUS_PREFIXED),
    )
    xml = descriptor.render()
    if output is not None:
        atomic_write(output, xml, PUBLIC_FILE_MODE)
        log.print(f"Fuse descriptor written to {output}")
    return xml


def check_hsm(hsm_config: IO | None = None, timeout: float = DEFAULT_HSM_TIMEOUT):
    source = select_key_source(MODE_NETHSM, hsm_config, timeout)
    with source:
        log.print(f"NetHSM at {source.url} is reachable and credentials are valid.")


def _tool_paths(ctx: click.Context, **overrides) -> ToolPaths:
    return ToolPaths(ctx.obj["config"]["tegrakeys"], **overrides)


input_format_option = click.option(
    "--input-format",
    "-i",
    type=click.Choice(KEY_INPUTS),
    default=KEY_INPUT_AUTO,
    help="How to read key files: raw bytes, hex text, or 'auto' to detect. "
    "Use 'raw' for binary keys made only of hex digit bytes.",
)


@click.group(
    cls=Group,
    no_args_is_help=True,
    context_settings=dict(help_option_names=["-h", "--help"], max_content_width=120),
    help=f"tegrakeys v{__version__} - NVIDIA Jetson (Tegra) secure boot key "
    "provisioning tool",
)
@click.option(
    "--verbosity",
    type=click.Choice(["auto", "verbose", "silent", "compact"]),
    default=os.environ.get("TEGRAKEYS_VERBOSITY", "auto"),
    help="Output verbosity. 'compact' collapses finished stages, "
    "'silent' prints errors only.",
)
@click.pass_context
def cli(ctx, verbosity):
    ctx.ensure_object(dict)
    log.set_verbosity(verbosity)
    log.print(f"tegrakeys v{__version__}")
    ctx.obj["config"], ctx.obj["config_path"] = load_config_file(verbose=True)


@cli.command("generate")
@click.option(
    "--mode",
    "-m",
    type=click.Choice([MODE_LOCAL, MODE_NETHSM]),
    default=MODE_LOCAL,
    help="Generate keys locally or inside a NetHSM appliance.",
)
@click.option(
    "--output-dir",
    "-o",
    type=click.Path(file_okay=False),
    default=".",
    help="Directory to write the key files and artifacts to.",
)
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite key files left by a previous run.",
)
@click.option(
    "--hsm-config",
    type=click.File("r"),
    help="Config file with a [nethsm] section (url, username, password, timeout). "
    "Overrides the NETHSM_* environment variables.",
)
@click.option(
    "--l4t-dir",
    type=click.Path(file_okay=False),
    help="Linux_for_Tegra directory holding the NVIDIA tools.",
)
@click.option("--tegrasign", type=click.Path(), help="Path to tegrasign_v3.py.")
@click.option(
    "--uefi-dts-gen", type=click.Path(), help="Path to gen_uefi_keys_dts.sh."
)
@click.option("--gen-ekb", type=click.Path(), help="Path to gen_ekb.py.")
@click.option(
    "--cert-to-esl",
    type=click.Path(),
    help="Use this cert-to-efi-sig-list binary instead of the built-in "
    "signature list encoder.",
)
@click.option(
    "--chip",
    type=ChipType(SUPPORTED_CHIPS),
    help="Target chip passed to gen_ekb.py.",
)
@click.option(
    "--sudo/--no-sudo",
    "use_sudo",
    default=None,
    help="Run gen_uefi_keys_dts.sh, gen_ekb.py and tegrasign with sudo.",
)
@click.option(
    "--skip-dts", is_flag=True, help="Do not generate the UEFI keys device tree."
)
@click.option(
    "--skip-ekb", is_flag=True, help="Do not generate the OP-TEE encrypted key blob."
)
@click.pass_context
def generate_cli(
    ctx, mode, output_dir, force, hsm_config, skip_dts, skip_ekb, **overrides
):
    """Generate the complete secure boot key set: RSA signing key and its fuse hash,
    SBK, KEK, EKB keys, UEFI keys with certificates and signature lists, fuse.xml,
    and the NetHSM key inventory in nethsm mode."""
    generate_keys(
        mode,
        output_dir,
        _tool_paths(ctx, **overrides),
        force=force,
        hsm_config=hsm_config,
        skip_dts=skip_dts,
        skip_ekb=skip_ekb,
    )


@cli.command("encode-key")
@click.option(
    "--format",
    "-f",
    "key_format",
    type=click.Choice(ENCODINGS),
    default=WORD_LIST,
    help="Textual encoding to print.",
)
@input_format_option
@click.argument("keyfile", type=click.File("rb"))
def encode_key_cli(key_format, input_format, keyfile):
    """Print a 128 or 256 bit key in one of the encodings the NVIDIA tools expect.
    KEYFILE holds raw key bytes or any of the hex encodings."""
    log.print(encode_key(keyfile, key_format, input_format))


@cli.command("fuse-xml")
@click.option(
    "--pubkey-hash",
    required=True,
    help="tegra-fuse format hash of the RSA signing key, as printed by tegrasign.",
)
@click.option(
    "--sbk", type=click.File("rb"), required=True, help="Secure Boot Key file."
)
@click.option(
    "--kek", type=click.File("rb"), required=True, help="OEM K1 key (KEK) file."
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False),
    help="Write the descriptor to this file instead of printing it.",
)
@input_format_option
def fuse_xml_cli(pubkey_hash, sbk, kek, output, input_format):
    """Render fuse.xml from existing key files."""
    xml = fuse_xml(pubkey_hash, sbk, kek, output, input_format)
    if output is None:
        log.print(xml, end="")


@cli.command("check-hsm")
@click.option(
    "--hsm-config",
    type=click.File("r"),
    help="Config file with a [nethsm] section.",
)
@click.pass_context
def check_hsm_cli(ctx, hsm_config):
    """Open a NetHSM session to verify the connection settings."""
    check_hsm(hsm_config, _tool_paths(ctx).hsm_timeout)


def main(argv: list[str] | None = None):
    """
    Main function for tegrakeys

    argv - Optional override for default arguments parsing
    (that uses sys.argv), can be a list of custom arguments as strings.
    Arguments and their values need to be added as individual items to the list
    e.g. "--output-dir keys" thus becomes ['--output-dir', 'keys'].
    """
    cli(args=argv)


def _main():
    try:
        main()
    except FatalError as e:
        log.error(f"\nA fatal error occurred: {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        log.error("KeyboardInterrupt: Run cancelled by user.")
        sys.exit(2)


if __name__ == "__main__":
    _main()
