# SPDX-FileCopyrightText: 2025 tegrakeys contributors
#
# SPDX-License-Identifier: GPL-2.0-or-later
"""Textual renderings of symmetric key bytes.

The same key is consumed in three forms:

- word list, for the flashing/signing command line tools::

    0x00112233 0x44556677 ...

- continuous with prefix, for fuse XML values::

    0x0011223344556677...

- continuous without prefix, for the OP-TEE EKB generator::

    0011223344556677...

A wrong rendering ends up burned into one-time programmable fuses, so every
encoder checks the input length and decode() is the exact inverse of all three.
"""

import binascii
import re

from .util import EncodingError, get_chunks, hexify

SUPPORTED_KEY_LENGTHS = (16, 32)
WORD_SIZE = 4

WORD_LIST = "word-list"
CONTINUOUS_PREFIXED = "prefixed"
CONTINUOUS_BARE = "bare"
ENCODINGS = (WORD_LIST, CONTINUOUS_PREFIXED, CONTINUOUS_BARE)

# How a key file is read
KEY_INPUT_AUTO = "auto"
KEY_INPUT_RAW = "raw"
KEY_INPUT_HEX = "hex"
KEY_INPUTS = (KEY_INPUT_AUTO, KEY_INPUT_RAW, KEY_INPUT_HEX)

HEX_TEXT = re.compile(rb"\s*(0[xX])?[0-9a-fA-F]+(\s+0[xX][0-9a-fA-F]+)*\s*")


def _check_length(key: bytes):
    if not isinstance(key, (bytes, bytearray)):
        raise EncodingError(f"Key must be bytes, not {type(key).__name__}")
    if len(key) not in SUPPORTED_KEY_LENGTHS:
        raise EncodingError(
            f"Key contains wrong length ({len(key)} bytes), 16 or 32 expected."
        )


def to_word_list(key: bytes) -> str:
    """Render as space separated 32-bit words in original byte order"""
    _check_length(key)
    return " ".join("0x" + hexify(word) for word in get_chunks(bytes(key), WORD_SIZE))


def to_continuous_prefixed(key: bytes) -> str:
    _check_length(key)
    return "0x" + hexify(key)


def to_continuous_bare(key: bytes) -> str:
    _check_length(key)
    return hexify(key)


def encode(key: bytes, encoding: str) -> str:
    if encoding == WORD_LIST:
        return to_word_list(key)
    elif encoding == CONTINUOUS_PREFIXED:
        return to_continuous_prefixed(key)
    elif encoding == CONTINUOUS_BARE:
        return to_continuous_bare(key)
    raise ValueError(f"Unknown key encoding {encoding}")


def decode(text: str) -> bytes:
    """Parse any of the three renderings back into key bytes"""
    tokens = text.split()
    if not tokens:
        raise EncodingError("Empty key text")
    digits = []
    for token in tokens:
        if token[:2] in ("0x", "0X"):
            token = token[2:]
        elif len(tokens) > 1:
            raise EncodingError(f"Word {token!r} is missing the 0x prefix")
        if len(tokens) > 1 and len(token) != 2 * WORD_SIZE:
            raise EncodingError(f"Word {token!r} is not {WORD_SIZE} bytes long")
        digits.append(token)
    try:
        key = binascii.unhexlify("".join(digits))
    except (binascii.Error, ValueError) as e:
        raise EncodingError(f"Key text is not valid hex: {e}")
    _check_length(key)
    return key


def load_key_file(data: bytes, input_format: str = KEY_INPUT_AUTO) -> bytes:
    """Key files hold either raw bytes or one of the hex renderings.

    With KEY_INPUT_AUTO a file made only of hex digits, 0x prefixes and
    whitespace is read as text, so a raw key that happens to consist of such
    bytes has to be loaded with KEY_INPUT_RAW.
    """
    if input_format not in KEY_INPUTS:
        raise ValueError(f"Unknown key file format {input_format}")
    is_text = HEX_TEXT.fullmatch(data) is not None
    if input_format == KEY_INPUT_HEX and not is_text:
        raise EncodingError("Key file does not contain a hex encoded key")
    if is_text and input_format != KEY_INPUT_RAW:
        return decode(data.decode("ascii"))
    if len(data) not in SUPPORTED_KEY_LENGTHS:
        raise EncodingError(
            f"Key file contains wrong length ({len(data)} bytes), 16 or 32 expected."
        )
    return bytes(data)


class EncodedKey:
    """Read-only view holding all three renderings of one symmetric key"""

    __slots__ = ("word_list", "prefixed", "bare")

    def __init__(self, key: bytes):
        object.__setattr__(self, "word_list", to_word_list(key))
        object.__setattr__(self, "prefixed", to_continuous_prefixed(key))
        object.__setattr__(self, "bare", to_continuous_bare(key))

    def __setattr__(self, name, value):
        raise AttributeError("EncodedKey is read-only")

    def __repr__(self):
        return f"EncodedKey({len(self.bare) // 2} bytes)"
