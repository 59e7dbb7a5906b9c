"""
Payload Codecs.

This module converts between the display formats offered when sending (text, hex,
base64) and the raw bytes that actually go on the wire.
"""

import base64
import re

from .errors import EncodingError

TEXT = "text"
HEX = "hex"
BASE64 = "base64"
FORMATS = (TEXT, HEX, BASE64)


class Codec:
    """Stateless transforms between raw bytes and the three display formats.

    Decoding (display string -> bytes) is strict and raises EncodingError on
    malformed input. Encoding (bytes -> display string) never fails.
    """

    WHITESPACE = re.compile(r"\s+")
    NON_HEX = re.compile(r"[^0-9a-fA-F]")

    @classmethod
    def check_format(cls, fmt: str) -> str:
        if fmt not in FORMATS:
            raise EncodingError(f"Unsupported format '{fmt}', expected one of: {', '.join(FORMATS)}")
        return fmt

    @classmethod
    def decode(cls, data: str, fmt: str = TEXT) -> bytes:
        """Turns a user supplied display string into the bytes to send.

        Args:
            data: The string as typed by the user.
            fmt: One of "text", "hex" or "base64".

        Returns:
            The raw payload.

        Raises:
            EncodingError: If the format is unknown or the input is malformed.
        """
        fmt = cls.check_format(fmt)
        if fmt == HEX:
            return cls._decode_hex(data)
        if fmt == BASE64:
            return cls._decode_base64(data)
        try:
            return data.encode("utf-8")
        except UnicodeEncodeError as e:
            # Lone surrogates survive JSON decoding but have no UTF-8 form
            raise EncodingError(f"Text is not valid Unicode: {e.reason} at position {e.start}") from e

    @classmethod
    def _decode_hex(cls, data: str) -> bytes:
        digits = cls.WHITESPACE.sub("", data)
        bad = cls.NON_HEX.search(digits)
        if bad:
            raise EncodingError(f"Invalid hex character {bad.group()!r} at position {bad.start()}")
        if len(digits) % 2:
            raise EncodingError(f"Hex input has an odd number of digits ({len(digits)})")
        return bytes.fromhex(digits)

    @classmethod
    def _decode_base64(cls, data: str) -> bytes:
        try:
            return base64.b64decode(data.strip(), validate=True)
        except ValueError as e:
            # binascii.Error is a ValueError; non-ASCII input raises ValueError directly
            raise EncodingError(f"Invalid base64 input: {e}") from e

    @classmethod
    def encode(cls, payload: bytes, fmt: str = TEXT) -> str:
        """Renders a payload in the given display format."""
        fmt = cls.check_format(fmt)
        if fmt == HEX:
            return payload.hex(" ")
        if fmt == BASE64:
            return base64.b64encode(payload).decode("ascii")
        return cls.render(payload)

    @staticmethod
    def render(payload: bytes) -> str:
        """Lossy UTF-8 rendering used for everything shown in the live feed."""
        return payload.decode("utf-8", errors="replace")


def format_bytes(size: int) -> str:
    """Human readable byte count, e.g. 1536 -> '1.5 KB'."""
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in ("KB", "MB", "GB"):
        value /= 1024
        if value < 1024 or unit == "GB":
            break
    return f"{value:.1f} {unit}"
