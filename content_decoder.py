"""Best-effort decoding of raw message content columns into text.

Message content arrives as plain text, hex, base64 or raw bytes, and the
binary forms may hold a zstd frame.  Decoding never raises: anything that
cannot be turned into text becomes an empty string so a single bad row can
never abort a scan.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re

import zstandard

logger = logging.getLogger(__name__)

ZSTD_MAGIC = 0xFD2FB528
REPLACEMENT_CHAR = "\ufffd"
LEGACY_ENCODING_THRESHOLD = 0.2

_HEX_RE = re.compile(r"[0-9a-fA-F]+")
_BASE64_RE = re.compile(r"[A-Za-z0-9+/=]+")


def _looks_like_hex(s: str) -> bool:
    return len(s) % 2 == 0 and bool(_HEX_RE.fullmatch(s))


def _looks_like_base64(s: str) -> bool:
    return len(s) % 4 == 0 and bool(_BASE64_RE.fullmatch(s))


def _decompress_zstd(data: bytes) -> bytes:
    # decompressobj copes with frames that omit the content size
    return zstandard.ZstdDecompressor().decompressobj().decompress(data)


def decode_binary_content(data: bytes) -> str:
    """Turn a byte buffer into text.

    zstd frames (little-endian magic ``0xFD2FB528``) are decompressed first.
    Otherwise the bytes are read as UTF-8; when 20% or more of the result is
    the replacement character the buffer is assumed to be a legacy
    single-byte encoding and is re-read as Latin-1.

    Args:
        data: Raw bytes from a content column.

    Returns:
        The decoded text, or "" if the buffer is empty or undecodable.
    """
    if not data:
        return ""
    try:
        if len(data) >= 4 and int.from_bytes(data[:4], "little") == ZSTD_MAGIC:
            return _decompress_zstd(data).decode("utf-8", errors="replace")

        decoded = data.decode("utf-8", errors="replace")
        replacement_count = decoded.count(REPLACEMENT_CHAR)
        if replacement_count < len(decoded) * LEGACY_ENCODING_THRESHOLD:
            return decoded.replace(REPLACEMENT_CHAR, "")
        return data.decode("latin-1")
    except (zstandard.ZstdError, ValueError) as e:
        logger.debug("Dropping undecodable content (%d bytes): %s", len(data), e)
        return ""


def decode_maybe_compressed(raw: object) -> str:
    """Decode one content column value (str, bytes or None)."""
    if not raw:
        return ""
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return decode_binary_content(bytes(raw))
    if not isinstance(raw, str):
        return ""

    if _looks_like_hex(raw):
        data = bytes.fromhex(raw)
        if data:
            return decode_binary_content(data)
    if _looks_like_base64(raw):
        try:
            data = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError):
            return raw
        return decode_binary_content(data)
    return raw


def decode_message_content(primary: object, fallback: object) -> str:
    """Decode a message, preferring the compressed column.

    Args:
        primary: The plain content column (``message_content``).
        fallback: The compressed content column (``compress_content``),
            tried first because it is authoritative when populated.

    Returns:
        Decoded text, or "" when neither column yields any.
    """
    content = decode_maybe_compressed(fallback)
    if not content:
        content = decode_maybe_compressed(primary)
    return content
