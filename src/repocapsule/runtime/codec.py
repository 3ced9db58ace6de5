"""
Content codec for embedded file payloads.

Every file is carried inside the artifact's data literal as one of:

- text: the file's characters, with backslash, single quote, control
  characters and undecodable bytes written as backslash escapes
- base64: the raw bytes, in 76-column lines
- base64+gzip: the gzip-compressed bytes, base64-encoded

Binary payloads may be split into segments separated by marker lines. Each
binary payload records its segment count and the SHA-256 of the reassembled
base64 text, and both are checked before decoding.

Encoding and decoding live side by side so the round trip
decode(encode(b)) == b can be checked in one place.
"""

import base64
import binascii
import gzip
import hashlib
import random
import re
import time
import uuid
import zlib
from dataclasses import dataclass
from enum import Enum

from repocapsule.errors import ChunkDigestMismatchError, DecodeError, EncodeError


DELIMITER_PREFIX = "EOF"
BASE64_LINE_WIDTH = 76
DEFAULT_SEGMENT_CHARS = 1024 * 1024
SEGMENT_MARKER = "~~ segment {index} of {total} ~~"

_SEGMENT_MARKER_RE = re.compile(r"^~~ segment (\d+) of (\d+) ~~$")
_UNSAFE_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9_]")

# Backslash, quote, C0 controls except TAB/LF, DEL, and surrogate-escaped bytes.
_TEXT_ESCAPE_RE = re.compile("[\\\\'\x00-\x08\x0b-\x1f\x7f\udc80-\udcff]")
_LINE_ESCAPE_RE = re.compile("[\\\\'\x00-\x08\x0a-\x1f\x7f\udc80-\udcff]")
_UNESCAPE_RE = re.compile(r"\\(?:x([0-9a-fA-F]{2})|(\\)|(')|(.|$))", re.DOTALL)


class PayloadEncoding(str, Enum):
    """How an entry's bytes are represented in the artifact."""

    TEXT = "text"
    BASE64 = "base64"
    BASE64_GZIP = "base64+gzip"

    @property
    def is_binary(self) -> bool:
        return self is not PayloadEncoding.TEXT


@dataclass(frozen=True)
class EncodedPayload:
    """
    An encoded payload ready to be placed between its delimiters.

    Attributes:
        encoding: Representation used for the body
        body: Payload lines joined with "\\n" (no trailing newline)
        segments: Number of segments in a binary body
        digest: SHA-256 of the reassembled base64 text, binary only
    """

    encoding: PayloadEncoding
    body: str
    segments: int = 1
    digest: str | None = None


# =============================================================================
# Delimiters
# =============================================================================


def sanitize_name(relative_path: str) -> str:
    """
    Reduce a path to a delimiter-safe identifier.

    Every character outside [A-Za-z0-9_] becomes "_", a leading digit gets a
    "_" prefix, and an empty result becomes "file".
    """
    name = _UNSAFE_NAME_CHARS_RE.sub("_", relative_path)
    if not name:
        return "file"
    if name[0].isdigit():
        name = "_" + name
    return name


def _unique_token() -> str:
    try:
        return uuid.uuid4().hex
    except NotImplementedError:
        # No OS entropy source.
        return f"{time.time_ns()}_{random.getrandbits(32):08x}"


def make_delimiter(relative_path: str, body: str = "") -> str:
    """
    Build a unique end-of-payload delimiter for an entry.

    The delimiter never occurs anywhere in the encoded body; a colliding
    candidate is simply regenerated.
    """
    name = sanitize_name(relative_path)
    while True:
        candidate = f"{DELIMITER_PREFIX}_{_unique_token()}_{name}"
        if candidate not in body:
            return candidate


# =============================================================================
# Text escaping
# =============================================================================


def _escape_char(match: re.Match[str]) -> str:
    ch = match.group()
    if ch == "\\":
        return "\\\\"
    if ch == "'":
        return "\\'"
    code = ord(ch)
    if code >= 0xDC80:
        code -= 0xDC00
    return f"\\x{code:02x}"


def _unescape_sequence(match: re.Match[str]) -> str:
    hex_code, backslash, quote, invalid = match.groups()
    if hex_code is not None:
        code = int(hex_code, 16)
        return chr(code) if code < 0x80 else chr(0xDC00 + code)
    if backslash is not None:
        return "\\"
    if quote is not None:
        return "'"
    raise ValueError(f"invalid escape sequence {match.group()!r}")


def escape_text(data: bytes) -> str:
    """
    Encode bytes as literal-safe text.

    Valid UTF-8 passes through unchanged apart from the escaped characters.
    TAB and LF stay literal, so line structure survives.
    """
    text = data.decode("utf-8", "surrogateescape")
    return _TEXT_ESCAPE_RE.sub(_escape_char, text)


def unescape_text(text: str) -> bytes:
    """
    Reverse escape_text.

    Raises:
        ValueError: On a backslash sequence escape_text never produces
    """
    return _UNESCAPE_RE.sub(_unescape_sequence, text).encode("utf-8", "surrogateescape")


def escape_line(value: str) -> str:
    """Escape a single-line value such as a path; newlines are escaped too."""
    return _LINE_ESCAPE_RE.sub(_escape_char, value)


def unescape_line(value: str) -> str:
    """Reverse escape_line."""
    return _UNESCAPE_RE.sub(_unescape_sequence, value)


# =============================================================================
# Encode / decode
# =============================================================================


def _wrap(text: str, width: int = BASE64_LINE_WIDTH) -> list[str]:
    return [text[i:i + width] for i in range(0, len(text), width)]


def encode_binary(
    data: bytes,
    compress: bool = False,
    segment_chars: int = DEFAULT_SEGMENT_CHARS,
    path: str = "",
) -> EncodedPayload:
    """
    Encode bytes as (optionally gzip-compressed) base64.

    Raises:
        EncodeError: If the encoded form does not decode back to the input
    """
    if segment_chars <= 0:
        raise EncodeError(path=path, underlying_error="segment size must be positive")

    try:
        raw = gzip.compress(data, mtime=0) if compress else data
    except (OSError, zlib.error) as e:
        raise EncodeError(path=path, underlying_error=f"compression failed: {e}") from e

    encoded = base64.b64encode(raw).decode("ascii")
    try:
        restored = base64.b64decode(encoded, validate=True)
        if compress:
            restored = gzip.decompress(restored)
    except (binascii.Error, OSError, EOFError, zlib.error) as e:
        raise EncodeError(path=path, underlying_error=f"verification failed: {e}") from e
    if restored != data:
        raise EncodeError(path=path, underlying_error="encoded payload does not round-trip")

    chunks = [encoded[i:i + segment_chars] for i in range(0, len(encoded), segment_chars)] or [""]
    lines: list[str] = []
    for index, chunk in enumerate(chunks, start=1):
        if len(chunks) > 1:
            lines.append(SEGMENT_MARKER.format(index=index, total=len(chunks)))
        lines.extend(_wrap(chunk))

    return EncodedPayload(
        encoding=PayloadEncoding.BASE64_GZIP if compress else PayloadEncoding.BASE64,
        body="\n".join(lines),
        segments=len(chunks),
        digest=hashlib.sha256(encoded.encode("ascii")).hexdigest(),
    )


def encode_payload(
    data: bytes,
    is_binary: bool,
    path: str = "",
    compress: bool = False,
    segment_chars: int = DEFAULT_SEGMENT_CHARS,
) -> EncodedPayload:
    """
    Encode an entry's bytes for embedding.

    Args:
        data: Raw file contents
        is_binary: Classifier verdict
        path: Relative path, for error context
        compress: Gzip binary payloads before base64
        segment_chars: Maximum base64 characters per segment

    Raises:
        EncodeError: If the payload cannot be encoded losslessly
    """
    if is_binary:
        return encode_binary(data, compress=compress, segment_chars=segment_chars, path=path)

    body = escape_text(data)
    if unescape_text(body) != data:
        raise EncodeError(path=path, underlying_error="escaped text does not round-trip")
    return EncodedPayload(encoding=PayloadEncoding.TEXT, body=body)


def _reassemble(body: str, segments: int, path: str) -> str:
    chunks: list[str] = []
    seen = 0
    for line in body.split("\n"):
        marker = _SEGMENT_MARKER_RE.match(line)
        if marker:
            index, total = int(marker.group(1)), int(marker.group(2))
            if index != seen + 1 or total != segments:
                raise DecodeError(
                    path=path,
                    underlying_error=f"unexpected segment marker {line!r}",
                )
            seen = index
            continue
        chunks.append(line.strip())

    if segments > 1 and seen != segments:
        raise DecodeError(
            path=path,
            underlying_error=f"expected {segments} segments, found {seen}",
        )
    if segments == 1 and seen:
        raise DecodeError(path=path, underlying_error="segment markers in a single-segment payload")
    return "".join(chunks)


def decode_payload(
    encoding: PayloadEncoding | str,
    body: str,
    path: str = "",
    segments: int = 1,
    digest: str | None = None,
) -> bytes:
    """
    Decode an embedded payload back to the original bytes.

    Raises:
        DecodeError: On malformed base64, bad escapes, a wrong segment count
            or failed decompression
        ChunkDigestMismatchError: If the reassembled base64 does not match
            its recorded digest
    """
    encoding = PayloadEncoding(encoding)

    if encoding is PayloadEncoding.TEXT:
        try:
            return unescape_text(body)
        except ValueError as e:
            raise DecodeError(path=path, underlying_error=str(e)) from e

    encoded = _reassemble(body, segments, path)
    if digest is not None:
        actual = hashlib.sha256(encoded.encode("ascii", "replace")).hexdigest()
        if actual != digest:
            raise ChunkDigestMismatchError(
                path=path,
                expected_digest=digest,
                actual_digest=actual,
            )

    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(path=path, underlying_error=f"invalid base64: {e}") from e

    if encoding is PayloadEncoding.BASE64_GZIP:
        try:
            raw = gzip.decompress(raw)
        except (OSError, EOFError, zlib.error) as e:
            raise DecodeError(path=path, underlying_error=f"decompression failed: {e}") from e
    return raw
