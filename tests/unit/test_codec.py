"""
Unit tests for the content codec.

Tests cover:
- Text escaping of quotes, backslashes, controls and invalid UTF-8
- Binary base64 encoding, compression and segmentation
- Segment and digest validation on decode
- Delimiter generation
"""

import hashlib
import os

import pytest

from repocapsule.errors import ChunkDigestMismatchError, DecodeError, EncodeError
from repocapsule.runtime.codec import (
    BASE64_LINE_WIDTH,
    PayloadEncoding,
    decode_payload,
    encode_binary,
    encode_payload,
    escape_line,
    escape_text,
    make_delimiter,
    sanitize_name,
    unescape_line,
    unescape_text,
)


class TestTextEscaping:
    """Tests for the text payload escape scheme."""

    def test_plain_text_unchanged(self) -> None:
        assert escape_text(b"hello\n\tworld\n") == "hello\n\tworld\n"

    def test_utf8_passes_through(self) -> None:
        data = "naïve café ✓\n".encode()
        assert escape_text(data) == "naïve café ✓\n"

    def test_quote_and_backslash_escaped(self) -> None:
        assert escape_text(b"it's \\n") == "it\\'s \\\\n"

    def test_triple_quote_cannot_survive(self) -> None:
        assert "'''" not in escape_text(b"x = '''doc'''\n")

    def test_controls_escaped(self) -> None:
        assert escape_text(b"a\x00b\rc\x7f") == "a\\x00b\\x0dc\\x7f"

    def test_invalid_utf8_escaped(self) -> None:
        assert escape_text(b"\xff\xfe ok") == "\\xff\\xfe ok"

    @pytest.mark.parametrize(
        "data",
        [
            b"",
            b"no newline at end",
            b"\n\n\n",
            b"'''\\'\\\\",
            b"\x00\x01\x02\xff\xc3",
            "mixed ✓ \udcff".encode("utf-8", "surrogateescape"),
            os.urandom(64),
        ],
    )
    def test_lossless(self, data: bytes) -> None:
        assert unescape_text(escape_text(data)) == data

    def test_unknown_escape_rejected(self) -> None:
        with pytest.raises(ValueError):
            unescape_text("bad \\q escape")

    def test_trailing_backslash_rejected(self) -> None:
        with pytest.raises(ValueError):
            unescape_text("dangling \\")

    def test_line_escape_covers_newline(self) -> None:
        escaped = escape_line("odd\nname's.txt")
        assert "\n" not in escaped
        assert unescape_line(escaped) == "odd\nname's.txt"


class TestBinaryEncoding:
    """Tests for base64 payloads."""

    def test_lines_wrapped(self) -> None:
        payload = encode_binary(bytes(range(256)) * 4)
        lines = payload.body.split("\n")
        assert all(len(line) <= BASE64_LINE_WIDTH for line in lines)
        assert payload.encoding is PayloadEncoding.BASE64
        assert payload.segments == 1

    def test_digest_covers_base64_text(self) -> None:
        payload = encode_binary(b"\x00\x01\x02")
        joined = payload.body.replace("\n", "")
        assert payload.digest == hashlib.sha256(joined.encode("ascii")).hexdigest()

    def test_compressed_roundtrip(self) -> None:
        data = b"\x00" * 10_000
        payload = encode_binary(data, compress=True)
        assert payload.encoding is PayloadEncoding.BASE64_GZIP
        assert len(payload.body) < 1000
        assert decode_payload(payload.encoding, payload.body, digest=payload.digest) == data

    def test_segmented_roundtrip(self) -> None:
        data = os.urandom(3000)
        payload = encode_binary(data, segment_chars=1000)
        assert payload.segments == 4
        assert "~~ segment 1 of 4 ~~" in payload.body
        restored = decode_payload(payload.encoding, payload.body, segments=payload.segments, digest=payload.digest)
        assert restored == data

    def test_empty_binary(self) -> None:
        payload = encode_binary(b"")
        assert decode_payload(payload.encoding, payload.body, digest=payload.digest) == b""

    def test_nonpositive_segment_size_rejected(self) -> None:
        with pytest.raises(EncodeError):
            encode_binary(b"x", segment_chars=0)


class TestEncodePayload:
    """Tests for the dispatching encoder."""

    def test_text(self) -> None:
        payload = encode_payload(b"hello\n", is_binary=False)
        assert payload.encoding is PayloadEncoding.TEXT
        assert payload.digest is None

    def test_binary(self) -> None:
        payload = encode_payload(b"\x00\x01", is_binary=True, compress=True)
        assert payload.encoding is PayloadEncoding.BASE64_GZIP

    def test_binary_misclassified_as_text_is_lossless(self) -> None:
        data = os.urandom(512)
        payload = encode_payload(data, is_binary=False)
        assert decode_payload(payload.encoding, payload.body) == data


class TestDecodeValidation:
    """Tests for decode-time checks."""

    def test_digest_mismatch(self) -> None:
        payload = encode_binary(b"important bytes")
        tampered = "A" + payload.body[1:]
        with pytest.raises(ChunkDigestMismatchError) as exc_info:
            decode_payload(payload.encoding, tampered, path="x.bin", digest=payload.digest)
        assert exc_info.value.path == "x.bin"

    def test_invalid_base64(self) -> None:
        with pytest.raises(DecodeError):
            decode_payload(PayloadEncoding.BASE64, "not*base64!")

    def test_missing_segment(self) -> None:
        payload = encode_binary(os.urandom(300), segment_chars=200)
        truncated = payload.body.split("~~ segment 2 of 2 ~~")[0].rstrip("\n")
        with pytest.raises(DecodeError):
            decode_payload(payload.encoding, truncated, segments=2)

    def test_markers_in_single_segment_payload(self) -> None:
        with pytest.raises(DecodeError):
            decode_payload(PayloadEncoding.BASE64, "~~ segment 1 of 1 ~~\nAAAA", segments=1)

    def test_bad_text_escape(self) -> None:
        with pytest.raises(DecodeError):
            decode_payload(PayloadEncoding.TEXT, "\\z")

    def test_corrupt_gzip(self) -> None:
        body = encode_binary(b"not gzip").body
        with pytest.raises(DecodeError):
            decode_payload(PayloadEncoding.BASE64_GZIP, body)


class TestDelimiters:
    """Tests for delimiter generation."""

    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("src/main.py", "src_main_py"),
            ("1st.txt", "_1st_txt"),
            ("", "file"),
            ("ünï", "___"),
        ],
    )
    def test_sanitize_name(self, path: str, expected: str) -> None:
        assert sanitize_name(path) == expected

    def test_delimiter_shape(self) -> None:
        delimiter = make_delimiter("src/a.txt")
        assert delimiter.startswith("EOF_")
        assert delimiter.endswith("_src_a_txt")

    def test_delimiters_unique(self) -> None:
        assert len({make_delimiter("a") for _ in range(50)}) == 50

    def test_delimiter_avoids_body(self, monkeypatch: pytest.MonkeyPatch) -> None:
        tokens = iter(["clash", "fresh"])
        monkeypatch.setattr("repocapsule.runtime.codec._unique_token", lambda: next(tokens))
        delimiter = make_delimiter("a", body="line\nEOF_clash_a\n")
        assert delimiter == "EOF_fresh_a"
