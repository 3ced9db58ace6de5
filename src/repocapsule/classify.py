"""
Text/binary classification of source files.

The classifier decides how a file is embedded: as editable text or as
base64. Both encodings are lossless, so the decision only affects artifact
size and how easy the payload is to edit by hand.

Decision order (first match wins):
    1. Unreadable      -> text (with a warning)
    2. Empty           -> text
    3. NUL in head     -> binary
    4. Type sniffer    -> MIME type, charset and description rules
    5. No sniffer      -> printable-character check over the head

Design Decisions:
    - The sniffer is the `file` command, run with an argv list (no shell)
      under LC_ALL=C so its output does not depend on the user's locale
    - The sniffer is injectable so rules can be exercised without it
    - All thresholds and lists come from ClassifierPolicy
"""

import os
import re
import shutil
import subprocess
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from repocapsule.errors import MissingCapabilityError
from repocapsule.runtime.reporting import Reporter
from repocapsule.schema import ClassifierPolicy


# Sniffer signature: (path, extra flags) -> brief output, or "" on failure
Sniffer = Callable[[Path, tuple[str, ...]], str]

_WHITESPACE_CONTROLS = b"\t\n\r\f\v"


class FileKind(str, Enum):
    """How a file is embedded."""

    TEXT = "text"
    BINARY = "binary"


def command_sniffer(command: str, timeout: float = 10.0) -> Sniffer:
    """Build a sniffer that runs `<command> --brief <flags> <path>`."""

    def sniff(path: Path, flags: tuple[str, ...]) -> str:
        env = dict(os.environ, LC_ALL="C")
        try:
            completed = subprocess.run(
                [command, "--brief", *flags, str(path)],
                capture_output=True,
                text=True,
                env=env,
                timeout=timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired):
            return ""
        if completed.returncode != 0:
            return ""
        return completed.stdout.strip()

    return sniff


def _decodable_prefix(head: bytes) -> str | None:
    try:
        return head.decode("utf-8")
    except UnicodeDecodeError as e:
        # A multi-byte character cut off at the sniff boundary is fine.
        if e.reason == "unexpected end of data" and e.end == len(head):
            return head[:e.start].decode("utf-8", "strict")
        return None


class Classifier:
    """
    Labels files as text or binary.

    Example:
        classifier = Classifier(ClassifierPolicy())
        kind = classifier.classify(Path("logo.png"))
    """

    def __init__(
        self,
        policy: ClassifierPolicy | None = None,
        reporter: Reporter | None = None,
        sniffer: Sniffer | None = None,
    ) -> None:
        self.policy = policy or ClassifierPolicy()
        self.reporter = reporter
        self._description_re = re.compile(self.policy.text_description_pattern)
        if sniffer is not None:
            self.sniffer: Sniffer | None = sniffer
        elif self.policy.use_type_sniffer and shutil.which(self.policy.sniffer_command):
            self.sniffer = command_sniffer(self.policy.sniffer_command, self.policy.sniffer_timeout_seconds)
        elif self.policy.require_type_sniffer:
            raise MissingCapabilityError(capability=f"type sniffer '{self.policy.sniffer_command}'")
        else:
            self.sniffer = None

    @property
    def has_sniffer(self) -> bool:
        return self.sniffer is not None

    def classify(self, path: Path) -> FileKind:
        """
        Classify one file.

        Args:
            path: File to inspect

        Returns:
            FileKind.TEXT or FileKind.BINARY
        """
        try:
            with path.open("rb") as f:
                head = f.read(self.policy.sniff_bytes)
        except OSError as e:
            if self.reporter is not None:
                self.reporter.warn(f"Cannot read {path} for classification ({e.strerror or e}); treating as text")
            return FileKind.TEXT

        if not head:
            return FileKind.TEXT
        if b"\x00" in head:
            return FileKind.BINARY
        if self.sniffer is not None:
            verdict = self._classify_with_sniffer(path, self.sniffer)
            if verdict is not None:
                return verdict
        return self.classify_head(head)

    def classify_head(self, head: bytes) -> FileKind:
        """Printable-character fallback over the leading bytes."""
        stripped = head.translate(None, _WHITESPACE_CONTROLS)
        if all(0x20 <= b <= 0x7E for b in stripped):
            return FileKind.TEXT
        if self.policy.fallback_accept_utf8:
            text = _decodable_prefix(stripped)
            if text is not None and text.isprintable():
                return FileKind.TEXT
        return FileKind.BINARY

    def _classify_with_sniffer(self, path: Path, sniffer: Sniffer) -> FileKind | None:
        mime = sniffer(path, ("--mime-type",))
        if not mime:
            return None

        family, _, subtype = mime.partition("/")
        if family == "text":
            if "charset=binary" in sniffer(path, ("--mime",)):
                return FileKind.BINARY
            return FileKind.TEXT
        if family in self.policy.binary_mime_families:
            if subtype in self.policy.text_application_subtypes:
                return FileKind.TEXT
            return FileKind.BINARY

        description = sniffer(path, ())
        if self._description_re.search(description):
            return FileKind.TEXT
        return FileKind.BINARY
