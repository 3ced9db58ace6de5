"""
Schema definitions for RepoCapsule.

This module defines the Pydantic models used on the generation side:
- BuildConfig: Everything a build needs (source, output, rules, policies)
- ClassifierPolicy / CodecPolicy: Tunable heuristics and encoding settings
- SourceEntry: One scanned file
- FileRecord: One encoded file, ready to embed
- Artifact: The assembled artifact before rendering

Design Decisions:
    - Configuration and scan results are immutable (frozen=True)
    - Unknown keys are rejected (extra="forbid"), so typos in YAML fail loudly
    - Classifier thresholds are data, not code; they can be tuned per build
    - Artifact is the only mutable model; nothing mutates it after assembly

Why Pydantic?
    - Type safety with runtime validation
    - YAML config files validate through the same models as CLI options
    - Clear error messages for invalid data
"""

import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from repocapsule.runtime.codec import DEFAULT_SEGMENT_CHARS, PayloadEncoding
from repocapsule.runtime.rules import DEFAULT_EXCLUDES


REPO_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
PERMISSIONS_PATTERN = r"^[0-7]{3,4}$"
DEFAULT_REPO_VERSION = "1.0.0"

DEFAULT_TEXT_APPLICATION_SUBTYPES = [
    "json",
    "xml",
    "javascript",
    "xhtml+xml",
    "rss+xml",
    "atom+xml",
    "yaml",
    "toml",
    "csv",
    "x-sh",
    "x-shellscript",
    "x-httpd-php",
    "x-perl",
    "x-python",
    "x-ruby",
    "sql",
    "markdown",
    "ld+json",
    "svg+xml",
]

DEFAULT_TEXT_DESCRIPTION_PATTERN = (
    r"(ASCII|UTF-8|ISO-8859) text|shell script|JSON data|XML.* text|empty|source code"
    r"|HTML document|CSS stylesheet|CSV text|YAML document|TOML document"
    r"|configuration file|data|script text"
)


# =============================================================================
# Policies
# =============================================================================


class ClassifierPolicy(BaseModel):
    """
    Heuristics for the text/binary classifier.

    None of these values are load-bearing for correctness: both encodings
    are lossless, so a misclassification only costs artifact size and
    editability.

    Attributes:
        sniff_bytes: How many leading bytes are inspected
        use_type_sniffer: Whether to consult the `file` command at all
        require_type_sniffer: Refuse to classify without the sniffer
        sniffer_command: Name or path of the type sniffer
        sniffer_timeout_seconds: Per-invocation timeout for the sniffer
        binary_mime_families: MIME top-level types treated as binary
        text_application_subtypes: Subtypes of those families that are text
        text_description_pattern: Regex over the sniffer's description
        fallback_accept_utf8: Treat printable UTF-8 as text without a sniffer
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    sniff_bytes: int = Field(default=1024, description="Leading bytes inspected", gt=0)
    use_type_sniffer: bool = Field(default=True, description="Consult the file command")
    require_type_sniffer: bool = Field(default=False, description="Fail the build if the sniffer is missing")
    sniffer_command: str = Field(default="file", description="Type sniffer executable", min_length=1)
    sniffer_timeout_seconds: float = Field(default=10.0, description="Sniffer timeout", gt=0)
    binary_mime_families: list[str] = Field(
        default_factory=lambda: ["application", "image", "audio", "video", "font"],
        description="MIME families that default to binary",
    )
    text_application_subtypes: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TEXT_APPLICATION_SUBTYPES),
        description="Subtypes of binary families that are actually text",
    )
    text_description_pattern: str = Field(
        default=DEFAULT_TEXT_DESCRIPTION_PATTERN,
        description="Regex over the sniffer's brief description that means text",
    )
    fallback_accept_utf8: bool = Field(
        default=True,
        description="Accept printable UTF-8 as text when no sniffer is available",
    )

    @field_validator("text_description_pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        """Ensure the description pattern compiles."""
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid text_description_pattern: {e}") from e
        return v


class CodecPolicy(BaseModel):
    """
    Settings for binary payload encoding.

    Attributes:
        compress_binaries: Gzip binary payloads before base64
        segment_chars: Maximum base64 characters per segment
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    compress_binaries: bool = Field(default=False, description="Gzip binary payloads")
    segment_chars: int = Field(
        default=DEFAULT_SEGMENT_CHARS,
        description="Maximum base64 characters per segment",
        ge=76,
    )


# =============================================================================
# Build configuration
# =============================================================================


class BuildConfig(BaseModel):
    """
    Complete configuration for one artifact build.

    Attributes:
        source_dir: Directory to capture
        output_dir: Where setup-<name>.py is written
        name: Repository name (defaults to the source directory's name)
        version: Repository version stamped in the header
        include_vcs: Keep .git and drop the default exclusions
        excludes: Extra exclusion patterns
        default_excludes: Patterns applied unless include_vcs is set
        metadata: Free-form lines copied into the artifact
        create_index: Also write a path:line index beside the artifact
        force: Overwrite an existing artifact without asking
        classifier: Classifier heuristics
        codec: Binary encoding settings
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    source_dir: Path = Field(..., description="Directory to capture")
    output_dir: Path = Field(default=Path("."), description="Artifact output directory")
    name: str | None = Field(default=None, description="Repository name")
    version: str = Field(default=DEFAULT_REPO_VERSION, description="Repository version", min_length=1)
    include_vcs: bool = Field(default=False, description="Include .git and skip default excludes")
    excludes: list[str] = Field(default_factory=list, description="Extra exclusion patterns")
    default_excludes: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDES),
        description="Default exclusion patterns",
    )
    metadata: list[str] = Field(default_factory=list, description="Custom metadata lines")
    create_index: bool = Field(default=False, description="Write a path:line index file")
    force: bool = Field(default=False, description="Overwrite existing output")
    classifier: ClassifierPolicy = Field(default_factory=ClassifierPolicy)
    codec: CodecPolicy = Field(default_factory=CodecPolicy)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        """Names become file names, so keep them to a safe character set."""
        if v is not None and not REPO_NAME_PATTERN.match(v):
            raise ValueError(
                f"Invalid repository name '{v}'. "
                "Use letters, digits, '.', '_' or '-', starting with a letter or digit"
            )
        return v

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Versions are single-line header values."""
        if "\n" in v or "\r" in v:
            raise ValueError("Version must be a single line")
        return v

    @field_validator("excludes", "default_excludes")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        """Reject empty exclusion patterns."""
        for pattern in v:
            if not pattern.strip():
                raise ValueError("Exclusion patterns must not be empty")
        return v

    @property
    def repo_name(self) -> str:
        if self.name:
            return self.name
        derived = re.sub(r"[^A-Za-z0-9._-]", "_", self.source_dir.resolve().name)
        return derived.lstrip("._-") or "repo"

    @property
    def output_path(self) -> Path:
        return self.output_dir / f"setup-{self.repo_name}.py"

    @property
    def index_path(self) -> Path:
        return self.output_path.with_name(self.output_path.name + ".index")


# =============================================================================
# Scan and assembly models
# =============================================================================


class SourceEntry(BaseModel):
    """
    One file selected by the scan.

    Attributes:
        relative_path: POSIX path below the source root
        absolute_path: Location on disk
        size_bytes: File size at scan time
        permissions: Octal permission bits, 3 or 4 digits
        is_binary: Classifier verdict
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    relative_path: str = Field(..., description="Path below the source root", min_length=1)
    absolute_path: Path = Field(..., description="Location on disk")
    size_bytes: int = Field(..., description="Size in bytes", ge=0)
    permissions: str = Field(default="644", description="Octal permissions", pattern=PERMISSIONS_PATTERN)
    is_binary: bool = Field(default=False, description="Classifier verdict")


class FileRecord(BaseModel):
    """
    One encoded entry, ready to be rendered into the artifact.

    Attributes:
        relative_path: POSIX path below the source root
        size_bytes: Original size
        permissions: Octal permission bits
        is_binary: Classifier verdict
        encoding: Payload representation
        delimiter: Unique terminator line
        payload: Encoded body
        segments: Binary segment count
        digest: SHA-256 of the reassembled base64 text (binary only)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    relative_path: str = Field(..., min_length=1)
    size_bytes: int = Field(..., ge=0)
    permissions: str = Field(..., pattern=PERMISSIONS_PATTERN)
    is_binary: bool
    encoding: PayloadEncoding
    delimiter: str = Field(..., pattern=r"^[A-Za-z0-9_]+$")
    payload: str = Field(..., repr=False)
    segments: int = Field(default=1, ge=1)
    digest: str | None = None


class Artifact(BaseModel):
    """
    An assembled artifact before rendering.

    Attributes:
        repo_name: Repository name
        repo_version: Repository version
        source_hash: Stamped tree digest
        created_at: Generation time (UTC)
        file_count: Number of embedded entries
        total_size_bytes: Sum of entry sizes
        exclusion_rules: Rules in serialized tagged form
        records: Entries in hash order
        metadata_lines: Free-form lines
        source_commit: Short VCS commit of the source, if known
    """

    model_config = ConfigDict(extra="forbid")

    repo_name: str
    repo_version: str
    source_hash: str = Field(..., pattern=r"^[0-9a-f]{64}$")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    file_count: int = Field(default=0, ge=0)
    total_size_bytes: int = Field(default=0, ge=0)
    exclusion_rules: list[dict[str, str]] = Field(default_factory=list)
    records: list[FileRecord] = Field(default_factory=list)
    metadata_lines: list[str] = Field(default_factory=list)
    source_commit: str | None = None


# =============================================================================
# YAML Loading Helpers
# =============================================================================


_LIST_KEYS = ("excludes", "metadata")


def _merge(data: Any, overrides: dict[str, Any]) -> dict[str, Any]:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("Build config must be a YAML mapping")
    merged = dict(data)
    for key, value in overrides.items():
        if value is None:
            continue
        if key in _LIST_KEYS:
            merged[key] = list(merged.get(key) or []) + list(value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str, **overrides: Any) -> BuildConfig:
    """
    Load a build configuration from a YAML file.

    Keyword overrides (typically CLI options) replace scalar keys and extend
    the `excludes` and `metadata` lists. None values are ignored.

    Args:
        path: Path to the YAML file
        **overrides: Values that take precedence over the file

    Returns:
        Validated BuildConfig object

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return BuildConfig.model_validate(_merge(data, overrides))


def load_config_from_string(content: str, **overrides: Any) -> BuildConfig:
    """Load a build configuration from a YAML string."""
    data = yaml.safe_load(content)
    return BuildConfig.model_validate(_merge(data, overrides))


def config_from_options(**overrides: Any) -> BuildConfig:
    """Build a configuration from keyword options alone (None values ignored)."""
    return BuildConfig.model_validate(_merge({}, overrides))
