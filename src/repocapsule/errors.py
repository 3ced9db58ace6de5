"""
Exception hierarchy for RepoCapsule.

All RepoCapsule exceptions inherit from CapsuleError, allowing callers to
catch every RepoCapsule-specific exception with a single except clause.

Exception Categories:
    - ConfigurationError: Bad options, missing capability, bad target state
    - ScanError: A source file or directory could not be read
    - CodecError: A payload could not be encoded or decoded
    - ReconstructionError: An entry could not be written to the target
    - IntegrityMismatchError: Recomputed digest differs from the stamped one
    - UserDeclinedError: An interactive confirmation was refused
    - ArtifactFormatError: The artifact text is structurally malformed

Design Principles:
    - All errors have error codes for programmatic handling
    - All errors include context (path, digests, option where applicable)
    - All errors provide actionable suggestions where possible
    - Errors are designed to be both human-readable and machine-parseable

This module only uses the standard library because it is bundled into every
generated artifact.
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Configuration errors: 1xxx
ERROR_CONFIG_INVALID = 1001
ERROR_CONFIG_MISSING_CAPABILITY = 1002
ERROR_CONFIG_OUTPUT_EXISTS = 1003
ERROR_CONFIG_TARGET_STATE = 1004

# Scan errors: 2xxx
ERROR_SCAN_UNREADABLE = 2001
ERROR_SCAN_EXCLUSION_DIVERGENCE = 2002

# Codec errors: 3xxx
ERROR_CODEC_ENCODE_FAILED = 3001
ERROR_CODEC_DECODE_FAILED = 3002
ERROR_CODEC_DIGEST_MISMATCH = 3003

# Reconstruction errors: 4xxx
ERROR_RECONSTRUCT_WRITE_FAILED = 4001
ERROR_RECONSTRUCT_INTEGRITY_MISMATCH = 4002
ERROR_RECONSTRUCT_USER_DECLINED = 4003

# Artifact errors: 5xxx
ERROR_ARTIFACT_MALFORMED = 5001


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class CapsuleError(Exception):
    """
    Base exception for all RepoCapsule errors.

    All RepoCapsule exceptions inherit from this class, providing:
    - Consistent error code for programmatic handling
    - Human-readable message
    - Optional suggestion for resolution
    - Optional context dict for debugging

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


@dataclass
class ConfigurationError(CapsuleError):
    """
    Raised when options or environment make the requested work impossible.

    These errors are fatal and are raised before any file is touched.

    Attributes:
        option: The option or setting at fault, if any
    """

    option: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid configuration: {self.option}"
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID
        self.context["option"] = self.option


@dataclass
class MissingCapabilityError(ConfigurationError):
    """Raised when a required platform capability is unavailable."""

    capability: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Required capability unavailable: {self.capability}"
        if self.code == 0:
            self.code = ERROR_CONFIG_MISSING_CAPABILITY
        if not self.suggestion:
            self.suggestion = "Run 'repocapsule doctor' to check the environment"
        super().__post_init__()
        self.context["capability"] = self.capability


@dataclass
class OutputExistsError(ConfigurationError):
    """Raised when the artifact path already exists and overwrite was not allowed."""

    path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Output file already exists: {self.path}"
        if self.code == 0:
            self.code = ERROR_CONFIG_OUTPUT_EXISTS
        if not self.suggestion:
            self.suggestion = "Use --force to overwrite it"
        super().__post_init__()
        self.context["path"] = self.path


@dataclass
class TargetStateError(ConfigurationError):
    """Raised when the target directory is in the wrong state for the mode."""

    target_dir: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Target directory '{self.target_dir}' {self.reason}"
        if self.code == 0:
            self.code = ERROR_CONFIG_TARGET_STATE
        super().__post_init__()
        self.context.update({
            "target_dir": self.target_dir,
            "reason": self.reason,
        })


# =============================================================================
# Scan Errors
# =============================================================================


@dataclass
class ScanError(CapsuleError):
    """
    Raised when a source file or directory cannot be read during a scan.

    Scans log these and keep going; the affected path is left out of the
    artifact.

    Attributes:
        path: The path that could not be read
        underlying_error: Text of the OS error
    """

    path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Cannot read {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_SCAN_UNREADABLE
        self.context.update({
            "path": self.path,
            "underlying_error": self.underlying_error,
        })


@dataclass
class ExclusionDivergenceError(ScanError):
    """Raised when the scanned file set and the hashed file set differ."""

    only_scanned: list[str] = field(default_factory=list)
    only_hashed: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                "Exclusion rules selected different files for scanning and hashing "
                f"({len(self.only_scanned)} only scanned, {len(self.only_hashed)} only hashed)"
            )
        if self.code == 0:
            self.code = ERROR_SCAN_EXCLUSION_DIVERGENCE
        if not self.suggestion:
            self.suggestion = "Check for files that changed while the build was running"
        super().__post_init__()
        self.context.update({
            "only_scanned": self.only_scanned,
            "only_hashed": self.only_hashed,
        })


# =============================================================================
# Codec Errors
# =============================================================================


@dataclass
class CodecError(CapsuleError):
    """
    Base class for payload encoding and decoding errors.

    Attributes:
        path: Relative path of the entry being encoded or decoded
        underlying_error: What went wrong
    """

    path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context.update({
            "path": self.path,
            "underlying_error": self.underlying_error,
        })


@dataclass
class EncodeError(CodecError):
    """Raised when a payload cannot be encoded. Fatal to the build."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to encode {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CODEC_ENCODE_FAILED
        super().__post_init__()


@dataclass
class DecodeError(CodecError):
    """Raised when an embedded payload cannot be decoded. Fatal to that entry only."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to decode {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CODEC_DECODE_FAILED
        super().__post_init__()


@dataclass
class ChunkDigestMismatchError(DecodeError):
    """Raised when a reassembled binary payload does not match its recorded digest."""

    expected_digest: str = ""
    actual_digest: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.underlying_error:
            self.underlying_error = (
                f"payload digest mismatch: expected {self.expected_digest[:12]}..., "
                f"got {self.actual_digest[:12]}..."
            )
        if self.code == 0:
            self.code = ERROR_CODEC_DIGEST_MISMATCH
        super().__post_init__()
        self.context.update({
            "expected_digest": self.expected_digest,
            "actual_digest": self.actual_digest,
        })


# =============================================================================
# Reconstruction Errors
# =============================================================================


@dataclass
class ReconstructionError(CapsuleError):
    """
    Base class for errors while materializing entries into a target.

    Attributes:
        path: Relative path of the entry
    """

    path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["path"] = self.path


@dataclass
class WriteError(ReconstructionError):
    """Raised when an entry or its parent directory cannot be written."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to write {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_RECONSTRUCT_WRITE_FAILED
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class IntegrityMismatchError(CapsuleError):
    """
    Raised when a recomputed tree digest differs from the stamped digest.

    Both digests are always carried in full so the user can compare them.
    """

    expected_hash: str = ""
    actual_hash: str = ""
    target_dir: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Integrity mismatch in {self.target_dir}: "
                f"embedded {self.expected_hash}, computed {self.actual_hash}"
            )
        if self.code == 0:
            self.code = ERROR_RECONSTRUCT_INTEGRITY_MISMATCH
        if not self.suggestion:
            self.suggestion = (
                "Use --diff to see what drifted, or --recalculate-hash to accept the changes"
            )
        self.context.update({
            "expected_hash": self.expected_hash,
            "actual_hash": self.actual_hash,
            "target_dir": self.target_dir,
        })


@dataclass
class UserDeclinedError(CapsuleError):
    """Raised when the user refuses an interactive confirmation."""

    action: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Cancelled by user: {self.action}"
        if self.code == 0:
            self.code = ERROR_RECONSTRUCT_USER_DECLINED
        self.context["action"] = self.action


# =============================================================================
# Artifact Errors
# =============================================================================


@dataclass
class ArtifactFormatError(CapsuleError):
    """Raised when an artifact cannot be parsed."""

    artifact_path: str = ""
    line_number: int | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Malformed artifact: {self.artifact_path}"
        if self.line_number is not None and f"line {self.line_number}" not in self.message:
            self.message = f"{self.message} (line {self.line_number})"
        if self.code == 0:
            self.code = ERROR_ARTIFACT_MALFORMED
        if not self.suggestion:
            self.suggestion = "Regenerate the artifact, or undo manual edits to its markers"
        self.context.update({
            "artifact_path": self.artifact_path,
            "line_number": self.line_number,
        })
