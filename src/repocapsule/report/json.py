"""
JSON reporting for RepoCapsule.

Structured output of build and run results for programmatic consumption.

Design Principles:
    - Consistent schema: Same keys for every mode, null where not applicable
    - Human-readable keys: Use descriptive snake_case names
    - ISO timestamps: Standard datetime format
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from repocapsule.assembler import BuildResult
from repocapsule.errors import CapsuleError
from repocapsule.runtime.engine import RunResult


def build_result_to_dict(result: BuildResult) -> dict[str, Any]:
    """Convert a build result to a JSON-ready dictionary."""
    artifact = result.artifact
    return {
        "report_version": "1.0",
        "generated_at": datetime.now(UTC).isoformat(),
        "success": True,
        "artifact_path": str(result.output_path),
        "index_path": str(result.index_path) if result.index_path else None,
        "repo_name": artifact.repo_name,
        "repo_version": artifact.repo_version,
        "source_hash": artifact.source_hash,
        "source_commit": artifact.source_commit,
        "created_at": artifact.created_at.isoformat(),
        "file_count": artifact.file_count,
        "total_size_bytes": artifact.total_size_bytes,
        "exclusion_rules": artifact.exclusion_rules,
        "unreadable": list(result.scan.skipped),
        "files": [
            {
                "path": record.relative_path,
                "size_bytes": record.size_bytes,
                "permissions": record.permissions,
                "binary": record.is_binary,
                "encoding": record.encoding.value,
                "segments": record.segments,
            }
            for record in artifact.records
        ],
    }


def run_result_to_dict(result: RunResult) -> dict[str, Any]:
    """Convert an engine run result to a JSON-ready dictionary."""
    state = result.state
    diff = result.diff
    return {
        "report_version": "1.0",
        "generated_at": datetime.now(UTC).isoformat(),
        "mode": result.mode.value,
        "success": result.success,
        "exit_code": result.exit_code,
        "target_dir": str(result.target_dir) if result.target_dir else None,
        "expected_count": state.expected_count,
        "success_count": state.success_count,
        "skipped_count": state.skipped_count,
        "failed_entries": result.failed_entries,
        "expected_hash": result.expected_hash,
        "computed_hash": result.computed_hash,
        "backup_path": str(result.backup_path) if result.backup_path else None,
        "diff": {
            "has_differences": diff.has_differences,
            "only_in_reference": diff.only_in_reference,
            "only_in_capsule": diff.only_in_capsule,
            "changed": diff.changed,
            "permission_changes": [
                {"path": p, "reference": ref, "capsule": cap}
                for p, ref, cap in diff.permission_changes
            ],
        } if diff is not None else None,
        "entries": [
            {"path": o.relative_path, "state": o.state.value, "detail": o.detail}
            for o in state.outcomes
        ],
        "error": result.error.to_dict() if result.error is not None else None,
    }


def error_to_dict(error: Exception, traceback_text: str | None = None) -> dict[str, Any]:
    """Convert any exception into the CLI's JSON error shape."""
    if isinstance(error, CapsuleError):
        output: dict[str, Any] = {"error": True, **error.to_dict()}
    else:
        output = {
            "error": True,
            "error_type": error.__class__.__name__,
            "message": str(error),
        }
    if traceback_text:
        output["traceback"] = traceback_text
    return output


def dumps(data: dict[str, Any], indent: int = 2) -> str:
    """Serialize a report dictionary."""
    return json.dumps(data, indent=indent, default=_json_serializer)


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for types not handled by default."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Path):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
