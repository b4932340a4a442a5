"""Verify that kexec preserves multiboot information across the handoff."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version as pkg_version

from .errors import (
    ArtifactMissing,
    FragmentUnparsable,
    FragmentUnterminated,
    GuestTimeoutOrCrash,
    HarnessError,
    MarkerNotFound,
    StructuralMismatch,
)
from .extract import DEBUG_PREFIX, POST_HANDOFF_MARKER, extract_post_boot, extract_records, extract_snapshot
from .oracle import Comparison, assert_records_equal, compare_records

__all__ = [
    "ArtifactMissing",
    "Comparison",
    "DEBUG_PREFIX",
    "FragmentUnparsable",
    "FragmentUnterminated",
    "GuestTimeoutOrCrash",
    "HarnessError",
    "MarkerNotFound",
    "POST_HANDOFF_MARKER",
    "StructuralMismatch",
    "assert_records_equal",
    "compare_records",
    "extract_post_boot",
    "extract_records",
    "extract_snapshot",
]


def _discover_version() -> str:
    try:
        return pkg_version("multiboot-harness")
    except PackageNotFoundError:
        return "unknown"


__version__ = _discover_version()
