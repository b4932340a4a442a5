"""Failure taxonomy for multiboot handoff verification."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from multiboot_harness.oracle import Comparison

EXCERPT_LIMIT = 2000


def make_excerpt(text: Optional[str], *, limit: int = EXCERPT_LIMIT) -> str:
    """Return the tail of *text* bounded to *limit* characters."""

    if not text:
        return ""
    if len(text) <= limit:
        return text
    return "...\n" + text[-limit:]


class HarnessError(Exception):
    """Base class for all scenario failures.

    ``excerpt`` holds the slice of captured output that explains the failure so
    a report can be read without re-running the VM.
    """

    def __init__(self, message: str, *, excerpt: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.excerpt = excerpt

    def describe(self) -> str:
        lines = [f"{type(self).__name__}: {self.message}"]
        if self.excerpt:
            lines.append("Output excerpt:")
            lines.append(self.excerpt)
        return "\n".join(lines)


class ArtifactMissing(HarnessError):
    """The kernel image for a variant is not provisioned on the host."""

    def __init__(self, path: Any, *, warning: Optional[str] = None) -> None:
        super().__init__(f"kernel artifact not present: {path}")
        self.path = path
        self.warning = warning


class MarkerNotFound(HarnessError):
    """A marker string never appeared in the captured output."""

    def __init__(self, marker: str, *, stage: str, excerpt: str = "") -> None:
        if stage == "post-boot":
            message = (
                f"{marker!r} not found after the debug fragment; "
                "the handoff did not complete or the kernel never ran"
            )
        else:
            message = f"{marker!r} prefix not found in output"
        super().__init__(message, excerpt=excerpt)
        self.marker = marker
        self.stage = stage


class FragmentUnterminated(HarnessError):
    """The debug fragment was not followed by a newline."""

    def __init__(self, marker: str, *, excerpt: str = "") -> None:
        super().__init__(
            f"cannot find newline character after {marker!r}", excerpt=excerpt
        )
        self.marker = marker


class FragmentUnparsable(HarnessError):
    """The text following a marker does not decode to a boot-information record."""

    def __init__(
        self,
        marker: str,
        *,
        stage: str,
        fragment: str,
        cause: BaseException,
    ) -> None:
        super().__init__(
            f"cannot decode {stage} fragment after {marker!r}: {cause}",
            excerpt=make_excerpt(fragment),
        )
        self.marker = marker
        self.stage = stage
        self.fragment = fragment
        self.cause = cause


class StructuralMismatch(HarnessError):
    """The record seen by the new kernel differs from the one kexec computed."""

    def __init__(self, comparison: "Comparison") -> None:
        super().__init__("kexec failed: boot information differs across the handoff")
        self.comparison = comparison

    def describe(self) -> str:
        return f"{type(self).__name__}: {self.message}\n{self.comparison.render()}"


class GuestTimeoutOrCrash(HarnessError):
    """The guest hung, crashed, or exited with an unexpected status."""

    def __init__(
        self,
        message: str,
        *,
        excerpt: str = "",
        exit_status: Optional[int] = None,
        signal_status: Optional[int] = None,
    ) -> None:
        super().__init__(message, excerpt=excerpt)
        self.exit_status = exit_status
        self.signal_status = signal_status


__all__ = [
    "ArtifactMissing",
    "EXCERPT_LIMIT",
    "FragmentUnparsable",
    "FragmentUnterminated",
    "GuestTimeoutOrCrash",
    "HarnessError",
    "MarkerNotFound",
    "StructuralMismatch",
    "make_excerpt",
]
