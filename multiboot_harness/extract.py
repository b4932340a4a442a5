"""Locate and decode the boot-information fragments in a console transcript.

The kexec driver prints the record it computed on a single line after
:data:`DEBUG_PREFIX`. Once control reaches the new kernel, the kernel prints
:data:`POST_HANDOFF_MARKER` followed by the record it received, which is the
last thing written to the console. Both fragments must decode to a JSON
object; anything else fails closed so that a stray marker inside an unrelated
log line is never mistaken for the real fragment.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Union

from .errors import (
    FragmentUnparsable,
    FragmentUnterminated,
    MarkerNotFound,
    make_excerpt,
)
from .logging_utils import log_event

DEBUG_PREFIX = "MULTIBOOT_DEBUG_INFO:"
POST_HANDOFF_MARKER = "Starting multiboot kernel"

Schema = Callable[[Any], Any]
Buffer = Union[str, bytes, bytearray]


@dataclass(frozen=True)
class Fragment:
    """A decoded record and the offset just past the text it was read from.

    ``offset`` indexes the buffer that was searched: a byte offset for
    ``bytes`` input and a character offset for ``str`` input.
    """

    record: Any
    offset: int


def _as_text(output: Buffer) -> str:
    if isinstance(output, (bytes, bytearray)):
        return bytes(output).decode("utf-8", errors="replace")
    return output


def _needles(output: Buffer, marker: str) -> Tuple[Any, Any]:
    """Return *marker* and the newline in the same type as *output*."""

    if isinstance(output, (bytes, bytearray)):
        return marker.encode("utf-8"), b"\n"
    return marker, "\n"


def decode_fragment(
    text: str,
    *,
    marker: str,
    stage: str,
    schema: Optional[Schema] = None,
) -> Any:
    """Decode *text* as a JSON object and optionally pass it through *schema*."""

    try:
        value = json.loads(text)
    except (ValueError, RecursionError) as exc:
        # json.loads raises RecursionError for fragments nested past the
        # interpreter's recursion limit.
        raise FragmentUnparsable(marker, stage=stage, fragment=text, cause=exc) from exc
    if not isinstance(value, dict):
        cause = TypeError(
            f"expected a JSON object, got {type(value).__name__}"
        )
        raise FragmentUnparsable(marker, stage=stage, fragment=text, cause=cause)
    if schema is None:
        return value
    try:
        return schema(value)
    except (TypeError, ValueError, RecursionError) as exc:
        raise FragmentUnparsable(marker, stage=stage, fragment=text, cause=exc) from exc


def extract_snapshot(
    output: Buffer,
    marker: str = DEBUG_PREFIX,
    *,
    schema: Optional[Schema] = None,
) -> Fragment:
    """Return the record kexec printed before jumping to the new kernel.

    The first occurrence of *marker* is authoritative. The fragment runs from
    the end of the marker to the next newline. The returned offset points just
    past that newline so the post-handoff search can resume from there.
    """

    needle, newline = _needles(output, marker)
    index = output.find(needle)
    if index == -1:
        raise MarkerNotFound(
            marker, stage="snapshot", excerpt=make_excerpt(_as_text(output))
        )
    start = index + len(needle)
    end = output.find(newline, start)
    if end == -1:
        raise FragmentUnterminated(
            marker, excerpt=make_excerpt(_as_text(output[start:]))
        )
    record = decode_fragment(
        _as_text(output[start:end]), marker=marker, stage="snapshot", schema=schema
    )
    log_event(
        "multiboot_harness.extract.snapshot",
        marker=marker,
        marker_offset=index,
        fragment_length=end - start,
    )
    return Fragment(record=record, offset=end + 1)


def extract_post_boot(
    output: Buffer,
    start: int = 0,
    marker: str = POST_HANDOFF_MARKER,
    *,
    schema: Optional[Schema] = None,
) -> Fragment:
    """Return the record the new kernel reported after the handoff.

    Only ``output[start:]`` is searched, so the marker must appear after the
    snapshot fragment. Everything following the marker up to the end of the
    buffer is decoded.
    """

    needle, _ = _needles(output, marker)
    index = output.find(needle, start)
    if index == -1:
        raise MarkerNotFound(
            marker, stage="post-boot", excerpt=make_excerpt(_as_text(output[start:]))
        )
    fragment = output[index + len(needle):]
    record = decode_fragment(
        _as_text(fragment), marker=marker, stage="post-boot", schema=schema
    )
    log_event(
        "multiboot_harness.extract.post_boot",
        marker=marker,
        marker_offset=index,
        fragment_length=len(fragment),
    )
    return Fragment(record=record, offset=len(output))


def extract_records(
    output: Buffer,
    *,
    debug_prefix: str = DEBUG_PREFIX,
    post_handoff_marker: str = POST_HANDOFF_MARKER,
    schema: Optional[Schema] = None,
) -> Tuple[Any, Any]:
    """Return the ``(intended, observed)`` records from a full transcript."""

    snapshot = extract_snapshot(output, debug_prefix, schema=schema)
    observed = extract_post_boot(
        output, snapshot.offset, post_handoff_marker, schema=schema
    )
    return snapshot.record, observed.record


__all__ = [
    "DEBUG_PREFIX",
    "Fragment",
    "POST_HANDOFF_MARKER",
    "decode_fragment",
    "extract_post_boot",
    "extract_records",
    "extract_snapshot",
]
