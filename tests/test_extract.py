"""Tests for multiboot_harness.extract."""

from __future__ import annotations

import json

import pytest

from multiboot_harness.description import Description
from multiboot_harness.errors import (
    FragmentUnparsable,
    FragmentUnterminated,
    MarkerNotFound,
)
from multiboot_harness.extract import (
    DEBUG_PREFIX,
    POST_HANDOFF_MARKER,
    extract_post_boot,
    extract_records,
    extract_snapshot,
)

RECORD = {
    "modules": [
        {"name": "/kernel", "cmdline": "foo=bar"},
        {"name": "/bbin/bb", "cmdline": ""},
    ]
}


def _transcript(intended: dict, observed: dict) -> str:
    return (
        "kexec: loading kernel\n"
        f"2019/08/01 12:00:00 {DEBUG_PREFIX}{json.dumps(intended)}\n"
        "kexec: jumping\r\n"
        f"{POST_HANDOFF_MARKER}\r\n{json.dumps(observed, indent=2)}\r\n"
    )


def test_extract_snapshot_returns_record_and_offset() -> None:
    output = f"noise\n{DEBUG_PREFIX}{json.dumps(RECORD)}\nrest"

    fragment = extract_snapshot(output)

    assert fragment.record == RECORD
    assert output[fragment.offset:] == "rest"


def test_extract_snapshot_accepts_bytes() -> None:
    output = f"{DEBUG_PREFIX} {json.dumps(RECORD)}\n".encode("utf-8")

    fragment = extract_snapshot(output)

    assert fragment.record == RECORD
    assert fragment.offset == len(output)


def test_extract_snapshot_missing_marker() -> None:
    with pytest.raises(MarkerNotFound) as excinfo:
        extract_snapshot("kexec: nothing to see\n")

    assert excinfo.value.stage == "snapshot"
    assert excinfo.value.marker == DEBUG_PREFIX
    assert "nothing to see" in excinfo.value.excerpt


def test_extract_snapshot_unterminated() -> None:
    with pytest.raises(FragmentUnterminated):
        extract_snapshot(f"{DEBUG_PREFIX}{json.dumps(RECORD)}")


def test_extract_snapshot_malformed_json_surfaces_decode_error() -> None:
    with pytest.raises(FragmentUnparsable) as excinfo:
        extract_snapshot(f'{DEBUG_PREFIX}{{"modules": [\n')

    assert isinstance(excinfo.value.cause, json.JSONDecodeError)
    assert excinfo.value.stage == "snapshot"
    assert '{"modules": [' in excinfo.value.fragment


def test_extract_snapshot_rejects_non_object_fragment() -> None:
    with pytest.raises(FragmentUnparsable) as excinfo:
        extract_snapshot(f"{DEBUG_PREFIX} [1, 2, 3]\n")

    assert "JSON object" in str(excinfo.value.cause)


def test_stray_marker_before_real_fragment_fails_closed() -> None:
    output = (
        f"error: could not parse {DEBUG_PREFIX} option\n"
        f"{DEBUG_PREFIX}{json.dumps(RECORD)}\n"
    )

    with pytest.raises(FragmentUnparsable):
        extract_snapshot(output)


def test_extract_snapshot_applies_schema() -> None:
    output = f'{DEBUG_PREFIX}{{"modules": [{{"start": "0x1000"}}]}}\n'

    with pytest.raises(FragmentUnparsable) as excinfo:
        extract_snapshot(output, schema=Description.from_json)

    assert isinstance(excinfo.value.cause, TypeError)


def test_extract_post_boot_reads_to_end_of_buffer() -> None:
    output = _transcript(RECORD, RECORD)
    snapshot = extract_snapshot(output)

    observed = extract_post_boot(output, snapshot.offset)

    assert observed.record == RECORD
    assert observed.offset == len(output)


def test_extract_post_boot_missing_marker() -> None:
    output = f"{DEBUG_PREFIX}{json.dumps(RECORD)}\nkexec: failed to jump\n"
    snapshot = extract_snapshot(output)

    with pytest.raises(MarkerNotFound) as excinfo:
        extract_post_boot(output, snapshot.offset)

    assert excinfo.value.stage == "post-boot"
    assert "failed to jump" in excinfo.value.excerpt


def test_extract_post_boot_ignores_marker_before_start() -> None:
    output = (
        f"{POST_HANDOFF_MARKER} (dry run)\n"
        f"{DEBUG_PREFIX}{json.dumps(RECORD)}\n"
        "no handoff\n"
    )
    snapshot = extract_snapshot(output)

    with pytest.raises(MarkerNotFound):
        extract_post_boot(output, snapshot.offset)


def test_extract_post_boot_trailing_garbage_is_unparsable() -> None:
    output = f"{POST_HANDOFF_MARKER}{json.dumps(RECORD)}\nreboot: Power down\n"

    with pytest.raises(FragmentUnparsable) as excinfo:
        extract_post_boot(output)

    assert excinfo.value.stage == "post-boot"


def test_extract_records_is_idempotent() -> None:
    output = _transcript(RECORD, RECORD)

    first = extract_records(output)
    second = extract_records(output)

    assert first == second == (RECORD, RECORD)


def test_extract_records_with_custom_markers() -> None:
    output = (
        f"DEBUG:{json.dumps(RECORD)}\n"
        f"Starting multiboot kernel\n{json.dumps(RECORD)}"
    )

    intended, observed = extract_records(
        output,
        debug_prefix="DEBUG:",
        post_handoff_marker="Starting multiboot kernel",
    )

    assert intended == observed == RECORD


def test_extract_snapshot_offset_counts_bytes_for_non_ascii_input() -> None:
    output = f'{DEBUG_PREFIX}{{"modules": [{{"cmdline": "café"}}]}}\nREST'.encode("utf-8")

    fragment = extract_snapshot(output)

    assert fragment.record == {"modules": [{"cmdline": "café"}]}
    assert output[fragment.offset:] == b"REST"


def test_extract_snapshot_offset_survives_invalid_utf8_before_marker() -> None:
    output = (
        b"\xff\xfe serial noise\n"
        + DEBUG_PREFIX.encode("utf-8")
        + b'{"status": "ok"}\nREST'
    )

    fragment = extract_snapshot(output)

    assert fragment.record == {"status": "ok"}
    assert output[fragment.offset:] == b"REST"


def test_extract_records_from_non_ascii_bytes() -> None:
    record = {"cmdline": "console=ttyS0 label=é", "modules": []}
    encoded = json.dumps(record, ensure_ascii=False)
    output = (
        f"{DEBUG_PREFIX}{encoded}\n{POST_HANDOFF_MARKER}\n{encoded}\n"
    ).encode("utf-8")

    assert extract_records(output) == (record, record)
    assert extract_post_boot(output, extract_snapshot(output).offset).offset == len(output)


def test_deeply_nested_fragment_is_unparsable() -> None:
    with pytest.raises(FragmentUnparsable) as excinfo:
        extract_snapshot(f"{DEBUG_PREFIX}{'[' * 100000}\n")

    assert isinstance(excinfo.value.cause, RecursionError)
    assert excinfo.value.stage == "snapshot"


def test_deeply_nested_post_boot_fragment_is_unparsable() -> None:
    output = (
        f'{DEBUG_PREFIX}{{"status": "ok"}}\n{POST_HANDOFF_MARKER}'
        + '{"a":' * 5000
        + "1"
        + "}" * 5000
    )

    with pytest.raises(FragmentUnparsable) as excinfo:
        extract_records(output)

    assert excinfo.value.stage == "post-boot"
