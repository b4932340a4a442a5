"""JSON event stream for scenario progress.

Each scenario step (state transitions, console markers, extraction offsets,
comparison results, verdicts) is emitted as one JSON object per line. The
stream is off unless ``MULTIBOOT_HARNESS_LOG_EVENTS`` is truthy, so unit tests
and ``check`` runs stay quiet; ``MULTIBOOT_HARNESS_LOG_FILE`` additionally
keeps a copy of every event next to the run directories.
"""

from __future__ import annotations

import datetime as _dt
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

_EVENTS_ENV = "MULTIBOOT_HARNESS_LOG_EVENTS"
_LOG_FILE_ENV = "MULTIBOOT_HARNESS_LOG_FILE"
_FALSE_VALUES = frozenset({"", "0", "false", "no", "off"})


def _serialise(value: Any) -> Any:
    # Paths, decoded records and enum values all end up in events.
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _serialise(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_serialise(item) for item in value]
    return repr(value)


def _events_enabled() -> bool:
    value = os.environ.get(_EVENTS_ENV)
    return value is not None and value.strip().lower() not in _FALSE_VALUES


def _event_file() -> Optional[Path]:
    value = os.environ.get(_LOG_FILE_ENV, "").strip()
    return Path(value) if value else None


def _event_record(event: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "timestamp": _dt.datetime.now(_dt.timezone.utc).isoformat(),
        "event": event,
    }
    record.update((str(key), _serialise(value)) for key, value in fields.items())
    return record


def log_event(event: str, **fields: Any) -> None:
    """Emit *event* with *fields* on ``stderr`` when the event stream is on.

    Event names are dotted after the emitting module, for example
    ``multiboot_harness.scenario.transition``. The UTC timestamp lets events
    be lined up against a scenario's ``serial.log`` and ``harness.log``.
    """

    if not _events_enabled():
        return

    line = json.dumps(_event_record(event, fields), sort_keys=True)
    sys.stderr.write(line + "\n")
    sys.stderr.flush()

    event_file = _event_file()
    if event_file is not None:
        _append_event(event_file, line)


def _append_event(event_file: Path, line: str) -> None:
    try:
        event_file.parent.mkdir(parents=True, exist_ok=True)
        with event_file.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    except OSError as exc:  # pragma: no cover - an unwritable file must not end a scenario
        sys.stderr.write(
            f"multiboot-harness: cannot append event to {event_file}: {exc}\n"
        )
        sys.stderr.flush()


__all__ = ["log_event"]
