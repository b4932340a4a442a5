"""Utilities for recording scenario metadata and diagnostic artifacts."""

from __future__ import annotations

import datetime
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _load(metadata_path: Path) -> Optional[Dict[str, Any]]:
    try:
        raw_metadata = metadata_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    if not raw_metadata.strip():
        return None
    try:
        metadata = json.loads(raw_metadata)
    except json.JSONDecodeError:
        return None
    if not isinstance(metadata, dict):
        return None
    return metadata


def _store(metadata_path: Path, metadata: Dict[str, Any]) -> None:
    metadata_path.write_text(
        json.dumps(metadata, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )


def append_harness_log(harness_log_path: Path, message: str, body: Optional[str] = None) -> None:
    """Append a timestamped step, with an optional indented body, to the harness log."""

    timestamp = _now()
    with harness_log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"[{timestamp}] {message}\n")
        if body is not None:
            lines = body.splitlines()
            if not lines:
                handle.write(f"[{timestamp}]   <no output>\n")
            else:
                for line in lines:
                    handle.write(f"[{timestamp}]   {line}\n")


def write_scenario_metadata(
    metadata_path: Path,
    *,
    variant: str,
    kernel_image: Path,
    harness_log: Path,
    serial_log: Path,
    shared_dir: Path,
    qemu_command: Sequence[str],
    qemu_version: Optional[str] = None,
    vm_timeout: int,
) -> None:
    """Persist structured metadata describing one scenario run."""

    diagnostics_dir = metadata_path.parent / "diagnostics"
    diagnostics_dir.mkdir(parents=True, exist_ok=True)
    metadata: Dict[str, Any] = {
        "generated_at": _now(),
        "variant": variant,
        "kernel_image": str(kernel_image),
        "logs": {
            "harness": str(harness_log),
            "serial": str(serial_log),
        },
        "shared_dir": str(shared_dir),
        "qemu": {
            "command": list(qemu_command),
            "timeout_seconds": vm_timeout,
        },
        "diagnostics": {
            "directory": str(diagnostics_dir),
            "artifacts": [],
        },
    }
    if qemu_version:
        metadata["qemu"]["version"] = qemu_version
    _store(metadata_path, metadata)


def record_scenario_diagnostic(
    metadata_path: Path,
    *,
    label: str,
    path: Path,
) -> None:
    """Append a diagnostic artifact entry to ``metadata.json`` when available."""

    metadata = _load(metadata_path)
    if metadata is None:
        return

    diagnostics = metadata.setdefault("diagnostics", {})
    artifacts = diagnostics.setdefault("artifacts", [])
    entry = {"label": label, "path": str(path)}
    if any(existing.get("path") == entry["path"] for existing in artifacts):
        return

    artifacts.append(entry)
    _store(metadata_path, metadata)


def read_diagnostics(metadata_path: Path) -> List[Dict[str, str]]:
    """Return diagnostic artifact entries from ``metadata.json`` when present."""

    metadata = _load(metadata_path)
    if metadata is None:
        return []
    diagnostics_section = metadata.get("diagnostics")
    if not isinstance(diagnostics_section, dict):
        return []
    artifacts = diagnostics_section.get("artifacts")
    if not isinstance(artifacts, list):
        return []
    entries: List[Dict[str, str]] = []
    for artifact in artifacts:
        label = artifact.get("label") if isinstance(artifact, dict) else None
        path = artifact.get("path") if isinstance(artifact, dict) else None
        if isinstance(label, str) and isinstance(path, str):
            entries.append({"label": label, "path": path})
    return entries


def record_scenario_outcome(
    metadata_path: Path,
    *,
    verdict: str,
    state: str,
    history: Sequence[str],
    duration_seconds: float,
    error: Optional[str] = None,
) -> None:
    """Merge the final verdict into the metadata file without dropping diagnostics."""

    metadata = _load(metadata_path)
    if metadata is None:
        return

    outcome: Dict[str, Any] = {
        "verdict": verdict,
        "state": state,
        "history": list(history),
        "duration_seconds": round(duration_seconds, 3),
        "completed_at": _now(),
    }
    if error:
        outcome["error"] = error
    metadata["outcome"] = outcome
    _store(metadata_path, metadata)


@dataclass
class DiagnosticWriter:
    """Write numbered diagnostic files and list them in ``metadata.json``."""

    directory: Path
    metadata_path: Path
    counter: int = 0

    def write(
        self,
        slug: str,
        content: str,
        *,
        label: str,
        extension: str = ".log",
    ) -> Path:
        safe_slug = re.sub(r"[^A-Za-z0-9_-]", "-", slug).strip("-")
        if not safe_slug:
            safe_slug = "diagnostic"
        if not extension.startswith("."):
            extension = "." + extension
        self.counter += 1
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{safe_slug}-{self.counter:02d}{extension}"
        if content and not content.endswith("\n"):
            content += "\n"
        path.write_text(content, encoding="utf-8")
        record_scenario_diagnostic(self.metadata_path, label=label, path=path)
        return path


def append_run_ledger_entry(
    ledger_path: Path,
    *,
    metadata_path: Path,
    variant: str,
    verdict: str,
    duration_seconds: float,
) -> None:
    """Append a JSON line summarising one scenario run to the run ledger.

    Entries are additive and should not be rewritten.
    """

    entry: Dict[str, Any] = {
        "timestamp": _now(),
        "metadata": str(metadata_path),
        "variant": variant,
        "verdict": verdict,
        "duration_seconds": round(duration_seconds, 3),
    }
    diagnostics = read_diagnostics(metadata_path)
    if diagnostics:
        entry["diagnostics"] = diagnostics

    ledger_path.parent.mkdir(parents=True, exist_ok=True)
    with ledger_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry, sort_keys=True) + "\n")


__all__ = [
    "DiagnosticWriter",
    "append_harness_log",
    "append_run_ledger_entry",
    "read_diagnostics",
    "record_scenario_diagnostic",
    "record_scenario_outcome",
    "write_scenario_metadata",
]
