"""Structural equality between the intended and observed boot information."""

from __future__ import annotations

import difflib
import json
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Sequence

from .errors import HarnessError, StructuralMismatch
from .logging_utils import log_event


@dataclass(frozen=True)
class Difference:
    """One point where the observed record departs from the intended one."""

    path: str
    kind: str
    intended: Any = None
    observed: Any = None

    def describe(self) -> str:
        if self.kind == "missing":
            return f"{self.path}: missing from observed record (intended {_canonical(self.intended)})"
        if self.kind == "unexpected":
            return f"{self.path}: not in intended record (observed {_canonical(self.observed)})"
        if self.kind == "order":
            return f"{self.path}: same elements in a different order"
        if self.kind == "length":
            return (
                f"{self.path}: intended {len(self.intended)} entries, "
                f"observed {len(self.observed)}"
            )
        if self.kind == "type":
            return (
                f"{self.path}: intended {type(self.intended).__name__} "
                f"{_canonical(self.intended)}, observed {type(self.observed).__name__} "
                f"{_canonical(self.observed)}"
            )
        return f"{self.path}: intended {_canonical(self.intended)}, observed {_canonical(self.observed)}"


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=repr)


def _pretty(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True, default=repr)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


def _walk(intended: Any, observed: Any, path: str, out: List[Difference]) -> None:
    if isinstance(intended, Mapping) and isinstance(observed, Mapping):
        for key in intended:
            child = f"{path}.{key}"
            if key not in observed:
                out.append(Difference(child, "missing", intended=intended[key]))
            else:
                _walk(intended[key], observed[key], child, out)
        for key in observed:
            if key not in intended:
                out.append(Difference(f"{path}.{key}", "unexpected", observed=observed[key]))
        return

    if _is_sequence(intended) and _is_sequence(observed):
        if len(intended) != len(observed):
            out.append(Difference(path, "length", intended=intended, observed=observed))
            return
        if sorted(map(_canonical, intended)) == sorted(map(_canonical, observed)) and list(
            map(_canonical, intended)
        ) != list(map(_canonical, observed)):
            out.append(Difference(path, "order", intended=intended, observed=observed))
            return
        for index, (left, right) in enumerate(zip(intended, observed)):
            _walk(left, right, f"{path}[{index}]", out)
        return

    # bool is an int subclass and 1 == 1.0; both must still count as changes.
    if type(intended) is not type(observed):
        out.append(Difference(path, "type", intended=intended, observed=observed))
        return
    if intended != observed:
        out.append(Difference(path, "value", intended=intended, observed=observed))


@dataclass
class Comparison:
    """Outcome of comparing two boot-information records."""

    intended: Any
    observed: Any
    differences: List[Difference] = field(default_factory=list)

    @property
    def equal(self) -> bool:
        return not self.differences

    def unified_diff(self) -> str:
        lines = difflib.unified_diff(
            _pretty(_plain(self.intended)).splitlines(),
            _pretty(_plain(self.observed)).splitlines(),
            fromfile="intended",
            tofile="observed",
            lineterm="",
        )
        return "\n".join(lines)

    def render(self) -> str:
        """Return a report that carries both full records."""

        if self.equal:
            return "Boot information preserved across the handoff."
        lines = [
            f"Boot information differs across the handoff "
            f"({len(self.differences)} difference(s)):"
        ]
        lines.extend(f"  {difference.describe()}" for difference in self.differences)
        lines.append("got (observed by the new kernel):")
        lines.append(_pretty(_plain(self.observed)))
        lines.append("want (computed by kexec):")
        lines.append(_pretty(_plain(self.intended)))
        diff = self.unified_diff()
        if diff:
            lines.append("Diff:")
            lines.append(diff)
        return "\n".join(lines)


def compare_records(intended: Any, observed: Any) -> Comparison:
    """Compare two decoded records recursively.

    Mappings must have the same key set, sequences the same length and order,
    and scalars the same type and value.
    """

    differences: List[Difference] = []
    try:
        _walk(_plain(intended), _plain(observed), "$", differences)
    except RecursionError as exc:
        raise HarnessError(
            "boot information records are nested too deeply to compare"
        ) from exc
    comparison = Comparison(intended=intended, observed=observed, differences=differences)
    log_event(
        "multiboot_harness.oracle.compare",
        equal=comparison.equal,
        differences=[difference.describe() for difference in differences],
    )
    return comparison


def _plain(record: Any) -> Any:
    to_json = getattr(record, "to_json", None)
    if callable(to_json):
        return to_json()
    return record


def assert_records_equal(intended: Any, observed: Any) -> Comparison:
    """Raise :class:`StructuralMismatch` unless the records are identical."""

    comparison = compare_records(intended, observed)
    if not comparison.equal:
        raise StructuralMismatch(comparison)
    return comparison


__all__ = ["Comparison", "Difference", "assert_records_equal", "compare_records"]
