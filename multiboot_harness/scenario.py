"""Scenario driver: one capture-and-compare cycle per kernel variant.

A scenario moves through::

    NOT_STARTED -> ARTIFACT_CHECK -> RUNNING -> AWAITING_EARLY_MARKER
        -> COMPLETED (PASS | FAIL) | SKIPPED | ERRORED

Every fatal condition ends only its own scenario. Nothing is retried.
"""

from __future__ import annotations

import enum
import re
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

from .config import HarnessConfig
from .errors import (
    ArtifactMissing,
    GuestTimeoutOrCrash,
    HarnessError,
    StructuralMismatch,
    make_excerpt,
)
from .extract import Schema, extract_records
from .logging_utils import log_event
from .metadata import (
    DiagnosticWriter,
    append_harness_log,
    append_run_ledger_entry,
    record_scenario_outcome,
)
from .oracle import Comparison, compare_records
from .vm import EARLY_END_MARKER, EARLY_SUCCESS_MARKER, launch_guest

DEFAULT_VARIANTS: Tuple[str, ...] = ("kernel", "kernel.gz")


class ScenarioState(enum.Enum):
    NOT_STARTED = "not-started"
    ARTIFACT_CHECK = "artifact-check"
    RUNNING = "running"
    AWAITING_EARLY_MARKER = "awaiting-early-marker"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ERRORED = "errored"


class Verdict(enum.Enum):
    SKIP = "skip"
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"


_TRANSITIONS = {
    ScenarioState.NOT_STARTED: {ScenarioState.ARTIFACT_CHECK},
    ScenarioState.ARTIFACT_CHECK: {
        ScenarioState.RUNNING,
        ScenarioState.SKIPPED,
        ScenarioState.ERRORED,
    },
    ScenarioState.RUNNING: {
        ScenarioState.AWAITING_EARLY_MARKER,
        ScenarioState.ERRORED,
    },
    ScenarioState.AWAITING_EARLY_MARKER: {
        ScenarioState.COMPLETED,
        ScenarioState.ERRORED,
    },
}


class Guest(Protocol):
    """What the driver needs from a running VM."""

    output_path: Path

    def expect_marker(self, marker: str) -> None: ...

    def wait(self) -> Any: ...

    def close(self) -> None: ...


Launcher = Callable[..., Guest]


@dataclass
class ScenarioResult:
    """Outcome of one scenario run, with everything needed to debug it offline."""

    variant: str
    state: ScenarioState
    verdict: Verdict
    history: List[ScenarioState] = field(default_factory=list)
    intended: Any = None
    observed: Any = None
    comparison: Optional[Comparison] = None
    error: Optional[HarnessError] = None
    output: Optional[str] = None
    run_dir: Optional[Path] = None
    warning: Optional[str] = None
    duration_seconds: float = 0.0

    def describe(self) -> str:
        lines = [
            f"Scenario {self.variant!r}: {self.verdict.value.upper()} "
            f"({self.state.value})"
        ]
        if self.warning:
            lines.append(f"Warning: {self.warning}")
        if self.error is not None:
            lines.append(self.error.describe())
        elif self.comparison is not None and not self.comparison.equal:
            lines.append(self.comparison.render())
        if self.verdict in (Verdict.FAIL, Verdict.ERROR) and self.output:
            lines.append("Captured output:")
            lines.append(make_excerpt(self.output))
        if self.run_dir is not None:
            lines.append(f"Run directory: {self.run_dir}")
        return "\n".join(lines)


def _slug(variant: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "-", variant).strip("-") or "variant"


class ScenarioDriver:
    """Run the kexec handoff check for a single kernel variant."""

    def __init__(
        self,
        config: HarnessConfig,
        variant: str,
        *,
        launcher: Launcher = launch_guest,
        schema: Optional[Schema] = None,
        early_markers: Sequence[str] = (EARLY_SUCCESS_MARKER, EARLY_END_MARKER),
        ledger_path: Optional[Path] = None,
    ) -> None:
        self.config = config
        self.variant = variant
        self.launcher = launcher
        self.schema = schema
        self.early_markers = tuple(early_markers)
        self.ledger_path = ledger_path
        self.state = ScenarioState.NOT_STARTED
        self.history: List[ScenarioState] = [self.state]
        self._harness_log: Optional[Path] = None

    def _transition(self, new_state: ScenarioState) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise RuntimeError(
                f"invalid scenario transition {self.state.value} -> {new_state.value}"
            )
        log_event(
            "multiboot_harness.scenario.transition",
            variant=self.variant,
            previous=self.state.value,
            state=new_state.value,
        )
        self.state = new_state
        self.history.append(new_state)
        self._log_step(f"State -> {new_state.value}")

    def _log_step(self, message: str, body: Optional[str] = None) -> None:
        if self._harness_log is None:
            return
        try:
            append_harness_log(self._harness_log, message, body=body)
        except OSError as exc:
            log_event(
                "multiboot_harness.scenario.harness_log_error",
                variant=self.variant,
                path=self._harness_log,
                error=str(exc),
            )

    def _check_artifact(self) -> Path:
        image = self.config.kernel_path(self.variant)
        if image is None:
            raise ArtifactMissing(
                self.variant,
                warning="no kernel directory configured; every variant will be skipped",
            )
        if image.exists():
            return image
        warning = None
        if not image.parent.is_dir():
            warning = (
                f"kernel directory {image.parent} does not exist; "
                "check the configured path"
            )
        raise ArtifactMissing(image, warning=warning)

    def _make_run_dir(self) -> Path:
        """Create the run directory that keeps this scenario's logs.

        Run directories are never removed. Without ``output_root`` they land in
        the system temporary directory.
        """

        root = self.config.output_root
        if root is not None:
            root.mkdir(parents=True, exist_ok=True)
        return Path(
            tempfile.mkdtemp(
                prefix=f"multiboot-{_slug(self.variant)}-",
                dir=str(root) if root is not None else None,
            )
        )

    def _skip(self, exc: ArtifactMissing, started: float) -> ScenarioResult:
        if exc.warning:
            log_event(
                "multiboot_harness.scenario.warning",
                variant=self.variant,
                warning=exc.warning,
            )
        self._transition(ScenarioState.SKIPPED)
        log_event(
            "multiboot_harness.scenario.result",
            variant=self.variant,
            verdict=Verdict.SKIP.value,
            reason=exc.message,
        )
        return ScenarioResult(
            variant=self.variant,
            state=self.state,
            verdict=Verdict.SKIP,
            history=list(self.history),
            error=exc,
            warning=exc.warning,
            duration_seconds=time.perf_counter() - started,
        )

    def run(self) -> ScenarioResult:
        started = time.perf_counter()
        self._transition(ScenarioState.ARTIFACT_CHECK)
        try:
            kernel_image = self._check_artifact()
        except ArtifactMissing as exc:
            return self._skip(exc, started)

        result = ScenarioResult(
            variant=self.variant,
            state=self.state,
            verdict=Verdict.ERROR,
        )
        diagnostics: Optional[DiagnosticWriter] = None
        try:
            result.run_dir = self._make_run_dir()
            self._harness_log = result.run_dir / "harness.log"
            diagnostics = DiagnosticWriter(
                result.run_dir / "diagnostics", result.run_dir / "metadata.json"
            )
            self._log_step(
                f"Scenario {self.variant!r} using kernel image {kernel_image}"
            )
            self._transition(ScenarioState.RUNNING)
            self._run_guest(kernel_image, diagnostics, result)
        except HarnessError as exc:
            result.error = exc
        except OSError as exc:
            result.error = GuestTimeoutOrCrash(f"scenario I/O failure: {exc}")

        if result.error is not None:
            terminal = ScenarioState.ERRORED
        elif result.comparison is not None and result.comparison.equal:
            terminal = ScenarioState.COMPLETED
            result.verdict = Verdict.PASS
        else:
            terminal = ScenarioState.COMPLETED
            result.verdict = Verdict.FAIL
            result.error = StructuralMismatch(result.comparison)
        result.state = terminal
        result.history = list(self.history) + [terminal]
        result.duration_seconds = time.perf_counter() - started

        if diagnostics is not None:
            try:
                self._record(result, diagnostics)
            except OSError as exc:
                terminal = ScenarioState.ERRORED
                result.verdict = Verdict.ERROR
                result.error = GuestTimeoutOrCrash(
                    f"cannot record scenario artifacts: {exc}"
                )

        self._transition(terminal)
        result.state = self.state
        result.history = list(self.history)
        self._log_step(f"Verdict: {result.verdict.value}", body=result.describe())
        log_event(
            "multiboot_harness.scenario.result",
            variant=self.variant,
            verdict=result.verdict.value,
            state=result.state.value,
            run_dir=result.run_dir,
        )
        return result

    def _run_guest(
        self,
        kernel_image: Path,
        diagnostics: DiagnosticWriter,
        result: ScenarioResult,
    ) -> None:
        with tempfile.TemporaryDirectory(prefix="multiboot-share-") as share:
            guest: Optional[Guest] = None
            try:
                guest = self.launcher(
                    self.config,
                    variant=self.variant,
                    kernel_image=kernel_image,
                    run_dir=result.run_dir,
                    shared_dir=Path(share),
                    diagnostics=diagnostics,
                )
                self._transition(ScenarioState.AWAITING_EARLY_MARKER)
                for marker in self.early_markers:
                    guest.expect_marker(marker)
                guest.wait()
                result.output = self._read_output(guest.output_path)
                result.intended, result.observed = extract_records(
                    result.output,
                    debug_prefix=self.config.debug_prefix,
                    post_handoff_marker=self.config.post_handoff_marker,
                    schema=self.schema,
                )
                result.comparison = compare_records(result.intended, result.observed)
            finally:
                if guest is not None:
                    guest.close()

    def _record(self, result: ScenarioResult, diagnostics: DiagnosticWriter) -> None:
        """Write failure diagnostics, the outcome in ``metadata.json`` and the ledger."""

        if result.verdict in (Verdict.FAIL, Verdict.ERROR):
            self._write_failure_diagnostics(result, diagnostics)
        record_scenario_outcome(
            diagnostics.metadata_path,
            verdict=result.verdict.value,
            state=result.state.value,
            history=[state.value for state in result.history],
            duration_seconds=result.duration_seconds,
            error=result.error.message if result.error is not None else None,
        )
        if self.ledger_path is not None:
            append_run_ledger_entry(
                self.ledger_path,
                metadata_path=diagnostics.metadata_path,
                variant=self.variant,
                verdict=result.verdict.value,
                duration_seconds=result.duration_seconds,
            )

    def _read_output(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError as exc:
            raise GuestTimeoutOrCrash(
                f"guest exited without writing {path.name}"
            ) from exc

    def _write_failure_diagnostics(
        self, result: ScenarioResult, diagnostics: DiagnosticWriter
    ) -> None:
        if result.output is not None:
            diagnostics.write("captured-output", result.output, label="Captured output")
        if result.comparison is not None and not result.comparison.equal:
            diagnostics.write(
                "record-comparison",
                result.comparison.render(),
                label="Boot information comparison",
                extension=".txt",
            )
        if result.error is not None:
            diagnostics.write(
                "failure-context",
                result.error.describe(),
                label="Failure context",
                extension=".txt",
            )


def run_scenario(config: HarnessConfig, variant: str, **kwargs: Any) -> ScenarioResult:
    return ScenarioDriver(config, variant, **kwargs).run()


def run_scenarios(
    config: HarnessConfig,
    variants: Sequence[str] = DEFAULT_VARIANTS,
    **kwargs: Any,
) -> List[ScenarioResult]:
    """Run each variant in turn; one variant's failure never stops the next."""

    return [run_scenario(config, variant, **kwargs) for variant in variants]


__all__ = [
    "DEFAULT_VARIANTS",
    "Guest",
    "Launcher",
    "ScenarioDriver",
    "ScenarioResult",
    "ScenarioState",
    "Verdict",
    "run_scenario",
    "run_scenarios",
]
