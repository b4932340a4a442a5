"""QEMU guest control for kexec handoff scenarios.

The guest is driven over its serial console with ``pexpect``. The variant's
kernel image and a command script are placed in a 9p shared directory which
the initramfs mounts at :data:`GUEST_MOUNT` and executes at boot; the guest
writes ``output.json`` back into the same directory.
"""

from __future__ import annotations

import re
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, TextIO, Tuple

import pexpect

from .config import HarnessConfig
from .errors import GuestTimeoutOrCrash, make_excerpt
from .logging_utils import log_event
from .metadata import DiagnosticWriter, append_harness_log, write_scenario_metadata

GUEST_SHARE_TAG = "tmpdir"
GUEST_MOUNT = "/testdata"
GUEST_SCRIPT_NAME = "run.sh"
GUEST_KERNEL_NAME = "kernel"
OUTPUT_FILE_NAME = "output.json"

GUEST_COMMANDS: Tuple[str, ...] = (
    f"cp {GUEST_MOUNT}/{GUEST_KERNEL_NAME} /{GUEST_KERNEL_NAME}",
    "cd /",
    'kexec -l kernel -e -d --module="/kernel foo=bar" --module="/bbin/bb"'
    f" | tee {GUEST_MOUNT}/{OUTPUT_FILE_NAME}",
)

EARLY_SUCCESS_MARKER = '"status": "ok"'
EARLY_END_MARKER = "}"

ANSI_ESCAPE_PATTERN = re.compile(r"\x1B(?:\[[0-?]*[ -/]*[@-~]|[@-Z\\-_])")


def probe_qemu_version(executable: str) -> Optional[str]:
    """Return the first line of ``qemu --version`` output when available."""

    try:
        result = subprocess.run(
            [executable, "--version"],
            check=True,
            capture_output=True,
            text=True,
        )
    except (subprocess.CalledProcessError, OSError):
        return None
    output = (result.stdout or "").strip()
    if not output:
        output = (result.stderr or "").strip()
    if not output:
        return None
    return output.splitlines()[0]


def render_guest_script(commands: Sequence[str]) -> str:
    lines = ["#!/bin/sh", "set -e"]
    lines.extend(commands)
    return "\n".join(lines) + "\n"


def prepare_shared_dir(
    shared_dir: Path,
    kernel_image: Path,
    *,
    commands: Sequence[str] = GUEST_COMMANDS,
) -> Path:
    """Stage the kernel image and command script; return the script path."""

    shared_dir.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(kernel_image, shared_dir / GUEST_KERNEL_NAME)
    script = shared_dir / GUEST_SCRIPT_NAME
    script.write_text(render_guest_script(commands), encoding="utf-8")
    script.chmod(0o755)
    return script


def build_qemu_command(config: HarnessConfig, *, shared_dir: Path) -> List[str]:
    """Assemble the QEMU invocation for one scenario."""

    if config.host_kernel is None or config.initramfs is None:
        raise ValueError("host kernel and initramfs must be configured to launch a VM")
    append = " ".join(
        [
            "console=ttyS0",
            "earlyprintk=ttyS0",
            f"multiboot_harness.share={GUEST_SHARE_TAG}",
            f"multiboot_harness.script={GUEST_MOUNT}/{GUEST_SCRIPT_NAME}",
        ]
    )
    cmd = [
        config.qemu_executable,
        "-m",
        str(config.memory_mb),
        "-display",
        "none",
        "-no-reboot",
        "-serial",
        "stdio",
        "-kernel",
        str(config.host_kernel),
        "-initrd",
        str(config.initramfs),
        "-append",
        append,
        "-virtfs",
        f"local,path={shared_dir},mount_tag={GUEST_SHARE_TAG},security_model=none",
    ]
    cmd.extend(config.extra_qemu_args)
    return cmd


@dataclass
class GuestVM:
    """Controller for one QEMU guest running a kexec scenario."""

    child: "pexpect.spawn"
    shared_dir: Path
    serial_log_path: Path
    harness_log_path: Path
    diagnostics: DiagnosticWriter
    timeout: int
    qemu_command: Optional[Tuple[str, ...]] = None
    serial_handle: Optional[TextIO] = None
    started_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        if self.qemu_command is not None and not isinstance(self.qemu_command, tuple):
            self.qemu_command = tuple(self.qemu_command)
        if self.qemu_command:
            self.log_step("QEMU command", body=shlex.join(self.qemu_command))

    @property
    def output_path(self) -> Path:
        return self.shared_dir / OUTPUT_FILE_NAME

    def remaining(self) -> float:
        return self.timeout - (time.monotonic() - self.started_at)

    def log_step(self, message: str, body: Optional[str] = None) -> None:
        append_harness_log(self.harness_log_path, message, body=body)

    def write_diagnostic(self, slug: str, content: str, *, label: str) -> Path:
        path = self.diagnostics.write(slug, content, label=label)
        self.log_step(f"Diagnostic artifact written to {path}")
        return path

    def read_serial_tail(self, lines: int = 50) -> List[str]:
        if not self.serial_log_path.exists():
            return []
        with self.serial_log_path.open("r", encoding="utf-8", errors="ignore") as handle:
            tail = handle.readlines()[-lines:]
        return [ANSI_ESCAPE_PATTERN.sub("", line.rstrip("\n")) for line in tail]

    def _serial_excerpt(self) -> str:
        return make_excerpt("\n".join(self.read_serial_tail()))

    def _exit_status_lines(self) -> List[str]:
        return [
            f"PID: {getattr(self.child, 'pid', 'unknown')}",
            f"Exit status: {getattr(self.child, 'exitstatus', None)}",
            f"Signal status: {getattr(self.child, 'signalstatus', None)}",
        ]

    def expect_marker(self, marker: str) -> None:
        """Block until *marker* appears on the console, or raise.

        The search is bounded by the time left in the VM budget. The guest
        stopping before the marker shows up is reported the same way as a
        timeout, since both mean the early check failed.
        """

        remaining = self.remaining()
        self.log_step(f"Awaiting console marker {marker!r} (timeout={remaining:.1f}s)")
        if remaining <= 0:
            raise GuestTimeoutOrCrash(
                f"VM timeout of {self.timeout}s elapsed before {marker!r} was seen",
                excerpt=self._serial_excerpt(),
            )
        try:
            self.child.expect_exact(marker, timeout=remaining)
        except pexpect.TIMEOUT as exc:
            self.log_step("Timed out waiting for console marker", body=str(exc))
            raise GuestTimeoutOrCrash(
                f"expected {marker!r} on the console within {self.timeout}s",
                excerpt=self._serial_excerpt(),
            ) from exc
        except pexpect.EOF as exc:
            self.log_step("Console closed before marker was seen", body=str(exc))
            self.child.close()
            raise GuestTimeoutOrCrash(
                f"VM stopped before {marker!r} appeared on the console",
                excerpt=self._serial_excerpt(),
                exit_status=getattr(self.child, "exitstatus", None),
                signal_status=getattr(self.child, "signalstatus", None),
            ) from exc
        self.log_step(f"Matched console marker {marker!r}")
        log_event("multiboot_harness.vm.marker", marker=marker)

    def wait(self) -> int:
        """Wait for QEMU to exit and return its exit status.

        Raises :class:`GuestTimeoutOrCrash` on timeout or on a non-zero or
        signalled exit.
        """

        remaining = max(self.remaining(), 0)
        try:
            self.child.expect(pexpect.EOF, timeout=remaining)
        except pexpect.TIMEOUT as exc:
            self.log_step("VM did not exit before the timeout")
            self.close()
            raise GuestTimeoutOrCrash(
                f"VM did not exit within {self.timeout}s",
                excerpt=self._serial_excerpt(),
            ) from exc
        self.child.close()
        exit_status = getattr(self.child, "exitstatus", None)
        signal_status = getattr(self.child, "signalstatus", None)
        status_body = "\n".join(self._exit_status_lines())
        self.log_step("QEMU exited", body=status_body)
        log_event(
            "multiboot_harness.vm.exit",
            exit_status=exit_status,
            signal_status=signal_status,
        )
        if signal_status is not None or exit_status != 0:
            self.write_diagnostic("qemu-exit-status", status_body, label="QEMU exit status")
            raise GuestTimeoutOrCrash(
                "VM exited unexpectedly "
                f"(exit status {exit_status}, signal {signal_status})",
                excerpt=self._serial_excerpt(),
                exit_status=exit_status,
                signal_status=signal_status,
            )
        return exit_status

    def interact(self) -> None:
        """Drop into an interactive session with the running VM."""

        self.log_step("Entering interactive debug session (Ctrl-] to terminate)")
        try:
            self.child.interact(escape_character=chr(29))
        finally:
            self.log_step("Exited interactive debug session")

    def close(self) -> None:
        """Tear down QEMU regardless of its state."""

        isalive = getattr(self.child, "isalive", None)
        if callable(isalive) and isalive():
            self.log_step("Terminating QEMU")
            self.child.close(force=True)
        if self.serial_handle is not None and not self.serial_handle.closed:
            self.serial_handle.close()


def launch_guest(
    config: HarnessConfig,
    *,
    variant: str,
    kernel_image: Path,
    run_dir: Path,
    shared_dir: Path,
    diagnostics: DiagnosticWriter,
) -> GuestVM:
    """Stage the shared directory, record metadata and start QEMU."""

    try:
        qemu_command = build_qemu_command(config, shared_dir=shared_dir)
    except ValueError as exc:
        raise GuestTimeoutOrCrash(f"cannot launch VM: {exc}") from exc
    prepare_shared_dir(shared_dir, kernel_image)
    serial_log_path = run_dir / "serial.log"
    harness_log_path = run_dir / "harness.log"
    harness_log_path.touch()
    write_scenario_metadata(
        diagnostics.metadata_path,
        variant=variant,
        kernel_image=kernel_image,
        harness_log=harness_log_path,
        serial_log=serial_log_path,
        shared_dir=shared_dir,
        qemu_command=qemu_command,
        qemu_version=probe_qemu_version(config.qemu_executable),
        vm_timeout=config.vm_timeout,
    )
    log_handle = serial_log_path.open("w", encoding="utf-8")
    try:
        child = pexpect.spawn(
            qemu_command[0],
            qemu_command[1:],
            encoding="utf-8",
            codec_errors="ignore",
            timeout=config.vm_timeout,
        )
    except pexpect.ExceptionPexpect as exc:
        log_handle.close()
        raise GuestTimeoutOrCrash(f"failed to start QEMU: {exc}") from exc
    child.logfile_read = log_handle
    log_event(
        "multiboot_harness.vm.spawn",
        variant=variant,
        pid=child.pid,
        serial_log=serial_log_path,
        shared_dir=shared_dir,
    )
    return GuestVM(
        child=child,
        shared_dir=shared_dir,
        serial_log_path=serial_log_path,
        harness_log_path=harness_log_path,
        diagnostics=diagnostics,
        timeout=config.vm_timeout,
        qemu_command=tuple(qemu_command),
        serial_handle=log_handle,
    )


__all__ = [
    "ANSI_ESCAPE_PATTERN",
    "EARLY_END_MARKER",
    "EARLY_SUCCESS_MARKER",
    "GUEST_COMMANDS",
    "GUEST_MOUNT",
    "GUEST_SHARE_TAG",
    "GuestVM",
    "OUTPUT_FILE_NAME",
    "build_qemu_command",
    "launch_guest",
    "prepare_shared_dir",
    "probe_qemu_version",
    "render_guest_script",
]
