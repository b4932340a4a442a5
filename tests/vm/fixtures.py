"""Shared fixtures and configuration helpers for VM-based tests.

The VM scenarios need QEMU, a host kernel and an initramfs that mounts the
9p share and runs the staged script. Anything missing skips the session
rather than failing it.
"""

from __future__ import annotations

import importlib.util
import os
import platform
import shutil
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from multiboot_harness.config import HarnessConfig
from multiboot_harness.errors import HarnessError
from multiboot_harness.vm import GuestVM, launch_guest

SUPPORTED_MACHINES = frozenset({"x86_64", "amd64", "aarch64", "arm64"})
REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_LEDGER_PATH = REPO_ROOT / "notes" / "vm-run-ledger.jsonl"


def _resolve_ledger_path() -> Optional[Path]:
    disabled = os.environ.get("MULTIBOOT_HARNESS_DISABLE_LEDGER", "").strip().lower()
    if disabled in {"1", "true", "yes"}:
        return None
    override = os.environ.get("MULTIBOOT_HARNESS_LEDGER_PATH")
    if override:
        return Path(override)
    return DEFAULT_LEDGER_PATH


def _require_executable(executable: str) -> str:
    """Ensure an executable exists in ``PATH`` or skip the invoking test."""

    path: Optional[str] = shutil.which(executable)
    if path is None:
        pytest.skip(f"required executable '{executable}' is not available in PATH")
    return path


def _require_supported_machine(machine: str) -> str:
    """Skip unless the host is amd64 or arm64, the kexec multiboot targets."""

    if machine.lower() not in SUPPORTED_MACHINES:
        pytest.skip(f"multiboot kexec scenarios do not run on {machine or 'unknown'} hosts")
    return machine


def _require_file(path: Optional[Path], env_name: str) -> Path:
    if path is None:
        pytest.skip(f"{env_name} is not set")
    if not path.is_file():
        pytest.skip(f"{env_name} points at {path}, which is not a file")
    return path


class DebugGuest:
    """Wrap a :class:`GuestVM` so a failing step opens an interactive session."""

    def __init__(self, guest: GuestVM) -> None:
        self._guest = guest
        self._debug_session_started = False

    @property
    def output_path(self) -> Path:
        return self._guest.output_path

    def _interact_once(self) -> None:
        if not self._debug_session_started:
            self._debug_session_started = True
            self._guest.interact()

    def expect_marker(self, marker: str) -> None:
        try:
            self._guest.expect_marker(marker)
        except HarnessError:
            self._interact_once()
            raise

    def wait(self) -> int:
        try:
            return self._guest.wait()
        except HarnessError:
            self._interact_once()
            raise

    def close(self) -> None:
        self._guest.close()


@pytest.fixture(scope="session")
def _pexpect() -> Any:
    if importlib.util.find_spec("pexpect") is None:  # pragma: no cover - env specific
        pytest.skip("pexpect is required for VM integration tests")

    import pexpect  # type: ignore
    return pexpect


@pytest.fixture(scope="session")
def harness_config(
    _pexpect: Any, tmp_path_factory: pytest.TempPathFactory
) -> HarnessConfig:
    _require_supported_machine(platform.machine())
    try:
        config = HarnessConfig.from_env()
    except ValueError as exc:
        pytest.fail(f"invalid multiboot harness configuration: {exc}")
    _require_executable(config.qemu_executable)
    _require_file(config.host_kernel, "MULTIBOOT_HARNESS_KERNEL")
    _require_file(config.initramfs, "MULTIBOOT_HARNESS_INITRAMFS")
    if config.output_root is None:
        config = replace(config, output_root=tmp_path_factory.mktemp("multiboot-runs"))
    return config


@pytest.fixture(scope="session")
def run_ledger_path() -> Optional[Path]:
    return _resolve_ledger_path()


@pytest.fixture
def guest_launcher(request: pytest.FixtureRequest) -> Callable[..., Any]:
    """Return ``launch_guest``, or a wrapper that drops into the VM on failure."""

    if not request.config.getoption("multiboot_debug"):
        return launch_guest

    def _launch(config: HarnessConfig, **kwargs: Any) -> DebugGuest:
        return DebugGuest(launch_guest(config, **kwargs))

    return _launch


__all__ = [
    "DebugGuest",
    "guest_launcher",
    "harness_config",
    "run_ledger_path",
]
