"""Harness configuration.

Scenario code only ever sees a :class:`HarnessConfig`; the environment is read
in one place, :meth:`HarnessConfig.from_env`, so tests can build
configurations directly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .extract import DEBUG_PREFIX, POST_HANDOFF_MARKER

DEFAULT_VM_TIMEOUT = 60
DEFAULT_MEMORY_MB = 1024
DEFAULT_QEMU_EXECUTABLE = "qemu-system-x86_64"

KERNEL_DIR_ENV = "MULTIBOOT_TEST_KERNEL_DIR"
QEMU_ENV = "MULTIBOOT_HARNESS_QEMU"
HOST_KERNEL_ENV = "MULTIBOOT_HARNESS_KERNEL"
INITRAMFS_ENV = "MULTIBOOT_HARNESS_INITRAMFS"
VM_TIMEOUT_ENV = "MULTIBOOT_HARNESS_VM_TIMEOUT"
OUTPUT_DIR_ENV = "MULTIBOOT_HARNESS_OUTPUT_DIR"


def _read_timeout_env(environ: Mapping[str, str], name: str, default: int) -> int:
    """Return a positive integer timeout configured via environment variable.

    Values are validated so that misconfiguration surfaces as an explicit
    error rather than silently disabling the timeout.
    """

    value = environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer value") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be greater than zero")
    return parsed


def _optional_path(environ: Mapping[str, str], name: str) -> Optional[Path]:
    value = environ.get(name)
    if value is None or value.strip() == "":
        return None
    return Path(value)


@dataclass(frozen=True)
class HarnessConfig:
    """Everything a scenario run needs to know about the host."""

    kernel_dir: Optional[Path]
    qemu_executable: str = DEFAULT_QEMU_EXECUTABLE
    host_kernel: Optional[Path] = None
    initramfs: Optional[Path] = None
    vm_timeout: int = DEFAULT_VM_TIMEOUT
    memory_mb: int = DEFAULT_MEMORY_MB
    output_root: Optional[Path] = None
    extra_qemu_args: Tuple[str, ...] = field(default_factory=tuple)
    debug_prefix: str = DEBUG_PREFIX
    post_handoff_marker: str = POST_HANDOFF_MARKER

    def __post_init__(self) -> None:
        if self.vm_timeout <= 0:
            raise ValueError("vm_timeout must be greater than zero")
        if self.memory_mb <= 0:
            raise ValueError("memory_mb must be greater than zero")
        if not self.debug_prefix or not self.post_handoff_marker:
            raise ValueError("marker strings must not be empty")
        if self.debug_prefix == self.post_handoff_marker:
            raise ValueError("debug prefix and post-handoff marker must differ")

    def kernel_path(self, variant: str) -> Optional[Path]:
        """Return the host path of *variant*'s kernel image, if a directory is set."""

        if self.kernel_dir is None:
            return None
        return self.kernel_dir / variant.lstrip("/")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "HarnessConfig":
        env = os.environ if environ is None else environ
        qemu = env.get(QEMU_ENV, "").strip() or DEFAULT_QEMU_EXECUTABLE
        return cls(
            kernel_dir=_optional_path(env, KERNEL_DIR_ENV),
            qemu_executable=qemu,
            host_kernel=_optional_path(env, HOST_KERNEL_ENV),
            initramfs=_optional_path(env, INITRAMFS_ENV),
            vm_timeout=_read_timeout_env(env, VM_TIMEOUT_ENV, DEFAULT_VM_TIMEOUT),
            output_root=_optional_path(env, OUTPUT_DIR_ENV),
        )


__all__ = [
    "DEFAULT_MEMORY_MB",
    "DEFAULT_QEMU_EXECUTABLE",
    "DEFAULT_VM_TIMEOUT",
    "HOST_KERNEL_ENV",
    "HarnessConfig",
    "INITRAMFS_ENV",
    "KERNEL_DIR_ENV",
    "OUTPUT_DIR_ENV",
    "QEMU_ENV",
    "VM_TIMEOUT_ENV",
]
