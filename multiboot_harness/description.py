"""Typed view of the multiboot information record printed around a kexec.

The harness compares records as plain JSON. These dataclasses are an optional
schema layer: passing :meth:`Description.from_json` as the ``schema`` of the
extractors rejects fragments whose fields have the wrong type, the same way a
strict decoder of the multiboot debug record would.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

_UINT32_MAX = 0xFFFFFFFF
_UINT64_MAX = 0xFFFFFFFFFFFFFFFF


def _uint(data: Mapping[str, Any], key: str, maximum: int, context: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{context}.{key} must be an integer, got {type(value).__name__}")
    if value < 0 or value > maximum:
        raise ValueError(f"{context}.{key} out of range: {value}")
    return value


def _str(data: Mapping[str, Any], key: str, context: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"{context}.{key} must be a string, got {type(value).__name__}")
    return value


def _list(data: Mapping[str, Any], key: str, context: str) -> List[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise TypeError(f"{context}.{key} must be a list, got {type(value).__name__}")
    return value


def _mapping(value: Any, context: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise TypeError(f"{context} must be an object, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class MemoryMapEntry:
    """One entry of the multiboot memory map."""

    size: int = 0
    base_addr: int = 0
    length: int = 0
    type: int = 0

    @classmethod
    def from_json(cls, data: Any, *, context: str = "mmap") -> "MemoryMapEntry":
        data = _mapping(data, context)
        return cls(
            size=_uint(data, "size", _UINT32_MAX, context),
            base_addr=_uint(data, "base_addr", _UINT64_MAX, context),
            length=_uint(data, "length", _UINT64_MAX, context),
            type=_uint(data, "type", _UINT32_MAX, context),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "base_addr": self.base_addr,
            "length": self.length,
            "type": self.type,
        }


@dataclass(frozen=True)
class ModuleDesc:
    """A module handed to the kernel: load range, command line and digest."""

    start: int = 0
    end: int = 0
    cmdline: str = ""
    sha256: str = ""
    name: Optional[str] = None

    @classmethod
    def from_json(cls, data: Any, *, context: str = "modules") -> "ModuleDesc":
        data = _mapping(data, context)
        name = data.get("name")
        if name is not None and not isinstance(name, str):
            raise TypeError(f"{context}.name must be a string, got {type(name).__name__}")
        return cls(
            start=_uint(data, "start", _UINT32_MAX, context),
            end=_uint(data, "end", _UINT32_MAX, context),
            cmdline=_str(data, "cmdline", context),
            sha256=_str(data, "sha256", context),
            name=name,
        )

    def to_json(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "start": self.start,
            "end": self.end,
            "cmdline": self.cmdline,
            "sha256": self.sha256,
        }
        if self.name is not None:
            payload["name"] = self.name
        return payload


@dataclass(frozen=True)
class Description:
    """Multiboot information as computed by kexec or reported by the kernel.

    Missing fields decode to zero values and unknown fields are ignored.
    """

    status: str = ""
    flags: int = 0
    mem_lower: int = 0
    mem_upper: int = 0
    mmap_addr: int = 0
    mmap_length: int = 0
    cmdline: str = ""
    bootloader: str = ""
    mmap: List[MemoryMapEntry] = field(default_factory=list)
    modules: List[ModuleDesc] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Any) -> "Description":
        data = _mapping(data, "description")
        return cls(
            status=_str(data, "status", "description"),
            flags=_uint(data, "flags", _UINT32_MAX, "description"),
            mem_lower=_uint(data, "mem_lower", _UINT32_MAX, "description"),
            mem_upper=_uint(data, "mem_upper", _UINT32_MAX, "description"),
            mmap_addr=_uint(data, "mmap_addr", _UINT32_MAX, "description"),
            mmap_length=_uint(data, "mmap_length", _UINT32_MAX, "description"),
            cmdline=_str(data, "cmdline", "description"),
            bootloader=_str(data, "bootloader", "description"),
            mmap=[
                MemoryMapEntry.from_json(entry, context=f"mmap[{index}]")
                for index, entry in enumerate(_list(data, "mmap", "description"))
            ],
            modules=[
                ModuleDesc.from_json(entry, context=f"modules[{index}]")
                for index, entry in enumerate(_list(data, "modules", "description"))
            ],
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "flags": self.flags,
            "mem_lower": self.mem_lower,
            "mem_upper": self.mem_upper,
            "mmap_addr": self.mmap_addr,
            "mmap_length": self.mmap_length,
            "cmdline": self.cmdline,
            "bootloader": self.bootloader,
            "mmap": [entry.to_json() for entry in self.mmap],
            "modules": [module.to_json() for module in self.modules],
        }


__all__ = ["Description", "MemoryMapEntry", "ModuleDesc"]
