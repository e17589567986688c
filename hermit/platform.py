"""Platform tags: `<arch>-<os>`, e.g. "x86_64-linux", "aarch64-darwin".

Core logic receives a Platform explicitly. `host()` is for the CLI only.
"""

import platform as _platform
import sys
from dataclasses import dataclass

ARCHES = ("x86_64", "aarch64")
SYSTEMS = ("linux", "darwin")

_ARCH_ALIASES = {"amd64": "x86_64", "x86_64": "x86_64", "arm64": "aarch64", "aarch64": "aarch64"}


@dataclass(frozen=True, order=True)
class Platform:
    arch: str
    os: str

    def __post_init__(self):
        if self.arch not in ARCHES:
            raise ValueError(f"unknown architecture: {self.arch!r}")
        if self.os not in SYSTEMS:
            raise ValueError(f"unknown operating system: {self.os!r}")

    @property
    def tag(self) -> str:
        return f"{self.arch}-{self.os}"

    def __str__(self) -> str:
        return self.tag

    @classmethod
    def parse(cls, tag: str) -> "Platform":
        arch, sep, os_name = tag.partition("-")
        if not sep:
            raise ValueError(f"platform tag must be <arch>-<os>: {tag!r}")
        return cls(arch, os_name)


DEFAULT_PLATFORMS = tuple(Platform(a, o) for o in SYSTEMS for a in ARCHES)


def host() -> Platform:
    machine = _platform.machine().lower()
    arch = _ARCH_ALIASES.get(machine)
    if arch is None:
        raise ValueError(f"unsupported host architecture: {machine!r}")
    os_name = "darwin" if sys.platform == "darwin" else "linux"
    return Platform(arch, os_name)
