"""Compose shell environments from realized store entries.

`compose()` is pure: it never reads or writes os.environ. An Environment is
applied by whoever spawns a process with it (see `hermit run`).
"""

import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from hermit.store import StoreEntry

VARIABLE_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass(frozen=True)
class Environment:
    variables: tuple[tuple[str, str], ...] = ()
    path: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, str]:
        return dict(self.variables)

    def with_variables(self, extra: Mapping[str, str]) -> "Environment":
        """A new Environment with `extra` layered on top (last wins)."""
        return Environment(_merge(self.variables, extra.items()), self.path)

    def apply(self, base: Mapping[str, str]) -> dict[str, str]:
        """A copy of `base` with our variables set and our PATH entries prepended."""
        result = dict(base)
        result.update(self.variables)
        if self.path:
            existing = base.get("PATH", "")
            result["PATH"] = ":".join(self.path + ((existing,) if existing else ()))
        return result

    def to_shell(self) -> str:
        for k, _ in self.variables:
            if not VARIABLE_NAME_RE.fullmatch(k):
                raise ValueError(f"not a shell variable name: {k!r}")
        lines = [f"export {k}={shlex.quote(v)}" for k, v in self.variables]
        if self.path:
            lines.append("export PATH=" + shlex.quote(":".join(self.path)) + '"${PATH:+:$PATH}"')
        return "\n".join(lines) + ("\n" if lines else "")


def _merge(current: Iterable[tuple[str, str]], extra: Iterable[tuple[str, str]]) -> tuple[tuple[str, str], ...]:
    # A redeclared variable takes the new value and moves to its new position.
    merged: dict[str, str] = {}
    for k, v in list(current) + list(extra):
        merged.pop(k, None)
        merged[k] = v
    return tuple(merged.items())


def _substitute(value: str, out: str) -> str:
    return value.replace("${out}", out)


def compose(entries: Iterable[StoreEntry], order: Sequence[str] | None = None) -> Environment:
    """Build the Environment for a set of entries.

    Entries are ordered by the position of their recipe in `order` (stable;
    entries whose recipe isn't listed keep their relative order at the end).
    Search paths concatenate in that order; exports merge with the last
    declaration winning.
    """
    entries = list(entries)
    if order is not None:
        rank = {name: i for i, name in enumerate(order)}
        entries.sort(key=lambda e: rank.get(e.recipe, len(rank)))

    seen: set[str] = set()
    path: list[str] = []
    variables: list[tuple[str, str]] = []
    for entry in entries:
        if entry.hash in seen:
            continue
        seen.add(entry.hash)
        for sub in entry.paths:
            p = str(Path(entry.path, sub)) if sub not in ("", ".") else entry.path
            if p not in path:
                path.append(p)
        for k in sorted(entry.exports):
            variables.append((k, _substitute(entry.exports[k], entry.path)))
    return Environment(_merge((), variables), tuple(path))
