"""The build store: derivation hash → realized output.

Layout under the store root::

    <hash>-<name>          realized output (file or directory)
    .meta/<hash>.json      entry record; its presence is what makes an entry exist
    .tmp/                  staging for builds in progress
    .trash/                entries being deleted
    .locks/<hash>.lock     per-hash flock
    .roots/<name>          GC roots, each holding one hash
    .logs/<hash>.log       build logs

Realizing an entry builds into `.tmp/`, renames the output into place, and
finally writes the record with an atomic replace. A process killed at any
point before that last step leaves no record, so `exists()` stays false and
the leftover output is cleared by the next `realize()` or `gc()`.
"""

import json
import logging
import os
import shutil
import tempfile
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

from hermit import derivation as drvmod
from hermit.errors import BuildFailure, HermitError, StoreCorruption
from hermit.hashing import format_integrity, is_store_hash
from hermit.locks import drop_lock, key_lock
from hermit.nar import nar_hash
from hermit.store_path import entry_name, split_entry_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreEntry:
    hash: str
    name: str
    path: str
    created: str
    kind: str = "build"  # "build" | "source"
    recipe: str = ""
    references: tuple[str, ...] = ()
    exports: dict[str, str] = field(default_factory=dict)
    paths: tuple[str, ...] = ()
    nar_hash: str = ""
    derivation: str = ""  # ATerm text; empty for sources

    def to_json(self) -> dict:
        d = asdict(self)
        d["references"] = list(self.references)
        d["paths"] = list(self.paths)
        return d

    @classmethod
    def from_json(cls, d: dict) -> "StoreEntry":
        return cls(
            hash=d["hash"],
            name=d["name"],
            path=d["path"],
            created=d["created"],
            kind=d.get("kind", "build"),
            recipe=d.get("recipe", ""),
            references=tuple(d.get("references", ())),
            exports=dict(d.get("exports", {})),
            paths=tuple(d.get("paths", ())),
            nar_hash=d.get("nar_hash", ""),
            derivation=d.get("derivation", ""),
        )


class Store:
    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.meta_dir = self.root / ".meta"
        self.tmp_dir = self.root / ".tmp"
        self.trash_dir = self.root / ".trash"
        self.lock_dir = self.root / ".locks"
        self.roots_dir = self.root / ".roots"
        self.logs_dir = self.root / ".logs"
        for d in (self.meta_dir, self.tmp_dir, self.trash_dir, self.lock_dir, self.roots_dir, self.logs_dir):
            d.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"Store({str(self.root)!r})"

    # --- Queries ---

    def _meta_path(self, hash32: str) -> Path:
        if not is_store_hash(hash32):
            raise ValueError(f"not a store hash: {hash32!r}")
        return self.meta_dir / f"{hash32}.json"

    def path_for(self, hash32: str, name: str) -> Path:
        return self.root / entry_name(hash32, name)

    def log_path(self, hash32: str) -> Path:
        return self.logs_dir / f"{hash32}.log"

    def exists(self, hash32: str) -> bool:
        return self._meta_path(hash32).exists()

    def get(self, hash32: str) -> StoreEntry | None:
        try:
            text = self._meta_path(hash32).read_text()
        except FileNotFoundError:
            return None
        try:
            entry = StoreEntry.from_json(json.loads(text))
        except (ValueError, KeyError) as e:
            raise StoreCorruption(hash32, f"unreadable entry record: {e}") from None
        if entry.hash != hash32:
            raise StoreCorruption(hash32, f"record is for {entry.hash}")
        return entry

    def cached(self, hash32: str) -> StoreEntry | None:
        """The recorded entry, checked to still have its output on disk."""
        entry = self.get(hash32)
        if entry is not None:
            path = Path(entry.path)
            if not (path.exists() or path.is_symlink()):
                raise StoreCorruption(hash32, f"output {path} is missing")
        return entry

    def entries(self) -> list[StoreEntry]:
        result = []
        for meta in sorted(self.meta_dir.glob("*.json")):
            entry = self.get(meta.stem)
            if entry is not None:
                result.append(entry)
        return result

    def closure(self, hashes: Iterable[str]) -> set[str]:
        """`hashes` plus everything their recorded references reach."""
        seen: set[str] = set()
        todo = list(hashes)
        while todo:
            h = todo.pop()
            if h in seen:
                continue
            seen.add(h)
            entry = self.get(h) if is_store_hash(h) else None
            if entry is not None:
                todo.extend(entry.references)
        return seen

    # --- Realization ---

    def realize(
        self,
        hash32: str,
        build_fn: Callable[[Path], None],
        *,
        name: str,
        kind: str = "build",
        recipe: str = "",
        references: Iterable[str] = (),
        exports: dict[str, str] | None = None,
        paths: Iterable[str] = (),
        derivation: str = "",
    ) -> StoreEntry:
        """Return the entry for hash32, running build_fn once if it is missing.

        build_fn receives a path that does not exist yet and must create the
        output there (a file or a directory). Concurrent callers for the same
        hash, in this process or another, wait for the first one and then
        observe its entry. Hermit errors raised by build_fn propagate as-is;
        anything else becomes BuildFailure. No entry is recorded on failure.
        A recorded entry whose output has gone missing raises StoreCorruption
        rather than being rebuilt; `gc` drops such records.
        """
        entry = self.cached(hash32)
        if entry is not None:
            return entry

        with key_lock(self.lock_dir, hash32):
            entry = self.cached(hash32)
            if entry is not None:
                return entry

            final = self.path_for(hash32, name)
            if final.exists() or final.is_symlink():
                logger.warning("removing unrecorded output %s", final)
                self._discard(final)

            staging_dir = Path(tempfile.mkdtemp(prefix=f"{hash32}-", dir=self.tmp_dir))
            staging = staging_dir / "out"
            try:
                logger.info("realizing %s (%s)", name, hash32)
                try:
                    build_fn(staging)
                except HermitError:
                    raise
                except Exception as e:
                    raise BuildFailure(name, hash32, str(e) or type(e).__name__) from e
                if not (staging.exists() or staging.is_symlink()):
                    raise BuildFailure(name, hash32, "build produced no output")

                digest = nar_hash(staging)
                os.rename(staging, final)
                entry = StoreEntry(
                    hash=hash32,
                    name=name,
                    path=str(final),
                    created=datetime.now(timezone.utc).isoformat(),
                    kind=kind,
                    recipe=recipe,
                    references=tuple(sorted(set(references))),
                    exports=dict(exports or {}),
                    paths=tuple(paths),
                    nar_hash=format_integrity(digest),
                    derivation=derivation,
                )
                self._write_meta(entry)
            finally:
                shutil.rmtree(staging_dir, ignore_errors=True)

        logger.info("realized %s -> %s", name, entry.path)
        return entry

    def _write_meta(self, entry: StoreEntry) -> None:
        meta = self._meta_path(entry.hash)
        tmp = meta.with_suffix(f".{uuid.uuid4().hex}.tmp")
        tmp.write_text(json.dumps(entry.to_json(), indent=2, sort_keys=True))
        os.replace(tmp, meta)

    # --- Verification ---

    def verify(self, hash32: str) -> StoreEntry:
        """Recheck an entry against its record. Raises StoreCorruption; never repairs."""
        entry = self.get(hash32)
        if entry is None:
            orphans = list(self.root.glob(f"{hash32}-*"))
            if orphans:
                raise StoreCorruption(hash32, f"output {orphans[0]} has no entry record")
            raise StoreCorruption(hash32, "no such entry")
        path = Path(entry.path)
        if not (path.exists() or path.is_symlink()):
            raise StoreCorruption(hash32, f"output {path} is missing")
        if entry.derivation:
            try:
                recorded = drvmod.derivation_hash(drvmod.parse(entry.derivation))
            except ValueError as e:
                raise StoreCorruption(hash32, f"recorded derivation does not parse: {e}") from None
            if recorded != hash32:
                raise StoreCorruption(hash32, f"recorded derivation hashes to {recorded}")
        actual = format_integrity(nar_hash(path))
        if actual != entry.nar_hash:
            raise StoreCorruption(hash32, f"content hash {actual} != recorded {entry.nar_hash}")
        return entry

    # --- GC roots ---

    def add_root(self, name: str, hash32: str) -> None:
        if "/" in name or name.startswith("."):
            raise ValueError(f"invalid root name: {name!r}")
        target = self.roots_dir / name
        tmp = target.with_name(f".{name}.{uuid.uuid4().hex}.tmp")
        tmp.write_text(hash32 + "\n")
        os.replace(tmp, target)

    def remove_root(self, name: str) -> None:
        (self.roots_dir / name).unlink(missing_ok=True)

    def roots(self) -> dict[str, str]:
        return {
            p.name: p.read_text().strip()
            for p in sorted(self.roots_dir.iterdir())
            if not p.name.startswith(".")
        }

    # --- Garbage collection ---

    def _discard(self, path: Path) -> None:
        """Rename into .trash, then delete, so readers never see a half-deleted tree."""
        doomed = self.trash_dir / f"{path.name}-{uuid.uuid4().hex}"
        os.rename(path, doomed)
        if doomed.is_dir() and not doomed.is_symlink():
            shutil.rmtree(doomed)
        else:
            doomed.unlink()

    def _broken(self, hash32: str) -> bool:
        try:
            self.cached(hash32)
        except StoreCorruption as e:
            logger.warning("dropping broken entry %s", e)
            return True
        return False

    def gc(self, live_hashes: Iterable[str]) -> list[str]:
        """Delete every entry whose hash is not in live_hashes. Returns removed hashes.

        Live entries whose record is unreadable or whose output is missing are
        deleted too, so the next realize builds them again.
        """
        live = set(live_hashes)
        dead = set()
        for meta in self.meta_dir.glob("*.json"):
            if meta.stem not in live or self._broken(meta.stem):
                dead.add(meta.stem)
        for child in self.root.iterdir():
            parsed = split_entry_name(child.name)
            if parsed is not None and parsed[0] not in live:
                dead.add(parsed[0])

        removed = []
        for hash32 in sorted(dead):
            with key_lock(self.lock_dir, hash32):
                meta = self._meta_path(hash32)
                if meta.exists():
                    self._discard(meta)
                for output in self.root.glob(f"{hash32}-*"):
                    self._discard(output)
                self.log_path(hash32).unlink(missing_ok=True)
                drop_lock(self.lock_dir, hash32)
            logger.info("deleted %s", hash32)
            removed.append(hash32)

        for leftover in list(self.tmp_dir.iterdir()):
            # Staging left by builds that died. A running build holds the lock.
            hash32 = leftover.name.split("-", 1)[0]
            if is_store_hash(hash32):
                with key_lock(self.lock_dir, hash32):
                    shutil.rmtree(leftover, ignore_errors=True)
                    if hash32 not in live and not self._meta_path(hash32).exists():
                        drop_lock(self.lock_dir, hash32)
        return removed
