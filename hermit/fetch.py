"""Pinned source fetcher.

A SourceRef names where content comes from and what it must hash to::

    SourceRef(name="esplora-src",
              url="git+https://github.com/Blockstream/electrs",
              rev="a0f1d7a7...",
              integrity="sha256-...")

Supported origins:

    /abs/path, file:///abs/path     copied as-is (file or tree)
    http://..., https://...         downloaded; .tar.gz/.tgz/.tar.xz/.tar.bz2/.tar/.zip
                                    are unpacked and a single top-level directory stripped
    git+<url>                       shallow fetch of `rev`, .git removed

The result is NAR-hashed and compared to the expected integrity before it
becomes visible. Its store directory is derived from the *expected* hash,
so a second fetch of the same ref is answered from the store. Fetching goes
through Store.realize, which gives the same per-key locking and atomic
rename that builds get.
"""

import http.client
import logging
import random
import shutil
import subprocess
import tarfile
import time
import urllib.error
import urllib.parse
import urllib.request
import zipfile
from dataclasses import dataclass
from pathlib import Path

from hermit.errors import IntegrityMismatch, UnreachableSource
from hermit.hashing import format_integrity, parse_integrity
from hermit.nar import nar_hash
from hermit.store import Store
from hermit.store_path import check_name, source_hash

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tbz2", ".tar", ".zip")


@dataclass(frozen=True)
class SourceRef:
    name: str
    url: str
    integrity: str
    rev: str = ""

    def __post_init__(self):
        check_name(self.name)
        parse_integrity(self.integrity)
        if self.url.startswith("git+") and not self.rev:
            raise ValueError(f"git source {self.name!r} needs a rev")

    @property
    def digest(self) -> bytes:
        return parse_integrity(self.integrity)

    @property
    def store_hash(self) -> str:
        return source_hash(self.digest, self.name)

    def __str__(self) -> str:
        return f"{self.url}@{self.rev}" if self.rev else self.url


class _Transient(Exception):
    """A failure worth retrying (network hiccup, 5xx, failed git fetch)."""


class Fetcher:
    def __init__(self, store: Store, timeout: float = 30, retries: int = 3,
                 backoff: float = 0.5, opener=None):
        self.store = store
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.opener = opener or urllib.request.urlopen

    def path_of(self, ref: SourceRef) -> Path:
        return self.store.path_for(ref.store_hash, ref.name)

    def fetch(self, ref: SourceRef) -> Path:
        """Fetch ref into the store and return its path."""
        entry = self.store.realize(
            ref.store_hash,
            lambda dest: self._fetch_into(ref, dest),
            name=ref.name,
            kind="source",
            recipe=str(ref),
        )
        return Path(entry.path)

    def _fetch_into(self, ref: SourceRef, dest: Path) -> None:
        self._with_retries(ref, dest)
        actual = nar_hash(dest)
        if actual != ref.digest:
            raise IntegrityMismatch(str(ref), format_integrity(ref.digest), format_integrity(actual))

    def _with_retries(self, ref: SourceRef, dest: Path) -> None:
        attempts = self.retries + 1
        for attempt in range(attempts):
            try:
                logger.info("fetching %s", ref)
                self._retrieve(ref, dest)
                return
            except _Transient as e:
                _clear(dest)
                if attempt == attempts - 1:
                    raise UnreachableSource(str(ref), f"{e} (after {attempts} attempts)") from None
                delay = self.backoff * (2 ** attempt) + random.uniform(0, self.backoff / 4)
                logger.warning("retry %d/%d for %s after %.2fs: %s",
                               attempt + 1, self.retries, ref, delay, e)
                time.sleep(delay)

    def _retrieve(self, ref: SourceRef, dest: Path) -> None:
        url = ref.url
        if url.startswith("git+"):
            _git_fetch(url[len("git+"):], ref.rev, dest)
        elif url.startswith(("http://", "https://")):
            self._download(ref, dest)
        else:
            _copy_local(ref, dest)

    def _download(self, ref: SourceRef, dest: Path) -> None:
        scratch = dest.parent / "download"
        try:
            with self.opener(ref.url, timeout=self.timeout) as response, open(scratch, "wb") as f:
                shutil.copyfileobj(response, f)
        except urllib.error.HTTPError as e:
            if e.code >= 500 or e.code == 429:
                raise _Transient(f"HTTP {e.code}") from None
            raise UnreachableSource(str(ref), f"HTTP {e.code}") from None
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            raise _Transient(str(getattr(e, "reason", e))) from None

        path = urllib.parse.urlparse(ref.url).path
        if path.endswith(ARCHIVE_SUFFIXES):
            try:
                _unpack(scratch, dest, zip_archive=path.endswith(".zip"))
            except (tarfile.TarError, zipfile.BadZipFile) as e:
                raise UnreachableSource(str(ref), f"bad archive: {e}") from None
            finally:
                scratch.unlink(missing_ok=True)
        else:
            scratch.rename(dest)


def _clear(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def _copy_local(ref: SourceRef, dest: Path) -> None:
    url = ref.url
    if url.startswith("file://"):
        url = urllib.parse.unquote(urllib.parse.urlparse(url).path)
    src = Path(url)
    try:
        if src.is_dir():
            shutil.copytree(src, dest, symlinks=True)
        elif src.is_file():
            shutil.copy2(src, dest)
        else:
            raise UnreachableSource(str(ref), "no such file or directory")
    except (OSError, shutil.Error) as e:
        raise UnreachableSource(str(ref), str(e)) from None


def _git_fetch(url: str, rev: str, dest: Path) -> None:
    def git(*args):
        subprocess.run(["git", "-C", str(dest), *args],
                       check=True, capture_output=True, text=True)

    dest.mkdir()
    try:
        git("init", "-q")
        git("fetch", "-q", "--depth", "1", url, rev)
        git("-c", "advice.detachedHead=false", "checkout", "-q", "FETCH_HEAD")
    except FileNotFoundError:
        raise UnreachableSource(url, "git is not installed") from None
    except subprocess.CalledProcessError as e:
        raise _Transient((e.stderr or "").strip() or f"git exited {e.returncode}") from None
    shutil.rmtree(dest / ".git")


def _unpack(archive: Path, dest: Path, zip_archive: bool) -> None:
    unpacked = dest.parent / "unpacked"
    unpacked.mkdir()
    if zip_archive:
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(unpacked)
    else:
        with tarfile.open(archive, "r:*") as tf:
            tf.extractall(unpacked, filter="data")
    children = list(unpacked.iterdir())
    if len(children) == 1 and children[0].is_dir() and not children[0].is_symlink():
        children[0].rename(dest)
        unpacked.rmdir()
    else:
        unpacked.rename(dest)
