"""NAR (Nix Archive) serialization, used to hash filesystem trees.

NAR is a deterministic archive: no timestamps, owners, or permission modes
other than the executable bit, and directory entries are sorted. Identical
content always produces the identical byte stream, which makes its SHA-256
usable as the integrity hash of fetched sources and store entries.

Every value is written as uint64_le(length) + bytes + zero padding to 8.

    str("nix-archive-1")
    str("(") str("type")
      str("regular") [str("executable") str("")] str("contents") str(<data>)
    | str("symlink") str("target") str(<target>)
    | str("directory") { str("entry") str("(") str("name") str(<n>) str("node") <node> str(")") }
    str(")")

Hashing streams file contents in chunks, so large trees never sit in memory.
"""

import hashlib
import os
import stat
import struct
from pathlib import Path

CHUNK = 1 << 16


def _pad8(n: int) -> int:
    return (8 - n % 8) % 8


def _str(s: str | bytes) -> bytes:
    if isinstance(s, str):
        s = s.encode()
    return struct.pack("<Q", len(s)) + s + b"\0" * _pad8(len(s))


class _Sink:
    """Feeds NAR bytes to a hasher, or collects them when no hasher is given."""

    def __init__(self, hasher=None):
        self.hasher = hasher
        self.parts: list[bytes] = []

    def write(self, data: bytes) -> None:
        if self.hasher is not None:
            self.hasher.update(data)
        else:
            self.parts.append(data)

    def token(self, s: str | bytes) -> None:
        self.write(_str(s))

    def file_contents(self, path: Path) -> None:
        size = path.stat().st_size
        self.write(struct.pack("<Q", size))
        with open(path, "rb") as f:
            while chunk := f.read(CHUNK):
                self.write(chunk)
        self.write(b"\0" * _pad8(size))


def _dump(path: Path, sink: _Sink) -> None:
    st = os.lstat(path)
    sink.token("(")
    if stat.S_ISLNK(st.st_mode):
        sink.token("type")
        sink.token("symlink")
        sink.token("target")
        sink.token(os.readlink(path))
    elif stat.S_ISREG(st.st_mode):
        sink.token("type")
        sink.token("regular")
        if st.st_mode & stat.S_IXUSR:
            sink.token("executable")
            sink.token("")
        sink.token("contents")
        sink.file_contents(path)
    elif stat.S_ISDIR(st.st_mode):
        sink.token("type")
        sink.token("directory")
        for entry_name in sorted(os.listdir(path)):
            sink.token("entry")
            sink.token("(")
            sink.token("name")
            sink.token(entry_name)
            sink.token("node")
            _dump(path / entry_name, sink)
            sink.token(")")
    else:
        raise ValueError(f"unsupported file type: {path}")
    sink.token(")")


def nar_serialize(path: str | Path) -> bytes:
    sink = _Sink()
    sink.token("nix-archive-1")
    _dump(Path(path), sink)
    return b"".join(sink.parts)


def nar_hash(path: str | Path) -> bytes:
    """SHA-256 of the NAR serialization, what `nix hash path` computes."""
    h = hashlib.sha256()
    sink = _Sink(h)
    sink.token("nix-archive-1")
    _dump(Path(path), sink)
    return h.digest()
