"""Store entry naming.

Every store directory is named `<hash>-<name>`, where `<hash>` is 32 chars
of nix-base32 over 160 XOR-folded bits. For derivation outputs the hash is
the derivation hash itself. For fetched sources it is computed from a
fingerprint of the *expected* integrity and the name:

    "source:sha256:<hex(integrity)>:<name>"

so the directory is known before anything is downloaded, and two sources
with the same content but different names never share a directory.
"""

import re

from hermit.hashing import is_store_hash, sha256, store_hash

# Names end up as directory names and shell-visible paths.
_NAME_RE = re.compile(r"^[A-Za-z0-9+_?=][A-Za-z0-9+\-._?=]*$")


def check_name(name: str) -> str:
    if not _NAME_RE.match(name):
        raise ValueError(f"invalid store name: {name!r}")
    return name


def source_hash(integrity: bytes, name: str) -> str:
    fingerprint = f"source:sha256:{integrity.hex()}:{name}"
    return store_hash(sha256(fingerprint.encode()))


def entry_name(hash32: str, name: str) -> str:
    return f"{hash32}-{check_name(name)}"


def split_entry_name(dirname: str) -> tuple[str, str] | None:
    """Split `<hash>-<name>`; None for anything that isn't a store entry."""
    hash32, sep, name = dirname.partition("-")
    if not sep or not name or not is_store_hash(hash32):
        return None
    return hash32, name
