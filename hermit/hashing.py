"""Hashes, nix-base32, and integrity strings.

Store names use Nix's base32 variant: alphabet "0123456789abcdfghijklmnpqrsvwxyz"
(no e, o, t, u) with 5-bit groups taken from the *last* bit position down to
the first. The same bytes encode differently than RFC 4648 base32.

    20 bytes (store hash)   → 32 chars
    32 bytes (SHA-256)      → 52 chars

Integrity strings on pinned sources accept three spellings of a SHA-256:

    sha256-<base64>     SRI, what `hermit hash-path` prints
    sha256:<hex>        64 hex digits
    sha256:<nix32>      52 nix-base32 chars
"""

import base64
import binascii
import hashlib

CHARS = "0123456789abcdfghijklmnpqrsvwxyz"
_DECODE_MAP = {c: i for i, c in enumerate(CHARS)}

STORE_HASH_BYTES = 20  # 160 bits, XOR-folded
STORE_HASH_CHARS = 32


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def compress_hash(hash_bytes: bytes, size: int) -> bytes:
    """XOR-fold a digest down to `size` bytes.

    Every input byte contributes: byte i lands on position i % size.
    """
    result = bytearray(size)
    for i, b in enumerate(hash_bytes):
        result[i % size] ^= b
    return bytes(result)


def nix32_encode(data: bytes) -> str:
    n = len(data)
    out_len = (n * 8 + 4) // 5
    result = []
    for i in range(out_len - 1, -1, -1):
        b = i * 5
        j, k = divmod(b, 8)
        c = data[j] >> k
        if j + 1 < n:
            c |= data[j + 1] << (8 - k)
        result.append(CHARS[c & 0x1F])
    return "".join(result)


def nix32_decode(s: str) -> bytes:
    out_len = len(s) * 5 // 8
    result = bytearray(out_len)
    for i, ch in enumerate(reversed(s)):
        digit = _DECODE_MAP.get(ch)
        if digit is None:
            raise ValueError(f"invalid nix base32 character: {ch!r}")
        j, k = divmod(i * 5, 8)
        result[j] |= (digit << k) & 0xFF
        carry = digit >> (8 - k)
        if carry and j + 1 < out_len:
            result[j + 1] |= carry
    return bytes(result)


def store_hash(digest: bytes) -> str:
    """The 32-character name used for store directories."""
    return nix32_encode(compress_hash(digest, STORE_HASH_BYTES))


def is_store_hash(s: str) -> bool:
    return len(s) == STORE_HASH_CHARS and all(c in _DECODE_MAP for c in s)


def parse_integrity(value: str) -> bytes:
    """Decode an integrity string to a raw SHA-256 digest.

    Raises ValueError for anything that isn't one of the accepted spellings.
    """
    if value.startswith("sha256-"):
        try:
            digest = base64.b64decode(value[len("sha256-"):], validate=True)
        except binascii.Error as e:
            raise ValueError(f"invalid SRI hash {value!r}: {e}") from None
    elif value.startswith("sha256:"):
        body = value[len("sha256:"):]
        if len(body) == 64:
            try:
                digest = bytes.fromhex(body)
            except ValueError:
                raise ValueError(f"invalid hex hash {value!r}") from None
        elif len(body) == 52:
            digest = nix32_decode(body)
        else:
            raise ValueError(f"sha256 hash has unexpected length: {value!r}")
    else:
        raise ValueError(f"unsupported hash algorithm in {value!r}")
    if len(digest) != 32:
        raise ValueError(f"sha256 digest must be 32 bytes, got {len(digest)}: {value!r}")
    return digest


def format_integrity(digest: bytes) -> str:
    """Canonical SRI spelling of a SHA-256 digest."""
    return "sha256-" + base64.b64encode(digest).decode()
