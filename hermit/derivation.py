"""Parse and serialize derivations (ATerm format), and hash them.

A derivation is a recipe after overrides are applied and every reference
is resolved: the unit the store is keyed by. Its text form is ATerm:

    Derive(
        "hello",                                   # name
        "2.12",                                    # version
        "x86_64-linux",                            # platform
        ["/bin/sh","-c","..."],                    # builder argv
        [("lit","greeting","hi"),                  # inputs, declaration order
         ("drv","cc","<32-char derivation hash>"),
         ("src","src","<32-char source store hash>")],
        ["bin/hello"],                             # expected outputs
        [("HELLO","${out}/bin/hello")],            # exports
        ["bin"],                                   # search paths
        "{name}-{version}"                         # output template
    )

Input order is kept as declared (it decides PATH order during builds);
exports are sorted by key.

The derivation hash is sha256 of this text, folded to 160 bits. Since a
"drv" input carries the *hash* of the referenced derivation, changing
anything upstream changes every hash downstream of it.
"""

from dataclasses import dataclass, field

from hermit.hashing import sha256, store_hash

INPUT_KINDS = ("lit", "drv", "src")


@dataclass(frozen=True)
class DerivationInput:
    kind: str  # "lit" | "drv" | "src"
    name: str
    value: str  # literal value, derivation hash, or integrity string


@dataclass
class Derivation:
    name: str = ""
    version: str = ""
    platform: str = ""
    builder: list[str] = field(default_factory=list)
    inputs: list[DerivationInput] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    exports: dict[str, str] = field(default_factory=dict)
    paths: list[str] = field(default_factory=list)
    template: str = ""

    def input_drvs(self) -> dict[str, str]:
        return {i.name: i.value for i in self.inputs if i.kind == "drv"}

    def input_srcs(self) -> dict[str, str]:
        return {i.name: i.value for i in self.inputs if i.kind == "src"}

    def literals(self) -> dict[str, str]:
        return {i.name: i.value for i in self.inputs if i.kind == "lit"}


# --- ATerm parser ---

class _Parser:
    def __init__(self, s: str):
        self.s = s
        self.pos = 0

    def peek(self) -> str:
        if self.pos >= len(self.s):
            raise ValueError("unexpected end of input")
        return self.s[self.pos]

    def expect(self, ch: str) -> None:
        if self.peek() != ch:
            raise ValueError(f"expected {ch!r} at pos {self.pos}, got {self.s[self.pos]!r}")
        self.pos += 1

    def expect_str(self, s: str) -> None:
        end = self.pos + len(s)
        if self.s[self.pos:end] != s:
            raise ValueError(f"expected {s!r} at pos {self.pos}")
        self.pos = end

    def parse_string(self) -> str:
        self.expect('"')
        parts: list[str] = []
        while self.peek() != '"':
            ch = self.s[self.pos]
            if ch == '\\':
                self.pos += 1
                ch = self.peek()
                parts.append({'n': '\n', 'r': '\r', 't': '\t'}.get(ch, ch))
            else:
                parts.append(ch)
            self.pos += 1
        self.expect('"')
        return "".join(parts)

    def parse_list(self, item):
        self.expect('[')
        items = []
        while self.peek() != ']':
            if items:
                self.expect(',')
            items.append(item())
        self.expect(']')
        return items

    def parse_tuple(self, n: int) -> tuple[str, ...]:
        self.expect('(')
        fields = []
        for i in range(n):
            if i:
                self.expect(',')
            fields.append(self.parse_string())
        self.expect(')')
        return tuple(fields)

    def parse_input(self) -> DerivationInput:
        kind, name, value = self.parse_tuple(3)
        if kind not in INPUT_KINDS:
            raise ValueError(f"unknown input kind {kind!r} at pos {self.pos}")
        return DerivationInput(kind, name, value)


def parse(text: str) -> Derivation:
    """Parse ATerm text into a Derivation."""
    p = _Parser(text)
    p.expect_str("Derive(")
    name = p.parse_string()
    p.expect(',')
    version = p.parse_string()
    p.expect(',')
    platform = p.parse_string()
    p.expect(',')
    builder = p.parse_list(p.parse_string)
    p.expect(',')
    inputs = p.parse_list(p.parse_input)
    p.expect(',')
    outputs = p.parse_list(p.parse_string)
    p.expect(',')
    exports = dict(p.parse_list(lambda: p.parse_tuple(2)))
    p.expect(',')
    paths = p.parse_list(p.parse_string)
    p.expect(',')
    template = p.parse_string()
    p.expect(')')
    if p.pos != len(text):
        raise ValueError(f"trailing data at pos {p.pos}")
    return Derivation(name, version, platform, builder, inputs, outputs, exports, paths, template)


def _escape(s: str) -> str:
    return s.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")


def _q(s: str) -> str:
    return f'"{_escape(s)}"'


def serialize(drv: Derivation) -> str:
    """Serialize a Derivation to ATerm text."""
    inputs = ",".join(f"({_q(i.kind)},{_q(i.name)},{_q(i.value)})" for i in drv.inputs)
    exports = ",".join(f"({_q(k)},{_q(drv.exports[k])})" for k in sorted(drv.exports))
    return "".join([
        "Derive(",
        _q(drv.name), ",",
        _q(drv.version), ",",
        _q(drv.platform), ",",
        "[", ",".join(_q(a) for a in drv.builder), "],",
        "[", inputs, "],",
        "[", ",".join(_q(o) for o in drv.outputs), "],",
        "[", exports, "],",
        "[", ",".join(_q(p) for p in drv.paths), "],",
        _q(drv.template),
        ")",
    ])


def derivation_hash(drv: Derivation) -> str:
    """The 32-character store hash of a fully resolved derivation."""
    return store_hash(sha256(serialize(drv).encode()))
