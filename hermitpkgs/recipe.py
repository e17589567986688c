"""Recipe documents: the declarative input hermit reads.

A document is JSON::

    {
      "recipes": [
        {
          "name": "hello",
          "version": "2.12",
          "inputs": [
            {"name": "greeting", "lit": "hi"},
            {"name": "cc", "ref": "toolchain"},
            {"name": "src", "source": {"url": "https://.../hello-2.12.tar.gz",
                                        "hash": "sha256-..."}}
          ],
          "build": "mkdir -p $out/bin && cp $src/hello $out/bin/",
          "outputs": ["bin/hello"],
          "exports": {"HELLO_EXEC": "${out}/bin/hello"},
          "paths": ["bin"],
          "overrides": [
            {"os": "darwin", "inputs": [{"name": "frameworks", "lit": "Security"}]}
          ]
        }
      ],
      "shells": {
        "default": {"recipes": ["hello"], "env": {"RUSTFLAGS": "-Cdebuginfo=0"},
                    "hook": "echo ready"}
      }
    }

`build` is either an argv list or a string run with `/bin/sh -c`. `output`
is an optional template for the store entry name ("{name}", "{version}",
"{platform}"); it defaults to "<name>-<version>". Unknown keys are errors.

parse() and serialize() round-trip: parse(serialize(parse(t))) == parse(t).
serialize() leaves out fields that hold their default value.
"""

import dataclasses
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hermit.environment import VARIABLE_NAME_RE
from hermit.errors import RecipeError
from hermit.fetch import SourceRef
from hermit.store_path import check_name
from hermitpkgs.shells import Shell

RESERVED_INPUTS = frozenset({"out", "PATH", "HOME", "TMPDIR", "TMP", "TEMP", "PWD"})
DEFAULT_PATHS = ("bin",)


@dataclass(frozen=True)
class Input:
    name: str
    lit: str | None = None
    ref: str | None = None
    source: SourceRef | None = None

    def __post_init__(self):
        if not VARIABLE_NAME_RE.fullmatch(self.name) or self.name in RESERVED_INPUTS:
            raise RecipeError(f"invalid input name: {self.name!r}")
        given = [x for x in (self.lit, self.ref, self.source) if x is not None]
        if len(given) != 1:
            raise RecipeError(f"input {self.name!r} needs exactly one of lit, ref, source")

    @property
    def kind(self) -> str:
        if self.lit is not None:
            return "lit"
        return "ref" if self.ref is not None else "source"


@dataclass(frozen=True)
class Override:
    """A block of inputs, exports and paths that applies only on matching platforms."""

    platforms: tuple[str, ...] = ()
    os: str = ""
    arch: str = ""
    inputs: tuple[Input, ...] = ()
    exports: dict[str, str] = field(default_factory=dict)
    paths: tuple[str, ...] = ()

    def __post_init__(self):
        if not (self.platforms or self.os or self.arch):
            raise RecipeError("override block needs a guard: platforms, os or arch")
        for k in self.exports:
            if not VARIABLE_NAME_RE.fullmatch(k):
                raise RecipeError(f"override block exports invalid variable {k!r}")


@dataclass(frozen=True)
class Recipe:
    name: str
    version: str = ""
    inputs: tuple[Input, ...] = ()
    build: tuple[str, ...] | str = ()
    output: str = ""
    outputs: tuple[str, ...] = ()
    exports: dict[str, str] = field(default_factory=dict)
    paths: tuple[str, ...] = DEFAULT_PATHS
    overrides: tuple[Override, ...] = ()

    def __post_init__(self):
        try:
            check_name(self.name)
        except ValueError as e:
            raise RecipeError(str(e)) from None
        if not self.build:
            raise RecipeError(f"recipe {self.name!r} has no build command")
        seen = set()
        for i in self.inputs:
            if i.name in seen:
                raise RecipeError(f"recipe {self.name!r} declares input {i.name!r} twice")
            seen.add(i.name)
        for k in self.exports:
            if not VARIABLE_NAME_RE.fullmatch(k):
                raise RecipeError(f"recipe {self.name!r} exports invalid variable {k!r}")
        for p in self.outputs + self.paths:
            if p.startswith("/") or ".." in Path(p).parts:
                raise RecipeError(f"recipe {self.name!r}: path {p!r} must stay inside the output")

    @property
    def identifier(self) -> str:
        return f"{self.name}-{self.version}" if self.version else self.name

    def argv(self) -> list[str]:
        if isinstance(self.build, str):
            return ["/bin/sh", "-c", self.build]
        return list(self.build)

    def store_name(self, platform: str = "") -> str:
        if not self.output:
            return self.identifier
        try:
            rendered = self.output.format(name=self.name, version=self.version, platform=platform)
        except (KeyError, IndexError, ValueError) as e:
            raise RecipeError(f"recipe {self.name!r}: bad output template {self.output!r}: {e}") from None
        try:
            return check_name(rendered)
        except ValueError as e:
            raise RecipeError(f"recipe {self.name!r}: {e}") from None

    def references(self) -> list[str]:
        """Names of every recipe referenced, including from override blocks."""
        refs = [i.ref for i in self.inputs if i.ref is not None]
        for o in self.overrides:
            refs.extend(i.ref for i in o.inputs if i.ref is not None)
        return refs

    def override(self, **changes) -> "Recipe":
        """A copy with some fields replaced, e.g. recipe.override(version="1.63.0")."""
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class RecipeSet:
    recipes: tuple[Recipe, ...] = ()
    shells: dict[str, Shell] = field(default_factory=dict)

    def __post_init__(self):
        names = [r.name for r in self.recipes]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise RecipeError(f"recipes declared more than once: {', '.join(dupes)}")
        for shell_name, shell in self.shells.items():
            for r in shell.recipes:
                if r not in names:
                    raise RecipeError(f"shell {shell_name!r} uses unknown recipe {r!r}")

    def names(self) -> list[str]:
        return [r.name for r in self.recipes]

    def get(self, name: str) -> Recipe:
        for r in self.recipes:
            if r.name == name:
                return r
        raise RecipeError(f"no recipe named {name!r}")


# --- parsing ---

def _check_keys(d: Any, allowed: set[str], where: str) -> dict:
    if not isinstance(d, dict):
        raise RecipeError(f"{where}: expected an object, got {type(d).__name__}")
    unknown = sorted(set(d) - allowed)
    if unknown:
        raise RecipeError(f"{where}: unknown keys {', '.join(unknown)}")
    return d


def _str(d: dict, key: str, where: str, default: str = "") -> str:
    value = d.get(key, default)
    if not isinstance(value, str):
        raise RecipeError(f"{where}: {key!r} must be a string")
    return value


def _str_list(d: dict, key: str, where: str, default=()) -> tuple[str, ...]:
    value = d.get(key, default)
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise RecipeError(f"{where}: {key!r} must be a list of strings")
    return tuple(value)


def _str_map(d: dict, key: str, where: str) -> dict[str, str]:
    value = d.get(key, {})
    if not isinstance(value, dict) or not all(isinstance(v, str) for v in value.values()):
        raise RecipeError(f"{where}: {key!r} must map strings to strings")
    return dict(value)


def _parse_source(d: Any, default_name: str, where: str) -> SourceRef:
    _check_keys(d, {"name", "url", "rev", "hash"}, where)
    try:
        return SourceRef(
            name=_str(d, "name", where, default_name),
            url=_str(d, "url", where),
            integrity=_str(d, "hash", where),
            rev=_str(d, "rev", where),
        )
    except ValueError as e:
        raise RecipeError(f"{where}: {e}") from None


def _parse_input(d: Any, recipe_name: str, where: str) -> Input:
    _check_keys(d, {"name", "lit", "ref", "source"}, where)
    name = _str(d, "name", where)
    where = f"{where} ({name})"
    source = None
    if "source" in d:
        source = _parse_source(d["source"], f"{recipe_name}-{name}", f"{where}.source")
    lit = d.get("lit")
    if lit is not None and not isinstance(lit, str):
        raise RecipeError(f"{where}: 'lit' must be a string")
    ref = d.get("ref")
    if ref is not None and not isinstance(ref, str):
        raise RecipeError(f"{where}: 'ref' must be a string")
    return Input(name=name, lit=lit, ref=ref, source=source)


def _parse_inputs(d: dict, recipe_name: str, where: str) -> tuple[Input, ...]:
    raw = d.get("inputs", [])
    if not isinstance(raw, list):
        raise RecipeError(f"{where}: 'inputs' must be a list")
    return tuple(_parse_input(x, recipe_name, f"{where}.inputs[{i}]") for i, x in enumerate(raw))


def _parse_override(d: Any, recipe_name: str, where: str) -> Override:
    _check_keys(d, {"platforms", "os", "arch", "inputs", "exports", "paths"}, where)
    return Override(
        platforms=_str_list(d, "platforms", where),
        os=_str(d, "os", where),
        arch=_str(d, "arch", where),
        inputs=_parse_inputs(d, recipe_name, where),
        exports=_str_map(d, "exports", where),
        paths=_str_list(d, "paths", where),
    )


RECIPE_KEYS = {"name", "version", "inputs", "build", "output", "outputs", "exports", "paths", "overrides"}


def _parse_recipe(d: Any, where: str) -> Recipe:
    _check_keys(d, RECIPE_KEYS, where)
    name = _str(d, "name", where)
    where = f"recipe {name!r}"
    build = d.get("build")
    if isinstance(build, list):
        build = _str_list(d, "build", where)
    elif not isinstance(build, str):
        raise RecipeError(f"{where}: 'build' must be a string or a list of strings")
    overrides = d.get("overrides", [])
    if not isinstance(overrides, list):
        raise RecipeError(f"{where}: 'overrides' must be a list")
    return Recipe(
        name=name,
        version=_str(d, "version", where),
        inputs=_parse_inputs(d, name, where),
        build=build,
        output=_str(d, "output", where),
        outputs=_str_list(d, "outputs", where),
        exports=_str_map(d, "exports", where),
        paths=_str_list(d, "paths", where, DEFAULT_PATHS),
        overrides=tuple(_parse_override(o, name, f"{where}.overrides[{i}]") for i, o in enumerate(overrides)),
    )


def _parse_shell(d: Any, where: str) -> Shell:
    _check_keys(d, {"recipes", "env", "hook"}, where)
    env = _str_map(d, "env", where)
    for k in env:
        if not VARIABLE_NAME_RE.fullmatch(k):
            raise RecipeError(f"{where}: invalid variable name {k!r}")
    return Shell(
        recipes=_str_list(d, "recipes", where),
        env=env,
        hook=_str(d, "hook", where),
    )


def parse(text: str) -> RecipeSet:
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise RecipeError(f"not valid JSON: {e}") from None
    _check_keys(doc, {"recipes", "shells"}, "document")
    recipes = doc.get("recipes", [])
    if not isinstance(recipes, list):
        raise RecipeError("document: 'recipes' must be a list")
    shells = doc.get("shells", {})
    if not isinstance(shells, dict):
        raise RecipeError("document: 'shells' must be an object")
    return RecipeSet(
        recipes=tuple(_parse_recipe(r, f"recipes[{i}]") for i, r in enumerate(recipes)),
        shells={name: _parse_shell(s, f"shell {name!r}") for name, s in shells.items()},
    )


def load(path: str | Path) -> RecipeSet:
    try:
        text = Path(path).read_text()
    except OSError as e:
        raise RecipeError(f"cannot read {path}: {e.strerror}") from None
    return parse(text)


# --- serializing ---

def _dump_source(s: SourceRef) -> dict:
    d = {"name": s.name, "url": s.url}
    if s.rev:
        d["rev"] = s.rev
    d["hash"] = s.integrity
    return d


def _dump_input(i: Input) -> dict:
    d: dict[str, Any] = {"name": i.name}
    if i.lit is not None:
        d["lit"] = i.lit
    elif i.ref is not None:
        d["ref"] = i.ref
    else:
        d["source"] = _dump_source(i.source)
    return d


def _dump_override(o: Override) -> dict:
    d: dict[str, Any] = {}
    if o.platforms:
        d["platforms"] = list(o.platforms)
    if o.os:
        d["os"] = o.os
    if o.arch:
        d["arch"] = o.arch
    if o.inputs:
        d["inputs"] = [_dump_input(i) for i in o.inputs]
    if o.exports:
        d["exports"] = dict(o.exports)
    if o.paths:
        d["paths"] = list(o.paths)
    return d


def _dump_recipe(r: Recipe) -> dict:
    d: dict[str, Any] = {"name": r.name}
    if r.version:
        d["version"] = r.version
    if r.inputs:
        d["inputs"] = [_dump_input(i) for i in r.inputs]
    d["build"] = r.build if isinstance(r.build, str) else list(r.build)
    if r.output:
        d["output"] = r.output
    if r.outputs:
        d["outputs"] = list(r.outputs)
    if r.exports:
        d["exports"] = dict(r.exports)
    if r.paths != DEFAULT_PATHS:
        d["paths"] = list(r.paths)
    if r.overrides:
        d["overrides"] = [_dump_override(o) for o in r.overrides]
    return d


def serialize(recipe_set: RecipeSet) -> str:
    doc: dict[str, Any] = {"recipes": [_dump_recipe(r) for r in recipe_set.recipes]}
    if recipe_set.shells:
        doc["shells"] = {
            name: {
                k: v for k, v in (
                    ("recipes", list(s.recipes)),
                    ("env", dict(s.env)),
                    ("hook", s.hook),
                ) if v
            }
            for name, s in recipe_set.shells.items()
        }
    return json.dumps(doc, indent=2) + "\n"
