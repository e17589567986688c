"""Error kinds surfaced by hermit.

Each carries enough context (recipe name, hash, source) to diagnose the
failure from a one-line message. The CLI maps `kind` to its diagnostic.
"""


class HermitError(Exception):
    kind = "error"


class RecipeError(HermitError, ValueError):
    """Malformed recipe document or a reference to an undeclared recipe."""
    kind = "recipe-error"


class UnreachableSource(HermitError):
    kind = "unreachable-source"

    def __init__(self, source: str, reason: str):
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


class IntegrityMismatch(HermitError):
    kind = "integrity-mismatch"

    def __init__(self, source: str, expected: str, actual: str):
        super().__init__(f"{source}: expected {expected}, got {actual}")
        self.source = source
        self.expected = expected
        self.actual = actual


class CyclicDependency(HermitError):
    kind = "cyclic-dependency"

    def __init__(self, cycle: list[str]):
        super().__init__("dependency cycle: " + " -> ".join(cycle))
        self.cycle = cycle


class BuildFailure(HermitError):
    kind = "build-failure"

    def __init__(self, name: str, hash32: str, reason: str):
        super().__init__(f"{name} ({hash32}): {reason}")
        self.name = name
        self.hash = hash32
        self.reason = reason


class StoreCorruption(HermitError):
    kind = "store-corruption"

    def __init__(self, hash32: str, reason: str):
        super().__init__(f"{hash32}: {reason}")
        self.hash = hash32
        self.reason = reason
