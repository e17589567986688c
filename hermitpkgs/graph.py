"""Resolve recipes into a derivation graph.

    graph = resolve(recipe_set.recipes, Platform.parse("x86_64-linux"))
    graph["hello"].hash      # '0c5b8vw40dy178xlpddw65q9gf1h2186'
    graph.order              # dependencies before dependents

Each recipe has its platform overrides applied, then becomes a Derivation
whose inputs are:

    lit  → the literal value
    ref  → the *derivation hash* of the referenced recipe
    src  → the store hash of the pinned source, which depends only on its
           integrity hash and name (fixed-output: moving a URL to a mirror
           does not rebuild anything)

Hashes are computed bottom-up during a depth-first walk. Because a ref
contributes the dependency's hash, any change anywhere in a recipe's
closure changes its hash, which is what invalidates downstream cache
entries. The walk keeps the current path; meeting a recipe already on it
is a cycle.
"""

from dataclasses import dataclass, field
from typing import Iterable

from hermit.derivation import Derivation, DerivationInput, derivation_hash
from hermit.errors import CyclicDependency, RecipeError
from hermit.fetch import SourceRef
from hermit.platform import Platform
from hermitpkgs.overrides import apply_overrides
from hermitpkgs.recipe import Recipe


@dataclass(frozen=True)
class Node:
    recipe: Recipe  # overrides applied
    derivation: Derivation
    hash: str
    deps: tuple[str, ...]
    sources: tuple[tuple[str, SourceRef], ...]  # (input name, source)

    @property
    def name(self) -> str:
        return self.recipe.name

    @property
    def store_name(self) -> str:
        return self.recipe.store_name(self.derivation.platform)


@dataclass
class Graph:
    platform: Platform
    nodes: dict[str, Node] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)

    def __getitem__(self, name: str) -> Node:
        try:
            return self.nodes[name]
        except KeyError:
            raise RecipeError(f"no recipe named {name!r}") from None

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def closure(self, names: Iterable[str]) -> list[str]:
        """names and everything they depend on, dependencies first."""
        wanted: set[str] = set()
        todo = [self[n].name for n in names]
        while todo:
            n = todo.pop()
            if n not in wanted:
                wanted.add(n)
                todo.extend(self.nodes[n].deps)
        return [n for n in self.order if n in wanted]

    def live_hashes(self, names: Iterable[str] | None = None) -> set[str]:
        """Store hashes of the closure's derivations and pinned sources."""
        selected = self.order if names is None else self.closure(names)
        hashes = set()
        for n in selected:
            node = self.nodes[n]
            hashes.add(node.hash)
            hashes.update(src.store_hash for _, src in node.sources)
        return hashes


def _derivation(recipe: Recipe, platform: Platform, dep_hashes: dict[str, str]) -> Derivation:
    inputs = []
    for i in recipe.inputs:
        if i.kind == "lit":
            inputs.append(DerivationInput("lit", i.name, i.lit))
        elif i.kind == "ref":
            inputs.append(DerivationInput("drv", i.name, dep_hashes[i.ref]))
        else:
            inputs.append(DerivationInput("src", i.name, i.source.store_hash))
    return Derivation(
        name=recipe.name,
        version=recipe.version,
        platform=platform.tag,
        builder=recipe.argv(),
        inputs=inputs,
        outputs=list(recipe.outputs),
        exports=dict(recipe.exports),
        paths=list(recipe.paths),
        template=recipe.output,
    )


def _refs(recipe: Recipe) -> list[str]:
    return [i.ref for i in recipe.inputs if i.ref is not None]


def _node(recipe: Recipe, platform: Platform, graph: Graph) -> Node:
    dep_hashes = {ref: graph.nodes[ref].hash for ref in _refs(recipe)}
    drv = _derivation(recipe, platform, dep_hashes)
    # Validates the output template before anything is built.
    recipe.store_name(platform.tag)
    return Node(
        recipe=recipe,
        derivation=drv,
        hash=derivation_hash(drv),
        deps=tuple(dep_hashes),
        sources=tuple((i.name, i.source) for i in recipe.inputs if i.source is not None),
    )


def resolve(recipes: Iterable[Recipe], platform: Platform) -> Graph:
    """Build the derivation graph for recipes on platform.

    Raises CyclicDependency (with the cycle) or RecipeError for a reference
    to a recipe that isn't declared.
    """
    declared: dict[str, Recipe] = {}
    for r in recipes:
        if r.name in declared:
            raise RecipeError(f"recipe {r.name!r} declared more than once")
        declared[r.name] = apply_overrides(r, platform)

    graph = Graph(platform)
    for root in declared:
        if root in graph.nodes:
            continue
        # path holds the recipes being visited; stack holds their unvisited refs.
        path = [root]
        stack = [iter(_refs(declared[root]))]
        while stack:
            name = path[-1]
            for ref in stack[-1]:
                if ref in graph.nodes:
                    continue
                if ref in path:
                    raise CyclicDependency(path[path.index(ref):] + [ref])
                if ref not in declared:
                    raise RecipeError(f"recipe {name!r} references unknown recipe {ref!r}")
                path.append(ref)
                stack.append(iter(_refs(declared[ref])))
                break
            else:
                stack.pop()
                path.pop()
                graph.nodes[name] = _node(declared[name], platform, graph)
                graph.order.append(name)

    # Present nodes in declaration order; `order` stays topological.
    graph.nodes = {name: graph.nodes[name] for name in declared}
    return graph
