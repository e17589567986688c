"""Recipe documents, platform overrides, the derivation graph, and the realizer."""

from hermitpkgs.graph import Graph, Node, resolve
from hermitpkgs.overrides import apply_overrides
from hermitpkgs.realize import Realizer
from hermitpkgs.recipe import Input, Override, Recipe, RecipeSet, load, parse, serialize
from hermitpkgs.shells import Shell

__all__ = [
    "Graph", "Node", "resolve",
    "apply_overrides",
    "Realizer",
    "Input", "Override", "Recipe", "RecipeSet", "load", "parse", "serialize",
    "Shell",
]
