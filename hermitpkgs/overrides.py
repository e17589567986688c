"""Platform-conditional recipe variants.

An override block applies when every guard it sets matches:

    {"platforms": ["x86_64-darwin", "aarch64-darwin"]}   tag is listed
    {"os": "darwin"}                                      os matches
    {"arch": "aarch64", "os": "linux"}                    both match

Matching blocks are applied in declaration order. An input whose name is
already present replaces it in place; a new name is appended. Exports merge
(later wins) and paths append. The result has no override blocks left, so
it hashes the same every time for a given platform.
"""

import dataclasses

from hermit.platform import Platform
from hermitpkgs.recipe import Override, Recipe


def matches(block: Override, platform: Platform) -> bool:
    if block.platforms and platform.tag not in block.platforms:
        return False
    if block.os and block.os != platform.os:
        return False
    if block.arch and block.arch != platform.arch:
        return False
    return True


def apply_overrides(recipe: Recipe, platform: Platform) -> Recipe:
    inputs = list(recipe.inputs)
    exports = dict(recipe.exports)
    paths = list(recipe.paths)
    for block in recipe.overrides:
        if not matches(block, platform):
            continue
        for new in block.inputs:
            for i, old in enumerate(inputs):
                if old.name == new.name:
                    inputs[i] = new
                    break
            else:
                inputs.append(new)
        exports.update(block.exports)
        paths.extend(p for p in block.paths if p not in paths)
    return dataclasses.replace(
        recipe,
        inputs=tuple(inputs),
        exports=exports,
        paths=tuple(paths),
        overrides=(),
    )
