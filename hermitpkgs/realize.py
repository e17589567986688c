"""Realize a derivation graph into the store.

This is the Python equivalent of `nix-store --realize` over a closure:
fetch pinned sources, then build every missing derivation, dependencies
first. Independent derivations build in parallel on a thread pool; a node's
task waits on its dependencies' futures. Tasks are submitted in topological
order, so every dependency a task waits on has already been started.

A build runs the recipe's argv in a scratch directory with:

    out          where the output must be created (a staging path)
    <input>      literal value, dependency's store path, or source's store path
    PATH         dependencies' search paths, then DEFAULT_PATH
    HOME         /homeless-shelter
    TMPDIR       the scratch directory

plus every dependency's exports. stdout and stderr go to the store's log
for that hash.
"""

import logging
import subprocess
import tempfile
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path

from hermit.derivation import serialize
from hermit.environment import compose
from hermit.errors import BuildFailure
from hermit.fetch import Fetcher
from hermit.store import Store, StoreEntry
from hermitpkgs.graph import Graph, Node

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"


def _last_line(log: Path) -> str:
    try:
        lines = [line for line in log.read_text(errors="replace").splitlines() if line.strip()]
    except OSError:
        return ""
    return lines[-1].strip() if lines else ""


class Realizer:
    def __init__(self, store: Store, fetcher: Fetcher, jobs: int = 1, keep_logs: bool = True):
        self.store = store
        self.fetcher = fetcher
        self.jobs = max(1, jobs)
        self.keep_logs = keep_logs

    def realize(self, graph: Graph, targets: list[str]) -> dict[str, StoreEntry]:
        """Realize targets and their closure. Returns entries by recipe name."""
        names = graph.closure(targets)
        futures: dict[str, Future] = {}
        with ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="hermit-build") as pool:
            for name in names:
                node = graph.nodes[name]
                deps = {d: futures[d] for d in node.deps}
                futures[name] = pool.submit(self._realize_node, node, deps)
            # First failure in dependency order is the root cause.
            return {name: futures[name].result() for name in names}

    def _realize_node(self, node: Node, dep_futures: dict[str, Future]) -> StoreEntry:
        deps = {name: f.result() for name, f in dep_futures.items()}
        entry = self.store.cached(node.hash)
        if entry is not None:
            logger.debug("%s is already realized at %s", node.name, entry.path)
            return entry

        sources = {name: self.fetcher.fetch(src) for name, src in node.sources}
        references = [e.hash for e in deps.values()]
        references += [src.store_hash for _, src in node.sources]
        return self.store.realize(
            node.hash,
            lambda out: self._build(node, out, deps, sources),
            name=node.store_name,
            recipe=node.name,
            references=references,
            exports=node.recipe.exports,
            paths=node.recipe.paths,
            derivation=serialize(node.derivation),
        )

    def build_env(self, node: Node, out: Path, deps: dict[str, StoreEntry],
                  sources: dict[str, Path], workdir: str) -> dict[str, str]:
        dep_env = compose(deps.values(), order=list(node.deps))
        env = dep_env.apply({"PATH": DEFAULT_PATH})
        for i in node.recipe.inputs:
            if i.kind == "lit":
                env[i.name] = i.lit
            elif i.kind == "ref":
                env[i.name] = deps[i.ref].path
            else:
                env[i.name] = str(sources[i.name])
        env.update(
            out=str(out),
            HOME="/homeless-shelter",
            TMPDIR=workdir,
            HERMIT_PLATFORM=node.derivation.platform,
        )
        return env

    def _build(self, node: Node, out: Path, deps: dict[str, StoreEntry], sources: dict[str, Path]) -> None:
        log = self.store.log_path(node.hash)
        argv = node.recipe.argv()
        with tempfile.TemporaryDirectory(prefix=f"hermit-build-{node.name}-") as workdir:
            env = self.build_env(node, out, deps, sources, workdir)
            logger.info("building %s: %s", node.name, " ".join(argv))
            with open(log, "wb") as logf:
                try:
                    proc = subprocess.run(argv, cwd=workdir, env=env, stdin=subprocess.DEVNULL,
                                          stdout=logf, stderr=subprocess.STDOUT)
                except OSError as e:
                    raise BuildFailure(node.name, node.hash, f"cannot run builder {argv[0]!r}: {e.strerror}") from e
        if proc.returncode != 0:
            reason = f"builder exited with status {proc.returncode}"
            tail = _last_line(log)
            if tail:
                reason += f": {tail}"
            raise BuildFailure(node.name, node.hash, f"{reason} (log: {log})")
        for o in node.recipe.outputs:
            if not (out / o).exists():
                raise BuildFailure(node.name, node.hash, f"declared output {o!r} was not produced")
        if not self.keep_logs:
            log.unlink(missing_ok=True)
