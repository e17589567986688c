#!/usr/bin/env python3
"""hermit: pinned, content-addressed build environments."""

import argparse
import json
import logging
import os
import subprocess
import sys
import traceback
from pathlib import Path

from hermit import platform as hplatform
from hermit.config import load_config
from hermit.environment import compose
from hermit.errors import CyclicDependency, HermitError, RecipeError, StoreCorruption
from hermit.fetch import Fetcher
from hermit.hashing import format_integrity, is_store_hash
from hermit.log import configure_logging
from hermit.nar import nar_hash
from hermit.store import Store
from hermitpkgs import recipe as recipes
from hermitpkgs.graph import resolve
from hermitpkgs.realize import Realizer
from hermitpkgs.shells import shell_environment, shell_script

logger = logging.getLogger(__name__)


class Session:
    """Everything a command needs, built from flags and configuration."""

    def __init__(self, args, config):
        self.args = args
        self.config = config
        self.store = Store(args.store or self.config.store.root)
        self.fetcher = Fetcher(
            self.store,
            timeout=self.config.fetch.timeout,
            retries=self.config.fetch.retries,
            backoff=self.config.fetch.backoff,
        )
        tag = args.platform or self.config.platform
        try:
            self.platform = hplatform.Platform.parse(tag) if tag else hplatform.host()
        except ValueError as e:
            raise RecipeError(str(e)) from None
        self.recipe_file = Path(args.file or self.config.recipes)
        self._recipe_set = None
        self._graph = None

    @property
    def recipe_set(self):
        if self._recipe_set is None:
            self._recipe_set = recipes.load(self.recipe_file)
        return self._recipe_set

    @property
    def graph(self):
        if self._graph is None:
            self._graph = resolve(self.recipe_set.recipes, self.platform)
        return self._graph

    def realizer(self) -> Realizer:
        jobs = self.args.jobs or self.config.build.jobs
        return Realizer(self.store, self.fetcher, jobs=jobs, keep_logs=self.config.build.keep_logs)

    def shell(self, name: str):
        try:
            return self.recipe_set.shells[name]
        except KeyError:
            raise RecipeError(f"no shell named {name!r} in {self.recipe_file}") from None


def _environment(session: Session, targets: list[str], shell_name: str | None):
    shell = session.shell(shell_name) if shell_name else None
    names = list(targets) + (list(shell.recipes) if shell else [])
    if not names:
        raise RecipeError("no recipes given")
    entries = session.realizer().realize(session.graph, names)
    order = session.recipe_set.names()
    # Only the requested recipes contribute, not their build-time closure.
    selected = [entries[n] for n in dict.fromkeys(names)]
    if shell:
        return shell, shell_environment(shell, selected, order)
    return None, compose(selected, order)


def cmd_resolve(session: Session):
    graph = session.graph
    for name in graph.order:
        node = graph.nodes[name]
        line = f"{node.hash}  {node.store_name}"
        if node.deps:
            line += "  <- " + ", ".join(node.deps)
        print(line)


def cmd_build(session: Session):
    args = session.args
    entries = session.realizer().realize(session.graph, args.recipes)
    for name in args.recipes:
        entry = entries[name]
        if args.root:
            session.store.add_root(name, entry.hash)
        print(entry.path)


def cmd_gc(session: Session):
    live = set(session.store.roots().values())
    if session.recipe_file.exists():
        live |= session.graph.live_hashes()
    else:
        logger.warning("%s not found; keeping GC roots only", session.recipe_file)
    live = session.store.closure(live)
    removed = session.store.gc(live)
    print(f"{len(removed)} store entries deleted")


def cmd_env(session: Session):
    shell, env = _environment(session, session.args.recipes, session.args.shell)
    sys.stdout.write(shell_script(shell, env) if shell else env.to_shell())


def cmd_run(session: Session):
    args = session.args
    command = args.command[1:] if args.command[:1] == ["--"] else args.command
    if not command:
        raise RecipeError("no command given")
    _, env = _environment(session, args.recipes, args.shell)
    logger.info("running %s", " ".join(command))
    try:
        proc = subprocess.run(command, env=env.apply(os.environ))
    except OSError as e:
        print(f"error: cannot run {command[0]!r}: {e.strerror}", file=sys.stderr)
        sys.exit(127)
    sys.exit(proc.returncode)


def cmd_fetch(session: Session):
    args = session.args
    node = session.graph[args.recipe]
    sources = dict(node.sources)
    if args.input not in sources:
        raise RecipeError(f"recipe {args.recipe!r} has no source input {args.input!r}")
    print(session.fetcher.fetch(sources[args.input]))


def cmd_verify(session: Session):
    hashes = session.args.hashes or [e.hash for e in session.store.entries()]
    failures = 0
    for h in hashes:
        if not is_store_hash(h):
            failures += 1
            print(f"error: not a store hash: {h!r}", file=sys.stderr)
            continue
        try:
            entry = session.store.verify(h)
        except StoreCorruption as e:
            failures += 1
            print(f"error: {e.kind}: {e}", file=sys.stderr)
        else:
            print(f"ok {h} {entry.path}")
    if failures:
        sys.exit(1)


def cmd_show(session: Session):
    node = session.graph[session.args.recipe]
    drv = node.derivation
    entry = session.store.get(node.hash)
    info = {
        "hash": node.hash,
        "storeName": node.store_name,
        "name": drv.name,
        "version": drv.version,
        "platform": drv.platform,
        "builder": drv.builder,
        "inputs": [{"kind": i.kind, "name": i.name, "value": i.value} for i in drv.inputs],
        "outputs": drv.outputs,
        "exports": drv.exports,
        "paths": drv.paths,
        "template": drv.template,
        "realized": entry.path if entry else None,
    }
    json.dump(info, sys.stdout, indent=2)
    print()


def cmd_hash_path(session: Session):
    try:
        digest = nar_hash(session.args.path)
    except OSError as e:
        print(f"error: {session.args.path}: {e.strerror}", file=sys.stderr)
        sys.exit(1)
    print(format_integrity(digest))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hermit", description="Pinned, content-addressed build environments")
    parser.add_argument("-f", "--file", help="Recipe document (default: hermit.json)")
    parser.add_argument("--store", help="Store directory")
    parser.add_argument("--platform", help="Platform tag, e.g. x86_64-linux (default: host)")
    parser.add_argument("--config", help="Config file (default: hermit.config.json)")
    parser.add_argument("-j", "--jobs", type=int, help="Parallel builds")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress")
    parser.add_argument("--debug", action="store_true", help="Debug logging, tracebacks on error")
    parser.add_argument("--log-json", action="store_true", help="Log as JSON lines")
    sub = parser.add_subparsers(dest="cmd")

    p = sub.add_parser("resolve", help="Print the derivation graph")
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("build", help="Realize recipes and print their output paths")
    p.add_argument("recipes", nargs="+")
    p.add_argument("--root", action="store_true", help="Register a GC root per recipe")
    p.set_defaults(func=cmd_build)

    p = sub.add_parser("gc", help="Delete store entries that nothing references")
    p.set_defaults(func=cmd_gc)

    p = sub.add_parser("env", help="Print shell exports for recipes or a shell")
    p.add_argument("recipes", nargs="*")
    p.add_argument("--shell", help="Named shell from the recipe document")
    p.set_defaults(func=cmd_env)

    p = sub.add_parser("run", help="Run a command inside an environment")
    p.add_argument("-w", "--with", dest="recipes", action="append", default=[], metavar="RECIPE")
    p.add_argument("--shell", help="Named shell from the recipe document")
    p.add_argument("command", nargs=argparse.REMAINDER)
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("fetch", help="Fetch one pinned source input")
    p.add_argument("recipe")
    p.add_argument("input")
    p.set_defaults(func=cmd_fetch)

    p = sub.add_parser("verify", help="Check store entries against their records")
    p.add_argument("hashes", nargs="*")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("show", help="Show a resolved derivation as JSON")
    p.add_argument("recipe")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("hash-path", help="Print the integrity hash of a file or directory")
    p.add_argument("path")
    p.set_defaults(func=cmd_hash_path)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        sys.exit(1)

    config = load_config(args.config)
    if args.debug:
        level = logging.DEBUG
    elif args.verbose:
        level = logging.INFO
    else:
        level = config.log_level
    configure_logging(level, json_format=args.log_json)

    try:
        args.func(Session(args, config))
    except CyclicDependency as e:
        print(f"error: {e.kind}: {e}", file=sys.stderr)
        for name in e.cycle:
            print(f"  {name}", file=sys.stderr)
        sys.exit(2)
    except HermitError as e:
        if args.debug:
            traceback.print_exc()
        print(f"error: {e.kind}: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
