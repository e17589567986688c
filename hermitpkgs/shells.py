"""Named development shells.

A shell is a set of recipes plus variables of its own and a hook to run on
entry, like a flake's `devShells.<name>`:

    "shells": {
      "msrv": {"recipes": ["rust-1.63", "bitcoind"],
               "env": {"RUSTFLAGS": "-Cinstrument-coverage"},
               "hook": "cargo update -p home --precise 0.5.5"}
    }

The shell's own variables are layered over the composed environment.
"""

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from hermit.environment import Environment, compose
from hermit.store import StoreEntry


@dataclass(frozen=True)
class Shell:
    recipes: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    hook: str = ""


def shell_environment(shell: Shell, entries: Iterable[StoreEntry],
                      order: Sequence[str] | None = None) -> Environment:
    return compose(entries, order).with_variables(shell.env)


def shell_script(shell: Shell, env: Environment) -> str:
    """Exports followed by the hook, ready to `eval` in a POSIX shell."""
    script = env.to_shell()
    if shell.hook:
        script += shell.hook.rstrip("\n") + "\n"
    return script
