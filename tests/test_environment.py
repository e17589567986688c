"""Tests for environment composition."""

import pytest

from hermit.environment import Environment, compose
from hermit.store import StoreEntry


def entry(tag, recipe=None, paths=("bin",), exports=None):
    hash32 = (tag * 32)[:32]
    return StoreEntry(
        hash=hash32,
        name=tag,
        path=f"/store/{hash32}-{tag}",
        created="2024-01-01T00:00:00+00:00",
        recipe=recipe or tag,
        paths=tuple(paths),
        exports=dict(exports or {}),
    )


def test_paths_in_order():
    a, b = entry("a"), entry("b", paths=("bin", "sbin"))
    env = compose([a, b])
    assert env.path == (f"{a.path}/bin", f"{b.path}/bin", f"{b.path}/sbin")


def test_order_follows_declaration():
    a, b = entry("a"), entry("b")
    env = compose([b, a], order=["a", "b"])
    assert env.path == (f"{a.path}/bin", f"{b.path}/bin")


def test_unlisted_entries_go_last():
    a, b, c = entry("a"), entry("b"), entry("c")
    env = compose([c, b, a], order=["a"])
    assert env.path == (f"{a.path}/bin", f"{c.path}/bin", f"{b.path}/bin")


def test_root_path_entry():
    a = entry("a", paths=(".",))
    assert compose([a]).path == (a.path,)


def test_duplicates_collapse():
    a = entry("a")
    assert compose([a, a]).path == (f"{a.path}/bin",)


def test_exports_substitute_out_and_last_wins():
    a = entry("a", exports={"CC": "${out}/bin/cc", "SHARED": "from-a"})
    b = entry("b", exports={"SHARED": "from-b"})
    env = compose([a, b])
    assert env.as_dict() == {"CC": f"{a.path}/bin/cc", "SHARED": "from-b"}


def test_compose_is_deterministic():
    a = entry("a", exports={"Z": "1", "A": "2"})
    b = entry("b")
    assert compose([a, b]) == compose([a, b])
    assert compose([a]).variables == (("A", "2"), ("Z", "1"))


def test_with_variables_overrides():
    env = Environment(variables=(("A", "1"), ("B", "2")), path=("/p",))
    layered = env.with_variables({"A": "3"})
    assert layered.variables == (("B", "2"), ("A", "3"))
    assert layered.path == ("/p",)
    assert env.variables == (("A", "1"), ("B", "2"))


def test_apply_prepends_path():
    env = Environment(variables=(("FOO", "bar"),), path=("/a/bin", "/b/bin"))
    base = {"PATH": "/usr/bin", "HOME": "/home/me"}
    applied = env.apply(base)
    assert applied == {"PATH": "/a/bin:/b/bin:/usr/bin", "HOME": "/home/me", "FOO": "bar"}
    assert base == {"PATH": "/usr/bin", "HOME": "/home/me"}


def test_apply_without_base_path():
    env = Environment(path=("/a/bin",))
    assert env.apply({}) == {"PATH": "/a/bin"}


def test_to_shell_quotes():
    env = Environment(variables=(("MSG", "it's here"),), path=("/a b/bin",))
    assert env.to_shell() == (
        "export MSG='it'\"'\"'s here'\n"
        "export PATH='/a b/bin'\"${PATH:+:$PATH}\"\n"
    )


@pytest.mark.parametrize("name", ["X=1; touch /tmp/x; Y", "A-B", "1ST", "MODE\n", ""])
def test_to_shell_rejects_unsafe_names(name):
    env = Environment(variables=((name, "v"),))
    with pytest.raises(ValueError, match="not a shell variable name"):
        env.to_shell()


def test_empty_environment():
    env = compose([])
    assert env == Environment()
    assert env.to_shell() == ""
