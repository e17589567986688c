"""Tests for the hermit command line."""

import json
import os

import pytest

from hermit.hashing import format_integrity, sha256
from hermit.main import main
from hermit.nar import nar_hash

DOC = {
    "recipes": [
        {
            "name": "greeter",
            "version": "1.0",
            "build": "mkdir -p $out/bin && printf '#!/bin/sh\\necho hi from greeter\\n' > $out/bin/greet"
                     " && chmod +x $out/bin/greet",
            "exports": {"GREETER_HOME": "${out}"},
        },
        {
            "name": "app",
            "inputs": [{"name": "greeter", "ref": "greeter"}],
            "build": "greet > $out",
            "paths": [],
        },
    ],
    "shells": {
        "dev": {"recipes": ["greeter"], "env": {"MODE": "dev"}, "hook": "echo entered"},
    },
}


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    for key in list(os.environ):
        if key.startswith("HERMIT_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    (tmp_path / "hermit.json").write_text(json.dumps(DOC))
    return tmp_path


def hermit(workspace, *argv):
    main(["--store", str(workspace / "store"), "--platform", "x86_64-linux", *argv])


def test_no_command_prints_help(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 1
    assert "usage:" in capsys.readouterr().out


def test_resolve(workspace, capsys):
    hermit(workspace, "resolve")
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 2
    assert lines[0].split()[1] == "greeter-1.0"
    assert lines[1].endswith("<- greeter")


def test_build_and_root(workspace, capsys):
    hermit(workspace, "build", "--root", "app")
    path = capsys.readouterr().out.strip()
    with open(path) as f:
        assert f.read() == "hi from greeter\n"
    assert sorted(os.listdir(workspace / "store" / ".roots")) == ["app"]


def test_env(workspace, capsys):
    hermit(workspace, "env", "greeter")
    out = capsys.readouterr().out
    assert "export GREETER_HOME=" in out
    assert '/bin"${PATH:+:$PATH}"' in out


def test_env_shell(workspace, capsys):
    hermit(workspace, "env", "--shell", "dev")
    out = capsys.readouterr().out
    assert "export MODE=dev\n" in out
    assert out.endswith("echo entered\n")


def test_run(workspace, capfd):
    with pytest.raises(SystemExit) as excinfo:
        hermit(workspace, "run", "-w", "greeter", "--", "sh", "-c", "greet; exit 7")
    assert excinfo.value.code == 7
    assert "hi from greeter" in capfd.readouterr().out


def test_run_missing_command(workspace, capsys):
    with pytest.raises(SystemExit) as excinfo:
        hermit(workspace, "run", "-w", "greeter", "--", "/nonexistent/program")
    assert excinfo.value.code == 127


def test_show(workspace, capsys):
    hermit(workspace, "show", "app")
    info = json.loads(capsys.readouterr().out)
    assert info["name"] == "app"
    assert info["platform"] == "x86_64-linux"
    assert info["inputs"][0]["kind"] == "drv"
    assert info["realized"] is None


def test_verify_and_corruption(workspace, capsys):
    hermit(workspace, "build", "greeter")
    path = capsys.readouterr().out.strip()
    hermit(workspace, "verify")
    assert capsys.readouterr().out.startswith("ok ")

    with open(os.path.join(path, "bin", "greet"), "a") as f:
        f.write("# tampered\n")
    with pytest.raises(SystemExit) as excinfo:
        hermit(workspace, "verify")
    assert excinfo.value.code == 1
    assert "store-corruption" in capsys.readouterr().err


def test_gc_keeps_current_document(workspace, capsys):
    hermit(workspace, "build", "app")
    capsys.readouterr()
    hermit(workspace, "gc")
    assert capsys.readouterr().out.strip() == "0 store entries deleted"

    (workspace / "hermit.json").write_text(json.dumps({"recipes": []}))
    hermit(workspace, "gc")
    assert capsys.readouterr().out.strip() == "2 store entries deleted"


def test_hash_path(workspace, capsys):
    (workspace / "hello.txt").write_text("hello")
    hermit(workspace, "hash-path", "hello.txt")
    assert capsys.readouterr().out.strip() == "sha256-CkMIecJm+LV/QJKg+TXPP6zUi7zN5XYNR0jKQFFx6Wk="

    with pytest.raises(SystemExit) as excinfo:
        hermit(workspace, "hash-path", "missing.txt")
    assert excinfo.value.code == 1


def test_cycle_exit_code(workspace, capsys):
    (workspace / "hermit.json").write_text(json.dumps({"recipes": [
        {"name": "a", "inputs": [{"name": "b", "ref": "b"}], "build": "x"},
        {"name": "b", "inputs": [{"name": "a", "ref": "a"}], "build": "x"},
    ]}))
    with pytest.raises(SystemExit) as excinfo:
        hermit(workspace, "resolve")
    assert excinfo.value.code == 2
    err = capsys.readouterr().err
    assert "cyclic-dependency" in err
    assert "a -> b -> a" in err


def test_recipe_error_exit_code(workspace, capsys):
    with pytest.raises(SystemExit) as excinfo:
        hermit(workspace, "build", "nosuch")
    assert excinfo.value.code == 1
    assert "error: recipe-error: no recipe named 'nosuch'" in capsys.readouterr().err


def test_build_failure_exit_code(workspace, capsys):
    (workspace / "hermit.json").write_text(json.dumps({"recipes": [
        {"name": "broken", "build": "echo 'compile error' >&2; exit 2"},
    ]}))
    with pytest.raises(SystemExit) as excinfo:
        hermit(workspace, "build", "broken")
    assert excinfo.value.code == 1
    err = capsys.readouterr().err
    assert "build-failure" in err
    assert "compile error" in err


def test_fetch_source_input(workspace, capsys):
    src = workspace / "upstream.txt"
    src.write_text("pinned\n")
    (workspace / "hermit.json").write_text(json.dumps({"recipes": [{
        "name": "pkg",
        "inputs": [{"name": "src", "source": {"url": str(src), "hash": format_integrity(nar_hash(src))}}],
        "build": "cp $src $out",
    }]}))
    hermit(workspace, "fetch", "pkg", "src")
    path = capsys.readouterr().out.strip()
    assert path.endswith("-pkg-src")
    with open(path) as f:
        assert f.read() == "pinned\n"

    with pytest.raises(SystemExit) as excinfo:
        hermit(workspace, "fetch", "pkg", "nope")
    assert excinfo.value.code == 1
    assert "no source input 'nope'" in capsys.readouterr().err


def test_integrity_mismatch_exit_code(workspace, capsys):
    src = workspace / "upstream.txt"
    src.write_text("tampered\n")
    (workspace / "hermit.json").write_text(json.dumps({"recipes": [{
        "name": "pkg",
        "inputs": [{"name": "src", "source": {"url": str(src), "hash": format_integrity(sha256(b"pinned\n"))}}],
        "build": "cp $src $out",
    }]}))
    with pytest.raises(SystemExit) as excinfo:
        hermit(workspace, "build", "pkg")
    assert excinfo.value.code == 1
    err = capsys.readouterr().err
    assert "error: integrity-mismatch:" in err
    assert format_integrity(nar_hash(src)) in err


def test_bad_config_value_is_not_fatal(workspace, capsys, monkeypatch):
    monkeypatch.setenv("HERMIT_BUILD_JOBS", "many")
    (workspace / "hello.txt").write_text("hello")
    hermit(workspace, "hash-path", "hello.txt")
    assert capsys.readouterr().out.strip() == "sha256-CkMIecJm+LV/QJKg+TXPP6zUi7zN5XYNR0jKQFFx6Wk="
