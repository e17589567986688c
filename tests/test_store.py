"""Tests for the build store: realization, concurrency, verification, GC."""

import json
import shutil
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from hermit.derivation import Derivation, derivation_hash, serialize
from hermit.errors import BuildFailure, StoreCorruption
from hermit.hashing import sha256, store_hash
from hermit.store import Store


def h(tag: str) -> str:
    return store_hash(sha256(tag.encode()))


def write_file(text):
    def build(out: Path):
        out.write_text(text)
    return build


def write_dir(out: Path):
    (out / "bin").mkdir(parents=True)
    (out / "bin" / "tool").write_text("#!/bin/sh\n")


@pytest.fixture
def store(tmp_path):
    return Store(tmp_path / "store")


def test_realize_records_entry(store):
    entry = store.realize(h("a"), write_file("A"), name="a-1.0", references=[h("z"), h("y"), h("z")])
    assert store.exists(h("a"))
    assert Path(entry.path) == store.path_for(h("a"), "a-1.0")
    assert Path(entry.path).read_text() == "A"
    assert entry.references == tuple(sorted({h("z"), h("y")}))
    assert entry.nar_hash.startswith("sha256-")
    assert store.get(h("a")) == entry


def test_realize_is_idempotent(store):
    calls = []

    def build(out):
        calls.append(out)
        write_dir(out)

    first = store.realize(h("a"), build, name="a")
    second = store.realize(h("a"), build, name="a")
    assert first == second
    assert len(calls) == 1


def test_concurrent_realize_builds_once(store):
    calls = []
    lock = threading.Lock()

    def build(out):
        with lock:
            calls.append(1)
        time.sleep(0.2)
        out.write_text("done")

    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [pool.submit(store.realize, h("shared"), build, name="shared") for _ in range(8)]
        entries = [f.result() for f in futures]

    assert len(calls) == 1
    assert len({e.path for e in entries}) == 1
    assert Path(entries[0].path).read_text() == "done"


def test_failed_build_leaves_no_entry(store):
    def build(out):
        out.write_text("partial")
        raise RuntimeError("compiler exploded")

    with pytest.raises(BuildFailure, match="compiler exploded") as excinfo:
        store.realize(h("bad"), build, name="bad")
    assert excinfo.value.hash == h("bad")
    assert not store.exists(h("bad"))
    assert not store.path_for(h("bad"), "bad").exists()
    assert list(store.tmp_dir.iterdir()) == []


def test_interrupted_build_leaves_no_entry(store):
    def build(out):
        out.mkdir()
        (out / "half").write_text("half written")
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        store.realize(h("cut"), build, name="cut")
    assert not store.exists(h("cut"))
    assert list(store.tmp_dir.iterdir()) == []
    entry = store.realize(h("cut"), write_file("whole"), name="cut")
    assert Path(entry.path).read_text() == "whole"


def test_build_without_output_fails(store):
    with pytest.raises(BuildFailure, match="no output"):
        store.realize(h("empty"), lambda out: None, name="empty")
    assert not store.exists(h("empty"))


def test_unrecorded_output_is_replaced(store):
    leftover = store.path_for(h("a"), "a")
    leftover.mkdir()
    (leftover / "junk").write_text("from a killed build")
    entry = store.realize(h("a"), write_file("fresh"), name="a")
    assert Path(entry.path).read_text() == "fresh"


def test_unreadable_record_is_corruption(store):
    store.realize(h("a"), write_file("A"), name="a")
    (store.meta_dir / f"{h('a')}.json").write_text("{not json")
    with pytest.raises(StoreCorruption):
        store.get(h("a"))


def test_entries_and_closure(store):
    store.realize(h("leaf"), write_file("L"), name="leaf")
    store.realize(h("mid"), write_file("M"), name="mid", references=[h("leaf")])
    store.realize(h("top"), write_file("T"), name="top", references=[h("mid")])
    store.realize(h("other"), write_file("O"), name="other")
    assert {e.hash for e in store.entries()} == {h("leaf"), h("mid"), h("top"), h("other")}
    assert store.closure([h("top")]) == {h("top"), h("mid"), h("leaf")}


# --- verify ---


def test_verify_ok(store):
    store.realize(h("a"), write_dir, name="a")
    assert store.verify(h("a")).hash == h("a")


def test_verify_detects_modified_output(store):
    entry = store.realize(h("a"), write_dir, name="a")
    (Path(entry.path) / "bin" / "tool").write_text("tampered")
    with pytest.raises(StoreCorruption, match="content hash"):
        store.verify(h("a"))


def test_verify_detects_missing_output(store):
    entry = store.realize(h("a"), write_file("A"), name="a")
    Path(entry.path).unlink()
    with pytest.raises(StoreCorruption, match="missing"):
        store.verify(h("a"))


def test_verify_detects_orphan_output(store):
    store.path_for(h("a"), "a").write_text("no record")
    with pytest.raises(StoreCorruption, match="no entry record"):
        store.verify(h("a"))


def test_verify_checks_recorded_derivation(store):
    drv = Derivation(name="a", platform="x86_64-linux", builder=["/bin/true"])
    good = derivation_hash(drv)
    store.realize(good, write_file("A"), name="a", derivation=serialize(drv))
    assert store.verify(good).hash == good

    meta = store.meta_dir / f"{good}.json"
    record = json.loads(meta.read_text())
    record["derivation"] = serialize(Derivation(name="a", platform="aarch64-linux"))
    meta.write_text(json.dumps(record))
    with pytest.raises(StoreCorruption, match="hashes to"):
        store.verify(good)


# --- roots and gc ---


def test_roots(store):
    store.add_root("dev", h("a"))
    store.add_root("dev", h("b"))
    store.add_root("ci", h("c"))
    assert store.roots() == {"ci": h("c"), "dev": h("b")}
    store.remove_root("dev")
    assert store.roots() == {"ci": h("c")}


def test_add_root_rejects_bad_names(store):
    with pytest.raises(ValueError):
        store.add_root("../escape", h("a"))


def test_gc_keeps_live_entries(store):
    store.realize(h("live"), write_file("L"), name="live")
    store.realize(h("dead"), write_file("D"), name="dead")
    store.log_path(h("dead")).write_text("log")

    removed = store.gc([h("live")])
    assert removed == [h("dead")]
    assert store.exists(h("live"))
    assert Path(store.get(h("live")).path).read_text() == "L"
    assert not store.exists(h("dead"))
    assert not store.path_for(h("dead"), "dead").exists()
    assert not store.log_path(h("dead")).exists()
    assert list(store.trash_dir.iterdir()) == []


def test_gc_removes_orphan_outputs_and_staging(store):
    store.path_for(h("orphan"), "orphan").mkdir()
    (store.tmp_dir / f"{h('gone')}-abc123").mkdir()
    removed = store.gc([])
    assert removed == [h("orphan")]
    assert list(store.tmp_dir.iterdir()) == []


def test_gc_then_realize_rebuilds(store):
    store.realize(h("a"), write_file("one"), name="a")
    store.gc([])
    entry = store.realize(h("a"), write_file("two"), name="a")
    assert Path(entry.path).read_text() == "two"


def test_gc_removes_lock_files(store):
    store.realize(h("live"), write_file("L"), name="live")
    store.realize(h("dead"), write_file("D"), name="dead")
    (store.tmp_dir / f"{h('gone')}-abc123").mkdir()
    store.gc([h("live")])
    assert sorted(p.name for p in store.lock_dir.iterdir()) == [f"{h('live')}.lock"]
    entry = store.realize(h("dead"), write_file("again"), name="dead")
    assert Path(entry.path).read_text() == "again"


def test_missing_output_is_corruption(store):
    entry = store.realize(h("a"), write_file("A"), name="a")
    Path(entry.path).unlink()
    with pytest.raises(StoreCorruption, match="missing"):
        store.realize(h("a"), write_file("A"), name="a")


def test_gc_drops_live_entry_with_missing_output(store):
    entry = store.realize(h("a"), write_dir, name="a")
    shutil.rmtree(entry.path)
    assert store.gc([h("a")]) == [h("a")]
    assert not store.exists(h("a"))
    rebuilt = store.realize(h("a"), write_file("fresh"), name="a")
    assert Path(rebuilt.path).read_text() == "fresh"
