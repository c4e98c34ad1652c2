import hashlib
import os
import threading
from pathlib import Path

import pytest

from relayci.cache import (
    CacheStore,
    LocalCacheBackend,
    RedisCacheBackend,
    archive_paths,
    extract,
    render_key,
)


class FakeRedis:
    """The handful of redis-py calls RedisCacheBackend makes."""

    def __init__(self):
        self.strings = {}
        self.zsets = {}
        self.lock = threading.Lock()

    def get(self, name):
        return self.strings.get(name)

    def set(self, name, value):
        with self.lock:
            self.strings[name] = value

    def delete(self, name):
        self.strings.pop(name, None)

    def zadd(self, name, mapping):
        with self.lock:
            self.zsets.setdefault(name, {}).update({k.encode(): v for k, v in mapping.items()})

    def zrem(self, name, member):
        self.zsets.get(name, {}).pop(member.encode(), None)

    def zrange(self, name, start, end, withscores=False):
        items = sorted(self.zsets.get(name, {}).items(), key=lambda kv: kv[1])
        return items if withscores else [k for k, _ in items]


def _age(backend: LocalCacheBackend, key: str, seconds_ago: int) -> None:
    t = 1_700_000_000 - seconds_ago
    os.utime(backend.path_for(key), (t, t))


@pytest.fixture
def store(tmp_path: Path) -> CacheStore:
    return CacheStore.local(tmp_path / "cache")


def test_exact_hit(store: CacheStore) -> None:
    store.save("deps-abc", b"blob-abc")
    assert store.restore("deps-abc") == b"blob-abc"
    assert store.lookup("deps-abc") == "deps-abc"


def test_unknown_key_is_a_miss_not_an_error(store: CacheStore) -> None:
    assert store.restore("nothing-here") is None
    assert store.lookup("nothing-here", ["nothing-"]) is None


def test_save_overwrites(store: CacheStore) -> None:
    store.save("k", b"one")
    store.save("k", b"two")
    assert store.restore("k") == b"two"


def test_fallback_prefers_the_newest_match(store: CacheStore) -> None:
    backend = store.backend
    store.save("cargo-lock-v2-old", b"old")
    store.save("cargo-lock-v2-new", b"new")
    _age(backend, "cargo-lock-v2-old", 600)
    _age(backend, "cargo-lock-v2-new", 60)

    assert store.lookup("cargo-lock-v2-fresh", ["cargo-lock-v2-"]) == "cargo-lock-v2-new"
    assert store.restore("cargo-lock-v2-fresh", ["cargo-lock-v2-"]) == b"new"


def test_fallback_prefers_the_longest_prefix_over_recency(store: CacheStore) -> None:
    backend = store.backend
    store.save("deps-linux-aaa", b"linux")
    store.save("deps-mac-bbb", b"mac")
    _age(backend, "deps-linux-aaa", 600)
    _age(backend, "deps-mac-bbb", 60)

    assert store.lookup("deps-linux-ccc", ["deps-linux-", "deps-"]) == "deps-linux-aaa"


def test_keys_with_slashes_survive_the_local_layout(store: CacheStore) -> None:
    store.save("v1/deps/abc", b"x")
    assert "v1/deps/abc" in store.backend.keys()
    assert store.restore("v1/deps/abc") == b"x"


def test_prune_keeps_the_newest(store: CacheStore) -> None:
    for i in range(5):
        store.save(f"deps-{i}", b"x")
        _age(store.backend, f"deps-{i}", 100 - i)
    store.save("other", b"y")

    removed = store.prune("deps-", keep=2)

    assert sorted(removed) == ["deps-0", "deps-1", "deps-2"]
    assert sorted(store.backend.keys()) == ["deps-3", "deps-4", "other"]


def test_archive_round_trip_for_work_and_home_paths(tmp_path: Path) -> None:
    src, home = tmp_path / "src", tmp_path / "home"
    (src / "target" / "debug").mkdir(parents=True)
    (src / "target" / "debug" / "app").write_text("binary")
    (home / ".cargo" / "registry").mkdir(parents=True)
    (home / ".cargo" / "registry" / "index").write_text("crates")

    blob = archive_paths(["target", "~/.cargo", "does-not-exist"], src, home=home)
    assert blob is not None

    dst, dst_home = tmp_path / "dst", tmp_path / "dst-home"
    dst.mkdir()
    dst_home.mkdir()
    assert extract(blob, dst, home=dst_home) == 2
    assert (dst / "target" / "debug" / "app").read_text() == "binary"
    assert (dst_home / ".cargo" / "registry" / "index").read_text() == "crates"


def test_archive_with_nothing_to_save(tmp_path: Path) -> None:
    assert archive_paths(["missing"], tmp_path, home=tmp_path) is None


def test_restore_paths_reports_fallback(store: CacheStore, tmp_path: Path) -> None:
    work = tmp_path / "work"
    (work / "registry").mkdir(parents=True)
    (work / "registry" / "index").write_text("v1")
    assert store.save_paths("cargo-lock-v2-abc", ["registry"], work, home=tmp_path)

    fresh = tmp_path / "fresh"
    fresh.mkdir()
    hit = store.restore_paths(["cargo-lock-v2-def", "cargo-lock-v2-"], fresh, home=tmp_path)

    assert hit.hit
    assert hit.matched == "cargo-lock-v2-abc"
    assert (fresh / "registry" / "index").read_text() == "v1"

    miss = store.restore_paths(["node-v1-abc"], fresh, home=tmp_path)
    assert not miss.hit
    assert miss.reason == "cache miss"


def test_render_key(tmp_path: Path) -> None:
    (tmp_path / "Cargo.lock").write_text("serde = 1.0\n")
    digest = hashlib.sha256(b"serde = 1.0\n").hexdigest()

    key = render_key(
        'cargo-{{ .Environment.TOOLCHAIN }}-{{ checksum "Cargo.lock" }}',
        tmp_path,
        {"TOOLCHAIN": "1.61"},
        home=tmp_path,
    )
    assert key == f"cargo-1.61-{digest}"
    assert render_key('x-{{ checksum "nope.lock" }}', tmp_path, home=tmp_path) == "x-missing"
    assert render_key("plain", tmp_path) == "plain"

    with pytest.raises(ValueError, match="Unsupported"):
        render_key("{{ .Weather }}", tmp_path)


def test_redis_backend_fallback_and_delete() -> None:
    client = FakeRedis()
    store = CacheStore(RedisCacheBackend(client, namespace="t"))

    store.save("cargo-lock-v2-abc", b"abc")
    assert client.get("t:blob:cargo-lock-v2-abc") == b"abc"
    assert store.restore("cargo-lock-v2-zzz", ["cargo-lock-v2-"]) == b"abc"

    store.backend.delete("cargo-lock-v2-abc")
    assert store.backend.keys() == {}
    assert store.restore("cargo-lock-v2-abc") is None


def test_backend_errors_degrade_to_a_miss(tmp_path: Path) -> None:
    class Broken(FakeRedis):
        def get(self, name):
            raise ConnectionError("redis is down")

    store = CacheStore(RedisCacheBackend(Broken()))
    assert store.restore("k") is None
    assert not store.restore_paths(["k"], tmp_path, home=tmp_path).hit


def test_exact_hit_downloads_the_blob_once(tmp_path: Path) -> None:
    class Counting(FakeRedis):
        def __init__(self):
            super().__init__()
            self.reads = []

        def get(self, name):
            self.reads.append(name)
            return super().get(name)

    client = Counting()
    store = CacheStore(RedisCacheBackend(client, namespace="t"))
    work = tmp_path / "work"
    work.mkdir()
    (work / "lib.txt").write_text("v1")
    assert store.save_paths("deps-abc", ["lib.txt"], work, home=tmp_path)

    client.reads.clear()
    fresh = tmp_path / "fresh"
    fresh.mkdir()
    hit = store.restore_paths(["deps-abc", "deps-"], fresh, home=tmp_path)

    assert hit.hit and hit.reason == "exact hit"
    assert client.reads == ["t:blob:deps-abc"]
    assert (fresh / "lib.txt").read_text() == "v1"


def test_concurrent_saves_leave_one_complete_blob(store: CacheStore) -> None:
    blobs = [bytes([i]) * 50_000 for i in range(8)]
    threads = [threading.Thread(target=store.save, args=("shared", b)) for b in blobs]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.restore("shared") in blobs
    assert list(store.backend.keys()) == ["shared"]
