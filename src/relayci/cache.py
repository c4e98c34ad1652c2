# cache.py
from __future__ import annotations

import hashlib
import io
import logging
import os
import platform
import re
import tarfile
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote, unquote

from .errors import CacheMiss
from .git import current_branch, head_sha

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# A cache entry is a tar.gz blob addressed by a rendered key, e.g.
#   cargo-lock-v2-{{ checksum "Cargo.lock" }}  ->  cargo-lock-v2-3f1c...
#
# restore: exact key, else the stored key matching the longest candidate
#          prefix (ties: most recently saved). A miss is never fatal.
# save:    unconditional overwrite of the exact key (last writer wins),
#          serialized per key and atomic at the backend.
#
# Archive layout inside the blob:
#   work/<path relative to the job working directory>
#   home/<path relative to the home directory>   (for "~/..." entries)
# ---------------------------------------------------------------------

_WORK = "work"
_HOME = "home"

_TEMPLATE_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}")
_CHECKSUM_RE = re.compile(r'^checksum\s+"([^"]+)"$')
_ENV_RE = re.compile(r"^\.Environment\.([A-Za-z_][A-Za-z0-9_]*)$")


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    matched: str | None = None


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _expand(path: str, root: Path, home: Path) -> Path:
    if path == "~" or path.startswith("~/"):
        return home / path[2:]
    p = Path(path)
    return p if p.is_absolute() else root / p


def render_key(
    template: str,
    root: str | Path = ".",
    env: Optional[Mapping[str, str]] = None,
    *,
    home: Optional[Path] = None,
) -> str:
    """
    Render a cache key template.

    Supported placeholders:
      {{ checksum "path" }}       sha256 of the file (relative to root, or ~/...)
      {{ .Environment.NAME }}     value of NAME in env (empty if unset)
      {{ .Branch }}               current git branch of root
      {{ .Revision }}             HEAD sha of root
      {{ epoch }}                 current unix time
      {{ arch }}                  os-machine of this host

    A checksum of a missing file renders as "missing" so the key still
    falls back to its prefix.
    """
    root_p = Path(root)
    home_p = home or Path.home()
    env = env or {}

    def _sub(m: re.Match) -> str:
        expr = m.group(1)
        cm = _CHECKSUM_RE.match(expr)
        if cm:
            target = _expand(cm.group(1), root_p, home_p)
            if not target.is_file():
                logger.warning("checksum target not found: %s", target)
                return "missing"
            return _hash_file_contents(target)
        em = _ENV_RE.match(expr)
        if em:
            return env.get(em.group(1), "")
        if expr == ".Branch":
            return current_branch(root_p) or "unknown"
        if expr == ".Revision":
            return head_sha(root_p) or "unknown"
        if expr == "epoch":
            return str(int(time.time()))
        if expr == "arch":
            return f"{platform.system().lower()}-{platform.machine().lower()}"
        raise ValueError(f"Unsupported cache key placeholder: {{{{ {expr} }}}}")

    return _TEMPLATE_RE.sub(_sub, template)


# ---------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------

class CacheBackend:
    """Key/blob store. Best-effort and eventually consistent."""

    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def put(self, key: str, blob: bytes) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> Dict[str, float]:
        """Every stored key mapped to its save time (higher is newer)."""
        raise NotImplementedError


class LocalCacheBackend(CacheBackend):
    """
    File-based backend:
      root/
        <quoted key>.tar.gz
    Writes go to a temp file in the same directory and are renamed into
    place, so a concurrent reader sees either the old or the new blob.
    """

    SUFFIX = ".tar.gz"

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.root / f"{quote(key, safe='')}{self.SUFFIX}"

    def get(self, key: str) -> Optional[bytes]:
        p = self.path_for(key)
        try:
            return p.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, key: str, blob: bytes) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=self.SUFFIX)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(blob)
            os.replace(tmp, self.path_for(key))
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)

    def delete(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)

    def keys(self) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for p in self.root.glob(f"*{self.SUFFIX}"):
            if p.name.startswith(".tmp-"):
                continue
            try:
                mtime = p.stat().st_mtime_ns
            except FileNotFoundError:
                continue
            out[unquote(p.name[: -len(self.SUFFIX)])] = float(mtime)
        return out


class RedisCacheBackend(CacheBackend):
    """
    Redis backend: one string per blob plus a sorted set indexing
    key -> save time, so prefix fallback can list keys without SCAN.
    """

    def __init__(self, client, namespace: str = "relayci:cache"):
        self.client = client
        self.namespace = namespace

    @classmethod
    def from_url(cls, url: str, namespace: str = "relayci:cache") -> "RedisCacheBackend":
        import redis

        return cls(redis.Redis.from_url(url), namespace=namespace)

    @property
    def _index(self) -> str:
        return f"{self.namespace}:index"

    def _blob(self, key: str) -> str:
        return f"{self.namespace}:blob:{key}"

    def get(self, key: str) -> Optional[bytes]:
        return self.client.get(self._blob(key))

    def put(self, key: str, blob: bytes) -> None:
        # SET replaces the value atomically; readers never see partial blobs
        self.client.set(self._blob(key), blob)
        self.client.zadd(self._index, {key: time.time()})

    def delete(self, key: str) -> None:
        self.client.delete(self._blob(key))
        self.client.zrem(self._index, key)

    def keys(self) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for member, score in self.client.zrange(self._index, 0, -1, withscores=True):
            if isinstance(member, bytes):
                member = member.decode("utf-8")
            out[member] = float(score)
        return out


def backend_from_settings(cache_dir: str | Path, cache_url: Optional[str] = None) -> CacheBackend:
    if cache_url:
        return RedisCacheBackend.from_url(cache_url)
    return LocalCacheBackend(cache_dir)


# ---------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------

def _iter_matches(pattern: str, root: Path, home: Path) -> Iterable[Tuple[str, Path, Path]]:
    """Yield (prefix, base, match) for one declared cache path or glob."""
    if pattern == "~" or pattern.startswith("~/"):
        prefix, base, rel = _HOME, home, pattern[2:]
    else:
        prefix, base, rel = _WORK, root, pattern

    rel = rel.strip().rstrip("/")
    if not rel:
        yield prefix, base, base
        return

    if Path(rel).is_absolute():
        logger.warning("ignoring absolute cache path: %s", pattern)
        return

    if any(ch in rel for ch in "*?["):
        for m in sorted(base.glob(rel)):
            yield prefix, base, m
        return

    p = base / rel
    if p.exists():
        yield prefix, base, p


def archive_paths(
    paths: Sequence[str],
    root: str | Path,
    *,
    home: Optional[Path] = None,
) -> Optional[bytes]:
    """
    Pack the declared paths into a tar.gz blob. Returns None when none of
    the paths exist (nothing worth saving).
    """
    root_p = Path(root).resolve()
    home_p = (home or Path.home()).resolve()
    buf = io.BytesIO()
    added = 0

    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        seen = set()
        for pattern in paths:
            for prefix, base, match in _iter_matches(pattern, root_p, home_p):
                files = [match] if match.is_file() else sorted(p for p in match.rglob("*") if p.is_file())
                for f in files:
                    rel = f.resolve().relative_to(base).as_posix() if f.resolve().is_relative_to(base) else None
                    if rel is None:
                        continue
                    arcname = f"{prefix}/{rel}"
                    if arcname in seen:
                        continue
                    seen.add(arcname)
                    tar.add(str(f), arcname=arcname, recursive=False)
                    added += 1

    if not added:
        return None
    return buf.getvalue()


def extract(blob: bytes, root: str | Path, *, home: Optional[Path] = None) -> int:
    """Unpack a blob made by archive_paths(). Returns the number of files restored."""
    root_p = Path(root).resolve()
    home_p = (home or Path.home()).resolve()
    restored = 0

    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            prefix, _, rel = member.name.partition("/")
            base = {_WORK: root_p, _HOME: home_p}.get(prefix)
            if base is None or not rel:
                continue
            dest = (base / rel).resolve()
            if not dest.is_relative_to(base):
                logger.warning("skipping unsafe cache member: %s", member.name)
                continue
            dest.parent.mkdir(parents=True, exist_ok=True)
            src = tar.extractfile(member)
            if src is None:
                continue
            with src, dest.open("wb") as out:
                out.write(src.read())
            os.chmod(dest, member.mode & 0o777 or 0o644)
            restored += 1
    return restored


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

class CacheStore:
    """
    restore/save on top of a backend.

    Saves of the same key are serialized in-process; atomicity across
    processes is the backend's job (rename / SET).
    """

    def __init__(self, backend: CacheBackend):
        self.backend = backend
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def local(cls, root: str | Path) -> "CacheStore":
        return cls(LocalCacheBackend(root))

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def lookup(self, key: str, fallbacks: Sequence[str] = ()) -> Optional[str]:
        """
        Resolve which stored key a restore would use.

        Candidates are the key itself and the fallback prefixes; the stored
        key matching the longest candidate wins, the newest save breaks ties.
        """
        entries = self.backend.keys()
        if key in entries:
            return key

        candidates = [c for c in (key, *fallbacks) if c]
        best: Optional[Tuple[Tuple[int, float], str]] = None
        for stored, saved_at in entries.items():
            lengths = [len(c) for c in candidates if stored.startswith(c)]
            if not lengths:
                continue
            rank = (max(lengths), saved_at)
            if best is None or rank > best[0]:
                best = (rank, stored)
        return best[1] if best else None

    def restore(self, key: str, fallbacks: Sequence[str] = ()) -> Optional[bytes]:
        """Return the blob for key (or its best fallback), None on a miss."""
        try:
            blob = self.backend.get(key)
            if blob is not None:
                return blob
            matched = self.lookup(key, fallbacks)
            if matched is None:
                raise CacheMiss(key)
            return self.backend.get(matched)
        except CacheMiss as e:
            logger.info("%s", e)
            return None
        except Exception as e:
            logger.warning("cache backend failed during restore of %s: %s", key, e)
            return None

    def save(self, key: str, blob: bytes) -> None:
        with self._lock_for(key):
            self.backend.put(key, blob)

    def restore_paths(
        self,
        keys: Sequence[str],
        root: str | Path,
        *,
        home: Optional[Path] = None,
    ) -> CacheHit:
        """Restore the first matching entry for rendered `keys` into root."""
        key, fallbacks = keys[0], list(keys[1:])
        matched: Optional[str] = key
        try:
            blob = self.backend.get(key)
            if blob is None:
                matched = self.lookup(key, fallbacks)
                blob = self.backend.get(matched) if matched is not None else None
        except Exception as e:
            logger.warning("cache backend failed during lookup of %s: %s", key, e)
            return CacheHit(hit=False, key=key, reason=f"backend error: {e}")

        if blob is None:
            logger.info("%s", CacheMiss(key))
            return CacheHit(hit=False, key=key, reason="cache miss")
        try:
            count = extract(blob, root, home=home)
        except (tarfile.TarError, OSError) as e:
            logger.warning("cache %s exists but restore failed: %s", matched, e)
            return CacheHit(hit=False, key=key, reason=f"restore failed: {e}")

        exact = matched == key
        reason = "exact hit" if exact else f"fallback hit ({matched})"
        logger.info("cache %s: %s, %d file(s)", key, reason, count)
        return CacheHit(hit=True, key=key, reason=reason, matched=matched)

    def save_paths(
        self,
        key: str,
        paths: Sequence[str],
        root: str | Path,
        *,
        home: Optional[Path] = None,
    ) -> bool:
        blob = archive_paths(paths, root, home=home)
        if blob is None:
            logger.info("cache %s: nothing to save for %s", key, list(paths))
            return False
        try:
            self.save(key, blob)
        except Exception as e:
            logger.warning("cache backend failed during save of %s: %s", key, e)
            return False
        logger.info("cache %s: saved %d bytes", key, len(blob))
        return True

    def prune(self, prefix: str, keep: int = 3) -> List[str]:
        """
        Keep only the newest `keep` entries whose key starts with prefix.
        Maintenance only: the engine never evicts on its own.
        """
        entries = sorted(
            ((k, t) for k, t in self.backend.keys().items() if k.startswith(prefix)),
            key=lambda kt: kt[1],
            reverse=True,
        )
        removed = [k for k, _ in entries[keep:]]
        for k in removed:
            self.backend.delete(k)
        return removed
