# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import tarfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .model import MatrixCell

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Cell-level, best-effort caching:
#   cache_key = prefix(job, cell) + hash(
#       job name,
#       cell matrix assignment,
#       toolchain identity,
#       fingerprint of the dependency manifests (e.g. Cargo.lock),
#   )
#
# Cache artifact:
#   a tar.gz containing the declared cache dirs (build dirs, registries)
#   plus a manifest.json for explainability.
#
# The store is shared by every concurrent cell. Writers never lock: each
# writes a private temp file and atomically replaces the artifact, so two
# writers on the same key end with last-writer-wins. Nothing in here may
# raise into a cell; failures become misses / ok=False.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".matrixci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".matrixci/**",
    "**/.DS_Store",
]
KEY_VERSION = 1


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict = field(default_factory=dict)


@dataclass(frozen=True)
class CacheSave:
    ok: bool
    key: str
    reason: str


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> Optional[str]:
    """Path of `p` relative to `root`, or None when it resolves outside (e.g. a symlink)."""
    try:
        return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")
    except ValueError:
        return None


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    for g in globs:
        try:
            if rel_path.match(g):
                return True
        except ValueError:
            # a malformed pattern never breaks the cache
            continue
    return False


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand manifest patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "crates/"
      - glob:      "**/Cargo.toml"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        try:
            matches = sorted(root.glob(pat))
        except ValueError:
            matches = []
        out.extend([m for m in matches if m.exists()])

    # de-dupe, order preserved
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def fingerprint_inputs(
    root: str | Path,
    patterns: Sequence[str],
    *,
    excludes: Optional[List[str]] = None,
) -> Tuple[str, Dict]:
    """
    Hash the dependency manifests deterministically (relative path + content).
    Returns (digest, manifest_bits).
    """
    root = Path(root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

    file_fps: List[Tuple[str, str]] = []
    for p in _resolve_globs(root, patterns):
        files = [p] if p.is_file() else list(_iter_files_under(p)) if p.is_dir() else []
        for f in files:
            rel = _relpath(f, root)
            if rel is None or _matches_any_glob(rel, exclude_globs):
                continue
            file_fps.append((rel, _hash_file_contents(f)))

    file_fps.sort(key=lambda t: t[0])
    payload = {"files": file_fps}
    return _sha256_str(_json_dumps_stable(payload)), payload


def cache_key(job: str, cell: MatrixCell, toolchain_identity: str, fingerprint: str) -> str:
    """
    Stable, filesystem-safe key: '<job>-<cell slug>-<digest>'.
    The readable prefix groups a cell's artifacts for pruning.
    """
    payload = {
        "v": KEY_VERSION,
        "job": job,
        "cell": [list(kv) for kv in cell.values],
        "toolchain": toolchain_identity,
        "fingerprint": fingerprint,
    }
    return f"{key_prefix(job, cell)}-{_sha256_str(_json_dumps_stable(payload))[:24]}"


def key_prefix(job: str, cell: MatrixCell) -> str:
    return f"{job}-{cell.slug}"


def _tar_add_path(
    tar: tarfile.TarFile,
    root: Path,
    src: Path,
    *,
    exclude_globs: List[str],
) -> int:
    """Add src (file/dir) into tar by its path relative to root. Returns files added."""
    src = src.resolve()
    if not src.exists():
        return 0

    files = [src] if src.is_file() else list(_iter_files_under(src))
    added = 0
    for f in files:
        rel = _relpath(f, root)
        if rel is None or _matches_any_glob(rel, exclude_globs):
            continue
        tar.add(str(f), arcname=rel, recursive=False)
        added += 1
    return added


class CacheStore:
    """
    File-based cache store shared by all cells:
      root/
        <key>.tar.gz
        <key>.manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{key}.manifest.json"

    def restore(self, key: str, *, into: str | Path = ".") -> CacheHit:
        """
        Extract the artifact stored under `key` into `into`.

        Restore is "overwrite by extraction". A missing or unreadable
        artifact is a miss; it never raises.
        """
        dest = Path(into).resolve()
        art = self.artifact_path(key)
        man = self.manifest_path(key)

        if not art.exists():
            return CacheHit(hit=False, key=key, reason="cache miss")

        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                tar.extractall(path=str(dest), filter="data")
        except (OSError, tarfile.TarError, TypeError, ValueError) as e:
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}")

        try:
            stored = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}

        return CacheHit(hit=True, key=key, reason="cache hit: restored artifact", manifest=stored)

    def save(
        self,
        key: str,
        root: str | Path,
        paths: Sequence[str],
        *,
        manifest: Optional[Dict] = None,
        excludes: Optional[List[str]] = None,
    ) -> CacheSave:
        """
        Archive `paths` (relative to `root`) under `key`.

        Paths outside `root` are ignored. Concurrent saves of the same key
        race; whichever replace lands last is kept.
        """
        root_p = Path(root).resolve()
        exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

        art = self.artifact_path(key)
        man = self.manifest_path(key)
        token = uuid.uuid4().hex
        tmp_art = self.root / f".{key}.{token}.tar.gz.tmp"
        tmp_man = self.root / f".{key}.{token}.manifest.tmp"

        saved: List[str] = []
        ignored: List[str] = []
        try:
            with tarfile.open(str(tmp_art), mode="w:gz") as tar:
                for entry in paths:
                    src = (root_p / entry).resolve()
                    try:
                        src.relative_to(root_p)
                    except ValueError:
                        ignored.append(entry)
                        continue
                    if _tar_add_path(tar, root_p, src, exclude_globs=exclude_globs):
                        saved.append(entry)

                meta = {
                    "key": key,
                    "paths": saved,
                    "ignored": ignored,
                    "saved_at_unix": int(time.time()),
                    **(manifest or {}),
                }
                payload = json.dumps(meta, sort_keys=True, indent=2, ensure_ascii=False).encode("utf-8")
                info = tarfile.TarInfo(name=f".matrixci_cache_manifest/{key}.manifest.json")
                info.size = len(payload)
                info.mtime = int(time.time())
                tar.addfile(info, fileobj=io.BytesIO(payload))

            tmp_man.write_text(json.dumps(meta, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_art, art)
            os.replace(tmp_man, man)
        except (OSError, tarfile.TarError) as e:
            return CacheSave(ok=False, key=key, reason=f"save failed: {e}")
        finally:
            tmp_art.unlink(missing_ok=True)
            tmp_man.unlink(missing_ok=True)

        return CacheSave(ok=True, key=key, reason=f"saved {len(saved)} path(s)")

    def prune(self, prefix: str, keep: int = 3) -> List[str]:
        """
        Keep only the newest `keep` artifacts whose key starts with `prefix`.
        Uses file mtime as "newest". Returns the removed keys.
        """
        tars = sorted(
            (p for p in self.root.glob(f"{prefix}-*.tar.gz") if not p.name.startswith(".")),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        removed: List[str] = []
        for p in tars[keep:]:
            key = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            self.manifest_path(key).unlink(missing_ok=True)
            removed.append(key)
        return removed
