# cache.py
from __future__ import annotations

import hashlib
import io
import json
import re
import tarfile
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .paths import matches_any
from .ui.console import get_console

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Jobs declare an ordered list of cache keys (first match wins) and an
# optional cache_to key. Keys are plain strings, usually rendered from
# templates such as "deps-${{ run.ref_slug }}" or "deps-${{ hashFiles('**/lock') }}".
#
# Entries are scoped (typically branch-qualified). A job looks in its own
# scope first, then in the default branch scope.
#
# Cache payload:
#   a tar.gz of the job's declared cache_paths plus a manifest.json.
#
# Entries are never mutated. Storing the same key+scope again replaces the
# artifact atomically (last writer wins); entries are advisory, not
# authoritative, so nothing is locked.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".relayci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".relayci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheEntry:
    key: str
    scope: str
    payload: str  # handle understood by the backend (a file path for the local one)
    created_at: float


class CacheBackend(Protocol):
    def get(self, key: str, scope: str) -> Optional[CacheEntry]:
        ...

    def put(self, key: str, scope: str, payload: str) -> CacheEntry:
        ...


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _safe_name(value: str) -> str:
    # readable prefix + hash so distinct keys never collide on disk
    readable = re.sub(r"[^A-Za-z0-9._-]+", "_", value)[:80] or "_"
    return f"{readable}-{_sha256_str(value)[:12]}"


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _excluded(rel: str, globs: List[str]) -> bool:
    return matches_any(rel, globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(repo_root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand patterns into concrete paths.
    Supports:
      - file path: "pyproject.toml"
      - dir path:  "src/"
      - glob:      "backend/**", "tests/**/*.py"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = repo_root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(repo_root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def _file_fingerprints(repo_root: Path, patterns: Sequence[str], excludes: List[str]) -> List[Tuple[str, str]]:
    fps: List[Tuple[str, str]] = []
    for p in _resolve_globs(repo_root, patterns):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, repo_root)
            if _excluded(rel, excludes):
                continue
            fps.append((rel, _hash_file_contents(f)))
    fps.sort()
    return fps


def hash_files(repo_root: str | Path, patterns: Sequence[str]) -> str:
    """
    Deterministic content hash of the files matching patterns (relative
    paths + contents). Empty string when nothing matches.
    """
    root = Path(repo_root).resolve()
    fps = _file_fingerprints(root, patterns, list(DEFAULT_CACHE_EXCLUDES))
    if not fps:
        return ""
    return _sha256_str(json.dumps(fps, separators=(",", ":")))


# ---------------------------------------------------------------------
# Payload archives
# ---------------------------------------------------------------------

def archive_paths(
    repo_root: str | Path,
    paths: Sequence[str],
    dest: str | Path,
    *,
    manifest: Optional[Dict] = None,
    excludes: Optional[List[str]] = None,
) -> Path:
    """Pack the given workspace paths into a tar.gz at dest."""
    root = Path(repo_root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
    dest = Path(dest)

    with tarfile.open(str(dest), mode="w:gz") as tar:
        for entry in paths:
            src = (root / entry).resolve()
            if not src.exists():
                continue
            files = [src] if src.is_file() else list(_iter_files_under(src))
            for f in files:
                rel = _relpath(f, root)
                if _excluded(rel, exclude_globs):
                    continue
                tar.add(str(f), arcname=rel, recursive=False)

        if manifest is not None:
            payload = json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False).encode("utf-8")
            info = tarfile.TarInfo(name=".relayci_cache_manifest.json")
            info.size = len(payload)
            info.mtime = int(time.time())
            tar.addfile(info, fileobj=io.BytesIO(payload))

    return dest


def extract_payload(entry: CacheEntry, repo_root: str | Path) -> None:
    """Restore a cached archive into the workspace (overwrite by extraction)."""
    root = Path(repo_root).resolve()
    with tarfile.open(entry.payload, mode="r:gz") as tar:
        members = [m for m in tar.getmembers() if m.name != ".relayci_cache_manifest.json"]
        for m in members:
            target = (root / m.name).resolve()
            if root not in target.parents and target != root:
                raise ValueError(f"refusing to extract {m.name!r} outside the workspace")
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(root), members=members, filter="data")
        else:
            tar.extractall(path=str(root), members=members)


# ---------------------------------------------------------------------
# Local backend
# ---------------------------------------------------------------------

class LocalCacheBackend:
    """
    File-based cache store:
      root/
        <scope>/
          <key>.tar.gz
          <key>.manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        # directories are created on first write
        self.root = Path(root).resolve()

    def _scope_dir(self, scope: str) -> Path:
        d = self.root / _safe_name(scope or "default")
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, key: str, scope: str) -> Path:
        return self._scope_dir(scope) / f"{_safe_name(key)}.tar.gz"

    def manifest_path(self, key: str, scope: str) -> Path:
        return self._scope_dir(scope) / f"{_safe_name(key)}.manifest.json"

    def get(self, key: str, scope: str) -> Optional[CacheEntry]:
        art = self.artifact_path(key, scope)
        man = self.manifest_path(key, scope)
        if not art.exists() or not man.exists():
            return None
        try:
            stored = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return CacheEntry(
            key=key,
            scope=scope,
            payload=str(art),
            created_at=float(stored.get("created_at", art.stat().st_mtime)),
        )

    def put(self, key: str, scope: str, payload: str) -> CacheEntry:
        art = self.artifact_path(key, scope)
        man = self.manifest_path(key, scope)
        created = time.time()

        # copy into a tmp file next to the target, then atomic rename
        fd, tmp_name = tempfile.mkstemp(dir=str(art.parent), suffix=".tmp")
        tmp = Path(tmp_name)
        try:
            with open(fd, "wb") as out, open(payload, "rb") as src:
                while True:
                    chunk = src.read(1024 * 1024)
                    if not chunk:
                        break
                    out.write(chunk)
            tmp.replace(art)
            man.write_text(
                json.dumps({"key": key, "scope": scope, "created_at": created}, sort_keys=True, indent=2),
                encoding="utf-8",
            )
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        return CacheEntry(key=key, scope=scope, payload=str(art), created_at=created)


# ---------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------

class CacheResolver:
    """
    Ordered-key lookup over a CacheBackend.

    resolve(): first present entry wins; a miss is logged, never raised.
    store(): exactly one backend write per call.
    """

    def __init__(self, backend: CacheBackend, default_scope: str = "main"):
        self.backend = backend
        self.default_scope = default_scope

    def _scopes(self, scopes: Optional[Sequence[str]]) -> List[str]:
        ordered: List[str] = []
        for s in list(scopes or []) + [self.default_scope]:
            if s not in ordered:
                ordered.append(s)
        return ordered

    def resolve(self, ordered_keys: Sequence[str], scopes: Optional[Sequence[str]] = None) -> Optional[CacheEntry]:
        console = get_console()
        search = self._scopes(scopes)
        for key in ordered_keys:
            if not key:
                continue
            for scope in search:
                entry = self.backend.get(key, scope)
                if entry is not None:
                    return entry
        console.print_debug(f"cache miss for keys {list(ordered_keys)} in scopes {search}")
        return None

    def store(self, key: str, payload: str, scope: Optional[str] = None) -> CacheEntry:
        return self.backend.put(key, scope or self.default_scope, payload)
