# artifacts.py
from __future__ import annotations

import hashlib
import io
import os
import tarfile
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from .errors import ArtifactNotFound

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# The store only tracks metadata + a content handle (sha256 digest).
# Bytes live in a backend:
#   MemoryBackend  - dict in process (tests, local runs)
#   FileBackend    - content addressed files under a root dir:
#                      root/<digest[:2]>/<digest>
#
# One live artifact per name. A second put() under the same name bumps the
# generation, so refs handed out earlier read as NotFound afterwards.
# Retention is lazy: expire(now) is called by the scheduler at the end of a
# run and evicts everything whose window elapsed.
# ---------------------------------------------------------------------

DEFAULT_ARTIFACT_DIR = ".jobgraph/artifacts"
DEFAULT_RETENTION_SECONDS = 90 * 24 * 3600.0
# what an upload step packed; decides how a download step unpacks it
FILE = "file"
DIRECTORY = "directory"
ARTIFACT_KINDS = (FILE, DIRECTORY)

DEFAULT_PACK_EXCLUDES = [
    ".git/**",
    ".jobgraph/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


@dataclass(frozen=True)
class ArtifactRef:
    """Handle returned by put(); only valid until the next put() of the same name."""
    name: str
    generation: int
    digest: str
    size: int
    kind: str = FILE


@dataclass(frozen=True)
class Artifact:
    name: str
    digest: str
    size: int
    retention: float          # seconds
    producer: str             # producing instance label
    created_at: float
    generation: int
    kind: str = FILE

    @property
    def expires_at(self) -> float:
        return self.created_at + self.retention

    @property
    def ref(self) -> ArtifactRef:
        return ArtifactRef(self.name, self.generation, self.digest, self.size, self.kind)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "digest": self.digest,
            "size": self.size,
            "retention": self.retention,
            "producer": self.producer,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "generation": self.generation,
            "kind": self.kind,
        }


class ContentBackend(Protocol):
    def write(self, digest: str, data: bytes) -> None: ...
    def read(self, digest: str) -> bytes: ...
    def discard(self, digest: str) -> None: ...


class MemoryBackend:
    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def write(self, digest: str, data: bytes) -> None:
        with self._lock:
            self._blobs[digest] = bytes(data)

    def read(self, digest: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[digest]
            except KeyError:
                raise FileNotFoundError(digest) from None

    def discard(self, digest: str) -> None:
        with self._lock:
            self._blobs.pop(digest, None)

    def __len__(self) -> int:
        return len(self._blobs)


class FileBackend:
    """
    File-based content store:
      root/
        <digest[:2]>/
          <digest>
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, digest: str) -> Path:
        return self.root / digest[:2] / digest

    def write(self, digest: str, data: bytes) -> None:
        dest = self.path_for(digest)
        if dest.exists():
            return
        dest.parent.mkdir(parents=True, exist_ok=True)
        # one temp file per writer; two names may write the same digest at once
        fd, tmp_name = tempfile.mkstemp(prefix=f".{digest[:12]}.", suffix=".tmp", dir=dest.parent)
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            tmp.replace(dest)
        finally:
            tmp.unlink(missing_ok=True)

    def read(self, digest: str) -> bytes:
        return self.path_for(digest).read_bytes()

    def discard(self, digest: str) -> None:
        self.path_for(digest).unlink(missing_ok=True)


class ArtifactStore:
    """
    Named artifacts handed between job instances.

    Locking is per artifact name: concurrent put/get on "dist" serialize,
    a put on "dist" never waits for a get on "coverage". Backend content is
    shared by digest, so digest reference counts live under the registry
    lock and content is discarded only when the last holder lets go.
    """

    def __init__(
        self,
        backend: Optional[ContentBackend] = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.backend: ContentBackend = backend if backend is not None else MemoryBackend()
        self.clock = clock
        self._live: Dict[str, Artifact] = {}
        self._generations: Dict[str, int] = {}
        self._digest_refs: Dict[str, int] = {}
        self._name_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._name_locks.get(name)
            if lock is None:
                lock = self._name_locks[name] = threading.Lock()
            return lock

    # callers hold _registry_lock for the two helpers below

    def _retain(self, digest: str) -> None:
        self._digest_refs[digest] = self._digest_refs.get(digest, 0) + 1

    def _release(self, digest: str) -> None:
        count = self._digest_refs.get(digest, 0) - 1
        if count > 0:
            self._digest_refs[digest] = count
            return
        self._digest_refs.pop(digest, None)
        self.backend.discard(digest)

    def put(
        self,
        name: str,
        producer_id: str,
        data: bytes,
        retention: float = DEFAULT_RETENTION_SECONDS,
        *,
        kind: str = FILE,
    ) -> ArtifactRef:
        if not name:
            raise ValueError("artifact name must not be empty")
        if retention <= 0:
            raise ValueError(f"artifact '{name}': retention must be positive, got {retention}")
        if kind not in ARTIFACT_KINDS:
            raise ValueError(f"artifact '{name}': unknown kind {kind!r}. Known kinds: {list(ARTIFACT_KINDS)}")

        digest = _sha256_bytes(data)
        with self._lock_for(name):
            # reserve the digest before writing so no concurrent release discards it
            with self._registry_lock:
                self._retain(digest)
            try:
                self.backend.write(digest, data)
            except BaseException:
                with self._registry_lock:
                    self._release(digest)
                raise

            with self._registry_lock:
                generation = self._generations.get(name, 0) + 1
                self._generations[name] = generation
                previous = self._live.get(name)
                artifact = Artifact(
                    name=name,
                    digest=digest,
                    size=len(data),
                    retention=float(retention),
                    producer=producer_id,
                    created_at=self.clock(),
                    generation=generation,
                    kind=kind,
                )
                self._live[name] = artifact
                if previous is not None:
                    self._release(previous.digest)
        return artifact.ref

    def fetch(self, name: str) -> Tuple[Artifact, bytes]:
        """The live artifact's metadata and content, read under one lock."""
        with self._lock_for(name):
            artifact = self._live.get(name)
            if artifact is None:
                raise ArtifactNotFound(name)
            try:
                return artifact, self.backend.read(artifact.digest)
            except FileNotFoundError:
                raise ArtifactNotFound(name, "content missing from backend") from None

    def get(self, name: str) -> bytes:
        return self.fetch(name)[1]

    def read(self, ref: ArtifactRef) -> bytes:
        """Read through a ref; a ref from before the latest put() is stale."""
        with self._lock_for(ref.name):
            artifact = self._live.get(ref.name)
            if artifact is None:
                raise ArtifactNotFound(ref.name)
            if artifact.generation != ref.generation:
                raise ArtifactNotFound(
                    ref.name, f"stale reference (generation {ref.generation}, live {artifact.generation})"
                )
            try:
                return self.backend.read(artifact.digest)
            except FileNotFoundError:
                raise ArtifactNotFound(ref.name, "content missing from backend") from None

    def info(self, name: str) -> Artifact:
        with self._registry_lock:
            artifact = self._live.get(name)
        if artifact is None:
            raise ArtifactNotFound(name)
        return artifact

    def delete(self, name: str) -> bool:
        """Explicit cleanup after consumption. Returns False if nothing was live."""
        with self._lock_for(name):
            with self._registry_lock:
                artifact = self._live.pop(name, None)
                if artifact is None:
                    return False
                self._release(artifact.digest)
            return True

    def expire(self, now: Optional[float] = None) -> List[str]:
        """Evict every artifact whose retention window has elapsed; returns evicted names."""
        now = self.clock() if now is None else now
        with self._registry_lock:
            due = sorted(n for n, a in self._live.items() if a.expires_at <= now)
        evicted: List[str] = []
        for name in due:
            with self._lock_for(name):
                with self._registry_lock:
                    artifact = self._live.get(name)
                    if artifact is None or artifact.expires_at > now:
                        continue
                    del self._live[name]
                    self._release(artifact.digest)
                evicted.append(name)
        return evicted

    def list(self) -> List[Artifact]:
        with self._registry_lock:
            return sorted(self._live.values(), key=lambda a: a.name)

    def __contains__(self, name: str) -> bool:
        with self._registry_lock:
            return name in self._live


# ---------------------------------------------------------------------
# Packing helpers for upload/download steps
# ---------------------------------------------------------------------

def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def pack_path(src: str | Path, *, excludes: Optional[List[str]] = None) -> bytes:
    """
    Bytes for an upload step: a file is stored as-is, a directory becomes a
    tar.gz with paths relative to the directory.
    """
    src = Path(src)
    if not src.exists():
        raise FileNotFoundError(f"artifact path not found: {src}")
    if src.is_file():
        return src.read_bytes()

    exclude_globs = list(DEFAULT_PACK_EXCLUDES) + list(excludes or [])
    buf = io.BytesIO()
    # mtime pinned so identical trees give identical digests
    with tarfile.open(fileobj=buf, mode="w:gz", compresslevel=6) as tar:
        for f in _iter_files_under(src):
            rel = f.relative_to(src).as_posix()
            if _matches_any_glob(rel, exclude_globs):
                continue
            info = tar.gettarinfo(str(f), arcname=rel)
            info.mtime = 0
            with f.open("rb") as fh:
                tar.addfile(info, fileobj=fh)
    return buf.getvalue()


def path_kind(src: str | Path) -> str:
    return DIRECTORY if Path(src).is_dir() else FILE


def unpack_into(data: bytes, dest: str | Path, kind: str = FILE) -> Path:
    """
    Inverse of pack_path. A directory artifact is extracted under dest; a
    file artifact is written to dest byte for byte, even when the file is
    itself a tarball.
    """
    dest = Path(dest)
    if kind == DIRECTORY:
        dest.mkdir(parents=True, exist_ok=True)
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            tar.extractall(path=str(dest), filter="data")
        return dest
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(data)
    return dest
