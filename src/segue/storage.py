"""Local artifact store: where finished clips live on disk."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    import os

log = logging.getLogger(__name__)

ARTIFACT_SUFFIX = ".mp4"


@dataclass(frozen=True)
class StoredArtifact:
    """An artifact found on disk during a scan."""

    name: str
    path: Path
    size_bytes: int
    modified_at: float


@runtime_checkable
class ArtifactStore(Protocol):
    """Minimal storage protocol consumed by the result cache and continuity bridge."""

    def write(self, name: str, data: bytes) -> Path:
        """Persist *data* under *name* and return its path."""
        ...

    def read(self, path: Path) -> bytes:
        """Return the bytes stored at *path*."""
        ...

    def exists(self, path: Path) -> bool:
        """Whether *path* is present in the store."""
        ...

    def delete(self, path: Path) -> None:
        """Remove *path*; missing paths are ignored."""
        ...

    def scan(self) -> list[StoredArtifact]:
        """List the artifacts currently stored."""
        ...


class LocalArtifactStore:
    """Directory-backed store.

    Writes go to a temp file first and are renamed into place, so readers
    never observe a half-written clip.
    """

    def __init__(self, root: str | os.PathLike[str]) -> None:
        """Initialize the store rooted at *root* (created on demand)."""
        self._root = Path(root)

    @property
    def root(self) -> Path:
        """Directory holding the artifacts."""
        return self._root

    def write(self, name: str, data: bytes) -> Path:
        self._root.mkdir(parents=True, exist_ok=True)
        dest = self._root / name
        tmp = dest.with_suffix(dest.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(dest)
        log.debug("Stored artifact %s (%d bytes)", dest.name, len(data))
        return dest

    def read(self, path: Path) -> bytes:
        return Path(path).read_bytes()

    def exists(self, path: Path) -> bool:
        return Path(path).is_file()

    def delete(self, path: Path) -> None:
        Path(path).unlink(missing_ok=True)

    def scan(self) -> list[StoredArtifact]:
        if not self._root.is_dir():
            return []
        found: list[StoredArtifact] = []
        for p in sorted(self._root.glob(f"*{ARTIFACT_SUFFIX}")):
            try:
                stat = p.stat()
            except FileNotFoundError:
                continue
            found.append(
                StoredArtifact(
                    name=p.stem,
                    path=p,
                    size_bytes=stat.st_size,
                    modified_at=stat.st_mtime,
                )
            )
        return found
