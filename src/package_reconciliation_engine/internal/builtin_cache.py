from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from package_reconciliation_engine.cache import ArtifactCache, ArtifactKey, ArtifactRecord

_INVALID_SEGMENT_CHARS: Final[re.Pattern[str]] = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_segment(value: str) -> str:
    """
    Make a filesystem-safe path segment.
    """
    value = value.strip()
    if not value:
        return "_"
    value = _INVALID_SEGMENT_CHARS.sub("_", value)
    return value[:160]


@dataclass(slots=True)
class EphemeralArtifactCache(ArtifactCache):
    """
    Run-scoped in-memory cache index.

    Nothing persists past close(); every run starts cold and relies on the remote
    access collaborator to report what it can secure.
    """

    _index: dict[ArtifactKey, ArtifactRecord]

    def __init__(self) -> None:
        self._index = {}

    def close(self) -> None:
        self._index.clear()

    def __enter__(self) -> EphemeralArtifactCache:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get(self, key: ArtifactKey) -> ArtifactRecord | None:
        return self._index.get(key)

    def put(self, record: ArtifactRecord) -> None:
        self._index[record.key] = record

    def delete(self, key: ArtifactKey) -> None:
        self._index.pop(key, None)


@dataclass(slots=True)
class DirectoryArtifactCache(ArtifactCache):
    """
    Persistent cache index: one JSON record per (package, hash) under a root directory.

    Layout: <root>/<package>/<content_hash>.json. Records that fail to parse are
    treated as absent and removed, so a damaged entry only costs a refetch.
    """

    _root: Path

    def __init__(self, *, root: str | Path) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root_path(self) -> Path:
        return self._root

    def _path_for(self, key: ArtifactKey) -> Path:
        return self._root / _safe_segment(key.package) / f"{_safe_segment(key.content_hash)}.json"

    def get(self, key: ArtifactKey) -> ArtifactRecord | None:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            record = ArtifactRecord.from_json(path.read_text(encoding="utf-8"))
        except (ValueError, KeyError, TypeError) as e:
            logging.warning(f"dropping unreadable cache record {path}: {e}")
            path.unlink(missing_ok=True)
            return None
        if record.key != key:
            logging.warning(f"dropping mismatched cache record {path}")
            path.unlink(missing_ok=True)
            return None
        return record

    def put(self, record: ArtifactRecord) -> None:
        path = self._path_for(record.key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(record.to_json() + "\n", encoding="utf-8")
        tmp.replace(path)

    def delete(self, key: ArtifactKey) -> None:
        self._path_for(key).unlink(missing_ok=True)
