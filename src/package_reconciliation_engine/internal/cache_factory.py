from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from package_reconciliation_engine.cache import ArtifactCache
from package_reconciliation_engine.collaborators import Workspace
from package_reconciliation_engine.internal.builtin_cache import (
    DirectoryArtifactCache,
    EphemeralArtifactCache,
)

DEFAULT_CACHE_ID = "ephemeral"
CACHE_IDS = ("directory", "ephemeral")


class CacheSelectionError(RuntimeError):
    """
    Raised when the configured artifact cache cannot be opened.
    """


def _directory_root(config: Mapping[str, Any] | None, workspace: Workspace | None) -> Path:
    root = (config or {}).get("root")
    if not root:
        raise CacheSelectionError("the 'directory' artifact cache requires config['root']")
    path = Path(root)
    # relative roots live inside the workspace so each workspace keeps its own index
    if not path.is_absolute() and workspace is not None:
        path = workspace.root / path
    return path


def create_cache(
    cache_id: str | None,
    config: Mapping[str, Any] | None = None,
    *,
    workspace: Workspace | None = None,
) -> ArtifactCache:
    """
    Build the artifact cache named by cache_id (None means the in-memory default).

    Raises:
        CacheSelectionError: If cache_id is unknown or its config is incomplete.
    """
    cid = cache_id or DEFAULT_CACHE_ID
    match cid:
        case "ephemeral":
            if config:
                logging.warning(f"ignoring cache_config for the ephemeral cache: {sorted(config)}")
            return EphemeralArtifactCache()
        case "directory":
            return DirectoryArtifactCache(root=_directory_root(config, workspace))
        case _:
            raise CacheSelectionError(f"unknown cache id {cid!r}. available={list(CACHE_IDS)}")


@contextmanager
def open_cache(
    *,
    cache_id: str | None,
    config: Mapping[str, Any] | None = None,
    workspace: Workspace | None = None,
) -> Iterator[ArtifactCache]:
    """
    Create exactly one artifact cache for the run and close it when the run ends,
    whether or not the run raised.
    """
    cache = create_cache(cache_id, config, workspace=workspace)
    logging.debug(f"opened {type(cache).__name__} for the run")
    try:
        yield cache
    finally:
        cache.close()
