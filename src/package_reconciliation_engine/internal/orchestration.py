from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from packaging.version import Version

from package_reconciliation_engine.cache import ArtifactCache, ArtifactKey, ArtifactRecord
from package_reconciliation_engine.collaborators import RemoteAccess
from package_reconciliation_engine.model.reconciliation import (
    MissingArtifact,
    MissingArtifacts,
)
from package_reconciliation_engine.model.state import (
    AvailabilityIndex,
    ReconciliationPlan,
)


@dataclass(frozen=True, slots=True)
class ArtifactCoordinator:
    """
    Secures package content in the local cache, fetching from the remote on a miss.

    Fetch failures are never raised: a remote that answers False, or raises, leaves
    the hash missing and the caller decides what that means.
    """

    cache: ArtifactCache
    remote: RemoteAccess

    def prefetch(self, package: str, source: str, hashes: Iterable[str]) -> frozenset[str]:
        missing: set[str] = set()

        for h in sorted(set(hashes)):
            key = ArtifactKey(package=package, content_hash=h)
            if self.cache.contains(key):
                logging.debug(f"cache hit: {key.identifier}")
                continue

            try:
                fetched = self.remote.fetch(source, key.content_hash)
            except Exception as e:
                logging.debug(
                    f"fetch failed: {key.identifier} source={source} err={type(e).__name__}: {e}"
                )
                fetched = False

            if not fetched:
                logging.debug(f"fetch missed: {key.identifier} source={source}")
                missing.add(h)
                continue

            self.cache.put(
                ArtifactRecord(key=key, source=source, created_at_epoch_s=time.time())
            )

        return frozenset(missing)


@dataclass(frozen=True, slots=True)
class PrefetchGate:
    coordinator: ArtifactCoordinator

    def secure(self, plan: ReconciliationPlan, url_for: Callable[[str], str]) -> None:
        """
        Make every content hash the plan touches available before anything is mutated.

        Covers the install hash of installs, both hashes of updates (the "from" hash is
        what a rollback restores) and the current hash of removes.

        Raises:
            MissingArtifacts: Listing every (package, version, hash) that could not be
                secured, sorted by package and version.
        """
        wanted: dict[str, list[tuple[Version, str]]] = {}
        for pkg, version, h in plan.required_hashes():
            wanted.setdefault(pkg, []).append((version, h))

        missing: list[MissingArtifact] = []
        for pkg in sorted(wanted):
            entries = wanted[pkg]
            unfound = self.coordinator.prefetch(pkg, url_for(pkg), [h for _, h in entries])
            missing.extend(
                MissingArtifact(package=pkg, version=v, content_hash=h)
                for v, h in entries
                if h in unfound
            )

        if missing:
            raise MissingArtifacts(
                sorted(set(missing), key=lambda m: (m.package, m.version, m.content_hash or ""))
            )


def prefetch_all_versions(
    coordinator: ArtifactCoordinator,
    avail: AvailabilityIndex,
    packages: Iterable[str],
    url_for: Callable[[str], str],
) -> None:
    """
    Warm the cache with every published version of the given packages.

    Opportunistic: packages without metadata are skipped and nothing here raises on
    a fetch or lookup failure.
    """
    for pkg in sorted(set(packages)):
        versions = avail.get(pkg)
        if not versions:
            continue
        hashes = [d.content_hash for d in versions.values() if d.content_hash is not None]
        if not hashes:
            continue
        try:
            source = url_for(pkg)
        except Exception as e:
            logging.debug(f"no source for {pkg}: {type(e).__name__}: {e}")
            continue
        unfound = coordinator.prefetch(pkg, source, hashes)
        if unfound:
            logging.debug(f"prefetch of {pkg} left {len(unfound)} of {len(hashes)} version(s) missing")
