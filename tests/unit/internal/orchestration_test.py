from __future__ import annotations

# ==============================================================================
# BRANCH LEDGER: orchestration.py
# ==============================================================================
#
# Classes / functions (in file order):
#   C001 = ArtifactCoordinator
#   C002 = PrefetchGate
#   F001 = prefetch_all_versions
#
# ------------------------------------------------------------------------------
# ## ArtifactCoordinator.prefetch(self, package, source, hashes)
# ------------------------------------------------------------------------------
# C001M001B0001: hashes empty -> frozenset()
# C001M001B0002: cache hit -> no fetch
# C001M001B0003: fetch returns True -> record put into cache
# C001M001B0004: fetch returns False -> hash missing, nothing cached
# C001M001B0005: fetch raises -> hash missing, error not propagated
# C001M001B0006: duplicate hashes fetched once
#
# ------------------------------------------------------------------------------
# ## PrefetchGate.secure(self, plan, url_for)
# ------------------------------------------------------------------------------
# C002M001B0001: every hash secured -> returns None
# C002M001B0002: any hash missing -> MissingArtifacts, sorted triples
# C002M001B0003: update contributes both from and to hashes
#
# ------------------------------------------------------------------------------
# ## prefetch_all_versions(coordinator, avail, packages, url_for)
# ------------------------------------------------------------------------------
# F001B0001: package without metadata -> skipped
# F001B0002: url lookup raises -> skipped, no error
# F001B0003: all versions with hashes prefetched; failures never raise
# ==============================================================================

import pytest
from packaging.version import Version

from package_reconciliation_engine.cache import ArtifactKey
from package_reconciliation_engine.internal.builtin_cache import EphemeralArtifactCache
from package_reconciliation_engine.internal.orchestration import (
    ArtifactCoordinator,
    PrefetchGate,
    prefetch_all_versions,
)
from package_reconciliation_engine.model.reconciliation import (
    MissingArtifact,
    MissingArtifacts,
)
from package_reconciliation_engine.model.state import (
    InstallAction,
    ReconciliationPlan,
    RemoveAction,
    UpdateAction,
)
from unit.helpers.collaborators_helper import (
    FakeFilesystem,
    FakeRemote,
    FakeRequirementSource,
    make_index,
    sha,
)

SOURCE = "https://example.invalid/A.git"


def _url_for(pkg: str) -> str:
    return f"https://example.invalid/{pkg}.git"


@pytest.fixture()
def remote() -> FakeRemote:
    return FakeRemote(fs=FakeFilesystem(), requirements=FakeRequirementSource())


@pytest.fixture()
def cache() -> EphemeralArtifactCache:
    return EphemeralArtifactCache()


@pytest.fixture()
def coordinator(cache, remote) -> ArtifactCoordinator:
    return ArtifactCoordinator(cache=cache, remote=remote)


def test_prefetch_nothing(coordinator, remote):
    # C001M001B0001
    assert coordinator.prefetch("A", SOURCE, []) == frozenset()
    assert remote.fetched == []


def test_prefetch_cache_hit_skips_fetch(coordinator, cache, remote):
    # C001M001B0002 / C001M001B0003
    h = sha("A", "1")
    assert coordinator.prefetch("A", SOURCE, [h]) == frozenset()
    assert cache.contains(ArtifactKey("A", h))
    assert cache.get(ArtifactKey("A", h)).source == SOURCE

    assert coordinator.prefetch("A", SOURCE, [h]) == frozenset()
    assert remote.fetched == [h]


def test_prefetch_unfetchable_and_raising(coordinator, cache, remote):
    # C001M001B0004 / C001M001B0005
    ok, gone, broken = sha("A", "1"), sha("A", "2"), sha("A", "3")
    remote.unfetchable.add(gone)
    remote.fetch_errors[broken] = ConnectionError("network unreachable")

    missing = coordinator.prefetch("A", SOURCE, [ok, gone, broken])

    assert missing == frozenset({gone, broken})
    assert cache.contains(ArtifactKey("A", ok))
    assert not cache.contains(ArtifactKey("A", gone))
    assert not cache.contains(ArtifactKey("A", broken))


def test_prefetch_deduplicates(coordinator, remote):
    # C001M001B0006
    h = sha("A", "1")
    coordinator.prefetch("A", SOURCE, [h, h, h])
    assert remote.fetched == [h]


def _plan() -> ReconciliationPlan:
    return ReconciliationPlan(
        installs=(InstallAction("D", Version("1"), sha("D", "1")),),
        updates=(UpdateAction("B", Version("1"), Version("2"), sha("B", "1"), sha("B", "2")),),
        removes=(RemoveAction("C", Version("1"), sha("C", "1")),),
    )


def test_gate_secures_every_hash(coordinator, cache):
    # C002M001B0001 / C002M001B0003
    PrefetchGate(coordinator).secure(_plan(), _url_for)
    for pkg, v in [("D", "1"), ("B", "1"), ("B", "2"), ("C", "1")]:
        assert cache.contains(ArtifactKey(pkg, sha(pkg, v)))
    assert cache.get(ArtifactKey("B", sha("B", "2"))).source == _url_for("B")


def test_gate_reports_missing_sorted(coordinator, remote):
    # C002M001B0002
    remote.unfetchable.update({sha("D", "1"), sha("B", "1")})
    remote.fetch_errors[sha("C", "1")] = TimeoutError("slow")

    with pytest.raises(MissingArtifacts) as ei:
        PrefetchGate(coordinator).secure(_plan(), _url_for)

    assert list(ei.value.missing) == [
        MissingArtifact("B", Version("1"), sha("B", "1")),
        MissingArtifact("C", Version("1"), sha("C", "1")),
        MissingArtifact("D", Version("1"), sha("D", "1")),
    ]


def test_prefetch_all_versions(coordinator, cache, remote):
    # F001B0001..B0003
    avail = make_index({"A": {"1": {}, "2": {}}, "B": {"1": {}}})
    remote.fetch_errors[sha("A", "2")] = OSError("boom")

    def url_for(pkg: str) -> str:
        if pkg == "B":
            raise KeyError(pkg)
        return _url_for(pkg)

    prefetch_all_versions(coordinator, avail, ["A", "B", "Unknown"], url_for)

    assert cache.contains(ArtifactKey("A", sha("A", "1")))
    assert not cache.contains(ArtifactKey("A", sha("A", "2")))
    assert not cache.contains(ArtifactKey("B", sha("B", "1")))
    assert sorted(remote.fetched) == sorted([sha("A", "1"), sha("A", "2")])
