from __future__ import annotations

import logging
from collections.abc import Mapping

from packaging.version import Version

from package_reconciliation_engine.model.reconciliation import ConflictingFixedRequirement
from package_reconciliation_engine.model.state import (
    ArtifactDescriptor,
    AvailabilityIndex,
    Diff,
    FixedPackage,
    RequirementSet,
)
from package_reconciliation_engine.model.versions import VersionSet


def effective_requirements(
    reqs: Mapping[str, VersionSet], fixed: Mapping[str, FixedPackage]
) -> RequirementSet:
    """
    Merge declared requirements with the exact pin of every fixed package.

    Args:
        reqs: Declared requirements.
        fixed: Fixed packages by name.

    Returns:
        RequirementSet: A new requirement set; the input is not modified.

    Raises:
        ConflictingFixedRequirement: If a declared requirement excludes the pinned
            version of a fixed package.
    """
    merged: RequirementSet = dict(reqs)
    for pkg in sorted(fixed):
        pinned = fixed[pkg].version
        pin = VersionSet.exact(pinned)
        declared = merged.get(pkg)
        if declared is None:
            merged[pkg] = pin
            continue
        narrowed = declared.intersect(pin)
        if narrowed.is_empty:
            raise ConflictingFixedRequirement(pkg, requirement=declared, pinned=pinned)
        merged[pkg] = narrowed
    return merged


def _fixed_descriptor(
    pkg: str, fx: FixedPackage, avail: AvailabilityIndex
) -> ArtifactDescriptor:
    registered = avail.get(pkg, {}).get(fx.version)
    requires = fx.requires
    if requires is None:
        requires = registered.requires if registered is not None else {}
    content_hash = fx.content_hash
    if content_hash is None and registered is not None:
        content_hash = registered.content_hash
    return ArtifactDescriptor(requires=requires, content_hash=content_hash)


def _compatible_with_fixed(
    descriptor: ArtifactDescriptor, fixed: Mapping[str, FixedPackage]
) -> bool:
    for fp, fx in fixed.items():
        edge = descriptor.requires.get(fp)
        if edge is not None and not edge.contains(fx.version):
            return False
    return True


def dependency_graph(
    avail: AvailabilityIndex, fixed: Mapping[str, FixedPackage]
) -> dict[str, dict[Version, ArtifactDescriptor]]:
    """
    Restrict the availability index to what can coexist with the fixed packages.

    - every version whose edge on a fixed package excludes the pinned version is
      dropped, and packages left with no versions are dropped;
    - every fixed package keeps exactly its pinned version. The working copy's own
      requirements and hash take precedence over the registry's, and a fixed package
      missing from the registry is still present.

    The input index is never mutated.
    """
    graph: dict[str, dict[Version, ArtifactDescriptor]] = {}
    for pkg, versions in avail.items():
        if pkg in fixed:
            continue
        kept = {
            v: d for v, d in versions.items() if _compatible_with_fixed(d, fixed)
        }
        if len(kept) != len(versions):
            dropped = sorted(set(versions) - set(kept))
            logging.debug(
                f"pruned {pkg} versions incompatible with fixed packages: {[str(v) for v in dropped]}"
            )
        if kept:
            graph[pkg] = kept

    for pkg, fx in fixed.items():
        graph[pkg] = {fx.version: _fixed_descriptor(pkg, fx, avail)}

    return graph


def unavailable_requirements(
    reqs: Mapping[str, VersionSet], deps: AvailabilityIndex
) -> list[str]:
    """
    Required packages with no version left in the (pruned) dependency graph.
    """
    return sorted(pkg for pkg in reqs if not deps.get(pkg))


def diff(have: Mapping[str, Version], want: Mapping[str, Version]) -> Diff:
    """
    Compare installed and desired versions.

    installs: in want but not have; updates: in both with different versions;
    removes: in have but not want. Each collection is sorted by package name.
    """
    installs = tuple((pkg, want[pkg]) for pkg in sorted(want) if pkg not in have)
    updates = tuple(
        (pkg, have[pkg], want[pkg])
        for pkg in sorted(want)
        if pkg in have and have[pkg] != want[pkg]
    )
    removes = tuple((pkg, have[pkg]) for pkg in sorted(have) if pkg not in want)
    return Diff(installs=installs, updates=updates, removes=removes)
