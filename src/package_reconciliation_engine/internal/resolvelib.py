from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence

from packaging.version import Version
from resolvelib import (
    AbstractProvider,
    ResolutionImpossible,
    ResolutionTooDeep,
    Resolver,
)
from resolvelib.resolvers import Result
from resolvelib.structs import RequirementInformation

from package_reconciliation_engine.internal.resolvelib_types import (
    Preference,
    ReconciliationReporter,
    ResolverCandidate,
    ResolverRequirement,
)
from package_reconciliation_engine.model.reconciliation import (
    ChurnPolicy,
    ConflictCause,
    ReconcilePolicy,
    ResolutionBudgetExceeded,
    SanityProblem,
    UnsatisfiableRequirements,
)
from package_reconciliation_engine.model.state import AvailabilityIndex, DesiredState
from package_reconciliation_engine.model.versions import VersionSet


class ReconciliationProvider(
    AbstractProvider[ResolverRequirement, ResolverCandidate, str]
):
    """
    A resolvelib Provider over an immutable availability snapshot.

    Candidate order encodes the tie-break: highest version first, or, under
    ChurnPolicy.MINIMIZE_CHANGES, the preferred (installed) version first and then
    highest first. The provider never mutates the index it is given.
    """

    def __init__(
        self,
        *,
        deps: AvailabilityIndex,
        preferred: Mapping[str, Version] | None = None,
        policy: ReconcilePolicy | None = None,
    ) -> None:
        self._deps = deps
        self._preferred = dict(preferred or {})
        self._policy = policy or ReconcilePolicy()

    def identify(
        self, requirement_or_candidate: ResolverRequirement | ResolverCandidate
    ) -> str:
        return requirement_or_candidate.name

    def get_preference(
        self,
        identifier: str,
        resolutions: Mapping[str, ResolverCandidate],
        candidates: Mapping[str, Iterator[ResolverCandidate]],
        information: Mapping[
            str,
            Iterator[RequirementInformation[ResolverRequirement, ResolverCandidate]],
        ],
        backtrack_causes: Sequence[
            RequirementInformation[ResolverRequirement, ResolverCandidate]
        ],
    ) -> Preference:
        """
        Decide which identifier resolvelib should try to resolve next.

        Smaller tuples sort first: backtrack causes, then root requirements, then the
        most constrained identifiers, then unresolved before resolved, then name.
        """
        infos = tuple(information.get(identifier, ()))

        is_root = any(ri.parent is None for ri in infos)
        parent_count = sum(1 for ri in infos if ri.parent is not None)
        is_backtrack_cause = any(
            ri.requirement.name == identifier for ri in backtrack_causes
        )
        is_already_resolved = identifier in resolutions

        return (
            0 if is_backtrack_cause else 1,
            0 if is_root else 1,
            -parent_count,
            1 if is_already_resolved else 0,
            identifier,
        )

    def find_matches(
        self,
        identifier: str,
        requirements: Mapping[str, Iterator[ResolverRequirement]],
        incompatibilities: Mapping[str, Iterator[ResolverCandidate]],
    ) -> Iterable[ResolverCandidate]:
        req_list = list(requirements.get(identifier, iter(())))
        bad = {c.version for c in incompatibilities.get(identifier, iter(()))}
        combined = self._combined_versions(req_list)

        candidates = [
            ResolverCandidate(name=identifier, version=v, descriptor=d)
            for v, d in self._deps.get(identifier, {}).items()
            if v not in bad and combined.contains(v)
        ]
        return self._sort_candidates(identifier, candidates)

    @staticmethod
    def _combined_versions(req_list: Sequence[ResolverRequirement]) -> VersionSet:
        combined = VersionSet.any()
        for r in req_list:
            combined = combined.intersect(r.versions)
        return combined

    def _sort_candidates(
        self, identifier: str, candidates: list[ResolverCandidate]
    ) -> list[ResolverCandidate]:
        candidates.sort(key=lambda c: c.version, reverse=True)
        if self._policy.churn_policy is ChurnPolicy.MINIMIZE_CHANGES:
            current = self._preferred.get(identifier)
            if current is not None:
                # stable: the installed version moves to the front, the rest stay descending
                candidates.sort(key=lambda c: c.version != current)
        return candidates

    def is_satisfied_by(
        self, requirement: ResolverRequirement, candidate: ResolverCandidate
    ) -> bool:
        if candidate.name != requirement.name:
            return False
        return requirement.versions.contains(candidate.version)

    def get_dependencies(
        self, candidate: ResolverCandidate
    ) -> Iterable[ResolverRequirement]:
        return [
            ResolverRequirement(name=name, versions=versions)
            for name, versions in sorted(candidate.descriptor.requires.items())
        ]


def _conflicts_from_causes(
    causes: Iterable[RequirementInformation[ResolverRequirement, ResolverCandidate]],
) -> list[ConflictCause]:
    found: set[ConflictCause] = set()
    for info in causes:
        parent = info.parent
        found.add(
            ConflictCause(
                package=info.requirement.name,
                versions=info.requirement.versions,
                required_by=parent.name if parent is not None else None,
                required_by_version=parent.version if parent is not None else None,
            )
        )
    return sorted(
        found,
        key=lambda c: (c.package, c.required_by or "", str(c.required_by_version or "")),
    )


def _desired_state_from_result(
    result: Result[ResolverRequirement, ResolverCandidate, str],
) -> DesiredState:
    pinned: Mapping[str, ResolverCandidate] = result.mapping
    versions = {name: cand.version for name, cand in pinned.items()}

    deps_by_parent: dict[str, set[str]] = {name: set() for name in versions}
    for child_name, crit in result.criteria.items():
        if child_name not in versions:
            continue
        for info in crit.information:
            parent = info.parent
            if parent is None:
                continue
            if versions.get(parent.name) == parent.version:
                deps_by_parent[parent.name].add(child_name)

    return DesiredState(
        versions=versions,
        dependencies={name: frozenset(children) for name, children in deps_by_parent.items()},
    )


def resolve(
    reqs: Mapping[str, VersionSet],
    deps: AvailabilityIndex,
    *,
    preferred: Mapping[str, Version] | None = None,
    policy: ReconcilePolicy | None = None,
) -> DesiredState:
    """
    Select exactly one version for every package reachable from reqs.

    Args:
        reqs: Effective requirements (declared requirements plus fixed pins).
        deps: Dependency graph to search, already pruned against fixed packages.
        preferred: Currently installed versions; only consulted under
            ChurnPolicy.MINIMIZE_CHANGES.
        policy: Resolution policy; defaults to ReconcilePolicy().

    Returns:
        DesiredState: The selected versions and the resolved dependency edges.

    Raises:
        UnsatisfiableRequirements: If no assignment exists. The conflicts name the
            constraints resolvelib was left with.
        ResolutionBudgetExceeded: If the search exceeds policy.max_rounds.
    """
    policy = policy or ReconcilePolicy()
    provider = ReconciliationProvider(deps=deps, preferred=preferred, policy=policy)
    reporter = ReconciliationReporter()
    resolver: Resolver[ResolverRequirement, ResolverCandidate, str] = Resolver(
        provider, reporter
    )
    roots = [
        ResolverRequirement(name=name, versions=versions)
        for name, versions in sorted(reqs.items())
    ]

    try:
        result = resolver.resolve(roots, max_rounds=policy.max_rounds)
    except ResolutionImpossible as e:
        raise UnsatisfiableRequirements(
            "unsatisfiable package requirements detected",
            conflicts=_conflicts_from_causes(e.causes),
        ) from e
    except ResolutionTooDeep as e:
        raise ResolutionBudgetExceeded(policy.max_rounds) from e

    return _desired_state_from_result(result)


def _blocking_dependency(
    package: str, version: Version, conflicts: Sequence[ConflictCause]
) -> str:
    direct = [
        c.package
        for c in conflicts
        if c.required_by == package and c.required_by_version == version
    ]
    if direct:
        return direct[0]
    others = [c.package for c in conflicts if c.package != package]
    return others[0] if others else package


def sanity_check(
    deps: AvailabilityIndex, *, policy: ReconcilePolicy | None = None
) -> list[SanityProblem]:
    """
    Find every (package, version) in deps that has no satisfying dependency assignment.

    Each pair is resolved in isolation as an exact pin, independent of any declared
    requirements, and one blocking dependency is named per failing pair.
    A pair whose resolution exceeds policy.max_rounds is inconclusive: it is logged
    at warning level and left out of the result.
    """
    problems: list[SanityProblem] = []
    for pkg in sorted(deps):
        for version in sorted(deps[pkg]):
            try:
                resolve({pkg: VersionSet.exact(version)}, deps, policy=policy)
            except UnsatisfiableRequirements as e:
                blocking = _blocking_dependency(pkg, version, e.conflicts)
                logging.debug(f"{pkg} v{version} cannot be satisfied (blocked by {blocking})")
                problems.append(SanityProblem(package=pkg, version=version, blocking=blocking))
            except ResolutionBudgetExceeded as e:
                logging.warning(f"skipping sanity check of {pkg} v{version}: {e}")
    return problems
