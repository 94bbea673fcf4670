from __future__ import annotations

# ==============================================================================
# BRANCH LEDGER: resolvelib.py
# ==============================================================================
#
# Classes / functions (in file order):
#   C001 = ReconciliationProvider
#   F001 = _conflicts_from_causes
#   F002 = _desired_state_from_result
#   F003 = resolve
#   F004 = _blocking_dependency
#   F005 = sanity_check
#
# ------------------------------------------------------------------------------
# C001M001 identify: requirement and candidate -> name
# C001M002 get_preference:
#   B0001: backtrack cause sorts first
#   B0002: root requirement sorts before non-root
#   B0003: more parents sorts first
# C001M003 find_matches:
#   B0001: candidates outside the combined requirement set are excluded
#   B0002: incompatibilities are excluded
#   B0003: unknown identifier -> []
#   B0004: MAXIMIZE_VERSIONS -> highest first
#   B0005: MINIMIZE_CHANGES with preferred -> preferred first, then highest
#   B0006: MINIMIZE_CHANGES without preferred -> highest first
# C001M004 is_satisfied_by: name mismatch -> False; range check
# C001M005 get_dependencies: sorted requirements from the descriptor
#
# F003:
#   B0001: satisfiable -> DesiredState with dependency edges
#   B0002: ResolutionImpossible -> UnsatisfiableRequirements with conflicts
#   B0003: ResolutionTooDeep -> ResolutionBudgetExceeded
#
# F004:
#   B0001: direct conflict of the failing pair -> that package
#   B0002: no direct conflict -> first other package
#   B0003: no other package -> the package itself
#
# F005:
#   B0001: consistent index -> []
#   B0002: P@1.0 requires a missing Q range -> [(P, 1.0, Q)]
#   B0003: pair over the round budget -> warning, skipped; other pairs still checked
# ==============================================================================

import logging
from types import SimpleNamespace

import pytest
from packaging.version import Version

from package_reconciliation_engine.internal.resolvelib import (
    ReconciliationProvider,
    _blocking_dependency,
    resolve,
    sanity_check,
)
from package_reconciliation_engine.internal.resolvelib_types import (
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
from package_reconciliation_engine.model.state import ArtifactDescriptor
from package_reconciliation_engine.model.versions import VersionSet
from unit.helpers.collaborators_helper import make_index, make_reqs, versions_of

MINIMIZE = ReconcilePolicy(churn_policy=ChurnPolicy.MINIMIZE_CHANGES)


def _req(name: str, text: str = "*") -> ResolverRequirement:
    return ResolverRequirement(name=name, versions=VersionSet.parse(text))


def _cand(name: str, version: str, requires: dict[str, str] | None = None) -> ResolverCandidate:
    return ResolverCandidate(
        name=name,
        version=Version(version),
        descriptor=ArtifactDescriptor(requires=requires or {}),
    )


def _info(requirement: ResolverRequirement, parent: ResolverCandidate | None):
    return SimpleNamespace(requirement=requirement, parent=parent)


# ------------------------------------------------------------------------------
# provider
# ------------------------------------------------------------------------------


def test_identify():
    # C001M001
    p = ReconciliationProvider(deps={})
    assert p.identify(_req("A")) == "A"
    assert p.identify(_cand("B", "1")) == "B"


def test_get_preference_ordering():
    # C001M002B0001..B0003
    p = ReconciliationProvider(deps={})
    parent = _cand("X", "1")
    information = {
        "cause": iter([_info(_req("cause"), parent)]),
        "root": iter([_info(_req("root"), None)]),
        "popular": iter([_info(_req("popular"), parent), _info(_req("popular"), _cand("Y", "1"))]),
        "plain": iter([_info(_req("plain"), parent)]),
    }
    backtrack = [_info(_req("cause"), parent)]

    prefs = {
        name: p.get_preference(
            identifier=name,
            resolutions={},
            candidates={},
            information=information,
            backtrack_causes=backtrack,
        )
        for name in ["plain", "popular", "root", "cause"]
    }

    assert sorted(prefs, key=prefs.__getitem__) == ["cause", "root", "popular", "plain"]


FIND_CASES = [
    (
        "range-filter",
        ReconcilePolicy(),
        {},
        [_req("A", ">=1.1")],
        [],
        ["2.0", "1.1"],
    ),
    (
        "combined-requirements",
        ReconcilePolicy(),
        {},
        [_req("A", ">=1.0"), _req("A", "<2.0")],
        [],
        ["1.1", "1.0"],
    ),
    (
        "incompatibilities",
        ReconcilePolicy(),
        {},
        [_req("A")],
        [_cand("A", "2.0")],
        ["1.1", "1.0"],
    ),
    (
        "minimize-prefers-installed",
        MINIMIZE,
        {"A": Version("1.0")},
        [_req("A")],
        [],
        ["1.0", "2.0", "1.1"],
    ),
    (
        "minimize-without-installed",
        MINIMIZE,
        {},
        [_req("A")],
        [],
        ["2.0", "1.1", "1.0"],
    ),
    (
        "maximize-ignores-installed",
        ReconcilePolicy(),
        {"A": Version("1.0")},
        [_req("A")],
        [],
        ["2.0", "1.1", "1.0"],
    ),
]


@pytest.mark.parametrize(
    "policy, preferred, reqs, bad, expected",
    [c[1:] for c in FIND_CASES],
    ids=[c[0] for c in FIND_CASES],
)
def test_find_matches(policy, preferred, reqs, bad, expected):
    # C001M003B0001..B0006
    deps = make_index({"A": {"1.0": {}, "1.1": {}, "2.0": {}}})
    p = ReconciliationProvider(deps=deps, preferred=preferred, policy=policy)

    found = p.find_matches(
        identifier="A",
        requirements={"A": iter(reqs)},
        incompatibilities={"A": iter(bad)},
    )

    assert [str(c.version) for c in found] == expected


def test_find_matches_unknown_identifier():
    # C001M003B0003
    p = ReconciliationProvider(deps=make_index({"A": {"1.0": {}}}))
    assert list(p.find_matches("Nope", {}, {})) == []


def test_is_satisfied_by():
    # C001M004
    p = ReconciliationProvider(deps={})
    assert p.is_satisfied_by(_req("A", ">=1"), _cand("A", "1.5"))
    assert not p.is_satisfied_by(_req("A", ">=2"), _cand("A", "1.5"))
    assert not p.is_satisfied_by(_req("A"), _cand("B", "1.5"))


def test_get_dependencies_sorted():
    # C001M005
    p = ReconciliationProvider(deps={})
    deps = list(p.get_dependencies(_cand("A", "1", {"Z": ">=1", "B": "<2"})))
    assert [d.name for d in deps] == ["B", "Z"]
    assert deps[0].versions == VersionSet.range(None, "2")


# ------------------------------------------------------------------------------
# resolve
# ------------------------------------------------------------------------------


def test_resolve_single_package():
    # F003B0001 (example scenario 1)
    deps = make_index({"A": {"1.0.0": {}}})
    want = resolve(make_reqs({"A": ">=1.0.0"}), deps)
    assert want.versions == {"A": Version("1.0.0")}
    assert want.dependencies == {"A": frozenset()}


def test_resolve_picks_highest_satisfying_versions_and_records_edges():
    # F003B0001
    deps = make_index(
        {
            "A": {"1.0": {"B": "<2"}, "2.0": {"B": ">=2"}},
            "B": {"1.0": {}, "2.0": {}, "3.0": {}},
            "C": {"1.0": {"B": "<3"}},
        }
    )
    want = resolve(make_reqs({"A": "*", "C": "*"}), deps)

    assert want.versions == versions_of({"A": "2.0", "B": "2.0", "C": "1.0"})
    assert want.dependencies["A"] == frozenset({"B"})
    assert want.dependencies["C"] == frozenset({"B"})
    assert want.dependencies["B"] == frozenset()


@pytest.mark.parametrize(
    "reqs_spec, deps_spec",
    [
        ({"A": "*"}, {"A": {"1": {"B": ">=1"}, "2": {"B": ">=3"}}, "B": {"1": {}, "2": {}}}),
        ({"A": "<2", "B": "*"}, {"A": {"1": {}, "2": {}}, "B": {"1": {"A": ">=1"}, "2": {"A": ">=2"}}}),
        ({"A": "*"}, {"A": {"1": {"B": "*", "C": "*"}}, "B": {"1": {"C": "<2"}}, "C": {"1": {}, "2": {}}}),
    ],
    ids=["backtrack-parent", "backtrack-dependent", "shared-dependency"],
)
def test_resolve_output_satisfies_every_constraint(reqs_spec, deps_spec):
    # F003B0001
    reqs, deps = make_reqs(reqs_spec), make_index(deps_spec)
    want = resolve(reqs, deps)

    for pkg, vs in reqs.items():
        assert vs.contains(want[pkg])
    for pkg in want:
        edges = deps[pkg][want[pkg]].requires
        for dep, vs in edges.items():
            assert dep in want
            assert vs.contains(want[dep])


def test_resolve_minimize_changes_keeps_installed_version():
    # F003B0001 with MINIMIZE_CHANGES
    deps = make_index({"A": {"1.0": {}, "2.0": {}}})
    reqs = make_reqs({"A": "*"})

    assert resolve(reqs, deps).versions["A"] == Version("2.0")
    assert resolve(reqs, deps, preferred={"A": Version("1.0")}, policy=MINIMIZE).versions["A"] == Version("1.0")


def test_resolve_unsatisfiable_names_conflicts():
    # F003B0002
    deps = make_index({"A": {"1.0": {"B": ">=2"}}, "B": {"1.0": {}}})
    with pytest.raises(UnsatisfiableRequirements) as ei:
        resolve(make_reqs({"A": "*"}), deps)

    assert ConflictCause(
        package="B",
        versions=VersionSet.range("2", None),
        required_by="A",
        required_by_version=Version("1.0"),
    ) in ei.value.conflicts


def test_resolve_unknown_root_is_unsatisfiable():
    # F003B0002
    with pytest.raises(UnsatisfiableRequirements) as ei:
        resolve(make_reqs({"Ghost": "*"}), make_index({}))
    assert [c.package for c in ei.value.conflicts] == ["Ghost"]
    assert ei.value.conflicts[0].required_by is None


def test_resolve_round_budget():
    # F003B0003
    chain = {f"P{i}": {"1.0": {f"P{i + 1}": "*"}} for i in range(10)}
    chain["P10"] = {"1.0": {}}
    with pytest.raises(ResolutionBudgetExceeded) as ei:
        resolve(make_reqs({"P0": "*"}), make_index(chain), policy=ReconcilePolicy(max_rounds=2))
    assert ei.value.max_rounds == 2


# ------------------------------------------------------------------------------
# sanity check
# ------------------------------------------------------------------------------


BLOCKING_CASES = [
    ("direct", [ConflictCause("Q", VersionSet.any(), "P", Version("1"))], "Q"),
    ("indirect", [ConflictCause("R", VersionSet.any(), "Q", Version("2"))], "R"),
    ("self-only", [ConflictCause("P", VersionSet.any())], "P"),
]


@pytest.mark.parametrize(
    "conflicts, expected",
    [c[1:] for c in BLOCKING_CASES],
    ids=[c[0] for c in BLOCKING_CASES],
)
def test_blocking_dependency(conflicts, expected):
    # F004B0001..B0003
    assert _blocking_dependency("P", Version("1"), conflicts) == expected


def test_sanity_check_consistent_index():
    # F005B0001
    deps = make_index({"A": {"1.0": {"B": ">=1"}}, "B": {"1.0": {}, "2.0": {}}})
    assert sanity_check(deps) == []


def test_sanity_check_reports_missing_range():
    # F005B0002 (example scenario 4)
    deps = make_index(
        {
            "P": {"1.0": {"Q": ">=2.0,<3.0"}, "2.0": {"Q": ">=1.0"}},
            "Q": {"1.0": {}, "3.0": {}},
        }
    )
    assert sanity_check(deps) == [SanityProblem(package="P", version=Version("1.0"), blocking="Q")]


def test_sanity_check_skips_pairs_over_budget(caplog):
    # F005B0003
    layout = {f"P{i}": {"1.0": {f"P{i + 1}": "*"}} for i in range(10)}
    layout["P10"] = {"1.0": {}}
    layout["X"] = {"1.0": {"Ghost": "*"}}

    with caplog.at_level(logging.WARNING):
        problems = sanity_check(make_index(layout), policy=ReconcilePolicy(max_rounds=5))

    assert problems == [SanityProblem(package="X", version=Version("1.0"), blocking="Ghost")]
    assert "skipping sanity check of P0 v1.0: resolution did not finish within 5 rounds" in caplog.text
    assert "P10 v1.0" not in caplog.text
