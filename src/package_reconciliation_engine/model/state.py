from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterator

from packaging.version import Version
from typing_extensions import Self

from package_reconciliation_engine.internal.util.multiformat import MultiformatModelMixin
from package_reconciliation_engine.model.versions import VersionSet

_SHA1_RE = re.compile(r"^[0-9a-fA-F]{40}$")
_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")

RequirementSet = dict[str, VersionSet]


def _validate_content_hash(content_hash: str | None) -> str | None:
    if content_hash is None:
        return None
    h = content_hash.strip().lower()
    if not (_SHA1_RE.match(h) or _SHA256_RE.match(h)):
        raise ValueError(f"Invalid content hash: {content_hash!r}")
    return h


def _coerce_versions(raw: VersionSet | str) -> VersionSet:
    return raw if isinstance(raw, VersionSet) else VersionSet.parse(raw)


@dataclass(frozen=True, slots=True)
class ArtifactDescriptor(MultiformatModelMixin):
    """
    What the availability index knows about one version of one package.

    Attributes:
        requires (Mapping[str, VersionSet]): Dependency edges; every listed package must
            be present in a desired state at a version inside the edge's set.
        content_hash (str | None): Hex SHA-1 or SHA-256 identifying the exact content
            tree of this version. Normalized to lowercase.
    """

    requires: Mapping[str, VersionSet] = field(default_factory=dict, hash=False)
    content_hash: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "requires",
            {name: _coerce_versions(vs) for name, vs in self.requires.items()},
        )
        object.__setattr__(self, "content_hash", _validate_content_hash(self.content_hash))

    def to_mapping(self, *args, **kwargs) -> dict[str, Any]:
        return {
            "requires": {name: str(vs) for name, vs in sorted(self.requires.items())},
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **_: Any) -> Self:
        return cls(
            requires={
                name: VersionSet.parse(raw)
                for name, raw in (mapping.get("requires") or {}).items()
            },
            content_hash=mapping.get("content_hash"),
        )


AvailabilityIndex = Mapping[str, Mapping[Version, ArtifactDescriptor]]


def availability_from_mapping(mapping: Mapping[str, Mapping[str, Any]]) -> dict[str, dict[Version, ArtifactDescriptor]]:
    """
    Build an availability index from plain data, e.g. a parsed JSON or TOML document:

        {"pkg": {"1.0.0": {"requires": {"dep": ">=1"}, "content_hash": "..."}}}
    """
    return {
        pkg: {
            Version(raw_version): ArtifactDescriptor.from_mapping(descriptor)
            for raw_version, descriptor in versions.items()
        }
        for pkg, versions in mapping.items()
    }


def content_hash(avail: AvailabilityIndex, pkg: str, version: Version) -> str | None:
    return avail[pkg][version].content_hash


def requirements_from_mapping(mapping: Mapping[str, VersionSet | str]) -> RequirementSet:
    return {pkg: _coerce_versions(raw) for pkg, raw in mapping.items()}


@dataclass(frozen=True, slots=True)
class FixedPackage:
    """
    A locally materialized package the resolver may not move.

    A package is fixed when its working copy cannot be switched safely (modified, or
    not on a movable branch). Its own requirement list, when known, overrides the
    registry's edges for the pinned version.
    """

    version: Version
    requires: Mapping[str, VersionSet] | None = field(default=None, hash=False)
    content_hash: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.version, Version):
            object.__setattr__(self, "version", Version(self.version))
        if self.requires is not None:
            object.__setattr__(
                self,
                "requires",
                {name: _coerce_versions(vs) for name, vs in self.requires.items()},
            )
        object.__setattr__(self, "content_hash", _validate_content_hash(self.content_hash))


@dataclass(frozen=True, slots=True)
class InstalledState:
    fixed: Mapping[str, FixedPackage] = field(default_factory=dict)
    free: Mapping[str, Version] = field(default_factory=dict)

    def __post_init__(self) -> None:
        overlap = set(self.fixed).intersection(self.free)
        if overlap:
            raise ValueError(f"Packages cannot be both fixed and free: {sorted(overlap)}")

    @property
    def versions(self) -> dict[str, Version]:
        have: dict[str, Version] = dict(self.free)
        have.update({pkg: fx.version for pkg, fx in self.fixed.items()})
        return have

    def __contains__(self, pkg: object) -> bool:
        return pkg in self.fixed or pkg in self.free


@dataclass(frozen=True, slots=True)
class DesiredState:
    """
    The resolver's assignment of one version per required package.

    dependencies records, for each selected package, the selected packages it
    declared edges on.
    """

    versions: Mapping[str, Version]
    dependencies: Mapping[str, frozenset[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        missing = {
            dep
            for deps in self.dependencies.values()
            for dep in deps
            if dep not in self.versions
        }
        if missing:
            raise ValueError(f"Dependencies refer to unselected packages: {sorted(missing)}")

    def __getitem__(self, pkg: str) -> Version:
        return self.versions[pkg]

    def __contains__(self, pkg: object) -> bool:
        return pkg in self.versions

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.versions))

    def __len__(self) -> int:
        return len(self.versions)


@dataclass(frozen=True, slots=True)
class Diff:
    installs: tuple[tuple[str, Version], ...] = ()
    updates: tuple[tuple[str, Version, Version], ...] = ()
    removes: tuple[tuple[str, Version], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.installs or self.updates or self.removes)


# -------------------------
# planned actions
# -------------------------


@dataclass(frozen=True, slots=True)
class InstallAction:
    package: str
    version: Version
    content_hash: str

    def describe(self) -> str:
        return f"Installing {self.package} v{self.version}"


@dataclass(frozen=True, slots=True)
class UpdateAction:
    package: str
    from_version: Version
    to_version: Version
    from_hash: str
    to_hash: str

    @property
    def is_upgrade(self) -> bool:
        return self.from_version <= self.to_version

    def describe(self) -> str:
        up = "Up" if self.is_upgrade else "Down"
        return f"{up}grading {self.package}: v{self.from_version} => v{self.to_version}"


@dataclass(frozen=True, slots=True)
class RemoveAction:
    package: str
    version: Version
    content_hash: str

    def describe(self) -> str:
        return f"Removing {self.package} v{self.version}"


PlannedAction = InstallAction | UpdateAction | RemoveAction


@dataclass(frozen=True, slots=True)
class ReconciliationPlan:
    """
    A Diff with the content hash of every version it touches.

    Update and remove actions carry the hash of what is materialized now, so a
    compensation can restore it exactly.
    """

    installs: tuple[InstallAction, ...] = ()
    updates: tuple[UpdateAction, ...] = ()
    removes: tuple[RemoveAction, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.installs or self.updates or self.removes)

    @property
    def actions(self) -> tuple[PlannedAction, ...]:
        return (*self.installs, *self.updates, *self.removes)

    def __len__(self) -> int:
        return len(self.installs) + len(self.updates) + len(self.removes)

    def required_hashes(self) -> list[tuple[str, Version, str]]:
        needed: list[tuple[str, Version, str]] = []
        for a in self.installs:
            needed.append((a.package, a.version, a.content_hash))
        for u in self.updates:
            needed.append((u.package, u.from_version, u.from_hash))
            needed.append((u.package, u.to_version, u.to_hash))
        for r in self.removes:
            needed.append((r.package, r.version, r.content_hash))
        return needed

    def summary(self) -> list[str]:
        return [a.describe() for a in self.actions]
