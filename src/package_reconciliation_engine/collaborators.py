from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from packaging.version import Version

from package_reconciliation_engine.model.state import (
    AvailabilityIndex,
    FixedPackage,
    InstalledState,
    RequirementSet,
)
from package_reconciliation_engine.model.versions import VersionSet


@dataclass(frozen=True, slots=True)
class Workspace:
    """
    The directory a reconciliation run operates on.

    Passed explicitly to every collaborator call; nothing in this library changes the
    process working directory.
    """

    root: Path

    def __post_init__(self) -> None:
        object.__setattr__(self, "root", Path(self.root))


class RequirementSource(ABC):
    """
    Owns the requirement file format. The core only sees opaque before/after text and
    the parsed RequirementSet.
    """

    @abstractmethod
    def read(self, workspace: Workspace, package: str | None = None) -> str:
        """Requirement text of the workspace, or of one package's working copy."""

    @abstractmethod
    def save(self, workspace: Workspace, text: str) -> None: ...

    @abstractmethod
    def parse(self, text: str) -> RequirementSet: ...

    @abstractmethod
    def add(self, text: str, package: str, versions: VersionSet) -> str: ...

    @abstractmethod
    def remove(self, text: str, package: str) -> str: ...


class AvailabilitySource(ABC):
    @abstractmethod
    def available(self, workspace: Workspace) -> AvailabilityIndex: ...

    @abstractmethod
    def url(self, workspace: Workspace, package: str) -> str: ...

    @abstractmethod
    def refresh(self, workspace: Workspace) -> None:
        """Bring the metadata index up to date."""


class InstalledStateProbe(ABC):
    @abstractmethod
    def installed(
        self, workspace: Workspace, avail: AvailabilityIndex
    ) -> Mapping[str, Version]: ...

    @abstractmethod
    def free(self, installed: Mapping[str, Version]) -> Mapping[str, Version]: ...

    @abstractmethod
    def fixed(
        self,
        workspace: Workspace,
        avail: AvailabilityIndex,
        installed: Mapping[str, Version],
        platform_version: Version | None = None,
    ) -> Mapping[str, FixedPackage]: ...


def probe_installed_state(
    probe: InstalledStateProbe,
    workspace: Workspace,
    avail: AvailabilityIndex,
    platform_version: Version | None = None,
) -> InstalledState:
    installed = probe.installed(workspace, avail)
    return InstalledState(
        fixed=dict(probe.fixed(workspace, avail, installed, platform_version)),
        free=dict(probe.free(installed)),
    )


class RemoteAccess(ABC):
    """
    Version-control and transport operations. fetch() stores content in the
    collaborator's own content-addressed storage and reports whether it succeeded.
    """

    @abstractmethod
    def fetch(self, source: str, content_hash: str) -> bool: ...

    @abstractmethod
    def head_hash(self, workspace: Workspace, package: str) -> str: ...

    @abstractmethod
    def is_dirty(self, workspace: Workspace, package: str) -> bool: ...

    @abstractmethod
    def is_detached(self, workspace: Workspace, package: str) -> bool: ...

    @abstractmethod
    def is_working_copy(self, workspace: Workspace, package: str) -> bool: ...

    @abstractmethod
    def pull(self, workspace: Workspace, package: str) -> None: ...

    @abstractmethod
    def clone(self, workspace: Workspace, url: str, package: str) -> None: ...


class FilesystemMutator(ABC):
    """
    Materializes package content in the workspace. Each operation raises OSError (or
    a subclass) on failure.
    """

    @abstractmethod
    def materialize(self, workspace: Workspace, package: str, content_hash: str) -> None: ...

    @abstractmethod
    def rematerialize(self, workspace: Workspace, package: str, content_hash: str) -> None: ...

    @abstractmethod
    def dematerialize(self, workspace: Workspace, package: str) -> None: ...

    @abstractmethod
    def exists(self, workspace: Workspace, package: str) -> bool: ...
