from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Collection, Protocol

from packaging.version import Version
from resolvelib import BaseReporter
from resolvelib.resolvers import Criterion
from resolvelib.structs import RequirementInformation, State

from package_reconciliation_engine.model.state import ArtifactDescriptor
from package_reconciliation_engine.model.versions import VersionSet


class Preference(Protocol):
    def __lt__(self, __other: Any) -> bool: ...


@dataclass(frozen=True, slots=True, kw_only=True)
class ResolverRequirement:
    name: str
    versions: VersionSet

    def __str__(self) -> str:
        return f"{self.name} {self.versions}"


@dataclass(frozen=True, slots=True, kw_only=True)
class ResolverCandidate:
    name: str
    version: Version
    descriptor: ArtifactDescriptor = field(compare=False, repr=False)

    def __str__(self) -> str:
        return f"{self.name} v{self.version}"


class ReconciliationReporter(BaseReporter[ResolverRequirement, ResolverCandidate, str]):
    def starting(self) -> None:
        logging.log(logging.DEBUG, "Starting resolution...")

    def starting_round(self, index: int) -> None:
        logging.log(logging.DEBUG, f"Starting round {index}")

    def ending_round(self, index: int, state: State[ResolverRequirement, ResolverCandidate, str]) -> None:
        logging.log(logging.DEBUG, f"Ending round {index}")

    def ending(self, state) -> None:
        logging.log(logging.DEBUG, "Resolution complete.")

    def adding_requirement(self, requirement, parent) -> None:
        logging.log(logging.DEBUG, f"Adding requirement: {requirement} (parent={parent})")

    def pinning(self, candidate) -> None:
        logging.log(logging.DEBUG, f"Pinning candidate: {candidate}")

    def rejecting_candidate(
            self,
            criterion: Criterion[ResolverRequirement, ResolverCandidate],
            candidate: ResolverCandidate) -> None:
        logging.log(logging.DEBUG, f"Rejecting candidate: {candidate}")

    def resolving_conflicts(
            self,
            causes: Collection[RequirementInformation[ResolverRequirement, ResolverCandidate]]) -> None:
        logging.log(logging.DEBUG, f"Resolving conflicts: {[str(c.requirement) for c in causes]}")
