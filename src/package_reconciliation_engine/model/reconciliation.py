from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from packaging.version import Version
from typing_extensions import Self

from package_reconciliation_engine.internal.util.multiformat import MultiformatModelMixin
from package_reconciliation_engine.model.state import DesiredState, ReconciliationPlan
from package_reconciliation_engine.model.versions import VersionSet

if TYPE_CHECKING:
    from package_reconciliation_engine.internal.transaction import CompensationFailure

DEFAULT_MAX_ROUNDS = 10_000


class ChurnPolicy(Enum):
    MAXIMIZE_VERSIONS = "maximize_versions"  # highest candidate first, always
    MINIMIZE_CHANGES = "minimize_changes"  # installed version first, then highest


class ReconcileStatus(Enum):
    NOTHING_TO_DO = "nothing_to_do"
    APPLIED = "applied"


@dataclass(kw_only=True, frozen=True, slots=True)
class ReconcilePolicy(MultiformatModelMixin):
    """
    Knobs that influence resolution but are not facts about the workspace.

    Attributes:
        churn_policy (ChurnPolicy): Candidate ordering used when several assignments
            satisfy every constraint.
        max_rounds (int): Upper bound on resolver rounds before the search gives up
            with ResolutionBudgetExceeded.
    """

    churn_policy: ChurnPolicy = ChurnPolicy.MAXIMIZE_VERSIONS
    max_rounds: int = DEFAULT_MAX_ROUNDS

    def __post_init__(self) -> None:
        if self.max_rounds < 1:
            raise ValueError(f"max_rounds must be positive, got {self.max_rounds}")

    def to_mapping(self, *args: Any, **kwargs: Any) -> Mapping[str, Any]:
        return {
            "churn_policy": self.churn_policy.value,
            "max_rounds": self.max_rounds,
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], *args: Any, **kwargs: Any) -> Self:
        return cls(
            churn_policy=ChurnPolicy(
                mapping.get("churn_policy", ChurnPolicy.MAXIMIZE_VERSIONS.value)
            ),
            max_rounds=int(mapping.get("max_rounds", DEFAULT_MAX_ROUNDS)),
        )


@dataclass(kw_only=True, frozen=True, slots=True)
class ReconcileConfig(MultiformatModelMixin):
    """
    Run configuration, loadable from a .toml or .json file via from_file().

    Attributes:
        cache_id (str | None): Artifact cache implementation to open for each run. None
            selects the default (ephemeral) cache.
        cache_config (Mapping[str, Any] | None): Passed to the selected cache factory.
        policy (ReconcilePolicy): Resolution policy.
    """

    cache_id: str | None = None
    cache_config: Mapping[str, Any] | None = None
    policy: ReconcilePolicy = field(default_factory=ReconcilePolicy)

    def to_mapping(self, *args: Any, **kwargs: Any) -> Mapping[str, Any]:
        return {
            "cache_id": self.cache_id,
            "cache_config": dict(self.cache_config) if self.cache_config is not None else None,
            "policy": self.policy.to_mapping(),
        }

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], *args: Any, **kwargs: Any) -> Self:
        cache_config = mapping.get("cache_config")
        if cache_config is not None and not isinstance(cache_config, Mapping):
            raise ValueError(
                f"cache_config must be a mapping, got {type(cache_config).__name__}"
            )
        return cls(
            cache_id=mapping.get("cache_id"),
            cache_config=dict(cache_config) if cache_config is not None else None,
            policy=ReconcilePolicy.from_mapping(mapping.get("policy", {})),
        )


@dataclass(frozen=True, slots=True)
class ReconciliationResult:
    status: ReconcileStatus
    message: str = ""
    plan: ReconciliationPlan = field(default_factory=ReconciliationPlan)
    want: DesiredState | None = None

    @property
    def changed(self) -> bool:
        return self.status is ReconcileStatus.APPLIED

    def summary(self) -> list[str]:
        if self.status is ReconcileStatus.NOTHING_TO_DO:
            return [self.message] if self.message else []
        return self.plan.summary()


@dataclass(frozen=True, slots=True)
class ConflictCause:
    """
    One constraint implicated in a failed resolution.

    required_by is None for a root (declared or pinned) requirement.
    """

    package: str
    versions: VersionSet
    required_by: str | None = None
    required_by_version: Version | None = None

    def __str__(self) -> str:
        origin = (
            "requirements"
            if self.required_by is None
            else f"{self.required_by} v{self.required_by_version}"
        )
        return f"{self.package} {self.versions} (required by {origin})"


@dataclass(frozen=True, slots=True)
class MissingArtifact:
    package: str
    version: Version
    content_hash: str | None

    def __str__(self) -> str:
        short = self.content_hash[:10] if self.content_hash else "no hash"
        return f"{self.package} v{self.version} [{short}]"


@dataclass(frozen=True, slots=True)
class SanityProblem:
    package: str
    version: Version
    blocking: str

    def __str__(self) -> str:
        return (
            f"{self.package} v{self.version} : no valid versions exist for package "
            f"{self.blocking}"
        )


@dataclass(frozen=True, slots=True)
class MetadataInconsistency:
    """
    Result of an offline metadata sanity check. Truthy when problems were found.
    """

    problems: tuple[SanityProblem, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.problems)

    def report(self) -> str:
        lines = ["Packages with unsatisfiable requirements found:"]
        lines.extend(f"    {p}" for p in self.problems)
        return "\n".join(lines)


class ReconciliationError(Exception):
    """
    Base error type for reconciliation failures.
    """


class UnknownPackage(ReconciliationError):
    def __init__(self, package: str):
        super().__init__(f"unknown package {package}")
        self.package = package


class WorkingCopyExists(ReconciliationError):
    def __init__(self, package: str):
        super().__init__(f"{package} already exists")
        self.package = package


class ConflictingFixedRequirement(ReconciliationError):
    """
    Raised when a fixed package's pinned version falls outside its declared requirement.
    """

    def __init__(self, package: str, *, requirement: VersionSet, pinned: Version):
        super().__init__(
            f"{package} is fixed at v{pinned}, which conflicts with requirement {requirement}"
        )
        self.package = package
        self.requirement = requirement
        self.pinned = pinned


class UnsatisfiableRequirements(ReconciliationError):
    """
    Raised when no assignment satisfies every constraint.

    conflicts holds the constraints the resolver was left with when it gave up; each
    names the package, the version set it could not meet, and who imposed it.
    """

    def __init__(self, message: str, *, conflicts: Sequence[ConflictCause] = ()):
        self.conflicts = tuple(conflicts)
        detail = "".join(f"\n  {c}" for c in self.conflicts)
        super().__init__(f"{message}{detail}")


class ResolutionBudgetExceeded(ReconciliationError):
    def __init__(self, max_rounds: int):
        super().__init__(f"resolution did not finish within {max_rounds} rounds")
        self.max_rounds = max_rounds


class MissingArtifacts(ReconciliationError):
    """
    Raised by the prefetch gate before any mutation when content cannot be secured.
    """

    def __init__(self, missing: Sequence[MissingArtifact]):
        self.missing = tuple(missing)
        lines = "".join(f"  {m}\n" for m in self.missing)
        super().__init__(
            f"unfound package versions (possible metadata misconfiguration):\n{lines}"
        )


class ApplyFailure(ReconciliationError):
    """
    Raised after a failed apply phase has been rolled back.

    cause is the error that interrupted the apply phase. compensation_failures lists
    rollback steps that themselves failed; when it is non-empty the materialized state
    may match neither the initial nor the desired state.
    """

    def __init__(
        self,
        cause: BaseException,
        *,
        compensation_failures: Sequence[CompensationFailure] = (),
    ):
        self.cause = cause
        self.compensation_failures = tuple(compensation_failures)
        msg = f"apply failed and was rolled back: {type(cause).__name__}: {cause}"
        if self.compensation_failures:
            msg += f" ({len(self.compensation_failures)} compensation(s) failed; state may have drifted)"
        super().__init__(msg)

    @property
    def rollback_complete(self) -> bool:
        return not self.compensation_failures


class TransactionStateError(ReconciliationError):
    pass
