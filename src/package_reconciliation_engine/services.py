from __future__ import annotations

from dataclasses import dataclass

from package_reconciliation_engine.cache import ArtifactCache
from package_reconciliation_engine.collaborators import (
    AvailabilitySource,
    FilesystemMutator,
    InstalledStateProbe,
    RemoteAccess,
    RequirementSource,
    Workspace,
)
from package_reconciliation_engine.internal.orchestration import (
    ArtifactCoordinator,
    PrefetchGate,
)
from package_reconciliation_engine.internal.transaction import TransactionalApplier


# -------------------------
# service wiring
# -------------------------


@dataclass(frozen=True, slots=True)
class ReconciliationServices:
    """
    The external collaborators a reconciliation engine works through.

    The engine layer should depend on this object, not on concrete implementations.
    """

    requirements: RequirementSource
    availability: AvailabilitySource
    probe: InstalledStateProbe
    remote: RemoteAccess
    mutator: FilesystemMutator


@dataclass(frozen=True, slots=True)
class RunServices:
    """
    Per-run wiring around the artifact cache opened for that run.
    """

    coordinator: ArtifactCoordinator
    gate: PrefetchGate
    applier: TransactionalApplier


def build_run_services(
    *,
    services: ReconciliationServices,
    cache: ArtifactCache,
    workspace: Workspace,
) -> RunServices:
    coordinator = ArtifactCoordinator(cache=cache, remote=services.remote)
    gate = PrefetchGate(coordinator=coordinator)
    applier = TransactionalApplier(
        mutator=services.mutator, workspace=workspace, gate=gate
    )
    return RunServices(coordinator=coordinator, gate=gate, applier=applier)
