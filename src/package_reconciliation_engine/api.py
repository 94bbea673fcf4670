from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from packaging.version import Version

from package_reconciliation_engine.collaborators import (
    Workspace,
    probe_installed_state,
)
from package_reconciliation_engine.internal.cache_factory import open_cache
from package_reconciliation_engine.internal.orchestration import prefetch_all_versions
from package_reconciliation_engine.internal.query import (
    dependency_graph,
    diff,
    effective_requirements,
    unavailable_requirements,
)
from package_reconciliation_engine.internal.resolvelib import resolve as rl_resolve
from package_reconciliation_engine.internal.resolvelib import sanity_check
from package_reconciliation_engine.model.reconciliation import (
    MetadataInconsistency,
    MissingArtifact,
    MissingArtifacts,
    ReconcileConfig,
    ReconcileStatus,
    ReconciliationResult,
    UnknownPackage,
    UnsatisfiableRequirements,
    WorkingCopyExists,
)
from package_reconciliation_engine.model.state import (
    AvailabilityIndex,
    Diff,
    InstallAction,
    InstalledState,
    ReconciliationPlan,
    RemoveAction,
    RequirementSet,
    UpdateAction,
    content_hash,
)
from package_reconciliation_engine.model.versions import VersionSet
from package_reconciliation_engine.services import (
    ReconciliationServices,
    RunServices,
    build_run_services,
)

NOTHING_TO_BE_DONE = "Nothing to be done."
NO_CHANGES = "No packages to install, update or remove."

_URL_PACKAGE_RE = re.compile(r"([\w.-]+?)(?:\.git)?/*$")


def package_name_from_url(url: str) -> str:
    """
    Derive a package name from the last path segment of a clone URL.

    Examples:
        https://example.org/org/Widgets.git -> Widgets
        git@example.org:org/widgets/ -> widgets
    """
    m = _URL_PACKAGE_RE.search(url.replace(":", "/"))
    if m is None:
        raise ValueError(f"cannot derive a package name from url {url!r}")
    return m.group(1)


def _nothing_to_do(message: str, want=None) -> ReconciliationResult:
    logging.info(message)
    return ReconciliationResult(
        status=ReconcileStatus.NOTHING_TO_DO, message=message, want=want
    )


@dataclass(kw_only=True, frozen=True, slots=True)
class ReconciliationEngine:
    """
    Brings a workspace's materialized packages in line with its declared requirements.

    Every command runs the same pipeline: effective requirements and the pruned
    dependency graph, resolution, diff against the installed state, a hashed plan,
    then the prefetch gate and the transactional apply. One artifact cache is opened
    per command and closed when it returns.

    Attributes:
        services (ReconciliationServices): External collaborators.
        workspace (Workspace): The directory all collaborators operate on.
        config (ReconcileConfig): Cache selection and resolution policy.
    """

    services: ReconciliationServices
    workspace: Workspace
    config: ReconcileConfig = field(default_factory=ReconcileConfig)

    @classmethod
    def from_config_file(
        cls,
        path: str | Path,
        *,
        services: ReconciliationServices,
        workspace: Workspace,
    ) -> ReconciliationEngine:
        return cls(
            services=services,
            workspace=workspace,
            config=ReconcileConfig.from_file(path),
        )

    @contextmanager
    def _run(self) -> Iterator[RunServices]:
        with open_cache(
            cache_id=self.config.cache_id,
            config=self.config.cache_config,
            workspace=self.workspace,
        ) as cache:
            yield build_run_services(
                services=self.services, cache=cache, workspace=self.workspace
            )

    def _url_for(self, package: str) -> str:
        return self.services.availability.url(self.workspace, package)

    def _declared_requirements(self) -> RequirementSet:
        src = self.services.requirements
        return src.parse(src.read(self.workspace))

    # -------------------------
    # planning
    # -------------------------

    def _plan(self, d: Diff, deps: AvailabilityIndex) -> ReconciliationPlan:
        ws = self.workspace
        remote = self.services.remote
        unhashed: list[MissingArtifact] = []

        def target_hash(pkg: str, version: Version) -> str:
            h = content_hash(deps, pkg, version)
            if h is None:
                unhashed.append(MissingArtifact(package=pkg, version=version, content_hash=None))
                return ""
            return h

        installs = tuple(
            InstallAction(package=pkg, version=v, content_hash=target_hash(pkg, v))
            for pkg, v in d.installs
        )
        updates = tuple(
            UpdateAction(
                package=pkg,
                from_version=v1,
                to_version=v2,
                from_hash=remote.head_hash(ws, pkg),
                to_hash=target_hash(pkg, v2),
            )
            for pkg, v1, v2 in d.updates
        )
        removes = tuple(
            RemoveAction(package=pkg, version=v, content_hash=remote.head_hash(ws, pkg))
            for pkg, v in d.removes
        )

        if unhashed:
            raise MissingArtifacts(unhashed)

        return ReconciliationPlan(installs=installs, updates=updates, removes=removes)

    def _reconcile(
        self,
        run: RunServices,
        reqs: RequirementSet,
        avail: AvailabilityIndex,
        state: InstalledState | None = None,
    ) -> ReconciliationResult:
        if state is None:
            state = probe_installed_state(self.services.probe, self.workspace, avail)

        effective = effective_requirements(reqs, state.fixed)
        deps = dependency_graph(avail, state.fixed)

        unavailable = unavailable_requirements(effective, deps)
        if unavailable:
            raise UnsatisfiableRequirements(
                "; ".join(
                    f"{pkg} has no version compatible with fixed requirements"
                    for pkg in unavailable
                )
            )

        have = state.versions
        want = rl_resolve(effective, deps, preferred=have, policy=self.config.policy)

        d = diff(have, want.versions)
        if d.is_empty:
            return _nothing_to_do(NO_CHANGES, want)

        plan = self._plan(d, deps)
        run.applier.execute(plan, self._url_for)

        return ReconciliationResult(
            status=ReconcileStatus.APPLIED,
            message=f"{len(plan)} package change(s) applied.",
            plan=plan,
            want=want,
        )

    # -------------------------
    # commands
    # -------------------------

    def _edit(
        self, package: str, transform: Callable[[str], str]
    ) -> ReconciliationResult:
        ws = self.workspace
        src = self.services.requirements

        text = src.read(ws)
        reqs = src.parse(text)
        avail = self.services.availability.available(ws)
        if package not in avail and package not in reqs:
            raise UnknownPackage(package)

        new_text = transform(text)
        if new_text == text:
            return _nothing_to_do(NOTHING_TO_BE_DONE)

        new_reqs = src.parse(new_text)
        if new_reqs != reqs:
            with self._run() as run:
                result = self._reconcile(run, new_reqs, avail)
        else:
            result = _nothing_to_do(NO_CHANGES)

        src.save(ws, new_text)
        logging.info("Requirements updated.")
        return result

    def add(
        self, package: str, versions: VersionSet | str | None = None
    ) -> ReconciliationResult:
        """
        Declare a requirement on package (any version by default) and reconcile.

        Raises:
            UnknownPackage: If package is neither available nor already required.
        """
        if versions is None:
            vs = VersionSet.any()
        elif isinstance(versions, str):
            vs = VersionSet.parse(versions)
        else:
            vs = versions
        src = self.services.requirements
        return self._edit(package, lambda text: src.add(text, package, vs))

    def rm(self, package: str) -> ReconciliationResult:
        """
        Drop the requirement on package and reconcile; packages nothing else needs
        are removed.
        """
        src = self.services.requirements
        return self._edit(package, lambda text: src.remove(text, package))

    def clone(self, url: str, package: str | None = None) -> ReconciliationResult:
        """
        Clone a working copy into the workspace and reconcile its requirements.

        Raises:
            WorkingCopyExists: If something already exists at the package path.
        """
        ws = self.workspace
        pkg = package or package_name_from_url(url)
        mutator = self.services.mutator

        if mutator.exists(ws, pkg):
            raise WorkingCopyExists(pkg)

        try:
            self.services.remote.clone(ws, url, pkg)
        except BaseException:
            logging.debug(f"clone of {url} failed, removing partial working copy {pkg}")
            try:
                if mutator.exists(ws, pkg):
                    mutator.dematerialize(ws, pkg)
            except Exception as e:
                logging.warning(f"could not remove partial working copy {pkg}: {e}")
            raise

        src = self.services.requirements
        if not src.parse(src.read(ws, pkg)):
            return _nothing_to_do(NOTHING_TO_BE_DONE)

        logging.info("Computing changes...")
        return self.resolve()

    def update(self) -> ReconciliationResult:
        """
        Refresh metadata, warm the cache, pull movable fixed working copies, then
        reconcile against the declared requirements.

        A fixed working copy that is dirty or detached is left alone, and a failing
        pull is logged and skipped.
        """
        ws = self.workspace
        remote = self.services.remote

        logging.info("Updating metadata...")
        self.services.availability.refresh(ws)
        avail = self.services.availability.available(ws)

        with self._run() as run:
            state = probe_installed_state(self.services.probe, ws, avail)
            prefetch_all_versions(run.coordinator, avail, state.free, self._url_for)

            for pkg in sorted(state.fixed):
                if not remote.is_working_copy(ws, pkg):
                    continue
                if remote.is_detached(ws, pkg) or remote.is_dirty(ws, pkg):
                    logging.debug(f"leaving {pkg} as is (dirty or detached)")
                    continue
                logging.info(f"Updating {pkg}...")
                try:
                    remote.pull(ws, pkg)
                except Exception as e:
                    logging.warning(f"update of {pkg} failed: {type(e).__name__}: {e}")

            prefetch_all_versions(run.coordinator, avail, state.fixed, self._url_for)

            # pulls may have moved fixed working copies
            state = probe_installed_state(self.services.probe, ws, avail)

            logging.info("Computing changes...")
            return self._reconcile(run, self._declared_requirements(), avail, state)

    def resolve(self, reqs: Mapping[str, VersionSet] | None = None) -> ReconciliationResult:
        """
        Reconcile the workspace against reqs, or against its declared requirements.
        """
        ws = self.workspace
        requirements = dict(reqs) if reqs is not None else self._declared_requirements()
        avail = self.services.availability.available(ws)
        with self._run() as run:
            return self._reconcile(run, requirements, avail)

    # -------------------------
    # metadata sanity
    # -------------------------

    def inspect_metadata(
        self, platform_version: Version | str | None = None
    ) -> MetadataInconsistency:
        """
        Report every available (package, version) whose requirements cannot be met,
        given the fixed packages of the workspace. Offline; nothing is mutated.
        """
        ws = self.workspace
        if isinstance(platform_version, str):
            platform_version = Version(platform_version)

        avail = self.services.availability.available(ws)
        state = probe_installed_state(self.services.probe, ws, avail, platform_version)
        deps = dependency_graph(avail, state.fixed)
        return MetadataInconsistency(
            problems=tuple(sanity_check(deps, policy=self.config.policy))
        )

    def check_metadata(self, platform_version: Version | str | None = None) -> bool:
        report = self.inspect_metadata(platform_version)
        if report:
            logging.warning(report.report())
            return False
        return True
