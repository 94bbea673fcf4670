from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from functools import partial

from package_reconciliation_engine.collaborators import FilesystemMutator, Workspace
from package_reconciliation_engine.internal.orchestration import PrefetchGate
from package_reconciliation_engine.model.reconciliation import (
    ApplyFailure,
    TransactionStateError,
)
from package_reconciliation_engine.model.state import (
    InstallAction,
    PlannedAction,
    ReconciliationPlan,
    RemoveAction,
    UpdateAction,
)

Compensation = Callable[[], None]


class TransactionState(Enum):
    PLANNING = "planning"
    PREFETCHING = "prefetching"
    APPLYING = "applying"
    ROLLING_BACK = "rolling_back"
    COMMITTED = "committed"
    ABORTED = "aborted"


_TRANSITIONS: dict[TransactionState, frozenset[TransactionState]] = {
    TransactionState.PLANNING: frozenset(
        {TransactionState.PREFETCHING, TransactionState.COMMITTED}
    ),
    TransactionState.PREFETCHING: frozenset(
        {TransactionState.APPLYING, TransactionState.ABORTED}
    ),
    TransactionState.APPLYING: frozenset(
        {TransactionState.COMMITTED, TransactionState.ROLLING_BACK}
    ),
    TransactionState.ROLLING_BACK: frozenset({TransactionState.ABORTED}),
    TransactionState.COMMITTED: frozenset(),
    TransactionState.ABORTED: frozenset(),
}


def _rollback_message(action: PlannedAction) -> str:
    match action:
        case InstallAction():
            return f"Rolling back install of {action.package}"
        case UpdateAction():
            return (
                f"Rolling back {action.package} from v{action.to_version} "
                f"to v{action.from_version}"
            )
        case RemoveAction():
            return f"Rolling back deleted {action.package} to v{action.version}"
        case _:
            raise TypeError(f"unsupported action: {type(action).__name__}")


@dataclass(frozen=True, slots=True)
class AppliedStep:
    action: PlannedAction
    compensation: Compensation = field(compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class CompensationFailure:
    step: AppliedStep
    error: Exception

    def __str__(self) -> str:
        return f"{_rollback_message(self.step.action)}: {type(self.error).__name__}: {self.error}"


class Transaction:
    """
    Log of applied steps for one apply phase.

    Each successful step is recorded with the compensation that undoes it. The log
    is discarded on commit and consumed in reverse on rollback.
    """

    def __init__(self) -> None:
        self._state = TransactionState.PLANNING
        self._log: list[AppliedStep] = []

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def steps(self) -> tuple[AppliedStep, ...]:
        return tuple(self._log)

    def advance(self, target: TransactionState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise TransactionStateError(
                f"illegal transaction transition {self._state.value} -> {target.value}"
            )
        logging.debug(f"transaction {self._state.value} -> {target.value}")
        self._state = target

    def record(self, step: AppliedStep) -> None:
        if self._state is not TransactionState.APPLYING:
            raise TransactionStateError(
                f"cannot record a step while {self._state.value}"
            )
        self._log.append(step)

    def commit(self) -> None:
        self.advance(TransactionState.COMMITTED)
        self._log.clear()

    def rollback(self) -> list[CompensationFailure]:
        """
        Run every recorded compensation, newest first, and abort the transaction.

        A compensation that raises does not stop the others; its error is returned.
        """
        self.advance(TransactionState.ROLLING_BACK)
        failures: list[CompensationFailure] = []

        for step in reversed(self._log):
            logging.info(_rollback_message(step.action))
            try:
                step.compensation()
            except Exception as e:
                failure = CompensationFailure(step=step, error=e)
                logging.warning(f"compensation failed: {failure}")
                failures.append(failure)

        self._log.clear()
        self.advance(TransactionState.ABORTED)
        return failures


@dataclass(frozen=True, slots=True)
class TransactionalApplier:
    """
    Applies a plan all-or-nothing: prefetch, then installs, updates and removes in
    that order, rolling everything back if any step fails.
    """

    mutator: FilesystemMutator
    workspace: Workspace
    gate: PrefetchGate

    def _perform(self, action: PlannedAction) -> Compensation:
        ws = self.workspace
        match action:
            case InstallAction():
                self.mutator.materialize(ws, action.package, action.content_hash)
                return partial(self.mutator.dematerialize, ws, action.package)
            case UpdateAction():
                self.mutator.rematerialize(ws, action.package, action.to_hash)
                return partial(
                    self.mutator.rematerialize, ws, action.package, action.from_hash
                )
            case RemoveAction():
                self.mutator.dematerialize(ws, action.package)
                return partial(
                    self.mutator.materialize, ws, action.package, action.content_hash
                )
            case _:
                raise TypeError(f"unsupported action: {type(action).__name__}")

    def execute(
        self, plan: ReconciliationPlan, url_for: Callable[[str], str]
    ) -> Transaction:
        """
        Run the plan through a fresh transaction and return it in its final state.

        Raises:
            MissingArtifacts: From the prefetch gate; nothing has been mutated.
            ApplyFailure: A step failed and the applied steps were rolled back.
        """
        txn = Transaction()
        if plan.is_empty:
            txn.commit()
            return txn

        txn.advance(TransactionState.PREFETCHING)
        try:
            self.gate.secure(plan, url_for)
        except BaseException:
            txn.advance(TransactionState.ABORTED)
            raise

        txn.advance(TransactionState.APPLYING)
        try:
            for action in plan.actions:
                logging.info(action.describe())
                compensation = self._perform(action)
                txn.record(AppliedStep(action=action, compensation=compensation))
        except BaseException as exc:
            failures = txn.rollback()
            if not isinstance(exc, Exception):
                raise
            raise ApplyFailure(exc, compensation_failures=failures) from exc

        txn.commit()
        return txn
