"""Run orchestration: the run state machine, locking and rollback."""

import asyncio
from typing import Any

from runguard.config import EngineConfig
from runguard.core.exceptions import (
    ActionError,
    GateRejected,
    GateTimeout,
    InvalidTransition,
    PreconditionFailure,
    ProcedureConflict,
    ProcedureNotFound,
    ResourceBusy,
    RollbackFailure,
    RunGuardError,
)
from runguard.core.logging import StructuredLogger
from runguard.engine.actions import ActionRegistry
from runguard.engine.audit import AuditLog
from runguard.engine.backoff import Clock, Sleep, default_clock, default_sleep
from runguard.engine.executor import StepExecutor, StepSignal
from runguard.engine.gates import GateEvaluator
from runguard.engine.registry import ProcedureRegistry
from runguard.engine.schema import (
    Procedure,
    RollbackState,
    Run,
    RunStatus,
    Step,
    StepPhase,
    can_transition,
    utcnow,
)
from runguard.engine.store import CheckpointStore

logger = StructuredLogger(__name__)

# Errors that fail a step (and therefore the run) rather than the command
STEP_ERRORS = (ActionError, GateTimeout, GateRejected)


class RunOrchestrator:
    """Drive runs of registered procedures from start to a terminal state.

    Every state change is checkpointed before the next one begins, so any run
    can be picked up again with :meth:`resume` after the process dies. A run
    holds the lock on its resource key from start until it reaches
    ``completed``, ``rolled_back`` or ``aborted``.
    """

    def __init__(
        self,
        registry: ProcedureRegistry,
        actions: ActionRegistry,
        store: CheckpointStore,
        audit: AuditLog,
        config: EngineConfig | None = None,
        sleep: Sleep = default_sleep,
        clock: Clock = default_clock,
        operator: str | None = None,
    ):
        """Initialize orchestrator.

        Args:
            registry: Procedures runs can be started from
            actions: Action implementations steps and gates refer to
            store: Durable run checkpoints and resource locks
            audit: Append-only audit trail
            config: Engine configuration (retry, gate and lock policy)
            sleep: Awaitable sleep, replaced in tests
            clock: Monotonic clock, replaced in tests
            operator: Identity recorded on new runs
        """
        self._registry = registry
        self._actions = actions
        self._store = store
        self._audit = audit
        self._config = config or EngineConfig()
        self._sleep = sleep
        self._clock = clock
        self._operator = operator

        self._gates = GateEvaluator(actions, audit, self._config.gate, sleep, clock)
        self._executor = StepExecutor(actions, self._gates, store, audit, self._config.retry, sleep)

    @property
    def registry(self) -> ProcedureRegistry:
        return self._registry

    @property
    def store(self) -> CheckpointStore:
        return self._store

    @property
    def audit(self) -> AuditLog:
        return self._audit

    # ------------------------------------------------------------------
    # Operations

    async def start(self, procedure_id: str, resource_key: str | None = None) -> Run:
        """Start a new run and drive it as far as it can go.

        Args:
            procedure_id: Registered procedure to run
            resource_key: Target resource; defaults to the procedure's own

        Returns:
            The run, in whatever state it stopped

        Raises:
            ProcedureNotFound: no procedure has that id
            PreconditionFailure: no resource key was given or defined
            ResourceBusy: another active run holds the resource key
        """
        procedure = self._registry.get(procedure_id)
        key = resource_key or procedure.resource_key
        if not key:
            raise PreconditionFailure(
                f"Procedure '{procedure_id}' defines no resource key; pass one explicitly"
            )

        run = Run(
            procedure_id=procedure.id,
            resource_key=key,
            procedure_digest=procedure.digest,
            operator=self._operator or "unknown",
        )
        await self._audit.record_async(
            run.id,
            "run_started",
            procedure=procedure.id,
            version=procedure.version,
            resource_key=key,
            digest=run.procedure_digest,
        )
        await self._store.save_async(run)
        log = logger.bind(run_id=run.id, procedure=procedure.id)
        log.info("Starting run", resource=key)

        try:
            await self._acquire(run)
        except ResourceBusy as e:
            await self._audit.record_async(run.id, "lock_denied", resource_key=key, holder=e.holder)
            run.error_kind = e.kind
            run.error_message = e.message
            await self._transition(run, RunStatus.ABORTED)
            raise

        await self._transition(run, RunStatus.RUNNING)
        await self._drive(run, procedure)
        return run

    async def confirm(self, run_id: str, token: str) -> Run:
        """Satisfy the human gate a run is waiting on.

        A token that is not exactly the gate's confirmation text is rejected
        and the run keeps waiting, unless the gate's ``max_rejections`` budget
        is used up, in which case the run fails.

        Raises:
            InvalidTransition: the run is not waiting on a human gate
            GateRejected: the token did not match and the run is still waiting
            ProcedureConflict: the definition changed since the run started
        """
        run = self._store.load(run_id)
        if run.status != RunStatus.WAITING_ON_GATE:
            raise InvalidTransition(
                f"Run {run.id} is not waiting on a gate",
                current=run.status.value,
                requested="confirm",
            )

        procedure = self._procedure_for(run)
        step = procedure.steps[run.step_index]
        gate = step.gate_for(run.phase)
        if gate is None or not gate.is_human:
            raise InvalidTransition(
                f"Step '{step.id}' of run {run.id} has no human gate pending",
                current=run.status.value,
                requested="confirm",
            )

        try:
            await self._gates.check_human(
                gate,
                run.id,
                step.id,
                token,
                run.phase.value,
                previous_rejections=run.gate_rejections,
            )
        except GateRejected as e:
            run.gate_rejections = e.rejections
            if gate.max_rejections and e.rejections >= gate.max_rejections:
                await self._executor.fail(run, step, None, e)
                await self._fail(run, procedure, step, e)
                return run
            await self._store.save_async(run)
            raise

        await self._reattach(run)
        run.gate_rejections = 0
        await self._transition(run, RunStatus.RUNNING)

        if run.phase == StepPhase.ENTRY_GATE:
            run.phase = StepPhase.ACTION
            await self._store.save_async(run)
        else:
            await self._executor.complete(run, step)
            await self._advance(run)

        await self._drive(run, procedure)
        return run

    async def resume(self, run_id: str) -> Run:
        """Continue a run from its last checkpoint.

        A completed action is never invoked again: the run picks up at the
        gate or step after it. A non-retryable action that may have been in
        progress when the process died fails the run instead of being
        repeated.

        Raises:
            InvalidTransition: the run has already terminated
            ProcedureConflict: the definition changed since the run started
        """
        run = self._store.load(run_id)
        if run.is_terminal:
            raise InvalidTransition(
                f"Run {run.id} has already finished ({run.status.value})",
                current=run.status.value,
                requested="resume",
            )

        procedure = self._procedure_for(run)
        await self._audit.record_async(
            run.id,
            "run_resumed",
            status=run.status.value,
            step_index=run.step_index,
            phase=run.phase.value,
        )
        logger.info("Resuming run", run_id=run.id, status=run.status.value, step=run.step_index)

        if run.status == RunStatus.PENDING:
            await self._acquire(run)
            await self._transition(run, RunStatus.RUNNING)
            await self._drive(run, procedure)
        elif run.status == RunStatus.RUNNING:
            await self._reattach(run)
            await self._drive(run, procedure)
        elif run.status == RunStatus.WAITING_ON_GATE:
            await self._reattach(run)
            await self._audit.record_async(
                run.id,
                "gate_waiting",
                procedure.steps[run.step_index].id,
                gate=run.phase.value,
                resumed=True,
            )
        elif run.status == RunStatus.FAILED:
            if self._config.auto_rollback:
                await self._reattach(run)
                await self._rollback(run, procedure)
        elif run.status == RunStatus.ROLLING_BACK:
            await self._reattach(run)
            await self._rollback(run, procedure)

        return run

    async def rollback(self, run_id: str) -> Run:
        """Roll back a failed run on operator request."""
        run = self._store.load(run_id)
        if run.status != RunStatus.FAILED:
            raise InvalidTransition(
                f"Run {run.id} can only be rolled back after it failed",
                current=run.status.value,
                requested=RunStatus.ROLLING_BACK.value,
            )
        procedure = self._procedure_for(run)
        await self._reattach(run)
        await self._rollback(run, procedure)
        return run

    async def abort(self, run_id: str, reason: str | None = None) -> Run:
        """Abort a run that is waiting on a gate or has failed.

        Aborting a failed run declines its rollback. Runs that are actively
        executing steps cannot be aborted.

        Raises:
            InvalidTransition: the run is running, rolling back or finished
        """
        run = self._store.load(run_id)
        if run.status not in (RunStatus.PENDING, RunStatus.WAITING_ON_GATE, RunStatus.FAILED):
            raise InvalidTransition(
                f"Run {run.id} cannot be aborted while {run.status.value}",
                current=run.status.value,
                requested=RunStatus.ABORTED.value,
            )

        if run.status == RunStatus.FAILED:
            run.rollback_state = RollbackState.DECLINED
        elif run.step_outcomes:
            run.rollback_state = RollbackState.DECLINED

        await self._audit.record_async(
            run.id,
            "run_aborted",
            reason=reason,
            status=run.status.value,
            rollback_state=run.rollback_state.value,
        )
        await self._transition(run, RunStatus.ABORTED)
        logger.warning("Run aborted", run_id=run.id, reason=reason or "-")
        return run

    def status(self, run_id: str) -> dict[str, Any]:
        """Report where a run is, how it got there and what it waits for."""
        run = self._store.load(run_id)
        try:
            procedure: Procedure | None = self._registry.get(run.procedure_id)
        except ProcedureNotFound:
            procedure = None
        if procedure is not None and procedure.digest != run.procedure_digest:
            procedure = None

        report = run.to_dict()
        report["duration_seconds"] = run.duration_seconds
        report["total_steps"] = len(procedure.steps) if procedure else None
        report["current_step"] = None
        report["pending_gate"] = None

        if procedure and not run.is_terminal and run.step_index < len(procedure.steps):
            step = procedure.steps[run.step_index]
            report["current_step"] = step.id
            gate = step.gate_for(run.phase)
            if run.status == RunStatus.WAITING_ON_GATE and gate is not None:
                report["pending_gate"] = {
                    "gate": run.phase.value,
                    "prompt": gate.describe(),
                    "confirmation": gate.confirmation,
                    "rejections": run.gate_rejections,
                    "max_rejections": gate.max_rejections,
                }
        return report

    def list_runs(self, active_only: bool = False, limit: int | None = 50) -> list[Run]:
        runs = self._store.list(limit=None if active_only else limit)
        if active_only:
            runs = [r for r in runs if not r.is_terminal]
        return runs

    def resumable_runs(self) -> list[Run]:
        return self._store.list_resumable()

    # ------------------------------------------------------------------
    # State machine

    async def _transition(self, run: Run, target: RunStatus, **detail: Any) -> None:
        """Move ``run`` to ``target`` and checkpoint it.

        The ``status_changed`` audit entry is on disk before the checkpoint.
        Reaching a terminal state releases the resource lock, after the
        terminal checkpoint is on disk.
        """
        if not can_transition(run.status, target):
            raise InvalidTransition(
                f"Run {run.id} cannot move from {run.status.value} to {target.value}",
                current=run.status.value,
                requested=target.value,
            )

        previous = run.status
        run.status = target
        if target.is_terminal:
            run.completed_at = utcnow()
            run.lock_held = False

        await self._audit.record_async(
            run.id,
            "status_changed",
            previous=previous.value,
            status=target.value,
            **detail,
        )
        await self._store.save_async(run)

        if target.is_terminal:
            if await asyncio.to_thread(self._store.release_lock, run.resource_key, run.id):
                await self._audit.record_async(run.id, "lock_released", resource_key=run.resource_key)
            await self._audit.record_async(
                run.id,
                "run_finished",
                status=target.value,
                rollback_state=run.rollback_state.value,
                duration_seconds=run.duration_seconds,
            )

    async def _acquire(self, run: Run) -> None:
        if self._config.lock_mode == "block":
            await self._store.wait_for_lock(
                run.resource_key,
                run.id,
                timeout=self._config.lock_wait_timeout,
                sleep=self._sleep,
                clock=self._clock,
            )
        else:
            await asyncio.to_thread(self._store.acquire_lock, run.resource_key, run.id)
        run.lock_held = True
        await self._audit.record_async(run.id, "lock_acquired", resource_key=run.resource_key)
        await self._store.save_async(run)

    async def _reattach(self, run: Run) -> None:
        """Make sure a continuing run still holds its resource lock."""
        await asyncio.to_thread(self._store.acquire_lock, run.resource_key, run.id)
        if not run.lock_held:
            run.lock_held = True
            await self._store.save_async(run)

    def _procedure_for(self, run: Run) -> Procedure:
        procedure = self._registry.get(run.procedure_id)
        if procedure.digest != run.procedure_digest:
            raise ProcedureConflict(
                f"Procedure '{run.procedure_id}' changed since run {run.id} started",
                details={"expected": run.procedure_digest[:12], "found": procedure.digest[:12]},
            )
        return procedure

    async def _advance(self, run: Run) -> None:
        run.step_index += 1
        run.phase = StepPhase.ENTRY_GATE
        run.action_in_flight = False
        run.gate_rejections = 0
        await self._store.save_async(run)

    async def _drive(self, run: Run, procedure: Procedure) -> None:
        """Execute forward steps until the run waits, fails or completes."""
        while run.status == RunStatus.RUNNING:
            if run.step_index >= len(procedure.steps):
                logger.info("Run completed", run_id=run.id, procedure=procedure.id)
                await self._transition(run, RunStatus.COMPLETED)
                return

            step = procedure.steps[run.step_index]

            if run.phase == StepPhase.ACTION and run.action_in_flight and not step.retryable:
                error = PreconditionFailure(
                    f"Step '{step.id}' may have been interrupted mid-action and is not retryable; "
                    "its effect is unknown"
                )
                await self._executor.fail(run, step, None, error)
                await self._fail(run, procedure, step, error)
                return

            try:
                signal = await self._executor.execute(run, step)
            except STEP_ERRORS as e:
                await self._fail(run, procedure, step, e)
                return

            if signal == StepSignal.WAITING:
                await self._transition(run, RunStatus.WAITING_ON_GATE, step_id=step.id, gate=run.phase.value)
                return

            await self._advance(run)

    async def _fail(self, run: Run, procedure: Procedure, step: Step, error: RunGuardError) -> None:
        run.failed_step = step.id
        run.error_kind = error.kind
        run.error_message = error.message
        run.action_in_flight = False
        run.rollback_state = (
            RollbackState.NOT_STARTED if procedure.rollback_steps else RollbackState.NOT_REQUIRED
        )
        await self._transition(run, RunStatus.FAILED, step_id=step.id, error_kind=error.kind)
        logger.error("Run failed", run_id=run.id, step=step.id, kind=error.kind, error=error.message)

        if self._config.auto_rollback:
            await self._rollback(run, procedure)

    async def _rollback(self, run: Run, procedure: Procedure) -> None:
        """Run the rollback steps in order, starting or continuing."""
        if run.status == RunStatus.FAILED:
            run.rollback_index = 0
            run.phase = StepPhase.ENTRY_GATE
            run.action_in_flight = False
            await self._audit.record_async(
                run.id,
                "rollback_started",
                steps=[s.id for s in procedure.rollback_steps],
            )
            await self._transition(run, RunStatus.ROLLING_BACK)

        while run.rollback_index < len(procedure.rollback_steps):
            step = procedure.rollback_steps[run.rollback_index]
            await self._audit.record_async(run.id, "rollback_step", step.id, index=run.rollback_index)

            error: RunGuardError | None = None
            if run.phase == StepPhase.ACTION and run.action_in_flight and not step.retryable:
                error = PreconditionFailure(
                    f"Rollback step '{step.id}' may have been interrupted mid-action and is not retryable"
                )
                await self._executor.fail(run, step, None, error, stage="rollback")
            else:
                try:
                    signal = await self._executor.execute(run, step, stage="rollback")
                except STEP_ERRORS as e:
                    error = e
                else:
                    if signal == StepSignal.WAITING:
                        error = PreconditionFailure(f"Rollback step '{step.id}' cannot wait on an operator")
                        await self._executor.fail(run, step, None, error, stage="rollback")

            if error is not None:
                await self._rollback_failed(run, step, error)
                return

            run.rollback_index += 1
            run.phase = StepPhase.ENTRY_GATE
            run.action_in_flight = False
            await self._store.save_async(run)

        if procedure.rollback_steps:
            run.rollback_state = RollbackState.SUCCEEDED
        await self._audit.record_async(run.id, "rollback_completed", rollback_state=run.rollback_state.value)
        logger.info("Rollback completed", run_id=run.id)
        await self._transition(run, RunStatus.ROLLED_BACK)

    async def _rollback_failed(self, run: Run, step: Step, error: RunGuardError) -> None:
        failure = RollbackFailure(f"Rollback step '{step.id}' failed: {error.message}", step=step.id)
        run.rollback_state = RollbackState.PARTIAL if run.rollback_index > 0 else RollbackState.FAILED
        run.rollback_failed_step = step.id
        run.rollback_error = failure.message
        run.action_in_flight = False
        await self._audit.record_async(
            run.id,
            "rollback_failed",
            step.id,
            error_kind=error.kind,
            error=error.message,
            rollback_state=run.rollback_state.value,
        )
        logger.error(
            "Rollback failed, manual intervention required",
            run_id=run.id,
            step=step.id,
            error=error.message,
        )
        await self._transition(run, RunStatus.ABORTED)
