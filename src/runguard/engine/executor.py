"""Step execution: entry gate, action with retries, exit gate."""

from enum import Enum
from typing import Any

from runguard.config import RetryConfig
from runguard.core.exceptions import ActionError, PermanentActionError, RunGuardError
from runguard.core.logging import StructuredLogger
from runguard.engine.actions import ActionContext, ActionRegistry
from runguard.engine.audit import AuditLog
from runguard.engine.backoff import Backoff, Sleep, default_sleep
from runguard.engine.gates import GateEvaluator
from runguard.engine.schema import (
    Gate,
    Run,
    Step,
    StepOutcome,
    StepPhase,
    StepStatus,
    utcnow,
)
from runguard.engine.store import CheckpointStore

logger = StructuredLogger(__name__)


class StepSignal(str, Enum):
    """What happened to the step this time round."""

    COMPLETED = "completed"
    WAITING = "waiting"  # Blocked on a human gate


class StepExecutor:
    """Run one step of a run from wherever its ``phase`` says it stopped.

    The executor checkpoints the run after every phase change and records the
    step outcome, but never decides what a failure means for the run: errors
    are re-raised to the orchestrator after being recorded.
    """

    def __init__(
        self,
        actions: ActionRegistry,
        gates: GateEvaluator,
        store: CheckpointStore,
        audit: AuditLog,
        retry: RetryConfig | None = None,
        sleep: Sleep = default_sleep,
    ):
        self._actions = actions
        self._gates = gates
        self._store = store
        self._audit = audit
        self._retry = retry or RetryConfig()
        self._sleep = sleep

    def context_for(self, run: Run, step: Step, stage: str) -> ActionContext:
        return ActionContext(
            run_id=run.id,
            step_id=step.id,
            resource_key=run.resource_key,
            params=step.params,
            outputs=dict(run.outputs),
            stage=stage,
        )

    async def _outcome(self, run: Run, step: Step, stage: str) -> StepOutcome:
        """Reuse the open outcome for this step or start a new one."""
        outcome = run.outcome_for(step.id, stage)
        if outcome and outcome.status in (StepStatus.RUNNING, StepStatus.WAITING):
            outcome.status = StepStatus.RUNNING
            return outcome

        outcome = StepOutcome(
            step_id=step.id,
            stage=stage,
            status=StepStatus.RUNNING,
            started_at=utcnow(),
        )
        run.step_outcomes.append(outcome)
        await self._audit.record_async(
            run.id, "step_started", step.id, stage=stage, description=step.description
        )
        return outcome

    def retry_budget(self, step: Step) -> int:
        if not step.retryable:
            return 1
        return step.max_attempts or self._retry.max_attempts

    async def execute(self, run: Run, step: Step, stage: str = "forward") -> StepSignal:
        """Advance ``step`` as far as it can go.

        Returns:
            COMPLETED once the action succeeded and the exit gate passed,
            WAITING if a human gate must be confirmed first

        Raises:
            ActionError, GateTimeout, GateRejected: the step failed
        """
        outcome = await self._outcome(run, step, stage)
        log = logger.bind(run_id=run.id, step=step.id, stage=stage)

        try:
            if run.phase == StepPhase.ENTRY_GATE:
                if step.entry_gate and not await self._pass_gate(run, step, step.entry_gate, outcome, stage):
                    return StepSignal.WAITING
                run.phase = StepPhase.ACTION
                await self._store.save_async(run)

            if run.phase == StepPhase.ACTION:
                output = await self._invoke(run, step, outcome, stage)
                outcome.output = None if output is None else str(output)
                run.outputs[step.id] = output
                run.phase = StepPhase.EXIT_GATE
                run.action_in_flight = False
                await self._audit.record_async(
                    run.id, "action_succeeded", step.id, stage=stage, output=outcome.output
                )
                # Success is durable before anything else happens
                await self._store.save_async(run)

            if run.phase == StepPhase.EXIT_GATE:
                if step.exit_gate and not await self._pass_gate(run, step, step.exit_gate, outcome, stage):
                    return StepSignal.WAITING

        except RunGuardError as e:
            await self.fail(run, step, outcome, e, stage)
            raise

        await self.complete(run, step, outcome, stage)
        log.info("Step completed", attempts=outcome.attempts)
        return StepSignal.COMPLETED

    async def complete(
        self,
        run: Run,
        step: Step,
        outcome: StepOutcome | None = None,
        stage: str = "forward",
    ) -> None:
        """Mark the step completed; the caller persists the advanced run."""
        outcome = outcome or await self._outcome(run, step, stage)
        outcome.status = StepStatus.COMPLETED
        outcome.ended_at = utcnow()
        await self._audit.record_async(
            run.id, "step_completed", step.id, stage=stage, attempts=outcome.attempts
        )

    async def fail(
        self,
        run: Run,
        step: Step,
        outcome: StepOutcome | None,
        error: RunGuardError,
        stage: str = "forward",
    ) -> None:
        """Record a step failure on the outcome log and audit trail."""
        outcome = outcome or await self._outcome(run, step, stage)
        outcome.status = StepStatus.FAILED
        outcome.ended_at = utcnow()
        outcome.error = error.message
        outcome.error_kind = error.kind
        await self._audit.record_async(
            run.id,
            "step_failed",
            step.id,
            stage=stage,
            phase=run.phase.value,
            error_kind=error.kind,
            error=error.message,
        )
        logger.warning("Step failed", run_id=run.id, step=step.id, kind=error.kind, error=error.message)

    async def _pass_gate(
        self,
        run: Run,
        step: Step,
        gate: Gate,
        outcome: StepOutcome,
        stage: str,
    ) -> bool:
        """Evaluate a gate; False means the run must wait for an operator."""
        label = run.phase.value
        if gate.is_human:
            outcome.status = StepStatus.WAITING
            await self._audit.record_async(
                run.id,
                "gate_waiting",
                step.id,
                gate=label,
                kind=gate.kind.value,
                prompt=gate.describe(),
            )
            return False

        await self._gates.evaluate_automatic(gate, self.context_for(run, step, stage), label)
        return True

    async def _invoke(self, run: Run, step: Step, outcome: StepOutcome, stage: str) -> Any:
        """Call the step's action, retrying transient failures within budget."""
        action = self._actions.get(step.action)
        budget = self.retry_budget(step)
        backoff = Backoff(
            initial=self._retry.initial_delay,
            multiplier=self._retry.multiplier,
            maximum=self._retry.max_delay,
        )

        while True:
            outcome.attempts += 1
            attempt = outcome.attempts
            await self._audit.record_async(
                run.id,
                "action_attempt",
                step.id,
                stage=stage,
                action=step.action,
                attempt=attempt,
                budget=budget,
            )

            if not step.retryable:
                # Non-retryable: a crash from here on must not lead to a second call
                run.action_in_flight = True
                await self._store.save_async(run)

            try:
                return await action.execute(self.context_for(run, step, stage))
            except ActionError as e:
                error: ActionError = e
            except Exception as e:
                logger.exception("Action raised an unexpected error", step=step.id, action=step.action)
                error = PermanentActionError(f"{type(e).__name__}: {e}", action=step.action)

            run.action_in_flight = False
            await self._audit.record_async(
                run.id,
                "action_failed",
                step.id,
                stage=stage,
                attempt=attempt,
                transient=error.transient,
                error=error.message,
            )

            if error.transient and step.retryable and attempt < budget:
                delay = backoff.delay(attempt - 1)
                await self._audit.record_async(
                    run.id, "action_retry", step.id, stage=stage, attempt=attempt, delay=delay
                )
                logger.warning(
                    "Step failed, retrying",
                    step=step.id,
                    attempt=attempt,
                    max_attempts=budget,
                    delay=delay,
                )
                await self._sleep(delay)
                continue

            raise error
