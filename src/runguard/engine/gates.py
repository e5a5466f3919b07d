"""Gate evaluation: automatic polling and exact human confirmation."""

from typing import Any

from runguard.config import GateConfig
from runguard.core.exceptions import (
    GateRejected,
    GateTimeout,
    PermanentActionError,
    RunGuardError,
    TransientActionError,
)
from runguard.core.logging import StructuredLogger
from runguard.engine.actions import ActionContext, ActionRegistry
from runguard.engine.audit import AuditLog
from runguard.engine.backoff import Backoff, Clock, Sleep, default_clock, default_sleep
from runguard.engine.schema import Gate

logger = StructuredLogger(__name__)


class GateEvaluator:
    """Decide whether a step's entry or exit condition holds.

    Automatic gates poll a state-query action with bounded exponential backoff
    until its output equals the gate's ``expect`` value, failing with
    :class:`GateTimeout` once the budget is spent. Human gates pass only on a
    token identical to the configured confirmation text; nothing else marks a
    gate satisfied.
    """

    def __init__(
        self,
        actions: ActionRegistry,
        audit: AuditLog,
        config: GateConfig | None = None,
        sleep: Sleep = default_sleep,
        clock: Clock = default_clock,
    ):
        self._actions = actions
        self._audit = audit
        self._config = config or GateConfig()
        self._sleep = sleep
        self._clock = clock

    def backoff_for(self, gate: Gate) -> Backoff:
        return Backoff(
            initial=gate.initial_interval or self._config.initial_interval,
            multiplier=2.0,
            maximum=gate.max_interval or self._config.max_interval,
        )

    async def evaluate_automatic(
        self,
        gate: Gate,
        context: ActionContext,
        label: str,
    ) -> Any:
        """Poll until the gate is satisfied.

        Args:
            gate: Automatic gate to evaluate
            context: Context of the step the gate guards
            label: ``entry_gate`` or ``exit_gate`` (for the audit trail)

        Returns:
            The polled output that satisfied the gate

        Raises:
            GateTimeout: the gate was not satisfied within its timeout
            PermanentActionError: the poll action failed permanently
        """
        timeout = gate.timeout or self._config.timeout
        backoff = self.backoff_for(gate)
        action = self._actions.get(gate.poll or "")
        poll_context = ActionContext(
            run_id=context.run_id,
            step_id=context.step_id,
            resource_key=context.resource_key,
            params=gate.params,
            outputs=context.outputs,
            stage=context.stage,
        )

        deadline = self._clock() + timeout
        attempt = 0

        while True:
            attempt += 1
            error = None
            try:
                observed = await action.execute(poll_context)
            except TransientActionError as e:
                observed, error = None, str(e)
            except RunGuardError:
                raise
            except Exception as e:
                logger.exception("Gate poll raised an unexpected error", step=context.step_id, gate=label)
                raise PermanentActionError(f"{type(e).__name__}: {e}", action=gate.poll)

            satisfied = observed is not None and str(observed).strip() == gate.expect
            await self._audit.record_async(
                context.run_id,
                "gate_evaluated",
                context.step_id,
                gate=label,
                kind=gate.kind.value,
                attempt=attempt,
                observed=None if observed is None else str(observed),
                expected=gate.expect,
                satisfied=satisfied,
                error=error,
            )

            if satisfied:
                return observed

            remaining = deadline - self._clock()
            if remaining <= 0:
                await self._audit.record_async(
                    context.run_id,
                    "gate_timeout",
                    context.step_id,
                    gate=label,
                    timeout_seconds=timeout,
                    attempts=attempt,
                )
                raise GateTimeout(
                    f"Gate {label} of step '{context.step_id}' not satisfied after {timeout}s "
                    f"(expected {gate.expect!r})",
                    timeout_seconds=timeout,
                )

            delay = min(backoff.delay(attempt - 1), remaining)
            logger.debug("Gate not satisfied yet", step=context.step_id, gate=label, retry_in=f"{delay:.1f}s")
            await self._sleep(delay)

    async def check_human(
        self,
        gate: Gate,
        run_id: str,
        step_id: str,
        token: str,
        label: str,
        previous_rejections: int = 0,
    ) -> None:
        """Accept ``token`` only if it is exactly the gate's confirmation text.

        Raises:
            GateRejected: the token did not match; ``rejections`` carries the
                running count so the caller can enforce ``max_rejections``
        """
        if token == gate.confirmation:
            await self._audit.record_async(run_id, "gate_confirmed", step_id, gate=label, token=token)
            logger.info("Gate confirmed", run_id=run_id, step=step_id, gate=label)
            return

        rejections = previous_rejections + 1
        await self._audit.record_async(
            run_id,
            "gate_rejected",
            step_id,
            gate=label,
            token=token,
            rejections=rejections,
            max_rejections=gate.max_rejections,
        )
        raise GateRejected(
            f"Confirmation for step '{step_id}' does not match; expected exactly {gate.confirmation!r}",
            rejections=rejections,
        )
