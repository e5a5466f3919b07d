"""Tests for gate evaluation and step execution."""

import asyncio

import pytest

from runguard.config import GateConfig, RetryConfig
from runguard.core.exceptions import GateRejected, GateTimeout, PermanentActionError, TransientActionError
from runguard.engine.actions import ActionContext, ActionRegistry
from runguard.engine.audit import AuditLog
from runguard.engine.backoff import Backoff
from runguard.engine.executor import StepExecutor, StepSignal
from runguard.engine.gates import GateEvaluator
from runguard.engine.schema import Gate, GateKind, Run, Step, StepPhase, StepStatus
from runguard.engine.store import CheckpointStore

from conftest import FakeClock, ScriptedAction


def poll_gate(**kwargs) -> Gate:
    return Gate(kind=GateKind.AUTOMATIC, poll="check", expect="DONE", **kwargs)


def human_gate(**kwargs) -> Gate:
    return Gate(kind=GateKind.HUMAN, confirmation="maintenance confirmed", **kwargs)


@pytest.fixture
def actions() -> ActionRegistry:
    return ActionRegistry(include_builtins=False)


@pytest.fixture
def audit() -> AuditLog:
    return AuditLog()


@pytest.fixture
def evaluator(actions: ActionRegistry, audit: AuditLog, fake_clock: FakeClock) -> GateEvaluator:
    return GateEvaluator(actions, audit, GateConfig(), fake_clock.sleep, fake_clock)


def ctx() -> ActionContext:
    return ActionContext(run_id="run-1", step_id="backup", resource_key="db-1")


class TestBackoff:
    """Tests for bounded exponential backoff."""

    def test_delays_grow_and_cap(self):
        backoff = Backoff(initial=5, multiplier=2, maximum=30)

        assert [backoff.delay(i) for i in range(5)] == [5, 10, 20, 30, 30]

    def test_uncapped(self):
        backoff = Backoff(initial=1, multiplier=3)

        assert [backoff.delay(i) for i in range(3)] == [1, 3, 9]

    def test_capped_delay_survives_huge_attempt_counts(self):
        backoff = Backoff(initial=1, multiplier=2, maximum=60)

        assert backoff.delay(1023) == 60
        assert backoff.delay(5000) == 60

    def test_uncapped_delay_saturates_instead_of_overflowing(self):
        assert Backoff(initial=1, multiplier=2).delay(5000) == float("inf")

    def test_zero_initial_delay(self):
        assert Backoff(initial=0, multiplier=2, maximum=30).delay(3) == 0


class TestAutomaticGate:
    """Tests for polled gates."""

    def test_satisfied_on_first_poll(self, evaluator, actions, audit, fake_clock):
        actions.register("check", ScriptedAction("check", default="DONE"))

        observed = asyncio.run(evaluator.evaluate_automatic(poll_gate(), ctx(), "exit_gate"))

        assert observed == "DONE"
        assert fake_clock.sleeps == []
        assert [e.event for e in audit.read("run-1")] == ["gate_evaluated"]

    def test_output_is_compared_as_trimmed_text(self, evaluator, actions):
        actions.register("check", ScriptedAction("check", default="DONE\n"))

        assert asyncio.run(evaluator.evaluate_automatic(poll_gate(), ctx(), "exit_gate")) == "DONE\n"

    def test_gate_overrides_intervals(self, evaluator, actions, fake_clock):
        actions.register("check", ScriptedAction("check", results=["no", "no", "no", "DONE"]))
        gate = poll_gate(initial_interval=1, max_interval=3)

        asyncio.run(evaluator.evaluate_automatic(gate, ctx(), "exit_gate"))

        assert fake_clock.sleeps == [1, 2, 3]

    def test_timeout(self, evaluator, actions, audit, fake_clock):
        actions.register("check", ScriptedAction("check", default=TransientActionError("503")))

        with pytest.raises(GateTimeout) as exc_info:
            asyncio.run(evaluator.evaluate_automatic(poll_gate(timeout=30), ctx(), "entry_gate"))

        assert exc_info.value.timeout_seconds == 30
        assert sum(fake_clock.sleeps) == 30
        assert audit.read("run-1")[-1].event == "gate_timeout"

    def test_permanent_poll_error_propagates(self, evaluator, actions):
        actions.register("check", ScriptedAction("check", default=PermanentActionError("gone")))

        with pytest.raises(PermanentActionError):
            asyncio.run(evaluator.evaluate_automatic(poll_gate(), ctx(), "exit_gate"))

    def test_day_long_poll_times_out_cleanly(self, evaluator, actions, audit, fake_clock):
        check = ScriptedAction("check", default="PENDING")
        actions.register("check", check)
        gate = poll_gate(timeout=86400, initial_interval=1, max_interval=60)

        with pytest.raises(GateTimeout):
            asyncio.run(evaluator.evaluate_automatic(gate, ctx(), "exit_gate"))

        assert len(check.calls) > 1024
        assert max(fake_clock.sleeps) == 60
        assert sum(fake_clock.sleeps) == pytest.approx(86400)
        assert audit.read("run-1")[-1].event == "gate_timeout"

    def test_unexpected_poll_exception_is_permanent(self, evaluator, actions, audit):
        def broken(context):
            return {}["status"]

        actions.register("check", broken)

        with pytest.raises(PermanentActionError) as exc_info:
            asyncio.run(evaluator.evaluate_automatic(poll_gate(), ctx(), "exit_gate"))

        assert "KeyError" in exc_info.value.message
        assert audit.read("run-1") == []


class TestHumanGate:
    """Tests for exact-token confirmation."""

    def test_exact_token_passes(self, evaluator, audit):
        asyncio.run(evaluator.check_human(human_gate(), "run-1", "a", "maintenance confirmed", "exit_gate"))

        assert audit.read("run-1")[0].event == "gate_confirmed"

    @pytest.mark.parametrize("token", ["", "yes", "Maintenance confirmed", " maintenance confirmed"])
    def test_anything_else_is_rejected(self, evaluator, audit, token):
        with pytest.raises(GateRejected) as exc_info:
            asyncio.run(
                evaluator.check_human(human_gate(), "run-1", "a", token, "exit_gate", previous_rejections=2)
            )

        assert exc_info.value.rejections == 3
        entry = audit.read("run-1")[0]
        assert entry.event == "gate_rejected"
        assert entry.detail["token"] == token


class TestStepExecutor:
    """Tests for running a single step."""

    @pytest.fixture
    def executor(self, tmp_path, actions, audit, evaluator, fake_clock) -> StepExecutor:
        store = CheckpointStore(tmp_path / "state")
        retry = RetryConfig(max_attempts=4, initial_delay=0.5, multiplier=2, max_delay=1)
        return StepExecutor(actions, evaluator, store, audit, retry, fake_clock.sleep)

    def test_completes_and_records_output(self, executor, actions):
        actions.register("work", ScriptedAction("work", default={"id": 7}))
        run = Run(procedure_id="proc", resource_key="db-1")

        signal = asyncio.run(executor.execute(run, Step(id="a", action="work")))

        assert signal == StepSignal.COMPLETED
        assert run.outputs["a"] == {"id": 7}
        assert run.phase == StepPhase.EXIT_GATE
        assert run.outcome_for("a").status == StepStatus.COMPLETED

    def test_human_exit_gate_waits_after_action(self, executor, actions):
        work = ScriptedAction("work")
        actions.register("work", work)
        run = Run(procedure_id="proc", resource_key="db-1")
        step = Step(id="a", action="work", exit_gate=human_gate())

        signal = asyncio.run(executor.execute(run, step))

        assert signal == StepSignal.WAITING
        assert len(work.calls) == 1
        assert run.outcome_for("a").status == StepStatus.WAITING

    def test_retry_delays_are_capped(self, executor, actions, fake_clock):
        work = ScriptedAction("work", default=TransientActionError("busy"))
        actions.register("work", work)
        run = Run(procedure_id="proc", resource_key="db-1")

        with pytest.raises(TransientActionError):
            asyncio.run(executor.execute(run, Step(id="a", action="work", retryable=True)))

        assert len(work.calls) == 4
        assert fake_clock.sleeps == [0.5, 1, 1]
        assert run.outcome_for("a").status == StepStatus.FAILED
        assert run.action_in_flight is False

    def test_non_retryable_action_is_marked_in_flight(self, executor, actions):
        run = Run(procedure_id="proc", resource_key="db-1")
        seen = []

        def work(context):
            seen.append(run.action_in_flight)
            return "ok"

        actions.register("work", work)
        asyncio.run(executor.execute(run, Step(id="a", action="work")))

        assert seen == [True]
        assert run.action_in_flight is False
