"""Pytest fixtures for runguard tests."""

import asyncio
from pathlib import Path
from typing import Any

import pytest
import yaml
from click.testing import CliRunner

from runguard.config import EngineConfig, RunGuardConfig
from runguard.core.context import RunGuardContext
from runguard.core.output import OutputFormat
from runguard.engine.actions import Action, ActionContext, ActionRegistry
from runguard.engine.audit import AuditLog
from runguard.engine.orchestrator import RunOrchestrator
from runguard.engine.registry import ProcedureRegistry
from runguard.engine.schema import Procedure
from runguard.engine.store import CheckpointStore


class FakeClock:
    """Monotonic clock advanced only by the matching fake sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedAction(Action):
    """Action that plays back queued results and records every call.

    Queued exceptions are raised instead of returned. Once the queue is empty
    the action keeps returning ``default``.
    """

    def __init__(self, name: str, results: list[Any] | None = None, default: Any = "ok"):
        self.name = name
        self.results = list(results or [])
        self.default = default
        self.calls: list[ActionContext] = []

    async def execute(self, context: ActionContext) -> Any:
        self.calls.append(context)
        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, Exception):
            raise result
        return result


class EngineHarness:
    """Wires a real engine to a temporary state directory and a fake clock.

    Each call to :meth:`orchestrator` returns a fresh orchestrator over the
    same state, which is how tests simulate a process restart.
    """

    def __init__(self, state_dir: Path, clock: FakeClock):
        self.state_dir = state_dir
        self.clock = clock
        self.actions = ActionRegistry()
        self.registry = ProcedureRegistry(self.actions)
        self.store = CheckpointStore(state_dir)
        self.audit = AuditLog(state_dir / "audit", operator="tester")
        self.config = EngineConfig()

    def action(self, name: str, results: list[Any] | None = None, default: Any = "ok") -> ScriptedAction:
        action = ScriptedAction(name, results, default)
        self.actions.register(name, action, replace=True)
        return action

    def procedure(self, data: dict[str, Any]) -> Procedure:
        return self.registry.register(ProcedureRegistry.parse(data))

    def orchestrator(self) -> RunOrchestrator:
        return RunOrchestrator(
            self.registry,
            self.actions,
            self.store,
            self.audit,
            config=self.config,
            sleep=self.clock.sleep,
            clock=self.clock,
            operator="tester",
        )

    def events(self, run_id: str) -> list[str]:
        return [e.event for e in self.audit.read(run_id)]

    def run(self, coro: Any) -> Any:
        return asyncio.run(coro)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests away from the real home directory and RUNGUARD_* variables."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    for var in ("RUNGUARD_STATE_DIR", "RUNGUARD_PROCEDURES_DIR", "RUNGUARD_OPERATOR", "RUNGUARD_CONFIG"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(tmp_path: Path, fake_clock: FakeClock) -> EngineHarness:
    """Engine over a temporary state directory."""
    return EngineHarness(tmp_path / "state", fake_clock)


@pytest.fixture
def mock_context() -> RunGuardContext:
    """Create a runguard context with default configuration."""
    return RunGuardContext(
        config=RunGuardConfig(),
        output_format=OutputFormat.TABLE,
        verbose=0,
        quiet=False,
        color=False,
    )


RESIZE_DB = {
    "id": "resize-db",
    "description": "Resize a database instance",
    "steps": [
        {
            "id": "enable-maintenance",
            "action": "echo",
            "params": {"value": "maintenance on"},
            "exit_gate": {
                "kind": "human",
                "prompt": "Check the status page",
                "confirmation": "maintenance confirmed",
            },
        },
        {"id": "stop-services", "action": "echo", "params": {"value": "stopped"}},
        {
            "id": "backup",
            "action": "echo",
            "params": {"value": "snap-1"},
            "exit_gate": {
                "kind": "automatic",
                "poll": "echo",
                "params": {"value": "DONE"},
                "expect": "DONE",
            },
        },
        {
            "id": "patch",
            "action": "echo",
            "params": {"value": "patched"},
            "exit_gate": {
                "kind": "automatic",
                "poll": "echo",
                "params": {"value": "available"},
                "expect": "available",
            },
        },
        {"id": "start-services", "action": "echo", "params": {"value": "started"}},
    ],
    "rollback_steps": [
        {"id": "disable-maintenance", "action": "echo", "params": {"value": "maintenance off"}},
    ],
}


@pytest.fixture
def procedures_dir(tmp_path: Path) -> Path:
    """Directory holding the resize-db procedure definition."""
    directory = tmp_path / "procedures"
    directory.mkdir()
    (directory / "resize-db.yaml").write_text(yaml.safe_dump(RESIZE_DB, sort_keys=False))
    return directory


@pytest.fixture
def cli_env(tmp_path: Path, procedures_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the CLI at temporary state and procedure directories."""
    state_dir = tmp_path / "state"
    monkeypatch.setenv("RUNGUARD_STATE_DIR", str(state_dir))
    monkeypatch.setenv("RUNGUARD_PROCEDURES_DIR", str(procedures_dir))
    monkeypatch.setenv("RUNGUARD_OPERATOR", "tester")
    return state_dir
