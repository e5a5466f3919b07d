"""Procedure and run data models."""

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def freeze(value: Any) -> Any:
    """Recursively convert dicts and lists into read-only equivalents."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of :func:`freeze`, producing plain JSON-compatible values."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


class GateKind(str, Enum):
    """Gate variants."""

    AUTOMATIC = "automatic"  # Poll an external condition
    HUMAN = "human"  # Exact operator acknowledgment


@dataclass(frozen=True)
class Gate:
    """A condition that must hold before or after a step's action."""

    kind: GateKind

    # Automatic gates
    poll: str | None = None  # Action id used to query state
    params: Mapping[str, Any] = field(default_factory=lambda: freeze({}))
    expect: str | None = None
    timeout: float | None = None  # None -> engine default
    initial_interval: float | None = None
    max_interval: float | None = None

    # Human gates
    confirmation: str | None = None
    prompt: str | None = None
    max_rejections: int | None = None  # None -> keep waiting forever

    @property
    def is_human(self) -> bool:
        return self.kind == GateKind.HUMAN

    def describe(self) -> str:
        """Short human-readable description."""
        if self.is_human:
            return self.prompt or f"type '{self.confirmation}' to confirm"
        return f"poll {self.poll} until {self.expect!r}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        if self.is_human:
            return {
                "kind": self.kind.value,
                "confirmation": self.confirmation,
                "prompt": self.prompt,
                "max_rejections": self.max_rejections,
            }
        return {
            "kind": self.kind.value,
            "poll": self.poll,
            "params": thaw(self.params),
            "expect": self.expect,
            "timeout": self.timeout,
            "initial_interval": self.initial_interval,
            "max_interval": self.max_interval,
        }


@dataclass(frozen=True)
class Step:
    """One unit of work within a procedure.

    There is deliberately no way to mark a step optional: every step of a
    procedure runs, in order, through its gates.
    """

    id: str
    action: str
    description: str = ""
    params: Mapping[str, Any] = field(default_factory=lambda: freeze({}))
    entry_gate: Gate | None = None
    exit_gate: Gate | None = None
    retryable: bool = False
    max_attempts: int | None = None  # None -> engine default when retryable

    @property
    def mandatory(self) -> bool:
        return True

    def gate_for(self, phase: "StepPhase") -> Gate | None:
        if phase == StepPhase.ENTRY_GATE:
            return self.entry_gate
        if phase == StepPhase.EXIT_GATE:
            return self.exit_gate
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "description": self.description,
            "action": self.action,
            "params": thaw(self.params),
            "entry_gate": self.entry_gate.to_dict() if self.entry_gate else None,
            "exit_gate": self.exit_gate.to_dict() if self.exit_gate else None,
            "retryable": self.retryable,
            "max_attempts": self.max_attempts,
        }


@dataclass(frozen=True)
class Procedure:
    """Immutable definition of an ordered, gated operational workflow."""

    id: str
    steps: tuple[Step, ...]
    rollback_steps: tuple[Step, ...] = ()
    resource_key: str | None = None  # Default target when none is given at start
    description: str = ""
    version: str = "1"
    source_file: str | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "description": self.description,
            "version": self.version,
            "resource_key": self.resource_key,
            "steps": [s.to_dict() for s in self.steps],
            "rollback_steps": [s.to_dict() for s in self.rollback_steps],
        }

    @property
    def digest(self) -> str:
        """Content hash of the definition, used to detect edits between runs."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()


class RunStatus(str, Enum):
    """Run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING_ON_GATE = "waiting_on_gate"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.ROLLED_BACK, RunStatus.ABORTED)

    @property
    def is_active(self) -> bool:
        return self in (RunStatus.RUNNING, RunStatus.WAITING_ON_GATE, RunStatus.ROLLING_BACK)


TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.ABORTED}),
    RunStatus.RUNNING: frozenset(
        {RunStatus.RUNNING, RunStatus.WAITING_ON_GATE, RunStatus.COMPLETED, RunStatus.FAILED}
    ),
    RunStatus.WAITING_ON_GATE: frozenset({RunStatus.RUNNING, RunStatus.FAILED, RunStatus.ABORTED}),
    RunStatus.FAILED: frozenset({RunStatus.ROLLING_BACK, RunStatus.ABORTED}),
    RunStatus.ROLLING_BACK: frozenset({RunStatus.ROLLED_BACK, RunStatus.ABORTED}),
    RunStatus.ROLLED_BACK: frozenset(),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.ABORTED: frozenset(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in TRANSITIONS[current]


class StepPhase(str, Enum):
    """Where a run is within its current step."""

    ENTRY_GATE = "entry_gate"
    ACTION = "action"
    EXIT_GATE = "exit_gate"


class StepStatus(str, Enum):
    """Per-step outcome status."""

    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


class RollbackState(str, Enum):
    """How far a run's rollback got."""

    NOT_REQUIRED = "not_required"
    NOT_STARTED = "not_started"
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"  # Some rollback steps succeeded before one failed
    FAILED = "failed"  # The first rollback step failed
    DECLINED = "declined"  # Operator aborted instead of rolling back


@dataclass
class StepOutcome:
    """Outcome of one step, forward or rollback."""

    step_id: str
    stage: str  # forward, rollback
    status: StepStatus
    started_at: datetime
    ended_at: datetime | None = None
    attempts: int = 0
    output: str | None = None
    error: str | None = None
    error_kind: str | None = None

    @property
    def duration_seconds(self) -> float:
        """Get step duration in seconds."""
        if self.ended_at:
            return (self.ended_at - self.started_at).total_seconds()
        return 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "step_id": self.step_id,
            "stage": self.stage,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "attempts": self.attempts,
            "output": self.output,
            "error": self.error,
            "error_kind": self.error_kind,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepOutcome":
        """Create from dictionary."""
        return cls(
            step_id=data["step_id"],
            stage=data.get("stage", "forward"),
            status=StepStatus(data["status"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            ended_at=datetime.fromisoformat(data["ended_at"]) if data.get("ended_at") else None,
            attempts=data.get("attempts", 0),
            output=data.get("output"),
            error=data.get("error"),
            error_kind=data.get("error_kind"),
        )


@dataclass
class Run:
    """A live execution of a procedure against one resource."""

    procedure_id: str
    resource_key: str
    procedure_digest: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: RunStatus = RunStatus.PENDING

    # Forward progress
    step_index: int = 0
    phase: StepPhase = StepPhase.ENTRY_GATE
    action_in_flight: bool = False
    gate_rejections: int = 0
    outputs: dict[str, Any] = field(default_factory=dict)
    step_outcomes: list[StepOutcome] = field(default_factory=list)

    # Failure and rollback
    failed_step: str | None = None
    error_kind: str | None = None
    error_message: str | None = None
    rollback_index: int = 0
    rollback_state: RollbackState = RollbackState.NOT_REQUIRED
    rollback_failed_step: str | None = None
    rollback_error: str | None = None

    # Metadata
    operator: str = "unknown"
    lock_held: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def duration_seconds(self) -> float:
        """Get run duration in seconds."""
        end = self.completed_at or utcnow()
        return (end - self.created_at).total_seconds()

    def outcome_for(self, step_id: str, stage: str = "forward") -> StepOutcome | None:
        """Latest outcome recorded for a step."""
        for outcome in reversed(self.step_outcomes):
            if outcome.step_id == step_id and outcome.stage == stage:
                return outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "procedure_id": self.procedure_id,
            "procedure_digest": self.procedure_digest,
            "resource_key": self.resource_key,
            "status": self.status.value,
            "step_index": self.step_index,
            "phase": self.phase.value,
            "action_in_flight": self.action_in_flight,
            "gate_rejections": self.gate_rejections,
            "outputs": self.outputs,
            "step_outcomes": [o.to_dict() for o in self.step_outcomes],
            "failed_step": self.failed_step,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "rollback_index": self.rollback_index,
            "rollback_state": self.rollback_state.value,
            "rollback_failed_step": self.rollback_failed_step,
            "rollback_error": self.rollback_error,
            "operator": self.operator,
            "lock_held": self.lock_held,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Run":
        """Create from dictionary."""
        run = cls(
            id=data["id"],
            procedure_id=data["procedure_id"],
            procedure_digest=data.get("procedure_digest", ""),
            resource_key=data["resource_key"],
            status=RunStatus(data.get("status", "pending")),
            step_index=data.get("step_index", 0),
            phase=StepPhase(data.get("phase", "entry_gate")),
            action_in_flight=data.get("action_in_flight", False),
            gate_rejections=data.get("gate_rejections", 0),
            outputs=data.get("outputs", {}),
            step_outcomes=[StepOutcome.from_dict(o) for o in data.get("step_outcomes", [])],
            failed_step=data.get("failed_step"),
            error_kind=data.get("error_kind"),
            error_message=data.get("error_message"),
            rollback_index=data.get("rollback_index", 0),
            rollback_state=RollbackState(data.get("rollback_state", "not_required")),
            rollback_failed_step=data.get("rollback_failed_step"),
            rollback_error=data.get("rollback_error"),
            operator=data.get("operator", "unknown"),
            lock_held=data.get("lock_held", False),
        )

        if data.get("created_at"):
            run.created_at = datetime.fromisoformat(data["created_at"])
        if data.get("updated_at"):
            run.updated_at = datetime.fromisoformat(data["updated_at"])
        if data.get("completed_at"):
            run.completed_at = datetime.fromisoformat(data["completed_at"])

        return run


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit record."""

    run_id: str
    event: str
    timestamp: datetime = field(default_factory=utcnow)
    step_id: str | None = None
    detail: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "timestamp": self.timestamp.isoformat(),
            "step_id": self.step_id,
            "event": self.event,
            "detail": dict(self.detail),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEntry":
        """Create from dictionary."""
        return cls(
            run_id=data["run_id"],
            event=data["event"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            step_id=data.get("step_id"),
            detail=data.get("detail", {}),
        )
