"""Procedure execution engine."""

from runguard.engine.actions import Action, ActionContext, ActionRegistry, FunctionAction
from runguard.engine.audit import AuditLog
from runguard.engine.orchestrator import RunOrchestrator
from runguard.engine.registry import ProcedureRegistry
from runguard.engine.schema import (
    Gate,
    GateKind,
    Procedure,
    RollbackState,
    Run,
    RunStatus,
    Step,
    StepPhase,
)
from runguard.engine.store import CheckpointStore

__all__ = [
    "Action",
    "ActionContext",
    "ActionRegistry",
    "FunctionAction",
    "AuditLog",
    "CheckpointStore",
    "Gate",
    "GateKind",
    "Procedure",
    "ProcedureRegistry",
    "RollbackState",
    "Run",
    "RunOrchestrator",
    "RunStatus",
    "Step",
    "StepPhase",
]
