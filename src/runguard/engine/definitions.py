"""Procedure definition document schema.

Documents are YAML or JSON mappings. Unknown keys are rejected everywhere, so a
definition cannot smuggle in fields the engine does not model (``skip``,
``optional``, ``bypass``...).
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from runguard.engine.schema import Gate, GateKind, Procedure, Step, freeze


class GateSpec(BaseModel):
    """Schema for an entry or exit gate."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["automatic", "human"]

    # automatic
    poll: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    expect: str | None = None
    timeout: float | None = Field(default=None, gt=0)
    initial_interval: float | None = Field(default=None, gt=0)
    max_interval: float | None = Field(default=None, gt=0)

    # human
    confirmation: str | None = None
    prompt: str | None = None
    max_rejections: int | None = Field(default=None, ge=1)

    @field_validator("expect", "confirmation", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @model_validator(mode="after")
    def validate_kind_fields(self) -> "GateSpec":
        """Ensure the fields match the gate kind."""
        if self.kind == "automatic":
            if not self.poll:
                raise ValueError("automatic gate must name a 'poll' action")
            if self.expect is None:
                raise ValueError("automatic gate must declare the 'expect' value")
            if self.confirmation is not None or self.max_rejections is not None:
                raise ValueError("automatic gate cannot take 'confirmation' or 'max_rejections'")
        else:
            if not self.confirmation or not self.confirmation.strip():
                raise ValueError("human gate must declare non-empty 'confirmation' text")
            if self.poll is not None or self.expect is not None:
                raise ValueError("human gate cannot take 'poll' or 'expect'")
        return self

    def to_gate(self) -> Gate:
        return Gate(
            kind=GateKind(self.kind),
            poll=self.poll,
            params=freeze(self.params),
            expect=self.expect,
            timeout=self.timeout,
            initial_interval=self.initial_interval,
            max_interval=self.max_interval,
            confirmation=self.confirmation,
            prompt=self.prompt,
            max_rejections=self.max_rejections,
        )


class StepSpec(BaseModel):
    """Schema for a procedure step."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    description: str = ""
    action: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    retryable: bool = False
    max_attempts: int | None = Field(default=None, ge=1)
    entry_gate: GateSpec | None = None
    exit_gate: GateSpec | None = None

    @model_validator(mode="after")
    def validate_retry_budget(self) -> "StepSpec":
        if not self.retryable and self.max_attempts not in (None, 1):
            raise ValueError(f"step '{self.id}' sets max_attempts but is not retryable")
        return self

    def to_step(self) -> Step:
        return Step(
            id=self.id,
            action=self.action,
            description=self.description,
            params=freeze(self.params),
            entry_gate=self.entry_gate.to_gate() if self.entry_gate else None,
            exit_gate=self.exit_gate.to_gate() if self.exit_gate else None,
            retryable=self.retryable,
            max_attempts=self.max_attempts,
        )


class ProcedureSpec(BaseModel):
    """Schema for a procedure definition document."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    description: str = ""
    version: str = "1"
    resource_key: str | None = None
    steps: list[StepSpec] = Field(min_length=1)
    rollback_steps: list[StepSpec] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> Any:
        return str(v) if isinstance(v, (int, float)) else v

    @model_validator(mode="after")
    def validate_steps(self) -> "ProcedureSpec":
        """Ensure step ids are unique and rollback steps never wait on a human."""
        # Forward and rollback outputs share one namespace
        seen: set[str] = set()
        for step in (*self.steps, *self.rollback_steps):
            if step.id in seen:
                raise ValueError(f"duplicate step id '{step.id}'")
            seen.add(step.id)

        for step in self.rollback_steps:
            for gate in (step.entry_gate, step.exit_gate):
                if gate is not None and gate.kind == "human":
                    raise ValueError(f"rollback step '{step.id}' cannot use a human gate")
        return self

    def to_procedure(self, source_file: str | None = None) -> Procedure:
        return Procedure(
            id=self.id,
            steps=tuple(s.to_step() for s in self.steps),
            rollback_steps=tuple(s.to_step() for s in self.rollback_steps),
            resource_key=self.resource_key,
            description=self.description,
            version=self.version,
            source_file=source_file,
        )


def validate_procedure(procedure_dict: dict[str, Any]) -> ProcedureSpec:
    """Validate a procedure dictionary against the schema.

    Args:
        procedure_dict: Dictionary representation of a procedure

    Returns:
        Validated ProcedureSpec object

    Raises:
        pydantic.ValidationError: If validation fails
    """
    return ProcedureSpec(**procedure_dict)
