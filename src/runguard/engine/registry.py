"""Procedure registry and definition loading."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pydantic
import yaml

from runguard.core.exceptions import ProcedureConflict, ProcedureNotFound, ValidationError
from runguard.core.logging import StructuredLogger
from runguard.core.suggestions import suggest
from runguard.engine.actions import ActionRegistry
from runguard.engine.definitions import validate_procedure
from runguard.engine.schema import Procedure

logger = StructuredLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


def format_validation_errors(error: pydantic.ValidationError) -> list[str]:
    """Flatten pydantic errors into ``location: message`` lines."""
    issues = []
    for err in error.errors():
        location = ".".join(str(part) for part in err["loc"]) or "procedure"
        issues.append(f"{location}: {err['msg']}")
    return issues


class ProcedureRegistry:
    """Hold immutable procedure definitions by id.

    Registering a second, different definition under an id that is already
    taken is refused: runs in flight must keep seeing the definition they
    started with.
    """

    def __init__(self, actions: ActionRegistry | None = None):
        """Initialize registry.

        Args:
            actions: When given, step actions and gate poll actions are checked
                against it at registration time
        """
        self._procedures: dict[str, Procedure] = {}
        self._actions = actions

    def validate(self, procedure: Procedure) -> list[str]:
        """Check that every action a procedure references is available."""
        issues: list[str] = []
        if self._actions is None:
            return issues

        for step in (*procedure.steps, *procedure.rollback_steps):
            if step.action not in self._actions:
                issues.append(f"Step {step.id} uses unknown action '{step.action}'")
            for gate in (step.entry_gate, step.exit_gate):
                if gate and not gate.is_human and gate.poll not in self._actions:
                    issues.append(f"Step {step.id} gate polls unknown action '{gate.poll}'")
        return issues

    def register(self, procedure: Procedure) -> Procedure:
        """Register a procedure.

        Returns:
            The registered procedure (the existing one if identical)

        Raises:
            ValidationError: the procedure references unknown actions
            ProcedureConflict: a different definition already uses this id
        """
        issues = self.validate(procedure)
        if issues:
            raise ValidationError(f"Procedure '{procedure.id}' is invalid", issues=issues)

        existing = self._procedures.get(procedure.id)
        if existing is not None:
            if existing.digest == procedure.digest:
                return existing
            raise ProcedureConflict(
                f"Procedure '{procedure.id}' is already registered with a different definition",
                details={"source": existing.source_file or "<memory>"},
            )

        self._procedures[procedure.id] = procedure
        logger.debug("Registered procedure", id=procedure.id, steps=len(procedure.steps))
        return procedure

    def get(self, procedure_id: str) -> Procedure:
        """Get a procedure by id."""
        try:
            return self._procedures[procedure_id]
        except KeyError:
            suggestions = suggest(procedure_id, list(self._procedures))
            raise ProcedureNotFound(
                f"Procedure not found: {procedure_id}",
                procedure_id=procedure_id,
                suggestions=suggestions,
            )

    def list(self) -> list[Procedure]:
        return [self._procedures[k] for k in sorted(self._procedures)]

    def __contains__(self, procedure_id: object) -> bool:
        return procedure_id in self._procedures

    # ------------------------------------------------------------------
    # Loading definitions

    @staticmethod
    def parse(data: Any, source: str | None = None) -> Procedure:
        """Build a procedure from a parsed definition document."""
        if not isinstance(data, dict):
            raise ValidationError(f"Procedure definition must be a mapping: {source or '<data>'}")
        try:
            spec = validate_procedure(data)
        except pydantic.ValidationError as e:
            issues = format_validation_errors(e)
            raise ValidationError(
                f"Invalid procedure definition {source or data.get('id', '<data>')}",
                issues=issues,
            )
        return spec.to_procedure(source_file=source)

    @classmethod
    def read_file(cls, file_path: str | Path) -> Procedure:
        """Parse a YAML or JSON definition file without registering it."""
        path = Path(file_path)

        if not path.exists():
            raise ValidationError(f"Procedure file not found: {path}")
        if path.suffix not in DEFINITION_SUFFIXES:
            raise ValidationError(f"Unsupported procedure format: {path.suffix}")

        try:
            content = path.read_text()
            data = json.loads(content) if path.suffix == ".json" else yaml.safe_load(content)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ValidationError(f"Cannot read procedure file {path}: {e}")

        if not data:
            raise ValidationError(f"Empty procedure file: {path}")

        return cls.parse(data, source=str(path))

    def load_file(self, file_path: str | Path) -> Procedure:
        """Parse and register a definition file."""
        return self.register(self.read_file(file_path))

    def load_directory(self, directory: str | Path) -> list[Procedure]:
        """Register every definition found in ``directory``.

        Files that fail to load are logged and skipped so one broken definition
        does not hide the others.
        """
        directory = Path(directory)
        loaded: list[Procedure] = []

        if not directory.is_dir():
            logger.warning(f"Procedures directory not found: {directory}")
            return loaded

        for path in sorted(directory.iterdir()):
            if path.suffix not in DEFINITION_SUFFIXES:
                continue
            try:
                loaded.append(self.load_file(path))
            except (ValidationError, ProcedureConflict) as e:
                logger.warning(f"Failed to load procedure {path}: {e}")
                for issue in getattr(e, "issues", []):
                    logger.warning(f"  {issue}")

        return loaded
