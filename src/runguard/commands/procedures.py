"""Procedure definition commands."""

from pathlib import Path

import click

from runguard.core.context import RunGuardContext, pass_context
from runguard.core.exceptions import ValidationError
from runguard.core.output import OutputFormat
from runguard.engine.registry import ProcedureRegistry
from runguard.engine.schema import Gate


@click.group()
@pass_context
def procedures(ctx: RunGuardContext) -> None:
    """Procedure definitions - list, show, validate.

    \b
    Examples:
        runguard procedures list
        runguard procedures show resize-db
        runguard procedures validate ./procedures/resize-db.yaml
    """
    pass


@procedures.command("list")
@pass_context
def list_procedures(ctx: RunGuardContext) -> None:
    """List registered procedures."""
    registered = ctx.registry.list()
    if not registered:
        ctx.output.print_info(f"No procedures found in {ctx.procedures_dir}")
        return

    rows = [
        {
            "id": p.id,
            "version": p.version,
            "steps": len(p.steps),
            "rollback_steps": len(p.rollback_steps),
            "resource_key": p.resource_key or "",
            "file": Path(p.source_file).name if p.source_file else "",
        }
        for p in registered
    ]
    ctx.output.print_table(rows, title="Procedures")


@procedures.command()
@click.argument("procedure_id")
@pass_context
def show(ctx: RunGuardContext, procedure_id: str) -> None:
    """Show a procedure's steps, gates and rollback steps."""
    procedure = ctx.registry.get(procedure_id)

    if ctx.output_format != OutputFormat.TABLE:
        data = procedure.to_dict()
        data["digest"] = procedure.digest
        ctx.output.print_data(data)
        return

    ctx.output.print_header(f"{procedure.id} (v{procedure.version})")
    if procedure.description:
        ctx.output.print(procedure.description)

    for title, steps in (("Steps", procedure.steps), ("Rollback Steps", procedure.rollback_steps)):
        if not steps:
            continue
        rows = [
            {
                "#": i + 1,
                "id": s.id,
                "action": s.action,
                "entry_gate": _gate_label(s.entry_gate),
                "exit_gate": _gate_label(s.exit_gate),
                "retryable": "yes" if s.retryable else "no",
            }
            for i, s in enumerate(steps)
        ]
        ctx.output.print_table(rows, title=title)


@procedures.command()
@click.argument("file", type=click.Path(exists=True))
@pass_context
def validate(ctx: RunGuardContext, file: str) -> None:
    """Validate a procedure definition file.

    Checks the document schema and that every action it references exists.
    """
    procedure = ProcedureRegistry.read_file(file)
    issues = ProcedureRegistry(ctx.actions).validate(procedure)
    if issues:
        raise ValidationError(f"Procedure '{procedure.id}' is invalid", issues=issues)

    ctx.output.print_success(
        f"Procedure '{procedure.id}' is valid "
        f"({len(procedure.steps)} steps, {len(procedure.rollback_steps)} rollback steps)"
    )


def _gate_label(gate: Gate | None) -> str:
    if gate is None:
        return "-"
    if gate.is_human:
        return f"human: {gate.confirmation!r}"
    return f"{gate.poll} == {gate.expect!r}"
