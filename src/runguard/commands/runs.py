"""Run lifecycle commands: start, status, confirm, resume, abort, rollback."""

from typing import Any

import click

from runguard.core.async_utils import run_sync
from runguard.core.context import RunGuardContext, pass_context
from runguard.core.exit_codes import exit_code_for_status
from runguard.core.output import OutputFormat, format_duration
from runguard.engine.schema import Run


def _summary(run: Run) -> dict[str, Any]:
    return {
        "run_id": run.id,
        "procedure": run.procedure_id,
        "resource_key": run.resource_key,
        "status": run.status.value,
        "step_index": run.step_index,
        "phase": run.phase.value,
        "failed_step": run.failed_step,
        "error_kind": run.error_kind,
        "error": run.error_message,
        "rollback_state": run.rollback_state.value,
        "rollback_error": run.rollback_error,
    }


def _finish(ctx: RunGuardContext, run: Run) -> None:
    """Report a run's outcome and exit with the matching code."""
    report = ctx.orchestrator.status(run.id)

    if ctx.output_format in (OutputFormat.JSON, OutputFormat.YAML, OutputFormat.RAW):
        data = _summary(run)
        data["pending_gate"] = report["pending_gate"]
        ctx.output.print_data(data)
    else:
        status = ctx.output.style_status(run.status.value)
        ctx.output.print(f"Run [bold]{run.id}[/bold] ({run.procedure_id} on {run.resource_key}): {status}")

        gate = report["pending_gate"]
        if gate:
            ctx.output.print_panel(
                f"{gate['prompt']}\n\n"
                f'runguard confirm {run.id} "{gate["confirmation"]}"',
                title=f"Waiting on {report['current_step']} ({gate['gate']})",
                style="yellow",
            )
        if run.failed_step:
            ctx.output.print_error(f"Step {run.failed_step} failed ({run.error_kind}): {run.error_message}")
            ctx.output.print(f"Rollback: {run.rollback_state.value}")
        if run.rollback_error:
            ctx.output.print_error(f"{run.rollback_error}; manual intervention required")

    click.get_current_context().exit(exit_code_for_status(run.status.value))


@click.command()
@click.argument("procedure_id")
@click.argument("resource_key", required=False)
@pass_context
def start(ctx: RunGuardContext, procedure_id: str, resource_key: str | None) -> None:
    """Start a run of a procedure against a resource.

    RESOURCE_KEY defaults to the key the procedure declares.

    \b
    Examples:
        runguard start resize-db db-prod-1
    """
    run = run_sync(ctx.orchestrator.start(procedure_id, resource_key))
    _finish(ctx, run)


@click.command()
@click.argument("run_id")
@click.argument("token")
@pass_context
def confirm(ctx: RunGuardContext, run_id: str, token: str) -> None:
    """Confirm the human gate a run is waiting on.

    TOKEN must be exactly the gate's confirmation text.

    \b
    Examples:
        runguard confirm 3f2a9c1b7d40 "maintenance confirmed"
    """
    run = run_sync(ctx.orchestrator.confirm(run_id, token))
    _finish(ctx, run)


@click.command()
@click.argument("run_id", required=False)
@pass_context
def resume(ctx: RunGuardContext, run_id: str | None) -> None:
    """Resume a run from its last checkpoint.

    Without RUN_ID, list the runs that can be resumed.
    """
    if run_id is None:
        runs = ctx.orchestrator.resumable_runs()
        if not runs:
            ctx.output.print_info("No resumable runs")
            return
        ctx.output.print_table(
            [_row(r) for r in runs],
            columns=["run_id", "procedure", "resource", "status", "step", "updated"],
            title="Resumable Runs",
        )
        return

    run = run_sync(ctx.orchestrator.resume(run_id))
    _finish(ctx, run)


@click.command()
@click.argument("run_id")
@click.option("-r", "--reason", default=None, help="Reason recorded in the audit log")
@pass_context
def abort(ctx: RunGuardContext, run_id: str, reason: str | None) -> None:
    """Abort a run waiting on a gate, or a failed run instead of rolling back."""
    run = run_sync(ctx.orchestrator.abort(run_id, reason))
    _finish(ctx, run)


@click.command()
@click.argument("run_id")
@pass_context
def rollback(ctx: RunGuardContext, run_id: str) -> None:
    """Roll back a failed run."""
    run = run_sync(ctx.orchestrator.rollback(run_id))
    _finish(ctx, run)


@click.command()
@click.argument("run_id")
@pass_context
def status(ctx: RunGuardContext, run_id: str) -> None:
    """Show the state of a run and its step log."""
    report = ctx.orchestrator.status(run_id)

    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data(report)
        return

    ctx.output.print_header(f"Run {report['id']}")
    overview = {
        "procedure": report["procedure_id"],
        "resource_key": report["resource_key"],
        "status": ctx.output.style_status(report["status"]),
        "step": _position(report),
        "phase": report["phase"],
        "operator": report["operator"] or "-",
        "duration": format_duration(report["duration_seconds"]),
    }
    if report["failed_step"]:
        overview["failed_step"] = report["failed_step"]
        overview["error_kind"] = report["error_kind"]
        overview["error"] = report["error_message"]
    if report["rollback_state"] != "not_required" or report["failed_step"]:
        overview["rollback"] = report["rollback_state"]
    if report["rollback_error"]:
        overview["rollback_error"] = report["rollback_error"]
    ctx.output.print_data(overview)

    gate = report["pending_gate"]
    if gate:
        ctx.output.print_warning(
            f"Waiting on {gate['gate']} of {report['current_step']}: {gate['prompt']} "
            f"(rejections: {gate['rejections']})"
        )

    rows = [
        {
            "step": o["step_id"],
            "stage": o["stage"],
            "status": o["status"],
            "attempts": o["attempts"],
            "error": o["error"] or "",
        }
        for o in report["step_outcomes"]
    ]
    if rows:
        ctx.output.print_table(rows, title="Steps")


@click.command("runs")
@click.option("--active", is_flag=True, help="Only runs that have not terminated")
@click.option("-n", "--limit", default=20, show_default=True, help="Maximum runs to show")
@pass_context
def list_runs(ctx: RunGuardContext, active: bool, limit: int) -> None:
    """List runs, newest first."""
    runs = ctx.orchestrator.list_runs(active_only=active, limit=limit)
    if not runs:
        ctx.output.print_info("No runs found")
        return

    ctx.output.print_table(
        [_row(r) for r in runs],
        columns=["run_id", "procedure", "resource", "status", "step", "updated"],
        title="Runs",
    )


@click.command()
@click.argument("run_id")
@pass_context
def audit(ctx: RunGuardContext, run_id: str) -> None:
    """Show the audit trail of a run."""
    entries = ctx.orchestrator.audit.read(run_id)
    if not entries:
        ctx.output.print_info(f"No audit entries for run {run_id}")
        return

    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data([e.to_dict() for e in entries])
        return

    rows = [
        {
            "time": e.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            "event": e.event,
            "step": e.step_id or "",
            "detail": ", ".join(f"{k}={v}" for k, v in e.detail.items() if v is not None),
        }
        for e in entries
    ]
    ctx.output.print_table(rows, title=f"Audit Trail: {run_id}")


@click.command()
@click.option("--days", default=30, show_default=True, help="Remove terminal runs older than this")
@pass_context
def cleanup(ctx: RunGuardContext, days: int) -> None:
    """Remove checkpoints of old terminated runs.

    Audit trails are kept.
    """
    removed = ctx.orchestrator.store.cleanup_old(days=days)
    ctx.output.print_success(f"Removed {removed} run(s) older than {days} days")


def _position(report: dict[str, Any]) -> str:
    total = report["total_steps"]
    index = report["step_index"]
    if total is None:
        return str(index)
    return f"{min(index + 1, total)}/{total}"


def _row(run: Run) -> dict[str, Any]:
    return {
        "run_id": run.id,
        "procedure": run.procedure_id,
        "resource": run.resource_key,
        "status": run.status.value,
        "step": run.step_index,
        "updated": run.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
    }
