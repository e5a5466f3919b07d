"""Click context object for sharing state across commands."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import click

from runguard.config import RunGuardConfig, get_default_config
from runguard.core.logging import LogLevel, StructuredLogger, setup_logging
from runguard.core.output import OutputFormat, OutputFormatter

if TYPE_CHECKING:
    from runguard.engine.actions import ActionRegistry
    from runguard.engine.orchestrator import RunOrchestrator
    from runguard.engine.registry import ProcedureRegistry


class RunGuardContext:
    """Shared context object for runguard commands.

    This object is passed through Click's context mechanism and provides
    access to configuration, the output formatter and a lazily built engine.
    """

    def __init__(
        self,
        config: RunGuardConfig | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        color: bool = True,
    ):
        self._config = config or get_default_config()

        # Output settings (CLI overrides config)
        self._output_format = output_format or self._config.global_settings.output_format
        self._verbose = verbose
        self._quiet = quiet
        self._color = color and self._config.global_settings.color != "never"

        log_level = LogLevel.from_flags(verbose, quiet, default=self._config.global_settings.verbosity)
        setup_logging(log_level, rich_output=self._color)
        self._logger = StructuredLogger("context")

        self._output = OutputFormatter(
            format=self._output_format,
            color=self._color,
            quiet=quiet,
        )

        # Lazy-loaded engine
        self._actions: ActionRegistry | None = None
        self._registry: ProcedureRegistry | None = None
        self._orchestrator: RunOrchestrator | None = None

    @property
    def config(self) -> RunGuardConfig:
        """Get the loaded configuration."""
        return self._config

    @property
    def output(self) -> OutputFormatter:
        """Get the output formatter."""
        return self._output

    @property
    def output_format(self) -> OutputFormat:
        return self._output_format

    @property
    def verbose(self) -> int:
        return self._verbose

    @property
    def quiet(self) -> bool:
        return self._quiet

    @property
    def state_dir(self) -> Path:
        return self._config.engine.get_state_dir()

    @property
    def procedures_dir(self) -> Path:
        """Configured procedures directory, falling back to ./procedures."""
        return self._config.engine.get_procedures_dir() or Path.cwd() / "procedures"

    @property
    def actions(self) -> "ActionRegistry":
        """Get or create the action registry."""
        if self._actions is None:
            from runguard.engine.actions import ActionRegistry

            self._actions = ActionRegistry()
        return self._actions

    @property
    def registry(self) -> "ProcedureRegistry":
        """Get or create the procedure registry, loading the procedures directory."""
        if self._registry is None:
            from runguard.engine.registry import ProcedureRegistry

            self._registry = ProcedureRegistry(self.actions)
            loaded = self._registry.load_directory(self.procedures_dir)
            self._logger.debug("Loaded procedures", directory=str(self.procedures_dir), count=len(loaded))
        return self._registry

    @property
    def orchestrator(self) -> "RunOrchestrator":
        """Get or create the run orchestrator."""
        if self._orchestrator is None:
            from runguard.engine.audit import AuditLog
            from runguard.engine.orchestrator import RunOrchestrator
            from runguard.engine.store import CheckpointStore

            engine = self._config.engine
            operator = engine.get_operator()
            self._orchestrator = RunOrchestrator(
                registry=self.registry,
                actions=self.actions,
                store=CheckpointStore(self.state_dir),
                audit=AuditLog(self.state_dir / "audit", operator=operator),
                config=engine,
                operator=operator,
            )
        return self._orchestrator


# Click decorator for passing context
pass_context = click.make_pass_decorator(RunGuardContext, ensure=True)
