"""Action interface and built-in actions.

An action is the only place the engine touches the outside world. It receives an
:class:`ActionContext`, returns an output value on success and raises
:class:`~runguard.core.exceptions.TransientActionError` or
:class:`~runguard.core.exceptions.PermanentActionError` on failure. Whether a
failed action may be attempted again is decided by the step it is wired into,
not by the action.
"""

import asyncio
import inspect
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

import httpx
from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateError, Undefined

from runguard.core.async_utils import run_with_timeout
from runguard.core.exceptions import (
    PermanentActionError,
    TransientActionError,
    ValidationError,
)
from runguard.core.logging import StructuredLogger
from runguard.engine.schema import thaw

logger = StructuredLogger(__name__)

_jinja_env = Environment(loader=BaseLoader(), undefined=StrictUndefined, keep_trailing_newline=True)

# A param that is a single {{ expression }} and nothing else
_EXPRESSION = re.compile(r"^\s*\{\{(?P<expr>(?:(?!\{\{|\}\}).)*)\}\}\s*$", re.DOTALL)


@dataclass
class ActionContext:
    """Everything an action may know about the run invoking it."""

    run_id: str
    step_id: str
    resource_key: str
    params: Mapping[str, Any] = field(default_factory=dict)
    outputs: Mapping[str, Any] = field(default_factory=dict)
    stage: str = "forward"

    @property
    def variables(self) -> dict[str, Any]:
        """Template variables.

        Prior step outputs are available by step id, and under ``outputs`` for
        ids that are not valid names (``{{ outputs['enable-maintenance'] }}``).
        """
        return {
            **self.outputs,
            "outputs": dict(self.outputs),
            "resource_key": self.resource_key,
            "run_id": self.run_id,
            "step_id": self.step_id,
        }

    def _render_template(self, template: str) -> Any:
        """Render a Jinja2 template string.

        A lone expression evaluates to its native value, so ``{{ backup }}``
        passes a structured output through unchanged.
        """
        try:
            whole = _EXPRESSION.match(template)
            if not whole:
                return _jinja_env.from_string(template).render(**self.variables)

            result = _jinja_env.compile_expression(whole.group("expr"), undefined_to_none=False)(
                **self.variables
            )
            if isinstance(result, Undefined):
                raise PermanentActionError(f"Template error in {template!r}: undefined value")
            return result
        except TemplateError as e:
            raise PermanentActionError(f"Template error in {template!r}: {e}")

    def render(self, value: Any) -> Any:
        """Render templates in strings, recursively."""
        if isinstance(value, str):
            if "{{" not in value and "{%" not in value:
                return value
            return self._render_template(value)
        if isinstance(value, Mapping):
            return {k: self.render(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.render(v) for v in value]
        return value

    def param(self, name: str, default: Any = None) -> Any:
        """Get a rendered parameter."""
        if name not in self.params:
            return default
        return self.render(thaw(self.params[name]))


class Action(ABC):
    """Contract for every external side-effecting operation."""

    name: str = ""

    @abstractmethod
    async def execute(self, context: ActionContext) -> Any:
        """Perform the action and return its output."""


class FunctionAction(Action):
    """Adapt a plain (sync or async) callable to the action contract."""

    def __init__(self, func: Callable[[ActionContext], Any | Awaitable[Any]], name: str = ""):
        self._func = func
        self.name = name or getattr(func, "__name__", "function")

    async def execute(self, context: ActionContext) -> Any:
        result = self._func(context)
        if inspect.isawaitable(result):
            result = await result
        return result


class EchoAction(Action):
    """Return the rendered ``value`` parameter."""

    name = "echo"

    async def execute(self, context: ActionContext) -> Any:
        return context.param("value", "")


class ManualAction(Action):
    """A step the operator performs by hand; pair it with a human gate."""

    name = "manual"

    async def execute(self, context: ActionContext) -> Any:
        instruction = context.param("instruction", f"perform step '{context.step_id}' manually")
        logger.info("Manual step", run_id=context.run_id, step=context.step_id, instruction=instruction)
        return instruction


class ShellAction(Action):
    """Run a shell command.

    Params:
        command: command line (Jinja2 template)
        timeout: seconds before the command is killed (transient failure)
        transient_exit_codes: exit codes worth retrying
        environment: extra environment variables
    """

    name = "shell"

    def __init__(self, shell: str = "/bin/bash", default_timeout: float = 300.0):
        self.shell = shell
        self.default_timeout = default_timeout

    def _environment(self, context: ActionContext) -> dict[str, str]:
        env = os.environ.copy()
        for key, value in (context.param("environment") or {}).items():
            env[key] = str(value)

        env["RUNGUARD_RUN_ID"] = context.run_id
        env["RUNGUARD_STEP_ID"] = context.step_id
        env["RUNGUARD_RESOURCE_KEY"] = context.resource_key
        for step_id, output in context.outputs.items():
            key = re.sub(r"\W", "_", step_id).upper()
            env[f"RUNGUARD_OUTPUT_{key}"] = str(output)
        return env

    async def execute(self, context: ActionContext) -> Any:
        command = context.param("command")
        if not command:
            raise PermanentActionError("shell action requires a 'command' param", action=self.name)

        timeout = float(context.param("timeout", self.default_timeout))
        transient_codes = {int(c) for c in context.param("transient_exit_codes", [])}

        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._environment(context),
            executable=self.shell if os.path.exists(self.shell) else None,
        )

        try:
            stdout, stderr = await run_with_timeout(
                proc.communicate(),
                timeout,
                f"Command timed out after {timeout}s",
            )
        except TransientActionError:
            proc.kill()
            await proc.wait()
            raise

        if proc.returncode == 0:
            return stdout.decode(errors="replace").strip()

        message = stderr.decode(errors="replace").strip() or f"Exit code: {proc.returncode}"
        details = {"return_code": proc.returncode}
        if proc.returncode in transient_codes:
            raise TransientActionError(message, action=self.name, details=details)
        raise PermanentActionError(message, action=self.name, details=details)


class HttpAction(Action):
    """Call an HTTP API, e.g. to start or query a cloud operation.

    Params:
        url, method (GET), headers, json, timeout (30)
        field: dotted path into the JSON response used as output
    """

    name = "http"

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    @staticmethod
    def _extract(data: Any, path: str) -> Any:
        for part in path.split("."):
            if isinstance(data, Mapping) and part in data:
                data = data[part]
            elif isinstance(data, list) and part.isdigit() and int(part) < len(data):
                data = data[int(part)]
            else:
                raise PermanentActionError(f"Response has no field '{path}'")
        return data

    async def execute(self, context: ActionContext) -> Any:
        url = context.param("url")
        if not url:
            raise PermanentActionError("http action requires a 'url' param", action=self.name)

        method = str(context.param("method", "GET")).upper()
        timeout = float(context.param("timeout", 30))

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    url,
                    headers=context.param("headers"),
                    json=context.param("json"),
                )
        except httpx.TimeoutException as e:
            raise TransientActionError(f"{method} {url} timed out: {e}", action=self.name)
        except httpx.TransportError as e:
            raise TransientActionError(f"{method} {url} failed: {e}", action=self.name)

        details = {"status_code": response.status_code}
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientActionError(
                f"{method} {url} returned {response.status_code}", action=self.name, details=details
            )
        if response.status_code >= 400:
            raise PermanentActionError(
                f"{method} {url} returned {response.status_code}: {response.text[:200]}",
                action=self.name,
                details=details,
            )

        field_path = context.param("field")
        if not field_path:
            return response.text.strip()

        try:
            payload = response.json()
        except ValueError:
            raise PermanentActionError(f"{method} {url} did not return JSON", action=self.name)
        return self._extract(payload, field_path)


class ActionRegistry:
    """Map action identifiers used in procedure documents to implementations."""

    def __init__(self, include_builtins: bool = True):
        self._actions: dict[str, Action] = {}
        if include_builtins:
            for action in (EchoAction(), ManualAction(), ShellAction(), HttpAction()):
                self.register(action.name, action)

    def register(
        self,
        name: str,
        action: Action | Callable[[ActionContext], Any],
        replace: bool = False,
    ) -> None:
        """Register an action (or a callable) under ``name``."""
        if name in self._actions and not replace:
            raise ValidationError(f"Action already registered: {name}")
        if not isinstance(action, Action):
            action = FunctionAction(action, name=name)
        self._actions[name] = action

    def get(self, name: str) -> Action:
        """Get an action by identifier."""
        try:
            return self._actions[name]
        except KeyError:
            raise PermanentActionError(f"Unknown action: {name}", action=name)

    def names(self) -> list[str]:
        return sorted(self._actions)

    def __contains__(self, name: object) -> bool:
        return name in self._actions
