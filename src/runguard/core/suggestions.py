"""'Did you mean?' suggestions for commands and procedure ids."""

from difflib import get_close_matches
from typing import Sequence

import click


def suggest(
    typo: str,
    candidates: Sequence[str],
    n: int = 3,
    cutoff: float = 0.6,
) -> list[str]:
    """Find names similar to a mistyped one.

    Args:
        typo: The mistyped name
        candidates: Known names
        n: Maximum number of suggestions
        cutoff: Similarity threshold (0-1)

    Returns:
        List of similar names, best match first
    """
    return get_close_matches(typo, list(candidates), n=n, cutoff=cutoff)


def format_suggestions(suggestions: list[str], markup: bool = True) -> str:
    """Format suggestions for display."""
    if not suggestions:
        return ""

    def fmt(s: str) -> str:
        return f"[cyan]{s}[/cyan]" if markup else s

    if len(suggestions) == 1:
        return f"Did you mean: {fmt(suggestions[0])}?"

    formatted = ", ".join(fmt(s) for s in suggestions[:-1])
    return f"Did you mean: {formatted} or {fmt(suggestions[-1])}?"


class SuggestingGroup(click.Group):
    """Click Group that suggests similar commands on errors."""

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError as e:
            if args and "No such command" in str(e):
                cmd_name = args[0]
                suggestions = suggest(cmd_name, list(self.commands.keys()))
                if suggestions:
                    raise click.UsageError(
                        f"No such command '{cmd_name}'. {format_suggestions(suggestions, markup=False)}",
                        ctx,
                    )
            raise
