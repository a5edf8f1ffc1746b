"""Application context shared across CLI commands."""

from dataclasses import dataclass
from typing import NoReturn

import typer

from dmypy_ls.config import Config
from dmypy_ls.errors import DaemonError
from dmypy_ls.output import Output


@dataclass(frozen=True, slots=True)
class AppContext:
    """Shared application state passed through Typer context."""

    out: Output
    cfg: Config

    def fail(self, error: DaemonError) -> NoReturn:
        """Report a daemon error and exit with code 1."""
        self.out.print_error_and_exit(error.code, str(error))


def use_context(ctx: typer.Context) -> AppContext:
    """Extract application context from Typer context."""
    result: AppContext = ctx.obj
    return result
