"""Serve the language server over stdio."""

import typer

from dmypy_ls.app_context import use_context
from dmypy_ls.server import start


def serve(ctx: typer.Context) -> None:
    """Run the language server on stdin/stdout (what editors launch)."""
    use_context(ctx)
    start()
