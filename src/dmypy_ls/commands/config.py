"""Show the resolved dmypy command."""

import typer

from dmypy_ls.app_context import use_context
from dmypy_ls.errors import SpawnFailure


def config(ctx: typer.Context) -> None:
    """Show how dmypy will be launched for the current directory."""
    app = use_context(ctx)
    try:
        spec = app.cfg.launch_spec()
    except SpawnFailure as e:
        app.fail(e)
    app.out.print_config(spec, app.cfg.config_path)
