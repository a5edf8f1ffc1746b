"""Run one dmypy check and print its diagnostics."""

import asyncio
from pathlib import Path
from typing import Annotated

import typer

from dmypy_ls.app_context import use_context
from dmypy_ls.config import Config, resolve_command
from dmypy_ls.daemon.controller import DaemonController
from dmypy_ls.daemon.process import DmypyTransport
from dmypy_ls.daemon.protocol import Check, DaemonResult
from dmypy_ls.diagnostics import document_path, translate


async def _check_once(cfg: Config, paths: tuple[Path, ...]) -> DaemonResult:
    """Start a daemon, run a single check, and stop it again."""
    controller = DaemonController(
        cfg.workspace_root,
        resolve_command,
        DmypyTransport(start_timeout=cfg.start_timeout),
        submit_timeout=cfg.submit_timeout,
        stop_grace=cfg.stop_grace,
    )
    try:
        return await controller.submit(Check(paths=paths))
    finally:
        await controller.stop()


def check(
    ctx: typer.Context,
    paths: Annotated[list[Path], typer.Argument(help="Files to check.")],
) -> None:
    """Check files with a fresh dmypy daemon and print the diagnostics."""
    app = use_context(ctx)
    targets = tuple(document_path(p.resolve()) for p in paths)
    result = asyncio.run(_check_once(app.cfg, targets))
    error = result.exception()
    if error is not None:
        app.fail(error)
    diagnostics = translate(result.output, app.cfg.workspace_root)
    app.out.print_diagnostics(diagnostics)
    if any(diagnostics.values()):
        raise typer.Exit(code=1)
