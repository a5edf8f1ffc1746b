"""CLI entry point for dmypy-ls."""

from pathlib import Path
from typing import Annotated

import typer
from mm_clikit import TyperPlus

from dmypy_ls.app_context import AppContext
from dmypy_ls.commands.check import check
from dmypy_ls.commands.config import config
from dmypy_ls.commands.serve import serve
from dmypy_ls.config import Config
from dmypy_ls.errors import ConfigError
from dmypy_ls.log import setup_logging
from dmypy_ls.output import Output

app = TyperPlus(package_name="dmypy-ls")


@app.callback(invoke_without_command=True)
def callback(
    ctx: typer.Context,
    *,
    json_output: Annotated[bool, typer.Option("--json", help="Output results as JSON.")] = False,
    log_level: Annotated[str | None, typer.Option("--log-level", help="Log level (default: $DMYPYLS_LOG_LEVEL or INFO).")] = None,
) -> None:
    """Language server that reports dmypy diagnostics to your editor."""
    out = Output(json_mode=json_output)
    try:
        cfg = Config.build(Path.cwd())
    except ConfigError as e:
        out.print_error_and_exit("invalid_config", str(e))
    setup_logging(cfg.log_path, log_level)
    ctx.obj = AppContext(out=out, cfg=cfg)
    if ctx.invoked_subcommand is None:
        serve(ctx)


# Server
app.command()(serve)

# Tools
app.command()(check)
app.command()(config)
