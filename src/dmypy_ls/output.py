"""Structured output for CLI and JSON modes."""

# ruff: noqa: T201  # print() is how this module produces CLI output

import json
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import NoReturn

import typer

from dmypy_ls.daemon.protocol import LaunchSpec, daemon_argv
from dmypy_ls.diagnostics import Diagnostic


class Output:
    """Handles all CLI output in JSON or human-readable format."""

    def __init__(self, *, json_mode: bool) -> None:
        """Initialize output handler.

        Args:
            json_mode: If True, output JSON envelopes; otherwise human-readable text.

        """
        self._json_mode = json_mode

    def _success(self, data: dict[str, object], message: str) -> None:
        """Print a success result in JSON or human-readable format."""
        if self._json_mode:
            print(json.dumps({"ok": True, "data": data}))
        else:
            print(message)

    def print_error_and_exit(self, code: str, message: str) -> NoReturn:
        """Print an error in JSON or human-readable format and exit with code 1.

        Raises:
            typer.Exit: Always, with code 1.

        """
        if self._json_mode:
            print(json.dumps({"ok": False, "error": code, "message": message}))
        else:
            print(f"Error: {message}", file=sys.stderr)
        raise typer.Exit(code=1)

    # --- Checking ---

    def print_diagnostics(self, diagnostics: Mapping[Path, Sequence[Diagnostic]]) -> None:
        """Print diagnostics grouped by document, in the daemon's report layout."""
        if self._json_mode:
            data = {
                str(path): [
                    {
                        "line": d.line,
                        "column": d.column,
                        "endLine": d.end_line,
                        "endColumn": d.end_column,
                        "severity": str(d.severity),
                        "code": d.code,
                        "message": d.message,
                    }
                    for d in diags
                ]
                for path, diags in diagnostics.items()
            }
            print(json.dumps({"ok": True, "data": {"diagnostics": data}}))
            return
        count = 0
        for path, diags in diagnostics.items():
            for d in diags:
                code = f"  [{d.code}]" if d.code else ""
                print(f"{path}:{d.line}:{d.column}: {d.severity}: {d.message}{code}")
                count += 1
        print(f"{count} diagnostic(s) in {len(diagnostics)} file(s).")

    # --- Configuration ---

    def print_config(self, spec: LaunchSpec, config_path: Path | None) -> None:
        """Print the resolved daemon launch command."""
        argv = daemon_argv(spec)
        source = str(config_path) if config_path is not None else "defaults"
        self._success(
            {"argv": argv, "cwd": str(spec.cwd), "config": source},
            f"Command: {' '.join(argv)}\nDirectory: {spec.cwd}\nConfig: {source}",
        )
