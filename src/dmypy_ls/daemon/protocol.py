"""Commands, results and argument vectors for talking to dmypy.

The daemon is started once as ``dmypy daemon -- <mypy flags>`` and then driven
by short-lived ``dmypy`` client invocations, one at a time:

Check:   dmypy check src/app.py src/util.py
Status:  dmypy status
Inspect: dmypy inspect --show type src/app.py:12:5
Stop:    dmypy stop
"""

import itertools
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, NamedTuple

from dmypy_ls.errors import DaemonError, error_from_code

# Flags the daemon is started with. Absolute paths, columns and error ends make the
# report parseable line by line; --export-types is required by `dmypy inspect`.
DEFAULT_MYPY_FLAGS: tuple[str, ...] = (
    "--show-absolute-path",
    "--show-column-numbers",
    "--show-error-end",
    "--show-error-codes",
    "--hide-error-context",
    "--no-color-output",
    "--no-error-summary",
    "--no-pretty",
    "--export-types",
)

_sequence = itertools.count(1)


def _next_sequence() -> int:
    return next(_sequence)


class LaunchSpec(NamedTuple):
    """How to run dmypy for one workspace, as produced by the config resolver."""

    argv: tuple[str, ...]  # dmypy base command, e.g. ("uv", "run", "dmypy", "--status-file", "...")
    cwd: Path
    flags: tuple[str, ...] = DEFAULT_MYPY_FLAGS


class CancelToken:
    """Cooperative cancellation flag shared between a command and its issuer."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        """Mark the command cancelled. Checked at the next scheduling decision."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""
        return self._cancelled

    def __repr__(self) -> str:
        return f"CancelToken(cancelled={self._cancelled})"


@dataclass(frozen=True, kw_only=True)
class Command:
    """A request to the daemon. Immutable once enqueued."""

    seq: int = field(default_factory=_next_sequence)
    cancel: CancelToken = field(default_factory=CancelToken, compare=False)

    # Client exit codes that count as a successful exchange.
    ok_codes: ClassVar[frozenset[int]] = frozenset({0})
    name: ClassVar[str] = "command"

    def client_args(self) -> tuple[str, ...]:
        """Arguments appended to the dmypy base command for this request."""
        return (self.name,)


@dataclass(frozen=True)
class Check(Command):
    """Re-check the project, reporting diagnostics for the given files."""

    paths: tuple[Path, ...]

    # dmypy check exits with 1 when it found errors; the report is still valid.
    ok_codes: ClassVar[frozenset[int]] = frozenset({0, 1})
    name: ClassVar[str] = "check"

    def client_args(self) -> tuple[str, ...]:
        return ("check", *(str(p) for p in self.paths))


@dataclass(frozen=True)
class Status(Command):
    """Ask whether the daemon is up."""

    name: ClassVar[str] = "status"


@dataclass(frozen=True)
class Restart(Command):
    """Respawn the daemon, clearing crash-loop state. Handled by the controller itself."""

    name: ClassVar[str] = "restart"


@dataclass(frozen=True)
class Stop(Command):
    """Ask the daemon to exit gracefully."""

    name: ClassVar[str] = "stop"


@dataclass(frozen=True)
class Inspect(Command):
    """Show the inferred type of the expression at ``path:line:column`` (1-based)."""

    location: str

    name: ClassVar[str] = "inspect"

    def client_args(self) -> tuple[str, ...]:
        return ("inspect", "--show", "type", self.location)


class CommandOutput(NamedTuple):
    """Raw result of one dmypy client invocation."""

    returncode: int
    stdout: str
    stderr: str = ""


@dataclass(frozen=True)
class DaemonResult:
    """Outcome of a submitted command: raw output on success, an error code otherwise.

    Crashes, spawn failures and cancellations all arrive through this one channel.
    """

    command: Command
    ok: bool
    output: str = ""
    error: str = ""
    message: str = ""

    @staticmethod
    def success(command: Command, output: str = "") -> "DaemonResult":
        """Build a success result."""
        return DaemonResult(command=command, ok=True, output=output)

    @staticmethod
    def fail(command: Command, error: DaemonError) -> "DaemonResult":
        """Build an error result from a typed daemon error."""
        return DaemonResult(command=command, ok=False, error=error.code, message=str(error))

    def exception(self) -> DaemonError | None:
        """Return the typed error for a failed result, or None on success."""
        if self.ok:
            return None
        return error_from_code(self.error, self.message)


def daemon_argv(spec: LaunchSpec) -> list[str]:
    """Argument vector that runs the daemon in the foreground."""
    return [*spec.argv, "daemon", "--", *spec.flags]


def client_argv(spec: LaunchSpec, command: Command) -> list[str]:
    """Argument vector of the dmypy client invocation that carries a command."""
    return [*spec.argv, *command.client_args()]
