"""Daemon process ownership: spawning ``dmypy daemon``, running clients, termination."""

import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable
from typing import Protocol

from dmypy_ls.daemon.protocol import Command, CommandOutput, LaunchSpec, Status, Stop, client_argv, daemon_argv
from dmypy_ls.errors import SpawnFailure

logger = logging.getLogger(__name__)

# Polling parameters for readiness after spawn
_POLL_INTERVAL = 0.1
_RUNNING_MARKER = "Daemon is up and running"


class DaemonTransport(Protocol):
    """Process handle plus request channel for one daemon instance."""

    @property
    def pid(self) -> int | None: ...

    @property
    def alive(self) -> bool: ...

    async def spawn(self, spec: LaunchSpec) -> None: ...

    async def execute(self, command: Command) -> CommandOutput: ...

    async def wait_exit(self) -> int: ...

    async def shutdown(self, grace: float) -> None: ...


class DmypyTransport:
    """Runs ``dmypy daemon`` in the foreground and talks to it through ``dmypy`` clients."""

    def __init__(self, *, start_timeout: float = 10.0, on_output: Callable[[str], None] | None = None) -> None:
        """Initialize an idle transport.

        Args:
            start_timeout: Seconds to wait for the daemon to report it is up.
            on_output: Called with each line the daemon prints on stdout/stderr.

        """
        self._start_timeout = start_timeout
        self._on_output = on_output
        self._spec: LaunchSpec | None = None
        self._proc: asyncio.subprocess.Process | None = None
        # Strong reference to the output pump to prevent GC
        self._pump: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        """PID of the daemon process, if one was spawned."""
        return self._proc.pid if self._proc is not None else None

    @property
    def alive(self) -> bool:
        """Whether the daemon process is running."""
        return self._proc is not None and self._proc.returncode is None

    async def spawn(self, spec: LaunchSpec) -> None:
        """Start the daemon and wait until it answers ``dmypy status``.

        Raises:
            SpawnFailure: The command cannot be executed, exits early, or never becomes ready.

        """
        self._spec = spec
        if await self._status_up():
            # A daemon we do not own holds the status file; it would reject ours.
            logger.warning("Stopping stray dmypy daemon in %s", spec.cwd)
            await self._run(client_argv(spec, Stop()))

        argv = daemon_argv(spec)
        logger.info("Spawning daemon: %s [cwd=%s]", argv, spec.cwd)
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=spec.cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnFailure(f"Cannot execute {argv[0]!r}: {e}") from e
        self._pump = asyncio.ensure_future(self._pump_output(self._proc))

        deadline = asyncio.get_running_loop().time() + self._start_timeout
        while asyncio.get_running_loop().time() < deadline:
            if self._proc.returncode is not None:
                msg = f"dmypy daemon exited with code {self._proc.returncode} during startup."
                raise SpawnFailure(msg)
            if await self._status_up():
                logger.info("Daemon ready (pid %d)", self._proc.pid)
                return
            await asyncio.sleep(_POLL_INTERVAL)

        await self.shutdown(0.0)
        msg = f"dmypy daemon failed to start within {self._start_timeout}s."
        raise SpawnFailure(msg)

    async def execute(self, command: Command) -> CommandOutput:
        """Run the dmypy client that carries one command and collect its output."""
        if self._spec is None:
            msg = "Transport has not been spawned."
            raise RuntimeError(msg)
        return await self._run(client_argv(self._spec, command))

    async def wait_exit(self) -> int:
        """Wait for the daemon process to exit and return its exit code."""
        if self._proc is None:
            msg = "Transport has not been spawned."
            raise RuntimeError(msg)
        return await self._proc.wait()

    async def shutdown(self, grace: float) -> None:
        """Terminate the daemon via SIGTERM, falling back to SIGKILL after ``grace`` seconds."""
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.send_signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except TimeoutError:
            logger.warning("Daemon (pid %d) ignored SIGTERM, killing it", proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    async def _status_up(self) -> bool:
        """Check whether a daemon answers on the configured status file."""
        assert self._spec is not None  # noqa: S101
        try:
            output = await self._run(client_argv(self._spec, Status()))
        except OSError:
            return False
        return output.stdout.startswith(_RUNNING_MARKER)

    async def _run(self, argv: list[str]) -> CommandOutput:
        """Run a dmypy client to completion; kill it if the caller is cancelled."""
        assert self._spec is not None  # noqa: S101
        logger.debug("Running: %s", argv)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=self._spec.cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise
        assert proc.returncode is not None  # noqa: S101
        return CommandOutput(proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace"))

    async def _pump_output(self, proc: asyncio.subprocess.Process) -> None:
        """Forward daemon output lines to the log and the output callback."""
        assert proc.stdout is not None  # noqa: S101
        async for raw in proc.stdout:
            line = raw.decode(errors="replace").rstrip()
            if not line:
                continue
            logger.info("dmypy: %s", line)
            if self._on_output is not None:
                self._on_output(line)
