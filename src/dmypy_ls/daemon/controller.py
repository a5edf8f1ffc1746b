"""Lifecycle controller for one workspace's dmypy daemon.

Owns the process (through a transport), its state machine and the single-slot
lock that serializes every command sent to it.
"""

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from dmypy_ls.clock import Clock, SystemClock
from dmypy_ls.daemon.process import DaemonTransport
from dmypy_ls.daemon.protocol import Command, CommandOutput, DaemonResult, LaunchSpec, Restart, Stop
from dmypy_ls.errors import (
    Cancelled,
    CommandFailed,
    ConfigError,
    DaemonCrashed,
    DaemonError,
    DaemonUnavailable,
    SpawnFailure,
)

logger = logging.getLogger(__name__)

# Seconds to wait for the daemon to be reaped after a failed client invocation
_EXIT_SETTLE = 0.1


class DaemonState(StrEnum):
    """Lifecycle states of the daemon process."""

    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    CRASHED = "crashed"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class DaemonStatus:
    """Point-in-time view of the controller, for telemetry and status commands."""

    state: DaemonState
    restart_count: int
    last_error: DaemonError | None
    pid: int | None


class DaemonController:
    """Starts, monitors, restarts and serializes access to one dmypy daemon."""

    def __init__(
        self,
        workspace_root: Path,
        resolver: Callable[[Path], LaunchSpec],
        transport: DaemonTransport,
        *,
        crash_threshold: int = 3,
        crash_window: float = 60.0,
        submit_timeout: float = 30.0,
        stop_grace: float = 3.0,
        clock: Clock | None = None,
        on_state_change: Callable[[DaemonState], None] | None = None,
    ) -> None:
        """Initialize a controller in the stopped state.

        Args:
            workspace_root: Root of the workspace this daemon serves.
            resolver: Returns the launch command for a workspace root; called on every start.
            transport: Process handle and request channel.
            crash_threshold: Crashes within ``crash_window`` after which restarts stop.
            crash_window: Seconds over which consecutive crashes are counted.
            submit_timeout: Seconds a command may run before the daemon is treated as crashed.
            stop_grace: Seconds to wait for a graceful exit before terminating.
            clock: Time source for the crash window.
            on_state_change: Called with every new state.

        """
        self._root = workspace_root
        self._resolver = resolver
        self._transport = transport
        self._crash_threshold = crash_threshold
        self._crash_window = crash_window
        self._submit_timeout = submit_timeout
        self._stop_grace = stop_grace
        self._clock = clock or SystemClock()
        self._on_state_change = on_state_change

        self._lock = asyncio.Lock()  # single slot: held for the whole lifetime of a command
        self._state = DaemonState.STOPPED
        self._restart_count = 0
        self._last_error: DaemonError | None = None
        self._crash_times: deque[float] = deque()  # consecutive crashes, pruned to the window
        self._closed = False  # set by stop(); terminal for the session
        self._in_flight: Command | None = None

    @property
    def state(self) -> DaemonState:
        """Current lifecycle state."""
        return self._state

    @property
    def in_flight(self) -> Command | None:
        """The command currently executing against the daemon, if any."""
        return self._in_flight

    def status(self) -> DaemonStatus:
        """Return the current state without blocking or side effects."""
        return DaemonStatus(
            state=self._state,
            restart_count=self._restart_count,
            last_error=self._last_error,
            pid=self._transport.pid if self._transport.alive else None,
        )

    async def submit(self, command: Command) -> DaemonResult:
        """Run a command against the daemon, starting it first if needed.

        Waits for any in-flight command; commands run strictly one at a time in
        arrival order. Never raises for daemon outcomes: failures come back as
        results carrying an error code.
        """
        async with self._lock:
            if isinstance(command, Stop):
                await self._stop_locked()
                return DaemonResult.success(command)
            if command.cancel.cancelled:
                return DaemonResult.fail(command, Cancelled("Command was cancelled before it ran."))
            if self._closed:
                return DaemonResult.fail(command, Cancelled("Daemon controller is shut down."))
            if isinstance(command, Restart):
                return await self._restart_locked(command)
            if self._state is DaemonState.UNAVAILABLE:
                return DaemonResult.fail(command, self._unavailable_error())

            if self._state is DaemonState.READY and not self._transport.alive:
                logger.warning("Daemon for %s exited while idle", self._root)
                self._record_crash(DaemonCrashed("Daemon exited while idle."))
                if self._state is DaemonState.UNAVAILABLE:
                    return DaemonResult.fail(command, self._unavailable_error())

            if self._state in (DaemonState.STOPPED, DaemonState.CRASHED):
                error = await self._start()
                if error is not None:
                    return DaemonResult.fail(command, error)

            return await self._execute(command)

    async def stop(self) -> None:
        """Stop the daemon and close the controller for the rest of the session."""
        await self.submit(Stop())

    # --- Private helpers ---

    def _set_state(self, state: DaemonState) -> None:
        if state is self._state:
            return
        logger.debug("Daemon %s: %s -> %s", self._root, self._state, state)
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    def _unavailable_error(self) -> DaemonUnavailable:
        return DaemonUnavailable(
            f"dmypy crashed {self._crash_threshold} times within {self._crash_window:g}s; "
            "automatic restarts are disabled until the daemon is restarted explicitly."
        )

    async def _start(self) -> DaemonError | None:
        """Spawn the daemon. Return the error on failure, leaving the state stopped."""
        if self._state is DaemonState.CRASHED:
            self._restart_count += 1
            logger.info("Restarting daemon for %s (restart #%d)", self._root, self._restart_count)
        self._set_state(DaemonState.STARTING)
        try:
            spec = self._resolver(self._root)
            await self._transport.spawn(spec)
        except (SpawnFailure, ConfigError, OSError) as e:
            error = e if isinstance(e, SpawnFailure) else SpawnFailure(str(e))
            logger.error("Failed to start dmypy for %s: %s", self._root, error)  # noqa: TRY400
            self._last_error = error
            await self._transport.shutdown(0.0)
            self._set_state(DaemonState.STOPPED)
            return error
        self._set_state(DaemonState.READY)
        return None

    async def _execute(self, command: Command) -> DaemonResult:
        """Send one command and race its completion against process exit and the timeout."""
        self._set_state(DaemonState.BUSY)
        self._in_flight = command
        exec_task = asyncio.ensure_future(self._transport.execute(command))
        exit_task = asyncio.ensure_future(self._transport.wait_exit())
        try:
            done, _ = await asyncio.wait(
                {exec_task, exit_task}, timeout=self._submit_timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            await self._abandon(command, exec_task, exit_task)
            raise
        finally:
            self._in_flight = None

        if exec_task in done:
            exit_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await exit_task
            return await self._complete(command, exec_task)

        exec_task.cancel()
        with contextlib.suppress(asyncio.CancelledError, OSError):
            await exec_task
        if exit_task in done:
            error = DaemonCrashed(f"dmypy daemon exited with code {exit_task.result()} during {command.name}.")
        else:
            exit_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await exit_task
            error = DaemonCrashed(f"dmypy did not answer {command.name} within {self._submit_timeout:g}s.")
            await self._transport.shutdown(0.0)
        logger.error("Daemon for %s crashed: %s", self._root, error)
        self._record_crash(error)
        if self._state is DaemonState.UNAVAILABLE:
            return DaemonResult.fail(command, self._unavailable_error())
        return DaemonResult.fail(command, error)

    async def _abandon(
        self, command: Command, exec_task: "asyncio.Future[CommandOutput]", exit_task: "asyncio.Future[int]"
    ) -> None:
        """Tear down a command whose caller was cancelled, before the lock is released."""
        logger.info("Caller cancelled %s; stopping the dmypy client", command.name)
        exec_task.cancel()
        exit_task.cancel()
        await asyncio.gather(exec_task, exit_task, return_exceptions=True)
        if self._transport.alive:
            self._set_state(DaemonState.READY)
        else:
            self._record_crash(DaemonCrashed(f"dmypy daemon exited during cancelled {command.name}."))

    async def _complete(self, command: Command, exec_task: "asyncio.Future[CommandOutput]") -> DaemonResult:
        """Turn a finished client invocation into a result."""
        try:
            output = exec_task.result()
        except OSError as e:
            self._set_state(DaemonState.READY)
            error = CommandFailed(f"Cannot run dmypy {command.name}: {e}")
            self._last_error = error
            return DaemonResult.fail(command, error)

        if output.returncode in command.ok_codes:
            self._crash_times.clear()
            self._set_state(DaemonState.READY)
            return DaemonResult.success(command, output.stdout)

        detail = (output.stderr or output.stdout).strip()
        # The client can exit before the daemon process is reaped.
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._transport.wait_exit(), timeout=_EXIT_SETTLE)
        if not self._transport.alive:
            error: DaemonError = DaemonCrashed(f"dmypy daemon died during {command.name}: {detail}")
            self._record_crash(error)
            if self._state is DaemonState.UNAVAILABLE:
                return DaemonResult.fail(command, self._unavailable_error())
            return DaemonResult.fail(command, error)

        self._set_state(DaemonState.READY)
        error = CommandFailed(f"dmypy {command.name} exited with code {output.returncode}: {detail}")
        self._last_error = error
        return DaemonResult.fail(command, error)

    def _record_crash(self, error: DaemonError) -> None:
        """Count a crash and move to crashed, or to unavailable past the threshold."""
        self._last_error = error
        now = self._clock.monotonic()
        self._crash_times.append(now)
        while self._crash_times and now - self._crash_times[0] > self._crash_window:
            self._crash_times.popleft()
        if len(self._crash_times) >= self._crash_threshold:
            logger.error("Daemon for %s is crash-looping; giving up", self._root)
            self._last_error = self._unavailable_error()
            self._set_state(DaemonState.UNAVAILABLE)
        else:
            self._set_state(DaemonState.CRASHED)

    async def _restart_locked(self, command: Restart) -> DaemonResult:
        """Explicit operator restart: forget crash history and respawn."""
        logger.info("Explicit restart of daemon for %s", self._root)
        await self._terminate()
        self._crash_times.clear()
        self._last_error = None
        self._set_state(DaemonState.STOPPED)
        error = await self._start()
        if error is not None:
            return DaemonResult.fail(command, error)
        return DaemonResult.success(command)

    async def _stop_locked(self) -> None:
        """Graceful stop, then terminate. Always ends stopped."""
        self._closed = True
        if self._transport.alive:
            logger.info("Stopping daemon for %s", self._root)
            await self._terminate()
        self._set_state(DaemonState.STOPPED)

    async def _terminate(self) -> None:
        """Ask the daemon to stop, then terminate it if it outlives the grace period."""
        if not self._transport.alive:
            return
        try:
            await asyncio.wait_for(self._transport.execute(Stop()), timeout=self._stop_grace)
            await asyncio.wait_for(self._transport.wait_exit(), timeout=self._stop_grace)
        except (TimeoutError, OSError) as e:
            logger.warning("Graceful stop failed (%s); terminating daemon", e or type(e).__name__)
            await self._transport.shutdown(self._stop_grace)
