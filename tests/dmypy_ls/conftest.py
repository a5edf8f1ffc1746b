"""Shared fakes: a virtual clock, a scripted daemon transport, and a recording notifier."""

import asyncio
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import pytest

from dmypy_ls.daemon.controller import DaemonController
from dmypy_ls.daemon.protocol import Command, CommandOutput, LaunchSpec, Stop
from dmypy_ls.diagnostics import Diagnostic

# Loop iterations that let a chain of tasks (debounce -> scheduler -> controller -> transport) run to quiescence.
_SETTLE_ITERATIONS = 100


async def settle() -> None:
    """Let every runnable task progress until it blocks."""
    for _ in range(_SETTLE_ITERATIONS):
        await asyncio.sleep(0)


class ManualClock:
    """Virtual time: sleeps only finish when the test advances the clock."""

    def __init__(self) -> None:
        self.now = 0.0
        self._sleepers: list[tuple[float, asyncio.Future[None]]] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        entry = (self.now + delay, asyncio.get_running_loop().create_future())
        self._sleepers.append(entry)
        try:
            await entry[1]
        finally:
            self._sleepers.remove(entry)

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking every sleeper whose deadline has passed."""
        await settle()
        self.now += seconds
        for deadline, future in list(self._sleepers):
            if deadline <= self.now and not future.done():
                future.set_result(None)
        await settle()


@dataclass
class Step:
    """Scripted reply to the next non-stop command."""

    output: str = ""
    returncode: int = 0
    crash: bool = False  # the daemon dies while the command runs
    hang: bool = False  # the command never answers
    gate: asyncio.Event | None = None  # the reply is held until the event is set
    die_after: float | None = None  # the daemon exits this many seconds after the reply


class FakeTransport:
    """In-memory daemon that answers commands from a script."""

    def __init__(self) -> None:
        self.steps: deque[Step] = deque()
        self.spawn_error: Exception | None = None
        self.ignore_stop = False
        self.specs: list[LaunchSpec] = []
        self.executed: list[Command] = []
        self.spawns = 0
        self.shutdowns = 0
        self.concurrent = 0
        self.max_concurrent = 0
        self._pid = 4000
        self._alive = False
        self._exit: asyncio.Future[int] | None = None

    def script(
        self,
        output: str = "",
        returncode: int = 0,
        *,
        crash: bool = False,
        hang: bool = False,
        gate: asyncio.Event | None = None,
        die_after: float | None = None,
    ) -> Step:
        """Queue the reply for the next command."""
        step = Step(output=output, returncode=returncode, crash=crash, hang=hang, gate=gate, die_after=die_after)
        self.steps.append(step)
        return step

    def crash(self) -> None:
        """Kill the daemon while it is idle."""
        self._die(-9)

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def alive(self) -> bool:
        return self._alive

    async def spawn(self, spec: LaunchSpec) -> None:
        self.specs.append(spec)
        if self.spawn_error is not None:
            raise self.spawn_error
        self.spawns += 1
        self._pid += 1
        self._alive = True
        self._exit = asyncio.get_running_loop().create_future()

    async def execute(self, command: Command) -> CommandOutput:
        self.executed.append(command)
        if isinstance(command, Stop):
            if not self.ignore_stop:
                self._die(0)
            return CommandOutput(0, "Daemon stopped\n")

        self.concurrent += 1
        self.max_concurrent = max(self.max_concurrent, self.concurrent)
        try:
            step = self.steps.popleft() if self.steps else Step()
            if step.gate is not None:
                await step.gate.wait()
            if step.crash:
                self._die(-9)
            if step.crash or step.hang:
                await asyncio.Event().wait()
            if step.die_after is not None:
                asyncio.get_running_loop().call_later(step.die_after, self._die, -9)
            return CommandOutput(step.returncode, step.output)
        finally:
            self.concurrent -= 1

    async def wait_exit(self) -> int:
        assert self._exit is not None
        return await asyncio.shield(self._exit)

    async def shutdown(self, grace: float) -> None:
        self.shutdowns += 1
        self._die(-15)

    def _die(self, code: int) -> None:
        self._alive = False
        if self._exit is not None and not self._exit.done():
            self._exit.set_result(code)


class RecordingNotifier:
    """Collects publications and user-visible messages."""

    def __init__(self) -> None:
        self.published: list[tuple[Path, tuple[Diagnostic, ...]]] = []
        self.messages: list[tuple[int, str]] = []

    def publish_diagnostics(self, path: Path, diagnostics: Sequence[Diagnostic]) -> None:
        self.published.append((path, tuple(diagnostics)))

    def log_message(self, level: int, text: str) -> None:
        self.messages.append((level, text))

    def texts(self, level: int) -> list[str]:
        """Messages sent at exactly ``level``."""
        return [text for lvl, text in self.messages if lvl == level]


def fixed_resolver(root: Path) -> LaunchSpec:
    """Launch command that does not depend on configuration files."""
    return LaunchSpec(argv=("dmypy",), cwd=root)


@pytest.fixture
def root(tmp_path: Path) -> Path:
    """Workspace root."""
    return tmp_path.resolve()


@pytest.fixture
def clock() -> ManualClock:
    """Virtual clock starting at zero."""
    return ManualClock()


@pytest.fixture
def transport() -> FakeTransport:
    """Scripted daemon transport."""
    return FakeTransport()


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Recording notifier."""
    return RecordingNotifier()


@pytest.fixture
def controller(root: Path, transport: FakeTransport, clock: ManualClock) -> DaemonController:
    """Controller over the fake transport with a short stop grace period."""
    return DaemonController(root, fixed_resolver, transport, stop_grace=0.05, clock=clock)
