"""One workspace: configuration, daemon controller, check scheduler and publisher wired together.

This is the inbound interface the LSP front end calls into.
"""

import logging
from pathlib import Path

from dmypy_ls.clock import Clock
from dmypy_ls.config import Config, resolve_command
from dmypy_ls.daemon.controller import DaemonController, DaemonState, DaemonStatus
from dmypy_ls.daemon.process import DaemonTransport, DmypyTransport
from dmypy_ls.daemon.protocol import Inspect, Restart, Status
from dmypy_ls.diagnostics import DiagnosticPublisher, document_path
from dmypy_ls.errors import ConfigError
from dmypy_ls.scheduler import CheckScheduler, EventKind, Notifier

logger = logging.getLogger(__name__)

PYTHON_SUFFIXES = frozenset({".py", ".pyi"})


class Workspace:
    """Supervises the dmypy daemon for one project root and keeps diagnostics current."""

    def __init__(
        self,
        cfg: Config,
        notifier: Notifier,
        *,
        transport: DaemonTransport | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Wire the components for one workspace.

        Args:
            cfg: Workspace configuration.
            notifier: Receives publications and user-visible messages.
            transport: Daemon process layer; a real dmypy transport by default.
            clock: Time source shared by the controller and scheduler.

        """
        self.cfg = cfg
        self.root = cfg.workspace_root
        self._notifier = notifier
        self._transport = transport or DmypyTransport(start_timeout=cfg.start_timeout, on_output=self._on_daemon_output)
        self.controller = DaemonController(
            self.root,
            resolve_command,
            self._transport,
            crash_threshold=cfg.crash_threshold,
            crash_window=cfg.crash_window,
            submit_timeout=cfg.submit_timeout,
            stop_grace=cfg.stop_grace,
            clock=clock,
            on_state_change=self._on_state_change,
        )
        self.publisher = DiagnosticPublisher()
        self.scheduler = CheckScheduler(
            self.root,
            self.controller,
            self.publisher,
            notifier,
            change_debounce=cfg.change_debounce,
            open_debounce=cfg.open_debounce,
            clock=clock,
        )
        self._versions: dict[Path, int] = {}

    @staticmethod
    def initialize(
        workspace_root: Path,
        notifier: Notifier,
        *,
        transport: DaemonTransport | None = None,
        clock: Clock | None = None,
    ) -> "Workspace":
        """Create a workspace, falling back to default settings if the config file is invalid."""
        try:
            cfg = Config.build(workspace_root)
        except ConfigError as e:
            notifier.log_message(logging.ERROR, f"{e}; using default settings.")
            cfg = Config(workspace_root=workspace_root.resolve())
        logger.info("Workspace initialized at %s", cfg.workspace_root)
        return Workspace(cfg, notifier, transport=transport, clock=clock)

    def owns(self, path: Path) -> bool:
        """Whether a document belongs to this workspace and is checked by dmypy."""
        return path.suffix in PYTHON_SUFFIXES and path.is_relative_to(self.root)

    # --- Document lifecycle ---

    def document_opened(self, path: Path, version: int, text: str) -> None:
        """Track a newly opened document and schedule a check."""
        doc = self._track(path, version)
        if doc is not None:
            logger.debug("Opened %s (version %d, %d chars)", doc, version, len(text))
            self.scheduler.on_document_event(doc, version, EventKind.OPENED)

    def document_changed(self, path: Path, version: int) -> None:
        """Record an edit; the check is debounced."""
        doc = self._track(path, version)
        if doc is not None:
            self.scheduler.on_document_event(doc, version, EventKind.CHANGED)

    def document_saved(self, path: Path, version: int | None = None) -> None:
        """Schedule a check after a save. Without a version, the latest known one is used."""
        doc = document_path(path)
        if not self.owns(doc):
            return
        if version is None:
            version = self._versions.get(doc, 0)
        self._versions[doc] = version
        self.scheduler.on_document_event(doc, version, EventKind.SAVED)

    def document_closed(self, path: Path) -> None:
        """Stop tracking a document and clear its diagnostics."""
        doc = document_path(path)
        self._versions.pop(doc, None)
        self.scheduler.on_document_event(doc, 0, EventKind.CLOSED)

    # --- Daemon operations ---

    async def warm_up(self) -> None:
        """Start the daemon ahead of the first check."""
        result = await self.controller.submit(Status())
        if not result.ok and result.error != "cancelled":
            self._notifier.log_message(logging.ERROR, f"dmypy failed to start: {result.message}")

    async def hover(self, path: Path, line: int, column: int) -> str | None:
        """Inferred type at a 1-based position, or None if dmypy has nothing to say."""
        doc = document_path(path)
        if not self.owns(doc):
            return None
        result = await self.controller.submit(Inspect(location=f"{doc}:{line}:{column}"))
        if not result.ok:
            logger.info("Inspect failed for %s:%d:%d: %s", doc, line, column, result.message)
            return None
        return result.output.strip() or None

    async def restart(self) -> DaemonStatus:
        """Explicitly restart the daemon, clearing crash-loop and fatal states."""
        result = await self.controller.submit(Restart())
        if result.ok:
            self.scheduler.resume()
            self._notifier.log_message(logging.INFO, "dmypy daemon restarted.")
        else:
            self._notifier.log_message(logging.ERROR, f"dmypy restart failed: {result.message}")
        return self.controller.status()

    def status(self) -> DaemonStatus:
        """Current daemon status, without blocking."""
        return self.controller.status()

    async def shutdown(self) -> None:
        """Cancel outstanding checks and stop the daemon."""
        logger.info("Shutting down workspace %s", self.root)
        self.scheduler.shutdown()
        await self.controller.stop()
        await self.scheduler.drain()

    # --- Private helpers ---

    def _track(self, path: Path, version: int) -> Path | None:
        doc = document_path(path)
        if not self.owns(doc):
            logger.info("Ignoring non-Python or out-of-workspace document: %s", doc)
            return None
        self._versions[doc] = max(version, self._versions.get(doc, version))
        return doc

    def _on_daemon_output(self, line: str) -> None:
        self._notifier.log_message(logging.INFO, f"dmypy: {line}")

    def _on_state_change(self, state: DaemonState) -> None:
        if state is DaemonState.UNAVAILABLE:
            self._notifier.log_message(
                logging.ERROR, "dmypy keeps crashing; run the 'dmypyls.restart' command after fixing the cause."
            )
