"""Turns document lifecycle events into a minimal stream of dmypy checks.

One scheduler per workspace. Edits are debounced into a single pending check;
at most one check is in flight; results computed against an outdated document
version are discarded rather than published.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Protocol

from dmypy_ls.clock import Clock, SystemClock
from dmypy_ls.daemon.controller import DaemonController
from dmypy_ls.daemon.protocol import Check, DaemonResult
from dmypy_ls.diagnostics import Diagnostic, DiagnosticPublisher, Publication, translate
from dmypy_ls.errors import FATAL_CODES, CheckFailure, DaemonError

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Outbound notifications toward the editor."""

    def publish_diagnostics(self, path: Path, diagnostics: Sequence[Diagnostic]) -> None: ...

    def log_message(self, level: int, text: str) -> None: ...


class EventKind(StrEnum):
    """Document lifecycle events."""

    OPENED = "opened"
    CHANGED = "changed"
    SAVED = "saved"
    CLOSED = "closed"


@dataclass
class Document:
    """A tracked editor document."""

    path: Path
    version: int
    dirty: bool = True  # an event arrived that no issued check has covered yet
    last_diagnostics: tuple[Diagnostic, ...] = ()


@dataclass
class PendingCheck:
    """A debounced check that has not been issued yet. At most one per workspace."""

    generation: int
    delay: float
    task: "asyncio.Task[None]"


@dataclass
class InFlightCheck:
    """The check currently submitted to the daemon, with the versions it was issued for."""

    command: Check
    versions: dict[Path, int] = field(default_factory=dict)
    generation: int = 0


class CheckScheduler:
    """Debounces document events into checks and publishes their diagnostics."""

    def __init__(
        self,
        workspace_root: Path,
        controller: DaemonController,
        publisher: DiagnosticPublisher,
        notifier: Notifier,
        *,
        change_debounce: float = 0.3,
        open_debounce: float = 0.05,
        clock: Clock | None = None,
    ) -> None:
        """Initialize an idle scheduler.

        Args:
            workspace_root: Root used to resolve relative paths in daemon reports.
            controller: The workspace's daemon controller.
            publisher: Owner of the last published diagnostics.
            notifier: Receives publications and user-visible messages.
            change_debounce: Seconds of quiet after an edit before checking.
            open_debounce: Seconds to coalesce bursts of open/save events.
            clock: Time source for debounce timers.

        """
        self._root = workspace_root
        self._controller = controller
        self._publisher = publisher
        self._notifier = notifier
        self._change_debounce = change_debounce
        self._open_debounce = open_debounce
        self._clock = clock or SystemClock()

        self._documents: dict[Path, Document] = {}
        self._generation = 0  # bumped by every event that needs a new check
        self._pending: PendingCheck | None = None
        self._in_flight: InFlightCheck | None = None
        self._worker: asyncio.Task[None] | None = None
        self._cancelled = False
        self._halted: DaemonError | None = None  # fatal error; no checks until resume()
        self._last_failure: str | None = None  # suppresses identical repeated failure notices

    @property
    def documents(self) -> dict[Path, Document]:
        """Snapshot of tracked documents."""
        return dict(self._documents)

    @property
    def pending(self) -> PendingCheck | None:
        """The debounced check waiting to be issued, if any."""
        return self._pending

    @property
    def in_flight(self) -> InFlightCheck | None:
        """The check currently running, if any."""
        return self._in_flight

    def on_document_event(self, path: Path, version: int, kind: EventKind) -> None:
        """Record a document event and (re)schedule a check. Returns immediately."""
        if self._cancelled:
            return
        if kind is EventKind.CLOSED:
            self._close(path)
            return

        doc = self._documents.get(path)
        if doc is not None and (version < doc.version or (kind is EventKind.CHANGED and version == doc.version)):
            logger.debug("Ignoring %s for %s: version %d is not newer than %d", kind, path, version, doc.version)
            return
        if doc is None:
            self._documents[path] = Document(path=path, version=version)
        else:
            doc.version = version
            doc.dirty = True

        self._generation += 1
        delay = self._change_debounce if kind is EventKind.CHANGED else self._open_debounce
        self._schedule(delay)

    def resume(self) -> None:
        """Clear a fatal halt (after an explicit daemon restart) and re-check open documents."""
        self._halted = None
        self._last_failure = None
        if self._documents and not self._cancelled:
            self._generation += 1
            self._schedule(self._open_debounce)

    def shutdown(self) -> None:
        """Cancel pending and in-flight checks; their results will be discarded."""
        self._cancelled = True
        if self._pending is not None:
            self._pending.task.cancel()
            self._pending = None
        if self._in_flight is not None:
            self._in_flight.command.cancel.cancel()

    async def drain(self) -> None:
        """Wait until no check is in flight."""
        while self._worker is not None and not self._worker.done():
            await asyncio.wait({self._worker})

    # --- Private helpers ---

    def _close(self, path: Path) -> None:
        """Stop tracking a document and clear its diagnostics without checking."""
        if self._documents.pop(path, None) is None:
            return
        publication = self._publisher.forget(path)
        if publication is not None:
            self._notifier.publish_diagnostics(publication.path, publication.diagnostics)
        if not self._documents and self._pending is not None:
            self._pending.task.cancel()
            self._pending = None

    def _schedule(self, delay: float) -> None:
        """Supersede any pending check with a new one firing after ``delay``."""
        if self._pending is not None:
            self._pending.task.cancel()
        task = asyncio.ensure_future(self._debounce(delay))
        self._pending = PendingCheck(generation=self._generation, delay=delay, task=task)

    async def _debounce(self, delay: float) -> None:
        await self._clock.sleep(delay)
        self._pending = None
        self._issue()

    def _issue(self) -> None:
        """Start the check loop unless one is already running (it will pick up new events)."""
        if self._cancelled or self._halted is not None or not self._documents:
            return
        if self._worker is not None and not self._worker.done():
            logger.debug("Check in flight; new events will be checked when it completes")
            return
        self._worker = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        """Issue checks until no newer event is waiting for one."""
        while not self._cancelled and self._halted is None and self._documents:
            versions = {path: doc.version for path, doc in self._documents.items()}
            generation = self._generation
            for doc in self._documents.values():
                doc.dirty = False
            command = Check(paths=tuple(sorted(versions)))
            self._in_flight = InFlightCheck(command=command, versions=versions, generation=generation)
            logger.info("Checking %d document(s) in %s", len(versions), self._root)
            try:
                result = await self._submit_with_retry(command)
            finally:
                self._in_flight = None

            if self._cancelled or command.cancel.cancelled:
                logger.debug("Discarding result of cancelled check #%d", command.seq)
                return
            if result.ok:
                stale = self._stale_paths(versions)
                if stale:
                    logger.info("Suppressing stale check #%d: newer versions of %s", command.seq, sorted(stale))
                else:
                    self._apply(result.output, versions)
            else:
                self._report_failure(result)

            # Re-check only if a newer event arrived and its debounce already fired.
            if self._generation == generation or self._pending is not None:
                return

    async def _submit_with_retry(self, command: Check) -> DaemonResult:
        """Submit a check, retrying once if the daemon crashed under it."""
        result = await self._controller.submit(command)
        if result.error != "daemon_crashed" or self._cancelled:
            return result
        logger.warning("Daemon crashed during check #%d; retrying once: %s", command.seq, result.message)
        retry = Check(paths=command.paths, cancel=command.cancel)
        result = await self._controller.submit(retry)
        if result.error == "daemon_crashed":
            return DaemonResult.fail(command, CheckFailure(f"dmypy crashed twice while checking: {result.message}"))
        return result

    def _stale_paths(self, versions: dict[Path, int]) -> set[Path]:
        """Documents that changed after the check was issued."""
        return {
            path
            for path, version in versions.items()
            if (doc := self._documents.get(path)) is not None and doc.version > version
        }

    def _apply(self, output: str, versions: dict[Path, int]) -> None:
        """Publish the delta for documents covered by a completed check."""
        covered = [path for path in versions if path in self._documents]
        publications = self._publisher.compute(translate(output, self._root), covered)
        self._last_failure = None
        for publication in publications:
            self._publish(publication)

    def _publish(self, publication: Publication) -> None:
        doc = self._documents.get(publication.path)
        if doc is not None:
            doc.last_diagnostics = publication.diagnostics
        self._notifier.publish_diagnostics(publication.path, publication.diagnostics)

    def _report_failure(self, result: DaemonResult) -> None:
        """Surface a failed check once; halt on fatal errors."""
        error = result.exception()
        if error is None or error.code == "cancelled":
            return
        if error.code in FATAL_CODES:
            self._halted = error
        text = f"dmypy check failed: {error}"
        if text == self._last_failure:
            logger.debug("Suppressing repeated failure notice: %s", text)
            return
        self._last_failure = text
        self._notifier.log_message(logging.ERROR, text)
