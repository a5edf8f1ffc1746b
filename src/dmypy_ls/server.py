"""LSP front end: routes editor notifications to per-folder workspaces.

Message framing and dispatch are handled by pygls; this module only maps LSP
types to workspace calls and diagnostics back to LSP types.
"""

import asyncio
import logging
from collections.abc import Coroutine, Sequence
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any

from lsprotocol import types as lsp
from pygls.lsp.server import LanguageServer
from pygls.uris import from_fs_path, to_fs_path

from dmypy_ls.daemon.controller import DaemonStatus
from dmypy_ls.diagnostics import Diagnostic, Severity, document_path
from dmypy_ls.workspace import Workspace

logger = logging.getLogger(__name__)

RESTART_COMMAND = "dmypyls.restart"
STATUS_COMMAND = "dmypyls.status"

_SEVERITY = {
    Severity.ERROR: lsp.DiagnosticSeverity.Error,
    Severity.WARNING: lsp.DiagnosticSeverity.Warning,
    Severity.NOTE: lsp.DiagnosticSeverity.Information,
}


def _server_version() -> str:
    try:
        return version("dmypy-ls")
    except PackageNotFoundError:
        return "0.0.0"


def to_lsp_diagnostic(diagnostic: Diagnostic) -> lsp.Diagnostic:
    """Convert a 1-based daemon diagnostic to a 0-based LSP diagnostic.

    The daemon's end column is inclusive, which is the exclusive 0-based end.
    """
    start = lsp.Position(line=max(diagnostic.line - 1, 0), character=max(diagnostic.column - 1, 0))
    end_line = max(diagnostic.end_line - 1, start.line)
    end_character = diagnostic.end_column if end_line > start.line else max(diagnostic.end_column, start.character + 1)
    end = lsp.Position(line=end_line, character=end_character)
    return lsp.Diagnostic(
        range=lsp.Range(start=start, end=end),
        message=diagnostic.message,
        severity=_SEVERITY[diagnostic.severity],
        code=diagnostic.code,
        source="dmypy",
    )


def to_lsp_message_type(level: int) -> lsp.MessageType:
    """Map a logging level to an LSP message type."""
    if level >= logging.ERROR:
        return lsp.MessageType.Error
    if level >= logging.WARNING:
        return lsp.MessageType.Warning
    if level >= logging.INFO:
        return lsp.MessageType.Info
    return lsp.MessageType.Log


class LspNotifier:
    """Delivers workspace notifications to the editor."""

    def __init__(self, ls: LanguageServer) -> None:
        self._ls = ls

    def publish_diagnostics(self, path: Path, diagnostics: Sequence[Diagnostic]) -> None:
        logger.debug("Publishing %d diagnostic(s) for %s", len(diagnostics), path)
        self._ls.text_document_publish_diagnostics(
            lsp.PublishDiagnosticsParams(uri=from_fs_path(str(path)), diagnostics=[to_lsp_diagnostic(d) for d in diagnostics])
        )

    def log_message(self, level: int, text: str) -> None:
        logger.log(level, "%s", text)
        message_type = to_lsp_message_type(level)
        self._ls.window_log_message(lsp.LogMessageParams(type=message_type, message=text))
        if level >= logging.ERROR:
            self._ls.window_show_message(lsp.ShowMessageParams(type=message_type, message=text))


class DmypyLanguageServer(LanguageServer):
    """Language server holding one Workspace per workspace folder."""

    def __init__(self) -> None:
        super().__init__("dmypyls", _server_version(), text_document_sync_kind=lsp.TextDocumentSyncKind.Full)
        self.workspaces: dict[Path, Workspace] = {}
        self.notifier = LspNotifier(self)
        # Strong references to background tasks to prevent GC
        self._background_tasks: set[asyncio.Task[None]] = set()

    def add_workspace(self, root: Path) -> Workspace:
        """Create (or return) the workspace for a folder."""
        root = root.resolve()
        if root not in self.workspaces:
            self.workspaces[root] = Workspace.initialize(root, self.notifier)
        return self.workspaces[root]

    async def remove_workspace(self, root: Path) -> None:
        """Shut down and forget the workspace for a folder."""
        ws = self.workspaces.pop(root.resolve(), None)
        if ws is not None:
            await ws.shutdown()

    def workspace_for(self, path: Path) -> Workspace | None:
        """The innermost workspace containing a document."""
        doc = document_path(path)
        candidates = [root for root in self.workspaces if doc.is_relative_to(root)]
        if not candidates:
            return None
        return self.workspaces[max(candidates, key=lambda r: len(r.parts))]

    def run_in_background(self, coro: Coroutine[Any, Any, None]) -> None:
        """Schedule a coroutine, keeping a strong reference until it finishes."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)


def _uri_to_path(uri: str) -> Path | None:
    path = to_fs_path(uri)
    return Path(path) if path else None


def _document(ls: DmypyLanguageServer, uri: str) -> tuple[Workspace, Path] | None:
    path = _uri_to_path(uri)
    if path is None:
        return None
    ws = ls.workspace_for(path)
    if ws is None:
        logger.info("No workspace for %s", uri)
        return None
    return ws, path


server = DmypyLanguageServer()


# --- Lifecycle ---


@server.feature(lsp.INITIALIZE)
def on_initialize(ls: DmypyLanguageServer, params: lsp.InitializeParams) -> None:
    logger.info("Initializing dmypyls")
    roots: list[Path] = []
    for folder in params.workspace_folders or []:
        if (path := _uri_to_path(folder.uri)) is not None:
            roots.append(path)
    if not roots and params.root_uri and (path := _uri_to_path(params.root_uri)) is not None:
        roots.append(path)
    if not roots and params.root_path:
        roots.append(Path(params.root_path))
    if not roots:
        roots.append(Path.cwd())
    for root in roots:
        ls.add_workspace(root)


@server.feature(lsp.INITIALIZED)
def on_initialized(ls: DmypyLanguageServer, params: lsp.InitializedParams) -> None:
    for ws in ls.workspaces.values():
        ls.run_in_background(ws.warm_up())


@server.feature(lsp.SHUTDOWN)
async def on_shutdown(ls: DmypyLanguageServer, params: None) -> None:
    logger.info("Shutting down dmypyls (stopping dmypy)")
    await asyncio.gather(*(ws.shutdown() for ws in ls.workspaces.values()))
    ls.workspaces.clear()


@server.feature(lsp.WORKSPACE_DID_CHANGE_WORKSPACE_FOLDERS)
async def did_change_workspace_folders(ls: DmypyLanguageServer, params: lsp.DidChangeWorkspaceFoldersParams) -> None:
    for folder in params.event.removed:
        if (path := _uri_to_path(folder.uri)) is not None:
            await ls.remove_workspace(path)
    for folder in params.event.added:
        if (path := _uri_to_path(folder.uri)) is not None:
            ls.run_in_background(ls.add_workspace(path).warm_up())


# --- Text document synchronisation ---


@server.feature(lsp.TEXT_DOCUMENT_DID_OPEN)
def did_open(ls: DmypyLanguageServer, params: lsp.DidOpenTextDocumentParams) -> None:
    td = params.text_document
    if (found := _document(ls, td.uri)) is not None:
        ws, path = found
        ws.document_opened(path, td.version, td.text)


@server.feature(lsp.TEXT_DOCUMENT_DID_CHANGE)
def did_change(ls: DmypyLanguageServer, params: lsp.DidChangeTextDocumentParams) -> None:
    td = params.text_document
    if (found := _document(ls, td.uri)) is not None:
        ws, path = found
        ws.document_changed(path, td.version)


@server.feature(lsp.TEXT_DOCUMENT_DID_SAVE)
def did_save(ls: DmypyLanguageServer, params: lsp.DidSaveTextDocumentParams) -> None:
    if (found := _document(ls, params.text_document.uri)) is not None:
        ws, path = found
        ws.document_saved(path)


@server.feature(lsp.TEXT_DOCUMENT_DID_CLOSE)
def did_close(ls: DmypyLanguageServer, params: lsp.DidCloseTextDocumentParams) -> None:
    if (found := _document(ls, params.text_document.uri)) is not None:
        ws, path = found
        ws.document_closed(path)


# --- Requests served by the daemon ---


@server.feature(lsp.TEXT_DOCUMENT_HOVER)
async def hover(ls: DmypyLanguageServer, params: lsp.HoverParams) -> lsp.Hover | None:
    found = _document(ls, params.text_document.uri)
    if found is None:
        return None
    ws, path = found
    text = await ws.hover(path, params.position.line + 1, params.position.character + 1)
    if text is None:
        return None
    return lsp.Hover(contents=lsp.MarkupContent(kind=lsp.MarkupKind.Markdown, value=f"```python\n{text}\n```"))


@server.command(RESTART_COMMAND)
async def restart_daemon(ls: DmypyLanguageServer, *args: object) -> list[dict[str, object]]:
    """Restart every workspace's daemon, clearing crash-loop state."""
    statuses = await asyncio.gather(*(ws.restart() for ws in ls.workspaces.values()))
    return [_status_payload(root, status) for root, status in zip(ls.workspaces, statuses, strict=True)]


@server.command(STATUS_COMMAND)
def daemon_status(ls: DmypyLanguageServer, *args: object) -> list[dict[str, object]]:
    """Report the daemon state of every workspace."""
    return [_status_payload(root, ws.status()) for root, ws in ls.workspaces.items()]


def _status_payload(root: Path, status: DaemonStatus) -> dict[str, object]:
    return {
        "workspace": str(root),
        "state": str(status.state),
        "restartCount": status.restart_count,
        "pid": status.pid,
        "lastError": str(status.last_error) if status.last_error else None,
    }


def start() -> None:
    """Serve LSP over stdio until the client exits."""
    server.start_io()
