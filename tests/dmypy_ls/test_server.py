"""Tests for the LSP front end's conversions and routing."""

import logging

import pytest
from lsprotocol import types as lsp

from dmypy_ls.daemon.controller import DaemonState, DaemonStatus
from dmypy_ls.diagnostics import Diagnostic, Severity
from dmypy_ls.errors import DaemonUnavailable
from dmypy_ls.server import DmypyLanguageServer, LspNotifier, _status_payload, to_lsp_diagnostic, to_lsp_message_type


def diag(line, column, end_line, end_column, severity=Severity.ERROR, code="misc") -> Diagnostic:
    return Diagnostic(
        path="/work/a.py",
        line=line,
        column=column,
        end_line=end_line,
        end_column=end_column,
        severity=severity,
        message="Bad",
        code=code,
    )


class FakeLanguageServer:
    """Records outbound notifications."""

    def __init__(self):
        self.published = []
        self.logged = []
        self.shown = []

    def text_document_publish_diagnostics(self, params):
        self.published.append(params)

    def window_log_message(self, params):
        self.logged.append(params)

    def window_show_message(self, params):
        self.shown.append(params)


class TestToLspDiagnostic:
    """1-based daemon positions to 0-based LSP ranges."""

    def test_single_line_range(self):
        """The inclusive 1-based end column is the exclusive 0-based end."""
        result = to_lsp_diagnostic(diag(12, 5, 12, 18))
        assert result.range.start == lsp.Position(line=11, character=4)
        assert result.range.end == lsp.Position(line=11, character=18)
        assert result.severity is lsp.DiagnosticSeverity.Error
        assert result.code == "misc"
        assert result.source == "dmypy"
        assert result.message == "Bad"

    def test_point_range_is_widened(self):
        """A diagnostic without an end covers at least one character."""
        result = to_lsp_diagnostic(diag(3, 1, 3, 1))
        assert result.range.start == lsp.Position(line=2, character=0)
        assert result.range.end == lsp.Position(line=2, character=1)

    def test_multi_line_range(self):
        """Multi-line diagnostics keep the reported end column."""
        result = to_lsp_diagnostic(diag(3, 5, 6, 2))
        assert result.range.end == lsp.Position(line=5, character=2)

    def test_note_is_information(self):
        """Notes map to information severity."""
        assert to_lsp_diagnostic(diag(1, 1, 1, 1, Severity.NOTE, None)).severity is lsp.DiagnosticSeverity.Information


class TestMessageType:
    """Logging levels to LSP message types."""

    @pytest.mark.parametrize(
        ("level", "expected"),
        [
            (logging.ERROR, lsp.MessageType.Error),
            (logging.WARNING, lsp.MessageType.Warning),
            (logging.INFO, lsp.MessageType.Info),
            (logging.DEBUG, lsp.MessageType.Log),
        ],
    )
    def test_mapping(self, level, expected):
        """Each level maps to the closest message type."""
        assert to_lsp_message_type(level) is expected


class TestLspNotifier:
    """Outbound notifications."""

    def test_publish_uses_file_uri(self, tmp_path):
        """Diagnostics are published for the document's file URI."""
        ls = FakeLanguageServer()
        LspNotifier(ls).publish_diagnostics(tmp_path / "a.py", [diag(1, 1, 1, 4)])
        params = ls.published[0]
        assert params.uri.startswith("file://")
        assert params.uri.endswith("/a.py")
        assert len(params.diagnostics) == 1

    def test_errors_are_shown(self):
        """Errors are logged and also shown to the user."""
        ls = FakeLanguageServer()
        LspNotifier(ls).log_message(logging.ERROR, "dmypy check failed")
        assert [p.message for p in ls.logged] == ["dmypy check failed"]
        assert [p.message for p in ls.shown] == ["dmypy check failed"]

    def test_info_is_only_logged(self):
        """Informational messages go to the log channel only."""
        ls = FakeLanguageServer()
        LspNotifier(ls).log_message(logging.INFO, "dmypy: started")
        assert len(ls.logged) == 1
        assert ls.shown == []


class TestWorkspaceRouting:
    """Documents are routed to the innermost workspace folder."""

    def test_innermost_root_wins(self, tmp_path, monkeypatch):
        """Nested folders take precedence over their parents."""
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
        outer = tmp_path.resolve() / "outer"
        inner = outer / "inner"
        inner.mkdir(parents=True)
        ls = DmypyLanguageServer()
        ws_outer = ls.add_workspace(outer)
        ws_inner = ls.add_workspace(inner)
        assert ls.workspace_for(inner / "pkg" / "a.py") is ws_inner
        assert ls.workspace_for(outer / "b.py") is ws_outer
        assert ls.workspace_for(tmp_path.resolve() / "c.py") is None

    def test_add_workspace_is_idempotent(self, tmp_path, monkeypatch):
        """Adding the same folder twice returns the same workspace."""
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
        ls = DmypyLanguageServer()
        assert ls.add_workspace(tmp_path) is ls.add_workspace(tmp_path)


class TestStatusPayload:
    """Status command results."""

    def test_payload(self, tmp_path):
        """The payload is JSON-friendly."""
        status = DaemonStatus(
            state=DaemonState.UNAVAILABLE, restart_count=2, last_error=DaemonUnavailable("gave up"), pid=None
        )
        assert _status_payload(tmp_path, status) == {
            "workspace": str(tmp_path),
            "state": "unavailable",
            "restartCount": 2,
            "pid": None,
            "lastError": "gave up",
        }
