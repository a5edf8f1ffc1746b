"""Translation of dmypy reports into per-document diagnostics and publish deltas.

Report lines look like (mypy with --show-column-numbers --show-error-end):

    /abs/src/app.py:12:5:12:18: error: Incompatible types  [arg-type]
    src/app.py:12:5: error: Incompatible types [arg-type]

or, with ``--output json``, one JSON object per line. Anything else (banner and
summary lines) is ignored.
"""

import json
import logging
import os
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

logger = logging.getLogger(__name__)

_REPORT_RE = re.compile(
    r"^(?P<path>.+?):(?P<line>\d+)(?::(?P<column>\d+)(?::(?P<end_line>\d+):(?P<end_column>\d+))?)?: "
    r"(?P<severity>[a-z]+): (?P<message>.*?)(?:\s+\[(?P<code>[a-z0-9_-]+)\])?\s*$"
)
# Looks like "<path>:<line>" but may still fail to parse; anything else is banner text.
_LOCATION_RE = re.compile(r"^\S.*?:\d+[:\s]")


class Severity(StrEnum):
    """Diagnostic severity as reported by the daemon."""

    ERROR = "error"
    WARNING = "warning"
    NOTE = "note"


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """One reported issue. Positions are 1-based, as printed by the daemon."""

    path: str
    line: int
    column: int
    end_line: int
    end_column: int
    severity: Severity
    message: str
    code: str | None = None

    @property
    def sort_key(self) -> tuple[int, int]:
        """Document order used for stable rendering."""
        return (self.line, self.column)


@dataclass(frozen=True, slots=True)
class ParseFailure:
    """Soft parse error for a report line that looked like a diagnostic but was not."""

    line: str
    reason: str


@dataclass(frozen=True, slots=True)
class Publication:
    """A publish notification: the full diagnostic sequence for one document."""

    path: Path
    diagnostics: tuple[Diagnostic, ...]


def parse_line(line: str) -> Diagnostic | ParseFailure | None:
    """Parse one report line.

    Returns:
        A Diagnostic, a ParseFailure for a malformed diagnostic line, or None for
        lines that are not diagnostics at all.

    """
    text = line.rstrip("\r\n")
    stripped = text.strip()
    if not stripped:
        return None
    if stripped.startswith("{"):
        return _parse_json_line(stripped)

    m = _REPORT_RE.match(text)
    if m is None:
        if _LOCATION_RE.match(text):
            return ParseFailure(text, "unrecognized diagnostic layout")
        return None
    try:
        severity = Severity(m["severity"])
    except ValueError:
        return ParseFailure(text, f"unknown severity {m['severity']!r}")

    line_no = int(m["line"])
    column = int(m["column"]) if m["column"] else 1
    end_line = int(m["end_line"]) if m["end_line"] else line_no
    end_column = int(m["end_column"]) if m["end_column"] else column
    return Diagnostic(
        path=m["path"],
        line=line_no,
        column=column,
        end_line=end_line,
        end_column=end_column,
        severity=severity,
        message=m["message"],
        code=m["code"],
    )


def _parse_json_line(text: str) -> Diagnostic | ParseFailure:
    """Parse one line of mypy's JSON output (0-based columns, -1 when unknown)."""
    try:
        obj = json.loads(text)
        severity = Severity(obj["severity"])
        line_no = int(obj["line"])
        column = max(int(obj.get("column", 0)), 0) + 1
        message = str(obj["message"])
        path = str(obj["file"])
    except (ValueError, KeyError, TypeError) as e:
        return ParseFailure(text, f"invalid JSON diagnostic: {e}")
    if obj.get("hint"):
        message = f"{message}\n{obj['hint']}"
    return Diagnostic(
        path=path,
        line=line_no,
        column=column,
        end_line=line_no,
        end_column=column,
        severity=severity,
        message=message,
        code=obj.get("code") or None,
    )


def document_path(path: str | Path, root: Path | None = None) -> Path:
    """Canonical identity of a document: a normalized absolute path."""
    p = Path(path)
    if not p.is_absolute() and root is not None:
        p = root / p
    return Path(os.path.normpath(p))


def translate(raw_output: str, root: Path | None = None) -> dict[Path, tuple[Diagnostic, ...]]:
    """Parse a full daemon report into ordered diagnostics per document.

    Malformed lines are logged and dropped; they never affect sibling diagnostics.
    Deterministic for a given input.
    """
    grouped: dict[Path, list[Diagnostic]] = {}
    for raw_line in raw_output.splitlines():
        result = parse_line(raw_line)
        if result is None:
            continue
        if isinstance(result, ParseFailure):
            logger.warning("Dropping unparseable dmypy line (%s): %s", result.reason, result.line)
            continue
        bucket = grouped.setdefault(document_path(result.path, root), [])
        if result not in bucket:
            bucket.append(result)
    # sorted() is stable: same-position diagnostics keep the daemon's order
    return {path: tuple(sorted(diags, key=lambda d: d.sort_key)) for path, diags in grouped.items()}


class DiagnosticPublisher:
    """Owns the last published diagnostics per document and computes minimal deltas."""

    def __init__(self) -> None:
        self._published: dict[Path, tuple[Diagnostic, ...]] = {}

    def published(self, path: Path) -> tuple[Diagnostic, ...]:
        """Diagnostics last published for a document (empty if none)."""
        return self._published.get(path, ())

    def compute(
        self, diagnostics: Mapping[Path, Sequence[Diagnostic]], covered: Iterable[Path]
    ) -> list[Publication]:
        """Return the publications needed to bring the covered documents up to date.

        Documents whose sequence is unchanged produce nothing; documents that lost
        all their diagnostics get an explicit empty publication. Documents outside
        ``covered`` are left untouched.
        """
        publications: list[Publication] = []
        for path in sorted(set(covered)):
            new = tuple(diagnostics.get(path, ()))
            if new == self._published.get(path, ()):
                continue
            if new:
                self._published[path] = new
            else:
                self._published.pop(path, None)
            publications.append(Publication(path, new))
        return publications

    def forget(self, path: Path) -> Publication | None:
        """Stop tracking a document, returning a clearing publication if it had diagnostics."""
        if self._published.pop(path, None):
            return Publication(path, ())
        return None
