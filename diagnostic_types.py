"""
Diagnostic data model shared by the language server client and the orchestrator.
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

from lsp_constants import SEVERITY_NAMES, LSPDiagnosticSeverity


@dataclass(frozen=True)
class Position:
    """Zero-based line/character position as reported on the wire."""

    line: int
    character: int

    @classmethod
    def from_lsp(cls, data: dict[str, Any] | None) -> "Position":
        data = data or {}
        return cls(line=int(data.get("line", 0)), character=int(data.get("character", 0)))


@dataclass(frozen=True)
class Range:
    start: Position
    end: Position

    @classmethod
    def from_lsp(cls, data: dict[str, Any] | None) -> "Range":
        data = data or {}
        return cls(
            start=Position.from_lsp(data.get("start")),
            end=Position.from_lsp(data.get("end")),
        )


@dataclass(frozen=True)
class Diagnostic:
    """A single issue reported by a language server for a file."""

    range: Range
    message: str
    severity: int = LSPDiagnosticSeverity.ERROR.value
    code: int | str | None = None
    source: str | None = None

    @classmethod
    def from_lsp(cls, data: dict[str, Any]) -> "Diagnostic":
        """Build a diagnostic from a ``publishDiagnostics`` entry.

        A missing severity is treated as an error, which is how editors
        render it.
        """
        severity = data.get("severity") or LSPDiagnosticSeverity.ERROR.value
        return cls(
            range=Range.from_lsp(data.get("range")),
            message=str(data.get("message", "")),
            severity=int(severity),
            code=data.get("code"),
            source=data.get("source") or None,
        )

    @property
    def severity_name(self) -> str:
        return SEVERITY_NAMES.get(self.severity, "unknown")

    def with_default_source(self, source: str) -> "Diagnostic":
        """Return this diagnostic tagged with ``source`` unless it has one."""
        if self.source:
            return self
        return replace(self, source=source)

    def format(self, file_path: str) -> str:
        """Render as ``path:line:col severity [code] (source): message``.

        Line and column are converted to 1-based.
        """
        location = f"{self.range.start.line + 1}:{self.range.start.character + 1}"
        code = f" [{self.code}]" if self.code not in (None, "") else ""
        source = f" ({self.source})" if self.source else ""
        return f"{file_path}:{location} {self.severity_name}{code}{source}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert diagnostic to dictionary representation."""
        return {
            "range": {
                "start": {
                    "line": self.range.start.line,
                    "character": self.range.start.character,
                },
                "end": {
                    "line": self.range.end.line,
                    "character": self.range.end.character,
                },
            },
            "severity": self.severity,
            "code": self.code,
            "source": self.source,
            "message": self.message,
        }


def path_to_uri(path: str) -> str:
    return Path(os.path.abspath(path)).as_uri()


def uri_to_path(uri: str) -> str:
    """Convert a ``file://`` URI back to a local path; other URIs pass through."""
    if not uri.startswith("file://"):
        return uri
    return unquote(urlparse(uri).path)
