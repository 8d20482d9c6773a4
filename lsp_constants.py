"""
LSP Protocol Constants and Message Types

This module defines the constants and message types the diagnostics engine
needs for Language Server Protocol communication, following the LSP 3.17
specification.
"""

from enum import Enum
from typing import Any


class LSPErrorCode(Enum):
    """LSP Error Codes as defined in the specification."""

    # JSON-RPC Error Codes
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # LSP-specific Error Codes
    SERVER_NOT_INITIALIZED = -32002
    UNKNOWN_ERROR_CODE = -32001
    REQUEST_FAILED = -32803
    SERVER_CANCELLED = -32802
    CONTENT_MODIFIED = -32801
    REQUEST_CANCELLED = -32800


class LSPMessageType(Enum):
    """LSP Message Types for logging and notifications."""

    ERROR = 1
    WARNING = 2
    INFO = 3
    LOG = 4


class LSPMethod:
    """LSP Method Names as constants."""

    # General
    INITIALIZE = "initialize"
    INITIALIZED = "initialized"
    SHUTDOWN = "shutdown"
    EXIT = "exit"

    # Text Document Sync
    DID_OPEN = "textDocument/didOpen"
    DID_CLOSE = "textDocument/didClose"
    PUBLISH_DIAGNOSTICS = "textDocument/publishDiagnostics"

    # Server-to-client requests
    WORKSPACE_CONFIGURATION = "workspace/configuration"
    REGISTER_CAPABILITY = "client/registerCapability"

    # Window Features
    SHOW_MESSAGE = "window/showMessage"
    LOG_MESSAGE = "window/logMessage"


class LSPCapabilities:
    """LSP Capabilities structure templates."""

    @staticmethod
    def client_capabilities() -> dict[str, Any]:
        """Capabilities advertised by the diagnostics client.

        Only push diagnostics and full-text synchronization are advertised;
        the client never asks for hover, completion or code actions.
        """
        return {
            "textDocument": {
                "publishDiagnostics": {"relatedInformation": True},
                "diagnostic": {"dynamicRegistration": False},
                "synchronization": {
                    "didOpen": True,
                    "didChange": True,
                    "didClose": True,
                },
            },
            "workspace": {
                "workspaceFolders": True,
                "configuration": True,
            },
        }


class LSPDiagnosticSeverity(Enum):
    """Diagnostic severity levels."""

    ERROR = 1
    WARNING = 2
    INFORMATION = 3
    HINT = 4


# Severity names used in filters and formatted output
SEVERITY_NAMES: dict[int, str] = {
    LSPDiagnosticSeverity.ERROR.value: "error",
    LSPDiagnosticSeverity.WARNING.value: "warning",
    LSPDiagnosticSeverity.INFORMATION.value: "info",
    LSPDiagnosticSeverity.HINT.value: "hint",
}
SEVERITY_LEVELS: dict[str, int] = {name: level for level, name in SEVERITY_NAMES.items()}
SEVERITY_FILTERS = (*SEVERITY_LEVELS.keys(), "all")


class Language(str, Enum):
    """Languages the diagnostics engine knows how to route."""

    TYPESCRIPT = "typescript"
    PYTHON = "python"
    GO = "go"
    YAML = "yaml"
    ASTRO = "astro"
    MARKDOWN = "markdown"


class ServerId(str, Enum):
    """Identities of the language servers that can produce diagnostics."""

    TSSERVER = "tsserver"
    OXLINT = "oxlint"
    ESLINT = "eslint"
    TY = "ty"
    GOPLS = "gopls"
    YAML = "yaml"
    ASTRO = "astro"
    MARKSMAN = "marksman"


# Timing defaults (seconds)
DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_SHUTDOWN_TIMEOUT = 3.0
DIAGNOSTICS_DEBOUNCE = 0.05
DIAGNOSTICS_CEILING = 5.0

# Output defaults
DEFAULT_MAX_CHARS = 4000
DEFAULT_SEVERITY = "error"
TRUNCATION_MARKER = "\n... (truncated)"
