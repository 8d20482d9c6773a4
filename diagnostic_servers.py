"""
Diagnostics Language Server Definitions

Concrete LSPServerManager implementations for every language server the
diagnostics engine can launch, and the lookup table keyed by ServerId.
"""

import logging
import os
from typing import Any

from lsp_constants import Language, ServerId
from lsp_server_manager import (
    NODE_LOCAL_BIN_DIRS,
    PYTHON_LOCAL_BIN_DIRS,
    LSPServerManager,
    ResolvedCommand,
    node_runner_command,
    uv_runner_command,
    which,
)

ESLINT_DEFAULT_CONFIG = {
    "validate": "on",
    "run": "onType",
    "workingDirectory": {"mode": "location"},
}


def find_tsserver_upward(start: str) -> str | None:
    """Locate the project's TypeScript ``tsserver.js`` (or its lib dir)."""
    directory = os.path.abspath(start)
    while True:
        lib_dir = os.path.join(directory, "node_modules", "typescript", "lib")
        tsserver_js = os.path.join(lib_dir, "tsserver.js")
        if os.path.isfile(tsserver_js):
            return tsserver_js
        if os.path.isdir(lib_dir):
            return lib_dir
        parent = os.path.dirname(directory)
        if parent == directory:
            return None
        directory = parent


class TsServerManager(LSPServerManager):
    """typescript-language-server, the type checker for TS/JS files."""

    server_id = ServerId.TSSERVER
    language = Language.TYPESCRIPT
    executables = (("typescript-language-server", ("--stdio",)),)
    local_bin_dirs = NODE_LOCAL_BIN_DIRS

    def get_runner_command(self) -> ResolvedCommand | None:
        return node_runner_command(
            "typescript-language-server", "typescript-language-server", ("--stdio",)
        )

    def get_initialization_options(self, root: str) -> dict[str, Any] | None:
        tsserver_path = find_tsserver_upward(root) or which("tsserver")
        fallback_path = find_tsserver_upward(os.path.dirname(os.path.abspath(__file__)))
        if not tsserver_path and not fallback_path:
            return None

        tsserver: dict[str, str] = {}
        if tsserver_path:
            tsserver["path"] = tsserver_path
        if fallback_path:
            tsserver["fallbackPath"] = fallback_path
        return {"tsserver": tsserver}


class OxlintServerManager(LSPServerManager):
    """oxlint in LSP mode, the preferred TS/JS linter."""

    server_id = ServerId.OXLINT
    language = Language.TYPESCRIPT
    executables = (("oxlint", ("--lsp",)), ("oxc_language_server", ()))
    local_bin_dirs = NODE_LOCAL_BIN_DIRS

    def get_runner_command(self) -> ResolvedCommand | None:
        return None


class EslintServerManager(LSPServerManager):
    """vscode-eslint-language-server, the legacy TS/JS linter."""

    server_id = ServerId.ESLINT
    language = Language.TYPESCRIPT
    executables = (("vscode-eslint-language-server", ("--stdio",)),)
    local_bin_dirs = NODE_LOCAL_BIN_DIRS

    def get_runner_command(self) -> ResolvedCommand | None:
        return node_runner_command(
            "vscode-langservers-extracted",
            "vscode-eslint-language-server",
            ("--stdio",),
        )

    def get_workspace_configuration(self, items: Any) -> list[Any]:
        # The ESLint server refuses to validate until it receives settings
        if isinstance(items, list):
            return [dict(ESLINT_DEFAULT_CONFIG) for _ in items]
        return [dict(ESLINT_DEFAULT_CONFIG)]


class TyServerManager(LSPServerManager):
    """ty, the Python type checker."""

    server_id = ServerId.TY
    language = Language.PYTHON
    executables = (("ty", ("server",)),)
    local_bin_dirs = PYTHON_LOCAL_BIN_DIRS

    def get_runner_command(self) -> ResolvedCommand | None:
        return uv_runner_command("ty", ("server",))


class GoplsServerManager(LSPServerManager):
    server_id = ServerId.GOPLS
    language = Language.GO
    executables = (("gopls", ()),)

    def get_runner_command(self) -> ResolvedCommand | None:
        return None


class YamlServerManager(LSPServerManager):
    server_id = ServerId.YAML
    language = Language.YAML
    executables = (("yaml-language-server", ("--stdio",)),)
    local_bin_dirs = NODE_LOCAL_BIN_DIRS

    def get_runner_command(self) -> ResolvedCommand | None:
        return node_runner_command("yaml-language-server", "yaml-language-server", ("--stdio",))


class AstroServerManager(LSPServerManager):
    server_id = ServerId.ASTRO
    language = Language.ASTRO
    executables = (("astro-ls", ("--stdio",)),)
    local_bin_dirs = NODE_LOCAL_BIN_DIRS

    def get_runner_command(self) -> ResolvedCommand | None:
        return node_runner_command("@astrojs/language-server", "astro-ls", ("--stdio",))


class MarksmanServerManager(LSPServerManager):
    server_id = ServerId.MARKSMAN
    language = Language.MARKDOWN
    executables = (("marksman", ("server",)),)

    def get_runner_command(self) -> ResolvedCommand | None:
        return None


SERVER_MANAGERS: dict[ServerId, type[LSPServerManager]] = {
    manager.server_id: manager
    for manager in (
        TsServerManager,
        OxlintServerManager,
        EslintServerManager,
        TyServerManager,
        GoplsServerManager,
        YamlServerManager,
        AstroServerManager,
        MarksmanServerManager,
    )
}


def get_server_manager(server_id: ServerId, logger: logging.Logger | None = None) -> LSPServerManager:
    """Create the server definition for ``server_id``."""
    return SERVER_MANAGERS[server_id](logger=logger)


def resolve_executable(server_id: ServerId, root: str) -> ResolvedCommand | None:
    """Resolve the command for ``server_id`` in ``root``; None if unavailable."""
    return get_server_manager(server_id).resolve_command(root)
