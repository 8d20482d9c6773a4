"""
LSP Server Manager Interface

This module provides the abstract interface for describing how a diagnostics
language server is located, launched and configured, plus the executable
resolution helpers shared by the concrete server definitions.
"""

import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from lsp_constants import Language, ServerId

logger = logging.getLogger(__name__)

NODE_LOCAL_BIN_DIRS = (os.path.join("node_modules", ".bin"),)
PYTHON_LOCAL_BIN_DIRS = (os.path.join(".venv", "bin"), os.path.join("venv", "bin"))


class CommandSource(Enum):
    """Where a resolved server command came from."""

    LOCAL = "local"
    RUNNER = "runner"
    GLOBAL = "global"


@dataclass(frozen=True)
class ResolvedCommand:
    """A concrete command line for starting a language server."""

    command: str
    args: tuple[str, ...] = field(default_factory=tuple)
    source: CommandSource = CommandSource.GLOBAL

    def argv(self) -> list[str]:
        return [self.command, *self.args]


def which(executable: str) -> str | None:
    return shutil.which(executable)


def find_bin_upward(start: str, bin_dirs: tuple[str, ...], executable: str) -> str | None:
    """Walk from ``start`` to the filesystem root looking for a local binary."""
    directory = os.path.abspath(start)
    while True:
        for bin_dir in bin_dirs:
            candidate = os.path.join(directory, bin_dir, executable)
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
                return candidate
        parent = os.path.dirname(directory)
        if parent == directory:
            return None
        directory = parent


def resolve_node_runner() -> tuple[str, str] | None:
    """Find a package runner able to fetch a Node package on demand."""
    for runner in ("pnpx", "bunx", "npx"):
        path = which(runner)
        if path:
            return runner, path
    return None


def node_runner_command(package: str, executable: str, args: tuple[str, ...]) -> ResolvedCommand | None:
    runner = resolve_node_runner()
    if runner is None:
        return None
    name, path = runner

    runner_args: list[str] = ["--yes"] if name == "npx" else []
    if package != executable:
        runner_args += ["--package", package, executable]
    else:
        runner_args.append(package)
    return ResolvedCommand(path, (*runner_args, *args), CommandSource.RUNNER)


def uv_runner_command(package: str, args: tuple[str, ...]) -> ResolvedCommand | None:
    uvx = which("uvx")
    if uvx is None:
        return None
    return ResolvedCommand(uvx, (package, *args), CommandSource.RUNNER)


class LSPServerManager(ABC):
    """Abstract interface for a diagnostics language server definition.

    Subclasses list the executables that can serve as the server, where
    project-local copies live, and which on-demand runner can fetch it.
    """

    server_id: ServerId
    language: Language

    # (executable, args) pairs, tried in order
    executables: tuple[tuple[str, tuple[str, ...]], ...] = ()
    local_bin_dirs: tuple[str, ...] = ()

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)

    def resolve_command(self, root: str) -> ResolvedCommand | None:
        """Resolve the command that starts this server for ``root``.

        Search order: a project-local binary found by walking up from the
        root, then an on-demand runner, then the global PATH. Returns None
        when the server cannot be found anywhere.
        """
        local = self.find_local_command(root)
        if local:
            self.logger.debug(f"{self.server_id.value}: using local binary {local.command}")
            return local

        runner = self.get_runner_command()
        if runner:
            self.logger.debug(f"{self.server_id.value}: using runner {runner.command}")
            return runner

        global_command = self.find_global_command()
        if global_command:
            self.logger.debug(
                f"{self.server_id.value}: using global binary {global_command.command}"
            )
            return global_command

        self.logger.info(f"{self.server_id.value}: no executable found for {root}")
        return None

    def find_local_command(self, root: str) -> ResolvedCommand | None:
        if not self.local_bin_dirs:
            return None
        for executable, args in self.executables:
            path = find_bin_upward(root, self.local_bin_dirs, executable)
            if path:
                return ResolvedCommand(path, args, CommandSource.LOCAL)
        return None

    def find_global_command(self) -> ResolvedCommand | None:
        for executable, args in self.executables:
            path = which(executable)
            if path:
                return ResolvedCommand(path, args, CommandSource.GLOBAL)
        return None

    @abstractmethod
    def get_runner_command(self) -> ResolvedCommand | None:
        """Get a command that fetches and runs the server on demand."""
        pass

    def get_initialization_options(self, root: str) -> dict[str, Any] | None:
        """Get initialization options for the server."""
        return None

    def get_workspace_configuration(self, items: Any) -> list[Any]:
        """Answer a ``workspace/configuration`` request, one entry per item."""
        if isinstance(items, list):
            return [{} for _ in items]
        return [{}]
