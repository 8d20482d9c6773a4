"""
LSP Client Infrastructure

This module spawns a diagnostics language server, wires a JSON-RPC
connection over its stdio, performs the initialize handshake and keeps the
per-file diagnostics the server publishes.
"""

import asyncio
import logging
import os
import subprocess
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any

from diagnostic_servers import get_server_manager
from diagnostic_types import Diagnostic, path_to_uri, uri_to_path
from lsp_constants import (
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SHUTDOWN_TIMEOUT,
    LSPCapabilities,
    LSPMessageType,
    LSPMethod,
    ServerId,
)
from lsp_jsonrpc import (
    ConnectionDisposedError,
    JSONRPCError,
    JsonRpcConnection,
    RequestTimeoutError,
)
from lsp_server_manager import LSPServerManager, ResolvedCommand
from system_utils import kill_process_tree

CLIENT_NAME = "lsp-diagnostics"
CLIENT_VERSION = "1.0.0"

# Only server-reported errors reach warning level
MESSAGE_LOG_LEVELS = {
    LSPMessageType.ERROR.value: logging.WARNING,
    LSPMessageType.WARNING.value: logging.INFO,
    LSPMessageType.INFO.value: logging.DEBUG,
    LSPMessageType.LOG.value: logging.DEBUG,
}


class ServerUnavailableError(RuntimeError):
    """No executable could be resolved for a language server."""


class ServerStartupError(RuntimeError):
    """The server process could not be started or failed its handshake."""


class LSPClientState(Enum):
    """States of the LSP client connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    SHUTTING_DOWN = "shutting_down"
    ERROR = "error"


ExitCallback = Callable[["LSPServerProcess"], None]


class LSPServerProcess:
    """A running language server and everything the client tracks about it."""

    def __init__(
        self,
        manager: LSPServerManager,
        root: str,
        command: ResolvedCommand,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        logger: logging.Logger | None = None,
    ):
        self.manager = manager
        self.server_id: ServerId = manager.server_id
        self.language = manager.language
        self.root = root
        self.command = command
        self.request_timeout = request_timeout
        self.logger = logger or logging.getLogger(__name__)

        # Connection state
        self.state = LSPClientState.DISCONNECTED
        self.process: subprocess.Popen | None = None
        self.connection: JsonRpcConnection | None = None
        self.ready: asyncio.Task | None = None
        self.server_capabilities: dict[str, Any] = {}
        self.pull_diagnostics = False

        # Diagnostics, keyed by absolute file path
        self.diagnostics: dict[str, list[Diagnostic]] = {}
        self.waiters: dict[str, list[Callable[[], None]]] = {}

        self._exit_callbacks: list[ExitCallback] = []
        self._exited = False
        self._shutdown_requested = False
        self._stderr_thread: threading.Thread | None = None

    @property
    def name(self) -> str:
        return f"{self.server_id.value}@{self.root}"

    @property
    def crashed(self) -> bool:
        """True if the process went away without being asked to."""
        return self._exited and not self._shutdown_requested

    def is_alive(self) -> bool:
        return (
            self.process is not None
            and not self._exited
            and self.process.poll() is None
        )

    def _set_state(self, state: LSPClientState) -> None:
        self.logger.debug(f"{self.name}: {self.state.value} -> {state.value}")
        self.state = state

    def start(self) -> None:
        """Start the server process and begin the initialize handshake.

        Must be called from a running event loop. The handshake runs in the
        background; await ``ready`` before sending document notifications.

        Raises:
            ServerStartupError: If the process cannot be started
        """
        self._set_state(LSPClientState.CONNECTING)
        argv = self.command.argv()
        self.logger.info(f"Starting LSP server: {' '.join(argv)}")
        self.logger.debug(f"Workspace root: {self.root}")

        try:
            self.process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.root,
                env=os.environ.copy(),
            )
        except OSError as e:
            self._set_state(LSPClientState.ERROR)
            raise ServerStartupError(f"Failed to start {self.name}: {e}") from e

        self.logger.debug(f"Server process PID: {self.process.pid}")

        self.connection = JsonRpcConnection(self.process.stdin, logger=self.logger)
        self.connection.on_notification = self._handle_notification
        self.connection.on_request = self._handle_request
        self.connection.on_close = self._handle_connection_closed
        self.connection.start_reader(
            self.process.stdout, name=f"lsp-{self.server_id.value}-reader"
        )
        self._start_stderr_drain()

        self.ready = asyncio.get_running_loop().create_task(self._initialize())

    async def _initialize(self) -> None:
        """Send ``initialize``, record capabilities, then send ``initialized``."""
        assert self.connection is not None
        self._set_state(LSPClientState.INITIALIZING)

        root_uri = path_to_uri(self.root)
        init_params: dict[str, Any] = {
            "processId": os.getpid(),
            "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
            "rootUri": root_uri,
            "workspaceFolders": [
                {"uri": root_uri, "name": os.path.basename(self.root) or self.root}
            ],
            "capabilities": LSPCapabilities.client_capabilities(),
        }
        init_options = self.manager.get_initialization_options(self.root)
        if init_options:
            self.logger.debug(f"Initialization options: {init_options}")
            init_params["initializationOptions"] = init_options

        try:
            result = await self.connection.send_request(
                LSPMethod.INITIALIZE, init_params, timeout=self.request_timeout
            )
        except (JSONRPCError, RequestTimeoutError, ConnectionDisposedError) as e:
            self._set_state(LSPClientState.ERROR)
            raise ServerStartupError(f"Initialize failed for {self.name}: {e}") from e

        capabilities = result.get("capabilities", {}) if isinstance(result, dict) else {}
        self.server_capabilities = capabilities or {}
        self.pull_diagnostics = bool(self.server_capabilities.get("diagnosticProvider"))

        self.connection.send_notification(LSPMethod.INITIALIZED, {})
        self._set_state(LSPClientState.INITIALIZED)
        self.logger.info(f"LSP server {self.name} initialized")

    def _start_stderr_drain(self) -> None:
        """Log server stderr so a chatty server never blocks on a full pipe."""
        stream = self.process.stderr if self.process else None
        if stream is None:
            return

        def drain() -> None:
            try:
                for line in iter(stream.readline, b""):
                    self.logger.debug(
                        f"[{self.server_id.value} stderr] "
                        f"{line.decode('utf-8', errors='replace').rstrip()}"
                    )
            except (OSError, ValueError):
                pass

        self._stderr_thread = threading.Thread(
            target=drain, name=f"lsp-{self.server_id.value}-stderr", daemon=True
        )
        self._stderr_thread.start()

    # Server-to-client traffic
    def _handle_notification(self, method: str, params: Any) -> None:
        if method == LSPMethod.PUBLISH_DIAGNOSTICS:
            self._handle_publish_diagnostics(params)
        elif method in (LSPMethod.LOG_MESSAGE, LSPMethod.SHOW_MESSAGE):
            self.logger.log(
                _message_level(params), f"[{self.server_id.value}] {_message_text(params)}"
            )

    def _handle_publish_diagnostics(self, params: Any) -> None:
        if not isinstance(params, dict) or not isinstance(params.get("uri"), str):
            self.logger.warning(f"Malformed publishDiagnostics from {self.name}")
            return

        path = os.path.normpath(uri_to_path(params["uri"]))
        items = params.get("diagnostics") or []
        diagnostics = [Diagnostic.from_lsp(item) for item in items if isinstance(item, dict)]

        # Each publish replaces the previous set for the file
        self.diagnostics[path] = diagnostics
        self.logger.debug(f"Received diagnostics for {path}: {len(diagnostics)} items")

        for waiter in list(self.waiters.get(path, ())):
            waiter()

    async def _handle_request(self, method: str, params: Any) -> Any:
        if method == LSPMethod.WORKSPACE_CONFIGURATION:
            items = params.get("items") if isinstance(params, dict) else None
            return self.manager.get_workspace_configuration(items)
        if method == LSPMethod.REGISTER_CAPABILITY:
            return {}
        self.logger.debug(f"Answering {method} from {self.name} with null")
        return None

    def _handle_connection_closed(self) -> None:
        if self._exited:
            return
        self._exited = True

        returncode = self.process.poll() if self.process else None
        if not self._shutdown_requested:
            self.logger.warning(f"LSP server {self.name} exited unexpectedly (code {returncode})")

        if self.connection is not None:
            self.connection.dispose()
        self._set_state(LSPClientState.DISCONNECTED)

        # End pending diagnostics waits; nothing more will be published
        for waiters in list(self.waiters.values()):
            for waiter in list(waiters):
                waiter()

        for callback in list(self._exit_callbacks):
            try:
                callback(self)
            except Exception as e:
                self.logger.error(f"Error in exit callback for {self.name}: {e}")

    # Public API
    def add_exit_callback(self, callback: ExitCallback) -> None:
        """Register a callback run once, on the loop, when the process exits."""
        self._exit_callbacks.append(callback)

    def add_waiter(self, path: str, waiter: Callable[[], None]) -> None:
        self.waiters.setdefault(path, []).append(waiter)

    def remove_waiter(self, path: str, waiter: Callable[[], None]) -> None:
        waiters = self.waiters.get(path)
        if not waiters:
            return
        if waiter in waiters:
            waiters.remove(waiter)
        if not waiters:
            del self.waiters[path]

    def open_document(self, path: str, language_id: str, text: str) -> None:
        assert self.connection is not None
        self.connection.send_notification(
            LSPMethod.DID_OPEN,
            {
                "textDocument": {
                    "uri": path_to_uri(path),
                    "languageId": language_id,
                    "version": 1,
                    "text": text,
                }
            },
        )

    def close_document(self, path: str) -> None:
        assert self.connection is not None
        self.connection.send_notification(
            LSPMethod.DID_CLOSE, {"textDocument": {"uri": path_to_uri(path)}}
        )

    async def shutdown(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        """Stop the server; best effort, never raises."""
        if self.process is None:
            return

        was_initialized = self.state == LSPClientState.INITIALIZED
        self._shutdown_requested = True
        self._set_state(LSPClientState.SHUTTING_DOWN)

        if self.connection is not None:
            if was_initialized and not self.connection.is_disposed:
                try:
                    await self.connection.send_request(
                        LSPMethod.SHUTDOWN, None, timeout=timeout
                    )
                    self.connection.send_notification(LSPMethod.EXIT, None)
                except Exception as e:
                    self.logger.debug(f"Error during server shutdown of {self.name}: {e}")
            self.connection.dispose()

        # A reaped process's pid may already belong to someone else
        if self.process.returncode is None:
            try:
                await asyncio.to_thread(kill_process_tree, self.process.pid, self.logger)
            except Exception as e:
                self.logger.error(f"Error terminating {self.name}: {e}")

        for stream in (self.process.stdin, self.process.stdout, self.process.stderr):
            try:
                if stream:
                    stream.close()
            except OSError:
                pass

        self._set_state(LSPClientState.DISCONNECTED)
        self.logger.info(f"LSP server {self.name} stopped")


def _message_text(params: Any) -> str:
    if isinstance(params, dict):
        return str(params.get("message", ""))
    return str(params)


def _message_level(params: Any) -> int:
    if isinstance(params, dict):
        return MESSAGE_LOG_LEVELS.get(params.get("type"), logging.DEBUG)
    return logging.DEBUG


async def spawn_server(
    server_id: ServerId,
    root: str,
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    logger: logging.Logger | None = None,
) -> LSPServerProcess:
    """Resolve and start a language server for ``root``.

    The returned server is still handshaking; await ``server.ready``.

    Raises:
        ServerUnavailableError: If no executable can be resolved
        ServerStartupError: If the process cannot be started
    """
    manager = get_server_manager(server_id, logger=logger)
    command = manager.resolve_command(root)
    if command is None:
        raise ServerUnavailableError(f"No {server_id.value} language server found for {root}.")

    server = LSPServerProcess(
        manager, root, command, request_timeout=request_timeout, logger=logger
    )
    server.start()
    return server
