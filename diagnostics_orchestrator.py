"""
Diagnostics orchestration

Single entry point of the engine: classifies a file, resolves its workspace
root and language servers, lazily spawns or reuses servers, queries them
concurrently and merges, filters and formats what they report.
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any

from diagnostic_types import Diagnostic
from diagnostics_config import DiagnosticsConfig
from diagnostics_retriever import get_diagnostics
from lsp_client import LSPServerProcess, spawn_server
from lsp_constants import (
    SEVERITY_FILTERS,
    SEVERITY_LEVELS,
    TRUNCATION_MARKER,
    Language,
    ServerId,
)
from server_registry import servers_for_language
from workspace_roots import detect_language, find_root

logger = logging.getLogger(__name__)

ServerKey = tuple[ServerId, str]
Spawner = Callable[[ServerId, str], Awaitable[LSPServerProcess]]


class DiagnosticsError(Exception):
    """Base class for failures reported to the caller."""

    reason = "diagnostics_failed"


class UnsupportedLanguageError(DiagnosticsError):
    """No language server handles the file's extension."""

    reason = "unsupported_language"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Unsupported file type for diagnostics: {path}")


class NoServerAvailableError(DiagnosticsError):
    """Every candidate server failed to resolve or start."""

    reason = "no_server"

    def __init__(self, language: Language, root: str, servers_tried: list[ServerId]):
        self.language = language
        self.root = root
        self.servers_tried = servers_tried
        names = ", ".join(server_id.value for server_id in servers_tried) or "none"
        super().__init__(
            f"No {language.value} language server available for {root} (tried: {names})."
        )


class CacheEntryState(Enum):
    """Lifecycle of one (server, root) cache entry."""

    ABSENT = "absent"
    SPAWNING = "spawning"
    READY = "ready"
    BROKEN = "broken"


class ServerCache:
    """Live servers, in-flight spawns and quarantined keys of one orchestrator."""

    def __init__(self):
        self.servers: dict[ServerKey, LSPServerProcess] = {}
        self.spawning: dict[ServerKey, asyncio.Task] = {}
        self.quarantined: set[ServerKey] = set()
        self.crash_counts: dict[ServerKey, int] = {}

    def state(self, key: ServerKey) -> CacheEntryState:
        if key in self.quarantined:
            return CacheEntryState.BROKEN
        if key in self.spawning:
            return CacheEntryState.SPAWNING
        if key in self.servers:
            return CacheEntryState.READY
        return CacheEntryState.ABSENT

    def clear(self) -> None:
        self.servers.clear()
        self.spawning.clear()
        self.quarantined.clear()
        self.crash_counts.clear()


@dataclass
class DiagnosisResult:
    """Outcome of one ``get_diagnosis_for_file`` call."""

    ok: bool
    text: str
    path: str
    reason: str | None = None
    root: str | None = None
    language: str | None = None
    severity: str | None = None
    count: int = 0
    servers_tried: list[str] = field(default_factory=list)
    servers_failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary representation."""
        return {
            "ok": self.ok,
            "text": self.text,
            "path": self.path,
            "reason": self.reason,
            "root": self.root,
            "language": self.language,
            "severity": self.severity,
            "count": self.count,
            "servers_tried": list(self.servers_tried),
            "servers_failed": list(self.servers_failed),
        }


def filter_diagnostics(diagnostics: list[Diagnostic], severity: str) -> list[Diagnostic]:
    """Keep diagnostics of exactly ``severity``; ``all`` keeps everything."""
    if severity == "all":
        return list(diagnostics)
    level = SEVERITY_LEVELS[severity]
    return [d for d in diagnostics if d.severity == level]


def format_diagnostics(path: str, diagnostics: list[Diagnostic], max_chars: int) -> str:
    """Render one line per diagnostic, truncated to ``max_chars``."""
    text = "\n".join(d.format(path) for d in diagnostics)
    if len(text) > max_chars:
        text = text[:max_chars] + TRUNCATION_MARKER
    return text


class DiagnosticsOrchestrator:
    """Routes diagnostics requests to language servers it owns.

    Each orchestrator has its own server cache, so separate instances never
    share processes. All methods must run on one event loop.
    """

    def __init__(
        self,
        config: DiagnosticsConfig | None = None,
        cwd: str | None = None,
        spawner: Spawner | None = None,
    ):
        self.config = config or DiagnosticsConfig()
        self.cwd = os.path.abspath(cwd or os.getcwd())
        self.cache = ServerCache()
        self._spawner = spawner or self._spawn_default
        self._cleanup_tasks: set[asyncio.Task] = set()

    async def _spawn_default(self, server_id: ServerId, root: str) -> LSPServerProcess:
        return await spawn_server(
            server_id, root, request_timeout=self.config.request_timeout
        )

    def entry_state(self, server_id: ServerId, root: str) -> CacheEntryState:
        return self.cache.state((server_id, root))

    async def get_or_spawn_server(self, server_id: ServerId, root: str) -> LSPServerProcess | None:
        """Return a ready server for the key, or None if it cannot run."""
        key = (server_id, root)
        if key in self.cache.quarantined:
            logger.debug(f"Skipping quarantined server {server_id.value} for {root}")
            return None

        server = self.cache.servers.get(key)
        if server is not None:
            if server.is_alive():
                return server
            # Exited before its exit callback ran
            self._evict(key, server)

        task = self.cache.spawning.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._start_server(key))
            self.cache.spawning[key] = task
            task.add_done_callback(partial(self._spawn_finished, key))

        # Shielded so one cancelled caller does not abort a spawn others share
        return await asyncio.shield(task)

    def _spawn_finished(self, key: ServerKey, task: asyncio.Task) -> None:
        if self.cache.spawning.get(key) is task:
            del self.cache.spawning[key]

    async def _start_server(self, key: ServerKey) -> LSPServerProcess | None:
        server_id, root = key
        server: LSPServerProcess | None = None
        logger.info(f"Starting {server_id.value} language server for {root}")

        try:
            server = await self._spawner(server_id, root)
            await server.ready
        except asyncio.CancelledError:
            if server is not None:
                await server.shutdown(self.config.shutdown_timeout)
            raise
        except Exception as e:
            logger.warning(f"Quarantining {server_id.value} for {root}: {e}")
            self.cache.quarantined.add(key)
            if server is not None:
                await server.shutdown(self.config.shutdown_timeout)
            return None

        self.cache.servers[key] = server
        server.add_exit_callback(self._on_server_exit)
        return server

    def _evict(self, key: ServerKey, server: LSPServerProcess) -> None:
        if self.cache.servers.get(key) is server:
            del self.cache.servers[key]
            logger.info(f"Evicted {key[0].value} for {key[1]}")

    def _on_server_exit(self, server: LSPServerProcess) -> None:
        key = (server.server_id, server.root)
        crashed = server.crashed
        self._evict(key, server)
        if not crashed:
            return

        # Reap the exited process and release its pipes
        task = asyncio.get_running_loop().create_task(
            server.shutdown(self.config.shutdown_timeout)
        )
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

        crashes = self.cache.crash_counts.get(key, 0) + 1
        self.cache.crash_counts[key] = crashes
        if crashes > self.config.max_crash_restarts:
            logger.error(
                f"{key[0].value} for {key[1]} crashed {crashes} times, quarantining"
            )
            self.cache.quarantined.add(key)
        else:
            logger.warning(
                f"{key[0].value} for {key[1]} crashed ({crashes}), "
                "will restart on next request"
            )

    async def _query_server(self, server: LSPServerProcess, path: str) -> list[Diagnostic]:
        diagnostics = await get_diagnostics(
            server, path, debounce=self.config.debounce, ceiling=self.config.ceiling
        )
        return [d.with_default_source(server.server_id.value) for d in diagnostics]

    async def get_diagnosis_for_file(
        self,
        path: str,
        severity: str | None = None,
        max_chars: int | None = None,
    ) -> DiagnosisResult:
        """Run diagnostics for one file and format the result.

        Args:
            path: File to check, absolute or relative to the orchestrator's cwd
            severity: ``error``, ``warning``, ``info``, ``hint`` or ``all``
            max_chars: Maximum length of the diagnostics listing

        Raises:
            ValueError: If ``severity`` or ``max_chars`` is invalid
        """
        severity = severity or self.config.default_severity
        if severity not in SEVERITY_FILTERS:
            raise ValueError(f"Invalid severity filter: {severity}")
        max_chars = self.config.max_chars if max_chars is None else max_chars
        if max_chars < 1:
            raise ValueError(f"max_chars must be at least 1, got: {max_chars}")

        abs_path = os.path.normpath(os.path.join(self.cwd, os.path.expanduser(path)))

        try:
            return await self._diagnose(abs_path, severity, max_chars)
        except UnsupportedLanguageError as e:
            return DiagnosisResult(ok=False, text=str(e), path=abs_path, reason=e.reason)
        except NoServerAvailableError as e:
            return DiagnosisResult(
                ok=False,
                text=str(e),
                path=abs_path,
                reason=e.reason,
                root=e.root,
                language=e.language.value,
                servers_tried=[server_id.value for server_id in e.servers_tried],
            )

    async def _diagnose(self, path: str, severity: str, max_chars: int) -> DiagnosisResult:
        language = detect_language(path)
        if language is None:
            raise UnsupportedLanguageError(path)

        root = find_root(path, language) or self.cwd
        server_ids = servers_for_language(language, root)
        logger.info(
            f"Diagnosing {path} ({language.value}, root {root}) with "
            f"{', '.join(s.value for s in server_ids)}"
        )

        spawned = await asyncio.gather(
            *(self.get_or_spawn_server(server_id, root) for server_id in server_ids)
        )
        servers = [server for server in spawned if server is not None]
        if not servers:
            raise NoServerAvailableError(language, root, server_ids)
        unavailable = {
            server_id for server_id, server in zip(server_ids, spawned) if server is None
        }

        results = await asyncio.gather(
            *(self._query_server(server, path) for server in servers),
            return_exceptions=True,
        )

        diagnostics: list[Diagnostic] = []
        query_failed: set[ServerId] = set()
        for server, result in zip(servers, results):
            if isinstance(result, BaseException):
                logger.warning(f"{server.name} failed for {path}: {result!r}")
                query_failed.add(server.server_id)
                continue
            diagnostics.extend(result)
        failed = [
            server_id.value
            for server_id in server_ids
            if server_id in unavailable or server_id in query_failed
        ]

        result_base = {
            "path": path,
            "root": root,
            "language": language.value,
            "severity": severity,
            "servers_tried": [server_id.value for server_id in server_ids],
            "servers_failed": failed,
        }

        if len(query_failed) == len(servers):
            return DiagnosisResult(
                ok=False,
                text=f"Failed to get diagnostics for {path} from {', '.join(failed)}.",
                reason=DiagnosticsError.reason,
                **result_base,
            )

        filtered = filter_diagnostics(diagnostics, severity)
        if not filtered:
            return DiagnosisResult(
                ok=True, text=f"No {severity} diagnostics.", count=0, **result_base
            )

        body = format_diagnostics(path, filtered, max_chars)
        return DiagnosisResult(
            ok=True,
            text=f"Diagnostics ({len(filtered)}) for {path}:\n{body}",
            count=len(filtered),
            **result_base,
        )

    async def shutdown_all(self) -> None:
        """Stop every server this orchestrator started and forget all state."""
        spawning = list(self.cache.spawning.values())
        for task in spawning:
            task.cancel()
        if spawning:
            await asyncio.gather(*spawning, return_exceptions=True)

        servers = list(self.cache.servers.values())
        self.cache.clear()
        cleanup = list(self._cleanup_tasks)
        if cleanup:
            await asyncio.gather(*cleanup, return_exceptions=True)
        if servers:
            logger.info(f"Shutting down {len(servers)} language servers")
            await asyncio.gather(
                *(server.shutdown(self.config.shutdown_timeout) for server in servers),
                return_exceptions=True,
            )
