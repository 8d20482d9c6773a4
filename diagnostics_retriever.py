"""
Diagnostics retrieval

Opens a document on one language server, waits for the pushed diagnostics
to settle, closes the document and returns what the server reported.

Servers publish diagnostics asynchronously and sometimes in bursts (a
syntactic pass followed by a semantic one), and a clean file may never be
published at all. Settling is therefore a race between a short debounce
that restarts on every publish and a hard ceiling.
"""

import asyncio
import logging
import os
from enum import Enum
from pathlib import Path

from diagnostic_types import Diagnostic
from lsp_client import LSPServerProcess
from lsp_constants import DIAGNOSTICS_CEILING, DIAGNOSTICS_DEBOUNCE
from lsp_jsonrpc import ConnectionDisposedError
from workspace_roots import language_id_for

logger = logging.getLogger(__name__)


class SettleState(Enum):
    """Progress of one wait for a file's diagnostics."""

    IDLE = "idle"
    DEBOUNCING = "debouncing"
    SETTLED = "settled"


class DiagnosticsWaiter:
    """Waits until publishes for one file stop arriving.

    ``notify`` is registered with the server as the file's waiter callback.
    """

    def __init__(
        self,
        debounce: float = DIAGNOSTICS_DEBOUNCE,
        ceiling: float = DIAGNOSTICS_CEILING,
    ):
        self.debounce = debounce
        self.ceiling = ceiling
        self.state = SettleState.IDLE
        self.settled_by: str | None = None
        self.publish_count = 0
        self._wake = asyncio.Event()

    def notify(self) -> None:
        self.publish_count += 1
        self._wake.set()

    async def wait(self) -> SettleState:
        """Block until the debounce or the ceiling deadline passes."""
        loop = asyncio.get_running_loop()
        ceiling_at = loop.time() + self.ceiling
        debounce_at: float | None = None

        while self.state != SettleState.SETTLED:
            if debounce_at is not None and debounce_at < ceiling_at:
                deadline, reason = debounce_at, "debounce"
            else:
                deadline, reason = ceiling_at, "ceiling"

            try:
                await asyncio.wait_for(
                    self._wake.wait(), timeout=max(deadline - loop.time(), 0)
                )
            except TimeoutError:
                self.state = SettleState.SETTLED
                self.settled_by = reason
                break

            self._wake.clear()
            self.state = SettleState.DEBOUNCING
            debounce_at = loop.time() + self.debounce

        return self.state


async def get_diagnostics(
    server: LSPServerProcess,
    file_path: str,
    debounce: float = DIAGNOSTICS_DEBOUNCE,
    ceiling: float = DIAGNOSTICS_CEILING,
) -> list[Diagnostic]:
    """Get the diagnostics ``server`` reports for ``file_path``.

    Returns an empty list for an unreadable file. The document is always
    closed once opened, including on timeout and cancellation.

    Raises:
        ConnectionDisposedError: If the server exits before the wait settles
    """
    # Shielded so a cancelled caller does not cancel the shared handshake
    await asyncio.shield(server.ready)

    path = os.path.normpath(os.path.abspath(file_path))
    try:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.debug(f"Cannot read {path}, skipping diagnostics: {e}")
        return []

    # Drop anything left over from an earlier open of this file
    server.diagnostics.pop(path, None)

    waiter = DiagnosticsWaiter(debounce=debounce, ceiling=ceiling)
    notify = waiter.notify
    server.add_waiter(path, notify)
    try:
        server.open_document(path, language_id_for(path), text)
        try:
            await waiter.wait()
        finally:
            server.close_document(path)
    finally:
        server.remove_waiter(path, notify)

    if not server.is_alive():
        server.diagnostics.pop(path, None)
        raise ConnectionDisposedError(
            f"{server.name} exited before diagnostics for {path} settled"
        )

    logger.debug(
        f"{server.name}: {path} settled by {waiter.settled_by} "
        f"after {waiter.publish_count} publishes"
    )
    return list(server.diagnostics.pop(path, []))
