"""
Pytest configuration and shared fixtures for diagnostics tests.
"""

import logging
from pathlib import Path

import pytest
import pytest_asyncio

from diagnostics_config import DiagnosticsConfig
from lsp_client import LSPServerProcess
from lsp_constants import ServerId
from tests.test_fixtures import FakeServerManager, fake_server_command


@pytest.fixture
def test_logger():
    """Create a real logger for testing."""
    logger = logging.getLogger(f"test_logger_{id(object())}")
    logger.setLevel(logging.DEBUG)

    # Add console handler if not already present
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        logger.addHandler(handler)

    return logger


@pytest.fixture
def fast_config():
    """Configuration with short settle timings for tests."""
    return DiagnosticsConfig(
        request_timeout=2.0,
        shutdown_timeout=1.0,
        debounce=0.02,
        ceiling=0.3,
        max_crash_restarts=2,
    )


@pytest.fixture
def workspace(tmp_path):
    """A workspace directory with a Python project marker and one source file."""
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'demo'\n")
    source = tmp_path / "main.py"
    source.write_text("x = undefined_name\n\nprint(x)\n")
    return tmp_path


@pytest_asyncio.fixture
async def fake_server_factory(workspace, test_logger):
    """Start fake language servers; every server started is shut down afterwards."""
    servers: list[LSPServerProcess] = []

    def start(
        mode: str = "publish",
        server_id: ServerId = ServerId.TY,
        root: Path | None = None,
        request_timeout: float = 5.0,
    ) -> LSPServerProcess:
        server = LSPServerProcess(
            FakeServerManager(server_id, logger=test_logger),
            str(root or workspace),
            fake_server_command(mode),
            request_timeout=request_timeout,
            logger=test_logger,
        )
        server.start()
        servers.append(server)
        return server

    yield start

    for server in servers:
        await server.shutdown(timeout=1.0)
