"""
Tests for the diagnostics orchestrator: routing, server cache lifecycle,
result merging and formatting.
"""

import asyncio

import pytest

from diagnostics_orchestrator import (
    CacheEntryState,
    DiagnosticsOrchestrator,
    filter_diagnostics,
    format_diagnostics,
)
from lsp_client import LSPServerProcess, ServerStartupError, ServerUnavailableError
from lsp_constants import TRUNCATION_MARKER, ServerId
from tests.test_fixtures import (
    FakeServerManager,
    FakeSpawner,
    fake_server_command,
    make_diagnostic,
)


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def orchestrator(fast_config, workspace, spawner):
    return DiagnosticsOrchestrator(config=fast_config, cwd=str(workspace), spawner=spawner)


@pytest.fixture
def ts_workspace(workspace):
    (workspace / "package.json").write_text("{}")
    (workspace / ".oxlintrc.json").write_text("{}")
    (workspace / "app.ts").write_text("const x: number = 'a';\n")
    return workspace


def publishing(*diagnostics, delay: float = 0.0):
    return {"publishes": [(delay, list(diagnostics))]}


class TestFilterAndFormat:
    """Test severity filtering and output truncation."""

    def test_filter_exact_severity(self):
        diagnostics = [
            make_diagnostic("e", severity=1),
            make_diagnostic("w", severity=2),
            make_diagnostic("h", severity=4),
        ]

        assert [d.message for d in filter_diagnostics(diagnostics, "warning")] == ["w"]
        assert [d.message for d in filter_diagnostics(diagnostics, "all")] == ["e", "w", "h"]
        assert filter_diagnostics(diagnostics, "info") == []

    def test_no_truncation_when_short(self):
        text = format_diagnostics("a.py", [make_diagnostic("short")], max_chars=1000)
        assert text == "a.py:1:1 error: short"

    def test_truncation_is_exact(self):
        diagnostics = [make_diagnostic(f"message number {i}") for i in range(20)]

        text = format_diagnostics("a.py", diagnostics, max_chars=37)

        assert text.endswith(TRUNCATION_MARKER)
        assert len(text) == 37 + len(TRUNCATION_MARKER)


class TestRouting:
    """Test classification and result shape."""

    @pytest.mark.asyncio
    async def test_unsupported_extension_spawns_nothing(self, orchestrator, spawner, workspace):
        (workspace / "x.csv").write_text("a,b\n")

        result = await orchestrator.get_diagnosis_for_file("x.csv")

        assert not result.ok
        assert result.reason == "unsupported_language"
        assert spawner.calls == []

    @pytest.mark.asyncio
    async def test_errors_reported_with_server_source(self, orchestrator, spawner, workspace):
        spawner.configure(
            ServerId.TY,
            **publishing(
                make_diagnostic("Name 'undefined_name' is not defined", line=0, character=4),
                make_diagnostic("unused", severity=2, line=2),
            ),
        )
        path = str(workspace / "main.py")

        result = await orchestrator.get_diagnosis_for_file("main.py")

        assert result.ok
        assert result.path == path
        assert result.root == str(workspace)
        assert result.language == "python"
        assert result.count == 1
        assert result.servers_tried == ["ty"]
        assert result.text == (
            f"Diagnostics (1) for {path}:\n"
            f"{path}:1:5 error (ty): Name 'undefined_name' is not defined"
        )

    @pytest.mark.asyncio
    async def test_severity_all(self, orchestrator, spawner):
        spawner.configure(
            ServerId.TY,
            **publishing(make_diagnostic("e"), make_diagnostic("w", severity=2)),
        )

        result = await orchestrator.get_diagnosis_for_file("main.py", severity="all")

        assert result.count == 2
        assert result.severity == "all"

    @pytest.mark.asyncio
    async def test_empty_after_filter_is_distinct(self, orchestrator, spawner):
        spawner.configure(ServerId.TY, **publishing(make_diagnostic("e")))

        result = await orchestrator.get_diagnosis_for_file("main.py", severity="hint")

        assert result.ok
        assert result.count == 0
        assert result.text == "No hint diagnostics."

    @pytest.mark.asyncio
    async def test_silent_server_means_no_diagnostics(self, orchestrator):
        result = await orchestrator.get_diagnosis_for_file("main.py")

        assert result.ok
        assert result.text == "No error diagnostics."

    @pytest.mark.asyncio
    async def test_truncation(self, orchestrator, spawner):
        spawner.configure(
            ServerId.TY, **publishing(*[make_diagnostic(f"problem {i}") for i in range(50)])
        )

        result = await orchestrator.get_diagnosis_for_file("main.py", max_chars=120)

        header, body = result.text.split("\n", 1)
        assert header.startswith("Diagnostics (50) for ")
        assert len(body) == 120 + len(TRUNCATION_MARKER)
        assert body.endswith(TRUNCATION_MARKER)

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.get_diagnosis_for_file("main.py", severity="fatal")
        with pytest.raises(ValueError):
            await orchestrator.get_diagnosis_for_file("main.py", max_chars=0)

    @pytest.mark.asyncio
    async def test_root_falls_back_to_cwd(self, orchestrator, spawner, workspace):
        source = workspace / "cmd" / "main.go"
        source.parent.mkdir()
        source.write_text("package main\n")

        result = await orchestrator.get_diagnosis_for_file(str(source))

        assert result.root == str(workspace)
        assert spawner.calls == [(ServerId.GOPLS, str(workspace))]


class TestMultipleServers:
    """Test merging and partial failures for TypeScript."""

    @pytest.mark.asyncio
    async def test_results_merged_in_server_order(self, orchestrator, spawner, ts_workspace):
        spawner.configure(ServerId.TSSERVER, **publishing(make_diagnostic("type error")))
        spawner.configure(
            ServerId.OXLINT, **publishing(make_diagnostic("lint error", code="no-debugger"))
        )

        result = await orchestrator.get_diagnosis_for_file("app.ts")

        assert result.servers_tried == ["tsserver", "oxlint"]
        lines = result.text.splitlines()[1:]
        assert lines[0].endswith("error (tsserver): type error")
        assert lines[1].endswith("error [no-debugger] (oxlint): lint error")

    @pytest.mark.asyncio
    async def test_spawn_failure_of_one_server(self, orchestrator, spawner, ts_workspace):
        spawner.configure(ServerId.TSSERVER, **publishing(make_diagnostic("type error")))
        spawner.fail(ServerId.OXLINT, ServerUnavailableError("oxlint not installed"))

        result = await orchestrator.get_diagnosis_for_file("app.ts")

        assert result.ok
        assert result.count == 1
        assert result.servers_tried == ["tsserver", "oxlint"]
        assert result.servers_failed == ["oxlint"]
        assert orchestrator.entry_state(ServerId.OXLINT, str(ts_workspace)) == CacheEntryState.BROKEN

    @pytest.mark.asyncio
    async def test_query_failure_of_one_server(self, orchestrator, spawner, ts_workspace):
        spawner.configure(ServerId.TSSERVER, **publishing(make_diagnostic("type error")))
        spawner.configure(ServerId.OXLINT, open_error=BrokenPipeError("pipe closed"))

        result = await orchestrator.get_diagnosis_for_file("app.ts")

        assert result.ok
        assert result.count == 1
        assert result.servers_failed == ["oxlint"]

    @pytest.mark.asyncio
    async def test_all_queries_failing(self, orchestrator, spawner, ts_workspace):
        spawner.configure(ServerId.TSSERVER, open_error=BrokenPipeError("pipe closed"))
        spawner.configure(ServerId.OXLINT, open_error=BrokenPipeError("pipe closed"))

        result = await orchestrator.get_diagnosis_for_file("app.ts")

        assert not result.ok
        assert result.reason == "diagnostics_failed"
        assert result.servers_failed == ["tsserver", "oxlint"]

    @pytest.mark.asyncio
    async def test_linter_exit_during_query(self, orchestrator, spawner, ts_workspace):
        spawner.configure(ServerId.TSSERVER, **publishing(make_diagnostic("type error")))
        await orchestrator.get_diagnosis_for_file("app.ts")
        oxlint = next(s for s in spawner.servers if s.server_id == ServerId.OXLINT)
        asyncio.get_running_loop().call_later(0.05, oxlint.simulate_exit)

        result = await orchestrator.get_diagnosis_for_file("app.ts")

        assert result.ok
        assert result.count == 1
        assert result.servers_failed == ["oxlint"]
        assert orchestrator.entry_state(ServerId.OXLINT, str(ts_workspace)) == CacheEntryState.ABSENT


class TestServerCache:
    """Test spawn sharing, quarantine and crash handling."""

    @pytest.mark.asyncio
    async def test_server_is_reused(self, orchestrator, spawner, workspace):
        await orchestrator.get_diagnosis_for_file("main.py")
        await orchestrator.get_diagnosis_for_file("main.py")

        assert spawner.spawn_count(ServerId.TY) == 1
        assert orchestrator.entry_state(ServerId.TY, str(workspace)) == CacheEntryState.READY

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_spawn(self, fast_config, workspace):
        spawner = FakeSpawner(delay=0.05)
        orchestrator = DiagnosticsOrchestrator(
            config=fast_config, cwd=str(workspace), spawner=spawner
        )

        results = await asyncio.gather(
            orchestrator.get_diagnosis_for_file("main.py"),
            orchestrator.get_diagnosis_for_file("main.py"),
            orchestrator.get_diagnosis_for_file("main.py"),
        )

        assert all(result.ok for result in results)
        assert spawner.spawn_count(ServerId.TY) == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_shared_spawn(self, fast_config, workspace):
        spawner = FakeSpawner(delay=0.1)
        orchestrator = DiagnosticsOrchestrator(
            config=fast_config, cwd=str(workspace), spawner=spawner
        )
        root = str(workspace)

        first = asyncio.create_task(orchestrator.get_or_spawn_server(ServerId.TY, root))
        second = asyncio.create_task(orchestrator.get_or_spawn_server(ServerId.TY, root))
        await asyncio.sleep(0.01)
        first.cancel()

        server = await second
        assert server is spawner.servers[0]
        assert spawner.spawn_count(ServerId.TY) == 1

    @pytest.mark.asyncio
    async def test_spawn_failure_quarantines(self, orchestrator, spawner, workspace):
        spawner.fail(ServerId.TY, ServerUnavailableError("No ty language server found"))

        first = await orchestrator.get_diagnosis_for_file("main.py")
        second = await orchestrator.get_diagnosis_for_file("main.py")

        assert first.reason == second.reason == "no_server"
        assert first.servers_tried == ["ty"]
        assert "ty" in first.text
        assert spawner.spawn_count(ServerId.TY) == 1
        assert orchestrator.entry_state(ServerId.TY, str(workspace)) == CacheEntryState.BROKEN

    @pytest.mark.asyncio
    async def test_handshake_failure_quarantines_and_stops(self, orchestrator, spawner):
        spawner.configure(ServerId.TY, ready_error=ServerStartupError("initialize failed"))

        result = await orchestrator.get_diagnosis_for_file("main.py")

        assert result.reason == "no_server"
        assert spawner.servers[0].shutdown_calls == 1

    @pytest.mark.asyncio
    async def test_quarantine_is_per_root(self, orchestrator, spawner, workspace, tmp_path_factory):
        other = tmp_path_factory.mktemp("other")
        (other / "pyproject.toml").write_text("")
        (other / "tool.py").write_text("")
        spawner.fail(ServerId.TY, ServerUnavailableError("missing"))
        await orchestrator.get_diagnosis_for_file("main.py")

        await orchestrator.get_diagnosis_for_file(str(other / "tool.py"))

        assert spawner.calls == [(ServerId.TY, str(workspace)), (ServerId.TY, str(other))]

    @pytest.mark.asyncio
    async def test_crash_evicts_and_respawns(self, orchestrator, spawner, workspace):
        await orchestrator.get_diagnosis_for_file("main.py")
        spawner.servers[0].simulate_exit(crashed=True)

        assert orchestrator.entry_state(ServerId.TY, str(workspace)) == CacheEntryState.ABSENT

        result = await orchestrator.get_diagnosis_for_file("main.py")
        assert result.ok
        assert spawner.spawn_count(ServerId.TY) == 2

    @pytest.mark.asyncio
    async def test_repeated_crashes_quarantine(self, orchestrator, spawner, workspace):
        # max_crash_restarts is 2 in fast_config
        for _ in range(3):
            await orchestrator.get_diagnosis_for_file("main.py")
            spawner.servers[-1].simulate_exit(crashed=True)

        result = await orchestrator.get_diagnosis_for_file("main.py")

        assert result.reason == "no_server"
        assert spawner.spawn_count(ServerId.TY) == 3
        assert orchestrator.entry_state(ServerId.TY, str(workspace)) == CacheEntryState.BROKEN

    @pytest.mark.asyncio
    async def test_clean_exit_is_not_counted(self, orchestrator, spawner, workspace):
        for _ in range(4):
            await orchestrator.get_diagnosis_for_file("main.py")
            spawner.servers[-1].simulate_exit(crashed=False)

        assert orchestrator.cache.crash_counts == {}
        assert orchestrator.entry_state(ServerId.TY, str(workspace)) == CacheEntryState.ABSENT

    @pytest.mark.asyncio
    async def test_dead_cached_server_is_replaced(self, orchestrator, spawner):
        await orchestrator.get_diagnosis_for_file("main.py")
        spawner.servers[0]._alive = False

        await orchestrator.get_diagnosis_for_file("main.py")

        assert spawner.spawn_count(ServerId.TY) == 2


class TestShutdown:
    """Test shutdown_all."""

    @pytest.mark.asyncio
    async def test_shutdown_all_stops_servers(self, orchestrator, spawner, ts_workspace):
        await orchestrator.get_diagnosis_for_file("app.ts")
        await orchestrator.get_diagnosis_for_file("main.py")

        await orchestrator.shutdown_all()

        assert len(spawner.servers) == 3
        assert all(server.shutdown_calls == 1 for server in spawner.servers)
        assert orchestrator.cache.servers == {}
        assert orchestrator.entry_state(ServerId.TY, str(ts_workspace)) == CacheEntryState.ABSENT

    @pytest.mark.asyncio
    async def test_shutdown_all_cancels_spawns(self, fast_config, workspace):
        spawner = FakeSpawner(delay=5.0)
        orchestrator = DiagnosticsOrchestrator(
            config=fast_config, cwd=str(workspace), spawner=spawner
        )

        request = asyncio.create_task(orchestrator.get_diagnosis_for_file("main.py"))
        await asyncio.sleep(0.01)
        await orchestrator.shutdown_all()

        with pytest.raises(asyncio.CancelledError):
            await request
        assert spawner.servers == []
        assert orchestrator.cache.spawning == {}

    @pytest.mark.asyncio
    async def test_instances_do_not_share_servers(self, fast_config, workspace, spawner):
        first = DiagnosticsOrchestrator(config=fast_config, cwd=str(workspace), spawner=spawner)
        second = DiagnosticsOrchestrator(config=fast_config, cwd=str(workspace), spawner=spawner)

        await first.get_diagnosis_for_file("main.py")
        await second.get_diagnosis_for_file("main.py")

        assert spawner.spawn_count(ServerId.TY) == 2


class TestWithFakeProcess:
    """End-to-end runs against tests/fake_lsp_server.py."""

    @staticmethod
    def process_spawner(mode: str):
        async def spawn(server_id, root):
            server = LSPServerProcess(
                FakeServerManager(server_id), root, fake_server_command(mode), request_timeout=5.0
            )
            server.start()
            return server

        return spawn

    @pytest.mark.asyncio
    async def test_diagnosis_from_real_process(self, fast_config, workspace):
        orchestrator = DiagnosticsOrchestrator(
            config=fast_config, cwd=str(workspace), spawner=self.process_spawner("publish")
        )
        path = str(workspace / "main.py")

        try:
            result = await orchestrator.get_diagnosis_for_file(path, severity="all")
        finally:
            await orchestrator.shutdown_all()

        assert result.ok
        assert result.count == 2
        assert f"{path}:1:5 error [E100] (ty): fake error" in result.text
        assert f"{path}:3:1 warning (fake-lint): fake warning" in result.text

    @pytest.mark.asyncio
    async def test_crash_during_query_fails_and_evicts(self, fast_config, workspace):
        orchestrator = DiagnosticsOrchestrator(
            config=fast_config, cwd=str(workspace), spawner=self.process_spawner("crash_on_open")
        )

        try:
            result = await orchestrator.get_diagnosis_for_file("main.py")
            assert not result.ok
            assert result.reason == "diagnostics_failed"
            assert result.servers_failed == ["ty"]
            assert orchestrator.entry_state(ServerId.TY, str(workspace)) == CacheEntryState.ABSENT
            assert orchestrator.cache.crash_counts == {(ServerId.TY, str(workspace)): 1}
        finally:
            await orchestrator.shutdown_all()
