"""Tests for the MCP runtime."""

import asyncio
import os
import signal

import pytest

from mcphost.core.events import EventBus, MCPEventType
from mcphost.mcp.runtime import (
    MCPDisabledError,
    MCPRuntime,
    MCPStartError,
    MCPToolError,
    MCPToolNotFoundError,
    MCPToolTimeoutError,
    MissingPackageArgumentError,
)
from mcphost.mcp.status import StatusKind, StatusManager
from mcphost.mcp.toolset import MCPConfigError
from mcphost.mcp.transports import create_transport
from mcphost.models.mcp import (
    EnvVarConfig,
    MCPPackage,
    PackageArg,
    PackageArgType,
    PackageType,
)

SEARCH_TOOL = {
    "name": "search",
    "description": "Search things",
    "inputSchema": {"type": "object"},
}


def _runtime(secrets_manager, transport_factory, settings) -> MCPRuntime:
    return MCPRuntime(
        secrets_manager,
        settings=settings,
        status_manager=StatusManager(),
        event_bus=EventBus(),
        transport_factory=transport_factory,
    )


def _drain(queue) -> list[MCPEventType]:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait().type)
    return events


async def _until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        assert asyncio.get_running_loop().time() < deadline, "condition not reached"
        await asyncio.sleep(0.02)


class TestStart:
    @pytest.mark.asyncio
    async def test_start_registers_tools(self, runtime, make_config, transport_factory):
        config = make_config()

        await runtime.start_mcp(config)

        assert runtime.is_active(config.id)
        assert runtime.status_manager.get_status(config.id).kind is StatusKind.RUNNING
        assert [t.name for t in runtime.get_all_tools()] == ["echo"]
        assert runtime.get_tools()[0].mcp_id == config.id
        assert transport_factory.specs[config.id].command == "npx"

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, runtime, make_config, transport_factory):
        config = make_config()

        await asyncio.gather(runtime.start_mcp(config), runtime.start_mcp(config))
        await runtime.start_mcp(config)

        assert len(transport_factory.created[config.id]) == 1
        assert runtime.active_count() == 1

    @pytest.mark.asyncio
    async def test_disabled_config_is_rejected(self, runtime, make_config, transport_factory):
        config = make_config(enabled=False)

        with pytest.raises(MCPDisabledError):
            await runtime.start_mcp(config)

        assert runtime.status_manager.get_status(config.id).kind is StatusKind.STOPPED
        assert config.id not in transport_factory.created

    @pytest.mark.asyncio
    async def test_missing_package_argument(self, runtime, make_config, transport_factory):
        config = make_config(
            package_args=[PackageArg(arg_type=PackageArgType.NAMED, name="root", required=True)]
        )

        with pytest.raises(MissingPackageArgumentError, match="root") as exc_info:
            await runtime.start_mcp(config)

        assert exc_info.value.name == "root"
        status = runtime.status_manager.get_status(config.id)
        assert status.kind is StatusKind.ERROR
        assert status.reason == "Missing required package argument: root"
        assert config.id not in transport_factory.created

    @pytest.mark.asyncio
    async def test_missing_credentials(self, runtime, make_config):
        config = make_config(env_vars=[EnvVarConfig(name="API_KEY", required=True)])

        with pytest.raises(MCPConfigError, match="API_KEY"):
            await runtime.start_mcp(config)

        assert runtime.status_manager.get_status(config.id).is_error
        assert not runtime.is_active(config.id)

    @pytest.mark.asyncio
    async def test_connect_failure(self, runtime, make_config, transport_factory):
        config = make_config()
        transport_factory.behaviours[config.id] = {"fail_connect": True}

        with pytest.raises(MCPStartError, match="Failed to start process"):
            await runtime.start_mcp(config)

        status = runtime.status_manager.get_status(config.id)
        assert status.kind is StatusKind.ERROR
        assert "Failed to start process" in status.reason
        assert transport_factory.last(config.id).disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_initialize_timeout(
        self, secrets_manager, transport_factory, test_settings, make_config
    ):
        settings = test_settings.model_copy(update={"mcp_init_timeout": 0.2})
        config = make_config()
        transport_factory.behaviours[config.id] = {"hang_initialize": True}

        async with _runtime(secrets_manager, transport_factory, settings) as runtime:
            with pytest.raises(MCPStartError, match="during initialize"):
                await runtime.start_mcp(config)

            assert runtime.status_manager.get_status(config.id).is_error
            assert not runtime.is_active(config.id)
            assert not transport_factory.last(config.id).is_connected

    @pytest.mark.asyncio
    async def test_start_all_is_best_effort(self, runtime, make_config, transport_factory):
        good = make_config(name="good")
        bad = make_config(name="bad")
        disabled = make_config(name="disabled", enabled=False)
        transport_factory.behaviours[bad.id] = {"fail_connect": True}

        results = await runtime.start_all([good, bad, disabled, None])

        assert set(results) == {good.id, bad.id}
        assert results[good.id].success
        assert not results[bad.id].success
        assert "Failed to start process" in results[bad.id].error
        assert runtime.active_count() == 1
        assert runtime.status_manager.get_status(disabled.id).kind is StatusKind.STOPPED

    @pytest.mark.asyncio
    async def test_unexpected_failure_marks_error(
        self, secrets_manager, test_settings, make_config
    ):
        def broken_factory(config, spec):
            raise KeyError("command")

        config = make_config()
        async with _runtime(secrets_manager, broken_factory, test_settings) as runtime:
            results = await runtime.start_all([config])

            assert not results[config.id].success
            status = runtime.status_manager.get_status(config.id)
            assert status.kind is StatusKind.ERROR
            assert "command" in status.reason
            assert not runtime.is_active(config.id)

            with pytest.raises(MCPStartError):
                await runtime.start_mcp(config)

    @pytest.mark.asyncio
    async def test_retry_after_error(self, runtime, make_config, transport_factory):
        config = make_config()
        transport_factory.behaviours[config.id] = {"fail_connect": True}
        with pytest.raises(MCPStartError):
            await runtime.start_mcp(config)
        assert runtime.status_manager.get_status(config.id).is_error

        del transport_factory.behaviours[config.id]
        await runtime.start_mcp(config)

        assert runtime.status_manager.get_status(config.id).kind is StatusKind.RUNNING
        assert runtime.is_active(config.id)
        assert len(transport_factory.created[config.id]) == 2


class TestStop:
    @pytest.mark.asyncio
    async def test_stop(self, runtime, make_config, transport_factory):
        config = make_config()
        await runtime.start_mcp(config)

        assert await runtime.stop_mcp(config.id) is True
        assert await runtime.stop_mcp(config.id) is False

        assert not runtime.has_active_mcps()
        assert runtime.get_all_tools() == []
        assert runtime.status_manager.get_status(config.id).kind is StatusKind.STOPPED
        assert transport_factory.last(config.id).disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything(self, runtime, make_config):
        configs = [make_config(name=f"server-{n}") for n in range(3)]
        await runtime.start_all(configs)

        await runtime.shutdown()

        assert runtime.active_count() == 0

    @pytest.mark.asyncio
    async def test_stop_fails_inflight_call(self, runtime, make_config, transport_factory):
        config = make_config()
        transport_factory.behaviours[config.id] = {"hang_tools": ("echo",)}
        await runtime.start_mcp(config)

        call = asyncio.create_task(runtime.call_tool("echo", {}))
        await asyncio.sleep(0.05)
        await runtime.stop_mcp(config.id)

        with pytest.raises(MCPToolError, match="Transport closed"):
            await asyncio.wait_for(call, timeout=0.5)
        assert runtime.status_manager.get_status(config.id).kind is StatusKind.STOPPED


class TestProcessExit:
    @pytest.mark.asyncio
    async def test_exit_drops_provider(self, runtime, make_config, transport_factory):
        config = make_config()
        await runtime.start_mcp(config)
        queue = runtime.event_bus.subscribe()

        transport_factory.last(config.id).exit()
        await _until(lambda: not runtime.is_active(config.id))

        status = runtime.status_manager.get_status(config.id)
        assert status.kind is StatusKind.ERROR
        assert "Process exited" in status.reason
        assert runtime.get_all_tools() == []
        assert runtime.find_tool_provider("echo") is None
        assert _drain(queue) == [MCPEventType.UNHEALTHY]

    @pytest.mark.asyncio
    async def test_stop_does_not_report_exit(self, runtime, make_config, transport_factory):
        config = make_config()
        await runtime.start_mcp(config)

        await runtime.stop_mcp(config.id)
        transport_factory.last(config.id).exit()
        await asyncio.sleep(0.05)

        assert runtime.status_manager.get_status(config.id).kind is StatusKind.STOPPED

    @pytest.mark.asyncio
    async def test_restart_after_exit(self, runtime, make_config, transport_factory):
        config = make_config()
        await runtime.start_mcp(config)
        transport_factory.last(config.id).exit()
        await _until(lambda: not runtime.is_active(config.id))

        await runtime.start_mcp(config)

        assert runtime.status_manager.get_status(config.id).is_running
        assert len(transport_factory.created[config.id]) == 2


class TestIdle:
    @pytest.mark.asyncio
    async def test_zero_timeout_evicts_everything(
        self, secrets_manager, transport_factory, test_settings, make_config
    ):
        settings = test_settings.model_copy(update={"mcp_idle_timeout": 0})
        config = make_config()

        async with _runtime(secrets_manager, transport_factory, settings) as runtime:
            await runtime.start_mcp(config)

            assert await runtime.cleanup_idle() == [config.id]
            assert not runtime.is_active(config.id)
            assert runtime.status_manager.get_status(config.id).kind is StatusKind.STOPPED

    @pytest.mark.asyncio
    async def test_recently_used_is_kept(self, runtime, make_config):
        config = make_config()
        await runtime.start_mcp(config)

        assert await runtime.cleanup_idle() == []
        assert runtime.is_active(config.id)

    @pytest.mark.asyncio
    async def test_tool_call_refreshes_last_used(self, runtime, make_config):
        config = make_config()
        await runtime.start_mcp(config)
        before = runtime.get_last_used(config.id)

        await asyncio.sleep(0.01)
        await runtime.call_tool("echo", {"text": "hi"})

        assert runtime.get_last_used(config.id) > before

    @pytest.mark.asyncio
    async def test_sweeper(self, secrets_manager, transport_factory, test_settings, make_config):
        settings = test_settings.model_copy(update={"mcp_idle_timeout": 0})
        config = make_config()

        async with _runtime(secrets_manager, transport_factory, settings) as runtime:
            await runtime.start_mcp(config)
            sweeper = runtime.start_idle_sweeper(interval=0.05)

            assert runtime.start_idle_sweeper(interval=0.05) is sweeper
            await asyncio.sleep(0.3)

            assert not runtime.is_active(config.id)
            await runtime.stop_idle_sweeper()
            assert sweeper.done()


class TestCallTool:
    @pytest.mark.asyncio
    async def test_call(self, runtime, make_config):
        config = make_config()
        await runtime.start_mcp(config)

        result = await runtime.call_tool("echo", {"text": "hi"})

        assert result["isError"] is False
        assert result["content"] == [{"type": "text", "text": '{"text": "hi"}'}]

    @pytest.mark.asyncio
    async def test_unknown_tool(self, runtime, make_config):
        await runtime.start_mcp(make_config())

        with pytest.raises(MCPToolNotFoundError, match="No MCP provides tool: missing"):
            await runtime.call_tool("missing")

    @pytest.mark.asyncio
    async def test_first_registered_provider_wins(self, runtime, make_config, transport_factory):
        first = make_config(name="first")
        second = make_config(name="second")
        await runtime.start_mcp(first)
        await runtime.start_mcp(second)

        await runtime.call_tool("echo", {})

        assert runtime.find_tool_provider("echo") == first.id
        calls = [r.method for r in transport_factory.last(first.id).requests]
        assert "tools/call" in calls
        assert "tools/call" not in [r.method for r in transport_factory.last(second.id).requests]

        await runtime.stop_mcp(first.id)
        assert runtime.find_tool_provider("echo") == second.id

    @pytest.mark.asyncio
    async def test_timeout_drops_provider(
        self, secrets_manager, transport_factory, test_settings, make_config
    ):
        settings = test_settings.model_copy(update={"mcp_tool_timeout": 0.2})
        config = make_config()
        transport_factory.behaviours[config.id] = {"hang_tools": ("echo",)}

        async with _runtime(secrets_manager, transport_factory, settings) as runtime:
            await runtime.start_mcp(config)

            with pytest.raises(MCPToolTimeoutError, match="Tool 'echo' timed out"):
                await runtime.call_tool("echo", {})

            status = runtime.status_manager.get_status(config.id)
            assert status.kind is StatusKind.ERROR
            assert "timed out" in status.reason
            assert not runtime.is_active(config.id)
            assert not transport_factory.last(config.id).is_connected

    @pytest.mark.asyncio
    async def test_tool_error_keeps_connection(self, runtime, make_config, transport_factory):
        config = make_config()
        transport_factory.behaviours[config.id] = {
            "tools": [SEARCH_TOOL],
            "error_tools": ("search",),
        }
        await runtime.start_mcp(config)

        with pytest.raises(MCPToolError, match="search exploded"):
            await runtime.call_tool("search", {"q": "x"})

        assert runtime.is_active(config.id)
        assert runtime.status_manager.get_status(config.id).is_running


class TestConfigChange:
    @pytest.mark.asyncio
    async def test_disable_stops(self, runtime, make_config):
        config = make_config()
        await runtime.start_mcp(config)

        await runtime.handle_config_change(config.model_copy(update={"enabled": False}))

        assert not runtime.is_active(config.id)
        assert runtime.status_manager.get_status(config.id).kind is StatusKind.STOPPED

    @pytest.mark.asyncio
    async def test_changed_config_restarts(self, runtime, make_config, transport_factory):
        config = make_config()
        await runtime.start_mcp(config)
        updated = config.model_copy(update={"config": {"package_args": {"root": "/srv"}}})

        await runtime.handle_config_change(updated)

        assert len(transport_factory.created[config.id]) == 2
        assert runtime.get_restart_count(config.id) == 1
        assert runtime.is_active(config.id)
        assert runtime.status_manager.get_status(config.id).is_running

    @pytest.mark.asyncio
    async def test_unchanged_config_is_noop(self, runtime, make_config, transport_factory):
        config = make_config()
        await runtime.start_mcp(config)

        await runtime.handle_config_change(config)

        assert len(transport_factory.created[config.id]) == 1
        assert runtime.get_restart_count(config.id) == 0

    @pytest.mark.asyncio
    async def test_inactive_config_is_left_alone(self, runtime, make_config, transport_factory):
        config = make_config()

        await runtime.handle_config_change(config)

        assert not runtime.is_active(config.id)
        assert config.id not in transport_factory.created


class TestEventsAndDelete:
    @pytest.mark.asyncio
    async def test_lifecycle_events(self, runtime, make_config):
        queue = runtime.event_bus.subscribe()
        config = make_config()

        await runtime.start_mcp(config)
        await runtime.call_tool("echo", {})
        await runtime.stop_mcp(config.id)

        assert _drain(queue) == [
            MCPEventType.STARTING,
            MCPEventType.STARTED,
            MCPEventType.TOOL_CALLED,
            MCPEventType.TOOL_COMPLETED,
            MCPEventType.STOPPED,
        ]

    @pytest.mark.asyncio
    async def test_failed_start_event(self, runtime, make_config, transport_factory):
        queue = runtime.event_bus.subscribe()
        config = make_config()
        transport_factory.behaviours[config.id] = {"fail_connect": True}

        with pytest.raises(MCPStartError):
            await runtime.start_mcp(config)

        assert _drain(queue) == [MCPEventType.STARTING, MCPEventType.START_FAILED]

    @pytest.mark.asyncio
    async def test_delete_removes_secrets(self, runtime, make_config, secrets_manager):
        config = make_config(env_vars=[EnvVarConfig(name="API_KEY", required=True)])
        secrets_manager.store_api_key(config.id, "sk-test")
        secrets_manager.store_api_key(config.id, "sk-named", var_name="API_KEY")
        await runtime.start_mcp(config)
        queue = runtime.event_bus.subscribe()

        await runtime.delete_mcp(config)

        assert not runtime.is_active(config.id)
        assert secrets_manager.list_keys() == []
        assert runtime.status_manager.get_all_statuses() == {}
        assert _drain(queue) == [MCPEventType.STOPPED, MCPEventType.DELETED]
        assert config.id not in runtime._id_locks


@pytest.mark.asyncio
async def test_stdio_server_end_to_end(secrets_manager, test_settings, make_config, fake_server_command):
    """Spawn a real stdio server and route a tool call to it."""
    command, args = fake_server_command
    config = make_config(
        package=MCPPackage(
            package_type=PackageType.NPM,
            identifier=args[0],
            runtime_hint=command,
        ),
        env_vars=[EnvVarConfig(name="FAKE_SERVER_TOKEN", required=True)],
    )
    secrets_manager.store_api_key(config.id, "tok-123", var_name="FAKE_SERVER_TOKEN")

    settings = test_settings.model_copy(update={"mcp_init_timeout": 10, "mcp_tool_timeout": 10})

    async with MCPRuntime(secrets_manager, settings=settings) as runtime:
        await runtime.start_mcp(config)

        assert sorted(t.name for t in runtime.get_all_tools()) == ["echo", "env", "sleep"]
        echoed = await runtime.call_tool("echo", {"text": "hello"})
        token = await runtime.call_tool("env", {"name": "FAKE_SERVER_TOKEN"})

        assert echoed["content"][0]["text"] == "hello"
        assert token["content"][0]["text"] == "tok-123"

    assert runtime.active_count() == 0
    assert runtime.status_manager.get_status(config.id).kind is StatusKind.STOPPED


def _stdio_config(make_config, fake_server_command):
    command, args = fake_server_command
    return make_config(
        package=MCPPackage(
            package_type=PackageType.NPM,
            identifier=args[0],
            runtime_hint=command,
        ),
    )


@pytest.mark.asyncio
async def test_stdio_large_tool_result(secrets_manager, test_settings, make_config, fake_server_command):
    config = _stdio_config(make_config, fake_server_command)
    settings = test_settings.model_copy(update={"mcp_init_timeout": 10, "mcp_tool_timeout": 10})
    text = "x" * 200_000

    async with MCPRuntime(secrets_manager, settings=settings) as runtime:
        await runtime.start_mcp(config)
        result = await runtime.call_tool("echo", {"text": text})

        assert result["content"][0]["text"] == text
        assert runtime.status_manager.get_status(config.id).is_running


@pytest.mark.asyncio
async def test_stdio_process_exit_is_noticed(
    secrets_manager, test_settings, make_config, fake_server_command
):
    created = []

    def factory(config, spec):
        transport = create_transport(
            spec.transport,
            command=spec.command,
            args=spec.args,
            env=spec.env,
            shutdown_timeout=2,
        )
        created.append(transport)
        return transport

    config = _stdio_config(make_config, fake_server_command)
    settings = test_settings.model_copy(update={"mcp_init_timeout": 10})

    async with _runtime(secrets_manager, factory, settings) as runtime:
        await runtime.start_mcp(config)
        os.kill(created[0].pid, signal.SIGTERM)

        await _until(lambda: not runtime.is_active(config.id))

        status = runtime.status_manager.get_status(config.id)
        assert status.kind is StatusKind.ERROR
        assert "Process exited" in status.reason
        assert runtime.get_all_tools() == []
