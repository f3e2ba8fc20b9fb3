import asyncio
import dataclasses

import pytest

from fakes import FakeServer, FakeServers, make_config, text_content, wait_until
from tessera.errors import (
  ConnectionError,
  ServerDisabledError,
  TimeoutError,
  ToolExecutionError,
  ToolNotFoundError,
)
from tessera.servers.handle import ToolServerHandle
from tessera.servers.state import ServerStatus


def create_handle(server: FakeServer = None, **config):
  servers = FakeServers(files=server or FakeServer())
  return ToolServerHandle(make_config("files", **config), servers), servers["files"]


class TestLifecycle:
  @pytest.mark.asyncio
  async def test_start_connects_and_caches_catalog(self):
    handle, server = create_handle()

    await handle.start()

    state = handle.get_state()
    assert state.status == ServerStatus.CONNECTED
    assert state.retry_count == 0
    assert state.tool_count == 2
    assert [tool.name for tool in handle.list_tools()] == ["read_file", "search"]
    assert [request["method"] for request in server.requests] == [
      "initialize",
      "notifications/initialized",
      "tools/list",
    ]
    await handle.stop()

  @pytest.mark.asyncio
  async def test_start_failure_sets_error_status(self):
    server = FakeServer()
    server.refuse_connect = True
    handle, _ = create_handle(server)

    with pytest.raises(ConnectionError, match="connection refused"):
      await handle.start()

    state = handle.get_state()
    assert state.status == ServerStatus.ERROR
    assert "connection refused" in state.error
    assert handle.list_tools() == []

  @pytest.mark.asyncio
  async def test_stop_disconnects(self):
    handle, _ = create_handle()
    await handle.start()

    await handle.stop()

    assert handle.status == ServerStatus.DISCONNECTED
    assert not handle.is_connected
    assert handle.list_tools() == []

  @pytest.mark.asyncio
  async def test_transport_loss_marks_server_disconnected(self):
    handle, server = create_handle()
    await handle.start()

    server.drop_connections()
    await wait_until(lambda: handle.status == ServerStatus.DISCONNECTED)

    assert handle.list_tools() == []
    assert not handle.is_connected
    await handle.stop()

  @pytest.mark.asyncio
  async def test_disabled_server_never_starts(self):
    handle, server = create_handle(disabled=True)

    await handle.start()

    assert handle.status == ServerStatus.DISABLED
    assert server.connect_count == 0
    with pytest.raises(ServerDisabledError):
      await handle.invoke_tool("read_file", {})

  @pytest.mark.asyncio
  async def test_state_snapshot_is_immutable(self):
    handle, _ = create_handle()
    await handle.start()

    snapshot = handle.get_state()
    with pytest.raises(dataclasses.FrozenInstanceError):
      snapshot.status = ServerStatus.ERROR

    await handle.stop()
    assert snapshot.status == ServerStatus.CONNECTED

  @pytest.mark.asyncio
  async def test_channel_output_is_kept_in_server_logs(self):
    handle, _ = create_handle()
    await handle.start()

    assert "fake channel connected" in handle.get_state().logs
    await handle.stop()


class TestInvocation:
  @pytest.mark.asyncio
  async def test_invoke_tool_returns_content(self):
    handle, server = create_handle()
    server.results["read_file"] = {"isError": False, "content": text_content("hello")}
    await handle.start()

    content = await handle.invoke_tool("read_file", {"path": "notes.md"})

    assert content == text_content("hello")
    call = server.calls("tools/call")[0]
    assert call["params"] == {"name": "read_file", "arguments": {"path": "notes.md"}}
    await handle.stop()

  @pytest.mark.asyncio
  async def test_tool_reported_error_raises_with_content(self):
    handle, server = create_handle()
    server.results["read_file"] = {"isError": True, "content": text_content("no such file")}
    await handle.start()

    with pytest.raises(ToolExecutionError) as info:
      await handle.invoke_tool("read_file", {"path": "missing.md"})

    assert info.value.content == text_content("no such file")
    assert "no such file" in str(info.value)
    assert handle.status == ServerStatus.CONNECTED
    await handle.stop()

  @pytest.mark.asyncio
  async def test_unknown_tool(self):
    handle, _ = create_handle()
    await handle.start()

    with pytest.raises(ToolNotFoundError, match="delete_everything"):
      await handle.invoke_tool("delete_everything", {})
    await handle.stop()

  @pytest.mark.asyncio
  async def test_invoke_times_out(self):
    handle, server = create_handle(timeout_ms=50)
    server.hang.add("search")
    await handle.start()

    with pytest.raises(TimeoutError) as info:
      await handle.invoke_tool("search", {"query": "x"})

    assert isinstance(info.value, asyncio.TimeoutError)
    assert info.value.timeout == 0.05
    assert "search" in str(info.value)
    await handle.stop()

  @pytest.mark.asyncio
  async def test_lazy_reconnect_before_invoking(self):
    handle, server = create_handle()
    await handle.start()
    server.drop_connections()
    await wait_until(lambda: handle.status == ServerStatus.DISCONNECTED)

    await handle.invoke_tool("read_file", {"path": "a"})

    assert server.connect_count == 2
    assert handle.status == ServerStatus.CONNECTED
    assert handle.get_state().retry_count == 0
    await handle.stop()

  @pytest.mark.asyncio
  async def test_invoke_on_unreachable_server_raises_connection_error(self):
    handle, server = create_handle()
    await handle.start()
    server.drop_connections()
    server.refuse_connect = True
    await wait_until(lambda: not handle.is_connected)

    with pytest.raises(ConnectionError):
      await handle.invoke_tool("read_file", {"path": "a"})

    assert handle.status == ServerStatus.ERROR
    assert server.connect_count == 1

  @pytest.mark.asyncio
  async def test_auto_approve(self):
    handle, _ = create_handle(auto_approve=["search"])

    assert handle.is_auto_approved("search")
    assert not handle.is_auto_approved("read_file")


class TestCompletions:
  @pytest.mark.asyncio
  async def test_completions_are_passed_through(self):
    handle, server = create_handle()
    server.completions = ["notes.md", "notes.txt"]
    await handle.start()

    values = await handle.get_completions("read_file", "path", "no")

    assert values == ["notes.md", "notes.txt"]
    params = server.calls("completion/complete")[0]["params"]
    assert params["ref"] == {"type": "ref/prompt", "name": "read_file"}
    assert params["argument"] == {"name": "path", "value": "no"}
    await handle.stop()

  @pytest.mark.asyncio
  async def test_server_without_completions_yields_empty_list(self):
    handle, _ = create_handle()
    await handle.start()

    assert await handle.get_completions("read_file", "path", "no") == []
    await handle.stop()

  @pytest.mark.asyncio
  async def test_completions_for_unknown_tool(self):
    handle, _ = create_handle()
    await handle.start()

    with pytest.raises(ToolNotFoundError):
      await handle.get_completions("unknown", "path", "")
    await handle.stop()
