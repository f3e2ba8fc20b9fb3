import pytest

from fakes import FakeServer, FakeServers, make_config, text_content, tool_entry
from tessera.errors import ConnectionError, ToolNotFoundError
from tessera.servers.manager import ServerTool, ToolServerManager
from tessera.servers.protocol import Tool
from tessera.tools import ServerToolAdapter, ToolCatalog, content_text, function_name


async def create_manager(servers: FakeServers, *configs) -> ToolServerManager:
  manager = ToolServerManager(channel_factory=servers, supervise=False)
  await manager.initialize(list(configs) or [make_config("files")])
  return manager


class TestFunctionName:
  def test_prefixes_server_id(self):
    assert function_name("files", "read_file") == "files_read_file"

  def test_replaces_rejected_characters(self):
    assert function_name("my.server", "tool name/v2") == "my_server_tool_name_v2"

  def test_long_names_are_shortened_with_a_hash(self):
    name = function_name("s" * 40, "t" * 40)

    assert len(name) == 64
    assert name != function_name("s" * 40, "t" * 39 + "u")

  def test_unique_names_differ_for_sanitized_collisions(self):
    assert function_name("a_b", "c") == function_name("a", "b_c")
    assert function_name("a_b", "c", unique=True) != function_name("a", "b_c", unique=True)
    assert function_name("a_b", "c", unique=True).startswith("a_b_c_")


class TestToolCatalog:
  @pytest.mark.asyncio
  async def test_same_tool_name_on_two_servers(self):
    servers = FakeServers(files=FakeServer([tool_entry("search")]), web=FakeServer([tool_entry("search")]))
    manager = await create_manager(servers, make_config("files"), make_config("web"))

    catalog = ToolCatalog.from_manager(manager)

    assert len(catalog) == 2
    assert "files_search" in catalog and "web_search" in catalog
    assert catalog.resolve("web_search").server_id == "web"
    assert catalog.find("files", "search").name == "files_search"
    await manager.cleanup()

  @pytest.mark.asyncio
  async def test_colliding_function_names_keep_both_tools(self):
    servers = FakeServers(a_b=FakeServer([tool_entry("c")]), a=FakeServer([tool_entry("b_c")]))
    manager = await create_manager(servers, make_config("a_b"), make_config("a"))

    catalog = ToolCatalog.from_manager(manager)

    assert len(catalog) == 2
    assert "a_b_c" not in catalog
    first, second = catalog.find("a_b", "c"), catalog.find("a", "b_c")
    assert first.name != second.name
    assert catalog.resolve(first.name).server_id == "a_b"
    assert catalog.resolve(second.name).tool_name == "b_c"
    await manager.cleanup()

  @pytest.mark.asyncio
  async def test_specs(self):
    manager = await create_manager(FakeServers(files=FakeServer([tool_entry("read_file", "Read a file")])))

    specs = await ToolCatalog.from_manager(manager).specs()

    assert specs == [
      {
        "type": "function",
        "function": {
          "name": "files_read_file",
          "description": "Read a file",
          "parameters": {"type": "object", "properties": {"path": {"type": "string"}}},
          "strict": False,
        },
      }
    ]
    await manager.cleanup()

  @pytest.mark.asyncio
  async def test_resolve_unknown_function(self):
    manager = await create_manager(FakeServers())

    with pytest.raises(ToolNotFoundError):
      ToolCatalog.from_manager(manager).resolve("files_delete")
    await manager.cleanup()


class TestServerToolAdapter:
  @pytest.mark.asyncio
  async def test_invoke_returns_text(self):
    servers = FakeServers()
    servers["files"].results["read_file"] = {"isError": False, "content": text_content("line 1")}
    manager = await create_manager(servers)
    adapter = ToolCatalog.from_manager(manager).resolve("files_read_file")

    assert await adapter.invoke('{"path": "a.txt"}') == "line 1"
    await manager.cleanup()

  @pytest.mark.asyncio
  async def test_invoke_returns_tool_error_text(self):
    servers = FakeServers()
    servers["files"].results["read_file"] = {"isError": True, "content": text_content("no such file")}
    manager = await create_manager(servers)
    adapter = ToolCatalog.from_manager(manager).resolve("files_read_file")

    assert await adapter.invoke('{"path": "missing.txt"}') == "no such file"
    await manager.cleanup()

  @pytest.mark.asyncio
  async def test_call_on_dropped_server_raises(self):
    servers = FakeServers()
    manager = await create_manager(servers)
    adapter = ToolCatalog.from_manager(manager).resolve("files_search")

    servers["files"].refuse_connect = True
    servers["files"].drop_connections()

    with pytest.raises(ConnectionError):
      await adapter.call({"q": "x"})
    await manager.cleanup()

  @pytest.mark.asyncio
  async def test_auto_approval(self):
    manager = await create_manager(FakeServers(), make_config("files", auto_approve=["read_file"]))
    catalog = ToolCatalog.from_manager(manager)

    assert catalog.resolve("files_read_file").auto_approved
    assert not catalog.resolve("files_search").auto_approved
    await manager.cleanup()

  @pytest.mark.parametrize("argument", ['["a"]', "{broken"])
  def test_rejects_non_object_arguments(self, argument):
    adapter = ServerToolAdapter(ToolServerManager(), ServerTool("files", Tool("read_file")))

    with pytest.raises(ValueError):
      adapter.parse_arguments(argument)

  def test_empty_arguments(self):
    adapter = ServerToolAdapter(ToolServerManager(), ServerTool("files", Tool("read_file")))

    assert adapter.parse_arguments(None) == {}
    assert adapter.parse_arguments("  ") == {}


def test_content_text():
  assert content_text("plain") == "plain"
  assert content_text(text_content("a") + text_content("b")) == "a\nb"
  assert content_text([{"type": "image", "data": "..."}]) == '[{"type": "image", "data": "..."}]'
