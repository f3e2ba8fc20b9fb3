import pytest
from mcp import types

from tessera.errors import ProtocolError
from tessera.servers.protocol import (
  Tool,
  completion_reference,
  content_blocks,
  parse_completions,
  parse_tool_call_result,
  parse_tools,
)


def sdk_tool(name: str, **kwargs) -> types.Tool:
  kwargs.setdefault("inputSchema", {"type": "object"})
  return types.Tool(name=name, **kwargs)


class TestParseTools:
  def test_catalog(self):
    tools = parse_tools(
      [
        sdk_tool("read_file", description="Read a file"),
        sdk_tool("list_dir"),
      ]
    )

    assert tools == [
      Tool("read_file", "Read a file", {"type": "object"}),
      Tool("list_dir", "", {"type": "object"}),
    ]

  def test_to_dict_uses_wire_names(self):
    tool = Tool("search", "Search", {"type": "object"})

    assert tool.to_dict() == {"name": "search", "description": "Search", "inputSchema": {"type": "object"}}

  def test_duplicate_names(self):
    with pytest.raises(ProtocolError) as info:
      parse_tools([sdk_tool("a"), sdk_tool("a")], "files")

    assert "duplicate" in info.value.message

  def test_nameless_tool(self):
    with pytest.raises(ProtocolError):
      parse_tools([sdk_tool("")], "files")


class TestParseResults:
  def test_tool_call_result(self):
    result = types.CallToolResult(isError=True, content=[types.TextContent(type="text", text="denied")])

    parsed = parse_tool_call_result(result)

    assert parsed.is_error
    assert parsed.content == [{"type": "text", "text": "denied"}]

  def test_tool_call_result_defaults_to_success(self):
    assert not parse_tool_call_result(types.CallToolResult(content=[])).is_error

  def test_tool_call_result_must_be_call_result(self):
    with pytest.raises(ProtocolError):
      parse_tool_call_result(types.ListToolsResult(tools=[]), "files")

  def test_content_blocks_keep_wire_names(self):
    blocks = content_blocks(
      [
        types.TextContent(type="text", text="hello"),
        types.ImageContent(type="image", data="aGk=", mimeType="image/png"),
      ]
    )

    assert blocks == [
      {"type": "text", "text": "hello"},
      {"type": "image", "data": "aGk=", "mimeType": "image/png"},
    ]

  def test_completions(self):
    result = types.CompleteResult(completion=types.Completion(values=["main.py", "make.py"]))

    assert parse_completions(result) == ["main.py", "make.py"]

  def test_completion_reference(self):
    reference = completion_reference("read_file")

    assert reference.model_dump(exclude_none=True) == {"type": "ref/prompt", "name": "read_file"}
