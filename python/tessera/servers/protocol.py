"""
Tool protocol types.

Servers speak the Model Context Protocol. The `mcp` SDK frames messages, runs
the handshake and correlates requests and responses; this module turns its
result models into the small frozen types the rest of the package works with.

Methods used by the client:

- `initialize`: handshake, answered with server info and capabilities
- `tools/list`: answered with `{"tools": [{"name", "description", "inputSchema"}]}`
- `tools/call`: `{"name", "arguments"}`, answered with `{"isError", "content"}`
- `completion/complete`: parameter autocompletion, answered with `{"completion": {"values": [...]}}`
- `ping`: liveness check, answered with `{}`
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from mcp import types

from ..errors import ProtocolError

CLIENT_INFO = types.Implementation(name="tessera-client", version="0.1.0")

METHOD_NOT_FOUND = types.METHOD_NOT_FOUND
# Sent by the SDK to requests still pending when the connection closes
CONNECTION_CLOSED = -32000


@dataclass(frozen=True)
class Tool:
  name: str
  description: str = ""
  input_schema: Dict[str, Any] = field(default_factory=dict)

  def to_dict(self) -> Dict[str, Any]:
    return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


@dataclass(frozen=True)
class ToolCallResult:
  is_error: bool
  content: Any


def parse_tools(tools: Iterable[types.Tool], server_id: Optional[str] = None) -> List[Tool]:
  """
  Convert a `tools/list` catalog.

  :raises ProtocolError: if a tool has no name or a name is listed twice
  """
  parsed = []
  seen = set()
  for entry in tools:
    name = entry.name
    if not name:
      raise ProtocolError(server_id, "tool entry is missing required field 'name'")
    if name in seen:
      raise ProtocolError(server_id, f"duplicate tool name '{name}'")
    seen.add(name)

    input_schema = entry.inputSchema
    if not isinstance(input_schema, dict):
      raise ProtocolError(
        server_id, f"'inputSchema' of tool '{name}' must be an object, got {type(input_schema).__name__}"
      )
    parsed.append(Tool(name=name, description=entry.description or "", input_schema=dict(input_schema)))
  return parsed


def content_blocks(content: Iterable[Any]) -> List[Dict[str, Any]]:
  """Tool result content as plain dicts, e.g. `[{"type": "text", "text": "..."}]`."""
  return [block.model_dump(mode="json", by_alias=True, exclude_none=True) for block in content]


def parse_tool_call_result(result: types.CallToolResult, server_id: Optional[str] = None) -> ToolCallResult:
  if not isinstance(result, types.CallToolResult):
    raise ProtocolError(server_id, f"tools/call returned {type(result).__name__}, expected CallToolResult")
  return ToolCallResult(is_error=bool(result.isError), content=content_blocks(result.content))


def completion_reference(method_name: str) -> types.PromptReference:
  return types.PromptReference(type="ref/prompt", name=method_name)


def parse_completions(result: types.CompleteResult) -> List[str]:
  return [str(value) for value in result.completion.values]
