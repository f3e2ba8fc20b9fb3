import hashlib
import json
import re
from collections import defaultdict
from typing import Any, Dict, List, Optional

from .protocol import InvokableTool
from ..errors import ToolExecutionError, ToolNotFoundError, error_text
from ..logs import InfoContext, get_logger
from ..servers.manager import ServerTool, ToolServerManager

logger = get_logger("tool")

# Model providers accept function names matching this pattern
FUNCTION_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


def function_name(server_id: str, tool_name: str, unique: bool = False) -> str:
  """
  `<server>_<tool>`, with characters providers reject replaced by `_`.

  Names longer than 64 characters, and every name when `unique` is set, end in
  a short hash of the server id and tool name, e.g. `a_b_c_3f2a9c1d`.
  """
  name = re.sub(r"[^a-zA-Z0-9_-]", "_", f"{server_id}_{tool_name}")
  if len(name) <= 64 and not unique:
    return name
  digest = hashlib.sha1(f"{server_id}\0{tool_name}".encode("utf-8")).hexdigest()[:8]
  return f"{name[:55]}_{digest}"


class ServerToolAdapter(InvokableTool, InfoContext):
  """
  Exposes one tool of one server as a model-facing function.

  The function name is prefixed with the server id, so tools with the same
  name on different servers stay distinguishable.
  """

  def __init__(self, manager: ToolServerManager, server_tool: ServerTool, name: Optional[str] = None):
    self.logger = logger
    self.manager = manager
    self.server_id = server_tool.server_id
    self.tool = server_tool.tool
    self.tool_name = server_tool.tool.name
    self.name = name or function_name(self.server_id, self.tool_name)

    if FUNCTION_NAME_PATTERN.match(self.name) is None:
      raise ValueError(f"Cannot derive a function name for tool '{self.tool_name}' on server '{self.server_id}'")

  @property
  def auto_approved(self) -> bool:
    return self.manager.is_auto_approved(self.server_id, self.tool_name)

  async def spec(self) -> dict:
    return {
      "type": "function",
      "function": {
        "name": self.name,
        "description": self.tool.description,
        "parameters": self.tool.input_schema or {"type": "object", "properties": {}},
        "strict": False,
      },
    }

  def parse_arguments(self, json_argument: Optional[str]) -> Dict[str, Any]:
    if json_argument is None or not json_argument.strip():
      return {}
    try:
      arguments = json.loads(json_argument)
    except json.JSONDecodeError as e:
      raise ValueError(f"Invalid JSON arguments for tool '{self.name}': {e}") from e
    if not isinstance(arguments, dict):
      raise ValueError(f"Arguments for tool '{self.name}' must be a JSON object, got {type(arguments).__name__}")
    return arguments

  async def call(self, arguments: Optional[Dict[str, Any]]) -> Any:
    with self.info(f"Invoke tool: '{self.name}'", f"Invoked tool: '{self.name}'"):
      self.logger.debug(f"The tool arguments are: {arguments}")
      return await self.manager.invoke_tool(self.server_id, self.tool_name, arguments)

  async def invoke(self, json_argument: Optional[str]) -> str:
    """
    Invoke the tool with JSON encoded arguments and return its text output.

    A tool that reports `isError` yields its error text instead of raising,
    so the model can see what went wrong.
    """
    try:
      content = await self.call(self.parse_arguments(json_argument))
    except ToolExecutionError as e:
      self.logger.debug(f"Tool '{self.name}' reported an error: {e.message}")
      return error_text(e.content)
    return content_text(content)


class ToolCatalog:
  """
  Snapshot of the tools currently offered to the model.

  Built from the connected servers at a point in time. When two tools map to
  the same function name, both get a hashed suffix. A server that drops
  out after the snapshot was taken still fails its calls with ConnectionError.
  """

  def __init__(self, manager: ToolServerManager, tools: List[ServerTool]):
    self.manager = manager
    self._tools: Dict[str, ServerToolAdapter] = {}

    by_name: Dict[str, List[ServerTool]] = defaultdict(list)
    for server_tool in tools:
      by_name[function_name(server_tool.server_id, server_tool.tool.name)].append(server_tool)

    for name, group in by_name.items():
      if len(group) > 1:
        logger.warning(f"Function name '{name}' is shared by {len(group)} tools, adding a hash suffix to each")
      for server_tool in group:
        unique = len(group) > 1
        adapter = ServerToolAdapter(
          manager, server_tool, function_name(server_tool.server_id, server_tool.tool.name, unique=unique)
        )
        self._tools[adapter.name] = adapter

  @classmethod
  def from_manager(cls, manager: ToolServerManager) -> "ToolCatalog":
    return cls(manager, manager.get_tools())

  def __len__(self):
    return len(self._tools)

  def __contains__(self, name: str) -> bool:
    return name in self._tools

  @property
  def tools(self) -> List[ServerToolAdapter]:
    return list(self._tools.values())

  def find(self, server_id: str, tool_name: str) -> Optional[ServerToolAdapter]:
    for adapter in self._tools.values():
      if adapter.server_id == server_id and adapter.tool_name == tool_name:
        return adapter
    return None

  def resolve(self, name: str) -> ServerToolAdapter:
    adapter = self._tools.get(name)
    if adapter is None:
      raise ToolNotFoundError(None, name)
    return adapter

  async def specs(self) -> List[dict]:
    return [await adapter.spec() for adapter in self._tools.values()]


def content_text(content: Any) -> str:
  if isinstance(content, str):
    return content
  if isinstance(content, list) and all(isinstance(part, dict) and part.get("type") == "text" for part in content):
    return "\n".join(str(part.get("text", "")) for part in content)
  return json.dumps(content)
