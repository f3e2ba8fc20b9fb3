import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from .client import ServerConnection
from .config import ServerConfig
from .protocol import METHOD_NOT_FOUND, Tool
from .state import ServerState, ServerStateSnapshot, ServerStatus, can_transition
from .transport import LogCallback, TransportChannel, create_channel
from ..errors import (
  ConnectionError,
  ProtocolError,
  ServerDisabledError,
  TimeoutError,
  ToolExecutionError,
  ToolNotFoundError,
  ToolServerError,
)
from ..logs import DebugContext, get_logger

logger = get_logger("server")

ChannelFactory = Callable[[ServerConfig, Optional[LogCallback]], TransportChannel]
ConnectedCallback = Callable[["ToolServerHandle"], None]


class ToolServerHandle(DebugContext):
  """
  Owns the lifecycle and tool catalog of one tool server.

  The handle is the only writer of its ServerState, together with the
  HealthSupervisor that drives it. Readers call `get_state()` and receive a
  frozen snapshot.

  Example:
    handle = ToolServerHandle(config)
    await handle.start()
    content = await handle.invoke_tool("read_file", {"path": "README.md"})
    await handle.stop()

  `on_connected` is called after every successful connect, whoever caused
  it: start, a supervisor retry or the lazy reconnect of a tool call.
  """

  def __init__(
    self,
    config: ServerConfig,
    channel_factory: ChannelFactory = create_channel,
    on_connected: Optional[ConnectedCallback] = None,
  ):
    self.config = config
    self.id = config.id
    self.logger = logger
    self.channel_factory = channel_factory
    self.on_connected = on_connected
    self.state = ServerState(status=ServerStatus.DISABLED if config.disabled else ServerStatus.DISCONNECTED)
    self._tools: List[Tool] = []
    self._client: Optional[ServerConnection] = None
    self._lock = asyncio.Lock()

  @property
  def status(self) -> ServerStatus:
    return self.state.status

  @property
  def disabled(self) -> bool:
    return self.config.disabled

  @property
  def is_connected(self) -> bool:
    return self.state.status == ServerStatus.CONNECTED and self._client is not None and self._client.is_alive

  def get_state(self) -> ServerStateSnapshot:
    return self.state.freeze(self.id, len(self._tools) if self.is_connected else 0)

  def is_auto_approved(self, tool_name: str) -> bool:
    return self.config.is_auto_approved(tool_name)

  def list_tools(self) -> List[Tool]:
    """The cached catalog. Empty unless the server is connected."""
    if not self.is_connected:
      return []
    return list(self._tools)

  async def start(self):
    """
    Connect to the server, perform the handshake and load its catalog.

    Disabled servers are left untouched.

    :raises ConnectionError: if the server cannot be reached
    :raises TimeoutError: if the handshake or catalog request times out
    :raises ProtocolError: if the server answers with malformed messages
    """
    if self.disabled:
      logger.info(f"Server '{self.id}' is disabled, not starting")
      return

    async with self._lock:
      if not self.is_connected:
        await self._connect()

  async def stop(self):
    async with self._lock:
      await self._close_client()
      self._tools = []
      if not self.disabled:
        self._set_status(ServerStatus.DISCONNECTED)
    logger.info(f"Stopped server '{self.id}'")

  async def reconnect(self):
    """Drop the current connection, if any, and connect again."""
    if self.disabled:
      raise ServerDisabledError(self.id)

    async with self._lock:
      if self.state.status == ServerStatus.CONNECTED:
        self._set_status(ServerStatus.DISCONNECTED)
      await self._connect()

  async def refresh_tools(self) -> List[Tool]:
    if not self.is_connected:
      raise ConnectionError(self.id, "not connected")
    self._tools = await self._fetch_tools(self._client)
    return list(self._tools)

  async def ping(self, timeout: Optional[float] = None):
    if not self.is_connected:
      raise ConnectionError(self.id, "not connected")
    await self._client.ping(timeout or self.config.timeout)

  async def invoke_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
    """
    Call a tool and return its content.

    Args:
      name: Tool name, as listed by the server
      arguments: Tool arguments matching its input schema

    :raises ServerDisabledError: if the server is disabled
    :raises ConnectionError: if the server is unreachable after one reconnect attempt
    :raises ToolNotFoundError: if the server does not list the tool
    :raises TimeoutError: if the call exceeds the configured timeout
    :raises ToolExecutionError: if the tool reports `isError`
    """
    await self._ensure_connected()
    self._require_tool(name)

    logger.debug(f"[{self.id}] Invoking tool '{name}'")
    try:
      result = await self._client.call_tool(name, arguments, self.config.timeout)
    except TimeoutError as e:
      self.state.logs.append(f"Tool '{name}' timed out after {self.config.timeout}s")
      raise TimeoutError(self.id, f"Tool call '{name}'", self.config.timeout, {"tool_name": name}) from e
    except ConnectionError:
      self._lost_connection("channel closed during tool call")
      raise

    if result.is_error:
      raise ToolExecutionError(self.id, name, result.content)
    return result.content

  async def get_completions(self, method_name: str, arg_name: str, partial_value: str) -> List[str]:
    """
    Ask the server for completions of one tool argument.

    Servers that do not implement completions yield an empty list.
    """
    await self._ensure_connected()
    self._require_tool(method_name)

    try:
      return await self._client.complete(method_name, arg_name, partial_value, self.config.timeout)
    except ProtocolError as e:
      if e.details.get("code") == METHOD_NOT_FOUND:
        return []
      raise

  # State changes driven by the HealthSupervisor

  def record_health(self, healthy: bool, response_time_ms: float, error: Optional[str] = None):
    self.state.health.record(healthy, response_time_ms, error)

  def record_retry(self):
    self.state.retry_count += 1
    self.state.last_retry_timestamp = time.time()

  def reset_retries(self):
    self.state.retry_count = 0
    self.state.last_retry_timestamp = None

  def mark_disconnected(self, error: Optional[str] = None):
    if self.state.status != ServerStatus.DISCONNECTED:
      self._set_status(ServerStatus.DISCONNECTED, error)
    elif error is not None:
      self.state.error = error

  def mark_error(self, error: str):
    self._set_status(ServerStatus.ERROR, error)

  # Internals

  async def _connect(self):
    await self._close_client()
    self._set_status(ServerStatus.CONNECTING)

    channel = self.channel_factory(self.config, self._append_log)
    client = ServerConnection(self.id, channel, on_close=self._on_channel_closed, on_log=self._append_log)
    try:
      with self.debug(f"Connecting to server '{self.id}'", f"Handshake with server '{self.id}' complete"):
        await client.connect(self.config.connect_timeout)
      tools = await self._fetch_tools(client)
    except ToolServerError as e:
      await client.close()
      self.state.logs.append(f"Connection failed: {e.message}")
      self._set_status(ServerStatus.ERROR, e.message)
      raise

    self._client = client
    self._tools = tools
    self.reset_retries()
    self._set_status(ServerStatus.CONNECTED)
    logger.info(f"Connected to server '{self.id}' with {len(tools)} tool(s)")
    if self.on_connected is not None:
      self.on_connected(self)

  async def _fetch_tools(self, client: ServerConnection) -> List[Tool]:
    return await client.list_tools(self.config.connect_timeout)

  async def _ensure_connected(self):
    if self.disabled:
      raise ServerDisabledError(self.id)
    if self.is_connected:
      return

    async with self._lock:
      if self.is_connected:
        return
      logger.info(f"Server '{self.id}' is not connected, attempting to reconnect")
      if self.state.status == ServerStatus.CONNECTED:
        self._set_status(ServerStatus.DISCONNECTED)
      try:
        await self._connect()
      except ConnectionError:
        raise
      except ToolServerError as e:
        raise ConnectionError(self.id, f"reconnect failed: {e.message}", cause=e) from e

  def _require_tool(self, name: str):
    if not any(tool.name == name for tool in self._tools):
      raise ToolNotFoundError(self.id, name)

  async def _close_client(self):
    client = self._client
    self._client = None
    if client is not None:
      await client.close()

  def _append_log(self, message: str):
    self.state.logs.append(message)

  def _on_channel_closed(self, error: Optional[BaseException]):
    reason = f"channel closed: {error}" if error is not None else "channel closed"
    self._lost_connection(reason)

  def _lost_connection(self, reason: str):
    self.state.logs.append(reason)
    if self.state.status == ServerStatus.CONNECTED:
      logger.warning(f"Lost connection to server '{self.id}': {reason}")
      self._set_status(ServerStatus.DISCONNECTED, reason)

  def _set_status(self, status: ServerStatus, error: Optional[str] = None):
    current = self.state.status
    if not can_transition(current, status):
      logger.warning(f"[{self.id}] Ignoring status change {current.value} -> {status.value}")
      return

    self.state.status = status
    if status in (ServerStatus.CONNECTED, ServerStatus.CONNECTING):
      self.state.error = None
    elif error is not None:
      self.state.error = error

    if current != status:
      logger.debug(f"[{self.id}] Status {current.value} -> {status.value}")
