import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .config import DEFAULT_MAX_CONCURRENT_STARTS, ServerConfig, parse_server_config
from .handle import ChannelFactory, ToolServerHandle
from .health import BackoffPolicy, HealthSupervisor
from .protocol import Tool
from .state import ServerStateSnapshot
from .transport import create_channel
from ..errors import (
  CleanupError,
  ConfigurationError,
  ServerAlreadyExistsError,
  ServerNotFoundError,
  ToolServerError,
  convert_error,
)
from ..logs import get_logger

logger = get_logger("manager")

ServerConfigs = Union[Iterable[ServerConfig], Mapping[str, Union[ServerConfig, ConfigurationError, Mapping[str, Any]]]]


@dataclass(frozen=True)
class ServerTool:
  """A tool tagged with the server that provides it. Tool names may repeat across servers."""

  server_id: str
  tool: Tool

  @property
  def name(self) -> str:
    return self.tool.name

  @property
  def qualified_name(self) -> str:
    return f"{self.server_id}/{self.tool.name}"


@dataclass
class InitializeResult:
  started: List[str] = field(default_factory=list)
  disabled: List[str] = field(default_factory=list)
  failed: Dict[str, ToolServerError] = field(default_factory=dict)

  @property
  def ok(self) -> bool:
    return not self.failed


class ToolServerManager:
  """
  Owns a set of tool servers: their handles, health supervisors and the
  aggregated tool catalog.

  The manager is constructed explicitly and passed to whoever needs it. Use it
  as an async context manager to guarantee cleanup:

    async with ToolServerManager() as manager:
      result = await manager.initialize(load_server_configs(data))
      tools = manager.get_tools()
      content = await manager.invoke_tool("files", "read_file", {"path": "notes.md"})

  Environment Variables:
  - TESSERA_MAX_CONCURRENT_STARTS: servers connected at once during initialize (default: 4)
  """

  def __init__(
    self,
    channel_factory: ChannelFactory = create_channel,
    max_concurrent_starts: int = DEFAULT_MAX_CONCURRENT_STARTS,
    backoff: Optional[BackoffPolicy] = None,
    events: Optional[asyncio.Queue] = None,
    supervise: bool = True,
  ):
    self.channel_factory = channel_factory
    self.max_concurrent_starts = max(1, max_concurrent_starts)
    self.backoff = backoff or BackoffPolicy()
    self.events = events
    self.supervise = supervise
    self._handles: Dict[str, ToolServerHandle] = {}
    self._supervisors: Dict[str, HealthSupervisor] = {}

  async def __aenter__(self) -> "ToolServerManager":
    return self

  async def __aexit__(self, exc_type, exc, tb):
    await self.cleanup()

  @property
  def server_ids(self) -> List[str]:
    return list(self._handles)

  async def initialize(self, configs: ServerConfigs) -> InitializeResult:
    """
    Register and connect every configured server.

    Servers start concurrently, bounded by `max_concurrent_starts`. A server
    that fails to start does not affect the others. Its error is reported in
    the result and, for retryable errors, its health supervisor keeps trying.
    """
    result = InitializeResult()
    handles: List[ToolServerHandle] = []

    for server_id, config_or_error in self._resolve_configs(configs):
      if isinstance(config_or_error, ToolServerError):
        logger.error(f"Skipping server '{server_id}': {config_or_error.message}")
        result.failed[server_id] = config_or_error
        continue

      try:
        handle = self._register(config_or_error)
      except ServerAlreadyExistsError as e:
        result.failed[server_id] = e
        continue

      if handle.disabled:
        result.disabled.append(server_id)
      else:
        handles.append(handle)

    semaphore = asyncio.Semaphore(self.max_concurrent_starts)

    async def start(handle: ToolServerHandle):
      async with semaphore:
        return await self._start(handle)

    errors = await asyncio.gather(*(start(handle) for handle in handles))
    for handle, error in zip(handles, errors):
      if error is None:
        result.started.append(handle.id)
      else:
        result.failed[handle.id] = error

    logger.info(
      f"Initialized {len(result.started)} server(s), {len(result.failed)} failed, {len(result.disabled)} disabled"
    )
    return result

  def get_tools(self) -> List[ServerTool]:
    """Tools of every connected server, each tagged with its server id."""
    tools = []
    for server_id, handle in self._handles.items():
      if not handle.is_connected:
        continue
      tools.extend(ServerTool(server_id, tool) for tool in handle.list_tools())
    return tools

  def get_server(self, server_id: str) -> Optional[ToolServerHandle]:
    return self._handles.get(server_id)

  def require_server(self, server_id: str) -> ToolServerHandle:
    handle = self._handles.get(server_id)
    if handle is None:
      raise ServerNotFoundError(server_id)
    return handle

  def get_server_state(self, server_id: str) -> ServerStateSnapshot:
    return self.require_server(server_id).get_state()

  def get_server_states(self) -> Dict[str, ServerStateSnapshot]:
    return {server_id: handle.get_state() for server_id, handle in self._handles.items()}

  def is_auto_approved(self, server_id: str, tool_name: str) -> bool:
    return self.require_server(server_id).is_auto_approved(tool_name)

  async def invoke_tool(self, server_id: str, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
    return await self.require_server(server_id).invoke_tool(name, arguments)

  async def get_completions(self, server_id: str, method_name: str, arg_name: str, partial_value: str) -> List[str]:
    return await self.require_server(server_id).get_completions(method_name, arg_name, partial_value)

  async def add_server(self, config: ServerConfig) -> ToolServerHandle:
    """
    Register and start a new server.

    The server stays registered when it fails to start, so it can be
    reconnected later.

    :raises ConfigurationError: if the configuration is invalid
    :raises ServerAlreadyExistsError: if a server with the same id is registered
    """
    handle = self._register(config.validate())
    if not handle.disabled:
      error = await self._start(handle)
      if error is not None:
        raise error
    return handle

  async def remove_server(self, server_id: str):
    handle = self.require_server(server_id)
    supervisor = self._supervisors.pop(server_id, None)
    del self._handles[server_id]
    if supervisor is not None:
      await supervisor.stop()
    await handle.stop()
    logger.info(f"Removed server '{server_id}'")

  async def update_server(self, config: ServerConfig) -> ToolServerHandle:
    """Replace a server's configuration, restarting it with the new settings."""
    config.validate()
    if config.id in self._handles:
      await self.remove_server(config.id)
    return await self.add_server(config)

  async def restart_server(self, server_id: str) -> ToolServerHandle:
    handle = self.require_server(server_id)
    supervisor = self._supervisors.get(server_id)
    if supervisor is not None:
      await supervisor.stop()

    await handle.stop()
    error = await self._start(handle)
    if error is not None:
      raise error
    return handle

  async def reconnect(self, server_id: str) -> ToolServerHandle:
    """
    Manually reconnect a server, typically one in permanent `error` state.

    Retry state is reset and health supervision starts over.
    """
    handle = self.require_server(server_id)
    supervisor = self._supervisors.get(server_id)
    if supervisor is not None:
      await supervisor.stop()

    handle.reset_retries()
    try:
      await handle.reconnect()
    except ToolServerError as e:
      if e.retryable:
        self._supervise(handle)
      raise

    self._supervise(handle)
    return handle

  async def check_health(self) -> Dict[str, bool]:
    """Check every enabled server once, concurrently."""
    supervisors = [
      self._supervisors.get(server_id) or HealthSupervisor(handle, self.backoff, self.events)
      for server_id, handle in self._handles.items()
      if not handle.disabled
    ]
    results = await asyncio.gather(*(supervisor.check() for supervisor in supervisors))
    return {supervisor.server_id: healthy for supervisor, healthy in zip(supervisors, results)}

  async def cleanup(self):
    """
    Stop every server and its supervisor.

    Every server is attempted. Failures are collected and raised together.

    :raises CleanupError: if one or more servers failed to stop
    """
    failures: Dict[str, BaseException] = {}
    handles = dict(self._handles)
    supervisors = dict(self._supervisors)
    self._handles.clear()
    self._supervisors.clear()

    for server_id, handle in handles.items():
      try:
        supervisor = supervisors.get(server_id)
        if supervisor is not None:
          await supervisor.stop()
        await handle.stop()
      except Exception as e:
        logger.error(f"Failed to stop server '{server_id}': {e}")
        failures[server_id] = e

    if failures:
      raise CleanupError(failures)
    logger.debug(f"Stopped {len(handles)} server(s)")

  def _resolve_configs(self, configs: ServerConfigs):
    if isinstance(configs, Mapping):
      for server_id, value in configs.items():
        if isinstance(value, (ServerConfig, ToolServerError)):
          yield server_id, self._validated(value)
        else:
          try:
            yield server_id, parse_server_config(server_id, value)
          except ConfigurationError as e:
            yield server_id, e
    else:
      for config in configs:
        yield config.id, self._validated(config)

  @staticmethod
  def _validated(config: Union[ServerConfig, ToolServerError]) -> Union[ServerConfig, ToolServerError]:
    if isinstance(config, ToolServerError):
      return config
    try:
      return config.validate()
    except ConfigurationError as e:
      return e

  def _register(self, config: ServerConfig) -> ToolServerHandle:
    if config.id in self._handles:
      raise ServerAlreadyExistsError(config.id)
    handle = ToolServerHandle(config, self.channel_factory, on_connected=self._supervise)
    self._handles[config.id] = handle
    return handle

  async def _start(self, handle: ToolServerHandle) -> Optional[ToolServerError]:
    try:
      await handle.start()
    except Exception as e:
      error = convert_error(e, handle.id, "Server start")
      logger.error(f"Failed to start server '{handle.id}': {error.message}")
      if error.retryable:
        self._supervise(handle)
      return error

    self._supervise(handle)
    return None

  def _supervise(self, handle: ToolServerHandle):
    # Also called by handles on every connect, including lazy reconnects after a permanent error
    if not self.supervise or handle.disabled or self._handles.get(handle.id) is not handle:
      return
    supervisor = self._supervisors.get(handle.id)
    if supervisor is None:
      supervisor = HealthSupervisor(handle, self.backoff, self.events)
      self._supervisors[handle.id] = supervisor
    supervisor.start()
