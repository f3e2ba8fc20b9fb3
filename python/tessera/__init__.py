from .logs import (
  info,
  warning,
  error,
  debug,
  set_log_level,
  set_log_levels,
  get_logger,
)
from .errors import (
  ToolServerError,
  ConnectionError,
  TimeoutError,
  ProtocolError,
  ToolExecutionError,
  ConfigurationError,
  ServerNotFoundError,
  ServerAlreadyExistsError,
  ServerDisabledError,
  ToolNotFoundError,
  CleanupError,
  SessionError,
  SessionNotFoundError,
  RoundCreationError,
  InvalidTurnTransitionError,
)
from .servers import (
  ServerConfig,
  HealthCheckConfig,
  HealthCheckStrategy,
  ServerStatus,
  ServerStateSnapshot,
  Tool,
  ToolServerHandle,
  ToolServerManager,
  ServerTool,
  InitializeResult,
  HealthSupervisor,
  BackoffPolicy,
  load_server_configs,
)
from .tools import ServerToolAdapter, ToolCatalog
from .sessions import (
  Session,
  Round,
  Turn,
  TurnStatus,
  ContentPayload,
  ToolCallPayload,
  ToolResultPayload,
  InMemorySessionStore,
  RoundManager,
  TurnRecorder,
  SessionCoordinator,
  CancellationToken,
  TextFragment,
  UsageFragment,
  ToolCallFragment,
)
from .context import trim_to_fit, StandardTrimStrategy, TiktokenCounter, CharacterCounter

__all__ = [
  "info",
  "warning",
  "error",
  "debug",
  "set_log_level",
  "set_log_levels",
  "get_logger",
  "ToolServerError",
  "ConnectionError",
  "TimeoutError",
  "ProtocolError",
  "ToolExecutionError",
  "ConfigurationError",
  "ServerNotFoundError",
  "ServerAlreadyExistsError",
  "ServerDisabledError",
  "ToolNotFoundError",
  "CleanupError",
  "SessionError",
  "SessionNotFoundError",
  "RoundCreationError",
  "InvalidTurnTransitionError",
  "ServerConfig",
  "HealthCheckConfig",
  "HealthCheckStrategy",
  "ServerStatus",
  "ServerStateSnapshot",
  "Tool",
  "ToolServerHandle",
  "ToolServerManager",
  "ServerTool",
  "InitializeResult",
  "HealthSupervisor",
  "BackoffPolicy",
  "load_server_configs",
  "ServerToolAdapter",
  "ToolCatalog",
  "Session",
  "Round",
  "Turn",
  "TurnStatus",
  "ContentPayload",
  "ToolCallPayload",
  "ToolResultPayload",
  "InMemorySessionStore",
  "RoundManager",
  "TurnRecorder",
  "SessionCoordinator",
  "CancellationToken",
  "TextFragment",
  "UsageFragment",
  "ToolCallFragment",
  "trim_to_fit",
  "StandardTrimStrategy",
  "TiktokenCounter",
  "CharacterCounter",
]
