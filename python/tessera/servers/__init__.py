from .config import (
  ContainerSpec,
  HealthCheckConfig,
  HealthCheckStrategy,
  ServerConfig,
  SpecificToolCheck,
  load_server_configs,
  parse_server_config,
)
from .protocol import Tool, ToolCallResult
from .state import HealthMetrics, LogBuffer, ServerState, ServerStateSnapshot, ServerStatus
from .transport import (
  ContainerChannel,
  HttpChannel,
  SubprocessChannel,
  TcpChannel,
  TransportChannel,
  create_channel,
)
from .client import ServerConnection
from .handle import ToolServerHandle
from .health import BackoffPolicy, HealthEvent, HealthEventKind, HealthSupervisor
from .manager import InitializeResult, ServerTool, ToolServerManager

__all__ = [
  "ContainerSpec",
  "HealthCheckConfig",
  "HealthCheckStrategy",
  "ServerConfig",
  "SpecificToolCheck",
  "load_server_configs",
  "parse_server_config",
  "Tool",
  "ToolCallResult",
  "HealthMetrics",
  "LogBuffer",
  "ServerState",
  "ServerStateSnapshot",
  "ServerStatus",
  "ContainerChannel",
  "HttpChannel",
  "SubprocessChannel",
  "TcpChannel",
  "TransportChannel",
  "create_channel",
  "ServerConnection",
  "ToolServerHandle",
  "BackoffPolicy",
  "HealthEvent",
  "HealthEventKind",
  "HealthSupervisor",
  "InitializeResult",
  "ServerTool",
  "ToolServerManager",
]
