"""
Tool server configuration.

A server is reached in one of three ways:

- `command` + `args` + `env`: a local subprocess speaking the tool protocol on stdio
- `address`: a network endpoint, either `tcp://host:port` or an `http(s)://` URL
- `container`: an image run with `docker run -i --rm`, speaking the protocol on stdio

Environment Variables:
- TESSERA_TOOL_TIMEOUT_MS: default deadline for a single tool call (default: 30000)
- TESSERA_CONNECT_TIMEOUT_MS: default deadline for connecting to a server (default: 10000)
- TESSERA_MAX_CONCURRENT_STARTS: servers started at once by the manager (default: 4)
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import urlparse

from ..errors import ConfigurationError


def _env_int(name: str, default: int) -> int:
  value = os.environ.get(name)
  if value is None:
    return default
  try:
    return int(value)
  except ValueError:
    return default


DEFAULT_TOOL_TIMEOUT_MS = _env_int("TESSERA_TOOL_TIMEOUT_MS", 30000)
DEFAULT_CONNECT_TIMEOUT_MS = _env_int("TESSERA_CONNECT_TIMEOUT_MS", 10000)
DEFAULT_MAX_CONCURRENT_STARTS = _env_int("TESSERA_MAX_CONCURRENT_STARTS", 4)

SUPPORTED_ADDRESS_SCHEMES = ("tcp", "http", "https")


class HealthCheckStrategy(Enum):
  TOOL_LISTING = "tool_listing"
  PING = "ping"
  SPECIFIC_TOOL = "specific_tool"


@dataclass(frozen=True)
class SpecificToolCheck:
  name: str
  arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HealthCheckConfig:
  strategy: HealthCheckStrategy = HealthCheckStrategy.TOOL_LISTING
  interval_ms: int = 30000
  timeout_ms: int = 5000
  max_retries: int = 3
  specific_tool: Optional[SpecificToolCheck] = None

  @property
  def interval(self) -> float:
    return self.interval_ms / 1000.0

  @property
  def timeout(self) -> float:
    return self.timeout_ms / 1000.0


@dataclass(frozen=True)
class ContainerSpec:
  image: str
  args: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ServerConfig:
  """
  Configuration of one tool server.

  Attributes:
    id: Unique server identifier
    command: Executable for stdio servers
    args: Arguments for the command or container
    env: Extra environment variables for the server process
    address: Network address for remote servers
    container: Image to run for containerized servers
    auto_approve: Tool names that do not need user confirmation
    disabled: Disabled servers are never started and expose no tools
    health_check: Health check policy used by the HealthSupervisor
    timeout_ms: Deadline for a single tool call
    connect_timeout_ms: Deadline for connecting and the protocol handshake
  """

  id: str
  command: Optional[str] = None
  args: List[str] = field(default_factory=list)
  env: Dict[str, str] = field(default_factory=dict)
  address: Optional[str] = None
  container: Optional[ContainerSpec] = None
  auto_approve: List[str] = field(default_factory=list)
  disabled: bool = False
  health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)
  timeout_ms: int = DEFAULT_TOOL_TIMEOUT_MS
  connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS

  @property
  def timeout(self) -> float:
    return self.timeout_ms / 1000.0

  @property
  def connect_timeout(self) -> float:
    return self.connect_timeout_ms / 1000.0

  def validate(self) -> "ServerConfig":
    """
    Check the configuration and return it unchanged.

    :raises ConfigurationError: if the configuration cannot be used
    """
    if not self.id or not isinstance(self.id, str):
      raise ConfigurationError(None, "server id must be a non-empty string")

    descriptors = [d for d in (self.command, self.address, self.container) if d]
    if len(descriptors) != 1:
      raise ConfigurationError(self.id, "exactly one of 'command', 'address' or 'container' must be set")

    if self.address:
      parsed = urlparse(self.address)
      if parsed.scheme not in SUPPORTED_ADDRESS_SCHEMES:
        raise ConfigurationError(
          self.id, f"unsupported address scheme '{parsed.scheme}'", {"supported": list(SUPPORTED_ADDRESS_SCHEMES)}
        )
      if parsed.scheme == "tcp" and (not parsed.hostname or not parsed.port):
        raise ConfigurationError(self.id, "tcp address must look like tcp://host:port")

    if self.container is not None and not self.container.image:
      raise ConfigurationError(self.id, "container image must be set")

    if not all(isinstance(arg, str) for arg in self.args):
      raise ConfigurationError(self.id, "args must be strings")
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in self.env.items()):
      raise ConfigurationError(self.id, "env must map strings to strings")

    health = self.health_check
    if health.interval_ms <= 0:
      raise ConfigurationError(self.id, "healthCheck.intervalMs must be positive")
    if health.timeout_ms <= 0:
      raise ConfigurationError(self.id, "healthCheck.timeoutMs must be positive")
    if health.max_retries < 0:
      raise ConfigurationError(self.id, "healthCheck.maxRetries must not be negative")
    if health.strategy == HealthCheckStrategy.SPECIFIC_TOOL and health.specific_tool is None:
      raise ConfigurationError(self.id, "healthCheck.specificTool is required for the specific_tool strategy")

    if self.timeout_ms <= 0 or self.connect_timeout_ms <= 0:
      raise ConfigurationError(self.id, "timeouts must be positive")

    return self

  def is_auto_approved(self, tool_name: str) -> bool:
    return tool_name in self.auto_approve


def parse_server_config(server_id: str, data: Mapping[str, Any]) -> ServerConfig:
  """
  Build a ServerConfig from the camelCase schema used in configuration files:

    {
      "command": "npx", "args": [...], "env": {...},      # or "address": "tcp://..."
      "autoApprove": ["read_file"], "disabled": false,
      "healthCheck": {"strategy": "tool_listing", "intervalMs": 30000, "timeoutMs": 5000, "maxRetries": 3},
      "timeoutMs": 30000
    }

  :raises ConfigurationError: if a field has the wrong shape
  """
  if not isinstance(data, Mapping):
    raise ConfigurationError(server_id, f"expected an object, got {type(data).__name__}")

  try:
    health_data = data.get("healthCheck") or {}
    if not isinstance(health_data, Mapping):
      raise ConfigurationError(server_id, "healthCheck must be an object")

    specific_tool = None
    if health_data.get("specificTool"):
      specific_tool = SpecificToolCheck(
        name=health_data["specificTool"]["name"],
        arguments=dict(health_data["specificTool"].get("args") or {}),
      )

    health_check = HealthCheckConfig(
      strategy=HealthCheckStrategy(health_data.get("strategy", HealthCheckStrategy.TOOL_LISTING.value)),
      interval_ms=int(health_data.get("intervalMs", 30000)),
      timeout_ms=int(health_data.get("timeoutMs", 5000)),
      max_retries=int(health_data.get("maxRetries", health_data.get("retries", 3))),
      specific_tool=specific_tool,
    )

    container = None
    if data.get("container"):
      container_data = data["container"]
      if isinstance(container_data, str):
        container = ContainerSpec(image=container_data)
      else:
        container = ContainerSpec(image=container_data["image"], args=list(container_data.get("args") or []))

    config = ServerConfig(
      id=server_id,
      command=data.get("command"),
      args=list(data.get("args") or []),
      env=dict(data.get("env") or {}),
      address=data.get("address"),
      container=container,
      auto_approve=list(data.get("autoApprove") or []),
      disabled=bool(data.get("disabled", False)),
      health_check=health_check,
      timeout_ms=int(data.get("timeoutMs", DEFAULT_TOOL_TIMEOUT_MS)),
      connect_timeout_ms=int(data.get("connectTimeoutMs", DEFAULT_CONNECT_TIMEOUT_MS)),
    )
  except ConfigurationError:
    raise
  except (KeyError, TypeError, ValueError) as e:
    raise ConfigurationError(server_id, f"malformed configuration: {e}") from e

  return config.validate()


def load_server_configs(data: Mapping[str, Mapping[str, Any]]) -> Dict[str, Union[ServerConfig, ConfigurationError]]:
  """
  Parse a `{server_id: config}` mapping.

  Invalid entries do not stop parsing: their ConfigurationError is returned in
  place of the config so the caller can report it and continue with the rest.
  """
  result: Dict[str, Union[ServerConfig, ConfigurationError]] = {}
  for server_id, server_data in data.items():
    try:
      result[server_id] = parse_server_config(server_id, server_data)
    except ConfigurationError as e:
      result[server_id] = e
  return result
