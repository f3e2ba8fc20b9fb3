"""
Observable state of a tool server.

ServerState is mutated only by the owning ToolServerHandle and its
HealthSupervisor. Everyone else reads a frozen ServerStateSnapshot.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Optional, Tuple

MAX_LOG_ENTRIES = 150
MAX_LOG_ENTRY_LENGTH = 1500
MAX_HEALTH_HISTORY = 10


class ServerStatus(Enum):
  CONNECTING = "connecting"
  CONNECTED = "connected"
  DISCONNECTED = "disconnected"
  ERROR = "error"
  DISABLED = "disabled"


@dataclass(frozen=True)
class LogEntry:
  timestamp: float
  message: str


class LogBuffer:
  """Keeps the most recent server log lines, each truncated to a fixed length."""

  def __init__(self, max_entries: int = MAX_LOG_ENTRIES, max_length: int = MAX_LOG_ENTRY_LENGTH):
    self.max_length = max_length
    self._entries: Deque[LogEntry] = deque(maxlen=max_entries)

  def append(self, message: str):
    if len(message) > self.max_length:
      message = message[: self.max_length] + "..."
    self._entries.append(LogEntry(time.time(), message))

  def entries(self) -> Tuple[LogEntry, ...]:
    return tuple(self._entries)

  def clear(self):
    self._entries.clear()

  def __len__(self):
    return len(self._entries)


@dataclass(frozen=True)
class HealthCheckRecord:
  timestamp: float
  healthy: bool
  response_time_ms: float
  error: Optional[str] = None


@dataclass
class HealthMetrics:
  is_healthy: bool = False
  last_check_time: Optional[float] = None
  response_time_ms: Optional[float] = None
  check_count: int = 0
  failure_count: int = 0
  consecutive_failures: int = 0
  last_error: Optional[str] = None
  history: Deque[HealthCheckRecord] = field(default_factory=lambda: deque(maxlen=MAX_HEALTH_HISTORY))

  def record(self, healthy: bool, response_time_ms: float, error: Optional[str] = None):
    now = time.time()
    self.check_count += 1
    self.last_check_time = now
    self.response_time_ms = response_time_ms
    self.is_healthy = healthy
    if healthy:
      self.consecutive_failures = 0
      self.last_error = None
    else:
      self.failure_count += 1
      self.consecutive_failures += 1
      self.last_error = error
    self.history.append(HealthCheckRecord(now, healthy, response_time_ms, error))

  def freeze(self) -> "HealthMetricsSnapshot":
    return HealthMetricsSnapshot(
      is_healthy=self.is_healthy,
      last_check_time=self.last_check_time,
      response_time_ms=self.response_time_ms,
      check_count=self.check_count,
      failure_count=self.failure_count,
      consecutive_failures=self.consecutive_failures,
      last_error=self.last_error,
      history=tuple(self.history),
    )


@dataclass(frozen=True)
class HealthMetricsSnapshot:
  is_healthy: bool
  last_check_time: Optional[float]
  response_time_ms: Optional[float]
  check_count: int
  failure_count: int
  consecutive_failures: int
  last_error: Optional[str]
  history: Tuple[HealthCheckRecord, ...]


@dataclass
class ServerState:
  status: ServerStatus = ServerStatus.DISCONNECTED
  retry_count: int = 0
  last_retry_timestamp: Optional[float] = None
  error: Optional[str] = None
  logs: LogBuffer = field(default_factory=LogBuffer)
  health: HealthMetrics = field(default_factory=HealthMetrics)

  def freeze(self, server_id: str, tool_count: int = 0) -> "ServerStateSnapshot":
    return ServerStateSnapshot(
      server_id=server_id,
      status=self.status,
      retry_count=self.retry_count,
      last_retry_timestamp=self.last_retry_timestamp,
      error=self.error,
      logs=tuple(entry.message for entry in self.logs.entries()),
      health=self.health.freeze(),
      tool_count=tool_count,
    )


@dataclass(frozen=True)
class ServerStateSnapshot:
  server_id: str
  status: ServerStatus
  retry_count: int
  last_retry_timestamp: Optional[float]
  error: Optional[str]
  logs: Tuple[str, ...]
  health: HealthMetricsSnapshot
  tool_count: int = 0

  @property
  def is_connected(self) -> bool:
    return self.status == ServerStatus.CONNECTED

  @property
  def is_disabled(self) -> bool:
    return self.status == ServerStatus.DISABLED

  def to_dict(self) -> dict:
    return {
      "server_id": self.server_id,
      "status": self.status.value,
      "retry_count": self.retry_count,
      "last_retry_timestamp": self.last_retry_timestamp,
      "error": self.error,
      "tool_count": self.tool_count,
      "is_healthy": self.health.is_healthy,
      "logs": list(self.logs),
    }


# Allowed status changes. DISABLED is derived from configuration and never
# entered through a transition.
TRANSITIONS = {
  ServerStatus.DISCONNECTED: {ServerStatus.CONNECTING, ServerStatus.ERROR},
  ServerStatus.CONNECTING: {ServerStatus.CONNECTED, ServerStatus.ERROR, ServerStatus.DISCONNECTED},
  ServerStatus.CONNECTED: {ServerStatus.DISCONNECTED, ServerStatus.ERROR},
  ServerStatus.ERROR: {ServerStatus.CONNECTING, ServerStatus.DISCONNECTED},
  ServerStatus.DISABLED: set(),
}


def can_transition(current: ServerStatus, requested: ServerStatus) -> bool:
  return current == requested or requested in TRANSITIONS[current]
