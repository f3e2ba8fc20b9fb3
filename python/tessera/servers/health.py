"""
Periodic health probing with retry and backoff.

Each supervised server gets one asyncio task:

  check every `interval_ms` -> ok:     reset retry_count, status connected
                            -> failed: retry_count += 1, wait backoff(retry_count), check again
                                       retry_count >= max_retries: status error, task exits

A server in permanent `error` is only brought back by a manual reconnect.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .config import HealthCheckStrategy
from .handle import ToolServerHandle
from .state import ServerStatus
from ..errors import ToolServerError, convert_error
from ..logs import get_logger

logger = get_logger("health")


@dataclass(frozen=True)
class BackoffPolicy:
  """Capped exponential backoff: base * factor ** attempt, never more than cap (seconds)."""

  base: float = 1.0
  factor: float = 2.0
  cap: float = 30.0

  def delay(self, attempt: int) -> float:
    return min(self.cap, self.base * self.factor ** max(attempt, 0))


class HealthEventKind(Enum):
  CHECK = "check"
  RECOVERED = "recovered"
  GAVE_UP = "gave_up"


@dataclass(frozen=True)
class HealthEvent:
  server_id: str
  kind: HealthEventKind
  status: ServerStatus
  healthy: bool
  retry_count: int
  error: Optional[str] = None
  timestamp: float = field(default_factory=time.time)


class HealthSupervisor:
  """
  Supervises one ToolServerHandle.

  Args:
    handle: The server to check
    backoff: Delay policy between failed checks
    events: Optional bounded queue that receives a HealthEvent per check and
      status change. When full, the oldest event is dropped.
  """

  def __init__(
    self,
    handle: ToolServerHandle,
    backoff: Optional[BackoffPolicy] = None,
    events: Optional[asyncio.Queue] = None,
  ):
    self.handle = handle
    self.backoff = backoff or BackoffPolicy()
    self.events = events
    self.check_runs = 0
    self._task: Optional[asyncio.Task] = None

  @property
  def server_id(self) -> str:
    return self.handle.id

  @property
  def is_running(self) -> bool:
    return self._task is not None and not self._task.done()

  def start(self):
    if self.handle.disabled or self.is_running:
      return
    self._task = asyncio.create_task(self._run(), name=f"health:{self.server_id}")
    logger.debug(f"Started health supervision of '{self.server_id}'")

  async def stop(self):
    task = self._task
    self._task = None
    if task is None:
      return
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    logger.debug(f"Stopped health supervision of '{self.server_id}'")

  async def check(self) -> bool:
    """
    Run one health check with the configured strategy.

    A server that is not connected is reconnected first. The result is
    recorded in the server's health metrics.
    """
    self.check_runs += 1
    health = self.handle.config.health_check
    started = time.monotonic()

    try:
      if not self.handle.is_connected:
        await self.handle.reconnect()
      await asyncio.wait_for(self._run_strategy(health.strategy), timeout=health.timeout)
    except asyncio.CancelledError:
      raise
    except (ToolServerError, asyncio.TimeoutError, OSError) as e:
      error = convert_error(e, self.server_id, "Health check")
      elapsed_ms = (time.monotonic() - started) * 1000
      self.handle.record_health(False, elapsed_ms, error.message)
      self.handle.mark_disconnected(error.message)
      logger.warning(f"Health check of '{self.server_id}' failed: {error.message}")
      self._publish(HealthEventKind.CHECK, healthy=False, error=error.message)
      return False

    elapsed_ms = (time.monotonic() - started) * 1000
    self.handle.record_health(True, elapsed_ms)
    logger.debug(f"Health check of '{self.server_id}' passed in {elapsed_ms:.1f}ms")
    self._publish(HealthEventKind.CHECK, healthy=True)
    return True

  async def _run_strategy(self, strategy: HealthCheckStrategy):
    if strategy == HealthCheckStrategy.PING:
      await self.handle.ping()
    elif strategy == HealthCheckStrategy.SPECIFIC_TOOL:
      check = self.handle.config.health_check.specific_tool
      await self.handle.invoke_tool(check.name, check.arguments)
    else:
      await self.handle.refresh_tools()

  async def _run(self):
    health = self.handle.config.health_check
    delay = health.interval

    while True:
      await asyncio.sleep(delay)
      previous_retries = self.handle.state.retry_count

      if await self.check():
        if previous_retries > 0:
          logger.info(f"Server '{self.server_id}' recovered after {previous_retries} retries")
          self.handle.reset_retries()
          self._publish(HealthEventKind.RECOVERED, healthy=True)
        delay = health.interval
        continue

      self.handle.record_retry()
      retry_count = self.handle.state.retry_count
      if retry_count >= health.max_retries:
        message = f"Server unreachable after {retry_count} retries, manual reconnect required"
        self.handle.mark_error(message)
        logger.error(f"Server '{self.server_id}': {message}")
        self._publish(HealthEventKind.GAVE_UP, healthy=False, error=message)
        return

      delay = self.backoff.delay(retry_count)
      logger.info(f"Retrying server '{self.server_id}' in {delay:.1f}s (attempt {retry_count}/{health.max_retries})")

  def _publish(self, kind: HealthEventKind, healthy: bool, error: Optional[str] = None):
    if self.events is None:
      return

    event = HealthEvent(
      server_id=self.server_id,
      kind=kind,
      status=self.handle.status,
      healthy=healthy,
      retry_count=self.handle.state.retry_count,
      error=error,
    )
    if self.events.full():
      self.events.get_nowait()
    self.events.put_nowait(event)
