"""
Model provider boundary.

A provider turns a system prompt, a chat history and a tool catalog into a
stream of fragments. The session engine consumes the stream to drive Turn
creation; how a provider talks to its model is its own business.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple, Union


@dataclass(frozen=True)
class TextFragment:
  text: str


@dataclass(frozen=True)
class UsageFragment:
  input_tokens: int = 0
  output_tokens: int = 0
  cache_read_tokens: Optional[int] = None
  cache_write_tokens: Optional[int] = None


@dataclass(frozen=True)
class ToolCallFragment:
  """
  A complete tool call. `name` is the function name from the tool catalog;
  `arguments` is a JSON string or an already decoded object.
  """

  name: str
  arguments: Union[str, Dict[str, Any], None] = None
  call_id: Optional[str] = None


StreamFragment = Union[TextFragment, UsageFragment, ToolCallFragment]


class ModelProvider(Protocol):
  def create_message(
    self, system_prompt: str, history: List[dict], tools: List[dict]
  ) -> AsyncIterator[StreamFragment]: ...


@dataclass(frozen=True)
class ModelPricing:
  """Prices in dollars per million tokens."""

  input: float = 0.0
  output: float = 0.0
  cache_read: float = 0.0
  cache_write: float = 0.0

  def cost(self, usage: UsageFragment) -> Tuple[float, float]:
    input_cost = (
      usage.input_tokens * self.input
      + (usage.cache_read_tokens or 0) * self.cache_read
      + (usage.cache_write_tokens or 0) * self.cache_write
    ) / 1_000_000
    output_cost = usage.output_tokens * self.output / 1_000_000
    return input_cost, output_cost


@dataclass
class CancellationToken:
  """Passed explicitly to streaming operations; once cancelled it stays cancelled."""

  _event: asyncio.Event = field(default_factory=asyncio.Event)
  reason: Optional[str] = None

  def cancel(self, reason: Optional[str] = None):
    if not self._event.is_set():
      self.reason = reason
      self._event.set()

  @property
  def cancelled(self) -> bool:
    return self._event.is_set()

  async def wait(self):
    await self._event.wait()
