"""
Conversation entities.

A Session is an ordered list of Rounds. Each Round pairs the user's Request
with the Response produced for it, and a Response is an ordered list of Turns.
A Turn carries exactly one payload variant: streamed text, a tool call, or a
tool result.
"""

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def new_id() -> str:
  return str(uuid.uuid4())


class TurnStatus(Enum):
  STREAMING = "streaming"
  COMPLETED = "completed"
  ERROR = "error"

  @property
  def is_terminal(self) -> bool:
    return self != TurnStatus.STREAMING


@dataclass(frozen=True)
class ContentPayload:
  text: str = ""


@dataclass(frozen=True)
class ToolCallPayload:
  server: str
  name: str
  input: Dict[str, Any] = field(default_factory=dict)
  call_id: Optional[str] = None


@dataclass(frozen=True)
class ToolResultPayload:
  server: str
  name: str
  content: Any = None
  is_error: bool = False
  call_id: Optional[str] = None


TurnPayload = Union[ContentPayload, ToolCallPayload, ToolResultPayload]


@dataclass(frozen=True)
class TurnMetrics:
  input_tokens: int = 0
  output_tokens: int = 0
  cache_read_tokens: Optional[int] = None
  cache_write_tokens: Optional[int] = None
  input_cost: float = 0.0
  output_cost: float = 0.0

  @property
  def total_cost(self) -> float:
    return self.input_cost + self.output_cost


@dataclass(frozen=True)
class Turn:
  id: str
  response_id: str
  index: int
  payload: TurnPayload
  status: TurnStatus = TurnStatus.STREAMING
  stream_start_time: float = field(default_factory=time.time)
  stream_end_time: Optional[float] = None
  current_tokens: int = 0
  expected_tokens: Optional[int] = None
  metrics: TurnMetrics = field(default_factory=TurnMetrics)
  error: Optional[str] = None

  def evolve(self, **changes) -> "Turn":
    return replace(self, **changes)


@dataclass
class Request:
  id: str
  content: str
  created_at: float = field(default_factory=time.time)
  updated_at: float = field(default_factory=time.time)


@dataclass
class Response:
  id: str
  turns: List[Turn] = field(default_factory=list)
  created_at: float = field(default_factory=time.time)
  updated_at: float = field(default_factory=time.time)

  @property
  def next_turn_index(self) -> int:
    return self.turns[-1].index + 1 if self.turns else 0


@dataclass
class Round:
  id: str
  session_id: str
  index: int
  request: Request
  response: Response


@dataclass
class Session:
  id: str
  title: str = ""
  description: str = ""
  metadata: Dict[str, Any] = field(default_factory=dict)
  rounds: List[Round] = field(default_factory=list)
  created_at: float = field(default_factory=time.time)

  @property
  def last_round_index(self) -> Optional[int]:
    return self.rounds[-1].index if self.rounds else None
