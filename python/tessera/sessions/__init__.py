from .entities import (
  ContentPayload,
  Request,
  Response,
  Round,
  Session,
  ToolCallPayload,
  ToolResultPayload,
  Turn,
  TurnMetrics,
  TurnPayload,
  TurnStatus,
)
from .store import InMemorySessionStore, SessionStore
from .rounds import RoundManager, TurnRecorder
from .stream import (
  CancellationToken,
  ModelPricing,
  ModelProvider,
  StreamFragment,
  TextFragment,
  ToolCallFragment,
  UsageFragment,
)
from .messages import render_history, render_turns
from .coordinator import RequestStream, SessionCoordinator

__all__ = [
  "ContentPayload",
  "Request",
  "Response",
  "Round",
  "Session",
  "ToolCallPayload",
  "ToolResultPayload",
  "Turn",
  "TurnMetrics",
  "TurnPayload",
  "TurnStatus",
  "InMemorySessionStore",
  "SessionStore",
  "RoundManager",
  "TurnRecorder",
  "CancellationToken",
  "ModelPricing",
  "ModelProvider",
  "StreamFragment",
  "TextFragment",
  "ToolCallFragment",
  "UsageFragment",
  "render_history",
  "render_turns",
  "RequestStream",
  "SessionCoordinator",
]
