import json
from typing import List, Optional

from .entities import ContentPayload, Round, ToolCallPayload, ToolResultPayload, Turn
from ..tools.server_tool import content_text, function_name


def tool_call_id(turn: Turn) -> str:
  call_id = getattr(turn.payload, "call_id", None)
  return call_id or f"call_{turn.id}"


def render_turns(turns: List[Turn]) -> List[dict]:
  """
  Render the turns of one response as chat messages.

  Text and the tool calls that follow it in the same pass share one assistant
  message. Tool results become `tool` messages referencing their call.
  """
  messages: List[dict] = []
  current: Optional[dict] = None
  answered = {turn.payload.call_id for turn in turns if isinstance(turn.payload, ToolResultPayload)}

  for turn in turns:
    payload = turn.payload
    if isinstance(payload, ContentPayload):
      if not payload.text:
        continue
      if current is not None and not current.get("tool_calls"):
        current["content"] += payload.text
      else:
        current = {"role": "assistant", "content": payload.text}
        messages.append(current)
    elif isinstance(payload, ToolCallPayload):
      # A call without a result (cancelled or interrupted) would be rejected by providers
      if tool_call_id(turn) not in answered:
        continue
      if current is None:
        current = {"role": "assistant", "content": ""}
        messages.append(current)
      current.setdefault("tool_calls", []).append(
        {
          "id": tool_call_id(turn),
          "type": "function",
          "function": {"name": function_name(payload.server, payload.name), "arguments": json.dumps(payload.input)},
        }
      )
    elif isinstance(payload, ToolResultPayload):
      messages.append({"role": "tool", "tool_call_id": payload.call_id, "content": content_text(payload.content)})
      current = None
    else:
      raise TypeError(f"Unknown turn payload {type(payload).__name__}")

  return messages


def render_history(rounds: List[Round]) -> List[dict]:
  """Chat messages for a list of rounds, oldest first."""
  messages: List[dict] = []
  for round_ in rounds:
    messages.append({"role": "user", "content": round_.request.content})
    messages.extend(render_turns(round_.response.turns))
  return messages
