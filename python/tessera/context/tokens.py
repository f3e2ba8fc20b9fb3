import json
from typing import List, Optional, Protocol

import tiktoken

from ..logs import get_logger

logger = get_logger("context")

# Formatting overhead of one chat message (role, separators)
TOKENS_PER_MESSAGE = 4

CHARS_PER_TOKEN = 4


class TokenCounter(Protocol):
  def __call__(self, messages: List[dict]) -> int: ...


def message_text(message: dict) -> str:
  """All text of a chat message that is sent to the model: content plus tool call arguments."""
  parts = []
  content = message.get("content")
  if isinstance(content, str):
    parts.append(content)
  elif isinstance(content, list):
    for part in content:
      if isinstance(part, dict) and part.get("type") == "text":
        parts.append(str(part.get("text", "")))
  elif content is not None:
    parts.append(json.dumps(content))

  for tool_call in message.get("tool_calls") or []:
    function = tool_call.get("function") or {}
    parts.append(str(function.get("name", "")))
    parts.append(str(function.get("arguments", "")))
  return "".join(parts)


class CharacterCounter:
  """Rough estimate of 4 characters per token."""

  def __call__(self, messages: List[dict]) -> int:
    return sum(len(message_text(message)) // CHARS_PER_TOKEN for message in messages)


class TiktokenCounter:
  """
  Counts tokens with a tiktoken encoding plus a fixed per-message overhead.

  Falls back to the character estimate when the encoding cannot be loaded,
  e.g. without network access to fetch its data.
  """

  def __init__(self, encoding_name: str = "cl100k_base"):
    self.encoding_name = encoding_name
    self._encoding: Optional[tiktoken.Encoding]
    try:
      self._encoding = tiktoken.get_encoding(encoding_name)
    except Exception as e:
      self._encoding = None
      logger.warning(f"Failed to load tiktoken encoding '{encoding_name}', token counting may be inaccurate: {e}")
    self._fallback = CharacterCounter()

  @property
  def accurate(self) -> bool:
    return self._encoding is not None

  def __call__(self, messages: List[dict]) -> int:
    if self._encoding is None:
      return self._fallback(messages)

    total_tokens = 0
    for message in messages:
      total_tokens += TOKENS_PER_MESSAGE
      total_tokens += len(self._encoding.encode(message_text(message), disallowed_special=()))
    return total_tokens
