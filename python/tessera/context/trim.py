from typing import List, Protocol

from .tokens import TokenCounter
from ..logs import get_logger

logger = get_logger("context")


def last_user_index(messages: List[dict]) -> int:
  for i in range(len(messages) - 1, -1, -1):
    if messages[i].get("role") == "user":
      return i
  return -1


def trim_to_fit(messages: List[dict], max_tokens: int, token_counter: TokenCounter) -> List[dict]:
  """
  Select the most recent messages that fit in `max_tokens`.

  The last user message and everything after it (the active tail) are always
  kept, verbatim and in order. Earlier messages are added walking backward
  while the total stays within budget, stopping at the first one that does
  not fit. Messages are never split.

  If the tail alone is over budget only its last message is returned. Without
  any user message the tail is the last message.

  Args:
    messages: Chat messages, oldest first
    max_tokens: Token budget
    token_counter: Counts the tokens of a list of messages

  Returns:
    A new list; the input is not modified.
  """
  if not messages:
    return []

  if token_counter(messages) <= max_tokens:
    return list(messages)

  tail_start = last_user_index(messages)
  if tail_start == -1:
    tail_start = len(messages) - 1

  tail = messages[tail_start:]
  tail_tokens = token_counter(tail)
  if tail_tokens > max_tokens:
    logger.debug(f"Active tail needs {tail_tokens} tokens, over the budget of {max_tokens}; keeping one message")
    return [messages[-1]]

  # Counted as whole windows; counters need not be additive
  start = tail_start
  used = tail_tokens
  for i in range(tail_start - 1, -1, -1):
    window_tokens = token_counter(messages[i:])
    if window_tokens > max_tokens:
      break
    start, used = i, window_tokens

  logger.debug(f"Trimmed history from {len(messages)} to {len(messages) - start} messages ({used} tokens)")
  return list(messages[start:])


class TrimStrategy(Protocol):
  def trim_to_fit(self, messages: List[dict], max_tokens: int, token_counter: TokenCounter) -> List[dict]: ...


class StandardTrimStrategy:
  """Keeps the in-progress exchange and as much earlier history as fits, dropping the oldest first."""

  def trim_to_fit(self, messages: List[dict], max_tokens: int, token_counter: TokenCounter) -> List[dict]:
    return trim_to_fit(messages, max_tokens, token_counter)
