import copy

from tessera.context import CharacterCounter, StandardTrimStrategy, trim_to_fit
from tessera.context.trim import last_user_index


def message(role: str, tokens: int, label: str = "") -> dict:
  # CharacterCounter counts 4 characters per token
  text = (label + "x" * (tokens * 4))[: tokens * 4]
  return {"role": role, "content": text}


def conversation(count: int, tokens: int = 10) -> list:
  return [message("user" if i % 2 == 0 else "assistant", tokens, f"m{i}:") for i in range(count)]


count_tokens = CharacterCounter()


class TestTrimToFit:
  def test_long_history_keeps_active_tail_and_recent_messages(self):
    messages = conversation(41) + [message("assistant", 10, "final:")]

    trimmed = trim_to_fit(messages, 300, count_tokens)

    assert len(trimmed) < 41
    assert count_tokens(trimmed) <= 300
    assert trimmed[-2:] == messages[-2:]
    assert trimmed[-2]["role"] == "user"
    # Contiguous suffix of the input
    assert trimmed == messages[len(messages) - len(trimmed):]
    assert len(trimmed) == 30

  def test_short_history_is_unchanged(self):
    messages = conversation(3)

    trimmed = trim_to_fit(messages, 300, count_tokens)

    assert trimmed == messages
    assert trimmed is not messages

  def test_tiny_budget_returns_at_most_one_message(self):
    messages = conversation(20, tokens=30)

    trimmed = trim_to_fit(messages, 20, count_tokens)

    assert len(trimmed) <= 1
    assert trimmed == [messages[-1]]

  def test_tiny_budget_with_small_last_message(self):
    messages = conversation(19, tokens=30) + [message("assistant", 5)]

    trimmed = trim_to_fit(messages, 20, count_tokens)

    assert trimmed == [messages[-1]]
    assert count_tokens(trimmed) <= 20

  def test_stops_at_first_message_that_does_not_fit(self):
    messages = [
      message("user", 5, "a"),
      message("assistant", 50, "b"),
      message("user", 5, "c"),
      message("assistant", 5, "d"),
      message("user", 10, "e"),
    ]

    trimmed = trim_to_fit(messages, 30, count_tokens)

    assert trimmed == messages[2:]

  def test_without_user_message_tail_is_last_message(self):
    messages = [message("assistant", 10, str(i)) for i in range(10)]

    trimmed = trim_to_fit(messages, 35, count_tokens)

    assert trimmed == messages[-3:]

  def test_is_idempotent(self):
    messages = conversation(41) + [message("assistant", 10)]

    once = trim_to_fit(messages, 300, count_tokens)

    assert trim_to_fit(once, 300, count_tokens) == once

  def test_input_is_not_modified(self):
    messages = conversation(30)
    original = copy.deepcopy(messages)

    trim_to_fit(messages, 50, count_tokens)

    assert messages == original

  def test_empty_history(self):
    assert trim_to_fit([], 100, count_tokens) == []

  def test_strategy_delegates(self):
    messages = conversation(41)

    assert StandardTrimStrategy().trim_to_fit(messages, 300, count_tokens) == trim_to_fit(messages, 300, count_tokens)

  def test_counts_whole_windows_with_request_overhead(self):
    def with_overhead(messages):
      return 20 + 10 * len(messages)

    messages = [message("user" if i % 2 == 0 else "assistant", 1, f"m{i}:") for i in range(6)]

    trimmed = trim_to_fit(messages, 60, with_overhead)

    assert trimmed == messages[2:]
    assert with_overhead(trimmed) <= 60


def test_last_user_index():
  assert last_user_index([{"role": "user"}, {"role": "assistant"}, {"role": "user"}, {"role": "tool"}]) == 2
  assert last_user_index([{"role": "assistant"}]) == -1
