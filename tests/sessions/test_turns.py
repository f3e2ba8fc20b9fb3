import pytest
import pytest_asyncio

from tessera.errors import InvalidTurnTransitionError, SessionError
from tessera.sessions import (
  ContentPayload,
  InMemorySessionStore,
  RoundManager,
  ToolCallPayload,
  TurnMetrics,
  TurnRecorder,
  TurnStatus,
)


@pytest_asyncio.fixture
async def recorder():
  store = InMemorySessionStore()
  session = await store.create_session()
  created = await RoundManager(store).create_round(session.id, "hello")
  return TurnRecorder(store, created.response.id)


class TestTurnRecorder:
  @pytest.mark.asyncio
  async def test_turns_are_indexed_in_order(self, recorder):
    first = await recorder.append(ContentPayload("Looking that up"))
    second = await recorder.append(ToolCallPayload("files", "read_file", {"path": "a"}, "call_1"), TurnStatus.COMPLETED)

    assert (first.index, second.index) == (0, 1)
    assert first.status == TurnStatus.STREAMING
    assert second.status == TurnStatus.COMPLETED
    assert second.stream_end_time is not None

  @pytest.mark.asyncio
  async def test_streaming_content_then_complete(self, recorder):
    turn = await recorder.append(ContentPayload(""), expected_tokens=40)
    turn = await recorder.update_content(turn.id, "Hel", current_tokens=1)
    turn = await recorder.update_content(turn.id, "Hello", current_tokens=2)
    turn = await recorder.record_usage(turn.id, TurnMetrics(input_tokens=10, output_tokens=3))
    turn = await recorder.complete(turn.id)

    assert turn.payload == ContentPayload("Hello")
    assert turn.expected_tokens == 40
    assert turn.current_tokens == 3
    assert turn.metrics.input_tokens == 10
    assert turn.status == TurnStatus.COMPLETED
    response = await recorder.store.find_response(recorder.response_id)
    assert response.turns == [turn]

  @pytest.mark.asyncio
  async def test_terminal_turns_cannot_change(self, recorder):
    turn = await recorder.append(ContentPayload("done"))
    await recorder.complete(turn.id)

    with pytest.raises(InvalidTurnTransitionError):
      await recorder.fail(turn.id, "too late")
    with pytest.raises(InvalidTurnTransitionError):
      await recorder.update_content(turn.id, "rewritten")
    with pytest.raises(InvalidTurnTransitionError):
      await recorder.complete(turn.id)

  @pytest.mark.asyncio
  async def test_failed_turn_keeps_error(self, recorder):
    turn = await recorder.append(ContentPayload("partial"))

    turn = await recorder.fail(turn.id, "stream interrupted")

    assert turn.status == TurnStatus.ERROR
    assert turn.error == "stream interrupted"
    assert turn.payload.text == "partial"

  @pytest.mark.asyncio
  async def test_content_update_requires_content_payload(self, recorder):
    turn = await recorder.append(ToolCallPayload("files", "read_file"))

    with pytest.raises(SessionError):
      await recorder.update_content(turn.id, "text")

  @pytest.mark.asyncio
  async def test_store_rejects_changes_to_terminal_turn(self, recorder):
    turn = await recorder.append(ContentPayload("done"), TurnStatus.COMPLETED)

    with pytest.raises(InvalidTurnTransitionError):
      await recorder.store.update_turn(turn.evolve(status=TurnStatus.ERROR))

  @pytest.mark.asyncio
  async def test_store_rejects_out_of_order_turn(self, recorder):
    with pytest.raises(SessionError):
      await recorder.store.create_turn(recorder.response_id, 5, ContentPayload("x"), TurnStatus.STREAMING)


def test_metrics_total_cost():
  assert TurnMetrics(input_cost=0.25, output_cost=0.5).total_cost == 0.75
