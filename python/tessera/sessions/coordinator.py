import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from .entities import (
  ContentPayload,
  Round,
  ToolCallPayload,
  ToolResultPayload,
  Turn,
  TurnMetrics,
  TurnStatus,
  new_id,
)
from .messages import render_history
from .rounds import RoundManager, TurnRecorder
from .store import SessionStore
from .stream import (
  CancellationToken,
  ModelPricing,
  ModelProvider,
  TextFragment,
  ToolCallFragment,
  UsageFragment,
)
from ..context import StandardTrimStrategy, TiktokenCounter, TokenCounter, TrimStrategy
from ..errors import ToolExecutionError, ToolServerError
from ..logs import get_logger
from ..servers.manager import ToolServerManager
from ..tools.server_tool import ServerToolAdapter, ToolCatalog

logger = get_logger("session")

DEFAULT_MAX_TOKENS = 100_000
DEFAULT_MAX_TOOL_ROUNDS = 10
DEFAULT_STREAM_QUEUE_SIZE = 256


class RequestStream:
  """
  Turn updates of one response, delivered through a bounded queue.

  Iterating yields a snapshot of a Turn every time it is created or changed.
  When the queue is full the oldest undelivered snapshot is dropped, so a slow
  reader never stalls the response. Cancelling the token stops delivery;
  committed turns are not affected.

  Example:
    stream = await coordinator.stream_request(session.id, "What changed in the last release?")
    async for turn in stream:
      print(turn.index, turn.status, turn.payload)
    turns = await stream.wait()
  """

  _END = object()

  def __init__(self, round_: Round, cancel: CancellationToken, queue_size: int = DEFAULT_STREAM_QUEUE_SIZE):
    self.round = round_
    self.cancel = cancel
    self.error: Optional[BaseException] = None
    self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
    self._task: Optional[asyncio.Task] = None

  @property
  def response_id(self) -> str:
    return self.round.response.id

  @property
  def round_index(self) -> int:
    return self.round.index

  @property
  def done(self) -> bool:
    return self._task is not None and self._task.done()

  def deliver(self, turn: Turn):
    if self.cancel.cancelled:
      return
    self._put(turn)

  def close(self):
    self._put(self._END)

  def _put(self, item: Any):
    if self._queue.full():
      self._queue.get_nowait()
    self._queue.put_nowait(item)

  def __aiter__(self) -> AsyncIterator[Turn]:
    return self._iterate()

  async def _iterate(self) -> AsyncIterator[Turn]:
    while not self.cancel.cancelled:
      getter = asyncio.ensure_future(self._queue.get())
      cancelled = asyncio.ensure_future(self.cancel.wait())
      try:
        await asyncio.wait({getter, cancelled}, return_when=asyncio.FIRST_COMPLETED)
      finally:
        cancelled.cancel()
        if not getter.done():
          getter.cancel()

      if not getter.done() or getter.cancelled():
        return
      item = getter.result()
      if item is self._END:
        return
      yield item

  async def wait(self) -> List[Turn]:
    """Wait for the response to finish and return its final turns."""
    return await self._task


@dataclass
class PendingCall:
  turn: Turn
  adapter: Optional[ServerToolAdapter]
  arguments: Dict[str, Any]
  error: Optional[str] = None


class SessionCoordinator:
  """
  Drives one response per user request.

  For every request a Round is created, then the provider is asked for a
  reply with the trimmed history and the tools of the connected servers.
  Streamed text, usage and tool calls become Turns; tool calls are executed
  through the ToolServerManager and their results recorded as Turns, after
  which the provider is asked again. This repeats until a pass produces no
  tool call or `max_tool_rounds` is reached.

  Args:
    store: Persistence boundary for sessions, rounds and turns
    manager: Tool servers whose tools are offered to the model
    provider: Model provider producing stream fragments
    system_prompt: System prompt passed to the provider
    max_tokens: Token budget of the history sent to the provider
    token_counter: Counts tokens of chat messages
    trim_strategy: Selects the history that fits `max_tokens`
    pricing: Optional prices used to fill in turn costs
    max_tool_rounds: Upper bound on provider passes that end in tool calls
  """

  def __init__(
    self,
    store: SessionStore,
    manager: ToolServerManager,
    provider: ModelProvider,
    system_prompt: str = "",
    max_tokens: int = DEFAULT_MAX_TOKENS,
    token_counter: Optional[TokenCounter] = None,
    trim_strategy: Optional[TrimStrategy] = None,
    pricing: Optional[ModelPricing] = None,
    max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
  ):
    self.store = store
    self.manager = manager
    self.provider = provider
    self.system_prompt = system_prompt
    self.max_tokens = max_tokens
    self.token_counter = token_counter or TiktokenCounter()
    self.trim_strategy = trim_strategy or StandardTrimStrategy()
    self.pricing = pricing
    self.max_tool_rounds = max_tool_rounds
    self.rounds = RoundManager(store)

  async def stream_request(
    self, session_id: str, content: str, cancel: Optional[CancellationToken] = None
  ) -> RequestStream:
    """
    Create the round for `content` and start producing its response.

    :raises SessionNotFoundError: if the session does not exist
    :raises RoundCreationError: if the round could not be committed
    """
    round_ = await self.rounds.create_round(session_id, content)
    stream = RequestStream(round_, cancel or CancellationToken())
    stream._task = asyncio.create_task(self._respond(session_id, stream), name=f"response:{stream.response_id}")
    return stream

  async def handle_request(self, session_id: str, content: str) -> List[Turn]:
    """Process a request without streaming and return the final turns."""
    stream = await self.stream_request(session_id, content)
    return await stream.wait()

  async def _respond(self, session_id: str, stream: RequestStream) -> List[Turn]:
    recorder = TurnRecorder(self.store, stream.response_id)
    try:
      for pass_index in range(self.max_tool_rounds + 1):
        history = render_history(await self.store.list_rounds(session_id))
        messages = self.trim_strategy.trim_to_fit(history, self.max_tokens, self.token_counter)
        catalog = ToolCatalog.from_manager(self.manager)

        calls = await self._stream_pass(stream, recorder, messages, catalog)
        if calls is None or not calls or stream.cancel.cancelled:
          break

        await self._run_tools(stream, recorder, calls)
        if stream.cancel.cancelled:
          break
        if pass_index == self.max_tool_rounds:
          logger.warning(f"Response {stream.response_id} stopped after {self.max_tool_rounds} tool rounds")
      return recorder.turns
    finally:
      stream.close()

  async def _stream_pass(
    self, stream: RequestStream, recorder: TurnRecorder, messages: List[dict], catalog: ToolCatalog
  ) -> Optional[List[PendingCall]]:
    """
    Consume one provider stream. Returns the tool calls it produced, or None
    if the provider failed.

    A content turn still streaming when this pass is left by an exception or
    cancellation is failed before the exception propagates, and the provider
    stream is always closed.
    """
    content_turn: Optional[Turn] = None
    text = ""
    usage: Optional[TurnMetrics] = None
    calls: List[PendingCall] = []

    fragments = self.provider.create_message(self.system_prompt, messages, await catalog.specs()).__aiter__()
    try:
      while True:
        if stream.cancel.cancelled:
          if content_turn is not None:
            stream.deliver(await recorder.fail(content_turn.id, "Request cancelled"))
          return calls

        try:
          fragment = await fragments.__anext__()
        except StopAsyncIteration:
          break
        except Exception as e:
          logger.error(f"Provider failed while streaming response {stream.response_id}: {e}")
          stream.error = e
          if content_turn is None:
            content_turn = await recorder.append(ContentPayload(text))
          if usage is not None:
            content_turn = await recorder.record_usage(content_turn.id, usage)
          stream.deliver(await recorder.fail(content_turn.id, str(e) or type(e).__name__))
          return None

        if isinstance(fragment, TextFragment):
          text += fragment.text
          current_tokens = self.token_counter([{"role": "assistant", "content": text}])
          if content_turn is None:
            content_turn = await recorder.append(ContentPayload(text))
          content_turn = await recorder.update_content(content_turn.id, text, current_tokens)
          stream.deliver(content_turn)
        elif isinstance(fragment, UsageFragment):
          usage = self._metrics(fragment)
          if content_turn is not None:
            content_turn = await recorder.record_usage(content_turn.id, usage)
            stream.deliver(content_turn)
        elif isinstance(fragment, ToolCallFragment):
          if content_turn is not None:
            stream.deliver(await recorder.complete(content_turn.id))
            content_turn, text = None, ""
          call = await self._record_call(recorder, catalog, fragment)
          stream.deliver(call.turn)
          calls.append(call)
        else:
          raise TypeError(f"Unknown stream fragment {type(fragment).__name__}")

      if content_turn is None and usage is not None:
        content_turn = await recorder.append(ContentPayload(""))
      if content_turn is not None:
        if usage is not None and content_turn.metrics != usage:
          content_turn = await recorder.record_usage(content_turn.id, usage)
        stream.deliver(await recorder.complete(content_turn.id))
      return calls
    except (Exception, asyncio.CancelledError) as e:
      if content_turn is not None:
        reason = "Request cancelled" if isinstance(e, asyncio.CancelledError) else str(e) or type(e).__name__
        await self._fail_open_turn(stream, recorder, content_turn.id, reason)
      raise
    finally:
      await self._close_fragments(fragments)

  async def _fail_open_turn(self, stream: RequestStream, recorder: TurnRecorder, turn_id: str, reason: str):
    if recorder.get(turn_id).status.is_terminal:
      return
    try:
      stream.deliver(await recorder.fail(turn_id, reason))
    except Exception as e:
      logger.error(f"Could not mark turn {turn_id} of response {stream.response_id} as failed: {e}")

  async def _close_fragments(self, fragments: AsyncIterator[Any]):
    aclose = getattr(fragments, "aclose", None)
    if aclose is None:
      return
    try:
      await aclose()
    except Exception as e:
      logger.warning(f"Closing the provider stream failed: {e}")

  async def _record_call(self, recorder: TurnRecorder, catalog: ToolCatalog, fragment: ToolCallFragment) -> PendingCall:
    error = None
    adapter = catalog.resolve(fragment.name) if fragment.name in catalog else None
    if adapter is None:
      error = f"Tool '{fragment.name}' is not available"

    arguments: Dict[str, Any] = {}
    if isinstance(fragment.arguments, dict):
      arguments = fragment.arguments
    elif fragment.arguments:
      try:
        decoded = json.loads(fragment.arguments)
      except json.JSONDecodeError as e:
        decoded = None
        error = error or f"Invalid JSON arguments for tool '{fragment.name}': {e}"
      if isinstance(decoded, dict):
        arguments = decoded
      elif decoded is not None:
        error = error or f"Arguments for tool '{fragment.name}' must be a JSON object"

    payload = ToolCallPayload(
      server=adapter.server_id if adapter else "",
      name=adapter.tool_name if adapter else fragment.name,
      input=arguments,
      call_id=fragment.call_id or f"call_{new_id()}",
    )
    turn = await recorder.append(payload, status=TurnStatus.COMPLETED)
    return PendingCall(turn, adapter, arguments, error)

  async def _run_tools(self, stream: RequestStream, recorder: TurnRecorder, calls: List[PendingCall]):
    for call in calls:
      call_payload: ToolCallPayload = call.turn.payload
      error = call.error
      content: Any = None

      if error is None:
        try:
          content = await call.adapter.call(call.arguments)
        except ToolExecutionError as e:
          error, content = e.message, e.content
        except ToolServerError as e:
          logger.warning(f"Tool call {call_payload.name} on '{call_payload.server}' failed: {e.message}")
          error, content = e.message, e.message

      if stream.cancel.cancelled:
        logger.debug(f"Discarding result of {call_payload.name}, response {stream.response_id} was cancelled")
        return

      result = ToolResultPayload(
        server=call_payload.server,
        name=call_payload.name,
        content=content if content is not None else error,
        is_error=error is not None,
        call_id=call_payload.call_id,
      )
      turn = await recorder.append(result)
      if error is None:
        turn = await recorder.complete(turn.id)
      else:
        turn = await recorder.fail(turn.id, error)
      stream.deliver(turn)

  def _metrics(self, usage: UsageFragment) -> TurnMetrics:
    input_cost, output_cost = self.pricing.cost(usage) if self.pricing else (0.0, 0.0)
    return TurnMetrics(
      input_tokens=usage.input_tokens,
      output_tokens=usage.output_tokens,
      cache_read_tokens=usage.cache_read_tokens,
      cache_write_tokens=usage.cache_write_tokens,
      input_cost=input_cost,
      output_cost=output_cost,
    )
