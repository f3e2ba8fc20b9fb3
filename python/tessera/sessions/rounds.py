import asyncio
import time
from collections import Counter
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from .entities import ContentPayload, Round, Turn, TurnMetrics, TurnPayload, TurnStatus
from .store import SessionStore
from ..errors import InvalidTurnTransitionError, RoundCreationError, SessionError
from ..logs import get_logger

logger = get_logger("session")


class RoundManager:
  """
  Creates rounds with gap-free, per-session sequential indices.

  Index assignment for one session is serialized by a session-scoped lock;
  different sessions do not block each other. A session's lock is dropped
  once no request holds or waits for it.
  """

  def __init__(self, store: SessionStore):
    self.store = store
    self._locks: Dict[str, asyncio.Lock] = {}
    self._users: Counter = Counter()

  async def create_round(self, session_id: str, content: str) -> Round:
    """
    Create the next round of a session with its Request and an empty Response.

    :raises SessionNotFoundError: if the session does not exist
    :raises RoundCreationError: if the round could not be committed
    """
    async with self._session_lock(session_id):
      last_index = await self.store.last_round_index(session_id)
      index = 0 if last_index is None else last_index + 1
      try:
        created = await self.store.create_round(session_id, index, content)
      except SessionError:
        raise
      except Exception as e:
        raise RoundCreationError(session_id, str(e) or type(e).__name__, cause=e) from e

    logger.info(f"Session {session_id}: round {index} created")
    return created

  @asynccontextmanager
  async def _session_lock(self, session_id: str):
    lock = self._locks.get(session_id)
    if lock is None:
      lock = self._locks[session_id] = asyncio.Lock()
    self._users[session_id] += 1
    try:
      async with lock:
        yield
    finally:
      self._users[session_id] -= 1
      if self._users[session_id] == 0:
        del self._users[session_id]
        del self._locks[session_id]


class TurnRecorder:
  """
  Appends and updates the Turns of one Response.

  Turn indices are assigned in call order starting at `start_index`. Status
  changes are one-way: streaming -> completed or streaming -> error.
  """

  def __init__(self, store: SessionStore, response_id: str, start_index: int = 0):
    self.store = store
    self.response_id = response_id
    self._next_index = start_index
    self._turns: Dict[str, Turn] = {}
    self._order: List[str] = []

  @property
  def turns(self) -> List[Turn]:
    return [self._turns[turn_id] for turn_id in self._order]

  def get(self, turn_id: str) -> Turn:
    return self._turns[turn_id]

  async def append(
    self, payload: TurnPayload, status: TurnStatus = TurnStatus.STREAMING, expected_tokens: Optional[int] = None
  ) -> Turn:
    turn = await self.store.create_turn(self.response_id, self._next_index, payload, TurnStatus.STREAMING)
    self._next_index += 1
    if expected_tokens is not None:
      turn = await self._save(turn.evolve(expected_tokens=expected_tokens))
    else:
      self._remember(turn)

    if status == TurnStatus.COMPLETED:
      turn = await self.complete(turn.id)
    elif status == TurnStatus.ERROR:
      turn = await self.fail(turn.id, "created in error state")
    return turn

  async def update_content(self, turn_id: str, text: str, current_tokens: Optional[int] = None) -> Turn:
    turn = self._require_streaming(turn_id, TurnStatus.STREAMING)
    if not isinstance(turn.payload, ContentPayload):
      raise SessionError(f"Turn '{turn_id}' does not carry content")
    changes = {"payload": ContentPayload(text)}
    if current_tokens is not None:
      changes["current_tokens"] = current_tokens
    return await self._save(turn.evolve(**changes))

  async def record_usage(self, turn_id: str, metrics: TurnMetrics) -> Turn:
    turn = self._require_streaming(turn_id, TurnStatus.STREAMING)
    return await self._save(turn.evolve(metrics=metrics, current_tokens=max(turn.current_tokens, metrics.output_tokens)))

  async def complete(self, turn_id: str) -> Turn:
    turn = self._require_streaming(turn_id, TurnStatus.COMPLETED)
    return await self._save(turn.evolve(status=TurnStatus.COMPLETED, stream_end_time=time.time()))

  async def fail(self, turn_id: str, error: str) -> Turn:
    turn = self._require_streaming(turn_id, TurnStatus.ERROR)
    return await self._save(turn.evolve(status=TurnStatus.ERROR, stream_end_time=time.time(), error=error))

  def _require_streaming(self, turn_id: str, requested: TurnStatus) -> Turn:
    turn = self._turns.get(turn_id)
    if turn is None:
      raise SessionError(f"Turn '{turn_id}' does not belong to response '{self.response_id}'")
    if turn.status.is_terminal:
      raise InvalidTurnTransitionError(turn_id, turn.status.value, requested.value)
    return turn

  def _remember(self, turn: Turn):
    if turn.id not in self._turns:
      self._order.append(turn.id)
    self._turns[turn.id] = turn

  async def _save(self, turn: Turn) -> Turn:
    saved = await self.store.update_turn(turn)
    self._remember(saved)
    return saved
