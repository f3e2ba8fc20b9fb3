import asyncio
import copy
import time
from typing import Any, Dict, List, Optional, Protocol

from .entities import Request, Response, Round, Session, Turn, TurnPayload, TurnStatus, new_id
from ..errors import InvalidTurnTransitionError, RoundCreationError, SessionError, SessionNotFoundError
from ..logs import get_logger

logger = get_logger("session")


class SessionStore(Protocol):
  """
  Persistence boundary for conversation entities.

  `create_round` must be atomic: the Request, the empty Response and the Round
  are either all committed or none of them are.
  """

  async def create_session(
    self, title: str = "", description: str = "", metadata: Optional[Dict[str, Any]] = None
  ) -> Session: ...

  async def find_session(self, session_id: str) -> Optional[Session]: ...

  async def last_round_index(self, session_id: str) -> Optional[int]: ...

  async def create_round(self, session_id: str, index: int, content: str) -> Round: ...

  async def list_rounds(self, session_id: str) -> List[Round]: ...

  async def create_turn(self, response_id: str, index: int, payload: TurnPayload, status: TurnStatus) -> Turn: ...

  async def update_turn(self, turn: Turn) -> Turn: ...


class InMemorySessionStore:
  """
  SessionStore that keeps everything in process memory.

  Readers receive copies, so nothing outside the store can change committed
  entities.
  """

  def __init__(self):
    self.sessions: Dict[str, Session] = {}
    self.responses: Dict[str, Response] = {}
    self.lock = asyncio.Lock()
    self.metrics = {
      "sessions_created": 0,
      "rounds_created": 0,
      "turns_created": 0,
      "turns_updated": 0,
    }

  async def create_session(
    self, title: str = "", description: str = "", metadata: Optional[Dict[str, Any]] = None
  ) -> Session:
    session = Session(id=new_id(), title=title, description=description, metadata=dict(metadata or {}))
    async with self.lock:
      self.sessions[session.id] = session
      self.metrics["sessions_created"] += 1
    logger.debug(f"Created session {session.id}")
    return copy.deepcopy(session)

  async def find_session(self, session_id: str) -> Optional[Session]:
    session = self.sessions.get(session_id)
    return copy.deepcopy(session) if session is not None else None

  async def last_round_index(self, session_id: str) -> Optional[int]:
    return self._require_session(session_id).last_round_index

  async def list_rounds(self, session_id: str) -> List[Round]:
    return copy.deepcopy(self._require_session(session_id).rounds)

  async def create_round(self, session_id: str, index: int, content: str) -> Round:
    async with self.lock:
      session = self._require_session(session_id)
      self._validate_round(session, index, content)

      now = time.time()
      request = Request(id=new_id(), content=content, created_at=now, updated_at=now)
      response = Response(id=new_id(), created_at=now, updated_at=now)
      created = Round(id=new_id(), session_id=session_id, index=index, request=request, response=response)

      # Nothing is visible until both writes below succeed
      self._commit_round(session, created)
      self.metrics["rounds_created"] += 1

    logger.debug(f"Created round {index} of session {session_id}")
    return copy.deepcopy(created)

  async def create_turn(self, response_id: str, index: int, payload: TurnPayload, status: TurnStatus) -> Turn:
    async with self.lock:
      response = self._require_response(response_id)
      if index != response.next_turn_index:
        raise SessionError(
          f"Turn index {index} is out of order for response '{response_id}', expected {response.next_turn_index}"
        )

      turn = Turn(id=new_id(), response_id=response_id, index=index, payload=payload, status=status)
      response.turns.append(turn)
      response.updated_at = time.time()
      self.metrics["turns_created"] += 1
    return turn

  async def update_turn(self, turn: Turn) -> Turn:
    async with self.lock:
      response = self._require_response(turn.response_id)
      for position, stored in enumerate(response.turns):
        if stored.id != turn.id:
          continue
        if stored.status.is_terminal and stored != turn:
          raise InvalidTurnTransitionError(turn.id, stored.status.value, turn.status.value)
        if stored.index != turn.index:
          raise SessionError(f"Turn '{turn.id}' cannot change its index")
        response.turns[position] = turn
        response.updated_at = time.time()
        self.metrics["turns_updated"] += 1
        return turn
    raise SessionError(f"Turn '{turn.id}' not found in response '{turn.response_id}'")

  async def find_response(self, response_id: str) -> Optional[Response]:
    response = self.responses.get(response_id)
    return copy.deepcopy(response) if response is not None else None

  def _require_session(self, session_id: str) -> Session:
    session = self.sessions.get(session_id)
    if session is None:
      raise SessionNotFoundError(session_id)
    return session

  def _require_response(self, response_id: str) -> Response:
    response = self.responses.get(response_id)
    if response is None:
      raise SessionError(f"Response '{response_id}' not found")
    return response

  def _validate_round(self, session: Session, index: int, content: str):
    expected = 0 if session.last_round_index is None else session.last_round_index + 1
    if index != expected:
      raise RoundCreationError(session.id, f"round index {index} is not the next index {expected}")
    if not isinstance(content, str):
      raise RoundCreationError(session.id, f"request content must be a string, got {type(content).__name__}")

  def _commit_round(self, session: Session, created: Round):
    self.responses[created.response.id] = created.response
    session.rounds.append(created)
