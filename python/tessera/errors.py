"""
Exception classes for tool servers and conversation sessions.

Tool server failures are normalized into a small taxonomy so callers can
decide what to do without inspecting transport details:

- ConnectionError: the server is unreachable or the channel was lost. Retryable.
- TimeoutError: an operation exceeded its deadline. Retryable.
- ProtocolError: a malformed or unexpected message. Not retried.
- ToolExecutionError: the tool ran and reported `isError`. Not retried, the
  content is surfaced into the conversation.
- ConfigurationError: an invalid server configuration. Fatal for that server only.

Every error carries the id of the server it belongs to and a `details` dict
that is included in structured log output via `to_dict()`.
"""

import asyncio
import builtins
from typing import Any, Dict, List, Optional


class ToolServerError(Exception):
  """
  Base class for all tool server errors.

  Attributes:
    server_id: Identifier of the server the error belongs to, if any
    details: Additional context about the failed operation
    cause: The underlying exception, if any
    retryable: Whether the health supervisor may retry after this error
  """

  code = "UNKNOWN_ERROR"
  retryable = False

  def __init__(
    self,
    message: str,
    server_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    cause: Optional[BaseException] = None,
  ):
    self.message = message
    self.server_id = server_id
    self.details = details or {}
    self.cause = cause
    super().__init__(message)

  def to_dict(self) -> Dict[str, Any]:
    """Structured representation for logging and serialization."""
    return {
      "name": type(self).__name__,
      "code": self.code,
      "message": self.message,
      "server_id": self.server_id,
      "details": self.details,
      "cause": str(self.cause) if self.cause is not None else None,
    }


class ConnectionError(ToolServerError, builtins.ConnectionError):
  """Raised when a tool server cannot be reached or its channel is lost."""

  code = "CONNECTION_FAILED"
  retryable = True

  def __init__(
    self,
    server_id: Optional[str],
    reason: str,
    details: Optional[Dict[str, Any]] = None,
    cause: Optional[BaseException] = None,
  ):
    label = f"server '{server_id}'" if server_id else "tool server"
    super().__init__(f"Connection to {label} failed: {reason}", server_id, details, cause)
    self.reason = reason


class TimeoutError(ToolServerError, asyncio.TimeoutError):
  """
  Raised when a tool server operation exceeds its deadline.

  Example:
    try:
      await handle.invoke_tool("search", {"query": "docs"})
    except TimeoutError as e:
      print(f"{e.operation} took longer than {e.timeout}s")
  """

  code = "OPERATION_TIMEOUT"
  retryable = True

  def __init__(
    self,
    server_id: Optional[str],
    operation: str,
    timeout: float,
    details: Optional[Dict[str, Any]] = None,
  ):
    self.operation = operation
    self.timeout = timeout
    super().__init__(self._build_message(server_id, operation, timeout, details), server_id, details)

  @staticmethod
  def _build_message(server_id, operation, timeout, details) -> str:
    parts = [f"{operation} timed out after {timeout}s"]
    if server_id:
      parts[0] += f" on server '{server_id}'"
    parts[0] += "."

    if details:
      context_parts = [f"{k}: {v}" for k, v in details.items() if v is not None]
      if context_parts:
        parts.append(f"Context: {', '.join(context_parts)}.")

    parts.append("Consider increasing the timeout or checking that the server is responsive.")
    return " ".join(parts)


class ProtocolError(ToolServerError):
  """Raised when a server sends a malformed or unexpected message."""

  code = "PROTOCOL_ERROR"

  def __init__(
    self,
    server_id: Optional[str],
    reason: str,
    details: Optional[Dict[str, Any]] = None,
    cause: Optional[BaseException] = None,
  ):
    label = f"server '{server_id}'" if server_id else "tool server"
    super().__init__(f"Protocol error from {label}: {reason}", server_id, details, cause)
    self.reason = reason


class ToolExecutionError(ToolServerError):
  """
  Raised when a tool ran but reported a failure (`isError: true`).

  The tool's own output is kept in `content` so it can be recorded in the
  conversation instead of being treated as a system fault.
  """

  code = "TOOL_RESPONSE_ERROR"

  def __init__(self, server_id: str, tool_name: str, content: Any, details: Optional[Dict[str, Any]] = None):
    self.tool_name = tool_name
    self.content = content
    super().__init__(
      f"Tool '{tool_name}' on server '{server_id}' reported an error: {error_text(content)}",
      server_id,
      {**(details or {}), "tool_name": tool_name},
    )


class ConfigurationError(ToolServerError):
  """Raised when a server configuration is invalid."""

  code = "INVALID_CONFIGURATION"

  def __init__(self, server_id: Optional[str], reason: str, details: Optional[Dict[str, Any]] = None):
    label = f"server '{server_id}'" if server_id else "server"
    super().__init__(f"Invalid configuration for {label}: {reason}", server_id, details)
    self.reason = reason


class ServerNotFoundError(ToolServerError):
  code = "SERVER_NOT_FOUND"

  def __init__(self, server_id: str):
    super().__init__(f"Server '{server_id}' not found", server_id)


class ServerAlreadyExistsError(ToolServerError):
  code = "SERVER_ALREADY_EXISTS"

  def __init__(self, server_id: str):
    super().__init__(f"Server '{server_id}' already exists", server_id)


class ServerDisabledError(ToolServerError):
  code = "SERVER_DISABLED"

  def __init__(self, server_id: str):
    super().__init__(f"Server '{server_id}' is disabled", server_id)


class ToolNotFoundError(ToolServerError):
  code = "TOOL_NOT_FOUND"

  def __init__(self, server_id: Optional[str], tool_name: str):
    self.tool_name = tool_name
    location = f" on server '{server_id}'" if server_id else ""
    super().__init__(f"Tool '{tool_name}' not found{location}", server_id, {"tool_name": tool_name})


class CleanupError(ToolServerError):
  """
  Raised by ToolServerManager.cleanup() after every server was given a chance
  to stop. `failures` maps each server id to the exception it raised.
  """

  code = "SERVER_STOP_FAILED"

  def __init__(self, failures: Dict[str, BaseException]):
    self.failures = failures
    summary = ", ".join(f"{server_id}: {error}" for server_id, error in failures.items())
    super().__init__(f"Failed to stop {len(failures)} server(s): {summary}", details={"servers": list(failures)})


def error_text(content: Any) -> str:
  """Extract readable text from a tool result payload."""
  if isinstance(content, str):
    return content
  if isinstance(content, list):
    texts: List[str] = []
    for part in content:
      if isinstance(part, dict) and part.get("type") == "text":
        texts.append(str(part.get("text", "")))
    if texts:
      return "\n".join(texts)
  if content is None:
    return "Unknown error from tool"
  return str(content)


def convert_error(error: BaseException, server_id: Optional[str] = None, operation: str = "operation") -> ToolServerError:
  """
  Normalize an arbitrary exception into the tool server taxonomy.

  Errors that already belong to the taxonomy are returned unchanged.
  """
  if isinstance(error, ToolServerError):
    return error
  if isinstance(error, asyncio.TimeoutError):
    return TimeoutError(server_id, operation, timeout=0.0)
  if isinstance(error, (builtins.ConnectionError, EOFError, BrokenPipeError, OSError)):
    return ConnectionError(server_id, str(error) or type(error).__name__, cause=error)
  if isinstance(error, (ValueError, KeyError, TypeError)):
    return ProtocolError(server_id, str(error) or type(error).__name__, cause=error)
  return ToolServerError(str(error) or type(error).__name__, server_id, cause=error)


class SessionError(Exception):
  """Base class for conversation session errors."""


class SessionNotFoundError(SessionError):
  def __init__(self, session_id: str):
    self.session_id = session_id
    super().__init__(f"Session '{session_id}' not found")


class RoundCreationError(SessionError):
  """Raised when a round could not be committed; nothing was persisted."""

  def __init__(self, session_id: str, reason: str, cause: Optional[BaseException] = None):
    self.session_id = session_id
    self.cause = cause
    super().__init__(f"Failed to create round for session '{session_id}': {reason}")


class InvalidTurnTransitionError(SessionError):
  """Raised when a turn status change would leave a terminal state or skip `streaming`."""

  def __init__(self, turn_id: str, current: str, requested: str):
    self.turn_id = turn_id
    self.current = current
    self.requested = requested
    super().__init__(f"Turn '{turn_id}' cannot transition from {current} to {requested}")
