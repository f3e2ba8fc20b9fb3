import asyncio
from contextlib import AsyncExitStack
from typing import Any, Awaitable, Callable, Dict, List, Optional

import anyio
import httpx
from mcp import ClientSession, types
from mcp.shared.exceptions import McpError

from .protocol import (
  CLIENT_INFO,
  CONNECTION_CLOSED,
  Tool,
  ToolCallResult,
  completion_reference,
  parse_completions,
  parse_tool_call_result,
  parse_tools,
)
from .transport import LogCallback, TransportChannel
from ..errors import ConnectionError, ProtocolError, TimeoutError, ToolServerError, convert_error
from ..logs import get_logger

logger = get_logger("transport")

# Messages buffered between the channel and the session
INBOUND_BUFFER = 64

# How long closing waits for the channel to release its process or socket
CLOSE_TIMEOUT_SECONDS = 5.0


class ServerConnection:
  """
  One `mcp.ClientSession` over one TransportChannel.

  The channel and the session are entered and left by a single owner task, so
  any task may call into the connection. Inbound messages pass through a pump
  that notices when the channel ends: every call still waiting then fails with
  ConnectionError and `on_close` is called once.

  Every call is bounded by an explicit timeout that covers sending the request
  and waiting for its response.
  """

  def __init__(
    self,
    server_id: str,
    channel: TransportChannel,
    on_close: Optional[Callable[[Optional[BaseException]], None]] = None,
    on_log: Optional[LogCallback] = None,
  ):
    self.server_id = server_id
    self.channel = channel
    self.on_close = on_close
    self.on_log = on_log
    self.server_info: Dict[str, Any] = {}
    self.session: Optional[ClientSession] = None
    self._task: Optional[asyncio.Task] = None
    self._ready: Optional[asyncio.Future] = None
    self._ended: Optional[asyncio.Future] = None
    self._stop: Optional[asyncio.Event] = None
    self._connected = False
    self._closing = False

  @property
  def is_alive(self) -> bool:
    return self.session is not None and self._ended is not None and not self._ended.done()

  async def connect(self, timeout: float) -> Dict[str, Any]:
    """
    Open the channel and perform the protocol handshake.

    :raises ConnectionError: if the channel cannot be opened or closes during the handshake
    :raises TimeoutError: if the handshake does not finish in time
    :raises ProtocolError: if the server rejects the handshake
    """
    loop = asyncio.get_running_loop()
    self._ready = loop.create_future()
    self._ended = loop.create_future()
    self._stop = asyncio.Event()
    self._task = asyncio.create_task(self._run(), name=f"connection:{self.server_id}")

    try:
      await asyncio.wait_for(asyncio.shield(self._ready), timeout=timeout)
    except asyncio.TimeoutError as e:
      await self.close()
      raise TimeoutError(self.server_id, "Handshake", timeout) from e
    except asyncio.CancelledError:
      await self.close()
      raise
    except Exception as e:
      await self.close()
      raise self._convert(e, "initialize") from e

    self._connected = True
    logger.debug(f"[{self.server_id}] Handshake complete: {self.server_info}")
    return self.server_info

  async def list_tools(self, timeout: float) -> List[Tool]:
    result = await self._call("tools/list", lambda session: session.list_tools(), timeout)
    return parse_tools(result.tools, self.server_id)

  async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]], timeout: float) -> ToolCallResult:
    result = await self._call("tools/call", lambda session: session.call_tool(name, arguments or {}), timeout)
    return parse_tool_call_result(result, self.server_id)

  async def ping(self, timeout: float):
    await self._call("ping", lambda session: session.send_ping(), timeout)

  async def complete(self, method_name: str, arg_name: str, value: str, timeout: float) -> List[str]:
    result = await self._call(
      "completion/complete",
      lambda session: session.complete(completion_reference(method_name), {"name": arg_name, "value": value}),
      timeout,
    )
    return parse_completions(result)

  async def close(self):
    self._closing = True
    task = self._task
    if task is None:
      return
    self._stop.set()
    if not self._ready.done():
      task.cancel()

    await asyncio.wait({task}, timeout=CLOSE_TIMEOUT_SECONDS)
    if not task.done():
      logger.warning(f"[{self.server_id}] Channel did not close in {CLOSE_TIMEOUT_SECONDS}s, cancelling")
      task.cancel()
      await asyncio.gather(task, return_exceptions=True)
    self._task = None

  async def _call(self, operation: str, request: Callable[[ClientSession], Awaitable[Any]], timeout: float) -> Any:
    session = self.session
    if session is None or not self.is_alive:
      raise ConnectionError(self.server_id, "not connected")
    return await self._race(operation, request(session), timeout)

  async def _race(self, operation: str, request: Awaitable[Any], timeout: Optional[float]) -> Any:
    """Await `request` until it answers, the connection ends or `timeout` passes."""
    call = asyncio.ensure_future(request)
    try:
      done, _ = await asyncio.wait({call, self._ended}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
      if not call.done():
        call.cancel()

    if call in done:
      try:
        return call.result()
      except Exception as e:
        raise self._convert(e, operation) from e
    if self._ended.done():
      raise ConnectionError(self.server_id, f"connection lost during {operation}", cause=self._ended.result())
    raise TimeoutError(self.server_id, operation, timeout)

  async def _run(self):
    error: Optional[BaseException] = None
    try:
      async with AsyncExitStack() as stack:
        read_stream, write_stream = await stack.enter_async_context(self.channel.open())
        inbound_writer, inbound = anyio.create_memory_object_stream(INBOUND_BUFFER)
        pump = asyncio.create_task(self._pump(read_stream, inbound_writer))
        stack.push_async_callback(self._stop_pump, pump)

        session = await stack.enter_async_context(
          ClientSession(inbound, write_stream, logging_callback=self._server_log, client_info=CLIENT_INFO)
        )
        result = await self._race("initialize", session.initialize(), None)
        self.server_info = result.serverInfo.model_dump(exclude_none=True)
        self.session = session
        self._ready.set_result(result)

        await self._stop.wait()
    except Exception as e:
      error = e
      logger.debug(f"[{self.server_id}] Connection ended: {e}")
    finally:
      self.session = None
      if not self._ready.done():
        if error is None:
          self._ready.cancel()
        else:
          self._ready.set_exception(error)
      self._lost(error)

  async def _pump(self, source, sink):
    error: Optional[BaseException] = None
    try:
      async with sink:
        async for item in source:
          if isinstance(item, httpx.HTTPError):
            error = item
            self._log(f"Transport error: {item}")
            break
          if isinstance(item, Exception):
            self._log(f"Ignoring non-protocol output: {item}")
            continue
          await sink.send(item)
    except (anyio.BrokenResourceError, anyio.ClosedResourceError) as e:
      logger.debug(f"[{self.server_id}] Inbound stream closed: {e}")
    finally:
      self._lost(error)

  @staticmethod
  async def _stop_pump(pump: asyncio.Task):
    pump.cancel()
    await asyncio.gather(pump, return_exceptions=True)

  def _lost(self, error: Optional[BaseException]):
    if self._ended.done():
      return
    self._ended.set_result(error)
    self._stop.set()
    if self._connected and not self._closing and self.on_close is not None:
      self.on_close(error)

  async def _server_log(self, params: types.LoggingMessageNotificationParams):
    self._log(f"{params.level}: {params.data}")

  def _log(self, message: str):
    logger.debug(f"[{self.server_id}] {message}")
    if self.on_log is not None:
      self.on_log(message)

  def _convert(self, error: BaseException, operation: str) -> ToolServerError:
    while isinstance(error, BaseExceptionGroup) and len(error.exceptions) == 1:
      error = error.exceptions[0]

    if isinstance(error, ToolServerError):
      return error
    if isinstance(error, McpError):
      if error.error.code == CONNECTION_CLOSED:
        return ConnectionError(self.server_id, error.error.message, cause=error)
      return ProtocolError(
        self.server_id,
        f"{operation} failed: {error.error.message}",
        {"method": operation, "code": error.error.code, "data": error.error.data},
        cause=error,
      )
    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code < 500:
      return ProtocolError(
        self.server_id, f"server rejected {operation} with {error.response.status_code}", cause=error
      )
    if isinstance(error, (httpx.HTTPError, anyio.BrokenResourceError, anyio.ClosedResourceError, anyio.EndOfStream)):
      return ConnectionError(self.server_id, str(error) or type(error).__name__, cause=error)
    if isinstance(error, RuntimeError):
      return ProtocolError(self.server_id, f"{operation} failed: {error}", {"method": operation}, cause=error)
    return convert_error(error, self.server_id, operation)
