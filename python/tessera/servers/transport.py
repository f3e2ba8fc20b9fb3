"""
Transport channels to tool servers.

A channel opens the connection to one server and hands a pair of message
streams to `mcp.ClientSession`, which does the framing, the handshake and the
request/response correlation on top of them. Retries and timeouts of
individual requests live in the connection and the handle.

Contract:
  open()  - async context manager yielding (read_stream, write_stream).
            Raises ConnectionError when the server cannot be reached.
            Leaving the context releases the process or socket.
"""

import asyncio
import os
import shutil
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, BinaryIO, Callable, Dict, List, Optional, Protocol, Tuple
from urllib.parse import urlparse

import anyio
import httpx
from anyio.abc import ByteStream
from anyio.streams.text import TextReceiveStream
from mcp import StdioServerParameters, types
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamable_http_client
from mcp.shared.message import SessionMessage

from .config import ServerConfig
from ..errors import ConnectionError
from ..logs import get_logger

logger = get_logger("transport")

# Largest single stderr line forwarded to the server log
STREAM_LIMIT = 16 * 1024 * 1024

LogCallback = Callable[[str], None]
MessageStreams = Tuple[Any, Any]


class TransportChannel(Protocol):
  server_id: str

  def open(self) -> AsyncContextManager[MessageStreams]: ...


class Channel:
  def __init__(self, server_id: str, connect_timeout: float, on_log: Optional[LogCallback] = None):
    self.server_id = server_id
    self.connect_timeout = connect_timeout
    self.on_log = on_log

  def _log(self, message: str):
    logger.debug(f"[{self.server_id}] {message}")
    if self.on_log is not None:
      self.on_log(message)


class SubprocessChannel(Channel):
  """Runs a local process with `mcp.client.stdio`. Stderr lines go to the server log."""

  def __init__(
    self,
    server_id: str,
    command: str,
    args: List[str],
    env: Dict[str, str],
    connect_timeout: float,
    on_log: Optional[LogCallback] = None,
  ):
    super().__init__(server_id, connect_timeout, on_log)
    self.command = command
    self.args = list(args)
    self.env = dict(env)

  def _command_line(self) -> List[str]:
    return [self.command, *self.args]

  @asynccontextmanager
  async def open(self) -> AsyncIterator[MessageStreams]:
    command_line = self._command_line()
    executable = shutil.which(command_line[0])
    if executable is None:
      raise ConnectionError(self.server_id, f"command not found: {command_line[0]}")

    parameters = StdioServerParameters(command=executable, args=command_line[1:], env=self.env or None)
    read_fd, write_fd = os.pipe()
    errlog = os.fdopen(write_fd, "w")
    stderr = os.fdopen(read_fd, "rb", 0)

    async with AsyncExitStack() as stack:
      stack.callback(stderr.close)
      stack.callback(errlog.close)
      forwarder = asyncio.create_task(self._forward_stderr(stderr))
      stack.push_async_callback(self._stop_forwarding, forwarder)

      try:
        streams = await stack.enter_async_context(stdio_client(parameters, errlog=errlog))
      except OSError as e:
        raise ConnectionError(self.server_id, str(e) or type(e).__name__, cause=e) from e

      # The child holds its own copy of the write end
      errlog.close()
      self._log(f"Started process {command_line[0]}")
      yield streams

    self._log("Process stopped")

  async def _forward_stderr(self, stderr: BinaryIO):
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STREAM_LIMIT)
    pipe, _ = await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), stderr)
    try:
      while True:
        try:
          line = await reader.readline()
        except (asyncio.LimitOverrunError, ValueError) as e:
          self._log(f"Dropping oversized stderr output: {e}")
          return
        if not line:
          return
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
          self._log(f"stderr: {text}")
    finally:
      pipe.close()

  @staticmethod
  async def _stop_forwarding(forwarder: asyncio.Task):
    forwarder.cancel()
    await asyncio.gather(forwarder, return_exceptions=True)


class ContainerChannel(SubprocessChannel):
  """Runs a server image with `docker run -i --rm` and speaks the protocol on its stdio."""

  def __init__(
    self,
    server_id: str,
    image: str,
    args: List[str],
    env: Dict[str, str],
    connect_timeout: float,
    on_log: Optional[LogCallback] = None,
    docker: str = "docker",
  ):
    super().__init__(server_id, docker, args, {}, connect_timeout, on_log)
    self.image = image
    self.container_env = dict(env)

  def _command_line(self) -> List[str]:
    env_flags = []
    for key, value in self.container_env.items():
      env_flags.extend(["-e", f"{key}={value}"])
    return [self.command, "run", "-i", "--rm", *env_flags, self.image, *self.args]


class TcpChannel(Channel):
  """
  Newline-delimited JSON-RPC over a TCP connection, read and written the same
  way `mcp.client.stdio` treats a process's stdio.
  """

  def __init__(self, server_id: str, host: str, port: int, connect_timeout: float, on_log: Optional[LogCallback] = None):
    super().__init__(server_id, connect_timeout, on_log)
    self.host = host
    self.port = port

  @asynccontextmanager
  async def open(self) -> AsyncIterator[MessageStreams]:
    try:
      with anyio.fail_after(self.connect_timeout):
        stream = await anyio.connect_tcp(self.host, self.port)
    except OSError as e:
      raise ConnectionError(self.server_id, str(e) or type(e).__name__, cause=e) from e
    self._log(f"Connected to {self.host}:{self.port}")

    read_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_reader = anyio.create_memory_object_stream(0)

    async with stream, anyio.create_task_group() as group:
      group.start_soon(self._read_lines, stream, read_writer)
      group.start_soon(self._write_lines, stream, write_reader)
      try:
        yield read_stream, write_stream
      finally:
        group.cancel_scope.cancel()

    self._log("Connection closed")

  async def _read_lines(self, stream: ByteStream, read_writer):
    async with read_writer:
      buffer = ""
      try:
        async for chunk in TextReceiveStream(stream):
          lines = (buffer + chunk).split("\n")
          buffer = lines.pop()
          for line in lines:
            if not line.strip():
              continue
            try:
              message = types.JSONRPCMessage.model_validate_json(line)
            except ValueError as e:
              await read_writer.send(e)
              continue
            await read_writer.send(SessionMessage(message))
      except (anyio.BrokenResourceError, anyio.ClosedResourceError, OSError) as e:
        self._log(f"Read failed: {e}")

  async def _write_lines(self, stream: ByteStream, write_reader):
    async with write_reader:
      try:
        async for session_message in write_reader:
          line = session_message.message.model_dump_json(by_alias=True, exclude_none=True)
          await stream.send((line + "\n").encode("utf-8"))
      except (anyio.BrokenResourceError, anyio.ClosedResourceError, OSError) as e:
        self._log(f"Write failed: {e}")


class HttpChannel(Channel):
  """
  Streamable HTTP through `mcp.client.streamable_http` on a shared
  `httpx.AsyncClient`. Every HTTP request is bounded by `timeout`.
  """

  def __init__(
    self,
    server_id: str,
    url: str,
    connect_timeout: float,
    timeout: float,
    headers: Optional[Dict[str, str]] = None,
    on_log: Optional[LogCallback] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
  ):
    super().__init__(server_id, connect_timeout, on_log)
    self.url = url
    self.timeout = timeout
    self.headers = dict(headers or {})
    self.transport = transport

  def _client(self) -> httpx.AsyncClient:
    return httpx.AsyncClient(
      headers=self.headers,
      timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
      transport=self.transport,
      follow_redirects=True,
    )

  @asynccontextmanager
  async def open(self) -> AsyncIterator[MessageStreams]:
    client = self._client()
    async with AsyncExitStack() as stack:
      stack.push_async_callback(client.aclose)
      read_stream, write_stream, _ = await stack.enter_async_context(streamable_http_client(self.url, http_client=client))
      self._log(f"Channel ready for {self.url}")
      yield read_stream, write_stream

    self._log("Channel closed")


def create_channel(config: ServerConfig, on_log: Optional[LogCallback] = None) -> TransportChannel:
  """Pick the channel implementation that matches the server's connection descriptor."""
  if config.container is not None:
    return ContainerChannel(
      config.id, config.container.image, config.container.args + config.args, config.env, config.connect_timeout, on_log
    )

  if config.address:
    parsed = urlparse(config.address)
    if parsed.scheme == "tcp":
      return TcpChannel(config.id, parsed.hostname, parsed.port, config.connect_timeout, on_log)
    return HttpChannel(config.id, config.address, config.connect_timeout, config.timeout, on_log=on_log)

  return SubprocessChannel(config.id, config.command, config.args, config.env, config.connect_timeout, on_log)
