"""
In-memory tool servers for tests.

A FakeServer answers protocol requests directly; FakeChannel connects a
ToolServerHandle to it without processes or sockets. Use `FakeServers` as the
channel factory of a handle or manager to route each server id to its fake.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

import anyio
from mcp import types
from mcp.shared.message import SessionMessage

from tessera.errors import ConnectionError
from tessera.servers.config import HealthCheckConfig, ServerConfig
from tessera.servers.protocol import METHOD_NOT_FOUND


def text_content(text: str) -> List[dict]:
  return [{"type": "text", "text": text}]


def tool_entry(name: str, description: str = "") -> dict:
  return {
    "name": name,
    "description": description or f"The {name} tool",
    "inputSchema": {"type": "object", "properties": {"path": {"type": "string"}}},
  }


def make_config(server_id: str = "files", **kwargs) -> ServerConfig:
  kwargs.setdefault("command", "fake-server")
  return ServerConfig(id=server_id, **kwargs)


def fast_health(max_retries: int = 3, **kwargs) -> HealthCheckConfig:
  return HealthCheckConfig(interval_ms=10, timeout_ms=200, max_retries=max_retries, **kwargs)


class FakeServer:
  def __init__(self, tools: Optional[List[dict]] = None):
    self.tools = tools if tools is not None else [tool_entry("read_file"), tool_entry("search")]
    # tool name -> result dict, or callable(arguments) -> result dict
    self.results: Dict[str, Any] = {}
    # tool name -> seconds before the answer is sent
    self.delays: Dict[str, float] = {}
    self.hang: set = set()
    self.completions: Optional[List[str]] = None
    self.refuse_connect = False
    self.connect_delay = 0.0
    self.connect_count = 0
    self.requests: List[dict] = []
    self.channels: List["FakeChannel"] = []
    self.on_connect: Optional[Callable[[], Any]] = None

  def channel(self, server_id: str, on_log=None) -> "FakeChannel":
    channel = FakeChannel(self, server_id, on_log)
    self.channels.append(channel)
    return channel

  def drop_connections(self):
    for channel in self.channels:
      channel.drop()

  def calls(self, method: str) -> List[dict]:
    return [request for request in self.requests if request.get("method") == method]

  def answer(self, message: dict) -> Optional[dict]:
    method = message.get("method")
    if "id" not in message:
      return None

    def ok(result):
      return {"jsonrpc": "2.0", "id": message["id"], "result": result}

    params = message.get("params") or {}
    if method == "initialize":
      version = params.get("protocolVersion", types.LATEST_PROTOCOL_VERSION)
      return ok({"protocolVersion": version, "capabilities": {}, "serverInfo": {"name": "fake", "version": "1.0"}})
    if method == "tools/list":
      return ok({"tools": self.tools})
    if method == "ping":
      return ok({})
    if method == "tools/call":
      name = params.get("name")
      if name in self.hang:
        return None
      result = self.results.get(name)
      if callable(result):
        result = result(params.get("arguments"))
      if result is None:
        result = {"isError": False, "content": text_content(json.dumps(params.get("arguments")))}
      return ok(result)
    if method == "completion/complete" and self.completions is not None:
      return ok({"completion": {"values": self.completions}})
    return {
      "jsonrpc": "2.0",
      "id": message["id"],
      "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
    }


class FakeChannel:
  """
  Hands a ClientSession in-memory message streams. Requests are answered by
  the FakeServer; `drop()` ends the inbound stream like a crashed process.
  """

  def __init__(self, server: FakeServer, server_id: str, on_log=None):
    self.server = server
    self.server_id = server_id
    self.on_log = on_log
    self._outbox = None
    self._closed = False

  @property
  def is_open(self) -> bool:
    return self._outbox is not None and not self._closed

  @asynccontextmanager
  async def open(self):
    if self.server.connect_delay:
      await asyncio.sleep(self.server.connect_delay)
    if self.server.refuse_connect:
      raise ConnectionError(self.server_id, "connection refused")
    if self.server.on_connect is not None:
      self.server.on_connect()
    self.server.connect_count += 1

    self._outbox, inbound = anyio.create_memory_object_stream(100)
    outbound, requests = anyio.create_memory_object_stream(100)
    serving = asyncio.create_task(self._serve(requests))
    if self.on_log is not None:
      self.on_log("fake channel connected")
    try:
      yield inbound, outbound
    finally:
      self.drop()
      serving.cancel()
      await asyncio.gather(serving, return_exceptions=True)

  async def _serve(self, requests):
    async with requests:
      async for session_message in requests:
        message = session_message.message.model_dump(mode="json", by_alias=True, exclude_none=True)
        self.server.requests.append(message)
        reply = self.server.answer(message)
        if reply is None:
          continue

        delay = self.server.delays.get((message.get("params") or {}).get("name"), 0.0)
        if delay:
          asyncio.get_running_loop().call_later(delay, self._deliver, reply)
        else:
          self._deliver(reply)

  def _deliver(self, reply: dict):
    if not self.is_open:
      return
    try:
      self._outbox.send_nowait(SessionMessage(types.JSONRPCMessage.model_validate(reply)))
    except (anyio.BrokenResourceError, anyio.ClosedResourceError):
      pass

  def drop(self):
    if self._closed:
      return
    self._closed = True
    if self._outbox is not None:
      self._outbox.close()


class FakeServers:
  """Channel factory routing each server id to its own FakeServer."""

  def __init__(self, **servers: FakeServer):
    self.servers: Dict[str, FakeServer] = dict(servers)

  def __getitem__(self, server_id: str) -> FakeServer:
    if server_id not in self.servers:
      self.servers[server_id] = FakeServer()
    return self.servers[server_id]

  def __call__(self, config: ServerConfig, on_log=None) -> FakeChannel:
    return self[config.id].channel(config.id, on_log)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005):
  loop = asyncio.get_running_loop()
  deadline = loop.time() + timeout
  while not predicate():
    if loop.time() > deadline:
      raise AssertionError("condition not met in time")
    await asyncio.sleep(interval)
