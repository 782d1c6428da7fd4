"""In-memory stand-ins for the upstream WebSocket used across relay tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

from websockets.exceptions import ConnectionClosedOK

_CLOSE = object()


class FakeSocket:
	"""Stands in for a websockets client connection."""

	def __init__(self) -> None:
		self.sent: List[Any] = []
		self.closed = False
		self.close_code: Optional[int] = None
		self.close_reason: Optional[str] = None
		self.send_gate: Optional[asyncio.Event] = None
		self._incoming: asyncio.Queue = asyncio.Queue()

	async def send(self, data: str) -> None:
		if self.send_gate is not None:
			await self.send_gate.wait()
		if self.closed:
			raise ConnectionClosedOK(None, None)
		self.sent.append(json.loads(data))

	async def close(self, code: int = 1000, reason: str = "") -> None:
		if self.closed:
			return
		self.closed = True
		self.close_code = code
		self.close_reason = reason
		self._incoming.put_nowait(_CLOSE)

	def push(self, message: Any) -> None:
		"""Queue a frame as if the upstream agent had sent it."""
		self._incoming.put_nowait(message if isinstance(message, (str, bytes)) else json.dumps(message))

	def drop(self) -> None:
		"""Simulate the upstream side closing the socket."""
		self.closed = True
		self._incoming.put_nowait(_CLOSE)

	def frames(self, frame_type: str) -> List[Dict[str, Any]]:
		return [frame for frame in self.sent if isinstance(frame, dict) and frame.get("type") == frame_type]

	def __aiter__(self) -> "FakeSocket":
		return self

	async def __anext__(self) -> Any:
		item = await self._incoming.get()
		if item is _CLOSE:
			raise StopAsyncIteration
		return item


class FakeConnector:
	"""Callable replacing ``websockets.connect``.

	With ``hold=True`` handshakes block until ``release()``; with ``fail`` set
	every handshake raises that exception.
	"""

	def __init__(self, fail: Optional[Exception] = None, hold: bool = False) -> None:
		self.fail = fail
		self.hold = hold
		self.urls: List[str] = []
		self.headers: List[Dict[str, str]] = []
		self.sockets: List[FakeSocket] = []
		self._gate: Optional[asyncio.Event] = None

	@property
	def calls(self) -> int:
		return len(self.urls)

	def release(self) -> None:
		self.hold = False
		if self._gate is not None:
			self._gate.set()

	async def __call__(self, url: str, additional_headers: Optional[Dict[str, str]] = None, **kwargs: Any) -> FakeSocket:
		self.urls.append(url)
		self.headers.append(dict(additional_headers or {}))
		if self.hold:
			if self._gate is None:
				self._gate = asyncio.Event()
			await self._gate.wait()
		if self.fail is not None:
			raise self.fail
		socket = FakeSocket()
		self.sockets.append(socket)
		return socket


async def wait_for(predicate, timeout: float = 1.0) -> None:
	"""Poll ``predicate`` until it is true or fail the test."""
	deadline = asyncio.get_running_loop().time() + timeout
	while not predicate():
		if asyncio.get_running_loop().time() > deadline:
			raise AssertionError("condition not met in time")
		await asyncio.sleep(0.01)
