"""One streaming WebSocket link to the upstream conversational agent."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed

from models.session_models import ConnectionState
from services.relay.errors import ConnectError, ReadinessTimeoutError, SendError
from services.relay.event_classifier import decode_frame

LOGGER = logging.getLogger(__name__)

API_KEY_HEADER = "xi-api-key"

Connector = Callable[..., Awaitable[Any]]
MessageHandler = Callable[["UpstreamConnection", Dict[str, Any]], Awaitable[None]]
OpenHandler = Callable[["UpstreamConnection"], Awaitable[None]]
CloseHandler = Callable[["UpstreamConnection"], None]


def build_upstream_url(base_url: str, destination: str) -> str:
	"""Return the connect URL for the given agent id."""
	separator = "&" if "?" in base_url else "?"
	return f"{base_url}{separator}agent_id={quote(destination, safe='')}"


class UpstreamConnection:
	"""Own a single upstream WebSocket and its state machine.

	States move ``connecting -> open -> closed`` or through ``error`` on the way
	to ``closed``. A single task performs the handshake, runs the ``on_open``
	hook, signals readiness and then reads frames, awaiting ``on_message`` for
	each decoded frame before reading the next. ``on_close`` is called exactly
	once, when the connection reaches ``closed``.
	"""

	def __init__(
		self,
		session_key: str,
		url: str,
		api_key: str,
		*,
		on_message: Optional[MessageHandler] = None,
		on_open: Optional[OpenHandler] = None,
		on_close: Optional[CloseHandler] = None,
		connector: Optional[Connector] = None,
	) -> None:
		self.session_key = session_key
		self.url = url
		self._headers = {API_KEY_HEADER: api_key}
		self._on_message = on_message
		self._on_open = on_open
		self._on_close = on_close
		self._connector = connector or websockets.connect
		self._state = ConnectionState.CONNECTING
		self._ws: Any = None
		self._task: Optional[asyncio.Task] = None
		self._ready = asyncio.Event()
		self._terminated = asyncio.Event()
		self._closed_notified = False
		self._waiters = 0
		self.error: Optional[Exception] = None
		self.close_reason: Optional[str] = None

	@property
	def state(self) -> ConnectionState:
		return self._state

	@property
	def is_open(self) -> bool:
		return self._state is ConnectionState.OPEN

	@property
	def waiters(self) -> int:
		"""Number of callers currently inside ``wait_ready``."""
		return self._waiters

	@property
	def is_live(self) -> bool:
		"""True while the connection is connecting or open."""
		return self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN)

	def start(self) -> asyncio.Task:
		"""Start the connection task; repeated calls return the same task."""
		if self._task is None:
			self._task = asyncio.create_task(self._run(), name=f"upstream:{self.session_key}")
		return self._task

	async def send(self, message: Any) -> None:
		"""JSON-encode and write one frame.

		Raises:
			SendError: If the connection is not open or the write fails.
		"""
		if self._state is not ConnectionState.OPEN or self._ws is None:
			raise SendError(f"Upstream connection for session {self.session_key} is {self._state.value}")
		try:
			await self._ws.send(json.dumps(message))
		except (ConnectionClosed, OSError) as exc:
			raise SendError(f"Upstream send failed for session {self.session_key}: {exc}") from exc

	async def close(self, code: int = 1000, reason: str = "") -> None:
		"""Close the socket, or abandon the handshake if it is still pending."""
		if self._state is ConnectionState.CLOSED:
			return
		if self.close_reason is None:
			self.close_reason = reason
		if self._ws is not None:
			try:
				await self._ws.close(code=code, reason=reason)
			except Exception as exc:  # pylint: disable=broad-exception-caught
				LOGGER.debug("Ignoring error while closing upstream for %s: %s", self.session_key, exc)
		elif self._task is not None:
			self._task.cancel()

		if self._task is not None and self._task is not asyncio.current_task():
			await asyncio.wait({self._task})
		if self._task is None or self._task.cancelled():
			# A task cancelled before its first step never reaches its finally block.
			await self._finalize()

	async def wait_ready(self, timeout: float) -> None:
		"""Suspend until the connection is open.

		Raises:
			ReadinessTimeoutError: If the connection is not open after ``timeout`` seconds.
			ConnectError: If the connection fails or closes before it opens.
		"""
		if self._ready.is_set() and self.is_open:
			return
		if self._terminated.is_set():
			raise self._terminal_error()

		ready = asyncio.ensure_future(self._ready.wait())
		terminated = asyncio.ensure_future(self._terminated.wait())
		self._waiters += 1
		try:
			done, _ = await asyncio.wait(
				{ready, terminated}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
			)
		finally:
			self._waiters -= 1
			ready.cancel()
			terminated.cancel()

		if ready in done and self.is_open:
			return
		if not done:
			raise ReadinessTimeoutError(
				f"Upstream connection for session {self.session_key} was not ready after {timeout:g}s"
			)
		raise self._terminal_error()

	def _terminal_error(self) -> Exception:
		if self.error is not None:
			return self.error
		return ConnectError(f"Upstream connection for session {self.session_key} closed before it was ready")

	def _fail(self, error: Exception) -> None:
		if self._state in (ConnectionState.ERROR, ConnectionState.CLOSED):
			return
		self._state = ConnectionState.ERROR
		self.error = error
		self._terminated.set()
		LOGGER.warning("Upstream connection for %s failed: %s", self.session_key, error)

	async def _run(self) -> None:
		try:
			try:
				self._ws = await self._connector(self.url, additional_headers=self._headers)
			except asyncio.CancelledError:
				raise
			except Exception as exc:  # pylint: disable=broad-exception-caught
				self._fail(ConnectError(f"Upstream connection failed for session {self.session_key}: {exc}"))
				return

			self._state = ConnectionState.OPEN
			LOGGER.info("Upstream connection open for %s", self.session_key)
			if self._on_open is not None:
				try:
					await self._on_open(self)
				except Exception:  # pylint: disable=broad-exception-caught
					LOGGER.exception("Upstream open hook failed for %s", self.session_key)
			if self.close_reason is None:
				self._ready.set()
			await self._receive_loop()
		finally:
			await self._finalize()

	async def _receive_loop(self) -> None:
		try:
			async for raw in self._ws:
				message = decode_frame(raw)
				if message is None:
					LOGGER.debug("Ignoring undecodable upstream frame for %s", self.session_key)
					continue
				if self._on_message is None:
					continue
				try:
					await self._on_message(self, message)
				except Exception:  # pylint: disable=broad-exception-caught
					LOGGER.exception("Upstream message handler failed for %s", self.session_key)
		except ConnectionClosed as exc:
			if self.close_reason is None:
				self._fail(ConnectError(f"Upstream connection lost for session {self.session_key}: {exc}"))
		except OSError as exc:
			self._fail(ConnectError(f"Upstream connection lost for session {self.session_key}: {exc}"))

	async def _finalize(self) -> None:
		if self._state is ConnectionState.CLOSED:
			return
		self._state = ConnectionState.CLOSED
		self._terminated.set()
		if self._ws is not None:
			try:
				await self._ws.close()
			except Exception as exc:  # pylint: disable=broad-exception-caught
				LOGGER.debug("Ignoring error while closing upstream for %s: %s", self.session_key, exc)
		LOGGER.info(
			"Upstream connection closed for %s (reason=%s)", self.session_key, self.close_reason or "remote"
		)
		if self._on_close is not None and not self._closed_notified:
			self._closed_notified = True
			self._on_close(self)


async def await_ready(connection: UpstreamConnection, timeout: float) -> None:
	"""Wait for ``connection`` to open; returns at once if it already is."""
	await connection.wait_ready(timeout)
