"""In-memory registry of upstream connections keyed by session."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from models.session_models import ClassifiedEvent, EventKind, SessionEntry
from services.relay.errors import SendError
from services.relay.event_classifier import classify
from services.relay.upstream_connection import Connector, UpstreamConnection, build_upstream_url

LOGGER = logging.getLogger(__name__)

IDLE_TIMEOUT_REASON = "idle-timeout"
SHUTDOWN_REASON = "shutdown"
NORMAL_CLOSURE = 1000
GOING_AWAY = 1001


class EventSink(Protocol):
	async def forward(self, event: ClassifiedEvent) -> None: ...


class SessionRegistry:
	"""Own one upstream connection per session key and its idle lifecycle.

	The registry is the only place session entries are created, touched or
	removed. Upstream frames for a session arrive through ``_handle_message``,
	which refreshes the idle timer, answers keepalive pings and queues response
	events on the session outbox. One worker per session drains the outbox into
	the sink in arrival order, so a slow sink never delays pong replies. An entry disappears when its connection closes, when its
	idle timer fires, or when a caller evicts a connection that never opened.
	"""

	def __init__(
		self,
		upstream_url: str,
		api_key: str,
		idle_seconds: float,
		sink: Optional[EventSink] = None,
		connector: Optional[Connector] = None,
		clock: Callable[[], float] = time.time,
	) -> None:
		self.upstream_url = upstream_url
		self.idle_seconds = idle_seconds
		self._api_key = api_key
		self._sink = sink
		self._connector = connector
		self._clock = clock
		self._entries: Dict[str, SessionEntry] = {}
		self._lock = asyncio.Lock()
		self._tasks: Set[asyncio.Task] = set()
		self._workers: Set[asyncio.Task] = set()

	def __len__(self) -> int:
		return len(self._entries)

	def __contains__(self, session_key: object) -> bool:
		return session_key in self._entries

	def get(self, session_key: str) -> Optional[SessionEntry]:
		"""Return the entry for a session key, if any."""
		return self._entries.get(session_key)

	def snapshot(self) -> List[Dict[str, Any]]:
		"""Return ``{sessionKey, lastActivity}`` for every live entry."""
		return [entry.summary() for entry in self._entries.values()]

	async def get_or_create(
		self, session_key: str, destination: str, init_payload: Optional[Any] = None
	) -> UpstreamConnection:
		"""Return the live connection for ``session_key``, opening one if needed.

		A new connection is returned before it is open; callers await readiness
		themselves. ``init_payload`` is delivered at most once per connection:
		right away when the connection is already open, otherwise as soon as it
		opens.
		"""
		async with self._lock:
			entry = self._entries.get(session_key)
			if entry is not None and entry.connection.is_live:
				send_init = self._claim_init(entry, init_payload)
				self._mark_activity(entry)
				connection = entry.connection
			else:
				connection = self._create(session_key, destination, init_payload, entry)
				send_init = False
		if send_init:
			await self._send_init(entry, init_payload)
		return connection

	def _create(
		self,
		session_key: str,
		destination: str,
		init_payload: Optional[Any],
		stale: Optional[SessionEntry],
	) -> UpstreamConnection:
		if stale is not None:
			self.remove(session_key, stale.connection)
		connection = UpstreamConnection(
			session_key,
			build_upstream_url(self.upstream_url, destination),
			self._api_key,
			on_message=self._handle_message,
			on_open=self._handle_open,
			on_close=self._handle_close,
			connector=self._connector,
		)
		now = self._clock()
		entry = SessionEntry(
			session_key=session_key,
			destination=destination,
			connection=connection,
			last_activity=now,
			created_at=now,
			pending_init=init_payload,
		)
		self._entries[session_key] = entry
		self._schedule_idle(entry)
		LOGGER.info("Opening upstream connection for %s (agent=%s)", session_key, destination)
		if self._sink is not None:
			entry.outbox = asyncio.Queue()
			worker = asyncio.ensure_future(self._drain_outbox(session_key, entry.outbox))
			self._workers.add(worker)
			worker.add_done_callback(self._workers.discard)
			entry.forward_task = worker
		connection.start()
		return connection

	def touch(self, session_key: str) -> None:
		"""Record activity and push back the idle deadline; no-op if absent."""
		entry = self._entries.get(session_key)
		if entry is not None:
			self._mark_activity(entry)

	def remove(self, session_key: str, connection: Optional[UpstreamConnection] = None) -> None:
		"""Cancel the idle timer and drop the entry.

		When ``connection`` is given the entry is only dropped if it still owns
		that connection, so a late close from a replaced connection leaves the
		newer entry alone.
		"""
		entry = self._entries.get(session_key)
		if entry is None:
			return
		if connection is not None and entry.connection is not connection:
			return
		if entry.idle_timer is not None:
			entry.idle_timer.cancel()
			entry.idle_timer = None
		del self._entries[session_key]
		if entry.outbox is not None:
			entry.outbox.put_nowait(None)
			entry.outbox = None

	async def evict(self, session_key: str, connection: UpstreamConnection, reason: str) -> None:
		"""Drop the entry owning ``connection`` and close it with ``reason``."""
		self.remove(session_key, connection)
		await connection.close(NORMAL_CLOSURE, reason)

	async def abandon(self, session_key: str, connection: UpstreamConnection, reason: str) -> bool:
		"""Evict a connection that never opened once nobody is waiting on it.

		Returns True when the connection was evicted. While another caller is
		still inside its own readiness wait the connection is left alone, so a
		short wait cannot cut a longer one short.
		"""
		entry = self._entry_for(connection)
		if entry is None or connection.is_open or connection.waiters:
			return False
		await self.evict(session_key, connection, reason)
		return True

	async def shutdown(self) -> None:
		"""Close every live connection, cancel idle timers and drop undelivered events."""
		entries = list(self._entries.values())
		for entry in entries:
			self.remove(entry.session_key, entry.connection)
		workers = list(self._workers)
		for worker in workers:
			worker.cancel()
		if entries:
			LOGGER.info("Closing %d upstream connection(s) on shutdown", len(entries))
		await asyncio.gather(
			*(entry.connection.close(GOING_AWAY, SHUTDOWN_REASON) for entry in entries),
			return_exceptions=True,
		)
		if self._tasks or workers:
			await asyncio.gather(*list(self._tasks), *workers, return_exceptions=True)

	def _entry_for(self, connection: UpstreamConnection) -> Optional[SessionEntry]:
		entry = self._entries.get(connection.session_key)
		if entry is None or entry.connection is not connection:
			return None
		return entry

	def _mark_activity(self, entry: SessionEntry) -> None:
		entry.last_activity = self._clock()
		self._schedule_idle(entry)

	def _schedule_idle(self, entry: SessionEntry) -> None:
		if entry.idle_timer is not None:
			entry.idle_timer.cancel()
		loop = asyncio.get_running_loop()
		entry.idle_timer = loop.call_later(self.idle_seconds, self._expire, entry.session_key, entry.connection)

	def _expire(self, session_key: str, connection: UpstreamConnection) -> None:
		entry = self._entry_for(connection)
		if entry is None:
			return
		entry.idle_timer = None
		LOGGER.info("Session %s idle for %gs; closing upstream connection", session_key, self.idle_seconds)
		self._spawn(connection.close(NORMAL_CLOSURE, IDLE_TIMEOUT_REASON))
		self.remove(session_key, connection)

	def _spawn(self, coro: Awaitable[Any]) -> None:
		task = asyncio.ensure_future(coro)
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)

	def _claim_init(self, entry: SessionEntry, init_payload: Optional[Any]) -> bool:
		"""Mark the init payload as owned by the caller if it should be sent now.

		Returns True when the caller must send it; the flag is set before the
		send so no other caller can claim it meanwhile.
		"""
		if init_payload is None or entry.initialized:
			return False
		if not entry.connection.is_open:
			entry.pending_init = init_payload
			return False
		entry.initialized = True
		return True

	async def _send_init(self, entry: SessionEntry, init_payload: Any) -> None:
		try:
			await entry.connection.send(init_payload)
		except SendError as exc:
			entry.initialized = False
			entry.pending_init = init_payload
			LOGGER.warning("Init payload not delivered for %s: %s", entry.session_key, exc)
			return
		entry.pending_init = None
		LOGGER.debug("Init payload delivered for %s", entry.session_key)

	async def _drain_outbox(self, session_key: str, outbox: asyncio.Queue) -> None:
		while True:
			event = await outbox.get()
			if event is None:
				return
			try:
				await self._sink.forward(event)
			except Exception:  # pylint: disable=broad-exception-caught
				LOGGER.exception("Event sink failed for %s", session_key)

	async def _handle_open(self, connection: UpstreamConnection) -> None:
		entry = self._entry_for(connection)
		if entry is None:
			return
		self._mark_activity(entry)
		if entry.pending_init is not None and not entry.initialized:
			entry.initialized = True
			await self._send_init(entry, entry.pending_init)

	async def _handle_message(self, connection: UpstreamConnection, message: Dict[str, Any]) -> None:
		entry = self._entry_for(connection)
		if entry is None:
			return
		self._mark_activity(entry)

		event = classify(entry.session_key, message)
		if event is None:
			return
		if event.kind is EventKind.KEEPALIVE_PING:
			try:
				await connection.send(event.pong_frame())
			except SendError as exc:
				LOGGER.debug("Pong not sent for %s: %s", entry.session_key, exc)
			return
		if entry.outbox is not None:
			entry.outbox.put_nowait(event)

	def _handle_close(self, connection: UpstreamConnection) -> None:
		self.remove(connection.session_key, connection)
