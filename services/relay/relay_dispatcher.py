"""Relay user messages onto per-session upstream connections."""

from __future__ import annotations

import logging
from typing import Any, Optional

from services.relay.errors import ReadinessTimeoutError, ValidationError
from services.relay.session_registry import SessionRegistry
from services.relay.upstream_connection import await_ready

LOGGER = logging.getLogger(__name__)

DEFAULT_READY_TIMEOUT_SECONDS = 10.0
READY_TIMEOUT_REASON = "ready-timeout"


def user_message(text: str) -> dict:
	"""Build the upstream frame carrying one user utterance."""
	return {"type": "user_message", "text": text}


class RelayDispatcher:
	"""Validate send requests and deliver them through the session registry."""

	def __init__(
		self,
		registry: SessionRegistry,
		default_destination: Optional[str] = None,
		ready_timeout: float = DEFAULT_READY_TIMEOUT_SECONDS,
	) -> None:
		self.registry = registry
		self.default_destination = default_destination
		self.ready_timeout = ready_timeout

	def resolve_destination(self, destination: Optional[str]) -> str:
		"""Return the explicit destination or the configured default.

		Raises:
			ValidationError: If neither is available.
		"""
		resolved = (destination or "").strip() or (self.default_destination or "").strip()
		if not resolved:
			raise ValidationError("destinationIdentity is required when no default agent is configured")
		return resolved

	async def relay(
		self,
		session_key: str,
		text: str,
		destination: Optional[str] = None,
		init_payload: Optional[Any] = None,
	) -> None:
		"""Send ``text`` as a user message on the session's upstream connection.

		Opens the connection if the session has none, waits for it to be ready,
		delivers ``init_payload`` once per connection, then sends the message.
		A connection that misses the deadline is dropped only when no other
		call is still waiting for it, so concurrent callers each get their own
		full ``ready_timeout``.

		Raises:
			ValidationError: If the session key, text or destination is missing.
			ConnectError: If the upstream connection fails before it opens.
			ReadinessTimeoutError: If it does not open within ``ready_timeout``.
			SendError: If the message cannot be written.
		"""
		if not session_key or not session_key.strip():
			raise ValidationError("sessionKey and text are required")
		if not text or not text.strip():
			raise ValidationError("sessionKey and text are required")
		resolved = self.resolve_destination(destination)

		connection = await self.registry.get_or_create(session_key, resolved, init_payload)
		try:
			await await_ready(connection, self.ready_timeout)
		except ReadinessTimeoutError:
			if await self.registry.abandon(session_key, connection, READY_TIMEOUT_REASON):
				LOGGER.warning("Upstream for %s not ready after %gs; dropped it", session_key, self.ready_timeout)
			raise

		await connection.send(user_message(text))
		LOGGER.debug("Relayed user message for %s (%d chars)", session_key, len(text))
		self.registry.touch(session_key)
