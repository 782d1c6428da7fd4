"""Best-effort delivery of classified upstream events to the webhook sink."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from models.session_models import ClassifiedEvent
from services.relay.errors import ForwarderError

LOGGER = logging.getLogger(__name__)
DEFAULT_TIMEOUT_SECONDS = 10.0


class WebhookForwarder:
	"""POST response events to the configured webhook URL.

	Delivery is fire-and-forget: failures are logged and swallowed and
	``forward`` never raises, so a slow or broken sink cannot fail the relay.
	"""

	def __init__(
		self,
		webhook_url: str,
		timeout: float = DEFAULT_TIMEOUT_SECONDS,
		client: Optional[httpx.AsyncClient] = None,
	) -> None:
		if not webhook_url:
			raise ValueError("Webhook URL is required.")
		self.webhook_url = webhook_url
		self.timeout = timeout
		self._client = client

	def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(timeout=self.timeout)
		return self._client

	async def forward(self, event: ClassifiedEvent) -> None:
		"""Deliver one event; errors end up in the log only."""
		try:
			await self._post(event)
		except ForwarderError as exc:
			LOGGER.warning("Webhook delivery failed for %s: %s", event.session_key, exc)

	async def _post(self, event: ClassifiedEvent) -> None:
		payload = event.webhook_payload()
		try:
			response = await self._ensure_client().post(self.webhook_url, json=payload, timeout=self.timeout)
		except httpx.HTTPError as exc:
			raise ForwarderError(f"{type(exc).__name__}: {exc}") from exc
		if not 200 <= response.status_code < 300:
			raise ForwarderError(f"sink returned HTTP {response.status_code}")
		LOGGER.debug("Forwarded %s event for %s", payload["type"], event.session_key)

	async def aclose(self) -> None:
		"""Close the underlying HTTP client."""
		if self._client is not None:
			await self._client.aclose()
			self._client = None
