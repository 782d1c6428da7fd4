"""Helpers to decode and classify frames streamed by the upstream agent."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from models.session_models import ClassifiedEvent, EventKind

PING_TYPE = "ping"
TENTATIVE_TYPE = "internal_tentative_agent_response"
FINAL_TYPE = "agent_response"


def decode_frame(raw: Any) -> Optional[Dict[str, Any]]:
	"""Return the JSON object carried by a text or binary frame, or None."""
	if isinstance(raw, (bytes, bytearray)):
		try:
			raw = raw.decode("utf-8")
		except UnicodeDecodeError:
			return None
	if not isinstance(raw, str):
		return None
	try:
		data = json.loads(raw)
	except ValueError:
		return None
	return data if isinstance(data, dict) else None


def _nested_text(message: Dict[str, Any], container: str, key: str) -> str:
	"""Return the string at message[container][key] or an empty string."""
	inner = message.get(container)
	if not isinstance(inner, dict):
		return ""
	value = inner.get(key)
	return value if isinstance(value, str) else ""


def classify(session_key: str, message: Any) -> Optional[ClassifiedEvent]:
	"""Map one decoded upstream frame to a ClassifiedEvent.

	Rules are checked in order and the first match wins. Frames that are not
	objects, response frames without text, and frame types the relay does not
	handle (audio chunks, metadata, ...) return None.
	"""
	if not isinstance(message, dict):
		return None
	message_type = message.get("type")

	ping_event = message.get("ping_event")
	if message_type == PING_TYPE or ping_event:
		correlation_id = ping_event.get("event_id") if isinstance(ping_event, dict) else None
		return ClassifiedEvent(
			kind=EventKind.KEEPALIVE_PING,
			session_key=session_key,
			correlation_id=correlation_id,
		)

	if message_type == TENTATIVE_TYPE:
		text = _nested_text(message, "tentative_agent_response_internal_event", "tentative_agent_response")
		if not text:
			return None
		return ClassifiedEvent(kind=EventKind.PARTIAL_RESPONSE, session_key=session_key, text=text, final=False)

	if message_type == FINAL_TYPE:
		text = _nested_text(message, "agent_response_event", "agent_response")
		if not text:
			return None
		return ClassifiedEvent(kind=EventKind.FINAL_RESPONSE, session_key=session_key, text=text, final=True)

	return None
