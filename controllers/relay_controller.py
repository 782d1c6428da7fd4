"""Request helpers bridging the HTTP layer and the relay."""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from fastapi import HTTPException, Request

from services.relay.errors import DeliveryError, ValidationError
from services.relay.relay_dispatcher import RelayDispatcher
from services.relay.session_registry import SessionRegistry


def _require_dispatcher(request: Request) -> RelayDispatcher:
	dispatcher = getattr(request.app.state, "relay_dispatcher", None)
	if dispatcher is None:
		raise HTTPException(status_code=500, detail="Relay dispatcher unavailable")
	return dispatcher


def _require_registry(request: Request) -> SessionRegistry:
	registry = getattr(request.app.state, "session_registry", None)
	if registry is None:
		raise HTTPException(status_code=500, detail="Session registry unavailable")
	return registry


async def send_message(
	request: Request,
	session_key: Optional[str],
	text: Optional[str],
	destination: Optional[str] = None,
	init_payload: Optional[Any] = None,
) -> Dict[str, Any]:
	"""Relay one user message to the session's upstream agent."""
	dispatcher = _require_dispatcher(request)
	try:
		await dispatcher.relay(session_key or "", text or "", destination, init_payload)
	except ValidationError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc
	except DeliveryError as exc:
		raise HTTPException(status_code=500, detail=str(exc)) from exc
	return {"ok": True}


def health(request: Request) -> Dict[str, Any]:
	"""Report liveness and how many sessions hold an upstream connection."""
	registry = _require_registry(request)
	return {"ok": True, "sessionCount": len(registry)}


def list_sessions(request: Request) -> Dict[str, Any]:
	"""Return the debug listing of live sessions."""
	registry = _require_registry(request)
	sessions = registry.snapshot()
	return {"count": len(sessions), "sessions": sessions}


def describe_validation_errors(errors: Sequence[Dict[str, Any]]) -> str:
	"""Turn request validation errors into one message naming the bad fields."""
	messages = []
	for error in errors:
		if error.get("type") == "json_invalid":
			messages.append("Request body must be valid JSON")
			continue
		location = [str(part) for part in error.get("loc", ()) if part != "body"]
		message = error.get("msg") or "Invalid value"
		messages.append(f"{'.'.join(location)}: {message}" if location else message)
	return "; ".join(messages) or "Invalid request body"
