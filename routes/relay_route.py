"""FastAPI routes for relaying messages and inspecting sessions."""

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import AliasChoices, BaseModel, Field

from controllers.relay_controller import list_sessions, send_message

router = APIRouter()


class SendPayload(BaseModel):
	session_key: Optional[str] = Field(None, validation_alias=AliasChoices("sessionKey", "psid"))
	text: Optional[str] = None
	destination_identity: Optional[str] = Field(
		None, validation_alias=AliasChoices("destinationIdentity", "agentId")
	)
	init_payload: Optional[Any] = Field(None, validation_alias=AliasChoices("initPayload", "initContext"))


@router.post("/send")
async def send_route(request: Request, payload: SendPayload):
	try:
		return await send_message(
			request,
			payload.session_key,
			payload.text,
			payload.destination_identity,
			payload.init_payload,
		)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/debug/sessions")
async def debug_sessions_route(request: Request):
	"""List live sessions with their last activity timestamp."""
	return list_sessions(request)
