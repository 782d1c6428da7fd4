"""Session domain models for the upstream relay."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
	from services.relay.upstream_connection import UpstreamConnection


class ConnectionState(str, Enum):
	"""Lifecycle states of one upstream connection."""

	CONNECTING = "connecting"
	OPEN = "open"
	ERROR = "error"
	CLOSED = "closed"


class EventKind(str, Enum):
	"""Semantic kinds of upstream frames the relay cares about."""

	KEEPALIVE_PING = "keepalive-ping"
	PARTIAL_RESPONSE = "partial-response"
	FINAL_RESPONSE = "final-response"
	UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class ClassifiedEvent:
	"""Normalized view of one upstream frame."""

	kind: EventKind
	session_key: str
	text: Optional[str] = None
	final: bool = False
	correlation_id: Optional[Any] = None

	def webhook_payload(self) -> Dict[str, Any]:
		"""Return the body posted to the webhook sink for response events."""
		return {
			"sessionKey": self.session_key,
			"type": "final" if self.final else "partial",
			"text": self.text,
			"final": self.final,
		}

	def pong_frame(self) -> Dict[str, Any]:
		"""Return the pong reply echoing this ping's correlation id."""
		return {"type": "pong", "event_id": self.correlation_id}


@dataclass
class SessionEntry:
	"""Registry state for one session key."""

	session_key: str
	destination: str
	connection: "UpstreamConnection"
	last_activity: float = field(default_factory=lambda: time.time())
	created_at: float = field(default_factory=lambda: time.time())
	idle_timer: Optional[asyncio.TimerHandle] = None
	initialized: bool = False
	pending_init: Optional[Any] = None
	outbox: Optional[asyncio.Queue] = None
	forward_task: Optional[asyncio.Task] = None

	def summary(self) -> Dict[str, Any]:
		"""Return the debug view of this entry."""
		return {"sessionKey": self.session_key, "lastActivity": self.last_activity}
