import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_UPSTREAM_URL = "wss://api.elevenlabs.io/v1/convai/conversation"


def _number(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name}={raw!r} is not a number.") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be greater than zero (got {raw!r}).")
    return value


@dataclass(frozen=True)
class RelaySettings:
    """
    Process configuration read from the environment.

    - ELEVEN_KEY and STREAM_WEBHOOK_URL are required; a RuntimeError is raised
      if either is missing so the app refuses to start half-configured.
    - DEFAULT_AGENT_ID is optional; without it every send request must name
      its own destination.
    - IDLE_MINUTES (default 7) controls how long an unused upstream connection
      is kept open.
    """

    api_key: str
    webhook_url: str
    default_agent_id: Optional[str] = None
    port: int = 8080
    idle_minutes: float = 7.0
    upstream_url: str = DEFAULT_UPSTREAM_URL
    ready_timeout_seconds: float = 10.0
    forward_timeout_seconds: float = 10.0
    log_level: str = "INFO"

    @property
    def idle_seconds(self) -> float:
        return self.idle_minutes * 60.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RelaySettings":
        env = os.environ if env is None else env

        api_key = (env.get("ELEVEN_KEY") or "").strip()
        webhook_url = (env.get("STREAM_WEBHOOK_URL") or "").strip()
        if not api_key or not webhook_url:
            raise RuntimeError("Missing ELEVEN_KEY or STREAM_WEBHOOK_URL in environment")

        return cls(
            api_key=api_key,
            webhook_url=webhook_url,
            default_agent_id=(env.get("DEFAULT_AGENT_ID") or "").strip() or None,
            port=int(_number(env, "PORT", 8080)),
            idle_minutes=_number(env, "IDLE_MINUTES", 7.0),
            upstream_url=(env.get("ELEVEN_WSS_URL") or "").strip() or DEFAULT_UPSTREAM_URL,
            ready_timeout_seconds=_number(env, "READY_TIMEOUT_SECONDS", 10.0),
            forward_timeout_seconds=_number(env, "FORWARD_TIMEOUT_SECONDS", 10.0),
            log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        )
