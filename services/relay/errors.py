"""Error types raised by the relay."""

from __future__ import annotations


class RelayError(Exception):
	"""Base class for relay failures surfaced to callers."""


class ValidationError(RelayError):
	"""The request is missing a session key, text, or destination."""


class DeliveryError(RelayError):
	"""The message could not be delivered upstream."""


class ConnectError(DeliveryError):
	"""The upstream service was unreachable or rejected the handshake."""


class ReadinessTimeoutError(DeliveryError, TimeoutError):
	"""The upstream connection did not open within the allowed time."""


class SendError(DeliveryError):
	"""A frame was written to a connection that is not open."""


class ForwarderError(RelayError):
	"""The webhook sink could not be reached. Only ever logged."""
