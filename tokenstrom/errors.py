"""Error taxonomy for relay sessions.

Every class here is recovered inside the relay except `ConfigurationError`
under the `fatal` credential policy. None of them reaches the stream consumer
as a broken stream.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay failures."""

    kind = "relay_error"


class EnrichmentTimeout(RelayError):
    """Retrieval collaborator did not answer within the enrichment budget."""

    kind = "enrichment_timeout"


class ConfigurationError(RelayError):
    """Relay cannot reach the upstream because a credential is missing."""

    kind = "configuration_error"


class UpstreamError(RelayError):
    """Non-2xx or unreachable upstream completion provider."""

    kind = "upstream_error"

    def __init__(self, message: str, *, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class CapacityError(UpstreamError):
    """Upstream signalled transient overload; one non-streaming retry is allowed."""

    kind = "capacity_error"


class GenericUpstreamError(UpstreamError):
    """Any other upstream failure (auth, malformed request, 5xx, unreachable)."""

    kind = "generic_upstream_error"


class StreamInterrupted(RelayError):
    """Upstream stream broke off before the completion sentinel."""

    kind = "stream_interrupted"


class InvalidTransition(RuntimeError):
    """A relay session was asked to move along an edge its state machine lacks."""
