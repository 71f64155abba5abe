"""Custom exception hierarchy for ventsync."""

from __future__ import annotations


class VentSyncError(Exception):
    """Base exception for all ventsync errors."""


class VentSyncConfigError(VentSyncError):
    """Invalid or missing configuration."""


class MalformedMessageError(VentSyncError):
    """A bus payload could not be parsed into its topic's message type.

    Handlers discard the message; no state changes.
    """

    def __init__(self, message: str, *, topic: str = "") -> None:
        self.topic = topic
        super().__init__(message)


class StoreError(VentSyncError):
    """Durable store request failed (HTTP status, API error, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str = "",
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.code = code
        self.endpoint = endpoint
        super().__init__(message)

    @property
    def is_outage(self) -> bool:
        """Whether the failure looks like a network/service outage.

        Timeouts and 5xx count; schema or permission errors (4xx) do not,
        since they say nothing about whether the bridge path is alive.
        """
        if self.status_code is None or self.status_code == 0:
            return True
        return self.status_code == 408 or self.status_code >= 500


class StoreUnavailableError(StoreError):
    """Store could not be reached at all (DNS, connection refused, timeout)."""
