"""Relay protocol — best-effort out-of-band alert egress.

- Each relay implements send(recipient, message) and reports a SendResult
- Relays never raise: transport errors become failed results
- A successful result means the relay accepted the request, not that the
  recipient read it (recipients must opt in to the relay out-of-band)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class NotificationMessage:
    """A text alert ready for dispatch."""
    body: str
    event_type: str = "tracking_started"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SendResult:
    """Result of one relay attempt."""
    success: bool
    channel_id: str
    recipient: str = ""
    error: str = ""
    response_text: str = ""


@runtime_checkable
class Relay(Protocol):
    """Protocol for notification relays."""

    @property
    def channel_id(self) -> str:
        """Unique identifier for this relay."""
        ...

    @property
    def channel_type(self) -> str:
        """Kind of relay (handle, phone)."""
        ...

    @property
    def is_configured(self) -> bool:
        """Whether the relay has what it needs to send."""
        ...

    async def send(self, recipient: str, message: NotificationMessage) -> SendResult:
        """Send ``message`` to ``recipient``. Never raises."""
        ...
