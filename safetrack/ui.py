"""UI surface consumed by the tracking core.

The core never renders anything itself; it calls these hooks. A silent
panic is expressed by the core *not* calling any of them.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from safetrack.sessions.models import CheckStatus

logger = logging.getLogger(__name__)

CHECK_RESPONSE_TEXT = {
    CheckStatus.OK: "Your contact confirmed that everything is fine.",
    CheckStatus.DANGER: (
        "ALERT: your contact signalled that you may be in danger. "
        "Consider calling emergency services or using the panic button."
    ),
}


@runtime_checkable
class TrackingUI(Protocol):
    """Show/hide and field-population hooks the core calls."""

    def show_message(self, text: str, error: bool = False) -> None: ...

    def set_status(self, text: str) -> None: ...

    def set_busy(self, busy: bool) -> None: ...

    def show_tracking(self, active: bool) -> None: ...

    def show_link(self, url: str) -> None: ...

    def show_check_response(self, status: CheckStatus) -> None: ...

    def show_safety_prompt(self) -> None: ...

    def hide_safety_prompt(self) -> None: ...

    def is_safety_prompt_visible(self) -> bool: ...

    def hide_emergency_action(self) -> None: ...

    def any_modal_open(self) -> bool: ...

    def render_contacts(self, contacts: list[Any]) -> None: ...


class ConsoleUI:
    """Logging-backed UI for headless hosts and the CLI."""

    def __init__(self) -> None:
        self.prompt_visible = False
        self.tracking = False

    def show_message(self, text: str, error: bool = False) -> None:
        logger.log(logging.ERROR if error else logging.INFO, "[message] %s", text)

    def set_status(self, text: str) -> None:
        logger.info("[status] %s", text)

    def set_busy(self, busy: bool) -> None:
        logger.debug("[busy] %s", busy)

    def show_tracking(self, active: bool) -> None:
        self.tracking = active
        logger.info("[tracking] %s", "in progress" if active else "stopped")

    def show_link(self, url: str) -> None:
        logger.info("[link] %s", url)

    def show_check_response(self, status: CheckStatus) -> None:
        logger.info("[check] %s", CHECK_RESPONSE_TEXT.get(status, status.value))

    def show_safety_prompt(self) -> None:
        self.prompt_visible = True
        logger.info("[prompt] Are you OK?")

    def hide_safety_prompt(self) -> None:
        self.prompt_visible = False

    def is_safety_prompt_visible(self) -> bool:
        return self.prompt_visible

    def hide_emergency_action(self) -> None:
        pass

    def any_modal_open(self) -> bool:
        return False

    def render_contacts(self, contacts: list[Any]) -> None:
        if not contacts:
            logger.info("[contacts] No trusted contacts added.")
        for contact in contacts:
            logger.info("[contacts] %s (%s)", contact.name, contact.detail)
