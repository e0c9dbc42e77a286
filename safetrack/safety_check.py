"""Wellbeing prompt cycle ("Are you OK?").

Every ``visible + hidden`` seconds the prompt is shown, unless another
modal is open or the gate is closed (no tracking, or panic active). A
shown prompt auto-hides after ``visible`` seconds without an answer.

Answers:
- yes: cancel the auto-hide, hide now, report a confirmation; cycle continues
- no: stop the cycle and report a denial (the tracker raises a silent
  panic; nothing on screen changes)

start() always stops a running cycle first; stop() is idempotent and
clears the loop task, the pending auto-hide, and the prompt.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from safetrack.config import settings
from safetrack.ui import TrackingUI

logger = logging.getLogger(__name__)


class SafetyCheckCycle:
    """Single-task cooperative prompt cycle."""

    def __init__(
        self,
        ui: TrackingUI,
        gate: Callable[[], bool],
        on_confirmed: Callable[[], Awaitable[None]],
        on_denied: Callable[[], Awaitable[None]],
        visible_seconds: float | None = None,
        hidden_seconds: float | None = None,
    ):
        self._ui = ui
        self._gate = gate
        self._on_confirmed = on_confirmed
        self._on_denied = on_denied
        self.visible_seconds = settings.check_visible_seconds if visible_seconds is None else visible_seconds
        self.hidden_seconds = settings.check_hidden_seconds if hidden_seconds is None else hidden_seconds
        self._task: asyncio.Task | None = None
        self._auto_hide: asyncio.TimerHandle | None = None
        self.shown_count = 0

    @property
    def period_seconds(self) -> float:
        return self.visible_seconds + self.hidden_seconds

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """(Re)start the cycle. Returns False when the gate is closed."""
        self.stop()
        if not self._gate():
            logger.info("Wellbeing cycle not started: gate closed (panic or no tracking)")
            return False
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug("Wellbeing cycle started (period %.1fs)", self.period_seconds)
        return True

    def stop(self) -> None:
        if self._task is not None:
            # Never cancel the task we are running in (a "no" answered from a tick)
            if self._task is not asyncio.current_task():
                self._task.cancel()
            self._task = None
        self._cancel_auto_hide()
        try:
            self._ui.hide_safety_prompt()
        except Exception:
            logger.error("Failed to hide wellbeing prompt", exc_info=True)

    async def _run(self) -> None:
        # Ends once stop() or a restart has detached this task
        while self._task is asyncio.current_task():
            self.tick()
            await asyncio.sleep(self.period_seconds)

    def tick(self) -> None:
        """Show the prompt if allowed and schedule its auto-hide."""
        if not self._gate():
            logger.debug("Wellbeing prompt skipped: gate closed")
            return
        if self._ui.any_modal_open():
            logger.debug("Wellbeing prompt skipped: another modal is open")
            return
        self._ui.show_safety_prompt()
        self.shown_count += 1
        self._cancel_auto_hide()
        self._auto_hide = asyncio.get_running_loop().call_later(self.visible_seconds, self._hide_unanswered)

    def _hide_unanswered(self) -> None:
        self._auto_hide = None
        if self._ui.is_safety_prompt_visible():
            self._ui.hide_safety_prompt()

    def _cancel_auto_hide(self) -> None:
        if self._auto_hide is not None:
            self._auto_hide.cancel()
            self._auto_hide = None

    async def answer(self, safe: bool) -> None:
        """Handle the user's answer to the prompt."""
        if safe:
            self._cancel_auto_hide()
            self._ui.hide_safety_prompt()
            await self._on_confirmed()
        else:
            logger.info("Wellbeing prompt answered 'no'")
            self.stop()
            await self._on_denied()
