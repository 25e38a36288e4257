from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_QUIET_S = 3.0

TypingEmitter = Callable[[str, bool], None]
Submitter = Callable[[str, str], Optional[str]]


class Composer:
    """Draft state for the focused thread plus the outbound typing signal.

    ``typing=true`` goes out once per burst of edits; a quiet timer re-armed on
    every edit sends ``typing=false`` when the burst ends. Submitting, switching
    threads or closing end the burst right away.
    """

    def __init__(
        self,
        emit_typing: TypingEmitter,
        submit_message: Submitter,
        *,
        quiet_s: float = DEFAULT_QUIET_S,
    ) -> None:
        self._emit_typing = emit_typing
        self._submit_message = submit_message
        self._quiet_s = quiet_s
        self.thread_id: Optional[str] = None
        self.draft = ""
        self._typing = False
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def is_typing(self) -> bool:
        return self._typing

    def update(self, text: str) -> None:
        self.draft = text
        if self.thread_id is None:
            return
        if not text.strip():
            self._stop_typing()
            return
        if not self._typing:
            self._typing = True
            self._emit(self.thread_id, True)
        self._arm_timer()

    def submit(self, text: Optional[str] = None) -> Optional[str]:
        """Hand ``text`` (the draft by default) to the send pipeline; returns its ``client_msg_id``."""

        if text is None:
            text = self.draft
        if self.thread_id is None or not text.strip():
            return None
        self.draft = ""
        self._stop_typing()
        return self._submit_message(self.thread_id, text)

    def switch_thread(self, thread_id: Optional[str]) -> None:
        if thread_id == self.thread_id:
            return
        self._stop_typing()
        self.thread_id = thread_id
        self.draft = ""

    def close(self) -> None:
        self._stop_typing()
        self.thread_id = None

    def _arm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._quiet_s, self._on_quiet)

    def _on_quiet(self) -> None:
        self._timer = None
        self._stop_typing()

    def _stop_typing(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._typing and self.thread_id is not None:
            self._typing = False
            self._emit(self.thread_id, False)
        self._typing = False

    def _emit(self, thread_id: str, is_typing: bool) -> None:
        try:
            self._emit_typing(thread_id, is_typing)
        except Exception:
            logger.exception("typing emitter failed", extra={"thread_id": thread_id})
