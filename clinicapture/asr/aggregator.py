from __future__ import annotations

import logging
from typing import Callable, List, Optional

from ..internal_core.contracts import TranscriptSegment, TranscriptSource

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[str, str], None]
CompleteCallback = Callable[[str], None]


class TranscriptAggregator:
    """Single writer of the encounter transcript.

    One source owns a session. Streaming finals are appended, a batch final
    replaces the text. Interim text is a separate view that the next final
    clears. `complete()` fires the completion callbacks once per session.
    """

    def __init__(self) -> None:
        self._mode: Optional[TranscriptSource] = None
        self._finals: List[str] = []
        self._interim = ""
        self._completed = False
        self._update_subs: List[UpdateCallback] = []
        self._complete_subs: List[CompleteCallback] = []

    @property
    def mode(self) -> Optional[TranscriptSource]:
        return self._mode

    @property
    def text(self) -> str:
        return " ".join(t for t in self._finals if t).strip()

    @property
    def interim(self) -> str:
        return self._interim

    @property
    def display_text(self) -> str:
        return " ".join(t for t in (self.text, self._interim) if t)

    @property
    def completed(self) -> bool:
        return self._completed

    def on_update(self, cb: UpdateCallback) -> None:
        self._update_subs.append(cb)

    def on_complete(self, cb: CompleteCallback) -> None:
        self._complete_subs.append(cb)

    def begin_session(self, mode: TranscriptSource) -> None:
        self._mode = mode
        self._finals = []
        self._interim = ""
        self._completed = False

    def switch_source(self, mode: TranscriptSource) -> None:
        """Hand ownership to another source, keeping finals gathered so far."""
        if mode == self._mode:
            return
        logger.info("transcript source switched from=%s to=%s", self._mode, mode)
        self._mode = mode
        self._interim = ""

    def on_segment(self, segment: TranscriptSegment) -> bool:
        if self._mode is None or segment.source != self._mode:
            logger.debug("transcript segment ignored source=%s mode=%s", segment.source, self._mode)
            return False
        text = (segment.text or "").strip()
        if not segment.is_final:
            if self._completed:
                return False
            self._interim = text
        else:
            if segment.source == "streaming":
                if text:
                    self._finals.append(text)
            else:
                self._finals = [text] if text else []
            self._interim = ""
        self._notify_update()
        return True

    def complete(self, source: TranscriptSource, text: Optional[str] = None) -> bool:
        """Mark the transcript final. Returns True only for the first completion."""
        if source != self._mode:
            logger.debug("transcript completion ignored source=%s mode=%s", source, self._mode)
            return False
        if text is not None:
            cleaned = text.strip()
            self._finals = [cleaned] if cleaned else []
        self._interim = ""
        if self._completed:
            self._notify_update()
            return False
        self._completed = True
        final_text = self.text
        self._notify_update()
        for cb in list(self._complete_subs):
            try:
                cb(final_text)
            except Exception:
                logger.exception("transcript completion subscriber failed")
        return True

    def _notify_update(self) -> None:
        text, interim = self.text, self._interim
        for cb in list(self._update_subs):
            try:
                cb(text, interim)
            except Exception:
                logger.exception("transcript update subscriber failed")
