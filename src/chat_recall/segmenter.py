"""Dialog segmentation and overlapping window construction.

A conversation is cut into dialogs wherever two consecutive messages are
further apart than the configured gap. Each dialog then yields one or more
windows of between ``min_window_size`` and ``max_window_size`` messages:

- a dialog that already fits becomes a single window;
- a longer dialog is covered by windows of ``max_window_size`` messages
  advancing by ``window_step``, plus one tail window over the last
  ``max_window_size`` messages when the sliding windows leave some of
  them uncovered;
- a dialog shorter than ``min_window_size`` produces nothing.

Windows are keyed by their center message, which is always the element at
``len(window) // 2``. The same input therefore always produces the same
keys and member sets.
"""

from collections.abc import Iterable, Sequence
from datetime import timedelta

from chat_recall.config import SegmenterConfig
from chat_recall.logging import get_logger
from chat_recall.models import Message, Window

logger = get_logger("segmenter")


def render_window_text(messages: Iterable[Message]) -> str:
    """Join member messages as ``author: text`` lines."""
    return "\n".join(m.rendered for m in messages).strip()


class DialogSegmenter:
    """Splits a chronological message stream into dialogs and windows."""

    def __init__(self, config: SegmenterConfig | None = None) -> None:
        self._config = config or SegmenterConfig()

    @property
    def config(self) -> SegmenterConfig:
        return self._config

    def is_substantive(self, message: Message) -> bool:
        """Whether a message carries enough text to be windowed."""
        return len(message.text.strip()) >= self._config.min_text_length

    def filter_messages(self, messages: Iterable[Message]) -> list[Message]:
        return [m for m in messages if self.is_substantive(m)]

    def segment(self, messages: Sequence[Message]) -> list[list[Message]]:
        """Split messages into dialogs on time gaps, in one left-to-right pass."""
        gap = timedelta(minutes=self._config.dialog_gap_minutes)
        dialogs: list[list[Message]] = []
        current: list[Message] = []

        for msg in messages:
            if current and msg.timestamp_utc - current[-1].timestamp_utc > gap:
                dialogs.append(current)
                current = []
            current.append(msg)

        if current:
            dialogs.append(current)

        return dialogs

    def windows_for_dialog(self, dialog: Sequence[Message]) -> list[Window]:
        cfg = self._config
        count = len(dialog)

        if count < cfg.min_window_size:
            return []

        if count <= cfg.max_window_size:
            return [_make_window(dialog)]

        windows = []
        last_start = 0
        for start in range(0, count - cfg.max_window_size + 1, cfg.window_step):
            windows.append(_make_window(dialog[start:start + cfg.max_window_size]))
            last_start = start

        # Tail-catch: the last messages were not reached by the step grid
        if last_start + cfg.max_window_size < count:
            windows.append(_make_window(dialog[-cfg.max_window_size:]))

        return windows

    def build_windows(
        self,
        messages: Sequence[Message],
        resume_after: int | None = None,
    ) -> list[Window]:
        """Build windows for one conversation.

        Args:
            messages: Time-ordered messages of a single conversation
            resume_after: Last center message ID already windowed; messages
                with IDs at or below it are ignored

        Returns:
            Windows in chronological order of their first member
        """
        if resume_after is not None:
            messages = [m for m in messages if m.message_id > resume_after]

        eligible = self.filter_messages(messages)
        if len(eligible) < self._config.min_window_size:
            return []

        dialogs = self.segment(eligible)
        windows = []
        for dialog in dialogs:
            windows.extend(self.windows_for_dialog(dialog))

        logger.debug(
            "Segmented messages: messages=%d dialogs=%d windows=%d",
            len(eligible),
            len(dialogs),
            len(windows),
        )
        return windows


def _make_window(members: Sequence[Message]) -> Window:
    center = members[len(members) // 2]
    return Window(
        conversation_id=center.conversation_id,
        center_message_id=center.message_id,
        start_message_id=members[0].message_id,
        end_message_id=members[-1].message_id,
        member_message_ids=tuple(m.message_id for m in members),
        window_text=render_window_text(members),
    )
