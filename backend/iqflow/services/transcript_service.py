# /iqflow/services/transcript_service.py

import re
from typing import Iterable, List, Optional

from iqflow.models.flow import Actor, ChatMessage, Widget

# Owns message identity and ordering for one session. Entries are immutable
# and only ever appended; ids are "msg-<n>" from a monotonically increasing counter.

_MESSAGE_ID = re.compile(r"^msg-(\d+)$")


def widget_contains(widget: Optional[Widget], widget_type: str) -> bool:
    """True if `widget` is, or a nested widget-stack holds, a widget of `widget_type`."""
    if widget is None:
        return False
    if widget.type == widget_type:
        return True
    if widget.type == "widget-stack":
        for child in widget.data.get("widgets", []):
            nested = child if isinstance(child, Widget) else Widget.model_validate(child)
            if widget_contains(nested, widget_type):
                return True
    return False


class TranscriptAccumulator:
    def __init__(self):
        self._messages: List[ChatMessage] = []
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def append(self, actor: Actor, message: str, widget: Optional[Widget] = None) -> Optional[ChatMessage]:
        """Appends a message. Returns None (and appends nothing) for an empty message without a widget."""
        if not message and widget is None:
            return None
        entry = ChatMessage(id=f"msg-{self._next_id}", actor=actor, message=message or "", widget=widget)
        self._next_id += 1
        self._messages.append(entry)
        return entry

    def adopt(self, messages: Iterable[ChatMessage]) -> bool:
        """
        Takes over a saved transcript and seeds the id counter past its
        highest id. Only an empty transcript can adopt.
        """
        if self._messages:
            return False
        adopted = list(messages)
        if not adopted:
            return False
        self._messages = adopted
        highest = len(adopted)
        for entry in adopted:
            match = _MESSAGE_ID.match(entry.id)
            if match:
                highest = max(highest, int(match.group(1)))
        self._next_id = highest + 1
        return True

    def contains_widget(self, widget_type: str) -> bool:
        return any(widget_contains(entry.widget, widget_type) for entry in self._messages)

    def clear(self):
        """Only used by an explicit session reset."""
        self._messages = []
        self._next_id = 1
