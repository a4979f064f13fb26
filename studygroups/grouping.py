"""Display grouping of consecutive messages from the same author."""

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Tuple

from .config import settings
from .models import Message, MessageAuthor, UNKNOWN_USER


@dataclass
class Run:
    """Consecutive messages rendered under a single author header"""
    messages: List[Message] = field(default_factory=list)

    @property
    def author(self) -> MessageAuthor:
        return self.messages[0].author

    @property
    def started_at(self):
        return self.messages[0].created_at

    def slots(self) -> Iterator[Tuple[Message, bool]]:
        """(message, show_header) pairs; only the first slot carries the header"""
        for index, message in enumerate(self.messages):
            yield message, index == 0


def _gap_ms(previous: Message, current: Message) -> float:
    return (current.created_at - previous.created_at).total_seconds() * 1000


def group_messages(messages: Sequence[Message], gap_ms: Optional[int] = None) -> List[Run]:
    """
    Cluster messages into runs.

    Two adjacent messages share a run when they have the same author and
    the second was created strictly less than gap_ms after the first.
    """
    if gap_ms is None:
        gap_ms = settings.RUN_GAP_MS

    runs: List[Run] = []
    previous = None
    for message in messages:
        if (
            previous is not None
            and previous.author.id == message.author.id
            and _gap_ms(previous, message) < gap_ms
        ):
            runs[-1].messages.append(message)
        else:
            runs.append(Run(messages=[message]))
        previous = message
    return runs


def avatar_initial(display_name: str) -> str:
    if not display_name or display_name == UNKNOWN_USER:
        return "U"
    return display_name.strip()[:1].upper() or "U"
