"""
Optimistic send pipeline and the compose draft it feeds from.

A send shows up in the open group's list before the request is even issued.
Success swaps the pending entry for the server copy; failure removes it and
puts the typed text back into the draft.
"""

import itertools
import logging
from typing import Callable, List, Optional

from .api_client import APIClient
from .config import settings
from .error_handler import ErrorHandler
from .errors import (
    AuthExpiredError,
    GatewayError,
    InvalidMessageError,
    NoOpenGroupError,
    SendError,
    SendInProgressError,
)
from .models import Message, MessageAuthor
from .session_manager import AuthGate
from .sync import GroupSession, PollingSynchronizer

logger = logging.getLogger(__name__)


def code_units(text: str) -> int:
    """Length as the browser counts it: characters outside the BMP take two UTF-16 units"""
    return sum(2 if ord(char) > 0xFFFF else 1 for char in text)


def truncate_units(text: str, limit: int) -> str:
    """Cut text to at most limit UTF-16 units without splitting a surrogate pair"""
    units = 0
    for index, char in enumerate(text):
        units += 2 if ord(char) > 0xFFFF else 1
        if units > limit:
            return text[:index]
    return text


class ComposeDraft:
    """Text being typed for the open group"""

    def __init__(self, limit: Optional[int] = None):
        self.limit = limit or settings.MESSAGE_CHAR_LIMIT
        self.group_id: Optional[str] = None
        self.text = ""

    @property
    def remaining(self) -> int:
        return self.limit - code_units(self.text)

    def set_text(self, text: str):
        # Same as the input's maxLength: extra characters are dropped
        self.text = truncate_units(text or "", self.limit)

    def clear(self):
        self.text = ""

    def restore(self, text: str):
        self.text = text

    def reset(self, group_id: Optional[str]):
        """Scope the draft to another group"""
        self.group_id = group_id
        self.text = ""


class SendPipeline:
    def __init__(self, api: APIClient, sync: PollingSynchronizer, draft: ComposeDraft,
                 errors: ErrorHandler, gate: Optional[AuthGate] = None, limit: Optional[int] = None,
                 on_change: Optional[Callable[[], None]] = None):
        self.api = api
        self.sync = sync
        self.draft = draft
        self.errors = errors
        self.gate = gate or AuthGate()
        self.limit = limit or settings.MESSAGE_CHAR_LIMIT
        self.on_change = on_change
        self._local_ids = itertools.count(1)

    def validate(self, session: GroupSession, text: str) -> str:
        """Return the content to send, or raise a precondition error"""
        content = (text or "").strip()
        if not content:
            raise InvalidMessageError("Message cannot be empty")
        if code_units(text) > self.limit:
            raise InvalidMessageError(f"Message cannot exceed {self.limit} characters")
        if session.sending:
            raise SendInProgressError(session.group_id)
        return content

    async def send(self, group_id: str, text: str, author: MessageAuthor) -> Message:
        """
        Send text to the open group.

        Raises:
            NoOpenGroupError, InvalidMessageError, SendInProgressError: before any state change
            SendError: the portal rejected the message; list and draft are rolled back
            AuthExpiredError: the session expired before the send was confirmed
        """
        session = self.sync.session
        if session is None or session.group_id != group_id:
            raise NoOpenGroupError(group_id)
        content = self.validate(session, text)
        ticket = self.gate.check()

        session.sending = True
        if self.draft.group_id == group_id:
            self.draft.clear()
        pending = Message.optimistic(f"local-{next(self._local_ids)}", content, author)
        session.messages = session.messages + [pending]
        self._changed()

        try:
            try:
                confirmed = await self.api.create_message(group_id, content)
                self.gate.verify(ticket)
            except GatewayError as e:
                self._rollback(session, pending, text)
                error = SendError(group_id, e)
                self.errors.record("send", error)
                raise error from e
            except AuthExpiredError:
                self._rollback(session, pending, text)
                raise
        finally:
            session.sending = False

        self._confirm(session, pending, confirmed)
        self.errors.clear("send")
        logger.info("Message %s sent to group %s", confirmed.id, group_id)
        return confirmed

    def _rollback(self, session: GroupSession, pending: Message, text: str):
        session.messages = [m for m in session.messages if m is not pending]
        session.mark_changed()
        if self.draft.group_id == session.group_id:
            self.draft.restore(text)
        self._changed()

    def _confirm(self, session: GroupSession, pending: Message, confirmed: Message):
        messages: List[Message] = list(session.messages)

        # The optimistic copy has no server id: match on content + author, oldest first
        index = next(
            (
                i for i, m in enumerate(messages)
                if m.pending and m.content == pending.content and m.author.id == pending.author.id
            ),
            None,
        )
        delivered = any(m.id == confirmed.id and not m.pending for m in messages)

        if index is not None:
            if delivered:
                # A poll already brought the server copy in
                del messages[index]
            else:
                messages[index] = confirmed
        elif not delivered:
            messages.append(confirmed)

        session.messages = messages
        session.mark_changed()
        self._changed()

    def _changed(self):
        if self.on_change:
            self.on_change()
