"""
Polling synchronizer for the open group.

One session at a time. Opening a group fetches its messages immediately and
then on a fixed period; a tick that comes due while the previous fetch is
still pending is skipped. Results are applied only while the session that
issued them is still the open one.
"""

import asyncio
import itertools
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from .api_client import APIClient
from .config import settings
from .error_handler import ErrorHandler
from .errors import AuthExpiredError, GatewayError, NoOpenGroupError, NotMemberError, SyncError
from .membership import MembershipRegistry
from .models import Message
from .session_manager import AuthGate

logger = logging.getLogger(__name__)

SYNC_MODES = ("replace", "merge")


class SessionState(str, Enum):
    CLOSED = "closed"
    OPENING = "opening"
    ACTIVE = "active"


class GroupSession:
    """The open group: its messages and its poll timer"""

    def __init__(self, session_id: int, group_id: str):
        self.session_id = session_id
        self.group_id = group_id
        self.state = SessionState.OPENING
        self.messages: List[Message] = []
        self.poll_handle: Optional[asyncio.Task] = None
        self.in_flight = False
        self.sending = False
        self.fetch_count = 0
        # Bumped whenever a send settles; a fetch issued before that is stale
        self.revision = 0
        self.fetch_revision = 0

    def mark_changed(self):
        self.revision += 1

    def __repr__(self):
        return f"<GroupSession {self.session_id} group={self.group_id} state={self.state.value}>"


def _dedupe(messages: List[Message]) -> List[Message]:
    seen: Set[str] = set()
    unique = []
    for message in messages:
        if message.id in seen:
            continue
        seen.add(message.id)
        unique.append(message)
    return unique


class PollingSynchronizer:
    def __init__(self, api: APIClient, registry: MembershipRegistry, errors: ErrorHandler,
                 gate: Optional[AuthGate] = None, interval: Optional[float] = None,
                 mode: Optional[str] = None, page_size: Optional[int] = None,
                 on_change: Optional[Callable[[], None]] = None):
        self.api = api
        self.registry = registry
        self.errors = errors
        self.gate = gate or AuthGate()
        self.interval = interval if interval is not None else settings.POLL_INTERVAL_SECONDS
        self.mode = mode or settings.SYNC_MODE
        if self.mode not in SYNC_MODES:
            raise ValueError(f"Unknown sync mode: {self.mode}")
        self.page_size = page_size or settings.MESSAGE_PAGE_SIZE
        self.on_change = on_change

        self.session: Optional[GroupSession] = None
        self._session_ids = itertools.count(1)
        self._ticks: Set[asyncio.Task] = set()

    @property
    def group_id(self) -> Optional[str]:
        return self.session.group_id if self.session else None

    def is_current(self, session: GroupSession) -> bool:
        return self.session is session and session.state is not SessionState.CLOSED

    async def open(self, group_id: str) -> GroupSession:
        """
        Make group_id the open group and start polling it.

        The first fetch is issued immediately and awaited. A failed first
        fetch is recorded as a SyncError; the session stays OPENING and the
        timer keeps trying.

        Raises:
            NotMemberError: the user has not joined group_id (nothing changes)
            AuthExpiredError: the credential expired
        """
        if not self.registry.is_member(group_id):
            raise NotMemberError(group_id)
        self.gate.check()

        self.close()
        session = GroupSession(next(self._session_ids), group_id)
        self.session = session
        self._begin_fetch(session)
        session.poll_handle = asyncio.ensure_future(self._run_timer(session))
        logger.info("Opened group %s (session %s)", group_id, session.session_id)
        self._changed()

        try:
            await self._fetch(session)
        except AuthExpiredError:
            self.close(session)
            raise
        return session

    def close(self, session: Optional[GroupSession] = None):
        """Stop polling. With a session given, only close it if it is still open."""
        current = self.session
        if current is None or (session is not None and session is not current):
            return
        current.state = SessionState.CLOSED
        if current.poll_handle is not None:
            current.poll_handle.cancel()
            current.poll_handle = None
        self.session = None
        logger.info("Closed group %s (session %s)", current.group_id, current.session_id)
        self._changed()

    def close_if(self, group_id: str):
        if self.group_id == group_id:
            self.close()

    async def poll_now(self) -> bool:
        """Immediate tick. Returns False when skipped or failed."""
        session = self.session
        if session is None:
            raise NoOpenGroupError()
        self.gate.check()
        if not self._begin_fetch(session):
            return False
        try:
            return await self._fetch(session)
        except AuthExpiredError:
            self.close(session)
            raise

    async def aclose(self):
        """Teardown: close the session and drop ticks still in flight"""
        self.close()
        for task in list(self._ticks):
            task.cancel()
        if self._ticks:
            await asyncio.gather(*list(self._ticks), return_exceptions=True)

    # Timer

    async def _run_timer(self, session: GroupSession):
        while True:
            await asyncio.sleep(self.interval)
            if not self.is_current(session):
                return
            if not self._begin_fetch(session):
                logger.debug("Tick skipped for %s: previous fetch still pending", session.group_id)
                continue
            task = asyncio.ensure_future(self._tick(session))
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)

    async def _tick(self, session: GroupSession):
        try:
            await self._fetch(session)
        except AuthExpiredError:
            logger.warning("Polling halted for %s: session expired", session.group_id)
            self.close(session)

    # Fetch / reconcile

    def _begin_fetch(self, session: GroupSession) -> bool:
        if session.in_flight:
            return False
        session.in_flight = True
        session.fetch_count += 1
        session.fetch_revision = session.revision
        return True

    async def _fetch(self, session: GroupSession) -> bool:
        """Run a fetch started by _begin_fetch; apply it if the session is still open"""
        limit = self.page_size if self.mode == "merge" else None
        try:
            messages = await self.api.list_messages(session.group_id, limit=limit)
        except GatewayError as e:
            if not self.is_current(session):
                logger.debug("Ignoring failed fetch for closed session %s", session.session_id)
                return False
            error = SyncError(session.group_id, e)
            self.errors.record("sync", error, level=logging.WARNING)
            self._changed()
            return False
        finally:
            session.in_flight = False

        if not self.is_current(session):
            logger.debug("Discarding messages for closed session %s", session.session_id)
            return False

        self._apply(session, messages)
        if session.state is SessionState.OPENING:
            session.state = SessionState.ACTIVE
        self.errors.clear("sync")
        self._changed()
        return True

    def _apply(self, session: GroupSession, fetched: List[Message]):
        pending = [m for m in session.messages if m.pending]
        stale = session.fetch_revision != session.revision

        if self.mode == "merge" or stale:
            if stale:
                logger.debug("Fetch for %s predates a local send; merging by id", session.group_id)
            by_id: Dict[str, Message] = {m.id: m for m in session.messages if not m.pending}
            for message in fetched:
                by_id[message.id] = message
            # sorted() is stable, so equal timestamps keep arrival order
            confirmed = sorted(by_id.values(), key=lambda m: m.created_at)
        else:
            confirmed = _dedupe(fetched)

        # Optimistic entries stay visible until their send resolves
        session.messages = confirmed + pending

    def _changed(self):
        if self.on_change:
            self.on_change()
