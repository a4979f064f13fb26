"""
Group chat engine.

Owns every piece of group chat state and exposes one command per user
action. Presentation code reads the properties and re-renders when a
subscribed callback fires.
"""

import asyncio
import logging
from typing import Callable, Dict, FrozenSet, List, Optional

from .api_client import APIClient
from .catalog import GroupCatalog
from .config import settings
from .error_handler import ErrorHandler
from .errors import AuthExpiredError, NoOpenGroupError, NotMemberError, StudyGroupsError
from .grouping import Run, group_messages
from .membership import MembershipRegistry
from .models import Group, Message
from .sender import ComposeDraft, SendPipeline
from .session_manager import AuthGate, SessionManager
from .sync import GroupSession, PollingSynchronizer, SessionState

logger = logging.getLogger(__name__)

Observer = Callable[["GroupChatEngine"], None]


class GroupChatEngine:
    def __init__(self, api: APIClient, session: SessionManager, interval: Optional[float] = None,
                 mode: Optional[str] = None, page_size: Optional[int] = None,
                 char_limit: Optional[int] = None, gap_ms: Optional[int] = None):
        self.api = api
        self.session = session
        self.gap_ms = gap_ms if gap_ms is not None else settings.RUN_GAP_MS

        self.errors = ErrorHandler()
        self.gate = AuthGate(session)
        self.catalog = GroupCatalog(api, self.errors, gate=self.gate)
        self.registry = MembershipRegistry(api, self.catalog, self.errors, gate=self.gate, on_change=self._notify)
        self.sync = PollingSynchronizer(
            api, self.registry, self.errors, gate=self.gate,
            interval=interval, mode=mode, page_size=page_size, on_change=self._notify,
        )
        self.draft = ComposeDraft(char_limit)
        self.sender = SendPipeline(
            api, self.sync, self.draft, self.errors, gate=self.gate,
            limit=char_limit, on_change=self._notify,
        )

        self.catalog.on_snapshot(lambda groups: self._notify())
        self.registry.before_leave(self.sync.close_if)
        session.on_expired(self._on_auth_expired)
        session.on_renewed(self._on_auth_renewed)

        self._observers: List[Observer] = []
        self._resume_group_id: Optional[str] = None
        self._resume_task: Optional[asyncio.Task] = None

    # Observable state

    @property
    def groups(self) -> List[Group]:
        return self.catalog.groups

    @property
    def memberships(self) -> FrozenSet[str]:
        return self.registry.members()

    @property
    def open_session(self) -> Optional[GroupSession]:
        return self.sync.session

    @property
    def open_group_id(self) -> Optional[str]:
        return self.sync.group_id

    @property
    def open_group(self) -> Optional[Group]:
        group_id = self.sync.group_id
        return self.catalog.get(group_id) if group_id else None

    @property
    def sync_state(self) -> SessionState:
        return self.sync.session.state if self.sync.session else SessionState.CLOSED

    @property
    def messages(self) -> List[Message]:
        return list(self.sync.session.messages) if self.sync.session else []

    @property
    def runs(self) -> List[Run]:
        return group_messages(self.messages, self.gap_ms)

    @property
    def sending(self) -> bool:
        return bool(self.sync.session and self.sync.session.sending)

    @property
    def auth_expired(self) -> bool:
        return self.gate.halted

    def latest_errors(self) -> Dict[str, StudyGroupsError]:
        return self.errors.latest_errors()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)
        return lambda: self._observers.remove(observer)

    def _notify(self):
        for observer in list(self._observers):
            observer(self)

    # Commands

    async def refresh(self) -> List[Group]:
        try:
            return await self.catalog.refresh()
        finally:
            self._notify()

    async def retry(self) -> List[Group]:
        try:
            return await self.catalog.retry()
        finally:
            self._notify()

    async def open(self, group_id: str) -> GroupSession:
        if not self.registry.is_member(group_id):
            raise NotMemberError(group_id)
        self.gate.check()
        if self.draft.group_id != group_id:
            self.draft.reset(group_id)
        return await self.sync.open(group_id)

    def close(self):
        """Navigate away from the open group"""
        self.sync.close()

    async def join(self, group_id: str):
        await self.registry.join(group_id)

    async def leave(self, group_id: str):
        await self.registry.leave(group_id)

    def set_draft(self, text: str):
        self.draft.set_text(text)
        self._notify()

    async def send(self, text: Optional[str] = None) -> Message:
        """Send text (or the current draft) to the open group"""
        self.gate.check()
        group_id = self.sync.group_id
        if group_id is None:
            raise NoOpenGroupError()
        if self.session.user is None:
            raise AuthExpiredError("No user is logged in")
        if text is None:
            text = self.draft.text
        return await self.sender.send(group_id, text, self.session.user)

    async def resume(self) -> Optional[GroupSession]:
        """Reopen the group that was open when the session expired"""
        group_id, self._resume_group_id = self._resume_group_id, None
        if group_id is None or not self.registry.is_member(group_id):
            return None
        logger.info("Resuming group %s after re-authentication", group_id)
        return await self.open(group_id)

    async def shutdown(self):
        if self._resume_task is not None:
            self._resume_task.cancel()
        self.registry.cancel_background()
        await self.sync.aclose()
        self._observers.clear()

    # Session signals

    def _on_auth_expired(self):
        if self.sync.group_id is not None:
            self._resume_group_id = self.sync.group_id
        self.sync.close()
        self.errors.record("auth", AuthExpiredError(), level=logging.WARNING)
        self._notify()

    def _on_auth_renewed(self):
        self.errors.clear("auth")
        self._notify()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Session renewed outside the event loop; call resume() to reopen")
            return
        self._resume_task = loop.create_task(self._resume_quietly())

    async def _resume_quietly(self):
        try:
            await self.resume()
        except StudyGroupsError as e:
            logger.warning("Could not reopen group after re-authentication: %s", e)
