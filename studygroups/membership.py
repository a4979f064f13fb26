"""
Membership registry: the set of groups the current user belongs to.

Derived from the catalog's isMember flags and updated locally as soon as a
join or leave succeeds; a background catalog refresh reconciles later.
"""

import asyncio
import logging
from typing import Callable, FrozenSet, List, Optional, Set

from .api_client import APIClient
from .catalog import GroupCatalog
from .error_handler import ErrorHandler
from .errors import (
    AlreadyMemberError,
    AuthExpiredError,
    CatalogError,
    GatewayError,
    MembershipError,
    NotMemberError,
)
from .models import Group
from .session_manager import AuthGate

logger = logging.getLogger(__name__)


class MembershipRegistry:
    def __init__(self, api: APIClient, catalog: GroupCatalog, errors: ErrorHandler,
                 gate: Optional[AuthGate] = None, on_change: Optional[Callable[[], None]] = None):
        self.api = api
        self.catalog = catalog
        self.errors = errors
        self.gate = gate or AuthGate()
        self.on_change = on_change

        self._member_ids: Set[str] = set()
        self._before_leave: List[Callable[[str], None]] = []
        self._background: Set[asyncio.Task] = set()

        catalog.on_snapshot(self._sync_from_catalog)

    def is_member(self, group_id: str) -> bool:
        return group_id in self._member_ids

    def members(self) -> FrozenSet[str]:
        return frozenset(self._member_ids)

    def before_leave(self, hook: Callable[[str], None]):
        """Hooks run synchronously before the leave request is sent"""
        self._before_leave.append(hook)

    async def join(self, group_id: str):
        if self.is_member(group_id):
            raise AlreadyMemberError(group_id)
        ticket = self.gate.check()

        logger.info("Joining group %s", group_id)
        try:
            await self.api.join_group(group_id)
        except GatewayError as e:
            error = MembershipError(group_id, e, action="join")
            self.errors.record("membership", error)
            raise error from e
        self.gate.verify(ticket)

        self._member_ids.add(group_id)
        self._after_mutation()

    async def leave(self, group_id: str):
        if not self.is_member(group_id):
            raise NotMemberError(group_id)
        ticket = self.gate.check()

        # A left group must stop polling now, not after the request resolves
        for hook in list(self._before_leave):
            hook(group_id)

        logger.info("Leaving group %s", group_id)
        try:
            await self.api.leave_group(group_id)
        except GatewayError as e:
            error = MembershipError(group_id, e, action="leave")
            self.errors.record("membership", error)
            raise error from e
        self.gate.verify(ticket)

        self._member_ids.discard(group_id)
        self._after_mutation()

    async def wait_idle(self):
        """Wait for background catalog refreshes (tests, shutdown)"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def cancel_background(self):
        for task in list(self._background):
            task.cancel()

    def _after_mutation(self):
        self.errors.clear("membership")
        # Catalog responses issued before the mutation must not overwrite it
        self.catalog.invalidate()
        task = asyncio.ensure_future(self._background_refresh())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        self._changed()

    async def _background_refresh(self):
        try:
            await self.catalog.refresh()
        except CatalogError as e:
            # Already recorded by the catalog; membership stays as updated locally
            logger.warning("Background catalog refresh failed: %s", e)
        except AuthExpiredError:
            logger.warning("Background catalog refresh stopped: session expired")

    def _sync_from_catalog(self, groups: List[Group]):
        self._member_ids = {group.id for group in groups if group.is_member}
        self._changed()

    def _changed(self):
        if self.on_change:
            self.on_change()
