"""
Group catalog loader.

Holds the last good snapshot of the group list. Every fetch takes a request
token; only the response for the most recently issued token is applied.
"""

import logging
from typing import Callable, Dict, List, Optional

from .api_client import APIClient
from .error_handler import ErrorHandler
from .errors import CatalogError, GatewayError
from .models import Group
from .session_manager import AuthGate

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[List[Group]], None]


class GroupCatalog:
    def __init__(self, api: APIClient, errors: ErrorHandler, gate: Optional[AuthGate] = None):
        self.api = api
        self.errors = errors
        self.gate = gate or AuthGate()

        self._groups: List[Group] = []
        self._by_id: Dict[str, Group] = {}
        self._token = 0
        self._in_flight = 0
        self.loaded = False
        self.retry_count = 0
        self._listeners: List[SnapshotListener] = []

    @property
    def groups(self) -> List[Group]:
        return list(self._groups)

    @property
    def loading(self) -> bool:
        return self._in_flight > 0

    def get(self, group_id: str) -> Optional[Group]:
        return self._by_id.get(group_id)

    def on_snapshot(self, callback: SnapshotListener):
        self._listeners.append(callback)

    def invalidate(self) -> int:
        """Issue a new token so every response still in flight is ignored"""
        self._token += 1
        return self._token

    async def load(self) -> List[Group]:
        """
        Fetch the group list and replace the snapshot.

        Returns the current snapshot. A response superseded by a later
        refresh is dropped and the call returns whatever is current.

        Raises:
            CatalogError: the latest request failed; the previous snapshot is kept
            AuthExpiredError: the credential expired before or during the request
        """
        ticket = self.gate.check()
        token = self.invalidate()
        self._in_flight += 1
        try:
            groups = await self.api.list_groups()
        except GatewayError as e:
            if token != self._token:
                logger.debug("Ignoring failure of superseded catalog request %s", token)
                return self.groups
            error = CatalogError(e)
            self.errors.record("catalog", error)
            raise error from e
        finally:
            self._in_flight -= 1

        self.gate.verify(ticket)
        if token != self._token:
            logger.debug("Dropping stale catalog response %s (latest %s)", token, self._token)
            return self.groups

        self._apply(groups)
        self.retry_count = 0
        self.errors.clear("catalog")
        return self.groups

    async def refresh(self) -> List[Group]:
        """Manual refresh; safe to call while another load is pending"""
        return await self.load()

    async def retry(self) -> List[Group]:
        self.retry_count += 1
        logger.info("Retrying catalog load (attempt %s)", self.retry_count)
        return await self.load()

    def _apply(self, groups: List[Group]):
        self._groups = list(groups)
        self._by_id = {group.id: group for group in self._groups}
        self.loaded = True
        logger.info("Catalog updated: %s groups", len(self._groups))
        for callback in list(self._listeners):
            callback(self.groups)
