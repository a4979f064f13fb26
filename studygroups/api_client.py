"""
API Client for the Student Portal group chat endpoints
Handles HTTP requests to the portal with bearer auth, typed errors and payload validation.
"""

import logging
from typing import Optional, Dict, Any, List

import httpx
from pydantic import TypeAdapter, ValidationError

from .config import settings
from .errors import AuthExpiredError, GatewayError, MalformedResponseError
from .models import Group, Message
from .session_manager import SessionManager

logger = logging.getLogger(__name__)

_GROUP_LIST = TypeAdapter(List[Group])
_MESSAGE_LIST = TypeAdapter(List[Message])


def _unwrap(payload: Any) -> Any:
    """Portal responses come as {success, data, message}; older routes return the bare payload"""
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


def _error_detail(response: httpx.Response) -> str:
    try:
        error_data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(error_data, dict):
        return str(error_data.get("message") or error_data.get("error") or error_data.get("detail") or error_data)
    return str(error_data)


def _parse(adapter: TypeAdapter, data: Any, what: str):
    try:
        return adapter.validate_python(data)
    except ValidationError as e:
        logger.error("Malformed %s payload: %s", what, e)
        raise MalformedResponseError(f"Malformed {what} payload ({e.error_count()} errors)") from e


class APIClient:
    """HTTP client for the portal groups API"""

    def __init__(self, base_url: Optional[str] = None, session: Optional[SessionManager] = None,
                 client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip('/')
        self.session = session

        if client is not None:
            self.client = client
        else:
            timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS
            self.client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout, connect=15.0),
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20, keepalive_expiry=30.0),
            )

    async def aclose(self):
        await self.client.aclose()

    def _get_headers(self, auth: bool = True) -> Dict[str, str]:
        """Get request headers with auth token"""
        headers = {"Content-Type": "application/json"}
        if auth and self.session is not None:
            # Raises AuthExpiredError: never call the portal with a dead credential
            headers.update(self.session.auth_headers())
        return headers

    async def _request(self, method: str, path: str, auth: bool = True, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        headers = self._get_headers(auth)

        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("%s %s timed out: %s", method, path, e)
            raise GatewayError("Request timeout. Please check your internet connection.") from e
        except httpx.ConnectError as e:
            logger.warning("%s %s connection error: %s", method, path, e)
            raise GatewayError(f"Cannot connect to server at {self.base_url}. Server might be down.") from e
        except httpx.HTTPError as e:
            logger.warning("%s %s transport error: %s", method, path, e)
            raise GatewayError(f"Request failed: {e}") from e

        logger.debug("%s %s -> %s", method, path, response.status_code)

        if response.status_code == 401:
            if self.session is not None:
                self.session.expire(f"{method} {path} returned 401")
            raise AuthExpiredError()

        if response.status_code >= 400:
            detail = _error_detail(response)
            raise GatewayError(
                f"{method} {path} failed ({response.status_code}): {detail}",
                status_code=response.status_code,
                detail=detail,
            )

        if response.status_code == 204 or not response.content:
            return None

        try:
            return _unwrap(response.json())
        except ValueError as e:
            raise MalformedResponseError(f"{method} {path} returned invalid JSON") from e

    # Group endpoints

    async def list_groups(self) -> List[Group]:
        """List all groups with the caller's membership flag"""
        data = await self._request("GET", "/api/groups")
        return _parse(_GROUP_LIST, data, "group list")

    async def get_group(self, group_id: str) -> Group:
        data = await self._request("GET", f"/api/groups/{group_id}")
        return _parse(TypeAdapter(Group), data, "group")

    async def join_group(self, group_id: str) -> None:
        await self._request("POST", f"/api/groups/{group_id}/join")

    async def leave_group(self, group_id: str) -> None:
        await self._request("POST", f"/api/groups/{group_id}/leave")

    # Message endpoints

    async def list_messages(self, group_id: str, limit: Optional[int] = None) -> List[Message]:
        """Messages of a group, oldest first"""
        params = {"limit": limit} if limit else None
        data = await self._request("GET", f"/api/groups/{group_id}/messages", params=params)
        return _parse(_MESSAGE_LIST, data, "message list")

    async def create_message(self, group_id: str, content: str) -> Message:
        data = await self._request("POST", f"/api/groups/{group_id}/messages", json={"content": content})
        return _parse(TypeAdapter(Message), data, "message")

    async def health(self) -> Dict[str, Any]:
        """Groups service health; does not need a credential"""
        data = await self._request("GET", "/api/groups/health", auth=False)
        return data or {}
