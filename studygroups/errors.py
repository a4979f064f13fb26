"""
Error taxonomy for the group chat client.

Precondition errors are raised synchronously and never reach the gateway.
Everything that comes back from the network is wrapped into the error of
the component that issued the request.
"""

from typing import Optional


class StudyGroupsError(Exception):
    """Base class for all client errors"""


# Gateway / transport

class GatewayError(StudyGroupsError):
    """A portal request failed (HTTP status, timeout or connection error)"""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail or message


class MalformedResponseError(GatewayError):
    """The portal answered with a payload that does not match the expected shape"""


class AuthExpiredError(StudyGroupsError):
    """The bearer credential is expired or was rejected; re-authentication is required"""

    def __init__(self, message: str = "Session expired. Please log in again."):
        super().__init__(message)


# Component errors

class _CausedError(StudyGroupsError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class CatalogError(_CausedError):
    """Loading the group catalog failed"""

    def __init__(self, cause: Optional[BaseException] = None):
        super().__init__(f"Failed to load groups: {cause}", cause)


class MembershipError(_CausedError):
    """A join or leave request was rejected or could not be delivered"""

    def __init__(self, group_id: str, cause: Optional[BaseException] = None, action: str = "update membership"):
        super().__init__(f"Failed to {action} for group {group_id}: {cause}", cause)
        self.group_id = group_id
        self.action = action


class SyncError(_CausedError):
    """A single poll tick failed. Polling keeps running."""

    def __init__(self, group_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Failed to load messages for group {group_id}: {cause}", cause)
        self.group_id = group_id


class SendError(_CausedError):
    """Sending a message failed; the optimistic entry was rolled back"""

    def __init__(self, group_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Failed to send message to group {group_id}: {cause}", cause)
        self.group_id = group_id


# Preconditions (caller bugs, never retried)

class PreconditionError(StudyGroupsError):
    """An action was invoked in a state that does not allow it"""


class NotMemberError(PreconditionError):
    def __init__(self, group_id: str):
        super().__init__(f"You must join group {group_id} first")
        self.group_id = group_id


class AlreadyMemberError(PreconditionError):
    def __init__(self, group_id: str):
        super().__init__(f"You are already a member of group {group_id}")
        self.group_id = group_id


class SendInProgressError(PreconditionError):
    def __init__(self, group_id: str):
        super().__init__(f"A message to group {group_id} is still being sent")
        self.group_id = group_id


class InvalidMessageError(PreconditionError):
    """Message text is empty or exceeds the character limit"""


class NoOpenGroupError(PreconditionError):
    def __init__(self, group_id: Optional[str] = None):
        if group_id:
            super().__init__(f"Group {group_id} is not the open group")
        else:
            super().__init__("No group is open")
        self.group_id = group_id
