"""
Study group chat client: catalog, membership, polling sync and optimistic send
for the student portal's group chat.
"""

from .api_client import APIClient
from .engine import GroupChatEngine
from .errors import (
    AlreadyMemberError,
    AuthExpiredError,
    CatalogError,
    GatewayError,
    InvalidMessageError,
    MalformedResponseError,
    MembershipError,
    NoOpenGroupError,
    NotMemberError,
    PreconditionError,
    SendError,
    SendInProgressError,
    StudyGroupsError,
    SyncError,
)
from .grouping import Run, group_messages
from .models import Group, Message, MessageAuthor
from .session_manager import SessionManager

__version__ = "1.0.0"
