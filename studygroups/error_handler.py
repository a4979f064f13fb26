"""
Error handling utilities for the group chat client.
Provides centralized error tracking, logging setup, and user-facing messages.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from .errors import (
    AuthExpiredError,
    GatewayError,
    MalformedResponseError,
    PreconditionError,
    StudyGroupsError,
)

logger = logging.getLogger(__name__)

COMPONENTS = ("catalog", "membership", "sync", "send", "auth")
MAX_RECENT_ERRORS = 10


def configure_logging(debug: bool = False) -> logging.Logger:
    """Install a single stream handler on the package logger"""
    root = logging.getLogger("studygroups")
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '[%(asctime)s] [%(levelname)s] %(name)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)
    return root


def _root_cause(error: BaseException) -> BaseException:
    cause = getattr(error, "cause", None)
    while isinstance(cause, BaseException):
        error = cause
        cause = getattr(error, "cause", None)
    return error


def user_message(error: BaseException) -> str:
    """Map an error to the text shown in the error banner"""
    cause = _root_cause(error)

    if isinstance(cause, AuthExpiredError):
        return "Session expired. Please log in again."
    if isinstance(cause, PreconditionError):
        return str(cause)
    if isinstance(cause, MalformedResponseError):
        return "Unexpected response from server. Please try again later."
    if isinstance(cause, GatewayError):
        status = cause.status_code
        if status is None:
            return "Network error. Please check your internet connection."
        if status == 403:
            return "You don't have permission to perform this action."
        if status == 404:
            return "The requested group was not found."
        if status == 409:
            return cause.detail
        if status >= 500:
            return "Server error. Please try again later."
        return cause.detail

    return f"An error occurred: {str(error)[:100]}"


class ErrorHandler:
    """Keeps the latest error per component plus a short history"""

    def __init__(self):
        self.error_count = 0
        self.last_errors: List[Dict[str, Any]] = []  # Keep track of recent errors
        self._latest: Dict[str, StudyGroupsError] = {}

    def record(self, component: str, error: StudyGroupsError, level: int = logging.ERROR):
        """Store error as the latest for component and log it"""
        if component not in COMPONENTS:
            raise ValueError(f"Unknown component: {component}")

        self._latest[component] = error
        self.error_count += 1
        self.last_errors.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "component": component,
            "type": type(error).__name__,
            "message": str(error),
        })
        # Keep only last 10 errors
        if len(self.last_errors) > MAX_RECENT_ERRORS:
            self.last_errors.pop(0)

        logger.log(level, "[%s] %s: %s", component, type(error).__name__, error)

    def clear(self, component: str):
        self._latest.pop(component, None)

    def latest(self, component: str) -> Optional[StudyGroupsError]:
        return self._latest.get(component)

    def latest_errors(self) -> Dict[str, StudyGroupsError]:
        return dict(self._latest)

    def message_for(self, component: str) -> Optional[str]:
        error = self._latest.get(component)
        return user_message(error) if error else None

    def get_error_summary(self) -> Dict[str, Any]:
        """Get summary of recent errors for debugging"""
        return {
            "total_errors": self.error_count,
            "recent_errors": self.last_errors[-5:],  # Last 5 errors
            "error_types": sorted(set(err["type"] for err in self.last_errors)),
            "components": sorted(self._latest),
        }
