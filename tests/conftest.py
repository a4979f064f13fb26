#!/usr/bin/env python3
"""
Pytest configuration file
Automatically sets up test environment
"""

import os
import sys
from pathlib import Path

import pytest

# Set environment variables for testing (before studygroups.config is imported)
os.environ['API_BASE_URL'] = 'http://portal.test'
os.environ['SYNC_MODE'] = 'replace'
os.environ.setdefault('POLL_INTERVAL_SECONDS', '5')
os.environ['DEBUG'] = 'True'

# Add project root to path to allow imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from studygroups.error_handler import ErrorHandler, configure_logging  # noqa: E402
from studygroups.session_manager import SessionManager  # noqa: E402
from tests.fakes import ALICE, FakeGateway  # noqa: E402

configure_logging(debug=True)


@pytest.fixture
def gateway():
    """In-memory portal with the current user logged in as Alice"""
    return FakeGateway()


@pytest.fixture
def errors():
    return ErrorHandler()


@pytest.fixture
def session(tmp_path):
    """Logged-in session persisted under a temporary directory"""
    manager = SessionManager(session_file=tmp_path / "session.json")
    manager.start("valid-token", ALICE)
    return manager
