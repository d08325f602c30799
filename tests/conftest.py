"""Shared test fixtures for aichat-metadata."""

from datetime import datetime, timezone

import pytest

from aichat_metadata.core import SessionMetadata
from aichat_metadata.store import MetadataStore


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "metadata" / "metadata.db"


@pytest.fixture
def store(db_path):
    """An empty, unconnected store backed by a temp file."""
    s = MetadataStore(db_path)
    yield s
    s.close()


@pytest.fixture
def sample_metadata():
    return SessionMetadata(
        session_id="claude:-Users-testuser-dev-myapp:3f2a9c1e-1111-4a2b-9c3d-000000000001",
        nickname="auth-refactor",
        tags={"work", "urgent"},
        project_path="/Users/testuser/dev/myapp",
        source="claude_code",
        message_count=8,
        first_message_preview="Help me refactor the auth module",
        created_at=datetime(2025, 1, 20, 10, 0, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def populated_store(store, sample_metadata):
    """A store with a handful of sessions across two projects.

    - the sample session: nickname, tags work+urgent, project myapp
    - cursor:abc123:comp-001: tag work, project myapp
    - cursor:abc123:comp-002: no tags, project travel-agency
    - opencode:ses_xyz: nickname only, no project
    """
    store.upsert_session_metadata(sample_metadata)
    store.upsert_session_metadata(SessionMetadata(
        session_id="cursor:abc123:comp-001",
        tags={"work"},
        project_path="/Users/testuser/dev/myapp",
        source="cursor",
        message_count=3,
        created_at=datetime(2025, 1, 21, 9, 0, 0, tzinfo=timezone.utc),
    ))
    store.upsert_session_metadata(SessionMetadata(
        session_id="cursor:abc123:comp-002",
        project_path="/Users/testuser/dev/travel-agency",
        source="cursor",
        created_at=datetime(2025, 1, 22, 9, 0, 0, tzinfo=timezone.utc),
    ))
    store.upsert_session_metadata(SessionMetadata(
        session_id="opencode:ses_xyz",
        nickname="scratch",
        source="opencode",
        created_at=datetime(2025, 1, 23, 9, 0, 0, tzinfo=timezone.utc),
    ))
    return store
