"""Core data models for aichat-metadata."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class SessionMetadata:
    """User-assigned attributes for one chat session.

    The transcript itself lives with its source (Cursor, Claude Code, ...);
    this record only carries what the user layers on top of it.
    """

    session_id: str  # e.g. "claude:-Users-me-proj:3f2a..." or a bare UUID
    nickname: Optional[str] = None
    tags: set[str] = field(default_factory=set)
    project_path: Optional[str] = None
    source: Optional[str] = None  # "cursor" | "claude_code" | "opencode"
    message_count: int = 0
    first_message_preview: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ProjectInfo:
    """A project path and how many sessions point at it."""

    project_path: str
    session_count: int


@dataclass
class TagCount:
    tag: str
    count: int


@dataclass
class MetadataStats:
    """Aggregate counts across the whole store."""

    total_sessions: int = 0
    sessions_with_nicknames: int = 0
    sessions_with_tags: int = 0
    sessions_with_projects: int = 0
    total_projects: int = 0
    total_tags: int = 0


@dataclass
class ListSessionsOptions:
    """Filters for MetadataStore.list_sessions.

    No filters set means every record. ``limit`` caps the result after
    the other filters are applied.
    """

    project: Optional[str] = None
    tagged_only: bool = False
    limit: Optional[int] = None


@dataclass
class SearchResult:
    """A full-text match, with the surrounding text marked >>>like this<<<."""

    metadata: SessionMetadata
    snippet: str = ""
