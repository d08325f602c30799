"""Export metadata records to plain dicts, JSON and one-line text."""

import json
from datetime import datetime
from typing import Optional

from .core import MetadataStats, ProjectInfo, SearchResult, SessionMetadata, TagCount


def metadata_to_dict(metadata: SessionMetadata) -> dict:
    """Convert a SessionMetadata to a JSON-serializable dict.

    Tags come out sorted so the same record always encodes the same way.
    """
    return {
        "session_id": metadata.session_id,
        "nickname": metadata.nickname,
        "tags": sorted(metadata.tags),
        "project_path": metadata.project_path,
        "source": metadata.source,
        "message_count": metadata.message_count,
        "first_message_preview": metadata.first_message_preview,
        "created_at": _iso(metadata.created_at),
        "updated_at": _iso(metadata.updated_at),
    }


def project_to_dict(project: ProjectInfo) -> dict:
    return {"project_path": project.project_path, "session_count": project.session_count}


def tag_count_to_dict(tag_count: TagCount) -> dict:
    return {"tag": tag_count.tag, "count": tag_count.count}


def stats_to_dict(stats: MetadataStats) -> dict:
    return {
        "total_sessions": stats.total_sessions,
        "sessions_with_nicknames": stats.sessions_with_nicknames,
        "sessions_with_tags": stats.sessions_with_tags,
        "sessions_with_projects": stats.sessions_with_projects,
        "total_projects": stats.total_projects,
        "total_tags": stats.total_tags,
    }


def search_result_to_dict(result: SearchResult) -> dict:
    data = metadata_to_dict(result.metadata)
    data["snippet"] = result.snippet
    return data


def metadata_to_json(metadata: SessionMetadata | list[SessionMetadata]) -> str:
    """Export one record, or a list of them, as indented JSON."""
    if isinstance(metadata, list):
        data = [metadata_to_dict(m) for m in metadata]
    else:
        data = metadata_to_dict(metadata)
    return to_json(data)


def to_json(data) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def metadata_to_text(metadata: SessionMetadata) -> str:
    """One-line summary: short id, nickname, tags, project."""
    parts = [_short_id(metadata.session_id)]
    if metadata.nickname:
        parts.append(f"({metadata.nickname})")
    if metadata.tags:
        parts.append(" ".join(f"#{tag}" for tag in sorted(metadata.tags)))
    if metadata.project_path:
        parts.append(metadata.project_path)
    if metadata.updated_at:
        parts.append(f"updated {metadata.updated_at.strftime('%Y-%m-%d %H:%M')}")
    return "  ".join(parts)


def _short_id(session_id: str) -> str:
    # Namespaced ids ("claude:<project>:<uuid>") are shortened on the uuid part only.
    prefix, _, tail = session_id.rpartition(":")
    if len(tail) > 12:
        tail = tail[:8] + "..."
    return f"{prefix}:{tail}" if prefix else tail


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
