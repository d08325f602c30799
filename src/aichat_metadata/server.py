"""FastAPI web server for aichat-metadata."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import get_metadata_db_path
from .core import ListSessionsOptions, SessionMetadata
from .errors import (
    AmbiguousReferenceError,
    ConfigurationError,
    ConflictError,
    PersistenceError,
)
from .export import (
    metadata_to_dict,
    project_to_dict,
    search_result_to_dict,
    stats_to_dict,
    tag_count_to_dict,
)
from .store import MetadataStore

logger = logging.getLogger(__name__)


class SessionMetadataIn(BaseModel):
    nickname: Optional[str] = None
    tags: list[str] = []
    project_path: Optional[str] = None
    source: Optional[str] = None
    message_count: int = 0
    first_message_preview: Optional[str] = None
    created_at: Optional[datetime] = None


class NicknameIn(BaseModel):
    nickname: str


class TagIn(BaseModel):
    tag: str


class ProjectIn(BaseModel):
    project_path: Optional[str] = None


class ContentIn(BaseModel):
    content: str


def get_store(request: Request) -> MetadataStore:
    return request.app.state.store


def create_app(store: MetadataStore | None = None) -> FastAPI:
    """Build the API around an explicit store instance.

    Without one, a store for the configured path is created; it stays
    unconnected until the first request needs it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.store.close()

    app = FastAPI(title="aichat-metadata", version="0.1.0", lifespan=lifespan)
    app.state.store = store if store is not None else MetadataStore(get_metadata_db_path())

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "owner_session_id": exc.owner_session_id},
        )

    @app.exception_handler(AmbiguousReferenceError)
    async def ambiguous_handler(request: Request, exc: AmbiguousReferenceError):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "matches": exc.matches},
        )

    @app.exception_handler(ValueError)
    async def invalid_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    @app.exception_handler(ConfigurationError)
    async def storage_handler(request: Request, exc: Exception):
        logger.error("Metadata store failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Metadata store unavailable"})


# ── Routes ───────────────────────────────────────────────────────


def _register_routes(app: FastAPI) -> None:
    @app.get("/api/health")
    def health(store: MetadataStore = Depends(get_store)):
        return {"status": "ok", "connected": store.is_connected()}

    @app.get("/api/stats")
    def get_stats(store: MetadataStore = Depends(get_store)):
        return stats_to_dict(store.get_stats())

    @app.get("/api/sessions")
    def list_sessions(
        project: str | None = Query(None, description="Filter by exact project path"),
        tagged_only: bool = Query(False, description="Only sessions with at least one tag"),
        limit: int | None = Query(None, ge=1, le=10000),
        store: MetadataStore = Depends(get_store),
    ):
        sessions = store.list_sessions(
            ListSessionsOptions(project=project, tagged_only=tagged_only, limit=limit)
        )
        return {
            "total": len(sessions),
            "sessions": [metadata_to_dict(s) for s in sessions],
        }

    @app.get("/api/sessions/{ref}")
    def get_session(ref: str, store: MetadataStore = Depends(get_store)):
        """Look up a session by nickname, full id or unique id prefix."""
        metadata = store.resolve_session(ref)
        if metadata is None:
            raise HTTPException(status_code=404, detail=f"Session not found: {ref}")
        return metadata_to_dict(metadata)

    @app.put("/api/sessions/{session_id}")
    def put_session(
        session_id: str,
        body: SessionMetadataIn,
        store: MetadataStore = Depends(get_store),
    ):
        store.upsert_session_metadata(SessionMetadata(
            session_id=session_id,
            nickname=body.nickname,
            tags=set(body.tags),
            project_path=body.project_path,
            source=body.source,
            message_count=body.message_count,
            first_message_preview=body.first_message_preview,
            created_at=body.created_at,
        ))
        return metadata_to_dict(store.get_session_metadata(session_id))

    @app.delete("/api/sessions/{session_id}")
    def delete_session(session_id: str, store: MetadataStore = Depends(get_store)):
        store.delete_session_metadata(session_id)
        return {"deleted": session_id}

    @app.put("/api/sessions/{session_id}/nickname")
    def put_nickname(session_id: str, body: NicknameIn, store: MetadataStore = Depends(get_store)):
        store.set_nickname(session_id, body.nickname)
        return metadata_to_dict(store.get_session_metadata(session_id))

    @app.delete("/api/sessions/{session_id}/nickname")
    def delete_nickname(session_id: str, store: MetadataStore = Depends(get_store)):
        store.clear_nickname(session_id)
        return {"session_id": session_id, "nickname": None}

    @app.put("/api/sessions/{session_id}/project")
    def put_project(session_id: str, body: ProjectIn, store: MetadataStore = Depends(get_store)):
        store.set_project(session_id, body.project_path)
        return metadata_to_dict(store.get_session_metadata(session_id))

    @app.post("/api/sessions/{session_id}/tags")
    def post_tag(session_id: str, body: TagIn, store: MetadataStore = Depends(get_store)):
        store.add_tag(session_id, body.tag)
        return metadata_to_dict(store.get_session_metadata(session_id))

    @app.delete("/api/sessions/{session_id}/tags/{tag}")
    def delete_tag(session_id: str, tag: str, store: MetadataStore = Depends(get_store)):
        store.remove_tag(session_id, tag)
        metadata = store.get_session_metadata(session_id)
        return {"session_id": session_id, "tags": sorted(metadata.tags) if metadata else []}

    @app.put("/api/sessions/{session_id}/content")
    def put_content(session_id: str, body: ContentIn, store: MetadataStore = Depends(get_store)):
        store.index_session_content(session_id, body.content)
        return {"session_id": session_id, "indexed": bool(body.content.strip())}

    @app.get("/api/nicknames")
    def list_nicknames(store: MetadataStore = Depends(get_store)):
        return store.list_nicknames()

    @app.get("/api/nicknames/{nickname}")
    def get_by_nickname(nickname: str, store: MetadataStore = Depends(get_store)):
        metadata = store.get_session_by_nickname(nickname)
        if metadata is None:
            raise HTTPException(status_code=404, detail=f"Nickname not found: {nickname}")
        return metadata_to_dict(metadata)

    @app.get("/api/tags")
    def list_tags(store: MetadataStore = Depends(get_store)):
        return [tag_count_to_dict(t) for t in store.list_all_tags()]

    @app.get("/api/tags/{tag}/sessions")
    def sessions_by_tag(tag: str, store: MetadataStore = Depends(get_store)):
        return [metadata_to_dict(s) for s in store.find_by_tag(tag)]

    @app.get("/api/projects")
    def list_projects(store: MetadataStore = Depends(get_store)):
        return [project_to_dict(p) for p in store.list_projects()]

    @app.get("/api/projects/sessions")
    def sessions_by_project(
        path: str = Query(..., description="Exact project path"),
        store: MetadataStore = Depends(get_store),
    ):
        return [metadata_to_dict(s) for s in store.list_sessions_by_project(path)]

    @app.get("/api/search")
    def search(
        q: str = Query(..., description="Search terms, matched as prefixes"),
        project: str | None = Query(None, description="Filter by project path"),
        limit: int = Query(20, ge=1, le=1000),
        store: MetadataStore = Depends(get_store),
    ):
        results = store.search_content(q, project=project, limit=limit)
        return {
            "query": q,
            "results": [search_result_to_dict(r) for r in results],
        }


app = create_app()
