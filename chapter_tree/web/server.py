"""FastAPI application exposing the chapter tree engine over HTTP."""

from __future__ import annotations

import contextlib
import contextvars
import logging
import uuid
from collections import deque
from typing import Any, Dict, Iterator, List, Optional

from fastapi import FastAPI, HTTPException, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.types import ASGIApp, Receive, Scope, Send

from ..services.errors import (
    BookNotFoundError,
    ChapterNotFoundError,
    ChapterTreeError,
    CycleDetectedError,
    ScopeMismatchError,
    TransactionFailureError,
)
from ..services.events import emit_db_event, emit_structured_event
from ..services.storage import BookRecord, ChapterRecord
from ..services.tree import ChapterTreeNode, ChapterTreeService


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "chapter_tree_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "chapter_tree_actor",
    default=None,
)

CYCLE_DETAIL = "Moving chapter would create a cycle"


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope.setdefault("state", {})
        if isinstance(scope["state"], dict):
            scope["state"]["request_id"] = request_id

        method = scope.get("method")
        actor = f"request:{method.upper()}" if isinstance(method, str) else "request"
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(actor)
        try:
            await self.app(scope, receive, send)
        finally:
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra or {})
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in _collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("chapter_tree.events"), {})


def _repository_event_emitter(event_type: str, message: str, **kwargs: Any) -> None:
    correlation = _collect_correlation_context()
    if event_type == "DB_QUERY":
        emit_db_event(message, correlation=correlation, logger=EVENT_LOGGER, **kwargs)
    else:
        emit_structured_event(
            event_type, message, correlation=correlation, logger=EVENT_LOGGER, **kwargs
        )


def _log_event(message: str, **context: Any) -> None:
    emit_structured_event(
        "APP_EVENT",
        message,
        context=context,
        correlation=_collect_correlation_context(),
        logger=EVENT_LOGGER,
    )


def _http_error(error: ChapterTreeError) -> HTTPException:
    if isinstance(error, (ChapterNotFoundError, BookNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, CycleDetectedError):
        return HTTPException(status_code=409, detail=CYCLE_DETAIL)
    if isinstance(error, ScopeMismatchError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, TransactionFailureError):
        LOGGER.error("Storage transaction failed: %s", error)
        return HTTPException(status_code=500, detail="Storage transaction failed")
    LOGGER.error("Chapter tree failure: %s", error)
    return HTTPException(status_code=500, detail=str(error))


@contextlib.contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except ChapterTreeError as error:
        raise _http_error(error) from error
    except ValueError as error:
        raise HTTPException(status_code=400, detail=str(error)) from error


def _serialize_book(record: BookRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "title": record.title,
        "description": record.description,
        "created_at": record.created_at,
    }


def _serialize_chapter(record: ChapterRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "book_id": record.book_id,
        "parent_id": record.parent_id,
        "title": record.title,
        "description": record.description,
        "sort_order": record.sort_order,
        "level": record.level,
        "path": record.path,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def _serialize_tree(roots: List[ChapterTreeNode]) -> List[Dict[str, Any]]:
    """Nested ``children`` payloads built with a work-list rather than recursion."""

    serialized_roots: List[Dict[str, Any]] = []
    pending = deque((node, serialized_roots) for node in roots)
    while pending:
        node, target = pending.popleft()
        payload = _serialize_chapter(node.chapter)
        payload["children"] = []
        target.append(payload)
        pending.extend((child, payload["children"]) for child in node.children)
    return serialized_roots


class BookCreatePayload(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None


class ChapterCreatePayload(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    sort_order: Optional[int] = None
    parent_id: Optional[int] = None


class ChildCreatePayload(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    sort_order: Optional[int] = None


class ChapterUpdatePayload(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    sort_order: Optional[int] = None


class ReorderPayload(BaseModel):
    sort_order: int


class BatchReorderPayload(BaseModel):
    chapter_ids: List[int] = Field(default_factory=list)
    parent_id: Optional[int] = None


class MoveChapterPayload(BaseModel):
    new_parent_id: Optional[int] = None
    new_sort_order: Optional[int] = None


def create_app(
    service: ChapterTreeService,
    *,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application bound to *service*."""

    app = FastAPI(
        title="Chapter Tree",
        description="Hierarchical chapter management for books",
        root_path=(root_path or "").rstrip("/"),
    )
    app.state.service = service
    app.state.server = None
    service.repository.configure_event_emitter(_repository_event_emitter)
    service.configure_event_logger(EVENT_LOGGER)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _load_chapter(book_id: int, chapter_id: int) -> ChapterRecord:
        with _translate_errors():
            record = service.get_chapter(chapter_id)
        if record.book_id != book_id:
            raise HTTPException(status_code=404, detail=f"Chapter {chapter_id} not found")
        return record

    @app.get("/api/books")
    def list_books() -> Dict[str, Any]:
        return {"books": [_serialize_book(record) for record in service.list_books()]}

    @app.post("/api/books", status_code=status.HTTP_201_CREATED)
    def create_book(payload: BookCreatePayload) -> Dict[str, Any]:
        _log_event("Creating book", title=payload.title)
        with _translate_errors():
            record = service.create_book(payload.title, payload.description)
        return {"book": _serialize_book(record)}

    @app.get("/api/books/{book_id}")
    def get_book(book_id: int) -> Dict[str, Any]:
        with _translate_errors():
            record = service.get_book(book_id)
        return {"book": _serialize_book(record)}

    @app.get("/api/books/{book_id}/chapters")
    def list_chapters(book_id: int, q: Optional[str] = Query(None)) -> List[Dict[str, Any]]:
        with _translate_errors():
            records = service.list_chapters(book_id, q)
        return [_serialize_chapter(record) for record in records]

    @app.post("/api/books/{book_id}/chapters", status_code=status.HTTP_201_CREATED)
    def create_chapter(book_id: int, payload: ChapterCreatePayload) -> Dict[str, Any]:
        _log_event("Creating chapter", book_id=book_id, parent_id=payload.parent_id)
        with _translate_errors():
            record = service.create_chapter(
                book_id,
                payload.title,
                parent_id=payload.parent_id,
                description=payload.description,
                sort_order=payload.sort_order,
            )
        return _serialize_chapter(record)

    @app.post("/api/books/{book_id}/chapters/batch-reorder")
    def batch_reorder(book_id: int, payload: BatchReorderPayload) -> List[Dict[str, Any]]:
        _log_event(
            "Reordering chapters",
            book_id=book_id,
            parent_id=payload.parent_id,
            count=len(payload.chapter_ids),
        )
        with _translate_errors():
            records = service.reorder_all(book_id, payload.parent_id, payload.chapter_ids)
        return [_serialize_chapter(record) for record in records]

    @app.get("/api/books/{book_id}/chapters/tree")
    def chapter_tree(book_id: int) -> List[Dict[str, Any]]:
        with _translate_errors():
            roots = service.get_tree(book_id)
        return _serialize_tree(roots)

    @app.get("/api/books/{book_id}/chapters/flat")
    def flat_list(book_id: int) -> List[Dict[str, Any]]:
        with _translate_errors():
            records = service.get_flat_list(book_id)
        return [_serialize_chapter(record) for record in records]

    @app.get("/api/books/{book_id}/chapters/search")
    def search_chapters(book_id: int, q: str = Query(..., min_length=1)) -> List[Dict[str, Any]]:
        with _translate_errors():
            records = service.search_with_parents(book_id, q)
        return [_serialize_chapter(record) for record in records]

    @app.get("/api/books/{book_id}/chapters/{chapter_id}")
    def show_chapter(book_id: int, chapter_id: int) -> Dict[str, Any]:
        return _serialize_chapter(_load_chapter(book_id, chapter_id))

    @app.put("/api/books/{book_id}/chapters/{chapter_id}")
    @app.patch("/api/books/{book_id}/chapters/{chapter_id}")
    def update_chapter(
        book_id: int, chapter_id: int, payload: ChapterUpdatePayload
    ) -> Dict[str, Any]:
        _load_chapter(book_id, chapter_id)
        changes: Dict[str, Any] = {"title": payload.title, "sort_order": payload.sort_order}
        # An explicit ``"description": null`` clears it; leaving the key out keeps it.
        if "description" in payload.model_fields_set:
            changes["description"] = payload.description
        with _translate_errors():
            record = service.update_chapter(chapter_id, **changes)
        return _serialize_chapter(record)

    @app.delete(
        "/api/books/{book_id}/chapters/{chapter_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    def delete_chapter(book_id: int, chapter_id: int) -> Response:
        _load_chapter(book_id, chapter_id)
        with _translate_errors():
            removed = service.delete_chapter(chapter_id)
        _log_event("Deleted chapter", chapter_id=chapter_id, removed=removed)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/api/books/{book_id}/chapters/{chapter_id}/reorder")
    def reorder_chapter(
        book_id: int, chapter_id: int, payload: ReorderPayload
    ) -> Dict[str, Any]:
        _load_chapter(book_id, chapter_id)
        with _translate_errors():
            record = service.set_sort_order(chapter_id, payload.sort_order)
        return _serialize_chapter(record)

    @app.post("/api/books/{book_id}/chapters/{chapter_id}/move-up")
    def move_up(book_id: int, chapter_id: int) -> Dict[str, Any]:
        _load_chapter(book_id, chapter_id)
        with _translate_errors():
            moved = service.move_up(chapter_id)
        if not moved:
            raise HTTPException(status_code=400, detail="Chapter is already at the top")
        return _serialize_chapter(_load_chapter(book_id, chapter_id))

    @app.post("/api/books/{book_id}/chapters/{chapter_id}/move-down")
    def move_down(book_id: int, chapter_id: int) -> Dict[str, Any]:
        _load_chapter(book_id, chapter_id)
        with _translate_errors():
            moved = service.move_down(chapter_id)
        if not moved:
            raise HTTPException(status_code=400, detail="Chapter is already at the bottom")
        return _serialize_chapter(_load_chapter(book_id, chapter_id))

    @app.get("/api/books/{book_id}/chapters/{chapter_id}/children")
    def list_children(book_id: int, chapter_id: int) -> List[Dict[str, Any]]:
        _load_chapter(book_id, chapter_id)
        with _translate_errors():
            records = service.find_children(chapter_id)
        return [_serialize_chapter(record) for record in records]

    @app.post(
        "/api/books/{book_id}/chapters/{chapter_id}/children",
        status_code=status.HTTP_201_CREATED,
    )
    def create_child(
        book_id: int, chapter_id: int, payload: ChildCreatePayload
    ) -> Dict[str, Any]:
        _load_chapter(book_id, chapter_id)
        with _translate_errors():
            record = service.create_child(
                chapter_id,
                payload.title,
                description=payload.description,
                sort_order=payload.sort_order,
            )
        return _serialize_chapter(record)

    @app.post("/api/books/{book_id}/chapters/{chapter_id}/move")
    def move_chapter(
        book_id: int, chapter_id: int, payload: MoveChapterPayload
    ) -> Dict[str, Any]:
        _load_chapter(book_id, chapter_id)
        _log_event(
            "Moving chapter",
            chapter_id=chapter_id,
            new_parent_id=payload.new_parent_id,
        )
        with _translate_errors():
            record = service.move_chapter(
                chapter_id,
                new_parent_id=payload.new_parent_id,
                new_sort_order=payload.new_sort_order,
            )
        return _serialize_chapter(record)

    return app


__all__ = ["CYCLE_DETAIL", "create_app"]
