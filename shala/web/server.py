"""FastAPI application exposing uploads and curriculum ordering."""

from __future__ import annotations

import contextvars
import logging
import sqlite3
import uuid
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Response, UploadFile
from fastapi import status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import BaseModel
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..errors import (
    NotFoundError,
    OrderConflictError,
    SecurityError,
    ShalaError,
    ValidationError,
)
from ..services.blob_store import PDF_MIME_TYPE, BlobStore
from ..services.compression import PDFCompressor
from ..services.events import EventType, emit_event
from ..services.ingestion import PDFIngestor, validate_upload
from ..services.ordering import SiblingReorderer
from ..services.storage import (
    ChapterRecord,
    CourseRepository,
    SiblingScope,
    StandardRecord,
    SubjectRecord,
)


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "shala_request_id",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _collect_correlation_context() -> Dict[str, str]:
    request_id = _REQUEST_ID_VAR.get()
    return {"request_id": str(request_id)} if request_id else {}


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.setdefault("state", {})
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        request_token = _REQUEST_ID_VAR.set(request_id)
        try:
            await self.app(scope, receive, send)
        finally:
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in _collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("shala.web.events"), {})


def _log_event(message: str, **context: Any) -> None:
    emit_event(
        EventType.HTTP_EVENT,
        message,
        payload={**_collect_correlation_context(), **context},
        logger=EVENT_LOGGER,
    )


class StandardCreatePayload(BaseModel):
    name: str
    description: str = ""
    position: Optional[int] = None


class ChildCreatePayload(BaseModel):
    name: str
    description: str = ""


class ReorderEntryPayload(BaseModel):
    id: int
    position: int


class StandardReorderPayload(BaseModel):
    standards: List[ReorderEntryPayload]


class SiblingReorderPayload(BaseModel):
    items: List[ReorderEntryPayload]


def _http_error(error: ShalaError) -> HTTPException:
    if isinstance(error, (ValidationError, SecurityError)):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, OrderConflictError):
        status_code = status.HTTP_409_CONFLICT
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=status_code, detail=str(error))


def _parse_compress_flag(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in {"false", "0", "no", "off"}:
        return False
    if normalized in {"true", "1", "yes", "on"}:
        return True
    return None


def _serialize_standard(record: StandardRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "description": record.description or "",
        "position": record.position,
    }


def _serialize_subject(record: SubjectRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "standard_id": record.standard_id,
        "name": record.name,
        "description": record.description or "",
        "position": record.position,
    }


def _serialize_chapter(record: ChapterRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "subject_id": record.subject_id,
        "name": record.name,
        "description": record.description or "",
        "position": record.position,
    }


def _entries(payload: List[ReorderEntryPayload]) -> List[Dict[str, int]]:
    return [{"id": entry.id, "position": entry.position} for entry in payload]


def create_app(
    config: AppConfig,
    *,
    store: Optional[BlobStore] = None,
    compressor: Optional[PDFCompressor] = None,
    ingestor: Optional[PDFIngestor] = None,
    repository: Optional[CourseRepository] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application.

    The store must already be initialised; :class:`~shala.bootstrap.Bootstrapper`
    does this at process start.
    """

    store = store or BlobStore.from_config(config)
    compressor = compressor or PDFCompressor.from_config(config.compression)
    ingestor = ingestor or PDFIngestor(
        store, compressor, threshold_bytes=config.compression.threshold_bytes
    )
    repository = repository or CourseRepository(config)
    reorderer = SiblingReorderer(repository)

    app = FastAPI(
        title="Shala Shikshak",
        description="PDF resources and curriculum ordering",
        root_path=(root_path or "").rstrip("/"),
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.config = config
    app.state.store = store
    app.state.compressor = compressor
    app.state.ingestor = ingestor
    app.state.repository = repository
    app.state.reorderer = reorderer

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------
    @app.post("/api/upload/pdf", status_code=status.HTTP_201_CREATED)
    async def upload_pdf(
        pdf: UploadFile = File(...),
        compress: Optional[str] = Form(None),
    ) -> Dict[str, Any]:
        data = await pdf.read()
        validation = validate_upload(
            pdf.filename,
            pdf.content_type,
            data,
            max_bytes=config.max_upload_bytes,
        )
        if not validation.ok:
            raise HTTPException(status_code=400, detail=validation.error)

        _log_event("Uploading PDF", filename=pdf.filename, size_bytes=len(data))
        try:
            result = await ingestor.ingest(
                data, pdf.filename, compress=_parse_compress_flag(compress)
            )
        except ShalaError as error:
            LOGGER.error("PDF upload failed: %s", error)
            raise _http_error(error) from error

        _log_event("Uploaded PDF", name=result.artifact.name)
        return {"message": result.message, "file": result.to_dict()}

    @app.get("/api/upload/pdf/{file_id}")
    async def get_pdf_info(file_id: str) -> Dict[str, Any]:
        try:
            artifact = await store.find(file_id)
        except ShalaError as error:
            raise _http_error(error) from error
        if artifact is None:
            raise HTTPException(status_code=404, detail="File not found")
        return {"file": artifact.to_dict()}

    @app.delete(
        "/api/upload/pdf/{file_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_pdf(file_id: str) -> Response:
        _log_event("Deleting PDF", file_id=file_id)
        try:
            artifact = await store.find(file_id)
            await store.delete(artifact.path if artifact is not None else file_id)
        except ShalaError as error:
            raise _http_error(error) from error
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/api/upload/files")
    async def list_files() -> Dict[str, Any]:
        try:
            artifacts = await store.list()
        except ShalaError as error:
            raise _http_error(error) from error
        return {"files": [artifact.to_dict() for artifact in artifacts]}

    @app.get("/api/upload/compression-status")
    async def compression_status() -> Dict[str, Any]:
        available = await compressor.is_available()
        return {
            "available": available,
            "tool": "ghostscript",
            "threshold_bytes": config.compression.threshold_bytes,
            "message": (
                "PDF compression is available"
                if available
                else "Ghostscript is not installed; PDFs are stored without compression"
            ),
        }

    @app.get(f"/{config.public_prefix}/{{name}}")
    async def serve_upload(name: str) -> FileResponse:
        try:
            artifact = await store.retrieve_info(name)
        except ShalaError as error:
            raise _http_error(error) from error
        if artifact is None:
            raise HTTPException(status_code=404, detail="File not found")
        return FileResponse(
            artifact.path,
            media_type=PDF_MIME_TYPE,
            headers={"Content-Disposition": f'inline; filename="{artifact.name}"'},
        )

    # ------------------------------------------------------------------
    # Standards
    # ------------------------------------------------------------------
    @app.get("/api/standards")
    async def list_standards() -> Dict[str, Any]:
        return {"standards": [_serialize_standard(record) for record in repository.list_standards()]}

    @app.post("/api/standards", status_code=status.HTTP_201_CREATED)
    async def create_standard(payload: StandardCreatePayload) -> Dict[str, Any]:
        name = payload.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Standard name is required")
        if payload.position is not None and payload.position < 1:
            raise HTTPException(status_code=400, detail="Position must be at least 1")

        _log_event("Creating standard", name=name)
        try:
            standard_id = repository.add_standard(
                name, payload.description.strip(), position=payload.position
            )
        except sqlite3.IntegrityError as error:
            raise HTTPException(
                status_code=409, detail="A standard with this name or position already exists"
            ) from error

        record = repository.get_standard(standard_id)
        if record is None:
            raise HTTPException(status_code=500, detail="Standard creation failed")
        return {"standard": _serialize_standard(record)}

    @app.put("/api/standards/batch/reorder")
    async def reorder_standards(payload: StandardReorderPayload) -> Dict[str, Any]:
        _log_event("Reordering standards", count=len(payload.standards))
        try:
            await reorderer.reorder(SiblingScope.standards(), _entries(payload.standards))
        except ShalaError as error:
            raise _http_error(error) from error
        return {
            "message": "Standards reordered successfully",
            "standards": [_serialize_standard(record) for record in repository.list_standards()],
        }

    # ------------------------------------------------------------------
    # Subjects
    # ------------------------------------------------------------------
    def _require_standard(standard_id: int) -> StandardRecord:
        record = repository.get_standard(standard_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Standard not found")
        return record

    def _require_subject(subject_id: int) -> SubjectRecord:
        record = repository.get_subject(subject_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Subject not found")
        return record

    @app.get("/api/standards/{standard_id}/subjects")
    async def list_subjects(standard_id: int) -> Dict[str, Any]:
        _require_standard(standard_id)
        subjects = repository.list_subjects(standard_id)
        return {"subjects": [_serialize_subject(record) for record in subjects]}

    @app.post("/api/standards/{standard_id}/subjects", status_code=status.HTTP_201_CREATED)
    async def create_subject(standard_id: int, payload: ChildCreatePayload) -> Dict[str, Any]:
        _require_standard(standard_id)
        name = payload.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Subject name is required")
        try:
            subject_id = repository.add_subject(standard_id, name, payload.description.strip())
        except sqlite3.IntegrityError as error:
            raise HTTPException(
                status_code=409, detail="A subject with this name already exists"
            ) from error
        record = repository.get_subject(subject_id)
        if record is None:
            raise HTTPException(status_code=500, detail="Subject creation failed")
        return {"subject": _serialize_subject(record)}

    @app.put("/api/standards/{standard_id}/subjects/reorder")
    async def reorder_subjects(standard_id: int, payload: SiblingReorderPayload) -> Dict[str, Any]:
        _require_standard(standard_id)
        _log_event("Reordering subjects", standard_id=standard_id, count=len(payload.items))
        try:
            await reorderer.reorder(SiblingScope.subjects(standard_id), _entries(payload.items))
        except ShalaError as error:
            raise _http_error(error) from error
        subjects = repository.list_subjects(standard_id)
        return {"subjects": [_serialize_subject(record) for record in subjects]}

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------
    @app.get("/api/subjects/{subject_id}/chapters")
    async def list_chapters(subject_id: int) -> Dict[str, Any]:
        _require_subject(subject_id)
        chapters = repository.list_chapters(subject_id)
        return {"chapters": [_serialize_chapter(record) for record in chapters]}

    @app.post("/api/subjects/{subject_id}/chapters", status_code=status.HTTP_201_CREATED)
    async def create_chapter(subject_id: int, payload: ChildCreatePayload) -> Dict[str, Any]:
        _require_subject(subject_id)
        name = payload.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Chapter name is required")
        try:
            chapter_id = repository.add_chapter(subject_id, name, payload.description.strip())
        except sqlite3.IntegrityError as error:
            raise HTTPException(
                status_code=409, detail="A chapter with this name already exists"
            ) from error
        record = repository.get_chapter(chapter_id)
        if record is None:
            raise HTTPException(status_code=500, detail="Chapter creation failed")
        return {"chapter": _serialize_chapter(record)}

    @app.put("/api/subjects/{subject_id}/chapters/reorder")
    async def reorder_chapters(subject_id: int, payload: SiblingReorderPayload) -> Dict[str, Any]:
        _require_subject(subject_id)
        _log_event("Reordering chapters", subject_id=subject_id, count=len(payload.items))
        try:
            await reorderer.reorder(SiblingScope.chapters(subject_id), _entries(payload.items))
        except ShalaError as error:
            raise _http_error(error) from error
        chapters = repository.list_chapters(subject_id)
        return {"chapters": [_serialize_chapter(record) for record in chapters]}

    return app


__all__ = ["ContextualLoggerAdapter", "RequestContextMiddleware", "create_app"]
