"""FastAPI app: public submission intake plus the admin review surface.

Admin routes read the caller identity from the ``AUTH_IDENTITY_HEADER``
header (``X-Admin-Id`` by default), asserted upstream by the identity
provider, and authorize it against ``admin_profiles``.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Literal

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .auth import Authorizer, DatabaseAdminDirectory
from .config import settings
from .db import get_sessionmaker
from .errors import MemoryBookError
from .logging_config import setup_logging
from .pipelines.admins import AdminRegistry
from .pipelines.export import ExportArchive, ExportService
from .pipelines.intake import IntakePipeline, MediaUpload
from .pipelines.review import ReviewService
from .records import SortSpec, SubmissionFilters, SubmissionRecordStore
from .storage import MediaStore, get_media_store

logger = logging.getLogger(__name__)


# Pydantic request/response models
class CamelModel(BaseModel):
    """Wire models use camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    details: Any = None
    retryable: bool = False


class SubmissionAcceptedResponse(CamelModel):
    """Accepted submission."""
    status: str = "accepted"
    submission_id: str
    tags: list[str]
    top_tag: str


class SubmissionRejectedResponse(CamelModel):
    """Submission refused by the quality gate."""
    status: str = "rejected"
    reason: str
    tags: list[str]
    top_tag: str
    scores: dict[str, int]


class SubmissionDTO(CamelModel):
    """Submission as shown to administrators."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    created_at: datetime
    full_name: str
    institution: str
    batch_year: int
    roll_number: str
    date_of_birth: str
    email: str
    phone: str | None = None
    message_text: str | None = None
    audio_path: str | None = None
    video_path: str | None = None
    consent_given: bool
    tags: list[str]
    top_tag: str
    tag_scores: dict[str, int]
    review_status: str
    admin_notes: str | None = None
    rejected: bool
    rejection_reason: str | None = None


class SubmissionPageResponse(CamelModel):
    """One page of submissions."""
    items: list[SubmissionDTO]
    total: int
    page: int
    page_size: int
    pages: int


class UpdateSubmissionRequest(CamelModel):
    """Review status and/or notes change."""
    review_status: str | None = None
    admin_notes: str | None = None


class SignedUrlRequest(CamelModel):
    """Signed URL request."""
    paths: list[str] = Field(default_factory=list)
    expires_in: int | None = None


class SignedUrlResponse(CamelModel):
    """Signed URLs keyed by path plus per-path errors."""
    signed_urls: dict[str, str]
    errors: dict[str, str]


class ExportFilters(CamelModel):
    """Equality filters for bulk export."""
    institution: str | None = None
    batch_year: int | None = None
    review_status: str | None = None
    top_tag: str | None = None
    rejected: bool | None = None


class ExportRequest(CamelModel):
    """Bulk export request."""
    submission_ids: list[str] | None = None
    filters: ExportFilters | None = None
    include_media: bool = False


class StatsResponse(CamelModel):
    """Dashboard counters."""
    total: int
    by_review_status: dict[str, int]
    by_institution: dict[str, int]
    by_top_tag: dict[str, int]
    with_audio: int
    with_video: int
    rejected: int


class AdminDTO(CamelModel):
    """Admin profile."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    email: str
    role: str
    first_login: bool
    created_by: str | None = None
    created_at: datetime


class CreateAdminRequest(CamelModel):
    """Register an admin provisioned by the identity provider."""
    id: str = Field(min_length=1, max_length=128)
    email: EmailStr
    role: str = "admin"


class UpdateRoleRequest(CamelModel):
    """Role change."""
    role: str


class StatusResponse(CamelModel):
    """Generic acknowledgement."""
    status: str
    id: str | None = None


# Dependencies
def get_actor(request: Request) -> str | None:
    """Caller identity asserted by the upstream identity provider."""
    return request.headers.get(settings.auth.identity_header)


def get_record_store(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> SubmissionRecordStore:
    return SubmissionRecordStore(session_maker)


def get_authorizer(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> Authorizer:
    return Authorizer(DatabaseAdminDirectory(session_maker))


def get_intake_pipeline(
    record_store: SubmissionRecordStore = Depends(get_record_store),
    media_store: MediaStore = Depends(get_media_store),
) -> IntakePipeline:
    return IntakePipeline(record_store, media_store)


def get_review_service(
    record_store: SubmissionRecordStore = Depends(get_record_store),
    media_store: MediaStore = Depends(get_media_store),
    authorizer: Authorizer = Depends(get_authorizer),
) -> ReviewService:
    return ReviewService(record_store, media_store, authorizer)


def get_export_service(
    record_store: SubmissionRecordStore = Depends(get_record_store),
    media_store: MediaStore = Depends(get_media_store),
    authorizer: Authorizer = Depends(get_authorizer),
) -> ExportService:
    return ExportService(record_store, media_store, authorizer)


def get_admin_registry(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    authorizer: Authorizer = Depends(get_authorizer),
) -> AdminRegistry:
    return AdminRegistry(session_maker, authorizer)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    logger.info(f"{settings.app_name} starting up ({settings.environment.value})")

    yield

    # Shutdown
    logger.info("Application shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Alumni memory submissions with theme tagging, admin review and exports",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(MemoryBookError)
async def memory_book_error_handler(request: Request, exc: MemoryBookError):
    """Render domain errors with their mapped status."""
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message} ({exc.details})")
    else:
        logger.warning(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=exc.message,
            details=exc.details,
            retryable=exc.retryable,
        ).model_dump(mode="json"),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed requests are client errors (400), not 422."""
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(error="Invalid request", details=details).model_dump(mode="json"),
    )


def _zip_response(archive: ExportArchive) -> StreamingResponse:
    return StreamingResponse(
        archive.iter_chunks(),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{archive.filename}"'},
    )


async def _read_upload(upload: UploadFile | None) -> MediaUpload | None:
    if upload is None:
        return None
    try:
        return MediaUpload(
            data=await upload.read(),
            content_type=upload.content_type,
            filename=upload.filename,
        )
    finally:
        await upload.close()


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=settings.version)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "submit": "/submissions",
            "list_submissions": "/admin/submissions",
            "signed_urls": "/admin/media/signed-urls",
            "bulk_export": "/admin/exports",
            "stats": "/admin/stats",
            "admins": "/admin/admins",
            "docs": "/docs",
        },
    }


@app.post(
    "/submissions",
    response_model=SubmissionAcceptedResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": SubmissionRejectedResponse}, 400: {"model": ErrorResponse}},
)
async def submit_memory(
    submission_id: str | None = Form(default=None, alias="submissionId"),
    form_data: str | None = Form(default=None, alias="formData"),
    message_text: str = Form(default="", alias="messageText"),
    audio_file: UploadFile | None = File(default=None, alias="audioFile"),
    video_file: UploadFile | None = File(default=None, alias="videoFile"),
    pipeline: IntakePipeline = Depends(get_intake_pipeline),
):
    """Accept one alumni memory.

    This endpoint:
    1. Validates the identifier and form data
    2. Tags the message text by theme
    3. Uploads audio and video
    4. Stores the submission (uploads are rolled back on failure)
    """
    audio = await _read_upload(audio_file)
    video = await _read_upload(video_file)

    result = await pipeline.submit(
        submission_id=submission_id,
        form_data=form_data,
        message_text=message_text,
        audio=audio,
        video=video,
    )

    if not result.accepted:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=SubmissionRejectedResponse(
                reason=result.reason or "Submission rejected",
                tags=result.tags,
                top_tag=result.top_tag,
                scores=result.scores,
            ).model_dump(by_alias=True),
        )

    return SubmissionAcceptedResponse(
        submission_id=result.submission_id,
        tags=result.tags,
        top_tag=result.top_tag,
    )


@app.get("/admin/submissions", response_model=SubmissionPageResponse)
async def list_submissions(
    institution: str | None = None,
    batch_year: int | None = None,
    review_status: str | None = None,
    top_tag: str | None = None,
    rejected: bool | None = None,
    sort_by: str = "created_at",
    sort_dir: Literal["asc", "desc"] = "desc",
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
    actor: str | None = Depends(get_actor),
    service: ReviewService = Depends(get_review_service),
) -> SubmissionPageResponse:
    """Filtered, sorted, paginated submission listing."""
    filters = SubmissionFilters(
        institution=institution,
        batch_year=batch_year,
        review_status=review_status,
        top_tag=top_tag,
        rejected=rejected,
    )
    result = await service.list(
        actor,
        filters,
        SortSpec(field=sort_by, descending=sort_dir == "desc"),
        page=page,
        page_size=page_size,
    )
    return SubmissionPageResponse(
        items=[SubmissionDTO.model_validate(item) for item in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        pages=result.pages,
    )


@app.get("/admin/submissions/{submission_id}", response_model=SubmissionDTO)
async def get_submission(
    submission_id: str,
    actor: str | None = Depends(get_actor),
    service: ReviewService = Depends(get_review_service),
) -> SubmissionDTO:
    return SubmissionDTO.model_validate(await service.get(actor, submission_id))


@app.patch("/admin/submissions/{submission_id}", response_model=SubmissionDTO)
async def update_submission(
    submission_id: str,
    body: UpdateSubmissionRequest,
    actor: str | None = Depends(get_actor),
    service: ReviewService = Depends(get_review_service),
) -> SubmissionDTO:
    """Change review status and/or admin notes."""
    record = await service.set_status(actor, submission_id, body.review_status, body.admin_notes)
    return SubmissionDTO.model_validate(record)


@app.delete("/admin/submissions/{submission_id}", response_model=StatusResponse)
async def delete_submission(
    submission_id: str,
    actor: str | None = Depends(get_actor),
    service: ReviewService = Depends(get_review_service),
) -> StatusResponse:
    """Delete a submission and its media."""
    await service.delete(actor, submission_id)
    return StatusResponse(status="deleted", id=submission_id)


@app.post("/admin/media/signed-urls", response_model=SignedUrlResponse)
async def create_signed_urls(
    body: SignedUrlRequest,
    actor: str | None = Depends(get_actor),
    service: ReviewService = Depends(get_review_service),
) -> SignedUrlResponse:
    """Time-limited links for media playback."""
    batch = await service.signed_urls(actor, body.paths, body.expires_in)
    return SignedUrlResponse(signed_urls=batch.signed_urls, errors=batch.errors)


@app.post("/admin/exports")
async def bulk_export(
    body: ExportRequest,
    actor: str | None = Depends(get_actor),
    service: ExportService = Depends(get_export_service),
) -> StreamingResponse:
    """ZIP of matching submissions with a CSV summary."""
    filters = SubmissionFilters(**body.filters.model_dump()) if body.filters else None
    archive = await service.export_bulk(
        actor,
        filters=filters,
        ids=body.submission_ids,
        include_media=body.include_media,
    )
    return _zip_response(archive)


@app.get("/admin/submissions/{submission_id}/export")
async def single_export(
    submission_id: str,
    actor: str | None = Depends(get_actor),
    service: ExportService = Depends(get_export_service),
) -> StreamingResponse:
    """ZIP of one submission with its media embedded."""
    return _zip_response(await service.export_single(actor, submission_id))


@app.get("/admin/stats", response_model=StatsResponse)
async def stats(
    actor: str | None = Depends(get_actor),
    service: ReviewService = Depends(get_review_service),
) -> StatsResponse:
    return StatsResponse(**await service.stats(actor))


@app.get("/admin/admins", response_model=list[AdminDTO])
async def list_admins(
    actor: str | None = Depends(get_actor),
    registry: AdminRegistry = Depends(get_admin_registry),
) -> list[AdminDTO]:
    return [AdminDTO.model_validate(p) for p in await registry.list_admins(actor)]


@app.post("/admin/admins", response_model=AdminDTO, status_code=status.HTTP_201_CREATED)
async def create_admin(
    body: CreateAdminRequest,
    actor: str | None = Depends(get_actor),
    registry: AdminRegistry = Depends(get_admin_registry),
) -> AdminDTO:
    profile = await registry.create_admin(actor, body.id, str(body.email), body.role)
    return AdminDTO.model_validate(profile)


@app.patch("/admin/admins/{admin_id}/role", response_model=AdminDTO)
async def update_admin_role(
    admin_id: str,
    body: UpdateRoleRequest,
    actor: str | None = Depends(get_actor),
    registry: AdminRegistry = Depends(get_admin_registry),
) -> AdminDTO:
    return AdminDTO.model_validate(await registry.update_role(actor, admin_id, body.role))


@app.delete("/admin/admins/{admin_id}", response_model=StatusResponse)
async def delete_admin(
    admin_id: str,
    actor: str | None = Depends(get_actor),
    registry: AdminRegistry = Depends(get_admin_registry),
) -> StatusResponse:
    await registry.delete_admin(actor, admin_id)
    return StatusResponse(status="deleted", id=admin_id)


@app.post("/admin/me/first-login-complete", response_model=AdminDTO)
async def complete_first_login(
    actor: str | None = Depends(get_actor),
    registry: AdminRegistry = Depends(get_admin_registry),
) -> AdminDTO:
    return AdminDTO.model_validate(await registry.complete_first_login(actor))
