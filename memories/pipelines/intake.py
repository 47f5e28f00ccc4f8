"""Submission intake pipeline.

Validation -> tagging -> quality gate -> media upload -> record insert.
If any upload or the insert fails, media uploaded by this call is deleted
before the error reaches the caller.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from memories import models
from memories.errors import ConflictError, MemoryBookError, ObjectExistsError, SubmissionFailedError, ValidationError
from memories.records import SubmissionRecordStore
from memories.storage import AUDIO_CONTENT_TYPE, MediaStore, audio_object_path, video_object_path
from tagging.themes import TaggingResult, ThemeTagger, get_tagger

logger = logging.getLogger(__name__)

SUBMISSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


class SubmissionForm(BaseModel):
    """Structured alumni details sent as the ``formData`` JSON field."""
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    full_name: str = Field(alias="fullName", min_length=1, max_length=255)
    institution: models.Institution
    batch_year: int = Field(alias="batchYear", ge=1900, le=2100)
    roll_number: str = Field(alias="rollNumber", min_length=1, max_length=100)
    date_of_birth: date = Field(alias="dateOfBirth")
    email: EmailStr
    phone: str | None = Field(default=None, max_length=50)
    consent_given: bool = Field(alias="consentGiven")

    @field_validator("phone", mode="before")
    @classmethod
    def blank_phone_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("consent_given")
    @classmethod
    def consent_required(cls, v: bool) -> bool:
        if v is not True:
            raise ValueError("consent must be given to submit a memory")
        return v


@dataclass
class MediaUpload:
    """One uploaded file as received from the client."""
    data: bytes
    content_type: str | None = None
    filename: str | None = None


@dataclass
class IntakeResult:
    """Outcome of a submission attempt."""
    status: str  # "accepted" | "rejected"
    submission_id: str
    tags: list[str]
    top_tag: str
    scores: dict[str, int]
    needs_review: bool = False
    reason: str | None = None
    media_paths: list[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.status == "accepted"


class QualityGate(ABC):
    """Policy deciding whether a tagged submission may be stored."""

    @abstractmethod
    def evaluate(self, tagging: TaggingResult) -> str | None:
        """Return a rejection reason, or None to accept."""


class PermissiveQualityGate(QualityGate):
    """Accepts everything; low confidence is handled by the review flag."""

    def evaluate(self, tagging: TaggingResult) -> str | None:
        return None


def parse_form_data(form_data: str | dict[str, Any] | None) -> SubmissionForm:
    """Validate the ``formData`` payload.

    Raises:
        ValidationError: If the payload is missing, not JSON, or invalid
    """
    if form_data is None or (isinstance(form_data, str) and not form_data.strip()):
        raise ValidationError("formData is required")

    if isinstance(form_data, str):
        try:
            form_data = json.loads(form_data)
        except json.JSONDecodeError as e:
            raise ValidationError("formData must be valid JSON", details=str(e)) from e

    if not isinstance(form_data, dict):
        raise ValidationError("formData must be a JSON object")

    try:
        return SubmissionForm.model_validate(form_data)
    except PydanticValidationError as e:
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError("formData is invalid", details=details) from e


def validate_submission_id(submission_id: str | None) -> str:
    if not submission_id or not submission_id.strip():
        raise ValidationError("submissionId is required")
    submission_id = submission_id.strip()
    if not SUBMISSION_ID_PATTERN.match(submission_id):
        raise ValidationError(
            "submissionId may only contain letters, digits, '-' and '_' (max 128 chars)",
        )
    return submission_id


class IntakePipeline:
    """Orchestrates one submission end to end."""

    def __init__(
        self,
        record_store: SubmissionRecordStore,
        media_store: MediaStore,
        *,
        tagger: ThemeTagger | None = None,
        quality_gate: QualityGate | None = None,
    ) -> None:
        self.record_store = record_store
        self.media_store = media_store
        self.tagger = tagger or get_tagger()
        self.quality_gate = quality_gate or PermissiveQualityGate()

    async def submit(
        self,
        submission_id: str | None,
        form_data: str | dict[str, Any] | None,
        message_text: str | None = None,
        audio: MediaUpload | None = None,
        video: MediaUpload | None = None,
    ) -> IntakeResult:
        """Process a submission.

        Steps:
        1. Validate identifier and form data (no side effects on failure)
        2. Tag the message text (never fails)
        3. Apply the quality gate
        4. Upload audio, then video
        5. Insert the record

        Args:
            submission_id: Caller-generated unique identifier
            form_data: ``formData`` JSON string or already-decoded dict
            message_text: Free-text memory, may be empty
            audio: Optional audio recording
            video: Optional video file

        Returns:
            IntakeResult with status "accepted" or "rejected"

        Raises:
            ValidationError: Malformed input
            ConflictError: Identifier already used (nothing left behind)
            SubmissionFailedError: Upload or insert failed; retry the whole payload
        """
        submission_id = validate_submission_id(submission_id)
        form = parse_form_data(form_data)
        audio = audio if audio is not None and audio.data else None
        video = video if video is not None and video.data else None

        logger.info(f"Processing submission {submission_id} ({form.institution.value} {form.batch_year})")

        # Step 2: Tagging
        tagging = self.tagger.classify(message_text or "")
        logger.info(
            f"Tagged submission {submission_id}: top={tagging.top_tag} "
            f"tags={tagging.tags} needs_review={tagging.needs_review}"
        )

        # Step 3: Quality gate
        reason = self.quality_gate.evaluate(tagging)
        if reason:
            logger.info(f"Rejected submission {submission_id}: {reason}")
            return IntakeResult(
                status="rejected",
                submission_id=submission_id,
                tags=tagging.tags,
                top_tag=tagging.top_tag,
                scores=tagging.scores,
                needs_review=tagging.needs_review,
                reason=reason,
            )

        # Duplicate ids are refused before any upload; the insert still
        # guards against a concurrent submission with the same id
        if await self.record_store.exists(submission_id):
            raise ConflictError(f"Submission {submission_id} already exists")

        # Steps 4-5: Uploads and insert, rolled back together
        uploaded: list[tuple[str, str]] = []
        try:
            audio_path = await self._upload_audio(submission_id, audio, uploaded) if audio else None
            video_path = await self._upload_video(submission_id, video, uploaded) if video else None

            record = models.Submission(
                id=submission_id,
                full_name=form.full_name,
                institution=form.institution.value,
                batch_year=form.batch_year,
                roll_number=form.roll_number,
                date_of_birth=form.date_of_birth.isoformat(),
                email=str(form.email),
                phone=form.phone,
                message_text=message_text or None,
                audio_path=audio_path,
                video_path=video_path,
                consent_given=form.consent_given,
                tags=list(tagging.tags),
                top_tag=tagging.top_tag,
                tag_scores=dict(tagging.scores),
                review_status=(
                    models.ReviewStatus.FLAGGED.value if tagging.needs_review
                    else models.ReviewStatus.PENDING.value
                ),
                rejected=False,
            )
            await self.record_store.insert(record)

        except asyncio.CancelledError:
            logger.warning(f"Submission {submission_id} cancelled, rolling back {len(uploaded)} upload(s)")
            await asyncio.shield(self._rollback(submission_id, uploaded))
            raise
        except ConflictError:
            await self._rollback(submission_id, uploaded)
            raise
        except ObjectExistsError as e:
            # Media for this id is held by another writer
            await self._rollback(submission_id, uploaded)
            raise ConflictError(f"Submission {submission_id} already exists", details=e.message) from e
        except Exception as e:
            logger.error(f"Submission {submission_id} failed, rolling back: {e}", exc_info=True)
            await self._rollback(submission_id, uploaded)
            raise SubmissionFailedError("Submission failed", details=str(e)) from e

        logger.info(f"Accepted submission {submission_id}")
        return IntakeResult(
            status="accepted",
            submission_id=submission_id,
            tags=tagging.tags,
            top_tag=tagging.top_tag,
            scores=tagging.scores,
            needs_review=tagging.needs_review,
            media_paths=[path for _, path in uploaded],
        )

    async def _upload_audio(
        self,
        submission_id: str,
        audio: MediaUpload,
        uploaded: list[tuple[str, str]],
    ) -> str:
        path = audio_object_path(submission_id)
        await self._upload(path, audio.data, AUDIO_CONTENT_TYPE, uploaded)
        return path

    async def _upload_video(
        self,
        submission_id: str,
        video: MediaUpload,
        uploaded: list[tuple[str, str]],
    ) -> str:
        content_type = video.content_type or "video/mp4"
        path = video_object_path(submission_id, content_type)
        await self._upload(path, video.data, content_type, uploaded)
        return path

    async def _upload(self, path: str, data: bytes, content_type: str, uploaded: list[tuple[str, str]]) -> None:
        """Upload one object, recording it for rollback before the write starts.

        A timed-out write may still land, so the path is tracked up front.
        Only a path owned by someone else is dropped from the list.
        """
        bucket = self.media_store.bucket_for(path)
        uploaded.append((bucket, path))
        try:
            await self.media_store.upload(bucket, path, data, content_type)
        except ObjectExistsError:
            uploaded.remove((bucket, path))
            raise

    async def _rollback(self, submission_id: str, uploaded: list[tuple[str, str]]) -> None:
        """Delete media uploaded during this submission, bucket by bucket."""
        if not uploaded:
            return

        by_bucket: dict[str, list[str]] = {}
        for bucket, path in uploaded:
            by_bucket.setdefault(bucket, []).append(path)

        for bucket, paths in by_bucket.items():
            try:
                await self.media_store.delete(bucket, paths)
            except MemoryBookError as e:
                logger.error(f"Rollback of {paths} in {bucket} failed for {submission_id}: {e}")

        logger.info(f"Rolled back {len(uploaded)} uploaded file(s) for {submission_id}")
