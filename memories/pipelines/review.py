"""Admin review: filtered listing, status/notes updates, deletion and media links."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

from memories import models
from memories.auth import Authorizer, Capability
from memories.config import ReviewSettings, settings
from memories.errors import MemoryBookError, ValidationError
from memories.records import SortSpec, SubmissionFilters, SubmissionRecordStore
from memories.storage import MediaStore

logger = logging.getLogger(__name__)


@dataclass
class Page:
    """One page of submissions."""
    items: list[models.Submission]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


@dataclass
class SignedUrlBatch:
    """Signed links keyed by path, with per-path failures alongside."""
    signed_urls: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


class ReviewService:
    """Administrator views over the submission table."""

    def __init__(
        self,
        record_store: SubmissionRecordStore,
        media_store: MediaStore,
        authorizer: Authorizer,
        review_settings: ReviewSettings | None = None,
    ) -> None:
        self.record_store = record_store
        self.media_store = media_store
        self.authorizer = authorizer
        self.review_settings = review_settings or settings.review

    async def list(
        self,
        actor: str | None,
        filters: SubmissionFilters | None = None,
        sort: SortSpec | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> Page:
        """List submissions matching ``filters``.

        Args:
            actor: Caller identity
            filters: Equality filters on institution, batch year, status, tag, rejected
            sort: Single-field ordering (default newest first)
            page: 1-based page number
            page_size: Rows per page (capped at REVIEW_MAX_PAGE_SIZE)

        Returns:
            Page of submissions with the total match count

        Raises:
            AuthorizationError: If the caller cannot view submissions
            ValidationError: If the sort field or paging arguments are invalid
        """
        await self.authorizer.require(actor, Capability.VIEW_SUBMISSIONS)

        if sort is not None:
            sort.validate()
        page_size = page_size or self.review_settings.default_page_size
        if page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= page_size <= self.review_settings.max_page_size:
            raise ValidationError(f"page_size must be between 1 and {self.review_settings.max_page_size}")

        total = await self.record_store.count(filters)
        items = await self.record_store.query(
            filters,
            sort,
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        return Page(items=items, total=total, page=page, page_size=page_size)

    async def get(self, actor: str | None, submission_id: str) -> models.Submission:
        await self.authorizer.require(actor, Capability.VIEW_SUBMISSIONS)
        return await self.record_store.get(submission_id)

    async def set_status(
        self,
        actor: str | None,
        submission_id: str,
        status: str | None = None,
        notes: str | None = None,
    ) -> models.Submission:
        """Change review status and/or admin notes.

        Raises:
            AuthorizationError: If the caller cannot mutate submissions
            ValidationError: If ``status`` is not a review status or nothing changes
            NotFoundError: If the submission is absent
        """
        profile = await self.authorizer.require(actor, Capability.MUTATE_SUBMISSIONS)

        if status is None and notes is None:
            raise ValidationError("Provide reviewStatus and/or adminNotes")
        if status is not None:
            try:
                status = models.ReviewStatus(status).value
            except ValueError as e:
                raise ValidationError(
                    f"Invalid review status: {status}",
                    details={"allowed": [s.value for s in models.ReviewStatus]},
                ) from e

        record = await self.record_store.update(submission_id, review_status=status, admin_notes=notes)
        logger.info(f"Admin {profile.id} updated submission {submission_id}")
        return record

    async def delete(self, actor: str | None, submission_id: str) -> models.Submission:
        """Delete a submission and then its media objects.

        Media removal is best effort: the row is already gone, so a storage
        failure is logged and not raised.
        """
        profile = await self.authorizer.require(actor, Capability.DELETE_SUBMISSIONS)
        record = await self.record_store.delete(submission_id)

        by_bucket: dict[str, list[str]] = {}
        for path in record.media_paths:
            by_bucket.setdefault(self.media_store.bucket_for(path), []).append(path)

        for bucket, paths in by_bucket.items():
            try:
                await self.media_store.delete(bucket, paths)
            except MemoryBookError as e:
                logger.error(f"Orphaned media for deleted submission {submission_id} in {bucket}: {e}")

        logger.info(f"Admin {profile.id} deleted submission {submission_id}")
        return record

    async def signed_urls(
        self,
        actor: str | None,
        paths: list[str],
        ttl_seconds: int | None = None,
    ) -> SignedUrlBatch:
        """Create time-limited links for media paths.

        A path that is invalid or missing lands in ``errors`` instead of
        failing the whole batch.

        Raises:
            AuthorizationError: If the caller cannot view submissions
            ValidationError: If ``paths`` is empty or the ttl is out of range
        """
        await self.authorizer.require(actor, Capability.VIEW_SUBMISSIONS)

        if not paths:
            raise ValidationError("paths must be a non-empty array")
        ttl = self.media_store.storage.signed_url_ttl if ttl_seconds is None else ttl_seconds
        self.media_store.check_ttl(ttl)

        batch = SignedUrlBatch()
        for path in paths:
            try:
                bucket = self.media_store.bucket_for(path)
                batch.signed_urls[path] = await self.media_store.signed_url(bucket, path, ttl)
            except MemoryBookError as e:
                logger.warning(f"Could not sign {path}: {e}")
                batch.errors[path] = e.message

        return batch

    async def stats(self, actor: str | None) -> dict[str, Any]:
        await self.authorizer.require(actor, Capability.VIEW_SUBMISSIONS)
        return await self.record_store.stats()
