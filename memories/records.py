"""Submission record store: insert, update, query and delete submissions.

Each operation runs in its own session/transaction, so a record is never
observable half-written.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

from sqlalchemy import Select, and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models
from .errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {
    "created_at",
    "full_name",
    "institution",
    "batch_year",
    "roll_number",
    "date_of_birth",
    "email",
    "phone",
    "message_text",
    "audio_path",
    "video_path",
    "top_tag",
    "review_status",
    "admin_notes",
    "rejected",
}


@dataclass
class SubmissionFilters:
    """Equality filters; None means "any"."""
    institution: str | None = None
    batch_year: int | None = None
    review_status: str | None = None
    top_tag: str | None = None
    rejected: bool | None = None

    def as_dict(self) -> dict[str, Any]:
        return {k: v for k, v in vars(self).items() if v is not None}


@dataclass
class SortSpec:
    """Single-field ordering."""
    field: str = "created_at"
    descending: bool = True

    def validate(self) -> None:
        """Raise ValidationError unless ``field`` is sortable."""
        if self.field not in SORTABLE_FIELDS:
            raise ValidationError(
                f"Cannot sort by {self.field!r}",
                details={"sortable": sorted(SORTABLE_FIELDS)},
            )


class SubmissionRecordStore:
    """Persistent table of submissions."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    async def insert(self, record: models.Submission) -> models.Submission:
        """Insert a new submission.

        Raises:
            ConflictError: If the identifier already exists
        """
        async with self.session_maker() as session:
            if await session.get(models.Submission, record.id) is not None:
                raise ConflictError(f"Submission {record.id} already exists")
            session.add(record)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConflictError(f"Submission {record.id} already exists") from e

        logger.info(f"Inserted submission {record.id}")
        return record

    async def exists(self, submission_id: str) -> bool:
        async with self.session_maker() as session:
            return await session.get(models.Submission, submission_id) is not None

    async def get(self, submission_id: str) -> models.Submission:
        """Fetch one submission.

        Raises:
            NotFoundError: If the identifier is absent
        """
        async with self.session_maker() as session:
            record = await session.get(models.Submission, submission_id)
        if record is None:
            raise NotFoundError(f"Submission {submission_id} not found")
        return record

    async def update(
        self,
        submission_id: str,
        *,
        review_status: str | None = None,
        admin_notes: str | None = None,
    ) -> models.Submission:
        """Update review status and/or admin notes (last writer wins).

        Raises:
            NotFoundError: If the identifier is absent
        """
        async with self.session_maker() as session:
            record = await session.get(models.Submission, submission_id)
            if record is None:
                raise NotFoundError(f"Submission {submission_id} not found")

            if review_status is not None:
                record.review_status = review_status
            if admin_notes is not None:
                record.admin_notes = admin_notes
            await session.commit()

        logger.info(f"Updated submission {submission_id}: status={review_status}")
        return record

    async def delete(self, submission_id: str) -> models.Submission:
        """Delete one submission and return the removed row.

        Raises:
            NotFoundError: If the identifier is absent
        """
        async with self.session_maker() as session:
            record = await session.get(models.Submission, submission_id)
            if record is None:
                raise NotFoundError(f"Submission {submission_id} not found")
            await session.delete(record)
            await session.commit()

        logger.info(f"Deleted submission {submission_id}")
        return record

    async def query(
        self,
        filters: SubmissionFilters | None = None,
        sort: SortSpec | None = None,
        ids: list[str] | None = None,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[models.Submission]:
        """Return matching submissions, newest first unless ``sort`` says otherwise.

        Args:
            filters: Equality filters
            sort: Single-field ordering; nulls always sort last
            ids: Restrict to these identifiers
            limit: Maximum rows to return (all if None)
            offset: Rows to skip

        Returns:
            List of Submission rows
        """
        sort = sort or SortSpec()
        sort.validate()
        column = getattr(models.Submission, sort.field)
        order = column.desc() if sort.descending else column.asc()

        stmt = self._filtered(select(models.Submission), filters, ids)
        # id as tie-breaker keeps pagination stable
        stmt = stmt.order_by(order.nulls_last(), models.Submission.id.asc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.session_maker() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count(
        self,
        filters: SubmissionFilters | None = None,
        ids: list[str] | None = None,
    ) -> int:
        stmt = self._filtered(select(func.count()).select_from(models.Submission), filters, ids)
        async with self.session_maker() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def iter_batches(
        self,
        filters: SubmissionFilters | None = None,
        ids: list[str] | None = None,
        *,
        batch_size: int = 100,
    ) -> AsyncIterator[list[models.Submission]]:
        """Yield matching submissions page by page (newest first).

        Pages are keyed on the last ``(created_at, id)`` seen rather than an
        offset, so rows inserted or deleted mid-export never shift a page.
        Each matching row present for the whole iteration is yielded once.
        """
        sub = models.Submission
        base = self._filtered(select(sub), filters, ids)
        last: tuple | None = None
        while True:
            stmt = base
            if last is not None:
                created_at, last_id = last
                stmt = stmt.where(or_(
                    sub.created_at < created_at,
                    and_(sub.created_at == created_at, sub.id > last_id),
                ))
            stmt = stmt.order_by(sub.created_at.desc(), sub.id.asc()).limit(batch_size)

            async with self.session_maker() as session:
                batch = list((await session.execute(stmt)).scalars().all())
            if not batch:
                return
            yield batch
            if len(batch) < batch_size:
                return
            last = (batch[-1].created_at, batch[-1].id)

    async def stats(self) -> dict[str, Any]:
        """Counters for the admin dashboard."""
        sub = models.Submission
        async with self.session_maker() as session:
            total = (await session.execute(select(func.count()).select_from(sub))).scalar_one()
            by_status = dict(
                (await session.execute(select(sub.review_status, func.count()).group_by(sub.review_status))).all()
            )
            by_institution = dict(
                (await session.execute(select(sub.institution, func.count()).group_by(sub.institution))).all()
            )
            by_top_tag = dict(
                (await session.execute(select(sub.top_tag, func.count()).group_by(sub.top_tag))).all()
            )
            with_audio = (
                await session.execute(select(func.count()).select_from(sub).where(sub.audio_path.is_not(None)))
            ).scalar_one()
            with_video = (
                await session.execute(select(func.count()).select_from(sub).where(sub.video_path.is_not(None)))
            ).scalar_one()
            rejected = (
                await session.execute(select(func.count()).select_from(sub).where(sub.rejected == True))
            ).scalar_one()

        return {
            "total": int(total),
            "by_review_status": {status.value: int(by_status.get(status.value, 0)) for status in models.ReviewStatus},
            "by_institution": {k: int(v) for k, v in by_institution.items()},
            "by_top_tag": {k: int(v) for k, v in by_top_tag.items()},
            "with_audio": int(with_audio),
            "with_video": int(with_video),
            "rejected": int(rejected),
        }

    @staticmethod
    def _filtered(stmt: Select, filters: SubmissionFilters | None, ids: list[str] | None) -> Select:
        sub = models.Submission
        if ids is not None:
            stmt = stmt.where(sub.id.in_(ids))
        if filters is None:
            return stmt
        if filters.institution is not None:
            stmt = stmt.where(sub.institution == filters.institution)
        if filters.batch_year is not None:
            stmt = stmt.where(sub.batch_year == filters.batch_year)
        if filters.review_status is not None:
            stmt = stmt.where(sub.review_status == filters.review_status)
        if filters.top_tag is not None:
            stmt = stmt.where(sub.top_tag == filters.top_tag)
        if filters.rejected is not None:
            stmt = stmt.where(sub.rejected == filters.rejected)
        return stmt
