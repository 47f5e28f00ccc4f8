"""Export pipeline: ZIP archives of submissions for offline review.

Bulk exports hold a ``submissions.csv`` plus one folder per record. Media is
referenced by signed links unless embedding is requested, in which case
records are read page by page and the archive is spooled to disk past
``EXPORT_SPOOL_MAX_BYTES``.
"""
from __future__ import annotations

import csv
import io
import json
import logging
import re
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import IO, Iterator

import pandas as pd

from memories import models
from memories.auth import Authorizer, Capability
from memories.config import ExportSettings, settings
from memories.errors import MemoryBookError, NotFoundError
from memories.records import SubmissionFilters, SubmissionRecordStore
from memories.storage import MediaStore, video_extension

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "ID",
    "Created At",
    "Full Name",
    "Institution",
    "Batch Year",
    "Roll Number",
    "Date of Birth",
    "Email",
    "Phone",
    "Message Text",
    "Top Tag",
    "Tags",
    "Review Status",
    "Admin Notes",
    "Rejected",
    "Has Audio",
    "Has Video",
]
LINK_COLUMNS = ["Audio Link", "Video Link"]

CHUNK_SIZE = 64 * 1024


@dataclass
class ExportArchive:
    """A finished ZIP archive, positioned at the start."""
    filename: str
    fileobj: IO[bytes]
    record_count: int = 0

    def getvalue(self) -> bytes:
        self.fileobj.seek(0)
        return self.fileobj.read()

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        """Stream the archive, closing the backing file when done."""
        try:
            self.fileobj.seek(0)
            while chunk := self.fileobj.read(chunk_size):
                yield chunk
        finally:
            self.fileobj.close()


def _yes_no(value: bool) -> str:
    return "Yes" if value else "No"


def safe_filename_part(value: str, keep: str = "") -> str:
    """Replace anything but ASCII letters and digits (and ``keep``) with ``_``."""
    return re.sub(rf"[^a-zA-Z0-9{re.escape(keep)}]", "_", value)


def media_filename(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def submission_details(record: models.Submission) -> dict:
    """JSON view of one submission, as written to ``submission_details.json``."""
    return {
        "id": record.id,
        "fullName": record.full_name,
        "rollNumber": record.roll_number,
        "institution": record.institution,
        "batchYear": record.batch_year,
        "email": record.email,
        "phone": record.phone,
        "message": record.message_text,
        "submittedAt": record.created_at.isoformat() if record.created_at else None,
        "reviewStatus": record.review_status,
        "tags": list(record.tags or []),
        "topTag": record.top_tag,
        "adminNotes": record.admin_notes,
        "audioPath": record.audio_path,
        "videoPath": record.video_path,
    }


def csv_row(record: models.Submission) -> dict[str, str]:
    return {
        "ID": record.id,
        "Created At": record.created_at.isoformat() if record.created_at else "",
        "Full Name": record.full_name,
        "Institution": record.institution,
        "Batch Year": str(record.batch_year),
        "Roll Number": record.roll_number,
        "Date of Birth": record.date_of_birth,
        "Email": record.email,
        "Phone": record.phone or "",
        "Message Text": record.message_text or "",
        "Top Tag": record.top_tag or "",
        "Tags": "; ".join(record.tags or []),
        "Review Status": record.review_status,
        "Admin Notes": record.admin_notes or "",
        "Rejected": _yes_no(record.rejected),
        "Has Audio": _yes_no(bool(record.audio_path)),
        "Has Video": _yes_no(bool(record.video_path)),
    }


def render_csv(rows: list[dict[str, str]], columns: list[str]) -> str:
    """Render rows with every cell quoted."""
    df = pd.DataFrame(rows, columns=columns, dtype=str)
    return df.to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\n")


class ExportService:
    """Builds bulk and single-record archives."""

    def __init__(
        self,
        record_store: SubmissionRecordStore,
        media_store: MediaStore,
        authorizer: Authorizer,
        export_settings: ExportSettings | None = None,
    ) -> None:
        self.record_store = record_store
        self.media_store = media_store
        self.authorizer = authorizer
        self.export_settings = export_settings or settings.export

    async def export_bulk(
        self,
        actor: str | None,
        filters: SubmissionFilters | None = None,
        ids: list[str] | None = None,
        include_media: bool = False,
    ) -> ExportArchive:
        """Export matching submissions as one ZIP.

        Args:
            actor: Caller identity
            filters: Equality filters (combined with ``ids``)
            ids: Restrict to these identifiers
            include_media: Embed audio/video bytes instead of signed links

        Returns:
            ExportArchive named ``alumni-submissions-YYYY-MM-DD.zip``

        Raises:
            AuthorizationError: If the caller cannot view submissions
            NotFoundError: If no submission matches
        """
        profile = await self.authorizer.require(actor, Capability.VIEW_SUBMISSIONS)

        if ids is not None and not ids:
            raise NotFoundError("No submissions found")
        total = await self.record_store.count(filters, ids)
        if total == 0:
            raise NotFoundError("No submissions found")

        applied = filters.as_dict() if filters else {}
        logger.info(f"Admin {profile.id} exporting {total} submission(s) filters={applied} include_media={include_media}")

        columns = CSV_COLUMNS if include_media else CSV_COLUMNS + LINK_COLUMNS
        rows: list[dict[str, str]] = []
        spool = tempfile.SpooledTemporaryFile(max_size=self.export_settings.spool_max_bytes)

        try:
            with zipfile.ZipFile(spool, "w", zipfile.ZIP_DEFLATED) as zf:
                async for batch in self.record_store.iter_batches(
                    filters, ids, batch_size=self.export_settings.batch_size,
                ):
                    for record in batch:
                        row = csv_row(record)
                        folder = f"submission-{record.id}"

                        if record.message_text:
                            zf.writestr(f"{folder}/message.txt", record.message_text)

                        if include_media:
                            await self._embed_bulk_media(zf, folder, record)
                        else:
                            row["Audio Link"] = await self._link(record.audio_path)
                            row["Video Link"] = await self._link(record.video_path)
                        rows.append(row)

                zf.writestr("submissions.csv", render_csv(rows, columns))
        except BaseException:
            spool.close()
            raise

        spool.seek(0)
        filename = f"alumni-submissions-{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.zip"
        logger.info(f"Built {filename} with {len(rows)} submission(s)")
        return ExportArchive(filename=filename, fileobj=spool, record_count=len(rows))

    async def export_single(self, actor: str | None, submission_id: str) -> ExportArchive:
        """Export one submission with its media embedded.

        Per-file download failures are written to ``errors/{filename}_error.txt``
        inside the archive instead of failing the export.

        Raises:
            AuthorizationError: If the caller cannot view submissions
            NotFoundError: If the submission is absent
        """
        await self.authorizer.require(actor, Capability.VIEW_SUBMISSIONS)
        record = await self.record_store.get(submission_id)

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("submission_details.json", json.dumps(submission_details(record), indent=2))
            if record.message_text:
                zf.writestr("message.txt", record.message_text)

            for path in record.media_paths:
                name = media_filename(path)
                try:
                    data = await self.media_store.download(self.media_store.bucket_for(path), path)
                except MemoryBookError as e:
                    logger.error(f"Could not fetch {path} for export of {submission_id}: {e}")
                    zf.writestr(f"errors/{name}_error.txt", f"Failed to download {path}: {e.message}")
                    continue
                zf.writestr(f"media/{name}", data)

        buffer.seek(0)
        filename = (
            f"{safe_filename_part(record.roll_number, keep='-')}_"
            f"{safe_filename_part(record.full_name)}.zip"
        )
        return ExportArchive(filename=filename, fileobj=buffer, record_count=1)

    async def _link(self, path: str | None) -> str:
        if not path:
            return ""
        try:
            return await self.media_store.signed_url(
                self.media_store.bucket_for(path), path, self.export_settings.link_ttl,
            )
        except MemoryBookError as e:
            logger.warning(f"No export link for {path}: {e}")
            return ""

    async def _embed_bulk_media(self, zf: zipfile.ZipFile, folder: str, record: models.Submission) -> None:
        targets = []
        if record.audio_path:
            targets.append((record.audio_path, "audio.webm"))
        if record.video_path:
            ext = record.video_path.rsplit(".", 1)[-1] if "." in media_filename(record.video_path) else video_extension(None)
            targets.append((record.video_path, f"video.{ext}"))

        for path, name in targets:
            try:
                data = await self.media_store.download(self.media_store.bucket_for(path), path)
            except MemoryBookError as e:
                logger.error(f"Skipping {path} in bulk export: {e}")
                zf.writestr(f"{folder}/errors/{name}_error.txt", f"Failed to download {path}: {e.message}")
                continue
            zf.writestr(f"{folder}/{name}", data)
