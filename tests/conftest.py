"""Shared fixtures: temporary SQLite databases, in-memory media and seeded admins."""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone

# Settings are read at import time, so point them at test backends first
_TEST_DIR = tempfile.mkdtemp(prefix="memories-tests-")
os.environ.setdefault("DB_URL", f"sqlite+aiosqlite:///{_TEST_DIR}/default.db")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from memories import models
from memories.auth import Authorizer, DatabaseAdminDirectory
from memories.db import build_engine, build_sessionmaker
from memories.records import SubmissionRecordStore
from memories.storage import InMemoryMediaStore

SUPER_ADMIN = "super-1"
ADMIN = "admin-1"
REVIEWER = "reviewer-1"

BASE_TIME = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def session_maker(tmp_path):
    """Fresh database per test; NullPool lets any event loop use it."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'memories.db'}")

    async def create_schema():
        async with engine.begin() as conn:
            await conn.run_sync(models.Base.metadata.create_all)

    asyncio.run(create_schema())
    yield build_sessionmaker(engine)
    asyncio.run(engine.dispose())


@pytest.fixture
def media_store():
    return InMemoryMediaStore()


@pytest.fixture
def record_store(session_maker):
    return SubmissionRecordStore(session_maker)


@pytest.fixture
def admins(session_maker):
    """Seed one profile per role."""

    async def seed():
        async with session_maker() as session:
            for admin_id, role in (
                (SUPER_ADMIN, models.AdminRole.SUPER_ADMIN),
                (ADMIN, models.AdminRole.ADMIN),
                (REVIEWER, models.AdminRole.REVIEWER),
            ):
                session.add(models.AdminProfile(
                    id=admin_id,
                    email=f"{admin_id}@sjcba.edu.in",
                    role=role.value,
                    first_login=False,
                ))
            await session.commit()

    asyncio.run(seed())
    return {"super_admin": SUPER_ADMIN, "admin": ADMIN, "reviewer": REVIEWER}


@pytest.fixture
def authorizer(session_maker):
    return Authorizer(DatabaseAdminDirectory(session_maker))


def form_payload(**overrides):
    """Valid ``formData`` body."""
    payload = {
        "fullName": "Anita Rao",
        "institution": "SJCBA",
        "batchYear": 2005,
        "rollNumber": "2005-CS-12",
        "dateOfBirth": "1987-04-12",
        "email": "anita.rao@gmail.com",
        "phone": "+91 98450 12345",
        "consentGiven": True,
    }
    payload.update(overrides)
    return payload


def make_submission(submission_id, minutes=0, **overrides):
    """Submission row with sensible defaults, ``minutes`` after BASE_TIME."""
    fields = {
        "id": submission_id,
        "created_at": BASE_TIME + timedelta(minutes=minutes),
        "full_name": "Anita Rao",
        "institution": "SJCBA",
        "batch_year": 2005,
        "roll_number": "2005-CS-12",
        "date_of_birth": "1987-04-12",
        "email": "anita.rao@gmail.com",
        "phone": None,
        "message_text": "Those golden days on the school bus",
        "audio_path": None,
        "video_path": None,
        "consent_given": True,
        "tags": ["nostalgia", "bus_memories"],
        "top_tag": "bus_memories",
        "tag_scores": {"nostalgia": 3, "bus_memories": 4},
        "review_status": models.ReviewStatus.PENDING.value,
        "rejected": False,
    }
    fields.update(overrides)
    return models.Submission(**fields)


def insert_all(store, *records):
    """Insert rows from synchronous code (fixtures, TestClient tests)."""

    async def run():
        for record in records:
            await store.insert(record)

    asyncio.run(run())
