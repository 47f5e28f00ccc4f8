"""HTTP tests for the FastAPI app using TestClient and dependency overrides."""

import io
import json
import zipfile

import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN, REVIEWER, SUPER_ADMIN, form_payload, insert_all, make_submission
from memories.api import app, get_intake_pipeline
from memories.db import get_sessionmaker
from memories.pipelines.intake import IntakePipeline, QualityGate
from memories.records import SubmissionRecordStore
from memories.storage import get_media_store

BUS_TEXT = "Those golden days with my best friends and our favorite ma'am on the school bus"


@pytest.fixture
def client(session_maker, media_store, admins):
    app.dependency_overrides[get_sessionmaker] = lambda: session_maker
    app.dependency_overrides[get_media_store] = lambda: media_store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def as_admin(admin_id=ADMIN):
    return {"X-Admin-Id": admin_id}


def submit(client, submission_id="sub-1", payload=None, text=BUS_TEXT, files=None):
    data = {
        "submissionId": submission_id,
        "formData": json.dumps(payload if payload is not None else form_payload()),
        "messageText": text,
    }
    return client.post("/submissions", data=data, files=files)


class TestHealth:
    """Basic endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_root(self, client):
        assert "submit" in client.get("/").json()["endpoints"]


class TestSubmissions:
    """Public intake endpoint."""

    def test_accepted(self, client, media_store):
        response = submit(client, files={
            "audioFile": ("memory.webm", b"audio", "audio/webm"),
            "videoFile": ("clip.mov", b"video", "video/quicktime"),
        })

        assert response.status_code == 201
        body = response.json()
        assert body == {
            "status": "accepted",
            "submissionId": "sub-1",
            "tags": ["nostalgia", "friendship", "teachers", "bus_memories"],
            "topTag": "friendship",
        }
        assert media_store.list_paths() == ["audio/sub-1.webm", "videos/sub-1.quicktime"]

    def test_missing_consent(self, client, media_store):
        response = submit(client, payload=form_payload(consentGiven=False), files={
            "audioFile": ("memory.webm", b"audio", "audio/webm"),
        })

        assert response.status_code == 400
        assert response.json()["error"] == "formData is invalid"
        assert media_store.list_paths() == []

    def test_missing_submission_id(self, client):
        response = client.post("/submissions", data={"formData": json.dumps(form_payload())})
        assert response.status_code == 400
        assert response.json()["error"] == "submissionId is required"

    def test_duplicate(self, client):
        assert submit(client).status_code == 201
        response = submit(client)
        assert response.status_code == 409
        assert response.json()["retryable"] is False

    def test_rejected_by_quality_gate(self, client, session_maker, media_store):
        class RejectAll(QualityGate):
            def evaluate(self, tagging):
                return "not a memory"

        app.dependency_overrides[get_intake_pipeline] = lambda: IntakePipeline(
            SubmissionRecordStore(session_maker), media_store, quality_gate=RejectAll(),
        )
        response = submit(client)

        assert response.status_code == 422
        body = response.json()
        assert body["status"] == "rejected"
        assert body["reason"] == "not a memory"
        assert body["topTag"] == "friendship"
        assert body["scores"]["friendship"] == 5


class TestAdminSubmissions:
    """Admin review endpoints."""

    @pytest.fixture
    def seeded(self, session_maker):
        insert_all(
            SubmissionRecordStore(session_maker),
            make_submission("sub-1", minutes=1, audio_path="audio/sub-1.webm"),
            make_submission("sub-2", minutes=2, institution="SJIT"),
        )

    def test_requires_identity(self, client, seeded):
        response = client.get("/admin/submissions")
        assert response.status_code == 403

    def test_list(self, client, seeded):
        response = client.get("/admin/submissions", headers=as_admin(REVIEWER))

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert [item["id"] for item in body["items"]] == ["sub-2", "sub-1"]
        assert body["items"][1]["audioPath"] == "audio/sub-1.webm"
        assert body["items"][0]["topTag"] == "bus_memories"

    def test_list_filtered_and_sorted(self, client, seeded):
        response = client.get(
            "/admin/submissions",
            params={"institution": "SJIT", "sort_by": "full_name", "sort_dir": "asc"},
            headers=as_admin(),
        )
        assert [item["id"] for item in response.json()["items"]] == ["sub-2"]

    def test_bad_sort_field(self, client, seeded):
        response = client.get("/admin/submissions", params={"sort_by": "email2"}, headers=as_admin())
        assert response.status_code == 400
        assert "admin_notes" in response.json()["details"]["sortable"]

    def test_bad_sort_field_without_identity_is_forbidden(self, client, seeded):
        response = client.get("/admin/submissions", params={"sort_by": "email2"})
        assert response.status_code == 403
        assert response.json()["details"] is None

    def test_get_missing(self, client, seeded):
        assert client.get("/admin/submissions/nope", headers=as_admin()).status_code == 404

    def test_patch(self, client, seeded):
        response = client.patch(
            "/admin/submissions/sub-1",
            json={"reviewStatus": "approved", "adminNotes": "Use on the cover"},
            headers=as_admin(),
        )
        assert response.status_code == 200
        assert response.json()["reviewStatus"] == "approved"
        assert response.json()["adminNotes"] == "Use on the cover"

    def test_reviewer_cannot_patch(self, client, seeded):
        response = client.patch(
            "/admin/submissions/sub-1", json={"reviewStatus": "approved"}, headers=as_admin(REVIEWER),
        )
        assert response.status_code == 403

    def test_delete(self, client, seeded):
        response = client.delete("/admin/submissions/sub-1", headers=as_admin())

        assert response.status_code == 200
        assert client.get("/admin/submissions/sub-1", headers=as_admin()).status_code == 404

    def test_signed_urls(self, client, seeded):
        submit(client, "sub-3", files={"audioFile": ("m.webm", b"audio", "audio/webm")})

        response = client.post(
            "/admin/media/signed-urls",
            json={"paths": ["audio/sub-3.webm", "audio/sub-1.webm"], "expiresIn": 120},
            headers=as_admin(REVIEWER),
        )

        assert response.status_code == 200
        body = response.json()
        assert list(body["signedUrls"]) == ["audio/sub-3.webm"]
        assert list(body["errors"]) == ["audio/sub-1.webm"]

    def test_signed_urls_bad_ttl(self, client, seeded):
        response = client.post(
            "/admin/media/signed-urls", json={"paths": ["audio/sub-1.webm"], "expiresIn": 5}, headers=as_admin(),
        )
        assert response.status_code == 400

    def test_stats(self, client, seeded):
        body = client.get("/admin/stats", headers=as_admin(REVIEWER)).json()
        assert body["total"] == 2
        assert body["withAudio"] == 1
        assert body["byReviewStatus"]["pending"] == 2


class TestExports:
    """ZIP download endpoints."""

    @pytest.fixture
    def seeded(self, session_maker):
        insert_all(
            SubmissionRecordStore(session_maker),
            make_submission("sub-1", minutes=1),
            make_submission("sub-2", minutes=2, institution="SJPUC"),
        )

    def test_bulk(self, client, seeded):
        response = client.post("/admin/exports", json={"filters": {"institution": "SJPUC"}}, headers=as_admin())

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert "alumni-submissions-" in response.headers["content-disposition"]
        zf = zipfile.ZipFile(io.BytesIO(response.content))
        assert "submission-sub-2/message.txt" in zf.namelist()
        assert "submission-sub-1/message.txt" not in zf.namelist()

    def test_bulk_by_ids(self, client, seeded):
        response = client.post("/admin/exports", json={"submissionIds": ["sub-1"]}, headers=as_admin())
        zf = zipfile.ZipFile(io.BytesIO(response.content))
        assert "submission-sub-1/message.txt" in zf.namelist()

    def test_bulk_nothing_matches(self, client, seeded):
        response = client.post("/admin/exports", json={"filters": {"institution": "SJIT"}}, headers=as_admin())
        assert response.status_code == 404

    def test_single(self, client, seeded):
        response = client.get("/admin/submissions/sub-1/export", headers=as_admin(REVIEWER))

        assert response.status_code == 200
        assert 'filename="2005-CS-12_Anita_Rao.zip"' in response.headers["content-disposition"]
        zf = zipfile.ZipFile(io.BytesIO(response.content))
        assert json.loads(zf.read("submission_details.json"))["id"] == "sub-1"


class TestAdminsApi:
    """Admin management endpoints."""

    def test_create_and_list(self, client):
        response = client.post(
            "/admin/admins",
            json={"id": "new-1", "email": "new.admin@sjcba.edu.in", "role": "reviewer"},
            headers=as_admin(),
        )
        assert response.status_code == 201
        assert response.json()["firstLogin"] is True
        assert response.json()["createdBy"] == ADMIN

        ids = {a["id"] for a in client.get("/admin/admins", headers=as_admin()).json()}
        assert "new-1" in ids

    def test_update_role_requires_super_admin(self, client):
        response = client.patch(f"/admin/admins/{REVIEWER}/role", json={"role": "admin"}, headers=as_admin())
        assert response.status_code == 403

        response = client.patch(
            f"/admin/admins/{REVIEWER}/role", json={"role": "admin"}, headers=as_admin(SUPER_ADMIN),
        )
        assert response.status_code == 200
        assert response.json()["role"] == "admin"

    def test_delete_self_refused(self, client):
        response = client.delete(f"/admin/admins/{SUPER_ADMIN}", headers=as_admin(SUPER_ADMIN))
        assert response.status_code == 400

    def test_first_login_complete(self, client):
        response = client.post("/admin/me/first-login-complete", headers=as_admin(REVIEWER))
        assert response.status_code == 200
        assert response.json()["firstLogin"] is False
