"""Tests for previews, snapshots, fine-tune exports and retries."""

from datetime import timedelta

import pytest
from sqlmodel import func, select

from therapy_chat.core.exceptions import (
    ConflictError,
    NotFoundError,
    RetryLimitError,
    UpstreamError,
    ValidationFailedError,
)
from therapy_chat.models.database import FineTuneEvent, FineTuneLock, FineTuneSnapshot
from therapy_chat.schemas.export import ExportFilterOptions, RetryRequest
from therapy_chat.services.database import database_service
from therapy_chat.services.exports import DUPLICATE_SNAPSHOT_MESSAGE, export_service
from therapy_chat.services.training import get_filter_hash
from therapy_chat.utils.dates import utc_now

EMOTIONS = ["sad", "calm", "angry", "hopeful", "tired"]


@pytest.fixture
def therapist(make_user):
    return make_user(role="therapist", email="theo@example.com")


@pytest.fixture
def training_data(seed_tags):
    """Twelve complete tagged messages."""
    tags = [
        {"emotion": EMOTIONS[i % len(EMOTIONS)], "tone": "negative" if i % 2 else "positive", "alignment": i / 12}
        for i in range(12)
    ]
    return seed_tags(tags)


def _snapshot_rows():
    with database_service.session() as session:
        return list(session.exec(select(FineTuneSnapshot)).all())


# ==================================================
# Preview & CSV
# ==================================================
def test_preview_returns_rows_and_summary(client, therapist, auth_headers, training_data):
    response = client.post("/api/v1/exports/preview", json={"emotions": ["sad", "calm"]}, headers=auth_headers(therapist))
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 6
    assert {row["emotion"] for row in body["annotations"]} == {"sad", "calm"}
    assert [item["count"] for item in body["summary"]] == [3, 3]
    assert "shared_with" not in body["annotations"][0]


def test_preview_is_staff_only(client, make_user, auth_headers):
    response = client.post("/api/v1/exports/preview", json={}, headers=auth_headers(make_user()))
    assert response.status_code == 403
    assert response.json() == {"error": "Forbidden"}


def test_preview_rejects_inverted_range(client, therapist, auth_headers):
    response = client.post("/api/v1/exports/preview", json={"intensity": [0.9, 0.1]}, headers=auth_headers(therapist))
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid input"


def test_training_csv_download(client, therapist, auth_headers, training_data):
    response = client.get("/api/v1/exports/training-csv", headers=auth_headers(therapist))
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.headers["content-disposition"] == 'attachment; filename="emotion_training_data.csv"'
    lines = response.text.strip().split("\n")
    assert lines[0].startswith("source_type,source_id,message_id,role,content")
    assert len(lines) == 13


# ==================================================
# Snapshots
# ==================================================
def test_snapshot_create_and_duplicate(client, therapist, auth_headers, training_data):
    headers = auth_headers(therapist)
    payload = {"name": "Sad and calm", "version": "v1", "filters": {"emotions": ["sad", "calm"]}}

    created = client.post("/api/v1/snapshots", json=payload, headers=headers)
    assert created.status_code == 200
    snapshot = created.json()["snapshot"]
    assert snapshot["job_status"] == "pending"
    assert snapshot["filter_hash"] == get_filter_hash({"emotions": ["sad", "calm"]})

    again = client.post("/api/v1/snapshots", json={**payload, "version": "v2"}, headers=headers)
    assert again.status_code == 409
    assert again.json() == {"error": DUPLICATE_SNAPSHOT_MESSAGE}

    check = client.post("/api/v1/snapshots/check-duplicate", json={"filterHash": snapshot["filter_hash"]}, headers=headers)
    assert check.json() == {"duplicate": True}
    other = client.post("/api/v1/snapshots/check-duplicate", json={"filterHash": "abc"}, headers=headers)
    assert other.json() == {"duplicate": False}


def test_same_filters_allowed_after_data_changes(client, therapist, auth_headers, training_data, seed_tags):
    headers = auth_headers(therapist)
    payload = {"name": "All", "version": "v1", "filters": {}}
    assert client.post("/api/v1/snapshots", json=payload, headers=headers).status_code == 200

    seed_tags([{"emotion": "relieved"}])
    assert client.post("/api/v1/snapshots", json=payload, headers=headers).status_code == 200


# ==================================================
# Fine-tune export
# ==================================================
def test_fine_tune_export(client, therapist, auth_headers, training_data, fine_tune_fake):
    response = client.post(
        "/api/v1/exports/fine-tune",
        json={"name": "Batch one", "filters": {"highRiskOnly": False}},
        headers=auth_headers(therapist),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["jobId"] == "ftjob-1"
    assert body["filePath"] == f"fine-tune/{body['snapshotId']}.jsonl"
    assert fine_tune_fake.kickoffs == [(body["snapshotId"], "ftjob-1")]

    file_name, content = fine_tune_fake.uploads[0]
    assert file_name == body["filePath"]
    assert len(content.split("\n")) == 12

    with database_service.session() as session:
        snapshot = session.get(FineTuneSnapshot, body["snapshotId"])
        assert snapshot.job_id == "ftjob-1"
        assert snapshot.file_id == "file-1"
        assert snapshot.job_status == "validating_files"
        lock = session.exec(select(FineTuneLock).where(FineTuneLock.snapshot_id == snapshot.id)).one()
        assert lock.user_id == therapist.id
        event = session.exec(select(FineTuneEvent).where(FineTuneEvent.snapshot_id == snapshot.id)).one()
        assert event.message == "Job created"


def test_repeated_export_is_locked(client, therapist, auth_headers, training_data, fine_tune_fake):
    headers = auth_headers(therapist)
    payload = {"name": "Batch", "filters": {"emotions": ["sad", "calm", "angry", "hopeful", "tired"]}}
    assert client.post("/api/v1/exports/fine-tune", json=payload, headers=headers).status_code == 200

    again = client.post("/api/v1/exports/fine-tune", json=payload, headers=headers)
    assert again.status_code == 423
    body = again.json()
    assert body["error"] == "Export locked"
    assert body["locked"] is True
    assert body["expiresAt"]


def test_duplicate_export_by_another_user(client, therapist, make_user, auth_headers, training_data, fine_tune_fake):
    payload = {"name": "Batch", "filters": {}}
    assert client.post("/api/v1/exports/fine-tune", json=payload, headers=auth_headers(therapist)).status_code == 200

    admin = make_user(role="admin")
    response = client.post("/api/v1/exports/fine-tune", json=payload, headers=auth_headers(admin))
    assert response.status_code == 423
    assert response.json() == {"error": DUPLICATE_SNAPSHOT_MESSAGE}
    assert len(_snapshot_rows()) == 1


def test_export_needs_enough_examples(client, therapist, auth_headers, seed_tags, fine_tune_fake):
    seed_tags([{"emotion": "sad"}] * 3)

    response = client.post("/api/v1/exports/fine-tune", json={"name": "Tiny", "filters": {}}, headers=auth_headers(therapist))
    assert response.status_code == 400
    assert response.json() == {"error": "Training file must have at least 10 examples"}
    assert fine_tune_fake.uploads == []
    assert _snapshot_rows() == []


def test_export_of_fresh_corrections(client, therapist, auth_headers, training_data, fine_tune_fake):
    headers = auth_headers(therapist)
    first = client.post("/api/v1/exports/fine-tune", json={"name": "Baseline", "filters": {}}, headers=headers)
    assert first.status_code == 200

    _, logs = training_data
    for log in logs:
        annotated = client.post(
            "/api/v1/annotations/annotate-message",
            json={"source_id": log.source_id, "corrected_emotion": "relieved"},
            headers=headers,
        )
        assert annotated.status_code == 200

    response = client.post(
        "/api/v1/exports/fine-tune",
        json={"name": "Corrections", "filters": {"includeCorrected": True}},
        headers=headers,
    )
    assert response.status_code == 200
    _, content = fine_tune_fake.uploads[-1]
    assert len(content.split("\n")) == 12
    assert "relieved" in content


def test_export_can_be_repeated_after_upload_failure(
    client, therapist, auth_headers, training_data, fine_tune_fake, monkeypatch
):
    headers = auth_headers(therapist)
    payload = {"name": "Batch", "filters": {}}
    upload = fine_tune_fake.upload_training_file

    async def failing_upload(file_name, content):
        raise UpstreamError("OpenAI file upload failed: transient")

    monkeypatch.setattr(fine_tune_fake, "upload_training_file", failing_upload)
    failed = client.post("/api/v1/exports/fine-tune", json=payload, headers=headers)
    assert failed.status_code == 502
    assert _snapshot_rows() == []
    assert fine_tune_fake.kickoffs == []

    monkeypatch.setattr(fine_tune_fake, "upload_training_file", upload)
    again = client.post("/api/v1/exports/fine-tune", json=payload, headers=headers)
    assert again.status_code == 200
    assert len(_snapshot_rows()) == 1


async def test_export_job_error_releases_snapshot(therapist, training_data, fine_tune_fake, monkeypatch):
    async def broken_job(file_id, model=None):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(fine_tune_fake, "create_job", broken_job)
    with pytest.raises(RuntimeError):
        await export_service.create_fine_tune(therapist.id, ExportFilterOptions(), "Batch")
    assert _snapshot_rows() == []


# ==================================================
# Retry
# ==================================================
@pytest.fixture
def failed_snapshot(therapist, persist, training_data):
    return persist(
        FineTuneSnapshot(
            name="Failed batch",
            version="v1",
            filters={},
            filter_hash=get_filter_hash({}),
            user_id=therapist.id,
            model_version="gpt-4o-mini-2024-07-18",
            job_id="ftjob-old",
            job_status="failed",
            file_path="fine-tune/old.jsonl",
        )
    )


async def test_retry_starts_new_job(therapist, failed_snapshot, fine_tune_fake):
    result = await export_service.retry_failed(therapist.id, RetryRequest(snapshotId=failed_snapshot.id))
    assert result == {"success": True, "jobId": "ftjob-1"}
    assert fine_tune_fake.polls == [(failed_snapshot.id, "ftjob-1")]
    assert fine_tune_fake.uploads[0][0] == "fine-tune/old.jsonl"

    snapshot = await database_service.get_snapshot(failed_snapshot.id)
    assert snapshot.retry_count == 1
    assert snapshot.job_id == "ftjob-1"

    events = await database_service.get_snapshot_events(failed_snapshot.id)
    assert [(e.job_id, e.status, e.retry_count) for e in events] == [("ftjob-1", "retrying", 1)]

    with pytest.raises(ConflictError, match="Retry already in progress"):
        await export_service.retry_failed(therapist.id, RetryRequest(snapshotId=failed_snapshot.id))


async def test_retry_resolves_snapshot_from_job(therapist, failed_snapshot, fine_tune_fake):
    await database_service.upsert_event(snapshot_id=failed_snapshot.id, job_id="ftjob-old", status="failed")
    with database_service.session() as session:
        event = session.exec(select(FineTuneEvent)).one()
        event.created_at = utc_now() - timedelta(hours=1)
        session.add(event)
        session.commit()

    result = await export_service.retry_failed(
        therapist.id, RetryRequest(job_id="ftjob-old", auto_retry=True, retry_origin="webhook")
    )
    assert result["success"] is True


async def test_retry_validation_errors(therapist, failed_snapshot, fine_tune_fake):
    with pytest.raises(ValidationFailedError, match="Missing snapshotId or jobId"):
        await export_service.retry_failed(therapist.id, RetryRequest())
    with pytest.raises(ValidationFailedError, match="Could not resolve snapshotId from jobId"):
        await export_service.retry_failed(therapist.id, RetryRequest(job_id="ftjob-unknown"))
    with pytest.raises(NotFoundError):
        await export_service.retry_failed(therapist.id, RetryRequest(snapshotId="missing"))


async def test_retry_limit_and_completed(therapist, failed_snapshot, fine_tune_fake):
    await database_service.update_snapshot(failed_snapshot.id, retry_count=3)
    with pytest.raises(RetryLimitError, match=r"Retry limit reached \(3\)"):
        await export_service.retry_failed(therapist.id, RetryRequest(snapshotId=failed_snapshot.id))

    await database_service.update_snapshot(failed_snapshot.id, retry_count=0, job_status="succeeded")
    with pytest.raises(ValidationFailedError, match="Snapshot already completed or archived"):
        await export_service.retry_failed(therapist.id, RetryRequest(snapshotId=failed_snapshot.id))


async def test_auto_retry_respects_cooldown(therapist, failed_snapshot, fine_tune_fake):
    await database_service.upsert_event(snapshot_id=failed_snapshot.id, job_id="ftjob-old", status="failed")

    with pytest.raises(RetryLimitError, match="Retry cooldown active"):
        await export_service.retry_failed(therapist.id, RetryRequest(snapshotId=failed_snapshot.id, auto_retry=True))

    # A manual retry is not subject to the cooldown
    result = await export_service.retry_failed(therapist.id, RetryRequest(snapshotId=failed_snapshot.id))
    assert result["success"] is True


def test_retry_endpoint(client, therapist, auth_headers, failed_snapshot, fine_tune_fake):
    response = client.post(
        "/api/v1/exports/retry-failed", json={"snapshotId": failed_snapshot.id}, headers=auth_headers(therapist)
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "jobId": "ftjob-1"}

    locked = client.post(
        "/api/v1/exports/retry-failed", json={"snapshotId": failed_snapshot.id}, headers=auth_headers(therapist)
    )
    assert locked.status_code == 409
    assert locked.json() == {"error": "Retry already in progress"}


# ==================================================
# Lock sweep
# ==================================================
def test_clear_expired_locks(client, therapist, persist, failed_snapshot, service_headers):
    now = utc_now()
    persist(
        FineTuneLock(
            snapshot_id=failed_snapshot.id,
            user_id=therapist.id,
            expires_at=now - timedelta(minutes=5),
            locked_until=now - timedelta(minutes=1),
        )
    )
    persist(
        FineTuneLock(
            snapshot_id=failed_snapshot.id,
            user_id=therapist.id,
            expires_at=now + timedelta(minutes=10),
            locked_until=now + timedelta(minutes=5),
        )
    )

    assert client.post("/api/v1/functions/clear-expired-locks").status_code == 401

    response = client.post("/api/v1/functions/clear-expired-locks", headers=service_headers)
    assert response.json() == {"success": True, "deleted": 1}
    with database_service.session() as session:
        assert session.exec(select(func.count()).select_from(FineTuneLock)).one() == 1


async def test_export_filters_are_stored_canonically(therapist, training_data, fine_tune_fake):
    filters = ExportFilterOptions.model_validate({"topN": 12, "emotions": ["sad", "calm", "angry", "hopeful", "tired"]})
    response = await export_service.create_fine_tune(therapist.id, filters, "Canonical")
    snapshot = await database_service.get_snapshot(response.snapshotId)
    assert snapshot.filters == {"emotions": ["sad", "calm", "angry", "hopeful", "tired"], "topN": 12}
    assert snapshot.filter_hash == get_filter_hash(snapshot.filters)
