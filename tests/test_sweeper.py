"""过期清理测试"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from app.features.uploads.models import Upload, UploadSession, utcnow
from app.features.uploads.repository import UploadRepository
from app.features.uploads.sweeper import ExpirySweeper


async def add_upload(db_session, fake_store, slug, expired=True, derived=()):
    now = utcnow()
    record = Upload(
        slug=slug,
        filename="file.bin",
        filesize=3,
        mime_type="application/octet-stream",
        upload_at=now - timedelta(days=2),
        expires_at=now - timedelta(minutes=1) if expired else now + timedelta(days=1),
    )
    await UploadRepository(db_session).create(record)
    fake_store.objects[record.object_key] = (b"abc", "application/octet-stream")
    for key in derived:
        fake_store.objects[key] = (b"derived", "image/jpeg")
    return record


@pytest.fixture
def sweeper(db_session, fake_store, test_settings):
    return ExpirySweeper(db_session, store=fake_store, config=test_settings)


async def test_sweep_deletes_expired_uploads_and_derived_objects(sweeper, db_session, fake_store):
    await add_upload(
        db_session, fake_store, "old001",
        derived=["old001/thumbnail/thumb.jpg", "old001/temp/chunk-1"],
    )
    await add_upload(db_session, fake_store, "new001", expired=False)

    result = await sweeper.sweep_expired()

    assert (result.total, result.succeeded, result.failed) == (1, 1, 0)
    assert sorted(fake_store.objects) == ["new001/file.bin"]
    repository = UploadRepository(db_session)
    assert await repository.get_by_slug("old001") is None
    assert await repository.get_by_slug("new001") is not None


async def test_sweep_isolates_failures(sweeper, db_session, fake_store):
    await add_upload(db_session, fake_store, "bad001")
    await add_upload(db_session, fake_store, "good01")
    fake_store.fail_delete_prefix = "bad001/"

    result = await sweeper.sweep_expired()

    assert (result.total, result.succeeded, result.failed) == (2, 1, 1)
    repository = UploadRepository(db_session)
    assert await repository.get_by_slug("bad001") is not None
    assert await repository.get_by_slug("good01") is None


async def test_sweep_treats_missing_object_as_success(sweeper, db_session, fake_store):
    record = await add_upload(db_session, fake_store, "gone01")
    del fake_store.objects[record.object_key]

    result = await sweeper.sweep_expired()

    assert result.succeeded == 1


async def test_sweep_with_nothing_expired(sweeper):
    result = await sweeper.sweep_expired()
    assert (result.total, result.succeeded, result.failed) == (0, 0, 0)


async def test_stale_sessions_are_reclaimed(sweeper, fake_store):
    stale_upload = await fake_store.create_multipart_upload("s1/a.bin", "video/mp4")
    fresh_upload = await fake_store.create_multipart_upload("s2/b.bin", "video/mp4")
    now = datetime.now(timezone.utc)

    await sweeper.sessions.save(UploadSession(
        upload_id="stale", key="s1/a.bin", multipart_upload_id=stale_upload.upload_id,
        content_type="video/mp4", created_at=now - timedelta(hours=2),
    ))
    await sweeper.sessions.save(UploadSession(
        upload_id="fresh", key="s2/b.bin", multipart_upload_id=fresh_upload.upload_id,
        content_type="video/mp4", created_at=now,
    ))

    result = await sweeper.sweep_stale_sessions()

    assert (result.total, result.reclaimed, result.failed) == (1, 1, 0)
    assert fake_store.aborted == [stale_upload.upload_id]
    assert await sweeper.sessions.get("stale") is None
    assert await sweeper.sessions.get("fresh") is not None


async def test_stale_session_reclaimed_even_if_abort_fails(sweeper, fake_store):
    await sweeper.sessions.save(UploadSession(
        upload_id="orphan", key="s3/c.bin", multipart_upload_id="already-gone",
        content_type="video/mp4", created_at=datetime.now(timezone.utc) - timedelta(days=3),
    ))

    result = await sweeper.sweep_stale_sessions()

    assert result.reclaimed == 1
    assert await sweeper.sessions.list_upload_ids() == []


async def test_unparseable_session_is_reclaimed(sweeper, fake_store):
    fake_store.objects["multipart-state/broken"] = (b"{not json", "application/json")

    result = await sweeper.sweep_stale_sessions()

    assert (result.total, result.reclaimed, result.failed) == (1, 1, 0)
    assert "multipart-state/broken" not in fake_store.objects


async def test_session_finished_during_sweep_is_skipped(sweeper, fake_store, monkeypatch):
    listed = AsyncMock(return_value=["completed-meanwhile"])
    monkeypatch.setattr(sweeper.sessions, "list_upload_ids", listed)
    deleted = []

    async def record_delete(upload_id):
        deleted.append(upload_id)

    monkeypatch.setattr(sweeper.sessions, "delete", record_delete)

    result = await sweeper.sweep_stale_sessions()

    assert (result.total, result.reclaimed, result.failed) == (0, 0, 0)
    assert deleted == []
