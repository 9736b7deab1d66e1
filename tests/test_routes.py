"""HTTP接口测试

检查统一响应格式、驼峰字段名和错误码映射
"""

from unittest.mock import AsyncMock

import app.main as main
from app.core.config import settings
from app.core.redis import redis_manager
from conftest import make_png


async def test_root(client):
    response = await client.get("/")
    body = response.json()

    assert response.status_code == 200
    assert body["success"] is True
    assert body["data"]["name"] == settings.app_name


async def test_health_reports_degraded_dependency(client, monkeypatch):
    monkeypatch.setattr(main, "_database_reachable", AsyncMock(return_value=True))
    monkeypatch.setattr(redis_manager, "ping", AsyncMock(return_value=False))
    monkeypatch.setattr(settings, "endpoint_url", "https://r2.example.test")
    monkeypatch.setattr(settings, "aws_access_key_id", "key")
    monkeypatch.setattr(settings, "aws_secret_access_key", "secret")

    response = await client.get("/health")
    body = response.json()

    assert response.status_code == 503
    assert body["success"] is False
    assert body["code"] == 503
    assert body["data"]["status"] == "degraded"
    assert body["data"]["database"] is True
    assert body["data"]["redis"] is False
    assert body["data"]["storage"] is True


async def test_start_chunk_complete_flow(client, fake_store):
    data = b"v" * 3000

    start = await client.post("/api/upload/start", json={
        "filename": "clip.mp4",
        "filesize": len(data),
        "mimeType": "video/mp4",
        "expires": "7d",
    })
    assert start.status_code == 200
    started = start.json()["data"]
    assert started["isDirectUpload"] is False
    assert started["totalChunks"] == 3

    parts = []
    for index in (2, 0, 1):
        piece = data[index * 1024:(index + 1) * 1024]
        chunk = await client.post(
            "/api/upload/chunk",
            params={"uploadId": started["uploadId"], "chunkIndex": index, "totalChunks": 3},
            content=piece,
        )
        assert chunk.status_code == 200
        parts.append(chunk.json()["data"]["uploadedPart"])

    complete = await client.post("/api/upload/complete", json={
        "uploadId": started["uploadId"],
        "slug": started["slug"],
        "filename": "clip.mp4",
        "filesize": len(data),
        "mimeType": "video/mp4",
        "expires": "7d",
        "totalChunks": 3,
        "uploadedParts": parts,
    })
    assert complete.status_code == 200
    result = complete.json()["data"]
    assert result["url"] == f"https://files.example.test/{started['slug']}/clip.mp4"
    assert result["expiresAt"].endswith(("Z", "+00:00"))
    assert fake_store.objects[f"{started['slug']}/clip.mp4"][0] == data

    info = await client.get(f"/api/upload/{started['slug']}")
    assert info.status_code == 200
    assert info.json()["data"]["mimeType"] == "video/mp4"


async def test_direct_upload_and_download(client):
    png = make_png(8, 6)

    upload = await client.post(
        "/api/upload/direct",
        params={"filename": "cat.png", "filesize": len(png), "mimeType": "image/png", "expires": "1h"},
        content=png,
    )
    assert upload.status_code == 200
    uploaded = upload.json()["data"]
    assert (uploaded["width"], uploaded["height"]) == (8, 6)

    token = await client.post("/api/download/token", json={"uploadId": uploaded["id"]})
    assert token.status_code == 200
    token_value = token.json()["data"]["token"]

    download = await client.get("/api/download", headers={"x-download-token": token_value})
    assert download.status_code == 200
    assert download.content == png
    assert download.headers["content-disposition"] == 'attachment; filename="cat.png"'

    reused = await client.get("/api/download", headers={"x-download-token": token_value})
    assert reused.status_code == 404

    by_slug = await client.get(f"/api/download/{uploaded['slug']}")
    assert by_slug.status_code == 200
    assert by_slug.content == png


async def test_direct_upload_without_content_length_stops_at_filesize(client, fake_store):
    async def chunked_body():
        for _ in range(50):
            yield b"a" * 1024

    response = await client.post(
        "/api/upload/direct",
        params={"filename": "a.txt", "filesize": 10, "mimeType": "text/plain", "expires": "1h"},
        content=chunked_body(),
    )

    assert response.status_code == 400
    assert response.json()["error_type"] == "ValidationError"
    assert "超过声明长度" in response.json()["message"]
    assert fake_store.objects == {}


async def test_validation_error_envelope(client):
    response = await client.post("/api/upload/start", json={
        "filename": "virus.exe",
        "filesize": 100,
        "mimeType": "application/x-msdownload",
        "expires": "1h",
    })
    body = response.json()

    assert response.status_code == 400
    assert body["success"] is False
    assert body["error_type"] == "ValidationError"
    assert body["code"] == 400


async def test_malformed_body_is_400(client):
    response = await client.post("/api/upload/start", json={"filesize": "not-a-number"})

    assert response.status_code == 400
    assert response.json()["error_type"] == "ValidationError"


async def test_chunk_for_unknown_upload_is_404(client):
    response = await client.post(
        "/api/upload/chunk",
        params={"uploadId": "missing", "chunkIndex": 0, "totalChunks": 2},
        content=b"abc",
    )

    assert response.status_code == 404
    assert response.json()["error_type"] == "NotFoundError"


async def test_invalid_part_numbers_error_type(client):
    start = await client.post("/api/upload/start", json={
        "filename": "clip.mp4", "filesize": 3000, "mimeType": "video/mp4", "expires": "1h",
    })
    started = start.json()["data"]

    response = await client.post("/api/upload/complete", json={
        "uploadId": started["uploadId"],
        "slug": started["slug"],
        "filename": "clip.mp4",
        "filesize": 3000,
        "mimeType": "video/mp4",
        "expires": "1h",
        "totalChunks": 3,
        "uploadedParts": [{"partNumber": 1, "etag": "a"}, {"partNumber": 3, "etag": "c"}],
    })

    assert response.status_code == 400
    assert response.json()["error_type"] == "InvalidPartNumbers"


async def test_cancel_unknown_upload_succeeds(client):
    response = await client.post("/api/upload/cancel", json={"uploadId": "never-started"})

    assert response.status_code == 200
    assert response.json()["data"] == {"success": True}


async def test_download_without_token(client):
    response = await client.get("/api/download")
    assert response.status_code == 400


async def test_unknown_slug_is_404(client):
    assert (await client.get("/api/upload/nope00")).status_code == 404
    assert (await client.get("/api/download/nope00")).status_code == 404


async def test_cron_requires_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", None)
    assert (await client.get("/api/cron/clear")).status_code == 500

    monkeypatch.setattr(settings, "cron_secret", "s3cret")
    assert (await client.get("/api/cron/clear")).status_code == 401
    wrong = await client.get("/api/cron/clear", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401

    response = await client.get("/api/cron/clear", headers={"Authorization": "Bearer s3cret"})
    assert response.status_code == 200
    assert response.json()["data"]["uploads"] == {"total": 0, "succeeded": 0, "failed": 0}
    assert response.json()["data"]["sessions"] == {"total": 0, "reclaimed": 0, "failed": 0}
