"""测试公共夹具

对象存储和Redis使用内存实现，数据库使用内存SQLite
"""

import hashlib
import io
from typing import Any, AsyncIterator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from app.core.config import Settings
from app.features.storage.models import ObjectStream, UploadedPart
from app.features.storage.tokens import DownloadTokenStore
from app.features.uploads.models import Upload  # noqa: F401  注册表元数据
from app.shared.exceptions import UpstreamStoreError


class FakeMultipartUpload:
    """内存分片上传句柄，行为与 MultipartUpload 一致"""

    def __init__(self, store: "FakeObjectStore", key: str, upload_id: str) -> None:
        self.store = store
        self.key = key
        self.upload_id = upload_id

    async def upload_part(
        self,
        part_number: int,
        stream: AsyncIterator[bytes],
        length: int
    ) -> UploadedPart:
        pending = self.store._pending(self.upload_id)
        data = b"".join([chunk async for chunk in stream])
        etag = f'"{hashlib.md5(data).hexdigest()}"'
        pending["parts"][part_number] = (etag, data)
        return UploadedPart(part_number=part_number, etag=etag)

    async def complete(self, parts: list[UploadedPart]) -> None:
        if self.store.fail_complete:
            raise UpstreamStoreError("合并分片失败")
        if not parts:
            raise UpstreamStoreError("MalformedXML: 分片列表为空")
        pending = self.store._pending(self.upload_id)
        body = b""
        for part in parts:
            stored = pending["parts"].get(part.part_number)
            if stored is None or stored[0] != part.etag:
                raise UpstreamStoreError("分片缺失或etag不匹配")
            body += stored[1]
        self.store.objects[self.key] = (body, pending["content_type"])
        del self.store.multipart[self.upload_id]

    async def abort(self) -> None:
        self.store.aborted.append(self.upload_id)
        if self.store.fail_abort:
            raise UpstreamStoreError("放弃分片上传失败")
        self.store._pending(self.upload_id)
        del self.store.multipart[self.upload_id]


class FakeObjectStore:
    """内存对象存储"""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.multipart: dict[str, dict[str, Any]] = {}
        self.aborted: list[str] = []
        self.fail_complete = False
        self.fail_abort = False
        self.fail_delete_prefix: Optional[str] = None
        self._counter = 0

    def _pending(self, upload_id: str) -> dict[str, Any]:
        if upload_id not in self.multipart:
            raise UpstreamStoreError(f"分片上传不存在: {upload_id}")
        return self.multipart[upload_id]

    async def put(self, key: str, body: bytes, content_type: str) -> None:
        self.objects[key] = (body, content_type)

    async def get(self, key: str, max_bytes: Optional[int] = None) -> Optional[bytes]:
        if key not in self.objects:
            return None
        body = self.objects[key][0]
        return body[:max_bytes] if max_bytes else body

    async def open_stream(self, key: str) -> Optional[ObjectStream]:
        if key not in self.objects:
            return None
        body, content_type = self.objects[key]
        return ObjectStream(body=iter([body]), content_type=content_type, content_length=len(body))

    async def delete(self, key: str) -> None:
        if self.fail_delete_prefix and key.startswith(self.fail_delete_prefix):
            raise UpstreamStoreError(f"删除失败: {key}")
        self.objects.pop(key, None)

    async def list(self, prefix: str) -> list[str]:
        return sorted(key for key in self.objects if key.startswith(prefix))

    async def create_multipart_upload(self, key: str, content_type: str) -> FakeMultipartUpload:
        self._counter += 1
        upload_id = f"mpu-{self._counter}"
        self.multipart[upload_id] = {"key": key, "content_type": content_type, "parts": {}}
        return FakeMultipartUpload(self, key, upload_id)

    def resume_multipart_upload(self, key: str, upload_id: str) -> FakeMultipartUpload:
        return FakeMultipartUpload(self, key, upload_id)


class FakeRedisManager:
    """只实现令牌存储用到的 set/pop"""

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        self.values[key] = value
        self.ttls[key] = ttl
        return True

    async def pop(self, key: str) -> Any:
        return self.values.pop(key, None)


def make_png(width: int = 4, height: int = 3) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


async def body_stream(data: bytes, piece: int = 100) -> AsyncIterator[bytes]:
    for start in range(0, len(data), piece):
        yield data[start:start + piece]


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        chunk_size=1024,
        direct_upload_limit=2048,
        max_file_size=64 * 1024,
        r2_public_base_url="https://files.example.test",
        multipart_session_ttl_seconds=3600,
        download_token_ttl_seconds=60,
    )


@pytest.fixture
def fake_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def fake_redis() -> FakeRedisManager:
    return FakeRedisManager()


@pytest.fixture
def token_store(fake_redis: FakeRedisManager) -> DownloadTokenStore:
    return DownloadTokenStore(fake_redis)


@pytest_asyncio.fixture
async def db_session() -> AsyncIterator[AsyncSession]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    fake_store: FakeObjectStore,
    token_store: DownloadTokenStore,
    test_settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> AsyncIterator[AsyncClient]:
    from app.features.storage.downloads import DownloadService
    from app.features.storage.router import get_download_service
    from app.features.uploads.router import get_expiry_sweeper, get_upload_coordinator
    from app.features.uploads.service import UploadCoordinator
    from app.features.uploads.sweeper import ExpirySweeper
    from app.core.config import settings
    from app.main import app

    monkeypatch.setattr(settings, "direct_upload_limit", test_settings.direct_upload_limit)

    app.dependency_overrides[get_upload_coordinator] = lambda: UploadCoordinator(
        db_session, store=fake_store, config=test_settings
    )
    app.dependency_overrides[get_download_service] = lambda: DownloadService(
        db_session, store=fake_store, tokens=token_store, config=test_settings
    )
    app.dependency_overrides[get_expiry_sweeper] = lambda: ExpirySweeper(
        db_session, store=fake_store, config=test_settings
    )

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://testserver") as http_client:
        yield http_client

    app.dependency_overrides.clear()
