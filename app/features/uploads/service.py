"""上传协调服务

实现直传和分片上传的完整流程：开始、上传分片、完成、取消。
服务本身不保存任何状态，跨请求的状态全部来自对象存储中的会话记录和数据库，
因此多个实例可以同时处理同一个上传的不同请求。
"""

from typing import AsyncIterator, Optional, Sequence
from urllib.parse import quote

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings
from app.features.storage.models import UploadedPart
from app.features.storage.service import R2ObjectStore, object_store
from app.features.storage.streams import LengthMismatchError, bounded_stream
from app.shared.exceptions import (
    BaseAPIException,
    InternalServerError,
    InvalidPartNumbersError,
    NotFoundError,
    UpstreamStoreError,
    ValidationError,
)

from .identifiers import generate_upload_id
from .media import MediaInspector
from .models import (
    CancelUploadRequest,
    CancelUploadResponse,
    ChunkUploadResponse,
    CompleteUploadRequest,
    StartUploadRequest,
    StartUploadResponse,
    Upload,
    UploadInfo,
    UploadResponse,
    UploadSession,
    as_utc,
    utcnow,
)
from .repository import UploadRepository, allocate_unique_slug
from .session_state import MultipartSessionStore
from .validation import ensure_valid_upload, parse_expires_option, sanitize_filename


def build_object_key(slug: str, filename: str) -> str:
    return f"{slug}/{filename}"


def build_public_url(slug: str, filename: str, base_url: Optional[str] = None) -> str:
    """拼接公开访问链接，文件名做URL编码"""
    base = (base_url or settings.r2_public_base_url).rstrip("/")
    return f"{base}/{slug}/{quote(filename)}"


def verify_uploaded_parts(parts: Sequence[UploadedPart], total_chunks: int) -> list[UploadedPart]:
    """校验客户端提交的分片清单

    分片数量必须等于 total_chunks，按序号排序后必须恰好是 1..total_chunks

    Returns:
        list[UploadedPart]: 按序号升序排列的分片

    Raises:
        InvalidPartNumbersError: 分片数为0、数量不符、缺失、重复或越界
    """
    if total_chunks < 1 or not parts:
        raise InvalidPartNumbersError(f"分片清单为空: totalChunks={total_chunks}")

    if len(parts) != total_chunks:
        raise InvalidPartNumbersError(
            f"分片数量不匹配: 期望 {total_chunks}，实际 {len(parts)}"
        )

    ordered = sorted(parts, key=lambda part: part.part_number)
    for expected, part in enumerate(ordered, start=1):
        if part.part_number != expected:
            raise InvalidPartNumbersError(
                f"分片序号无效: 第 {expected} 个分片的序号为 {part.part_number}"
            )
        if not part.etag:
            raise InvalidPartNumbersError(f"分片 {expected} 缺少etag")
    return ordered


def _missing_fields(**fields: object) -> list[str]:
    return [name for name, value in fields.items() if value is None or value == ""]


class UploadCoordinator:
    """上传协调器

    每个请求创建一个实例，依赖通过构造函数注入，便于测试替换
    """

    def __init__(
        self,
        db: AsyncSession,
        store: Optional[R2ObjectStore] = None,
        config: Optional[Settings] = None,
        sessions: Optional[MultipartSessionStore] = None,
        inspector: Optional[MediaInspector] = None,
    ) -> None:
        self.config = config or settings
        self.store = store or object_store
        self.repository = UploadRepository(db)
        self.sessions = sessions or MultipartSessionStore(self.store)
        self.inspector = inspector or MediaInspector(self.store, self.config.media_sniff_bytes)

    def public_url(self, slug: str, filename: str) -> str:
        return build_public_url(slug, filename, self.config.r2_public_base_url)

    async def _allocate_slug(self) -> str:
        return await allocate_unique_slug(
            self.repository,
            attempts=self.config.slug_max_attempts,
            length=self.config.slug_length,
        )

    def _plan_chunks(self, filesize: int) -> tuple[bool, int]:
        """返回 (是否直传, 分片数)"""
        if filesize <= self.config.direct_upload_limit:
            return True, 1
        return False, -(-filesize // self.config.chunk_size)

    async def start(self, request: StartUploadRequest) -> StartUploadResponse:
        """开始上传

        直传时只分配短链接标识；分片上传时还会创建远端分片上传并保存会话

        Raises:
            ValidationError: 参数缺失或不合法
            SlugExhaustedError: 短链接标识重试耗尽
            UpstreamStoreError: 对象存储调用失败
        """
        missing = _missing_fields(
            filename=request.filename,
            filesize=request.filesize,
            mimeType=request.mime_type,
            expires=request.expires,
        )
        if missing:
            raise ValidationError(f"缺少必填字段: {', '.join(missing)}")

        ensure_valid_upload(
            request.filesize,
            request.mime_type,
            self.config.max_file_size,
            self.config.allow_mime_wildcards,
        )
        parse_expires_option(request.expires)

        slug = await self._allocate_slug()
        is_direct, total_chunks = self._plan_chunks(request.filesize)
        upload_id = generate_upload_id()

        if not is_direct:
            key = build_object_key(slug, sanitize_filename(request.filename))
            multipart = await self.store.create_multipart_upload(key, request.mime_type)
            session = UploadSession(
                upload_id=upload_id,
                key=key,
                multipart_upload_id=multipart.upload_id,
                content_type=request.mime_type,
                created_at=as_utc(utcnow()),
            )
            try:
                await self.sessions.save(session)
            except Exception:
                await self._abort_quietly(multipart.key, multipart.upload_id)
                raise

        logger.info(
            f"上传开始: {slug} ({request.filesize} bytes, "
            f"{'直传' if is_direct else f'{total_chunks} 个分片'})"
        )
        return StartUploadResponse(
            upload_id=upload_id,
            slug=slug,
            total_chunks=total_chunks,
            chunk_size=self.config.chunk_size,
            is_direct_upload=is_direct,
        )

    async def upload_chunk(
        self,
        upload_id: Optional[str],
        chunk_index: Optional[int],
        total_chunks: Optional[int],
        stream: AsyncIterator[bytes],
        content_length: Optional[int],
    ) -> ChunkUploadResponse:
        """上传一个分片

        请求体按 Content-Length 边读边写入对象存储，不在内存中缓存整个分片。
        同一个上传的不同分片可以并发调用。
        """
        missing = _missing_fields(
            uploadId=upload_id,
            chunkIndex=chunk_index,
            totalChunks=total_chunks,
        )
        if missing:
            raise ValidationError(f"缺少必填参数: {', '.join(missing)}")
        if total_chunks < 1 or not 0 <= chunk_index < total_chunks:
            raise ValidationError(f"分片序号越界: {chunk_index}/{total_chunks}")
        if content_length is None:
            raise ValidationError("缺少Content-Length")
        if content_length <= 0:
            raise ValidationError("分片内容为空")

        session = await self.sessions.get(upload_id)
        if session is None:
            raise NotFoundError(f"上传会话不存在: {upload_id}")

        multipart = self.store.resume_multipart_upload(session.key, session.multipart_upload_id)
        try:
            part = await multipart.upload_part(
                chunk_index + 1,
                bounded_stream(stream, content_length),
                content_length,
            )
        except LengthMismatchError as e:
            logger.warning(f"分片长度不一致 {upload_id}#{chunk_index}: {e}")
            raise ValidationError(str(e))
        except BaseAPIException:
            raise
        except Exception as e:
            logger.error(f"分片上传失败 {upload_id}#{chunk_index}: {e}")
            raise UpstreamStoreError("分片上传失败") from e

        logger.debug(f"分片已上传: {upload_id} {chunk_index + 1}/{total_chunks}")
        return ChunkUploadResponse(
            chunk_index=chunk_index,
            uploaded=chunk_index + 1,
            total=total_chunks,
            uploaded_part=part,
        )

    async def complete(self, request: CompleteUploadRequest) -> UploadResponse:
        """完成分片上传

        校验分片清单后合并远端分片，删除会话并创建上传记录。
        会话查询之后的任何失败都会尽力放弃远端上传并删除会话，然后抛出原始错误；
        分片清单或目标路径不合法时会话保持不变，客户端可以修正后重试。
        """
        missing = _missing_fields(
            uploadId=request.upload_id,
            slug=request.slug,
            filename=request.filename,
            filesize=request.filesize,
            mimeType=request.mime_type,
            expires=request.expires,
            totalChunks=request.total_chunks,
            uploadedParts=request.uploaded_parts,
        )
        if missing:
            raise ValidationError(f"缺少必填字段: {', '.join(missing)}")

        expires = parse_expires_option(request.expires)
        filename = sanitize_filename(request.filename)
        key = build_object_key(request.slug, filename)

        session = await self.sessions.get(request.upload_id)
        if session is None:
            raise NotFoundError(f"上传会话不存在: {request.upload_id}")

        parts = verify_uploaded_parts(request.uploaded_parts, request.total_chunks)
        if session.key != key:
            raise ValidationError("文件路径与上传会话不一致")

        multipart = self.store.resume_multipart_upload(session.key, session.multipart_upload_id)
        finalized = False
        try:
            await multipart.complete(parts)
            finalized = True
            await self.sessions.delete(session.upload_id)

            dimensions = await self.inspector.inspect_object(key, request.mime_type)

            now = utcnow()
            record = await self.repository.create(Upload(
                slug=request.slug,
                filename=filename,
                filesize=request.filesize,
                mime_type=request.mime_type,
                domain=request.domain or "",
                width=dimensions.width if dimensions else None,
                height=dimensions.height if dimensions else None,
                upload_at=now,
                expires_at=now + expires.duration,
            ))
        except Exception as e:
            logger.error(f"完成上传失败 {request.upload_id}: {e}")
            await self._compensate(session, finalized)
            if isinstance(e, BaseAPIException):
                raise
            raise InternalServerError("完成上传失败") from e

        logger.info(f"上传完成: {record.slug} ({record.filesize} bytes, {len(parts)} 个分片)")
        return self._to_response(record)

    async def cancel(self, request: CancelUploadRequest) -> CancelUploadResponse:
        """取消分片上传

        幂等：会话不存在时直接返回成功；放弃远端上传和删除会话都只记录失败不抛出
        """
        if not request.upload_id:
            raise ValidationError("缺少必填字段: uploadId")

        session = await self.sessions.get(request.upload_id)
        if session is None:
            logger.debug(f"取消上传时会话不存在，忽略: {request.upload_id}")
            return CancelUploadResponse()

        await self._abort_quietly(session.key, session.multipart_upload_id)
        await self._delete_session_quietly(session.upload_id)

        logger.info(f"上传已取消: {request.upload_id}")
        return CancelUploadResponse()

    async def direct_upload(
        self,
        filename: Optional[str],
        filesize: Optional[int],
        mime_type: Optional[str],
        domain: Optional[str],
        expires: Optional[str],
        body: bytes,
    ) -> UploadResponse:
        """小文件直传：一次写入对象存储后立即创建记录，不创建会话"""
        missing = _missing_fields(
            filename=filename,
            filesize=filesize,
            mimeType=mime_type,
            expires=expires,
        )
        if missing:
            raise ValidationError(f"缺少必填参数: {', '.join(missing)}")
        if filesize > self.config.direct_upload_limit:
            raise ValidationError("文件超过直传上限，请使用分片上传")

        ensure_valid_upload(
            filesize,
            mime_type,
            self.config.max_file_size,
            self.config.allow_mime_wildcards,
        )
        option = parse_expires_option(expires)
        if len(body) != filesize:
            raise ValidationError(f"文件大小不一致: 声明 {filesize} 字节，实际 {len(body)} 字节")

        clean_name = sanitize_filename(filename)
        slug = await self._allocate_slug()
        key = build_object_key(slug, clean_name)

        await self.store.put(key, body, mime_type)
        dimensions = await self.inspector.inspect_bytes(mime_type, body)

        now = utcnow()
        try:
            record = await self.repository.create(Upload(
                slug=slug,
                filename=clean_name,
                filesize=filesize,
                mime_type=mime_type,
                domain=domain or "",
                width=dimensions.width if dimensions else None,
                height=dimensions.height if dimensions else None,
                upload_at=now,
                expires_at=now + option.duration,
            ))
        except Exception as e:
            logger.error(f"创建上传记录失败 {slug}: {e}")
            await self._delete_object_quietly(key)
            raise InternalServerError("创建上传记录失败") from e

        logger.info(f"直传完成: {record.slug} ({record.filesize} bytes)")
        return self._to_response(record)

    async def get_upload_info(self, slug: str, host: Optional[str] = None) -> UploadInfo:
        """查询上传记录

        记录不存在、已过期，或绑定了域名而请求来源不一致时，都按不存在处理
        """
        record = await self.repository.get_by_slug(slug)
        if record is None or as_utc(record.expires_at) <= as_utc(utcnow()):
            raise NotFoundError("文件不存在或已过期")

        if record.domain:
            request_host = (host or "").split(":", 1)[0].lower()
            if request_host != record.domain.lower():
                logger.warning(f"域名不匹配: {slug} 绑定 {record.domain}，请求来自 {host}")
                raise NotFoundError("文件不存在或已过期")

        return UploadInfo.model_validate(record)

    def _to_response(self, record: Upload) -> UploadResponse:
        return UploadResponse(
            id=record.id,
            slug=record.slug,
            url=self.public_url(record.slug, record.filename),
            expires_at=as_utc(record.expires_at),
            width=record.width,
            height=record.height,
        )

    async def _compensate(self, session: UploadSession, finalized: bool) -> None:
        """完成失败后的补偿清理，任何一步失败都只记录日志"""
        if finalized:
            await self._delete_object_quietly(session.key)
        else:
            await self._abort_quietly(session.key, session.multipart_upload_id)
        await self._delete_session_quietly(session.upload_id)

    async def _abort_quietly(self, key: str, multipart_upload_id: str) -> None:
        try:
            await self.store.resume_multipart_upload(key, multipart_upload_id).abort()
        except Exception as e:
            logger.warning(f"放弃分片上传失败（忽略） {key}: {e}")

    async def _delete_session_quietly(self, upload_id: str) -> None:
        try:
            await self.sessions.delete(upload_id)
        except Exception as e:
            logger.warning(f"删除分片会话失败（忽略） {upload_id}: {e}")

    async def _delete_object_quietly(self, key: str) -> None:
        try:
            await self.store.delete(key)
        except Exception as e:
            logger.warning(f"删除对象失败（忽略） {key}: {e}")
