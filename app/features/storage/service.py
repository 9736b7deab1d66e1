"""存储服务模块

封装Cloudflare R2（S3兼容）对象存储的基本操作和分片上传协议。
boto3 是同步客户端，所有调用都放到默认线程池执行，避免阻塞事件循环。
"""

import asyncio
from functools import partial
from typing import Any, AsyncIterator, Callable, Optional, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from app.core.config import settings
from app.shared.exceptions import UpstreamStoreError

from .models import ObjectStream, UploadedPart
from .streams import ThreadedStreamReader


_MISSING_KEY_CODES = {"NoSuchKey", "404", "NotFound"}


def _is_missing_key(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in _MISSING_KEY_CODES


class MultipartUpload:
    """远端分片上传句柄

    只包含 key 和远端 uploadId，可以在任意请求中通过 resume 重建；
    同一个句柄允许并发上传不同序号的分片
    """

    def __init__(self, store: "R2ObjectStore", key: str, upload_id: str) -> None:
        self.store = store
        self.key = key
        self.upload_id = upload_id

    async def upload_part(
        self,
        part_number: int,
        stream: AsyncIterator[bytes],
        length: int
    ) -> UploadedPart:
        """上传一个分片

        Args:
            part_number: 分片序号（从1开始）
            stream: 已按声明长度约束的字节流
            length: 分片字节数

        Returns:
            UploadedPart: 分片序号和etag
        """
        reader = ThreadedStreamReader(stream, asyncio.get_running_loop())
        try:
            response = await self.store._call(
                self.store.s3_client.upload_part,
                Bucket=self.store.bucket_name,
                Key=self.key,
                UploadId=self.upload_id,
                PartNumber=part_number,
                Body=reader,
                ContentLength=length,
            )
        except UpstreamStoreError:
            # 请求体读取失败时优先抛出原始错误（例如长度不一致）
            if reader.error is not None:
                raise reader.error
            raise

        return UploadedPart(part_number=part_number, etag=response["ETag"])

    async def complete(self, parts: Sequence[UploadedPart]) -> None:
        """按给定顺序合并分片，分片缺失或etag不匹配时由对象存储拒绝"""
        await self.store._call(
            self.store.s3_client.complete_multipart_upload,
            Bucket=self.store.bucket_name,
            Key=self.key,
            UploadId=self.upload_id,
            MultipartUpload={
                "Parts": [
                    {"PartNumber": part.part_number, "ETag": part.etag}
                    for part in parts
                ]
            },
        )
        logger.info(f"分片上传已合并: {self.key} ({len(parts)} 个分片)")

    async def abort(self) -> None:
        """放弃分片上传，释放已上传但未合并的分片"""
        await self.store._call(
            self.store.s3_client.abort_multipart_upload,
            Bucket=self.store.bucket_name,
            Key=self.key,
            UploadId=self.upload_id,
        )
        logger.info(f"分片上传已放弃: {self.key}")


class R2ObjectStore:
    """Cloudflare R2存储服务

    提供对象读写、删除、前缀列举以及分片上传功能
    """

    def __init__(self, bucket_name: Optional[str] = None) -> None:
        """初始化R2存储服务

        创建boto3客户端连接到Cloudflare R2
        """
        self.s3_client = boto3.client(
            's3',
            endpoint_url=settings.endpoint_url,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.region_name,
            config=Config(
                signature_version="s3v4",
                # R2 不支持对不可回退的流计算尾部校验和
                request_checksum_calculation="when_required",
                response_checksum_validation="when_required",
                # 分片请求体只能顺序读取一次，无法预先计算SHA256签名
                s3={"payload_signing_enabled": False},
            ),
        )
        self.bucket_name = bucket_name or settings.r2_bucket_name

        logger.info(f"R2存储服务已初始化，端点: {settings.endpoint_url}")

    async def _call(self, method: Callable[..., Any], **kwargs: Any) -> Any:
        """在线程池中执行boto3调用，并把底层异常统一转换为UpstreamStoreError"""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(method, **kwargs))
        except ClientError as e:
            logger.error(f"对象存储调用失败 {method.__name__}: {e}")
            raise UpstreamStoreError(f"对象存储调用失败: {method.__name__}") from e
        except BotoCoreError as e:
            logger.error(f"对象存储连接失败 {method.__name__}: {e}")
            raise UpstreamStoreError(f"对象存储连接失败: {method.__name__}") from e

    async def put(self, key: str, body: bytes, content_type: str) -> None:
        """写入对象（覆盖写，幂等）"""
        await self._call(
            self.s3_client.put_object,
            Bucket=self.bucket_name,
            Key=key,
            Body=body,
            ContentType=content_type,
        )
        logger.debug(f"对象已写入: {key} ({len(body)} bytes)")

    async def get(self, key: str, max_bytes: Optional[int] = None) -> Optional[bytes]:
        """读取对象内容

        Args:
            key: 对象键
            max_bytes: 只读取前 max_bytes 个字节（HTTP Range）

        Returns:
            Optional[bytes]: 对象内容，不存在返回None
        """
        params: dict[str, Any] = {"Bucket": self.bucket_name, "Key": key}
        if max_bytes:
            params["Range"] = f"bytes=0-{max_bytes - 1}"

        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None, partial(self.s3_client.get_object, **params)
            )
            return await loop.run_in_executor(None, response["Body"].read)
        except ClientError as e:
            if _is_missing_key(e):
                return None
            logger.error(f"读取对象失败 {key}: {e}")
            raise UpstreamStoreError("读取对象失败") from e
        except BotoCoreError as e:
            logger.error(f"读取对象失败 {key}: {e}")
            raise UpstreamStoreError("读取对象失败") from e

    async def open_stream(self, key: str) -> Optional[ObjectStream]:
        """以流的方式打开对象，用于下载

        Returns:
            Optional[ObjectStream]: 对象流，不存在返回None
        """
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                partial(self.s3_client.get_object, Bucket=self.bucket_name, Key=key),
            )
        except ClientError as e:
            if _is_missing_key(e):
                return None
            logger.error(f"打开对象流失败 {key}: {e}")
            raise UpstreamStoreError("读取对象失败") from e
        except BotoCoreError as e:
            logger.error(f"打开对象流失败 {key}: {e}")
            raise UpstreamStoreError("读取对象失败") from e

        return ObjectStream(
            body=response["Body"].iter_chunks(chunk_size=64 * 1024),
            content_type=response.get("ContentType") or "application/octet-stream",
            content_length=response.get("ContentLength"),
        )

    async def delete(self, key: str) -> None:
        """删除对象，删除不存在的键不视为错误"""
        await self._call(
            self.s3_client.delete_object,
            Bucket=self.bucket_name,
            Key=key,
        )
        logger.debug(f"对象已删除: {key}")

    async def list(self, prefix: str) -> list[str]:
        """列举指定前缀下的所有对象键"""
        def _list_all() -> list[str]:
            paginator = self.s3_client.get_paginator("list_objects_v2")
            keys: list[str] = []
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                keys.extend(item["Key"] for item in page.get("Contents", []))
            return keys

        return await self._call(_list_all)

    async def create_multipart_upload(self, key: str, content_type: str) -> MultipartUpload:
        """创建远端分片上传"""
        response = await self._call(
            self.s3_client.create_multipart_upload,
            Bucket=self.bucket_name,
            Key=key,
            ContentType=content_type,
        )
        logger.info(f"分片上传已创建: {key}")
        return MultipartUpload(self, key, response["UploadId"])

    def resume_multipart_upload(self, key: str, upload_id: str) -> MultipartUpload:
        """根据持久化的远端uploadId重建句柄，不发起远端调用"""
        return MultipartUpload(self, key, upload_id)


# 全局存储服务实例
object_store = R2ObjectStore()
