"""流式传输工具

把入站请求体按声明长度截断后，以阻塞文件对象的形式交给 boto3 工作线程读取。
读取方每调用一次 read 才从事件循环拉取下一块数据，
因此对象存储写得慢时，入站请求体也会被同步放慢（背压）。
"""

import asyncio
from typing import AsyncIterator, Optional


class LengthMismatchError(ValueError):
    """实际传输的字节数与声明长度不一致"""

    def __init__(self, expected: int, received: int):
        self.expected = expected
        self.received = received
        if received > expected:
            message = f"请求体超过声明长度: 期望 {expected} 字节，至少收到 {received} 字节"
        else:
            message = f"请求体不足声明长度: 期望 {expected} 字节，实际收到 {received} 字节"
        super().__init__(message)


async def bounded_stream(
    source: AsyncIterator[bytes],
    length: int
) -> AsyncIterator[bytes]:
    """只放行恰好 length 个字节的异步流

    数据不足或超出声明长度时抛出 LengthMismatchError

    Args:
        source: 入站字节流
        length: 声明长度（Content-Length）

    Yields:
        bytes: 数据块
    """
    received = 0
    async for chunk in source:
        if not chunk:
            continue
        received += len(chunk)
        if received > length:
            raise LengthMismatchError(length, received)
        yield chunk

    if received != length:
        raise LengthMismatchError(length, received)


class ThreadedStreamReader:
    """在工作线程中阻塞读取异步字节流的文件对象

    只能在事件循环之外的线程中调用 read，否则会死锁
    """

    def __init__(self, stream: AsyncIterator[bytes], loop: asyncio.AbstractEventLoop):
        self._iterator = stream.__aiter__()
        self._loop = loop
        self._buffer = b""
        self._exhausted = False
        # 读取过程中抛出的原始异常，boto3 会把它包装成 HTTPClientError
        self.error: Optional[BaseException] = None

    def readable(self) -> bool:
        return True

    async def _next_chunk(self) -> bytes:
        try:
            return await self._iterator.__anext__()
        except StopAsyncIteration:
            return b""

    def _fill(self) -> None:
        while not self._buffer and not self._exhausted:
            future = asyncio.run_coroutine_threadsafe(self._next_chunk(), self._loop)
            try:
                chunk = future.result()
            except BaseException as e:
                self.error = e
                raise
            if chunk:
                self._buffer = chunk
            else:
                self._exhausted = True

    def read(self, size: Optional[int] = -1) -> bytes:
        if size is None or size < 0:
            parts = []
            while True:
                self._fill()
                if not self._buffer:
                    return b"".join(parts)
                parts.append(self._buffer)
                self._buffer = b""

        self._fill()
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data
