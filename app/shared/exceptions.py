"""自定义异常类定义

定义应用中使用的各种自定义异常
服务层直接抛出这些异常，由全局异常处理器转换为统一响应格式
"""

from fastapi import HTTPException
from typing import Any, Optional


class BaseAPIException(HTTPException):
    """API异常基类

    所有自定义API异常都应该继承这个类
    """

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_type: str = "APIError",
        headers: Optional[dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_type = error_type


class ValidationError(BaseAPIException):
    """数据验证异常

    文件名、大小、MIME类型、过期选项或必填字段不合法，属于客户端错误
    """

    def __init__(self, detail: str = "数据验证失败"):
        super().__init__(
            status_code=400,
            detail=detail,
            error_type="ValidationError"
        )


class NotFoundError(BaseAPIException):
    """资源不存在异常"""

    def __init__(self, detail: str = "资源不存在"):
        super().__init__(
            status_code=404,
            detail=detail,
            error_type="NotFoundError"
        )


class ExpiredError(BaseAPIException):
    """资源已过期异常

    与NotFoundError区分，让客户端知道资源曾经存在但已过期
    """

    def __init__(self, detail: str = "文件已过期"):
        super().__init__(
            status_code=410,
            detail=detail,
            error_type="ExpiredError"
        )


class UnauthorizedError(BaseAPIException):
    """未授权异常"""

    def __init__(self, detail: str = "未授权访问"):
        super().__init__(
            status_code=401,
            detail=detail,
            error_type="UnauthorizedError"
        )


class ConflictError(BaseAPIException):
    """资源冲突异常

    状态码取决于冲突原因：客户端可修正的冲突为400，系统容量问题为500
    """

    def __init__(
        self,
        detail: str = "资源冲突",
        status_code: int = 409,
        error_type: str = "ConflictError"
    ):
        super().__init__(
            status_code=status_code,
            detail=detail,
            error_type=error_type
        )


class InvalidPartNumbersError(ConflictError):
    """分片序号不连续、重复或数量不符"""

    def __init__(self, detail: str = "分片序号无效"):
        super().__init__(
            detail=detail,
            status_code=400,
            error_type="InvalidPartNumbers"
        )


class SlugExhaustedError(ConflictError):
    """短链接标识重试次数耗尽"""

    def __init__(self, detail: str = "无法生成唯一的短链接标识"):
        super().__init__(
            detail=detail,
            status_code=500,
            error_type="SlugExhausted"
        )


class UpstreamStoreError(BaseAPIException):
    """对象存储调用失败"""

    def __init__(self, detail: str = "对象存储服务异常"):
        super().__init__(
            status_code=500,
            detail=detail,
            error_type="UpstreamStoreError"
        )


class InternalServerError(BaseAPIException):
    """服务器内部错误异常"""

    def __init__(self, detail: str = "服务器内部错误"):
        super().__init__(
            status_code=500,
            detail=detail,
            error_type="InternalServerError"
        )
