"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class NotFoundException(BusinessException):
    def __init__(self, resource: str, identifier: Optional[str] = None, *, code: int = BusinessCode.NOT_FOUND):
        details = {"resource": resource}
        if identifier is not None:
            details["id"] = identifier
        super().__init__(
            code=code,
            message=f"{resource} not found",
            error_type="NotFound",
            details=details,
        )


class ConflictException(BusinessException):
    """非法状态转换或并发修改"""

    def __init__(self, message: str, *, code: int = BusinessCode.CONFLICT, details: Optional[dict] = None):
        super().__init__(
            code=code,
            message=message,
            error_type="Conflict",
            details=details,
        )


class UserNotFoundException(NotFoundException):
    def __init__(self, user_id: Optional[str] = None):
        super().__init__("User", user_id, code=BusinessCode.USER_NOT_FOUND)
