"""业务异常类定义

定义双因素认证子系统使用的业务异常类体系。

验证码错误不是异常，而是 ``VerifyResult(success=False)``；
只有业务规则违反（未注册方法、已启用、限流等）才会抛出以下异常。
"""

import copy
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from fastapi import status


class ErrorCode(str, Enum):
    """错误代码枚举

    继承自 str，可以直接作为字符串使用。

    使用示例:
        from ytwofactor.exceptions import ErrorCode

        if exc.code == ErrorCode.RATE_LIMITED:
            show_lockout(exc.extra["lockout_until"])
    """

    # ==================== 通用错误 ====================
    BUSINESS_ERROR = "BUSINESS_ERROR"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"

    # ==================== 双因素认证 ====================
    METHOD_NOT_SUPPORTED = "METHOD_NOT_SUPPORTED"
    SETUP_REQUIRED = "SETUP_REQUIRED"
    INVALID_SETUP_DATA = "INVALID_SETUP_DATA"
    ALREADY_ENABLED = "ALREADY_ENABLED"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_CODE = "INVALID_CODE"
    POLICY_DENIED = "POLICY_DENIED"

    # ==================== 资源相关 ====================
    NOT_FOUND = "NOT_FOUND"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"

    # ==================== 登录挑战会话 ====================
    INVALID_OR_EXPIRED = "INVALID_OR_EXPIRED"


# 类型别名，支持枚举和字符串
ErrorCodeType = Union[str, ErrorCode]


class BusinessException(Exception):
    """业务异常基类

    属性:
        message: 错误消息（面向用户）
        code: 错误代码（用于程序判断，支持 ErrorCode 枚举或字符串）
        status_code: HTTP 状态码
        details: 详细错误信息列表
        extra: 额外的上下文信息

    使用示例:
        raise BusinessException("操作失败", code=ErrorCode.BUSINESS_ERROR)
    """

    def __init__(
        self,
        message: str,
        code: ErrorCodeType = ErrorCode.BUSINESS_ERROR,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or []
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典格式"""
        return {
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
            # 返回深拷贝，避免调用方修改返回值反向污染异常对象内部状态
            "details": copy.deepcopy(self.details),
            "extra": copy.deepcopy(self.extra)
        }

    def response_data(self) -> Dict[str, Any]:
        """返回给客户端的 data 字段，默认为空"""
        return {}

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"status_code={self.status_code})"
        )


class MethodNotSupportedException(BusinessException):
    """认证方式未实现或未注册

    使用示例:
        raise MethodNotSupportedException(method_type="sms")
    """

    def __init__(
        self,
        message: str = "Two-factor method is not supported",
        code: ErrorCodeType = ErrorCode.METHOD_NOT_SUPPORTED,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
            **extra
        )


class SetupRequiredException(BusinessException):
    """用户尚未设置对应的认证方式"""

    def __init__(
        self,
        message: str = "Two-factor method is not set up",
        code: ErrorCodeType = ErrorCode.SETUP_REQUIRED,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
            **extra
        )


class InvalidSetupDataException(BusinessException):
    """设置数据无效（含方法不属于当前用户的情况）"""

    def __init__(
        self,
        message: str = "Invalid two-factor setup data",
        code: ErrorCodeType = ErrorCode.INVALID_SETUP_DATA,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
            **extra
        )


class AlreadyEnabledException(BusinessException):
    """认证方式已启用"""

    def __init__(
        self,
        message: str = "Two-factor method is already enabled. Disable it first",
        code: ErrorCodeType = ErrorCode.ALREADY_ENABLED,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
            **extra
        )


class RateLimitedException(BusinessException):
    """验证尝试次数过多，用户被临时锁定

    使用示例:
        raise RateLimitedException(remaining_attempts=0, lockout_until=decision.lockout_until)
    """

    def __init__(
        self,
        message: str = "Too many verification attempts. Try again later",
        code: ErrorCodeType = ErrorCode.RATE_LIMITED,
        remaining_attempts: int = 0,
        lockout_until: Optional[datetime] = None,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        self.remaining_attempts = remaining_attempts
        self.lockout_until = lockout_until
        super().__init__(
            message=message,
            code=code,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details=details,
            remaining_attempts=remaining_attempts,
            lockout_until=lockout_until,
            **extra
        )

    def response_data(self) -> Dict[str, Any]:
        return {
            "remaining_attempts": self.remaining_attempts,
            "lockout_until": self.lockout_until.isoformat() if self.lockout_until else None,
        }


class PolicyDeniedException(BusinessException):
    """操作被管理策略禁止（例如不允许用户自行禁用）"""

    def __init__(
        self,
        message: str = "Operation is not allowed by policy",
        code: ErrorCodeType = ErrorCode.POLICY_DENIED,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
            **extra
        )


class MethodNotFoundException(BusinessException):
    """认证方式记录不存在"""

    def __init__(
        self,
        message: str = "Two-factor method not found",
        code: ErrorCodeType = ErrorCode.NOT_FOUND,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
            **extra
        )


class DuplicateMethodException(BusinessException):
    """同一用户同一类型的认证方式已存在（并发设置竞争失败）"""

    def __init__(
        self,
        message: str = "Two-factor method already exists",
        code: ErrorCodeType = ErrorCode.DUPLICATE_ENTRY,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
            **extra
        )


class SessionInvalidException(BusinessException):
    """登录挑战会话不存在或已过期"""

    def __init__(
        self,
        message: str = "Two-factor session is invalid or expired",
        code: ErrorCodeType = ErrorCode.INVALID_OR_EXPIRED,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
            **extra
        )


class Err:
    """异常快捷创建类

    使用示例:
        from ytwofactor.exceptions import Err

        raise Err.not_supported(method_type="sms")
        raise Err.setup_required()
        raise Err.rate_limited(lockout_until=until)
    """

    @staticmethod
    def not_supported(message: str = "Two-factor method is not supported", **kwargs) -> MethodNotSupportedException:
        return MethodNotSupportedException(message, **kwargs)

    @staticmethod
    def setup_required(message: str = "Two-factor method is not set up", **kwargs) -> SetupRequiredException:
        return SetupRequiredException(message, **kwargs)

    @staticmethod
    def invalid_setup(message: str = "Invalid two-factor setup data", **kwargs) -> InvalidSetupDataException:
        return InvalidSetupDataException(message, **kwargs)

    @staticmethod
    def already_enabled(
        message: str = "Two-factor method is already enabled. Disable it first", **kwargs
    ) -> AlreadyEnabledException:
        return AlreadyEnabledException(message, **kwargs)

    @staticmethod
    def rate_limited(message: str = "Too many verification attempts. Try again later", **kwargs) -> RateLimitedException:
        return RateLimitedException(message, **kwargs)

    @staticmethod
    def policy_denied(message: str = "Operation is not allowed by policy", **kwargs) -> PolicyDeniedException:
        return PolicyDeniedException(message, **kwargs)

    @staticmethod
    def not_found(message: str = "Two-factor method not found", **kwargs) -> MethodNotFoundException:
        return MethodNotFoundException(message, **kwargs)

    @staticmethod
    def duplicate(message: str = "Two-factor method already exists", **kwargs) -> DuplicateMethodException:
        return DuplicateMethodException(message, **kwargs)

    @staticmethod
    def session_invalid(message: str = "Two-factor session is invalid or expired", **kwargs) -> SessionInvalidException:
        return SessionInvalidException(message, **kwargs)
