"""异常处理模块

提供业务异常类、全局异常处理器等功能。

使用示例:
    from ytwofactor.exceptions import Err, register_exception_handlers

    app = FastAPI()
    register_exception_handlers(app)
"""

from .exceptions import (
    Err,
    ErrorCode,
    ErrorCodeType,
    BusinessException,
    MethodNotSupportedException,    # 400
    SetupRequiredException,         # 404
    InvalidSetupDataException,      # 400
    AlreadyEnabledException,        # 400
    RateLimitedException,           # 429
    PolicyDeniedException,          # 403
    MethodNotFoundException,        # 404
    DuplicateMethodException,       # 409
    SessionInvalidException,        # 400
)

from .handlers import (
    register_exception_handlers,
    business_exception_handler,
    http_exception_handler,
    general_exception_handler,
)

__all__ = [
    "Err",
    "ErrorCode",
    "ErrorCodeType",
    "BusinessException",
    "MethodNotSupportedException",
    "SetupRequiredException",
    "InvalidSetupDataException",
    "AlreadyEnabledException",
    "RateLimitedException",
    "PolicyDeniedException",
    "MethodNotFoundException",
    "DuplicateMethodException",
    "SessionInvalidException",
    "register_exception_handlers",
    "business_exception_handler",
    "http_exception_handler",
    "general_exception_handler",
]
