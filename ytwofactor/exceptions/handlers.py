"""全局异常处理器

提供 FastAPI 全局异常处理器，将双因素认证业务异常转换为统一的 JSON 响应格式。
"""

import os
import sys
import traceback

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ytwofactor.log import get_logger
from .exceptions import BusinessException, RateLimitedException

logger = get_logger()

RESPONSE_STATUS_ERROR = "error"


async def business_exception_handler(
    request: Request,
    exc: BusinessException
) -> JSONResponse:
    """业务异常处理器

    4xx 业务异常记录 warning 日志，并按异常自带的状态码返回。
    """
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        f"Business exception: {exc.code} - {exc.message}",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "error_code": exc.code,
            "status_code": exc.status_code,
        }
    )

    content = {
        "status": RESPONSE_STATUS_ERROR,
        "message": exc.message,
        "msg_details": exc.details,
        "data": exc.response_data(),
    }
    if exc.code:
        content["error_code"] = exc.code

    headers = None
    if isinstance(exc, RateLimitedException) and exc.lockout_until is not None:
        headers = {"Retry-After": exc.lockout_until.strftime("%a, %d %b %Y %H:%M:%S GMT")}

    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=headers,
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException
) -> JSONResponse:
    """HTTP 异常处理器"""
    log_level = "warning" if exc.status_code < 500 else "error"
    getattr(logger, log_level)(
        f"HTTP exception: {exc.status_code} - {exc.detail}",
        extra={
            "path": request.url.path,
            "method": request.method,
            "status_code": exc.status_code
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "status": RESPONSE_STATUS_ERROR,
            "message": str(exc.detail),
            "msg_details": [],
            "data": {},
            "error_code": f"HTTP_{exc.status_code}"
        }
    )


async def general_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """通用异常处理器

    存储不可用、加密配置错误等基础设施异常最终落到这里，返回 500 并记录完整堆栈。
    """
    exc_type, exc_value, exc_traceback = sys.exc_info()
    tb_lines = traceback.format_exception(exc_type, exc_value, exc_traceback)

    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
            "exception_type": type(exc).__name__,
            "traceback": "".join(tb_lines)
        }
    )

    content = {
        "status": RESPONSE_STATUS_ERROR,
        "message": "服务器内部错误",
        "msg_details": [],
        "data": {},
        "error_code": "INTERNAL_SERVER_ERROR"
    }

    if os.getenv("DEBUG", "false").lower() == "true":
        content["msg_details"] = [
            f"异常类型: {type(exc).__name__}",
            f"异常消息: {str(exc)}"
        ]

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=content
    )


def register_exception_handlers(app) -> None:
    """注册所有异常处理器到 FastAPI 应用

    使用示例:
        from fastapi import FastAPI
        from ytwofactor.exceptions import register_exception_handlers

        app = FastAPI()
        register_exception_handlers(app)
    """
    app.add_exception_handler(BusinessException, business_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    # 通用异常处理器（必须放在最后）
    app.add_exception_handler(Exception, general_exception_handler)

    logger.info("Exception handlers registered successfully")
