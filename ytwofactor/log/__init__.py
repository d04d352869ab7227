"""日志模块

使用示例:
    from ytwofactor.log import get_logger, setup_root_logger

    logger = get_logger()
"""

from .logger import (
    DEFAULT_LOG_FORMAT,
    MicrosecondFormatter,
    create_formatter,
    get_logger,
    setup_logger,
    setup_root_logger,
)
from .filter_hooks import (
    LogFilterHook,
    LogFilterHookManager,
    SensitiveDataFilterHook,
    SensitiveLogFilter,
    log_filter_hook_manager,
    mask_sensitive_text,
)

__all__ = [
    "DEFAULT_LOG_FORMAT",
    "MicrosecondFormatter",
    "create_formatter",
    "get_logger",
    "setup_logger",
    "setup_root_logger",
    "LogFilterHook",
    "LogFilterHookManager",
    "SensitiveDataFilterHook",
    "SensitiveLogFilter",
    "log_filter_hook_manager",
    "mask_sensitive_text",
]
