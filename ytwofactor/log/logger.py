"""
日志工具模块
提供简化的日志配置功能
"""

import inspect
import logging
import os
import time
from typing import Any, Optional

from .filter_hooks import SensitiveLogFilter


# 默认日志格式
DEFAULT_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(filename)s:%(lineno)d - %(message)s"

# 包根日志器名称
ROOT_LOGGER_NAME = "ytwofactor"


class MicrosecondFormatter(logging.Formatter):
    """支持微秒精度的日志格式化器"""

    def formatTime(self, record, datefmt=None):
        ct = self.converter(record.created)
        if datefmt:
            s = time.strftime(datefmt, ct)
        else:
            s = time.strftime("%Y-%m-%d %H:%M:%S", ct)
        return "%s.%06d" % (s, (record.created - int(record.created)) * 1000000)


def create_formatter(
    log_format: str = None,
    datefmt: str = "%Y-%m-%d %H:%M:%S",
    use_microseconds: bool = True
) -> logging.Formatter:
    """创建日志格式化器

    Args:
        log_format: 日志格式字符串
        datefmt: 时间格式
        use_microseconds: 是否使用微秒精度

    Returns:
        日志格式化器
    """
    fmt = log_format or DEFAULT_LOG_FORMAT
    if use_microseconds:
        return MicrosecondFormatter(fmt=fmt, datefmt=datefmt)
    return logging.Formatter(fmt, datefmt=datefmt)


def setup_logger(
    name: str = None,
    level: str = "INFO",
    log_file: str = None,
    log_format: str = None,
    console: bool = True,
    use_microseconds: bool = True,
    propagate: bool = True,
    mask_sensitive: bool = True,
) -> logging.Logger:
    """设置并返回配置好的日志记录器

    Args:
        name: 日志记录器名称，默认为root logger
        level: 日志级别，可选：DEBUG, INFO, WARNING, ERROR, CRITICAL
        log_file: 日志文件路径，如果不指定则不写入文件
        log_format: 日志格式，如果不指定则使用默认格式
        console: 是否输出到控制台
        use_microseconds: 是否使用微秒精度时间戳
        propagate: 是否传播到父日志器
        mask_sensitive: 是否在处理器上挂载敏感数据过滤器（验证码、密钥）

    Returns:
        配置好的日志记录器

    使用示例:
        from ytwofactor.log import setup_logger

        logger = setup_logger("ytwofactor", level="DEBUG")
        logger = setup_logger("ytwofactor", log_file="logs/2fa.log")
    """
    _logger = logging.getLogger(name) if name else logging.getLogger()
    _logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    _logger.propagate = propagate

    # 清除现有的处理器
    _logger.handlers.clear()

    formatter = create_formatter(log_format, use_microseconds=use_microseconds)
    handlers = []

    if console:
        handlers.append(logging.StreamHandler())

    if log_file:
        # 确保日志目录存在
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        if mask_sensitive:
            handler.addFilter(SensitiveLogFilter())
        _logger.addHandler(handler)

    return _logger


def setup_root_logger(config: Any = None, level: str = "INFO", console: bool = True) -> logging.Logger:
    """按配置设置包根日志器 ``ytwofactor``

    Args:
        config: LoggingSettings 配置对象，提供后从中读取 level / file_path / enable_console
        level: 日志级别（提供 config 时忽略）
        console: 是否输出到控制台（提供 config 时忽略）

    使用示例:
        from ytwofactor.config import AppSettings
        from ytwofactor.log import setup_root_logger

        settings = AppSettings()
        setup_root_logger(config=settings.logging)
    """
    log_file: Optional[str] = None
    if config is not None:
        level = getattr(config, "level", level)
        log_file = getattr(config, "file_path", None) or None
        console = getattr(config, "enable_console", console)

    return setup_logger(
        name=ROOT_LOGGER_NAME,
        level=level,
        log_file=log_file,
        console=console,
        propagate=False,
    )


def get_logger(name: str = None) -> logging.Logger:
    """获取日志记录器，支持自动推断模块名

    无参数调用时，自动从调用栈获取模块的 __name__ 作为日志器名称。
    简写名称（不含点号）自动添加 'ytwofactor.' 前缀。

    使用示例:
        logger = get_logger()              # 在 ytwofactor/store.py 中 -> "ytwofactor.store"
        logger = get_logger("service")     # -> "ytwofactor.service"
        logger = get_logger("sqlalchemy.engine")  # 含点号，不添加前缀
    """
    if name is None:
        frame = inspect.currentframe()
        if frame is not None and frame.f_back is not None:
            name = frame.f_back.f_globals.get('__name__', ROOT_LOGGER_NAME)
        else:
            name = ROOT_LOGGER_NAME
    elif name != ROOT_LOGGER_NAME and '.' not in name:
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)
