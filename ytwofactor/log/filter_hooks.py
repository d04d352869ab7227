"""日志过滤钩子模块

提供日志数据的过滤功能，用于：
- 过滤敏感数据（密钥、验证码、备用码）
- 自定义日志过滤规则

使用示例:
    from ytwofactor.log import (
        log_filter_hook_manager,
        SensitiveDataFilterHook,
        LogFilterHook,
    )

    # 审计元数据写入前统一过滤
    filtered = log_filter_hook_manager.apply_filters({"secret": "JBSW...", "ip": "1.2.3.4"})
    # {"secret": "*SENSITIVE DATA FILTERED*", "ip": "1.2.3.4"}
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List

# 默认敏感字段名模式
DEFAULT_SENSITIVE_PATTERNS = [
    r'.*(password|pwd|passwd).*',
    r'.*(token).*',
    r'.*(secret|key|apikey|api_key).*',
    r'.*(credential|credentials).*',
    r'^(code|codes|otp|backup_codes?)$',
]

FILTERED_PLACEHOLDER = "*SENSITIVE DATA FILTERED*"

# 日志消息中的敏感片段：备用码 XXXX-XXXX、Base32 TOTP 密钥
_MESSAGE_PATTERNS = [
    re.compile(r'\b[0-9A-F]{4}-[0-9A-F]{4}\b'),
    re.compile(r'\b[A-Z2-7]{32,}\b'),
]


class LogFilterHook(ABC):
    """日志过滤钩子抽象基类

    继承此类可以自定义过滤逻辑。
    """

    @abstractmethod
    def should_apply(self, log_data: Dict[str, Any]) -> bool:
        """判断是否应该应用此过滤器"""
        pass

    @abstractmethod
    def filter(self, log_data: Dict[str, Any]) -> Dict[str, Any]:
        """过滤数据，返回过滤后的副本"""
        pass


class SensitiveDataFilterHook(LogFilterHook):
    """敏感数据过滤器

    根据字段名模式过滤敏感数据，支持嵌套字典和列表的递归过滤。

    Args:
        sensitive_patterns: 敏感字段名模式列表（正则表达式）
    """

    def __init__(self, sensitive_patterns: List[str] = None):
        self.sensitive_patterns = (
            sensitive_patterns if sensitive_patterns is not None else DEFAULT_SENSITIVE_PATTERNS
        )
        self.compiled_patterns = [
            re.compile(pattern, re.IGNORECASE)
            for pattern in self.sensitive_patterns
        ]

    def should_apply(self, log_data: Dict[str, Any]) -> bool:
        return True

    def filter(self, log_data: Dict[str, Any]) -> Dict[str, Any]:
        return self._filter_dict(log_data)

    def _is_sensitive(self, key: str) -> bool:
        return any(pattern.search(str(key)) for pattern in self.compiled_patterns)

    def _filter_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        filtered_data = {}
        for key, value in data.items():
            if self._is_sensitive(key):
                filtered_data[key] = FILTERED_PLACEHOLDER
            elif isinstance(value, dict):
                filtered_data[key] = self._filter_dict(value)
            elif isinstance(value, list):
                filtered_data[key] = self._filter_list(value)
            else:
                filtered_data[key] = value
        return filtered_data

    def _filter_list(self, data: List[Any]) -> List[Any]:
        filtered_data = []
        for item in data:
            if isinstance(item, dict):
                filtered_data.append(self._filter_dict(item))
            elif isinstance(item, list):
                filtered_data.append(self._filter_list(item))
            else:
                filtered_data.append(item)
        return filtered_data


class LogFilterHookManager:
    """日志过滤钩子管理器

    单例模式，管理所有已注册的过滤钩子。
    """

    _instance = None
    _hooks: List[LogFilterHook] = []

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(LogFilterHookManager, cls).__new__(cls)
            cls._hooks = []
        return cls._instance

    @classmethod
    def register_hook(cls, hook: LogFilterHook):
        cls._hooks.append(hook)

    @classmethod
    def unregister_hook(cls, hook: LogFilterHook):
        if hook in cls._hooks:
            cls._hooks.remove(hook)

    @classmethod
    def clear_hooks(cls):
        """清除所有已注册的钩子"""
        cls._hooks.clear()

    @classmethod
    def get_hooks(cls) -> List[LogFilterHook]:
        return cls._hooks.copy()

    @classmethod
    def apply_filters(cls, log_data: Dict[str, Any]) -> Dict[str, Any]:
        """应用所有已注册的过滤器

        Args:
            log_data: 原始数据

        Returns:
            Dict[str, Any]: 过滤后的数据
        """
        filtered_data = dict(log_data)
        for hook in cls._hooks:
            if hook.should_apply(filtered_data):
                filtered_data = hook.filter(filtered_data)
        return filtered_data


class SensitiveLogFilter(logging.Filter):
    """logging 过滤器：掩码日志消息中的备用码和 TOTP 密钥"""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_sensitive_text(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def mask_sensitive_text(text: str) -> str:
    """将文本中形如备用码 / Base32 密钥的片段替换为 ***"""
    for pattern in _MESSAGE_PATTERNS:
        text = pattern.sub("***", text)
    return text


# 创建全局实例
log_filter_hook_manager = LogFilterHookManager()

# 注册默认的敏感数据过滤器
log_filter_hook_manager.register_hook(SensitiveDataFilterHook())
