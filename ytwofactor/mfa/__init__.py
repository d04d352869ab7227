"""双因素认证方式模块

- TOTP: 基于时间的一次性密码（Google Authenticator、Microsoft Authenticator 等）
- Backup Codes: 一次性备用码

SMS、Email、WebAuthn 仅定义了类型，未提供实现，注册表对其返回 METHOD_NOT_SUPPORTED。
"""

from .base import (
    DEFAULT_METHOD_NAMES,
    GENERIC_INVALID_MESSAGE,
    MethodType,
    SetupData,
    TwoFactorProvider,
    VerifyResult,
)
from .totp import TOTPProvider, render_qr_data_url
from .registry import MethodRegistry

__all__ = [
    "DEFAULT_METHOD_NAMES",
    "GENERIC_INVALID_MESSAGE",
    "MethodType",
    "SetupData",
    "TwoFactorProvider",
    "VerifyResult",
    "TOTPProvider",
    "render_qr_data_url",
    "MethodRegistry",
]
