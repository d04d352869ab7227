"""双因素认证基础定义"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from ytwofactor.exceptions import ErrorCode


class MethodType(str, Enum):
    """认证方式类型"""
    TOTP = "totp"  # 基于时间的一次性密码
    SMS = "sms"  # 短信验证码
    EMAIL = "email"  # 邮件验证码
    WEBAUTHN = "webauthn"  # WebAuthn/FIDO2


# 各类型的默认显示名称
DEFAULT_METHOD_NAMES: Dict[MethodType, str] = {
    MethodType.TOTP: "Authenticator App",
    MethodType.SMS: "SMS",
    MethodType.EMAIL: "Email",
    MethodType.WEBAUTHN: "Security Key",
}

GENERIC_INVALID_MESSAGE = "Invalid verification code"


@dataclass
class SetupData:
    """认证方式设置数据

    Attributes:
        method_type: 认证方式类型
        secret: 明文密钥（用于手动输入，由调用方加密持久化）
        uri: otpauth URI
        qr_code: 二维码图片（data URL）
        instructions: 设置说明
        extra: 额外数据
    """
    method_type: MethodType
    secret: str
    uri: Optional[str] = None
    qr_code: Optional[str] = None
    instructions: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VerifyResult:
    """验证结果

    Attributes:
        success: 是否验证成功
        message: 消息（失败时始终为通用提示，不透露原因）
        remaining_attempts: 剩余尝试次数
        lockout_until: 锁定到期时间
        method_id: 验证所使用的认证方式 ID
        error_code: 失败时为 ErrorCode.INVALID_CODE
    """
    success: bool
    message: str = ""
    remaining_attempts: Optional[int] = None
    lockout_until: Optional[datetime] = None
    method_id: Optional[int] = None
    error_code: Optional[ErrorCode] = None

    @classmethod
    def ok(cls, message: str = "Verification successful", method_id: int = None) -> "VerifyResult":
        """创建成功结果"""
        return cls(success=True, message=message, method_id=method_id)

    @classmethod
    def fail(
        cls,
        message: str = GENERIC_INVALID_MESSAGE,
        remaining_attempts: int = None,
        lockout_until: datetime = None,
    ) -> "VerifyResult":
        """创建失败结果"""
        return cls(
            success=False,
            message=message,
            remaining_attempts=remaining_attempts,
            lockout_until=lockout_until,
            error_code=ErrorCode.INVALID_CODE,
        )


@runtime_checkable
class TwoFactorProvider(Protocol):
    """认证方式提供者协议

    每种认证方式实现 setup / verify 两个能力并注册到 MethodRegistry，
    新增方式（SMS、WebAuthn 等）无需修改编排服务。
    """

    @property
    def method_type(self) -> MethodType: ...

    def setup(self, user_id: str, **kwargs) -> SetupData: ...

    def verify(self, user_id: str, code: str, secret: str, **kwargs) -> VerifyResult: ...
