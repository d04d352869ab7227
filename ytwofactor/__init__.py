"""ytwofactor - 双因素认证子系统

提供 TOTP 与备用码两种方式的设置、验证、启用 / 禁用和登录挑战流程。

使用示例:
    from ytwofactor import create_two_factor, SetupRequest, VerifyRequest

    tfa = create_two_factor()
    setup = tfa.service.setup("u1", SetupRequest(email="alice@example.com"))
    tfa.service.verify("u1", VerifyRequest(code="123456"))
"""

__version__ = "0.1.0"

from .exceptions import (
    Err,
    ErrorCode,
    BusinessException,
    register_exception_handlers,
)
from .mfa import MethodRegistry, MethodType, SetupData, TOTPProvider, TwoFactorProvider, VerifyResult
from .mfa.backup_codes import BackupCodesProvider
from .utils.encryption import DecodeResult, SecretCipher
from .rate_limiter import RateLimitDecision, VerificationRateLimiter
from .store import BackupCodeStore, MethodRecord, MethodStore
from .service import (
    EnableResult,
    MethodSummary,
    SetupRequest,
    SetupResult,
    TwoFactorService,
    TwoFactorStatus,
    VerifyRequest,
)
from .login_session import LoginChallengeManager, LoginChallengeSession, LoginVerification
from .factory import TwoFactorContainer, create_two_factor

__all__ = [
    "__version__",
    "Err",
    "ErrorCode",
    "BusinessException",
    "register_exception_handlers",
    "MethodRegistry",
    "MethodType",
    "SetupData",
    "TOTPProvider",
    "TwoFactorProvider",
    "VerifyResult",
    "BackupCodesProvider",
    "DecodeResult",
    "SecretCipher",
    "RateLimitDecision",
    "VerificationRateLimiter",
    "BackupCodeStore",
    "MethodRecord",
    "MethodStore",
    "EnableResult",
    "MethodSummary",
    "SetupRequest",
    "SetupResult",
    "TwoFactorService",
    "TwoFactorStatus",
    "VerifyRequest",
    "LoginChallengeManager",
    "LoginChallengeSession",
    "LoginVerification",
    "TwoFactorContainer",
    "create_two_factor",
]
