"""双因素认证编排服务

把注册表、存储、限流器和备用码串成每个 (用户, 方式类型) 的状态机::

    NO_METHOD --setup--> PENDING（未启用，已下发密钥）
    PENDING   --verify--> PENDING（失败计入限流）
    PENDING   --enable--> ENABLED（用户首个启用的方式自动成为主要方式）
    ENABLED   --verify--> ENABLED（更新 last_used_at）
    ENABLED   --disable--> DISABLED（is_enabled=False, is_primary=False）
    DISABLED  --setup--> PENDING（复用原记录，轮换密钥）

验证码错误返回 ``VerifyResult(success=False)``，不抛异常；只有限流耗尽抛出 RateLimitedException。

使用示例:
    service = TwoFactorService(store, registry, rate_limiter, backup_codes)

    setup = service.setup("u1", SetupRequest(email="john@example.com"))
    result = service.verify("u1", VerifyRequest(code="123456"))
    enabled = service.enable("u1", setup.method_id)
    enabled.backup_codes  # 首次启用时返回一次性明文备用码
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ytwofactor.exceptions import (
    AlreadyEnabledException,
    InvalidSetupDataException,
    MethodNotFoundException,
    PolicyDeniedException,
    RateLimitedException,
    SetupRequiredException,
)
from ytwofactor.log import get_logger
from ytwofactor.mfa.backup_codes import BackupCodeBatch, BackupCodesProvider, BackupCodeVerification
from ytwofactor.mfa.base import DEFAULT_METHOD_NAMES, MethodType, VerifyResult
from ytwofactor.mfa.registry import MethodRegistry, coerce_method_type
from ytwofactor.rate_limiter import RateLimitDecision, VerificationRateLimiter
from ytwofactor.store import MethodRecord, MethodStore

logger = get_logger()

TOTP_MASK = "***SECRET***"
DEFAULT_MASK = "***MASKED***"


@dataclass
class SetupRequest:
    """设置请求"""
    method_type: MethodType = MethodType.TOTP
    name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass
class SetupResult:
    """设置结果（明文密钥仅返回这一次）"""
    method_id: int
    method_type: MethodType
    secret: str
    uri: Optional[str] = None
    qr_code: Optional[str] = None
    instructions: List[str] = field(default_factory=list)


@dataclass
class VerifyRequest:
    """验证请求，按 method_id > method_type > TOTP 的顺序确定目标方式"""
    code: str
    method_id: Optional[int] = None
    method_type: Optional[MethodType] = None


@dataclass
class EnableResult:
    method_id: int
    is_primary: bool
    backup_codes: Optional[List[str]] = None


@dataclass
class MethodSummary:
    """认证方式摘要（密钥已掩码）"""
    id: int
    method_type: MethodType
    name: str
    is_enabled: bool
    is_primary: bool
    masked_data: str
    created_at: datetime
    last_used_at: Optional[datetime] = None


@dataclass
class TwoFactorStatus:
    is_enabled: bool
    has_enabled_methods: bool
    enabled_methods: List[MethodSummary] = field(default_factory=list)
    primary_method: Optional[MethodSummary] = None
    available_methods: List[str] = field(default_factory=list)
    can_disable: bool = False
    backup_codes_remaining: int = 0


def mask_secret_data(method_type: MethodType, secret_data: str) -> str:
    """掩码密钥数据

    - TOTP 始终返回固定占位符
    - SMS 保留手机号前 3 位和后 4 位
    - Email 保留前 2 个字符和域名
    """
    if method_type == MethodType.TOTP:
        return TOTP_MASK
    if method_type == MethodType.SMS:
        return re.sub(r"^(\d{3})\d+(\d{4})$", r"\1***\2", secret_data)
    if method_type == MethodType.EMAIL:
        return re.sub(r"(.{2})[^@]*(@.*)", r"\1***\2", secret_data)
    return DEFAULT_MASK


class TwoFactorService:
    """双因素认证编排服务

    Args:
        store: 认证方式存储
        registry: 认证方式注册表
        rate_limiter: 验证频率限制器
        backup_codes: 备用码提供者
        allow_disable_by_user: 是否允许用户自行禁用 / 删除已启用的方式
    """

    def __init__(
        self,
        store: MethodStore,
        registry: MethodRegistry,
        rate_limiter: VerificationRateLimiter,
        backup_codes: BackupCodesProvider,
        allow_disable_by_user: bool = True,
    ):
        self.store = store
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.backup_codes = backup_codes
        self.allow_disable_by_user = allow_disable_by_user

    # ==================== 设置 ====================

    def setup(
        self,
        user_id: str,
        request: SetupRequest,
        ip_address: str = None,
        user_agent: str = None,
    ) -> SetupResult:
        """设置认证方式

        已存在且已启用时拒绝；已存在但未启用时轮换密钥并复用原记录；否则新建。

        Raises:
            MethodNotSupportedException: 类型未注册
            AlreadyEnabledException: 该方式已启用
            DuplicateMethodException: 并发设置时竞争失败
        """
        method_type = coerce_method_type(request.method_type)
        provider = self.registry.get_provider(method_type)

        existing = self.store.find_by_user_and_type(user_id, method_type)
        if existing is not None and existing.is_enabled:
            raise AlreadyEnabledException(method_id=existing.id)

        setup_data = provider.setup(user_id, email=request.email, phone_number=request.phone_number)

        if existing is not None:
            record = self.store.update_secret(
                existing.id, setup_data.secret, ip_address=ip_address, user_agent=user_agent
            )
        else:
            record = self.store.create(
                user_id=user_id,
                method_type=method_type,
                secret_data=setup_data.secret,
                name=request.name or DEFAULT_METHOD_NAMES[method_type],
                is_primary=False,
                ip_address=ip_address,
                user_agent=user_agent,
            )

        return SetupResult(
            method_id=record.id,
            method_type=method_type,
            secret=setup_data.secret,
            uri=setup_data.uri,
            qr_code=setup_data.qr_code,
            instructions=setup_data.instructions,
        )

    # ==================== 验证 ====================

    def verify(self, user_id: str, request: VerifyRequest, consume_rate_limit: bool = True) -> VerifyResult:
        """验证代码

        Args:
            user_id: 用户 ID
            request: 验证请求
            consume_rate_limit: 是否计入验证限流（登录挑战流程传 False，与本限流相互独立）

        Raises:
            RateLimitedException: 处于锁定期
            SetupRequiredException: 找不到目标方式
            InvalidSetupDataException: 指定的方式不属于该用户
        """
        decision = self._consume_attempt(user_id) if consume_rate_limit else None

        method = self._resolve_method(user_id, request)
        provider = self.registry.get_provider(method.method_type)
        result = provider.verify(user_id, request.code, method.secret_data)

        if result.success:
            if consume_rate_limit:
                self.rate_limiter.reset(user_id)
            self.store.update_last_used(method.id)
            logger.info(f"Two-factor verification succeeded: user={user_id}, method={method.id}")
            return VerifyResult.ok(method_id=method.id)

        logger.info(f"Two-factor verification failed: user={user_id}, method={method.id}")
        if decision is None:
            return VerifyResult.fail()
        return VerifyResult.fail(
            remaining_attempts=decision.remaining_attempts,
            lockout_until=decision.lockout_until,
        )

    def _consume_attempt(self, user_id: str) -> RateLimitDecision:
        decision = self.rate_limiter.check_and_consume(user_id)
        if not decision.allowed:
            raise RateLimitedException(
                remaining_attempts=decision.remaining_attempts,
                lockout_until=decision.lockout_until,
            )
        return decision

    def _resolve_method(self, user_id: str, request: VerifyRequest) -> MethodRecord:
        if request.method_id is not None:
            method = self.store.find_by_id(request.method_id)
            if method is None:
                raise SetupRequiredException()
            if method.user_id != user_id:
                raise InvalidSetupDataException("Two-factor method does not belong to the user")
            return method

        method_type = coerce_method_type(request.method_type or MethodType.TOTP)
        method = self.store.find_by_user_and_type(user_id, method_type)
        if method is None:
            raise SetupRequiredException(method_type=method_type.value)
        return method

    # ==================== 启用 / 禁用 ====================

    def enable(
        self,
        user_id: str,
        method_id: int,
        ip_address: str = None,
        user_agent: str = None,
    ) -> EnableResult:
        """启用认证方式

        用户当前没有其他已启用方式时，该方式成为主要方式，并重新生成一组备用码随结果返回。
        """
        method = self._get_owned_method(user_id, method_id)
        if method.is_enabled:
            raise AlreadyEnabledException(method_id=method_id)

        others_enabled = [
            m for m in self.store.find_all_for_user(user_id, enabled_only=True) if m.id != method_id
        ]
        is_first = not others_enabled

        record = self.store.enable(method_id, is_primary=is_first, ip_address=ip_address, user_agent=user_agent)

        backup_codes = None
        if is_first:
            backup_codes = self.backup_codes.generate(user_id).codes

        return EnableResult(method_id=record.id, is_primary=record.is_primary, backup_codes=backup_codes)

    def disable(
        self,
        user_id: str,
        method_id: int,
        ip_address: str = None,
        user_agent: str = None,
    ) -> MethodRecord:
        """禁用认证方式

        Raises:
            PolicyDeniedException: 配置不允许用户自行禁用
        """
        if not self.allow_disable_by_user:
            raise PolicyDeniedException("Disabling two-factor authentication is not allowed")

        method = self._get_owned_method(user_id, method_id)
        record = self.store.disable(method_id, ip_address=ip_address, user_agent=user_agent)
        if method.is_primary:
            self._promote_next_primary(user_id)
        return record

    def set_primary(self, user_id: str, method_id: int) -> MethodRecord:
        """将已启用的方式设为主要方式"""
        method = self._get_owned_method(user_id, method_id)
        if not method.is_enabled:
            raise InvalidSetupDataException("Only enabled methods can be primary")
        return self.store.set_primary(method_id)

    def delete_method(
        self,
        user_id: str,
        method_id: int,
        ip_address: str = None,
        user_agent: str = None,
    ) -> None:
        """删除认证方式；删除已启用的方式与禁用受同一策略约束"""
        method = self._get_owned_method(user_id, method_id)
        if method.is_enabled and not self.allow_disable_by_user:
            raise PolicyDeniedException("Removing an enabled two-factor method is not allowed")

        self.store.delete(method_id, ip_address=ip_address, user_agent=user_agent)
        if method.is_primary:
            self._promote_next_primary(user_id)

    def _promote_next_primary(self, user_id: str) -> None:
        remaining = self.store.find_all_for_user(user_id, enabled_only=True)
        if remaining and not any(m.is_primary for m in remaining):
            self.store.set_primary(remaining[0].id)

    def _get_owned_method(self, user_id: str, method_id: int) -> MethodRecord:
        method = self.store.find_by_id(method_id)
        if method is None:
            raise MethodNotFoundException(method_id=method_id)
        if method.user_id != user_id:
            raise InvalidSetupDataException("Two-factor method does not belong to the user")
        return method

    # ==================== 状态 ====================

    def status(self, user_id: str) -> TwoFactorStatus:
        """查询用户的双因素认证状态（密钥已掩码）"""
        summaries = [
            self._summarize(m) for m in self.store.find_all_for_user(user_id, enabled_only=True)
        ]
        primary = next((s for s in summaries if s.is_primary), None)
        has_enabled = bool(summaries)

        return TwoFactorStatus(
            is_enabled=has_enabled,
            has_enabled_methods=has_enabled,
            enabled_methods=summaries,
            primary_method=primary,
            available_methods=[t.value for t in self.registry.list_supported()],
            can_disable=has_enabled and self.allow_disable_by_user,
            backup_codes_remaining=self.backup_codes.remaining_count(user_id),
        )

    def has_enabled_methods(self, user_id: str) -> bool:
        return self.store.has_any_enabled(user_id)

    @staticmethod
    def _summarize(method: MethodRecord) -> MethodSummary:
        return MethodSummary(
            id=method.id,
            method_type=method.method_type,
            name=method.name,
            is_enabled=method.is_enabled,
            is_primary=method.is_primary,
            masked_data=mask_secret_data(method.method_type, method.secret_data),
            created_at=method.created_at,
            last_used_at=method.last_used_at,
        )

    # ==================== 备用码 ====================

    def generate_backup_codes(self, user_id: str, count: int = None) -> BackupCodeBatch:
        """生成备用码，作废全部旧码"""
        return self.backup_codes.generate(user_id, count)

    def regenerate_backup_codes(self, user_id: str, count: int = None) -> BackupCodeBatch:
        """为已启用双因素认证的用户重新生成备用码

        Raises:
            SetupRequiredException: 用户没有已启用的方式
        """
        if not self.store.has_any_enabled(user_id):
            raise SetupRequiredException("Enable a two-factor method before generating backup codes")
        return self.generate_backup_codes(user_id, count)

    def verify_backup_code(self, user_id: str, code: str, consume_rate_limit: bool = True) -> BackupCodeVerification:
        """验证并消费备用码

        Raises:
            RateLimitedException: 处于锁定期
        """
        if consume_rate_limit:
            self._consume_attempt(user_id)

        result = self.backup_codes.verify(user_id, code)
        if result.is_valid and consume_rate_limit:
            self.rate_limiter.reset(user_id)
        return result

    def backup_codes_remaining(self, user_id: str) -> int:
        return self.backup_codes.remaining_count(user_id)

    def get_rate_limit_status(self, user_id: str) -> RateLimitDecision:
        return self.rate_limiter.get_status(user_id)
