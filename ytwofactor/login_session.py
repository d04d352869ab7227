"""登录挑战会话管理

密码校验通过且用户已启用双因素认证时，创建一个短期的内存会话，
把待签发的令牌载荷绑定到会话上，等待第二步验证。

- 会话 5 分钟过期，过期会话在被访问时立即删除，永远不会被当作有效会话返回
- 验证成功后删除会话并返回原始载荷；失败时会话保留，可在有效期内重试
- 这里的失败不计入 TwoFactorService 的验证限流，本模块也不做任何限流；
  调用方（如 HTTP 层按 IP / 会话限流）必须自行限制提交频率，否则同一会话可在有效期内无限次尝试
- 只存在于进程内存中，进程重启后全部作废

使用示例:
    manager = LoginChallengeManager(service)

    session = manager.create(user_id="u1", email="a@b.com", name="Alice",
                             original_payload={"sub": "u1"})
    # ... 客户端提交验证码 ...
    outcome = manager.verify_login_code(session.session_id, "123456", code_type="totp")
    if outcome.success:
        issue_tokens(outcome.payload)
"""

import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ytwofactor.exceptions import InvalidSetupDataException, SessionInvalidException
from ytwofactor.log import get_logger
from ytwofactor.mfa.base import GENERIC_INVALID_MESSAGE
from ytwofactor.service import TwoFactorService, VerifyRequest

logger = get_logger()

SESSION_ID_PREFIX = "2fa_session_"
CODE_TYPE_TOTP = "totp"
CODE_TYPE_BACKUP = "backup"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    """生成会话 ID（前缀 + 32 字节随机十六进制）"""
    return SESSION_ID_PREFIX + secrets.token_hex(32)


@dataclass
class LoginChallengeSession:
    """登录挑战会话

    Attributes:
        session_id: 会话 ID
        user_id: 用户 ID
        email: 用户邮箱
        name: 用户名称
        created_at: 创建时间
        expires_at: 过期时间
        original_payload: 验证成功后要签发的令牌载荷
        tenant_id: 租户 ID
    """
    session_id: str
    user_id: str
    email: str
    name: str
    created_at: datetime
    expires_at: datetime
    original_payload: Dict[str, Any] = field(default_factory=dict)
    tenant_id: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class LoginVerification:
    """第二步验证结果"""
    success: bool
    code_type: str
    payload: Optional[Dict[str, Any]] = None
    remaining_backup_codes: Optional[int] = None
    message: str = ""


class LoginChallengeManager:
    """登录挑战会话管理器

    线程安全的内存实现。

    Args:
        service: 双因素认证编排服务
        ttl_minutes: 会话有效期（分钟）
        clock: 返回当前时间（带时区）的函数，测试时可注入
    """

    def __init__(
        self,
        service: TwoFactorService,
        ttl_minutes: int = 5,
        clock: Callable[[], datetime] = None,
    ):
        self.service = service
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock or _utcnow
        self._sessions: Dict[str, LoginChallengeSession] = {}
        self._lock = threading.Lock()

    def create(
        self,
        user_id: str,
        email: str,
        name: str,
        original_payload: Dict[str, Any],
        tenant_id: Optional[str] = None,
    ) -> LoginChallengeSession:
        """创建登录挑战会话"""
        now = self._clock()
        session = LoginChallengeSession(
            session_id=generate_session_id(),
            user_id=user_id,
            email=email,
            name=name,
            created_at=now,
            expires_at=now + self.ttl,
            original_payload=dict(original_payload),
            tenant_id=tenant_id,
        )
        with self._lock:
            self._sessions[session.session_id] = session

        logger.info(f"Login challenge session created: user={user_id}, expires_at={session.expires_at.isoformat()}")
        return session

    def get(self, session_id: str) -> LoginChallengeSession:
        """获取会话

        Raises:
            SessionInvalidException: 会话不存在或已过期（过期会话同时被删除）
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionInvalidException()
            if session.is_expired(self._clock()):
                del self._sessions[session_id]
                logger.info(f"Login challenge session expired: user={session.user_id}")
                raise SessionInvalidException()
            return session

    def verify_login_code(self, session_id: str, code: str, code_type: str = CODE_TYPE_TOTP) -> LoginVerification:
        """验证第二步代码

        Args:
            session_id: 会话 ID
            code: 验证码或备用码
            code_type: "totp" 或 "backup"

        Returns:
            LoginVerification: 成功时带回原始载荷，会话同时被删除

        Raises:
            SessionInvalidException: 会话不存在、已过期，或已被并发请求使用
            InvalidSetupDataException: 不支持的 code_type
        """
        session = self.get(session_id)

        remaining = None
        if code_type == CODE_TYPE_TOTP:
            result = self.service.verify(session.user_id, VerifyRequest(code=code), consume_rate_limit=False)
            success = result.success
        elif code_type == CODE_TYPE_BACKUP:
            backup = self.service.verify_backup_code(session.user_id, code, consume_rate_limit=False)
            success = backup.is_valid
            remaining = backup.remaining_count
        else:
            raise InvalidSetupDataException(f"Unsupported verification code type: {code_type}")

        if not success:
            logger.info(f"Login challenge verification failed: user={session.user_id}, type={code_type}")
            return LoginVerification(
                success=False,
                code_type=code_type,
                remaining_backup_codes=remaining,
                message=GENERIC_INVALID_MESSAGE,
            )

        # 单次使用：只有成功删除会话的请求才能拿到载荷
        with self._lock:
            if self._sessions.pop(session_id, None) is None:
                raise SessionInvalidException()

        logger.info(f"Login challenge completed: user={session.user_id}, type={code_type}")
        return LoginVerification(
            success=True,
            code_type=code_type,
            payload=dict(session.original_payload),
            remaining_backup_codes=remaining,
            message="Verification successful",
        )

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def cleanup(self) -> int:
        """清理过期会话

        Returns:
            清理的会话数
        """
        with self._lock:
            now = self._clock()
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in expired:
                del self._sessions[sid]
            return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        """会话统计：总数和最早创建时间"""
        with self._lock:
            oldest = min((s.created_at for s in self._sessions.values()), default=None)
            return {"total_sessions": len(self._sessions), "oldest_session": oldest}

    def requirement_for(self, user_id: str) -> Dict[str, Any]:
        """登录时判断用户是否需要第二步验证"""
        enabled = self.service.has_enabled_methods(user_id)
        available: List[str] = [CODE_TYPE_TOTP, CODE_TYPE_BACKUP] if enabled else []
        return {"enabled": enabled, "available_methods": available}
