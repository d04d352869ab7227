"""双因素验证频率限制器

基于用户的固定窗口失败计数，防止验证码暴力破解。

状态机（按用户）::

    OK --(尝试)--> OK(剩余-1) --> ... --> LOCKED（窗口内第 5 次尝试）
    LOCKED --(锁定到期)--> OK（满额）
    任意状态 --(验证成功 reset)--> OK（满额）

每次验证前调用 check_and_consume 预先占用一次尝试；验证成功后调用 reset 归零。
窗口从第一次尝试开始计时，超过 window_minutes 且未锁定时整体重置（不是漏桶）。

使用示例::

    limiter = VerificationRateLimiter(max_attempts=5, window_minutes=5, lockout_minutes=15)

    decision = limiter.check_and_consume("u1")
    if not decision.allowed:
        raise RateLimitedException(lockout_until=decision.lockout_until)

    if code_ok:
        limiter.reset("u1")
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from ytwofactor.log import get_logger

logger = get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RateLimitDecision:
    """限流判定结果"""
    allowed: bool
    remaining_attempts: int
    lockout_until: Optional[datetime] = None


@dataclass
class RateLimitEntry:
    attempts: int
    first_attempt: datetime
    last_attempt: datetime
    lockout_until: Optional[datetime] = None


class VerificationRateLimiter:
    """按用户的验证频率限制器

    线程安全的内存实现，单锁保护整张表；锁内不做任何 I/O。

    Args:
        max_attempts: 窗口内最大尝试次数（默认 5）
        window_minutes: 计数窗口（分钟，默认 5）
        lockout_minutes: 锁定时长（分钟，默认 15）
        clock: 返回当前时间（带时区）的函数，测试时可注入
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_minutes: int = 5,
        lockout_minutes: int = 15,
        clock: Callable[[], datetime] = None,
    ):
        self.max_attempts = max_attempts
        self.window = timedelta(minutes=window_minutes)
        self.lockout = timedelta(minutes=lockout_minutes)
        self._clock = clock or _utcnow

        # user_id -> RateLimitEntry
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def check_and_consume(self, user_id: str) -> RateLimitDecision:
        """检查是否允许验证，并占用一次尝试

        Returns:
            RateLimitDecision: allowed 为 False 表示处于锁定中
        """
        with self._lock:
            now = self._clock()
            entry = self._current_entry(user_id, now)

            if entry is not None and entry.lockout_until is not None:
                return RateLimitDecision(False, 0, entry.lockout_until)

            if entry is None:
                entry = RateLimitEntry(attempts=0, first_attempt=now, last_attempt=now)
                self._entries[user_id] = entry

            entry.attempts += 1
            entry.last_attempt = now
            remaining = max(0, self.max_attempts - entry.attempts)

            if remaining == 0:
                entry.lockout_until = now + self.lockout
                logger.warning(
                    f"用户二次验证已锁定: {user_id}, "
                    f"尝试{entry.attempts}次, 锁定{int(self.lockout.total_seconds() // 60)}分钟"
                )

            return RateLimitDecision(True, remaining, entry.lockout_until)

    def get_status(self, user_id: str) -> RateLimitDecision:
        """查询当前状态（不占用尝试次数）"""
        with self._lock:
            entry = self._current_entry(user_id, self._clock())
            if entry is None:
                return RateLimitDecision(True, self.max_attempts, None)
            if entry.lockout_until is not None:
                return RateLimitDecision(False, 0, entry.lockout_until)
            return RateLimitDecision(True, max(0, self.max_attempts - entry.attempts), None)

    def reset(self, user_id: str) -> None:
        """验证成功后清除计数（含锁定）"""
        with self._lock:
            self._entries.pop(user_id, None)

    def cleanup(self) -> int:
        """清理窗口已过期且未锁定、或锁定已到期的记录

        Returns:
            清理的记录数
        """
        with self._lock:
            now = self._clock()
            expired = [
                user_id for user_id, entry in self._entries.items()
                if self._is_expired(entry, now)
            ]
            for user_id in expired:
                del self._entries[user_id]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _current_entry(self, user_id: str, now: datetime) -> Optional[RateLimitEntry]:
        """返回仍然有效的记录，过期记录就地删除（调用方需持有锁）"""
        entry = self._entries.get(user_id)
        if entry is not None and self._is_expired(entry, now):
            del self._entries[user_id]
            return None
        return entry

    def _is_expired(self, entry: RateLimitEntry, now: datetime) -> bool:
        if entry.lockout_until is not None:
            return now >= entry.lockout_until
        return now - entry.first_attempt > self.window
